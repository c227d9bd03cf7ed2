"""Tests for mount configuration loading."""

from __future__ import annotations

from pathlib import Path

from passthroughfs.models import MountConfig, load_config


class TestMountConfig:
    """Tests for the configuration model."""

    def test_defaults(self) -> None:
        """Defaults mount /tmp/fsdata at /tmp/fsmnt in the background."""
        config = MountConfig()
        assert config.mount_point == Path("/tmp/fsmnt")
        assert config.source == Path("/tmp/fsdata")
        assert config.foreground is False
        assert config.multithreaded is False
        assert config.use_ns is True

    def test_expanded(self) -> None:
        """expanded() resolves ~ in every path."""
        config = MountConfig(mount_point="~/mnt", source="~/data", state_dir="~/.state").expanded()
        home = Path.home()
        assert config.mount_point == home / "mnt"
        assert config.source == home / "data"
        assert config.state_dir == home / ".state"


class TestLoadConfig:
    """Tests for YAML loading with overrides."""

    def test_missing_file_gives_defaults(self, tmp_path: Path) -> None:
        """No file means default values."""
        config = load_config(tmp_path / "absent.yaml")
        assert config.mount_point == Path("/tmp/fsmnt")

    def test_reads_yaml(self, tmp_path: Path) -> None:
        """Values in the file are applied."""
        path = tmp_path / "config.yaml"
        path.write_text("mount_point: /mnt/mirror\nsource: /srv/data\ndebug: true\n")
        config = load_config(path)
        assert config.mount_point == Path("/mnt/mirror")
        assert config.source == Path("/srv/data")
        assert config.debug is True

    def test_overrides_win(self, tmp_path: Path) -> None:
        """Overrides replace file values; None overrides are ignored."""
        path = tmp_path / "config.yaml"
        path.write_text("mount_point: /mnt/mirror\nsource: /srv/data\n")
        config = load_config(path, {"mount_point": "/mnt/other", "source": None})
        assert config.mount_point == Path("/mnt/other")
        assert config.source == Path("/srv/data")

    def test_invalid_yaml_falls_back(self, tmp_path: Path) -> None:
        """Unparseable YAML is ignored."""
        path = tmp_path / "config.yaml"
        path.write_text("mount_point: [unclosed\n")
        config = load_config(path, {"foreground": True})
        assert config.mount_point == Path("/tmp/fsmnt")
        assert config.foreground is True

    def test_non_mapping_falls_back(self, tmp_path: Path) -> None:
        """A YAML document that is not a mapping is ignored."""
        path = tmp_path / "config.yaml"
        path.write_text("- just\n- a list\n")
        assert load_config(path).source == Path("/tmp/fsdata")

    def test_invalid_values_fall_back(self, tmp_path: Path) -> None:
        """Values of the wrong type drop the file but keep the overrides."""
        path = tmp_path / "config.yaml"
        path.write_text("debug: [1, 2]\nsource: /srv/data\n")
        config = load_config(path, {"mount_point": "/mnt/x"})
        assert config.debug is False
        assert config.source == Path("/tmp/fsdata")
        assert config.mount_point == Path("/mnt/x")
