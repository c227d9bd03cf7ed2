"""Tests for the passthroughfs command line."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from passthroughfs import __version__
from passthroughfs.cli import main


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """A config file keeping every path inside tmp_path."""
    path = tmp_path / "config.yaml"
    path.write_text(
        f"mount_point: {tmp_path / 'mnt'}\n"
        f"source: {tmp_path / 'data'}\n"
        f"state_dir: {tmp_path / 'state'}\n"
    )
    return path


class TestCLI:
    """Tests for the click command group."""

    def test_version(self) -> None:
        """--version prints the package version."""
        result = CliRunner().invoke(main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    @pytest.mark.parametrize("command", ["mount", "umount", "status"])
    def test_help(self, command: str) -> None:
        """Every command documents itself."""
        result = CliRunner().invoke(main, [command, "--help"])
        assert result.exit_code == 0
        assert "--mount" in result.output

    def test_mount_help_lists_defaults(self) -> None:
        """mount --help shows the historical default paths."""
        result = CliRunner().invoke(main, ["mount", "--help"])
        assert "/tmp/fsmnt" in result.output
        assert "/tmp/fsdata" in result.output
        assert "--passthrough" in result.output

    def test_status_json(self, config_file: Path, tmp_path: Path) -> None:
        """status --json prints machine-readable state."""
        with patch("passthroughfs.fuse_mount.MountDaemon._is_mounted", return_value=False):
            result = CliRunner().invoke(main, ["status", "--config", str(config_file), "--json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["mounted"] is False
        assert data["mount_point"] == str(tmp_path / "mnt")
        assert data["source"] == str(tmp_path / "data")

    def test_status_table(self, config_file: Path) -> None:
        """status without --json renders a panel."""
        with patch("passthroughfs.fuse_mount.MountDaemon._is_mounted", return_value=True):
            result = CliRunner().invoke(main, ["status", "--config", str(config_file)])
        assert result.exit_code == 0
        assert "MOUNTED" in result.output

    def test_mount_override_reaches_daemon(self, config_file: Path, tmp_path: Path) -> None:
        """-m and -p override the config file."""
        with patch("passthroughfs.fuse_mount.MountDaemon") as daemon_cls:
            daemon_cls.return_value.start.return_value = True
            result = CliRunner().invoke(main, [
                "mount", "--config", str(config_file),
                "-m", str(tmp_path / "elsewhere"), "-p", str(tmp_path / "src"), "-f",
            ])
        assert result.exit_code == 0, result.output
        daemon_cls.return_value.start.assert_called_once()
        passed = daemon_cls.call_args.args[0]
        assert passed.mount_point == tmp_path / "elsewhere"
        assert passed.source == tmp_path / "src"
        assert passed.foreground is True

    def test_mount_failure_exits_nonzero(self, config_file: Path) -> None:
        """A failed mount exits with status 1."""
        with patch("passthroughfs.fuse_mount.MountDaemon.start", return_value=False):
            result = CliRunner().invoke(main, ["mount", "--config", str(config_file)])
        assert result.exit_code == 1
        assert "Mount failed" in result.output

    def test_umount_failure_exits_nonzero(self, config_file: Path) -> None:
        """A failed unmount exits with status 1."""
        with patch("passthroughfs.fuse_mount.MountDaemon.stop", return_value=False):
            result = CliRunner().invoke(main, ["umount", "--config", str(config_file)])
        assert result.exit_code == 1
        assert "Unmount failed" in result.output

    def test_umount_success(self, config_file: Path) -> None:
        """A successful unmount exits 0."""
        with patch("passthroughfs.fuse_mount.MountDaemon.stop", return_value=True):
            result = CliRunner().invoke(main, ["umount", "--config", str(config_file)])
        assert result.exit_code == 0
        assert "Unmounted" in result.output
