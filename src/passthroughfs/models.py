"""
Pydantic models for mount configuration.

Defaults mirror the historical command line: mount ``/tmp/fsdata`` at
``/tmp/fsmnt``. A ``config.yaml`` in the state directory may override any
field; command-line flags override the file.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel

from . import PASSTHROUGHFS_HOME

logger = logging.getLogger("passthroughfs.models")

CONFIG_FILE = "config.yaml"


class MountConfig(BaseModel):
    """Everything needed to mount one passthrough filesystem."""

    mount_point: Path = Path("/tmp/fsmnt")
    source: Path = Path("/tmp/fsdata")
    debug: bool = False
    foreground: bool = False
    multithreaded: bool = False
    allow_other: bool = False
    use_ns: bool = True
    readdir_plus: bool = True
    state_dir: Path = Path(PASSTHROUGHFS_HOME)

    def expanded(self) -> "MountConfig":
        """Return a copy with ``~`` expanded in every path field."""
        return self.model_copy(
            update={
                "mount_point": self.mount_point.expanduser(),
                "source": self.source.expanduser(),
                "state_dir": self.state_dir.expanduser(),
            }
        )


class MountState(BaseModel):
    """Last known state of a mount, persisted between CLI invocations."""

    mounted: bool = False
    mount_point: str = ""
    source: str = ""
    pid: Optional[int] = None
    updated_at: Optional[datetime] = None


def load_config(
    path: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> MountConfig:
    """Load the mount configuration.

    Args:
        path: YAML file to read. Defaults to ``<PASSTHROUGHFS_HOME>/config.yaml``.
        overrides: Values that win over the file (CLI flags). ``None``
            values are ignored so unset flags keep the file's value.

    Returns:
        MountConfig from the file merged with overrides, or defaults when
        the file is missing or invalid.
    """
    config_file = (path or Path(PASSTHROUGHFS_HOME) / CONFIG_FILE).expanduser()
    data: Dict[str, Any] = {}
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text()) or {}
            if not isinstance(data, dict):
                raise ValueError(f"expected a mapping, got {type(data).__name__}")
        except (yaml.YAMLError, ValueError) as exc:
            logger.warning("Failed to load config %s: %s; using defaults", config_file, exc)
            data = {}

    data.update({k: v for k, v in (overrides or {}).items() if v is not None})
    try:
        return MountConfig(**data).expanded()
    except ValueError as exc:
        logger.warning("Invalid config values: %s; using defaults", exc)
        return MountConfig(**{k: v for k, v in (overrides or {}).items() if v is not None}).expanded()
