"""Shared utilities for the CLI command modules.

Provides the Rich console instance and config resolution.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from rich.console import Console

from ..models import MountConfig, load_config

console = Console()


def resolve_config(config_path: Optional[str], **overrides: Any) -> MountConfig:
    """Load the config file (if any) and apply command-line overrides.

    Args:
        config_path: Explicit YAML file, or None for the default location.
        **overrides: Option values; None and False leave the file's value.

    Returns:
        The effective MountConfig.
    """
    path = Path(config_path).expanduser() if config_path else None
    return load_config(path, {k: (v or None) for k, v in overrides.items()})
