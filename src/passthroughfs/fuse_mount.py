"""
FUSE Mount — mount lifecycle for the passthrough filesystem.

Mounts a :class:`~passthroughfs.operations.Passthrough` table with fusepy,
either in the foreground (blocking until unmounted) or as a detached child
process, and keeps a small JSON state file so later invocations can report
and undo the mount.

State layout::

    <state_dir>/
    ├── mount/
    │   ├── mount_state.json  — mounted flag, paths, pid, last update
    │   └── mount.pid         — pid of the background mount process
    └── logs/
        └── passthroughfs.log

Dependencies:
    pip install passthroughfs  # pulls in fusepy; libfuse must be installed
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple

from pydantic import ValidationError

from .capabilities import Capabilities
from .models import MountConfig, MountState
from .operations import Passthrough

logger = logging.getLogger("passthroughfs.mount")

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"

_UNMOUNT_COMMANDS: Tuple[Tuple[str, ...], ...] = (
    ("fusermount", "-u"),
    ("fusermount3", "-u"),
    ("umount",),
)


def _unescape_mount_field(field: str) -> str:
    # /proc/mounts writes space, tab, newline and backslash as octal escapes.
    return re.sub(r"\\([0-7]{3})", lambda m: chr(int(m.group(1), 8)), field)


def _mount_points() -> Iterator[str]:
    """Yield the mount points currently active on this host.

    Reads ``/proc/mounts`` on Linux and parses ``mount`` output elsewhere.
    """
    try:
        table: Optional[str] = Path("/proc/mounts").read_text(encoding="utf-8")
    except OSError:
        table = None
    if table is not None:
        for line in table.splitlines():
            fields = line.split()
            if len(fields) >= 2:
                yield _unescape_mount_field(fields[1])
        return

    try:
        result = subprocess.run(["mount"], capture_output=True, text=True, timeout=5)
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.debug("Cannot list mounts: %s", exc)
        return
    for line in result.stdout.splitlines():
        # "<device> on <mount point> (<options>)" or "... on <mount point> type <fs> ..."
        _, sep, rest = line.partition(" on ")
        if sep:
            yield re.split(r" \(| type ", rest, maxsplit=1)[0]


def _unmount(argv: Tuple[str, ...]) -> bool:
    try:
        result = subprocess.run(list(argv), capture_output=True, text=True, timeout=10)
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.debug("%s unavailable: %s", argv[0], exc)
        return False
    if result.returncode != 0:
        logger.debug("%s failed (rc=%d): %s", " ".join(argv), result.returncode, result.stderr.strip())
    return result.returncode == 0


def build_operations(config: MountConfig) -> Passthrough:
    """Create the operation table for a mount configuration."""
    caps = Capabilities.detect(use_ns=config.use_ns, readdir_plus=config.readdir_plus)
    return Passthrough(source=config.source, capabilities=caps)


def fuse_options(config: MountConfig) -> Dict[str, Any]:
    """Keyword options for ``fuse.FUSE``.

    Inode numbers come from the source filesystem and nothing is cached in
    the kernel, so changes made below the mount show up immediately and
    hard links keep correct link counts.
    """
    return {
        "foreground": True,
        "nothreads": not config.multithreaded,
        "debug": config.debug,
        "allow_other": config.allow_other,
        "use_ino": True,
        "entry_timeout": 0,
        "attr_timeout": 0,
        "negative_timeout": 0,
        "fsname": f"passthroughfs:{config.source}",
    }


class MountDaemon:
    """Lifecycle manager for one passthrough mount.

    Args:
        config: Mount configuration (paths already expanded).
    """

    _PID_FILE = "mount.pid"
    _STATE_FILE = "mount_state.json"
    _LOG_FILE = "passthroughfs.log"

    def __init__(self, config: Optional[MountConfig] = None) -> None:
        self.config = (config or MountConfig()).expanded()
        self._mount_point = self.config.mount_point
        self._source = self.config.source
        self._state_dir = self.config.state_dir / "mount"

    def _state_file(self) -> Path:
        return self._state_dir / self._STATE_FILE

    def _pid_file(self) -> Path:
        return self._state_dir / self._PID_FILE

    def _log_file(self) -> Path:
        return self.config.state_dir / "logs" / self._LOG_FILE

    def _write_state(self, mounted: bool, pid: Optional[int] = None) -> MountState:
        state = MountState(
            mounted=mounted,
            mount_point=str(self._mount_point),
            source=str(self._source),
            pid=pid,
            updated_at=datetime.now(timezone.utc),
        )
        self._state_dir.mkdir(parents=True, exist_ok=True)
        self._state_file().write_text(state.model_dump_json(indent=2), encoding="utf-8")
        return state

    def _read_state(self) -> Optional[MountState]:
        """Load the persisted state; None when missing or unreadable."""
        try:
            raw = self._state_file().read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Cannot read %s: %s", self._state_file(), exc)
            return None
        try:
            return MountState.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("Ignoring corrupt mount state %s: %s", self._state_file(), exc)
            return None

    def _is_mounted(self) -> bool:
        return os.path.realpath(self._mount_point) in set(_mount_points())

    def _setup_logging(self) -> None:
        """Send log records to the state directory's log file."""
        log_file = self._log_file()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root = logging.getLogger()
        root.addHandler(handler)
        root.setLevel(logging.DEBUG if self.config.debug else logging.INFO)

    def _prepare_dirs(self) -> None:
        self._mount_point.mkdir(parents=True, exist_ok=True)
        self._source.mkdir(parents=True, exist_ok=True)
        self._state_dir.mkdir(parents=True, exist_ok=True)

    def start(self, foreground: Optional[bool] = None) -> bool:
        """Mount the passthrough filesystem.

        Args:
            foreground: Block until unmounted. Defaults to the config value.

        Returns:
            True if the mount was initiated successfully.
        """
        if foreground is None:
            foreground = self.config.foreground

        try:
            import fuse as _fuse  # type: ignore[import]
        except (ImportError, OSError) as exc:
            logger.error("fusepy/libfuse is unavailable: %s", exc)
            return False

        if self._is_mounted():
            logger.info("Already mounted at %s", self._mount_point)
            return True

        self._prepare_dirs()

        if foreground:
            self._setup_logging()
            logger.info("Mounting %s at %s (foreground)", self._source, self._mount_point)
            try:
                fs = build_operations(self.config)
                self._write_state(mounted=True, pid=os.getpid())
                _fuse.FUSE(fs, str(self._mount_point), **fuse_options(self.config))
                return True
            except Exception as exc:
                logger.error("Failed to mount filesystem: %s", exc)
                return False
            finally:
                self._write_state(mounted=False)

        logger.info("Mounting %s at %s (background)", self._source, self._mount_point)
        try:
            proc = subprocess.Popen(
                [
                    sys.executable,
                    "-c",
                    (
                        "from passthroughfs.fuse_mount import MountDaemon; "
                        "from passthroughfs.models import MountConfig; "
                        f"MountDaemon(MountConfig.model_validate_json({self.config.model_dump_json()!r}))"
                        ".start(foreground=True)"
                    ),
                ],
                start_new_session=True,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
            self._write_state(mounted=True, pid=proc.pid)
            self._pid_file().write_text(str(proc.pid), encoding="utf-8")
            logger.info("Mount process started with pid %d", proc.pid)
            return True
        except OSError as exc:
            logger.error("Failed to start mount process: %s", exc)
            self._write_state(mounted=False)
            return False

    def stop(self) -> bool:
        """Unmount the filesystem, trying each unmount tool in turn.

        Returns:
            True if the filesystem was unmounted (or was not mounted).
        """
        target = str(self._mount_point)
        if self._is_mounted():
            if not any(_unmount(argv + (target,)) for argv in _UNMOUNT_COMMANDS):
                logger.error("Could not unmount %s; try: fusermount -u %s", target, target)
                return False
            logger.info("Unmounted %s", target)
        else:
            logger.info("Not mounted at %s", target)
        self._write_state(mounted=False)
        return True

    def status(self) -> Dict[str, Any]:
        """Return the current mount status.

        The mounted flag comes from the live mount table; pid and
        ``updated_at`` from the last persisted state.
        """
        state = self._read_state() or MountState()
        live = state.model_copy(
            update={
                "mounted": self._is_mounted(),
                "mount_point": str(self._mount_point),
                "source": str(self._source),
            }
        )
        return live.model_dump(mode="json")
