"""
Optional host features, resolved once at process start.

The operation table consults this record instead of probing ``os`` on
every call, so one installation behaves correctly on hosts with different
kernel and libc feature sets: a missing feature turns into ``ENOTSUP`` /
``EOPNOTSUPP`` / ``ENOSYS`` for the operations that need it.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional

from .locks import FcntlLockCoordinator, LockCoordinator

logger = logging.getLogger("passthroughfs.capabilities")


@dataclass
class Capabilities:
    """Feature switches for the passthrough operation table.

    Attributes:
        xattr: Extended attribute calls (``os.getxattr`` and friends).
        fallocate: ``posix_fallocate`` for mode-0 preallocation.
        fdatasync: Data-only sync; ``fsync`` is used when absent.
        copy_file_range: In-kernel range copy.
        sparse_seek: ``SEEK_DATA`` / ``SEEK_HOLE`` whence values.
        stat_at: ``fstatat`` relative to a directory descriptor, needed for
            eagerly populated directory listings.
        use_ns: Timestamps are exchanged as integer nanoseconds.
        readdir_plus: Populate full attributes while listing directories.
        lock_coordinator: Byte-range lock service; None disables ``lock``.
    """

    xattr: bool = False
    fallocate: bool = False
    fdatasync: bool = False
    copy_file_range: bool = False
    sparse_seek: bool = False
    stat_at: bool = False
    use_ns: bool = True
    readdir_plus: bool = True
    lock_coordinator: Optional[LockCoordinator] = field(default=None, repr=False)

    @classmethod
    def detect(
        cls,
        use_ns: bool = True,
        readdir_plus: bool = True,
        lock_coordinator: Optional[LockCoordinator] = None,
    ) -> "Capabilities":
        """Probe the running interpreter and host for optional features.

        Args:
            use_ns: Exchange timestamps in nanoseconds.
            readdir_plus: Request eagerly populated directory listings.
            lock_coordinator: Override the byte-range lock service. Defaults
                to :class:`FcntlLockCoordinator`.

        Returns:
            A populated Capabilities record.
        """
        caps = cls(
            xattr=hasattr(os, "getxattr"),
            fallocate=hasattr(os, "posix_fallocate"),
            fdatasync=hasattr(os, "fdatasync"),
            copy_file_range=hasattr(os, "copy_file_range"),
            sparse_seek=hasattr(os, "SEEK_DATA") and hasattr(os, "SEEK_HOLE"),
            stat_at=os.stat in os.supports_dir_fd,
            use_ns=use_ns,
            readdir_plus=readdir_plus,
            lock_coordinator=lock_coordinator or FcntlLockCoordinator(),
        )
        logger.debug("Host capabilities: %s", caps.summary())
        return caps

    def summary(self) -> Dict[str, Any]:
        """Return the boolean switches as a plain dict."""
        data = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "lock_coordinator"}
        data["locking"] = self.lock_coordinator is not None
        return data
