"""
Byte-range lock coordination.

The bridge forwards POSIX record locks (``fcntl(F_GETLK/F_SETLK/F_SETLKW)``)
together with an opaque lock-owner token. Arbitrating between owners is
not done in this process: the operation table hands every request to a
*lock coordinator* keyed by (descriptor, owner).

The default coordinator relays to the kernel. Where open-file-description
locks exist (Linux), every owner of a handle locks through its own
description of the file with ``F_OFD_*`` commands, so owners conflict with
one another as separate processes would. Elsewhere the classic
per-process commands are used on the handle itself.
"""

from __future__ import annotations

import ctypes
import errno
import fcntl
import logging
import os
import threading
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Tuple

logger = logging.getLogger("passthroughfs.locks")


class c_flock(ctypes.Structure):
    """``struct flock`` with a 64-bit ``off_t`` as libfuse is built with."""

    _fields_ = [
        ("l_type", ctypes.c_short),
        ("l_whence", ctypes.c_short),
        ("l_start", ctypes.c_int64),
        ("l_len", ctypes.c_int64),
        ("l_pid", ctypes.c_int),
    ]


@dataclass
class LockRequest:
    """A byte-range lock description, mutated in place by ``F_GETLK``."""

    l_type: int = fcntl.F_RDLCK
    l_whence: int = os.SEEK_SET
    l_start: int = 0
    l_len: int = 0
    l_pid: int = 0

    @classmethod
    def from_address(cls, address: int) -> "LockRequest":
        """Read a ``struct flock`` handed over by libfuse as a raw pointer."""
        raw = c_flock.from_address(address)
        return cls(raw.l_type, raw.l_whence, raw.l_start, raw.l_len, raw.l_pid)

    def to_address(self, address: int) -> None:
        """Write this description back into a libfuse ``struct flock``."""
        raw = c_flock.from_address(address)
        raw.l_type = self.l_type
        raw.l_whence = self.l_whence
        raw.l_start = self.l_start
        raw.l_len = self.l_len
        raw.l_pid = self.l_pid

    def pack(self, pid: Optional[int] = None) -> bytes:
        return bytes(
            c_flock(
                self.l_type,
                self.l_whence,
                self.l_start,
                self.l_len,
                self.l_pid if pid is None else pid,
            )
        )

    def unpack(self, data: bytes) -> None:
        raw = c_flock.from_buffer_copy(data)
        self.l_type = raw.l_type
        self.l_whence = raw.l_whence
        self.l_start = raw.l_start
        self.l_len = raw.l_len
        self.l_pid = raw.l_pid


class LockCoordinator(Protocol):
    """Anything able to apply a lock request for (descriptor, owner)."""

    def __call__(self, fd: int, cmd: int, lock: LockRequest, owner: Optional[int]) -> None:
        ...

    def release(self, fd: Optional[int] = None) -> None:
        """Forget owner state for ``fd``, or for every descriptor when None."""
        ...


_OFD_COMMANDS = {
    name: getattr(fcntl, "F_OFD_" + name[2:])
    for name in ("F_GETLK", "F_SETLK", "F_SETLKW")
    if hasattr(fcntl, "F_OFD_" + name[2:])
}

_ACCMODE = os.O_RDONLY | os.O_WRONLY | os.O_RDWR


def _reopen(fd: int) -> Optional[int]:
    """Open a new file description for the file behind ``fd``.

    Goes through ``/proc/self/fd`` so unlinked files can be reopened too.
    Returns None where procfs is not available or the file may no longer
    be opened with the handle's access mode.
    """
    mode = fcntl.fcntl(fd, fcntl.F_GETFL) & _ACCMODE
    try:
        return os.open(f"/proc/self/fd/{fd}", mode | os.O_CLOEXEC)
    except (FileNotFoundError, PermissionError):
        return None


class FcntlLockCoordinator:
    """Relay lock requests to ``fcntl``, one lock domain per owner.

    With open-file-description locks, each (descriptor, owner) pair gets a
    private description of the same file, opened on first use and closed
    on release. Owners sharing one handle therefore conflict with each
    other, and one owner's unlock leaves the others' ranges alone. Without
    OFD locks, the classic per-process commands run on the descriptor
    itself and the owner is only logged.

    Args:
        use_ofd: Prefer open-file-description locks when the host has them.
    """

    def __init__(self, use_ofd: bool = True) -> None:
        self._commands = {
            getattr(fcntl, name): ofd_cmd for name, ofd_cmd in _OFD_COMMANDS.items()
        } if use_ofd else {}
        self._lock = threading.Lock()
        self._owner_fds: Dict[Tuple[int, int], int] = {}

    def _descriptor(self, fd: int, owner: Optional[int]) -> int:
        if owner is None or not self._commands:
            return fd
        key = (fd, owner)
        with self._lock:
            owner_fd = self._owner_fds.get(key)
            if owner_fd is None:
                owner_fd = _reopen(fd)
                if owner_fd is None:
                    logger.debug("cannot reopen fd=%d, locking it for every owner", fd)
                    return fd
                self._owner_fds[key] = owner_fd
        return owner_fd

    def __call__(self, fd: int, cmd: int, lock: LockRequest, owner: Optional[int]) -> None:
        if cmd not in (fcntl.F_GETLK, fcntl.F_SETLK, fcntl.F_SETLKW):
            raise OSError(errno.EINVAL, os.strerror(errno.EINVAL))

        relay_cmd = self._commands.get(cmd, cmd)
        # OFD locks require l_pid == 0 on input.
        pid = 0 if relay_cmd != cmd else None
        lock_fd = self._descriptor(fd, owner)
        logger.debug("lock fd=%d owner=%r via fd=%d cmd=%d %r", fd, owner, lock_fd, relay_cmd, lock)
        result = fcntl.fcntl(lock_fd, relay_cmd, lock.pack(pid))
        if cmd == fcntl.F_GETLK:
            lock.unpack(result)

    def release(self, fd: Optional[int] = None) -> None:
        """Close the owner descriptions of ``fd`` (all of them when None).

        Closing a description drops every lock its owner still held.
        """
        with self._lock:
            keys = [key for key in self._owner_fds if fd is None or key[0] == fd]
            owner_fds = [self._owner_fds.pop(key) for key in keys]
        for owner_fd in owner_fds:
            try:
                os.close(owner_fd)
            except OSError as exc:
                logger.debug("close(%d) of owner description failed: %s", owner_fd, exc)
