"""
Descriptor-backed buffer vectors for zero-copy read and write.

``read_buf`` does not read anything: it answers with a buffer that
*describes* the requested range (descriptor, position, size) and lets the
bridge move the bytes with its own copy machinery. ``write_buf`` receives
such a vector from the bridge and copies it into the destination
descriptor, using ``copy_file_range`` for descriptor-to-descriptor copies
when the host supports it.
"""

from __future__ import annotations

import errno
import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

logger = logging.getLogger("passthroughfs.buffers")

FUSE_BUF_IS_FD = 1 << 1
FUSE_BUF_FD_SEEK = 1 << 2
FUSE_BUF_FD_RETRY = 1 << 3


@dataclass
class FuseBuf:
    """One buffer: either a bytes block or a descriptor range."""

    size: int
    flags: int = 0
    mem: Optional[bytes] = None
    fd: int = -1
    pos: int = 0

    @classmethod
    def for_fd(cls, fd: int, size: int, pos: int) -> "FuseBuf":
        return cls(size=size, flags=FUSE_BUF_IS_FD | FUSE_BUF_FD_SEEK, fd=fd, pos=pos)

    @property
    def is_fd(self) -> bool:
        return bool(self.flags & FUSE_BUF_IS_FD)

    def read(self) -> bytes:
        """Materialize the buffer contents (may be short at end of file)."""
        if not self.is_fd:
            return (self.mem or b"")[: self.size]
        if self.flags & FUSE_BUF_FD_SEEK:
            return os.pread(self.fd, self.size, self.pos)
        return os.read(self.fd, self.size)


@dataclass
class FuseBufVec:
    """An ordered list of buffers forming one logical transfer."""

    buf: List[FuseBuf] = field(default_factory=list)

    @classmethod
    def for_fd(cls, fd: int, size: int, pos: int) -> "FuseBufVec":
        return cls([FuseBuf.for_fd(fd, size, pos)])

    @classmethod
    def for_bytes(cls, data: bytes) -> "FuseBufVec":
        return cls([FuseBuf(size=len(data), mem=bytes(data))])

    def size(self) -> int:
        return sum(b.size for b in self.buf)

    def read(self) -> bytes:
        return b"".join(b.read() for b in self.buf)


def _copy_fd_to_fd(src: FuseBuf, dst_fd: int, dst_pos: int, use_copy_range: bool) -> int:
    if use_copy_range and src.flags & FUSE_BUF_FD_SEEK:
        try:
            return os.copy_file_range(src.fd, dst_fd, src.size, src.pos, dst_pos)
        except OSError as exc:
            # Cross-device and unsupported filesystems fall back to a
            # staged copy; every other error is the caller's.
            if exc.errno not in (errno.EXDEV, errno.EINVAL, errno.ENOSYS, errno.EOPNOTSUPP):
                raise
            logger.debug("copy_file_range unavailable (%s), staging copy", exc)
    return os.pwrite(dst_fd, src.read(), dst_pos)


def copy_to_fd(src: FuseBufVec, dst_fd: int, dst_pos: int, use_copy_range: bool = True) -> int:
    """Copy a buffer vector into ``dst_fd`` starting at ``dst_pos``.

    Stops at the first short transfer, like ``fuse_buf_copy``.

    Returns:
        Total bytes copied.
    """
    copied = 0
    for buf in src.buf:
        if buf.is_fd:
            n = _copy_fd_to_fd(buf, dst_fd, dst_pos + copied, use_copy_range)
        else:
            n = os.pwrite(dst_fd, (buf.mem or b"")[: buf.size], dst_pos + copied)
        copied += n
        if n < buf.size:
            break
    return copied
