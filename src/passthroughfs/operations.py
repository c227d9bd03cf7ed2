"""
Passthrough operation table.

Every request the FUSE bridge receives for the mounted tree is re-issued
against the same path (below the source root) or the same open descriptor
of the underlying filesystem. Results come back unchanged; failures surface
as ``OSError`` carrying the host's ``errno``, which the bridge (or
:class:`~passthroughfs.dispatcher.RequestDispatcher`) turns into a negated
error code.

Method signatures follow the fusepy ``Operations`` protocol so the table
can be handed to ``fuse.FUSE`` as is:

.. code-block:: python

    import fuse
    fs = Passthrough(source="/srv/data")
    fuse.FUSE(fs, "/mnt/mirror", foreground=True, use_ino=True)

Operations that fusepy cannot express (paginated directory reads, rename
flags, ``copy_file_range``, ``lseek``, buffer vectors) are part of the same
table for bridges that can.
"""

from __future__ import annotations

import ctypes
import errno
import fcntl
import logging
import os
import stat
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from .buffers import FuseBufVec, copy_to_fd
from .capabilities import Capabilities
from .dircursor import DirectoryCursor, Filler
from .handles import ByHandle, FileHandle, HandleRegistry, Target
from .locks import LockRequest
from .stats import stat_to_dict, statvfs_to_dict

logger = logging.getLogger("passthroughfs.ops")

FUSE_READDIR_PLUS = 1 << 0

_DEFAULT_CREATE_FLAGS = os.O_WRONLY | os.O_CREAT | os.O_TRUNC

# utimensat markers, passed through by fusepy as plain tv_nsec values.
UTIME_NOW = (1 << 30) - 1
UTIME_OMIT = (1 << 30) - 2

_libc = ctypes.CDLL(None, use_errno=True)


def _fail(code: int, path: Optional[str] = None) -> OSError:
    return OSError(code, os.strerror(code), path)


class Passthrough:
    """FUSE operation table mirroring a source directory.

    Args:
        source: Directory every request is passed through to.
        capabilities: Host feature record; probed with
            :meth:`Capabilities.detect` when omitted.
    """

    def __init__(
        self,
        source: Union[str, Path],
        capabilities: Optional[Capabilities] = None,
    ) -> None:
        self.root = os.path.realpath(os.fspath(source))
        self.caps = capabilities or Capabilities.detect()
        self.handles = HandleRegistry()

    @property
    def use_ns(self) -> bool:
        """Read by fusepy to exchange timestamps as integer nanoseconds."""
        return self.caps.use_ns

    def __call__(self, op: str, *args: Any) -> Any:
        if op.startswith("_") or not callable(getattr(self, op, None)):
            raise _fail(errno.EFAULT)
        logger.debug("-> %s %r", op, args)
        ret: Any = "[Unhandled Exception]"
        try:
            ret = getattr(self, op)(*args)
            return ret
        except OSError as exc:
            ret = str(exc)
            raise
        finally:
            logger.debug("<- %s %r", op, ret)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _full_path(self, path: str) -> str:
        """Map a mount-relative path to its source path."""
        relative = path.lstrip("/")
        return os.path.join(self.root, relative) if relative else self.root

    def _target(self, path: Optional[str], fh: Optional[int]):
        return self.handles.target(
            None if path is None else self._full_path(path), fh
        )

    def _fd(self, fh: int) -> int:
        return self.handles.get(fh).fd

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def init(self, path: str) -> None:
        logger.info("Passing %s through (capabilities: %s)", self.root, self.caps.summary())

    def init_with_config(self, conn: Any, config: Any) -> None:
        """Configure libfuse 3 so lower-filesystem changes show up at once.

        The kernel cannot invalidate the inode behind an unlinked name, so
        caching entries or attributes would report stale link counts for
        the remaining hard links.
        """
        if config is not None:
            config.use_ino = 1
            config.entry_timeout = 0
            config.attr_timeout = 0
            config.negative_timeout = 0
        self.init("/")

    def destroy(self, path: str) -> None:
        if self.caps.lock_coordinator is not None:
            self.caps.lock_coordinator.release()
        self.handles.close_all()

    # ------------------------------------------------------------------
    # Attributes
    # ------------------------------------------------------------------

    def getattr(self, path: Optional[str], fh: Optional[int] = None) -> Dict[str, Any]:
        """Return stat attributes, from the handle when one is open.

        Raises:
            OSError: If the target is missing or inaccessible.
        """
        target = self._target(path, fh)
        if isinstance(target, ByHandle):
            st = os.fstat(target.fd)
        else:
            st = os.lstat(target.path)
        return stat_to_dict(st, self.caps.use_ns)

    def access(self, path: str, amode: int) -> None:
        """Check permissions with ``access(2)``, raising its errno unchanged.

        ``os.access`` only answers yes or no, so libc is called directly.
        """
        if _libc.access(os.fsencode(self._full_path(path)), amode) != 0:
            raise _fail(ctypes.get_errno(), path)

    def readlink(self, path: str, size: Optional[int] = None) -> str:
        """Return the link target, truncated to ``size - 1`` bytes when given."""
        target = os.readlink(self._full_path(path))
        if size is not None:
            raw = os.fsencode(target)[: max(size - 1, 0)]
            target = os.fsdecode(raw)
        return target

    def chmod(self, path: Optional[str], mode: int, fh: Optional[int] = None) -> None:
        target = self._target(path, fh)
        if isinstance(target, ByHandle):
            os.fchmod(target.fd, mode)
        else:
            os.chmod(target.path, mode)

    def chown(self, path: Optional[str], uid: int, gid: int, fh: Optional[int] = None) -> None:
        target = self._target(path, fh)
        if isinstance(target, ByHandle):
            os.fchown(target.fd, uid, gid)
        else:
            os.lchown(target.path, uid, gid)

    def truncate(self, path: Optional[str], length: int, fh: Optional[int] = None) -> None:
        target = self._target(path, fh)
        if isinstance(target, ByHandle):
            os.ftruncate(target.fd, length)
        else:
            os.truncate(target.path, length)

    def utimens(
        self,
        path: Optional[str],
        times: Optional[Tuple[Any, Any]] = None,
        fh: Optional[int] = None,
    ) -> None:
        """Set access and modification times without following symlinks.

        Args:
            path: Mount-relative path.
            times: ``(atime, mtime)`` in nanoseconds when the table runs
                with ``use_ns``, else in float seconds. None means "now".
                A value carrying ``UTIME_OMIT`` keeps the current time and
                one carrying ``UTIME_NOW`` sets the current clock.
            fh: Open handle, preferred over the path.
        """
        target = self._target(path, fh)
        kwargs: Dict[str, Any] = {}
        if times is not None:
            atime, mtime = self._resolve_times(target, times)
            if atime is None and mtime is None:
                return
            if self.caps.use_ns:
                kwargs["ns"] = (atime, mtime)
            else:
                kwargs["times"] = (atime, mtime)
        if isinstance(target, ByHandle):
            os.utime(target.fd, **kwargs)
        else:
            os.utime(target.path, follow_symlinks=False, **kwargs)

    def _resolve_times(self, target: Target, times: Tuple[Any, Any]) -> Tuple[Any, Any]:
        """Replace ``UTIME_NOW``/``UTIME_OMIT`` markers with concrete times.

        Returns ``(None, None)`` when both times are omitted.
        """
        use_ns = self.caps.use_ns
        marker_now = UTIME_NOW if use_ns else UTIME_NOW / 10 ** 9
        marker_omit = UTIME_OMIT if use_ns else UTIME_OMIT / 10 ** 9
        if times[0] == marker_omit and times[1] == marker_omit:
            return None, None

        current: Optional[os.stat_result] = None
        resolved: List[Any] = []
        for value, name in zip(times, ("st_atime", "st_mtime")):
            if value == marker_omit:
                if current is None:
                    if isinstance(target, ByHandle):
                        current = os.fstat(target.fd)
                    else:
                        current = os.lstat(target.path)
                value = getattr(current, name + "_ns") if use_ns else getattr(current, name)
            elif value == marker_now:
                value = time.time_ns() if use_ns else time.time()
            resolved.append(int(value) if use_ns else value)
        return resolved[0], resolved[1]

    # ------------------------------------------------------------------
    # Namespace
    # ------------------------------------------------------------------

    def mknod(self, path: str, mode: int, dev: int) -> None:
        full = self._full_path(path)
        if stat.S_ISFIFO(mode):
            os.mkfifo(full, stat.S_IMODE(mode))
        else:
            os.mknod(full, mode, dev)

    def mkdir(self, path: str, mode: int) -> None:
        os.mkdir(self._full_path(path), mode)

    def unlink(self, path: str) -> None:
        os.unlink(self._full_path(path))

    def rmdir(self, path: str) -> None:
        os.rmdir(self._full_path(path))

    def symlink(self, target: str, source: str) -> None:
        """Create the symlink ``target -> source``.

        ``source`` is the link text and is stored verbatim; only the link's
        own location is mapped below the source root.
        """
        os.symlink(source, self._full_path(target))

    def rename(self, old: str, new: str, flags: int = 0) -> None:
        """Rename ``old`` to ``new``.

        Exchange and no-replace semantics are not offered: any nonzero
        ``flags`` fails with ``EINVAL`` before the filesystem is touched.
        """
        if flags:
            raise _fail(errno.EINVAL, old)
        os.rename(self._full_path(old), self._full_path(new))

    def link(self, target: str, source: str) -> None:
        """Create the hard link ``target`` for the existing ``source``."""
        os.link(self._full_path(source), self._full_path(target), follow_symlinks=False)

    def statfs(self, path: str) -> Dict[str, Any]:
        return statvfs_to_dict(os.statvfs(self._full_path(path)))

    # ------------------------------------------------------------------
    # File handles
    # ------------------------------------------------------------------

    def create(self, path: str, mode: int, flags: Optional[int] = None) -> int:
        """Create and open a file, returning a fresh handle token.

        fusepy does not pass the open flags to ``create``; the file is then
        opened write-only and truncated, as ``creat(2)`` does.
        """
        full = self._full_path(path)
        open_flags = _DEFAULT_CREATE_FLAGS if flags is None else flags | os.O_CREAT
        fd = os.open(full, open_flags, mode)
        fh = self.handles.add(FileHandle(fd, full))
        logger.debug("create %s -> fh=%d fd=%d", path, fh, fd)
        return fh

    def open(self, path: str, flags: int) -> int:
        full = self._full_path(path)
        fd = os.open(full, flags)
        fh = self.handles.add(FileHandle(fd, full))
        logger.debug("open %s flags=%#o -> fh=%d fd=%d", path, flags, fh, fd)
        return fh

    def read(self, path: Optional[str], size: int, offset: int, fh: int) -> bytes:
        return os.pread(self._fd(fh), size, offset)

    def write(self, path: Optional[str], data: bytes, offset: int, fh: int) -> int:
        return os.pwrite(self._fd(fh), data, offset)

    def read_buf(self, path: Optional[str], size: int, offset: int, fh: int) -> FuseBufVec:
        """Describe ``size`` bytes at ``offset`` as a descriptor-backed buffer."""
        return FuseBufVec.for_fd(self._fd(fh), size, offset)

    def write_buf(self, path: Optional[str], buf: FuseBufVec, offset: int, fh: int) -> int:
        """Copy a buffer vector into the handle at ``offset``."""
        return copy_to_fd(buf, self._fd(fh), offset, self.caps.copy_file_range)

    def flush(self, path: Optional[str], fh: int) -> None:
        """Push descriptor state to the filesystem without closing the handle.

        Called on every close of a duplicated descriptor, so the handle must
        stay usable; closing a duplicate triggers the filesystem's
        close-time flush (NFS and friends write back on close).
        """
        os.close(os.dup(self._fd(fh)))

    def release(self, path: Optional[str], fh: int) -> int:
        """Close the handle. Always succeeds from the bridge's point of view."""
        try:
            handle = self.handles.pop(fh)
        except OSError:
            logger.warning("release of unknown handle %r for %s", fh, path)
            return 0
        if self.caps.lock_coordinator is not None and not handle.closed:
            self.caps.lock_coordinator.release(handle.fd)
        handle.close()
        logger.debug("release fh=%d", fh)
        return 0

    def fsync(self, path: Optional[str], datasync: int, fh: int) -> None:
        fd = self._fd(fh)
        if datasync and self.caps.fdatasync:
            os.fdatasync(fd)
        else:
            os.fsync(fd)

    def fallocate(self, path: Optional[str], mode: int, offset: int, length: int, fh: int) -> None:
        """Preallocate storage. Only plain allocation (mode 0) is supported."""
        if mode or not self.caps.fallocate:
            raise _fail(errno.EOPNOTSUPP, path)
        os.posix_fallocate(self._fd(fh), offset, length)

    def copy_file_range(
        self,
        path_in: Optional[str],
        fh_in: int,
        offset_in: int,
        path_out: Optional[str],
        fh_out: int,
        offset_out: int,
        length: int,
        flags: int = 0,
    ) -> int:
        """Copy a byte range between two open handles inside the kernel.

        Returns:
            Bytes actually copied, possibly fewer than ``length``.
        """
        if not self.caps.copy_file_range:
            raise _fail(errno.EOPNOTSUPP, path_in)
        if flags:
            raise _fail(errno.EINVAL, path_in)
        return os.copy_file_range(
            self._fd(fh_in), self._fd(fh_out), length, offset_in, offset_out
        )

    def lseek(self, path: Optional[str], offset: int, whence: int, fh: int) -> int:
        """Reposition the handle; ``SEEK_DATA``/``SEEK_HOLE`` need host support."""
        if whence not in (os.SEEK_SET, os.SEEK_CUR, os.SEEK_END) and not self.caps.sparse_seek:
            raise _fail(errno.EINVAL, path)
        return os.lseek(self._fd(fh), offset, whence)

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def lock(
        self,
        path: Optional[str],
        fh: int,
        cmd: int,
        lock: Union[LockRequest, int],
        owner: Optional[int] = None,
    ) -> int:
        """Apply a POSIX record lock through the lock coordinator.

        Args:
            path: Mount-relative path (unused).
            fh: Open handle.
            cmd: ``F_GETLK``, ``F_SETLK`` or ``F_SETLKW``.
            lock: Lock description, or the address of libfuse's
                ``struct flock`` as fusepy hands it over.
            owner: Lock-owner token of the requesting session.
        """
        coordinator = self.caps.lock_coordinator
        if coordinator is None:
            raise _fail(errno.ENOSYS, path)
        fd = self._fd(fh)
        if isinstance(lock, LockRequest):
            coordinator(fd, cmd, lock, owner)
            return 0
        if not lock:
            raise _fail(errno.EINVAL, path)
        request = LockRequest.from_address(lock)
        coordinator(fd, cmd, request, owner)
        if cmd == fcntl.F_GETLK:
            request.to_address(lock)
        return 0

    def flock(self, path: Optional[str], fh: int, op: int) -> None:
        fcntl.flock(self._fd(fh), op)

    # ------------------------------------------------------------------
    # Extended attributes
    # ------------------------------------------------------------------

    def _require_xattr(self, path: Optional[str]) -> str:
        if not self.caps.xattr:
            raise _fail(errno.ENOTSUP, path)
        return self._full_path(path)

    def getxattr(self, path: str, name: str, position: int = 0) -> bytes:
        return os.getxattr(self._require_xattr(path), name, follow_symlinks=False)

    def setxattr(self, path: str, name: str, value: bytes, options: int, position: int = 0) -> None:
        os.setxattr(self._require_xattr(path), name, value, options, follow_symlinks=False)

    def listxattr(self, path: str) -> List[str]:
        return os.listxattr(self._require_xattr(path), follow_symlinks=False)

    def removexattr(self, path: str, name: str) -> None:
        os.removexattr(self._require_xattr(path), name, follow_symlinks=False)

    # ------------------------------------------------------------------
    # Directories
    # ------------------------------------------------------------------

    def opendir(self, path: str) -> int:
        """Open a directory cursor and return its handle token."""
        cursor = DirectoryCursor(self._full_path(path), use_ns=self.caps.use_ns)
        try:
            cursor.open()
        except OSError:
            cursor.close()
            raise
        return self.handles.add(cursor)

    def readdir_paged(
        self,
        path: Optional[str],
        fh: int,
        offset: int,
        filler: Filler,
        flags: int = 0,
    ) -> int:
        """Fill one page of a directory listing, resuming at ``offset``.

        Args:
            path: Mount-relative path (unused; the cursor knows its stream).
            fh: Token from :meth:`opendir`.
            offset: Resume offset from a previous page, or 0.
            filler: ``filler(name, attrs, next_offset, populated)``; returns
                truthy when its buffer is full.
            flags: ``FUSE_READDIR_PLUS`` requests populated attributes.

        Returns:
            Always 0; the end of the directory is not an error.
        """
        cursor = self.handles.get(fh, DirectoryCursor)
        plus = bool(flags & FUSE_READDIR_PLUS) and self.caps.readdir_plus and self.caps.stat_at
        cursor.read(offset, filler, plus=plus)
        return 0

    def readdir(self, path: Optional[str], fh: int) -> List[Tuple[str, Dict[str, Any], int]]:
        """List a whole directory for fusepy.

        fusepy never passes a resume offset, so the listing is produced from
        the start in one go with offset 0 on every entry; libfuse then
        buffers it and pages it to the kernel itself.
        """
        entries: List[Tuple[str, Dict[str, Any], int]] = []

        def collect(name: str, attrs: Dict[str, Any], next_offset: int, populated: bool) -> bool:
            entries.append((name, attrs, 0))
            return False

        self.readdir_paged(path, fh, 0, collect, FUSE_READDIR_PLUS)
        return entries

    def releasedir(self, path: Optional[str], fh: int) -> int:
        cursor = self.handles.pop(fh, DirectoryCursor)
        cursor.close()
        return 0
