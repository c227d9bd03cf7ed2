"""
Directory cursors — resumable, offset-addressed directory listing.

The bridge lists a directory in pages. Each call supplies the offset to
resume from; each delivered entry carries the offset of the entry after
it. A cursor keeps the open directory stream between calls so that a
listing resumes where the previous page stopped instead of rescanning.

Lifecycle::

    OPENED ──read──▶ ITERATING ──end of stream──▶ EXHAUSTED
       │                 │                           │
       └──────close──────┴───────────close───────────┴──▶ RELEASED

Offsets count the entries consumed from the start of the stream. The
first resume offset handed out is therefore 1, and 0 always means "start
of directory", never "no more data".
"""

from __future__ import annotations

import errno
import logging
import os
import stat
from enum import Enum
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

from .stats import stat_to_dict

logger = logging.getLogger("passthroughfs.dircursor")

# filler(name, attrs, next_offset, plus) -> truthy when the page is full
Filler = Callable[[str, Dict[str, Any], int, bool], Any]

_Entry = Tuple[str, Optional[os.DirEntry]]


class CursorState(str, Enum):
    """Lifecycle position of a directory cursor."""

    OPENED = "opened"
    ITERATING = "iterating"
    EXHAUSTED = "exhausted"
    RELEASED = "released"


def _entry_type(entry: os.DirEntry) -> int:
    """File type bits of a directory entry.

    Links, directories and regular files come from ``d_type`` without a
    stat call; FIFOs, devices and sockets need an ``lstat``.
    """
    try:
        if entry.is_symlink():
            return stat.S_IFLNK
        if entry.is_dir(follow_symlinks=False):
            return stat.S_IFDIR
        if entry.is_file(follow_symlinks=False):
            return stat.S_IFREG
        return stat.S_IFMT(entry.stat(follow_symlinks=False).st_mode)
    except OSError as exc:
        # Vanished since listing; DT_UNKNOWN makes the kernel look it up.
        logger.debug("type of %s unavailable: %s", entry.path, exc)
        return 0


class DirectoryCursor:
    """Iteration state for one open directory.

    Args:
        path: Source path of the directory.
        use_ns: Report timestamps as nanoseconds in populated entries.
    """

    def __init__(self, path: str, use_ns: bool = True) -> None:
        self.path = path
        self.use_ns = use_ns
        self.state = CursorState.OPENED
        self.entry: Optional[_Entry] = None
        self.offset = 0
        self._fd: Optional[int] = None
        self._stream: Optional[Iterator[_Entry]] = None
        self._position = 0

    # ------------------------------------------------------------------
    # Stream primitives
    # ------------------------------------------------------------------

    def open(self) -> "DirectoryCursor":
        """Open the underlying directory stream.

        Raises:
            OSError: If the directory cannot be opened.
        """
        self._fd = os.open(self.path, os.O_RDONLY | os.O_DIRECTORY)
        self._rewind()
        return self

    def _walk(self) -> Iterator[_Entry]:
        yield ".", None
        yield "..", None
        with os.scandir(self._fd) as it:
            for entry in it:
                yield entry.name, entry

    def _rewind(self) -> None:
        if self._stream is not None:
            self._stream.close()
        os.lseek(self._fd, 0, os.SEEK_SET)
        self._stream = self._walk()
        self._position = 0

    def _advance(self) -> Optional[_Entry]:
        item = next(self._stream, None)
        if item is not None:
            self._position += 1
        return item

    def tell(self) -> int:
        """Position of the next entry the stream will yield."""
        return self._position

    def seek(self, offset: int) -> None:
        """Reposition the stream so the next entry read is number ``offset``.

        Seeking backwards rewinds the directory descriptor and replays the
        stream; seeking forwards skips entries.
        """
        if self._stream is None or offset < self._position:
            self._rewind()
        while self._position < offset:
            if self._advance() is None:
                break

    # ------------------------------------------------------------------
    # Entry attributes
    # ------------------------------------------------------------------

    def _attributes(self, item: _Entry, plus: bool) -> Tuple[Dict[str, Any], bool]:
        """Build the attributes for one entry.

        With ``plus``, the full metadata comes from an ``fstatat`` relative
        to the directory descriptor (not following symlinks). If that fails,
        or ``plus`` is not requested, only inode number and type are filled.

        Returns:
            ``(attrs, populated)`` where populated tells whether attrs hold a
            full stat.
        """
        name, entry = item
        if plus:
            try:
                st = os.stat(name, dir_fd=self._fd, follow_symlinks=False)
            except OSError as exc:
                logger.debug("fstatat(%s, %s) failed: %s", self.path, name, exc)
            else:
                return stat_to_dict(st, self.use_ns), True

        if entry is None:
            st = os.stat(name, dir_fd=self._fd, follow_symlinks=False)
            return {"st_ino": st.st_ino, "st_mode": stat.S_IFDIR}, False
        return {"st_ino": entry.inode(), "st_mode": _entry_type(entry)}, False

    # ------------------------------------------------------------------
    # Bridge operations
    # ------------------------------------------------------------------

    def read(self, offset: int, filler: Filler, plus: bool = False) -> int:
        """Deliver entries starting at ``offset`` until the filler is full.

        Args:
            offset: Resume offset supplied by the bridge (0 for the start).
            filler: Entry sink; a truthy return means "stop, page is full".
                The refused entry stays cached and is offered first on the
                next call.
            plus: Request fully populated entry attributes.

        Returns:
            Number of entries delivered in this call. Reaching the end of
            the directory is not an error.
        """
        if self.state is CursorState.RELEASED:
            raise OSError(errno.EBADF, os.strerror(errno.EBADF), self.path)

        if offset != self.offset:
            self.seek(offset)
            self.entry = None
            self.offset = offset

        self.state = CursorState.ITERATING
        delivered = 0
        while True:
            if self.entry is None:
                self.entry = self._advance()
                if self.entry is None:
                    self.state = CursorState.EXHAUSTED
                    break

            attrs, populated = self._attributes(self.entry, plus)
            next_offset = self._position
            if filler(self.entry[0], attrs, next_offset, populated):
                break

            self.entry = None
            self.offset = next_offset
            delivered += 1

        return delivered

    def close(self) -> None:
        """Release the directory stream. Safe to call on a half-open cursor."""
        stream, self._stream = self._stream, None
        fd, self._fd = self._fd, None
        self.entry = None
        self.state = CursorState.RELEASED
        if stream is not None:
            stream.close()
        if fd is not None:
            try:
                os.close(fd)
            except OSError as exc:
                logger.debug("closedir(%s) failed: %s", self.path, exc)

    def __repr__(self) -> str:
        return (
            f"DirectoryCursor(path={self.path!r}, state={self.state.value}, "
            f"offset={self.offset})"
        )
