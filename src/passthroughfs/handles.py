"""
Handle registry — opaque tokens bound to open descriptors.

Every open/create (and opendir) hands the bridge an integer token. The
token maps to exactly one owned resource (a ``FileHandle`` or a
``DirectoryCursor``) until the matching release. Tokens come from a
monotonically increasing counter, so a token is never handed out twice
while the resource it names is live.

Operations that can run against either a path or an open handle take a
``Target``: ``ByHandle`` when the bridge supplied a token, ``ByPath``
otherwise. The handle arm always wins.
"""

from __future__ import annotations

import errno
import itertools
import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

logger = logging.getLogger("passthroughfs.handles")


class FileHandle:
    """One open file descriptor, owned by exactly one bridge token.

    The descriptor is closed at most once; after ``close()`` any attempt to
    use the handle raises ``EBADF``.

    Args:
        fd: Open OS file descriptor.
        path: Source path the descriptor was opened from (for logging).
    """

    __slots__ = ("_fd", "path")

    def __init__(self, fd: int, path: str) -> None:
        self._fd: Optional[int] = fd
        self.path = path

    def __copy__(self):
        raise TypeError("FileHandle owns its descriptor and cannot be copied")

    def __deepcopy__(self, memo):
        raise TypeError("FileHandle owns its descriptor and cannot be copied")

    @property
    def fd(self) -> int:
        """The live descriptor.

        Raises:
            OSError: With ``errno.EBADF`` once the handle has been closed.
        """
        if self._fd is None:
            raise OSError(errno.EBADF, os.strerror(errno.EBADF), self.path)
        return self._fd

    @property
    def closed(self) -> bool:
        return self._fd is None

    def close(self) -> None:
        """Close the descriptor. Close errors are logged, never raised."""
        fd, self._fd = self._fd, None
        if fd is None:
            return
        try:
            os.close(fd)
        except OSError as exc:
            logger.debug("close(%d) for %s failed: %s", fd, self.path, exc)

    def __repr__(self) -> str:
        return f"FileHandle(fd={self._fd!r}, path={self.path!r})"


@dataclass(frozen=True)
class ByPath:
    """Address an object by its source path."""

    path: str


@dataclass(frozen=True)
class ByHandle:
    """Address an object through an already open handle."""

    handle: FileHandle

    @property
    def fd(self) -> int:
        return self.handle.fd


Target = Union[ByPath, ByHandle]


class HandleRegistry:
    """Maps bridge tokens to owned resources.

    Registry bookkeeping is guarded by a lock so that a multithreaded bridge
    can open and release concurrently; the resources themselves are not
    serialized.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counter = itertools.count(1)
        self._resources: Dict[int, Any] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._resources)

    def __contains__(self, token: int) -> bool:
        with self._lock:
            return token in self._resources

    def add(self, resource: Any) -> int:
        """Register a resource and return its fresh token."""
        with self._lock:
            token = next(self._counter)
            self._resources[token] = resource
        return token

    def get(self, token: int, kind: type = FileHandle) -> Any:
        """Look up a live resource.

        Args:
            token: Token previously returned by :meth:`add`.
            kind: Expected resource type.

        Raises:
            OSError: With ``errno.EBADF`` for unknown tokens or a token of
                the wrong kind.
        """
        with self._lock:
            resource = self._resources.get(token)
        if resource is None or not isinstance(resource, kind):
            raise OSError(errno.EBADF, os.strerror(errno.EBADF))
        return resource

    def pop(self, token: int, kind: type = FileHandle) -> Any:
        """Unregister a resource, handing ownership back to the caller."""
        with self._lock:
            resource = self._resources.get(token)
            if resource is None or not isinstance(resource, kind):
                raise OSError(errno.EBADF, os.strerror(errno.EBADF))
            del self._resources[token]
        return resource

    def target(self, path: Optional[str], token: Optional[int]) -> Target:
        """Resolve the dual addressing of one call.

        Args:
            path: Source path, possibly None when the bridge only has a handle.
            token: Bridge token, or None.

        Returns:
            ``ByHandle`` whenever a token is given, else ``ByPath``.
        """
        if token is not None:
            return ByHandle(self.get(token))
        if path is None:
            raise OSError(errno.EINVAL, os.strerror(errno.EINVAL))
        return ByPath(path)

    def close_all(self) -> None:
        """Release every live resource (used on unmount)."""
        with self._lock:
            resources = list(self._resources.values())
            self._resources.clear()
        for resource in resources:
            resource.close()
        if resources:
            logger.info("Closed %d handle(s) left open at unmount", len(resources))
