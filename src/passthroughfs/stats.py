"""Conversions from ``os`` result objects to the dicts the bridge consumes."""

from __future__ import annotations

import os
from typing import Any, Dict

_STAT_INT_FIELDS = (
    "st_mode",
    "st_ino",
    "st_dev",
    "st_nlink",
    "st_uid",
    "st_gid",
    "st_size",
    "st_rdev",
    "st_blksize",
    "st_blocks",
)

_STAT_TIME_FIELDS = ("st_atime", "st_mtime", "st_ctime")

_STATVFS_FIELDS = (
    "f_bsize",
    "f_frsize",
    "f_blocks",
    "f_bfree",
    "f_bavail",
    "f_files",
    "f_ffree",
    "f_favail",
    "f_flag",
    "f_namemax",
)


def stat_to_dict(st: os.stat_result, use_ns: bool = True) -> Dict[str, Any]:
    """Flatten a stat result into a ``st_*`` attribute dict.

    Args:
        st: Result of ``os.stat``/``os.lstat``/``os.fstat``.
        use_ns: Report timestamps as integer nanoseconds instead of floats.

    Returns:
        Attribute dictionary suitable for a getattr reply.
    """
    attrs = {key: getattr(st, key) for key in _STAT_INT_FIELDS if hasattr(st, key)}
    for key in _STAT_TIME_FIELDS:
        attrs[key] = getattr(st, key + "_ns") if use_ns else getattr(st, key)
    return attrs


def statvfs_to_dict(stv: os.statvfs_result) -> Dict[str, Any]:
    return {key: getattr(stv, key) for key in _STATVFS_FIELDS}
