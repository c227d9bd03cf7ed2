"""Tests for descriptor-backed buffer vectors."""

from __future__ import annotations

import errno
import os
from pathlib import Path
from unittest.mock import patch

import pytest

from passthroughfs.buffers import (
    FUSE_BUF_FD_SEEK,
    FUSE_BUF_IS_FD,
    FuseBuf,
    FuseBufVec,
    copy_to_fd,
)


@pytest.fixture
def files(tmp_path: Path):
    """Provide an open source descriptor and an open destination descriptor."""
    src = tmp_path / "src"
    src.write_bytes(b"0123456789")
    dst = tmp_path / "dst"
    dst.write_bytes(b"")
    src_fd = os.open(src, os.O_RDONLY)
    dst_fd = os.open(dst, os.O_RDWR)
    yield src_fd, dst_fd, dst
    os.close(src_fd)
    os.close(dst_fd)


class TestFuseBuf:
    """Tests for single buffers."""

    def test_fd_buffer_flags(self) -> None:
        """A descriptor range is flagged as seekable fd memory."""
        buf = FuseBuf.for_fd(7, 100, 5)
        assert buf.flags == FUSE_BUF_IS_FD | FUSE_BUF_FD_SEEK
        assert buf.is_fd

    def test_memory_buffer(self) -> None:
        """A memory buffer reads back its bytes, bounded by size."""
        buf = FuseBuf(size=3, mem=b"abcdef")
        assert not buf.is_fd
        assert buf.read() == b"abc"

    def test_fd_buffer_reads_range(self, files) -> None:
        """A descriptor buffer reads at its position."""
        src_fd, _, _ = files
        assert FuseBuf.for_fd(src_fd, 3, 4).read() == b"456"

    def test_fd_buffer_short_at_eof(self, files) -> None:
        """Reading near EOF returns fewer bytes than requested."""
        src_fd, _, _ = files
        assert FuseBuf.for_fd(src_fd, 10, 8).read() == b"89"


class TestFuseBufVec:
    """Tests for buffer vectors."""

    def test_for_bytes(self) -> None:
        """A vector over bytes has one memory buffer."""
        vec = FuseBufVec.for_bytes(b"hello")
        assert vec.size() == 5
        assert vec.read() == b"hello"

    def test_multiple_buffers_concatenate(self) -> None:
        """Buffers are read in order."""
        vec = FuseBufVec([FuseBuf(size=2, mem=b"ab"), FuseBuf(size=2, mem=b"cd")])
        assert vec.size() == 4
        assert vec.read() == b"abcd"


class TestCopyToFd:
    """Tests for copying vectors into a destination descriptor."""

    def test_memory_to_fd(self, files) -> None:
        """Memory buffers are written at the destination position."""
        _, dst_fd, dst = files
        assert copy_to_fd(FuseBufVec.for_bytes(b"xyz"), dst_fd, 2) == 3
        assert dst.read_bytes() == b"\0\0xyz"

    @pytest.mark.parametrize("use_copy_range", [True, False])
    def test_fd_to_fd(self, files, use_copy_range: bool) -> None:
        """Descriptor ranges are copied with or without copy_file_range."""
        src_fd, dst_fd, dst = files
        copied = copy_to_fd(
            FuseBufVec.for_fd(src_fd, 4, 3), dst_fd, 0,
            use_copy_range and hasattr(os, "copy_file_range"),
        )
        assert copied == 4
        assert dst.read_bytes() == b"3456"

    def test_copy_range_fallback(self, files) -> None:
        """Cross-device failures fall back to a staged copy."""
        src_fd, dst_fd, dst = files
        err = OSError(errno.EXDEV, "cross-device")
        with patch("passthroughfs.buffers.os.copy_file_range", side_effect=err, create=True):
            assert copy_to_fd(FuseBufVec.for_fd(src_fd, 2, 0), dst_fd, 0) == 2
        assert dst.read_bytes() == b"01"

    def test_copy_range_other_error_propagates(self, files) -> None:
        """Errors other than 'unsupported' are not masked."""
        src_fd, dst_fd, _ = files
        err = OSError(errno.EIO, "io")
        with patch("passthroughfs.buffers.os.copy_file_range", side_effect=err, create=True):
            with pytest.raises(OSError) as exc_info:
                copy_to_fd(FuseBufVec.for_fd(src_fd, 2, 0), dst_fd, 0)
        assert exc_info.value.errno == errno.EIO

    def test_stops_at_short_transfer(self, files) -> None:
        """A short buffer ends the copy."""
        src_fd, dst_fd, dst = files
        vec = FuseBufVec([FuseBuf.for_fd(src_fd, 20, 8), FuseBuf(size=3, mem=b"abc")])
        assert copy_to_fd(vec, dst_fd, 0, use_copy_range=False) == 2
        assert dst.read_bytes() == b"89"
