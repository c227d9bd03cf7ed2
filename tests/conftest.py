"""Shared test fixtures for passthroughfs."""

from __future__ import annotations

from pathlib import Path

import pytest

from passthroughfs.capabilities import Capabilities
from passthroughfs.dispatcher import RequestDispatcher
from passthroughfs.operations import Passthrough


@pytest.fixture
def source_dir(tmp_path: Path) -> Path:
    """Provide a source tree with a file, a subdirectory and a symlink."""
    src = tmp_path / "fsdata"
    src.mkdir()
    (src / "hello.txt").write_bytes(b"hello, world\n")
    (src / "sub").mkdir()
    (src / "sub" / "nested.txt").write_bytes(b"nested")
    (src / "link").symlink_to("hello.txt")
    return src


@pytest.fixture
def caps() -> Capabilities:
    """Host capabilities as detected on the test machine."""
    return Capabilities.detect()


@pytest.fixture
def fs(source_dir: Path, caps: Capabilities):
    """Provide a Passthrough table over the source tree; handles closed after."""
    table = Passthrough(source=source_dir, capabilities=caps)
    yield table
    table.destroy("/")


@pytest.fixture
def dispatch(fs: Passthrough) -> RequestDispatcher:
    """Provide an errno-style dispatcher over the table."""
    return RequestDispatcher(fs)
