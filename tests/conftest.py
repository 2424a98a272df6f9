"""Shared pytest fixtures for dirmirror tests.

Provides temp source/destination trees and engine objects wired to them,
without starting a real filesystem observer.
"""

import logging
import os
import time
from pathlib import Path

import pytest

from dirmirror import (
    CancelToken,
    EventDispatcher,
    IgnoreMatcher,
    Mirror,
    SyncConfig,
    WatchRegistry,
)


@pytest.fixture
def tmp_dirs(tmp_path):
    """Create temporary source and destination roots."""
    src = tmp_path / "src"
    dest = tmp_path / "dest"
    src.mkdir()
    dest.mkdir()
    return {"src": src, "dest": dest, "root": tmp_path}


@pytest.fixture
def logger():
    return logging.getLogger("dirmirror_test")


@pytest.fixture
def make_mirror(tmp_dirs, logger):
    """Factory for a Mirror over tmp_dirs with optional ignore patterns."""

    def _make(patterns=()):
        cfg = SyncConfig(
            source_root=tmp_dirs["src"],
            dest_root=tmp_dirs["dest"],
            ignore=IgnoreMatcher(list(patterns)),
        )
        return Mirror(cfg, WatchRegistry(tmp_dirs["src"]), logger)

    return _make


@pytest.fixture
def mirror(make_mirror):
    return make_mirror()


@pytest.fixture
def cancel():
    return CancelToken()


@pytest.fixture
def dispatcher(mirror, cancel, tmp_dirs):
    mirror.registry.add(tmp_dirs["src"])
    return EventDispatcher(mirror, mirror.registry, cancel)


def write_file(path: Path, data: bytes, mode: int = 0o644) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    os.chmod(path, mode)
    return path


def set_mtime(path: Path, mtime_ns: int) -> None:
    os.utime(path, ns=(mtime_ns, mtime_ns))


def mode_of(path: Path) -> int:
    return os.lstat(path).st_mode & 0o7777


def wait_for(predicate, timeout: float = 10.0, interval: float = 0.05) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
