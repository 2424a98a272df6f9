"""Tests for steady-state event handling."""

import logging
import os
import threading

import pytest

from dirmirror import (
    EventDispatcher,
    Op,
    Outcome,
    SyncError,
    WatchError,
    WatchEvent,
)

from conftest import mode_of, set_mtime, write_file


def ev(path, op):
    return WatchEvent(str(path), op)


class TestHandle:
    def test_create_file_makes_empty_placeholder(self, dispatcher, tmp_dirs):
        src, dest = tmp_dirs["src"], tmp_dirs["dest"]
        write_file(src / "f.txt", b"hello", 0o600)

        dispatcher.handle(ev(src / "f.txt", Op.CREATE))

        assert (dest / "f.txt").read_bytes() == b""
        assert mode_of(dest / "f.txt") == 0o600

    def test_create_then_write_fills_content(self, dispatcher, tmp_dirs):
        src, dest = tmp_dirs["src"], tmp_dirs["dest"]
        write_file(src / "f.txt", b"hello")

        dispatcher.handle(ev(src / "f.txt", Op.CREATE))
        dispatcher.handle(ev(src / "f.txt", Op.WRITE))

        assert (dest / "f.txt").read_bytes() == b"hello"

    def test_zero_byte_lock_file(self, dispatcher, tmp_dirs):
        src, dest = tmp_dirs["src"], tmp_dirs["dest"]
        write_file(src / "lock", b"")

        dispatcher.handle(ev(src / "lock", Op.CREATE | Op.WRITE))

        assert (dest / "lock").is_file()
        assert (dest / "lock").stat().st_size == 0

    def test_create_skips_up_to_date_dest(self, dispatcher, tmp_dirs):
        src, dest = tmp_dirs["src"], tmp_dirs["dest"]
        write_file(src / "f", b"hello")
        write_file(dest / "f", b"HELLO")
        set_mtime(src / "f", 1_000_000_000_000_000_000)
        set_mtime(dest / "f", 1_000_000_005_000_000_000)

        assert dispatcher.create_entry("f") is Outcome.SKIPPED
        assert (dest / "f").read_bytes() == b"HELLO"

    def test_write_ignores_staleness(self, dispatcher, tmp_dirs):
        src, dest = tmp_dirs["src"], tmp_dirs["dest"]
        write_file(src / "f", b"hello")
        write_file(dest / "f", b"HELLO")
        set_mtime(src / "f", 1_000_000_000_000_000_000)
        set_mtime(dest / "f", 1_000_000_005_000_000_000)

        dispatcher.handle(ev(src / "f", Op.WRITE))

        assert (dest / "f").read_bytes() == b"hello"

    def test_create_directory_registers_and_fills(self, dispatcher, tmp_dirs):
        src, dest = tmp_dirs["src"], tmp_dirs["dest"]
        write_file(src / "new" / "inner.txt", b"early bird")
        os.chmod(src / "new", 0o750)

        dispatcher.handle(ev(src / "new", Op.CREATE))

        assert (dest / "new").is_dir()
        assert mode_of(dest / "new") == 0o750
        assert (dest / "new" / "inner.txt").read_bytes() == b"early bird"
        assert dispatcher.registry.is_watched(src / "new")

    def test_create_directory_over_stale_file(self, dispatcher, tmp_dirs):
        src, dest = tmp_dirs["src"], tmp_dirs["dest"]
        (src / "data").mkdir()
        write_file(dest / "data", b"old")

        dispatcher.handle(ev(src / "data", Op.CREATE))

        assert (dest / "data").is_dir()

    def test_create_symlink(self, dispatcher, tmp_dirs):
        src, dest = tmp_dirs["src"], tmp_dirs["dest"]
        os.symlink("../../somewhere", src / "link")

        dispatcher.handle(ev(src / "link", Op.CREATE))

        assert os.readlink(dest / "link") == "../../somewhere"

    def test_create_for_vanished_source_is_fatal(self, dispatcher, tmp_dirs):
        with pytest.raises(SyncError):
            dispatcher.handle(ev(tmp_dirs["src"] / "gone", Op.CREATE))

    def test_remove_deletes_dest_and_unwatches(self, dispatcher, tmp_dirs):
        src, dest = tmp_dirs["src"], tmp_dirs["dest"]
        write_file(dest / "old" / "x.txt", b"x")
        dispatcher.registry.add(src / "old")
        dispatcher.registry.add(src / "old" / "deeper")

        dispatcher.handle(ev(src / "old", Op.REMOVE))

        assert not (dest / "old").exists()
        assert not dispatcher.registry.is_watched(src / "old")
        assert not dispatcher.registry.is_watched(src / "old" / "deeper")

    def test_remove_tolerates_absence(self, dispatcher, tmp_dirs):
        dispatcher.handle(ev(tmp_dirs["src"] / "never", Op.REMOVE))
        assert dispatcher.mirror.remove_entry("never") is Outcome.SKIPPED

    def test_chmod_applies_source_mode(self, dispatcher, tmp_dirs):
        src, dest = tmp_dirs["src"], tmp_dirs["dest"]
        write_file(src / "f", b"x", 0o600)
        write_file(dest / "f", b"x", 0o644)

        dispatcher.handle(ev(src / "f", Op.CHMOD))

        assert mode_of(dest / "f") == 0o600

    def test_chmod_without_dest_is_benign(self, dispatcher, tmp_dirs):
        write_file(tmp_dirs["src"] / "f", b"x")
        assert dispatcher.mirror.chmod_entry("f") is Outcome.SKIPPED

    def test_ignored_event_is_discarded(self, make_mirror, cancel, tmp_dirs):
        src, dest = tmp_dirs["src"], tmp_dirs["dest"]
        mirror = make_mirror(["*.tmp"])
        mirror.registry.add(src)
        dispatcher = EventDispatcher(mirror, mirror.registry, cancel)
        write_file(src / "scratch.tmp", b"junk")

        dispatcher.handle(ev(src / "scratch.tmp", Op.CREATE | Op.WRITE))

        assert not (dest / "scratch.tmp").exists()

    def test_dir_pattern_does_not_hide_same_named_file(self, make_mirror, cancel, tmp_dirs):
        src, dest = tmp_dirs["src"], tmp_dirs["dest"]
        mirror = make_mirror(["logs/"])
        mirror.registry.add(src)
        dispatcher = EventDispatcher(mirror, mirror.registry, cancel)
        write_file(src / "logs", b"not a directory")

        dispatcher.handle(ev(src / "logs", Op.CREATE | Op.WRITE))

        assert (dest / "logs").read_bytes() == b"not a directory"

    def test_removed_dir_matching_dir_pattern_is_ignored(self, make_mirror, cancel, tmp_dirs):
        src, dest = tmp_dirs["src"], tmp_dirs["dest"]
        mirror = make_mirror(["logs/"])
        mirror.registry.add(src)
        dispatcher = EventDispatcher(mirror, mirror.registry, cancel)
        write_file(dest / "logs" / "keep", b"k")

        dispatcher.handle(ev(src / "logs", Op.REMOVE))

        assert (dest / "logs" / "keep").exists()

    def test_chmod_for_vanished_source_is_benign(self, dispatcher, tmp_dirs):
        src, dest = tmp_dirs["src"], tmp_dirs["dest"]
        (dest / "old").mkdir()

        # a directory deleted with its contents still reports "modified" first
        dispatcher.handle(ev(src / "old", Op.CHMOD))

        assert dispatcher.mirror.chmod_entry("old") is Outcome.SKIPPED
        assert (dest / "old").is_dir()

    def test_directory_create_logs_no_walk_progress(self, dispatcher, tmp_dirs, caplog):
        src = tmp_dirs["src"]
        write_file(src / "fresh" / "sub" / "f", b"data")

        with caplog.at_level(logging.DEBUG, logger="dirmirror_test"):
            dispatcher.handle(ev(src / "fresh", Op.CREATE))

        assert "MKDIR | fresh | created directory" in caplog.text
        assert "=>" not in caplog.text

    def test_recreate_of_synced_directory_logs_no_mkdir(self, dispatcher, tmp_dirs, caplog):
        src, dest = tmp_dirs["src"], tmp_dirs["dest"]
        (src / "d").mkdir()
        os.chmod(src / "d", 0o755)
        (dest / "d").mkdir()
        os.chmod(dest / "d", 0o755)

        with caplog.at_level(logging.INFO, logger="dirmirror_test"):
            assert dispatcher.create_entry("d") is Outcome.SKIPPED

        assert "MKDIR" not in caplog.text
        assert "=>" not in caplog.text


class TestLoop:
    def test_returns_when_already_cancelled(self, dispatcher, cancel):
        cancel.set()
        dispatcher.run()

    def test_watch_error_is_fatal_after_earlier_events(self, dispatcher, tmp_dirs):
        src, dest = tmp_dirs["src"], tmp_dirs["dest"]
        write_file(src / "f", b"data")
        dispatcher.registry.push(ev(src / "f", Op.CREATE | Op.WRITE))
        dispatcher.registry.fail(WatchError("inotify went away"))

        with pytest.raises(WatchError):
            dispatcher.run()
        assert (dest / "f").read_bytes() == b"data"

    def test_events_under_unwatched_dirs_are_dropped(self, dispatcher, tmp_dirs):
        src, dest = tmp_dirs["src"], tmp_dirs["dest"]
        write_file(src / "stray" / "f", b"data")
        dispatcher.registry.push(ev(src / "stray" / "f", Op.CREATE))
        dispatcher.registry.fail(WatchError("stop"))

        with pytest.raises(WatchError):
            dispatcher.run()
        assert not (dest / "stray").exists()

    def test_cancel_wakes_blocked_loop(self, dispatcher, cancel):
        cancel.add_callback(dispatcher.registry.wake)
        worker = threading.Thread(target=dispatcher.run)
        worker.start()

        cancel.set()
        worker.join(timeout=5)

        assert not worker.is_alive()
