# /dirmirror.py
"""
dirmirror (sidecar, no UI)
- Mirrors a canonical source folder into a destination folder, one way.
- Full reconciliation walk on startup, then incremental updates driven by
  filesystem notifications (watchdog). No polling.
- Staleness is decided by size + modification time, never by content hash.
- Symlinks are recreated with their exact target, never resolved.
- Devices, sockets and named pipes are never copied.
- Ignores paths via gitignore-style rules read from an optional pattern file.
- Writes <dest>/.synced once the initial walk is done (removed on startup).
- Styled console output:
  - COPY green
  - REMOVE / REFUSE orange
  - errors red
  - file paths white
  - folder paths light brown
- Log file is always plain (no color codes).

Usage
  pip install watchdog pathspec colorama
  python dirmirror.py --src /src --dest /dest --ignore /src/.dockerignore
"""

from __future__ import annotations

import argparse
import datetime as dt
import enum
import logging
import os
import queue
import shutil
import signal
import stat
import sys
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

from colorama import just_fix_windows_console
from pathspec import GitIgnoreSpec
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

STATUS_FILE = ".synced"
PROGRESS_EVERY = 100
COPY_CHUNK = 1024 * 1024

ENV_PREFIX = "DIRMIRROR_"


# -------------------------
# Console styling
# -------------------------

RESET = "\x1b[0m"
RED = "\x1b[31m"

# action keyword colours; paths are light brown for folders, white for files
ACTION_COLORS = {
    "COPY": "\x1b[32m",
    "CREATE": "\x1b[32m",
    "REMOVE": "\x1b[38;5;208m",
    "REFUSE": "\x1b[38;5;208m",
    "MKDIR": "\x1b[33m",
    "LINK": "\x1b[33m",
    "CHMOD": "\x1b[33m",
}
DIR_COLOR = "\x1b[33m"
FILE_COLOR = "\x1b[97m"

CONSOLE_HANDLER = "dirmirror.console"
FILE_HANDLER = "dirmirror.file"


def _paint(text: str, color: str) -> str:
    return f"{color}{text}{RESET}" if color else text


def _action_line(action: str, rel: str, detail: str = "", action_color: str = "", path_color: str = "") -> str:
    parts = [_paint(action, action_color), _paint(rel, path_color)]
    if detail:
        parts.append(detail)
    return " | ".join(parts)


class ColorizingFormatter(logging.Formatter):
    """Colours log_action records on a terminal; everything else passes through."""

    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def formatMessage(self, record: logging.LogRecord) -> str:
        if not self.use_color:
            return super().formatMessage(record)
        if record.levelno >= logging.ERROR:
            return _paint(super().formatMessage(record), RED)

        action = getattr(record, "action", None)
        if action is None:
            return super().formatMessage(record)

        plain = record.message
        record.message = _action_line(
            action,
            record.rel,
            record.detail,
            action_color=ACTION_COLORS.get(action, ""),
            path_color=DIR_COLOR if record.is_dir else FILE_COLOR,
        )
        try:
            return super().formatMessage(record)
        finally:
            record.message = plain


def _today_log_name(prefix: str = "dirmirror") -> str:
    return f"{prefix}_{dt.date.today().isoformat()}.log"


def setup_logger(log_dir: Optional[Path] = None, verbose: bool = False) -> logging.Logger:
    level = logging.DEBUG if verbose else logging.INFO

    logger = logging.getLogger("dirmirror")
    logger.setLevel(level)
    logger.propagate = False

    names = {h.get_name() for h in logger.handlers}
    fmt = "%(asctime)s | %(levelname)s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    if CONSOLE_HANDLER not in names:
        just_fix_windows_console()
        ch = logging.StreamHandler(sys.stdout)
        ch.set_name(CONSOLE_HANDLER)
        ch.setFormatter(ColorizingFormatter(use_color=sys.stdout.isatty(), fmt=fmt, datefmt=datefmt))
        logger.addHandler(ch)

    if log_dir is not None and FILE_HANDLER not in names:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / _today_log_name()
        fh = logging.FileHandler(log_path, encoding="utf-8")
        fh.set_name(FILE_HANDLER)
        fh.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
        logger.addHandler(fh)
        logger.info("Logging to: %s", log_path)

    return logger


def log_action(
    logger: logging.Logger,
    action: str,
    rel: str,
    detail: str = "",
    is_dir: bool = False,
    level: int = logging.INFO,
) -> None:
    """Log one change to the destination, keyed by its source-relative path."""
    extra = {"action": action, "rel": rel, "detail": detail, "is_dir": is_dir}
    logger.log(level, "%s", _action_line(action, rel, detail), extra=extra)


# -------------------------
# Errors / outcomes / cancellation
# -------------------------

class MirrorError(Exception):
    """Base class for every failure that ends a run."""


class SyncError(MirrorError):
    """A filesystem operation on a single entry failed."""

    def __init__(self, op: str, path: str, cause: Optional[BaseException] = None):
        self.op = op
        self.path = path
        self.cause = cause
        msg = f"{op} {path}"
        if cause is not None:
            msg = f"{msg}: {cause}"
        super().__init__(msg)


class WatchError(MirrorError):
    """The change-notification backend failed."""


class Cancelled(Exception):
    """Raised out of a walk once the cancel token is set. Not a failure."""


class Outcome(enum.Enum):
    DONE = "done"
    SKIPPED = "skipped"


class CancelToken:
    """
    One-shot cancellation flag shared by the walk and the event loop.
    set() is safe to call from a signal handler; callbacks registered with
    add_callback() run on set() so a blocked wait can be woken up.
    """

    def __init__(self):
        self._event = threading.Event()
        self._callbacks: list[Callable[[], None]] = []

    def is_set(self) -> bool:
        return self._event.is_set()

    def add_callback(self, fn: Callable[[], None]) -> None:
        self._callbacks.append(fn)
        if self._event.is_set():
            fn()

    def set(self) -> None:
        if self._event.is_set():
            return
        self._event.set()
        for fn in list(self._callbacks):
            fn()


@contextmanager
def fs_op(op: str, path: str):
    """Turn an OSError raised in the block into a SyncError(op, path)."""
    try:
        yield
    except OSError as e:
        raise SyncError(op, path, e) from e


# -------------------------
# Ignore rules
# -------------------------

class IgnoreMatcher:
    """gitignore-style exclusion rules evaluated against source-relative paths."""

    def __init__(self, patterns: list[str]):
        self.patterns = list(patterns)
        self.spec = GitIgnoreSpec.from_lines(self.patterns)

    @classmethod
    def from_file(cls, path: Path) -> "IgnoreMatcher":
        lines = Path(path).read_text(encoding="utf-8").splitlines()
        return cls([ln.strip() for ln in lines if ln.strip() and not ln.strip().startswith("#")])

    def matches(self, rel: str, is_dir: Optional[bool] = None) -> bool:
        if not self.patterns:
            return False
        rel_posix = Path(rel).as_posix()
        if rel_posix in ("", "."):
            return False
        if is_dir is not False and self.spec.match_file(rel_posix + "/"):
            return True
        if is_dir is True:
            return False
        return self.spec.match_file(rel_posix)


# -------------------------
# Config / CLI
# -------------------------

@dataclass(frozen=True)
class SyncConfig:
    source_root: Path
    dest_root: Path
    ignore: IgnoreMatcher
    log_dir: Optional[Path] = None

    @property
    def status_path(self) -> Path:
        return self.dest_root / STATUS_FILE


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Mirror a source folder into a destination folder, one way.")
    p.add_argument("--src", type=str, default=None, help="Path with canonical files (default /src).")
    p.add_argument("--dest", type=str, default=None, help="Path to sync data to (default /dest).")
    p.add_argument("--ignore", type=str, default=None, help="File with patterns to ignore.")
    p.add_argument("--log-dir", type=str, default=None, help="Directory for log files.")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    return p.parse_args(argv)


def _setting(args: argparse.Namespace, name: str, default: Optional[str] = None) -> Optional[str]:
    value = getattr(args, name, None)
    if value:
        return value
    return os.environ.get(ENV_PREFIX + name.upper()) or default


def validate_paths(source: Path, dest: Path) -> tuple[Path, Path]:
    """Resolve both roots; the mirror must not feed back into its own source."""
    source = source.expanduser().resolve()
    dest = dest.expanduser().resolve()

    if not source.is_dir():
        raise ValueError(f"source is not a directory: {source}")
    if dest == source or dest.is_relative_to(source):
        raise ValueError(f"destination {dest} lies inside source {source}")
    if source.is_relative_to(dest):
        raise ValueError(f"source {source} lies inside destination {dest}")

    dest.mkdir(parents=True, exist_ok=True)
    return source, dest


def build_config(args: argparse.Namespace) -> SyncConfig:
    source = Path(_setting(args, "src", "/src"))
    dest = Path(_setting(args, "dest", "/dest"))
    ignore_file = _setting(args, "ignore")
    log_dir = _setting(args, "log_dir")

    source, dest = validate_paths(source, dest)
    ignore = IgnoreMatcher.from_file(Path(ignore_file)) if ignore_file else IgnoreMatcher([])

    return SyncConfig(
        source_root=source,
        dest_root=dest,
        ignore=ignore,
        log_dir=Path(log_dir).expanduser() if log_dir else None,
    )


# -------------------------
# Watch registry (watchdog)
# -------------------------

class Op(enum.IntFlag):
    CREATE = 1
    WRITE = 2
    REMOVE = 4
    CHMOD = 8


@dataclass(frozen=True)
class WatchEvent:
    path: str
    op: Op


def translate(event: FileSystemEvent) -> list[WatchEvent]:
    """Map one watchdog event onto create/write/remove/chmod notifications."""
    src = os.fsdecode(event.src_path)
    kind = event.event_type

    if kind == "created":
        # moves in from outside the tree and hard links arrive as a bare create
        if event.is_directory:
            return [WatchEvent(src, Op.CREATE)]
        return [WatchEvent(src, Op.CREATE | Op.WRITE)]
    if kind == "modified":
        # inotify attribute changes surface as "modified" too
        if event.is_directory:
            return [WatchEvent(src, Op.CHMOD)]
        return [WatchEvent(src, Op.WRITE | Op.CHMOD)]
    if kind == "deleted":
        return [WatchEvent(src, Op.REMOVE)]
    if kind == "moved":
        dest = os.fsdecode(event.dest_path)
        arrive = Op.CREATE if event.is_directory else Op.CREATE | Op.WRITE
        return [WatchEvent(src, Op.REMOVE), WatchEvent(dest, arrive)]
    return []


class _Wake:
    def __repr__(self) -> str:
        return "WAKE"


WAKE = _Wake()

StreamItem = Union[WatchEvent, WatchError, _Wake]


class _Forwarder(FileSystemEventHandler):
    def __init__(self, registry: "WatchRegistry"):
        self.registry = registry

    def dispatch(self, event: FileSystemEvent) -> None:
        root = self.registry.root
        if event.is_directory and event.event_type in ("deleted", "moved") and os.fsdecode(event.src_path) == root:
            self.registry.fail(WatchError(f"source root went away: {root}"))
            return
        for item in translate(event):
            self.registry.push(item)


class WatchRegistry:
    """
    Watch Set plus a serialized stream of change events.

    One recursive watchdog schedule covers the source root; membership in the
    Watch Set decides delivery. An event is handed out by next() only when its
    parent directory is registered at the moment it is consumed, so a new
    directory registered by the dispatcher picks up events already queued for
    its children.
    """

    def __init__(self, root: Union[str, Path], observer_factory: Callable[[], Observer] = Observer):
        self.root = os.path.normpath(str(root))
        self._observer_factory = observer_factory
        self._observer: Optional[Observer] = None
        self._watched: set[str] = set()
        self._guard = threading.Lock()
        # SimpleQueue.put is reentrant, so wake() may run inside a signal handler
        self._stream: queue.SimpleQueue = queue.SimpleQueue()

    def start(self) -> None:
        observer = self._observer_factory()
        try:
            observer.schedule(_Forwarder(self), self.root, recursive=True)
            observer.start()
        except OSError as e:
            raise WatchError(f"watching {self.root}: {e}") from e
        self._observer = observer

    def close(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=10)
        self._observer = None

    def add(self, path: Union[str, Path]) -> None:
        with self._guard:
            self._watched.add(os.path.normpath(str(path)))

    def remove(self, path: Union[str, Path]) -> None:
        key = os.path.normpath(str(path))
        prefix = key + os.sep
        with self._guard:
            self._watched = {p for p in self._watched if p != key and not p.startswith(prefix)}

    def is_watched(self, path: Union[str, Path]) -> bool:
        with self._guard:
            return os.path.normpath(str(path)) in self._watched

    def watched(self) -> set[str]:
        with self._guard:
            return set(self._watched)

    def push(self, event: WatchEvent) -> None:
        self._stream.put(event)

    def fail(self, error: WatchError) -> None:
        self._stream.put(error)

    def wake(self) -> None:
        self._stream.put(WAKE)

    def next(self) -> StreamItem:
        """Block until an event, an error or a wake-up is available."""
        while True:
            item = self._stream.get()
            if isinstance(item, WatchEvent) and not self.is_watched(os.path.dirname(item.path)):
                continue
            return item


# -------------------------
# Entry helpers
# -------------------------

class Kind(enum.Enum):
    DIRECTORY = "directory"
    REGULAR = "regular file"
    SYMLINK = "symlink"
    DEVICE = "device"
    PIPE = "named pipe"
    SOCKET = "socket"
    OTHER = "unknown file type"


def entry_kind(mode: int) -> Kind:
    if stat.S_ISDIR(mode):
        return Kind.DIRECTORY
    if stat.S_ISREG(mode):
        return Kind.REGULAR
    if stat.S_ISLNK(mode):
        return Kind.SYMLINK
    if stat.S_ISBLK(mode) or stat.S_ISCHR(mode):
        return Kind.DEVICE
    if stat.S_ISFIFO(mode):
        return Kind.PIPE
    if stat.S_ISSOCK(mode):
        return Kind.SOCKET
    return Kind.OTHER


def is_up_to_date(src: os.stat_result, dst: os.stat_result) -> bool:
    # equal size is required in every case
    return dst.st_size == src.st_size and dst.st_mtime_ns >= src.st_mtime_ns


def lstat_or_none(path: str) -> Optional[os.stat_result]:
    try:
        return os.lstat(path)
    except FileNotFoundError:
        return None


def remove_path(path: str) -> bool:
    """Delete whatever sits at path (a whole tree for directories). False if absent."""
    st = lstat_or_none(path)
    if st is None:
        return False
    if stat.S_ISDIR(st.st_mode):
        shutil.rmtree(path)
    else:
        os.unlink(path)
    return True


# -------------------------
# Per-entry reconciliation
# -------------------------

class Mirror:
    """Per-entry policy shared by the initial walk and the event dispatcher."""

    def __init__(self, cfg: SyncConfig, registry: WatchRegistry, logger: logging.Logger):
        self.cfg = cfg
        self.registry = registry
        self.logger = logger
        self.source_root = str(cfg.source_root)
        self.dest_root = str(cfg.dest_root)

    def source(self, rel: str) -> str:
        return os.path.normpath(os.path.join(self.source_root, rel))

    def dest(self, rel: str) -> str:
        return os.path.normpath(os.path.join(self.dest_root, rel))

    def rel(self, path: str) -> str:
        return os.path.relpath(path, self.source_root)

    def ignored(self, rel: str, is_dir: Optional[bool] = None) -> bool:
        return self.cfg.ignore.matches(rel, is_dir=is_dir)

    def _make_dir(self, to: str, mode: int) -> None:
        with fs_op("making a directory", to):
            os.mkdir(to, mode)
            os.chmod(to, mode)

    def sync_dir(self, rel: str, st: os.stat_result) -> Outcome:
        to = self.dest(rel)
        mode = stat.S_IMODE(st.st_mode)
        self.registry.add(self.source(rel))

        with fs_op("stating", to):
            tst = lstat_or_none(to)

        if tst is None:
            self._make_dir(to, mode)
            log_action(self.logger, "MKDIR", rel, is_dir=True, level=logging.DEBUG)
            return Outcome.DONE

        if not stat.S_ISDIR(tst.st_mode):
            with fs_op("removing errant non-dir", to):
                os.unlink(to)
            self._make_dir(to, mode)
            log_action(self.logger, "MKDIR", rel, detail="replaced non-directory", is_dir=True)
            return Outcome.DONE

        if stat.S_IMODE(tst.st_mode) == mode:
            return Outcome.SKIPPED
        with fs_op("chmod", to):
            os.chmod(to, mode)
        return Outcome.DONE

    def sync_link(self, rel: str) -> Outcome:
        frm, to = self.source(rel), self.dest(rel)

        with fs_op("reading link from", frm):
            target = os.readlink(frm)

        tst = lstat_or_none(to)
        if tst is not None and stat.S_ISLNK(tst.st_mode) and os.readlink(to) == target:
            return Outcome.SKIPPED

        with fs_op("removing", to):
            remove_path(to)
        with fs_op("symlinking", to):
            os.symlink(target, to)
        log_action(self.logger, "LINK", rel, detail=f"-> {target}", level=logging.DEBUG)
        return Outcome.DONE

    def dest_current(self, rel: str, st: os.stat_result) -> bool:
        """
        Check the destination of a regular file against the staleness rule.
        A destination that is not a regular file is removed first.
        """
        to = self.dest(rel)
        with fs_op("stating", to):
            tst = lstat_or_none(to)
        if tst is None:
            return False
        if not stat.S_ISREG(tst.st_mode):
            with fs_op("removing", to):
                remove_path(to)
            return False
        return is_up_to_date(st, tst)

    def copy_file(self, rel: str, announce: bool = False) -> Outcome:
        frm, to = self.source(rel), self.dest(rel)

        with fs_op("stating", frm):
            st = os.lstat(frm)

        kind = entry_kind(st.st_mode)
        if kind is Kind.SYMLINK:
            return self.sync_link(rel)
        if kind is not Kind.REGULAR:
            log_action(self.logger, "REFUSE", rel, detail=f"Cowardly refusing to copy {kind.value}", is_dir=kind is Kind.DIRECTORY)
            return Outcome.SKIPPED

        with fs_op("removing", to):
            tst = lstat_or_none(to)
            if tst is not None and not stat.S_ISREG(tst.st_mode):
                remove_path(to)

        mode = stat.S_IMODE(st.st_mode)
        with fs_op("opening", frm):
            src = open(frm, "rb")
        with src:
            try:
                fd = os.open(to, os.O_CREAT | os.O_TRUNC | os.O_WRONLY, mode)
            except FileNotFoundError:
                self.logger.info("Unable to copy to %s, doesn't exist", rel)
                return Outcome.SKIPPED
            except OSError as e:
                raise SyncError("opening file for writing", to, e) from e

            with open(fd, "wb") as dst:
                with fs_op("chmod", to):
                    os.fchmod(dst.fileno(), mode)

                # lock files and friends
                if st.st_size == 0:
                    self.logger.debug("File %s is 0 bytes, truncating", rel)
                    return Outcome.DONE

                if announce:
                    log_action(self.logger, "COPY", rel, detail=f"{st.st_size} bytes")

                start = time.monotonic()
                with fs_op("copying", to):
                    shutil.copyfileobj(src, dst, COPY_CHUNK)

        if announce:
            self.logger.info(" Copied %s (%.3fs elapsed)", rel, time.monotonic() - start)
        return Outcome.DONE

    def sync_file(self, rel: str, st: os.stat_result) -> Outcome:
        if self.dest_current(rel, st):
            return Outcome.SKIPPED
        return self.copy_file(rel)

    def create_placeholder(self, rel: str, st: os.stat_result) -> Outcome:
        if self.dest_current(rel, st):
            return Outcome.SKIPPED

        to = self.dest(rel)
        mode = stat.S_IMODE(st.st_mode)
        with fs_op("creating", to):
            fd = os.open(to, os.O_CREAT | os.O_TRUNC | os.O_WRONLY, mode)
            try:
                os.fchmod(fd, mode)
            finally:
                os.close(fd)
        log_action(self.logger, "CREATE", rel, detail="empty placeholder")
        return Outcome.DONE

    def remove_entry(self, rel: str) -> Outcome:
        self.registry.remove(self.source(rel))
        to = self.dest(rel)
        with fs_op("removing", to):
            tst = lstat_or_none(to)
            if tst is None:
                return Outcome.SKIPPED
            remove_path(to)
        log_action(self.logger, "REMOVE", rel, is_dir=stat.S_ISDIR(tst.st_mode))
        return Outcome.DONE

    def chmod_entry(self, rel: str) -> Outcome:
        frm, to = self.source(rel), self.dest(rel)

        with fs_op("stating", frm):
            st = lstat_or_none(frm)
        if st is None:
            # parent "modified" noise for a tree being deleted; the remove event follows
            self.logger.debug("Chmod %s skipped, source is gone", rel)
            return Outcome.SKIPPED
        kind = entry_kind(st.st_mode)
        if kind not in (Kind.REGULAR, Kind.DIRECTORY):
            return Outcome.SKIPPED

        tst = lstat_or_none(to)
        if tst is None or stat.S_ISLNK(tst.st_mode):
            self.logger.debug("Chmod %s skipped, no destination entry", rel)
            return Outcome.SKIPPED

        mode = stat.S_IMODE(st.st_mode)
        if stat.S_IMODE(tst.st_mode) == mode:
            return Outcome.SKIPPED

        with fs_op("chmod", to):
            os.chmod(to, mode)
        log_action(self.logger, "CHMOD", rel, detail=stat.filemode(st.st_mode), is_dir=kind is Kind.DIRECTORY)
        return Outcome.DONE


# -------------------------
# Initial reconciliation
# -------------------------

class TreeReconciler:
    def __init__(self, mirror: Mirror, cancel: CancelToken, progress: bool = False):
        self.mirror = mirror
        self.cancel = cancel
        self.logger = mirror.logger
        self.progress = progress
        self.total = 0
        self._dirs_seen = 0

    def run(self, top: Optional[str] = None) -> int:
        """
        Walk top (default: the source root) parent-first and bring the
        destination into line. Returns the bytes copied.

        Raises Cancelled if the token is set mid-walk and SyncError on the
        first filesystem failure.
        """
        top = os.path.normpath(top or self.mirror.source_root)
        self.total = 0
        with fs_op("stating", top):
            st = os.lstat(top)
        self._visit(top, st, is_top=True)
        return self.total

    def fill(self, directory: str) -> int:
        """Reconcile the contents of an already-synced directory. Returns bytes copied."""
        self.total = 0
        for child, cst in self._children(os.path.normpath(directory)):
            self._visit(child, cst)
        return self.total

    def _visit(self, path: str, st: os.stat_result, is_top: bool = False) -> None:
        if self.cancel.is_set():
            raise Cancelled(path)

        m = self.mirror
        rel = m.rel(path)
        kind = entry_kind(st.st_mode)

        if not is_top and m.ignored(rel, is_dir=kind is Kind.DIRECTORY):
            return

        if kind is Kind.DIRECTORY:
            self._progress(path)
            m.sync_dir(rel, st)
            for child, cst in self._children(path):
                self._visit(child, cst)
            return

        if kind is Kind.SYMLINK:
            m.sync_link(rel)
            return

        if kind is not Kind.REGULAR:
            return

        if m.sync_file(rel, st) is Outcome.DONE:
            self.total += st.st_size

    def _children(self, path: str) -> list[tuple[str, os.stat_result]]:
        with fs_op("reading directory", path):
            with os.scandir(path) as it:
                entries = sorted(it, key=lambda e: e.name)
        out = []
        for entry in entries:
            with fs_op("stating", entry.path):
                out.append((entry.path, entry.stat(follow_symlinks=False)))
        return out

    def _progress(self, path: str) -> None:
        if not self.progress:
            return
        if self._dirs_seen % PROGRESS_EVERY == 0:
            self.logger.info("=> %s", path)
        self._dirs_seen += 1


def reconcile(mirror: Mirror, cancel: CancelToken) -> int:
    mirror.logger.info("Performing initial sync")
    total = TreeReconciler(mirror, cancel, progress=True).run()
    mirror.logger.info("Initial sync done: %d bytes", total)
    return total


# -------------------------
# Steady state
# -------------------------

class EventDispatcher:
    def __init__(self, mirror: Mirror, registry: WatchRegistry, cancel: CancelToken):
        self.mirror = mirror
        self.registry = registry
        self.cancel = cancel
        self.logger = mirror.logger

    def run(self) -> None:
        """Process events until cancelled. A watch error is raised as fatal."""
        self.logger.info("Watching for events")
        while True:
            if self.cancel.is_set():
                return
            item = self.registry.next()
            if item is WAKE:
                continue
            if isinstance(item, WatchError):
                raise item
            try:
                self.handle(item)
            except Cancelled:
                return

    def handle(self, event: WatchEvent) -> None:
        m = self.mirror
        rel = m.rel(event.path)
        if rel == os.curdir or rel.startswith(os.pardir + os.sep):
            return
        # a removed path can no longer be stat'ed; match both forms then
        st = lstat_or_none(event.path)
        is_dir = None if st is None else stat.S_ISDIR(st.st_mode)
        if m.ignored(rel, is_dir=is_dir):
            self.logger.debug("Ignoring %s (%s)", rel, event.op)
            return

        if event.op & Op.CREATE:
            self.create_entry(rel)
        if event.op & Op.WRITE:
            m.copy_file(rel, announce=True)
        if event.op & Op.REMOVE:
            m.remove_entry(rel)
        if event.op & Op.CHMOD:
            m.chmod_entry(rel)

    def create_entry(self, rel: str) -> Outcome:
        m = self.mirror
        frm = m.source(rel)
        with fs_op("stating", frm):
            st = os.lstat(frm)

        kind = entry_kind(st.st_mode)
        if kind is Kind.DIRECTORY:
            outcome = m.sync_dir(rel, st)
            if outcome is Outcome.DONE:
                log_action(self.logger, "MKDIR", rel, detail="created directory", is_dir=True)
            # covers children that landed before the directory was registered
            copied = TreeReconciler(m, self.cancel).fill(frm)
            if copied:
                self.logger.info("Filled %s (%d bytes)", rel, copied)
            return outcome
        if kind is Kind.SYMLINK:
            return m.sync_link(rel)
        if kind is not Kind.REGULAR:
            return Outcome.SKIPPED
        return m.create_placeholder(rel, st)


# -------------------------
# Main
# -------------------------

def run(
    cfg: SyncConfig,
    logger: logging.Logger,
    cancel: CancelToken,
    registry: Optional[WatchRegistry] = None,
) -> None:
    """
    Initial sync, status marker, then the event loop. Returns on
    cancellation; raises MirrorError on anything fatal.
    """
    status_path = str(cfg.status_path)
    with fs_op("removing stale status file", status_path):
        if lstat_or_none(status_path) is not None:
            os.unlink(status_path)

    registry = registry or WatchRegistry(cfg.source_root)
    registry.start()
    cancel.add_callback(registry.wake)

    try:
        registry.add(cfg.source_root)
        mirror = Mirror(cfg, registry, logger)

        try:
            reconcile(mirror, cancel)
        except Cancelled:
            logger.info("Initial sync cancelled")
            return

        # Touch the status path to tell others it's ready
        with fs_op("creating status file", status_path):
            Path(status_path).touch()

        EventDispatcher(mirror, registry, cancel).run()
    finally:
        registry.close()


def install_signal_handlers(cancel: CancelToken) -> None:
    def _stop(signum, frame):
        cancel.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    log_dir = _setting(args, "log_dir")
    logger = setup_logger(Path(log_dir).expanduser() if log_dir else None, verbose=args.verbose)

    try:
        cfg = build_config(args)
        logger.info("Source: %s", cfg.source_root)
        logger.info("Dest  : %s", cfg.dest_root)
    except (ValueError, OSError) as e:
        logger.error("Config error: %s", e)
        return 2

    cancel = CancelToken()
    install_signal_handlers(cancel)

    try:
        run(cfg, logger, cancel)
    except MirrorError as e:
        logger.error("%s", e)
        return 1

    logger.info("Stopped.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
