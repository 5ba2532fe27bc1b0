# /mirror_sync.py
"""
Mirror Sync (no UI)
- One-way mirror of a source folder onto a replica folder, repeated on a timer.
- Every pass rescans both trees from scratch; nothing is remembered between passes.
- Files are compared by size first, then by MD5 checksum (authoritative).
- Replica files and folders with no counterpart in the source are deleted.
  Folders that exist in the source are kept even when empty.
- One pass at a time per source/replica pair; a tick that arrives while a pass
  is still running is skipped.
- Per-entry failures (copy, checksum, delete, mkdir) are logged and retried on
  the next pass; they never abort the pass.
- Styled console output:
  - Created / Updated green
  - Deleted orange
  - directory creation light brown
  - errors red
- Log file is always plain UTF-8 with UTC timestamps, appended, never truncated.

Usage
  pip install pathspec colorama
  python mirror_sync.py SOURCE REPLICA LOG_FILE INTERVAL_SECONDS
  python mirror_sync.py SOURCE REPLICA LOG_FILE INTERVAL_SECONDS --once
  python mirror_sync.py SOURCE REPLICA LOG_FILE INTERVAL_SECONDS --cleanup
  python mirror_sync.py "/src" "/dst" "logs/sync.log" 30 --exclude "*.tmp" --workers 4
"""

from __future__ import annotations

import argparse
import datetime as dt
import errno
import hashlib
import logging
import os
import shutil
import stat
import sys
import threading
import time
import weakref
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Iterable, Iterator, Optional, Union

from colorama import just_fix_windows_console
from pathspec import GitIgnoreSpec

LOGGER_NAME = "mirror_sync"

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

HASH_CHUNK_SIZE = 1024 * 1024


# -------------------------
# Errors
# -------------------------

class SyncError(Exception):
    """Base class for everything this module raises."""


class FatalStartupError(SyncError):
    """Bad arguments or roots; raised before any pass runs."""


class PassInProgressError(SyncError):
    """A pass for the same source/replica pair is already running."""


class PathError(SyncError):
    """
    A failure tied to one path. Carries the path and the underlying OSError
    so the log line can name both.
    """

    verb = "processing"

    def __init__(self, path: Union[str, Path], error: OSError, verb: Optional[str] = None):
        super().__init__(f"{path}: {error}")
        self.path = path
        self.error = error
        if verb:
            self.verb = verb

    def describe(self) -> str:
        return f"Error {self.verb} {self.path}: {self.error}"


class ScanError(PathError):
    verb = "scanning"


class ChecksumError(PathError):
    verb = "computing checksum for"


class CopyError(PathError):
    verb = "copying"


class DeleteError(PathError):
    verb = "deleting"


class DirectoryCreateError(PathError):
    verb = "creating directory"


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    ORANGE = "\x1b[38;5;208m"
    WHITE = "\x1b[97m"
    LIGHT_BROWN = "\x1b[33m"


ACTION_COLORS = {
    "Created": Ansi.GREEN,
    "Updated": Ansi.GREEN,
    "Deleted": Ansi.ORANGE,
    "Deleted empty directory": Ansi.ORANGE,
    "Deleted directory": Ansi.ORANGE,
    "Created missing directory": Ansi.LIGHT_BROWN,
    "Skipped": Ansi.ORANGE,
}


def _supports_color(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except Exception:
        return False


class UtcFormatter(logging.Formatter):
    converter = time.gmtime


class ColorizingFormatter(UtcFormatter):
    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.use_color:
            return base

        action = getattr(record, "action", None)
        is_dir = getattr(record, "is_dir", None)
        path_text = getattr(record, "path_text", None)

        if record.levelno >= logging.ERROR:
            return f"{Ansi.RED}{base}{Ansi.RESET}"

        if action:
            action_color = ACTION_COLORS.get(action, "")
            label = f"{action}:"
            if action_color and label in base:
                base = base.replace(label, f"{action_color}{label}{Ansi.RESET}", 1)

        if path_text and path_text in base:
            pcolor = Ansi.LIGHT_BROWN if is_dir else Ansi.WHITE
            base = base.replace(path_text, f"{pcolor}{path_text}{Ansi.RESET}")

        return base


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def setup_logger(log_path: Optional[Path] = None) -> logging.Logger:
    """
    Configure the process logger: coloured console output plus, when a path
    is given, a plain append-only log file. The file's directory is created
    if needed; a brand new file starts with a "Log started at" line.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.INFO)
    logger.propagate = False

    if logger.handlers:
        return logger

    just_fix_windows_console()

    fmt = "%(asctime)s - %(message)s"

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(logging.INFO)
    ch.setFormatter(ColorizingFormatter(use_color=_supports_color(sys.stdout), fmt=fmt, datefmt=TIMESTAMP_FORMAT))
    logger.addHandler(ch)

    if log_path is None:
        return logger

    log_path.parent.mkdir(parents=True, exist_ok=True)
    is_new = not log_path.exists()

    fh = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    fh.setFormatter(UtcFormatter(fmt=fmt, datefmt=TIMESTAMP_FORMAT))
    fh.setLevel(logging.INFO)
    logger.addHandler(fh)

    if is_new:
        logger.info("Log started at %s", _utcnow().strftime(TIMESTAMP_FORMAT))
    logger.info("Logging to: %s", log_path)
    return logger


def log_action(
    logger: logging.Logger,
    action: Optional[str],
    message: str,
    path: Optional[Union[str, Path]] = None,
    is_dir: Optional[bool] = None,
    level: int = logging.INFO,
) -> None:
    extra = {"action": action}
    if path is not None:
        extra["path_text"] = str(path)
        if is_dir is None:
            is_dir = isinstance(path, Path) and path.is_dir()
        extra["is_dir"] = bool(is_dir)
    logger.log(level, message, extra=extra)


class SyncLog:
    """
    Log sink handed to the pass coordinator and everything it calls.

    Lines go to the wrapped logger and to every list registered through
    capture(), in the same order, so a pass report holds exactly what the
    pass wrote.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self._guard = threading.Lock()
        self._captures: list[list[str]] = []

    def log(
        self,
        message: str,
        action: Optional[str] = None,
        path: Optional[Union[str, Path]] = None,
        is_dir: Optional[bool] = None,
        level: int = logging.INFO,
    ) -> None:
        with self._guard:
            for lines in self._captures:
                lines.append(message)
            log_action(self.logger, action, message, path=path, is_dir=is_dir, level=level)

    def failure(self, exc: PathError, is_dir: bool = False) -> None:
        self.log(exc.describe(), action="Error", path=exc.path, is_dir=is_dir, level=logging.ERROR)

    @contextmanager
    def capture(self, lines: list[str]) -> Iterator[list[str]]:
        with self._guard:
            self._captures.append(lines)
        try:
            yield lines
        finally:
            with self._guard:
                self._captures.remove(lines)


# -------------------------
# Records / pass state
# -------------------------

@dataclass(eq=False)
class FileRecord:
    """A regular file found by a scan. Two records are the same file iff their relative paths match."""

    rel_path: str
    abs_path: Path
    size: int
    modified: dt.datetime
    _checksum: Optional[str] = field(default=None, repr=False)

    def __eq__(self, other) -> bool:
        if not isinstance(other, FileRecord):
            return NotImplemented
        return self.rel_path == other.rel_path

    def __hash__(self) -> int:
        return hash(self.rel_path)

    @classmethod
    def from_stat(cls, rel_path: str, abs_path: Path, st: os.stat_result) -> "FileRecord":
        return cls(
            rel_path=rel_path,
            abs_path=abs_path,
            size=st.st_size,
            modified=dt.datetime.fromtimestamp(st.st_mtime, tz=dt.timezone.utc),
        )

    def checksum(self) -> str:
        """MD5 of the full content, computed on first use and cached."""
        if self._checksum is None:
            try:
                self._checksum = md5_file(self.abs_path)
            except OSError as e:
                raise ChecksumError(self.rel_path, e) from e
        return self._checksum


@dataclass(frozen=True)
class DirectoryRecord:
    rel_path: str
    abs_path: Path = field(compare=False)

    @property
    def depth(self) -> int:
        return self.rel_path.count("/") + 1


@dataclass
class ScanResult:
    root: Path
    files: dict[str, FileRecord] = field(default_factory=dict)
    dirs: set[DirectoryRecord] = field(default_factory=set)
    dangling: dict[str, Path] = field(default_factory=dict)

    @property
    def dir_paths(self) -> set[str]:
        return {d.rel_path for d in self.dirs}


class FileOutcome(Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass
class SyncState:
    """
    Replica paths claimed during one pass.

    touched: files synchronized successfully.
    deferred: files whose source exists but whose sync failed; left for the next pass.
    preserved: directories that exist in the source.
    """

    touched: set[Path] = field(default_factory=set)
    deferred: set[Path] = field(default_factory=set)
    preserved: set[Path] = field(default_factory=set)
    _guard: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def touch(self, path: Path) -> None:
        with self._guard:
            self.touched.add(path)

    def defer(self, path: Path) -> None:
        with self._guard:
            self.deferred.add(path)

    def preserve(self, path: Path) -> None:
        with self._guard:
            self.preserved.add(path)

    def claims(self, path: Path) -> bool:
        with self._guard:
            return path in self.touched or path in self.deferred


@dataclass
class SyncReport:
    source: Path
    replica: Path
    started_at: dt.datetime = field(default_factory=_utcnow)
    finished_at: Optional[dt.datetime] = None
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted_files: int = 0
    deleted_dirs: int = 0
    errors: int = 0
    aborted: bool = False
    lines: list[str] = field(default_factory=list)
    _guard: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def deletions(self) -> int:
        return self.deleted_files + self.deleted_dirs

    @property
    def changes(self) -> int:
        return self.created + self.updated + self.deletions

    @property
    def ok(self) -> bool:
        return not self.aborted and self.errors == 0

    def record(self, outcome: FileOutcome) -> None:
        with self._guard:
            if outcome is FileOutcome.CREATED:
                self.created += 1
            elif outcome is FileOutcome.UPDATED:
                self.updated += 1
            else:
                self.unchanged += 1

    def record_deletion(self, is_dir: bool) -> None:
        with self._guard:
            if is_dir:
                self.deleted_dirs += 1
            else:
                self.deleted_files += 1

    def record_error(self) -> None:
        with self._guard:
            self.errors += 1

    def summary(self) -> str:
        head = "Pass aborted" if self.aborted else "Pass complete"
        return (
            f"{head}: {self.created} created, {self.updated} updated, "
            f"{self.deleted_files} deleted, {self.deleted_dirs} directories deleted, "
            f"{self.errors} errors"
        )


def log_failure(sync_log: SyncLog, report: SyncReport, exc: PathError, is_dir: bool = False) -> None:
    sync_log.failure(exc, is_dir=is_dir)
    report.record_error()


# -------------------------
# Ignore + filesystem helpers
# -------------------------

class IgnoreMatcher:
    """gitignore-style exclude rules, matched against source-relative posix paths."""

    def __init__(self, patterns: Iterable[str]):
        self.patterns = [p for p in patterns if p.strip()]
        self.spec = GitIgnoreSpec.from_lines(self.patterns)

    def __bool__(self) -> bool:
        return bool(self.patterns)

    def is_ignored(self, rel_posix: str, is_dir: bool = False) -> bool:
        if is_dir and not rel_posix.endswith("/"):
            rel_posix += "/"
        return self.spec.match_file(rel_posix)


def replica_path_for(replica_root: Path, rel_path: str) -> Path:
    return replica_root.joinpath(*PurePosixPath(rel_path).parts)


def md5_file(path: Path, chunk_size: int = HASH_CHUNK_SIZE) -> str:
    h = hashlib.md5()
    with path.open("rb") as f:
        while True:
            b = f.read(chunk_size)
            if not b:
                break
            h.update(b)
    return h.hexdigest()


def ensure_directory(path: Path, sync_log: SyncLog) -> list[Path]:
    """Create `path` and any missing ancestors top-down, logging each one created."""
    missing = []
    current = path
    while not current.exists():
        missing.append(current)
        if current.parent == current:
            break
        current = current.parent

    if current.exists() and not current.is_dir():
        # a file sits where a directory belongs; the reaper clears it and the next pass retries
        raise DirectoryCreateError(current, NotADirectoryError(errno.ENOTDIR, os.strerror(errno.ENOTDIR), str(current)))

    created = []
    for directory in reversed(missing):
        try:
            directory.mkdir()
        except FileExistsError:
            continue
        except OSError as e:
            raise DirectoryCreateError(directory, e) from e
        sync_log.log(f"Created missing directory: {directory}", action="Created missing directory", path=directory, is_dir=True)
        created.append(directory)
    return created


# -------------------------
# Tree scanner
# -------------------------

def scan_tree(root: Path, ignore: Optional[IgnoreMatcher] = None) -> ScanResult:
    """
    Enumerate every regular file and directory under `root`.

    Directory symlinks are listed but not descended into. Broken symlinks go
    to `dangling` so the reaper can remove them; files that vanish between
    listing and stat are skipped. Any directory that cannot be listed
    raises ScanError, since a partial listing would make present entries look
    orphaned.
    """
    root = Path(root)
    if not root.exists():
        raise ScanError(root, FileNotFoundError(errno.ENOENT, os.strerror(errno.ENOENT), str(root)))
    if not root.is_dir():
        raise ScanError(root, NotADirectoryError(errno.ENOTDIR, os.strerror(errno.ENOTDIR), str(root)))

    result = ScanResult(root=root)

    def _fail(err: OSError) -> None:
        raise ScanError(Path(err.filename) if err.filename else root, err) from err

    for dirpath, dirnames, filenames in os.walk(root, onerror=_fail):
        base = Path(dirpath)
        rel_base = PurePosixPath(base.relative_to(root).as_posix())

        kept = []
        for name in sorted(dirnames):
            rel = (rel_base / name).as_posix()
            if ignore and ignore.is_ignored(rel, is_dir=True):
                continue
            kept.append(name)
            result.dirs.add(DirectoryRecord(rel_path=rel, abs_path=base / name))
        dirnames[:] = kept

        for name in filenames:
            rel = (rel_base / name).as_posix()
            if ignore and ignore.is_ignored(rel):
                continue
            path = base / name
            try:
                st = path.stat()
            except FileNotFoundError:
                if path.is_symlink():
                    result.dangling[rel] = path
                continue
            except OSError as e:
                raise ScanError(path, e) from e
            if not stat.S_ISREG(st.st_mode):
                continue
            result.files[rel] = FileRecord.from_stat(rel, path, st)

    return result


# -------------------------
# Change detector
# -------------------------

def needs_copy(source: FileRecord, replica: Optional[FileRecord]) -> bool:
    """
    True when the replica copy is missing or differs from the source.

    A size mismatch answers without reading either file. Otherwise the
    checksums decide; modification times are never trusted to mean "equal".
    Raises ChecksumError when either file cannot be read.
    """
    if replica is None:
        return True
    if source.size != replica.size:
        return True
    return source.checksum() != replica.checksum()


# -------------------------
# Sync executor
# -------------------------

def sync_file(
    source: FileRecord,
    existing: Optional[FileRecord],
    replica_root: Path,
    sync_log: SyncLog,
) -> FileOutcome:
    """
    Bring one replica file in line with its source. Raises ChecksumError,
    CopyError or DirectoryCreateError; the caller decides what a failure means
    for the pass.
    """
    target = replica_path_for(replica_root, source.rel_path)
    sync_log.log(f"Checking: {source.rel_path}", action="Checking", path=source.rel_path, is_dir=False)

    if existing is None:
        if target.is_dir():
            # the orphan directory is reaped this pass; the file lands on the next one
            raise CopyError(source.rel_path, IsADirectoryError(errno.EISDIR, os.strerror(errno.EISDIR), str(target)))
        ensure_directory(target.parent, sync_log)
        try:
            # copy2 would write through a broken link to wherever it points
            if target.is_symlink():
                target.unlink()
            shutil.copy2(source.abs_path, target)
        except OSError as e:
            raise CopyError(source.rel_path, e) from e
        sync_log.log(f"Created: {source.rel_path}", action="Created", path=source.rel_path, is_dir=False)
        return FileOutcome.CREATED

    if not needs_copy(source, existing):
        return FileOutcome.UNCHANGED

    # in-place overwrite; a torn write is repaired by the next pass's checksum
    try:
        shutil.copy2(source.abs_path, target)
    except OSError as e:
        raise CopyError(source.rel_path, e, verb="updating") from e
    sync_log.log(f"Updated: {source.rel_path}", action="Updated", path=source.rel_path, is_dir=False)
    return FileOutcome.UPDATED


# -------------------------
# Orphan reaper
# -------------------------

def reap_orphans(replica_root: Path, state: SyncState, sync_log: SyncLog, report: SyncReport) -> None:
    """
    Delete replica entries the pass did not claim: unclaimed files first, then
    every directory missing from the source, deepest first. An orphan directory
    that still holds entries is removed with everything under it.
    """
    scan = scan_tree(replica_root)

    unclaimed = [(rel, record.abs_path) for rel, record in scan.files.items() if not state.claims(record.abs_path)]
    unclaimed.extend(scan.dangling.items())

    for rel, path in sorted(unclaimed):
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError as e:
            log_failure(sync_log, report, DeleteError(rel, e))
            continue
        sync_log.log(f"Deleted: {rel}", action="Deleted", path=rel, is_dir=False)
        report.record_deletion(is_dir=False)

    orphans = [d for d in scan.dirs if d.abs_path not in state.preserved]
    orphans.sort(key=lambda d: (d.depth, len(d.rel_path), d.rel_path), reverse=True)

    for record in orphans:
        path = record.abs_path
        try:
            if path.is_symlink():
                path.unlink()
                action = "Deleted"
            elif any(path.iterdir()):
                shutil.rmtree(path)
                action = "Deleted directory"
            else:
                path.rmdir()
                action = "Deleted empty directory"
        except FileNotFoundError:
            continue
        except OSError as e:
            log_failure(sync_log, report, DeleteError(path, e), is_dir=True)
            continue
        sync_log.log(f"{action}: {path}", action=action, path=path, is_dir=True)
        report.record_deletion(is_dir=True)


# -------------------------
# Pass coordinator
# -------------------------

class PassState(Enum):
    IDLE = "idle"
    RUNNING = "running"


class PassCoordinator:
    """
    Runs full synchronization passes for one source/replica pair.

    Passes are single-flight per pair, across every coordinator in the
    process: run_pass() returns None instead of waiting when another pass for
    the same pair is running.
    """

    # entries live as long as some coordinator for the pair holds the lock
    _locks: weakref.WeakValueDictionary[tuple[Path, Path], threading.Lock] = weakref.WeakValueDictionary()
    _locks_guard = threading.Lock()

    def __init__(
        self,
        source: Path,
        replica: Path,
        sync_log: Optional[SyncLog] = None,
        ignore: Optional[IgnoreMatcher] = None,
        workers: int = 1,
    ):
        self.source = Path(source)
        self.replica = Path(replica)
        self.sync_log = sync_log or SyncLog()
        self.ignore = ignore
        self.workers = max(1, int(workers))
        self.state = PassState.IDLE
        self._flight = self._lock_for(self.source, self.replica)

    @classmethod
    def _lock_for(cls, source: Path, replica: Path) -> threading.Lock:
        key = (source.resolve(), replica.resolve())
        with cls._locks_guard:
            lk = cls._locks.get(key)
            if lk is None:
                lk = threading.Lock()
                cls._locks[key] = lk
            return lk

    @property
    def running(self) -> bool:
        return self._flight.locked()

    def run_pass(self) -> Optional[SyncReport]:
        if not self._flight.acquire(blocking=False):
            self.sync_log.log(
                f"Skipped: a pass is already running for {self.source} -> {self.replica}",
                action="Skipped",
                level=logging.WARNING,
            )
            return None

        self.state = PassState.RUNNING
        report = SyncReport(source=self.source, replica=self.replica)
        try:
            with self.sync_log.capture(report.lines):
                self._run(report)
                self.sync_log.log(report.summary(), level=logging.WARNING if not report.ok else logging.INFO)
        finally:
            report.finished_at = _utcnow()
            self.state = PassState.IDLE
            self._flight.release()
        return report

    def _abort(self, report: SyncReport, exc: PathError) -> None:
        log_failure(self.sync_log, report, exc, is_dir=True)
        report.aborted = True

    def _run(self, report: SyncReport) -> None:
        try:
            source_scan = scan_tree(self.source, self.ignore)
        except ScanError as exc:
            self._abort(report, exc)
            return

        try:
            if not self.replica.is_dir():
                ensure_directory(self.replica, self.sync_log)
            replica_scan = scan_tree(self.replica)
        except (ScanError, DirectoryCreateError) as exc:
            self._abort(report, exc)
            return

        state = SyncState()
        self._sync_directories(source_scan, state, report)
        self._sync_files(source_scan, replica_scan, state, report)

        try:
            reap_orphans(self.replica, state, self.sync_log, report)
        except ScanError as exc:
            self._abort(report, exc)

    def _sync_directories(self, source_scan: ScanResult, state: SyncState, report: SyncReport) -> None:
        for record in sorted(source_scan.dirs, key=lambda d: (d.depth, d.rel_path)):
            target = replica_path_for(self.replica, record.rel_path)
            state.preserve(target)
            try:
                ensure_directory(target, self.sync_log)
            except DirectoryCreateError as exc:
                log_failure(self.sync_log, report, exc, is_dir=True)

    def _sync_files(
        self,
        source_scan: ScanResult,
        replica_scan: ScanResult,
        state: SyncState,
        report: SyncReport,
    ) -> None:
        records = [source_scan.files[rel] for rel in sorted(source_scan.files)]

        def _one(record: FileRecord) -> None:
            target = replica_path_for(self.replica, record.rel_path)
            try:
                outcome = sync_file(record, replica_scan.files.get(record.rel_path), self.replica, self.sync_log)
            except (ChecksumError, CopyError, DirectoryCreateError) as exc:
                log_failure(self.sync_log, report, exc)
                state.defer(target)
                return
            state.touch(target)
            report.record(outcome)

        if self.workers == 1:
            for record in records:
                _one(record)
            return

        # every file finishes before reaping starts
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            list(pool.map(_one, records))


def synchronize(
    source: Path,
    replica: Path,
    sync_log: Optional[SyncLog] = None,
    ignore: Optional[IgnoreMatcher] = None,
    workers: int = 1,
) -> SyncReport:
    """Run one pass making `replica` match `source` and return its report."""
    report = PassCoordinator(source, replica, sync_log=sync_log, ignore=ignore, workers=workers).run_pass()
    if report is None:
        raise PassInProgressError(f"A pass is already running for {source} -> {replica}")
    return report


# -------------------------
# Scheduler
# -------------------------

class SyncScheduler(threading.Thread):
    """
    Calls the coordinator every `interval_sec` seconds until `stop_event` is set.
    Ticks that fall inside a long pass are skipped, never queued.
    """

    def __init__(self, coordinator: PassCoordinator, interval_sec: float, stop_event: threading.Event):
        super().__init__(daemon=True, name="mirror-sync-scheduler")
        self.coordinator = coordinator
        self.interval_sec = float(interval_sec)
        self.stop_event = stop_event
        self.passes = 0

    @property
    def logger(self) -> logging.Logger:
        return self.coordinator.sync_log.logger

    def run(self) -> None:
        self.logger.info("SCHEDULER: started (interval=%.1fs)", self.interval_sec)
        while not self.stop_event.is_set():
            start = time.monotonic()
            try:
                if self.coordinator.run_pass() is not None:
                    self.passes += 1
            except Exception as e:
                self.logger.exception("Error in sync pass: %s", e)

            elapsed = time.monotonic() - start
            missed = int(elapsed // self.interval_sec)
            if missed:
                self.logger.warning("Skipped %d tick(s); pass took %.1fs", missed, elapsed)
            self.stop_event.wait(self.interval_sec - (elapsed % self.interval_sec))
        self.logger.info("SCHEDULER: stopped")


# -------------------------
# Cleanup
# -------------------------

def _is_subpath(child: Path, parent: Path) -> bool:
    try:
        child.resolve().relative_to(parent.resolve())
        return True
    except ValueError:
        return False


def cleanup(source: Path, replica: Path, log_path: Path, logger: logging.Logger) -> bool:
    """
    Delete everything inside the replica folder, then the log directory.
    The log directory is only removed wholesale when it is not the working
    directory and holds neither root; otherwise just the log file goes.
    Returns False if anything could not be deleted.
    """
    ok = True

    if replica.is_dir():
        for child in sorted(replica.iterdir()):
            is_dir = child.is_dir() and not child.is_symlink()
            try:
                if is_dir:
                    shutil.rmtree(child)
                else:
                    child.unlink()
                log_action(logger, "Deleted", f"Deleted: {child}", path=child, is_dir=is_dir)
            except OSError as e:
                log_action(logger, "Error", DeleteError(child, e).describe(), path=child, is_dir=is_dir, level=logging.ERROR)
                ok = False

    log_dir = log_path.parent.resolve()
    whole_dir = (
        log_dir != Path.cwd().resolve()
        and not _is_subpath(source, log_dir)
        and not _is_subpath(replica, log_dir)
    )
    target = log_dir if whole_dir else log_path
    try:
        if whole_dir:
            shutil.rmtree(target)
        else:
            target.unlink()
        log_action(logger, "Deleted", f"Deleted: {target}", path=target, is_dir=whole_dir)
    except FileNotFoundError:
        pass
    except OSError as e:
        log_action(logger, "Error", DeleteError(target, e).describe(), path=target, level=logging.ERROR)
        ok = False

    return ok


# -------------------------
# Config / CLI
# -------------------------

@dataclass(frozen=True)
class AppConfig:
    source_dir: Path
    replica_dir: Path
    log_path: Path
    interval_sec: float
    cleanup: bool = False
    once: bool = False
    workers: int = 1
    exclude: tuple[str, ...] = ()


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="mirror-sync", description="Keep a replica folder identical to a source folder.")
    p.add_argument("source", type=str, help="Folder to mirror (source).")
    p.add_argument("replica", type=str, help="Folder kept identical to the source (replica).")
    p.add_argument("log_file", type=str, help="Log file; lines are appended.")
    p.add_argument("interval", type=float, help="Seconds between synchronization passes.")
    mode = p.add_mutually_exclusive_group()
    mode.add_argument("--cleanup", action="store_true", help="Delete the replica contents and the log directory, then exit.")
    mode.add_argument("--once", action="store_true", help="Run a single pass and exit.")
    p.add_argument("--workers", type=int, default=1, help="Threads used for per-file work within a pass.")
    p.add_argument(
        "--exclude",
        action="append",
        default=[],
        metavar="PATTERN",
        help="gitignore-style pattern (relative to source) to leave out of the mirror. Repeatable.",
    )
    return p.parse_args(argv)


def build_config(args: argparse.Namespace) -> AppConfig:
    if not args.interval > 0:
        raise FatalStartupError(f"Sync interval must be a positive number of seconds, got {args.interval}")
    if args.workers < 1:
        raise FatalStartupError(f"--workers must be at least 1, got {args.workers}")

    return AppConfig(
        source_dir=Path(args.source),
        replica_dir=Path(args.replica),
        log_path=Path(args.log_file),
        interval_sec=float(args.interval),
        cleanup=bool(args.cleanup),
        once=bool(args.once),
        workers=int(args.workers),
        exclude=tuple(args.exclude),
    )


def validate_paths(source: Path, replica: Path) -> tuple[Path, Path]:
    source = source.expanduser().resolve()
    replica = replica.expanduser().resolve()

    if not source.exists() or not source.is_dir():
        raise FatalStartupError(f"Source folder '{source}' does not exist.")
    if source == replica:
        raise FatalStartupError("Source and replica folders must be different.")
    if _is_subpath(replica, source):
        raise FatalStartupError("Replica folder must NOT be inside source folder (would cause loops).")
    if _is_subpath(source, replica):
        raise FatalStartupError("Source folder must NOT be inside replica folder (it would be deleted).")
    if replica.exists() and not replica.is_dir():
        raise FatalStartupError(f"Replica path '{replica}' exists and is not a folder.")

    return source, replica


# -------------------------
# Main
# -------------------------

def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)

    try:
        cfg = build_config(args)
        source, replica = validate_paths(cfg.source_dir, cfg.replica_dir)
    except FatalStartupError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    log_path = cfg.log_path.expanduser().resolve()

    if cfg.cleanup:
        logger = setup_logger(None)
        ok = cleanup(source, replica, log_path, logger)
        logger.info("Cleanup %s.", "done" if ok else "finished with errors")
        return 0 if ok else 1

    logger = setup_logger(log_path)
    logger.info("Source : %s", source)
    logger.info("Replica: %s", replica)
    if not replica.exists():
        logger.info("Replica folder does not exist yet; it will be created on the first pass.")

    ignore = IgnoreMatcher(cfg.exclude) if cfg.exclude else None
    if ignore:
        logger.info("Excluding: %s", ", ".join(ignore.patterns))

    coordinator = PassCoordinator(source, replica, sync_log=SyncLog(logger), ignore=ignore, workers=cfg.workers)

    if cfg.once:
        report = coordinator.run_pass()
        return 0 if report is not None and report.ok else 1

    stop_event = threading.Event()
    scheduler = SyncScheduler(coordinator, cfg.interval_sec, stop_event)

    logger.info("Starting scheduler... (Ctrl+C to stop)")
    scheduler.start()

    try:
        while scheduler.is_alive():
            time.sleep(0.5)
    except KeyboardInterrupt:
        logger.info("Stopping...")
    finally:
        stop_event.set()
        scheduler.join(timeout=10)
        logger.info("Stopped.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
