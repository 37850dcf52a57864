#!/usr/bin/env python3
"""
===================================================================
FILESYSTEM KEYWORD SCANNER
===================================================================

PURPOSE:
    Recursively scan a directory tree and report every file that contains
    one of a list of literal keywords or regular expressions, together
    with the line each match was found on.

FEATURES:
    ✓ Async pipeline: one walker, many file scanners, single-writer collectors
    ✓ Two scheduling modes: fixed worker pool (default) or one task per file
    ✓ Backpressure from the worker pool throttles directory traversal
    ✓ Case-sensitive keyword search, first-match-per-line regex search
    ✓ Case-insensitive ignore list for directories and file types
    ✓ Per-file fault isolation: every failure becomes an error record
    ✓ Live status line with found/searched/error/ignored counters
    ✓ Rotating, compressed log file with text or JSON formatting

REQUIREMENTS:
    Install dependencies:
        python3 -m pip install -e .
    or
        pip install aiofiles tqdm

USAGE:
    # Scan a directory with the default list files in the current directory
    python fs_keyword_scanner.py --directory /path/to/scan

    # Spawn one task per file instead of using the worker pool
    python fs_keyword_scanner.py --directory /srv --new-thread

    # Explicit worker count and list files
    python fs_keyword_scanner.py --directory ~ --thread-count 16 \\
        --keywords kw.txt --regex re.txt --ignore ignore.txt

OUTPUT:
    output.txt  Path: <path> | Keywords: <term>[:<pattern>]:<line> & ...
    error.txt   <path> = <kind>: <description>
    log.txt     Full run log (rotated at 1 GB, 5 compressed backups)

CONFIGURATION:
    Set via environment variables (command-line flags take precedence):
    - SCAN_KEYWORDS_FILE: Literal keywords, one per line (default: keywords.txt)
    - SCAN_REGEX_FILE: Regular expressions, one per line (default: regex.txt)
    - SCAN_IGNORE_FILE: Ignored path substrings (default: ignore.txt)
    - SCAN_IGNORE_TYPES_FILE: Ignored file types (default: ignore-types.txt)
    - SCAN_OUTPUT_FILE: Match report (default: output.txt)
    - SCAN_ERROR_FILE: Error report (default: error.txt)
    - SCAN_LOG_FILE: Log file (default: log.txt)
    - SCAN_THREAD_COUNT: Pool size, 0 means CPU count (default: 0)
    - SCAN_MAX_LINE_BYTES: Longest line accepted (default: 1048576)
    - LOG_FORMAT: text|json (default: text)

===================================================================
"""
import argparse
import asyncio
import gzip
import json
import logging
import logging.handlers
import os
import queue
import re
import shutil
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, List, NamedTuple, Optional, Set, Tuple, Union

import aiofiles
from tqdm import tqdm

__version__ = "1.0.0"

# ===================================================================
# CONFIGURATION & CONSTANTS
# ===================================================================

# Environment-driven configuration
KEYWORDS_FILE = os.environ.get("SCAN_KEYWORDS_FILE", "keywords.txt")
REGEX_FILE = os.environ.get("SCAN_REGEX_FILE", "regex.txt")
IGNORE_FILE = os.environ.get("SCAN_IGNORE_FILE", "ignore.txt")
IGNORE_TYPES_FILE = os.environ.get("SCAN_IGNORE_TYPES_FILE", "ignore-types.txt")
OUTPUT_FILE = os.environ.get("SCAN_OUTPUT_FILE", "output.txt")
ERROR_FILE = os.environ.get("SCAN_ERROR_FILE", "error.txt")
LOG_FILE = os.environ.get("SCAN_LOG_FILE", "log.txt")
THREAD_COUNT = int(os.environ.get("SCAN_THREAD_COUNT", "0"))
MAX_LINE_BYTES = int(os.environ.get("SCAN_MAX_LINE_BYTES", str(1024 * 1024)))
LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")  # text|json

# Operational constants
DEFAULT_MAX_LINE_BYTES = 1024 * 1024  # 1 MiB
PROGRESS_INTERVAL_SECONDS = 0.25
WORK_QUEUE_SIZE = 1

# Log rotation
LOG_MAX_BYTES = 1024 * 1024 * 1024  # 1 GB
LOG_BACKUP_COUNT = 5


# ===================================================================
# LOGGING SETUP
# ===================================================================

class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add custom fields
        if hasattr(record, 'path'):
            log_data["path"] = record.path
        if hasattr(record, 'kind'):
            log_data["kind"] = record.kind

        return json.dumps(log_data)


def _gzip_rotator(source: str, dest: str) -> None:
    """Compress a rotated log file and remove the uncompressed original."""
    with open(source, 'rb') as src, gzip.open(dest, 'wb') as dst:
        shutil.copyfileobj(src, dst)
    os.remove(source)


_log_listener: Optional[logging.handlers.QueueListener] = None
_log_queue_handler: Optional[logging.handlers.QueueHandler] = None


def setup_logging(
    log_format: str = "text",
    log_file: Optional[str] = None,
    verbose: bool = False
) -> logging.Logger:
    """
    Setup logging with either text or JSON format.

    The console only receives warnings and errors so the progress line stays
    readable. When ``log_file`` is given, every record is also written to a
    rotating file by a single listener thread.

    Args:
        log_format: "text" or "json"
        log_file: Optional path of the rotating log file
        verbose: Log per-file and per-match detail at DEBUG level

    Returns:
        The configured module logger
    """
    global _log_listener, _log_queue_handler
    shutdown_logging()

    logger = logging.getLogger(__name__)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False

    # Remove existing handlers
    logger.handlers.clear()

    if log_format == "json":
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.WARNING)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding='utf-8'
        )
        file_handler.namer = lambda name: name + ".gz"
        file_handler.rotator = _gzip_rotator
        file_handler.setFormatter(formatter)

        log_queue: "queue.Queue[logging.LogRecord]" = queue.Queue()
        _log_queue_handler = logging.handlers.QueueHandler(log_queue)
        _log_listener = logging.handlers.QueueListener(log_queue, file_handler)
        _log_listener.start()
        logger.addHandler(_log_queue_handler)

    return logger


def shutdown_logging() -> None:
    """Stop the log file listener, flushing anything still queued."""
    global _log_listener, _log_queue_handler

    if _log_queue_handler is not None:
        logging.getLogger(__name__).removeHandler(_log_queue_handler)
        _log_queue_handler = None

    if _log_listener is not None:
        _log_listener.stop()
        for handler in _log_listener.handlers:
            handler.close()
        _log_listener = None


logger = setup_logging(LOG_FORMAT)


# ===================================================================
# DATA MODEL
# ===================================================================

class ConfigurationError(RuntimeError):
    """A required input is missing or invalid; raised before scanning starts."""


class ScanMode(Enum):
    """How files are handed from the walker to the scanner."""
    UNBOUNDED = "unbounded"
    POOLED = "pooled"


class ErrorKind(Enum):
    """Category of a per-entry failure."""
    TRAVERSAL_ERROR = "traversal-error"
    OPEN_ERROR = "open-error"
    LINE_TOO_LONG = "line-too-long"
    READ_ERROR = "read-error"
    INTERNAL_FAULT = "internal-fault"


@dataclass(frozen=True)
class MatchDescriptor:
    """One hit on one line: a keyword, or a regex with the text it matched."""
    term: str
    line_number: int
    matched_text: Optional[str] = None

    def format(self) -> str:
        if self.matched_text is None:
            return f"{self.term}:{self.line_number}"
        return f"{self.matched_text}:{self.term}:{self.line_number}"


@dataclass(frozen=True)
class FileResult:
    """All matches of a file that was scanned to the end without error."""
    path: str
    matches: Tuple[MatchDescriptor, ...]

    def format(self) -> str:
        keywords = " & ".join(match.format() for match in self.matches)
        return f"Path: {self.path} | Keywords: {keywords}"


@dataclass(frozen=True)
class ErrorRecord:
    """A file or directory entry that could not be scanned."""
    path: str
    kind: ErrorKind
    description: str

    def format(self) -> str:
        return f"{self.path} = {self.kind.value}: {self.description}"


ScanOutcome = Optional[Union[FileResult, ErrorRecord]]


@dataclass(frozen=True)
class ScanConfig:
    """
    Read-only search configuration shared by every pipeline unit.

    Ignore entries are lower-cased on construction so path checks can be a
    plain substring test against the lower-cased path.
    """
    keywords: Tuple[str, ...] = ()
    patterns: Tuple["re.Pattern[str]", ...] = ()
    ignore: Tuple[str, ...] = ()
    mode: ScanMode = ScanMode.POOLED
    worker_count: int = field(default_factory=lambda: os.cpu_count() or 1)
    max_line_bytes: int = DEFAULT_MAX_LINE_BYTES

    def __post_init__(self):
        object.__setattr__(self, "keywords", tuple(self.keywords))
        object.__setattr__(self, "patterns", tuple(self.patterns))
        object.__setattr__(self, "ignore", tuple(item.lower() for item in self.ignore))
        if self.worker_count < 1:
            raise ConfigurationError(f"Worker count must be at least 1, got {self.worker_count}")
        if self.max_line_bytes < 1:
            raise ConfigurationError(f"Maximum line length must be at least 1 byte, got {self.max_line_bytes}")


@dataclass
class ScanStats:
    """
    Process-wide counters for one run.

    Every pipeline unit runs on the same event loop and each increment is a
    single statement with no await inside it, so increments never interleave.
    Counters only ever go up.
    """
    found_files: int = 0
    searched_files: int = 0
    num_errors: int = 0
    num_ignored: int = 0
    started_at: float = field(default_factory=time.monotonic)

    def add_found(self) -> None:
        self.found_files += 1

    def add_searched(self) -> None:
        self.searched_files += 1

    def add_error(self) -> None:
        self.num_errors += 1

    def add_ignored(self) -> None:
        self.num_ignored += 1

    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    def status_line(self) -> str:
        return (
            f"Found files: {self.found_files} | Searched files: {self.searched_files} | "
            f"Files with errors: {self.num_errors} | Files ignored: {self.num_ignored} | "
            f"Elapsed time: {format_duration(self.elapsed())}"
        )


@dataclass(frozen=True)
class ScanSummary:
    """Final counters of a finished run."""
    found_files: int
    searched_files: int
    num_errors: int
    num_ignored: int
    elapsed_seconds: float
    results_written: int

    def lines(self) -> List[str]:
        return [
            f"Found/Searched Files: {self.found_files}/{self.searched_files}",
            f"Time elapsed: {format_duration(self.elapsed_seconds)}",
        ]


# ===================================================================
# UTILITY FUNCTIONS
# ===================================================================

def format_duration(seconds: float) -> str:
    """
    Render a duration the way the status line shows it, e.g. ``1m4.250s``.

    Args:
        seconds: Duration in seconds

    Returns:
        Human-readable duration
    """
    if seconds < 60:
        return f"{seconds:.3f}s"
    minutes, secs = divmod(seconds, 60)
    hours, minutes = divmod(int(minutes), 60)
    if hours:
        return f"{hours}h{minutes}m{secs:.3f}s"
    return f"{minutes}m{secs:.3f}s"


def dedupe(values: Iterable[str]) -> List[str]:
    """Drop blanks and repeats, keeping first-seen order."""
    out: List[str] = []
    seen: Set[str] = set()
    for value in values:
        if value and value not in seen:
            seen.add(value)
            out.append(value)
    return out


def read_list_file(filepath: Union[str, Path], label: str) -> List[str]:
    """
    Read a one-entry-per-line list file.

    Lines are trimmed; blank lines and repeated entries are dropped.

    Args:
        filepath: Path to the list file
        label: Name used in error messages ("keywords", "regex", ...)

    Raises:
        ConfigurationError: if the file is missing or unreadable

    Returns:
        Entries in file order
    """
    path = Path(filepath)
    if not path.exists():
        raise ConfigurationError(f"{label} file does not exist: {path}")

    try:
        text = path.read_text(encoding='utf-8', errors='replace')
    except OSError as e:
        raise ConfigurationError(f"Cannot read {label} file {path}: {e}") from e

    return dedupe(line.strip() for line in text.splitlines())


def compile_patterns(sources: Iterable[str]) -> List["re.Pattern[str]"]:
    """
    Compile regex sources, dropping any that fail.

    Args:
        sources: Regular expression strings

    Returns:
        Compiled patterns in input order
    """
    patterns = []
    for source in sources:
        try:
            patterns.append(re.compile(source))
        except re.error as e:
            logger.warning(f"Regex ({source}) failed to compile, this regex will not be searched: {e}")
    return patterns


def load_scan_config(
    keywords_file: Union[str, Path],
    regex_file: Union[str, Path],
    ignore_file: Union[str, Path],
    ignore_types_file: Union[str, Path],
    new_thread: bool = False,
    worker_count: int = 0,
    max_line_bytes: int = DEFAULT_MAX_LINE_BYTES
) -> ScanConfig:
    """
    Build the scan configuration from its list files.

    Ignored path substrings and ignored file types are merged into a single
    case-insensitive ignore set.

    Args:
        keywords_file: Literal keywords, one per line
        regex_file: Regular expressions, one per line
        ignore_file: Ignored path substrings, one per line
        ignore_types_file: Ignored file types, one per line
        new_thread: Spawn one task per file instead of using the pool
        worker_count: Pool size; 0 means one worker per CPU
        max_line_bytes: Longest line a file may contain

    Raises:
        ConfigurationError: if any list file is missing or a value is invalid

    Returns:
        ScanConfig
    """
    keywords = read_list_file(keywords_file, "keywords")
    patterns = compile_patterns(read_list_file(regex_file, "regex"))
    ignore = dedupe(
        item.lower()
        for item in read_list_file(ignore_file, "ignored") + read_list_file(ignore_types_file, "ignored types")
    )

    if worker_count < 0:
        raise ConfigurationError(f"Invalid thread count: {worker_count}")

    return ScanConfig(
        keywords=tuple(keywords),
        patterns=tuple(patterns),
        ignore=tuple(ignore),
        mode=ScanMode.UNBOUNDED if new_thread else ScanMode.POOLED,
        worker_count=worker_count or os.cpu_count() or 1,
        max_line_bytes=max_line_bytes,
    )


# ===================================================================
# LINE MATCHING & FILE SCANNING
# ===================================================================

def match_line(
    text: str,
    line_number: int,
    keywords: Iterable[str],
    patterns: Iterable["re.Pattern[str]"]
) -> List[MatchDescriptor]:
    """
    Find keyword and regex hits on a single line.

    Keywords are case-sensitive substring tests and are reported once per
    line however often they occur. Each pattern reports only its first
    non-empty match on the line. Keywords come before patterns, each in
    list order.

    Args:
        text: Line content without its terminator
        line_number: 1-based line number
        keywords: Literal keywords
        patterns: Compiled regular expressions

    Returns:
        Match descriptors for this line (possibly empty)
    """
    found = []
    for keyword in keywords:
        if keyword in text:
            found.append(MatchDescriptor(term=keyword, line_number=line_number))
    for pattern in patterns:
        match = pattern.search(text)
        if match and match.group(0):
            found.append(MatchDescriptor(
                term=pattern.pattern,
                line_number=line_number,
                matched_text=match.group(0)
            ))
    return found


def _decode_line(raw: bytes) -> str:
    if raw.endswith(b"\n"):
        raw = raw[:-1]
        if raw.endswith(b"\r"):
            raw = raw[:-1]
    return raw.decode('utf-8', errors='replace')


def _scan_file_sync(file_path: str, config: ScanConfig) -> Tuple[List[MatchDescriptor], Optional[ErrorRecord], bool]:
    """
    Open, read and close one file; runs in the executor.

    The file is only open for the duration of this call, so the number of
    open descriptors is bounded by the executor's thread count.

    Returns:
        (matches, failure, read_loop_ran)
    """
    try:
        handle = open(file_path, 'rb')
    except OSError as e:
        return [], ErrorRecord(file_path, ErrorKind.OPEN_ERROR, str(e)), False

    logger.debug(f"Searching file: {file_path}")

    limit = config.max_line_bytes
    matches: List[MatchDescriptor] = []
    failure: Optional[ErrorRecord] = None
    line_number = 0

    try:
        while True:
            try:
                # One byte past the limit tells an over-long line from one that fits exactly
                raw = handle.readline(limit + 1)
            except OSError as e:
                failure = ErrorRecord(file_path, ErrorKind.READ_ERROR, str(e))
                break

            if not raw:
                break

            line_number += 1
            if len(raw) > limit:
                failure = ErrorRecord(
                    file_path,
                    ErrorKind.LINE_TOO_LONG,
                    f"line {line_number} exceeds {limit} bytes"
                )
                break

            hits = match_line(_decode_line(raw), line_number, config.keywords, config.patterns)
            if hits:
                logger.debug(
                    f"Found match in: {file_path} ({', '.join(hit.format() for hit in hits)})"
                )
                matches.extend(hits)
    finally:
        handle.close()

    return matches, failure, True


async def _scan_opened_file(file_path: str, config: ScanConfig, stats: ScanStats) -> ScanOutcome:
    loop = asyncio.get_running_loop()
    matches, failure, read_loop_ran = await loop.run_in_executor(
        None, _scan_file_sync, file_path, config
    )

    if not read_loop_ran:
        return failure

    stats.add_searched()

    if failure is not None:
        if matches:
            # Partial results are dropped; the file is reported as an error only
            logger.debug(f"Discarding {len(matches)} matches from {file_path} after {failure.kind.value}")
        return failure

    if not matches:
        return None

    return FileResult(path=file_path, matches=tuple(matches))


async def scan_file(file_path: str, config: ScanConfig, stats: ScanStats) -> ScanOutcome:
    """
    Scan a single file and classify the outcome.

    ``searched_files`` is incremented once the read loop ends, even when the
    loop ended on a read error or an over-long line. A file that cannot be
    opened is not counted as searched.

    Args:
        file_path: File to scan
        config: Keywords, patterns and line limit
        stats: Shared counters

    Returns:
        FileResult when the file matched, ErrorRecord when it failed,
        None when it was scanned cleanly without a match
    """
    try:
        return await _scan_opened_file(file_path, config, stats)
    except Exception as e:
        logger.error(f"Internal fault while scanning {file_path}: {e}", exc_info=True)
        return ErrorRecord(file_path, ErrorKind.INTERNAL_FAULT, f"{type(e).__name__}: {e}")


# ===================================================================
# DIRECTORY TRAVERSAL
# ===================================================================

class _WalkEntry(NamedTuple):
    path: str
    is_dir: bool
    is_file: bool
    error: Optional[OSError]


def _list_directory(directory: str) -> Tuple[List[_WalkEntry], Optional[OSError]]:
    """List a directory in name order; runs in the executor."""
    entries: List[_WalkEntry] = []
    try:
        with os.scandir(directory) as it:
            for entry in it:
                try:
                    is_dir = entry.is_dir(follow_symlinks=False)
                    # Symlinks to regular files count as files
                    is_file = not is_dir and entry.is_file()
                except OSError as e:
                    entries.append(_WalkEntry(entry.path, False, False, e))
                    continue
                entries.append(_WalkEntry(entry.path, is_dir, is_file, None))
    except OSError as e:
        entries.sort(key=lambda item: item.path)
        return entries, e

    entries.sort(key=lambda item: item.path)
    return entries, None


class DirectoryWalker:
    """
    Depth-first producer feeding files to a dispatch strategy.

    Directories whose path contains an ignored string are pruned and counted
    once as ignored. Files are checked the same way; the rest are counted as
    found and dispatched. Unreadable entries are reported as traversal errors
    and their siblings are still visited.

    Symlinked directories are not descended into. Only regular files (or
    symlinks to them) are scanned; FIFOs, sockets, device nodes and dangling
    links are skipped without being counted.
    """

    def __init__(
        self,
        config: ScanConfig,
        stats: ScanStats,
        dispatch: Callable[[str], Awaitable[None]],
        errors: "asyncio.Queue[Optional[ErrorRecord]]"
    ):
        self.config = config
        self.stats = stats
        self.dispatch = dispatch
        self.errors = errors

    def ignored_by(self, path: str) -> Optional[str]:
        """Return the ignore entry contained in ``path``, if any."""
        path_lower = path.lower()
        for ignore in self.config.ignore:
            if ignore in path_lower:
                return ignore
        return None

    async def walk(self, root: str) -> None:
        logger.info(f"Walking directory: {root}")

        if os.path.lexists(root) and not os.path.isdir(root):
            await self._visit_file(root)
        else:
            await self._walk_tree(root)

        logger.info(
            f"Finished finding files (found #{self.stats.found_files} files) through directory: {root}"
        )

    async def _walk_tree(self, root: str) -> None:
        loop = asyncio.get_running_loop()
        stack = [root]

        while stack:
            directory = stack.pop()
            entries, error = await loop.run_in_executor(None, _list_directory, directory)
            if error is not None:
                await self._report(directory, error)

            subdirs = []
            for entry in entries:
                logger.debug(f"Found entry: {entry.path} | Err: {entry.error}")
                if entry.error is not None:
                    await self._report(entry.path, entry.error)
                    continue

                if entry.is_dir:
                    ignore = self.ignored_by(entry.path)
                    if ignore is not None:
                        self.stats.add_ignored()
                        logger.debug(f"Ignoring directory: {entry.path} due to ignored string ({ignore})")
                        continue
                    subdirs.append(entry.path)
                    continue

                if not entry.is_file:
                    logger.debug(f"Skipping non-regular entry: {entry.path}")
                    continue

                await self._visit_file(entry.path)

            stack.extend(reversed(subdirs))

    async def _visit_file(self, file_path: str) -> None:
        ignore = self.ignored_by(file_path)
        if ignore is not None:
            self.stats.add_ignored()
            logger.debug(f"Ignoring file: {file_path} due to ignored string ({ignore})")
            return

        self.stats.add_found()
        await self.dispatch(file_path)

    async def _report(self, path: str, error: OSError) -> None:
        await self.errors.put(ErrorRecord(path, ErrorKind.TRAVERSAL_ERROR, str(error)))


# ===================================================================
# SCHEDULING
# ===================================================================

class CompletionBarrier:
    """Counts outstanding work units; ``wait`` returns once all are done."""

    def __init__(self):
        self._pending = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def pending(self) -> int:
        return self._pending

    def add(self, count: int = 1) -> None:
        self._pending += count
        if self._pending > 0:
            self._idle.clear()

    def done(self) -> None:
        if self._pending <= 0:
            raise RuntimeError("CompletionBarrier.done() called more times than add()")
        self._pending -= 1
        if self._pending == 0:
            self._idle.set()

    async def wait(self) -> None:
        await self._idle.wait()


class DispatchStrategy:
    """
    Hands discovered files to ``scan_one``.

    Call ``start`` before the walk, ``dispatch`` once per file and ``finish``
    after the walk; ``finish`` returns once every dispatched file has been
    scanned.
    """

    name = "abstract"

    def __init__(self, scan_one: Callable[[str], Awaitable[None]]):
        self.scan_one = scan_one
        self.barrier = CompletionBarrier()

    async def start(self) -> None:
        pass

    async def dispatch(self, file_path: str) -> None:
        raise NotImplementedError

    async def finish(self) -> None:
        raise NotImplementedError


class UnboundedFanOut(DispatchStrategy):
    """One task per file, spawned immediately; concurrency is not capped."""

    name = "unbounded fan-out"

    def __init__(self, scan_one: Callable[[str], Awaitable[None]]):
        super().__init__(scan_one)
        self._tasks: Set["asyncio.Task[None]"] = set()

    async def dispatch(self, file_path: str) -> None:
        self.barrier.add()
        task = asyncio.create_task(self._run(file_path))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, file_path: str) -> None:
        try:
            await self.scan_one(file_path)
        finally:
            self.barrier.done()

    async def finish(self) -> None:
        await self.barrier.wait()


class WorkerPool(DispatchStrategy):
    """
    Fixed set of workers pulling from one near-unbuffered queue.

    ``dispatch`` blocks while the queue is full, which slows the walker down
    to the pace of the workers.
    """

    name = "worker pool"

    def __init__(self, scan_one: Callable[[str], Awaitable[None]], worker_count: int):
        super().__init__(scan_one)
        if worker_count < 1:
            raise ValueError(f"worker_count must be at least 1, got {worker_count}")
        self.worker_count = worker_count
        self.queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue(maxsize=WORK_QUEUE_SIZE)
        self._workers: List["asyncio.Task[None]"] = []

    async def start(self) -> None:
        logger.info(f"Starting {self.worker_count} workers")
        for index in range(self.worker_count):
            self.barrier.add()
            self._workers.append(asyncio.create_task(self._worker(index)))

    async def dispatch(self, file_path: str) -> None:
        await self.queue.put(file_path)

    async def _worker(self, index: int) -> None:
        try:
            while True:
                file_path = await self.queue.get()
                if file_path is None:
                    break
                await self.scan_one(file_path)
        finally:
            logger.debug(f"Worker {index} finished")
            self.barrier.done()

    async def finish(self) -> None:
        # One sentinel per worker closes the queue
        for _ in self._workers:
            await self.queue.put(None)
        await self.barrier.wait()


def build_strategy(config: ScanConfig, scan_one: Callable[[str], Awaitable[None]]) -> DispatchStrategy:
    """Pick the dispatch strategy named by ``config.mode``."""
    if config.mode is ScanMode.UNBOUNDED:
        return UnboundedFanOut(scan_one)
    return WorkerPool(scan_one, config.worker_count)


# ===================================================================
# COLLECTORS & PROGRESS
# ===================================================================

async def result_collector(results: "asyncio.Queue[Optional[FileResult]]", sink: Any) -> int:
    """
    Write every FileResult to the output sink until a ``None`` arrives.

    Args:
        results: Queue of matched files
        sink: Async text file opened for appending

    Returns:
        Number of records written
    """
    written = 0
    while True:
        record = await results.get()
        if record is None:
            break
        line = record.format()
        logger.info(line, extra={"path": record.path})
        await sink.write(line + "\n")
        written += 1

    logger.info("Finished collecting output files")
    return written


async def error_collector(
    errors: "asyncio.Queue[Optional[ErrorRecord]]",
    sink: Any,
    stats: ScanStats
) -> int:
    """
    Write every ErrorRecord to the error sink until a ``None`` arrives.

    This is the only place ``num_errors`` is incremented.

    Args:
        errors: Queue of failures
        sink: Async text file opened for appending
        stats: Shared counters

    Returns:
        Number of records written
    """
    written = 0
    while True:
        record = await errors.get()
        if record is None:
            break
        stats.add_error()
        line = record.format()
        logger.info(f"Error occurred for file: {line}", extra={"path": record.path, "kind": record.kind.value})
        await sink.write(line + "\n")
        written += 1

    logger.info("Finished collecting error files")
    return written


async def progress_monitor(
    stats: ScanStats,
    finished: asyncio.Event,
    interval: float = PROGRESS_INTERVAL_SECONDS,
    disable: bool = False
) -> None:
    """
    Redraw the status line every ``interval`` seconds until ``finished`` is set.

    Reads counters only; the pipeline never waits on it.
    """
    with tqdm(bar_format="{desc}", file=sys.stdout, disable=disable, leave=True) as bar:
        while not finished.is_set():
            bar.set_description_str(stats.status_line(), refresh=True)
            try:
                await asyncio.wait_for(finished.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        bar.set_description_str(stats.status_line(), refresh=True)


# ===================================================================
# MAIN ORCHESTRATION
# ===================================================================

async def run_scan(
    root: Union[str, Path],
    config: ScanConfig,
    output_path: Union[str, Path],
    error_path: Union[str, Path],
    show_progress: bool = True,
    stats: Optional[ScanStats] = None
) -> ScanSummary:
    """
    Run one complete scan of ``root``.

    Opens both sinks, starts the collectors and progress monitor, walks the
    tree through the configured dispatch strategy and waits until every
    dispatched file has been scanned and every record written.

    Args:
        root: Directory to scan
        config: Search configuration
        output_path: Match report, appended to
        error_path: Error report, appended to
        show_progress: Render the live status line
        stats: Counters to use; a fresh set when omitted

    Raises:
        OSError: if either sink cannot be opened

    Returns:
        ScanSummary
    """
    stats = stats or ScanStats()
    root = str(root)
    results: "asyncio.Queue[Optional[FileResult]]" = asyncio.Queue()
    errors: "asyncio.Queue[Optional[ErrorRecord]]" = asyncio.Queue()
    finished = asyncio.Event()

    async def scan_one(file_path: str) -> None:
        outcome = await scan_file(file_path, config, stats)
        if isinstance(outcome, FileResult):
            await results.put(outcome)
        elif isinstance(outcome, ErrorRecord):
            await errors.put(outcome)

    async with aiofiles.open(output_path, 'a', encoding='utf-8') as output_sink:
        async with aiofiles.open(error_path, 'a', encoding='utf-8') as error_sink:
            result_task = asyncio.create_task(result_collector(results, output_sink))
            error_task = asyncio.create_task(error_collector(errors, error_sink, stats))
            monitor_task = asyncio.create_task(
                progress_monitor(stats, finished, disable=not show_progress)
            )
            tasks = [result_task, error_task, monitor_task]
            results_written = 0

            try:
                strategy = build_strategy(config, scan_one)
                logger.info(f"Scheduling files with {strategy.name}")
                walker = DirectoryWalker(config, stats, strategy.dispatch, errors)

                await strategy.start()
                await walker.walk(root)
                await strategy.finish()

                await results.put(None)
                await errors.put(None)
                results_written = await result_task
                await error_task
            finally:
                finished.set()
                for task in tasks:
                    if not task.done() and task is not monitor_task:
                        task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)

    summary = ScanSummary(
        found_files=stats.found_files,
        searched_files=stats.searched_files,
        num_errors=stats.num_errors,
        num_ignored=stats.num_ignored,
        elapsed_seconds=stats.elapsed(),
        results_written=results_written,
    )
    logger.info(" | ".join(summary.lines()))
    return summary


# ===================================================================
# COMMAND LINE INTERFACE
# ===================================================================

def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments and display help information."""
    parser = argparse.ArgumentParser(
        description='Recursively search a directory tree for keywords and regular expressions',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
LIST FILES (one entry per line, blank lines ignored):
  keywords.txt          Literal, case-sensitive keywords
  regex.txt             Regular expressions (invalid ones are skipped)
  ignore.txt            Path substrings to skip (case-insensitive)
  ignore-types.txt      File types to skip, e.g. .iso (case-insensitive)

USAGE EXAMPLES:
  Scan with the default list files:
    python fs_keyword_scanner.py --directory /data

  One task per file instead of a worker pool:
    python fs_keyword_scanner.py --directory /data --new-thread

  Fixed pool size and JSON logs:
    python fs_keyword_scanner.py --directory /data --thread-count 8 --log-format json

EXIT CODES:
  0   Success
  1   Error (missing list file, bad directory, etc.)
  130 Interrupted by user (Ctrl+C)
        '''
    )

    parser.add_argument(
        '--directory',
        type=str,
        metavar='PATH',
        help='Directory to scan (prompted for when omitted)'
    )

    parser.add_argument(
        '--keywords',
        type=str,
        default=KEYWORDS_FILE,
        metavar='FILE',
        help=f'Keyword list file (default: {KEYWORDS_FILE})'
    )

    parser.add_argument(
        '--regex',
        type=str,
        default=REGEX_FILE,
        metavar='FILE',
        help=f'Regex list file (default: {REGEX_FILE})'
    )

    parser.add_argument(
        '--ignore',
        type=str,
        default=IGNORE_FILE,
        metavar='FILE',
        help=f'Ignored path substrings file (default: {IGNORE_FILE})'
    )

    parser.add_argument(
        '--ignore-types',
        type=str,
        default=IGNORE_TYPES_FILE,
        metavar='FILE',
        help=f'Ignored file types file (default: {IGNORE_TYPES_FILE})'
    )

    parser.add_argument(
        '--output',
        type=str,
        default=OUTPUT_FILE,
        metavar='FILE',
        help=f'Match report (default: {OUTPUT_FILE})'
    )

    parser.add_argument(
        '--error',
        type=str,
        default=ERROR_FILE,
        metavar='FILE',
        help=f'Error report (default: {ERROR_FILE})'
    )

    parser.add_argument(
        '--log-file',
        type=str,
        default=LOG_FILE,
        metavar='FILE',
        help=f'Rotating log file (default: {LOG_FILE})'
    )

    parser.add_argument(
        '--new-thread',
        action='store_true',
        help='Spawn one task per file instead of using a worker pool'
    )

    parser.add_argument(
        '--thread-count',
        type=int,
        default=THREAD_COUNT,
        help='Worker pool size, 0 for one per CPU (default: %(default)s)'
    )

    parser.add_argument(
        '--max-line-bytes',
        type=int,
        default=MAX_LINE_BYTES,
        help='Longest line a file may contain (default: %(default)s)'
    )

    parser.add_argument(
        '--log-format',
        type=str,
        choices=['text', 'json'],
        default=LOG_FORMAT,
        help=f'Logging format (default: {LOG_FORMAT})'
    )

    parser.add_argument(
        '--no-progress',
        action='store_true',
        help='Do not render the live status line'
    )

    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Log every entry, file and match'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )

    return parser.parse_args(argv)


def resolve_directory(directory: Optional[str]) -> str:
    """
    Return the directory to scan, prompting for it when not given.

    Raises:
        ConfigurationError: if the directory does not exist
    """
    if not directory:
        print("Directory must be given.")
        directory = input("Enter the directory to search for files:\n> ").strip()

    path = Path(directory).expanduser()
    if not path.is_dir():
        raise ConfigurationError(f"Directory does not exist: {path}")
    return str(path)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point with validation and error handling."""

    args = parse_arguments(argv)
    setup_logging(args.log_format, args.log_file, args.verbose)
    logger.info(f"Starting program at: {datetime.now(timezone.utc).isoformat()}")

    try:
        directory = resolve_directory(args.directory)

        logger.info("=" * 70)
        logger.info("FILESYSTEM KEYWORD SCANNER")
        logger.info("=" * 70)
        logger.info(f"Directory: {directory}")
        logger.info(f"Keywords: {args.keywords}")
        logger.info(f"Regex: {args.regex}")
        logger.info(f"Output: {args.output}")
        logger.info(f"Errors: {args.error}")
        logger.info(f"Ignored: {args.ignore}")
        logger.info(f"Ignored Types: {args.ignore_types}")
        logger.info(f"New Thread: {args.new_thread}")
        logger.info("=" * 70)

        config = load_scan_config(
            args.keywords,
            args.regex,
            args.ignore,
            args.ignore_types,
            new_thread=args.new_thread,
            worker_count=args.thread_count,
            max_line_bytes=args.max_line_bytes,
        )
        logger.info(
            f"Loaded {len(config.keywords)} keywords, {len(config.patterns)} patterns, "
            f"{len(config.ignore)} ignore entries"
        )

        if config.mode is ScanMode.POOLED:
            print(f"Starting {config.worker_count} workers")

        summary = asyncio.run(
            run_scan(
                directory,
                config,
                args.output,
                args.error,
                show_progress=not args.no_progress,
            )
        )

        print()
        for line in summary.lines():
            print(line)
        print(
            f"\nFile search completed, view found files in '{args.output}', "
            f"files which could not be searched in '{args.error}', "
            f"and a log of all files searched in '{args.log_file}'"
        )
        return 0

    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    except KeyboardInterrupt:
        logger.warning("Scan interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1
    finally:
        shutdown_logging()


if __name__ == "__main__":
    sys.exit(main())
