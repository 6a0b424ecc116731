#!/usr/bin/env python3
"""
batch_pool.py
=============

Producer/consumer plumbing for batch decryption:

* ``Counters``: produced/completed tallies shared by the scanner, the workers
  and the progress reporter.
* ``JobQueue``: bounded hand-off between the directory scanner and the
  workers, closed exactly once when the scan is over.
* ``WorkerPool``: N threads draining the queue, each isolating failures per
  file and keeping its own ``BatchStats``, merged after the join.
* Directory scanning (recursive or flat) with suffix filtering.
"""

from __future__ import annotations

import logging
import os
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, fields as dataclass_fields
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional, Tuple, Union

from rpgm_decrypt import ConversionError

DEFAULT_SUFFIXES: Tuple[str, ...] = (".rpgmvp", ".png_")
QUEUE_SLOTS_PER_WORKER = 4

PathLike = Union[str, Path]
Handler = Callable[[Path], Optional[Path]]


class TraversalError(RuntimeError):
    pass


# ---------------------------------------------------------------------------
# Shared state
# ---------------------------------------------------------------------------

class Counters:
    """Monotonic produced/completed tallies for one run."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.produced = 0
        self.completed = 0

    def increment_produced(self) -> None:
        with self._lock:
            self.produced += 1

    def increment_completed(self) -> None:
        with self._lock:
            self.completed += 1

    def snapshot(self) -> Tuple[int, int]:
        """Return ``(completed, produced)`` without taking the lock."""
        # completed is read first so the pair never shows completed > produced.
        completed = self.completed
        produced = self.produced
        return completed, produced


@dataclass
class BatchStats:
    converted: int = 0
    skipped: int = 0
    failed: int = 0
    failures: List[str] = field(default_factory=list)


def merge_stats(target: BatchStats, source: BatchStats) -> None:
    """Merge *source* into *target* by summing int fields and extending list fields."""
    for f in dataclass_fields(BatchStats):
        src_val = getattr(source, f.name)
        if isinstance(src_val, int):
            setattr(target, f.name, getattr(target, f.name) + src_val)
        elif isinstance(src_val, list):
            getattr(target, f.name).extend(src_val)


class JobQueue:
    """FIFO of file paths with a single close() that releases every consumer."""

    _CLOSED = object()

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=max(0, maxsize))
        self._close_lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, path: Path) -> None:
        """Blocks while the queue is full."""
        if self._closed:
            raise RuntimeError("put() on a closed job queue")
        self._queue.put(path)

    def close(self) -> None:
        with self._close_lock:
            if self._closed:
                raise RuntimeError("job queue already closed")
            self._closed = True
        self._queue.put(self._CLOSED)

    def get(self) -> Optional[Path]:
        """Next path, or None once the queue is closed and drained."""
        item = self._queue.get()
        if item is self._CLOSED:
            # Hand the marker on to the next consumer.
            self._queue.put(item)
            return None
        return item  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Worker pool
# ---------------------------------------------------------------------------

def _worker_loop(jobs: JobQueue, handler: Handler, counters: Counters) -> BatchStats:
    stats = BatchStats()
    while True:
        path = jobs.get()
        if path is None:
            return stats
        try:
            result = handler(path)
        except ConversionError as exc:
            stats.failed += 1
            stats.failures.append(f"{path}: {exc}")
            logging.error("Failed to decrypt %s: %s", path, exc)
        except Exception as exc:  # noqa: BLE001
            stats.failed += 1
            stats.failures.append(f"{path}: unhandled worker error: {exc}")
            logging.error("Worker error for %s: %s", path, exc)
        else:
            if result is None:
                stats.skipped += 1
            else:
                stats.converted += 1
        finally:
            counters.increment_completed()


def default_worker_count() -> int:
    return os.cpu_count() or 1


class WorkerPool:
    """Fixed set of threads running *handler* on every queued path."""

    def __init__(self, handler: Handler, workers: Optional[int] = None) -> None:
        self.handler = handler
        self.workers = max(1, workers or default_worker_count())
        self._executor: Optional[ThreadPoolExecutor] = None
        self._futures: list = []

    def start(self, jobs: JobQueue, counters: Counters) -> None:
        if self._executor is not None:
            raise RuntimeError("worker pool already started")
        self._executor = ThreadPoolExecutor(
            max_workers=self.workers,
            thread_name_prefix="rpgm-worker",
        )
        self._futures = [
            self._executor.submit(_worker_loop, jobs, self.handler, counters)
            for _ in range(self.workers)
        ]
        logging.debug("Started %d worker thread(s).", self.workers)

    def join(self) -> BatchStats:
        """Block until the queue is closed and every worker has drained it."""
        if self._executor is None:
            raise RuntimeError("worker pool was never started")
        stats = BatchStats()
        try:
            for future in self._futures:
                merge_stats(stats, future.result())
        finally:
            self._executor.shutdown(wait=True)
        return stats

    def run(self, jobs: JobQueue, counters: Counters) -> BatchStats:
        self.start(jobs, counters)
        return self.join()


# ---------------------------------------------------------------------------
# Directory scanning
# ---------------------------------------------------------------------------

def normalize_suffix(suffix: str) -> str:
    suffix = suffix.strip().lower()
    if not suffix:
        raise ValueError("empty suffix")
    if not suffix.startswith("."):
        suffix = f".{suffix}"
    return suffix


def suffix_predicate(suffixes: Iterable[str] = DEFAULT_SUFFIXES) -> Callable[[str], bool]:
    wanted = tuple(sorted({normalize_suffix(s) for s in suffixes}))
    if not wanted:
        raise ValueError("at least one suffix is required")

    def matches(name: str) -> bool:
        return os.path.basename(name).lower().endswith(wanted)

    return matches


def check_root(root: PathLike) -> Path:
    path = Path(root)
    if not path.exists():
        raise TraversalError(f"root does not exist: {path}")
    if not path.is_dir():
        raise TraversalError(f"root is not a directory: {path}")
    try:
        with os.scandir(path):
            pass
    except OSError as exc:
        raise TraversalError(f"cannot read root {path}: {exc}") from exc
    return path


def iter_candidates(
    root: PathLike,
    predicate: Callable[[str], bool],
    recursive: bool = True,
) -> Iterator[Path]:
    root_str = os.fspath(root)

    if not recursive:
        try:
            with os.scandir(root_str) as it:
                entries = sorted(it, key=lambda entry: entry.name)
        except OSError as exc:
            raise TraversalError(f"cannot read root {root_str}: {exc}") from exc
        for entry in entries:
            if entry.is_dir():
                continue
            if predicate(entry.name):
                yield Path(entry.path)
        return

    def on_error(exc: OSError) -> None:
        if exc.filename is not None and os.fspath(exc.filename) == root_str:
            raise TraversalError(f"cannot read root {root_str}: {exc}") from exc
        logging.warning("Skipping unreadable directory %s: %s", exc.filename, exc)

    for dirpath, dirnames, filenames in os.walk(root_str, onerror=on_error):
        dirnames.sort()
        for name in sorted(filenames):
            if predicate(name):
                yield Path(dirpath) / name


def scan_directory(
    root: PathLike,
    predicate: Callable[[str], bool],
    emit: Callable[[Path], None],
    counters: Counters,
    recursive: bool = True,
) -> int:
    """Emit every matching file under *root*; returns how many were emitted."""
    emitted = 0
    for path in iter_candidates(root, predicate, recursive=recursive):
        counters.increment_produced()
        emit(path)
        emitted += 1
    return emitted


def feed_queue(
    root: PathLike,
    predicate: Callable[[str], bool],
    jobs: JobQueue,
    counters: Counters,
    recursive: bool = True,
) -> int:
    """Scan *root* into *jobs*, then close the queue even if the scan fails."""
    try:
        return scan_directory(root, predicate, jobs.put, counters, recursive=recursive)
    finally:
        jobs.close()
