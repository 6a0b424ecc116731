#!/usr/bin/env python3
"""
rpgm_convert.py
===============

Batch decrypt RPG Maker MV/MZ image containers back into plain PNG files.

Every `.rpgmvp` / `.png_` file found under the given directory is decrypted
next to itself (`Actor1.rpgmvp` -> `Actor1.png`). Files are handed from the
directory scanner to a pool of worker threads through a bounded queue, so
memory stays flat on large game folders. A corrupt or foreign file is logged
and counted but never stops the batch.

Example usage:

    python rpgm_convert.py "Game/www/img" \\
        --workers 8 \\
        --verify \\
        --report reports/decrypt.json

Use `--flat` to only look at the top-level directory and `--suffix` to change
which container extensions are picked up.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from batch_pool import (
    DEFAULT_SUFFIXES,
    QUEUE_SLOTS_PER_WORKER,
    BatchStats,
    Counters,
    JobQueue,
    TraversalError,
    WorkerPool,
    check_root,
    default_worker_count,
    feed_queue,
    normalize_suffix,
    suffix_predicate,
)
from progress_reporter import DEFAULT_INTERVAL_MS, ProgressReporter
from rpgm_decrypt import DEFAULT_OUTPUT_EXTENSION, decrypt_file, normalize_extension


@dataclass(frozen=True)
class BatchConfig:
    root: Path
    workers: int = 1
    recursive: bool = True
    suffixes: Tuple[str, ...] = DEFAULT_SUFFIXES
    output_extension: str = DEFAULT_OUTPUT_EXTENSION
    queue_size: Optional[int] = None
    progress: bool = False
    progress_interval_ms: int = DEFAULT_INTERVAL_MS
    verify: bool = False
    skip_existing: bool = False
    dry_run: bool = False

    def __post_init__(self) -> None:
        if self.progress_interval_ms <= 0:
            raise ValueError(
                f"progress interval must be positive, got {self.progress_interval_ms}"
            )
        normalize_extension(self.output_extension)

    def effective_queue_size(self) -> int:
        """0 means unbounded."""
        if self.queue_size is None:
            return max(1, self.workers) * QUEUE_SLOTS_PER_WORKER
        return max(0, self.queue_size)


@dataclass
class BatchResult:
    produced: int
    completed: int
    stats: BatchStats
    elapsed_ms: float


def parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Batch decrypt RPG Maker MV/MZ image containers (.rpgmvp, .png_) to PNG."
    )
    parser.add_argument(
        "root",
        type=Path,
        help="Directory to scan for encrypted images.",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=default_worker_count(),
        help="Number of worker threads (default: number of CPUs).",
    )
    parser.add_argument(
        "--flat",
        action="store_true",
        help="Only decrypt files directly inside ROOT (no recursion).",
    )
    parser.add_argument(
        "--suffix",
        action="append",
        default=[],
        metavar="SUFFIX",
        help=(
            "Container suffix to decrypt. Can be repeated and also supports "
            "comma-separated values (default: %s)." % ",".join(DEFAULT_SUFFIXES)
        ),
    )
    parser.add_argument(
        "--output-extension",
        default=DEFAULT_OUTPUT_EXTENSION,
        help="Extension given to decrypted files (default: %(default)s).",
    )
    parser.add_argument(
        "--queue-size",
        type=int,
        default=None,
        help=(
            "Maximum number of paths waiting for a worker; 0 disables the bound "
            "(default: %d per worker)." % QUEUE_SLOTS_PER_WORKER
        ),
    )
    parser.add_argument(
        "--no-progress",
        action="store_true",
        help="Do not print periodic progress lines.",
    )
    parser.add_argument(
        "--progress-interval",
        type=int,
        default=DEFAULT_INTERVAL_MS,
        metavar="MS",
        help="Milliseconds between progress lines (default: %(default)s).",
    )
    parser.add_argument(
        "--verify",
        action="store_true",
        help="Check every decrypted payload with Pillow before writing it.",
    )
    parser.add_argument(
        "--skip-existing",
        action="store_true",
        help="Leave files alone when the decrypted output already exists.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Decrypt in memory and show planned writes without touching the filesystem.",
    )
    parser.add_argument(
        "--report",
        type=Path,
        help="Optional path to store a JSON summary of the run.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging.",
    )
    return parser.parse_args(argv)


def parse_suffixes(raw_values: Sequence[str]) -> Tuple[str, ...]:
    suffixes: List[str] = []
    for raw in raw_values:
        for token in raw.split(","):
            if not token.strip():
                continue
            suffix = normalize_suffix(token)
            if suffix not in suffixes:
                suffixes.append(suffix)
    return tuple(suffixes) or DEFAULT_SUFFIXES


def build_config(args: argparse.Namespace) -> BatchConfig:
    return BatchConfig(
        root=args.root,
        workers=max(1, args.workers),
        recursive=not args.flat,
        suffixes=parse_suffixes(args.suffix),
        output_extension=args.output_extension,
        queue_size=args.queue_size,
        progress=not args.no_progress,
        progress_interval_ms=args.progress_interval,
        verify=args.verify,
        skip_existing=args.skip_existing,
        dry_run=args.dry_run,
    )


def decrypt_dir(config: BatchConfig) -> BatchResult:
    """Decrypt every matching container under ``config.root``.

    Raises TraversalError before any worker starts when the root is unusable.
    Per-file failures end up in the returned stats.
    """
    root = check_root(config.root)
    predicate = suffix_predicate(config.suffixes)
    counters = Counters()
    jobs = JobQueue(maxsize=config.effective_queue_size())
    handler = partial(
        decrypt_file,
        extension=config.output_extension,
        verify=config.verify,
        skip_existing=config.skip_existing,
        dry_run=config.dry_run,
    )
    pool = WorkerPool(handler, workers=config.workers)

    logging.info(
        "Scanning %s (%s) for %s with %d worker thread(s).",
        root,
        "recursive" if config.recursive else "flat",
        ", ".join(config.suffixes),
        pool.workers,
    )

    reporter: Optional[ProgressReporter] = None
    if config.progress:
        reporter = ProgressReporter(counters, interval_ms=config.progress_interval_ms)

    start_time = time.perf_counter()
    pool.start(jobs, counters)
    try:
        if reporter is not None:
            reporter.start()
        feed_queue(root, predicate, jobs, counters, recursive=config.recursive)
    finally:
        # feed_queue closes the queue itself; this covers a failure before it ran.
        if not jobs.closed:
            jobs.close()
        stats = pool.join()
        elapsed_ms = 1000.0 * (time.perf_counter() - start_time)
        if reporter is not None and reporter.started:
            reporter.stop()

    completed, produced = counters.snapshot()
    logging.info(
        "Decryption complete in %.1fms: %d converted, %d skipped, %d failed (%d/%d files)",
        elapsed_ms,
        stats.converted,
        stats.skipped,
        stats.failed,
        completed,
        produced,
    )
    return BatchResult(
        produced=produced,
        completed=completed,
        stats=stats,
        elapsed_ms=elapsed_ms,
    )


def build_report(config: BatchConfig, result: BatchResult) -> Dict[str, object]:
    return {
        "root": str(config.root),
        "recursive": config.recursive,
        "suffixes": list(config.suffixes),
        "workers": config.workers,
        "stats": {
            "produced": result.produced,
            "completed": result.completed,
            "converted": result.stats.converted,
            "skipped": result.stats.skipped,
            "failed": result.stats.failed,
        },
        "failures": result.stats.failures,
        "elapsed_ms": round(result.elapsed_ms, 3),
    }


def write_report(path: Path, payload: Dict[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("PIL").setLevel(logging.INFO)

    try:
        config = build_config(args)
    except ValueError as exc:
        logging.error("Invalid arguments: %s", exc)
        return 2

    try:
        result = decrypt_dir(config)
    except TraversalError as exc:
        logging.error("%s", exc)
        return 1

    if args.report:
        if config.dry_run:
            logging.info("[dry-run] report would be written to %s", args.report)
        else:
            write_report(args.report, build_report(config, result))
            logging.info("Wrote decryption report to %s", args.report)

    if result.stats.failed:
        logging.warning("%d file(s) could not be decrypted.", result.stats.failed)
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
