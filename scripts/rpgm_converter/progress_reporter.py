#!/usr/bin/env python3
"""Periodic ``completed/produced`` progress lines for a running batch."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from batch_pool import Counters

DEFAULT_INTERVAL_MS = 300


class ProgressReporter:
    def __init__(
        self,
        counters: Counters,
        interval_ms: int = DEFAULT_INTERVAL_MS,
        emit: Optional[Callable[[str], None]] = None,
    ) -> None:
        if interval_ms <= 0:
            raise ValueError(f"progress interval must be positive, got {interval_ms}")
        self.counters = counters
        self.interval = interval_ms / 1000.0
        self.emit = emit or logging.info
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._started_at: Optional[float] = None
        self.elapsed_ms: Optional[float] = None

    @property
    def started(self) -> bool:
        return self._thread is not None

    def start(self) -> "ProgressReporter":
        if self._thread is not None:
            raise RuntimeError("progress reporter already started")
        self._started_at = time.perf_counter()
        self._thread = threading.Thread(
            target=self._run,
            name="rpgm-progress",
            daemon=True,
        )
        self._thread.start()
        return self

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            completed, produced = self.counters.snapshot()
            self.emit(f"Processed {completed}/{produced} files...")

    def stop(self) -> float:
        """Stop ticking, print the final tally and return elapsed milliseconds."""
        if self.elapsed_ms is not None:
            return self.elapsed_ms
        if self._thread is None:
            raise RuntimeError("progress reporter was never started")
        self._stop.set()
        self._thread.join()
        self.elapsed_ms = 1000.0 * (time.perf_counter() - self._started_at)

        completed, produced = self.counters.snapshot()
        self.emit(f"Processed {completed}/{produced} files")
        self.emit(f"Done in {self.elapsed_ms:g}ms")
        return self.elapsed_ms

    def __enter__(self) -> "ProgressReporter":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
