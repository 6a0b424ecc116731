#!/usr/bin/env python3
import threading
import time
import unittest
from pathlib import Path
import sys


SCRIPT_DIR = Path(__file__).resolve().parent
if str(SCRIPT_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPT_DIR))

from batch_pool import Counters
from progress_reporter import ProgressReporter


class ProgressReporterTests(unittest.TestCase):
    def test_ticks_then_prints_final_summary(self) -> None:
        lines = []
        lock = threading.Lock()

        def emit(line: str) -> None:
            with lock:
                lines.append(line)

        counters = Counters()
        for _ in range(3):
            counters.increment_produced()
        counters.increment_completed()

        reporter = ProgressReporter(counters, interval_ms=10, emit=emit).start()
        time.sleep(0.1)
        counters.increment_completed()
        counters.increment_completed()
        elapsed = reporter.stop()

        self.assertGreater(elapsed, 0.0)
        self.assertTrue(any(line.endswith("files...") for line in lines[:-2]))
        self.assertEqual(lines[-2], "Processed 3/3 files")
        self.assertTrue(lines[-1].startswith("Done in "))
        self.assertTrue(lines[-1].endswith("ms"))

    def test_stop_is_idempotent(self) -> None:
        lines = []
        reporter = ProgressReporter(Counters(), interval_ms=1000, emit=lines.append)
        reporter.start()
        first = reporter.stop()
        second = reporter.stop()
        self.assertEqual(first, second)
        self.assertEqual(lines, ["Processed 0/0 files", f"Done in {first:g}ms"])

    def test_context_manager_stops_reporter(self) -> None:
        lines = []
        with ProgressReporter(Counters(), interval_ms=1000, emit=lines.append) as reporter:
            pass
        self.assertIsNotNone(reporter.elapsed_ms)
        self.assertEqual(lines[0], "Processed 0/0 files")

    def test_tick_lines_never_show_more_completed_than_produced(self) -> None:
        lines = []
        counters = Counters()
        stop = threading.Event()

        def churn() -> None:
            while not stop.is_set():
                counters.increment_produced()
                counters.increment_completed()

        worker = threading.Thread(target=churn)
        worker.start()
        reporter = ProgressReporter(counters, interval_ms=5, emit=lines.append).start()
        time.sleep(0.1)
        stop.set()
        worker.join()
        reporter.stop()

        for line in lines:
            if not line.startswith("Processed"):
                continue
            done, total = line.split()[1].split("/")
            self.assertLessEqual(int(done), int(total))

    def test_invalid_interval_rejected(self) -> None:
        with self.assertRaises(ValueError):
            ProgressReporter(Counters(), interval_ms=0)

    def test_stop_before_start_raises(self) -> None:
        with self.assertRaises(RuntimeError):
            ProgressReporter(Counters()).stop()


if __name__ == "__main__":
    unittest.main()
