"""Background progress reporting over the status aggregator."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from db_sync.orchestrator.aggregator import StatusAggregator
from db_sync.orchestrator.models import ProgressSnapshot

logger = logging.getLogger(__name__)

ProgressReporter = Callable[[ProgressSnapshot], None]


def log_progress(snapshot: ProgressSnapshot) -> None:
    percent = 100.0 * snapshot.completed / snapshot.total if snapshot.total else 100.0
    logger.info(
        "Progress: %d/%d tasks completed (%.0f%%), elapsed %.0fs",
        snapshot.completed,
        snapshot.total,
        percent,
        snapshot.elapsed_seconds,
    )


class ProgressMonitor:
    """Periodically read the completed count and hand a snapshot to ``reporter``.

    The monitor only reads through the aggregator; it stops on its own once every
    task is complete, or when ``stop()`` is called.
    """

    def __init__(
        self,
        aggregator: StatusAggregator,
        *,
        total: int,
        interval_seconds: float,
        reporter: ProgressReporter = log_progress,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.aggregator = aggregator
        self.total = total
        self.interval_seconds = interval_seconds
        self.reporter = reporter
        self._clock = clock
        self._started = clock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            completed=self.aggregator.completed_count(),
            total=self.total,
            elapsed_seconds=max(0.0, self._clock() - self._started),
        )

    def start(self) -> None:
        if self._thread is not None:
            return
        self._started = self._clock()
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="db-sync-monitor")
        self._thread.start()
        logger.debug("Progress monitor started")

    def stop(self, *, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is None:
            return
        self._thread.join(timeout=timeout)
        self._thread = None
        logger.debug("Progress monitor stopped")

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            snapshot = self.snapshot()
            self.reporter(snapshot)
            if snapshot.done:
                return
