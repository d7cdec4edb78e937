"""Bounded worker pool dispatching tasks in order with cooperative cancellation."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum

from db_sync.config import MAX_THREADS, MIN_THREADS
from db_sync.orchestrator.models import OutcomeRecord, SyncTask

logger = logging.getLogger(__name__)

TaskRunner = Callable[[SyncTask], OutcomeRecord]


class CancellationState(str, Enum):
    """Scheduler lifecycle with respect to stop requests."""

    RUNNING = "running"
    STOP_REQUESTED = "stop_requested"
    STOPPED = "stopped"


@dataclass(slots=True)
class SchedulerReport:
    """What the scheduler did with the task list."""

    outcomes: list[OutcomeRecord] = field(default_factory=list)
    dispatched: int = 0
    not_dispatched: int = 0
    peak_concurrency: int = 0
    cancelled: bool = False


class Scheduler:
    """Run at most ``max_workers`` tasks at once, submitting them in list order.

    Submission of the next task blocks on a bounded semaphore; the slot is
    released by a done-callback of the finishing future. After ``request_stop``
    nothing new is dispatched and running tasks stop at their next safe point.
    """

    def __init__(self, *, max_workers: int) -> None:
        if not MIN_THREADS <= max_workers <= MAX_THREADS:
            raise ValueError(f"max_workers must be between {MIN_THREADS} and {MAX_THREADS}")
        self.max_workers = max_workers
        self._stop = threading.Event()
        self._state = CancellationState.RUNNING
        # Reentrant: request_stop may run from a signal handler on the main thread.
        self._state_lock = threading.RLock()
        self._active = 0
        self._peak = 0

    @property
    def state(self) -> CancellationState:
        with self._state_lock:
            return self._state

    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def request_stop(self, *, reason: str = "request") -> None:
        with self._state_lock:
            if self._state != CancellationState.RUNNING:
                return
            self._state = CancellationState.STOP_REQUESTED
        self._stop.set()
        logger.warning("Stop requested (%s); no new tasks will be dispatched", reason)

    def run(self, tasks: Sequence[SyncTask], runner: TaskRunner) -> SchedulerReport:
        """Dispatch every task exactly once and wait for all submitted ones."""

        report = SchedulerReport()
        slots = threading.BoundedSemaphore(self.max_workers)
        futures: list[Future[OutcomeRecord]] = []

        with ThreadPoolExecutor(
            max_workers=self.max_workers,
            thread_name_prefix="db-sync",
        ) as pool:
            for task in tasks:
                slots.acquire()
                if self.stop_requested():
                    slots.release()
                    break
                future = pool.submit(self._run_one, runner, task)
                future.add_done_callback(lambda _done: slots.release())
                futures.append(future)
                report.dispatched += 1

        report.outcomes = [future.result() for future in futures]
        report.not_dispatched = len(tasks) - report.dispatched
        report.peak_concurrency = self._peak

        with self._state_lock:
            if self._state == CancellationState.STOP_REQUESTED:
                self._state = CancellationState.STOPPED
            report.cancelled = self._state == CancellationState.STOPPED
        if report.not_dispatched:
            logger.warning("%d task(s) were not dispatched", report.not_dispatched)
        return report

    @contextmanager
    def signal_handlers(self) -> Iterator[None]:
        """Route SIGINT/SIGTERM to ``request_stop`` while the block runs."""

        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(reason=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

    def _run_one(self, runner: TaskRunner, task: SyncTask) -> OutcomeRecord:
        with self._state_lock:
            self._active += 1
            self._peak = max(self._peak, self._active)
        try:
            return runner(task)
        finally:
            with self._state_lock:
                self._active -= 1
