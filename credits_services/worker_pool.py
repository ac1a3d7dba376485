"""
In-process execution channel for generation jobs.

Contract:
    ``InProcessWorkQueue`` implements the kernel's WorkQueue protocol.
    ``JobWorkerPool`` drains it with a bounded thread pool and calls
    ``JobOrchestrator.process_job()`` for each item.
    ``WindowedSubmissionThrottle`` implements SubmissionThrottle as a fixed
    window quota on provider submissions.

Architecture position:
    Services.  Stands in for an external job queue in single-process
    deployments and tests.

Invariants enforced:
    - At most ``max_workers`` jobs are processed concurrently.
    - A work item whose job row is missing is retried with exponential
      backoff up to ``max_attempts`` and then dropped with an
      ``orphaned_work_item`` log entry.  The stalled-job sweep refunds any
      job that stays non-terminal.
    - A failing item never stops the pool.

Non-goals:
    - No persistence: items queued in memory are lost on process exit and
      recovered by the stalled-job sweep.
"""

from __future__ import annotations

import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from typing import Callable

from credits_kernel.domain.protocols import WorkItem
from credits_kernel.exceptions import JobNotFoundError
from credits_kernel.logging_config import LogContext, get_logger
from credits_kernel.services.job_orchestrator import JobOrchestrator

logger = get_logger("services.worker_pool")


class InProcessWorkQueue:
    """Thread-safe FIFO of WorkItems."""

    def __init__(self) -> None:
        self._items: queue.Queue[WorkItem] = queue.Queue()

    def enqueue(self, item: WorkItem) -> None:
        self._items.put(item)
        logger.debug(
            "work_item_enqueued",
            extra={"job_id": str(item.job_id), "attempt": item.attempt},
        )

    def get(self, timeout: float | None = None) -> WorkItem | None:
        try:
            return self._items.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[WorkItem]:
        items = []
        while True:
            try:
                items.append(self._items.get_nowait())
            except queue.Empty:
                return items

    def __len__(self) -> int:
        return self._items.qsize()


class WindowedSubmissionThrottle:
    """Allows at most ``max_per_window`` acquisitions per fixed window.

    ``acquire()`` blocks until the current window has capacity.
    """

    def __init__(
        self,
        max_per_window: int,
        window_seconds: float,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_per_window <= 0:
            raise ValueError("max_per_window must be positive")
        self.max_per_window = max_per_window
        self.window_seconds = window_seconds
        self._monotonic = monotonic
        self._sleep = sleep
        self._lock = threading.Lock()
        self._count = 0
        self._reset_at = monotonic() + window_seconds

    def try_acquire(self) -> float:
        """Take a slot if available.  Returns 0.0, or the seconds to wait."""
        with self._lock:
            now = self._monotonic()
            if now >= self._reset_at:
                self._count = 0
                self._reset_at = now + self.window_seconds
            if self._count < self.max_per_window:
                self._count += 1
                return 0.0
            return self._reset_at - now

    def acquire(self) -> None:
        while True:
            wait = self.try_acquire()
            if wait <= 0:
                return
            logger.debug("submission_throttled", extra={"wait_seconds": wait})
            self._sleep(wait)


class JobWorkerPool:
    """
    Bounded worker pool over an InProcessWorkQueue.

    Contract:
        - ``start()`` / ``stop()`` run a dispatcher thread feeding a
          ThreadPoolExecutor of ``max_workers`` threads.
        - ``run_pending()`` processes everything currently queued on the
          calling thread (public for testing and one-shot runs).
        - ``handle()`` processes a single item.
    """

    def __init__(
        self,
        work_queue: InProcessWorkQueue,
        orchestrator: JobOrchestrator,
        max_workers: int = 4,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        poll_timeout: float = 0.5,
    ):
        self._queue = work_queue
        self._orchestrator = orchestrator
        self._max_workers = max_workers
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._poll_timeout = poll_timeout
        self._stop_event = threading.Event()
        self._executor: ThreadPoolExecutor | None = None
        self._dispatcher: threading.Thread | None = None
        self._slots = threading.BoundedSemaphore(max_workers)

    # ------------------------------------------------------------------
    # Item handling
    # ------------------------------------------------------------------

    def handle(self, item: WorkItem) -> None:
        with LogContext.bind(job_id=item.job_id, user_id=item.user_id):
            try:
                self._orchestrator.process_job(item.job_id)
            except JobNotFoundError:
                if item.attempt >= self._max_attempts:
                    logger.error(
                        "orphaned_work_item",
                        extra={"attempt": item.attempt},
                    )
                    return
                self._retry(item, "job_not_found")
            except Exception:
                logger.exception("work_item_failed", extra={"attempt": item.attempt})
                if item.attempt < self._max_attempts:
                    self._retry(item, "error")

    def _retry(self, item: WorkItem, cause: str) -> None:
        delay = self._backoff_seconds * (2 ** (item.attempt - 1))
        logger.warning(
            "work_item_retry",
            extra={"attempt": item.attempt, "cause": cause, "delay_seconds": delay},
        )
        self._sleep(delay)
        self._queue.enqueue(replace(item, attempt=item.attempt + 1))

    def run_pending(self) -> int:
        """Process queued items, including retries they produce.  Returns count."""
        processed = 0
        while True:
            item = self._queue.get(timeout=0)
            if item is None:
                return processed
            self.handle(item)
            processed += 1

    # ------------------------------------------------------------------
    # Background operation
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._dispatcher is not None and self._dispatcher.is_alive():
            return
        self._stop_event.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="job-worker"
        )
        self._dispatcher = threading.Thread(
            target=self._dispatch_loop, name="job-dispatcher", daemon=True
        )
        self._dispatcher.start()
        logger.info("worker_pool_started", extra={"max_workers": self._max_workers})

    def stop(self, wait: bool = True) -> None:
        self._stop_event.set()
        if self._dispatcher is not None:
            self._dispatcher.join()
            self._dispatcher = None
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
        logger.info("worker_pool_stopped")

    @property
    def is_running(self) -> bool:
        return self._dispatcher is not None and self._dispatcher.is_alive()

    def _dispatch_loop(self) -> None:
        while not self._stop_event.is_set():
            # Block here rather than queueing unbounded work in the executor
            if not self._slots.acquire(timeout=self._poll_timeout):
                continue
            item = self._queue.get(timeout=self._poll_timeout)
            if item is None:
                self._slots.release()
                continue
            future = self._executor.submit(self.handle, item)
            future.add_done_callback(self._release_slot)

    def _release_slot(self, future: Future) -> None:
        self._slots.release()
