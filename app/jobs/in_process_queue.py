"""In-process job queue using asyncio for local development.

A fixed pool of worker tasks drains an asyncio.Queue, so at most
`concurrency` jobs run at once and the rest wait in the queue.
No external dependencies (Redis, Celery) needed, and nothing survives a
restart: items still queued or running when the process exits are lost.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from app.core.errors import TransientInfraError
from app.jobs.dispatcher import FailureHook, JobDispatcher
from app.jobs.models import WorkItem

logger = logging.getLogger(__name__)


class InProcessQueue(JobDispatcher):
    """Local async job queue with a bounded worker pool."""

    def __init__(
        self,
        runner: Callable[[WorkItem], Awaitable[None]],
        on_exhausted: FailureHook,
        concurrency: int = 5,
        max_retries: int = 3,
        retry_backoff_seconds: float = 1.0,
        retry_backoff_max_seconds: Optional[float] = None,
        shutdown_grace_seconds: float = 10.0,
        poll_interval: float = 1.0,
    ):
        """
        runner: coroutine function doing the work for one item.
            TransientInfraError from it is retried with exponential backoff;
            once retries are used up, on_exhausted(item, error) is awaited.
        """
        self._queue: asyncio.Queue[WorkItem] = asyncio.Queue()
        self._runner = runner
        self._on_exhausted = on_exhausted
        self._concurrency = concurrency
        self._max_retries = max_retries
        self._retry_backoff_seconds = retry_backoff_seconds
        self._retry_backoff_max_seconds = retry_backoff_max_seconds
        self._shutdown_grace_seconds = shutdown_grace_seconds
        self._poll_interval = poll_interval
        self._workers: List[asyncio.Task] = []
        self._running = False
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def submit(self, item: WorkItem) -> None:
        if not self._running:
            raise TransientInfraError("Work queue is not accepting jobs")
        self._queue.put_nowait(item)

    async def start(self) -> None:
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker_loop(n), name=f"download-worker-{n}")
            for n in range(self._concurrency)
        ]
        logger.info("In-process queue started with %d workers", self._concurrency)

    async def stop(self) -> None:
        """Stop taking new items, let running jobs finish within the grace period, then cancel."""
        self._running = False
        if not self._workers:
            return
        _, still_running = await asyncio.wait(self._workers, timeout=self._shutdown_grace_seconds)
        for task in still_running:
            task.cancel()
        for task in still_running:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if still_running:
            logger.warning("Abandoned %d running job(s) at shutdown", len(still_running))
        if self._queue.qsize():
            logger.warning("Dropped %d queued job(s) at shutdown", self._queue.qsize())
        self._workers = []

    async def _worker_loop(self, n: int) -> None:
        """Process jobs one at a time from the queue."""
        while self._running:
            try:
                item = await asyncio.wait_for(self._queue.get(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                continue

            self._in_flight += 1
            try:
                await self._run(item)
            except Exception:
                logger.exception("Worker %d failed to settle job=%s", n, item.job_id)
            finally:
                self._in_flight -= 1
                self._queue.task_done()

    def _retrying(self, item: WorkItem) -> AsyncRetrying:
        def log_retry(retry_state: RetryCallState) -> None:
            logger.warning(
                "Retrying job=%s after transient error (attempt %d/%d): %s",
                item.job_id,
                retry_state.attempt_number,
                self._max_retries,
                retry_state.outcome.exception(),
            )

        wait_options = {"initial": self._retry_backoff_seconds, "jitter": self._retry_backoff_seconds}
        if self._retry_backoff_max_seconds is not None:
            wait_options["max"] = self._retry_backoff_max_seconds
        return AsyncRetrying(
            retry=retry_if_exception_type(TransientInfraError),
            stop=stop_after_attempt(self._max_retries + 1),
            wait=wait_exponential_jitter(**wait_options),
            before_sleep=log_retry,
            reraise=True,
        )

    async def _run(self, item: WorkItem) -> None:
        try:
            await self._retrying(item)(self._runner, item)
        except TransientInfraError as e:
            logger.error("Job=%s exhausted %d retries: %s", item.job_id, self._max_retries, e)
            await self._on_exhausted(item, e)
