"""Download job body, shared by the in-process queue and the Celery worker."""

import asyncio
import logging
import random
import time
from typing import Optional

from app.config import Settings
from app.core.errors import InternalError, ResourceUnavailable, TransientInfraError
from app.jobs.models import JobOutcome, JobRecord, WorkItem
from app.jobs.store import JobStore
from app.observability.errors import ErrorReporter
from app.observability.logging import request_id_ctx
from app.storage.availability import AvailabilityProber, UrlIssuer

logger = logging.getLogger(__name__)

PROGRESS_STEP = 10
PROGRESS_CEILING = 90


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class DownloadJobProcessor:
    """Runs one download job from processing to its terminal record.

    Waits a simulated backing-I/O delay while ticking progress, probes the
    bucket, then writes exactly one terminal record. Transient infrastructure
    errors propagate so the queue can retry; anything else is reported and
    recorded as failed.
    """

    def __init__(
        self,
        store: JobStore,
        prober: AvailabilityProber,
        issuer: UrlIssuer,
        reporter: ErrorReporter,
        *,
        delay_min_ms: int = 10000,
        delay_max_ms: int = 200000,
        delay_enabled: bool = True,
        tick_min_ms: int = 1000,
        expose_errors: bool = False,
        rng: Optional[random.Random] = None,
    ):
        self._store = store
        self._prober = prober
        self._issuer = issuer
        self._reporter = reporter
        self._delay_min_ms = delay_min_ms
        self._delay_max_ms = delay_max_ms
        self._delay_enabled = delay_enabled
        self._tick_min_ms = tick_min_ms
        self._expose_errors = expose_errors
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: JobStore,
        prober: AvailabilityProber,
        issuer: UrlIssuer,
        reporter: ErrorReporter,
    ) -> "DownloadJobProcessor":
        return cls(
            store,
            prober,
            issuer,
            reporter,
            delay_min_ms=settings.download_delay_min_ms,
            delay_max_ms=settings.download_delay_max_ms,
            delay_enabled=settings.download_delay_enabled,
            tick_min_ms=settings.progress_tick_min_ms,
            expose_errors=settings.is_development,
        )

    def draw_delay_ms(self) -> int:
        if not self._delay_enabled:
            return 0
        return self._rng.randint(self._delay_min_ms, self._delay_max_ms)

    async def run(self, item: WorkItem) -> None:
        await self.process(item.job_id, item.file_id)

    async def process(self, job_id: str, file_id: int) -> Optional[JobRecord]:
        token = request_id_ctx.set(f"job-{job_id[:8]}")
        try:
            return await self._process(job_id, file_id)
        finally:
            request_id_ctx.reset(token)

    async def _process(self, job_id: str, file_id: int) -> Optional[JobRecord]:
        start = time.monotonic()

        started = await self._store.update(job_id, lambda cur: cur.start_processing())
        if started is None:
            current = await self._store.get(job_id)
            if current is None:
                logger.warning("Job=%s no longer exists, skipping", job_id)
            else:
                logger.info("Job=%s already %s, skipping redelivery", job_id, current.status.value)
            return current

        try:
            return await self._execute_checked(job_id, file_id, start)
        except TransientInfraError:
            raise
        except ResourceUnavailable:
            elapsed = _elapsed_ms(start)
            logger.info("Failed job=%s file_id=%d, file not found", job_id, file_id)
            return await self._store.update(
                job_id,
                lambda cur: cur.fail(
                    JobOutcome.NOT_FOUND,
                    f"File not found after {elapsed / 1000:.1f} seconds",
                    elapsed,
                ),
            )
        except InternalError as error:
            return await self._record_internal_error(job_id, error, _elapsed_ms(start))

    async def _execute_checked(self, job_id: str, file_id: int, start: float) -> Optional[JobRecord]:
        try:
            return await self._execute(job_id, file_id, start)
        except (TransientInfraError, ResourceUnavailable):
            raise
        except Exception as exc:
            raise InternalError.wrapping(exc, job_id=job_id, file_id=file_id) from exc

    async def _record_internal_error(
        self, job_id: str, error: InternalError, processing_time_ms: Optional[int] = None
    ) -> Optional[JobRecord]:
        self._reporter.capture(error, **error.details)
        if self._expose_errors:
            message = f"Download failed: {error.message}"
        else:
            message = "Download failed due to an internal error"
        return await self._store.update(
            job_id, lambda cur: cur.fail(JobOutcome.INTERNAL_ERROR, message, processing_time_ms)
        )

    async def _execute(self, job_id: str, file_id: int, start: float) -> Optional[JobRecord]:
        delay_ms = self.draw_delay_ms()
        logger.info(
            "Processing job=%s file_id=%d | delay=%.1fs (range: %.0fs-%.0fs)",
            job_id,
            file_id,
            delay_ms / 1000,
            self._delay_min_ms / 1000,
            self._delay_max_ms / 1000,
        )

        interval_s = max(self._tick_min_ms, delay_ms / 10) / 1000
        ticker = asyncio.create_task(self._tick_progress(job_id, interval_s))
        try:
            await asyncio.sleep(delay_ms / 1000)
        finally:
            # no tick may land after the terminal write below
            ticker.cancel()
            try:
                await ticker
            except asyncio.CancelledError:
                pass

        result = await self._prober.probe(file_id)
        elapsed = _elapsed_ms(start)
        if not result.exists or result.key is None:
            raise ResourceUnavailable(file_id)

        download_url = await self._issuer.issue(result.key)
        if download_url is None:
            logger.warning("Job=%s file_id=%d located but no download link could be issued", job_id, file_id)
            return await self._store.update(
                job_id,
                lambda cur: cur.fail(
                    JobOutcome.LINK_UNAVAILABLE,
                    "File located but a download link could not be issued",
                    elapsed,
                ),
            )

        record = await self._store.update(
            job_id, lambda cur: cur.complete(download_url, result.size, elapsed)
        )
        logger.info("Completed job=%s file_id=%d, time=%dms", job_id, file_id, elapsed)
        return record

    async def _tick_progress(self, job_id: str, interval_s: float) -> None:
        progress = 0
        while progress < PROGRESS_CEILING:
            await asyncio.sleep(interval_s)
            progress = min(progress + PROGRESS_STEP, PROGRESS_CEILING)
            target = progress
            try:
                await self._store.update(job_id, lambda cur: cur.with_progress(target))
            except TransientInfraError as e:
                logger.warning("Progress update for job=%s failed: %s", job_id, e)

    async def fail_exhausted(self, item: WorkItem, error: BaseException) -> None:
        """Failure hook for work items that used up their queue retries."""
        logger.error("Marking job=%s failed after retries: %s", item.job_id, error)
        await self._store.update(
            item.job_id,
            lambda cur: cur.fail(
                JobOutcome.RETRIES_EXHAUSTED,
                "Download failed after repeated infrastructure errors",
            ),
        )

    async def fail_crashed(self, item: WorkItem, error: BaseException) -> None:
        """Failure hook for work items whose task died outside the job body."""
        logger.error("Marking job=%s failed after a non-retryable error: %r", item.job_id, error)
        await self._record_internal_error(
            item.job_id, InternalError.wrapping(error, job_id=item.job_id, file_id=item.file_id)
        )
