"""
Download processing Celery task.

Flow: processing -> simulated delay with progress ticks -> probe -> URL -> terminal record

Each task invocation runs the async job body under asyncio.run with its own
Redis job store connection.
"""

import asyncio
import logging
from typing import Optional

from celery import Task

from app.config import settings
from app.core.errors import TransientInfraError
from app.jobs.models import WorkItem
from app.jobs.processor import DownloadJobProcessor
from app.jobs.store import RedisJobStore
from app.observability.errors import LoggingErrorReporter
from app.storage.availability import AvailabilityProber, UrlIssuer
from app.storage.s3_client import S3ObjectStore
from app.workers.celery_app import TASK_NAME, celery_app

logger = logging.getLogger(__name__)

_object_store: Optional[S3ObjectStore] = None


def _get_object_store() -> Optional[S3ObjectStore]:
    """One S3 client per worker process; None in mock mode."""
    global _object_store
    if _object_store is None and settings.s3_bucket_name:
        _object_store = S3ObjectStore.from_settings(settings)
    return _object_store


def open_store() -> RedisJobStore:
    return RedisJobStore.from_url(settings.redis_url, ttl_seconds=settings.job_ttl_seconds)


def build_processor(store) -> DownloadJobProcessor:
    object_store = _get_object_store()
    return DownloadJobProcessor.from_settings(
        settings,
        store,
        AvailabilityProber(object_store),
        UrlIssuer(object_store, expiry_seconds=settings.presigned_url_expiry_seconds),
        LoggingErrorReporter(),
    )


async def _process(item: WorkItem) -> None:
    store = open_store()
    try:
        await build_processor(store).run(item)
    finally:
        await store.close()


async def _fail_exhausted(item: WorkItem, error: BaseException) -> None:
    store = open_store()
    try:
        await build_processor(store).fail_exhausted(item, error)
    finally:
        await store.close()


async def _fail_crashed(item: WorkItem, error: BaseException) -> None:
    store = open_store()
    try:
        await build_processor(store).fail_crashed(item, error)
    finally:
        await store.close()


class DownloadTask(Task):
    """Converts a job to failed once Celery gives up on it.

    Transient errors only get here after autoretry ran out; anything else
    crashed the task without being retried.
    """

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        job_id, file_id = args
        item = WorkItem(job_id=job_id, file_id=file_id)
        if isinstance(exc, TransientInfraError):
            logger.error("Task %s for job=%s exhausted its retries: %r", task_id, job_id, exc)
            asyncio.run(_fail_exhausted(item, exc))
        else:
            logger.error("Task %s for job=%s crashed: %r", task_id, job_id, exc)
            asyncio.run(_fail_crashed(item, exc))


@celery_app.task(
    bind=True,
    base=DownloadTask,
    name=TASK_NAME,
    autoretry_for=(TransientInfraError,),
    max_retries=settings.queue_max_retries,
    retry_backoff=max(1, int(settings.queue_retry_backoff_seconds)),
    retry_backoff_max=int(settings.queue_retry_backoff_max_seconds),
    retry_jitter=True,
)
def process_download(self, job_id: str, file_id: int) -> None:
    """Run one download job. TransientInfraError triggers a Celery retry."""
    asyncio.run(_process(WorkItem(job_id=job_id, file_id=file_id)))
