"""
Shared test fixtures.

Settings use millisecond delays so whole job lifecycles finish in well under
a second; storage runs in mock mode and the job store in memory.
"""

import asyncio
import random
from typing import List, Optional

import pytest

from app.config import Settings
from app.jobs.models import JobRecord
from app.jobs.processor import DownloadJobProcessor
from app.jobs.store import InMemoryJobStore
from app.observability.errors import ErrorReporter
from app.storage.availability import AvailabilityProber, UrlIssuer

DELAY_MIN_MS = 40
DELAY_MAX_MS = 80


def make_settings(**overrides) -> Settings:
    values = dict(
        environment="test",
        redis_url=None,
        s3_bucket_name="",
        download_delay_min_ms=DELAY_MIN_MS,
        download_delay_max_ms=DELAY_MAX_MS,
        progress_tick_min_ms=5,
        worker_concurrency=2,
        queue_max_retries=2,
        queue_retry_backoff_seconds=0.01,
        shutdown_grace_seconds=0.5,
        rate_limit_max_requests=1000,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


class RecordingStore(InMemoryJobStore):
    """In-memory store that keeps every record it ever wrote, per job."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.history = {}

    async def set(self, job_id, record):
        await super().set(job_id, record)
        self.history.setdefault(job_id, []).append(record)

    async def update(self, job_id, mutate):
        new = await super().update(job_id, mutate)
        if new is not None:
            self.history.setdefault(job_id, []).append(new)
        return new


class CollectingReporter(ErrorReporter):
    def __init__(self):
        self.captured: List[BaseException] = []

    def capture(self, exc, **context):
        self.captured.append(exc)


def make_processor(
    store,
    *,
    prober: Optional[AvailabilityProber] = None,
    issuer: Optional[UrlIssuer] = None,
    reporter: Optional[ErrorReporter] = None,
    **kwargs,
) -> DownloadJobProcessor:
    options = dict(delay_min_ms=DELAY_MIN_MS, delay_max_ms=DELAY_MAX_MS, tick_min_ms=5, rng=random.Random(7))
    options.update(kwargs)
    return DownloadJobProcessor(
        store,
        prober or AvailabilityProber(rng=random.Random(7)),
        issuer or UrlIssuer(),
        reporter or CollectingReporter(),
        **options,
    )


async def wait_for_terminal(store, job_id: str, timeout: float = 5.0) -> JobRecord:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        record = await store.get(job_id)
        if record is not None and record.is_terminal:
            return record
        if loop.time() > deadline:
            raise AssertionError(f"job {job_id} not terminal after {timeout}s: {record}")
        await asyncio.sleep(0.005)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store() -> RecordingStore:
    return RecordingStore(ttl_seconds=3600)


@pytest.fixture
def reporter() -> CollectingReporter:
    return CollectingReporter()
