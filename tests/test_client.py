"""Tests for the polling client."""

import json
import random

import httpx
import pytest

from app.client.download_client import DownloadClient, backoff_with_jitter
from app.core.errors import NotFoundError, ValidationError


class CeilingRandom(random.Random):
    """Always picks the top of the jitter range."""

    def uniform(self, a, b):
        return b


def make_client(handler, sleeps=None, rng=None) -> DownloadClient:
    async def fake_sleep(delay):
        if sleeps is not None:
            sleeps.append(delay)

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test")
    return DownloadClient(http_client=http_client, sleep=fake_sleep, rng=rng)


def status_sequence(*statuses):
    remaining = list(statuses)

    def handler(request: httpx.Request) -> httpx.Response:
        status = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        return httpx.Response(200, json={"jobId": "job-1", "status": status})

    return handler


class TestBackoff:
    def test_delay_never_exceeds_ceiling(self) -> None:
        rng = random.Random(3)
        for attempt in range(10):
            delay = backoff_with_jitter(attempt, 2.0, 30.0, rng=rng)
            assert 0 <= delay <= min(30.0, 2.0 * 2 ** attempt)

    def test_ceiling_grows_then_caps(self) -> None:
        rng = CeilingRandom()
        delays = [backoff_with_jitter(a, 2.0, 30.0, rng=rng) for a in range(6)]
        assert delays == [2.0, 4.0, 8.0, 16.0, 30.0, 30.0]


class TestDownloadClient:
    @pytest.mark.asyncio
    async def test_initiate_posts_file_ids(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, request.url.path, json.loads(request.content)))
            return httpx.Response(200, json={"jobId": "job-1", "status": "queued", "totalFileIds": 1, "jobIds": ["job-1"]})

        async with make_client(handler) as client:
            body = await client.initiate([70000])

        assert body["jobId"] == "job-1"
        assert seen == [("POST", "/v1/download/initiate", {"file_ids": [70000]})]

    @pytest.mark.asyncio
    async def test_initiate_rejected_raises_validation_error(self) -> None:
        def handler(request):
            return httpx.Response(400, json={"error": "Bad Request", "message": "File id 9999 out of range"})

        async with make_client(handler) as client:
            with pytest.raises(ValidationError, match="9999"):
                await client.initiate([9999])

    @pytest.mark.asyncio
    async def test_unknown_job_raises_not_found(self) -> None:
        async with make_client(lambda request: httpx.Response(404, json={})) as client:
            with pytest.raises(NotFoundError):
                await client.get_status("nope")

    @pytest.mark.asyncio
    async def test_server_error_is_raised(self) -> None:
        async with make_client(lambda request: httpx.Response(503, json={})) as client:
            with pytest.raises(httpx.HTTPStatusError):
                await client.get_status("job-1")

    @pytest.mark.asyncio
    async def test_wait_stops_on_terminal_status(self) -> None:
        sleeps = []
        handler = status_sequence("queued", "processing", "processing", "completed")

        async with make_client(handler, sleeps, rng=CeilingRandom()) as client:
            final = await client.wait_for_completion("job-1")

        assert final["status"] == "completed"
        assert sleeps == [2.0, 4.0, 8.0]

    @pytest.mark.asyncio
    async def test_wait_returns_failed_jobs(self) -> None:
        async with make_client(status_sequence("failed")) as client:
            final = await client.wait_for_completion("job-1")
        assert final["status"] == "failed"

    @pytest.mark.asyncio
    async def test_wait_times_out(self) -> None:
        sleeps = []

        async with make_client(status_sequence("processing"), sleeps, rng=CeilingRandom()) as client:
            with pytest.raises(TimeoutError):
                await client.wait_for_completion("job-1", timeout=5.0)

        # the fake sleep does not advance the clock; the 8s delay overshoots the 5s timeout
        assert sleeps == [2.0, 4.0]
