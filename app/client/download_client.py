"""Async client for the download job API.

Example:
    async with DownloadClient("http://localhost:3000") as client:
        job = await client.initiate([70000])
        final = await client.wait_for_completion(job["jobId"])
"""

import asyncio
import random
import time
from typing import Any, Callable, Dict, Optional, Sequence

import httpx

from app.core.errors import NotFoundError, ValidationError

TERMINAL_STATUSES = frozenset({"completed", "failed"})


def backoff_with_jitter(
    attempt: int,
    initial_delay: float,
    max_delay: float,
    multiplier: float = 2.0,
    rng: Optional[random.Random] = None,
) -> float:
    """Full-jitter exponential backoff: uniform(0, min(max_delay, initial * multiplier**attempt))."""
    ceiling = min(max_delay, initial_delay * (multiplier ** attempt))
    return (rng or random).uniform(0, ceiling)


class DownloadClient:
    def __init__(
        self,
        base_url: str = "",
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        sleep: Callable[[float], Any] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self._client = http_client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._sleep = sleep
        self._rng = rng or random.Random()

    async def __aenter__(self) -> "DownloadClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def initiate(self, file_ids: Sequence[int]) -> Dict[str, Any]:
        response = await self._client.post("/v1/download/initiate", json={"file_ids": list(file_ids)})
        if response.status_code == 400:
            raise ValidationError(response.json().get("message", "Invalid request"))
        response.raise_for_status()
        return response.json()

    async def get_status(self, job_id: str) -> Dict[str, Any]:
        response = await self._client.get(f"/v1/download/status/{job_id}")
        if response.status_code == 404:
            raise NotFoundError(job_id)
        response.raise_for_status()
        return response.json()

    async def wait_for_completion(
        self,
        job_id: str,
        *,
        initial_delay: float = 2.0,
        max_delay: float = 30.0,
        multiplier: float = 2.0,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Poll until the job is completed or failed.

        Raises:
            NotFoundError: job unknown or expired
            TimeoutError: timeout elapsed before a terminal status
        """
        deadline = time.monotonic() + timeout if timeout is not None else None
        attempt = 0
        while True:
            status = await self.get_status(job_id)
            if status["status"] in TERMINAL_STATUSES:
                return status
            delay = backoff_with_jitter(attempt, initial_delay, max_delay, multiplier, self._rng)
            if deadline is not None and time.monotonic() + delay > deadline:
                raise TimeoutError(f"Job {job_id} still {status['status']} after {timeout}s")
            await self._sleep(delay)
            attempt += 1
