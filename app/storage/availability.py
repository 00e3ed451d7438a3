"""Availability probing and download URL issuance.

Both run in mock mode when no bucket is configured: a file is available iff
its id is divisible by 7, and URLs point at storage.example.com.
"""

import asyncio
import logging
import random
import uuid
from dataclasses import dataclass
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from app.storage.s3_client import S3ObjectStore

logger = logging.getLogger(__name__)

MOCK_URL_BASE = "https://storage.example.com"


def object_key(file_id: int) -> str:
    """Canonical S3 key for a file id. Only the integer survives, so no path components can leak in."""
    return f"downloads/{abs(int(file_id))}.zip"


@dataclass(frozen=True)
class ProbeResult:
    exists: bool
    key: Optional[str] = None
    size: Optional[int] = None


class AvailabilityProber:
    """Checks whether a file exists in the download bucket. Fails closed."""

    def __init__(self, object_store: Optional[S3ObjectStore] = None, rng: Optional[random.Random] = None):
        self._store = object_store
        self._rng = rng or random.Random()

    @property
    def mock_mode(self) -> bool:
        return self._store is None

    async def probe(self, file_id: int) -> ProbeResult:
        key = object_key(file_id)

        if self._store is None:
            if file_id % 7 != 0:
                return ProbeResult(exists=False)
            return ProbeResult(exists=True, key=key, size=self._rng.randint(1000, 10_000_999))

        loop = asyncio.get_running_loop()
        try:
            size = await loop.run_in_executor(None, self._store.head_size, key)
        except (ClientError, BotoCoreError) as e:
            logger.warning("Availability check for %s failed, treating as missing: %s", key, e)
            return ProbeResult(exists=False)
        if size is None:
            return ProbeResult(exists=False)
        return ProbeResult(exists=True, key=key, size=size)

    async def check_health(self) -> bool:
        if self._store is None:
            return True
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._store.check_health)


class UrlIssuer:
    """Mints time-bounded download URLs for existing objects."""

    def __init__(self, object_store: Optional[S3ObjectStore] = None, expiry_seconds: int = 3600):
        self._store = object_store
        self._expiry_seconds = expiry_seconds

    async def issue(self, key: str) -> Optional[str]:
        """Presigned GET URL for key, or None if one could not be generated."""
        if self._store is None:
            return f"{MOCK_URL_BASE}/{key}?token={uuid.uuid4()}"

        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None, self._store.generate_presigned_download_url, key, self._expiry_seconds
            )
        except (ClientError, BotoCoreError) as e:
            logger.error("Failed to generate presigned URL for %s: %s", key, e)
            return None
