"""Read-only job status projection for polling clients."""

from app.core.errors import NotFoundError
from app.jobs.models import JobRecord
from app.jobs.store import JobStore


class StatusReader:
    """Clients should poll with exponential backoff and jitter, and stop once the job is terminal."""

    def __init__(self, store: JobStore):
        self._store = store

    async def get(self, job_id: str) -> JobRecord:
        record = await self._store.get(job_id)
        if record is None:
            raise NotFoundError(job_id)
        return record
