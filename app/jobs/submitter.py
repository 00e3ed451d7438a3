"""Job submission: validate, record, enqueue, return."""

import logging
import uuid
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from app.config import Settings
from app.core.errors import ServiceUnavailable, TransientInfraError, ValidationError
from app.jobs.dispatcher import JobDispatcher
from app.jobs.models import JobOutcome, JobRecord, JobStatus, WorkItem
from app.jobs.store import JobStore

logger = logging.getLogger(__name__)

BATCH_FIRST = "first"
BATCH_FAN_OUT = "fan_out"


@dataclass
class SubmitResult:
    job_id: str
    total_file_ids: int
    job_ids: List[str] = field(default_factory=list)
    not_queued_file_ids: List[int] = field(default_factory=list)
    status: JobStatus = JobStatus.QUEUED


class JobSubmitter:
    """Accepts download requests without waiting for them to be processed.

    batch_mode decides what a multi-id request means:
      "first"   - one job, for the first id only
      "fan_out" - one job per id; ids that could not be queued are
                  reported back instead of failing the whole request
    """

    def __init__(
        self,
        store: JobStore,
        dispatcher: JobDispatcher,
        *,
        file_id_min: int = 10000,
        file_id_max: int = 100000000,
        max_batch_size: int = 1000,
        batch_mode: str = BATCH_FIRST,
    ):
        if batch_mode not in (BATCH_FIRST, BATCH_FAN_OUT):
            raise ValueError(f"Unknown batch_mode '{batch_mode}'")
        self._store = store
        self._dispatcher = dispatcher
        self._file_id_min = file_id_min
        self._file_id_max = file_id_max
        self._max_batch_size = max_batch_size
        self._batch_mode = batch_mode
        self._accepting = True

    @classmethod
    def from_settings(cls, settings: Settings, store: JobStore, dispatcher: JobDispatcher) -> "JobSubmitter":
        return cls(
            store,
            dispatcher,
            file_id_min=settings.file_id_min,
            file_id_max=settings.file_id_max,
            max_batch_size=settings.max_batch_size,
            batch_mode=settings.batch_mode,
        )

    def close(self) -> None:
        """Stop accepting submissions (shutdown)."""
        self._accepting = False

    def validate(self, file_ids: Sequence[int]) -> None:
        if not file_ids:
            raise ValidationError("At least one file id is required", field="file_ids")
        if len(file_ids) > self._max_batch_size:
            raise ValidationError(
                f"At most {self._max_batch_size} file ids per request",
                field="file_ids",
                details={"count": len(file_ids)},
            )
        for fid in file_ids:
            if isinstance(fid, bool) or not isinstance(fid, int):
                raise ValidationError(f"File id {fid!r} is not an integer", field="file_ids")
            if not self._file_id_min <= fid <= self._file_id_max:
                raise ValidationError(
                    f"File id {fid} out of range ({self._file_id_min}-{self._file_id_max})",
                    field="file_ids",
                    details={"file_id": fid},
                )

    async def submit(self, file_ids: Sequence[int]) -> SubmitResult:
        if not self._accepting:
            raise ServiceUnavailable("Service is shutting down")
        self.validate(file_ids)

        targets = list(file_ids) if self._batch_mode == BATCH_FAN_OUT else [file_ids[0]]
        job_ids: List[str] = []
        not_queued: List[int] = []
        last_error: Optional[TransientInfraError] = None
        # one id failing to queue does not cancel the others
        for fid in targets:
            try:
                job_ids.append(await self._submit_one(fid))
            except TransientInfraError as e:
                last_error = e
                not_queued.append(fid)
        if not job_ids:
            raise last_error
        if not_queued:
            logger.warning(
                "Queued %d of %d jobs; not queued file_ids=%s", len(job_ids), len(targets), not_queued
            )
        return SubmitResult(
            job_id=job_ids[0],
            total_file_ids=len(file_ids),
            job_ids=job_ids,
            not_queued_file_ids=not_queued,
        )

    async def _submit_one(self, file_id: int) -> str:
        job_id = str(uuid.uuid4())
        await self._store.set(job_id, JobRecord(file_id=file_id))
        try:
            await self._dispatcher.submit(WorkItem(job_id=job_id, file_id=file_id))
        except TransientInfraError as e:
            # never leave a record sitting in queued with nothing to process it
            logger.error("Could not queue job=%s file_id=%d: %s", job_id, file_id, e)
            await self._store.update(
                job_id,
                lambda cur: cur.fail(JobOutcome.NOT_QUEUED, "Job could not be queued for processing"),
            )
            raise
        logger.info("Queued job=%s file_id=%d", job_id, file_id)
        return job_id
