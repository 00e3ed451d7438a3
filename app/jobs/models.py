"""Job record data model for async download processing."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# completed and failed share a rank: neither may follow the other
_STATUS_RANK = {
    JobStatus.QUEUED: 0,
    JobStatus.PROCESSING: 1,
    JobStatus.COMPLETED: 2,
    JobStatus.FAILED: 2,
}


class JobOutcome(str, Enum):
    """How a job ended. Set on every terminal record, never before."""

    READY = "ready"
    LINK_UNAVAILABLE = "link_unavailable"
    NOT_FOUND = "not_found"
    INTERNAL_ERROR = "internal_error"
    RETRIES_EXHAUSTED = "retries_exhausted"
    NOT_QUEUED = "not_queued"


class WorkItem(BaseModel):
    """Unit of work carried by the queue."""
    job_id: str
    file_id: int


class JobRecord(BaseModel):
    """Tracks the lifecycle of one download job.

    The record is replaced as a whole on every write; the helpers below return
    a new record and leave the receiver untouched.
    """
    file_id: int
    status: JobStatus = JobStatus.QUEUED
    progress: int = Field(default=0, ge=0, le=100)
    download_url: Optional[str] = None
    size: Optional[int] = Field(default=None, ge=0)
    processing_time_ms: Optional[int] = Field(default=None, ge=0)
    message: str = "Job queued for processing"
    outcome: Optional[JobOutcome] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def check_invariants(self):
        if "updated_at" not in self.model_fields_set:
            self.updated_at = self.created_at
        terminal = self.status.is_terminal
        if terminal and self.progress != 100:
            raise ValueError("terminal records must have progress 100")
        if (self.download_url is not None) != (self.status == JobStatus.COMPLETED):
            raise ValueError("download_url must be set if and only if status is completed")
        if self.size is not None and self.download_url is None:
            raise ValueError("size requires a download_url")
        if (self.outcome is not None) != terminal:
            raise ValueError("outcome must be set if and only if status is terminal")
        if self.processing_time_ms is not None and not terminal:
            raise ValueError("processing_time_ms is only recorded on the terminal transition")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def accepts(self, new: "JobRecord") -> bool:
        """Whether `new` may replace this record in the store."""
        if self.is_terminal:
            return False
        if _STATUS_RANK[new.status] < _STATUS_RANK[self.status]:
            return False
        if new.progress < self.progress:
            return False
        if new.created_at != self.created_at or new.file_id != self.file_id:
            return False
        return True

    def _touch(self, **changes) -> "JobRecord":
        now = utcnow()
        changes["updated_at"] = now if now > self.updated_at else self.updated_at
        data = self.model_dump()
        data.update(changes)
        return JobRecord(**data)

    def start_processing(self) -> Optional["JobRecord"]:
        if self.status != JobStatus.QUEUED and self.status != JobStatus.PROCESSING:
            return None
        return self._touch(status=JobStatus.PROCESSING, message="Processing download...")

    def with_progress(self, progress: int) -> Optional["JobRecord"]:
        """Progress tick. None unless the job is processing and the tick moves forward."""
        if self.status != JobStatus.PROCESSING or progress <= self.progress:
            return None
        return self._touch(progress=min(progress, 100))

    def complete(self, download_url: str, size: Optional[int], processing_time_ms: int) -> "JobRecord":
        return self._touch(
            status=JobStatus.COMPLETED,
            progress=100,
            download_url=download_url,
            size=size,
            processing_time_ms=processing_time_ms,
            outcome=JobOutcome.READY,
            message=f"Download ready after {processing_time_ms / 1000:.1f} seconds",
        )

    def fail(
        self,
        outcome: JobOutcome,
        message: str,
        processing_time_ms: Optional[int] = None,
    ) -> "JobRecord":
        return self._touch(
            status=JobStatus.FAILED,
            progress=100,
            download_url=None,
            size=None,
            processing_time_ms=processing_time_ms,
            outcome=outcome,
            message=message,
        )
