"""Error taxonomy for the download job service.

Submission-time errors (ValidationError, TransientInfraError,
ServiceUnavailable) are raised to the caller. Everything that goes wrong after
a job was accepted is recorded on the JobRecord instead.
"""

from typing import Any, Dict, Optional


class DownloadServiceError(Exception):
    """Base exception for all download service errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ValidationError(DownloadServiceError):
    """Malformed or out-of-range input, rejected before any record exists."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details)


class NotFoundError(DownloadServiceError):
    """Unknown or expired job id."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found", {"job_id": job_id})


class TransientInfraError(DownloadServiceError):
    """Store, queue or broker temporarily unavailable. Safe to retry."""


class ResourceUnavailable(DownloadServiceError):
    """The requested file does not exist in backing storage."""

    def __init__(self, file_id: int) -> None:
        self.file_id = file_id
        super().__init__(f"File {file_id} not found", {"file_id": file_id})


class InternalError(DownloadServiceError):
    """Unexpected fault while processing a job."""

    @classmethod
    def wrapping(cls, exc: BaseException, **details: Any) -> "InternalError":
        error = cls(f"{type(exc).__name__}: {exc}", details)
        error.__cause__ = exc
        return error


class ServiceUnavailable(DownloadServiceError):
    """The service is shutting down and no longer accepts submissions."""
