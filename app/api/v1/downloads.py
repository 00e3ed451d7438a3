"""Download job API: initiate a job, poll its status, check availability.

Thin layer over the job submitter, status reader and availability prober.
"""

from typing import List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field, StrictInt

from app.jobs.models import JobRecord
from app.jobs.status import StatusReader
from app.jobs.submitter import JobSubmitter
from app.storage.availability import AvailabilityProber

router = APIRouter()

# Wired in during lifespan
_submitter: Optional[JobSubmitter] = None
_status_reader: Optional[StatusReader] = None
_prober: Optional[AvailabilityProber] = None


def set_services(submitter, status_reader, prober):
    global _submitter, _status_reader, _prober
    _submitter = submitter
    _status_reader = status_reader
    _prober = prober


class DownloadInitiateRequest(BaseModel):
    file_ids: List[StrictInt] = Field(..., min_length=1, description="File IDs (10K to 100M)")


class DownloadInitiateResponse(BaseModel):
    jobId: str
    status: str
    totalFileIds: int
    jobIds: List[str]
    notQueuedFileIds: List[int] = []


class DownloadCheckRequest(BaseModel):
    file_id: StrictInt = Field(..., description="Single file ID to check (10K to 100M)")


# ---------------------------------------------------------------------------
# POST /v1/download/initiate
# ---------------------------------------------------------------------------

@router.post("/download/initiate", response_model=DownloadInitiateResponse)
async def initiate_download(request: DownloadInitiateRequest):
    """Queue a download job and return immediately. Poll /v1/download/status/{jobId}."""
    if _submitter is None:
        raise HTTPException(status_code=503, detail="Job submitter not initialized")

    result = await _submitter.submit(request.file_ids)
    return DownloadInitiateResponse(
        jobId=result.job_id,
        status=result.status.value,
        totalFileIds=result.total_file_ids,
        jobIds=result.job_ids,
        notQueuedFileIds=result.not_queued_file_ids,
    )


# ---------------------------------------------------------------------------
# GET /v1/download/status/{job_id}
# ---------------------------------------------------------------------------

@router.get("/download/status/{job_id}")
async def get_download_status(job_id: str):
    """Current job snapshot. Recommended polling: start at 2s, back off with jitter, stop on completed/failed."""
    if _status_reader is None:
        raise HTTPException(status_code=503, detail="Status reader not initialized")

    record = await _status_reader.get(job_id)
    return serialize_job(job_id, record)


# ---------------------------------------------------------------------------
# POST /v1/download/check
# ---------------------------------------------------------------------------

@router.post("/download/check")
async def check_download(request: DownloadCheckRequest):
    """Synchronous availability check for a single file."""
    if _prober is None or _submitter is None:
        raise HTTPException(status_code=503, detail="Prober not initialized")

    _submitter.validate([request.file_id])
    result = await _prober.probe(request.file_id)
    return {
        "file_id": request.file_id,
        "available": result.exists,
        "s3Key": result.key,
        "size": result.size,
    }


def serialize_job(job_id: str, record: JobRecord) -> dict:
    return {
        "jobId": job_id,
        "file_id": record.file_id,
        "status": record.status.value,
        "progress": record.progress,
        "downloadUrl": record.download_url,
        "size": record.size,
        "processingTimeMs": record.processing_time_ms,
        "message": record.message,
        "outcome": record.outcome.value if record.outcome else None,
        "createdAt": record.created_at.isoformat(),
        "updatedAt": record.updated_at.isoformat(),
    }
