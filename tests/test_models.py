"""Tests for JobRecord invariants and transitions."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from app.jobs.models import JobOutcome, JobRecord, JobStatus


@pytest.fixture
def queued() -> JobRecord:
    return JobRecord(file_id=70000)


class TestJobRecordInvariants:
    def test_new_record_is_queued_with_zero_progress(self, queued: JobRecord) -> None:
        assert queued.status == JobStatus.QUEUED
        assert queued.progress == 0
        assert queued.download_url is None
        assert queued.outcome is None
        assert queued.created_at == queued.updated_at

    def test_url_without_completed_status_is_rejected(self) -> None:
        with pytest.raises(PydanticValidationError):
            JobRecord(file_id=70000, status=JobStatus.PROCESSING, download_url="https://x")

    def test_completed_without_url_is_rejected(self) -> None:
        with pytest.raises(PydanticValidationError):
            JobRecord(file_id=70000, status=JobStatus.COMPLETED, progress=100, outcome=JobOutcome.READY)

    def test_terminal_record_requires_full_progress(self) -> None:
        with pytest.raises(PydanticValidationError):
            JobRecord(file_id=70000, status=JobStatus.FAILED, progress=50, outcome=JobOutcome.NOT_FOUND)

    def test_size_requires_url(self) -> None:
        with pytest.raises(PydanticValidationError):
            JobRecord(file_id=70000, size=10)

    def test_progress_is_bounded(self) -> None:
        with pytest.raises(PydanticValidationError):
            JobRecord(file_id=70000, progress=101)


class TestTransitions:
    def test_start_processing_keeps_progress_and_created_at(self, queued: JobRecord) -> None:
        started = queued.start_processing()
        assert started.status == JobStatus.PROCESSING
        assert started.progress == 0
        assert started.created_at == queued.created_at
        assert started.updated_at >= queued.updated_at
        assert queued.accepts(started)

    def test_with_progress_only_moves_forward(self, queued: JobRecord) -> None:
        at_30 = queued.start_processing().with_progress(30)
        assert at_30.progress == 30
        assert at_30.with_progress(20) is None
        assert at_30.with_progress(30) is None

    def test_with_progress_ignored_unless_processing(self, queued: JobRecord) -> None:
        assert queued.with_progress(10) is None

    def test_complete_sets_terminal_fields(self, queued: JobRecord) -> None:
        done = queued.start_processing().complete("https://example.com/f", 1234, 15300)
        assert done.status == JobStatus.COMPLETED
        assert done.progress == 100
        assert done.download_url == "https://example.com/f"
        assert done.size == 1234
        assert done.processing_time_ms == 15300
        assert done.outcome == JobOutcome.READY
        assert done.message == "Download ready after 15.3 seconds"

    def test_fail_clears_url(self, queued: JobRecord) -> None:
        failed = queued.start_processing().fail(JobOutcome.NOT_FOUND, "File not found", 500)
        assert failed.status == JobStatus.FAILED
        assert failed.download_url is None
        assert failed.size is None
        assert failed.progress == 100

    def test_terminal_record_accepts_nothing(self, queued: JobRecord) -> None:
        done = queued.start_processing().complete("https://example.com/f", 1, 1)
        assert not done.accepts(done.model_copy(update={"message": "again"}))
        failed = queued.fail(JobOutcome.NOT_QUEUED, "nope")
        assert not done.accepts(failed)

    def test_status_regression_is_refused(self, queued: JobRecord) -> None:
        processing = queued.start_processing()
        assert not processing.accepts(queued)

    def test_progress_regression_is_refused(self, queued: JobRecord) -> None:
        at_50 = queued.start_processing().with_progress(50)
        at_20 = at_50.model_copy(update={"progress": 20})
        assert not at_50.accepts(at_20)

    def test_created_at_change_is_refused(self, queued: JobRecord) -> None:
        moved = queued.model_copy(update={"created_at": queued.created_at.replace(year=2000)})
        assert not queued.accepts(moved)

    def test_is_terminal(self) -> None:
        assert JobStatus.COMPLETED.is_terminal
        assert JobStatus.FAILED.is_terminal
        assert not JobStatus.QUEUED.is_terminal
        assert not JobStatus.PROCESSING.is_terminal
