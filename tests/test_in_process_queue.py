"""Tests for the in-process worker pool."""

import asyncio

import pytest

from app.core.errors import TransientInfraError
from app.jobs.in_process_queue import InProcessQueue
from app.jobs.models import JobRecord, JobStatus, WorkItem

from conftest import make_processor, wait_for_terminal


def make_queue(runner, on_exhausted=None, **kwargs) -> InProcessQueue:
    async def ignore(item, err):
        pass

    options = dict(concurrency=2, max_retries=2, retry_backoff_seconds=0.001, shutdown_grace_seconds=0.5, poll_interval=0.01)
    options.update(kwargs)
    return InProcessQueue(runner, on_exhausted or ignore, **options)


class TestInProcessQueue:
    @pytest.mark.asyncio
    async def test_submit_before_start_is_refused(self) -> None:
        queue = make_queue(lambda item: asyncio.sleep(0))
        with pytest.raises(TransientInfraError):
            await queue.submit(WorkItem(job_id="a", file_id=70000))

    @pytest.mark.asyncio
    async def test_at_most_concurrency_jobs_processing(self, store) -> None:
        concurrency = 2
        processor = make_processor(store, delay_min_ms=30, delay_max_ms=30)
        queue = make_queue(processor.run, processor.fail_exhausted, concurrency=concurrency)
        await queue.start()

        job_ids = []
        for n in range(6):
            job_id = f"job-{n}"
            await store.set(job_id, JobRecord(file_id=70000 + 7 * n))
            await queue.submit(WorkItem(job_id=job_id, file_id=70000 + 7 * n))
            job_ids.append(job_id)

        max_processing = 0
        saw_waiting = False
        while True:
            records = [await store.get(j) for j in job_ids]
            processing = sum(r.status == JobStatus.PROCESSING for r in records)
            queued = sum(r.status == JobStatus.QUEUED for r in records)
            max_processing = max(max_processing, processing)
            if processing == concurrency and queued:
                saw_waiting = True
            if all(r.is_terminal for r in records):
                break
            await asyncio.sleep(0.002)

        await queue.stop()
        assert max_processing <= concurrency
        assert saw_waiting
        assert all(r.status == JobStatus.COMPLETED for r in records)

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self) -> None:
        calls = []

        async def runner(item):
            calls.append(item.job_id)
            if len(calls) < 3:
                raise TransientInfraError("broker hiccup")

        queue = make_queue(runner, max_retries=3)
        await queue.start()
        await queue.submit(WorkItem(job_id="a", file_id=70000))
        while len(calls) < 3 or queue.in_flight:
            await asyncio.sleep(0.005)
        await queue.stop()

        assert calls == ["a", "a", "a"]

    @pytest.mark.asyncio
    async def test_exhausted_retries_call_failure_hook(self) -> None:
        attempts = []
        exhausted = []

        async def runner(item):
            attempts.append(item.job_id)
            raise TransientInfraError("store down")

        async def on_exhausted(item, err):
            exhausted.append((item.job_id, err))

        queue = make_queue(runner, on_exhausted, max_retries=2)
        await queue.start()
        await queue.submit(WorkItem(job_id="a", file_id=70000))
        while not exhausted:
            await asyncio.sleep(0.005)
        await queue.stop()

        assert len(attempts) == 3
        assert exhausted[0][0] == "a"
        assert isinstance(exhausted[0][1], TransientInfraError)

    @pytest.mark.asyncio
    async def test_zero_retries_gives_up_after_one_attempt(self) -> None:
        attempts = []
        exhausted = []

        async def runner(item):
            attempts.append(item.job_id)
            raise TransientInfraError("store down")

        async def on_exhausted(item, err):
            exhausted.append(item.job_id)

        queue = make_queue(runner, on_exhausted, max_retries=0)
        await queue.start()
        await queue.submit(WorkItem(job_id="a", file_id=70000))
        while not exhausted:
            await asyncio.sleep(0.005)
        await queue.stop()

        assert attempts == ["a"]

    @pytest.mark.asyncio
    async def test_exhaustion_marks_job_failed(self, store) -> None:
        processor = make_processor(store)

        async def runner(item):
            raise TransientInfraError("store down")

        queue = make_queue(runner, processor.fail_exhausted, max_retries=1)
        await queue.start()
        await store.set("a", JobRecord(file_id=70000))
        await queue.submit(WorkItem(job_id="a", file_id=70000))
        final = await wait_for_terminal(store, "a")
        await queue.stop()

        assert final.status == JobStatus.FAILED
        assert final.message == "Download failed after repeated infrastructure errors"

    @pytest.mark.asyncio
    async def test_non_transient_errors_are_not_retried(self) -> None:
        calls = []

        async def runner(item):
            calls.append(item.job_id)
            raise ValueError("bug")

        queue = make_queue(runner)
        await queue.start()
        await queue.submit(WorkItem(job_id="a", file_id=70000))
        await queue.submit(WorkItem(job_id="b", file_id=70007))
        while len(calls) < 2 or queue.in_flight:
            await asyncio.sleep(0.005)
        await queue.stop()

        # the worker survives the failure and picks up the next item
        assert sorted(calls) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_stop_lets_running_jobs_finish_within_grace(self) -> None:
        finished = []

        async def runner(item):
            await asyncio.sleep(0.05)
            finished.append(item.job_id)

        queue = make_queue(runner, shutdown_grace_seconds=1.0)
        await queue.start()
        await queue.submit(WorkItem(job_id="a", file_id=70000))
        while not queue.in_flight:
            await asyncio.sleep(0.001)

        await queue.stop()

        assert finished == ["a"]
        with pytest.raises(TransientInfraError):
            await queue.submit(WorkItem(job_id="b", file_id=70007))

    @pytest.mark.asyncio
    async def test_stop_cancels_jobs_past_grace(self) -> None:
        started = asyncio.Event()

        async def runner(item):
            started.set()
            await asyncio.sleep(10)

        queue = make_queue(runner, shutdown_grace_seconds=0.05)
        await queue.start()
        await queue.submit(WorkItem(job_id="a", file_id=70000))
        await started.wait()

        await asyncio.wait_for(queue.stop(), timeout=2)

        assert queue.in_flight == 0
