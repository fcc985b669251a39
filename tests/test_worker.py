"""
Tests for the single background QueueWorker.

Runs the real JobQueue + DeliveryDispatcher with fast timings and a
recording handler in place of the WhatsApp backend.
"""
import asyncio

import pytest

from conftest import RecordingHandler
from job_queue.consumer import QueueWorker
from job_queue.dispatcher import DeliveryDispatcher
from job_queue.message_queue import JobQueue
from models.schemas import JobStatus, JobType


def _dispatcher_with(handler, timeout_s=1.0) -> DeliveryDispatcher:
    d = DeliveryDispatcher(timeout_s=timeout_s)
    for job_type in JobType:
        d.register(job_type, handler)
    return d


async def _status(queue: JobQueue, job_id: str) -> JobStatus:
    return (await queue.get_job(job_id)).status


class TestQueueWorker:
    @pytest.mark.asyncio
    async def test_processes_job_to_completion(self, queue, dispatcher, handler, text_spec, wait_until):
        worker = QueueWorker(queue, dispatcher)
        await worker.start_background()
        try:
            job = await queue.enqueue(text_spec)
            assert await wait_until(
                lambda: queue._jobs[job.id].status == JobStatus.COMPLETED
            )
        finally:
            await worker.stop()
        assert len(handler.calls) == 1
        done = await queue.get_job(job.id)
        assert done.metadata["delivery"]["message_id"] == "msg-1"
        assert worker.processed == 1

    @pytest.mark.asyncio
    async def test_always_failing_job_gets_exactly_max_attempts(self, queue, text_spec, wait_until):
        handler = RecordingHandler(fail_times=None)
        failed = []
        queue.on("failed", failed.append)
        worker = QueueWorker(queue, _dispatcher_with(handler))
        await worker.start_background()
        try:
            job = await queue.enqueue(text_spec)
            assert await wait_until(lambda: len(failed) == 1)
            await asyncio.sleep(0.05)
        finally:
            await worker.stop()
        assert len(handler.calls) == 3
        final = await queue.get_job(job.id)
        assert final.status == JobStatus.FAILED
        assert final.attempts == 3
        assert final.error_message == "bridge unavailable"

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self, queue, text_spec, wait_until):
        handler = RecordingHandler(fail_times=1)
        worker = QueueWorker(queue, _dispatcher_with(handler))
        await worker.start_background()
        try:
            job = await queue.enqueue(text_spec)
            assert await wait_until(lambda: queue._jobs[job.id].status == JobStatus.COMPLETED)
        finally:
            await worker.stop()
        final = await queue.get_job(job.id)
        assert final.attempts == 2
        assert final.retry_count == 1

    @pytest.mark.asyncio
    async def test_dispatch_timeout_is_a_failure(self, store, fast_queue_config, text_spec, wait_until):
        fast_queue_config.max_attempts = 1
        queue = JobQueue(store, fast_queue_config)
        handler = RecordingHandler(delay=1.0)
        worker = QueueWorker(queue, _dispatcher_with(handler, timeout_s=0.05))
        await worker.start_background()
        try:
            job = await queue.enqueue(text_spec)
            assert await wait_until(lambda: queue._jobs[job.id].status == JobStatus.FAILED)
        finally:
            await worker.stop()
        assert "timed out" in (await queue.get_job(job.id)).error_message

    @pytest.mark.asyncio
    async def test_pause_holds_jobs_until_resume(self, queue, dispatcher, handler, text_spec, wait_until):
        worker = QueueWorker(queue, dispatcher)
        await worker.start_background()
        try:
            queue.pause()
            jobs = [await queue.enqueue(text_spec) for _ in range(5)]
            await asyncio.sleep(0.1)
            assert handler.calls == []
            assert all(queue._jobs[j.id].status == JobStatus.PENDING for j in jobs)

            queue.resume()
            assert await wait_until(
                lambda: all(queue._jobs[j.id].status == JobStatus.COMPLETED for j in jobs)
            )
        finally:
            await worker.stop()
        assert [c.id for c in handler.calls] == [j.id for j in jobs]

    @pytest.mark.asyncio
    async def test_one_job_at_a_time(self, queue, text_spec, wait_until):
        active = 0
        peak = 0

        async def slow(job):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.02)
            active -= 1
            return {"status": "sent"}

        worker = QueueWorker(queue, _dispatcher_with(slow))
        await worker.start_background()
        try:
            jobs = [await queue.enqueue(text_spec) for _ in range(4)]
            assert await wait_until(
                lambda: all(queue._jobs[j.id].status == JobStatus.COMPLETED for j in jobs)
            )
        finally:
            await worker.stop()
        assert peak == 1

    @pytest.mark.asyncio
    async def test_survives_unexpected_dispatcher_error(self, queue, dispatcher, text_spec, wait_until):
        calls = 0
        real_dispatch = dispatcher.dispatch

        async def exploding(job):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise KeyError("dispatcher bug")
            return await real_dispatch(job)

        dispatcher.dispatch = exploding
        worker = QueueWorker(queue, dispatcher)
        await worker.start_background()
        try:
            job = await queue.enqueue(text_spec)
            assert await wait_until(lambda: queue._jobs[job.id].status == JobStatus.COMPLETED)
            assert worker.is_running
        finally:
            await worker.stop()
        assert (await queue.get_job(job.id)).attempts == 2

    @pytest.mark.asyncio
    async def test_run_once_idle(self, queue, dispatcher):
        worker = QueueWorker(queue, dispatcher)
        assert await worker.run_once() is False

    @pytest.mark.asyncio
    async def test_run_once_processes_ready_job(self, queue, dispatcher, text_spec):
        worker = QueueWorker(queue, dispatcher)
        job = await queue.enqueue(text_spec)
        assert await worker.run_once() is True
        assert await _status(queue, job.id) == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_rate_limit_spaces_dispatches(self, store, fast_queue_config, text_spec):
        fast_queue_config.rate_limit_per_second = 5
        queue = JobQueue(store, fast_queue_config)
        worker = QueueWorker(queue, _dispatcher_with(RecordingHandler()))
        for _ in range(2):
            await queue.enqueue(text_spec)
        loop = asyncio.get_running_loop()
        start = loop.time()
        assert await worker.run_once() is True
        processed = await worker.run_once()
        while not processed:
            processed = await worker.run_once()
        assert loop.time() - start >= 0.15

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, queue, dispatcher):
        worker = QueueWorker(queue, dispatcher)
        await worker.start_background()
        await asyncio.sleep(0.02)
        assert worker.is_running
        await worker.stop()
        assert not worker.is_running
        await worker.stop()
