"""
Queue Worker — Pulls ready jobs from the JobQueue and drives dispatch.

Exactly one worker runs per process, so at most one job is processing at a
time. The loop never dies on a job error: every outcome is written back to
the queue as complete() or fail().

  ┌──────────┐  enqueue  ┌──────────┐  pop_ready  ┌────────┐  dispatch  ┌────────────┐
  │ REST API │──────────▶│ JobQueue │────────────▶│ Worker │───────────▶│ Dispatcher │
  └──────────┘           └────▲─────┘             └───┬────┘            └────────────┘
                              │  complete / fail      │
                              └───────────────────────┘
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

from channels.base import TokenBucketRateLimiter
from config.settings import QueueConfig
from job_queue.dispatcher import DeliveryDispatcher
from job_queue.message_queue import JobQueue
from models.errors import DeliveryError
from models.schemas import Job

logger = structlog.get_logger()


class QueueWorker:
    """
    Single background worker.

    Usage:
        worker = QueueWorker(queue, dispatcher, settings.queue)
        await worker.start_background()   # returns immediately, runs as task
        await worker.stop()
    """

    def __init__(self, queue: JobQueue, dispatcher: DeliveryDispatcher,
                 config: QueueConfig = None):
        self.queue = queue
        self.dispatcher = dispatcher
        self.config = config or queue.config
        self._poll_s = max(self.config.poll_interval_ms, 1) / 1000
        self._limiter: Optional[TokenBucketRateLimiter] = None
        if self.config.rate_limit_per_second > 0:
            self._limiter = TokenBucketRateLimiter(rate=self.config.rate_limit_per_second, burst=1)
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.processed = 0

    @property
    def is_running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def start(self):
        """Run the loop — blocks until stop() is called."""
        self._running = True
        logger.info("queue_worker_starting",
                    poll_interval_ms=self.config.poll_interval_ms,
                    rate_limit=self.config.rate_limit_per_second)
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("queue_worker_error", error=str(e), exc_info=True)
                await asyncio.sleep(self._poll_s)
        logger.info("queue_worker_stopped", processed=self.processed)

    async def start_background(self) -> asyncio.Task:
        self._running = True
        self._task = asyncio.create_task(self.start())
        return self._task

    async def stop(self, grace_s: float = 5.0):
        """Stop the loop, letting an in-flight job finish within grace_s."""
        self._running = False
        self.queue.wake()
        if self._task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=grace_s)
        except asyncio.TimeoutError:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def run_once(self) -> bool:
        """One scheduling step. Returns True when a job was processed."""
        if self.queue.is_paused:
            await self.queue.wait_until_resumed(self._poll_s)
            return False

        if not self.queue.has_ready():
            await self.queue.wait_for_work(self._poll_s)
            return False

        if self._limiter and not await self._limiter.acquire(timeout=self._poll_s):
            return False

        job = await self.queue.pop_ready()
        if job is None:
            return False
        await self._process(job)
        return True

    async def _process(self, job: Job):
        logger.info("processing_job",
                    job_id=job.id,
                    job_type=job.type.value,
                    recipient=job.recipient,
                    attempt=job.attempts)
        try:
            result = await self.dispatcher.dispatch(job)
        except DeliveryError as e:
            await self.queue.fail(job.id, e.message, retryable=e.retryable)
        except Exception as e:
            logger.error("job_processing_error", job_id=job.id, error=str(e), exc_info=True)
            await self.queue.fail(job.id, str(e) or type(e).__name__, retryable=True)
        else:
            await self.queue.complete(job.id, result)
        self.processed += 1
