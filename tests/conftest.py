"""Shared test fixtures for WaDispatch."""
import asyncio
import time
from typing import Any, Callable

import pytest

from config.settings import (
    DatabaseConfig, DeliveryConfig, QueueConfig, Settings, WebhookConfig,
)
from database.store_memory import InMemoryJobStore
from job_queue.dispatcher import DeliveryDispatcher
from job_queue.message_queue import JobQueue
from models.schemas import Job, JobType


async def _wait_until(predicate: Callable[[], Any], timeout: float = 3.0,
                      interval: float = 0.01) -> bool:
    """Poll an (optionally async) predicate until it is truthy or timeout."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return True
        await asyncio.sleep(interval)
    return False


class RecordingHandler:
    """
    Delivery handler double. Fails the first `fail_times` calls (forever
    when fail_times is None), optionally sleeping before answering.
    """

    def __init__(self, fail_times: int = 0, error: Exception = None, delay: float = 0.0):
        self.fail_times = fail_times
        self.error = error or RuntimeError("bridge unavailable")
        self.delay = delay
        self.calls: list[Job] = []

    async def __call__(self, job: Job) -> dict[str, Any]:
        self.calls.append(job)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_times is None or len(self.calls) <= self.fail_times:
            raise self.error
        return {"status": "sent", "channel_message_id": f"msg-{len(self.calls)}"}


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def fast_queue_config() -> QueueConfig:
    """No pacing, millisecond backoff, strict priority, no rate limit."""
    return QueueConfig(
        pacing_delay_min_ms=0,
        pacing_delay_max_ms=0,
        max_attempts=3,
        backoff_base_ms=1,
        backoff_max_ms=5,
        dispatch_timeout_s=1.0,
        poll_interval_ms=10,
        rate_limit_per_second=0,
        priority_aging_s=0,
        recover_on_startup=True,
        cleanup_interval_s=0,
    )


@pytest.fixture
def fast_settings(fast_queue_config) -> Settings:
    return Settings(
        queue=fast_queue_config,
        webhooks=WebhookConfig(timeout_s=1.0, retry_backoff_s=0),
        delivery=DeliveryConfig(bridge_url=""),
        database=DatabaseConfig(store_backend="memory"),
    )


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def queue(store, fast_queue_config) -> JobQueue:
    return JobQueue(store, fast_queue_config)


@pytest.fixture
def text_spec() -> dict[str, Any]:
    return {
        "type": "send_text",
        "recipient": "+91 98765-43210",
        "content": "Your order #4521 has shipped",
    }


@pytest.fixture
def handler() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def dispatcher(handler) -> DeliveryDispatcher:
    d = DeliveryDispatcher(timeout_s=1.0)
    for job_type in JobType:
        d.register(job_type, handler)
    return d
