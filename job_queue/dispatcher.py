"""
Delivery Dispatcher — Routes a job to the handler registered for its type.

Handlers are plain async callables `handler(job) -> result`. The dispatcher
enforces the overall dispatch timeout and normalizes every outcome:

  - handler returns         → DeliveryResult
  - handler times out       → DeliveryError (retryable)
  - handler raises          → DeliveryError (retryable unless it already
                              raised a non-retryable DeliveryError)
  - no handler for the type → DeliveryError (not retryable)
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Awaitable, Callable, Optional, Union

from models.errors import DeliveryError
from models.schemas import DeliveryResult, Job, JobType

logger = structlog.get_logger()

Handler = Callable[[Job], Awaitable[Any]]


class DeliveryDispatcher:

    def __init__(self, timeout_s: float = 30.0):
        self.timeout_s = timeout_s
        self._handlers: dict[JobType, Handler] = {}

    def register(self, job_type: Union[JobType, str], handler: Handler) -> None:
        self._handlers[JobType(job_type)] = handler

    def handler_for(self, job_type: Union[JobType, str]) -> Optional[Handler]:
        return self._handlers.get(JobType(job_type))

    @property
    def registered_types(self) -> list[JobType]:
        return list(self._handlers)

    def ensure_complete(self) -> None:
        """Fail fast at startup when a job type has no handler."""
        missing = [t.value for t in JobType if t not in self._handlers]
        if missing:
            raise RuntimeError(f"No delivery handler registered for: {', '.join(missing)}")

    async def dispatch(self, job: Job) -> DeliveryResult:
        handler = self._handlers.get(job.type)
        if handler is None:
            raise DeliveryError(f"No handler registered for job type {job.type.value}",
                                retryable=False)

        try:
            raw = await asyncio.wait_for(handler(job), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            logger.warning("dispatch_timeout", job_id=job.id, timeout_s=self.timeout_s)
            raise DeliveryError(f"Dispatch timed out after {self.timeout_s}s", retryable=True)
        except DeliveryError:
            raise
        except Exception as e:
            raise DeliveryError(str(e) or type(e).__name__, retryable=True) from e

        return self._to_result(raw)

    @staticmethod
    def _to_result(raw: Any) -> DeliveryResult:
        if isinstance(raw, DeliveryResult):
            return raw
        if raw is None:
            return DeliveryResult()
        if isinstance(raw, dict):
            if raw.get("status") == "failed":
                raise DeliveryError(raw.get("error") or "delivery failed",
                                    retryable=raw.get("retryable", True), details=raw)
            return DeliveryResult(
                status=raw.get("status", "sent"),
                message_id=str(raw.get("channel_message_id") or raw.get("message_id") or ""),
                detail=raw,
            )
        return DeliveryResult(detail={"result": str(raw)})


def register_backend_handlers(dispatcher: DeliveryDispatcher, backend) -> DeliveryDispatcher:
    """Wire every JobType to the matching send method of a DeliveryBackend."""

    async def send_text(job: Job):
        return await backend.send_text(job.recipient, job.content or "")

    async def send_media(job: Job):
        return await backend.send_media(job.recipient, job.media_url,
                                        job.media_type or "", caption=job.content)

    async def send_template(job: Job):
        return await backend.send_template(job.recipient, job.content,
                                           job.metadata.get("variables") or {})

    dispatcher.register(JobType.SEND_TEXT, send_text)
    dispatcher.register(JobType.SEND_MEDIA, send_media)
    dispatcher.register(JobType.SEND_TEMPLATE, send_template)
    return dispatcher
