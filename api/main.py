"""
FastAPI Application — REST API for the WhatsApp delivery queue.

Provides:
- Send endpoints that enqueue jobs and return immediately
- Queue management (list, stats, retry, cancel, pause/resume, cleanup)
- Webhook subscription management and test delivery
- Inbound message hook fanned out to subscribers as `message.new`
- Health reporting for the worker, the queue and the delivery backend
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from channels.base import DeliveryBackend
from channels.whatsapp_adapter import WhatsAppWebBackend
from config.settings import QueueConfig, Settings, get_settings
from database.store_base import BaseJobStore
from database.store_factory import create_store
from job_queue.consumer import QueueWorker
from job_queue.dispatcher import DeliveryDispatcher, register_backend_handlers
from job_queue.message_queue import JobQueue
from models.errors import InvalidInput, InvalidState, NotFound, WaDispatchError
from models.schemas import Job, JobStatus, JobType
from webhooks.notifier import WebhookNotifier

logger = structlog.get_logger()

router = APIRouter()


def _ok(data: Any = None, message: str = None, status_code: int = 200) -> JSONResponse:
    body: dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return JSONResponse(status_code=status_code, content=body)


def _error(status_code: int, error: str, details: Any = None) -> JSONResponse:
    body: dict[str, Any] = {"success": False, "error": error}
    if details is not None:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body)


def _job_view(job: Job) -> dict[str, Any]:
    return job.model_dump(mode="json")


def _receipt(job: Job) -> dict[str, Any]:
    return {
        "job_id": job.id,
        "status": job.status.value,
        "type": job.type.value,
        "priority": job.priority.value,
        "scheduled_at": job.scheduled_at.isoformat(),
    }


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class SendMessageRequest(BaseModel):
    type: Optional[str] = None
    recipient: str = ""
    content: Optional[str] = None
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    priority: str = "normal"
    metadata: dict[str, Any] = {}


class SendTextRequest(BaseModel):
    recipient: str = ""
    content: Optional[str] = None
    priority: str = "normal"
    metadata: dict[str, Any] = {}


class SendMediaRequest(BaseModel):
    recipient: str = ""
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    caption: Optional[str] = None
    priority: str = "normal"
    metadata: dict[str, Any] = {}


class SendTemplateRequest(BaseModel):
    recipient: str = ""
    template: Optional[str] = None
    variables: dict[str, Any] = {}
    priority: str = "normal"
    metadata: dict[str, Any] = {}


class InboundMessageRequest(BaseModel):
    chat_id: str
    sender: str = ""
    content: str = ""
    message_id: str = ""
    timestamp: Optional[datetime] = None
    metadata: dict[str, Any] = {}


class CleanRequest(BaseModel):
    age: Optional[int] = Field(None, ge=0)     # milliseconds


class WebhookRegisterRequest(BaseModel):
    url: str
    events: list[str] = []
    secret: Optional[str] = None


class WebhookTestRequest(BaseModel):
    url: str
    event: str = "webhook.test"
    secret: Optional[str] = None


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@router.get("/health")
async def health(request: Request):
    state = request.app.state
    status = await state.queue.get_status()
    return {
        "status": "healthy" if state.worker.is_running else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "worker": {
            "running": state.worker.is_running,
            "processed": state.worker.processed,
        },
        "queue": {"paused": status["paused"], "counts": status["counts"]},
        "backend": await state.backend.health_check(),
    }


# ══════════════════════════════════════════════════════════════
#  SEND
# ══════════════════════════════════════════════════════════════

async def _enqueue(request: Request, spec: dict[str, Any]) -> JSONResponse:
    job = await request.app.state.queue.enqueue(spec)
    return _ok(_receipt(job), message="Message queued", status_code=202)


@router.post("/api/v1/messages/send")
async def send_message(req: SendMessageRequest, request: Request):
    spec = req.model_dump()
    if not spec["type"]:
        spec["type"] = JobType.SEND_MEDIA.value if req.media_url else JobType.SEND_TEXT.value
    return await _enqueue(request, spec)


@router.post("/api/v1/messages/send/text")
async def send_text(req: SendTextRequest, request: Request):
    return await _enqueue(request, {
        "type": JobType.SEND_TEXT.value,
        "recipient": req.recipient,
        "content": req.content,
        "priority": req.priority,
        "metadata": req.metadata,
    })


@router.post("/api/v1/messages/send/media")
async def send_media(req: SendMediaRequest, request: Request):
    return await _enqueue(request, {
        "type": JobType.SEND_MEDIA.value,
        "recipient": req.recipient,
        "content": req.caption,
        "media_url": req.media_url,
        "media_type": req.media_type,
        "priority": req.priority,
        "metadata": req.metadata,
    })


@router.post("/api/v1/messages/send/template")
async def send_template(req: SendTemplateRequest, request: Request):
    return await _enqueue(request, {
        "type": JobType.SEND_TEMPLATE.value,
        "recipient": req.recipient,
        "content": req.template,
        "priority": req.priority,
        "metadata": {**req.metadata, "variables": req.variables},
    })


# ══════════════════════════════════════════════════════════════
#  INBOUND MESSAGES
# ══════════════════════════════════════════════════════════════

@router.post("/api/v1/messages/inbound")
async def receive_inbound_message(req: InboundMessageRequest, request: Request):
    """A message observed by the automation layer, fanned out as message.new."""
    notifier: WebhookNotifier = request.app.state.notifier
    if not notifier.config.enabled:
        return _ok({"notified": 0, "failed": 0}, message="Webhooks disabled")

    data = req.model_dump(mode="json")
    data["timestamp"] = data["timestamp"] or datetime.now(timezone.utc).isoformat()
    outcomes = await notifier.notify("message.new", data)
    delivered = sum(1 for o in outcomes if o.delivered)
    return _ok({"notified": delivered, "failed": len(outcomes) - delivered})


# ══════════════════════════════════════════════════════════════
#  QUEUE
# ══════════════════════════════════════════════════════════════

@router.get("/api/v1/queue")
async def list_jobs(
    request: Request,
    status: Optional[str] = None,
    type: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    if status is not None and status not in {s.value for s in JobStatus}:
        raise InvalidInput(f"Unknown status filter: {status}")
    if type is not None and type not in {t.value for t in JobType}:
        raise InvalidInput(f"Unknown type filter: {type}")
    result = await request.app.state.queue.list_jobs(
        {"status": status, "type": type}, page, limit,
    )
    return _ok(result)


@router.get("/api/v1/queue/stats")
async def queue_stats(request: Request):
    return _ok(await request.app.state.queue.get_status())


@router.post("/api/v1/queue/pause")
async def pause_queue(request: Request):
    request.app.state.queue.pause()
    return _ok(message="Queue paused")


@router.post("/api/v1/queue/resume")
async def resume_queue(request: Request):
    request.app.state.queue.resume()
    return _ok(message="Queue resumed")


@router.post("/api/v1/queue/clean/{state}")
async def clean_jobs(state: str, request: Request, req: Optional[CleanRequest] = None):
    queue: JobQueue = request.app.state.queue
    if req is not None and req.age is not None:
        older_than = timedelta(milliseconds=req.age)
    else:
        older_than = _default_retention(queue.config, state)
    deleted = await queue.cleanup(older_than, state)
    return _ok({"deleted": deleted}, message=f"Cleaned {deleted} {state} jobs")


@router.get("/api/v1/queue/{job_id}")
async def get_job(job_id: str, request: Request):
    job = await request.app.state.queue.get_job(job_id)
    return _ok(_job_view(job))


@router.post("/api/v1/queue/{job_id}/retry")
async def retry_job(job_id: str, request: Request):
    queue: JobQueue = request.app.state.queue
    await queue.retry(job_id)
    return _ok(_job_view(await queue.get_job(job_id)), message="Job queued for retry")


@router.post("/api/v1/queue/{job_id}/cancel")
async def cancel_job(job_id: str, request: Request):
    queue: JobQueue = request.app.state.queue
    if not await queue.cancel(job_id):
        job = await queue.get_job(job_id)
        raise InvalidState(
            f"Job cannot be cancelled in status {job.status.value}",
            details={"job_id": job_id, "status": job.status.value},
        )
    return _ok(message="Job cancelled successfully")


def _default_retention(config: QueueConfig, state: str) -> timedelta:
    """Completed jobs use the completed retention; failed and cancelled the failed one."""
    if state == JobStatus.COMPLETED.value:
        return timedelta(hours=config.completed_retention_h)
    return timedelta(hours=config.failed_retention_h)


# ══════════════════════════════════════════════════════════════
#  WEBHOOKS
# ══════════════════════════════════════════════════════════════

@router.get("/api/v1/webhooks")
async def list_webhooks(request: Request, include_inactive: bool = False):
    subs = await request.app.state.notifier.list_subscriptions(include_inactive)
    return _ok([s.model_dump(mode="json", exclude={"secret"}) for s in subs])


@router.post("/api/v1/webhooks/register")
async def register_webhook(req: WebhookRegisterRequest, request: Request):
    sub = await request.app.state.notifier.register(req.url, req.events, req.secret)
    return _ok(sub.model_dump(mode="json", exclude={"secret"}),
               message="Webhook registered successfully", status_code=201)


@router.delete("/api/v1/webhooks/unregister/{subscription_id}")
async def unregister_webhook(subscription_id: str, request: Request):
    await request.app.state.notifier.unregister(subscription_id)
    return _ok(message="Webhook unregistered successfully")


@router.post("/api/v1/webhooks/test")
async def test_webhook(req: WebhookTestRequest, request: Request):
    outcome = await request.app.state.notifier.send_test(req.url, req.event, req.secret)
    if not outcome.delivered:
        return _error(502, "Failed to deliver test webhook", outcome.model_dump())
    return _ok(outcome.model_dump(), message="Webhook test sent successfully")


# ══════════════════════════════════════════════════════════════
#  ERROR HANDLERS
# ══════════════════════════════════════════════════════════════

async def _handle_invalid_input(request: Request, exc: InvalidInput):
    return _error(400, exc.message, exc.details)


async def _handle_not_found(request: Request, exc: NotFound):
    return _error(404, exc.message, exc.details)


async def _handle_invalid_state(request: Request, exc: InvalidState):
    return _error(409, exc.message, exc.details)


async def _handle_dispatch_error(request: Request, exc: WaDispatchError):
    logger.error("api_unhandled_error", path=request.url.path, error=exc.message)
    return _error(500, exc.message, exc.details)


async def _handle_validation_error(request: Request, exc: RequestValidationError):
    details = [
        {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    return _error(400, "Validation failed", details)


# ══════════════════════════════════════════════════════════════
#  APP FACTORY
# ══════════════════════════════════════════════════════════════

async def _periodic_cleanup(queue: JobQueue, config: QueueConfig):
    logger.info("periodic_cleanup_started", interval_s=config.cleanup_interval_s)
    while True:
        await asyncio.sleep(config.cleanup_interval_s)
        try:
            for state in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED):
                await queue.cleanup(_default_retention(config, state.value), state)
        except Exception as e:
            logger.error("periodic_cleanup_error", error=str(e))


@asynccontextmanager
async def lifespan(app: FastAPI):
    state = app.state
    settings: Settings = state.settings

    await state.store.initialize()
    if settings.queue.recover_on_startup:
        await state.queue.recover()
    await state.worker.start_background()

    cleanup_task = None
    if settings.queue.cleanup_interval_s > 0:
        cleanup_task = asyncio.create_task(_periodic_cleanup(state.queue, settings.queue))

    logger.info("wadispatch_started",
                store=type(state.store).__name__,
                backend=state.backend.name,
                webhooks_enabled=settings.webhooks.enabled)
    yield

    if cleanup_task:
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass
    await state.worker.stop()
    await state.notifier.aclose()
    await state.backend.shutdown()
    await state.store.close()
    logger.info("wadispatch_stopped")


def create_app(
    settings: Settings = None,
    store: BaseJobStore = None,
    backend: DeliveryBackend = None,
    webhook_transport=None,
) -> FastAPI:
    """Build the application with its queue, worker and notifier wired together."""
    settings = settings or get_settings()
    store = store or create_store(settings.database)
    backend = backend or WhatsAppWebBackend(settings.delivery)

    queue = JobQueue(store, settings.queue)
    dispatcher = register_backend_handlers(
        DeliveryDispatcher(timeout_s=settings.queue.dispatch_timeout_s), backend,
    )
    dispatcher.ensure_complete()
    worker = QueueWorker(queue, dispatcher, settings.queue)
    notifier = WebhookNotifier(store, settings.webhooks, transport=webhook_transport)

    async def _on_completed(job: Job):
        notifier.notify_background("job.completed", job.to_record())

    async def _on_failed(job: Job):
        notifier.notify_background("job.failed", job.to_record())

    queue.on("completed", _on_completed)
    queue.on("failed", _on_failed)

    app = FastAPI(
        title=f"{settings.app_name} API",
        description="Paced WhatsApp message queue with signed webhooks",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(InvalidInput, _handle_invalid_input)
    app.add_exception_handler(NotFound, _handle_not_found)
    app.add_exception_handler(InvalidState, _handle_invalid_state)
    app.add_exception_handler(WaDispatchError, _handle_dispatch_error)
    app.add_exception_handler(RequestValidationError, _handle_validation_error)
    app.include_router(router)

    app.state.settings = settings
    app.state.store = store
    app.state.backend = backend
    app.state.queue = queue
    app.state.dispatcher = dispatcher
    app.state.worker = worker
    app.state.notifier = notifier
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
