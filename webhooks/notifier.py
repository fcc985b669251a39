"""
Webhook Notifier — Signed fan-out of events to subscriber URLs.

Every notification is wrapped in a versioned envelope:

    {"event": "job.completed", "timestamp": "<ISO-8601>", "data": {...}, "version": "1.0"}

serialized once to compact JSON. The exact bytes that are POSTed are the
bytes that are signed, so a receiver can verify with:

    verify_signature(request_body, request.headers["X-Webhook-Signature"], secret)

Fan-out runs one task per subscriber; a slow or broken subscriber never
delays or fails the others, and notify() itself never raises.
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import httpx
import structlog
from datetime import datetime, timezone
from typing import Any, Optional, Union

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import WebhookConfig
from database.store_base import BaseJobStore
from models.errors import InvalidInput, NotFound, WebhookDeliveryError
from models.schemas import WebhookDeliveryOutcome, WebhookSubscription

logger = structlog.get_logger()

ENVELOPE_VERSION = "1.0"
SIGNATURE_PREFIX = "sha256="


# ══════════════════════════════════════════════════════════════
#  SIGNING
# ══════════════════════════════════════════════════════════════

def _as_bytes(payload: Union[str, bytes]) -> bytes:
    return payload.encode("utf-8") if isinstance(payload, str) else payload


def sign_payload(payload: Union[str, bytes], secret: str) -> str:
    """HMAC-SHA256 of the raw payload, formatted as `sha256=<hex>`."""
    digest = hmac.new(secret.encode("utf-8"), _as_bytes(payload), hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(payload: Union[str, bytes], signature: Optional[str],
                     secret: Optional[str]) -> bool:
    """
    Recompute the signature and compare in constant time.
    Accepts the signature with or without the `sha256=` prefix.
    """
    if not signature or not secret:
        return False
    try:
        expected = sign_payload(payload, secret)[len(SIGNATURE_PREFIX):]
        provided = signature[len(SIGNATURE_PREFIX):] if signature.startswith(SIGNATURE_PREFIX) else signature
        return hmac.compare_digest(expected, provided)
    except (TypeError, ValueError, AttributeError):
        return False


def build_envelope(event: str, data: Any) -> dict[str, Any]:
    return {
        "event": event,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": data,
        "version": ENVELOPE_VERSION,
    }


def serialize_envelope(envelope: dict[str, Any]) -> bytes:
    return json.dumps(envelope, separators=(",", ":"), default=str).encode("utf-8")


def validate_webhook_url(url: str) -> str:
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError) as e:
        raise InvalidInput("Invalid webhook URL", details=str(e)) from e
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise InvalidInput("Webhook URL must be an absolute http(s) URL", details={"url": url})
    return url


# ══════════════════════════════════════════════════════════════
#  NOTIFIER
# ══════════════════════════════════════════════════════════════

class WebhookNotifier:
    """
    Manages subscriptions and delivers events to them.

    Usage:
        notifier = WebhookNotifier(store, settings.webhooks)
        await notifier.register("https://example.com/hook", ["job.completed"], secret="s3cret")
        outcomes = await notifier.notify("job.completed", job.to_record())
        await notifier.aclose()
    """

    def __init__(
        self,
        store: BaseJobStore,
        config: WebhookConfig = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.config = config or WebhookConfig()
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None
        self._background: set[asyncio.Task] = set()

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                timeout=self.config.timeout_s,
                transport=self._transport,
            )
        return self.client

    # ── Subscriptions ─────────────────────────────────────────

    async def register(self, url: str, events: list[str],
                       secret: Optional[str] = None) -> WebhookSubscription:
        validate_webhook_url(url)
        events = [e.strip() for e in (events or []) if isinstance(e, str) and e.strip()]
        if not events:
            raise InvalidInput("At least one event is required")
        sub = WebhookSubscription(url=url, secret=secret or None, events=events)
        record = await self.store.save_subscription(sub.to_record())
        logger.info("webhook_registered", subscription_id=sub.id, url=url, events=events)
        return WebhookSubscription.from_record(record)

    async def unregister(self, subscription_id: str) -> None:
        """Soft delete: the subscription stays stored but stops receiving events."""
        record = await self.store.get_subscription(subscription_id)
        if record is None:
            raise NotFound(f"Webhook not found: {subscription_id}",
                           details={"subscription_id": subscription_id})
        await self.store.deactivate_subscription(subscription_id)
        logger.info("webhook_unregistered", subscription_id=subscription_id)

    async def list_subscriptions(self, include_inactive: bool = False) -> list[WebhookSubscription]:
        records = await self.store.list_subscriptions(include_inactive)
        return [WebhookSubscription.from_record(r) for r in records]

    # ── Delivery ──────────────────────────────────────────────

    def _headers(self, event: str, body: bytes, secret: Optional[str]) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.config.user_agent,
            "X-Webhook-Event": event,
        }
        if secret:
            headers[self.config.signature_header] = sign_payload(body, secret)
        return headers

    async def _post_once(self, url: str, body: bytes, headers: dict[str, str]) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await asyncio.wait_for(
                client.post(url, content=body, headers=headers),
                timeout=self.config.timeout_s,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise WebhookDeliveryError(url, f"timed out after {self.config.timeout_s}s") from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise WebhookDeliveryError(url, str(e) or type(e).__name__) from e
        if not response.is_success:
            raise WebhookDeliveryError(url, f"HTTP {response.status_code}", response.status_code)
        return response

    async def deliver(self, url: str, event: str, body: bytes,
                      secret: Optional[str] = None,
                      subscription_id: str = "") -> WebhookDeliveryOutcome:
        """POST one serialized envelope to one URL. Never raises."""
        headers = self._headers(event, body, secret)
        attempts = 0
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.config.max_attempts)),
            wait=wait_exponential(multiplier=self.config.retry_backoff_s, max=30),
            retry=retry_if_exception_type(WebhookDeliveryError),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    attempts += 1
                    response = await self._post_once(url, body, headers)
        except WebhookDeliveryError as e:
            logger.warning("webhook_delivery_failed",
                           url=url,
                           webhook_event=event,
                           subscription_id=subscription_id,
                           attempts=attempts,
                           status_code=e.status_code,
                           error=e.message)
            return WebhookDeliveryOutcome(
                subscription_id=subscription_id, url=url, delivered=False,
                status_code=e.status_code, attempts=attempts, error=e.message,
            )
        except Exception as e:
            logger.error("webhook_delivery_error", url=url, webhook_event=event, error=str(e))
            return WebhookDeliveryOutcome(
                subscription_id=subscription_id, url=url, delivered=False,
                attempts=attempts, error=str(e) or type(e).__name__,
            )

        logger.info("webhook_delivered",
                    url=url,
                    webhook_event=event,
                    subscription_id=subscription_id,
                    status_code=response.status_code)
        return WebhookDeliveryOutcome(
            subscription_id=subscription_id, url=url, delivered=True,
            status_code=response.status_code, attempts=attempts,
        )

    async def notify(self, event: str, data: Any) -> list[WebhookDeliveryOutcome]:
        """Fan an event out to every active subscriber that wants it."""
        if not self.config.enabled:
            return []
        try:
            records = await self.store.list_active_subscriptions()
        except Exception as e:
            logger.error("webhook_subscriptions_unavailable", webhook_event=event, error=str(e))
            return []

        targets = [
            sub for sub in (WebhookSubscription.from_record(r) for r in records)
            if sub.wants(event)
        ]
        if not targets:
            return []

        body = serialize_envelope(build_envelope(event, data))
        outcomes = await asyncio.gather(*(
            self.deliver(sub.url, event, body, secret=sub.secret, subscription_id=sub.id)
            for sub in targets
        ))
        delivered = sum(1 for o in outcomes if o.delivered)
        logger.info("webhook_fanout_complete",
                    webhook_event=event,
                    delivered=delivered,
                    failed=len(outcomes) - delivered)
        return list(outcomes)

    def notify_background(self, event: str, data: Any) -> asyncio.Task:
        """Fire-and-forget notify(); the task is tracked until it finishes."""
        task = asyncio.create_task(self.notify(event, data))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def send_test(self, url: str, event: str = "webhook.test",
                        secret: Optional[str] = None) -> WebhookDeliveryOutcome:
        """Deliver a sample envelope to an arbitrary URL and report the result."""
        validate_webhook_url(url)
        body = serialize_envelope(build_envelope(event, {
            "message": "This is a test webhook payload",
            "test": True,
        }))
        return await self.deliver(url, event, body, secret=secret)

    async def aclose(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        if self.client and not self.client.is_closed:
            await self.client.aclose()
