"""
WhatsApp Web Backend — Sends through a WhatsApp Web automation bridge.

The bridge is a small HTTP service that owns the logged-in browser session.
This backend only speaks its JSON API:

    POST {bridge_url}/send/text      {"to": ..., "text": ...}
    POST {bridge_url}/send/media     {"to": ..., "url": ..., "media_type": ..., "caption": ...}
    POST {bridge_url}/send/template  {"to": ..., "template": ..., "variables": {...}}

and expects {"id": "<message id>"} back.

With no bridge URL configured the backend simulates every send and returns
status "mock_sent", which keeps the whole pipeline runnable in development.

Retries are the queue's job; this backend makes exactly one HTTP call per
send and classifies the failure:
  - network errors, timeouts, 429 and 5xx → retryable
  - any other 4xx → not retryable (bad recipient, unknown template...)
"""
from __future__ import annotations

import re
import uuid
import httpx
import structlog
from typing import Any, Optional

from channels.base import DeliveryBackend
from config.settings import DeliveryConfig
from models.errors import DeliveryError

logger = structlog.get_logger()


def normalize_recipient(recipient: str) -> str:
    """Digits only for phone numbers; chat ids (containing @) pass through."""
    recipient = recipient.strip()
    if "@" in recipient:
        return recipient
    return re.sub(r"[^\d]", "", recipient)


class WhatsAppWebBackend(DeliveryBackend):
    """Delivery backend for the WhatsApp Web automation bridge."""

    name = "whatsapp_web"

    def __init__(self, config: DeliveryConfig = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or DeliveryConfig()
        super().__init__(
            failure_threshold=self.config.circuit_failure_threshold,
            recovery_timeout=self.config.circuit_recovery_s,
        )
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    @property
    def simulated(self) -> bool:
        return not self.config.bridge_url

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self.config.api_key:
                headers["Authorization"] = f"Bearer {self.config.api_key}"
            self.client = httpx.AsyncClient(
                base_url=self.config.bridge_url.rstrip("/"),
                headers=headers,
                timeout=self.config.timeout_s,
                transport=self._transport,
            )
        return self.client

    async def _post(self, endpoint: str, payload: dict[str, Any]) -> dict[str, Any]:
        if self.simulated:
            msg_id = f"sim.{uuid.uuid4().hex[:20]}"
            logger.info("whatsapp_send_simulated", endpoint=endpoint, to=payload["to"], msg_id=msg_id)
            return {"status": "mock_sent", "channel_message_id": msg_id}

        client = await self._get_client()
        try:
            response = await client.post(endpoint, json=payload)
        except httpx.TimeoutException as e:
            raise DeliveryError(f"Bridge timed out: {e}", retryable=True) from e
        except httpx.HTTPError as e:
            raise DeliveryError(f"Bridge unreachable: {e}", retryable=True) from e

        if response.status_code >= 400:
            retryable = response.status_code == 429 or response.status_code >= 500
            raise DeliveryError(
                f"Bridge returned {response.status_code}: {response.text[:200]}",
                retryable=retryable,
                details={"status_code": response.status_code},
            )

        try:
            body = response.json()
        except ValueError:
            body = {}
        msg_id = str(body.get("id") or body.get("message_id") or "")
        logger.info("whatsapp_sent", endpoint=endpoint, to=payload["to"], msg_id=msg_id)
        return {"status": "sent", "channel_message_id": msg_id}

    # ── Send hooks ────────────────────────────────────────────

    async def _do_send_text(self, recipient: str, text: str) -> dict[str, Any]:
        return await self._post("/send/text", {
            "to": normalize_recipient(recipient),
            "text": text,
        })

    async def _do_send_media(self, recipient: str, media_url: str,
                             media_type: str, caption: Optional[str]) -> dict[str, Any]:
        payload = {
            "to": normalize_recipient(recipient),
            "url": media_url,
            "media_type": media_type,
        }
        if caption:
            payload["caption"] = caption
        return await self._post("/send/media", payload)

    async def _do_send_template(self, recipient: str, template_name: str,
                                variables: dict[str, Any]) -> dict[str, Any]:
        return await self._post("/send/template", {
            "to": normalize_recipient(recipient),
            "template": template_name,
            "variables": variables,
        })

    # ── Health / lifecycle ────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        base = await super().health_check()
        return {**base, "simulated": self.simulated, "bridge_url": self.config.bridge_url}

    async def shutdown(self) -> None:
        if self.client and not self.client.is_closed:
            await self.client.aclose()
