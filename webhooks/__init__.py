"""Outbound webhook notifications with HMAC-SHA256 signing."""
from webhooks.notifier import (
    WebhookNotifier,
    sign_payload,
    verify_signature,
    build_envelope,
    serialize_envelope,
)

__all__ = [
    "WebhookNotifier",
    "sign_payload", "verify_signature",
    "build_envelope", "serialize_envelope",
]
