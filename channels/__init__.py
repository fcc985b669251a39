"""Delivery backends that put queued jobs on the wire."""
from channels.base import (
    DeliveryBackend,
    TokenBucketRateLimiter,
    CircuitBreaker,
    BackendMetrics,
)
from channels.whatsapp_adapter import WhatsAppWebBackend, normalize_recipient

__all__ = [
    "DeliveryBackend",
    "TokenBucketRateLimiter", "CircuitBreaker", "BackendMetrics",
    "WhatsAppWebBackend", "normalize_recipient",
]
