"""
Error hierarchy shared by the queue, dispatcher, stores, notifier and API.

  InvalidInput          malformed caller input             → 400
    InvalidJobSpec      malformed enqueue input
  NotFound              unknown job / subscription id       → 404
  InvalidState          operation not valid in job status   → 409
  DeliveryError         dispatcher failure (drives retry)
  PersistenceError      store failure (logged, never aborts a transition)
  WebhookDeliveryError  one subscriber failed (logged, never propagated)
"""
from __future__ import annotations

from typing import Any, Optional


class WaDispatchError(Exception):
    """Base exception for all WaDispatch operations."""

    def __init__(self, message: str, details: Any = None):
        self.message = message
        self.details = details
        super().__init__(message)


class InvalidInput(WaDispatchError):
    """Malformed caller input (job spec, webhook registration...)."""


class InvalidJobSpec(InvalidInput):
    pass


class NotFound(WaDispatchError):
    pass


class InvalidState(WaDispatchError):
    pass


class DeliveryError(WaDispatchError):
    """Raised by the dispatcher. Non-retryable failures skip the backoff cycle."""

    def __init__(self, message: str, retryable: bool = True, details: Any = None):
        self.retryable = retryable
        super().__init__(message, details)


class CircuitOpenError(DeliveryError):
    def __init__(self, backend: str = ""):
        super().__init__(f"Circuit breaker open for {backend}", retryable=True)


class PersistenceError(WaDispatchError):
    def __init__(self, message: str, operation: str = "", record_id: str = ""):
        self.operation = operation
        self.record_id = record_id
        super().__init__(message, {"operation": operation, "id": record_id})


class WebhookDeliveryError(WaDispatchError):
    def __init__(self, url: str, message: str, status_code: Optional[int] = None):
        self.url = url
        self.status_code = status_code
        super().__init__(message, {"url": url, "status_code": status_code})
