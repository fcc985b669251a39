"""
Delivery Backends — Base infrastructure for anything that actually sends.

Provides:
- TokenBucketRateLimiter: async token bucket with configurable burst
- CircuitBreaker: failure-counting breaker with half-open probe
- BackendMetrics: per-backend send/fail/latency tracking
- DeliveryBackend: abstract base wrapping every send with breaker + metrics
"""
from __future__ import annotations

import abc
import asyncio
import time
import structlog
from typing import Any, Optional

from models.errors import CircuitOpenError, DeliveryError

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  TOKEN BUCKET RATE LIMITER
# ══════════════════════════════════════════════════════════════

class TokenBucketRateLimiter:
    """
    Async token bucket rate limiter.
    Tokens refill at `rate` per second up to `burst` capacity.
    """

    def __init__(self, rate: float = 1.0, burst: int = 1):
        self.rate = rate
        self.burst = burst
        self._tokens: float = float(burst)
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            async with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            wait = min(1.0 / max(self.rate, 0.001), remaining)
            await asyncio.sleep(wait)

    def _refill(self):
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._tokens = min(self.burst, self._tokens + elapsed * self.rate)
        self._last_refill = now


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    closed → open (after threshold failures) → half_open (after timeout) →
    closed (on success) or open (on failure).
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0
        self._total_failures = 0
        self._total_successes = 0

    @property
    def state(self) -> str:
        if self._state == "open":
            if time.monotonic() - self._opened_at >= self.recovery_timeout:
                return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._total_failures += 1
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._open()

    def record_success(self):
        self._total_successes += 1
        if self.state == "half_open":
            self._close()
        else:
            self._failure_count = 0

    def _open(self):
        self._state = "open"
        self._opened_at = time.monotonic()
        logger.warning("circuit_opened", failures=self._failure_count)

    def _close(self):
        self._state = "closed"
        self._failure_count = 0
        logger.info("circuit_closed")

    def reset(self):
        self._close()

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "failure_count": self._failure_count,
            "total_failures": self._total_failures,
            "total_successes": self._total_successes,
        }


# ══════════════════════════════════════════════════════════════
#  BACKEND METRICS
# ══════════════════════════════════════════════════════════════

class BackendMetrics:
    """Tracks send, failure, and latency numbers for one backend."""

    def __init__(self, backend: str):
        self.backend = backend
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)
            del self._latencies[:-500]

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)
            del self._errors[:-50]

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.messages_sent + self.messages_failed
        return self.messages_failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "backend": self.backend,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  DELIVERY BACKEND — Abstract Base
# ══════════════════════════════════════════════════════════════

class DeliveryBackend(abc.ABC):
    """
    Base class for WhatsApp delivery backends.

    Subclasses implement _do_send_text, _do_send_media and _do_send_template.
    The public methods wrap each call with the circuit breaker and metrics and
    turn a {"status": "failed"} result into a DeliveryError.
    """

    name: str = "backend"

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self._breaker = CircuitBreaker(failure_threshold, recovery_timeout)
        self._metrics = BackendMetrics(self.name)

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def _do_send_text(self, recipient: str, text: str) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def _do_send_media(self, recipient: str, media_url: str,
                             media_type: str, caption: Optional[str]) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def _do_send_template(self, recipient: str, template_name: str,
                                variables: dict[str, Any]) -> dict[str, Any]:
        ...

    # ── Public send ───────────────────────────────────────────

    async def send_text(self, recipient: str, text: str) -> dict[str, Any]:
        return await self._guarded("send_text", self._do_send_text(recipient, text))

    async def send_media(self, recipient: str, media_url: str, media_type: str,
                         caption: Optional[str] = None) -> dict[str, Any]:
        return await self._guarded(
            "send_media", self._do_send_media(recipient, media_url, media_type, caption),
        )

    async def send_template(self, recipient: str, template_name: str,
                            variables: dict[str, Any] = None) -> dict[str, Any]:
        return await self._guarded(
            "send_template", self._do_send_template(recipient, template_name, variables or {}),
        )

    async def _guarded(self, action: str, call) -> dict[str, Any]:
        if self._breaker.is_open:
            call.close()
            self._metrics.record_failure("circuit_open")
            raise CircuitOpenError(self.name)

        start = time.monotonic()
        try:
            result = await call
        except DeliveryError as e:
            # only retryable failures count toward opening the circuit
            if e.retryable:
                self._breaker.record_failure()
            self._metrics.record_failure(e.message)
            raise
        except Exception as e:
            self._breaker.record_failure()
            self._metrics.record_failure(str(e))
            logger.warning("backend_send_error", backend=self.name, action=action, error=str(e))
            raise DeliveryError(f"{action} failed: {e}", retryable=True) from e

        if result.get("status") == "failed":
            error = result.get("error", f"{action} failed")
            retryable = result.get("retryable", True)
            if retryable:
                self._breaker.record_failure()
            self._metrics.record_failure(error)
            raise DeliveryError(error, retryable=retryable, details=result)

        latency = (time.monotonic() - start) * 1000
        self._breaker.record_success()
        self._metrics.record_send(latency)
        result["latency_ms"] = round(latency, 1)
        return result

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "backend": self.name,
            "circuit_breaker": self._breaker.stats,
            "metrics": self._metrics.to_dict(),
        }

    async def shutdown(self) -> None:
        pass
