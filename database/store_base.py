"""
Abstract Job Store — Interface for all persistence backends.

Implementations:
  - SqlJobStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryJobStore (dict-based, single-process, no persistence)
  - FileJobStore     (JSON files on disk, single-process, durable)

The store is a durable mirror of queue state used for observability and
recovery after restart. The in-memory JobQueue remains authoritative for
scheduling. Records are plain dicts in the shape of Job.to_record() and
WebhookSubscription.to_record(); timestamps are ISO-8601 strings.

Backends raise PersistenceError for failed writes.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

JOB_FILTER_FIELDS = ("status", "type", "recipient", "priority")


def paginate(total: int, page: int, limit: int) -> dict[str, int]:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": (total + limit - 1) // limit if limit > 0 else 0,
    }


class BaseJobStore(ABC):
    """Interface that all job store backends must implement."""

    # ── Jobs ──────────────────────────────────────────────────

    @abstractmethod
    async def save_job(self, record: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def update_job(self, job_id: str, **fields) -> None:
        """Apply a partial update; raises PersistenceError for unknown ids."""
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[dict[str, Any]]:
        ...

    @abstractmethod
    async def list_jobs(self, filters: dict[str, Any] = None,
                        page: int = 1, limit: int = 50) -> dict[str, Any]:
        """Return {"items": [...], "pagination": {...}}, newest first."""
        ...

    @abstractmethod
    async def count_jobs_by_status(self) -> dict[str, int]:
        ...

    @abstractmethod
    async def delete_jobs(self, status: str, older_than: datetime) -> list[str]:
        """Delete jobs in `status` last updated before `older_than`. Returns ids."""
        ...

    # ── Webhook subscriptions ─────────────────────────────────

    @abstractmethod
    async def save_subscription(self, record: dict[str, Any]) -> dict[str, Any]:
        ...

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> Optional[dict[str, Any]]:
        ...

    @abstractmethod
    async def list_subscriptions(self, include_inactive: bool = False) -> list[dict[str, Any]]:
        ...

    async def list_active_subscriptions(self) -> list[dict[str, Any]]:
        return await self.list_subscriptions(include_inactive=False)

    @abstractmethod
    async def deactivate_subscription(self, subscription_id: str) -> bool:
        """Soft delete. Returns False when the id is unknown or already inactive."""
        ...

    # ── Lifecycle ─────────────────────────────────────────────

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass
