"""
InMemoryJobStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database server)
  - Full interface compatibility with SqlJobStore
  - Safe within a single event loop (no awaits inside mutations)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from database.store_base import BaseJobStore, JOB_FILTER_FIELDS, paginate
from models.errors import PersistenceError

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse(ts: Optional[str]) -> Optional[datetime]:
    if not ts:
        return None
    value = datetime.fromisoformat(ts)
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class InMemoryJobStore(BaseJobStore):
    """
    Full-featured in-memory store with the same interface as SqlJobStore.
    Returns copies so callers cannot mutate stored records.
    """

    def __init__(self):
        self._jobs: dict[str, dict] = {}             # id → job record
        self._subscriptions: dict[str, dict] = {}    # id → subscription record
        logger.info("inmemory_store_initialized")

    # ── Jobs ──────────────────────────────────────────────

    async def save_job(self, record: dict[str, Any]) -> None:
        self._jobs[record["id"]] = dict(record)

    async def update_job(self, job_id: str, **fields) -> None:
        job = self._jobs.get(job_id)
        if job is None:
            raise PersistenceError("job not found in store", "update_job", job_id)
        job.update(fields)
        if "updated_at" not in fields:
            job["updated_at"] = _utcnow().isoformat()

    async def get_job(self, job_id: str) -> Optional[dict[str, Any]]:
        job = self._jobs.get(job_id)
        return dict(job) if job else None

    async def list_jobs(self, filters: dict[str, Any] = None,
                        page: int = 1, limit: int = 50) -> dict[str, Any]:
        filters = {k: v for k, v in (filters or {}).items()
                   if k in JOB_FILTER_FIELDS and v is not None}
        matched = [
            j for j in self._jobs.values()
            if all(j.get(k) == v for k, v in filters.items())
        ]
        matched.sort(key=lambda j: j.get("created_at", ""), reverse=True)
        offset = (page - 1) * limit
        return {
            "items": [dict(j) for j in matched[offset:offset + limit]],
            "pagination": paginate(len(matched), page, limit),
        }

    async def count_jobs_by_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for j in self._jobs.values():
            counts[j["status"]] = counts.get(j["status"], 0) + 1
        return counts

    async def delete_jobs(self, status: str, older_than: datetime) -> list[str]:
        doomed = [
            jid for jid, j in self._jobs.items()
            if j["status"] == status and _parse(j.get("updated_at")) < older_than
        ]
        for jid in doomed:
            del self._jobs[jid]
        return doomed

    # ── Webhook subscriptions ─────────────────────────────

    async def save_subscription(self, record: dict[str, Any]) -> dict[str, Any]:
        self._subscriptions[record["id"]] = dict(record)
        return dict(record)

    async def get_subscription(self, subscription_id: str) -> Optional[dict[str, Any]]:
        sub = self._subscriptions.get(subscription_id)
        return dict(sub) if sub else None

    async def list_subscriptions(self, include_inactive: bool = False) -> list[dict[str, Any]]:
        subs = [
            dict(s) for s in self._subscriptions.values()
            if include_inactive or s.get("is_active", True)
        ]
        subs.sort(key=lambda s: s.get("created_at", ""), reverse=True)
        return subs

    async def deactivate_subscription(self, subscription_id: str) -> bool:
        sub = self._subscriptions.get(subscription_id)
        if not sub or not sub.get("is_active", True):
            return False
        sub["is_active"] = False
        sub["updated_at"] = _utcnow().isoformat()
        return True

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "jobs": len(self._jobs),
            "subscriptions": len(self._subscriptions),
        }
