"""
SqlJobStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Every operation opens its own transactional session; SQLAlchemy errors are
wrapped in PersistenceError so the queue can log and carry on.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update, delete, func
from sqlalchemy.exc import SQLAlchemyError

from database.models import JobRow, WebhookRow
from database.session import get_session, init_db, close_db
from database.store_base import BaseJobStore, JOB_FILTER_FIELDS, paginate
from models.errors import PersistenceError

logger = structlog.get_logger()

_JOB_DATETIME_FIELDS = ("created_at", "updated_at", "scheduled_at", "started_at", "finished_at")


def _to_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _job_columns(fields: dict[str, Any]) -> dict[str, Any]:
    """Map record keys to JobRow attributes, parsing ISO timestamps."""
    columns = {}
    for key, value in fields.items():
        if key in _JOB_DATETIME_FIELDS:
            value = _to_datetime(value)
        if key == "metadata":
            key = "metadata_"
        if hasattr(JobRow, key):
            columns[key] = value
    return columns


class SqlJobStore(BaseJobStore):
    """
    Persistent job store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, db_url: Optional[str] = None):
        self._db_url = db_url

    async def initialize(self) -> None:
        await init_db(self._db_url)

    async def close(self) -> None:
        await close_db()

    # ── Job operations ────────────────────────────────────

    async def save_job(self, record: dict[str, Any]) -> None:
        try:
            async with get_session() as db:
                await db.merge(JobRow(**_job_columns(record)))
        except SQLAlchemyError as e:
            raise PersistenceError(str(e), "save_job", record.get("id", "")) from e

    async def update_job(self, job_id: str, **fields) -> None:
        values = _job_columns(fields)
        values.setdefault("updated_at", datetime.now(timezone.utc))
        try:
            async with get_session() as db:
                result = await db.execute(
                    update(JobRow)
                    .where(JobRow.id == job_id)
                    .values({getattr(JobRow, k): v for k, v in values.items()})
                )
                matched = result.rowcount
        except SQLAlchemyError as e:
            raise PersistenceError(str(e), "update_job", job_id) from e
        if not matched:
            raise PersistenceError("job not found in store", "update_job", job_id)

    async def get_job(self, job_id: str) -> Optional[dict[str, Any]]:
        try:
            async with get_session() as db:
                row = await db.get(JobRow, job_id)
                return row.to_dict() if row else None
        except SQLAlchemyError as e:
            raise PersistenceError(str(e), "get_job", job_id) from e

    async def list_jobs(self, filters: dict[str, Any] = None,
                        page: int = 1, limit: int = 50) -> dict[str, Any]:
        conditions = [
            getattr(JobRow, k) == v
            for k, v in (filters or {}).items()
            if k in JOB_FILTER_FIELDS and v is not None
        ]
        try:
            async with get_session() as db:
                total = await db.scalar(
                    select(func.count()).select_from(JobRow).where(*conditions)
                )
                stmt = (
                    select(JobRow)
                    .where(*conditions)
                    .order_by(JobRow.created_at.desc())
                    .limit(limit)
                    .offset((page - 1) * limit)
                )
                rows = (await db.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise PersistenceError(str(e), "list_jobs") from e
        return {
            "items": [r.to_dict() for r in rows],
            "pagination": paginate(total or 0, page, limit),
        }

    async def count_jobs_by_status(self) -> dict[str, int]:
        try:
            async with get_session() as db:
                result = await db.execute(
                    select(JobRow.status, func.count()).group_by(JobRow.status)
                )
                return {status: count for status, count in result.all()}
        except SQLAlchemyError as e:
            raise PersistenceError(str(e), "count_jobs_by_status") from e

    async def delete_jobs(self, status: str, older_than: datetime) -> list[str]:
        condition = (JobRow.status == status) & (JobRow.updated_at < older_than)
        try:
            async with get_session() as db:
                ids = list((await db.execute(select(JobRow.id).where(condition))).scalars())
                if ids:
                    await db.execute(delete(JobRow).where(JobRow.id.in_(ids)))
                return ids
        except SQLAlchemyError as e:
            raise PersistenceError(str(e), "delete_jobs") from e

    # ── Webhook subscriptions ─────────────────────────────

    async def save_subscription(self, record: dict[str, Any]) -> dict[str, Any]:
        try:
            async with get_session() as db:
                row = WebhookRow(
                    id=record["id"],
                    url=record["url"],
                    secret=record.get("secret"),
                    events=list(record.get("events") or []),
                    is_active=record.get("is_active", True),
                    created_at=_to_datetime(record.get("created_at")) or datetime.now(timezone.utc),
                    updated_at=_to_datetime(record.get("updated_at")) or datetime.now(timezone.utc),
                )
                row = await db.merge(row)
                await db.flush()
                return row.to_dict()
        except SQLAlchemyError as e:
            raise PersistenceError(str(e), "save_subscription", record.get("id", "")) from e

    async def get_subscription(self, subscription_id: str) -> Optional[dict[str, Any]]:
        try:
            async with get_session() as db:
                row = await db.get(WebhookRow, subscription_id)
                return row.to_dict() if row else None
        except SQLAlchemyError as e:
            raise PersistenceError(str(e), "get_subscription", subscription_id) from e

    async def list_subscriptions(self, include_inactive: bool = False) -> list[dict[str, Any]]:
        stmt = select(WebhookRow).order_by(WebhookRow.created_at.desc())
        if not include_inactive:
            stmt = stmt.where(WebhookRow.is_active.is_(True))
        try:
            async with get_session() as db:
                rows = (await db.execute(stmt)).scalars().all()
                return [r.to_dict() for r in rows]
        except SQLAlchemyError as e:
            raise PersistenceError(str(e), "list_subscriptions") from e

    async def deactivate_subscription(self, subscription_id: str) -> bool:
        try:
            async with get_session() as db:
                result = await db.execute(
                    update(WebhookRow)
                    .where(WebhookRow.id == subscription_id, WebhookRow.is_active.is_(True))
                    .values(is_active=False, updated_at=datetime.now(timezone.utc))
                )
                return bool(result.rowcount)
        except SQLAlchemyError as e:
            raise PersistenceError(str(e), "deactivate_subscription", subscription_id) from e
