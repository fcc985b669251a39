"""
Core data models for the WaDispatch system.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class JobType(str, Enum):
    SEND_TEXT = "send_text"
    SEND_MEDIA = "send_media"
    SEND_TEMPLATE = "send_template"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


PRIORITY_WEIGHTS: dict[JobPriority, int] = {
    JobPriority.LOW: 1,
    JobPriority.NORMAL: 5,
    JobPriority.HIGH: 10,
}

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

# failed → pending is the only backward edge (manual or automatic retry)
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.FAILED: frozenset({JobStatus.PENDING}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def is_valid_transition(current: JobStatus, new: JobStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, frozenset())


# ──────────────────────────────────────────────────────────────
#  Job: one outbound action with a tracked lifecycle
# ──────────────────────────────────────────────────────────────

class JobSpec(BaseModel):
    """Enqueue input. Validated by the queue, not by pydantic, so that
    rejections surface as InvalidJobSpec."""
    type: Optional[str] = None
    recipient: str = ""
    content: Optional[str] = None
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    priority: str = JobPriority.NORMAL.value
    metadata: dict[str, Any] = {}             # e.g. template variables


class Job(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: JobType
    recipient: str
    content: Optional[str] = None
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    priority: JobPriority = JobPriority.NORMAL
    status: JobStatus = JobStatus.PENDING
    retry_count: int = 0
    attempts: int = 0                         # delivery attempts made
    max_attempts: int = 3
    error_message: Optional[str] = None
    metadata: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    scheduled_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    history: list[dict[str, Any]] = []        # in-memory transition log, not persisted

    @property
    def weight(self) -> int:
        return PRIORITY_WEIGHTS[self.priority]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_record(self) -> dict[str, Any]:
        """Serializable durable record (what the persistence adapter stores)."""
        return self.model_dump(mode="json", exclude={"history"})

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Job:
        return cls.model_validate({k: v for k, v in record.items() if k in cls.model_fields})


class DeliveryResult(BaseModel):
    """Outcome of one successful dispatch."""
    status: str = "sent"
    message_id: str = ""
    timestamp: datetime = Field(default_factory=_utcnow)
    detail: dict[str, Any] = {}


# ──────────────────────────────────────────────────────────────
#  Webhooks
# ──────────────────────────────────────────────────────────────

class WebhookSubscription(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    url: str
    secret: Optional[str] = None
    events: list[str] = []
    is_active: bool = True
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def wants(self, event: str) -> bool:
        return self.is_active and event in self.events

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> WebhookSubscription:
        return cls.model_validate({k: v for k, v in record.items() if k in cls.model_fields})


class WebhookDeliveryOutcome(BaseModel):
    subscription_id: str
    url: str
    delivered: bool
    status_code: Optional[int] = None
    attempts: int = 0
    error: str = ""
