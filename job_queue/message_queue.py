"""
Job Queue — In-process owned queue for outbound WhatsApp actions.

Holds every job the process knows about and serializes all lifecycle
mutations behind one asyncio.Lock, so API calls (enqueue, cancel, retry,
cleanup) never race the worker popping or transitioning a job.

Lifecycle:

    pending ──▶ processing ──▶ completed
       │            │
       │            └────────▶ failed ──▶ pending   (retry: automatic or manual)
       └──▶ cancelled

Scheduling:
  - Each job gets a randomized pacing delay at enqueue (human-like sending).
  - Among jobs whose scheduled time has passed, the highest effective weight
    wins; ties go to enqueue order (FIFO within a tier).
  - Effective weight = priority weight + one point per `priority_aging_s`
    waited since the job became eligible, so a low-priority job cannot be
    starved forever. `priority_aging_s = 0` gives strict priority.
  - Failed deliveries are retried after min(base * 2^retry_count, cap) until
    `max_attempts` delivery attempts have been made.

Persistence is a write-behind mirror: the store is updated after each
in-memory transition and failures are logged, never rolled back.
"""
from __future__ import annotations

import asyncio
import inspect
import itertools
import random
import re
import structlog
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Union

from config.settings import QueueConfig
from database.store_base import BaseJobStore
from models.errors import InvalidJobSpec, InvalidState, NotFound
from models.schemas import (
    DeliveryResult, Job, JobPriority, JobSpec, JobStatus, JobType,
    TERMINAL_STATUSES, is_valid_transition,
)

logger = structlog.get_logger()

MAX_CONTENT_LENGTH = 4096
_PHONE_RE = re.compile(r"^\+?[1-9]\d{1,14}$")
_PHONE_STRIP_RE = re.compile(r"[\s\-()]")

Listener = Callable[[Job], Union[Awaitable[None], None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_valid_recipient(recipient: str) -> bool:
    """Phone number in international format, or a chat id such as 1234@g.us."""
    if "@" in recipient:
        return True
    return bool(_PHONE_RE.match(_PHONE_STRIP_RE.sub("", recipient)))


def validate_job_spec(spec: Union[JobSpec, dict[str, Any]]) -> JobSpec:
    """Check an enqueue request. Raises InvalidJobSpec listing every problem."""
    if isinstance(spec, dict):
        try:
            spec = JobSpec.model_validate(spec)
        except ValueError as e:
            raise InvalidJobSpec("Malformed job spec", details=str(e)) from e

    problems: list[str] = []
    job_type = None
    if not spec.type:
        problems.append("type is required")
    else:
        try:
            job_type = JobType(spec.type)
        except ValueError:
            problems.append(f"unrecognized job type: {spec.type}")

    recipient = (spec.recipient or "").strip()
    if not recipient:
        problems.append("recipient is required")
    elif not is_valid_recipient(recipient):
        problems.append("invalid recipient format")

    if not spec.content and not spec.media_url:
        problems.append("either content or media_url must be provided")
    if spec.media_url and not spec.media_type:
        problems.append("media_type is required when media_url is provided")
    if job_type == JobType.SEND_TEXT and not spec.content:
        problems.append("send_text requires content")
    if job_type == JobType.SEND_MEDIA and not spec.media_url:
        problems.append("send_media requires media_url")
    if job_type == JobType.SEND_TEMPLATE and not spec.content:
        problems.append("send_template requires the template name as content")
    if spec.content and len(spec.content) > MAX_CONTENT_LENGTH:
        problems.append(f"content exceeds {MAX_CONTENT_LENGTH} characters")

    try:
        JobPriority(spec.priority)
    except ValueError:
        problems.append("priority must be low, normal, or high")

    if problems:
        raise InvalidJobSpec("Invalid job spec: " + "; ".join(problems), details=problems)
    return spec


class JobQueue:
    """
    Single owner of in-memory job state.

    Usage:
        queue = JobQueue(store, settings.queue)
        await queue.recover()                 # reload persisted work
        job = await queue.enqueue({...})
        await queue.cancel(job.id)
    """

    def __init__(
        self,
        store: BaseJobStore,
        config: QueueConfig = None,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.config = config or QueueConfig()
        self._rng = rng or random.Random()
        self._jobs: dict[str, Job] = {}
        self._pending: set[str] = set()
        self._order: dict[str, int] = {}        # job_id → enqueue sequence, kept across retries
        self._seq = itertools.count()
        self._lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    # ── Timing ────────────────────────────────────────────────

    def pacing_delay_ms(self) -> int:
        low = max(0, self.config.pacing_delay_min_ms)
        high = max(low, self.config.pacing_delay_max_ms)
        return self._rng.randint(low, high)

    def backoff_ms(self, retry_count: int) -> int:
        return min(self.config.backoff_base_ms * (2 ** retry_count), self.config.backoff_max_ms)

    def effective_weight(self, job: Job, now: datetime) -> int:
        weight = job.weight
        if self.config.priority_aging_s > 0:
            waited = (now - job.scheduled_at).total_seconds()
            if waited > 0:
                weight += int(waited // self.config.priority_aging_s)
        return weight

    # ── Events ────────────────────────────────────────────────

    def on(self, event: str, listener: Listener) -> None:
        """Subscribe to queue events: enqueued, completed, failed, retrying, cancelled."""
        self._listeners[event].append(listener)

    async def _emit(self, event: str, job: Job) -> None:
        for listener in self._listeners.get(event, []):
            try:
                result = listener(job)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("queue_listener_error", queue_event=event, job_id=job.id, error=str(e))

    # ── Persistence ───────────────────────────────────────────

    async def _persist(self, operation: str, job_id: str, call: Awaitable[Any]) -> None:
        try:
            await call
        except Exception as e:
            logger.error("job_persist_failed",
                         job_id=job_id, operation=operation, error=str(e))

    async def _persist_fields(self, job: Job, *fields: str) -> None:
        record = job.to_record()
        values = {f: record[f] for f in fields}
        values["updated_at"] = record["updated_at"]
        await self._persist("update_job", job.id, self.store.update_job(job.id, **values))

    # ── Internal state helpers (call with the lock held) ───────

    def _transition(self, job: Job, new_status: JobStatus, reason: str = "") -> None:
        if not is_valid_transition(job.status, new_status):
            raise InvalidState(
                f"Cannot move job {job.id} from {job.status.value} to {new_status.value}",
                details={"job_id": job.id, "status": job.status.value},
            )
        now = _utcnow()
        entry = {"from": job.status.value, "to": new_status.value, "at": now.isoformat()}
        if reason:
            entry["reason"] = reason
        job.history.append(entry)
        job.status = new_status
        job.updated_at = now

    def _make_pending(self, job: Job, delay_ms: int) -> None:
        job.scheduled_at = _utcnow() + timedelta(milliseconds=delay_ms)
        self._order.setdefault(job.id, next(self._seq))
        self._pending.add(job.id)
        self._wakeup.set()

    async def _load(self, job_id: str) -> Job:
        """Return the live job, pulling it from the store if only persisted."""
        job = self._jobs.get(job_id)
        if job is not None:
            return job
        try:
            record = await self.store.get_job(job_id)
        except Exception as e:
            logger.error("job_persist_failed", job_id=job_id, operation="get_job", error=str(e))
            record = None
        if record is None:
            raise NotFound(f"Job not found: {job_id}", details={"job_id": job_id})
        job = Job.from_record(record)
        self._jobs[job.id] = job
        if job.status == JobStatus.PENDING:
            # keep the persisted scheduled_at; only join the ready set
            self._order[job.id] = next(self._seq)
            self._pending.add(job.id)
            self._wakeup.set()
        return job

    # ── Public API ────────────────────────────────────────────

    async def enqueue(self, spec: Union[JobSpec, dict[str, Any]]) -> Job:
        """Validate, schedule and persist a new job. Returns immediately."""
        spec = validate_job_spec(spec)
        delay_ms = self.pacing_delay_ms()
        job = Job(
            type=JobType(spec.type),
            recipient=spec.recipient.strip(),
            content=spec.content,
            media_url=spec.media_url,
            media_type=spec.media_type,
            priority=JobPriority(spec.priority),
            max_attempts=self.config.max_attempts,
            metadata=dict(spec.metadata),
        )
        async with self._lock:
            self._jobs[job.id] = job
            self._make_pending(job, delay_ms)
            snapshot = job.model_copy(deep=True)

        await self._persist("save_job", job.id, self.store.save_job(snapshot.to_record()))
        logger.info("job_enqueued",
                    job_id=job.id,
                    job_type=job.type.value,
                    recipient=job.recipient,
                    priority=job.priority.value,
                    delay_ms=delay_ms)
        await self._emit("enqueued", snapshot)
        return snapshot

    async def get_job(self, job_id: str) -> Job:
        async with self._lock:
            job = await self._load(job_id)
            return job.model_copy(deep=True)

    async def list_jobs(self, filters: dict[str, Any] = None,
                        page: int = 1, limit: int = 50) -> dict[str, Any]:
        """Paginated view of the persisted mirror."""
        return await self.store.list_jobs(filters, page, limit)

    async def cancel(self, job_id: str) -> bool:
        async with self._lock:
            job = await self._load(job_id)
            if job.status != JobStatus.PENDING:
                logger.info("job_cancel_rejected", job_id=job_id, status=job.status.value)
                return False
            self._pending.discard(job_id)
            self._transition(job, JobStatus.CANCELLED, "cancelled by caller")
            job.finished_at = job.updated_at
            snapshot = job.model_copy(deep=True)

        await self._persist_fields(snapshot, "status", "finished_at")
        logger.info("job_cancelled", job_id=job_id)
        await self._emit("cancelled", snapshot)
        return True

    async def retry(self, job_id: str) -> bool:
        """Manually re-queue a failed job. retry_count is shared with automatic retries."""
        async with self._lock:
            job = await self._load(job_id)
            if job.status != JobStatus.FAILED:
                raise InvalidState(
                    "Only failed jobs can be retried",
                    details={"job_id": job_id, "status": job.status.value},
                )
            self._transition(job, JobStatus.PENDING, "manual retry")
            job.retry_count += 1
            job.finished_at = None
            self._make_pending(job, self.pacing_delay_ms())
            snapshot = job.model_copy(deep=True)

        await self._persist_fields(snapshot, "status", "retry_count", "scheduled_at", "finished_at")
        logger.info("job_retried", job_id=job_id, retry_count=snapshot.retry_count)
        await self._emit("retrying", snapshot)
        return True

    def pause(self) -> None:
        """Stop handing out jobs. A job already processing runs to completion."""
        self._resumed.clear()
        logger.info("queue_paused")

    def resume(self) -> None:
        self._resumed.set()
        self._wakeup.set()
        logger.info("queue_resumed")

    @property
    def is_paused(self) -> bool:
        return not self._resumed.is_set()

    async def get_status(self) -> dict[str, Any]:
        async with self._lock:
            counts = {s.value: 0 for s in JobStatus}
            for job in self._jobs.values():
                counts[job.status.value] += 1
            failed = sorted(
                (j for j in self._jobs.values() if j.status == JobStatus.FAILED),
                key=lambda j: j.updated_at,
                reverse=True,
            )
            recent_failed = [
                {
                    "id": j.id,
                    "type": j.type.value,
                    "error_message": j.error_message,
                    "failed_at": j.updated_at.isoformat(),
                }
                for j in failed[:10]
            ]

        try:
            persisted = await self.store.count_jobs_by_status()
        except Exception as e:
            logger.error("job_persist_failed", operation="count_jobs_by_status", error=str(e))
            persisted = None

        return {
            "counts": counts,
            "persisted": persisted,
            "paused": self.is_paused,
            "recent_failed": recent_failed,
        }

    async def cleanup(self, older_than: timedelta, state: Union[JobStatus, str]) -> int:
        """Remove terminal jobs of `state` last touched before now - older_than."""
        try:
            state = JobStatus(state)
        except ValueError:
            raise InvalidState(f"Unknown job state: {state}")
        if state not in TERMINAL_STATUSES:
            raise InvalidState(
                f"Only terminal jobs can be cleaned up, not {state.value}",
                details={"state": state.value},
            )

        cutoff = _utcnow() - older_than
        async with self._lock:
            removed = {
                jid for jid, job in self._jobs.items()
                if job.status == state and job.updated_at < cutoff
            }
            for jid in removed:
                del self._jobs[jid]
                self._order.pop(jid, None)

        try:
            removed.update(await self.store.delete_jobs(state.value, cutoff))
        except Exception as e:
            logger.error("job_persist_failed", operation="delete_jobs", error=str(e))

        logger.info("jobs_cleaned", state=state.value, removed=len(removed))
        return len(removed)

    async def recover(self) -> int:
        """
        Reload persisted pending/processing jobs after a restart.
        Jobs interrupted mid-delivery come back as pending.
        """
        records: list[dict[str, Any]] = []
        for status in (JobStatus.PENDING, JobStatus.PROCESSING):
            page = 1
            while True:
                try:
                    result = await self.store.list_jobs({"status": status.value}, page, 100)
                except Exception as e:
                    logger.error("job_recovery_failed", status=status.value, error=str(e))
                    break
                records.extend(result["items"])
                if page >= result["pagination"]["total_pages"]:
                    break
                page += 1

        records.sort(key=lambda r: r.get("created_at") or "")
        restored: list[Job] = []
        async with self._lock:
            for record in records:
                if record["id"] in self._jobs:
                    continue
                job = Job.from_record(record)
                if job.status == JobStatus.PROCESSING:
                    job.history.append({
                        "from": JobStatus.PROCESSING.value,
                        "to": JobStatus.PENDING.value,
                        "at": _utcnow().isoformat(),
                        "reason": "recovered after restart",
                    })
                    job.status = JobStatus.PENDING
                    job.updated_at = _utcnow()
                self._jobs[job.id] = job
                self._order[job.id] = next(self._seq)
                self._pending.add(job.id)
                restored.append(job.model_copy(deep=True))
            if restored:
                self._wakeup.set()

        for job in restored:
            await self._persist_fields(job, "status")
        logger.info("jobs_recovered", count=len(restored))
        return len(restored)

    # ── Worker side ───────────────────────────────────────────

    def _select_ready(self, now: datetime) -> Optional[Job]:
        best: Optional[tuple[int, int]] = None
        best_job: Optional[Job] = None
        for job_id in self._pending:
            job = self._jobs[job_id]
            if job.scheduled_at > now:
                continue
            key = (-self.effective_weight(job, now), self._order[job_id])
            if best is None or key < best:
                best, best_job = key, job
        return best_job

    def has_ready(self) -> bool:
        return not self.is_paused and self._select_ready(_utcnow()) is not None

    def next_ready_in(self) -> Optional[float]:
        """Seconds until the earliest pending job becomes eligible."""
        if not self._pending:
            return None
        earliest = min(self._jobs[jid].scheduled_at for jid in self._pending)
        return max(0.0, (earliest - _utcnow()).total_seconds())

    async def pop_ready(self) -> Optional[Job]:
        """Move the best eligible job to processing and hand a copy to the worker."""
        async with self._lock:
            if self.is_paused:
                return None
            job = self._select_ready(_utcnow())
            if job is None:
                return None
            self._pending.discard(job.id)
            self._transition(job, JobStatus.PROCESSING)
            job.attempts += 1
            job.started_at = job.updated_at
            snapshot = job.model_copy(deep=True)

        await self._persist_fields(snapshot, "status", "attempts", "started_at")
        logger.info("job_processing",
                    job_id=snapshot.id,
                    job_type=snapshot.type.value,
                    attempt=snapshot.attempts)
        return snapshot

    async def complete(self, job_id: str, result: Optional[DeliveryResult] = None) -> Job:
        async with self._lock:
            job = await self._load(job_id)
            self._transition(job, JobStatus.COMPLETED)
            job.finished_at = job.updated_at
            job.error_message = None
            if result is not None:
                job.metadata["delivery"] = result.model_dump(mode="json")
            snapshot = job.model_copy(deep=True)

        await self._persist_fields(snapshot, "status", "finished_at", "error_message", "metadata")
        logger.info("job_completed", job_id=job_id, recipient=snapshot.recipient)
        await self._emit("completed", snapshot)
        return snapshot

    async def fail(self, job_id: str, error: str, retryable: bool = True) -> Job:
        """
        Record a delivery failure. Schedules a backoff retry while attempts
        remain, otherwise leaves the job in terminal `failed`.
        """
        async with self._lock:
            job = await self._load(job_id)
            self._transition(job, JobStatus.FAILED, error)
            job.error_message = error
            will_retry = retryable and job.attempts < job.max_attempts
            if will_retry:
                job.retry_count += 1
                backoff = self.backoff_ms(job.retry_count)
                self._transition(job, JobStatus.PENDING, "automatic retry")
                self._make_pending(job, backoff)
            else:
                job.finished_at = job.updated_at
            snapshot = job.model_copy(deep=True)

        if will_retry:
            await self._persist_fields(
                snapshot, "status", "retry_count", "error_message", "scheduled_at",
            )
            logger.warning("job_retry_scheduled",
                           job_id=job_id,
                           retry_count=snapshot.retry_count,
                           attempts=snapshot.attempts,
                           backoff_ms=backoff,
                           error=error)
            await self._emit("retrying", snapshot)
        else:
            await self._persist_fields(
                snapshot, "status", "retry_count", "error_message", "finished_at",
            )
            logger.error("job_failed",
                         job_id=job_id,
                         attempts=snapshot.attempts,
                         retryable=retryable,
                         error=error)
            await self._emit("failed", snapshot)
        return snapshot

    def wake(self) -> None:
        self._wakeup.set()

    async def wait_for_work(self, timeout: float) -> None:
        """Sleep until woken, the next job becomes eligible, or timeout."""
        next_in = self.next_ready_in()
        if next_in is not None:
            timeout = min(timeout, next_in)
        self._wakeup.clear()
        if timeout <= 0:
            return
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def wait_until_resumed(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._resumed.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False
