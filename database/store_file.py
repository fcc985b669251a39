"""
FileJobStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    jobs.json
    subscriptions.json

Features:
  - Survives process restarts (unlike InMemoryJobStore)
  - No external dependencies (no database server)
  - Flushes the changed collection on every mutation (atomic rename)
  - Single-process only (no concurrent write safety)

Best for: small deployments, demos, a single automation host.
"""
from __future__ import annotations

import json
import structlog
from datetime import datetime
from pathlib import Path
from typing import Any

from database.store_memory import InMemoryJobStore
from models.errors import PersistenceError

logger = structlog.get_logger()

_COLLECTIONS = ["jobs", "subscriptions"]


class FileJobStore(InMemoryJobStore):
    """
    Extends InMemoryJobStore with JSON file persistence.

    On init: loads all data from JSON files into memory.
    On every write: flushes the changed collection to disk.
    """

    def __init__(self, data_dir: str = "./data"):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._load_all()
        logger.info("file_store_initialized", data_dir=str(self._data_dir))

    # ── Load / Save ───────────────────────────────────────

    def _file_path(self, collection: str) -> Path:
        return self._data_dir / f"{collection}.json"

    def _load_all(self):
        """Load all collections from disk."""
        for collection in _COLLECTIONS:
            path = self._file_path(collection)
            if not path.exists():
                continue
            try:
                with open(path, "r") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("file_store_load_error",
                               collection=collection, error=str(e))
                continue
            if not isinstance(data, dict):
                logger.warning("file_store_bad_collection", collection=collection)
                continue
            if collection == "jobs":
                self._jobs = data
            else:
                self._subscriptions = data
            logger.debug("file_store_loaded", collection=collection, records=len(data))

    def _get_collection_data(self, collection: str) -> dict[str, Any]:
        return self._jobs if collection == "jobs" else self._subscriptions

    def _flush_collection(self, collection: str):
        """Write a single collection to disk."""
        path = self._file_path(collection)
        tmp_path = path.with_suffix(".tmp")
        try:
            with open(tmp_path, "w") as f:
                json.dump(self._get_collection_data(collection), f, indent=2, default=str)
            tmp_path.replace(path)  # atomic on POSIX
        except OSError as e:
            raise PersistenceError(str(e), f"flush_{collection}") from e

    def flush_all(self):
        """Force flush all collections to disk."""
        for c in _COLLECTIONS:
            self._flush_collection(c)
        logger.info("file_store_flushed_all")

    # ── Override write methods to trigger persistence ──────

    async def save_job(self, record: dict[str, Any]) -> None:
        await super().save_job(record)
        self._flush_collection("jobs")

    async def update_job(self, job_id: str, **fields) -> None:
        await super().update_job(job_id, **fields)
        self._flush_collection("jobs")

    async def delete_jobs(self, status: str, older_than: datetime) -> list[str]:
        removed = await super().delete_jobs(status, older_than)
        if removed:
            self._flush_collection("jobs")
        return removed

    async def save_subscription(self, record: dict[str, Any]) -> dict[str, Any]:
        result = await super().save_subscription(record)
        self._flush_collection("subscriptions")
        return result

    async def deactivate_subscription(self, subscription_id: str) -> bool:
        changed = await super().deactivate_subscription(subscription_id)
        if changed:
            self._flush_collection("subscriptions")
        return changed

    async def close(self) -> None:
        self.flush_all()
