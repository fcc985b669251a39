"""
Database layer — Multi-backend persistence for queue jobs and webhook
subscriptions.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  record = await store.get_job(job_id)
"""
from database.store_base import BaseJobStore
from database.store_memory import InMemoryJobStore
from database.store_file import FileJobStore
from database.store_factory import create_store

__all__ = [
    # Store interface
    "BaseJobStore",
    # Store backends (SqlJobStore lives in database.store; imported lazily
    # so the memory/file backends work without SQLAlchemy drivers)
    "InMemoryJobStore", "FileJobStore",
    # Factory
    "create_store",
]
