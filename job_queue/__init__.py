"""
Job Queue — Paced, prioritized delivery of outbound WhatsApp actions.

- API handlers ENQUEUE jobs and return immediately
- A single QueueWorker POPS ready jobs and hands them to the dispatcher
- Failed deliveries come back with exponential backoff
"""
from job_queue.message_queue import JobQueue, validate_job_spec, is_valid_recipient
from job_queue.dispatcher import DeliveryDispatcher, register_backend_handlers
from job_queue.consumer import QueueWorker

__all__ = [
    "JobQueue", "validate_job_spec", "is_valid_recipient",
    "DeliveryDispatcher", "register_backend_handlers",
    "QueueWorker",
]
