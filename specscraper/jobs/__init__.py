"""Scrape jobs: state machine, persistence, queue service and workers."""

from .runner import JobRunner
from .service import ItemOutcome, JobQueueService, ReapReport
from .state import ACTIVE_STEPS, TERMINAL_STEPS, can_transition, transition
from .store import JobStore, MemoryJobStore
from .worker import Worker, WorkerConfig, WorkerPool

__all__ = [
    "JobRunner",
    "ItemOutcome",
    "JobQueueService",
    "ReapReport",
    "ACTIVE_STEPS",
    "TERMINAL_STEPS",
    "can_transition",
    "transition",
    "JobStore",
    "MemoryJobStore",
    "Worker",
    "WorkerConfig",
    "WorkerPool",
]
