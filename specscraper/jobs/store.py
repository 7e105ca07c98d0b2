"""Job and queue-item persistence interface plus the in-memory backend."""
from __future__ import annotations

import itertools
import logging
from collections import Counter
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Sequence

from ..errors import DuplicateActiveJob, InvalidTransition, JobNotFound
from ..models import BulkJob, BulkStatus, JobStep, QueueItem, QueueItemStatus, ScrapeJob
from .state import ACTIVE_STEPS

LOGGER = logging.getLogger(__name__)

OPEN_STATUSES = (QueueItemStatus.PENDING, QueueItemStatus.CLAIMED)


class JobStore(Protocol):
    """Abstract job store.

    Every method is atomic on its own; callers never hold a transaction open
    across awaits.
    """

    async def insert_job(self, job: ScrapeJob, item: Optional[QueueItem] = None) -> Optional[QueueItem]:
        """Persist a new job (and its first queue item).

        Raises
        ------
        DuplicateActiveJob
            If the device already has a job in an active step
        """
        ...

    async def get_job(self, job_id: str) -> Optional[ScrapeJob]:
        ...

    async def get_active_job(self, device_id: str) -> Optional[ScrapeJob]:
        ...

    async def get_latest_job(self, device_id: str) -> Optional[ScrapeJob]:
        ...

    async def list_jobs(
        self,
        user_id: Optional[str] = None,
        active_only: bool = False,
        limit: int = 100,
    ) -> List[ScrapeJob]:
        ...

    async def save_job(self, job: ScrapeJob, expected_step: JobStep) -> ScrapeJob:
        """Write ``job`` only if the stored step still equals ``expected_step``.

        Raises
        ------
        InvalidTransition
            If another writer moved the job first
        """
        ...

    async def add_item(self, item: QueueItem) -> QueueItem:
        ...

    async def claim_next(self, worker_id: str, now: datetime) -> Optional[QueueItem]:
        """Claim the earliest eligible pending item.

        Eligible means ``next_run_at <= now``, no other item of the same
        device is currently claimed and the item's bulk job (if any) is not
        paused. Claiming counts as an attempt.
        """
        ...

    async def get_item(self, item_id: int) -> Optional[QueueItem]:
        ...

    async def list_items(self, job_id: str) -> List[QueueItem]:
        ...

    async def save_item(self, item: QueueItem) -> QueueItem:
        ...

    async def open_items(self, job_id: str) -> List[QueueItem]:
        ...

    async def stale_claims(self, cutoff: datetime) -> List[QueueItem]:
        ...

    async def stale_jobs(self, step: JobStep, cutoff: datetime) -> List[ScrapeJob]:
        ...

    async def error_items(self) -> List[QueueItem]:
        ...

    async def delete_archived(self, cutoff: datetime) -> int:
        ...

    async def stats(self) -> Dict[str, int]:
        ...

    async def insert_bulk(self, bulk: BulkJob) -> BulkJob:
        ...

    async def get_bulk(self, bulk_id: str) -> Optional[BulkJob]:
        ...

    async def save_bulk(self, bulk: BulkJob) -> BulkJob:
        ...

    async def list_bulks(self, statuses: Optional[Sequence[BulkStatus]] = None, limit: int = 100) -> List[BulkJob]:
        ...

    async def bulk_steps(self, bulk_id: str) -> Dict[str, int]:
        """Member job count per step."""
        ...

    async def bulk_items(self, bulk_id: str, status: QueueItemStatus) -> List[QueueItem]:
        ...


class MemoryJobStore:
    """Process-local store for development and tests.

    Atomicity comes from never awaiting inside a method body: each call runs
    to completion before another coroutine can observe the dicts.
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, ScrapeJob] = {}
        self._items: Dict[int, QueueItem] = {}
        self._bulks: Dict[str, BulkJob] = {}
        self._item_ids = itertools.count(1)

    async def insert_job(self, job: ScrapeJob, item: Optional[QueueItem] = None) -> Optional[QueueItem]:
        for existing in self._jobs.values():
            if existing.device_id == job.device_id and existing.step in ACTIVE_STEPS:
                raise DuplicateActiveJob(job.device_id, existing.id)
        self._jobs[job.id] = job.model_copy()
        if item is None:
            return None
        return self._store_new_item(item)

    async def get_job(self, job_id: str) -> Optional[ScrapeJob]:
        job = self._jobs.get(job_id)
        return job.model_copy() if job else None

    async def get_active_job(self, device_id: str) -> Optional[ScrapeJob]:
        for job in self._jobs.values():
            if job.device_id == device_id and job.step in ACTIVE_STEPS:
                return job.model_copy()
        return None

    async def get_latest_job(self, device_id: str) -> Optional[ScrapeJob]:
        jobs = [job for job in self._jobs.values() if job.device_id == device_id]
        if not jobs:
            return None
        return max(jobs, key=lambda job: job.created_at).model_copy()

    async def list_jobs(
        self,
        user_id: Optional[str] = None,
        active_only: bool = False,
        limit: int = 100,
    ) -> List[ScrapeJob]:
        jobs = [
            job
            for job in self._jobs.values()
            if (user_id is None or job.requesting_user_id == user_id)
            and (not active_only or job.step in ACTIVE_STEPS)
        ]
        jobs.sort(key=lambda job: job.updated_at, reverse=True)
        return [job.model_copy() for job in jobs[:limit]]

    async def save_job(self, job: ScrapeJob, expected_step: JobStep) -> ScrapeJob:
        stored = self._jobs.get(job.id)
        if stored is None:
            raise JobNotFound(f"Job {job.id} not found")
        if stored.step != expected_step:
            raise InvalidTransition(stored.step.value, JobStep(job.step).value)
        if job.step in ACTIVE_STEPS and stored.step not in ACTIVE_STEPS:
            for other in self._jobs.values():
                if other.id != job.id and other.device_id == job.device_id and other.step in ACTIVE_STEPS:
                    raise DuplicateActiveJob(job.device_id, other.id)
        self._jobs[job.id] = job.model_copy()
        return job

    async def add_item(self, item: QueueItem) -> QueueItem:
        return self._store_new_item(item)

    def _store_new_item(self, item: QueueItem) -> QueueItem:
        stored = item.model_copy(update={"id": next(self._item_ids)})
        self._items[stored.id] = stored
        return stored.model_copy()

    async def claim_next(self, worker_id: str, now: datetime) -> Optional[QueueItem]:
        busy_devices = {
            item.device_id for item in self._items.values() if item.status == QueueItemStatus.CLAIMED
        }
        paused = {bulk.id for bulk in self._bulks.values() if bulk.status == BulkStatus.PAUSED}
        eligible = [
            item
            for item in self._items.values()
            if item.status == QueueItemStatus.PENDING
            and item.next_run_at <= now
            and item.device_id not in busy_devices
            and item.bulk_id not in paused
        ]
        if not eligible:
            return None
        chosen = min(eligible, key=lambda item: (item.next_run_at, item.id))
        claimed = chosen.model_copy(
            update={
                "status": QueueItemStatus.CLAIMED,
                "claimed_by": worker_id,
                "claimed_at": now,
                "attempt": chosen.attempt + 1,
            }
        )
        self._items[claimed.id] = claimed
        return claimed.model_copy()

    async def get_item(self, item_id: int) -> Optional[QueueItem]:
        item = self._items.get(item_id)
        return item.model_copy() if item else None

    async def list_items(self, job_id: str) -> List[QueueItem]:
        items = [item for item in self._items.values() if item.job_id == job_id]
        return [item.model_copy() for item in sorted(items, key=lambda item: item.id)]

    async def save_item(self, item: QueueItem) -> QueueItem:
        if item.id not in self._items:
            raise JobNotFound(f"Queue item {item.id} not found")
        self._items[item.id] = item.model_copy()
        return item

    async def open_items(self, job_id: str) -> List[QueueItem]:
        return [
            item.model_copy()
            for item in self._items.values()
            if item.job_id == job_id and item.status in OPEN_STATUSES
        ]

    async def stale_claims(self, cutoff: datetime) -> List[QueueItem]:
        return [
            item.model_copy()
            for item in self._items.values()
            if item.status == QueueItemStatus.CLAIMED and item.claimed_at is not None and item.claimed_at < cutoff
        ]

    async def stale_jobs(self, step: JobStep, cutoff: datetime) -> List[ScrapeJob]:
        return [
            job.model_copy()
            for job in self._jobs.values()
            if job.step == step and job.updated_at < cutoff
        ]

    async def error_items(self) -> List[QueueItem]:
        return [item.model_copy() for item in self._items.values() if item.status == QueueItemStatus.ERROR]

    async def delete_archived(self, cutoff: datetime) -> int:
        doomed = [
            job.id
            for job in self._jobs.values()
            if job.archived_at is not None and job.archived_at < cutoff
        ]
        for job_id in doomed:
            del self._jobs[job_id]
            for item_id in [i.id for i in self._items.values() if i.job_id == job_id]:
                del self._items[item_id]
        return len(doomed)

    async def stats(self) -> Dict[str, int]:
        counts: Counter = Counter()
        for job in self._jobs.values():
            counts[f"jobs_{job.step.value}"] += 1
        for item in self._items.values():
            counts[f"items_{item.status.value}"] += 1
        for bulk in self._bulks.values():
            counts[f"bulks_{bulk.status.value}"] += 1
        return dict(counts)

    async def insert_bulk(self, bulk: BulkJob) -> BulkJob:
        self._bulks[bulk.id] = bulk.model_copy()
        return bulk

    async def get_bulk(self, bulk_id: str) -> Optional[BulkJob]:
        bulk = self._bulks.get(bulk_id)
        return bulk.model_copy() if bulk else None

    async def save_bulk(self, bulk: BulkJob) -> BulkJob:
        if bulk.id not in self._bulks:
            raise JobNotFound(f"Bulk job {bulk.id} not found")
        self._bulks[bulk.id] = bulk.model_copy()
        return bulk

    async def list_bulks(self, statuses: Optional[Sequence[BulkStatus]] = None, limit: int = 100) -> List[BulkJob]:
        bulks = [bulk for bulk in self._bulks.values() if statuses is None or bulk.status in statuses]
        bulks.sort(key=lambda bulk: bulk.created_at, reverse=True)
        return [bulk.model_copy() for bulk in bulks[:limit]]

    async def bulk_steps(self, bulk_id: str) -> Dict[str, int]:
        return dict(Counter(job.step.value for job in self._jobs.values() if job.bulk_id == bulk_id))

    async def bulk_items(self, bulk_id: str, status: QueueItemStatus) -> List[QueueItem]:
        return [
            item.model_copy()
            for item in self._items.values()
            if item.bulk_id == bulk_id and item.status == status
        ]
