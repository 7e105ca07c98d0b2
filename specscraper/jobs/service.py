"""Job queue service: the only writer of job and queue-item state."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..antibot.retry import RetryPolicy
from ..catalog import Catalog
from ..config import (
    CLAIM_STALE_AFTER,
    JOB_RETENTION,
    MAX_RETRIES,
    QUEUE_BACKOFF_BASE,
    QUEUE_BACKOFF_MAX,
    QUEUE_BACKOFF_MULTIPLIER,
    STALE_AFTER,
)
from ..errors import DuplicateActiveJob, InvalidParams, InvalidTransition, JobNotFound, PermissionDenied, SlugConflict
from ..events import EventBus
from ..ids import derive_device_id, normalize_target_id
from ..models import (
    BulkJob,
    BulkStatus,
    CandidateOption,
    Event,
    JobStep,
    QueueItem,
    QueueItemKind,
    QueueItemStatus,
    ScrapeJob,
    ScrapeRequest,
    SlugConflictInfo,
    retry_event,
    utcnow,
)
from .state import ACTIVE_STEPS, is_active, transition
from .store import JobStore

LOGGER = logging.getLogger(__name__)

MAX_MOVE_ATTEMPTS = 3

CancelListener = Callable[[str], None]


@dataclass
class ItemOutcome:
    """Result of executing one queue item, as reported back by a worker."""

    error: Optional[Exception] = None
    attempts: Optional[int] = None
    retry: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failed(cls, error: Exception, attempts: Optional[int] = None) -> ItemOutcome:
        return cls(error=error, attempts=attempts, retry=bool(getattr(error, "retryable", False)))


@dataclass
class ReapReport:
    released_claims: int = 0
    requeued: List[str] = field(default_factory=list)
    interrupted: List[str] = field(default_factory=list)


def state_event(job: ScrapeJob) -> Event:
    return Event(
        type="state",
        step=job.step.value,
        job_id=job.id,
        device_id=job.device_id,
        message=job.error,
    )


class JobQueueService:
    """Admits jobs, hands out queue items and applies every state change.

    All mutations go through the store's atomic operations; job rows are
    written conditionally on the step they were read in, so two writers
    racing on the same job cannot both succeed.
    """

    def __init__(
        self,
        store: JobStore,
        catalog: Catalog,
        bus: Optional[EventBus] = None,
        *,
        max_retries: int = MAX_RETRIES,
        backoff: Optional[RetryPolicy] = None,
        stale_after: Optional[Dict[str, float]] = None,
        claim_stale_after: float = CLAIM_STALE_AFTER,
        job_retention: float = JOB_RETENTION,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize service.

        Parameters
        ----------
        store : JobStore
            Persistence backend for jobs and queue items
        catalog : Catalog
            Used to detect targets already owned by another device
        bus : EventBus, optional
            Receives state, progress, log and retry events
        max_retries : int
            Attempt budget of a scrape queue item
        backoff : RetryPolicy, optional
            Delay schedule between scrape attempts
        stale_after : dict, optional
            Staleness threshold (seconds) per active step
        claim_stale_after : float
            Age (seconds) after which a claim is considered abandoned
        job_retention : float
            Age (seconds) after which archived jobs are pruned
        clock : callable
            Source of "now"; tests substitute a fixed clock
        """
        self.store = store
        self.catalog = catalog
        self.bus = bus or EventBus()
        self.max_retries = max_retries
        self.backoff = backoff or RetryPolicy(
            max_attempts=max_retries,
            backoff_base=QUEUE_BACKOFF_BASE,
            backoff_multiplier=QUEUE_BACKOFF_MULTIPLIER,
            max_backoff=QUEUE_BACKOFF_MAX,
        )
        self.stale_after = dict(STALE_AFTER if stale_after is None else stale_after)
        self.claim_stale_after = claim_stale_after
        self.job_retention = job_retention
        self.clock = clock
        self._cancel_listeners: List[CancelListener] = []

    # Events

    def add_cancel_listener(self, listener: CancelListener) -> None:
        """``listener(job_id)`` is called after a job is cancelled."""
        self._cancel_listeners.append(listener)

    def emit(self, job: ScrapeJob, event: Event) -> None:
        self.bus.publish(job.device_id, event.model_copy(update={"job_id": job.id, "device_id": job.device_id}))

    def _publish_state(self, job: ScrapeJob) -> None:
        self.bus.publish(job.device_id, state_event(job))

    # Admission

    async def enqueue(
        self,
        device_id: str,
        user_id: str,
        query: str = "",
        brand: Optional[str] = None,
        target_id: Optional[str] = None,
        bulk_id: Optional[str] = None,
    ) -> ScrapeJob:
        """Admit a new job for ``device_id``.

        With ``target_id`` the search step is skipped and the job goes
        straight to the slug check and scraping once its first item runs.
        ``bulk_id`` makes the job a member of a bulk job.

        Raises
        ------
        DuplicateActiveJob
            If the device already has a non-terminal job
        InvalidParams
            If neither a query nor a target is given
        """
        device_id = (device_id or "").strip()
        user_id = (user_id or "").strip()
        query = " ".join((query or "").split())
        if not device_id or not user_id:
            raise InvalidParams("deviceId and userId are required")
        if not query and not target_id:
            raise InvalidParams("Either query or targetId is required")

        now = self.clock()
        request = ScrapeRequest(
            query=query,
            brand=brand or None,
            target_id=normalize_target_id(target_id) if target_id else None,
        )
        job = ScrapeJob(
            id=uuid.uuid4().hex,
            device_id=device_id,
            requesting_user_id=user_id,
            step=JobStep.SEARCHING,
            request=request,
            created_at=now,
            updated_at=now,
            bulk_id=bulk_id,
        )
        item = self._new_item(job, QueueItemKind.SEARCH, now)
        await self.store.insert_job(job, item)
        LOGGER.info("Enqueued job %s for device %s (%s)", job.id, device_id, query or request.target_id)
        self._publish_state(job)
        return job

    def _new_item(self, job: ScrapeJob, kind: QueueItemKind, now: datetime) -> QueueItem:
        return QueueItem(
            job_id=job.id,
            device_id=job.device_id,
            kind=kind,
            max_attempts=self.max_retries if kind == QueueItemKind.SCRAPE else 1,
            next_run_at=now,
            created_at=now,
            bulk_id=job.bulk_id,
        )

    # Queue items

    async def claim_next(self, worker_id: str) -> Optional[QueueItem]:
        item = await self.store.claim_next(worker_id, self.clock())
        if item is not None:
            LOGGER.debug("Worker %s claimed item %s (%s, attempt %d)", worker_id, item.id, item.kind.value, item.attempt)
        return item

    async def complete_item(self, item: QueueItem, outcome: ItemOutcome) -> Optional[QueueItem]:
        """Record the result of a claimed item.

        A retryable failure with budget left puts the item back to pending
        after a backoff delay and emits a retry event. Any other failure
        ends the item and moves the job to ``error``.
        """
        current = await self.store.get_item(item.id)
        if current is None or current.status != QueueItemStatus.CLAIMED:
            LOGGER.info("Item %s is no longer claimed, ignoring completion", item.id)
            return current

        now = self.clock()
        if outcome.ok:
            return await self.store.save_item(
                current.model_copy(update={"status": QueueItemStatus.DONE, "completed_at": now})
            )

        error = outcome.error
        message = str(error)
        code = getattr(error, "code", "internal_error")
        attempts = outcome.attempts if outcome.attempts is not None else current.attempt
        job = await self.store.get_job(current.job_id)

        if job is not None and is_active(job.step) and outcome.retry and current.attempt < current.max_attempts:
            delay = self.backoff.delay_for(current.attempt)
            saved = await self.store.save_item(
                current.model_copy(
                    update={
                        "status": QueueItemStatus.PENDING,
                        "next_run_at": now + timedelta(seconds=delay),
                        "claimed_by": None,
                        "claimed_at": None,
                        "last_error": message,
                        "last_error_code": code,
                    }
                )
            )
            await self._save_fields(job, attempts=attempts, last_log=message)
            LOGGER.warning(
                "Item %s failed (attempt %d/%d), retrying in %.1fs: %s",
                current.id,
                current.attempt,
                current.max_attempts,
                delay,
                message,
            )
            self.emit(job, retry_event(current.attempt, current.max_attempts, delay, message))
            return saved

        saved = await self.store.save_item(
            current.model_copy(
                update={
                    "status": QueueItemStatus.ERROR,
                    "completed_at": now,
                    "last_error": message,
                    "last_error_code": code,
                }
            )
        )
        if job is not None and is_active(job.step):
            LOGGER.error("Job %s failed after %d attempt(s): %s", job.id, attempts, message)
            await self._move(job, JobStep.ERROR, error=message, attempts=attempts)
        return saved

    async def get_queue_items(self, job_id: str) -> List[QueueItem]:
        return await self.store.list_items(job_id)

    # Step changes

    async def _move(self, job: ScrapeJob, target: JobStep, **fields) -> ScrapeJob:
        """Apply a transition, re-reading the job if another writer got there first."""
        for _ in range(MAX_MOVE_ATTEMPTS):
            moved = transition(job, target, now=self.clock(), **fields)
            try:
                saved = await self.store.save_job(moved, expected_step=job.step)
            except InvalidTransition:
                fresh = await self.store.get_job(job.id)
                if fresh is None:
                    raise JobNotFound(f"Job {job.id} not found")
                if fresh.step == job.step:
                    raise
                job = fresh
                continue
            LOGGER.info("Job %s: %s -> %s", job.id, job.step.value, saved.step.value)
            self._publish_state(saved)
            if saved.bulk_id is not None and not is_active(saved.step):
                await self._refresh_bulk(saved.bulk_id)
            return saved
        raise InvalidTransition(job.step.value, JobStep(target).value)

    async def _save_fields(self, job: ScrapeJob, **fields) -> ScrapeJob:
        fields.setdefault("updated_at", self.clock())
        return await self.store.save_job(job.model_copy(update=fields), expected_step=job.step)

    async def present_candidates(self, job: ScrapeJob, candidates: Sequence[CandidateOption]) -> ScrapeJob:
        """Search was ambiguous: wait for the caller to pick a candidate."""
        return await self._move(job, JobStep.SELECTING, autocomplete_options=list(candidates))

    async def begin_scrape(self, job: ScrapeJob, target_id: str) -> ScrapeJob:
        """Check slug ownership, then move to ``scraping`` and queue the scrape.

        Raises
        ------
        SlugConflict
            If ``target_id`` is already linked to another device; the job
            ends in ``slug_conflict`` and never reaches ``scraping``
        """
        target_id = normalize_target_id(target_id)
        owner = await self.catalog.find_by_target(target_id)
        if owner is not None and owner.id != job.device_id:
            conflict = SlugConflict(target_id, owner.id, owner.name)
            await self._move(
                job,
                JobStep.SLUG_CONFLICT,
                target_id=target_id,
                error=conflict.message,
                slug_conflict=SlugConflictInfo(
                    target_id=target_id,
                    existing_device_id=owner.id,
                    existing_device_name=owner.name,
                ),
            )
            raise conflict

        scraping = await self._move(job, JobStep.SCRAPING, target_id=target_id)
        await self.store.add_item(self._new_item(scraping, QueueItemKind.SCRAPE, self.clock()))
        return scraping

    async def confirm_candidate(self, device_id: str, user_id: str, target_id: str) -> ScrapeJob:
        """Confirm the candidate picked by the caller for a ``selecting`` job."""
        if not target_id:
            raise InvalidParams("targetId is required")
        job = await self.store.get_active_job(device_id)
        if job is None:
            raise JobNotFound(f"No active job for device {device_id}")
        if job.step != JobStep.SELECTING:
            raise InvalidTransition(job.step.value, JobStep.SCRAPING.value)
        LOGGER.info("User %s confirmed %s for device %s", user_id, target_id, device_id)
        return await self.begin_scrape(job, target_id)

    async def finish_scrape(self, job: ScrapeJob, attempts: int) -> ScrapeJob:
        await self.catalog.link_target(job.device_id, job.target_id)
        return await self._move(
            job,
            JobStep.DONE,
            attempts=attempts,
            progress_stage="done",
            progress_percent=100,
            error=None,
        )

    async def record_progress(
        self,
        job_id: str,
        stage: str,
        percent: int,
        message: Optional[str] = None,
    ) -> Optional[ScrapeJob]:
        """Store and publish progress. Percent never decreases within a step."""
        job = await self.store.get_job(job_id)
        if job is None or not is_active(job.step):
            return job
        if job.progress_percent is not None and percent < job.progress_percent:
            return job
        fields = {"progress_stage": stage, "progress_percent": percent}
        if message:
            fields["last_log"] = message
        try:
            job = await self._save_fields(job, **fields)
        except InvalidTransition:
            return await self.store.get_job(job_id)
        self.emit(job, Event(type="progress", stage=stage, percent=percent, message=message))
        return job

    async def cancel(self, device_id: str, user_id: str) -> ScrapeJob:
        """Interrupt the device's active job. Only its owner may cancel it."""
        job = await self.store.get_active_job(device_id)
        if job is None:
            raise JobNotFound(f"No active job for device {device_id}")
        if job.requesting_user_id != user_id:
            raise PermissionDenied(f"Job {job.id} belongs to another user")

        job = await self._move(job, JobStep.INTERRUPTED, error="Cancelled by user")
        await self._cancel_open_items(job.id, "Cancelled by user")
        for listener in self._cancel_listeners:
            listener(job.id)
        LOGGER.info("Job %s cancelled by %s", job.id, user_id)
        return job

    async def _cancel_open_items(self, job_id: str, reason: str) -> int:
        now = self.clock()
        items = await self.store.open_items(job_id)
        for item in items:
            await self.store.save_item(
                item.model_copy(
                    update={"status": QueueItemStatus.CANCELLED, "completed_at": now, "last_error": reason}
                )
            )
        return len(items)

    # Bulk jobs

    async def start_bulk(self, user_id: str, target_ids: Sequence[str], bulk_id: Optional[str] = None) -> BulkJob:
        """Admit one scrape job per target, grouped under a bulk job.

        A target already linked to a catalog device is scraped for that
        device; any other target gets the device id derived from its slug.
        Targets whose device already has an active job are skipped.
        ``bulk_id`` lets a caller subscribe before the first event.
        """
        user_id = (user_id or "").strip()
        targets = list(dict.fromkeys(normalize_target_id(t) for t in target_ids if t and t.strip()))
        if not user_id:
            raise InvalidParams("userId is required")
        if not targets:
            raise InvalidParams("At least one targetId is required")

        now = self.clock()
        bulk = await self.store.insert_bulk(
            BulkJob(id=bulk_id or uuid.uuid4().hex, user_id=user_id, created_at=now, updated_at=now)
        )
        skipped: List[str] = []
        try:
            for target_id in targets:
                owner = await self.catalog.find_by_target(target_id)
                device_id = owner.id if owner is not None else derive_device_id(target_id)
                try:
                    await self.enqueue(device_id, user_id, target_id=target_id, bulk_id=bulk.id)
                except DuplicateActiveJob:
                    LOGGER.info("Bulk %s: skipping %s, device %s is busy", bulk.id, target_id, device_id)
                    skipped.append(target_id)
        except Exception as exc:
            await self._save_bulk(bulk, status=BulkStatus.ERROR, error=str(exc), finished_at=self.clock())
            raise

        bulk = await self._save_bulk(
            bulk,
            status=BulkStatus.RUNNING,
            total=len(targets) - len(skipped),
            skipped=skipped,
        )
        LOGGER.info("Started bulk %s: %d job(s), %d skipped", bulk.id, bulk.total, len(skipped))
        return await self._refresh_bulk(bulk.id) or bulk

    async def pause_bulk(self, bulk_id: str) -> BulkJob:
        """Stop handing out items of the bulk's jobs. Running attempts finish."""
        bulk = await self._require_bulk(bulk_id)
        if bulk.status not in (BulkStatus.PENDING, BulkStatus.RUNNING):
            raise InvalidTransition(bulk.status.value, BulkStatus.PAUSED.value)
        bulk = await self._save_bulk(bulk, status=BulkStatus.PAUSED)
        LOGGER.info("Bulk %s paused", bulk_id)
        return bulk

    async def resume_bulk(self, bulk_id: str) -> BulkJob:
        bulk = await self._require_bulk(bulk_id)
        if bulk.status != BulkStatus.PAUSED:
            raise InvalidTransition(bulk.status.value, BulkStatus.RUNNING.value)
        bulk = await self._save_bulk(bulk, status=BulkStatus.RUNNING)
        LOGGER.info("Bulk %s resumed", bulk_id)
        return await self._refresh_bulk(bulk_id) or bulk

    async def resume_bulk_jobs(self) -> Dict[str, List[str]]:
        """Recover bulk jobs left running or paused by a previous process.

        Claims held by the dead process go back to pending. A bulk job with
        nothing left to do is finished; a paused one stays paused.
        """
        report: Dict[str, List[str]] = {"finished": [], "paused": [], "resumed": []}
        for bulk in await self.store.list_bulks([BulkStatus.RUNNING, BulkStatus.PAUSED]):
            released = 0
            for item in await self.store.bulk_items(bulk.id, QueueItemStatus.CLAIMED):
                await self.release_item(item)
                released += 1
            refreshed = await self._refresh_bulk(bulk.id)
            if refreshed is not None and refreshed.status == BulkStatus.DONE:
                report["finished"].append(bulk.id)
            elif bulk.status == BulkStatus.PAUSED:
                report["paused"].append(bulk.id)
            else:
                report["resumed"].append(bulk.id)
            LOGGER.info("Startup: bulk %s is %s (released %d claim(s))", bulk.id, (refreshed or bulk).status.value, released)
        return report

    async def release_item(self, item: QueueItem) -> QueueItem:
        """Put a claimed item back to pending without spending an attempt."""
        return await self.store.save_item(
            item.model_copy(
                update={
                    "status": QueueItemStatus.PENDING,
                    "attempt": max(item.attempt - 1, 0),
                    "claimed_by": None,
                    "claimed_at": None,
                }
            )
        )

    async def bulk_paused(self, bulk_id: Optional[str]) -> bool:
        if bulk_id is None:
            return False
        bulk = await self.store.get_bulk(bulk_id)
        return bulk is not None and bulk.status == BulkStatus.PAUSED

    async def get_bulk(self, bulk_id: str) -> Tuple[BulkJob, Dict[str, int]]:
        bulk = await self._require_bulk(bulk_id)
        return bulk, await self.bulk_stats(bulk_id)

    async def list_bulks(self, limit: int = 100) -> List[Tuple[BulkJob, Dict[str, int]]]:
        return [(bulk, await self.bulk_stats(bulk.id)) for bulk in await self.store.list_bulks(limit=limit)]

    async def bulk_stats(self, bulk_id: str) -> Dict[str, int]:
        steps = await self.store.bulk_steps(bulk_id)
        active = sum(steps.get(step.value, 0) for step in ACTIVE_STEPS)
        done = steps.get(JobStep.DONE.value, 0)
        total = sum(steps.values())
        return {"total": total, "active": active, "done": done, "failed": total - active - done}

    async def _require_bulk(self, bulk_id: str) -> BulkJob:
        bulk = await self.store.get_bulk(bulk_id)
        if bulk is None:
            raise JobNotFound(f"Bulk job {bulk_id} not found")
        return bulk

    async def _save_bulk(self, bulk: BulkJob, **fields) -> BulkJob:
        fields.setdefault("updated_at", self.clock())
        saved = await self.store.save_bulk(bulk.model_copy(update=fields))
        if "status" in fields:
            self._publish_bulk(saved, "bulk.jobUpdate", await self.bulk_stats(saved.id), listing=True)
        return saved

    def _publish_bulk(self, bulk: BulkJob, kind: str, stats: Dict[str, int], listing: bool = False) -> None:
        event = Event(type=kind, bulk_id=bulk.id, status=bulk.status.value, stats=stats)
        self.bus.publish_bulk(bulk.id, event, listing=listing)

    async def _refresh_bulk(self, bulk_id: str) -> Optional[BulkJob]:
        """Publish the bulk's progress and finish it once no member job is active."""
        bulk = await self.store.get_bulk(bulk_id)
        if bulk is None:
            return None
        stats = await self.bulk_stats(bulk_id)
        self._publish_bulk(bulk, "bulk.progress", stats)
        if bulk.status == BulkStatus.RUNNING and stats["active"] == 0:
            bulk = await self._save_bulk(bulk, status=BulkStatus.DONE, finished_at=self.clock())
            self._publish_bulk(bulk, "bulk.done", stats)
            LOGGER.info("Bulk %s done: %d done, %d failed", bulk_id, stats["done"], stats["failed"])
        return bulk

    # Maintenance

    async def reap_stale(self) -> ReapReport:
        """Release abandoned claims and recover or interrupt stale jobs.

        A searching or scraping job past its staleness threshold with no open
        queue item is requeued once; the second time it goes stale it is
        interrupted. A selecting job past its threshold is interrupted.
        """
        report = ReapReport()
        now = self.clock()

        for item in await self.store.stale_claims(now - timedelta(seconds=self.claim_stale_after)):
            await self.store.save_item(
                item.model_copy(
                    update={"status": QueueItemStatus.CANCELLED, "completed_at": now, "last_error": "Claim expired"}
                )
            )
            report.released_claims += 1
            LOGGER.warning("Released stale claim on item %s held by %s", item.id, item.claimed_by)

        for step, kind in ((JobStep.SEARCHING, QueueItemKind.SEARCH), (JobStep.SCRAPING, QueueItemKind.SCRAPE)):
            cutoff = now - timedelta(seconds=self.stale_after[step.value])
            for job in await self.store.stale_jobs(step, cutoff):
                if await self.store.open_items(job.id):
                    continue
                try:
                    if job.requeue_count < 1:
                        await self._save_fields(job, requeue_count=job.requeue_count + 1, updated_at=now)
                        await self.store.add_item(self._new_item(job, kind, now))
                        report.requeued.append(job.id)
                        LOGGER.warning("Requeued stale %s job %s", step.value, job.id)
                    else:
                        await self._move(job, JobStep.INTERRUPTED, error=f"Stale in {step.value}")
                        report.interrupted.append(job.id)
                except InvalidTransition:
                    LOGGER.info("Job %s changed while reaping, skipping", job.id)

        cutoff = now - timedelta(seconds=self.stale_after[JobStep.SELECTING.value])
        for job in await self.store.stale_jobs(JobStep.SELECTING, cutoff):
            try:
                await self._move(job, JobStep.INTERRUPTED, error="No candidate confirmed in time")
            except InvalidTransition:
                continue
            report.interrupted.append(job.id)

        if report.released_claims or report.requeued or report.interrupted:
            LOGGER.info(
                "Reaper: released=%d requeued=%d interrupted=%d",
                report.released_claims,
                len(report.requeued),
                len(report.interrupted),
            )
        return report

    async def reset_error_items(self) -> int:
        """Give failed items of still-active jobs a fresh attempt budget."""
        now = self.clock()
        reset = 0
        for item in await self.store.error_items():
            job = await self.store.get_job(item.job_id)
            if job is None or not is_active(job.step):
                continue
            await self.store.save_item(
                item.model_copy(
                    update={
                        "status": QueueItemStatus.PENDING,
                        "attempt": 0,
                        "next_run_at": now,
                        "claimed_by": None,
                        "claimed_at": None,
                        "completed_at": None,
                        "last_error": None,
                        "last_error_code": None,
                    }
                )
            )
            reset += 1
        LOGGER.info("Reset %d failed queue item(s)", reset)
        return reset

    async def prune_archived(self, older_than: Optional[float] = None) -> int:
        retention = self.job_retention if older_than is None else older_than
        return await self.store.delete_archived(self.clock() - timedelta(seconds=retention))

    # Queries

    async def get_job(self, device_id: str) -> Optional[ScrapeJob]:
        """Latest job of a device, active or not."""
        return await self.store.get_latest_job(device_id)

    async def get_job_by_id(self, job_id: str) -> Optional[ScrapeJob]:
        return await self.store.get_job(job_id)

    async def get_active_job(self, device_id: str) -> Optional[ScrapeJob]:
        return await self.store.get_active_job(device_id)

    async def list_jobs(self, user_id: Optional[str] = None, active_only: bool = False, limit: int = 100) -> List[ScrapeJob]:
        return await self.store.list_jobs(user_id=user_id, active_only=active_only, limit=limit)

    async def stats(self) -> Dict[str, int]:
        return await self.store.stats()
