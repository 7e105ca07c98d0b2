"""Async worker pool processing scrape queue items."""
from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..config import MAX_WORKERS
from ..errors import InvalidParams, ScraperError
from ..models import QueueItem, QueueItemKind
from .runner import JobRunner
from .service import ItemOutcome, JobQueueService

LOGGER = logging.getLogger(__name__)


@dataclass
class WorkerConfig:
    """Worker configuration."""

    worker_id: str
    poll_interval: float = 1.0  # Seconds between queue polls when idle
    max_items: Optional[int] = None  # Stop after this many items (for testing)


class Worker:
    """One claim -> execute -> complete loop."""

    def __init__(
        self,
        config: WorkerConfig,
        service: JobQueueService,
        runner: JobRunner,
        pool: Optional[WorkerPool] = None,
    ) -> None:
        """Initialize worker.

        Parameters
        ----------
        config : WorkerConfig
            Worker configuration
        service : JobQueueService
            Source of queue items and sink of their outcomes
        runner : JobRunner
            Executes a claimed item
        pool : WorkerPool, optional
            Pool that tracks in-flight items for cancellation
        """
        self.config = config
        self.service = service
        self.runner = runner
        self.pool = pool
        self.running = False
        self.stop_requested = False
        self.items_processed = 0
        self.items_succeeded = 0
        self.items_failed = 0
        self.items_cancelled = 0

    async def run(self) -> None:
        """Run worker loop until stopped."""
        LOGGER.info("Starting worker %s (poll_interval=%.1fs)", self.config.worker_id, self.config.poll_interval)
        self.running = not self.stop_requested

        try:
            while self.running:
                if self.config.max_items is not None and self.items_processed >= self.config.max_items:
                    LOGGER.info("Reached max items limit (%d), shutting down", self.config.max_items)
                    break
                try:
                    item = await self.service.claim_next(self.config.worker_id)
                    if item is None:
                        await asyncio.sleep(self.config.poll_interval)
                        continue
                    await self.process(item)
                    self.items_processed += 1
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    LOGGER.error("Worker %s error: %s", self.config.worker_id, exc, exc_info=True)
                    await asyncio.sleep(self.config.poll_interval)
        finally:
            self.running = False
            self._log_stats()

    async def process(self, item: QueueItem) -> Optional[ItemOutcome]:
        """Execute one claimed item and report its outcome.

        Returns None when the item's job was cancelled while it ran, or when
        its bulk job was paused before it started.
        """
        if self.pool is not None and item.bulk_id is not None and item.kind == QueueItemKind.SCRAPE:
            await self.pool.rate_limiter.wait()
            if await self.service.bulk_paused(item.bulk_id):
                LOGGER.info("Bulk %s paused, handing back item %s", item.bulk_id, item.id)
                await self.service.release_item(item)
                return None

        LOGGER.info("Worker %s processing item %s (%s, job %s)", self.config.worker_id, item.id, item.kind.value, item.job_id)
        start_time = time.monotonic()

        task = asyncio.create_task(self.runner.run(item))
        if self.pool is not None:
            self.pool.track(item.job_id, task)
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise
        finally:
            if self.pool is not None:
                self.pool.untrack(item.job_id, task)

        if task.cancelled():
            LOGGER.info("Item %s cancelled with its job %s", item.id, item.job_id)
            self.items_cancelled += 1
            return None

        exc = task.exception()
        if exc is None:
            outcome = task.result()
        elif isinstance(exc, ScraperError):
            outcome = ItemOutcome.failed(exc, attempts=item.attempt)
        else:
            LOGGER.error("Unexpected error on item %s: %s", item.id, exc, exc_info=exc)
            outcome = ItemOutcome(error=exc, attempts=item.attempt)

        await self.service.complete_item(item, outcome)
        if outcome.ok:
            self.items_succeeded += 1
            LOGGER.info("Item %s done (took %.2fs)", item.id, time.monotonic() - start_time)
        else:
            self.items_failed += 1
            LOGGER.warning("Item %s failed (took %.2fs): %s", item.id, time.monotonic() - start_time, outcome.error)
        return outcome

    def stop(self) -> None:
        self.running = False
        self.stop_requested = True

    def _log_stats(self) -> None:
        LOGGER.info(
            "Worker %s shutting down: processed=%d, succeeded=%d, failed=%d, cancelled=%d",
            self.config.worker_id,
            self.items_processed,
            self.items_succeeded,
            self.items_failed,
            self.items_cancelled,
        )


class RateLimiter:
    """Spaces calls to ``wait()`` at least ``interval`` seconds apart."""

    def __init__(self, interval: float) -> None:
        self.interval = interval
        self._next_at = 0.0
        self._lock = asyncio.Lock()

    async def wait(self) -> float:
        async with self._lock:
            delay = max(0.0, self._next_at - time.monotonic())
            if delay:
                await asyncio.sleep(delay)
            self._next_at = time.monotonic() + self.interval
            return delay


class WorkerPool:
    """A resizable set of workers plus the periodic stale-job reaper."""

    def __init__(
        self,
        service: JobQueueService,
        runner: JobRunner,
        *,
        size: int = 2,
        poll_interval: float = 1.0,
        reap_interval: float = 60.0,
        rate_limit: float = 0.0,
        name: str = "worker",
    ) -> None:
        self.service = service
        self.runner = runner
        self.name = name
        self.poll_interval = poll_interval
        self.reap_interval = reap_interval
        self.rate_limiter = RateLimiter(rate_limit)
        self._worker_ids = itertools.count(1)
        self.workers: List[Worker] = []
        self._worker_tasks: Dict[str, asyncio.Task] = {}
        self._reaper: Optional[asyncio.Task] = None
        self._inflight: Dict[str, asyncio.Task] = {}
        self._add_workers(size)
        service.add_cancel_listener(self.cancel_job)

    def _add_workers(self, count: int) -> None:
        for _ in range(count):
            config = WorkerConfig(worker_id=f"{self.name}-{next(self._worker_ids)}", poll_interval=self.poll_interval)
            worker = Worker(config, self.service, self.runner, pool=self)
            self.workers.append(worker)
            if self.running:
                self._spawn(worker)

    def _spawn(self, worker: Worker) -> None:
        worker_id = worker.config.worker_id
        task = asyncio.create_task(worker.run())
        self._worker_tasks[worker_id] = task
        task.add_done_callback(lambda _: self._worker_tasks.pop(worker_id, None))

    def resize(self, count: int) -> int:
        """Grow or shrink the pool. Removed workers finish their current item first."""
        if not 1 <= count <= MAX_WORKERS:
            raise InvalidParams(f"workerCount must be between 1 and {MAX_WORKERS}")
        if count > len(self.workers):
            self._add_workers(count - len(self.workers))
        while len(self.workers) > count:
            self.workers.pop().stop()
        LOGGER.info("Worker pool resized to %d worker(s)", count)
        return count

    def track(self, job_id: str, task: asyncio.Task) -> None:
        self._inflight[job_id] = task

    def untrack(self, job_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(job_id) is task:
            del self._inflight[job_id]

    def cancel_job(self, job_id: str) -> bool:
        """Cancel the running attempt of ``job_id``, if any.

        The attempt's browser session is closed as the task unwinds.
        """
        task = self._inflight.get(job_id)
        if task is None or task.done():
            return False
        LOGGER.info("Cancelling in-flight attempt of job %s", job_id)
        task.cancel()
        return True

    async def _reap_loop(self) -> None:
        while True:
            try:
                await self.service.reap_stale()
                await self.service.prune_archived()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOGGER.error("Reaper error: %s", exc, exc_info=True)
            await asyncio.sleep(self.reap_interval)

    def start(self) -> None:
        if self._reaper is not None:
            return
        LOGGER.info(
            "Starting worker pool with %d worker(s) (rate limit: %.1fs)",
            len(self.workers),
            self.rate_limiter.interval,
        )
        self._reaper = asyncio.create_task(self._reap_loop())
        for worker in self.workers:
            self._spawn(worker)

    async def stop(self) -> None:
        for worker in self.workers:
            worker.stop()
        tasks = list(self._worker_tasks.values())
        if self._reaper is not None:
            tasks.append(self._reaper)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._worker_tasks.clear()
        self._reaper = None
        LOGGER.info("Worker pool stopped")

    async def run_forever(self) -> None:
        self.start()
        try:
            await self._reaper
        finally:
            await self.stop()

    @property
    def size(self) -> int:
        return len(self.workers)

    @property
    def running(self) -> bool:
        return self._reaper is not None
