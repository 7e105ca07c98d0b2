"""Executes claimed queue items against the search pipeline and the scraper."""
from __future__ import annotations

import logging
from typing import Optional

from ..cache.store import EntityStore, store_outcome
from ..errors import ScraperError, SlugConflict
from ..models import Event, JobStep, QueueItem, QueueItemKind, ScrapeJob
from ..scrape.executor import ScrapeExecutor
from ..search.pipeline import SearchPipeline
from .service import ItemOutcome, JobQueueService

LOGGER = logging.getLogger(__name__)


class JobRunner:
    """Turns one queue item into an ``ItemOutcome``.

    Expected failures (``ScraperError``) come back as outcomes; anything else
    propagates to the worker.
    """

    def __init__(
        self,
        service: JobQueueService,
        search: SearchPipeline,
        executor: ScrapeExecutor,
        entities: EntityStore,
    ) -> None:
        self.service = service
        self.search = search
        self.executor = executor
        self.entities = entities

    async def run(self, item: QueueItem) -> ItemOutcome:
        job = await self.service.get_job_by_id(item.job_id)
        expected = JobStep.SEARCHING if item.kind == QueueItemKind.SEARCH else JobStep.SCRAPING
        if job is None or job.step != expected:
            LOGGER.info(
                "Skipping item %s: job %s is %s",
                item.id,
                item.job_id,
                job.step.value if job else "gone",
            )
            return ItemOutcome()

        if item.kind == QueueItemKind.SEARCH:
            return await self._run_search(job, item)
        return await self._run_scrape(job, item)

    async def _run_search(self, job: ScrapeJob, item: QueueItem) -> ItemOutcome:
        if job.request.target_id:
            return await self._begin_scrape(job, job.request.target_id)

        def emit(event: Event) -> None:
            self.service.emit(job, event)

        result = await self.search.run(job.request.query, job.request.brand, emit=emit)
        if not result.ok:
            return ItemOutcome(error=result.error, attempts=result.attempts)

        found = result.value
        if found.picked is not None:
            return await self._begin_scrape(job, found.picked.target_id)

        await self.service.present_candidates(job, found.candidates)
        return ItemOutcome()

    async def _begin_scrape(self, job: ScrapeJob, target_id: str) -> ItemOutcome:
        try:
            await self.service.begin_scrape(job, target_id)
        except SlugConflict as exc:
            LOGGER.warning("Job %s stopped: %s", job.id, exc.message)
        return ItemOutcome()

    async def _run_scrape(self, job: ScrapeJob, item: QueueItem) -> ItemOutcome:
        LOGGER.info("Scraping %s for job %s (attempt %d/%d)", job.target_id, job.id, item.attempt, item.max_attempts)

        async def progress(stage: str, percent: int, message: Optional[str] = None) -> None:
            await self.service.record_progress(job.id, stage, percent, message)

        try:
            outcome = await self.executor.scrape(job.target_id, progress)
        except ScraperError as exc:
            return ItemOutcome.failed(exc, attempts=item.attempt)

        await store_outcome(self.entities, outcome)
        current = await self.service.get_job_by_id(job.id)
        if current is None or current.step != JobStep.SCRAPING:
            LOGGER.info("Job %s left scraping while running, result stored only", job.id)
            return ItemOutcome()
        await self.service.finish_scrape(current, attempts=item.attempt)
        return ItemOutcome()
