"""Wires settings into stores, services, the search pipeline and workers."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from asyncpg import Pool

from .antibot.proxy import BrowserEndpoint
from .antibot.retry import RetryPolicy
from .antibot.session import BrowserSessionConfig, BrowserSessionProvider
from .cache.postgres import PostgresEntityStore
from .cache.store import EntityStore, MemoryEntityStore, store_outcome
from .catalog import Catalog, MemoryCatalog, PostgresCatalog
from .config import QUEUE_BACKOFF_MULTIPLIER, Settings
from .db import create_pool
from .errors import ConfigurationError, JobNotFound
from .events import EventBus
from .ids import derive_device_id, normalize_target_id
from .jobs.postgres import PostgresJobStore
from .jobs.runner import JobRunner
from .jobs.service import JobQueueService
from .jobs.store import JobStore, MemoryJobStore
from .jobs.worker import WorkerPool
from .models import CatalogDevice
from .scrape.executor import SPECS_KIND, ProgressCallback, ScrapeExecutor, SessionProvider
from .search.oracle import ClaudeOracle, HeuristicOracle, MatchingOracle
from .search.pipeline import EventSink, SearchPipeline, SearchResult
from .search.crawler import PrefixCrawler
from .search.sources import KimovilSearchSource, SearchSource, build_client

LOGGER = logging.getLogger(__name__)


def build_oracle(settings: Settings) -> Optional[MatchingOracle]:
    if settings.oracle == "none":
        return None
    if settings.oracle == "claude":
        return ClaudeOracle(settings.anthropic_api_key, model=settings.anthropic_model)
    return HeuristicOracle()


def build_sessions(settings: Settings) -> Optional[BrowserSessionProvider]:
    endpoint = BrowserEndpoint(settings.browser_ws_endpoint) if settings.browser_ws_endpoint else None
    if endpoint is None and not settings.local_browser:
        return None
    return BrowserSessionProvider(
        BrowserSessionConfig(
            endpoint=endpoint,
            local=settings.local_browser,
            connect_timeout=settings.browser_connect_timeout,
        )
    )


@dataclass
class Runtime:
    """Everything a process (gateway, worker, CLI) needs, built once."""

    settings: Settings
    bus: EventBus
    jobs: JobStore
    entities: EntityStore
    catalog: Catalog
    service: JobQueueService
    search: SearchPipeline
    crawler: Optional[PrefixCrawler] = None
    executor: Optional[ScrapeExecutor] = None
    runner: Optional[JobRunner] = None
    http_client: Optional[httpx.AsyncClient] = None
    pg_pool: Optional[Pool] = None
    pool: Optional[WorkerPool] = None

    def start_workers(self) -> WorkerPool:
        if self.runner is None:
            raise ConfigurationError("BRD_WSENDPOINT is not set (or set LOCAL_PLAYWRIGHT=true)")
        if self.pool is None:
            self.pool = WorkerPool(
                self.service,
                self.runner,
                size=self.settings.worker_count,
                poll_interval=self.settings.poll_interval,
                reap_interval=self.settings.reap_interval,
                rate_limit=self.settings.bulk_rate_limit,
            )
        self.pool.start()
        return self.pool

    def set_worker_count(self, count: int) -> int:
        """Resize the running worker pool; only the process running it can."""
        if self.pool is None:
            raise ConfigurationError("No worker pool runs in this process")
        self.settings.worker_count = self.pool.resize(count)
        LOGGER.info("Worker count set to %d", self.settings.worker_count)
        return self.settings.worker_count

    async def search_by_name(
        self,
        query: str,
        brand: Optional[str] = None,
        emit: Optional[EventSink] = None,
    ) -> SearchResult:
        """Run the search pipeline inline, outside any job."""
        result = await self.search.run(query, brand, emit=emit)
        return result.unwrap()

    async def preview(self, target_id: str, progress: Optional[ProgressCallback] = None) -> Dict[str, Any]:
        """Scrape ``target_id`` inline and keep the result for device creation."""
        if self.executor is None:
            raise ConfigurationError("BRD_WSENDPOINT is not set (or set LOCAL_PLAYWRIGHT=true)")
        outcome = await self.executor.scrape(target_id, progress, use_cache=True)
        derived = await store_outcome(self.entities, outcome)
        return {
            "targetId": outcome.target_id,
            "deviceId": outcome.device_id,
            "specs": derived.data,
            "offers": outcome.offers,
            "fromCache": outcome.from_cache,
        }

    async def create_device_from_preview(self, target_id: str, user_id: str) -> CatalogDevice:
        """Create a catalog device from a previously previewed target.

        Raises
        ------
        JobNotFound
            If the target was never previewed
        SlugConflict
            If the target already belongs to another device
        """
        slug = normalize_target_id(target_id)
        device_id = derive_device_id(slug)
        derived = await self.entities.get_derived(device_id, SPECS_KIND)
        if derived is None:
            raise JobNotFound(f"No preview stored for {slug}")
        device = await self.catalog.create_device(device_id, derived, slug)
        LOGGER.info("User %s created device %s from preview of %s", user_id, device.id, slug)
        return device

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.stop()
        if self.http_client is not None:
            await self.http_client.aclose()
        if self.pg_pool is not None:
            await self.pg_pool.close()


async def build_runtime(
    settings: Settings,
    *,
    sessions: Optional[SessionProvider] = None,
    search_source: Optional[SearchSource] = None,
    oracle: Optional[MatchingOracle] = None,
    require_browser: bool = False,
) -> Runtime:
    """Build a runtime from ``settings``.

    ``sessions``, ``search_source`` and ``oracle`` replace the configured
    collaborators; tests pass fakes here.
    """
    settings.validate(require_browser=require_browser and sessions is None)

    pg_pool = None
    if settings.store == "postgres":
        pg_pool = await create_pool(settings.database_url)
        jobs: JobStore = PostgresJobStore(pg_pool)
        entities: EntityStore = PostgresEntityStore(pg_pool)
        catalog: Catalog = PostgresCatalog(pg_pool)
    else:
        jobs = MemoryJobStore()
        entities = MemoryEntityStore()
        catalog = MemoryCatalog()

    bus = EventBus()
    service = JobQueueService(
        jobs,
        catalog,
        bus,
        max_retries=settings.max_retries,
        backoff=RetryPolicy(
            max_attempts=settings.max_retries,
            backoff_base=settings.queue_backoff_base,
            backoff_multiplier=QUEUE_BACKOFF_MULTIPLIER,
            max_backoff=settings.queue_backoff_max,
        ),
        stale_after=settings.stale_after,
        claim_stale_after=settings.claim_stale_after,
        job_retention=settings.job_retention,
    )

    http_client = None
    if search_source is None:
        http_client = build_client(settings.search_proxy_url, settings.search_http_timeout)
        search_source = KimovilSearchSource(http_client)
    crawler = PrefixCrawler(
        search_source,
        catalog,
        threshold=settings.search_fallback_threshold,
        max_requests=settings.enumeration_max_requests,
        delay=settings.crawl_request_delay,
        jitter=settings.crawl_request_jitter,
    )
    search = SearchPipeline(
        search_source,
        RetryPolicy.fixed(settings.max_retries, settings.search_retry_delay),
        fallback=crawler,
        oracle=oracle if oracle is not None else build_oracle(settings),
        registry=catalog,
        fallback_threshold=settings.search_fallback_threshold,
    )

    sessions = sessions if sessions is not None else build_sessions(settings)
    executor = runner = None
    if sessions is not None:
        executor = ScrapeExecutor(
            sessions,
            navigation_timeout=settings.navigation_timeout,
            navigation_grace=settings.navigation_grace,
            extraction_timeout=settings.extraction_timeout,
            html_cache=entities,
            html_cache_ttl=settings.html_cache_ttl,
        )
        runner = JobRunner(service, search, executor, entities)
    else:
        LOGGER.warning("No browser configured: jobs can be admitted but not scraped by this process")

    LOGGER.info("Runtime ready (store=%s, oracle=%s)", settings.store, settings.oracle)
    return Runtime(
        settings=settings,
        bus=bus,
        jobs=jobs,
        entities=entities,
        catalog=catalog,
        service=service,
        search=search,
        crawler=crawler,
        executor=executor,
        runner=runner,
        http_client=http_client,
        pg_pool=pg_pool,
    )
