from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, List, Optional

import pytest

from specscraper.antibot.retry import RetryPolicy
from specscraper.cache.store import MemoryEntityStore
from specscraper.catalog import MemoryCatalog
from specscraper.events import EventBus
from specscraper.jobs.runner import JobRunner
from specscraper.jobs.service import JobQueueService
from specscraper.jobs.store import MemoryJobStore
from specscraper.jobs.worker import Worker, WorkerConfig
from specscraper.models import CandidateOption
from specscraper.scrape.executor import ScrapeExecutor
from specscraper.search.crawler import PrefixCrawler
from specscraper.search.pipeline import SearchPipeline

DEVICE_HTML = """
<html><body>
<header>
  <div class="title-group"><h1 id="sec-start">Price and specifications on Samsung Galaxy S24 Ultra</h1></div>
  <div class="gallery-thumbs">
    <img src="//cdn.kimovil.com/s24-front.jpg">
    <img src="http://cdn.kimovil.com/s24-back.jpg">
  </div>
  <div class="grouped-versions-list" data-versions='{"eu": {"mkid": "EU", "devices": {"a": {"ram": 12288, "rom": 262144}, "b": {"ram": 12288, "rom": 524288}}}, "us": {"mkid": "US", "devices": [{"ram": 12288, "rom": 262144}]}}'></div>
</header>
<main>
<section class="container-sheet-intro">
  <table class="k-dltable">
    <tr><th>Aliases</th><td>SM-S928B, SM-S928U</td></tr>
    <tr><th>Release date</th><td>January 2024, Announced</td></tr>
  </table>
</section>
<section class="container-sheet-design">
  <table class="k-dltable">
    <tr><th>Size</th><td>162.3 x 79 x 8.6 mm</td></tr>
    <tr><th>Weight</th><td>232 g</td></tr>
    <tr><th>Materials</th><td>Titanium, Glass</td></tr>
    <tr><th>Colors</th><td><span class="color-sep">Titanium Black</span><span class="color-sep">Titanium Gray</span></td></tr>
    <tr><th>Diagonal</th><td>6.8"</td></tr>
    <tr><th>Type</th><td>Dynamic AMOLED 2X</td></tr>
    <tr><th>Resolution</th><td>1440 x 3120 pixels</td></tr>
    <tr><th>Density</th><td>505 ppi</td></tr>
    <tr><th>Others</th><td><ul><li>HDR10+</li><li>120Hz</li></ul></td></tr>
  </table>
</section>
<section class="container-sheet-hardware">
  <h3>Processor</h3>
  <table class="k-dltable">
    <tr><th>Model</th><td>Qualcomm Snapdragon 8 Gen 3</td></tr>
    <tr><th>CPU</th><td>1x3.39GHz Cortex-X4 &bull; 3x3.1GHz Cortex-A720</td></tr>
  </table>
  <table class="k-dltable">
    <tr><th>GPU</th><td>Adreno 750</td></tr>
    <tr><th>SD Slot</th><td>No</td></tr>
  </table>
  <h3>Security</h3>
  <table class="k-dltable"><tr><th>Fingerprint</th><td>Under screen, ultrasonic</td></tr></table>
</section>
<section class="container-sheet-camera">
  <h3>Main rear camera</h3>
  <div class="k-column-blocks">
    <table>
      <tr><th>Resolution</th><td>200 Mpx</td></tr>
      <tr><th>Aperture</th><td>&#402;/1.7</td></tr>
      <tr><th>Sensor</th><td>ISOCELL HP2</td></tr>
    </table>
  </div>
  <h3>Selfie</h3>
  <div class="k-column-blocks">
    <dl><dt>Resolution</dt><dd>12 Mpx</dd><dt>Aperture</dt><dd>Unknown</dd><dt>Sensor</dt><dd>--</dd></dl>
  </div>
  <table class="k-dltable"><tr><th>Features</th><td><ul><li>Laser autofocus</li><li>OIS</li></ul></td></tr></table>
</section>
<section class="container-sheet-connectivity">
  <dl class="k-dl"><dt>NFC</dt><dd>Yes</dd></dl>
  <h3>Bluetooth</h3>
  <table class="k-dltable"><tr><th>Version</th><td>5.3</td></tr></table>
  <h3>SIM card</h3>
  <table class="k-dltable"><tr><th>Type</th><td>Dual SIM (Nano-SIM, eSIM)</td></tr></table>
  <table class="k-dltable"><tr><th>Audio Jack</th><td>No</td></tr></table>
</section>
<section class="container-sheet-battery">
  <table class="k-dltable">
    <tr><th>Capacity</th><td>5000 mAh</td></tr>
    <tr><th>Fast charge</th><td>Yes, 45W</td></tr>
  </table>
</section>
<section class="container-sheet-software">
  <table class="k-dltable">
    <tr><th>Operating System</th><td><p>Android 14</p><p>One UI 6.1 (planned updates)</p></td></tr>
  </table>
</section>
<div class="offers">
  <div data-offer-id="o-1" data-redirect-target="shop">
    <span class="price">1 299,99 &euro;</span>
    <span class="shop-name">Amazon</span>
    <a href="//www.amazon.de/dp/1">Buy</a>
  </div>
  <div data-offer-id="o-2"><span class="price">n/a</span></div>
</div>
</main>
</body></html>
"""

BOT_WALL_HTML = "<html><body><main class='k-dltable'>Please verify you are a human</main></body></html>"

HANG = object()


class FakePage:
    def __init__(self, behavior: Any) -> None:
        self.behavior = behavior
        self.visited: List[str] = []
        self.routes: List[str] = []
        self.closed = False

    async def route(self, pattern: str, handler) -> None:
        self.routes.append(pattern)

    async def goto(self, url: str, **kwargs) -> None:
        self.visited.append(url)
        if self.behavior is HANG:
            await asyncio.Event().wait()
        if isinstance(self.behavior, Exception):
            raise self.behavior

    async def content(self) -> str:
        return self.behavior

    async def close(self) -> None:
        self.closed = True


class FakeSessions:
    """Hands out one scripted page per session; the last behavior repeats."""

    def __init__(self, *behaviors: Any) -> None:
        self.behaviors = list(behaviors)
        self.opened = 0
        self.closed = 0
        self.started = asyncio.Event()

    @property
    def active(self) -> int:
        return self.opened - self.closed

    @asynccontextmanager
    async def session(self):
        behavior = self.behaviors.pop(0) if len(self.behaviors) > 1 else self.behaviors[0]
        self.opened += 1
        self.started.set()
        try:
            yield FakePage(behavior)
        finally:
            self.closed += 1


class FakeSearchSource:
    """Returns scripted candidate lists or raises scripted errors, in order."""

    name = "fake"

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.queries: List[str] = []

    async def search(self, query: str) -> List[CandidateOption]:
        self.queries.append(query)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return list(response)


def candidate(name: str, target_id: str) -> CandidateOption:
    return CandidateOption(name=name, target_id=target_id, source_url=f"https://www.kimovil.com/en/{target_id}")


@dataclass
class Stack:
    store: MemoryJobStore
    catalog: MemoryCatalog
    entities: MemoryEntityStore
    bus: EventBus
    service: JobQueueService
    search: SearchPipeline
    sessions: FakeSessions
    runner: JobRunner
    worker: Worker

    async def drain(self, limit: int = 20) -> int:
        """Claim and process items until the queue has nothing eligible."""
        processed = 0
        while processed < limit:
            item = await self.service.claim_next(self.worker.config.worker_id)
            if item is None:
                break
            await self.worker.process(item)
            processed += 1
        return processed


def build_stack(
    search_source: Optional[FakeSearchSource] = None,
    sessions: Optional[FakeSessions] = None,
    oracle=None,
    max_retries: int = 3,
    navigation_timeout: float = 5.0,
    navigation_grace: float = 5.0,
    extraction_timeout: float = 5.0,
) -> Stack:
    store = MemoryJobStore()
    catalog = MemoryCatalog()
    entities = MemoryEntityStore()
    bus = EventBus()
    service = JobQueueService(
        store,
        catalog,
        bus,
        max_retries=max_retries,
        backoff=RetryPolicy(max_attempts=max_retries, backoff_base=0.0, backoff_multiplier=1.0, max_backoff=0.0),
    )
    source = search_source or FakeSearchSource([candidate("Samsung Galaxy S24 Ultra", "samsung-galaxy-s24-ultra")])
    search = SearchPipeline(
        source,
        RetryPolicy.fixed(max_retries, 0.0),
        fallback=PrefixCrawler(source, catalog, policy=RetryPolicy.fixed(max_retries, 0.0), delay=0.0, jitter=0.0),
        oracle=oracle,
        registry=catalog,
    )
    sessions = sessions or FakeSessions(DEVICE_HTML)
    executor = ScrapeExecutor(
        sessions,
        navigation_timeout=navigation_timeout,
        navigation_grace=navigation_grace,
        extraction_timeout=extraction_timeout,
        html_cache=entities,
    )
    runner = JobRunner(service, search, executor, entities)
    worker = Worker(WorkerConfig(worker_id="test-worker", poll_interval=0.01), service, runner)
    return Stack(store, catalog, entities, bus, service, search, sessions, runner, worker)


@pytest.fixture
def stack() -> Stack:
    return build_stack()
