import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from specscraper.antibot.retry import RetryPolicy
from specscraper.catalog import MemoryCatalog
from specscraper.errors import (
    DuplicateActiveJob,
    InvalidParams,
    InvalidTransition,
    JobNotFound,
    ParseError,
    PermissionDenied,
    SlugConflict,
    TransportError,
)
from specscraper.events import BULK_LIST_KEY, EventBus, bulk_key
from specscraper.ids import derive_device_id
from specscraper.jobs.service import ItemOutcome, JobQueueService
from specscraper.jobs.store import MemoryJobStore
from specscraper.models import BulkJob, BulkStatus, CandidateOption, JobStep, QueueItemKind, QueueItemStatus


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def catalog():
    return MemoryCatalog()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def service(clock, catalog, bus):
    return JobQueueService(
        MemoryJobStore(),
        catalog,
        bus,
        max_retries=3,
        backoff=RetryPolicy(max_attempts=3, backoff_base=5.0, backoff_multiplier=2.0, max_backoff=60.0),
        clock=clock,
    )


async def start_scraping(service, device_id="dev-1", user_id="user-1", target_id="google-pixel-8"):
    """Admit a job and drive it to ``scraping``; return the job and its scrape item."""
    job = await service.enqueue(device_id, user_id, target_id=target_id)
    search_item = await service.claim_next("w1")
    job = await service.begin_scrape(job, target_id)
    await service.complete_item(search_item, ItemOutcome())
    scrape_item = await service.claim_next("w1")
    assert scrape_item.kind == QueueItemKind.SCRAPE
    return job, scrape_item


def test_enqueue_creates_searching_job_with_search_item(service):
    async def scenario():
        job = await service.enqueue("dev-1", "user-1", "  Pixel   8 ", brand="Google")
        items = await service.get_queue_items(job.id)
        return job, items

    job, items = asyncio.run(scenario())
    assert job.step == JobStep.SEARCHING
    assert job.request.query == "Pixel 8"
    assert job.request.brand == "Google"
    assert [(item.kind, item.status, item.max_attempts) for item in items] == [
        (QueueItemKind.SEARCH, QueueItemStatus.PENDING, 1)
    ]


@pytest.mark.parametrize(
    "device_id, user_id, query, target_id",
    [
        ("", "user-1", "Pixel 8", None),
        ("dev-1", " ", "Pixel 8", None),
        ("dev-1", "user-1", "", None),
    ],
)
def test_enqueue_validates_input(service, device_id, user_id, query, target_id):
    with pytest.raises(InvalidParams):
        asyncio.run(service.enqueue(device_id, user_id, query, target_id=target_id))


def test_enqueue_normalizes_target_url(service):
    job = asyncio.run(
        service.enqueue("dev-1", "user-1", target_id="https://www.kimovil.com/en/where-to-buy-google-pixel-8/")
    )
    assert job.request.target_id == "google-pixel-8"


def test_concurrent_enqueue_admits_exactly_one_job(service):
    async def scenario():
        return await asyncio.gather(
            *(service.enqueue("dev-1", f"user-{n}", "Pixel 8") for n in range(5)),
            return_exceptions=True,
        )

    results = asyncio.run(scenario())
    admitted = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, Exception)]
    assert len(admitted) == 1
    assert len(rejected) == 4
    assert all(isinstance(r, DuplicateActiveJob) for r in rejected)
    assert all(r.code == "duplicate_active_job" for r in rejected)


def test_new_job_allowed_after_terminal(service):
    async def scenario():
        job = await service.enqueue("dev-1", "user-1", "Pixel 8")
        await service.cancel("dev-1", "user-1")
        return job, await service.enqueue("dev-1", "user-1", "Pixel 8")

    first, second = asyncio.run(scenario())
    assert first.id != second.id
    assert second.step == JobStep.SEARCHING


def test_concurrent_claims_never_hand_out_an_item_twice(service):
    async def scenario():
        for n in range(10):
            await service.enqueue(f"dev-{n}", "user-1", "Pixel 8")
        return await asyncio.gather(*(service.claim_next(f"w{n}") for n in range(20)))

    claimed = [item for item in asyncio.run(scenario()) if item is not None]
    assert len(claimed) == 10
    assert len({item.id for item in claimed}) == 10
    assert all(item.attempt == 1 for item in claimed)


def test_one_claimed_item_per_device(service):
    async def scenario():
        job = await service.enqueue("dev-1", "user-1", "Pixel 8")
        first = await service.claim_next("w1")
        await service.store.add_item(service._new_item(job, QueueItemKind.SCRAPE, service.clock()))
        blocked = await service.claim_next("w2")
        await service.complete_item(first, ItemOutcome())
        unblocked = await service.claim_next("w2")
        return first, blocked, unblocked

    first, blocked, unblocked = asyncio.run(scenario())
    assert first is not None
    assert blocked is None
    assert unblocked.kind == QueueItemKind.SCRAPE


def test_retryable_failure_backs_off_then_exhausts(service, clock, bus):
    subscription = bus.subscribe()
    subscription.follow("dev-1")

    async def scenario():
        job, item = await start_scraping(service)
        history = []
        for expected_delay in (5, 10):
            await service.complete_item(item, ItemOutcome.failed(TransportError("Proxy refused"), attempts=item.attempt))
            history.append(await service.claim_next("w1"))
            clock.advance(expected_delay)
            item = await service.claim_next("w1")
            history.append(item)
        await service.complete_item(item, ItemOutcome.failed(TransportError("Proxy refused"), attempts=item.attempt))
        return job, history, await service.get_job_by_id(job.id), await service.get_queue_items(job.id)

    job, history, final, items = asyncio.run(scenario())
    too_early_first, retry_one, too_early_second, retry_two = history
    assert too_early_first is None and too_early_second is None
    assert (retry_one.attempt, retry_two.attempt) == (2, 3)

    assert final.step == JobStep.ERROR
    assert final.attempts == 3
    assert final.error == "Proxy refused"
    scrape_item = items[-1]
    assert scrape_item.status == QueueItemStatus.ERROR
    assert scrape_item.last_error_code == "transport_error"

    events = []
    while not subscription.queue.empty():
        events.append(subscription.queue.get_nowait())
    retries = [e for e in events if e.type == "retry"]
    assert [(e.attempt, e.max_attempts, e.delay) for e in retries] == [(1, 3, 5.0), (2, 3, 10.0)]
    assert events[-1].type == "state" and events[-1].step == "error"


def test_permanent_failure_is_not_retried(service):
    async def scenario():
        job, item = await start_scraping(service)
        await service.complete_item(item, ItemOutcome.failed(ParseError("Unreadable page"), attempts=item.attempt))
        return await service.get_job_by_id(job.id)

    final = asyncio.run(scenario())
    assert final.step == JobStep.ERROR
    assert final.attempts == 1


def test_completion_of_released_item_is_ignored(service):
    async def scenario():
        job, item = await start_scraping(service)
        await service.cancel("dev-1", "user-1")
        result = await service.complete_item(item, ItemOutcome.failed(TransportError("late"), attempts=1))
        return result, await service.get_job_by_id(job.id)

    item, job = asyncio.run(scenario())
    assert item.status == QueueItemStatus.CANCELLED
    assert job.step == JobStep.INTERRUPTED
    assert job.error == "Cancelled by user"


def test_slug_conflict_never_reaches_scraping(service, catalog):
    catalog.add_device("dev-other", "Google Pixel 8", target_id="google-pixel-8")

    async def scenario():
        job = await service.enqueue("dev-1", "user-1", "Pixel 8")
        with pytest.raises(SlugConflict) as excinfo:
            await service.begin_scrape(job, "google-pixel-8")
        return excinfo.value, await service.get_job_by_id(job.id), await service.get_queue_items(job.id)

    conflict, job, items = asyncio.run(scenario())
    assert conflict.existing_device_id == "dev-other"
    assert job.step == JobStep.SLUG_CONFLICT
    assert job.slug_conflict.existing_device_name == "Google Pixel 8"
    assert job.finished_at is not None
    assert all(item.kind == QueueItemKind.SEARCH for item in items)


def test_own_target_is_not_a_conflict(service, catalog):
    catalog.add_device("dev-1", "Google Pixel 8", target_id="google-pixel-8")
    job, item = asyncio.run(start_scraping(service))
    assert item.device_id == "dev-1"


def test_confirm_candidate_requires_selecting(service):
    async def scenario():
        job = await service.enqueue("dev-1", "user-1", "Pixel 8")
        with pytest.raises(InvalidTransition):
            await service.confirm_candidate("dev-1", "user-1", "google-pixel-8")
        with pytest.raises(JobNotFound):
            await service.confirm_candidate("dev-2", "user-1", "google-pixel-8")
        await service.present_candidates(
            job,
            [
                CandidateOption(name="Google Pixel 8", target_id="google-pixel-8"),
                CandidateOption(name="Google Pixel 8 Pro", target_id="google-pixel-8-pro"),
            ],
        )
        return await service.confirm_candidate("dev-1", "user-1", "google-pixel-8-pro")

    job = asyncio.run(scenario())
    assert job.step == JobStep.SCRAPING
    assert job.target_id == "google-pixel-8-pro"
    assert job.autocomplete_options is None


def test_cancel_checks_ownership(service):
    cancelled = []
    service.add_cancel_listener(cancelled.append)

    async def scenario():
        job = await service.enqueue("dev-1", "user-1", "Pixel 8")
        with pytest.raises(PermissionDenied):
            await service.cancel("dev-1", "user-2")
        with pytest.raises(JobNotFound):
            await service.cancel("dev-2", "user-1")
        result = await service.cancel("dev-1", "user-1")
        return job, result, await service.get_queue_items(job.id)

    job, result, items = asyncio.run(scenario())
    assert result.step == JobStep.INTERRUPTED
    assert cancelled == [job.id]
    assert [item.status for item in items] == [QueueItemStatus.CANCELLED]


def test_progress_never_decreases_within_a_step(service):
    async def scenario():
        job, _ = await start_scraping(service)
        await service.record_progress(job.id, "validating", 40)
        await service.record_progress(job.id, "navigating", 10, "Navigating")
        return await service.get_job_by_id(job.id)

    job = asyncio.run(scenario())
    assert (job.progress_stage, job.progress_percent) == ("validating", 40)


def test_reaper_requeues_once_then_interrupts(service, clock):
    async def scenario():
        job = await service.enqueue("dev-1", "user-1", "Pixel 8")
        await service.claim_next("w-dead")
        clock.advance(601)
        first = await service.reap_stale()
        requeued = await service.get_job_by_id(job.id)

        await service.claim_next("w-dead")
        clock.advance(601)
        second = await service.reap_stale()
        return job, first, requeued, second, await service.get_job_by_id(job.id)

    job, first, requeued, second, final = asyncio.run(scenario())
    assert first.released_claims == 1
    assert first.requeued == [job.id]
    assert requeued.step == JobStep.SEARCHING
    assert requeued.requeue_count == 1
    assert second.released_claims == 1
    assert second.interrupted == [job.id]
    assert final.step == JobStep.INTERRUPTED


def test_reaper_leaves_jobs_with_open_items(service, clock):
    async def scenario():
        await service.enqueue("dev-1", "user-1", "Pixel 8")
        clock.advance(200)
        return await service.reap_stale()

    report = asyncio.run(scenario())
    assert report.released_claims == 0
    assert report.requeued == [] and report.interrupted == []


def test_reaper_interrupts_unconfirmed_selection(service, clock):
    async def scenario():
        job = await service.enqueue("dev-1", "user-1", "Pixel")
        await service.present_candidates(job, [CandidateOption(name="Google Pixel 8", target_id="google-pixel-8")])
        clock.advance(29 * 60)
        early = await service.reap_stale()
        clock.advance(2 * 60)
        late = await service.reap_stale()
        return job, early, late, await service.get_job_by_id(job.id)

    job, early, late, final = asyncio.run(scenario())
    assert early.interrupted == []
    assert late.interrupted == [job.id]
    assert final.step == JobStep.INTERRUPTED


def test_reset_error_items_only_touches_active_jobs(service):
    async def scenario():
        failed = await service.enqueue("dev-1", "user-1", "Pixel 8")
        item = await service.claim_next("w1")
        await service.complete_item(item, ItemOutcome.failed(ParseError("bad"), attempts=1))

        job, scrape_item = await start_scraping(service, device_id="dev-2")
        await service.store.save_item(scrape_item.model_copy(update={"status": QueueItemStatus.ERROR}))

        reset = await service.reset_error_items()
        return failed, job, reset, await service.get_queue_items(failed.id), await service.get_queue_items(job.id)

    failed, job, reset, failed_items, active_items = asyncio.run(scenario())
    assert reset == 1
    assert failed_items[0].status == QueueItemStatus.ERROR
    assert active_items[-1].status == QueueItemStatus.PENDING
    assert active_items[-1].attempt == 0


def test_prune_archived_removes_old_terminal_jobs(service, clock):
    async def scenario():
        job = await service.enqueue("dev-1", "user-1", "Pixel 8")
        await service.cancel("dev-1", "user-1")
        active = await service.enqueue("dev-2", "user-1", "Pixel 8")
        clock.advance(24 * 60 * 60 + 1)
        pruned = await service.prune_archived()
        return job, active, pruned

    job, active, pruned = asyncio.run(scenario())
    assert pruned == 1
    assert asyncio.run(service.get_job_by_id(job.id)) is None
    assert asyncio.run(service.get_job_by_id(active.id)) is not None


def test_queries_and_stats(service):
    async def scenario():
        await service.enqueue("dev-1", "user-1", "Pixel 8")
        await service.enqueue("dev-2", "user-2", "Pixel 8")
        await service.cancel("dev-2", "user-2")
        return (
            await service.list_jobs(user_id="user-1"),
            await service.list_jobs(active_only=True),
            await service.get_job("dev-2"),
            await service.get_active_job("dev-2"),
            await service.stats(),
        )

    mine, active, latest, none_active, stats = asyncio.run(scenario())
    assert [job.device_id for job in mine] == ["dev-1"]
    assert [job.device_id for job in active] == ["dev-1"]
    assert latest.step == JobStep.INTERRUPTED
    assert none_active is None
    assert stats["jobs_searching"] == 1
    assert stats["jobs_interrupted"] == 1
    assert stats["items_cancelled"] == 1


def test_bulk_admits_one_job_per_target_and_skips_busy_devices(service, catalog, bus):
    catalog.add_device("dev-7", "Google Pixel 8", target_id="google-pixel-8")
    listing = bus.subscribe()
    listing.follow(BULK_LIST_KEY)

    async def scenario():
        await service.enqueue(derive_device_id("xiaomi-14"), "user-2", target_id="xiaomi-14")
        bulk = await service.start_bulk(
            "user-1",
            ["google-pixel-8", "https://www.kimovil.com/en/xiaomi-14", "google-pixel-8", "  ", "apple-iphone-15"],
        )
        return bulk, await service.list_jobs(user_id="user-1"), await service.stats()

    bulk, jobs, stats = asyncio.run(scenario())
    assert bulk.status == BulkStatus.RUNNING
    assert bulk.total == 2
    assert bulk.skipped == ["xiaomi-14"]
    assert sorted(job.device_id for job in jobs) == sorted(["dev-7", derive_device_id("apple-iphone-15")])
    assert all(job.bulk_id == bulk.id for job in jobs)
    assert stats["bulks_running"] == 1
    update = listing.queue.get_nowait()
    assert (update.type, update.bulk_id, update.status) == ("bulk.jobUpdate", bulk.id, "running")


def test_bulk_start_validates_input(service):
    with pytest.raises(InvalidParams):
        asyncio.run(service.start_bulk("", ["google-pixel-8"]))
    with pytest.raises(InvalidParams):
        asyncio.run(service.start_bulk("user-1", [" ", ""]))


def test_bulk_start_failure_marks_the_bulk_failed(service, catalog, monkeypatch):
    async def broken_lookup(target_id):
        raise RuntimeError("catalog unavailable")

    monkeypatch.setattr(catalog, "find_by_target", broken_lookup)

    async def scenario():
        with pytest.raises(RuntimeError):
            await service.start_bulk("user-1", ["google-pixel-8"])
        return await service.list_bulks()

    [(bulk, stats)] = asyncio.run(scenario())
    assert bulk.status == BulkStatus.ERROR
    assert bulk.error == "catalog unavailable"
    assert bulk.finished_at is not None


def test_bulk_finishes_when_its_last_member_ends(service, bus):
    subscription = bus.subscribe()

    async def scenario():
        bulk = await service.start_bulk("user-1", ["google-pixel-8"])
        subscription.follow(bulk_key(bulk.id))
        job = (await service.list_jobs(user_id="user-1"))[0]
        search_item = await service.claim_next("w1")
        job = await service.begin_scrape(job, "google-pixel-8")
        await service.complete_item(search_item, ItemOutcome())
        scrape_item = await service.claim_next("w1")
        await service.complete_item(scrape_item, ItemOutcome.failed(ParseError("Unreadable page"), attempts=1))
        return await service.get_bulk(bulk.id)

    bulk, stats = asyncio.run(scenario())
    assert bulk.status == BulkStatus.DONE
    assert stats == {"total": 1, "active": 0, "done": 0, "failed": 1}
    events = []
    while not subscription.queue.empty():
        events.append(subscription.queue.get_nowait())
    assert [e.type for e in events][-2:] == ["bulk.jobUpdate", "bulk.done"]


def test_paused_bulk_holds_back_its_items_only(service):
    async def scenario():
        bulk = await service.start_bulk("user-1", ["google-pixel-8"])
        await service.pause_bulk(bulk.id)
        held = await service.claim_next("w1")
        await service.enqueue("dev-9", "user-9", "Pixel 8")
        other = await service.claim_next("w1")
        await service.resume_bulk(bulk.id)
        member = await service.claim_next("w1")
        return bulk, held, other, member

    bulk, held, other, member = asyncio.run(scenario())
    assert held is None
    assert other.device_id == "dev-9"
    assert member.bulk_id == bulk.id


def test_bulk_status_transitions(service):
    async def scenario():
        bulk = await service.start_bulk("user-1", ["google-pixel-8"])
        with pytest.raises(InvalidTransition):
            await service.resume_bulk(bulk.id)
        await service.pause_bulk(bulk.id)
        with pytest.raises(InvalidTransition):
            await service.pause_bulk(bulk.id)
        with pytest.raises(JobNotFound):
            await service.pause_bulk("missing")
        return await service.get_bulk(bulk.id)

    bulk, _ = asyncio.run(scenario())
    assert bulk.status == BulkStatus.PAUSED


def test_resume_bulk_jobs_after_restart(service, clock):
    async def scenario():
        running = await service.start_bulk("user-1", ["google-pixel-8"])
        claimed = await service.claim_next("dead-worker")
        paused = await service.start_bulk("user-2", ["xiaomi-14"])
        await service.pause_bulk(paused.id)
        empty = await service.store.insert_bulk(
            BulkJob(id="stuck", user_id="user-3", status=BulkStatus.RUNNING, created_at=clock(), updated_at=clock())
        )
        report = await service.resume_bulk_jobs()
        return running, claimed, paused, empty, report, await service.store.get_item(claimed.id)

    running, claimed, paused, empty, report, released = asyncio.run(scenario())
    assert claimed.bulk_id == running.id
    assert report == {"finished": ["stuck"], "paused": [paused.id], "resumed": [running.id]}
    assert released.status == QueueItemStatus.PENDING
    assert released.attempt == 0
    assert released.claimed_by is None
