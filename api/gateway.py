"""Request dispatch for the real-time gateway.

Methods are resolved through ``METHODS``, a static table built at import
time. Each handler receives the connection context and validated params and
returns a JSON-ready result; every failure becomes an ``error`` frame.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from specscraper.errors import InvalidParams, JobNotFound, ScraperError, UnknownMethod
from specscraper.events import BULK_LIST_KEY, Subscription, bulk_key
from specscraper.models import BulkJob, Event, ScrapeJob
from specscraper.runtime import Runtime

from .protocol import (
    BulkListParams,
    BulkParams,
    BulkStartParams,
    CreateFromPreviewParams,
    DeviceParams,
    ListParams,
    OwnerParams,
    PreviewParams,
    QueueItemsParams,
    RpcRequest,
    SearchParams,
    StartParams,
    TargetParams,
    WorkerCountParams,
    error_frame,
    event_frame,
    result_frame,
)

LOGGER = logging.getLogger(__name__)


Sender = Callable[[Dict[str, Any]], Awaitable[None]]


class EventStream:
    """Sends the events of an inline call to the calling connection only.

    Frames are queued in emission order; ``flush()`` waits until all of them
    have been written, so they always precede the call's result frame.
    """

    def __init__(self, send: Optional[Sender]) -> None:
        self.send = send
        self._pending: List[asyncio.Future] = []

    def __call__(self, event: Event) -> None:
        if self.send is not None:
            self._pending.append(asyncio.ensure_future(self.send(event_frame(event))))

    async def progress(self, stage: str, percent: int, message: Optional[str] = None) -> None:
        self(Event(type="progress", stage=stage, percent=percent, message=message))

    async def flush(self) -> None:
        pending, self._pending = self._pending, []
        for outcome in await asyncio.gather(*pending, return_exceptions=True):
            if isinstance(outcome, Exception):
                LOGGER.debug("Dropped inline event frame: %s", outcome)


@dataclass
class ConnectionContext:
    """Per-connection state: the runtime, its event subscription and owned jobs."""

    runtime: Runtime
    subscription: Optional[Subscription] = None
    started: Dict[str, str] = field(default_factory=dict)
    send: Optional[Sender] = None

    def follow(self, device_id: str) -> None:
        if self.subscription is not None:
            self.subscription.follow(device_id)

    def unfollow(self, device_id: str) -> None:
        if self.subscription is not None:
            self.subscription.unfollow(device_id)

    def following(self, device_id: str) -> bool:
        return self.subscription is not None and device_id in self.subscription.device_ids

    def own(self, device_id: str, user_id: str) -> None:
        self.started[device_id] = user_id
        self.follow(device_id)

    def stream(self) -> EventStream:
        return EventStream(self.send)


Handler = Callable[[ConnectionContext, Any], Awaitable[Any]]


async def _enqueue_followed(ctx: ConnectionContext, device_id: str, user_id: str, **request: Any) -> ScrapeJob:
    """Follow the device first so the job's first state event is not missed."""
    device_id = device_id.strip()
    followed_before = ctx.following(device_id)
    ctx.follow(device_id)
    try:
        job = await ctx.runtime.service.enqueue(device_id, user_id, **request)
    except Exception:
        if not followed_before:
            ctx.unfollow(device_id)
        raise
    ctx.own(job.device_id, job.requesting_user_id)
    return job


async def health_check(ctx: ConnectionContext, params: None) -> Dict[str, Any]:
    runtime = ctx.runtime
    return {
        "status": "ok",
        "store": runtime.settings.store,
        "workers": bool(runtime.pool and runtime.pool.running),
        "workerCount": runtime.pool.size if runtime.pool is not None else 0,
        "browser": runtime.executor is not None,
    }


async def search_by_name(ctx: ConnectionContext, params: SearchParams) -> Dict[str, Any]:
    stream = ctx.stream()
    try:
        found = await ctx.runtime.search_by_name(params.query, params.brand, emit=stream)
    finally:
        await stream.flush()
    return {
        "query": found.query,
        "candidates": [candidate.to_wire() for candidate in found.candidates],
        "picked": found.picked.to_wire() if found.picked else None,
        "usedFallback": found.used_fallback,
    }


async def job_start(ctx: ConnectionContext, params: StartParams) -> Dict[str, Any]:
    job = await _enqueue_followed(ctx, params.device_id, params.user_id, query=params.query, brand=params.brand)
    return job.to_wire()


async def job_confirm(ctx: ConnectionContext, params: TargetParams) -> Dict[str, Any]:
    ctx.own(params.device_id, params.user_id)
    job = await ctx.runtime.service.confirm_candidate(params.device_id, params.user_id, params.target_id)
    return job.to_wire()


async def scrape_by_target(ctx: ConnectionContext, params: TargetParams) -> Dict[str, Any]:
    job = await _enqueue_followed(ctx, params.device_id, params.user_id, target_id=params.target_id)
    return job.to_wire()


async def scrape_preview(ctx: ConnectionContext, params: PreviewParams) -> Dict[str, Any]:
    stream = ctx.stream()
    try:
        return await ctx.runtime.preview(params.target_id, progress=stream.progress)
    finally:
        await stream.flush()


async def create_from_preview(ctx: ConnectionContext, params: CreateFromPreviewParams) -> Dict[str, Any]:
    device = await ctx.runtime.create_device_from_preview(params.target_id, params.user_id)
    return device.to_wire()


async def job_get(ctx: ConnectionContext, params: DeviceParams) -> Dict[str, Any]:
    job = await ctx.runtime.service.get_job(params.device_id)
    if job is None:
        raise JobNotFound(f"No job for device {params.device_id}")
    return job.to_wire()


async def job_list(ctx: ConnectionContext, params: ListParams) -> Dict[str, Any]:
    jobs = await ctx.runtime.service.list_jobs(params.user_id, params.active_only, params.limit)
    return {"jobs": [job.to_wire() for job in jobs]}


async def job_queue_items(ctx: ConnectionContext, params: QueueItemsParams) -> Dict[str, Any]:
    items = await ctx.runtime.service.get_queue_items(params.job_id)
    return {"items": [item.to_wire() for item in items]}


async def job_cancel(ctx: ConnectionContext, params: OwnerParams) -> Dict[str, Any]:
    job = await ctx.runtime.service.cancel(params.device_id, params.user_id)
    ctx.started.pop(params.device_id, None)
    return job.to_wire()


async def job_subscribe(ctx: ConnectionContext, params: DeviceParams) -> Dict[str, Any]:
    ctx.follow(params.device_id)
    job = await ctx.runtime.service.get_job(params.device_id)
    return {"deviceId": params.device_id, "job": job.to_wire() if job else None}


async def queue_stats(ctx: ConnectionContext, params: None) -> Dict[str, Any]:
    return await ctx.runtime.service.stats()


def _bulk_wire(bulk: BulkJob, stats: Dict[str, int]) -> Dict[str, Any]:
    return {**bulk.to_wire(), "stats": stats}


async def bulk_start(ctx: ConnectionContext, params: BulkStartParams) -> Dict[str, Any]:
    bulk_id = uuid.uuid4().hex
    ctx.follow(bulk_key(bulk_id))
    try:
        bulk = await ctx.runtime.service.start_bulk(params.user_id, params.target_ids, bulk_id=bulk_id)
    except Exception:
        ctx.unfollow(bulk_key(bulk_id))
        raise
    return _bulk_wire(bulk, await ctx.runtime.service.bulk_stats(bulk.id))


async def bulk_subscribe(ctx: ConnectionContext, params: BulkParams) -> Dict[str, Any]:
    bulk, stats = await ctx.runtime.service.get_bulk(params.bulk_id)
    ctx.follow(bulk_key(bulk.id))
    return _bulk_wire(bulk, stats)


async def bulk_list(ctx: ConnectionContext, params: BulkListParams) -> Dict[str, Any]:
    ctx.follow(BULK_LIST_KEY)
    bulks = await ctx.runtime.service.list_bulks(params.limit)
    pool = ctx.runtime.pool
    return {
        "bulks": [_bulk_wire(bulk, stats) for bulk, stats in bulks],
        "workerCount": pool.size if pool is not None else 0,
    }


async def bulk_pause(ctx: ConnectionContext, params: BulkParams) -> Dict[str, Any]:
    bulk = await ctx.runtime.service.pause_bulk(params.bulk_id)
    return _bulk_wire(bulk, await ctx.runtime.service.bulk_stats(bulk.id))


async def bulk_resume(ctx: ConnectionContext, params: BulkParams) -> Dict[str, Any]:
    bulk = await ctx.runtime.service.resume_bulk(params.bulk_id)
    return _bulk_wire(bulk, await ctx.runtime.service.bulk_stats(bulk.id))


async def bulk_set_workers(ctx: ConnectionContext, params: WorkerCountParams) -> Dict[str, Any]:
    return {"workerCount": ctx.runtime.set_worker_count(params.worker_count)}


METHODS: Dict[str, Tuple[Optional[Type[BaseModel]], Handler]] = {
    "health.check": (None, health_check),
    "search.byName": (SearchParams, search_by_name),
    "job.start": (StartParams, job_start),
    "job.confirm": (TargetParams, job_confirm),
    "scrape.byTarget": (TargetParams, scrape_by_target),
    "scrape.preview": (PreviewParams, scrape_preview),
    "device.createFromPreview": (CreateFromPreviewParams, create_from_preview),
    "job.get": (DeviceParams, job_get),
    "job.list": (ListParams, job_list),
    "job.queueItems": (QueueItemsParams, job_queue_items),
    "job.cancel": (OwnerParams, job_cancel),
    "job.subscribe": (DeviceParams, job_subscribe),
    "queue.stats": (None, queue_stats),
    "bulk.start": (BulkStartParams, bulk_start),
    "bulk.subscribe": (BulkParams, bulk_subscribe),
    "bulk.list": (BulkListParams, bulk_list),
    "bulk.pause": (BulkParams, bulk_pause),
    "bulk.resume": (BulkParams, bulk_resume),
    "bulk.setWorkers": (WorkerCountParams, bulk_set_workers),
}


def _parse_params(model: Optional[Type[BaseModel]], raw: Dict[str, Any]) -> Any:
    if model is None:
        return None
    try:
        return model.model_validate(raw)
    except PydanticValidationError as exc:
        errors = [
            {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
            for error in exc.errors()
        ]
        raise InvalidParams("Invalid params", {"errors": errors}) from exc


async def dispatch(ctx: ConnectionContext, frame: Any) -> Dict[str, Any]:
    """Handle one request frame and return exactly one response frame."""
    request_id = frame.get("id") if isinstance(frame, dict) else None
    try:
        try:
            request = RpcRequest.model_validate(frame)
        except PydanticValidationError as exc:
            raise InvalidParams("Malformed request: expected {id, method, params}") from exc
        request_id = request.id

        entry = METHODS.get(request.method)
        if entry is None:
            raise UnknownMethod(f"Unknown method {request.method!r}")
        model, handler = entry
        params = _parse_params(model, request.params)
        LOGGER.debug("Dispatching %s (id=%s)", request.method, request_id)
        return result_frame(request_id, await handler(ctx, params))
    except ScraperError as exc:
        LOGGER.info("Request %s failed: %s", request_id, exc.message)
        return error_frame(request_id, exc)
    except Exception as exc:
        LOGGER.error("Unhandled error in request %s: %s", request_id, exc, exc_info=True)
        return error_frame(request_id, ScraperError("Internal error"))
