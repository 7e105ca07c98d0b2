"""FastAPI service hosting the scraper's real-time gateway."""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Set

from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from specscraper.config import Settings, configure_logging
from specscraper.errors import InvalidParams, ScraperError
from specscraper.runtime import Runtime, build_runtime

from .gateway import ConnectionContext, dispatch
from .protocol import error_frame, event_frame

LOGGER = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    runtime: Optional[Runtime] = None,
    start_workers: bool = False,
) -> FastAPI:
    """Build the gateway app.

    Parameters
    ----------
    settings : Settings, optional
        Used to build a runtime at startup; read from the environment if omitted
    runtime : Runtime, optional
        Pre-built runtime (tests); closed by the caller, not by the app
    start_workers : bool
        Run the worker pool inside the app's event loop
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = runtime is None
        if owned:
            configure_logging()
            app.state.runtime = await build_runtime(settings or Settings.from_env(), require_browser=start_workers)
        else:
            app.state.runtime = runtime
        if start_workers:
            await app.state.runtime.service.resume_bulk_jobs()
            app.state.runtime.start_workers()
        LOGGER.info("Gateway started")
        try:
            yield
        finally:
            if owned:
                await app.state.runtime.close()
            elif app.state.runtime.pool is not None:
                await app.state.runtime.pool.stop()
            LOGGER.info("Gateway stopped")

    app = FastAPI(title="Device Spec Scraper Gateway", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", response_class=Response)
    def health() -> Response:
        return Response(content="ok", media_type="text/plain")

    @app.get("/jobs")
    async def list_jobs(
        request: Request,
        userId: Optional[str] = None,
        activeOnly: bool = False,
        limit: int = 100,
    ) -> Dict[str, List[Dict[str, Any]]]:
        service = request.app.state.runtime.service
        jobs = await service.list_jobs(userId, activeOnly, limit)
        return {"jobs": [job.to_wire() for job in jobs]}

    @app.websocket("/ws")
    async def gateway(websocket: WebSocket) -> None:
        await websocket.accept()
        current: Runtime = websocket.app.state.runtime
        ctx = ConnectionContext(runtime=current, subscription=current.bus.subscribe())
        send_lock = asyncio.Lock()
        in_flight: Set[asyncio.Task] = set()

        async def send(frame: Dict[str, Any]) -> None:
            async with send_lock:
                await websocket.send_json(frame)

        ctx.send = send

        async def handle(frame: Any) -> None:
            await send(await dispatch(ctx, frame))

        async def pump_events() -> None:
            while True:
                event = await ctx.subscription.get()
                await send(event_frame(event))

        pump = asyncio.create_task(pump_events())
        try:
            while True:
                text = await websocket.receive_text()
                try:
                    frame = json.loads(text)
                except ValueError:
                    await send(error_frame(None, InvalidParams("Request is not valid JSON")))
                    continue
                task = asyncio.create_task(handle(frame))
                in_flight.add(task)
                task.add_done_callback(in_flight.discard)
        except WebSocketDisconnect:
            LOGGER.info("Gateway client disconnected")
        finally:
            pump.cancel()
            for task in list(in_flight):
                task.cancel()
            await asyncio.gather(pump, *in_flight, return_exceptions=True)
            ctx.subscription.close()
            if current.settings.cancel_on_disconnect:
                await _cancel_started(ctx)

    return app


async def _cancel_started(ctx: ConnectionContext) -> None:
    for device_id, user_id in ctx.started.items():
        try:
            await ctx.runtime.service.cancel(device_id, user_id)
        except ScraperError as exc:
            LOGGER.debug("Nothing to cancel for %s on disconnect: %s", device_id, exc.message)


app = create_app()
