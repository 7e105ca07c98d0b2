"""In-process fan-out of job events to gateway subscribers."""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Dict, Set

from .models import Event

LOGGER = logging.getLogger(__name__)

MAX_PENDING_EVENTS = 1000
BULK_LIST_KEY = "bulk:*"


def bulk_key(bulk_id: str) -> str:
    return f"bulk:{bulk_id}"


class Subscription:
    """A queue of events for a set of device ids."""

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=MAX_PENDING_EVENTS)
        self.device_ids: Set[str] = set()
        self.dropped = 0

    def follow(self, device_id: str) -> None:
        self.device_ids.add(device_id)
        self._bus._index[device_id].add(self)

    def unfollow(self, device_id: str) -> None:
        self.device_ids.discard(device_id)
        followers = self._bus._index.get(device_id)
        if followers is not None:
            followers.discard(self)
            if not followers:
                del self._bus._index[device_id]

    def deliver(self, event: Event) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1

    async def get(self) -> Event:
        return await self.queue.get()

    def close(self) -> None:
        for device_id in list(self.device_ids):
            self.unfollow(device_id)


class EventBus:
    """Publishes events keyed by device id (or bulk key). Publishing never blocks."""

    def __init__(self) -> None:
        self._index: Dict[str, Set[Subscription]] = defaultdict(set)

    def subscribe(self) -> Subscription:
        return Subscription(self)

    def publish(self, device_id: str, event: Event) -> None:
        if event.device_id is None:
            event = event.model_copy(update={"device_id": device_id})
        self._fan_out(device_id, event)

    def publish_bulk(self, bulk_id: str, event: Event, *, listing: bool = False) -> None:
        """Deliver to followers of the bulk job, and to bulk list followers if ``listing``."""
        if event.bulk_id is None:
            event = event.model_copy(update={"bulk_id": bulk_id})
        self._fan_out(bulk_key(bulk_id), event)
        if listing:
            self._fan_out(BULK_LIST_KEY, event)

    def _fan_out(self, key: str, event: Event) -> None:
        followers = self._index.get(key)
        if not followers:
            return
        for subscription in list(followers):
            subscription.deliver(event)
        LOGGER.debug("Published %s event for %s to %d subscriber(s)", event.type, key, len(followers))
