"""Entity store: raw payloads, derived records, price quotes and page HTML."""
from __future__ import annotations

import copy
import itertools
import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Dict, Hashable, Iterable, List, Optional, Protocol, Sequence, Tuple

from ..models import DerivedEntity, PriceQuote, RawEntity, utcnow

if TYPE_CHECKING:
    from ..scrape.executor import ScrapeOutcome

LOGGER = logging.getLogger(__name__)


class EntityStore(Protocol):
    """Append-oriented storage keyed by device id.

    Writers for distinct devices never touch the same rows, so concurrent
    workers need no coordination beyond each method being atomic.
    """

    async def save_raw(self, entity: RawEntity) -> RawEntity:
        """Store ``entity`` as the current row, superseding the previous one."""
        ...

    async def get_raw(self, device_id: str, source: str, data_kind: str) -> Optional[RawEntity]:
        ...

    async def raw_history(self, device_id: str, source: str, data_kind: str) -> List[RawEntity]:
        ...

    async def save_derived(self, entity: DerivedEntity) -> DerivedEntity:
        ...

    async def get_derived(self, device_id: str, data_kind: str) -> Optional[DerivedEntity]:
        ...

    async def save_price_quotes(self, quotes: Sequence[PriceQuote]) -> int:
        ...

    async def list_price_quotes(self, device_id: str) -> List[PriceQuote]:
        ...

    async def get_html(self, slug: str, max_age: float) -> Optional[str]:
        ...

    async def save_html(self, slug: str, url: str, html: str) -> None:
        ...


async def store_outcome(store: EntityStore, outcome: ScrapeOutcome) -> DerivedEntity:
    """Persist everything a scrape produced and return the derived record."""
    for entity in outcome.raw_entities():
        await store.save_raw(entity)
    derived = await store.save_derived(outcome.derived_entity())
    quotes = outcome.price_quotes()
    if quotes:
        saved = await store.save_price_quotes(quotes)
        LOGGER.debug("Stored %d/%d price quotes for %s", saved, len(quotes), outcome.device_id)
    return derived


class ModelRowTable:
    """Row-table view over a dict of pydantic models with a ``data`` payload."""

    def __init__(self, name: str, models: Dict[Hashable, Any]) -> None:
        self.name = name
        self.models = models
        self.snapshots: Dict[str, Dict[Hashable, Any]] = {}

    def iter_rows(self) -> Iterable[Tuple[Hashable, Any]]:
        return [(key, model.data) for key, model in self.models.items()]

    def update_row(self, key: Hashable, data: Dict[str, Any]) -> None:
        self.models[key] = self.models[key].model_copy(update={"data": data})

    def snapshot(self, label: str) -> bool:
        if label in self.snapshots:
            return False
        self.snapshots[label] = {key: model.model_copy(deep=True) for key, model in self.models.items()}
        return True

    def commit(self) -> None:
        pass


class MemoryEntityStore:
    """Process-local entity store for development and tests."""

    def __init__(self) -> None:
        self.raw: Dict[int, RawEntity] = {}
        self.derived: Dict[Tuple[str, str], DerivedEntity] = {}
        self.quotes: List[PriceQuote] = []
        self.html: Dict[str, Tuple[str, str, Any]] = {}
        self._raw_ids = itertools.count(1)
        self._tables: Dict[str, ModelRowTable] = {}

    async def save_raw(self, entity: RawEntity) -> RawEntity:
        now = utcnow()
        for key, existing in self.raw.items():
            if (
                existing.superseded_at is None
                and (existing.device_id, existing.source, existing.data_kind)
                == (entity.device_id, entity.source, entity.data_kind)
            ):
                self.raw[key] = existing.model_copy(update={"superseded_at": now})
        stored = entity.model_copy(update={"data": copy.deepcopy(entity.data), "superseded_at": None})
        self.raw[next(self._raw_ids)] = stored
        return stored

    async def get_raw(self, device_id: str, source: str, data_kind: str) -> Optional[RawEntity]:
        for entity in self.raw.values():
            if (
                entity.superseded_at is None
                and (entity.device_id, entity.source, entity.data_kind) == (device_id, source, data_kind)
            ):
                return entity.model_copy(deep=True)
        return None

    async def raw_history(self, device_id: str, source: str, data_kind: str) -> List[RawEntity]:
        history = [
            entity
            for entity in self.raw.values()
            if (entity.device_id, entity.source, entity.data_kind) == (device_id, source, data_kind)
        ]
        history.sort(key=lambda entity: entity.fetched_at, reverse=True)
        return [entity.model_copy(deep=True) for entity in history]

    async def save_derived(self, entity: DerivedEntity) -> DerivedEntity:
        self.derived[(entity.device_id, entity.data_kind)] = entity.model_copy(deep=True)
        return entity

    async def get_derived(self, device_id: str, data_kind: str) -> Optional[DerivedEntity]:
        entity = self.derived.get((device_id, data_kind))
        return entity.model_copy(deep=True) if entity else None

    async def save_price_quotes(self, quotes: Sequence[PriceQuote]) -> int:
        seen = {(q.source, q.offer_id, q.observed_at) for q in self.quotes}
        saved = 0
        for quote in quotes:
            key = (quote.source, quote.offer_id, quote.observed_at)
            if key in seen:
                continue
            seen.add(key)
            self.quotes.append(quote)
            saved += 1
        return saved

    async def list_price_quotes(self, device_id: str) -> List[PriceQuote]:
        quotes = [quote for quote in self.quotes if quote.device_id == device_id]
        return sorted(quotes, key=lambda quote: quote.observed_at, reverse=True)

    async def get_html(self, slug: str, max_age: float) -> Optional[str]:
        cached = self.html.get(slug)
        if cached is None:
            return None
        _, html, fetched_at = cached
        if utcnow() - fetched_at > timedelta(seconds=max_age):
            return None
        return html

    async def save_html(self, slug: str, url: str, html: str) -> None:
        self.html[slug] = (url, html, utcnow())

    def row_table(self, table: str) -> ModelRowTable:
        """Normalization view of ``entity_data_raw`` or ``entity_data``."""
        if table not in self._tables:
            if table == "entity_data_raw":
                self._tables[table] = ModelRowTable(table, self.raw)
            elif table == "entity_data":
                self._tables[table] = ModelRowTable(table, self.derived)
            else:
                raise ValueError(f"Normalization is not defined for table {table!r}")
        return self._tables[table]
