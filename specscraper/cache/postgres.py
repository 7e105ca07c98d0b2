"""Postgres entity store (asyncpg)."""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import List, Optional, Sequence

from asyncpg import Pool

from ..models import DerivedEntity, PriceQuote, RawEntity, utcnow

LOGGER = logging.getLogger(__name__)


class PostgresEntityStore:
    """Entity tables behind an asyncpg pool."""

    def __init__(self, pool: Pool) -> None:
        self.pool = pool

    async def save_raw(self, entity: RawEntity) -> RawEntity:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    UPDATE entity_data_raw SET superseded_at = $4
                    WHERE device_id = $1 AND source = $2 AND data_kind = $3
                      AND superseded_at IS NULL
                    """,
                    entity.device_id,
                    entity.source,
                    entity.data_kind,
                    utcnow(),
                )
                await conn.execute(
                    """
                    INSERT INTO entity_data_raw (device_id, source, data_kind, data, fetched_at)
                    VALUES ($1, $2, $3, $4, $5)
                    """,
                    entity.device_id,
                    entity.source,
                    entity.data_kind,
                    entity.data,
                    entity.fetched_at,
                )
        return entity

    async def get_raw(self, device_id: str, source: str, data_kind: str) -> Optional[RawEntity]:
        row = await self.pool.fetchrow(
            """
            SELECT device_id, source, data_kind, data, fetched_at, superseded_at
            FROM entity_data_raw
            WHERE device_id = $1 AND source = $2 AND data_kind = $3 AND superseded_at IS NULL
            """,
            device_id,
            source,
            data_kind,
        )
        return RawEntity.model_validate(dict(row)) if row else None

    async def raw_history(self, device_id: str, source: str, data_kind: str) -> List[RawEntity]:
        rows = await self.pool.fetch(
            """
            SELECT device_id, source, data_kind, data, fetched_at, superseded_at
            FROM entity_data_raw
            WHERE device_id = $1 AND source = $2 AND data_kind = $3
            ORDER BY fetched_at DESC
            """,
            device_id,
            source,
            data_kind,
        )
        return [RawEntity.model_validate(dict(row)) for row in rows]

    async def save_derived(self, entity: DerivedEntity) -> DerivedEntity:
        await self.pool.execute(
            """
            INSERT INTO entity_data (device_id, data_kind, data, sources, computed_at)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (device_id, data_kind) DO UPDATE
            SET data = EXCLUDED.data,
                sources = EXCLUDED.sources,
                computed_at = EXCLUDED.computed_at
            """,
            entity.device_id,
            entity.data_kind,
            entity.data,
            entity.sources,
            entity.computed_at,
        )
        return entity

    async def get_derived(self, device_id: str, data_kind: str) -> Optional[DerivedEntity]:
        row = await self.pool.fetchrow(
            """
            SELECT device_id, data_kind, data, sources, computed_at
            FROM entity_data WHERE device_id = $1 AND data_kind = $2
            """,
            device_id,
            data_kind,
        )
        return DerivedEntity.model_validate(dict(row)) if row else None

    async def save_price_quotes(self, quotes: Sequence[PriceQuote]) -> int:
        saved = 0
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                for quote in quotes:
                    status = await conn.execute(
                        """
                        INSERT INTO price_quotes
                            (device_id, source, offer_id, price, currency, seller, url, redirect_type, observed_at)
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                        ON CONFLICT (source, offer_id, observed_at) DO NOTHING
                        """,
                        quote.device_id,
                        quote.source,
                        quote.offer_id,
                        quote.price,
                        quote.currency,
                        quote.seller,
                        quote.url,
                        quote.redirect_type,
                        quote.observed_at,
                    )
                    if status.endswith(" 1"):
                        saved += 1
        return saved

    async def list_price_quotes(self, device_id: str) -> List[PriceQuote]:
        rows = await self.pool.fetch(
            """
            SELECT device_id, source, offer_id, price::float8 AS price, currency, seller, url,
                   redirect_type, observed_at
            FROM price_quotes WHERE device_id = $1
            ORDER BY observed_at DESC
            """,
            device_id,
        )
        return [PriceQuote.model_validate(dict(row)) for row in rows]

    async def get_html(self, slug: str, max_age: float) -> Optional[str]:
        return await self.pool.fetchval(
            "SELECT html FROM html_cache WHERE slug = $1 AND fetched_at > $2",
            slug,
            utcnow() - timedelta(seconds=max_age),
        )

    async def save_html(self, slug: str, url: str, html: str) -> None:
        await self.pool.execute(
            """
            INSERT INTO html_cache (slug, url, html, fetched_at)
            VALUES ($1, $2, $3, NOW())
            ON CONFLICT (slug) DO UPDATE
            SET url = EXCLUDED.url, html = EXCLUDED.html, fetched_at = EXCLUDED.fetched_at
            """,
            slug,
            url,
            html,
        )
        LOGGER.debug("Cached HTML for %s (%d bytes)", slug, len(html))
