"""Scrape executor: browser -> validator -> extractors for one target."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncContextManager, Awaitable, Callable, Dict, List, Optional, Protocol

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..antibot.validator import validate_html
from ..cache.normalization import derive_specs
from ..errors import TransportError, ValidationError
from ..ids import derive_device_id, normalize_target_id, target_url
from ..models import DerivedEntity, PriceQuote, RawEntity, utcnow
from .extractors import extract_device, extract_offers

LOGGER = logging.getLogger(__name__)

SOURCE = "kimovil"
SPECS_KIND = "specs"
PRICES_KIND = "prices"

PROGRESS_STAGES = {
    "navigating": 10,
    "validating": 40,
    "extracting": 70,
    "done": 100,
}

ProgressCallback = Callable[[str, int, Optional[str]], Awaitable[None]]


class SessionProvider(Protocol):
    def session(self) -> AsyncContextManager[Any]:
        ...


class HtmlCache(Protocol):
    async def get_html(self, slug: str, max_age: float) -> Optional[str]:
        ...

    async def save_html(self, slug: str, url: str, html: str) -> None:
        ...


@dataclass
class ScrapeOutcome:
    """Everything one successful scrape produced."""

    target_id: str
    specs: Dict[str, Any]
    offers: List[Dict[str, Any]] = field(default_factory=list)
    from_cache: bool = False
    duration_ms: int = 0

    @property
    def device_id(self) -> str:
        return derive_device_id(self.target_id)

    def raw_entities(self) -> List[RawEntity]:
        fetched_at = utcnow()
        entities = [
            RawEntity(
                device_id=self.device_id,
                source=SOURCE,
                data_kind=SPECS_KIND,
                data=self.specs,
                fetched_at=fetched_at,
            )
        ]
        if self.offers:
            entities.append(
                RawEntity(
                    device_id=self.device_id,
                    source=SOURCE,
                    data_kind=PRICES_KIND,
                    data={"offers": self.offers},
                    fetched_at=fetched_at,
                )
            )
        return entities

    def price_quotes(self) -> List[PriceQuote]:
        return [
            PriceQuote(
                device_id=self.device_id,
                source=SOURCE,
                offer_id=str(offer["id"]),
                price=offer["price"],
                currency=offer.get("currency"),
                seller=offer.get("seller"),
                url=offer.get("url"),
                redirect_type=offer.get("redirectTarget"),
            )
            for offer in self.offers
        ]

    def derived_entity(self) -> DerivedEntity:
        return DerivedEntity(
            device_id=self.device_id,
            data_kind=SPECS_KIND,
            data=derive_specs(self.specs),
            sources=[SOURCE],
        )


class ScrapeExecutor:
    """Drives one scrape attempt for a confirmed target."""

    def __init__(
        self,
        sessions: SessionProvider,
        *,
        navigation_timeout: float = 60.0,
        navigation_grace: float = 5.0,
        extraction_timeout: float = 30.0,
        html_cache: Optional[HtmlCache] = None,
        html_cache_ttl: float = 0.0,
    ) -> None:
        """Initialize executor.

        Parameters
        ----------
        sessions : SessionProvider
            Source of browser pages, one per attempt
        navigation_timeout : float
            Hard limit (seconds) for navigation plus page content
        navigation_grace : float
            Extra time (seconds) allowed over ``navigation_timeout`` before
            the whole page load is abandoned
        extraction_timeout : float
            Hard limit (seconds) for field extraction
        html_cache : HtmlCache, optional
            Where validated page HTML is kept for previews
        html_cache_ttl : float
            Max age (seconds) of cached HTML served instead of a fetch
        """
        self.sessions = sessions
        self.navigation_timeout = navigation_timeout
        self.navigation_grace = navigation_grace
        self.extraction_timeout = extraction_timeout
        self.html_cache = html_cache
        self.html_cache_ttl = html_cache_ttl

    async def scrape(
        self,
        target_id: str,
        progress: Optional[ProgressCallback] = None,
        *,
        use_cache: bool = False,
    ) -> ScrapeOutcome:
        """Fetch, validate and extract ``target_id``.

        Raises
        ------
        TransportError
            Browser or network failure
        ValidationError
            Page rejected by the validator, or a timeout
        """
        slug = normalize_target_id(target_id)
        url = target_url(slug)
        started = time.monotonic()

        async def report(stage: str, message: Optional[str] = None) -> None:
            if progress is not None:
                await progress(stage, PROGRESS_STAGES[stage], message)

        html = await self._cached_html(slug) if use_cache else None
        from_cache = html is not None

        if html is None:
            await report("navigating", f"Navigating to {url}")
            html = await self._fetch(url)

        await report("validating")
        validate_html(html).raise_for_verdict()

        await report("extracting")
        try:
            specs, offers = await asyncio.wait_for(
                asyncio.to_thread(_extract, html, slug),
                timeout=self.extraction_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ValidationError("Extraction timed out", kind="timeout") from exc

        if self.html_cache is not None and not from_cache:
            await self.html_cache.save_html(slug, url, html)

        duration_ms = int((time.monotonic() - started) * 1000)
        await report("done", f"Scraped {slug} in {duration_ms}ms")
        LOGGER.info("Scraped %s (%d offers, cache=%s, %dms)", slug, len(offers), from_cache, duration_ms)
        return ScrapeOutcome(
            target_id=slug,
            specs=specs,
            offers=offers,
            from_cache=from_cache,
            duration_ms=duration_ms,
        )

    async def _cached_html(self, slug: str) -> Optional[str]:
        if self.html_cache is None:
            return None
        html = await self.html_cache.get_html(slug, self.html_cache_ttl)
        if html is not None and not validate_html(html).ok:
            LOGGER.info("Ignoring cached HTML for %s: no longer valid", slug)
            return None
        return html

    async def _fetch(self, url: str) -> str:
        try:
            return await asyncio.wait_for(self._load_page(url), timeout=self.navigation_timeout + self.navigation_grace)
        except asyncio.TimeoutError as exc:
            raise ValidationError(f"Navigation to {url} timed out", kind="timeout") from exc

    async def _load_page(self, url: str) -> str:
        async with self.sessions.session() as page:
            try:
                await page.goto(url, wait_until="domcontentloaded", timeout=self.navigation_timeout * 1000)
                return await page.content()
            except PlaywrightTimeoutError as exc:
                raise ValidationError(f"Navigation to {url} timed out", kind="timeout") from exc
            except PlaywrightError as exc:
                raise TransportError(f"Navigation to {url} failed: {exc}") from exc


def _extract(html: str, slug: str):
    return extract_device(html, slug), extract_offers(html)
