"""Search & match: primary search with retry, enumeration fallback, oracle pick."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol, Sequence

from ..antibot.retry import RetryPolicy, RetryResult, run_with_retry
from ..errors import SearchExhausted
from ..models import CandidateOption, Event, log_event
from .oracle import MatchingOracle
from .sources import SearchSource

LOGGER = logging.getLogger(__name__)

EventSink = Callable[[Event], None]


class CandidateRegistry(Protocol):
    async def remember_targets(self, candidates: Sequence[CandidateOption]) -> None:
        ...


@dataclass
class SearchResult:
    query: str
    candidates: List[CandidateOption] = field(default_factory=list)
    picked: Optional[CandidateOption] = None
    used_fallback: bool = False

    @property
    def auto_resolved(self) -> bool:
        return self.picked is not None


def build_query(name: str, brand: Optional[str] = None) -> str:
    name = " ".join(name.split())
    if brand and not name.lower().startswith(brand.strip().lower()):
        return f"{brand.strip()} {name}"
    return name


def dedupe(candidates: Sequence[CandidateOption]) -> List[CandidateOption]:
    seen = set()
    unique = []
    for candidate in candidates:
        if candidate.target_id in seen:
            continue
        seen.add(candidate.target_id)
        unique.append(candidate)
    return unique


def _matches_name(candidate: CandidateOption, query: str) -> bool:
    haystack = candidate.name.lower()
    return all(token in haystack for token in query.lower().split())


class SearchPipeline:
    """Resolves a free-text device name to candidates (and maybe one pick)."""

    def __init__(
        self,
        primary: SearchSource,
        policy: RetryPolicy,
        *,
        fallback: Optional[SearchSource] = None,
        oracle: Optional[MatchingOracle] = None,
        registry: Optional[CandidateRegistry] = None,
        fallback_threshold: int = 8,
    ) -> None:
        self.primary = primary
        self.policy = policy
        self.fallback = fallback
        self.oracle = oracle
        self.registry = registry
        self.fallback_threshold = fallback_threshold

    async def run(
        self,
        name: str,
        brand: Optional[str] = None,
        emit: Optional[EventSink] = None,
    ) -> RetryResult[SearchResult]:
        """Search for ``name``.

        Returns a result carrying either a ``SearchResult`` or the error that
        ended the search, plus the number of primary attempts made.
        """
        query = build_query(name, brand)
        if emit is not None:
            emit(log_event(f"Searching {self.primary.name} for {query!r}"))

        primary = await run_with_retry(
            lambda: self.primary.search(query),
            self.policy,
            on_retry=emit,
            label=f"search {query!r}",
        )
        if not primary.ok:
            return primary  # type: ignore[return-value]

        candidates = list(primary.value or [])
        used_fallback = False
        if self.fallback is not None and len(candidates) >= self.fallback_threshold:
            if emit is not None:
                emit(log_event(f"{len(candidates)} results for {query!r}, enumerating with {self.fallback.name}"))
            enumerated = [c for c in await self.fallback.search(query) if _matches_name(c, query)]
            LOGGER.info(
                "Primary search returned %d results for %r, enumeration found %d",
                len(candidates),
                query,
                len(enumerated),
            )
            if enumerated:
                candidates = enumerated
                used_fallback = True

        candidates = dedupe(candidates)
        if self.registry is not None and candidates:
            await self.registry.remember_targets(candidates)

        if not candidates:
            return RetryResult(error=SearchExhausted(f"No devices found for {query!r}"), attempts=primary.attempts)

        picked = None
        if len(candidates) == 1:
            picked = candidates[0]
        elif self.oracle is not None:
            target_id = await self.oracle.pick(name, candidates)
            picked = next((c for c in candidates if c.target_id == target_id), None)
            if picked is not None and emit is not None:
                emit(log_event(f"Matched {name!r} to {picked.name}"))

        result = SearchResult(query=query, candidates=candidates, picked=picked, used_fallback=used_fallback)
        LOGGER.info(
            "Search %r: %d candidate(s), picked=%s",
            query,
            len(candidates),
            picked.target_id if picked else None,
        )
        return RetryResult(value=result, attempts=primary.attempts)
