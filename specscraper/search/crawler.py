"""Prefix enumeration over the autocomplete endpoint.

The endpoint caps its answer at a handful of devices, so a full result list
may hide more matches. A full prefix is expanded into longer prefixes and
fetched again until every list comes back short.
"""
from __future__ import annotations

import asyncio
import logging
import random
import re
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from ..antibot.retry import RetryPolicy, run_with_retry
from ..config import (
    CRAWL_BACKOFF_BASE,
    CRAWL_BACKOFF_MAX,
    CRAWL_MAX_PREFIX_LENGTH,
    CRAWL_MAX_RETRIES,
    CRAWL_REQUEST_DELAY,
    CRAWL_REQUEST_JITTER,
    ENUMERATION_EXTRA_CHARS,
    ENUMERATION_MAX_REQUESTS,
    SEARCH_FALLBACK_THRESHOLD,
)
from ..models import CandidateOption
from .sources import SearchSource, TargetRegistry

LOGGER = logging.getLogger(__name__)

CHARSET = "abcdefghijklmnopqrstuvwxyz0123456789 -"
ROOT_PREFIXES = [c for c in CHARSET if c not in " -"]

_SHORT_WORD_TAIL = re.compile(r"\s[a-z0-9]$")


def is_valid_child(prefix: str) -> bool:
    if prefix.startswith((" ", "-")):
        return False
    return not any(pair in prefix for pair in ("  ", "--", " -", "- "))


def worth_expanding(prefix: str, max_length: int = CRAWL_MAX_PREFIX_LENGTH, root: str = "") -> bool:
    """Whether a full result list for ``prefix`` justifies longer prefixes.

    ``root`` is the query an enumeration started from; word rules only look
    at what was added after it.
    """
    depth = len(prefix)
    if depth >= max_length:
        return False
    if prefix.isdigit() and depth > 3:
        return False
    if _SHORT_WORD_TAIL.search(prefix) and depth - len(root) > 4:
        return False
    if prefix.count(" ") - root.count(" ") >= 2:
        return False
    return True


def smart_children(prefix: str, results: Sequence[CandidateOption]) -> List[str]:
    """Children built from the characters that follow ``prefix`` in result names."""
    next_chars: List[str] = []
    for result in results:
        name = result.name.lower()
        position = name.find(prefix)
        if position < 0:
            continue
        after = position + len(prefix)
        if after < len(name) and name[after] in CHARSET and name[after] not in next_chars:
            next_chars.append(name[after])
    return [prefix + c for c in next_chars if is_valid_child(prefix + c)]


@dataclass
class CrawlReport:
    requests: int = 0
    expanded: int = 0
    candidates: Dict[str, CandidateOption] = field(default_factory=dict)
    failed: List[str] = field(default_factory=list)
    pending: List[str] = field(default_factory=list)


class PrefixCrawler:
    """Breadth-first prefix enumeration, also usable as a search source.

    As a search source it enumerates below the query itself and returns
    everything found plus the targets the registry already knew for it.
    """

    name = "enumeration"

    def __init__(
        self,
        source: SearchSource,
        registry: Optional[TargetRegistry] = None,
        *,
        policy: Optional[RetryPolicy] = None,
        threshold: int = SEARCH_FALLBACK_THRESHOLD,
        max_prefix_length: int = CRAWL_MAX_PREFIX_LENGTH,
        max_requests: int = ENUMERATION_MAX_REQUESTS,
        extra_chars: int = ENUMERATION_EXTRA_CHARS,
        delay: float = CRAWL_REQUEST_DELAY,
        jitter: float = CRAWL_REQUEST_JITTER,
    ) -> None:
        self.source = source
        self.registry = registry
        self.policy = policy or RetryPolicy(
            max_attempts=CRAWL_MAX_RETRIES,
            backoff_base=CRAWL_BACKOFF_BASE,
            backoff_multiplier=2.0,
            max_backoff=CRAWL_BACKOFF_MAX,
        )
        self.threshold = threshold
        self.max_prefix_length = max_prefix_length
        self.max_requests = max_requests
        self.extra_chars = extra_chars
        self.delay = delay
        self.jitter = jitter

    async def search(self, query: str) -> List[CandidateOption]:
        root = " ".join(query.lower().split())
        report = await self.crawl(
            [root],
            root=root,
            max_length=len(root) + self.extra_chars,
            max_requests=self.max_requests,
        )
        found = dict(report.candidates)
        if self.registry is not None:
            for known in await self.registry.list_known_targets(root):
                found.setdefault(known.target_id, known)
        return list(found.values())

    async def crawl(
        self,
        seeds: Iterable[str] = ROOT_PREFIXES,
        *,
        root: str = "",
        max_length: Optional[int] = None,
        max_requests: Optional[int] = None,
    ) -> CrawlReport:
        """Fetch ``seeds`` and expand every full result list.

        Stops early after ``max_requests`` fetches; prefixes still queued are
        returned in ``CrawlReport.pending``.
        """
        max_length = self.max_prefix_length if max_length is None else max_length
        report = CrawlReport()
        frontier = deque(seeds)
        seen = set(frontier)

        while frontier:
            if max_requests is not None and report.requests >= max_requests:
                report.pending = list(frontier)
                LOGGER.info("Crawl stopped after %d requests, %d prefixes left", report.requests, len(frontier))
                break
            prefix = frontier.popleft()
            if report.requests:
                await asyncio.sleep(self.delay + random.uniform(0, self.jitter))
            report.requests += 1

            results = await self._fetch(prefix)
            if results is None:
                report.failed.append(prefix)
                continue
            for result in results:
                report.candidates.setdefault(result.target_id, result)
            if self.registry is not None and results:
                await self.registry.remember_targets(results)

            if len(results) < self.threshold or not worth_expanding(prefix, max_length, root):
                continue
            report.expanded += 1
            children = smart_children(prefix, results) or [prefix + c for c in CHARSET if is_valid_child(prefix + c)]
            for child in children:
                if child not in seen and worth_expanding(child, max_length, root):
                    seen.add(child)
                    frontier.append(child)

        LOGGER.info(
            "Crawl: %d requests, %d expanded, %d devices, %d failed",
            report.requests,
            report.expanded,
            len(report.candidates),
            len(report.failed),
        )
        return report

    async def _fetch(self, prefix: str) -> Optional[List[CandidateOption]]:
        result = await run_with_retry(
            lambda: self.source.search(prefix),
            self.policy,
            label=f"prefix {prefix!r}",
        )
        if not result.ok:
            LOGGER.warning("Skipping prefix %r: %s", prefix, result.error)
            return None
        return list(result.value or [])
