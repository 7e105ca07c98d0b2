"""Search sources: the kimovil autocomplete endpoint and the target registry protocol."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from ..errors import ParseError, TransportError
from ..ids import candidate_url, normalize_target_id
from ..models import CandidateOption

LOGGER = logging.getLogger(__name__)

SEARCH_URL = "https://www.kimovil.com/_json/autocomplete_devicemodels_joined.json"
USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)


class SearchSource(Protocol):
    name: str

    async def search(self, query: str) -> List[CandidateOption]:
        ...


class TargetRegistry(Protocol):
    async def list_known_targets(self, name_filter: str, limit: int = 200) -> List[CandidateOption]:
        ...

    async def remember_targets(self, candidates: Sequence[CandidateOption]) -> None:
        ...


def build_client(proxy_url: Optional[str] = None, timeout: float = 20.0) -> httpx.AsyncClient:
    headers = {
        "User-Agent": USER_AGENT,
        "Accept": "application/json",
        "Referer": "https://www.kimovil.com/",
    }
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout),
        headers=headers,
        proxy=proxy_url,
        follow_redirects=True,
    )


def parse_autocomplete(payload: Any) -> List[CandidateOption]:
    """Map ``{results: [{full_name, url}]}`` to candidates.

    Raises
    ------
    ParseError
        If ``results`` is missing or not a list
    """
    results = payload.get("results") if isinstance(payload, dict) else None
    if not isinstance(results, list):
        raise ParseError("Invalid autocomplete response: 'results' is missing or not a list")

    candidates = []
    for entry in results:
        if not isinstance(entry, dict):
            continue
        name, url = entry.get("full_name"), entry.get("url")
        if not name or not url:
            LOGGER.debug("Skipping malformed autocomplete entry: %s", entry)
            continue
        slug = normalize_target_id(str(url))
        candidates.append(CandidateOption(name=str(name), target_id=slug, source_url=candidate_url(slug)))
    return candidates


class KimovilSearchSource:
    """Primary search: one GET against the autocomplete endpoint."""

    name = "kimovil"

    def __init__(self, client: httpx.AsyncClient, url: str = SEARCH_URL) -> None:
        self.client = client
        self.url = url

    async def search(self, query: str) -> List[CandidateOption]:
        params: Dict[str, Any] = {"device_type": 0, "name": query}
        try:
            response = await self.client.get(self.url, params=params)
        except httpx.HTTPError as exc:
            raise TransportError(f"Search request failed: {exc}") from exc

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransportError(f"Search returned HTTP {status}", status_code=status)
        if status >= 400:
            raise TransportError(f"Search returned HTTP {status}", status_code=status, retryable=False)

        try:
            payload = response.json()
        except ValueError as exc:
            raise ParseError(f"Search response is not JSON: {exc}") from exc

        candidates = parse_autocomplete(payload)
        LOGGER.debug("Search %r returned %d candidates", query, len(candidates))
        return candidates
