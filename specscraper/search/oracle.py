"""Matching oracles: pick one candidate out of an ambiguous search result."""
from __future__ import annotations

import json
import logging
import re
from typing import List, Optional, Protocol, Sequence

import anthropic
from rapidfuzz import fuzz

from ..models import CandidateOption

LOGGER = logging.getLogger(__name__)

MATCH_PROMPT = """You match a device name typed by a catalog editor to one entry of a search result list.

Rules:
- Pick a candidate only if it is clearly the same device (same brand, same model, same variant such as Pro/Max/Lite/5G).
- If two or more candidates are equally plausible, or none fits, pick nothing.

Answer with JSON only:
{"targetId": "<targetId of the chosen candidate>"}  or  {"targetId": null}
"""


class MatchingOracle(Protocol):
    async def pick(self, name: str, candidates: Sequence[CandidateOption]) -> Optional[str]:
        """Return the target id of the best candidate, or None when not confident."""
        ...


class HeuristicOracle:
    """Fuzzy token match; confident only with a clear, high-scoring winner."""

    def __init__(self, min_score: float = 90.0, min_margin: float = 5.0) -> None:
        self.min_score = min_score
        self.min_margin = min_margin

    async def pick(self, name: str, candidates: Sequence[CandidateOption]) -> Optional[str]:
        if not candidates:
            return None
        scored = sorted(
            ((fuzz.token_sort_ratio(name.lower(), c.name.lower()), c) for c in candidates),
            key=lambda pair: pair[0],
            reverse=True,
        )
        best_score, best = scored[0]
        runner_up = scored[1][0] if len(scored) > 1 else 0.0
        LOGGER.debug("Heuristic match %r: best=%r (%.1f), runner-up=%.1f", name, best.name, best_score, runner_up)
        if best_score >= self.min_score and best_score - runner_up >= self.min_margin:
            return best.target_id
        return None


class ClaudeOracle:
    """Asks a Claude model to choose; any failure counts as "no pick"."""

    def __init__(
        self,
        api_key: str,
        model: str = "claude-3-5-haiku-latest",
        client: Optional[anthropic.AsyncAnthropic] = None,
    ) -> None:
        self.model = model
        self.client = client or anthropic.AsyncAnthropic(api_key=api_key)

    async def pick(self, name: str, candidates: Sequence[CandidateOption]) -> Optional[str]:
        if not candidates:
            return None
        listing = "\n".join(f"- targetId: {c.target_id} | name: {c.name}" for c in candidates)
        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=256,
                system=MATCH_PROMPT,
                messages=[
                    {
                        "role": "user",
                        "content": f"Device name: {name}\n\nCandidates:\n{listing}",
                    }
                ],
            )
        except anthropic.APIError as exc:
            LOGGER.warning("Oracle request failed for %r: %s", name, exc)
            return None

        response_text = "".join(getattr(block, "text", "") for block in response.content)
        return self._parse_pick(response_text, candidates)

    @staticmethod
    def _parse_pick(response_text: str, candidates: Sequence[CandidateOption]) -> Optional[str]:
        json_match = re.search(r"\{[\s\S]*\}", response_text)
        if not json_match:
            LOGGER.warning("Oracle answer has no JSON: %r", response_text[:200])
            return None
        try:
            data = json.loads(json_match.group())
        except json.JSONDecodeError:
            LOGGER.warning("Oracle answer is not valid JSON: %r", response_text[:200])
            return None
        target_id = data.get("targetId") if isinstance(data, dict) else None
        known: List[str] = [c.target_id for c in candidates]
        if target_id not in known:
            if target_id is not None:
                LOGGER.warning("Oracle picked unknown target %r", target_id)
            return None
        return target_id
