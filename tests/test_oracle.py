import asyncio
from types import SimpleNamespace

from specscraper.search.oracle import ClaudeOracle, HeuristicOracle

from conftest import candidate

CANDIDATES = [
    candidate("Google Pixel 8", "google-pixel-8"),
    candidate("Google Pixel 8 Pro", "google-pixel-8-pro"),
]


class FakeMessages:
    def __init__(self, text):
        self.text = text
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        return SimpleNamespace(content=[SimpleNamespace(type="text", text=self.text)])


def test_heuristic_oracle_picks_clear_winner():
    oracle = HeuristicOracle()
    assert asyncio.run(oracle.pick("Google Pixel 8 Pro", CANDIDATES)) == "google-pixel-8-pro"


def test_heuristic_oracle_abstains_when_unsure():
    oracle = HeuristicOracle()
    assert asyncio.run(oracle.pick("Pixel", CANDIDATES)) is None
    assert asyncio.run(oracle.pick("Pixel 8", [])) is None


def test_claude_oracle_sends_candidates_and_reads_pick():
    messages = FakeMessages('Sure.\n{"targetId": "google-pixel-8"}')
    oracle = ClaudeOracle(api_key="test-key", client=SimpleNamespace(messages=messages))
    assert asyncio.run(oracle.pick("Pixel 8", CANDIDATES)) == "google-pixel-8"
    prompt = messages.calls[0]["messages"][0]["content"]
    assert "google-pixel-8-pro" in prompt
    assert messages.calls[0]["model"] == oracle.model


def test_claude_oracle_rejects_unknown_or_missing_picks():
    assert ClaudeOracle._parse_pick('{"targetId": "apple-iphone-15"}', CANDIDATES) is None
    assert ClaudeOracle._parse_pick('{"targetId": null}', CANDIDATES) is None
    assert ClaudeOracle._parse_pick("I am not sure", CANDIDATES) is None
    assert ClaudeOracle._parse_pick("{broken", CANDIDATES) is None
    assert ClaudeOracle._parse_pick('```json\n{"targetId": "google-pixel-8-pro"}\n```', CANDIDATES) == "google-pixel-8-pro"
