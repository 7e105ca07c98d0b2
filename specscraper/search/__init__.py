"""Device search: sources, prefix enumeration, matching oracles and the search pipeline."""

from .crawler import PrefixCrawler
from .oracle import ClaudeOracle, HeuristicOracle, MatchingOracle
from .pipeline import SearchPipeline, SearchResult, build_query
from .sources import KimovilSearchSource, build_client, parse_autocomplete

__all__ = [
    "ClaudeOracle",
    "HeuristicOracle",
    "MatchingOracle",
    "PrefixCrawler",
    "SearchPipeline",
    "SearchResult",
    "build_query",
    "KimovilSearchSource",
    "build_client",
    "parse_autocomplete",
]
