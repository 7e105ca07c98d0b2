"""Device page scraping: executor, extractors and value parsers."""

from .executor import PROGRESS_STAGES, ScrapeExecutor, ScrapeOutcome
from .extractors import extract_device, extract_offers

__all__ = [
    "PROGRESS_STAGES",
    "ScrapeExecutor",
    "ScrapeOutcome",
    "extract_device",
    "extract_offers",
]
