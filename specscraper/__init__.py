"""Device specification scraper: job orchestration, search and extraction."""

__version__ = "0.1.0"
