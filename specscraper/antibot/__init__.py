"""Browser access toolkit shared by the scraper.

- Remote CDP endpoint and HTTP proxy configuration
- Browser sessions with network-level resource blocking
- Bounded retry with fixed or capped-exponential delay
- Bot-wall and template detection for fetched pages
"""

from .proxy import BrowserEndpoint, ProxyConfig, ProxyProvider
from .retry import RetryPolicy, RetryResult, run_with_retry
from .session import BrowserSessionConfig, BrowserSessionProvider, should_block
from .validator import ValidationResult, Verdict, validate_html

__all__ = [
    "BrowserEndpoint",
    "ProxyConfig",
    "ProxyProvider",
    "RetryPolicy",
    "RetryResult",
    "run_with_retry",
    "BrowserSessionConfig",
    "BrowserSessionProvider",
    "should_block",
    "ValidationResult",
    "Verdict",
    "validate_html",
]
