"""URL discovery: frontier expansion, pacing and the default HTTP renderer."""

from .frontier import Crawler, CrawlRequest, CrawlResult, FrontierEntry, matches_filters
from .http_renderer import HttpPageRenderer, extract_links, normalize_url
from .pacing import PolitenessPacer

__all__ = [
    "Crawler",
    "CrawlRequest",
    "CrawlResult",
    "FrontierEntry",
    "HttpPageRenderer",
    "PolitenessPacer",
    "extract_links",
    "matches_filters",
    "normalize_url",
]
