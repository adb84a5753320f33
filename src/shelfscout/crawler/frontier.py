"""
Depth-bounded, de-duplicated URL discovery.

The crawl is an explicit breadth-first worklist of ``FrontierEntry`` items.
``visited`` only grows during a crawl, and ``discovered`` holds the filtered
results in the order they were found, capped at ``max_urls``. Pages are fetched
one at a time with a politeness pause between fetches.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Mapping, Optional, Set, Union

import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from shelfscout.antiblock import IdentityRotator, ProxyRotator
from shelfscout.config.config import CrawlerConfig
from shelfscout.crawler.http_renderer import normalize_url
from shelfscout.crawler.pacing import PolitenessPacer
from shelfscout.exceptions import AllProxiesBanned, CapabilityUnavailable, FetchError, is_block_signal
from shelfscout.observability import increment
from shelfscout.protocols import PageRenderer, RenderedPage

logger = structlog.get_logger(__name__)


class CrawlRequest(BaseModel):
    """Parameters of one discovery run. Unset values come from ``CrawlerConfig``."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    max_depth: Optional[int] = Field(default=None, ge=0, validation_alias=AliasChoices("max_depth", "depth", "maxDepth"))
    max_urls: Optional[int] = Field(default=None, gt=0, validation_alias=AliasChoices("max_urls", "maxUrls"))
    include_patterns: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("include_patterns", "patterns", "includePatterns"),
    )
    exclude_patterns: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("exclude_patterns", "excludePatterns"),
    )
    timeout_ms: Optional[int] = Field(default=None, gt=0, validation_alias=AliasChoices("timeout_ms", "timeoutMs"))
    per_request_timeout_ms: Optional[int] = Field(
        default=None,
        gt=0,
        validation_alias=AliasChoices("per_request_timeout_ms", "perRequestTimeout"),
    )


@dataclass
class FrontierEntry:
    url: str
    depth: int


@dataclass
class CrawlResult:
    seed_url: str
    urls: List[str] = field(default_factory=list)
    pages_visited: int = 0
    fetch_failures: int = 0
    timed_out: bool = False
    aborted: bool = False
    abort_reason: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def total(self) -> int:
        return len(self.urls)

    def to_dict(self) -> Dict[str, Any]:
        return {"urls": list(self.urls), "total": self.total}


def matches_filters(url: str, include_patterns: List[str], exclude_patterns: List[str]) -> bool:
    """Substring filter: any include pattern (or none given) and no exclude pattern."""
    if include_patterns and not any(p in url for p in include_patterns):
        return False
    return not any(p in url for p in exclude_patterns)


class _CrawlState:
    """Mutable bookkeeping for one crawl, kept outside the loop so a timeout keeps it."""

    def __init__(self, seed: str, max_depth: int) -> None:
        self.seed = seed
        self.visited: Set[str] = set()
        self.discovered: Dict[str, None] = {}
        self.worklist: Deque[FrontierEntry] = deque([FrontierEntry(seed, max_depth)])
        self.pages_visited = 0
        self.fetch_failures = 0


class Crawler:
    """Discovers product URLs by expanding listing pages breadth-first."""

    def __init__(
        self,
        renderer: PageRenderer,
        identities: IdentityRotator,
        proxies: Optional[ProxyRotator] = None,
        config: Optional[CrawlerConfig] = None,
        pacer: Optional[PolitenessPacer] = None,
    ) -> None:
        self.renderer = renderer
        self.identities = identities
        self.proxies = proxies
        self.config = config or CrawlerConfig()
        self.pacer = pacer or PolitenessPacer(self.config.request_delay_seconds)

    async def discover(
        self,
        seed_url: str,
        request: Union[CrawlRequest, Mapping[str, Any], None] = None,
    ) -> CrawlResult:
        """Crawl from *seed_url* and return the accepted URLs.

        Per-page failures abandon that branch only. When the proxy pool runs
        out the crawl stops early and returns what it found with ``aborted``
        set, the same way a global timeout does. ``NoIdentitiesAvailable`` and
        ``CapabilityUnavailable`` propagate.
        """
        req = request if isinstance(request, CrawlRequest) else CrawlRequest.model_validate(request or {})
        seed = normalize_url(seed_url)
        if seed is None:
            raise ValueError(f"Seed is not an http(s) URL: {seed_url}")

        max_depth = req.max_depth if req.max_depth is not None else self.config.max_depth
        max_urls = req.max_urls if req.max_urls is not None else self.config.max_urls
        timeout = req.timeout_ms / 1000.0 if req.timeout_ms else self.config.crawl_timeout_seconds
        page_timeout = (
            req.per_request_timeout_ms / 1000.0 if req.per_request_timeout_ms else self.config.page_timeout_seconds
        )

        state = _CrawlState(seed, max_depth)
        started = time.monotonic()
        timed_out = False
        abort_reason: Optional[str] = None
        log = logger.bind(seed=seed)
        log.info("Crawl started", max_depth=max_depth, max_urls=max_urls, timeout=timeout)

        try:
            async with asyncio.timeout(timeout):
                await self._expand(state, req, max_urls, page_timeout)
        except TimeoutError:
            timed_out = True
            log.warning("Crawl timed out, returning partial results", discovered=len(state.discovered))
        except AllProxiesBanned as e:
            abort_reason = str(e)
            log.error(
                "Proxy pool exhausted, returning partial results",
                discovered=len(state.discovered),
                error=abort_reason,
            )

        result = CrawlResult(
            seed_url=seed,
            urls=list(state.discovered),
            pages_visited=state.pages_visited,
            fetch_failures=state.fetch_failures,
            timed_out=timed_out,
            aborted=abort_reason is not None,
            abort_reason=abort_reason,
            duration_seconds=time.monotonic() - started,
        )
        log.info(
            "Crawl finished",
            discovered=result.total,
            pages_visited=result.pages_visited,
            fetch_failures=result.fetch_failures,
            timed_out=timed_out,
            aborted=result.aborted,
        )
        return result

    async def _expand(self, state: _CrawlState, req: CrawlRequest, max_urls: int, page_timeout: float) -> None:
        while state.worklist and len(state.discovered) < max_urls:
            entry = state.worklist.popleft()
            if entry.depth <= 0 or entry.url in state.visited:
                continue
            state.visited.add(entry.url)

            page = await self._fetch(entry.url, page_timeout, state)
            if page is None:
                continue

            for link in page.links:
                if len(state.discovered) >= max_urls:
                    break
                url = normalize_url(link, page.url)
                if url is None or url == state.seed or url in state.discovered:
                    continue
                if not matches_filters(url, req.include_patterns, req.exclude_patterns):
                    continue

                state.discovered[url] = None
                increment("crawl_urls_discovered")
                if entry.depth - 1 > 0:
                    state.worklist.append(FrontierEntry(url, entry.depth - 1))

    async def _fetch(self, url: str, timeout: float, state: _CrawlState) -> Optional[RenderedPage]:
        await self.pacer.wait(url)

        # Rotation failures mean no later fetch can succeed either, so they end the crawl.
        proxy = await self.proxies.next() if self.proxies is not None else None
        identity = await self.identities.next()

        try:
            page = await self.renderer.render(
                url,
                proxy=proxy.url if proxy is not None else None,
                identity=identity,
                timeout=timeout,
            )
        except FetchError as e:
            state.fetch_failures += 1
            increment("crawl_fetch_failures", labels={"error_type": type(e).__name__})
            if proxy is not None and self.proxies is not None and is_block_signal(e):
                await self.proxies.ban(proxy)
            logger.warning("Page fetch failed, abandoning branch", url=url, error=str(e), error_type=type(e).__name__)
            return None
        except CapabilityUnavailable:
            raise
        except Exception as e:
            state.fetch_failures += 1
            increment("crawl_fetch_failures", labels={"error_type": type(e).__name__})
            logger.error("Unexpected error fetching page, abandoning branch", url=url, error=str(e), exc_info=True)
            return None

        state.pages_visited += 1
        increment("crawl_pages_fetched")
        return page
