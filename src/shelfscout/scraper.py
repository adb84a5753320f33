"""
Default scrape capability.

Renders a product page through the rotating proxy and identity pools and reads
fields with CSS selectors. Block signals ban the proxy that was used before
the error is handed back to the job queue for a retry decision.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

import structlog
from selectolax.parser import HTMLParser

from shelfscout.antiblock import IdentityRotator, ProxyRotator
from shelfscout.exceptions import FetchError, is_block_signal
from shelfscout.protocols import PageRenderer, ScrapeOptions

logger = structlog.get_logger(__name__)

DEFAULT_SELECTORS: Dict[str, str] = {
    "name": "h1",
    "price": ".price",
    "rating": ".rating",
    "stock": ".stock",
}


def extract_fields(html: str, selectors: Mapping[str, str]) -> Dict[str, Optional[str]]:
    """Text of the first node matching each selector, or None."""
    tree = HTMLParser(html or "")
    fields: Dict[str, Optional[str]] = {}
    for name, selector in selectors.items():
        node = tree.css_first(selector)
        text = node.text(strip=True) if node is not None else ""
        fields[name] = text or None
    return fields


class HttpProductScraper:
    """``ScrapeCapability`` that renders a page and extracts selector fields."""

    def __init__(
        self,
        renderer: PageRenderer,
        identities: IdentityRotator,
        proxies: Optional[ProxyRotator] = None,
        page_timeout: float = 30.0,
    ) -> None:
        self.renderer = renderer
        self.identities = identities
        self.proxies = proxies
        self.page_timeout = page_timeout

    async def scrape(self, url: str, options: ScrapeOptions) -> Dict[str, Any]:
        proxy = await self.proxies.next() if self.proxies is not None else None
        identity = await self.identities.next()
        timeout = options.timeout_ms / 1000.0 if options.timeout_ms else self.page_timeout

        try:
            page = await self.renderer.render(
                url,
                proxy=proxy.url if proxy is not None else None,
                identity=identity,
                timeout=timeout,
            )
        except FetchError as e:
            if proxy is not None and self.proxies is not None and is_block_signal(e):
                await self.proxies.ban(proxy)
            raise

        fields = extract_fields(page.html, options.selectors or DEFAULT_SELECTORS)
        logger.debug("Scraped page", url=page.url, fields=sorted(k for k, v in fields.items() if v))
        return {
            **fields,
            "url": page.url,
            "scrapedAt": datetime.now(timezone.utc).isoformat(),
        }
