"""
Default page renderer built on aiohttp and selectolax.

Fetches raw HTML (no JavaScript execution) through an optional proxy with the
given user agent, classifies failures into the fetch error taxonomy, and
extracts absolute links.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional
from urllib.parse import urldefrag, urljoin, urlparse

import aiohttp
import structlog
from selectolax.parser import HTMLParser

from shelfscout.exceptions import BLOCK_STATUSES, Blocked, CapabilityUnavailable, FetchTimeout, NetworkError
from shelfscout.protocols import RenderedPage

logger = structlog.get_logger(__name__)


def normalize_url(href: str, base_url: Optional[str] = None) -> Optional[str]:
    """Resolve *href* against *base_url* and drop the fragment.

    Returns None for anything that is not an http(s) URL.
    """
    href = href.strip()
    if not href or href.startswith(("javascript:", "mailto:", "tel:", "data:")):
        return None
    absolute = urljoin(base_url, href) if base_url else href
    absolute, _ = urldefrag(absolute)
    parsed = urlparse(absolute)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    if not parsed.path:
        absolute = parsed._replace(path="/").geturl()
    return absolute


def extract_links(html: str, base_url: str) -> List[str]:
    """Absolute, de-duplicated ``a[href]`` targets in document order."""
    if not html:
        return []
    tree = HTMLParser(html)
    links: Dict[str, None] = {}
    for node in tree.css("a[href]"):
        href = node.attributes.get("href")
        if not href:
            continue
        url = normalize_url(href, base_url)
        if url is not None:
            links.setdefault(url, None)
    return list(links)


class HttpPageRenderer:
    """``PageRenderer`` implementation using a shared aiohttp session."""

    def __init__(
        self,
        max_connections: int = 10,
        verify_ssl: bool = True,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.max_connections = max_connections
        self.verify_ssl = verify_ssl
        self._session = session
        self._owns_session = session is None

    async def initialize(self) -> None:
        if self._session is None:
            connector = aiohttp.TCPConnector(limit=self.max_connections, ssl=None if self.verify_ssl else False)
            self._session = aiohttp.ClientSession(connector=connector)
            self._owns_session = True
        logger.info("HTTP renderer initialized", max_connections=self.max_connections)

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> HttpPageRenderer:
        await self.initialize()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def render(
        self,
        url: str,
        *,
        proxy: Optional[str] = None,
        identity: Optional[str] = None,
        timeout: float = 30.0,
    ) -> RenderedPage:
        if self._session is None or self._session.closed:
            raise CapabilityUnavailable("HTTP renderer session is not open")

        headers = {"Accept": "text/html,application/xhtml+xml"}
        if identity:
            headers["User-Agent"] = identity

        try:
            async with asyncio.timeout(timeout):
                async with self._session.get(url, proxy=proxy, headers=headers, allow_redirects=True) as resp:
                    if resp.status in BLOCK_STATUSES:
                        raise Blocked(resp.status, url)
                    if resp.status >= 400:
                        raise NetworkError(f"HTTP {resp.status} fetching {url}", url=url)
                    html = await resp.text(errors="replace")
                    final_url = str(resp.url)
                    status = resp.status
                    response_headers = dict(resp.headers)
        except TimeoutError:
            raise FetchTimeout(url, timeout) from None
        except (aiohttp.ClientProxyConnectionError, aiohttp.ClientHttpProxyError) as e:
            raise NetworkError(f"Proxy connection failed: {e}", url=url, proxy_failure=True) from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"{type(e).__name__}: {e}", url=url) from e

        return RenderedPage(
            url=final_url,
            status=status,
            html=html,
            links=extract_links(html, final_url),
            headers=response_headers,
        )
