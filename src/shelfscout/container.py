"""
Dependency container wiring ShelfScout components from configuration.

There are no module-level singletons: every rotator, store, queue and crawler
is built here once per container and handed to its consumers.
"""

from __future__ import annotations

import asyncio
import inspect
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Dict, Generic, List, Optional, TypeVar
from uuid import uuid4

import structlog

from shelfscout.config import Config, load_proxy_entries, load_user_agents

if TYPE_CHECKING:
    from shelfscout.antiblock import IdentityRotator, ProxyRotator
    from shelfscout.crawler import Crawler
    from shelfscout.events import EventBus
    from shelfscout.ingress import IngressGuard
    from shelfscout.jobs import JobQueue
    from shelfscout.protocols import PageRenderer, ScrapeCapability
    from shelfscout.service import ScrapeService

T = TypeVar("T")


class LazyInstance(Generic[T]):
    """Lazy-loaded instance with lifecycle management.

    The factory may be a coroutine function, which lets one instance depend
    on another.
    """

    def __init__(self, factory: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        self._factory = factory
        self._args = args
        self._kwargs = kwargs
        self._instance: Optional[T] = None
        self._initialized = False
        self._lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def get(self) -> T:
        """Get or create the instance."""
        async with self._lock:
            if not self._initialized:
                instance = self._factory(*self._args, **self._kwargs)
                if inspect.isawaitable(instance):
                    instance = await instance
                if callable(getattr(instance, "initialize", None)):
                    await instance.initialize()
                self._instance = instance
                self._initialized = True
        assert self._instance is not None
        return self._instance

    async def cleanup(self) -> None:
        """Clean up the instance."""
        if self._instance is not None and callable(getattr(self._instance, "close", None)):
            await self._instance.close()  # type: ignore[attr-defined]
        self._instance = None
        self._initialized = False


class DependencyContainer:
    """
    Builds and owns all ShelfScout components.

    ``scraper`` and ``renderer`` can be injected to replace the default HTTP
    capabilities, e.g. with a browser-automation engine or test fakes.
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        config: Optional[Config] = None,
        scraper: Optional[ScrapeCapability] = None,
        renderer: Optional[PageRenderer] = None,
    ) -> None:
        self.config_path = config_path
        self.config: Optional[Config] = config
        self.logger = structlog.get_logger(self.__class__.__name__)

        self._scraper_override = scraper
        self._renderer_override = renderer

        self._instances: Dict[str, LazyInstance[Any]] = {}
        self._creation_order: List[str] = []
        self._shutdown_handlers: List[Callable[[], Any]] = []

        self.proxies: Optional[ProxyRotator] = None
        self.identities: Optional[IdentityRotator] = None
        self.events: Optional[EventBus] = None
        self.guard: Optional[IngressGuard] = None

        self.instance_id = str(uuid4())
        self.is_running = False

    async def initialize(self) -> None:
        """Load configuration and prepare instances."""
        if self.config is None:
            self.load_config()
        self._create_instances()
        self.is_running = True

        self.logger.info(
            "Dependency container initialized",
            instance_id=self.instance_id,
            config_path=str(self.config_path) if self.config_path else "default",
        )

    def load_config(self) -> None:
        if self.config_path and self.config_path.exists():
            self.config = Config.from_yaml(self.config_path)
        else:
            self.config = Config()

    def _create_instances(self) -> None:
        if self.config is None:
            raise RuntimeError("Configuration must be loaded before creating instances")

        from shelfscout.antiblock import IdentityRotator, Proxy, ProxyRotator
        from shelfscout.events import EventBus
        from shelfscout.ingress import IngressGuard
        from shelfscout.observability import MetricsManager

        config = self.config
        proxy_entries = load_proxy_entries(config.rotation)
        self.proxies = ProxyRotator([Proxy.from_entry(e) for e in proxy_entries]) if proxy_entries else None
        self.identities = IdentityRotator.with_defaults(load_user_agents(config.rotation))
        self.events = EventBus()
        self.guard = IngressGuard.from_config(config.ingress)
        if not self.proxies:
            self.logger.warning("No proxies configured, fetching directly")

        self._instances = {
            "metrics": LazyInstance(MetricsManager, config.monitoring),
            "renderer": LazyInstance(self._make_renderer),
            "scraper": LazyInstance(self._make_scraper),
            "notifiers": LazyInstance(self._make_notifiers),
            "queue": LazyInstance(self._make_queue),
            "crawler": LazyInstance(self._make_crawler),
            "service": LazyInstance(self._make_service),
        }
        self._creation_order = []

    # --- factories ---

    def _make_renderer(self) -> PageRenderer:
        self._creation_order.append("renderer")
        if self._renderer_override is not None:
            return self._renderer_override
        from shelfscout.crawler import HttpPageRenderer

        assert self.config is not None
        return HttpPageRenderer(
            max_connections=self.config.crawler.max_connections,
            verify_ssl=self.config.crawler.verify_ssl,
        )

    async def _make_scraper(self) -> ScrapeCapability:
        if self._scraper_override is not None:
            self._creation_order.append("scraper")
            return self._scraper_override
        from shelfscout.scraper import HttpProductScraper

        assert self.config is not None and self.identities is not None
        renderer = await self.get_renderer()
        self._creation_order.append("scraper")
        return HttpProductScraper(
            renderer,
            self.identities,
            self.proxies,
            page_timeout=self.config.crawler.page_timeout_seconds,
        )

    async def _make_notifiers(self) -> _NotifierGroup:
        from shelfscout.events import LoggingNotifier, WebhookNotifier

        assert self.config is not None and self.events is not None
        group = _NotifierGroup()
        if self.config.notifier.log_events:
            group.listeners.append(LoggingNotifier())
        if self.config.notifier.webhook_url:
            group.listeners.append(WebhookNotifier(self.config.notifier))
        for listener in group.listeners:
            self.events.subscribe(listener)
        self._creation_order.append("notifiers")
        return group

    async def _make_queue(self) -> JobQueue:
        from shelfscout.jobs import JobQueue, JobStore

        assert self.config is not None
        scraper = await self.get_scraper()
        await self._instances["notifiers"].get()
        self._creation_order.append("queue")
        return JobQueue(
            JobStore(self.config.queue.db_path),
            scraper,
            events=self.events,
            config=self.config.queue,
        )

    async def _make_crawler(self) -> Crawler:
        from shelfscout.crawler import Crawler

        assert self.config is not None and self.identities is not None
        renderer = await self.get_renderer()
        self._creation_order.append("crawler")
        return Crawler(renderer, self.identities, self.proxies, config=self.config.crawler)

    async def _make_service(self) -> ScrapeService:
        from shelfscout.service import ScrapeService

        assert self.guard is not None
        queue = await self.get_queue()
        crawler = await self.get_crawler()
        self._creation_order.append("service")
        return ScrapeService(queue, self.guard, crawler)

    # --- accessors ---

    def _instance(self, name: str) -> LazyInstance[Any]:
        if not self._instances:
            raise RuntimeError("DependencyContainer is not initialized")
        return self._instances[name]

    async def get_renderer(self) -> PageRenderer:
        return await self._instance("renderer").get()

    async def get_scraper(self) -> ScrapeCapability:
        return await self._instance("scraper").get()

    async def get_queue(self) -> JobQueue:
        return await self._instance("queue").get()

    async def get_crawler(self) -> Crawler:
        return await self._instance("crawler").get()

    async def get_service(self) -> ScrapeService:
        return await self._instance("service").get()

    async def start_metrics(self) -> None:
        metrics = await self._instance("metrics").get()
        metrics.start()

    # --- lifecycle ---

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator[DependencyContainer]:
        """Context manager for proper lifecycle management."""
        try:
            await self.initialize()
            yield self
        finally:
            await self.shutdown()

    def add_shutdown_handler(self, handler: Callable[[], Any]) -> None:
        self._shutdown_handlers.append(handler)

    async def shutdown(self) -> None:
        """Graceful shutdown of all managed instances, dependents first."""
        if not self.is_running:
            return

        self.logger.info("Shutting down dependency container", instance_id=self.instance_id)

        for handler in self._shutdown_handlers:
            try:
                result = handler()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.logger.error("Error in shutdown handler", error=str(e))

        for name in reversed(self._creation_order):
            try:
                await self._instances[name].cleanup()
            except Exception as e:
                self.logger.error("Error cleaning up instance", instance=name, error=str(e))
        self._creation_order = []

        self.is_running = False
        self.logger.info("Dependency container shutdown complete")

    def get_health_status(self) -> Dict[str, Any]:
        """Get health status of all managed components."""
        status: Dict[str, Any] = {
            "instance_id": self.instance_id,
            "is_running": self.is_running,
            "config_loaded": self.config is not None,
            "config_path": str(self.config_path) if self.config_path else None,
            "instances": {name: inst.initialized for name, inst in self._instances.items()},
            "proxies": self.proxies.get_stats() if self.proxies else None,
            "identities": self.identities.get_stats() if self.identities else None,
        }
        return status


class _NotifierGroup:
    """Owns the event listeners so their sessions close on shutdown."""

    def __init__(self) -> None:
        self.listeners: List[Any] = []

    async def initialize(self) -> None:
        for listener in self.listeners:
            if callable(getattr(listener, "initialize", None)):
                await listener.initialize()

    async def close(self) -> None:
        for listener in self.listeners:
            if callable(getattr(listener, "close", None)):
                await listener.close()
