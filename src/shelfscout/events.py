"""
Job lifecycle events.

The job queue publishes to an ``EventBus``; listeners subscribe without the
queue knowing who they are. Delivery is fire-and-forget: each listener runs in
its own task and a failing listener is logged and counted, never propagated
back into job state handling.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set, Tuple

import aiohttp
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from shelfscout.observability import increment
from shelfscout.protocols import EventListener

if TYPE_CHECKING:
    from shelfscout.config.config import NotifierConfig

logger = structlog.get_logger(__name__)


class EventBus:
    """Publishes lifecycle events to subscribed listeners."""

    def __init__(self) -> None:
        self._listeners: List[EventListener] = []
        self._pending: Set[asyncio.Task[None]] = set()

    def subscribe(self, listener: EventListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def listeners(self) -> List[EventListener]:
        return list(self._listeners)

    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        """Schedule delivery of *event* to every listener and return immediately."""
        timestamp = time.time()
        for listener in self._listeners:
            task = asyncio.create_task(self._deliver(listener, event, payload, timestamp))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _deliver(self, listener: EventListener, event: str, payload: Dict[str, Any], timestamp: float) -> None:
        name = type(listener).__name__
        try:
            await listener.notify(event, payload, timestamp)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            increment("notification_failures", labels={"listener": name})
            logger.error("Event delivery failed", event_name=event, listener=name, error=str(e))

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight deliveries, e.g. before shutdown."""
        if not self._pending:
            return
        pending = list(self._pending)
        done, not_done = await asyncio.wait(pending, timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            logger.warning("Abandoned pending event deliveries", count=len(not_done))


class LoggingNotifier:
    """Writes every lifecycle event to the log."""

    async def notify(self, event: str, payload: Dict[str, Any], timestamp: float) -> None:
        logger.info("Job event", event_name=event, job_id=payload.get("jobId"), timestamp=timestamp)


class WebhookDeliveryError(Exception):
    """The webhook answered with a server error."""


class WebhookNotifier:
    """
    Posts events to an HTTP webhook as ``{event, data, timestamp}``.

    An event identical to one still being delivered is dropped, and pending
    entries older than ``pending_max_age_seconds`` are forgotten so a hung
    delivery cannot suppress an event forever.
    """

    def __init__(self, config: NotifierConfig, session: Optional[aiohttp.ClientSession] = None) -> None:
        if not config.webhook_url:
            raise ValueError("WebhookNotifier requires notifier.webhook_url")
        self.config = config
        self.webhook_url: str = config.webhook_url
        self._session = session
        self._owns_session = session is None
        self._pending: Dict[Tuple[str, str], float] = {}
        self.delivered = 0
        self.suppressed = 0

    async def initialize(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        logger.info("Webhook notifier initialized", url=self.webhook_url)

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["x-api-key"] = self.config.api_key
        return headers

    def cleanup_pending(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        cutoff = now - self.config.pending_max_age_seconds
        stale = [key for key, started in self._pending.items() if started < cutoff]
        for key in stale:
            del self._pending[key]
        return len(stale)

    async def notify(self, event: str, payload: Dict[str, Any], timestamp: float) -> None:
        if self._session is None:
            await self.initialize()

        self.cleanup_pending()
        key = (event, json.dumps(payload, sort_keys=True, default=str))
        if key in self._pending:
            self.suppressed += 1
            logger.debug("Duplicate pending event suppressed", event_name=event)
            return

        self._pending[key] = time.time()
        try:
            await self._post({"event": event, "data": payload, "timestamp": timestamp})
            self.delivered += 1
        finally:
            self._pending.pop(key, None)

    async def _post(self, body: Dict[str, Any]) -> None:
        assert self._session is not None
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.config.retry_count + 1),
            wait=wait_fixed(self.config.retry_delay_seconds),
            retry=retry_if_exception_type((aiohttp.ClientError, asyncio.TimeoutError, WebhookDeliveryError)),
            reraise=True,
        ):
            with attempt:
                async with self._session.post(self.webhook_url, json=body, headers=self._headers()) as resp:
                    if resp.status >= 500:
                        raise WebhookDeliveryError(f"Webhook returned HTTP {resp.status}")
                    if resp.status >= 400:
                        # Client errors will not improve on retry.
                        logger.warning("Webhook rejected event", status=resp.status, event_name=body["event"])
