"""
Shared test configuration for ShelfScout.

Provides isolated job stores, queues wired to in-memory fakes, and the
task cleanup that keeps worker coroutines from leaking between tests.
"""

import asyncio
from pathlib import Path
from typing import AsyncGenerator, Callable

import pytest
import pytest_asyncio

from shelfscout.antiblock import IdentityRotator, Proxy, ProxyRotator
from shelfscout.config import CrawlerConfig, QueueConfig
from shelfscout.events import EventBus
from shelfscout.jobs import JobQueue, JobStore
from tests.helpers import FakeClock, RecordingListener

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests across modules")


@pytest_asyncio.fixture(autouse=True)
async def cleanup_tasks() -> AsyncGenerator[None, None]:
    """Cancel any task a test left behind (workers, sweeps, event deliveries)."""
    tasks_before = asyncio.all_tasks()
    yield
    new_tasks = asyncio.all_tasks() - tasks_before

    for task in new_tasks:
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                print(f"Unexpected error during task cleanup: {e}")


# ============================================================================
# Core fixtures
# ============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "jobs.db"


@pytest_asyncio.fixture
async def job_store(db_path: Path, clock: FakeClock) -> AsyncGenerator[JobStore, None]:
    store = JobStore(db_path, clock=clock)
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def proxy_pool():
    return [Proxy(host=f"10.0.0.{i}", port=8000 + i) for i in range(1, 4)]


@pytest.fixture
def proxies(proxy_pool) -> ProxyRotator:
    return ProxyRotator(proxy_pool)


@pytest.fixture
def identities() -> IdentityRotator:
    return IdentityRotator(["agent-a", "agent-b"])


@pytest.fixture
def crawler_config() -> CrawlerConfig:
    return CrawlerConfig(request_delay_seconds=0.0, crawl_timeout_seconds=5.0, page_timeout_seconds=1.0)


@pytest_asyncio.fixture
async def make_queue(db_path: Path) -> AsyncGenerator[Callable, None]:
    """
    Factory for initialized queues with fast polling and zero backoff.

    Returns ``(queue, listener)`` where the listener records every event.
    Pass ``clock`` to drive the store and sweeps from a fake clock.
    """
    created = []

    async def _make(scraper, clock=None, **overrides):
        settings = {"db_path": db_path, "poll_interval": 0.02, "retry_base_delay": 0.0}
        settings.update(overrides)
        config = QueueConfig(**settings)
        events = EventBus()
        listener = RecordingListener()
        events.subscribe(listener)
        store = JobStore(config.db_path, clock=clock) if clock else JobStore(config.db_path)
        queue = JobQueue(store, scraper, events=events, config=config)
        await queue.initialize()
        created.append(queue)
        return queue, listener

    yield _make

    for queue in created:
        await queue.close()
