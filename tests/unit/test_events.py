"""
Unit tests for the event bus and the bundled listeners.
"""

import asyncio
import time

import pytest
from aioresponses import CallbackResult, aioresponses
from structlog.testing import capture_logs

from shelfscout.config import NotifierConfig
from shelfscout.events import EventBus, LoggingNotifier, WebhookDeliveryError, WebhookNotifier
from shelfscout.observability import METRICS
from tests.helpers import FailingListener, RecordingListener, metric_delta

WEBHOOK_URL = "http://hooks.test/events"


def sent_requests(mocked):
    return [call for calls in mocked.requests.values() for call in calls]


class TestEventBus:
    @pytest.mark.asyncio
    async def test_publish_reaches_every_listener(self):
        bus = EventBus()
        first, second = RecordingListener(), RecordingListener()
        bus.subscribe(first)
        bus.subscribe(second)

        bus.publish("job_created", {"jobId": "1"})
        await bus.drain()

        assert first.named("job_created") == [{"jobId": "1"}]
        assert second.named("job_created") == [{"jobId": "1"}]

    @pytest.mark.asyncio
    async def test_subscribe_is_idempotent(self):
        bus = EventBus()
        listener = RecordingListener()
        bus.subscribe(listener)
        bus.subscribe(listener)

        bus.publish("job_created", {"jobId": "1"})
        await bus.drain()
        assert len(listener.events) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        listener = RecordingListener()
        bus.subscribe(listener)
        bus.unsubscribe(listener)

        bus.publish("job_created", {"jobId": "1"})
        await bus.drain()
        assert listener.events == []
        assert bus.listeners == []

    @pytest.mark.asyncio
    async def test_failing_listener_is_isolated(self):
        bus = EventBus()
        healthy = RecordingListener()
        bus.subscribe(FailingListener())
        bus.subscribe(healthy)

        with metric_delta(METRICS["notification_failures"], 1, listener="FailingListener"):
            with capture_logs() as logs:
                bus.publish("job_failed", {"jobId": "1"})
                await bus.drain()

        assert healthy.named("job_failed") == [{"jobId": "1"}]
        errors = [entry for entry in logs if entry["log_level"] == "error"]
        assert errors[0]["listener"] == "FailingListener"

    @pytest.mark.asyncio
    async def test_publish_does_not_wait_for_listeners(self):
        bus = EventBus()
        gate = asyncio.Event()

        class SlowListener:
            async def notify(self, event, payload, timestamp):
                await gate.wait()

        bus.subscribe(SlowListener())
        bus.publish("job_created", {"jobId": "1"})

        await bus.drain(timeout=0.05)
        gate.set()

    @pytest.mark.asyncio
    async def test_logging_notifier(self):
        with capture_logs() as logs:
            await LoggingNotifier().notify("job_completed", {"jobId": "abc"}, 1.0)
        assert logs[0]["job_id"] == "abc"
        assert logs[0]["event_name"] == "job_completed"


class TestWebhookNotifier:
    @pytest.fixture
    def config(self):
        return NotifierConfig(webhook_url=WEBHOOK_URL, api_key="secret", retry_count=1, retry_delay_seconds=0)

    def test_requires_url(self):
        with pytest.raises(ValueError):
            WebhookNotifier(NotifierConfig())

    @pytest.mark.asyncio
    async def test_posts_event_envelope(self, config):
        notifier = WebhookNotifier(config)
        with aioresponses() as mocked:
            mocked.post(WEBHOOK_URL, status=200)
            await notifier.initialize()
            try:
                await notifier.notify("job_completed", {"jobId": "1", "result": {"price": "1"}}, 123.0)
            finally:
                await notifier.close()

        (call,) = sent_requests(mocked)
        assert call.kwargs["json"] == {
            "event": "job_completed",
            "data": {"jobId": "1", "result": {"price": "1"}},
            "timestamp": 123.0,
        }
        assert call.kwargs["headers"]["x-api-key"] == "secret"
        assert notifier.delivered == 1

    @pytest.mark.asyncio
    async def test_server_error_retried(self, config):
        notifier = WebhookNotifier(config)
        with aioresponses() as mocked:
            mocked.post(WEBHOOK_URL, status=503)
            mocked.post(WEBHOOK_URL, status=200)
            await notifier.initialize()
            try:
                await notifier.notify("job_failed", {"jobId": "1"}, 1.0)
            finally:
                await notifier.close()

        assert len(sent_requests(mocked)) == 2
        assert notifier.delivered == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_retry_budget(self, config):
        notifier = WebhookNotifier(config)
        with aioresponses() as mocked:
            mocked.post(WEBHOOK_URL, status=500, repeat=True)
            await notifier.initialize()
            try:
                with pytest.raises(WebhookDeliveryError):
                    await notifier.notify("job_failed", {"jobId": "1"}, 1.0)
            finally:
                await notifier.close()

        assert len(sent_requests(mocked)) == 2
        assert notifier.delivered == 0

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, config):
        notifier = WebhookNotifier(config)
        with aioresponses() as mocked:
            mocked.post(WEBHOOK_URL, status=401, repeat=True)
            await notifier.initialize()
            try:
                await notifier.notify("job_failed", {"jobId": "1"}, 1.0)
            finally:
                await notifier.close()

        assert len(sent_requests(mocked)) == 1

    @pytest.mark.asyncio
    async def test_identical_pending_event_suppressed(self, config):
        notifier = WebhookNotifier(config)
        release = asyncio.Event()

        async def slow_response(url, **kwargs):
            await release.wait()
            return CallbackResult(status=200)

        with aioresponses() as mocked:
            mocked.post(WEBHOOK_URL, callback=slow_response)
            await notifier.initialize()
            try:
                first = asyncio.create_task(notifier.notify("job_completed", {"jobId": "1"}, 1.0))
                await asyncio.sleep(0.01)

                await notifier.notify("job_completed", {"jobId": "1"}, 2.0)
                assert notifier.suppressed == 1

                release.set()
                await first
            finally:
                await notifier.close()

        assert notifier.delivered == 1
        assert len(sent_requests(mocked)) == 1

    @pytest.mark.asyncio
    async def test_cleanup_pending_forgets_stale_entries(self, config):
        notifier = WebhookNotifier(config)
        release = asyncio.Event()

        async def slow_response(url, **kwargs):
            await release.wait()
            return CallbackResult(status=200)

        with aioresponses() as mocked:
            mocked.post(WEBHOOK_URL, callback=slow_response)
            await notifier.initialize()
            try:
                hung = asyncio.create_task(notifier.notify("job_completed", {"jobId": "1"}, 1.0))
                await asyncio.sleep(0.01)

                assert notifier.cleanup_pending(time.time()) == 0
                assert notifier.cleanup_pending(time.time() + config.pending_max_age_seconds + 1) == 1

                release.set()
                await hung
            finally:
                await notifier.close()

    @pytest.mark.asyncio
    async def test_bus_counts_webhook_failure(self, config):
        notifier = WebhookNotifier(config)
        bus = EventBus()
        bus.subscribe(notifier)
        with aioresponses() as mocked:
            mocked.post(WEBHOOK_URL, status=500, repeat=True)
            await notifier.initialize()
            try:
                with metric_delta(METRICS["notification_failures"], 1, listener="WebhookNotifier"):
                    bus.publish("job_failed", {"jobId": "1"})
                    await bus.drain()
            finally:
                await notifier.close()
