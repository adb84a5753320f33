"""
Defines and manages Prometheus metrics for the application.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict

import structlog
from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Gauge as _OrigGauge
from prometheus_client import Histogram as _OrigHistogram
from prometheus_client import start_http_server

if TYPE_CHECKING:
    from shelfscout.config.config import MonitoringConfig

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Duplicate-safe Prometheus metric wrappers
# ---------------------------------------------------------------------------
# The test suite imports this module repeatedly; re-registering a collector
# with the default registry raises, so existing collectors are reused.


def _duplicate_safe_factory(metric_cls):
    """Return a factory that reuses an existing collector if already present."""

    def _factory(name: str, documentation: str, *args, **kwargs):  # type: ignore[override]
        existing = _PROM_REGISTRY._names_to_collectors.get(name)
        if existing is not None:
            return existing  # type: ignore[return-value]

        try:
            return metric_cls(name, documentation, *args, **kwargs)  # type: ignore[call-arg]
        except ValueError:
            # Registration lost the race, fall back to the now-existing collector.
            return _PROM_REGISTRY._names_to_collectors[name]  # type: ignore[return-value]

    return _factory


Counter = _duplicate_safe_factory(_OrigCounter)  # type: ignore[assignment]
Gauge = _duplicate_safe_factory(_OrigGauge)  # type: ignore[assignment]
Histogram = _duplicate_safe_factory(_OrigHistogram)  # type: ignore[assignment]


def _create_metrics() -> Dict[str, Any]:
    return {
        # Job queue
        "jobs_submitted": Counter("shelfscout_jobs_submitted_total", "Jobs accepted by the queue"),
        "jobs_completed": Counter("shelfscout_jobs_completed_total", "Jobs that finished successfully"),
        "jobs_failed": Counter(
            "shelfscout_jobs_failed_total",
            "Jobs that reached the failed state",
            ["reason"],
        ),
        "jobs_retried": Counter("shelfscout_jobs_retried_total", "Retries scheduled by the retry policy"),
        "jobs_stalled": Counter("shelfscout_jobs_stalled_total", "Active jobs recovered by the stall monitor"),
        "jobs_purged": Counter("shelfscout_jobs_purged_total", "Terminal jobs removed by the retention sweep"),
        "jobs_active": Gauge("shelfscout_jobs_active", "Jobs currently held by workers in this process"),
        "job_duration_seconds": Histogram(
            "shelfscout_job_duration_seconds",
            "Wall-clock time of a single job attempt",
            buckets=(0.5, 1, 2.5, 5, 10, 30, 60, 120, 300),
        ),
        # Anti-block
        "proxies_banned": Counter("shelfscout_proxies_banned_total", "Proxies banned after block signals"),
        # Crawler
        "crawl_pages_fetched": Counter("shelfscout_crawl_pages_fetched_total", "Pages rendered by the crawler"),
        "crawl_fetch_failures": Counter(
            "shelfscout_crawl_fetch_failures_total",
            "Crawler page fetches that failed",
            ["error_type"],
        ),
        "crawl_urls_discovered": Counter("shelfscout_crawl_urls_discovered_total", "URLs accepted into results"),
        # Ingress
        "ingress_rejections": Counter(
            "shelfscout_ingress_rejections_total",
            "Submissions rejected at the ingress boundary",
            ["reason"],
        ),
        # Events
        "notification_failures": Counter(
            "shelfscout_notification_failures_total",
            "Event deliveries that raised",
            ["listener"],
        ),
    }


METRICS: Dict[str, Any] = _create_metrics()


class MetricsManager:
    """Manages the lifecycle of the metrics exporter."""

    def __init__(self, config: MonitoringConfig) -> None:
        self.config = config
        self._started = False

    def start(self) -> None:
        """Starts the Prometheus server when a port is configured."""
        if self.config.prometheus_port and not self._started:
            logger.info("Starting Prometheus metrics server", port=self.config.prometheus_port)
            start_http_server(self.config.prometheus_port)
            self._started = True

    @property
    def started(self) -> bool:
        return self._started
