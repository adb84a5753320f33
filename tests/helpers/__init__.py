from .fakes import FailingListener, FakeClock, FakeRenderer, FakeScraper, RecordingListener, wait_for
from .metric_delta import get_histogram_count, histogram_observes, metric_delta

__all__ = [
    "FailingListener",
    "FakeClock",
    "FakeRenderer",
    "FakeScraper",
    "RecordingListener",
    "get_histogram_count",
    "histogram_observes",
    "metric_delta",
    "wait_for",
]
