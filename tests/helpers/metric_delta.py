"""
Helpers for asserting Prometheus metric changes in tests.

Labelled counters are addressed by passing the label values as keyword
arguments, e.g. ``metric_delta(METRICS["jobs_failed"], reason="stalled")``.
"""

from contextlib import contextmanager


def _value(metric, labels):
    target = metric.labels(**labels) if labels else metric
    if not hasattr(target, "_value"):
        raise ValueError(f"Metric {metric} has no value; pass its label values")
    return target._value.get()


@contextmanager
def metric_delta(metric, expected_delta=1, **labels):
    """Assert the metric changes by exactly *expected_delta* inside the block."""
    initial_value = _value(metric, labels)

    yield

    final_value = _value(metric, labels)
    actual_delta = final_value - initial_value
    if actual_delta != expected_delta:
        raise AssertionError(
            f"Expected metric to change by {expected_delta}, "
            f"but it changed by {actual_delta} "
            f"(from {initial_value} to {final_value})"
        )


def get_histogram_count(histogram):
    """Current observation count of an unlabelled histogram."""
    for family in histogram.collect():
        for sample in family.samples:
            if sample.name.endswith("_count"):
                return sample.value
    return 0.0


@contextmanager
def histogram_observes(histogram, min_observations=1):
    initial_count = get_histogram_count(histogram)

    yield

    observed = get_histogram_count(histogram) - initial_count
    if observed < min_observations:
        raise AssertionError(f"Expected at least {min_observations} histogram observations, got {observed}")
