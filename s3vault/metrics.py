# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
s3vault Metrics - Process-wide counters and histograms.

Each recorder owns a private CollectorRegistry so tests can use a fresh
one; the process-wide recorder is created on first use and exported for
scraping via render() or the FastAPI integration.
"""

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

# Labels stay low-cardinality: operation names and outcome kinds only, never keys
OUTCOME_SUCCESS = "success"

DIRECTION_UPLOAD = "upload"
DIRECTION_DOWNLOAD = "download"


class MetricsRecorder:
    """Request, retry and transfer metrics."""

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()

        self.requests = Counter(
            "s3vault_requests_total",
            "Request attempts by operation and outcome",
            ["operation", "outcome"],
            registry=self.registry,
        )
        self.retries = Counter(
            "s3vault_retries_total",
            "Retries scheduled by operation and error kind",
            ["operation", "kind"],
            registry=self.registry,
        )
        self.bytes_transferred = Counter(
            "s3vault_bytes_transferred_total",
            "Bytes moved to or from the store",
            ["direction"],
            registry=self.registry,
        )
        self.request_latency = Histogram(
            "s3vault_request_duration_seconds",
            "Latency of single request attempts",
            ["operation"],
            registry=self.registry,
        )
        self.transfer_latency = Histogram(
            "s3vault_transfer_duration_seconds",
            "Duration of complete transfers",
            ["direction"],
            registry=self.registry,
            buckets=(0.1, 0.5, 1, 5, 15, 60, 300, 900, 3600, float("inf")),
        )

    def record_attempt(self, operation: str, outcome: str, duration: float) -> None:
        self.requests.labels(operation=operation, outcome=outcome).inc()
        self.request_latency.labels(operation=operation).observe(duration)

    def record_retry(self, operation: str, kind: str) -> None:
        self.retries.labels(operation=operation, kind=kind).inc()

    def record_bytes(self, direction: str, size: int) -> None:
        self.bytes_transferred.labels(direction=direction).inc(size)

    def record_transfer(self, direction: str, duration: float) -> None:
        """Duration of a whole transfer; bytes are counted per request."""
        self.transfer_latency.labels(direction=direction).observe(duration)

    def value(self, name: str, **labels: str) -> float:
        """Current value of a sample, 0.0 if it was never recorded."""
        sample = self.registry.get_sample_value(name, labels)
        return sample or 0.0

    def render(self) -> bytes:
        """Prometheus text exposition of this recorder's registry."""
        return generate_latest(self.registry)


_default_recorder: MetricsRecorder | None = None


def get_metrics_recorder() -> MetricsRecorder:
    """The process-wide recorder."""
    global _default_recorder
    if _default_recorder is None:
        _default_recorder = MetricsRecorder()
    return _default_recorder
