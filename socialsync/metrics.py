"""Prometheus metrics collection and export.

This module provides Prometheus instrumentation for the synchronization
pipeline on a custom registry.

Metric Types:
    Counters (always increase):
        - adapter_calls_total: Adapter invocations by platform, capability, outcome
        - ingested_items_total: Upserted items by platform, kind, outcome
        - token_refreshes_total: Refresh attempts by platform, outcome
        - propagation_tasks_total: Search projection/delivery tasks by target, outcome
        - live_deliveries_total: Notifications pushed to client sessions
        - errors_total: Errors by type and component

    Gauges (can go up or down):
        - active_jobs: Jobs currently running in the worker pool
        - registered_polling_jobs: Connections with a polling job
        - propagation_queue_depth: Tasks waiting for a propagation worker

    Histograms (track distributions):
        - adapter_call_duration_seconds: Adapter call latency
        - ingest_batch_size: Items per ingest call

Usage:
    ```python
    from socialsync.metrics import generate_metrics_output

    @app.get("/metrics")
    def metrics():
        return Response(generate_metrics_output(), media_type="text/plain")
    ```
"""

from __future__ import annotations

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# Custom registry, so default process metrics are not exported
registry = CollectorRegistry()

# Adapter calls cross the network; covers 10ms to 30s
ADAPTER_LATENCY_BUCKETS = (
    0.01,   # 10ms
    0.05,   # 50ms
    0.1,    # 100ms
    0.25,   # 250ms
    0.5,    # 500ms
    1.0,    # 1s
    2.5,    # 2.5s
    5.0,    # 5s
    10.0,   # 10s
    30.0,   # 30s
)


# ========== COUNTER METRICS (always increase) ==========

adapter_calls_total = Counter(
    "adapter_calls_total",
    "Total number of platform adapter calls",
    labelnames=["platform", "capability", "outcome"],
    registry=registry,
)
"""Counter for adapter calls.

Labels:
    platform: Platform identifier (e.g., "mastodon")
    capability: fetch_feed, fetch_notifications, publish or refresh
    outcome: success, transient, auth_expired, unsupported, error
"""

ingested_items_total = Counter(
    "ingested_items_total",
    "Total number of items processed by the upsert engine",
    labelnames=["platform", "kind", "outcome"],
    registry=registry,
)
"""Counter for ingested items.

Labels:
    kind: post or notification
    outcome: created, updated or failed

Example:
    ```python
    ingested_items_total.labels(platform="bluesky", kind="post", outcome="created").inc()
    ```
"""

token_refreshes_total = Counter(
    "token_refreshes_total",
    "Total number of token refresh attempts",
    labelnames=["platform", "outcome"],
    registry=registry,
)
"""Counter for token refreshes (outcome: success, failure, needs_reconnect)."""

propagation_tasks_total = Counter(
    "propagation_tasks_total",
    "Total number of propagation tasks processed",
    labelnames=["target", "outcome"],
    registry=registry,
)
"""Counter for propagation tasks (target: search or delivery; outcome: success or failure)."""

live_deliveries_total = Counter(
    "live_deliveries_total",
    "Total number of notification payloads pushed to client sessions",
    registry=registry,
)

errors_total = Counter(
    "errors_total",
    "Total number of errors encountered",
    labelnames=["error_type", "component"],
    registry=registry,
)
"""Counter for errors by type and component.

Labels:
    error_type: Exception class name (e.g., "TransientNetworkError")
    component: refresh, polling, ingest, propagation, delivery
"""


# ========== GAUGE METRICS (can go up or down) ==========

active_jobs = Gauge(
    "active_jobs",
    "Jobs currently running in the worker pool",
    registry=registry,
)

registered_polling_jobs = Gauge(
    "registered_polling_jobs",
    "Connections that currently have a polling job",
    registry=registry,
)

propagation_queue_depth = Gauge(
    "propagation_queue_depth",
    "Tasks waiting for a propagation worker",
    registry=registry,
)


# ========== HISTOGRAM METRICS (track distributions) ==========

adapter_call_duration_seconds = Histogram(
    "adapter_call_duration_seconds",
    "Duration of platform adapter calls in seconds",
    labelnames=["platform", "capability"],
    buckets=ADAPTER_LATENCY_BUCKETS,
    registry=registry,
)
"""Histogram for adapter call latency, observed for successful and failed calls."""

ingest_batch_size = Histogram(
    "ingest_batch_size",
    "Number of items per ingest call",
    labelnames=["kind"],
    buckets=(1, 5, 10, 25, 50, 100, 250, 500, 1000),
    registry=registry,
)


# ========== HELPER FUNCTIONS ==========


def generate_metrics_output() -> bytes:
    """Generate Prometheus metrics output in text exposition format.

    Only metrics on the custom registry are included.
    """
    return generate_latest(registry)


__all__ = [
    "registry",
    "adapter_calls_total",
    "ingested_items_total",
    "token_refreshes_total",
    "propagation_tasks_total",
    "live_deliveries_total",
    "errors_total",
    "active_jobs",
    "registered_polling_jobs",
    "propagation_queue_depth",
    "adapter_call_duration_seconds",
    "ingest_batch_size",
    "generate_metrics_output",
    "ADAPTER_LATENCY_BUCKETS",
]
