"""Prometheus metrics for workflow execution, tools, and token streaming.

Provides:
- Workflow counters and duration histograms labelled by topology
- Tool node execution counters
- Token streaming counters and gauges
- track_workflow(): Context manager recording a workflow run
- get_metrics_text(): Exposition-format dump of the default registry
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# ── Workflow Metrics ─────────────────────────────────────────────────────────

workflow_executions_total = Counter(
    "workflow_executions_total",
    "Total workflow executions",
    ["network_type", "mode", "status"],
)

workflow_duration_seconds = Histogram(
    "workflow_duration_seconds",
    "Workflow execution duration in seconds",
    ["network_type", "mode"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

active_networks = Gauge(
    "active_networks",
    "Number of compiled networks currently held by the network manager",
)

# ── Tool Metrics ─────────────────────────────────────────────────────────────

tool_node_executions_total = Counter(
    "tool_node_executions_total",
    "Total tool node executions",
    ["node_id", "status"],
)

# ── Token Streaming Metrics ──────────────────────────────────────────────────

tokens_streamed_total = Counter(
    "tokens_streamed_total",
    "Total tokens emitted by the streaming pipeline",
)

token_flushes_total = Counter(
    "token_flushes_total",
    "Total token buffer flushes",
    ["reason"],
)

tokens_dropped_total = Counter(
    "tokens_dropped_total",
    "Total buffered tokens discarded because processing failed",
)

active_token_streams = Gauge(
    "active_token_streams",
    "Number of open token streams",
)


@contextmanager
def track_workflow(network_type: str, mode: str = "invoke") -> Iterator[dict]:
    """Record duration and outcome for a workflow run.

    The caller sets ``outcome["status"]`` to "failure" when the run failed;
    it defaults to "success".

    Yields:
        Mutable dict with a ``status`` key.
    """
    outcome = {"status": "success"}
    start = time.monotonic()
    try:
        yield outcome
    finally:
        duration = time.monotonic() - start
        workflow_duration_seconds.labels(network_type=network_type, mode=mode).observe(duration)
        workflow_executions_total.labels(
            network_type=network_type, mode=mode, status=outcome["status"]
        ).inc()


def get_metrics_text() -> bytes:
    """Return the default registry in Prometheus exposition format."""
    return generate_latest(REGISTRY)
