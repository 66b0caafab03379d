"""
Prometheus metrics exporters for the ingestion core.

This module defines and exports Prometheus metrics for monitoring:
- Collector pages, records and run outcomes
- Subtask runner outcomes
- Remote plugin bridge invocations and registrations
- Migration gate state and rejected requests
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from ingest_agent.types import MigrationGateState


# Create a custom registry for this application
metrics_registry = CollectorRegistry()


# ============================================================================
# Collector Metrics
# ============================================================================

collector_pages_counter = Counter(
    "collector_pages_fetched_total",
    "Total number of pages fetched from upstream APIs",
    ["plugin", "table"],
    registry=metrics_registry,
)

collector_records_counter = Counter(
    "collector_records_written_total",
    "Total number of raw records written",
    ["plugin", "table"],
    registry=metrics_registry,
)

collector_runs_counter = Counter(
    "collector_runs_total",
    "Total number of collection runs",
    ["plugin", "table", "mode", "outcome"],  # outcome: success or an error kind
    registry=metrics_registry,
)

collector_run_duration = Histogram(
    "collector_run_duration_seconds",
    "Collection run duration in seconds",
    ["plugin", "table"],
    buckets=[1, 5, 10, 30, 60, 120, 300, 600, 1800, 3600],
    registry=metrics_registry,
)

# ============================================================================
# Subtask Metrics
# ============================================================================

subtask_runs_counter = Counter(
    "subtask_runs_total",
    "Total number of subtask invocations",
    ["plugin", "subtask", "status"],  # status: succeeded, failed, skipped
    registry=metrics_registry,
)

# ============================================================================
# Bridge Metrics
# ============================================================================

bridge_invocations_counter = Counter(
    "bridge_invocations_total",
    "Total number of remote subtask invocations",
    ["plugin", "outcome"],  # outcome: success, remote_error, unavailable
    registry=metrics_registry,
)

remote_plugins_gauge = Gauge(
    "bridge_registered_plugins",
    "Number of remote plugins currently registered",
    registry=metrics_registry,
)

# ============================================================================
# Migration Gate Metrics
# ============================================================================

gate_rejections_counter = Counter(
    "migration_gate_rejections_total",
    "Total number of requests rejected by the migration gate",
    ["state"],
    registry=metrics_registry,
)

gate_state_gauge = Gauge(
    "migration_gate_state",
    "Current migration gate state (1 for the active state)",
    ["state"],
    registry=metrics_registry,
)


def set_gate_state(state: MigrationGateState) -> None:
    """Mark ``state`` as the active gate state."""
    for candidate in MigrationGateState:
        gate_state_gauge.labels(state=candidate.value).set(1 if candidate == state else 0)


def render_metrics() -> tuple:
    """Return (body, content type) for the metrics endpoint."""
    return generate_latest(metrics_registry), CONTENT_TYPE_LATEST
