"""
Observability module for logging and metrics.

- Prometheus metrics exporters
- Structured logging with per-subtask context
"""

from ingest_agent.observability.metrics import (
    metrics_registry,
    collector_pages_counter,
    collector_records_counter,
    collector_runs_counter,
    subtask_runs_counter,
    bridge_invocations_counter,
    gate_rejections_counter,
    render_metrics,
)

from ingest_agent.observability.logging import (
    setup_logging,
    get_logger,
    log_context,
)

__all__ = [
    # Metrics
    "metrics_registry",
    "collector_pages_counter",
    "collector_records_counter",
    "collector_runs_counter",
    "subtask_runs_counter",
    "bridge_invocations_counter",
    "gate_rejections_counter",
    "render_metrics",
    # Logging
    "setup_logging",
    "get_logger",
    "log_context",
]
