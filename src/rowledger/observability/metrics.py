"""
Defines Prometheus metrics for the reconciliation engine.
"""

from __future__ import annotations

from typing import Any, Dict

from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Histogram as _OrigHistogram
from prometheus_client import generate_latest

# ---------------------------------------------------------------------------
# Duplicate-safe Prometheus metric wrappers
# ---------------------------------------------------------------------------
# Metrics are created at import time; reusing an existing collector keeps
# repeated imports (test collection, reloads) from failing registration.


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
Histogram = _duplicate_safe_factory(_OrigHistogram)  # type: ignore[assignment]


def _create_metrics() -> Dict[str, Any]:
    return {
        "rows_checked": Counter(
            "rowledger_rows_checked_total",
            "Incoming rows compared against a stored corpus",
            ["strategy"],
        ),
        "duplicates_found": Counter(
            "rowledger_duplicates_found_total",
            "Incoming rows flagged as duplicates of stored rows",
            ["strategy"],
        ),
        "detect_latency_seconds": Histogram(
            "rowledger_detect_latency_seconds",
            "Duplicate detection latency in seconds",
            ["strategy"],
            buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0],
        ),
        "rows_committed": Counter(
            "rowledger_rows_committed_total",
            "Rows persisted through the commit protocol",
            ["scope"],
        ),
        "commit_outcomes": Counter(
            "rowledger_commit_outcomes_total",
            "Commit protocol calls by final state",
            ["state"],
        ),
        "log_batches": Counter(
            "rowledger_log_batches_total",
            "Log batches reconciled by outcome",
            ["outcome"],
        ),
        "reconciliation_decisions": Counter(
            "rowledger_reconciliation_decisions_total",
            "Overlap-threshold decisions by action",
            ["action"],
        ),
    }


METRICS: Dict[str, Any] = _create_metrics()


def export_prometheus() -> str:
    """Export metrics in Prometheus text format."""
    return generate_latest(_PROM_REGISTRY).decode("utf-8")
