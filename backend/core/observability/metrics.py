"""In-process metrics counters and histograms."""

import threading
import time
from collections import defaultdict
from typing import Any

from backend.core.config import settings

# Global metrics storage
_metrics = defaultdict(lambda: {"count": 0, "sum": 0.0, "min": None, "max": None, "buckets": defaultdict(int)})
# Trigger cycles and pending sweeps record from worker threads
_lock = threading.Lock()


def init_metrics() -> None:
    """Initialize metrics if enabled."""
    if not settings.enable_metrics:
        return


def _key(name: str, labels: dict[str, str] | None) -> str:
    if not labels:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in labels.items()) + "}"


def increment_counter(name: str, labels: dict[str, str] | None = None, value: float = 1.0) -> None:
    """Increment a counter metric."""
    if not settings.enable_metrics:
        return

    with _lock:
        _metrics[_key(name, labels)]["count"] += value


def record_histogram(name: str, value: float, labels: dict[str, str] | None = None) -> None:
    """Record a histogram measurement."""
    if not settings.enable_metrics:
        return

    with _lock:
        metrics = _metrics[_key(name, labels)]
        metrics["count"] += 1
        metrics["sum"] += value
        # Running extremes only; samples are not kept in a long-lived process
        metrics["min"] = value if metrics["min"] is None else min(metrics["min"], value)
        metrics["max"] = value if metrics["max"] is None else max(metrics["max"], value)

        # Simple buckets for basic histogram visualization
        if value < 0.1:
            metrics["buckets"]["<0.1"] += 1
        elif value < 1:
            metrics["buckets"]["0.1-1.0"] += 1
        elif value < 10:
            metrics["buckets"]["1.0-10.0"] += 1
        elif value < 100:
            metrics["buckets"]["10.0-100.0"] += 1
        elif value < 1000:
            metrics["buckets"]["100.0-1000.0"] += 1
        else:
            metrics["buckets"][">=1000.0"] += 1


def observe_duration(start_time: float, name: str, labels: dict[str, str] | None = None) -> None:
    """Observe a duration measurement."""
    duration_ms = (time.time() - start_time) * 1000
    record_histogram(name, duration_ms, labels)


def get_metrics() -> dict[str, Any]:
    """Get current metrics snapshot."""
    if not settings.enable_metrics:
        return {"note": "metrics disabled"}

    # Calculate basic statistics for histograms
    result = {}
    with _lock:
        for key, data in _metrics.items():
            metric_result = {"count": data["count"], "sum": data["sum"]}

            if data["min"] is not None:
                metric_result.update(
                    {
                        "min": data["min"],
                        "max": data["max"],
                        "avg": data["sum"] / data["count"],
                        "buckets": dict(data["buckets"]),
                    }
                )

            result[key] = metric_result

    return result


def reset_metrics() -> None:
    """Reset all metrics (useful for testing)."""
    with _lock:
        _metrics.clear()


# Trigger evaluation metrics
def increment_trigger_outcome(outcome: str) -> None:
    """Increment counter for an audited trigger decision."""
    increment_counter("followup_trigger_events_total", labels={"outcome": outcome})


# Execution metrics
def increment_steps_dispatched() -> None:
    increment_counter("followup_steps_dispatched_total")


def increment_dispatch_failures() -> None:
    increment_counter("followup_dispatch_failures_total")


def increment_executions_finished(status: str) -> None:
    increment_counter("followup_executions_finished_total", labels={"status": status})
