"""Minimal observability for logging, health checks and metrics.

Provides JSON logging, health/readiness endpoints, and in-process metrics
for the follow-up service without external collectors.
"""
import uuid
from typing import Optional

from . import health
from . import logging as logging_module
from . import metrics


def generate_trace_id() -> str:
    """Generate a new trace ID for request/worker context."""
    return str(uuid.uuid4())


def set_trace_id(trace_id: Optional[str] = None) -> str:
    """Set or generate trace ID for current context."""
    if not trace_id:
        trace_id = generate_trace_id()
    logging_module.set_trace_id(trace_id)
    return trace_id


def set_company_id(company_id: Optional[str] = None) -> str:
    """Set company ID for current context (default 'unknown')."""
    company_id = company_id or "unknown"
    logging_module.set_company_id(company_id)
    return company_id


def init_observability(enable_metrics: bool = True) -> None:
    """Initialize all observability components."""
    logging_module.init_logging()
    if enable_metrics:
        metrics.init_metrics()


__all__ = [
    "logging_module",
    "health",
    "metrics",
    "generate_trace_id",
    "set_trace_id",
    "set_company_id",
    "init_observability",
]
