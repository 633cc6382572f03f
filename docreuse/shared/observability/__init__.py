# Observability package
from .exemplars import trace_stage, trace_upstream_call
from .logging import (
    get_correlation_id,
    get_logger,
    set_correlation_id,
    setup_logging,
)
from .metrics import get_metrics, setup_metrics
from .tracing import setup_tracing

__all__ = [
    "get_logger",
    "setup_logging",
    "get_correlation_id",
    "set_correlation_id",
    "setup_tracing",
    "setup_metrics",
    "get_metrics",
    "trace_stage",
    "trace_upstream_call",
]
