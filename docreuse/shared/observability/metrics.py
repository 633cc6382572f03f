# Prometheus metrics for the similarity search service

import time
from typing import Callable

from prometheus_client import Counter, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ..config import Settings
from .logging import get_logger

logger = get_logger(__name__)

# ===== Request metrics =====
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

# ===== Similarity pipeline metrics =====
similarity_search_total = Counter(
    "similarity_search_total",
    "Total similarity searches by outcome",
    ["status"],  # status: success, empty, or an error code (validation_error, not_found, aborted, ...)
)

similarity_stage_duration_seconds = Histogram(
    "similarity_stage_duration_seconds",
    "Similarity pipeline stage duration in seconds",
    ["stage"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 180.0),
)

similarity_stage_candidates = Histogram(
    "similarity_stage_candidates",
    "Candidates surviving each pipeline stage",
    ["stage"],
    buckets=(0, 1, 5, 10, 30, 50, 100, 250, 400, 600, 1000),
)

similarity_stage1_runs_total = Counter(
    "similarity_stage1_runs_total",
    "Stage 1 prefilter outcomes",
    ["status"],  # status: completed, skipped, timed_out
)

similarity_candidate_failures_total = Counter(
    "similarity_candidate_failures_total",
    "Stage 2 candidates dropped because scoring failed",
    ["reason"],  # reason: timeout, upstream, not_found, error
)

similarity_match_score = Histogram(
    "similarity_match_score",
    "Similarity of retained chunk matches",
    buckets=(0.8, 0.825, 0.85, 0.875, 0.9, 0.925, 0.95, 0.975, 1.0),
)

# ===== Upstream client metrics =====
upstream_calls_total = Counter(
    "upstream_calls_total",
    "Calls to the vector index and chunk store",
    ["client", "operation", "status"],
)

upstream_retries_total = Counter(
    "upstream_retries_total",
    "Retried upstream calls",
    ["client", "operation"],
)

upstream_call_latency_ms = Histogram(
    "upstream_call_latency_ms",
    "Upstream call latency in milliseconds",
    ["client", "operation"],
    buckets=(1, 5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000),
)

service_info = Info("docreuse_service", "Similarity search service information")


class PrometheusMiddleware(BaseHTTPMiddleware):
    """
    Middleware to collect HTTP request metrics for Prometheus.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Skip metrics endpoint itself
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start

        # Label by route template so document ids do not explode cardinality
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(
            elapsed
        )
        http_requests_total.labels(
            method=method,
            endpoint=endpoint,
            status=response.status_code,
        ).inc()

        return response


def setup_metrics(settings: Settings, version: str = "0.1.0") -> None:
    """
    Setup Prometheus metrics collection.

    Args:
        settings: Application settings
        version: Service version reported in the info metric
    """
    logger.info("Setting up Prometheus metrics")

    service_info.info(
        {
            "version": version,
            "environment": settings.env,
            "service_name": settings.otel_service_name,
        }
    )


def get_metrics() -> bytes:
    """
    Get current metrics in Prometheus exposition format.

    Returns:
        Metrics as bytes
    """
    return generate_latest()
