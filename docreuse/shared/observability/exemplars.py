# OpenTelemetry spans linked to Prometheus metrics for pipeline stages

from contextlib import contextmanager
from typing import Any, Dict

from opentelemetry import trace
from opentelemetry.trace import SpanKind

from .metrics import (
    similarity_stage_duration_seconds,
    upstream_call_latency_ms,
    upstream_calls_total,
)


def get_trace_context() -> Dict[str, str]:
    """
    Get current trace context for exemplar linking.

    Returns:
        Dictionary with trace_id and span_id
    """
    span = trace.get_current_span()
    if span and span.is_recording():
        ctx = span.get_span_context()
        return {
            "trace_id": format(ctx.trace_id, "032x"),
            "span_id": format(ctx.span_id, "016x"),
        }
    return {}


@contextmanager
def trace_stage(stage: str, **attributes: Any):
    """
    Trace one pipeline stage and record its duration.

    Args:
        stage: Stage name (stage0, stage1, stage2)
        **attributes: Extra span attributes (source document id, counts)

    Yields:
        Span object
    """
    tracer = trace.get_tracer(__name__)

    with tracer.start_as_current_span(
        f"similarity.{stage}",
        kind=SpanKind.INTERNAL,
        attributes={f"similarity.{k}": v for k, v in attributes.items()},
    ) as span:
        with similarity_stage_duration_seconds.labels(stage=stage).time():
            try:
                yield span
                span.set_attribute("similarity.status", "success")
            except Exception as e:
                span.set_attribute("similarity.status", "error")
                span.set_attribute("similarity.error", type(e).__name__)
                span.record_exception(e)
                raise


@contextmanager
def trace_upstream_call(client: str, operation: str):
    """
    Trace a single call to the vector index or chunk store.

    Args:
        client: Collaborator name (vector_index, chunk_store)
        operation: Operation name (query, get_chunks, ...)

    Yields:
        Span object
    """
    tracer = trace.get_tracer(__name__)

    with tracer.start_as_current_span(
        f"{client}.{operation}",
        kind=SpanKind.CLIENT,
        attributes={"upstream.client": client, "upstream.operation": operation},
    ) as span:
        trace_ctx = get_trace_context()

        with upstream_call_latency_ms.labels(client=client, operation=operation).time():
            try:
                yield span
                upstream_calls_total.labels(
                    client=client, operation=operation, status="success"
                ).inc(exemplar=trace_ctx)
            except Exception as e:
                upstream_calls_total.labels(
                    client=client, operation=operation, status="error"
                ).inc(exemplar=trace_ctx)
                span.set_attribute("upstream.error", type(e).__name__)
                span.record_exception(e)
                raise
