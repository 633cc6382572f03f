# FastAPI surface for similarity search, validation, health and metrics

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import uvicorn
from fastapi import Body, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from starlette.responses import Response

from docreuse.shared import close_connections, init_config, initialize_connections
from docreuse.shared.concurrency import CancellationToken
from docreuse.shared.observability import (
    get_correlation_id,
    get_logger,
    set_correlation_id,
    setup_logging,
    setup_tracing,
)
from docreuse.shared.observability.metrics import (
    PrometheusMiddleware,
    get_metrics,
    setup_metrics,
)
from docreuse.similarity.errors import SimilarityError, ValidationError
from docreuse.similarity.orchestrator import SimilarityPipeline
from docreuse.similarity.qdrant_store import QdrantChunkStore, QdrantVectorIndex

from .models import ErrorResponse, HealthResponse, SelectedSearchRequest

# Initialize config and logging
config, settings = init_config()
setup_logging(config.app.log_level)
logger = get_logger(__name__)

DISCONNECT_POLL_SECONDS = 0.5
OWNER_HEADER = "X-Owner-Id"
ERROR_RESPONSES = {
    code: {"model": ErrorResponse} for code in (400, 404, 499, 503)
}


def _require_owner(owner_id: Optional[str]) -> str:
    if not owner_id or not owner_id.strip():
        raise ValidationError(
            f"Missing {OWNER_HEADER} header",
            stage="request",
            remediation=[f"Send the tenant id in the {OWNER_HEADER} header."],
        )
    return owner_id.strip()


async def _watch_disconnect(
    request: Request, token: CancellationToken, stop: asyncio.Event
) -> None:
    """Cancel the search token once the client goes away."""
    while not stop.is_set() and not token.cancelled:
        if await request.is_disconnected():
            token.cancel("client disconnected")
            return
        try:
            await asyncio.wait_for(stop.wait(), timeout=DISCONNECT_POLL_SECONDS)
        except asyncio.TimeoutError:
            continue


async def _run_with_disconnect_watch(request: Request, search) -> Dict[str, Any]:
    token = CancellationToken()
    stop = asyncio.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, token, stop))
    try:
        response = await search(token)
    finally:
        stop.set()
        await asyncio.gather(watcher, return_exceptions=True)
    return response.to_dict()


def create_app(pipeline: Optional[SimilarityPipeline] = None) -> FastAPI:
    """
    Build the HTTP app.

    Args:
        pipeline: Pre-built pipeline; when omitted one is wired to Qdrant at startup
    """
    app = FastAPI(
        title=config.app.name,
        version=config.app.version,
        description="Directional content-reuse search",
    )
    app.state.pipeline = pipeline
    app.state.owns_connections = pipeline is None

    # Setup OpenTelemetry tracing
    setup_tracing(app, settings, version=config.app.version)

    # Setup Prometheus metrics
    setup_metrics(settings, version=config.app.version)

    # Add Prometheus middleware
    app.add_middleware(PrometheusMiddleware)

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        """Add correlation ID to request context"""
        corr_id = request.headers.get("X-Correlation-ID")
        if not corr_id:
            corr_id = get_correlation_id()
        else:
            set_correlation_id(corr_id)

        start_time = time.perf_counter()
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = corr_id
        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=round((time.perf_counter() - start_time) * 1000, 2),
        )
        return response

    @app.exception_handler(SimilarityError)
    async def similarity_error_handler(request: Request, exc: SimilarityError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.on_event("startup")
    async def startup_event():
        """Wire the pipeline to Qdrant on startup"""
        logger.info("Starting similarity service", version=config.app.version)
        if app.state.pipeline is not None:
            return
        try:
            manager = await initialize_connections()
            client = manager.get_qdrant_client()
            app.state.pipeline = SimilarityPipeline(
                QdrantVectorIndex(client, config.vector_index),
                QdrantChunkStore(client, config.vector_index),
                manager.get_limiter(),
                config,
            )
            logger.info("Similarity service started successfully")
        except Exception as e:
            logger.error("Failed to start similarity service", error=str(e))
            raise

    @app.on_event("shutdown")
    async def shutdown_event():
        """Close connections on shutdown"""
        logger.info("Shutting down similarity service")
        if app.state.owns_connections:
            await close_connections()
            app.state.pipeline = None

    @app.post("/documents/{document_id}/similar", responses=ERROR_RESPONSES)
    async def similar_documents(
        document_id: str,
        request: Request,
        options: Optional[Dict[str, Any]] = Body(default=None),
        owner_id: Optional[str] = Header(default=None, alias=OWNER_HEADER),
    ):
        """Open-ended search for documents reusing content from ``document_id``"""
        search_options = dict(options or {})
        search_options["owner_id"] = _require_owner(owner_id)
        pipeline: SimilarityPipeline = app.state.pipeline
        return await _run_with_disconnect_watch(
            request,
            lambda token: pipeline.execute_similarity_search(
                document_id, search_options, token
            ),
        )

    @app.post("/documents/selected-search", responses=ERROR_RESPONSES)
    async def selected_search(
        body: SelectedSearchRequest,
        request: Request,
        owner_id: Optional[str] = Header(default=None, alias=OWNER_HEADER),
    ):
        """Search restricted to an explicit list of target documents"""
        search_options = dict(body.options)
        search_options["owner_id"] = _require_owner(owner_id)
        pipeline: SimilarityPipeline = app.state.pipeline
        return await _run_with_disconnect_watch(
            request,
            lambda token: pipeline.execute_selected_search(
                body.source_document_id,
                body.target_document_ids,
                search_options,
                token,
            ),
        )

    @app.get("/documents/{document_id}/validation", responses={400: {"model": ErrorResponse}})
    async def validate_document(
        document_id: str,
        owner_id: Optional[str] = Header(default=None, alias=OWNER_HEADER),
    ):
        """Check whether a document can be used as a search source"""
        pipeline: SimilarityPipeline = app.state.pipeline
        report = await pipeline.validate_document_for_similarity(
            document_id, owner_id=_require_owner(owner_id)
        )
        return report.to_dict()

    @app.get("/health", response_model=HealthResponse)
    async def health():
        """Health check endpoint"""
        pipeline: Optional[SimilarityPipeline] = app.state.pipeline
        circuits: Dict[str, str] = {}
        limiter: Dict[str, Any] = {}
        status = "starting"
        if pipeline is not None:
            state = pipeline.clients.health()
            circuits = {
                "vector_index": state["vector_index_circuit"],
                "chunk_store": state["chunk_store_circuit"],
            }
            limiter = state["limiter"]
            status = "healthy" if "open" not in circuits.values() else "degraded"
        return HealthResponse(
            status=status,
            timestamp=datetime.now(timezone.utc).isoformat(),
            version=config.app.version,
            circuits=circuits,
            limiter=limiter,
        )

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint"""
        return Response(content=get_metrics(), media_type="text/plain; version=0.0.4")

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "docreuse.api.main:app",
        host="0.0.0.0",
        port=8000,
        log_level=config.app.log_level.lower(),
    )
