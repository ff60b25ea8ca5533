"""
HTTP API Module
===============

FastAPI application exposing the pipeline's three triggers plus health/state.

Endpoints:
    GET  /health                                - Simple health check
    GET  /state                                 - Process metrics snapshot
    POST /ingest                                - One ingestion cycle
    POST /inference                             - predict | batch_predict | stream_predict
    GET  /monitoring?action=...                 - status | metrics | alerts | drift | pnl
    POST /monitoring/alerts/{alert_id}/resolve  - External alert resolution

Any error raised by a handler, and any malformed request body, becomes
{"success": false, "error": msg} with status 500.
"""

import logging
from typing import Any, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from tickflow import __version__
from tickflow.pipeline import PipelineContext
from tickflow.utils_time import ms_to_iso

logger = logging.getLogger(__name__)


# Request models
class IngestRequest(BaseModel):
    """Request body for an ingestion cycle."""
    symbols: list[str]
    exchanges: Optional[list[str]] = None


class InferenceRequest(BaseModel):
    """Request body for an inference trigger."""
    action: str
    data: dict[str, Any] = Field(default_factory=dict)


def _error_response(endpoint: str, e: Exception) -> JSONResponse:
    logger.warning(
        "http_request_failed",
        extra={"endpoint": endpoint, "error": str(e), "error_type": type(e).__name__},
    )
    return JSONResponse({"success": False, "error": str(e)}, status_code=500)


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "invalid request: " + "; ".join(parts)


def _handle(endpoint: str, handler: Callable[[], dict[str, Any]]) -> JSONResponse:
    try:
        return JSONResponse(handler())
    except Exception as e:
        return _error_response(endpoint, e)


def create_app(pipeline: PipelineContext) -> FastAPI:
    """
    Create FastAPI application bound to one pipeline.

    Args:
        pipeline: Pipeline context serving every request

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="Tickflow",
        description="Market tick ingestion, feature extraction and signal inference",
        version=__version__,
        docs_url="/docs",
        redoc_url=None,
    )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error_response(request.url.path, ValueError(_validation_message(exc)))

    @app.get("/health")
    async def health() -> JSONResponse:
        """
        Health check endpoint.

        Returns:
            {"ok": true, "server_time": ISO-8601}
        """
        return JSONResponse({"ok": True, "server_time": ms_to_iso(pipeline.clock())})

    @app.get("/state")
    async def state() -> JSONResponse:
        """
        Process metrics snapshot.

        Returns:
            JSON with feed status, cycle counters, inference latency
            percentiles, prediction/alert counters and uptime.
        """
        return JSONResponse(pipeline.metrics.snapshot())

    @app.post("/ingest")
    async def ingest(request: IngestRequest) -> JSONResponse:
        """
        Run one ingestion cycle.

        Returns:
            {"success": true, "tickCount", "orderBookCount", "feedStatus", "timestamp"}
        """
        try:
            return JSONResponse(await pipeline.ingest(request.symbols, request.exchanges))
        except Exception as e:
            return _error_response("ingest", e)

    @app.post("/inference")
    async def inference(request: InferenceRequest) -> JSONResponse:
        """
        Inference trigger.

        Actions:
            predict         data: {"symbol", "features"?}
            batch_predict   data: {"symbols": [...]}
            stream_predict  data: {"symbol", "ticks": [...]}
        """
        return _handle("inference", lambda: pipeline.infer(request.action, request.data))

    @app.get("/monitoring")
    async def monitoring(action: str = "status") -> JSONResponse:
        """
        Monitoring trigger.

        Actions: status, metrics, alerts, drift, pnl
        """
        return _handle("monitoring", lambda: pipeline.monitor(action))

    @app.post("/monitoring/alerts/{alert_id}/resolve")
    async def resolve_alert(alert_id: str) -> JSONResponse:
        """
        Mark a drift alert as resolved.

        Returns:
            {"success": true, "alertId", "resolved"}; resolved is false for an
            unknown id.
        """
        return _handle("resolve_alert", lambda: pipeline.resolve_alert(alert_id))

    logger.info("http_app_created", extra={"feeds": pipeline.aggregator.feed_names})

    return app
