"""
REST API for the Speed Test Server

Design Decision: API Framework
==============================

Options Considered:
1. FastAPI - Modern, fast, auto-docs, async support
2. Flask - Simple, widely used, but sync-focused
3. http.server - No dependencies, one thread per request, no streaming helpers
4. Starlette - Lightweight, FastAPI is built on it

Decision: FastAPI
- Native async streaming for large download bodies
- Request body exposed as an async stream for uploads
- Automatic 405 for routes hit with the wrong method
- Automatic OpenAPI documentation

Endpoints:
- GET  /__down?bytes=N  stream N bytes
- POST /__up?bytes=N    consume the request body
- GET  /__stats         cumulative server statistics
- GET  /health          liveness probe
- GET  /                static UI (when configured) or basic info
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from .. import __version__
from ..stats import StatsAggregator, format_rfc3339
from ..transfer import TransferHandler, parse_bytes
from ..transfer.protocol import DOWNLOAD_PATH, UPLOAD_PATH, STATS_PATH, HEALTH_PATH

logger = logging.getLogger(__name__)


# === Pydantic Models ===

class UploadResult(BaseModel):
    """Upload response."""
    ok: bool = True
    bytes: int


class ServerStats(BaseModel):
    """Cumulative server statistics."""
    ok: bool = True
    total_downloads: int
    total_uploads: int
    total_bytes_down: int
    total_bytes_up: int
    total_connections: int
    total_data_gb: float
    uptime_seconds: int
    peak_concurrent: int
    last_request: Optional[str] = None


class HealthStatus(BaseModel):
    """Health check response."""
    ok: bool = True
    status: str = "healthy"
    timestamp: str


def _peer(request: Request) -> str:
    if request.client is None:
        return '-'
    return f"{request.client.host}:{request.client.port}"


def _validated_bytes(raw: Optional[str]) -> int:
    try:
        return parse_bytes(raw)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


_HTTP_METHODS = ("GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS")

# Method each API path answers to
_API_METHODS = {
    DOWNLOAD_PATH: "GET",
    UPLOAD_PATH: "POST",
    STATS_PATH: "GET",
    HEALTH_PATH: "GET",
}


def _method_not_allowed(allowed: str):
    async def endpoint():
        raise HTTPException(status_code=405, detail="Method Not Allowed",
                            headers={"Allow": allowed})
    return endpoint


# === API Creation ===

def create_app(stats: StatsAggregator = None, static_dir: Optional[Path] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        stats: Statistics aggregator to update (a fresh one if not provided)
        static_dir: Directory with the browser UI, served at /

    Returns:
        FastAPI application
    """
    stats = stats or StatsAggregator()
    handler = TransferHandler(stats)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup and shutdown."""
        logger.info("Speed test server starting...")
        yield
        snapshot = stats.snapshot()
        logger.info(f"Speed test server stopping. Served {snapshot.total_downloads} downloads, "
                    f"{snapshot.total_uploads} uploads, {snapshot.total_data_gb:.2f} GB")

    app = FastAPI(
        title="ethspeed",
        description="HTTP throughput test server",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.stats = stats

    # === Transfer Endpoints ===

    @app.get(DOWNLOAD_PATH, tags=["Transfer"])
    async def download(request: Request, num_bytes: Optional[str] = Query(None, alias="bytes")):
        """Stream the requested number of bytes."""
        size = _validated_bytes(num_bytes)

        return StreamingResponse(
            handler.stream_download(size, _peer(request), request.is_disconnected),
            media_type="application/octet-stream",
            headers={
                "Content-Length": str(size),
                "Cache-Control": "no-cache, no-store, must-revalidate",
            },
        )

    @app.post(UPLOAD_PATH, response_model=UploadResult, tags=["Transfer"])
    async def upload(request: Request, num_bytes: Optional[str] = Query(None, alias="bytes")):
        """Read and discard the request body."""
        expected = _validated_bytes(num_bytes)

        try:
            received = await handler.receive_upload(request.stream(), expected, _peer(request))
        except Exception:
            raise HTTPException(status_code=500, detail="upload error")

        return UploadResult(bytes=received)

    # === Monitoring ===

    @app.get(STATS_PATH, response_model=ServerStats, tags=["Server"])
    async def get_stats():
        """Get cumulative server statistics."""
        return stats.get_stats()

    @app.get(HEALTH_PATH, response_model=HealthStatus, tags=["Server"])
    async def health():
        """Liveness probe."""
        return HealthStatus(timestamp=format_rfc3339(datetime.now(timezone.utc)))

    # A mount at / fully matches every path, which would turn wrong-method
    # requests on the API paths into 404s. Explicit routes keep them 405.
    for path, allowed in _API_METHODS.items():
        app.add_api_route(
            path,
            _method_not_allowed(allowed),
            methods=[m for m in _HTTP_METHODS if m != allowed],
            include_in_schema=False,
        )

    # === UI ===

    if static_dir is not None and Path(static_dir).is_dir():
        app.mount("/", StaticFiles(directory=static_dir, html=True), name="ui")
    else:
        if static_dir is not None:
            logger.warning(f"Static directory not found: {static_dir}")

        @app.get("/", tags=["General"])
        async def root():
            """API root - basic info."""
            return {
                "name": "ethspeed",
                "version": __version__,
                "endpoints": [DOWNLOAD_PATH, UPLOAD_PATH, STATS_PATH, HEALTH_PATH],
            }

    return app


async def run_api_server(app: FastAPI, host: str = "0.0.0.0", port: int = 8080,
                         log_level: str = "info"):
    """
    Run the API server until SIGINT/SIGTERM.

    Args:
        app: Application from create_app()
        host: Host to bind to
        port: Port to listen on
        log_level: uvicorn log level
    """
    import uvicorn

    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level=log_level,
        timeout_keep_alive=30,
        # In-flight transfers get this long to finish after a shutdown signal
        timeout_graceful_shutdown=10,
    )
    server = uvicorn.Server(config)
    await server.serve()
