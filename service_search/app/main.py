"""Search service main application."""

import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from libs.common.config import SearchConfig, get_config
from libs.common.errors import SearchError, TotalFailureError, ValidationError
from libs.common.logging import bind_request_context, clear_request_context, configure_logging
from libs.common.metrics import MetricsCollector

from .api.routes import router as api_router
from .bootstrap import create_embedder, create_search_manager, create_stores
from .hybrid.search_manager import HybridSearchManager

logger = structlog.get_logger("search_service")

SERVICE_NAME = "search-service"


def create_app(
    config: Optional[SearchConfig] = None,
    search_manager: Optional[HybridSearchManager] = None,
    metrics: Optional[MetricsCollector] = None
) -> FastAPI:
    """Build the FastAPI application.

    When ``search_manager`` is omitted, stores and the embedding client are
    created from ``config`` on startup and closed on shutdown.
    """
    config = config or get_config("search")
    metrics = metrics or (search_manager.metrics if search_manager else None) or MetricsCollector(SERVICE_NAME)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        # Startup
        configure_logging(SERVICE_NAME, config.kb_log_level, config.kb_log_format, env=config.kb_env)
        logger.info("Starting search service", store_backend=config.kb_store_backend)

        stores = None
        if search_manager is None:
            stores = create_stores(config)
            app.state.search_manager = create_search_manager(
                config, stores, embedder=create_embedder(config, metrics), metrics=metrics
            )
        else:
            app.state.search_manager = search_manager

        logger.info("Search service started successfully")

        yield

        # Shutdown
        logger.info("Shutting down search service")
        await app.state.search_manager.close()
        if stores is not None:
            await stores.close()
        logger.info("Search service shutdown complete")

    app = FastAPI(
        title="Search Service",
        description="Hybrid semantic and lexical knowledge-base search",
        version="0.1.0",
        lifespan=lifespan
    )
    app.state.config = config
    app.state.metrics_collector = metrics

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix="/api/v1")

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(
            status_code=422,
            content={"error": "validation_error", "detail": exc.message, "context": exc.context}
        )

    @app.exception_handler(TotalFailureError)
    async def total_failure_handler(request: Request, exc: TotalFailureError):
        logger.error("All search sources failed", path=request.url.path, errors=exc.errors)
        return JSONResponse(
            status_code=503,
            content={"error": "search_unavailable", "detail": exc.message, "errors": exc.errors}
        )

    @app.exception_handler(SearchError)
    async def search_error_handler(request: Request, exc: SearchError):
        logger.error("Request failed", path=request.url.path, error=exc.message)
        return JSONResponse(
            status_code=500,
            content={"error": type(exc).__name__, "detail": exc.message}
        )

    @app.middleware("http")
    async def add_process_time_header(request: Request, call_next):
        """Add request id and processing time headers to responses."""
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        bind_request_context(request_id)
        start_time = time.time()
        try:
            response = await call_next(request)
        finally:
            clear_request_context()
        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = str(process_time)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Collect metrics for HTTP requests."""
        start_time = time.time()

        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception as e:
            logger.error("Unhandled error", path=request.url.path, error=str(e))
            status_code = 500
            response = JSONResponse(
                status_code=500,
                content={"error": "Internal server error", "detail": str(e)}
            )

        metrics.record_http_request(
            method=request.method,
            endpoint=request.url.path,
            status=status_code,
            duration=time.time() - start_time
        )
        return response

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        try:
            checks = await request.app.state.search_manager.health_check()
        except Exception as e:
            logger.error("Health check failed", error=str(e))
            return JSONResponse(
                status_code=503,
                content={"status": "unhealthy", "service": SERVICE_NAME, "error": str(e)}
            )

        if all(checks.values()):
            return {"status": "healthy", "service": SERVICE_NAME, "checks": checks}
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "service": SERVICE_NAME, "checks": checks}
        )

    @app.get("/metrics")
    async def get_metrics():
        """Prometheus metrics endpoint."""
        return Response(content=metrics.get_metrics(), media_type="text/plain")

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "service": SERVICE_NAME,
            "version": "0.1.0",
            "status": "running",
            "endpoints": {
                "health": "/health",
                "metrics": "/metrics",
                "search": "/api/v1/search",
                "index": "/api/v1/index"
            }
        }

    return app


if __name__ == "__main__":
    settings = SearchConfig()
    uvicorn.run(
        create_app(settings),
        host="0.0.0.0",
        port=settings.kb_search_port,
        log_level="info"
    )
