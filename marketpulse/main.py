"""API application entry point."""

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from marketpulse import metrics
from marketpulse.api.routes import jobs, ws
from marketpulse.config import settings
from marketpulse.logging_config import setup_logging
from marketpulse.services import Services

logger = logging.getLogger(__name__)

UNINSTRUMENTED_PATHS = {"/metrics", "/health", "/favicon.ico"}


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        services: Pre-built container (tests inject one backed by in-process stores);
            when omitted the app builds and owns one from settings
    """
    owns_services = services is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting MarketPulse API...")
        await app.state.services.startup(
            create_tables=app.state.services.config.debug, listen_for_invalidation=True
        )
        yield
        logger.info("Shutting down...")
        if owns_services:
            await app.state.services.shutdown()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="MarketPulse",
        description="Market anomaly alerts and job administration",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services or Services(settings)

    @app.middleware("http")
    async def instrument_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        route = request.scope.get("route")
        handler = getattr(route, "path", None)
        # Only templated routes are labelled
        if handler and handler not in UNINSTRUMENTED_PATHS:
            metrics.record_http_request(
                request.method, handler, response.status_code, time.perf_counter() - started
            )
        return response

    app.include_router(jobs.router)
    app.include_router(jobs.subscriptions_router)
    app.include_router(jobs.cache_router)
    app.include_router(ws.router)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        redis_ok = await app.state.services.store.test_connection()
        return {"status": "healthy" if redis_ok else "degraded", "redis": redis_ok}

    @app.get("/metrics", tags=["monitoring"])
    async def prometheus_metrics():
        """Prometheus scrape endpoint."""
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/favicon.ico")
    async def favicon():
        """Return empty favicon response to avoid 404 noise."""
        return Response(status_code=204)

    return app


def run() -> None:
    """Console entry point for the API server."""
    setup_logging(role="api")
    uvicorn.run(
        create_app(),
        host=settings.app_host,
        port=settings.app_port,
        log_config=None,
    )


if __name__ == "__main__":
    run()
