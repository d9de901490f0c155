"""FastAPI application for the search gateway."""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from search_gateway import __version__
from search_gateway.api.routes import router as api_router
from search_gateway.config import Settings, get_settings
from search_gateway.errors import SearchGatewayError, ValidationError
from search_gateway.scheduler import SchedulerService
from search_gateway.search.orchestrator import SearchOrchestrator, SearchServices

logger = logging.getLogger(__name__)


def create_app(
    config: Settings | None = None,
    services: SearchServices | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        config: Settings (defaults to the environment)
        services: Pre-built components; built during startup when None
    """
    config = config or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Application lifespan events."""
        logger.info("Starting Search Gateway API...")
        owns_services = getattr(app.state, "services", None) is None
        if owns_services:
            app.state.services = await SearchServices.create(config)
            app.state.orchestrator = SearchOrchestrator(app.state.services, config)
        logger.info("Search services ready")

        scheduler = None
        storage = app.state.services.tracker.storage
        if owns_services and storage is not None and config.analytics_prune_interval_minutes > 0:
            scheduler = SchedulerService()
            scheduler.schedule_analytics_pruning(
                storage,
                interval_minutes=config.analytics_prune_interval_minutes,
                keep_days=config.analytics_retention_days,
            )
            scheduler.start()

        yield

        logger.info("Shutting down Search Gateway API...")
        if scheduler is not None:
            scheduler.shutdown(wait=False)
        if owns_services:
            await app.state.services.close()
        else:
            await app.state.services.tracker.flush()
        logger.info("Search services stopped")

    app = FastAPI(
        title="Search Gateway",
        description="Rate limited, quota metered, cached access to semantic search",
        version=__version__,
        lifespan=lifespan,
    )

    if services is not None:
        app.state.services = services
        app.state.orchestrator = SearchOrchestrator(services, config)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[
            "Retry-After",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "X-Process-Time-Ms",
        ],
    )

    if config.api_key:
        logger.info("API key authentication enabled")

    # Request timing middleware
    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        start_time = time.perf_counter()
        response = await call_next(request)
        process_time = (time.perf_counter() - start_time) * 1000
        response.headers["X-Process-Time-Ms"] = f"{process_time:.2f}"
        return response

    @app.exception_handler(SearchGatewayError)
    async def search_gateway_error_handler(request: Request, exc: SearchGatewayError):
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(),
            headers=exc.headers,
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(request: Request, exc: RequestValidationError):
        error = ValidationError(
            "Invalid request parameters",
            details={
                "errors": [
                    {
                        "field": ".".join(str(part) for part in err["loc"]),
                        "message": err["msg"],
                    }
                    for err in exc.errors()
                ]
            },
        )
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    app.include_router(api_router, prefix="/v1")

    @app.get("/health")
    async def health_check(request: Request):
        result = {"status": "healthy", "version": __version__}
        services = getattr(request.app.state, "services", None)
        if services is not None:
            shared = services.cache.shared
            result["components"] = {
                "cache": await shared.health_check() if shared else {"backend": "none"},
                "rate_limiter": services.rate_limiter.store.name,
                "quota": services.quota_manager.store.name,
                "search_engine": services.engine.name,
            }
        return result

    @app.get("/")
    async def root():
        return {
            "name": "Search Gateway",
            "version": __version__,
            "docs": "/docs",
            "openapi": "/openapi.json",
        }

    return app
