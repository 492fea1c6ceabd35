"""
zvol-agent - FastAPI Application Entry Point

Exposes metrics, operation events and orphan reconciliation for the
configured TrueNAS storages.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from zvol_agent import __version__
from zvol_agent.backend import StorageBackend, load_backends
from zvol_agent.config import settings
from zvol_agent.routers import health, storages
from zvol_agent.truenas_api.errors import (
    ApplianceError,
    ConflictError,
    MissingDependencyError,
    NotFoundError,
    OperationInProgressError,
    StorageValidationError,
    TransportError,
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

ERROR_STATUS = [
    (StorageValidationError, 400),
    (NotFoundError, 404),
    (MissingDependencyError, 404),
    (ConflictError, 409),
    (OperationInProgressError, 409),
    (TransportError, 502),
]


def status_for(exc: ApplianceError) -> int:
    for error_class, status in ERROR_STATUS:
        if isinstance(exc, error_class):
            return status
    return 500


def create_app(backends: Optional[Dict[str, StorageBackend]] = None) -> FastAPI:
    """Build the app. Backends are loaded from settings.storage_config_path when not given."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"zvol-agent v{__version__} starting...")
        if app.state.backends is None:
            if os.path.exists(settings.storage_config_path):
                app.state.backends = load_backends(settings.storage_config_path)
            else:
                logger.warning(f"No storage config at {settings.storage_config_path}; serving no storages")
                app.state.backends = {}
        logger.info(f"Serving {len(app.state.backends)} storage(s): {sorted(app.state.backends)}")

        yield

        for backend in app.state.backends.values():
            backend.close()
        logger.info("zvol-agent shutting down...")

    app = FastAPI(
        title="zvol-agent API",
        description="Volume lifecycle observability and orphan reconciliation for TrueNAS storages",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.backends = backends

    @app.exception_handler(ApplianceError)
    async def appliance_exception_handler(request: Request, exc: ApplianceError):
        status = status_for(exc)
        if status >= 500:
            logger.error(f"Appliance error on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status,
            content={
                "detail": exc.message,
                "error_type": type(exc).__name__,
                "error_code": exc.error_code,
                "step": exc.step,
                "resources": exc.resources,
            },
        )

    app.include_router(health.router)
    app.include_router(storages.router)

    @app.get("/")
    async def root():
        """Root endpoint - redirects to docs."""
        return {
            "name": "zvol-agent",
            "version": __version__,
            "docs": "/docs",
            "health": "/v1/health"
        }

    return app


def run():
    """Run the application with uvicorn."""
    import uvicorn

    uvicorn.run(
        create_app(),
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower()
    )


if __name__ == "__main__":
    run()
