"""FastAPI server for the ERP integration core.

Main entry point for the API server.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import connections, health
from core import __version__
from core.config import ErpSettings, load_settings
from core.connections import ConnectionService, IdleClientReaper
from core.observability.logging import configure_logging, get_logger

logger = get_logger(__name__)


def create_app(
    service: Optional[ConnectionService] = None,
    settings: Optional[ErpSettings] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        service: Pre-built connection service (tests); built from settings otherwise
        settings: Settings to use instead of load_settings()
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler."""
        resolved = settings or load_settings()
        configure_logging(resolved.logging_level, json_format=resolved.log_json)

        connection_service = service or ConnectionService.from_settings(resolved)
        reaper = IdleClientReaper(connection_service, idle_seconds=resolved.client_idle_seconds)
        app.state.connection_service = connection_service
        reaper.start()
        logger.info("ERP integration API starting up...")

        try:
            yield
        finally:
            logger.info("ERP integration API shutting down...")
            await reaper.stop()
            await connection_service.close()
            app.state.connection_service = None

    app = FastAPI(
        title="ERP Integration API",
        description="Tenant ERP connections for NetSuite (OAuth 1.0a TBA) and SAP S/4HANA (OAuth 2.0 + CSRF)",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(health.router, tags=["Health"])
    app.include_router(connections.router, prefix="/connections", tags=["Connections"])

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.server:create_app", factory=True, host="0.0.0.0", port=8000)
