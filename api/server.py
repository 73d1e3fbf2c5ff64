"""FastAPI server for registry invoice reconciliation.

Main entry point for the API server.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import auth, health, invoices, polling, webhooks
from core.config import RegistryConfig
from core.observability.logging import configure_logging, get_logger
from runtime import get_runtime

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    config = RegistryConfig.from_env()
    configure_logging(level=config.log_level, json_format=config.log_json)
    runtime = get_runtime()
    logger.info(f"Registry reconciliation API starting up (registry: {runtime.config.api_base_url})")

    yield

    logger.info("Registry reconciliation API shutting down")
    await runtime.close()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Registry Reconciliation API",
        description="Keeps local e-invoice status in step with the registry via submission, webhooks and polling",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router, tags=["Health"])
    app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
    app.include_router(auth.router, prefix="/registry/auth", tags=["Authentication"])
    app.include_router(polling.router, prefix="/registry/status-polling", tags=["Polling"])
    app.include_router(invoices.router, prefix="/registry/invoices", tags=["Invoices"])

    return app


# Default app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.server:app", host="0.0.0.0", port=8000, reload=True)
