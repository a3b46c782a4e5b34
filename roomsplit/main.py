"""roomsplit FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

from roomsplit.api.billing import router as billing_router
from roomsplit.config import settings
from roomsplit.models import Base
from roomsplit.services import engine
from roomsplit.services.logging import setup_server_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle (startup and shutdown)."""
    # Startup: Initialize database tables
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables initialized")
    yield
    logger.info("Application shutting down")


def create_app() -> FastAPI:
    """Build the FastAPI application with the billing router mounted."""
    app = FastAPI(
        title=settings.api_title,
        description="Billing proration and reconciliation for shared apartments",
        version=settings.api_version,
        lifespan=lifespan,
    )
    app.include_router(billing_router)

    @app.get("/health")
    async def health_check() -> dict:
        """Health check endpoint for monitoring."""
        return {"status": "ok"}

    return app


def main(host: str = "0.0.0.0", port: int = 8000) -> None:
    """Run the API server."""
    load_dotenv()
    setup_server_logging(settings)
    logger.info("Starting roomsplit API on %s:%d", host, port)
    uvicorn.run(create_app(), host=host, port=port)


if __name__ == "__main__":
    main()
