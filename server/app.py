"""FastAPI application factory."""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from server import dependencies
from server.routes import admin, credits, generate, health, jobs
from utils.logger import get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup/shutdown logic."""
    logger.info("FastAPI server starting up")

    required_keys = ["API_KEYS"]
    missing = [k for k in required_keys if not os.getenv(k)]
    if missing:
        logger.warning(f"Missing environment variables: {missing}")
    if not os.getenv("ADMIN_API_KEYS"):
        logger.warning("ADMIN_API_KEYS not set; admin endpoints will reject every key")

    yield

    logger.info("FastAPI server shutting down")
    services = getattr(dependencies.get_services, "_instance", None)
    if services is not None:
        services.shutdown()
    if os.getenv("DATABASE_URL"):
        from db.engine import dispose_engine

        dispose_engine()


def create_app() -> FastAPI:
    """Factory function to create FastAPI application."""
    app = FastAPI(
        title="MODO Generation Dispatch API",
        description="Generation across AI providers with tiered fallback chains and credit accounting",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router)
    app.include_router(generate.router)
    app.include_router(jobs.router)
    app.include_router(credits.router)
    app.include_router(admin.router)

    return app
