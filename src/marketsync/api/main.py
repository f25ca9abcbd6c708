"""FastAPI application factory."""
from contextlib import asynccontextmanager

from fastapi import FastAPI

from marketsync.api.routes import sync as sync_routes
from marketsync.db.engine import create_tables, get_engine
from marketsync.sync.service import close_sync_service


def create_app() -> FastAPI:
    """Build and return the FastAPI app."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Create tables on startup (idempotent)
        create_tables(get_engine())
        yield
        await close_sync_service()

    app = FastAPI(
        title="Marketsync API",
        description="Marketplace sync pipeline control surface",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])

    return app


# Module-level app instance for uvicorn
app = create_app()
