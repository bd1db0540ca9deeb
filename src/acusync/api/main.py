"""FastAPI application factory."""
from contextlib import asynccontextmanager

from fastapi import FastAPI

from acusync.api.routes import records, sync as sync_routes
from acusync.engine import close_sync_engine


def create_app() -> FastAPI:
    """Build and return the FastAPI app."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # DB engine and SyncEngine are created lazily by the first request
        yield
        await close_sync_engine()

    app = FastAPI(
        title="Acumatica Sync API",
        description="Acumatica payment and invoice replica",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(sync_routes.router, tags=["sync"])
    app.include_router(records.router, tags=["records"])

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


# Module-level app instance for uvicorn
app = create_app()
