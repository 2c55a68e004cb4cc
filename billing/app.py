"""FastAPI application factory: gateway webhook receiver."""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from billing.config import get_settings
from billing.routers import webhooks


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    # Auto-create tables for SQLite (dev mode); PostgreSQL uses Alembic
    from billing.db.session import dispose_engine, get_engine
    from billing.models import Base

    settings = get_settings()
    if settings.database_url.startswith("sqlite"):
        async with get_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    yield

    await dispose_engine()


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        debug=settings.debug,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
    )
    app.state.settings = settings

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    app.include_router(webhooks.router)
    return app


app = create_app()
