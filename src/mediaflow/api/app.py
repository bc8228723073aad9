from __future__ import annotations

from fastapi import FastAPI

from mediaflow import __version__
from mediaflow.api.routers.assets import router as assets_router
from mediaflow.api.routers.health import router as health_router
from mediaflow.api.routers.jobs import router as jobs_router
from mediaflow.api.routers.uploads import router as uploads_router
from mediaflow.config import get_settings
from mediaflow.database import init_db


def create_app() -> FastAPI:
    app = FastAPI(title="Mediaflow", version=__version__)
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(uploads_router, prefix="/api/v1")
    app.include_router(assets_router, prefix="/api/v1")
    app.include_router(jobs_router, prefix="/api/v1")

    @app.on_event("startup")
    def _startup() -> None:  # pragma: no cover
        # Dev convenience; production runs `mediaflow db upgrade` instead.
        settings = get_settings()
        if settings.ENVIRONMENT == "dev":
            init_db(create_tables=True)

    return app


app = create_app()
