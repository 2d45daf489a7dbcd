"""FastAPI application entrypoint."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from chapterwatch.api.routes import router
from chapterwatch.config import CheckerConfig
from chapterwatch.services.scheduler import CheckScheduler
from chapterwatch.services.updater import ChapterUpdater
from chapterwatch.storage import SqliteSourceStore

logger = logging.getLogger(__name__)


def create_app(
    config: CheckerConfig | None = None, *, updater: ChapterUpdater | None = None
) -> FastAPI:
    """Build the admin app.

    When ``updater`` is given it is used as is and no scheduler is started;
    otherwise the lifespan opens the database and runs the scheduler.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if updater is not None:
            yield
            return

        settings = config or CheckerConfig.load()
        store = SqliteSourceStore(settings.database_path)
        store.connect()
        app.state.updater = ChapterUpdater.from_config(settings, store)
        scheduler = CheckScheduler(app.state.updater)
        scheduler.start()
        try:
            yield
        finally:
            await scheduler.stop()
            store.close()
            app.state.updater = None

    app = FastAPI(
        title="Chapter Watch",
        description="Chapter update checker admin API",
        lifespan=lifespan,
    )
    app.state.updater = updater
    app.include_router(router, prefix="/api")

    @app.get("/health")
    async def health() -> dict:
        return {"ok": True}

    return app


app = create_app()
