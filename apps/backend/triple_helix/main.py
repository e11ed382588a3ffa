from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware

from .config import settings
from .cycler import TubeCycler
from .logging import configure_logging, logger
from .middleware import AccessLogAndMetricsMiddleware, RequestIDMiddleware
from .routers import health, sync, tubes
from .scheduler import build_scheduler_from_settings


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the scheduler on startup and flush pending progress on shutdown.

    なぜ: 終了時に最後の同期を試みないと、直近の習得結果（即時同期待ち）が
    失われ、次回起動時に同じスティッチが再出題される。
    """

    if app.state.scheduler is None:
        app.state.scheduler = build_scheduler_from_settings()
    cycler: TubeCycler = app.state.scheduler
    if settings.sync_auto_start:
        cycler.sync.start()
    try:
        yield
    finally:
        report = cycler.sync.stop(final_flush=True)
        logger.info(
            "scheduler_shutdown",
            delivered=len(report.delivered) if report else 0,
            failed=len(report.failed) if report else 0,
        )


def create_app(cycler: TubeCycler | None = None) -> FastAPI:
    """Create and configure the FastAPI application instance.

    ``cycler`` を渡した場合は起動時の構築を省略してそれを使う（テスト用）。
    """
    configure_logging()
    app = FastAPI(title="Triple-Helix Scheduler API", version="0.1.0", lifespan=_lifespan)
    app.state.scheduler = cycler

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # Starlette では後から追加したミドルウェアが外側で実行される。
    # RequestID → AccessLog の順に内側から並べ、AccessLog が採番済みの ID を記録する。
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(AccessLogAndMetricsMiddleware)

    app.include_router(health.router)
    app.include_router(tubes.router)
    app.include_router(sync.router)
    return app


app = create_app()
