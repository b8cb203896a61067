"""
Application entry point.

The FastAPI lifespan wires the engine and runs the scheduler; uvicorn
turns SIGINT/SIGTERM into lifespan shutdown, which stops it gracefully.

    uvicorn main:app --host 0.0.0.0 --port 8000
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from config import ensure_directories, load_settings, set_log_level
from database import dispose_db
from engine_context import build_context
from log_utils import configure_logging
from routers.jobs import router as jobs_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = load_settings()
    configure_logging(settings.log_level)
    set_log_level(settings.log_level)
    settings.validate_for_engine()
    ensure_directories(settings)

    context = build_context(settings)
    app.state.context = context
    await context.engine.start()
    logger.info("Catalog engine started")
    try:
        yield
    finally:
        logger.info("Shutting down catalog engine")
        await context.engine.stop()
        await context.close()
        dispose_db()
        app.state.context = None


def create_app() -> FastAPI:
    app = FastAPI(
        title="IPTV Catalog Engine",
        description="Provider catalog ingestion, TMDB matching and title merge",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.context = None

    @app.get("/api/health")
    async def health_check():
        context = app.state.context
        return {
            "status": "healthy",
            "service": "iptv-catalog-engine",
            "scheduler_running": bool(context and context.engine.is_running),
        }

    app.include_router(jobs_router)
    return app


app = create_app()
