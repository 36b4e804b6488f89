"""FastAPI application entrypoint for the Playback Session API."""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.dependencies import shutdown_sessions
from api.routes import health, library, player
from core.config import get_settings
from db.session import create_db_and_tables

# Session, engine and persistence logs go to stdout
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)

# Position polling would flood the access log
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Create tables on startup; persist and release open sessions on shutdown."""
    logger.info("Starting Playback Session API...")
    await create_db_and_tables()
    logger.info("API startup complete")
    yield

    logger.info("Initiating graceful shutdown...")
    try:
        await shutdown_sessions()
    except Exception as e:
        logger.warning("Error during session shutdown: %s", e)

    logger.info("Graceful shutdown complete")


def create_app() -> FastAPI:
    """Build the Playback Session API with its library, player and health routes."""
    config = get_settings()

    app = FastAPI(
        title=config.app_name,
        version=config.app_version,
        description="Playback sessions, sleep timer and listening progress for audiobooks and music",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # Browser players run on other origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins_list,
        allow_origin_regex=r"https?://(localhost|127\.0\.0\.1)(:\d+)?",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router, tags=["Health"])
    app.include_router(library.router, prefix="/library", tags=["Library"])
    app.include_router(player.router, prefix="/player", tags=["Player"])

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    config = get_settings()
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        workers=config.workers if not config.debug else 1,
    )
