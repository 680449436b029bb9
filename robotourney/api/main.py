"""
Robotics Tournament API Server

FastAPI server for Swiss rankings, round generation, match scoring, and the
live broadcast channel used by audience displays and control panels.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging
import os
import uvicorn

from robotourney.alembic.env import run_migrations_online_programmatic
from robotourney.api.routes import router
from robotourney.database import db
from robotourney.services.broadcast_service import BroadcastService
from robotourney.services.match_timer import MatchTimerService
from robotourney.services.swiss_scheduler import SwissScheduler

# Set up logging
# Allow log level to be configured via environment variable (default: INFO)
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, log_level, logging.INFO)
logging.basicConfig(
    level=numeric_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

IS_TEST_ENV = os.getenv("ENV", "").lower() == "test"


def init_services(app: FastAPI) -> None:
    """Build the long-lived services routes depend on."""
    app.state.broadcast = BroadcastService()
    app.state.timers = MatchTimerService(app.state.broadcast)
    app.state.swiss_scheduler = SwissScheduler()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan handler for startup and shutdown events."""
    # Startup
    logger.info("Starting up Robotics Tournament API...")
    init_services(app)

    if not IS_TEST_ENV:
        # Also run by the container entrypoint in production
        try:
            logger.info("Running database migrations...")
            await run_migrations_online_programmatic()
            logger.info("Database migrations completed")
        except Exception as e:
            logger.error(f"Database migration failed: {e}", exc_info=True)
            if os.getenv("ENV") == "production":
                raise

        # Fallback for tables that are not in migrations yet
        try:
            await db.init_database()
            logger.info("Database initialized")
        except Exception as e:
            logger.error(f"Database initialization failed: {e}", exc_info=True)
            if os.getenv("ENV") == "production":
                raise

    yield  # App is running

    # Shutdown
    logger.info("Shutting down Robotics Tournament API...")
    try:
        await app.state.timers.shutdown()
    except Exception as e:
        logger.error(f"Error stopping match timers: {e}", exc_info=True)
    await db.engine.dispose()


app = FastAPI(
    title="Robotics Tournament API",
    description="Swiss rankings, round generation, match scoring, and live broadcast",
    version="1.0.0",
    lifespan=lifespan,
)

# Add CORS middleware - origins configured via ALLOWED_ORIGINS env var
allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(router)


@app.get("/api/health")
async def health():
    """Liveness check."""
    return {"status": "healthy"}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
