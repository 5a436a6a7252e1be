"""
Live Battle API Server

FastAPI server exposing battle lobbies, matchmaking, live scoring and
rewards, plus WebSocket channels for real-time battle events.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging
import os
import uvicorn
from slowapi import _rate_limit_exceeded_handler  # type: ignore
from slowapi.errors import RateLimitExceeded  # type: ignore

from battle_backend.api.routes import router, limiter as routes_limiter
from battle_backend.database import db
from battle_backend.services.battle_cleanup_service import get_battle_cleanup_service
from battle_backend.services.redis_channel_relay import get_redis_channel_relay
from battle_backend.services.redis_service import close_redis_connection
from battle_backend.utils.constants import CHANNEL_BACKEND

# Set up logging
# Allow log level to be configured via environment variable (default: INFO)
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, log_level, logging.INFO)
logging.basicConfig(
    level=numeric_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan handler for startup and shutdown events."""
    logger.info("Starting up Live Battle API...")

    # Fallback for local runs without migrations applied
    try:
        await db.init_database()
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)

    # Start battle cleanup worker (invitation/acceptance timeouts)
    try:
        cleanup_service = get_battle_cleanup_service()
        cleanup_service.start()
        logger.info("Battle cleanup worker started")
    except Exception as e:
        logger.error(f"Failed to start battle cleanup worker: {e}", exc_info=True)

    # Other processes publish through Redis; feed their events to local sockets
    if CHANNEL_BACKEND == "redis":
        try:
            get_redis_channel_relay().start()
        except Exception as e:
            logger.error(f"Failed to start Redis channel relay: {e}", exc_info=True)

    yield  # App is running

    logger.info("Shutting down Live Battle API...")

    try:
        cleanup_service = get_battle_cleanup_service()
        cleanup_service.stop()
        logger.info("Battle cleanup worker stopped")
    except Exception as e:
        logger.error(f"Error stopping battle cleanup worker: {e}", exc_info=True)

    if CHANNEL_BACKEND == "redis":
        get_redis_channel_relay().stop()

    try:
        await close_redis_connection()
        logger.info("Redis connection closed")
    except Exception as e:
        logger.error(f"Error closing Redis connection: {e}", exc_info=True)


app = FastAPI(
    title="Live Battle API",
    description="Team battles for live streams: lobbies, matchmaking, gifts and rewards",
    version="1.0.0",
    lifespan=lifespan,
)

# Setup rate limiter
app.state.limiter = routes_limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware, origins configured via ALLOWED_ORIGINS env var
allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:8081").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(router)


@app.get("/api/health")
async def health():
    """Liveness probe."""
    return {"status": "ok"}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
