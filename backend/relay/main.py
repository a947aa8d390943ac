"""Room Relay backend application.

Real-time room-based chat relay: clients connect over a WebSocket, join
named rooms, exchange text/file messages, see presence and typing
indicators, and page through message history.

Modules:
    - chat: session registry, room state, fan-out and the event coordinator
    - persistence: optional DuckDB mirror of committed messages
    - monitoring: request metrics reported by /health
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from relay.chat.broadcaster import WebSocketBroadcaster
from relay.chat.coordinator import EventCoordinator, get_coordinator, set_coordinator
from relay.chat.registry import SessionRegistry
from relay.chat.router import router as chat_router
from relay.config import get_config
from relay.monitoring import metrics, track_requests
from relay.persistence.bridge import PersistenceBridge

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

for _noisy in ("uvicorn.access", "duckdb"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def build_coordinator(config=None) -> EventCoordinator:
    """Wire a coordinator with a WebSocket broadcaster and persistence bridge."""
    config = config or get_config()
    registry = SessionRegistry()
    return EventCoordinator(
        WebSocketBroadcaster(registry),
        registry=registry,
        persistence=PersistenceBridge.from_settings(config.persistence),
        default_room=config.chat.default_room,
        preset_rooms=config.chat.rooms,
        history_limit=config.chat.history_limit,
        page_size=config.chat.page_size,
        max_page_size=config.chat.max_page_size,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    coordinator = build_coordinator(config)
    set_coordinator(coordinator)
    metrics.reset()

    logger.info(f"Environment: {config.server.environment}")
    logger.info(
        f"Database: {'DuckDB' if coordinator.persistence.is_connected else 'In-memory'}"
    )

    yield  # Application runs here

    # Shutdown
    await coordinator.persistence.close()
    set_coordinator(None)
    logger.info("Application shutdown complete")


app = FastAPI(
    title="Room Relay API",
    description="Real-time room-based chat relay",
    version=VERSION,
    lifespan=lifespan,
)

_config = get_config()
app.add_middleware(
    CORSMiddleware,
    allow_origins=_config.server.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)
app.middleware("http")(track_requests(slow_log=_config.server.is_production))

app.include_router(chat_router)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 404:
        return JSONResponse({"error": "Route not found"}, status_code=404)
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code, headers=exc.headers)


@app.get("/health")
async def health() -> dict:
    """Health check with storage mode and request metrics."""
    config = get_config()
    coordinator = get_coordinator()
    connected = coordinator is not None and coordinator.persistence.is_connected
    snapshot = metrics.snapshot()
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": snapshot["uptime"],
        "database": "connected" if connected else "in-memory",
        "environment": config.server.environment,
        "metrics": {
            "requests": snapshot["requests"],
            "errors": snapshot["errors"],
            "errorRate": snapshot["errorRate"],
            "memory": snapshot["memory"],
        },
    }


@app.get("/")
async def root() -> dict:
    config = get_config()
    return {
        "message": "Room Relay server is running",
        "version": VERSION,
        "environment": config.server.environment,
    }


def run() -> None:
    """Serve the relay with uvicorn using the configured host and port."""
    import uvicorn

    config = get_config()
    uvicorn.run(
        "relay.main:app",
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
    )


if __name__ == "__main__":
    run()
