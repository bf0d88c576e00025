"""FastAPI WebSocket server for Perudo."""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional

import redis.asyncio as redis
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from ai import (
    CPU_PROFILES,
    _cpu_profiles,
    _room_used_profiles,
    get_all_profiles,
    get_available_profiles,
    reset_all_profiles,
)
from config import config
from connections import ConnectionManager
from errors import NotFoundError, ValidationError
from gauntlet import GauntletManager
from handlers import ConnectionContext, dispatch_message
from logging_config import connection_id_var, setup_logging
from middleware import RequestIDMiddleware
from protocol import generate_client_id, is_valid_client_id, welcome_message
from room import RoomManager, default_settings
from services.spectator import close_spectator_manager, get_spectator_manager
from stores.leaderboard import LeaderboardStore

# Initialize Sentry if configured
if config.SENTRY_DSN:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.starlette import StarletteIntegration

    sentry_sdk.init(
        dsn=config.SENTRY_DSN,
        environment=config.ENVIRONMENT,
        traces_sample_rate=0.1 if config.ENVIRONMENT == "production" else 1.0,
        integrations=[
            StarletteIntegration(transaction_style="endpoint"),
            FastApiIntegration(transaction_style="endpoint"),
        ],
    )
    logging.getLogger(__name__).info("Sentry error tracking initialized")

# Configure logging based on environment
setup_logging(
    level=config.LOG_LEVEL,
    environment=config.ENVIRONMENT,
)
logger = logging.getLogger(__name__)


# =============================================================================
# Shared services
# =============================================================================

room_manager = RoomManager()
spectator_manager = get_spectator_manager()
connection_manager = ConnectionManager(room_manager, spectator_manager)
gauntlet_manager = GauntletManager(room_manager)

_redis_client: Optional[redis.Redis] = None
_leaderboard_store: Optional[LeaderboardStore] = None
_cleanup_task: Optional[asyncio.Task] = None
_open_sockets: set[WebSocket] = set()


async def _periodic_room_cleanup():
    """Remove rooms nobody has been connected to for ROOM_TIMEOUT_MINUTES."""
    while True:
        try:
            await asyncio.sleep(config.ROOM_CLEANUP_INTERVAL_SECONDS)
            removed = await room_manager.cleanup_idle_rooms(config.ROOM_TIMEOUT_MINUTES * 60)
            pruned = gauntlet_manager.prune()
            if removed or pruned:
                logger.info(f"Cleanup removed {removed} idle rooms, {pruned} Gauntlet runs")
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error(f"Room cleanup failed: {e}")


async def _init_redis():
    """Connect to Redis for the leaderboard. The game itself runs without it."""
    global _redis_client, _leaderboard_store
    try:
        _redis_client = redis.from_url(config.REDIS_URL, decode_responses=True)
        await _redis_client.ping()
        _leaderboard_store = LeaderboardStore(_redis_client, config.LEADERBOARD_KEY_PREFIX)
        logger.info("Redis client connected, leaderboard enabled")
    except Exception as e:
        logger.warning(f"Redis connection failed: {e} - leaderboard disabled")
        _redis_client = None
        _leaderboard_store = None


async def _close_all_websockets():
    """Close all active WebSocket connections gracefully."""
    for websocket in list(_open_sockets):
        try:
            await websocket.close(code=1001, reason="Server shutting down")
        except Exception as e:
            logger.debug(f"Closing socket on shutdown failed: {e}")
    _open_sockets.clear()
    logger.info("All WebSocket connections closed")


async def _shutdown_services():
    """Gracefully shut down all services."""
    if _cleanup_task:
        _cleanup_task.cancel()
        try:
            await _cleanup_task
        except asyncio.CancelledError:
            pass
        logger.info("Room cleanup task stopped")

    await _close_all_websockets()

    for code in list(room_manager.rooms):
        await room_manager.remove_room(code)
    gauntlet_manager.runs.clear()
    reset_all_profiles()
    logger.info("All rooms and CPU profiles cleaned up")

    close_spectator_manager()

    if _redis_client:
        await _redis_client.close()
        logger.info("Redis connection closed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for async service initialization."""
    global _cleanup_task

    if config.REDIS_URL:
        await _init_redis()
    else:
        logger.warning("REDIS_URL not configured - leaderboard endpoints will return 503")

    from routers.health import set_health_dependencies
    from routers.leaderboard import set_leaderboard_store
    set_health_dependencies(
        redis_client=_redis_client,
        room_manager=room_manager,
        spectator_manager=spectator_manager,
        gauntlet_manager=gauntlet_manager,
    )
    set_leaderboard_store(_leaderboard_store)

    _cleanup_task = asyncio.create_task(_periodic_room_cleanup())

    logger.info(f"Perudo server started (environment={config.ENVIRONMENT})")

    yield

    logger.info("Shutdown initiated...")
    await _shutdown_services()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Perudo",
    debug=config.DEBUG,
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestIDMiddleware)


# =============================================================================
# Routers
# =============================================================================

from routers.health import router as health_router
from routers.leaderboard import router as leaderboard_router
app.include_router(health_router)
app.include_router(leaderboard_router)


# =============================================================================
# Room lookup
# =============================================================================

class CreateRoomRequest(BaseModel):
    settings: dict = Field(default_factory=dict)


@app.post("/api/rooms", status_code=201)
async def create_room(body: Optional[CreateRoomRequest] = None):
    """Create an empty room; the first player to join becomes host."""
    try:
        settings = default_settings().updated(body.settings if body else {})
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.reason)
    room = room_manager.create_room(settings=settings)
    return {"roomCode": room.code, "settings": settings.to_dict()}


@app.get("/api/rooms/{code}")
async def get_room_info(code: str):
    try:
        room = room_manager.require_room(code)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.reason)
    return room.info()


# =============================================================================
# Debug Endpoints
# =============================================================================

def _require_debug():
    if not config.DEBUG:
        raise HTTPException(status_code=404, detail="Not found")


@app.get("/api/debug/cpu-profiles")
async def get_cpu_profile_status():
    """Get current CPU profile allocation status."""
    _require_debug()
    return {
        "total_profiles": len(CPU_PROFILES),
        "profiles": get_all_profiles(),
        "room_profiles": {
            room_code: list(profiles)
            for room_code, profiles in _room_used_profiles.items()
        },
        "cpu_mappings": {
            cpu_id: {"room": room_code, "profile": profile.name}
            for cpu_id, (room_code, profile) in _cpu_profiles.items()
        },
        "active_rooms": len(room_manager.rooms),
        "rooms": {
            code: {
                "players": len(room.game.players),
                "cpu_players": [p.name for p in room.get_cpu_players()],
                "available_profiles": [p["name"] for p in get_available_profiles(code)],
            }
            for code, room in room_manager.rooms.items()
        },
    }


@app.get("/api/debug/rooms/{code}/events")
async def get_room_events(code: str):
    """Recent GameEvents of a room, oldest first."""
    _require_debug()
    try:
        room = room_manager.require_room(code)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.reason)
    return {
        "roomCode": room.code,
        "version": room.version,
        "events": [event.to_dict() for event in room.events],
    }


# =============================================================================
# WebSocket
# =============================================================================

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()
    _open_sockets.add(websocket)

    client_id = websocket.query_params.get("clientId")
    if not is_valid_client_id(client_id):
        client_id = generate_client_id()

    connection_id = str(uuid.uuid4())
    token = connection_id_var.set(connection_id)
    logger.debug(f"WebSocket connected as {client_id}")

    ctx = ConnectionContext(
        websocket=websocket,
        connection_id=connection_id,
        client_id=client_id,
    )

    # Shared dependencies passed to every handler
    handler_deps = dict(
        connections=connection_manager,
        gauntlet=gauntlet_manager,
    )

    try:
        await websocket.send_json(welcome_message(client_id))
        while True:
            raw = await websocket.receive_text()
            await dispatch_message(raw, ctx, **handler_deps)
    except WebSocketDisconnect:
        logger.debug(f"WebSocket {client_id} disconnected")
    finally:
        _open_sockets.discard(websocket)
        await connection_manager.disconnect(ctx)
        connection_id_var.reset(token)


def run():
    """Run the server using uvicorn."""
    import uvicorn

    logger.info(f"Starting Perudo server on {config.HOST}:{config.PORT}")
    logger.info(f"Debug mode: {config.DEBUG}")

    uvicorn.run(
        "main:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG,
        log_level=config.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
