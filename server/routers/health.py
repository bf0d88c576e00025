"""
Health check endpoints for production deployment.

Provides:
- /health - Basic liveness check (is the app running?)
- /ready - Readiness check (can the app handle requests?)
- /metrics - Application metrics for monitoring
"""

import json
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Response

from game import GamePhase

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

# Service references (set during app initialization)
_redis_client = None
_room_manager = None
_spectator_manager = None
_gauntlet_manager = None


def set_health_dependencies(
    redis_client=None,
    room_manager=None,
    spectator_manager=None,
    gauntlet_manager=None,
):
    """Set dependencies for health checks."""
    global _redis_client, _room_manager, _spectator_manager, _gauntlet_manager
    _redis_client = redis_client
    _room_manager = room_manager
    _spectator_manager = spectator_manager
    _gauntlet_manager = gauntlet_manager


@router.get("/health")
async def health_check():
    """
    Basic liveness check - is the app running?

    This endpoint should always return 200 if the process is alive.
    """
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/ready")
async def readiness_check():
    """
    Readiness check - can the app handle requests?

    Redis is optional (only the leaderboard needs it), but if it is
    configured and unreachable the app reports degraded with a 503.
    """
    checks = {}
    overall_healthy = True

    if _redis_client is not None:
        try:
            await _redis_client.ping()
            checks["redis"] = {"status": "ok"}
        except Exception as e:
            logger.warning(f"Redis health check failed: {e}")
            checks["redis"] = {"status": "error", "message": str(e)}
            overall_healthy = False
    else:
        checks["redis"] = {"status": "not_configured"}

    checks["rooms"] = {"status": "ok" if _room_manager is not None else "not_configured"}

    status_code = 200 if overall_healthy else 503
    return Response(
        content=json.dumps({
            "status": "ok" if overall_healthy else "degraded",
            "checks": checks,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }),
        status_code=status_code,
        media_type="application/json",
    )


@router.get("/metrics")
async def metrics():
    """
    Expose application metrics for monitoring.

    Returns operational metrics useful for dashboards and alerting.
    """
    metrics_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    if _room_manager is not None:
        rooms = list(_room_manager.rooms.values())
        metrics_data.update({
            "active_rooms": len(rooms),
            "total_players": sum(len(r.game.players) for r in rooms),
            "connected_humans": sum(r.connected_human_count() for r in rooms),
            "cpu_players": sum(len(r.get_cpu_players()) for r in rooms),
            "games_in_progress": sum(1 for r in rooms if r.game.in_progress),
            "games_over": sum(1 for r in rooms if r.game.phase == GamePhase.GAME_OVER),
        })

    if _spectator_manager is not None:
        watched = _spectator_manager.get_rooms_with_spectators()
        metrics_data["spectators"] = sum(watched.values())
        metrics_data["watched_rooms"] = len(watched)

    if _gauntlet_manager is not None:
        runs = list(_gauntlet_manager.runs.values())
        metrics_data["gauntlet_runs_active"] = sum(1 for r in runs if not r.over)
        metrics_data["gauntlet_best_streak"] = max((r.streak for r in runs), default=0)

    if _redis_client is not None:
        try:
            metrics_data["redis_connected"] = bool(await _redis_client.ping())
        except Exception as e:
            logger.warning(f"Failed to collect Redis metrics: {e}")
            metrics_data["redis_connected"] = False

    return metrics_data
