"""
Gauntlet leaderboard API router.

Public endpoints for today's board. Scores are Gauntlet streaks; the daily
reset job archives the top 10 and clears the board.
"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, StrictInt

from errors import ValidationError
from stores.leaderboard import MAX_PAGE_SIZE, LeaderboardStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/leaderboard", tags=["leaderboard"])


# =============================================================================
# Request/Response Models
# =============================================================================


class ScoreSubmission(BaseModel):
    nickname: str
    score: StrictInt


class LeaderboardEntryResponse(BaseModel):
    id: int
    nickname: str
    score: int
    submitted_at: str


class LeaderboardPageResponse(BaseModel):
    items: list[LeaderboardEntryResponse]
    nextCursor: Optional[str] = None


class RankResponse(BaseModel):
    rank: int


# =============================================================================
# Dependencies
# =============================================================================

# Set by main.py during startup
_leaderboard_store: Optional[LeaderboardStore] = None


def set_leaderboard_store(store: Optional[LeaderboardStore]) -> None:
    """Set the leaderboard store instance (called from main.py)."""
    global _leaderboard_store
    _leaderboard_store = store


def get_leaderboard_store_dep() -> LeaderboardStore:
    """Dependency to get the leaderboard store."""
    if _leaderboard_store is None:
        raise HTTPException(status_code=503, detail="Leaderboard is not configured")
    return _leaderboard_store


# =============================================================================
# Endpoints
# =============================================================================


@router.get("", response_model=LeaderboardPageResponse)
async def get_leaderboard(
    limit: int = Query(MAX_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    cursor: Optional[str] = Query(None),
    store: LeaderboardStore = Depends(get_leaderboard_store_dep),
):
    """Today's board, best first, paginated with a `score:id` cursor."""
    try:
        entries, next_cursor = await store.top(limit=limit, cursor=cursor)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.reason)
    return {"items": [e.to_dict() for e in entries], "nextCursor": next_cursor}


@router.post("", status_code=201)
async def submit_score(
    body: ScoreSubmission,
    store: LeaderboardStore = Depends(get_leaderboard_store_dep),
):
    try:
        entry = await store.submit(body.nickname, body.score)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.reason)
    return {"success": True, "entry": entry.to_dict()}


@router.get("/rank", response_model=RankResponse)
async def get_rank(
    score: int = Query(...),
    store: LeaderboardStore = Depends(get_leaderboard_store_dep),
):
    """Rank a score would have on today's board."""
    return {"rank": await store.rank(score)}


@router.get("/near")
async def get_nearby(
    score: int = Query(...),
    store: LeaderboardStore = Depends(get_leaderboard_store_dep),
):
    """Entries just above and just below a score."""
    return await store.nearby(score)


@router.get("/history/{day}")
async def get_history(
    day: date,
    store: LeaderboardStore = Depends(get_leaderboard_store_dep),
):
    """Archived top 10 for a past day."""
    return {"date": day.isoformat(), "entries": await store.history(day)}
