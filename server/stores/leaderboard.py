"""
Redis-backed Gauntlet leaderboard.

A simple keyed score table for the current day plus a per-day archive of the
top 10. It shares no state with rooms; the daily reset job archives then
truncates it.

Key patterns ({prefix} defaults to perudo:leaderboard):
- {prefix}:board            -> Sorted set (entry id -> composite score)
- {prefix}:entries          -> Hash (entry id -> JSON entry)
- {prefix}:next_id          -> String counter for entry ids
- {prefix}:history:{date}   -> List (archived JSON entries, rank order)

Ordering is score descending, then earliest submission first. Both are
folded into one sorted-set score so Redis does the ordering.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Optional

import redis.asyncio as redis

from errors import ValidationError

logger = logging.getLogger(__name__)

MIN_SCORE = 0
MAX_SCORE = 1000
MIN_NICKNAME_LENGTH = 2
MAX_NICKNAME_LENGTH = 30
NICKNAME_RE = re.compile(r"^[a-zA-Z0-9\s]+$")

MAX_PAGE_SIZE = 100
ARCHIVE_SIZE = 10
NEARBY_COUNT = 3

# Entry ids below this keep tie order inside one score bucket
_ID_SPACE = 10**9


def composite_score(score: int, entry_id: int) -> int:
    """Sorted-set score: higher score first, then lower id first."""
    return score * _ID_SPACE + (_ID_SPACE - 1 - entry_id)


@dataclass
class LeaderboardEntry:
    """One submitted Gauntlet score."""

    id: int
    nickname: str
    score: int
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "nickname": self.nickname,
            "score": self.score,
            "submitted_at": self.submitted_at.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, d: dict) -> "LeaderboardEntry":
        submitted_at = d.get("submitted_at")
        if isinstance(submitted_at, str):
            submitted_at = datetime.fromisoformat(submitted_at)
        return cls(
            id=int(d["id"]),
            nickname=d["nickname"],
            score=int(d["score"]),
            submitted_at=submitted_at or datetime.now(timezone.utc),
        )

    @classmethod
    def from_json(cls, raw) -> "LeaderboardEntry":
        if isinstance(raw, bytes):
            raw = raw.decode()
        return cls.from_dict(json.loads(raw))


def validate_submission(nickname, score) -> tuple[str, int]:
    """Check a submission, raising ValidationError with a client-facing reason."""
    if not nickname or not isinstance(nickname, str):
        raise ValidationError("Nickname is required", "INVALID_NICKNAME")
    if not MIN_NICKNAME_LENGTH <= len(nickname) <= MAX_NICKNAME_LENGTH:
        raise ValidationError(
            f"Nickname must be between {MIN_NICKNAME_LENGTH} and {MAX_NICKNAME_LENGTH} characters",
            "INVALID_NICKNAME",
        )
    if not NICKNAME_RE.match(nickname):
        raise ValidationError(
            "Nickname must contain only alphanumeric characters and spaces", "INVALID_NICKNAME"
        )
    if not isinstance(score, int) or isinstance(score, bool):
        raise ValidationError("Score must be an integer", "INVALID_SCORE")
    if not MIN_SCORE <= score <= MAX_SCORE:
        raise ValidationError(f"Score must be between {MIN_SCORE} and {MAX_SCORE}", "INVALID_SCORE")
    return nickname, score


class LeaderboardStore:
    """Redis-backed leaderboard for Gauntlet streaks."""

    def __init__(self, redis_client: redis.Redis, key_prefix: str = "perudo:leaderboard"):
        """
        Args:
            redis_client: Async Redis client (decode_responses=True).
            key_prefix: Namespace for every key this store touches.
        """
        self.redis = redis_client
        self.prefix = key_prefix
        self.board_key = f"{key_prefix}:board"
        self.entries_key = f"{key_prefix}:entries"
        self.id_key = f"{key_prefix}:next_id"

    @classmethod
    async def create(cls, redis_url: str, key_prefix: str = "perudo:leaderboard") -> "LeaderboardStore":
        """Connect to Redis and verify the connection."""
        client = redis.from_url(redis_url, decode_responses=True)
        await client.ping()
        logger.info("LeaderboardStore connected to Redis")
        return cls(client, key_prefix)

    async def close(self) -> None:
        await self.redis.close()

    def history_key(self, day: date) -> str:
        return f"{self.prefix}:history:{day.isoformat()}"

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def submit(self, nickname, score) -> LeaderboardEntry:
        """Validate and store a score. Returns the stored entry."""
        nickname, score = validate_submission(nickname, score)
        entry_id = int(await self.redis.incr(self.id_key))
        entry = LeaderboardEntry(id=entry_id, nickname=nickname, score=score)

        pipe = self.redis.pipeline(transaction=True)
        pipe.hset(self.entries_key, str(entry_id), entry.to_json())
        pipe.zadd(self.board_key, {str(entry_id): composite_score(score, entry_id)})
        await pipe.execute()

        logger.info(f"Leaderboard entry {entry_id}: {nickname} scored {score}")
        return entry

    async def archive_and_reset(self, day: date) -> int:
        """
        Archive the top 10 under `day`, then truncate the live board.

        Returns:
            Number of entries removed from the live board.
        """
        total = int(await self.redis.zcard(self.board_key))
        top = await self._load(await self.redis.zrevrange(self.board_key, 0, ARCHIVE_SIZE - 1))

        pipe = self.redis.pipeline(transaction=True)
        history_key = self.history_key(day)
        for rank, entry in enumerate(top, start=1):
            pipe.rpush(history_key, json.dumps({**entry.to_dict(), "rank": rank, "date": day.isoformat()}))
        pipe.delete(self.board_key, self.entries_key)
        await pipe.execute()

        logger.info(f"Leaderboard reset: archived {len(top)} of {total} entries for {day}")
        return total

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def _load(self, ids: list) -> list[LeaderboardEntry]:
        if not ids:
            return []
        raw = await self.redis.hmget(self.entries_key, [str(i) for i in ids])
        return [LeaderboardEntry.from_json(r) for r in raw if r is not None]

    async def top(self, limit: int = MAX_PAGE_SIZE, cursor: Optional[str] = None) -> tuple[list[LeaderboardEntry], Optional[str]]:
        """
        One page of the board, best first.

        Args:
            limit: Page size (capped at 100).
            cursor: "score:id" of the last entry of the previous page.

        Returns:
            (entries, next_cursor); next_cursor is None on the last page.
        """
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        upper = "+inf"
        if cursor:
            try:
                cursor_score, cursor_id = (int(part) for part in cursor.split(":"))
            except ValueError:
                raise ValidationError("Malformed cursor", "INVALID_CURSOR")
            upper = f"({composite_score(cursor_score, cursor_id)}"

        ids = await self.redis.zrevrangebyscore(self.board_key, upper, "-inf", start=0, num=limit + 1)
        entries = await self._load(ids)

        next_cursor = None
        if len(entries) > limit:
            entries = entries[:limit]
            last = entries[-1]
            next_cursor = f"{last.score}:{last.id}"
        return entries, next_cursor

    async def rank(self, score: int) -> int:
        """1-based rank a score would have: one more than the strictly better scores."""
        better = await self.redis.zcount(self.board_key, (score + 1) * _ID_SPACE, "+inf")
        return int(better) + 1

    async def nearby(self, score: int) -> dict:
        """Up to three entries just above and just below a score."""
        above_ids = await self.redis.zrangebyscore(
            self.board_key, (score + 1) * _ID_SPACE, "+inf", start=0, num=NEARBY_COUNT,
        )
        below_ids = await self.redis.zrevrangebyscore(
            self.board_key, f"({score * _ID_SPACE}", "-inf", start=0, num=NEARBY_COUNT,
        )
        above = list(reversed(await self._load(above_ids)))
        below = await self._load(below_ids)
        return {
            "above": [e.to_dict() for e in above],
            "below": [e.to_dict() for e in below],
        }

    async def history(self, day: date) -> list[dict]:
        raw = await self.redis.lrange(self.history_key(day), 0, -1)
        return [json.loads(r) for r in raw]

