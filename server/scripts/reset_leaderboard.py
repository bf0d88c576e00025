#!/usr/bin/env python3
"""
Daily Gauntlet leaderboard reset.

Archives the top 10 of the live board under a date (yesterday by default),
then clears the board. Meant to run from cron shortly after midnight UTC.

Usage:
    python scripts/reset_leaderboard.py [YYYY-MM-DD]

Example:
    python scripts/reset_leaderboard.py 2026-10-16
"""

import asyncio
import os
import sys
from datetime import date, datetime, timedelta, timezone

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import config
from stores.leaderboard import LeaderboardStore


def archive_date(argv: list[str]) -> date:
    """Day to archive under: the argument, or yesterday (UTC)."""
    if len(argv) > 1:
        return date.fromisoformat(argv[1])
    return datetime.now(timezone.utc).date() - timedelta(days=1)


async def reset_leaderboard(day: date) -> int:
    """Archive and truncate. Returns the number of entries cleared."""
    if not config.REDIS_URL:
        print("Error: REDIS_URL not configured in environment or .env file")
        sys.exit(1)

    print("Connecting to Redis...")
    store = await LeaderboardStore.create(config.REDIS_URL, config.LEADERBOARD_KEY_PREFIX)
    try:
        removed = await store.archive_and_reset(day)
        archived = await store.history(day)
    finally:
        await store.close()

    print(f"Archived top {len(archived)} for {day.isoformat()}")
    for entry in archived:
        print(f"  #{entry['rank']} {entry['nickname']}: {entry['score']}")
    print(f"Reset complete. Deleted {removed} entries")
    return removed


def main():
    try:
        day = archive_date(sys.argv)
    except ValueError:
        print(__doc__)
        sys.exit(1)

    asyncio.run(reset_leaderboard(day))


if __name__ == "__main__":
    main()
