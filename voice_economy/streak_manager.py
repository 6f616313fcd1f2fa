"""Daily activity streaks, advanced once per UTC day on session close."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from .database import EconomyDatabase
from .utils import date_str, now_utc


class StreakManager:

    def __init__(
        self,
        database: EconomyDatabase,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._db = database
        self._logger = logger or logging.getLogger("economy.streaks")
        self._clock = clock

    async def update_streak(self, user_id: str, guild_id: str) -> int | None:
        """Advance the streak for today. Returns the current streak, or None on failure.

        Same day: unchanged. Consecutive day: +1. Any gap: back to 1.
        """
        try:
            user = await self._db.get_user(user_id, guild_id)
            if user is None:
                self._logger.warning("Cannot update streak: %s not found in %s", user_id, guild_id)
                return None

            now = self._clock()
            today = date_str(now)
            last = user.get("last_streak_date")
            current = user.get("current_streak") or 0
            if last == today:
                return current

            if last == date_str(now - timedelta(days=1)):
                current += 1
                self._logger.info("Streak for %s in %s extended to %d days", user_id, guild_id, current)
            else:
                current = 1
            longest = max(current, user.get("longest_streak") or 0)
            await self._db.update_streak(user_id, guild_id, current, longest, today)
            return current
        except Exception:
            self._logger.exception("Failed to update streak for %s in %s", user_id, guild_id)
            return None

    async def was_active_today(self, user_id: str, guild_id: str) -> bool:
        try:
            user = await self._db.get_user(user_id, guild_id)
        except Exception:
            self._logger.exception("Failed to read streak for %s in %s", user_id, guild_id)
            return False
        return bool(user) and user.get("last_streak_date") == date_str(self._clock())

    async def get_current_streak(self, user_id: str, guild_id: str) -> int:
        try:
            user = await self._db.get_user(user_id, guild_id)
        except Exception:
            self._logger.exception("Failed to read streak for %s in %s", user_id, guild_id)
            return 0
        return (user or {}).get("current_streak") or 0
