"""Reset boundary manager — lazy daily/weekly/monthly rollover.

Boundaries are evaluated on access, from the user's stored markers versus
now, instead of by a sweep over every user. All boundaries are UTC:
midnight, Monday midnight and the 1st of the month.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, NamedTuple

from .database import EconomyDatabase
from .utils import (
    date_str,
    end_of_day,
    now_utc,
    parse_timestamp,
    start_of_day,
    start_of_month,
    start_of_week,
)


class ResetResult(NamedTuple):
    daily: bool = False
    weekly: bool = False
    monthly: bool = False

    @property
    def any(self) -> bool:
        return self.daily or self.weekly or self.monthly


def _crossed(marker: datetime | None, now: datetime, normalize: Callable[[datetime], datetime]) -> bool:
    if marker is None:
        return True
    return normalize(now) > normalize(marker)


def boundaries_crossed(
    last_daily: datetime | None,
    last_weekly: datetime | None,
    last_monthly: datetime | None,
    now: datetime,
) -> ResetResult:
    """Which boundaries lie between the stored markers and *now*. Absent markers always fire."""
    return ResetResult(
        daily=_crossed(last_daily, now, start_of_day),
        weekly=_crossed(last_weekly, now, start_of_week),
        monthly=_crossed(last_monthly, now, start_of_month),
    )


def summary_record_id(guild_id: str, user_id: str, day: datetime) -> str:
    return f"daily_summary_{guild_id}_{user_id}_{date_str(day)}"


class ResetManager:

    def __init__(
        self,
        database: EconomyDatabase,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._db = database
        self._logger = logger or logging.getLogger("economy.resets")
        self._clock = clock

        # Metrics counters
        self.daily_resets: int = 0
        self.weekly_resets: int = 0
        self.monthly_resets: int = 0

    async def check_and_reset_user(
        self, user_id: str, guild_id: str, now: datetime | None = None,
    ) -> ResetResult:
        """Roll over whichever periods have ended for this user.

        Returns the boundaries that fired. A user without a record has
        nothing to reset. Never raises.
        """
        now = now or self._clock()
        try:
            user = await self._db.get_user(user_id, guild_id)
        except Exception:
            self._logger.exception("Reset check failed to load %s in %s", user_id, guild_id)
            return ResetResult()
        if user is None:
            return ResetResult()

        last_daily = parse_timestamp(user.get("last_daily_reset"))
        crossed = boundaries_crossed(
            last_daily,
            parse_timestamp(user.get("last_weekly_reset")),
            parse_timestamp(user.get("last_monthly_reset")),
            now,
        )
        if not crossed.any:
            return crossed

        daily = crossed.daily
        if daily and last_daily is not None:
            daily = await self._archive_day(user, last_daily, now)

        updates: dict = {}
        if daily:
            updates.update(
                daily_vc_time=0,
                daily_coins_earned=0,
                last_daily_reset=start_of_day(now),
            )
        if crossed.weekly:
            updates.update(
                weekly_vc_time=0,
                weekly_coins_earned=0,
                last_weekly_reset=start_of_week(now),
            )
        if crossed.monthly:
            updates.update(
                monthly_vc_time=0,
                monthly_coins_earned=0,
                last_monthly_reset=start_of_month(now),
            )

        result = ResetResult(daily, crossed.weekly, crossed.monthly)
        try:
            await self._db.apply_reset(user_id, guild_id, updates)
        except Exception:
            self._logger.exception("Failed to apply resets for %s in %s", user_id, guild_id)
            return ResetResult()

        self.daily_resets += int(result.daily)
        self.weekly_resets += int(result.weekly)
        self.monthly_resets += int(result.monthly)
        self._logger.debug(
            "Resets for %s in %s: daily=%s weekly=%s monthly=%s",
            user_id, guild_id, result.daily, result.weekly, result.monthly,
        )
        return result

    async def _archive_day(self, user: dict, last_daily: datetime, now: datetime) -> bool:
        """Write the outgoing day's totals as a summary record.

        Returns False when the archive failed; the daily reset is then held
        back so the totals survive until the next attempt.
        """
        duration = user.get("daily_vc_time") or 0
        coins = user.get("daily_coins_earned") or 0
        if duration <= 0 and coins <= 0:
            return True
        day = start_of_day(last_daily)
        try:
            await self._db.upsert_daily_summary(
                summary_record_id(user["guild_id"], user["user_id"], day),
                user["user_id"],
                user["guild_id"],
                day=day,
                end_time=end_of_day(day),
                duration_ms=duration,
                coins=coins,
                created_at=now,
            )
        except Exception:
            self._logger.exception(
                "Failed to archive daily summary for %s in %s; daily reset deferred",
                user["user_id"], user["guild_id"],
            )
            return False
        return True
