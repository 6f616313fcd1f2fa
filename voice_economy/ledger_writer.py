"""Accrual ledger writer — the only path that mutates durable time/coin fields.

persist() runs as a saga of independently-failing steps:

    1. filter        reject invalid / sub-minimum durations
    2. price         duration → coins (floor, multiplier, floor)
    3. reset         roll over ended periods for the user
    4. increment     cumulative + rolling counters       (failure aborts)
    5. transaction   ledger row with balance snapshot    (failure = LEDGER INCONSISTENCY)
    6. history       growing per-session activity record (failure logged)
    7. group         group aggregation sink              (failure logged)
    8. close         streak update, then session delete  (final close only)

A failed step 4 leaves the session in place so the reconciler can retry.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Callable, NamedTuple

from .config import EconomyConfig
from .database import EconomyDatabase
from .utils import from_ms, now_utc, start_of_day, start_of_month, start_of_week, to_ms

if TYPE_CHECKING:
    from .coin_calculator import CoinCalculator
    from .group_stats import GroupStats
    from .reset_manager import ResetManager
    from .session_manager import SessionManager, VoiceSession
    from .streak_manager import StreakManager

TRANSACTION_TYPE = "vctime_earn"


class AccrualError(Exception):
    """The balance increment failed; nothing downstream was written."""


class RollingShares(NamedTuple):
    daily_ms: int
    weekly_ms: int
    monthly_ms: int
    daily_coins: int
    weekly_coins: int
    monthly_coins: int


@dataclass
class AccrualOutcome:
    status: str  # "persisted" | "filtered" | "invalid" | "failed"
    duration_ms: int = 0
    coins: int = 0
    shares: RollingShares | None = None
    balance_after: int | None = None
    transaction_id: str | None = None
    ledger_consistent: bool = True

    @property
    def persisted(self) -> bool:
        return self.status == "persisted"


def split_rolling(duration_ms: int, coins: int, now: datetime) -> RollingShares:
    """Share of a span ending at *now* that falls in the current day/week/month.

    The span is ``[now - duration_ms, now]``. Time before a period's start
    belongs to the previous period and is left out of that rolling counter;
    coins are split in the same proportion, rounded down.
    """
    now_ms = to_ms(now)
    span_start = now_ms - duration_ms

    def share(period_start: datetime) -> tuple[int, int]:
        boundary = to_ms(period_start)
        if span_start >= boundary:
            return duration_ms, coins
        post_ms = max(0, now_ms - boundary)
        return post_ms, coins * post_ms // duration_ms

    daily_ms, daily_coins = share(start_of_day(now))
    weekly_ms, weekly_coins = share(start_of_week(now))
    monthly_ms, monthly_coins = share(start_of_month(now))
    return RollingShares(daily_ms, weekly_ms, monthly_ms, daily_coins, weekly_coins, monthly_coins)


def session_record_id(session: VoiceSession) -> str:
    return f"session_{session.guild_id}_{session.user_id}_{session.session_start_time}"


class LedgerWriter:

    def __init__(
        self,
        config: EconomyConfig,
        database: EconomyDatabase,
        sessions: SessionManager,
        calculator: CoinCalculator,
        resets: ResetManager,
        streaks: StreakManager | None = None,
        groups: GroupStats | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._config = config
        self._db = database
        self._sessions = sessions
        self._calculator = calculator
        self._resets = resets
        self._streaks = streaks
        self._groups = groups
        self._logger = logger or logging.getLogger("economy.ledger")
        self._clock = clock

        # Metrics counters (exposed to metrics_server)
        self.flushes: int = 0
        self.final_closes: int = 0
        self.coins_accrued: int = 0
        self.time_accrued_ms: int = 0
        self.filtered_sessions: int = 0
        self.failed_accruals: int = 0
        self.ledger_inconsistencies: int = 0

    # ══════════════════════════════════════════════════════════
    #  Public API
    # ══════════════════════════════════════════════════════════

    async def persist(
        self,
        user_id: str,
        guild_id: str,
        duration_ms: int,
        session: VoiceSession,
        is_final_close: bool = False,
        now: datetime | None = None,
        username: str | None = None,
    ) -> AccrualOutcome:
        """Convert *duration_ms* of presence into coins and write it durably. Never raises."""
        now = now or self._clock()
        try:
            outcome = await self._persist(
                user_id, guild_id, duration_ms, session, is_final_close, now, username,
            )
        except AccrualError as e:
            self.failed_accruals += 1
            self._logger.error(
                "Accrual aborted for %s in %s (%d ms): %s", user_id, guild_id, duration_ms, e.__cause__ or e,
            )
            return AccrualOutcome("failed", duration_ms=duration_ms)
        except Exception:
            self.failed_accruals += 1
            self._logger.exception("Unexpected accrual failure for %s in %s", user_id, guild_id)
            return AccrualOutcome("failed", duration_ms=duration_ms)

        if is_final_close and outcome.status != "failed":
            await self._conclude(user_id, guild_id, outcome)
        return outcome

    async def save_and_end_session(
        self, user_id: str, guild_id: str, session: VoiceSession | None = None,
    ) -> AccrualOutcome | None:
        """Final close: persist everything since the last flush, then delete the session."""
        session = session or await self._sessions.get_session(user_id, guild_id)
        if session is None:
            return None
        now = self._clock()
        duration = self._sessions.elapsed_since_flush(session, to_ms(now))
        return await self.persist(user_id, guild_id, duration, session, is_final_close=True, now=now)

    # ══════════════════════════════════════════════════════════
    #  Saga
    # ══════════════════════════════════════════════════════════

    async def _persist(
        self,
        user_id: str,
        guild_id: str,
        duration_ms: int,
        session: VoiceSession,
        is_final_close: bool,
        now: datetime,
        username: str | None,
    ) -> AccrualOutcome:
        if duration_ms <= 0:
            self._logger.warning(
                "Rejected non-positive duration %d ms for %s in %s", duration_ms, user_id, guild_id,
            )
            return AccrualOutcome("invalid", duration_ms=duration_ms)

        min_ms = int(self._config.tracking_for(guild_id).min_billable_seconds * 1000)
        if duration_ms < min_ms:
            self.filtered_sessions += 1
            self._logger.debug(
                "Filtered micro-session for %s in %s: %d ms < %d ms", user_id, guild_id, duration_ms, min_ms,
            )
            return AccrualOutcome("filtered", duration_ms=duration_ms)

        coins = await self._calculator.calculate_coins(duration_ms, guild_id, user_id)

        resets = await self._resets.check_and_reset_user(user_id, guild_id, now)
        shares = split_rolling(duration_ms, coins, now)
        if shares.daily_ms < duration_ms:
            self._logger.info(
                "Span for %s in %s crosses a period boundary: %d ms of %d ms in current day (reset fired: %s)",
                user_id, guild_id, shares.daily_ms, duration_ms, resets.any,
            )

        try:
            await self._db.increment_accrual(
                user_id,
                guild_id,
                duration_ms=duration_ms,
                coins=coins,
                daily_ms=shares.daily_ms,
                weekly_ms=shares.weekly_ms,
                monthly_ms=shares.monthly_ms,
                daily_coins=shares.daily_coins,
                weekly_coins=shares.weekly_coins,
                monthly_coins=shares.monthly_coins,
                now=now,
                username=username,
            )
        except Exception as e:
            raise AccrualError(f"balance increment failed for {user_id}") from e

        self.coins_accrued += coins
        self.time_accrued_ms += duration_ms
        if is_final_close:
            self.final_closes += 1
        else:
            self.flushes += 1

        outcome = AccrualOutcome(
            "persisted", duration_ms=duration_ms, coins=coins, shares=shares,
        )
        await self._record_transaction(user_id, guild_id, session, outcome, is_final_close, now)
        await self._record_history(user_id, guild_id, session, outcome, now)

        if session.group_id and self._groups is not None:
            try:
                await self._groups.record_presence(user_id, guild_id, session.group_id, duration_ms)
            except Exception:
                self._logger.exception(
                    "Failed to record group time for %s in group %s", user_id, session.group_id,
                )

        self._logger.info(
            "%s for %s in %s: %ds, %d coins%s",
            "Session closed" if is_final_close else "Incremental save",
            user_id, guild_id, duration_ms // 1000, coins,
            f", group {session.group_id}" if session.group_id else "",
        )
        return outcome

    async def _record_transaction(
        self,
        user_id: str,
        guild_id: str,
        session: VoiceSession,
        outcome: AccrualOutcome,
        is_final_close: bool,
        now: datetime,
    ) -> None:
        tx_id = f"tx_{to_ms(now)}_{uuid.uuid4().hex[:12]}"
        try:
            balance = await self._db.get_balance(user_id, guild_id)
            outcome.balance_after = balance
            await self._db.record_transaction(
                tx_id,
                user_id,
                guild_id,
                TRANSACTION_TYPE,
                outcome.coins,
                balance,
                {
                    "duration_ms": outcome.duration_ms,
                    "room_id": session.room_id,
                    "group_id": session.group_id,
                    "session_start_time": session.session_start_time,
                    "final": is_final_close,
                },
                now,
            )
            outcome.transaction_id = tx_id
        except Exception:
            outcome.ledger_consistent = False
            self.ledger_inconsistencies += 1
            self._logger.critical(
                "LEDGER INCONSISTENCY: balance of %s in %s updated (+%d) but transaction %s failed to write",
                user_id, guild_id, outcome.coins, tx_id, exc_info=True,
            )

    async def _record_history(
        self,
        user_id: str,
        guild_id: str,
        session: VoiceSession,
        outcome: AccrualOutcome,
        now: datetime,
    ) -> None:
        now_ms = to_ms(now)
        try:
            await self._db.upsert_session_activity(
                session_record_id(session),
                user_id,
                guild_id,
                start_time=from_ms(session.session_start_time),
                span_start_ms=now_ms - outcome.duration_ms,
                span_end=now,
                span_end_ms=now_ms,
                duration_ms=outcome.duration_ms,
                room_id=session.room_id,
                group_id=session.group_id,
                coins=outcome.coins,
                created_at=now,
            )
        except Exception:
            self._logger.exception("Failed to save activity record for %s in %s", user_id, guild_id)

    async def _conclude(self, user_id: str, guild_id: str, outcome: AccrualOutcome) -> None:
        if outcome.persisted and self._streaks is not None:
            try:
                await self._streaks.update_streak(user_id, guild_id)
            except Exception:
                self._logger.exception("Streak update failed for %s in %s", user_id, guild_id)
        await self._sessions.delete_session(user_id, guild_id)
