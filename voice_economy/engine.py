"""AccrualEngine — wires the presence accrual components together.

This is the surface other parts of the bot talk to. The gateway feeds it
voice updates; commands read balances and session progress from it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from .categories import CategoryValidator
from .coin_calculator import CoinCalculator, MultiplierResolver
from .config import EconomyConfig
from .database import EconomyDatabase
from .group_stats import GroupStats
from .ledger_writer import AccrualOutcome, LedgerWriter
from .multiplier_engine import MultiplierEngine
from .presence import PresenceProvider
from .recovery_manager import IntegrityReport, RecoveryManager, RecoveryReport
from .reset_manager import ResetManager, ResetResult
from .session_manager import SessionDuration, SessionManager, VoiceSession
from .session_store import RedisSessionStore
from .streak_manager import StreakManager
from .sync_manager import SyncManager, SyncReport
from .utils import now_utc
from .voice_tracker import VoiceTracker


@dataclass
class VcStats:
    total_vc_time: int = 0
    daily_vc_time: int = 0
    weekly_vc_time: int = 0
    monthly_vc_time: int = 0
    total_coins_earned: int = 0
    coins: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    in_session: bool = False
    current_session: SessionDuration | None = None
    current_session_coins: int = 0


class AccrualEngine:

    def __init__(
        self,
        config: EconomyConfig,
        database: EconomyDatabase,
        store: RedisSessionStore,
        presence: PresenceProvider,
        multipliers: MultiplierResolver | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._config = config
        self._db = database
        self._logger = logger or logging.getLogger("economy.engine")

        def _log(name: str) -> logging.Logger:
            return self._logger.getChild(name)

        self.sessions = SessionManager(config, store, _log("sessions"), clock)
        self.multipliers = multipliers or MultiplierEngine(database, _log("multipliers"))
        self.calculator = CoinCalculator(config, self.multipliers, self.sessions, _log("coins"))
        self.groups = GroupStats(database, _log("groups"), clock)
        self.categories = CategoryValidator(config, presence, _log("categories"))
        self.resets = ResetManager(database, _log("resets"), clock)
        self.streaks = StreakManager(database, _log("streaks"), clock)
        self.ledger = LedgerWriter(
            config, database, self.sessions, self.calculator, self.resets,
            self.streaks, self.groups, _log("ledger"), clock,
        )
        self.tracker = VoiceTracker(
            config, self.sessions, self.ledger, self.categories, self.groups, _log("voice"), clock,
        )
        self.sync = SyncManager(
            config, self.sessions, self.ledger, presence, database, _log("sync"), clock,
        )
        self.recovery = RecoveryManager(
            config, self.sessions, presence, self.categories, self.groups, _log("recovery"),
        )

    async def start(self) -> None:
        await self.sync.start()

    async def stop(self) -> None:
        await self.sync.stop()

    # ══════════════════════════════════════════════════════════
    #  Sessions
    # ══════════════════════════════════════════════════════════

    async def handle_voice_update(
        self,
        user_id: str,
        guild_id: str,
        old_room_id: str | None,
        new_room_id: str | None,
        is_bot: bool = False,
    ) -> None:
        await self.tracker.handle_voice_update(user_id, guild_id, old_room_id, new_room_id, is_bot)

    async def open_session(
        self, user_id: str, guild_id: str, room_id: str, group_id: str | None = None,
    ) -> VoiceSession | None:
        if group_id is None:
            group_id = await self.groups.get_group_for_room(guild_id, room_id)
        return await self.sessions.create_session(user_id, guild_id, room_id, group_id)

    async def close_session(self, user_id: str, guild_id: str) -> bool:
        """Remove the session without writing accrual."""
        return await self.sessions.delete_session(user_id, guild_id)

    async def end_session(self, user_id: str, guild_id: str) -> AccrualOutcome | None:
        """Persist the unflushed remainder, then remove the session."""
        return await self.ledger.save_and_end_session(user_id, guild_id)

    async def transfer_session(
        self, user_id: str, guild_id: str, new_room_id: str, group_id: str | None = None,
    ) -> VoiceSession | None:
        if group_id is None:
            group_id = await self.groups.get_group_for_room(guild_id, new_room_id)
        return await self.sessions.transfer_session(user_id, guild_id, new_room_id, group_id)

    async def get_current_session_duration(self, user_id: str, guild_id: str) -> SessionDuration | None:
        return await self.sessions.get_session_duration(user_id, guild_id)

    async def get_current_session_coins_so_far(self, user_id: str, guild_id: str) -> int:
        return await self.calculator.calculate_current_session_coins(user_id, guild_id)

    # ══════════════════════════════════════════════════════════
    #  Maintenance
    # ══════════════════════════════════════════════════════════

    async def recover_active_sessions(self) -> RecoveryReport:
        return await self.recovery.recover_active_sessions()

    async def verify_session_integrity(self) -> IntegrityReport:
        return await self.recovery.verify_session_integrity()

    async def run_reconciliation_now(self) -> SyncReport | None:
        return await self.sync.force_sync_now()

    async def check_and_reset_user(self, user_id: str, guild_id: str) -> ResetResult:
        return await self.resets.check_and_reset_user(user_id, guild_id)

    # ══════════════════════════════════════════════════════════
    #  Read model
    # ══════════════════════════════════════════════════════════

    async def get_vc_stats(self, user_id: str, guild_id: str) -> VcStats:
        """Presence and earnings summary; rolls over ended periods first."""
        await self.resets.check_and_reset_user(user_id, guild_id)
        stats = VcStats()
        try:
            user = await self._db.get_user(user_id, guild_id)
        except Exception:
            self._logger.exception("Failed to load stats for %s in %s", user_id, guild_id)
            user = None
        if user:
            for field in (
                "total_vc_time", "daily_vc_time", "weekly_vc_time", "monthly_vc_time",
                "total_coins_earned", "coins", "current_streak", "longest_streak",
            ):
                setattr(stats, field, user.get(field) or 0)

        stats.current_session = await self.get_current_session_duration(user_id, guild_id)
        if stats.current_session is not None:
            stats.in_session = True
            stats.current_session_coins = await self.get_current_session_coins_so_far(user_id, guild_id)
        return stats
