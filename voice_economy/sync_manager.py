"""Periodic reconciler — flushes open sessions and closes stale ones.

Every ``tracking.sync_interval_seconds`` each open session is checked
against live presence. Present in the recorded room: flush the time since
the last flush pointer and advance it. Anywhere else: final close.

A pass still running when the next tick fires causes that tick to be
skipped. Once per UTC day a pass also prunes expired ledger/history rows.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from .config import EconomyConfig
from .database import EconomyDatabase
from .ledger_writer import LedgerWriter
from .presence import PresenceProvider
from .session_manager import SessionManager, VoiceSession
from .utils import date_str, now_utc, to_ms


@dataclass
class SyncReport:
    checked: int = 0
    synced: int = 0
    cleaned: int = 0
    skipped: int = 0
    failed: int = 0
    coins: int = 0


class SyncManager:

    def __init__(
        self,
        config: EconomyConfig,
        sessions: SessionManager,
        ledger: LedgerWriter,
        presence: PresenceProvider,
        database: EconomyDatabase | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._config = config
        self._sessions = sessions
        self._ledger = ledger
        self._presence = presence
        self._db = database
        self._logger = logger or logging.getLogger("economy.sync")
        self._clock = clock

        self._running = False
        self._syncing = False
        self._loop_task: asyncio.Task | None = None
        self._pass_task: asyncio.Task | None = None
        self._last_prune_date: str | None = None

        # Metrics counters (exposed to metrics_server)
        self.passes_completed: int = 0
        self.passes_skipped: int = 0
        self.stale_cleaned: int = 0
        self.last_sync_at: datetime | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    # ══════════════════════════════════════════════════════════
    #  Lifecycle
    # ══════════════════════════════════════════════════════════

    async def start(self) -> None:
        """Start the periodic sync task."""
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._sync_loop())
        self._logger.info(
            "Sync manager started (every %ds)", self._config.tracking.sync_interval_seconds,
        )

    async def stop(self) -> None:
        """Cancel the loop. Open sessions stay in the store for the next start."""
        self._running = False
        for task in (self._loop_task, self._pass_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._loop_task = None
        self._pass_task = None
        self._logger.info("Sync manager stopped")

    async def _sync_loop(self) -> None:
        interval = self._config.tracking.sync_interval_seconds
        while self._running:
            await asyncio.sleep(interval)
            if not self._running:
                break
            if self._pass_task and not self._pass_task.done():
                self.passes_skipped += 1
                self._logger.warning("Previous sync pass still running, skipping this tick")
                continue
            self._pass_task = asyncio.create_task(self.sync_all_active_sessions())

    # ══════════════════════════════════════════════════════════
    #  Passes
    # ══════════════════════════════════════════════════════════

    async def force_sync_now(self) -> SyncReport | None:
        return await self.sync_all_active_sessions()

    async def sync_all_active_sessions(self) -> SyncReport | None:
        """Run one reconciliation pass. Returns None when a pass is already running."""
        if self._syncing:
            self.passes_skipped += 1
            self._logger.warning("Sync already in progress, skipping")
            return None
        self._syncing = True
        try:
            report = SyncReport()
            for session in await self._sessions.get_all_active_sessions():
                report.checked += 1
                try:
                    await self._sync_session(session, report)
                except Exception:
                    report.failed += 1
                    self._logger.exception(
                        "Failed to sync session for %s in %s", session.user_id, session.guild_id,
                    )
            await self._maybe_prune()
            self.passes_completed += 1
            self.last_sync_at = self._clock()
            self._logger.info(
                "Sync complete: %d checked, %d synced, %d cleaned, %d skipped, %d failed, %d coins",
                report.checked, report.synced, report.cleaned, report.skipped, report.failed, report.coins,
            )
            return report
        finally:
            self._syncing = False

    async def _sync_session(self, snapshot: VoiceSession, report: SyncReport) -> None:
        user_id, guild_id = snapshot.user_id, snapshot.guild_id
        if not self._config.tracking_for(guild_id).enabled:
            report.skipped += 1
            self._logger.debug("Tracking disabled for %s, leaving session of %s", guild_id, user_id)
            return
        if self._sessions.is_concluding(user_id, guild_id):
            report.skipped += 1
            return

        try:
            room_id = await self._presence.get_member_room(guild_id, user_id)
        except Exception:
            report.skipped += 1
            self._logger.exception("Presence lookup failed for %s in %s", user_id, guild_id)
            return

        # The pass started from a snapshot; an event handler may have closed,
        # flushed or replaced the session since.
        session = await self._sessions.get_session(user_id, guild_id)
        if (
            session is None
            or session.session_start_time != snapshot.session_start_time
            or session.joined_at != snapshot.joined_at
            or self._sessions.is_concluding(user_id, guild_id)
        ):
            report.skipped += 1
            self._logger.debug("Session of %s in %s changed during the pass, skipping", user_id, guild_id)
            return

        if room_id != session.room_id:
            self._logger.warning(
                "Stale session for %s in %s (recorded room %s, actual %s); closing",
                user_id, guild_id, session.room_id, room_id,
            )
            outcome = await self._ledger.save_and_end_session(user_id, guild_id, session)
            if outcome is not None and outcome.status == "failed":
                report.failed += 1
                return
            report.cleaned += 1
            self.stale_cleaned += 1
            if outcome is not None:
                report.coins += outcome.coins
            return

        now = self._clock()
        now_ms = to_ms(now)
        duration = self._sessions.elapsed_since_flush(session, now_ms)
        outcome = await self._ledger.persist(user_id, guild_id, duration, session, False, now)
        if outcome.persisted:
            await self._sessions.update_flush_pointer(user_id, guild_id, now_ms)
            report.synced += 1
            report.coins += outcome.coins
        elif outcome.status == "failed":
            report.failed += 1
        else:
            report.skipped += 1

    async def _maybe_prune(self) -> None:
        if self._db is None:
            return
        now = self._clock()
        today = date_str(now)
        if self._last_prune_date == today:
            return
        retention = self._config.retention
        try:
            tx, activity = await self._db.prune_expired(
                now - timedelta(days=retention.transaction_days),
                now - timedelta(days=retention.activity_days),
            )
        except Exception:
            self._logger.exception("Retention sweep failed")
            return
        self._last_prune_date = today
        if tx or activity:
            self._logger.info("Retention sweep removed %d transactions, %d activity records", tx, activity)
