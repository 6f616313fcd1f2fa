"""Crash recovery — rebuild open sessions from live presence after a restart.

Members already sitting in tracked rooms get a fresh session starting at
recovery time. Presence from before the restart that no session captured
is not backfilled.
"""

from __future__ import annotations

import logging
from typing import NamedTuple

from .categories import CategoryValidator
from .config import EconomyConfig
from .group_stats import GroupStats
from .presence import PresenceProvider
from .session_manager import SessionManager


class RecoveryReport(NamedTuple):
    recovered: int = 0
    skipped: int = 0
    failed: int = 0


class IntegrityReport(NamedTuple):
    checked: int = 0
    valid: int = 0
    invalid: int = 0


class RecoveryManager:

    def __init__(
        self,
        config: EconomyConfig,
        sessions: SessionManager,
        presence: PresenceProvider,
        categories: CategoryValidator,
        groups: GroupStats | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._sessions = sessions
        self._presence = presence
        self._categories = categories
        self._groups = groups
        self._logger = logger or logging.getLogger("economy.recovery")
        self._ignored_users: set[str] = {str(u) for u in config.discord.ignored_users}
        self._started = False

        # Metrics counters
        self.sessions_recovered: int = 0
        self.sessions_invalidated: int = 0

    @property
    def has_run(self) -> bool:
        return self._started

    async def recover_active_sessions(self) -> RecoveryReport:
        """Open sessions for members present in tracked rooms. Runs once per process."""
        if self._started:
            self._logger.debug("Session recovery already ran, skipping")
            return RecoveryReport()
        self._started = True

        recovered = skipped = failed = 0
        try:
            guild_ids = await self._presence.list_guild_ids()
        except Exception:
            self._logger.exception("Session recovery could not list guilds")
            return RecoveryReport(failed=1)

        for guild_id in guild_ids:
            if not self._categories.is_tracking_enabled(guild_id):
                continue
            category_ids = self._categories.tracked_category_ids(guild_id)
            if not category_ids:
                continue
            try:
                members = await self._presence.list_room_members(guild_id, category_ids)
            except Exception:
                failed += 1
                self._logger.exception("Session recovery failed for guild %s", guild_id)
                continue

            for member in members:
                if member.user_id in self._ignored_users:
                    continue
                if await self._sessions.has_active_session(member.user_id, guild_id):
                    skipped += 1
                    continue
                group_id = None
                if self._groups is not None:
                    group_id = await self._groups.get_group_for_room(guild_id, member.room_id)
                session = await self._sessions.create_session(
                    member.user_id, guild_id, member.room_id, group_id,
                )
                if session is None:
                    failed += 1
                else:
                    recovered += 1

        self.sessions_recovered += recovered
        self._logger.info(
            "Session recovery complete: %d recovered, %d already open, %d failed",
            recovered, skipped, failed,
        )
        return RecoveryReport(recovered, skipped, failed)

    async def verify_session_integrity(self) -> IntegrityReport:
        """Delete sessions whose user is no longer in the recorded room. No accrual is written."""
        checked = valid = invalid = 0
        for session in await self._sessions.get_all_active_sessions():
            checked += 1
            try:
                room_id = await self._presence.get_member_room(session.guild_id, session.user_id)
            except Exception:
                self._logger.exception(
                    "Integrity check lookup failed for %s in %s", session.user_id, session.guild_id,
                )
                continue
            if room_id == session.room_id:
                valid += 1
                continue
            self._logger.warning(
                "Invalid session for %s in %s (recorded room %s, actual %s); deleting",
                session.user_id, session.guild_id, session.room_id, room_id,
            )
            await self._sessions.delete_session(session.user_id, session.guild_id)
            invalid += 1

        self.sessions_invalidated += invalid
        self._logger.info("Integrity check: %d checked, %d valid, %d invalid", checked, valid, invalid)
        return IntegrityReport(checked, valid, invalid)
