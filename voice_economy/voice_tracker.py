"""Voice tracker — turns room-membership changes into session lifecycle calls.

Per (user, guild):

    none       → tracked    open (closing any leftover session first)
    tracked    → none       final close
    tracked A  → tracked B  transfer inside the grace window, else close + open
    tracked    → untracked  final close
    untracked  → tracked    open
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from .categories import CategoryValidator
from .config import EconomyConfig
from .group_stats import GroupStats
from .ledger_writer import LedgerWriter
from .session_manager import SessionManager, VoiceSession
from .utils import now_utc, to_ms


class VoiceTracker:

    def __init__(
        self,
        config: EconomyConfig,
        sessions: SessionManager,
        ledger: LedgerWriter,
        categories: CategoryValidator,
        groups: GroupStats | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._config = config
        self._sessions = sessions
        self._ledger = ledger
        self._categories = categories
        self._groups = groups
        self._logger = logger or logging.getLogger("economy.voice")
        self._clock = clock
        self._ignored_users: set[str] = {str(u) for u in config.discord.ignored_users}

        self.events_processed: int = 0

    def _is_ignored(self, user_id: str, is_bot: bool) -> bool:
        return is_bot or user_id in self._ignored_users

    async def _group_for(self, guild_id: str, room_id: str) -> str | None:
        if self._groups is None:
            return None
        return await self._groups.get_group_for_room(guild_id, room_id)

    # ══════════════════════════════════════════════════════════
    #  Event entry point
    # ══════════════════════════════════════════════════════════

    async def handle_voice_update(
        self,
        user_id: str,
        guild_id: str,
        old_room_id: str | None,
        new_room_id: str | None,
        is_bot: bool = False,
    ) -> None:
        """Apply one join/leave/move event. Never raises."""
        if self._is_ignored(user_id, is_bot) or old_room_id == new_room_id:
            return
        self.events_processed += 1
        try:
            was_tracked = await self._categories.is_trackable_room(guild_id, old_room_id)
            is_tracked = await self._categories.is_trackable_room(guild_id, new_room_id)

            if was_tracked and is_tracked:
                await self.handle_switch(user_id, guild_id, new_room_id)
            elif is_tracked:
                await self.handle_join(user_id, guild_id, new_room_id)
            elif was_tracked or await self._sessions.has_active_session(user_id, guild_id):
                await self.handle_leave(user_id, guild_id)
        except Exception:
            self._logger.exception(
                "Error processing voice update for %s in %s (%s → %s)",
                user_id, guild_id, old_room_id, new_room_id,
            )

    # ══════════════════════════════════════════════════════════
    #  Transitions
    # ══════════════════════════════════════════════════════════

    async def handle_join(self, user_id: str, guild_id: str, room_id: str) -> VoiceSession | None:
        existing = await self._sessions.get_session(user_id, guild_id)
        if existing is not None:
            self._logger.warning(
                "Duplicate session for %s in %s on join; closing the previous one", user_id, guild_id,
            )
            with self._sessions.concluding(user_id, guild_id):
                await self._ledger.save_and_end_session(user_id, guild_id, existing)

        group_id = await self._group_for(guild_id, room_id)
        return await self._sessions.create_session(user_id, guild_id, room_id, group_id)

    async def handle_leave(self, user_id: str, guild_id: str) -> None:
        session = await self._sessions.get_session(user_id, guild_id)
        if session is None:
            self._logger.debug("Leave without session for %s in %s", user_id, guild_id)
            return
        with self._sessions.concluding(user_id, guild_id):
            await self._ledger.save_and_end_session(user_id, guild_id, session)

    async def handle_switch(self, user_id: str, guild_id: str, new_room_id: str) -> VoiceSession | None:
        session = await self._sessions.get_session(user_id, guild_id)
        if session is None:
            return await self.handle_join(user_id, guild_id, new_room_id)

        grace_ms = int(self._config.tracking_for(guild_id).transfer_grace_seconds * 1000)
        if to_ms(self._clock()) - session.session_start_time < grace_ms:
            group_id = await self._group_for(guild_id, new_room_id)
            return await self._sessions.transfer_session(user_id, guild_id, new_room_id, group_id)

        with self._sessions.concluding(user_id, guild_id):
            await self._ledger.save_and_end_session(user_id, guild_id, session)
        group_id = await self._group_for(guild_id, new_room_id)
        return await self._sessions.create_session(user_id, guild_id, new_room_id, group_id)
