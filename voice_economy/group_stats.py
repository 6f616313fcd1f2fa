"""Group (sub-organization) rooms and group-level presence aggregation."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from .database import EconomyDatabase
from .utils import now_utc


class GroupStats:
    """Maps rooms to groups and aggregates member presence time per group."""

    def __init__(
        self,
        database: EconomyDatabase,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._db = database
        self._logger = logger or logging.getLogger("economy.groups")
        self._clock = clock

    async def get_group_for_room(self, guild_id: str, room_id: str) -> str | None:
        try:
            return await self._db.get_group_for_room(guild_id, room_id)
        except Exception:
            self._logger.exception("Failed to resolve group for room %s", room_id)
            return None

    async def assign_room(self, guild_id: str, room_id: str, group_id: str) -> None:
        await self._db.set_group_room(guild_id, room_id, group_id)
        self._logger.info("Room %s assigned to group %s (guild %s)", room_id, group_id, guild_id)

    async def unassign_room(self, guild_id: str, room_id: str) -> bool:
        return await self._db.remove_group_room(guild_id, room_id)

    async def set_member_group(self, user_id: str, guild_id: str, group_id: str | None) -> None:
        """Move the user into *group_id*; its multiplier applies to their accruals."""
        await self._db.set_user_group(user_id, guild_id, group_id)

    async def set_group_multiplier(self, guild_id: str, group_id: str, multiplier: float) -> None:
        if multiplier < 0:
            raise ValueError("group multiplier must be >= 0")
        await self._db.set_group_multiplier(guild_id, group_id, multiplier)
        self._logger.info("Group %s multiplier set to %.2f (guild %s)", group_id, multiplier, guild_id)

    async def record_presence(
        self, user_id: str, guild_id: str, group_id: str, duration_ms: int,
    ) -> None:
        """Add *duration_ms* to the group's and the member's totals."""
        await self._db.increment_group_vc_time(guild_id, group_id, user_id, duration_ms, self._clock())

    async def get_group_vc_time(self, guild_id: str, group_id: str, user_id: str | None = None) -> int:
        return await self._db.get_group_vc_time(guild_id, group_id, user_id)
