"""Multiplier engine — resolves the combined accrual multiplier for a user.

total = group multiplier × user multiplier

A user record with ``multiplier_enabled`` off earns at 1.0 regardless of
group or personal boosts. Unknown users and groups count as 1.0.
"""

from __future__ import annotations

import logging
from typing import NamedTuple

from .database import EconomyDatabase


class ActiveMultiplier(NamedTuple):
    source: str  # "group:<id>" or "user"
    multiplier: float


class MultiplierEngine:
    """Default multiplier resolver: ``get_multiplier(user, guild) -> float``."""

    def __init__(self, database: EconomyDatabase, logger: logging.Logger | None = None) -> None:
        self._db = database
        self._logger = logger or logging.getLogger("economy.multipliers")

    async def get_active_multipliers(self, user_id: str, guild_id: str) -> list[ActiveMultiplier]:
        """Non-neutral multipliers applying to the user. May raise on store failure."""
        user = await self._db.get_user(user_id, guild_id)
        if not user:
            self._logger.debug("User %s not found in %s, multiplier 1.0", user_id, guild_id)
            return []
        if not user.get("multiplier_enabled", 1):
            return []

        active: list[ActiveMultiplier] = []
        group_id = user.get("current_group")
        if group_id:
            group_mult = await self._get_group_multiplier(guild_id, group_id)
            if group_mult != 1.0:
                active.append(ActiveMultiplier(f"group:{group_id}", group_mult))

        user_mult = user.get("multiplier")
        if user_mult is not None and float(user_mult) != 1.0:
            active.append(ActiveMultiplier("user", float(user_mult)))
        return active

    async def get_multiplier(self, user_id: str, guild_id: str) -> float:
        """Combined multiplier for (user, guild). May raise on store failure."""
        combined = 1.0
        for m in await self.get_active_multipliers(user_id, guild_id):
            combined *= m.multiplier
        return max(0.0, combined)

    async def _get_group_multiplier(self, guild_id: str, group_id: str) -> float:
        try:
            multiplier = await self._db.get_group_multiplier(guild_id, group_id)
        except Exception as e:
            self._logger.warning("Group multiplier lookup failed for %s, using 1.0: %s", group_id, e)
            return 1.0
        return 1.0 if multiplier is None else multiplier
