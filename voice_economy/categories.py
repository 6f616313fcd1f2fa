"""Tracked-room checks: a room accrues only if its parent category is tracked."""

from __future__ import annotations

import logging

from .config import EconomyConfig
from .presence import PresenceProvider


class CategoryValidator:

    def __init__(
        self,
        config: EconomyConfig,
        presence: PresenceProvider,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._presence = presence
        self._logger = logger or logging.getLogger("economy.categories")

    def is_tracking_enabled(self, guild_id: str) -> bool:
        return self._config.tracking_for(guild_id).enabled

    def tracked_category_ids(self, guild_id: str) -> list[str]:
        return list(self._config.tracking_for(guild_id).tracked_category_ids)

    async def is_trackable_room(self, guild_id: str, room_id: str | None) -> bool:
        if room_id is None or not self.is_tracking_enabled(guild_id):
            return False
        try:
            category = await self._presence.get_room_category(guild_id, room_id)
        except Exception:
            self._logger.exception("Failed to resolve category for room %s", room_id)
            return False
        return category is not None and category in self.tracked_category_ids(guild_id)
