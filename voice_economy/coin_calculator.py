"""Coin calculator — converts presence duration into whole coins.

coins = floor(floor(seconds × coins_per_second) × multiplier)

Both steps floor; the multiplier falls back to 1.0 when the resolver fails.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import TYPE_CHECKING, Protocol

from .config import EconomyConfig
from .utils import floor_mul

if TYPE_CHECKING:
    from .session_manager import SessionManager


class MultiplierResolver(Protocol):
    async def get_multiplier(self, user_id: str, guild_id: str) -> float: ...


class CoinCalculator:

    def __init__(
        self,
        config: EconomyConfig,
        multipliers: MultiplierResolver | None = None,
        sessions: SessionManager | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._multipliers = multipliers
        self._sessions = sessions
        self._logger = logger or logging.getLogger("economy.coins")

    def coins_per_second(self, guild_id: str) -> float:
        return self._config.tracking_for(guild_id).coins_per_second

    def raw_coins(self, duration_ms: int, guild_id: str) -> int:
        """floor(seconds × rate), no multiplier."""
        if duration_ms <= 0:
            return 0
        return floor_mul(Decimal(duration_ms) / 1000, self.coins_per_second(guild_id))

    async def resolve_multiplier(self, user_id: str, guild_id: str) -> float:
        if self._multipliers is None:
            return 1.0
        try:
            multiplier = float(await self._multipliers.get_multiplier(user_id, guild_id))
        except Exception as e:
            self._logger.warning(
                "Multiplier lookup failed for %s in %s, using 1.0: %s", user_id, guild_id, e,
            )
            return 1.0
        return max(0.0, multiplier)

    async def calculate_coins(
        self, duration_ms: int, guild_id: str, user_id: str | None = None,
    ) -> int:
        raw = self.raw_coins(duration_ms, guild_id)
        if user_id is None or raw == 0:
            return raw
        return floor_mul(raw, await self.resolve_multiplier(user_id, guild_id))

    async def calculate_current_session_coins(self, user_id: str, guild_id: str) -> int:
        """Coins the open session has accrued since its last flush."""
        if self._sessions is None:
            return 0
        session = await self._sessions.get_session(user_id, guild_id)
        if session is None:
            return 0
        return await self.calculate_coins(
            self._sessions.elapsed_since_flush(session), guild_id, user_id,
        )

    def expected_earnings(self, duration_ms: int, guild_id: str) -> dict:
        rate = self.coins_per_second(guild_id)
        return {
            "coins": self.raw_coins(duration_ms, guild_id),
            "per_second": rate,
            "per_minute": floor_mul(rate, 60),
            "per_hour": floor_mul(rate, 3600),
        }
