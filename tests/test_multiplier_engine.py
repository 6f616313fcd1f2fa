"""Tests for the multiplier engine (group × user)."""

from __future__ import annotations

import logging
from unittest.mock import AsyncMock

import pytest

from voice_economy.database import EconomyDatabase
from voice_economy.engine import AccrualEngine
from voice_economy.group_stats import GroupStats
from voice_economy.multiplier_engine import ActiveMultiplier, MultiplierEngine

from conftest import FakeClock


@pytest.fixture
def multipliers(database: EconomyDatabase) -> MultiplierEngine:
    return MultiplierEngine(database, logging.getLogger("test.mult"))


@pytest.fixture
def groups(database: EconomyDatabase, clock: FakeClock) -> GroupStats:
    return GroupStats(database, logging.getLogger("test.groups"), clock)


class TestMultiplierEngine:
    async def test_unknown_user_is_one(self, multipliers: MultiplierEngine):
        assert await multipliers.get_multiplier("u1", "g1") == 1.0

    async def test_user_multiplier(self, multipliers: MultiplierEngine, database: EconomyDatabase):
        await database.set_user_multiplier("u1", "g1", 1.5)
        assert await multipliers.get_multiplier("u1", "g1") == 1.5
        assert await multipliers.get_active_multipliers("u1", "g1") == [ActiveMultiplier("user", 1.5)]

    async def test_group_times_user(self, multipliers: MultiplierEngine, database: EconomyDatabase, groups: GroupStats):
        await groups.set_group_multiplier("g1", "red", 2.0)
        await database.set_user_multiplier("u1", "g1", 1.5)
        await groups.set_member_group("u1", "g1", "red")
        assert await multipliers.get_multiplier("u1", "g1") == pytest.approx(3.0)
        sources = [m.source for m in await multipliers.get_active_multipliers("u1", "g1")]
        assert sources == ["group:red", "user"]

    async def test_group_only(self, multipliers: MultiplierEngine, groups: GroupStats):
        await groups.set_group_multiplier("g1", "red", 1.25)
        await groups.set_member_group("u1", "g1", "red")
        assert await multipliers.get_multiplier("u1", "g1") == 1.25

    async def test_group_in_other_guild_ignored(self, multipliers: MultiplierEngine, groups: GroupStats):
        await groups.set_group_multiplier("g2", "red", 3.0)
        await groups.set_member_group("u1", "g1", "red")
        assert await multipliers.get_multiplier("u1", "g1") == 1.0

    async def test_unknown_group_is_one(self, multipliers: MultiplierEngine, groups: GroupStats):
        await groups.set_member_group("u1", "g1", "ghost")
        assert await multipliers.get_multiplier("u1", "g1") == 1.0

    async def test_disabled_user_ignores_group_and_user(
        self, multipliers: MultiplierEngine, database: EconomyDatabase, groups: GroupStats,
    ):
        await groups.set_group_multiplier("g1", "red", 2.0)
        await groups.set_member_group("u1", "g1", "red")
        await database.set_user_multiplier("u1", "g1", 4.0, enabled=False)
        assert await multipliers.get_multiplier("u1", "g1") == 1.0
        assert await multipliers.get_active_multipliers("u1", "g1") == []

    async def test_leaving_group_drops_multiplier(self, multipliers: MultiplierEngine, groups: GroupStats):
        await groups.set_group_multiplier("g1", "red", 2.0)
        await groups.set_member_group("u1", "g1", "red")
        await groups.set_member_group("u1", "g1", None)
        assert await multipliers.get_multiplier("u1", "g1") == 1.0

    async def test_group_lookup_failure_is_one(
        self, multipliers: MultiplierEngine, database: EconomyDatabase, groups: GroupStats,
    ):
        await database.set_user_multiplier("u1", "g1", 1.5)
        await groups.set_member_group("u1", "g1", "red")
        database.get_group_multiplier = AsyncMock(side_effect=RuntimeError("locked"))
        assert await multipliers.get_multiplier("u1", "g1") == 1.5

    async def test_negative_group_multiplier_rejected(self, groups: GroupStats):
        with pytest.raises(ValueError):
            await groups.set_group_multiplier("g1", "red", -1.0)


class TestMultiplierInAccrual:
    async def test_group_multiplier_applies_to_coins(
        self, engine: AccrualEngine, database: EconomyDatabase, clock: FakeClock,
    ):
        await engine.groups.set_group_multiplier("g1", "red", 2.0)
        await engine.groups.set_member_group("u1", "g1", "red")
        session = await engine.open_session("u1", "g1", "r1")
        clock.advance(60)
        outcome = await engine.ledger.persist("u1", "g1", 60_000, session)
        assert outcome.coins == 12
        assert await database.get_balance("u1", "g1") == 12
