"""Tests for the accrual ledger writer."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from voice_economy.database import EconomyDatabase
from voice_economy.engine import AccrualEngine
from voice_economy.ledger_writer import TRANSACTION_TYPE, split_rolling
from voice_economy.utils import to_ms

from conftest import FakeClock, make_tracking


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


async def _open_and_wait(engine: AccrualEngine, clock: FakeClock, seconds: float, room: str = "r1"):
    session = await engine.open_session("u1", "g1", room)
    clock.advance(seconds)
    return session


class TestSplitRolling:
    def test_within_day(self):
        shares = split_rolling(20_000, 20, utc(2026, 3, 11, 12))
        assert shares.daily_ms == 20_000
        assert shares.daily_coins == 20

    def test_across_midnight(self):
        shares = split_rolling(20_000, 20, utc(2026, 3, 12, 0, 0, 10))
        assert (shares.daily_ms, shares.daily_coins) == (10_000, 10)
        # Same week and month
        assert (shares.weekly_ms, shares.monthly_ms) == (20_000, 20_000)

    def test_coins_split_rounds_down(self):
        shares = split_rolling(30_000, 7, utc(2026, 3, 12, 0, 0, 10))
        assert shares.daily_coins == 2  # 7 × 10/30


class TestPersist:
    @pytest.mark.parametrize("seconds", [5, 9.5, 60, 299, 3600])
    async def test_coins_match_formula(self, engine: AccrualEngine, database: EconomyDatabase, clock: FakeClock, seconds):
        session = await _open_and_wait(engine, clock, seconds)
        before = await database.get_balance("u1", "g1")
        duration = int(seconds * 1000)
        outcome = await engine.ledger.persist("u1", "g1", duration, session)
        after = await database.get_balance("u1", "g1")
        assert outcome.persisted
        assert after - before == int(seconds * 0.1)
        assert outcome.balance_after == after

    async def test_writes_transaction_and_history(self, engine: AccrualEngine, database: EconomyDatabase, clock: FakeClock):
        session = await _open_and_wait(engine, clock, 60)
        outcome = await engine.ledger.persist("u1", "g1", 60_000, session)

        txs = await database.get_transactions("u1", "g1")
        assert len(txs) == 1
        assert txs[0]["id"] == outcome.transaction_id
        assert txs[0]["type"] == TRANSACTION_TYPE
        assert txs[0]["amount"] == 6
        assert txs[0]["balance_after"] == 6
        assert txs[0]["metadata"]["room_id"] == "r1"

        records = await database.get_activity_records("u1", "g1")
        assert len(records) == 1
        assert records[0]["id"] == f"session_g1_u1_{session.session_start_time}"
        assert records[0]["duration"] == 60_000

    async def test_flush_keeps_session(self, engine: AccrualEngine, clock: FakeClock):
        session = await _open_and_wait(engine, clock, 60)
        await engine.ledger.persist("u1", "g1", 60_000, session, is_final_close=False)
        assert await engine.sessions.has_active_session("u1", "g1")

    async def test_final_close_deletes_session_and_updates_streak(
        self, engine: AccrualEngine, database: EconomyDatabase, clock: FakeClock,
    ):
        session = await _open_and_wait(engine, clock, 60)
        await engine.ledger.persist("u1", "g1", 60_000, session, is_final_close=True)
        assert not await engine.sessions.has_active_session("u1", "g1")
        assert (await database.get_user("u1", "g1"))["current_streak"] == 1

    async def test_replayed_flush_single_history_record(self, engine: AccrualEngine, database: EconomyDatabase, clock: FakeClock):
        session = await _open_and_wait(engine, clock, 60)
        now = clock()
        await engine.ledger.persist("u1", "g1", 60_000, session, now=now)
        await engine.ledger.persist("u1", "g1", 60_000, session, now=now)
        records = await database.get_activity_records("u1", "g1")
        assert len(records) == 1
        assert records[0]["duration"] == 60_000


class TestRejections:
    async def test_micro_session_writes_nothing(self, engine: AccrualEngine, database: EconomyDatabase, clock: FakeClock):
        session = await _open_and_wait(engine, clock, 3)
        outcome = await engine.ledger.persist("u1", "g1", 3_000, session, is_final_close=True)
        assert outcome.status == "filtered"
        assert await database.get_user("u1", "g1") is None
        assert await database.get_transactions("u1", "g1") == []
        assert await database.get_activity_records("u1", "g1") == []
        assert not await engine.sessions.has_active_session("u1", "g1")

    async def test_micro_flush_keeps_session(self, engine: AccrualEngine, clock: FakeClock):
        session = await _open_and_wait(engine, clock, 3)
        outcome = await engine.ledger.persist("u1", "g1", 3_000, session, is_final_close=False)
        assert outcome.status == "filtered"
        assert await engine.sessions.has_active_session("u1", "g1")

    @pytest.mark.parametrize("duration", [0, -1000])
    async def test_non_positive_is_invalid(self, engine: AccrualEngine, database: EconomyDatabase, clock: FakeClock, duration):
        session = await _open_and_wait(engine, clock, 0)
        outcome = await engine.ledger.persist("u1", "g1", duration, session)
        assert outcome.status == "invalid"
        assert await database.get_user("u1", "g1") is None

    async def test_custom_minimum(self, make_engine, database: EconomyDatabase, clock: FakeClock):
        engine = make_engine(tracking=make_tracking(min_billable_seconds=30))
        session = await _open_and_wait(engine, clock, 20)
        outcome = await engine.ledger.persist("u1", "g1", 20_000, session)
        assert outcome.status == "filtered"


class TestBoundarySplit:
    async def test_session_across_midnight(self, make_engine, database: EconomyDatabase, clock: FakeClock):
        engine = make_engine(tracking=make_tracking(coins_per_second=1))

        # Earlier activity the same day establishes the daily marker
        clock.set(utc(2026, 3, 11, 10))
        earlier = await _open_and_wait(engine, clock, 60)
        await engine.ledger.persist("u1", "g1", 60_000, earlier, is_final_close=True)

        clock.set(utc(2026, 3, 11, 23, 59, 50))
        session = await _open_and_wait(engine, clock, 20)
        outcome = await engine.ledger.persist("u1", "g1", 20_000, session, is_final_close=True)
        assert outcome.coins == 20
        assert outcome.shares.daily_coins == 10

        user = await database.get_user("u1", "g1")
        assert user["daily_vc_time"] == 10_000
        assert user["daily_coins_earned"] == 10
        assert user["total_vc_time"] == 80_000
        assert user["total_coins_earned"] == 80
        assert user["weekly_coins_earned"] == 80
        assert user["last_daily_reset"].startswith("2026-03-12")

        summary = await database.get_activity_record("daily_summary_g1_u1_2026-03-11")
        assert summary["duration"] == 60_000


class TestPartialFailures:
    async def test_increment_failure_aborts(self, engine: AccrualEngine, database: EconomyDatabase, clock: FakeClock):
        session = await _open_and_wait(engine, clock, 60)
        database.increment_accrual = AsyncMock(side_effect=sqlite3.OperationalError("database is locked"))
        outcome = await engine.ledger.persist("u1", "g1", 60_000, session, is_final_close=True)
        assert outcome.status == "failed"
        assert await database.get_transactions("u1", "g1") == []
        assert await database.get_activity_records("u1", "g1") == []
        # Left in place for the reconciler to retry
        assert await engine.sessions.has_active_session("u1", "g1")
        assert engine.ledger.failed_accruals == 1

    async def test_transaction_failure_is_ledger_inconsistency(
        self, engine: AccrualEngine, database: EconomyDatabase, clock: FakeClock, caplog,
    ):
        session = await _open_and_wait(engine, clock, 60)
        database.record_transaction = AsyncMock(side_effect=RuntimeError("write failed"))
        with caplog.at_level(logging.CRITICAL):
            outcome = await engine.ledger.persist("u1", "g1", 60_000, session, is_final_close=True)
        assert outcome.persisted
        assert outcome.ledger_consistent is False
        assert "LEDGER INCONSISTENCY" in caplog.text
        # Balance stands; history still written; session closed
        assert await database.get_balance("u1", "g1") == 6
        assert len(await database.get_activity_records("u1", "g1")) == 1
        assert not await engine.sessions.has_active_session("u1", "g1")
        assert engine.ledger.ledger_inconsistencies == 1

    async def test_history_failure_does_not_unwind(self, engine: AccrualEngine, database: EconomyDatabase, clock: FakeClock):
        session = await _open_and_wait(engine, clock, 60)
        database.upsert_session_activity = AsyncMock(side_effect=RuntimeError("write failed"))
        outcome = await engine.ledger.persist("u1", "g1", 60_000, session)
        assert outcome.persisted
        assert outcome.ledger_consistent
        assert await database.get_balance("u1", "g1") == 6
        assert len(await database.get_transactions("u1", "g1")) == 1

    async def test_streak_failure_does_not_block_close(self, engine: AccrualEngine, clock: FakeClock):
        session = await _open_and_wait(engine, clock, 60)
        engine.streaks.update_streak = AsyncMock(side_effect=RuntimeError("boom"))
        outcome = await engine.ledger.persist("u1", "g1", 60_000, session, is_final_close=True)
        assert outcome.persisted
        assert not await engine.sessions.has_active_session("u1", "g1")

    async def test_multiplier_outage_uses_one(self, engine: AccrualEngine, database: EconomyDatabase, clock: FakeClock):
        await database.set_user_multiplier("u1", "g1", 3.0)
        session = await _open_and_wait(engine, clock, 60)
        engine.multipliers.get_multiplier = AsyncMock(side_effect=RuntimeError("down"))
        outcome = await engine.ledger.persist("u1", "g1", 60_000, session)
        assert outcome.coins == 6


class TestGroups:
    async def test_group_time_forwarded(self, engine: AccrualEngine, database: EconomyDatabase, clock: FakeClock):
        await database.set_group_room("g1", "r1", "red")
        session = await _open_and_wait(engine, clock, 60)
        assert session.group_id == "red"
        await engine.ledger.persist("u1", "g1", 60_000, session, is_final_close=True)
        assert await database.get_group_vc_time("g1", "red", "u1") == 60_000
        record = (await database.get_activity_records("u1", "g1"))[0]
        assert record["channel_type"] == "group"
        assert record["group_id"] == "red"

    async def test_user_multiplier_applies(self, engine: AccrualEngine, database: EconomyDatabase, clock: FakeClock):
        await database.set_user_multiplier("u1", "g1", 1.5)
        session = await _open_and_wait(engine, clock, 310)
        outcome = await engine.ledger.persist("u1", "g1", 310_000, session)
        assert outcome.coins == 46


class TestSaveAndEnd:
    async def test_uses_time_since_flush(self, engine: AccrualEngine, database: EconomyDatabase, clock: FakeClock):
        session = await _open_and_wait(engine, clock, 100)
        await engine.sessions.update_flush_pointer("u1", "g1", to_ms(clock()))
        clock.advance(50)
        outcome = await engine.ledger.save_and_end_session("u1", "g1")
        assert outcome.duration_ms == 50_000
        assert not await engine.sessions.has_active_session("u1", "g1")
        assert session.session_start_time < to_ms(clock())

    async def test_no_session(self, engine: AccrualEngine):
        assert await engine.ledger.save_and_end_session("u1", "g1") is None
