"""Tests for crash recovery and session integrity checks."""

from __future__ import annotations

from datetime import datetime, timezone

from voice_economy.database import EconomyDatabase
from voice_economy.engine import AccrualEngine
from voice_economy.recovery_manager import IntegrityReport, RecoveryReport
from voice_economy.utils import to_ms

from conftest import FakeClock, FakePresence


class TestRecoverActiveSessions:
    async def test_opens_session_at_recovery_time(
        self, engine: AccrualEngine, presence: FakePresence, clock: FakeClock,
    ):
        presence.join("u1", "r1")
        report = await engine.recover_active_sessions()
        assert report == RecoveryReport(recovered=1, skipped=0, failed=0)
        session = await engine.sessions.get_session("u1", "g1")
        assert session.session_start_time == to_ms(clock())
        assert session.joined_at == session.session_start_time
        assert session.room_id == "r1"

    async def test_skips_existing_and_untracked(
        self, engine: AccrualEngine, presence: FakePresence, clock: FakeClock,
    ):
        await engine.open_session("u1", "g1", "r1")
        existing = await engine.sessions.get_session("u1", "g1")
        clock.advance(30)
        presence.join("u1", "r1")
        presence.join("u2", "r2")
        presence.join("u3", "u1")  # untracked category
        presence.join("999", "r1")  # ignored account

        report = await engine.recover_active_sessions()
        assert report == RecoveryReport(recovered=1, skipped=1, failed=0)
        assert await engine.sessions.get_session("u1", "g1") == existing
        assert await engine.sessions.has_active_session("u2", "g1")
        assert not await engine.sessions.has_active_session("u3", "g1")
        assert not await engine.sessions.has_active_session("999", "g1")

    async def test_runs_once(self, engine: AccrualEngine, presence: FakePresence):
        presence.join("u1", "r1")
        await engine.recover_active_sessions()
        await engine.close_session("u1", "g1")
        assert await engine.recover_active_sessions() == RecoveryReport()
        assert not await engine.sessions.has_active_session("u1", "g1")
        assert engine.recovery.has_run

    async def test_picks_up_group(self, engine: AccrualEngine, presence: FakePresence, database: EconomyDatabase):
        await database.set_group_room("g1", "r2", "red")
        presence.join("u1", "r2")
        await engine.recover_active_sessions()
        assert (await engine.sessions.get_session("u1", "g1")).group_id == "red"

    async def test_disabled_guild_skipped(self, make_engine, presence: FakePresence):
        engine = make_engine(guilds=[{"guild_id": "g1", "enabled": False}])
        presence.join("u1", "r1")
        assert await engine.recover_active_sessions() == RecoveryReport()

    async def test_store_outage_counts_failures(self, engine: AccrualEngine, presence: FakePresence, fake_redis):
        presence.join("u1", "r1")
        fake_redis.fail = True
        report = await engine.recover_active_sessions()
        assert report.recovered == 0
        assert report.failed == 1


class TestRecoveryMidSession:
    async def test_recovered_session_through_flush_and_midnight(
        self, engine: AccrualEngine, presence: FakePresence, database: EconomyDatabase, clock: FakeClock,
    ):
        """Recovery at 23:50, flush at 23:55, leave at 00:05: only the pointer drives amounts."""
        clock.set(datetime(2026, 3, 11, 23, 50, tzinfo=timezone.utc))
        recovered_at = to_ms(clock())
        presence.join("u1", "r1")
        await engine.recover_active_sessions()

        clock.advance(300)
        report = await engine.run_reconciliation_now()
        assert report.coins == 30

        clock.advance(600)
        presence.leave("u1")
        await engine.handle_voice_update("u1", "g1", "r1", None)

        user = await database.get_user("u1", "g1")
        assert user["total_vc_time"] == 900_000
        assert user["total_coins_earned"] == 90
        # 00:00 → 00:05 of the final span lands in the new day
        assert user["daily_vc_time"] == 300_000
        assert user["daily_coins_earned"] == 30

        records = [r for r in await database.get_activity_records("u1", "g1") if r["room_id"] != "daily_summary"]
        assert len(records) == 1
        assert records[0]["id"] == f"session_g1_u1_{recovered_at}"
        assert records[0]["duration"] == 900_000

        summary = await database.get_activity_record("daily_summary_g1_u1_2026-03-11")
        assert summary["duration"] == 300_000


class TestVerifySessionIntegrity:
    async def test_deletes_without_accrual(
        self, engine: AccrualEngine, presence: FakePresence, database: EconomyDatabase, clock: FakeClock,
    ):
        presence.join("u1", "r1")
        await engine.open_session("u1", "g1", "r1")
        await engine.open_session("u2", "g1", "r1")  # u2 not present anywhere
        presence.join("u3", "r2")
        await engine.open_session("u3", "g1", "r1")  # u3 in a different room
        clock.advance(600)

        report = await engine.verify_session_integrity()
        assert report == IntegrityReport(checked=3, valid=1, invalid=2)
        assert await engine.sessions.has_active_session("u1", "g1")
        assert not await engine.sessions.has_active_session("u2", "g1")
        assert not await engine.sessions.has_active_session("u3", "g1")
        assert await database.get_user("u2", "g1") is None
        assert await database.get_user("u3", "g1") is None

    async def test_lookup_failure_leaves_session(self, engine: AccrualEngine, presence: FakePresence):
        await engine.open_session("u1", "g1", "r1")
        presence.fail = True
        report = await engine.verify_session_integrity()
        assert report == IntegrityReport(checked=1, valid=0, invalid=0)
        assert await engine.sessions.has_active_session("u1", "g1")
