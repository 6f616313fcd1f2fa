"""SQLite database module for voice-economy.

Each public method is async and wraps a synchronous inner function via
asyncio.run_in_executor(None, _sync). A new connection is created per call
(WAL mode, 30s busy timeout, Row factory).

Collections:
    users         — durable user accrual record, one per (user, guild)
    transactions  — append-only ledger, keyed by engine-chosen id
    vc_activity   — historical activity records (session spans + daily summaries)
    group_rooms   — room → group (sub-organization) mapping
    group_stats   — per-group presence time aggregation
    group_multipliers — per-group coin multiplier
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any

from .utils import start_of_day, start_of_month, start_of_week


def _ts(dt: datetime) -> str:
    """Canonical stored form: UTC ISO-8601 (lexicographically ordered)."""
    return dt.astimezone(timezone.utc).isoformat()


# Columns the reset manager may overwrite.
_RESETTABLE_COLUMNS = frozenset({
    "daily_vc_time",
    "daily_coins_earned",
    "last_daily_reset",
    "weekly_vc_time",
    "weekly_coins_earned",
    "last_weekly_reset",
    "monthly_vc_time",
    "monthly_coins_earned",
    "last_monthly_reset",
})


class EconomyDatabase:
    """SQLite-backed durable store for accrual records and ledgers."""

    def __init__(self, db_path: str, logger: logging.Logger | None = None) -> None:
        self._db_path = db_path
        self._logger = logger or logging.getLogger("economy.database")

    def _get_connection(self) -> sqlite3.Connection:
        """Create a new SQLite connection with standard settings."""
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.row_factory = sqlite3.Row
        return conn

    # ══════════════════════════════════════════════════════════
    #  Initialization
    # ══════════════════════════════════════════════════════════

    async def initialize(self) -> None:
        """Create all tables and indexes. Idempotent."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._create_tables)

    def _create_tables(self) -> None:
        conn = self._get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT NOT NULL,
                    guild_id TEXT NOT NULL,
                    username TEXT,
                    total_vc_time INTEGER DEFAULT 0,
                    daily_vc_time INTEGER DEFAULT 0,
                    weekly_vc_time INTEGER DEFAULT 0,
                    monthly_vc_time INTEGER DEFAULT 0,
                    coins INTEGER DEFAULT 0,
                    total_coins_earned INTEGER DEFAULT 0,
                    daily_coins_earned INTEGER DEFAULT 0,
                    weekly_coins_earned INTEGER DEFAULT 0,
                    monthly_coins_earned INTEGER DEFAULT 0,
                    last_active_date TIMESTAMP,
                    current_streak INTEGER DEFAULT 0,
                    longest_streak INTEGER DEFAULT 0,
                    last_streak_date TEXT,
                    last_daily_reset TIMESTAMP,
                    last_weekly_reset TIMESTAMP,
                    last_monthly_reset TIMESTAMP,
                    multiplier REAL DEFAULT 1.0,
                    multiplier_enabled BOOLEAN DEFAULT 1,
                    current_group TEXT,
                    created_at TIMESTAMP,
                    updated_at TIMESTAMP,
                    UNIQUE(user_id, guild_id)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS transactions (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    guild_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    balance_after INTEGER NOT NULL,
                    metadata TEXT,
                    created_at TIMESTAMP NOT NULL
                )
            """)

            # flushed_until / last_span_start are epoch ms; they make repeated
            # flushes of the same span a no-op on a growing session record.
            conn.execute("""
                CREATE TABLE IF NOT EXISTS vc_activity (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    guild_id TEXT NOT NULL,
                    start_time TIMESTAMP NOT NULL,
                    end_time TIMESTAMP NOT NULL,
                    duration INTEGER DEFAULT 0,
                    room_id TEXT NOT NULL,
                    channel_type TEXT NOT NULL,
                    group_id TEXT,
                    coins_earned INTEGER DEFAULT 0,
                    date TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    last_span_start INTEGER DEFAULT 0,
                    flushed_until INTEGER DEFAULT 0
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS group_rooms (
                    guild_id TEXT NOT NULL,
                    room_id TEXT NOT NULL,
                    group_id TEXT NOT NULL,
                    UNIQUE(guild_id, room_id)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS group_stats (
                    guild_id TEXT NOT NULL,
                    group_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    vc_time INTEGER DEFAULT 0,
                    updated_at TIMESTAMP,
                    UNIQUE(guild_id, group_id, user_id)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS group_multipliers (
                    guild_id TEXT NOT NULL,
                    group_id TEXT NOT NULL,
                    multiplier REAL DEFAULT 1.0,
                    UNIQUE(guild_id, group_id)
                )
            """)

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_transactions_user "
                "ON transactions(user_id, guild_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_transactions_created_at "
                "ON transactions(created_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_vc_activity_user_date "
                "ON vc_activity(user_id, date)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_vc_activity_group_date "
                "ON vc_activity(group_id, date)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_vc_activity_guild_date "
                "ON vc_activity(guild_id, date)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_vc_activity_created_at "
                "ON vc_activity(created_at)"
            )
            conn.commit()
        finally:
            conn.close()

    # ══════════════════════════════════════════════════════════
    #  User Accrual Record
    # ══════════════════════════════════════════════════════════

    async def get_user(self, user_id: str, guild_id: str) -> dict | None:
        """Return the user accrual record as a dict, or None."""
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM users WHERE user_id = ? AND guild_id = ?",
                    (user_id, guild_id),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_balance(self, user_id: str, guild_id: str) -> int:
        """Return the coin balance, 0 if the user doesn't exist."""
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT coins FROM users WHERE user_id = ? AND guild_id = ?",
                    (user_id, guild_id),
                ).fetchone()
                return row["coins"] if row else 0
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def increment_accrual(
        self,
        user_id: str,
        guild_id: str,
        *,
        duration_ms: int,
        coins: int,
        daily_ms: int,
        weekly_ms: int,
        monthly_ms: int,
        daily_coins: int,
        weekly_coins: int,
        monthly_coins: int,
        now: datetime,
        username: str | None = None,
    ) -> None:
        """Increment cumulative and rolling counters in one upsert.

        Creates the record if missing, stamping reset markers with the start
        of the current day/week/month. Raises on failure; the caller decides
        whether that aborts the accrual.
        """
        loop = asyncio.get_running_loop()
        stamp = _ts(now)

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT INTO users (user_id, guild_id, username, "
                    "total_vc_time, daily_vc_time, weekly_vc_time, monthly_vc_time, "
                    "coins, total_coins_earned, daily_coins_earned, weekly_coins_earned, "
                    "monthly_coins_earned, last_active_date, last_daily_reset, "
                    "last_weekly_reset, last_monthly_reset, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT(user_id, guild_id) DO UPDATE SET "
                    "total_vc_time = total_vc_time + excluded.total_vc_time, "
                    "daily_vc_time = daily_vc_time + excluded.daily_vc_time, "
                    "weekly_vc_time = weekly_vc_time + excluded.weekly_vc_time, "
                    "monthly_vc_time = monthly_vc_time + excluded.monthly_vc_time, "
                    "coins = coins + excluded.coins, "
                    "total_coins_earned = total_coins_earned + excluded.total_coins_earned, "
                    "daily_coins_earned = daily_coins_earned + excluded.daily_coins_earned, "
                    "weekly_coins_earned = weekly_coins_earned + excluded.weekly_coins_earned, "
                    "monthly_coins_earned = monthly_coins_earned + excluded.monthly_coins_earned, "
                    "username = COALESCE(excluded.username, username), "
                    "last_active_date = excluded.last_active_date, "
                    "updated_at = excluded.updated_at",
                    (
                        user_id, guild_id, username,
                        duration_ms, daily_ms, weekly_ms, monthly_ms,
                        coins, coins, daily_coins, weekly_coins, monthly_coins,
                        stamp,
                        _ts(start_of_day(now)),
                        _ts(start_of_week(now)),
                        _ts(start_of_month(now)),
                        stamp, stamp,
                    ),
                )
                conn.commit()
            finally:
                conn.close()

        await loop.run_in_executor(None, _sync)

    async def apply_reset(
        self, user_id: str, guild_id: str, updates: dict[str, Any],
    ) -> None:
        """Overwrite rolling counters / reset markers. Datetimes are stored as ISO."""
        unknown = set(updates) - _RESETTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Not resettable: {sorted(unknown)}")
        if not updates:
            return
        loop = asyncio.get_running_loop()
        values = {
            col: _ts(val) if isinstance(val, datetime) else val
            for col, val in updates.items()
        }

        def _sync() -> None:
            conn = self._get_connection()
            try:
                assignments = ", ".join(f"{col} = ?" for col in values)
                conn.execute(
                    f"UPDATE users SET {assignments} WHERE user_id = ? AND guild_id = ?",
                    (*values.values(), user_id, guild_id),
                )
                conn.commit()
            finally:
                conn.close()

        await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Streaks
    # ══════════════════════════════════════════════════════════

    async def update_streak(
        self,
        user_id: str,
        guild_id: str,
        current: int,
        longest: int,
        streak_date: str,
    ) -> None:
        """Write streak counters and the date they were last evaluated for."""
        loop = asyncio.get_running_loop()

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "UPDATE users SET current_streak = ?, longest_streak = ?, last_streak_date = ? "
                    "WHERE user_id = ? AND guild_id = ?",
                    (current, longest, streak_date, user_id, guild_id),
                )
                conn.commit()
            finally:
                conn.close()

        await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Multiplier overrides
    # ══════════════════════════════════════════════════════════

    async def set_user_multiplier(
        self, user_id: str, guild_id: str, multiplier: float, enabled: bool = True,
    ) -> None:
        """Set the per-user multiplier override, creating the record if needed."""
        loop = asyncio.get_running_loop()

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT INTO users (user_id, guild_id, multiplier, multiplier_enabled) "
                    "VALUES (?, ?, ?, ?) "
                    "ON CONFLICT(user_id, guild_id) DO UPDATE SET "
                    "multiplier = excluded.multiplier, "
                    "multiplier_enabled = excluded.multiplier_enabled",
                    (user_id, guild_id, multiplier, 1 if enabled else 0),
                )
                conn.commit()
            finally:
                conn.close()

        await loop.run_in_executor(None, _sync)

    async def set_user_group(self, user_id: str, guild_id: str, group_id: str | None) -> None:
        """Record the group the user currently belongs to (None to leave)."""
        loop = asyncio.get_running_loop()

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT INTO users (user_id, guild_id, current_group) VALUES (?, ?, ?) "
                    "ON CONFLICT(user_id, guild_id) DO UPDATE SET current_group = excluded.current_group",
                    (user_id, guild_id, group_id),
                )
                conn.commit()
            finally:
                conn.close()

        await loop.run_in_executor(None, _sync)

    async def set_group_multiplier(self, guild_id: str, group_id: str, multiplier: float) -> None:
        loop = asyncio.get_running_loop()

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT INTO group_multipliers (guild_id, group_id, multiplier) VALUES (?, ?, ?) "
                    "ON CONFLICT(guild_id, group_id) DO UPDATE SET multiplier = excluded.multiplier",
                    (guild_id, group_id, multiplier),
                )
                conn.commit()
            finally:
                conn.close()

        await loop.run_in_executor(None, _sync)

    async def get_group_multiplier(self, guild_id: str, group_id: str) -> float | None:
        """The group's coin multiplier, or None for an unknown group."""
        loop = asyncio.get_running_loop()

        def _sync() -> float | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT multiplier FROM group_multipliers WHERE guild_id = ? AND group_id = ?",
                    (guild_id, group_id),
                ).fetchone()
                if row is None or row["multiplier"] is None:
                    return None
                return float(row["multiplier"])
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Transaction Records
    # ══════════════════════════════════════════════════════════

    async def record_transaction(
        self,
        tx_id: str,
        user_id: str,
        guild_id: str,
        tx_type: str,
        amount: int,
        balance_after: int,
        metadata: dict | None,
        created_at: datetime,
    ) -> None:
        """Upsert a transaction record by id."""
        loop = asyncio.get_running_loop()
        meta = json.dumps(metadata) if metadata else None

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT INTO transactions (id, user_id, guild_id, type, amount, "
                    "balance_after, metadata, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT(id) DO UPDATE SET "
                    "user_id = excluded.user_id, guild_id = excluded.guild_id, "
                    "type = excluded.type, amount = excluded.amount, "
                    "balance_after = excluded.balance_after, "
                    "metadata = excluded.metadata, created_at = excluded.created_at",
                    (tx_id, user_id, guild_id, tx_type, amount, balance_after, meta,
                     _ts(created_at)),
                )
                conn.commit()
            finally:
                conn.close()

        await loop.run_in_executor(None, _sync)

    async def get_transactions(self, user_id: str, guild_id: str) -> list[dict]:
        """All transactions for a user, oldest first."""
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM transactions WHERE user_id = ? AND guild_id = ? "
                    "ORDER BY created_at, rowid",
                    (user_id, guild_id),
                ).fetchall()
                result = []
                for row in rows:
                    item = dict(row)
                    item["metadata"] = json.loads(item["metadata"]) if item["metadata"] else {}
                    result.append(item)
                return result
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Historical Activity Records
    # ══════════════════════════════════════════════════════════

    async def upsert_session_activity(
        self,
        record_id: str,
        user_id: str,
        guild_id: str,
        *,
        start_time: datetime,
        span_start_ms: int,
        span_end: datetime,
        span_end_ms: int,
        duration_ms: int,
        room_id: str,
        group_id: str | None,
        coins: int,
        created_at: datetime,
    ) -> None:
        """Fold one persisted span into the session's activity record.

        The record grows with each flush. A span that starts before the
        record's ``flushed_until`` has already been folded in and is ignored,
        so replaying the same flush never double-counts.
        """
        loop = asyncio.get_running_loop()
        channel_type = "group" if group_id else "general"

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT INTO vc_activity (id, user_id, guild_id, start_time, end_time, "
                    "duration, room_id, channel_type, group_id, coins_earned, date, created_at, "
                    "last_span_start, flushed_until) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT(id) DO UPDATE SET "
                    "duration = duration + excluded.duration, "
                    "coins_earned = coins_earned + excluded.coins_earned, "
                    "end_time = excluded.end_time, "
                    "room_id = excluded.room_id, "
                    "channel_type = excluded.channel_type, "
                    "group_id = excluded.group_id, "
                    "date = excluded.date, "
                    "last_span_start = excluded.last_span_start, "
                    "flushed_until = excluded.flushed_until "
                    "WHERE excluded.last_span_start >= vc_activity.flushed_until",
                    (
                        record_id, user_id, guild_id,
                        _ts(start_time), _ts(span_end),
                        duration_ms, room_id, channel_type, group_id, coins,
                        _ts(start_of_day(span_end)), _ts(created_at),
                        span_start_ms, span_end_ms,
                    ),
                )
                conn.commit()
            finally:
                conn.close()

        await loop.run_in_executor(None, _sync)

    async def upsert_daily_summary(
        self,
        record_id: str,
        user_id: str,
        guild_id: str,
        *,
        day: datetime,
        end_time: datetime,
        duration_ms: int,
        coins: int,
        created_at: datetime,
    ) -> None:
        """Write (or overwrite) the summary record for one archived day."""
        loop = asyncio.get_running_loop()

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT INTO vc_activity (id, user_id, guild_id, start_time, end_time, "
                    "duration, room_id, channel_type, group_id, coins_earned, date, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, 'daily_summary', 'general', NULL, ?, ?, ?) "
                    "ON CONFLICT(id) DO UPDATE SET "
                    "end_time = excluded.end_time, duration = excluded.duration, "
                    "coins_earned = excluded.coins_earned, created_at = excluded.created_at",
                    (
                        record_id, user_id, guild_id,
                        _ts(day), _ts(end_time), duration_ms, coins,
                        _ts(day), _ts(created_at),
                    ),
                )
                conn.commit()
            finally:
                conn.close()

        await loop.run_in_executor(None, _sync)

    async def get_activity_record(self, record_id: str) -> dict | None:
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM vc_activity WHERE id = ?", (record_id,),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_activity_records(self, user_id: str, guild_id: str) -> list[dict]:
        """All activity records (sessions and summaries) for a user, by start time."""
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM vc_activity WHERE user_id = ? AND guild_id = ? "
                    "ORDER BY start_time",
                    (user_id, guild_id),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Groups
    # ══════════════════════════════════════════════════════════

    async def set_group_room(self, guild_id: str, room_id: str, group_id: str) -> None:
        loop = asyncio.get_running_loop()

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT INTO group_rooms (guild_id, room_id, group_id) VALUES (?, ?, ?) "
                    "ON CONFLICT(guild_id, room_id) DO UPDATE SET group_id = excluded.group_id",
                    (guild_id, room_id, group_id),
                )
                conn.commit()
            finally:
                conn.close()

        await loop.run_in_executor(None, _sync)

    async def remove_group_room(self, guild_id: str, room_id: str) -> bool:
        loop = asyncio.get_running_loop()

        def _sync() -> bool:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "DELETE FROM group_rooms WHERE guild_id = ? AND room_id = ?",
                    (guild_id, room_id),
                )
                conn.commit()
                return cursor.rowcount > 0
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_group_for_room(self, guild_id: str, room_id: str) -> str | None:
        loop = asyncio.get_running_loop()

        def _sync() -> str | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT group_id FROM group_rooms WHERE guild_id = ? AND room_id = ?",
                    (guild_id, room_id),
                ).fetchone()
                return row["group_id"] if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def increment_group_vc_time(
        self, guild_id: str, group_id: str, user_id: str, duration_ms: int, now: datetime,
    ) -> None:
        loop = asyncio.get_running_loop()

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT INTO group_stats (guild_id, group_id, user_id, vc_time, updated_at) "
                    "VALUES (?, ?, ?, ?, ?) "
                    "ON CONFLICT(guild_id, group_id, user_id) DO UPDATE SET "
                    "vc_time = vc_time + excluded.vc_time, updated_at = excluded.updated_at",
                    (guild_id, group_id, user_id, duration_ms, _ts(now)),
                )
                conn.commit()
            finally:
                conn.close()

        await loop.run_in_executor(None, _sync)

    async def get_group_vc_time(
        self, guild_id: str, group_id: str, user_id: str | None = None,
    ) -> int:
        """Total presence ms for a group, or one member's contribution."""
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                if user_id is None:
                    row = conn.execute(
                        "SELECT COALESCE(SUM(vc_time), 0) AS total FROM group_stats "
                        "WHERE guild_id = ? AND group_id = ?",
                        (guild_id, group_id),
                    ).fetchone()
                else:
                    row = conn.execute(
                        "SELECT COALESCE(SUM(vc_time), 0) AS total FROM group_stats "
                        "WHERE guild_id = ? AND group_id = ? AND user_id = ?",
                        (guild_id, group_id, user_id),
                    ).fetchone()
                return row["total"]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Retention & Population Queries
    # ══════════════════════════════════════════════════════════

    async def prune_expired(
        self, transactions_before: datetime, activity_before: datetime,
    ) -> tuple[int, int]:
        """Delete records created before the cutoffs. Returns (transactions, activity) removed."""
        loop = asyncio.get_running_loop()

        def _sync() -> tuple[int, int]:
            conn = self._get_connection()
            try:
                tx = conn.execute(
                    "DELETE FROM transactions WHERE created_at < ?",
                    (_ts(transactions_before),),
                )
                act = conn.execute(
                    "DELETE FROM vc_activity WHERE created_at < ?",
                    (_ts(activity_before),),
                )
                conn.commit()
                return tx.rowcount, act.rowcount
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_total_circulation(self, guild_id: str) -> int:
        """SUM(coins) for all users in guild."""
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT COALESCE(SUM(coins), 0) AS total FROM users WHERE guild_id = ?",
                    (guild_id,),
                ).fetchone()
                return row["total"]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_account_count(self, guild_id: str) -> int:
        """COUNT of user records in guild."""
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT COUNT(*) AS cnt FROM users WHERE guild_id = ?",
                    (guild_id,),
                ).fetchone()
                return row["cnt"]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)
