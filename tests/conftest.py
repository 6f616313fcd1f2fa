"""Shared test fixtures for voice-economy."""

from __future__ import annotations

import asyncio
import fnmatch
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncGenerator, Iterable

import pytest
import pytest_asyncio

from voice_economy.config import EconomyConfig
from voice_economy.database import EconomyDatabase
from voice_economy.engine import AccrualEngine
from voice_economy.presence import RoomMember
from voice_economy.session_store import RedisSessionStore

GUILD = "g1"
TRACKED_CATEGORY = "cat1"


# ── Minimal config dict matching EconomyConfig schema ────────

def make_config_dict(**overrides) -> dict:
    """Build a valid config dict with sensible test defaults."""
    base = {
        "discord": {"token": "test-token", "ignored_users": ["999"]},
        "database": {"path": ":memory:"},
        "redis": {"url": "redis://localhost:6379/15", "key_prefix": "vc_session"},
        "tracking": {
            "enabled": True,
            "tracked_category_ids": [TRACKED_CATEGORY],
            "coins_per_second": 0.1,
            "session_ttl_seconds": 86400,
            "sync_interval_seconds": 300,
            "min_billable_seconds": 5,
            "transfer_grace_seconds": 5,
        },
        "metrics": {"enabled": False},
    }
    base.update(overrides)
    return base


def make_tracking(**overrides) -> dict:
    """The default tracking section with some fields replaced."""
    tracking = dict(make_config_dict()["tracking"])
    tracking.update(overrides)
    return tracking


# ── Fakes ────────────────────────────────────────────────────

class FakeClock:
    """Callable clock returning a controllable UTC datetime."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now

    def set(self, when: datetime) -> None:
        self.now = when


class FakeRedis:
    """In-memory stand-in for the redis.asyncio calls the session store makes."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise ConnectionError("redis unavailable")

    @staticmethod
    def _key(key: str | bytes) -> str:
        # redis-py accepts bytes keys, as yielded by scan_iter
        return key.decode() if isinstance(key, bytes) else key

    async def get(self, key: str | bytes):
        self._check()
        value = self.data.get(self._key(key))
        return value.encode() if value is not None else None

    async def setex(self, key: str | bytes, ttl: int, value: str) -> bool:
        self._check()
        key = self._key(key)
        self.data[key] = value
        self.ttls[key] = ttl
        return True

    async def delete(self, *keys: str | bytes) -> int:
        self._check()
        removed = 0
        for key in map(self._key, keys):
            if self.data.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def scan_iter(self, match: str = "*"):
        self._check()
        for key in list(self.data):
            if fnmatch.fnmatchcase(key, match):
                yield key.encode()

    async def ping(self) -> bool:
        self._check()
        return True


class FakePresence:
    """PresenceProvider over plain dicts."""

    def __init__(self) -> None:
        # (guild, user) → room
        self.rooms: dict[tuple[str, str], str] = {}
        # (guild, room) → category
        self.categories: dict[tuple[str, str], str] = {
            (GUILD, "r1"): TRACKED_CATEGORY,
            (GUILD, "r2"): TRACKED_CATEGORY,
            (GUILD, "u1"): "cat-untracked",
        }
        self.guilds: list[str] = [GUILD]
        self.gate: asyncio.Event | None = None
        self.fail = False

    def join(self, user_id: str, room_id: str, guild_id: str = GUILD) -> None:
        self.rooms[(guild_id, user_id)] = room_id

    def leave(self, user_id: str, guild_id: str = GUILD) -> None:
        self.rooms.pop((guild_id, user_id), None)

    async def get_member_room(self, guild_id: str, user_id: str) -> str | None:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise RuntimeError("gateway unavailable")
        return self.rooms.get((guild_id, user_id))

    async def get_room_category(self, guild_id: str, room_id: str) -> str | None:
        return self.categories.get((guild_id, room_id))

    async def list_room_members(self, guild_id: str, category_ids: Iterable[str]) -> list[RoomMember]:
        tracked = set(category_ids)
        return [
            RoomMember(user_id, room_id)
            for (g, user_id), room_id in self.rooms.items()
            if g == guild_id and self.categories.get((g, room_id)) in tracked
        ]

    async def list_guild_ids(self) -> list[str]:
        return list(self.guilds)


# ── Fixtures ─────────────────────────────────────────────────

@pytest.fixture
def sample_config_dict() -> dict:
    return make_config_dict()


@pytest.fixture
def sample_config(sample_config_dict: dict) -> EconomyConfig:
    return EconomyConfig(**sample_config_dict)


@pytest.fixture
def clock() -> FakeClock:
    """Tuesday 2026-03-10 12:00:00 UTC."""
    return FakeClock(datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def store(fake_redis: FakeRedis) -> RedisSessionStore:
    return RedisSessionStore(fake_redis, "vc_session")


@pytest.fixture
def presence() -> FakePresence:
    return FakePresence()


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> str:
    """Return a temporary SQLite database path."""
    return str(tmp_path / "test_economy.db")


@pytest_asyncio.fixture
async def database(tmp_db_path: str) -> AsyncGenerator[EconomyDatabase, None]:
    """Provide an initialized database with temp file."""
    db = EconomyDatabase(tmp_db_path, logging.getLogger("test"))
    await db.initialize()
    yield db


@pytest.fixture
def make_engine(database, store, presence, clock):
    """Factory for an AccrualEngine over the shared fakes, optionally with config overrides."""

    def _make(**overrides) -> AccrualEngine:
        config = EconomyConfig(**make_config_dict(**overrides))
        return AccrualEngine(
            config, database, store, presence, logger=logging.getLogger("test"), clock=clock,
        )

    return _make


@pytest.fixture
def engine(make_engine) -> AccrualEngine:
    return make_engine()
