"""Session lifecycle manager — open/read/close/transfer of ephemeral sessions.

Sessions live in the Redis session store only. This module never writes
accrual; every caller picks its own accrual semantics around a close.
Store failures are logged and degrade to "no session" / no-op.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, Iterator, NamedTuple

from .config import EconomyConfig
from .session_store import RedisSessionStore
from .utils import now_utc, to_ms


@dataclass
class VoiceSession:
    """One user's open presence span in a tracked room. Times are epoch ms."""

    user_id: str
    guild_id: str
    room_id: str
    joined_at: int  # flush pointer
    session_start_time: int  # original join, never mutated
    group_id: str | None = None
    transferred: bool = False
    previous_room_id: str | None = None

    def to_record(self) -> dict:
        return asdict(self)

    @classmethod
    def from_record(cls, data: dict) -> VoiceSession | None:
        try:
            return cls(
                user_id=str(data["user_id"]),
                guild_id=str(data["guild_id"]),
                room_id=str(data["room_id"]),
                joined_at=int(data["joined_at"]),
                session_start_time=int(data["session_start_time"]),
                group_id=data.get("group_id"),
                transferred=bool(data.get("transferred", False)),
                previous_room_id=data.get("previous_room_id"),
            )
        except (KeyError, TypeError, ValueError):
            return None


class SessionDuration(NamedTuple):
    milliseconds: int
    seconds: int
    minutes: int
    hours: int

    @classmethod
    def from_ms(cls, ms: int) -> SessionDuration:
        ms = max(0, int(ms))
        return cls(ms, ms // 1000, ms // 60_000, ms // 3_600_000)


class SessionManager:
    """Owns session records in the session store."""

    def __init__(
        self,
        config: EconomyConfig,
        store: RedisSessionStore,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._config = config
        self._store = store
        self._logger = logger or logging.getLogger("economy.sessions")
        self._clock = clock
        # (guild_id, user_id) pairs currently being closed by an event handler
        self._concluding: set[tuple[str, str]] = set()

        # Metrics counters (exposed to metrics_server)
        self.sessions_opened: int = 0
        self.sessions_closed: int = 0
        self.sessions_transferred: int = 0

    def _now_ms(self) -> int:
        return to_ms(self._clock())

    def _ttl(self, guild_id: str) -> int:
        return self._config.tracking_for(guild_id).session_ttl_seconds

    async def _write(self, session: VoiceSession) -> None:
        await self._store.set(
            session.guild_id, session.user_id, session.to_record(), self._ttl(session.guild_id),
        )

    # ══════════════════════════════════════════════════════════
    #  Lifecycle
    # ══════════════════════════════════════════════════════════

    async def create_session(
        self,
        user_id: str,
        guild_id: str,
        room_id: str,
        group_id: str | None = None,
    ) -> VoiceSession | None:
        """Open a session, overwriting any existing one for (user, guild)."""
        now = self._now_ms()
        session = VoiceSession(
            user_id=user_id,
            guild_id=guild_id,
            room_id=room_id,
            joined_at=now,
            session_start_time=now,
            group_id=group_id,
        )
        try:
            await self._write(session)
        except Exception:
            self._logger.exception("Failed to create session for %s in %s", user_id, guild_id)
            return None
        self.sessions_opened += 1
        self._logger.info(
            "Session opened: %s in room %s (guild %s, group %s)",
            user_id, room_id, guild_id, group_id or "none",
        )
        return session

    async def get_session(self, user_id: str, guild_id: str) -> VoiceSession | None:
        try:
            record = await self._store.get(guild_id, user_id)
        except Exception:
            self._logger.exception("Failed to read session for %s in %s", user_id, guild_id)
            return None
        if record is None:
            return None
        session = VoiceSession.from_record(record)
        if session is None:
            self._logger.warning("Malformed session record for %s in %s", user_id, guild_id)
        return session

    async def delete_session(self, user_id: str, guild_id: str) -> bool:
        """Remove the session record. Does not persist any accrual."""
        try:
            deleted = await self._store.delete(guild_id, user_id)
        except Exception:
            self._logger.exception("Failed to delete session for %s in %s", user_id, guild_id)
            return False
        if deleted:
            self.sessions_closed += 1
            self._logger.debug("Session deleted: %s in %s", user_id, guild_id)
        return deleted

    async def transfer_session(
        self,
        user_id: str,
        guild_id: str,
        new_room_id: str,
        group_id: str | None = None,
    ) -> VoiceSession | None:
        """Carry the open session into *new_room_id* without persisting."""
        session = await self.get_session(user_id, guild_id)
        if session is None:
            self._logger.warning("Cannot transfer session: none found for %s in %s", user_id, guild_id)
            return None

        session.previous_room_id = session.room_id
        session.room_id = new_room_id
        session.group_id = group_id
        session.transferred = True
        try:
            await self._write(session)
        except Exception:
            self._logger.exception("Failed to transfer session for %s in %s", user_id, guild_id)
            return None
        self.sessions_transferred += 1
        self._logger.info(
            "Session transferred: %s from %s to %s (guild %s)",
            user_id, session.previous_room_id, new_room_id, guild_id,
        )
        return session

    async def update_flush_pointer(
        self, user_id: str, guild_id: str, at_ms: int | None = None,
    ) -> VoiceSession | None:
        """Advance ``joined_at`` to *at_ms* (default: now) after a flush."""
        session = await self.get_session(user_id, guild_id)
        if session is None:
            return None
        session.joined_at = self._now_ms() if at_ms is None else at_ms
        try:
            await self._write(session)
        except Exception:
            self._logger.exception("Failed to advance flush pointer for %s in %s", user_id, guild_id)
            return None
        return session

    # ══════════════════════════════════════════════════════════
    #  Durations
    # ══════════════════════════════════════════════════════════

    def elapsed_since_flush(self, session: VoiceSession, now_ms: int | None = None) -> int:
        now = self._now_ms() if now_ms is None else now_ms
        return max(0, now - session.joined_at)

    def total_elapsed(self, session: VoiceSession, now_ms: int | None = None) -> int:
        now = self._now_ms() if now_ms is None else now_ms
        return max(0, now - session.session_start_time)

    async def get_session_duration(self, user_id: str, guild_id: str) -> SessionDuration | None:
        session = await self.get_session(user_id, guild_id)
        if session is None:
            return None
        return SessionDuration.from_ms(self.total_elapsed(session))

    # ══════════════════════════════════════════════════════════
    #  Queries
    # ══════════════════════════════════════════════════════════

    async def has_active_session(self, user_id: str, guild_id: str) -> bool:
        return await self.get_session(user_id, guild_id) is not None

    async def get_all_active_sessions(self, guild_id: str | None = None) -> list[VoiceSession]:
        sessions: list[VoiceSession] = []
        try:
            async for record in self._store.scan(guild_id):
                session = VoiceSession.from_record(record)
                if session is not None:
                    sessions.append(session)
        except Exception:
            self._logger.exception("Failed to list active sessions")
        return sessions

    # ── Conclusion marker ────────────────────────────────────

    @contextmanager
    def concluding(self, user_id: str, guild_id: str) -> Iterator[None]:
        """Mark a session as being closed so the reconciler leaves it alone."""
        key = (guild_id, user_id)
        self._concluding.add(key)
        try:
            yield
        finally:
            self._concluding.discard(key)

    def is_concluding(self, user_id: str, guild_id: str) -> bool:
        return (guild_id, user_id) in self._concluding
