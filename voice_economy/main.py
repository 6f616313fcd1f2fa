"""Service orchestrator — VoiceEconomyApp.

config → DB init → Redis → gateway client → register handlers → metrics → run.
Recovery and the reconciler start once the gateway reports ready.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path

import discord
import redis.asyncio as aioredis

from . import __version__
from .config import EconomyConfig, load_config
from .database import EconomyDatabase
from .engine import AccrualEngine
from .metrics_server import EconomyMetricsServer
from .presence import DiscordPresenceProvider
from .session_store import RedisSessionStore


def _room_id(state: discord.VoiceState | None) -> str | None:
    if state is None or state.channel is None:
        return None
    return str(state.channel.id)


class VoiceEconomyApp:
    """Top-level application orchestrator."""

    def __init__(self, config_path: str) -> None:
        self.config_path = Path(config_path)
        self.logger = logging.getLogger("economy")

        # Components (initialized in start())
        self.config: EconomyConfig | None = None
        self.db: EconomyDatabase | None = None
        self.redis: aioredis.Redis | None = None
        self.store: RedisSessionStore | None = None
        self.client: discord.Client | None = None
        self.engine: AccrualEngine | None = None
        self.metrics_server: EconomyMetricsServer | None = None

        self._start_time: float | None = None
        self._stopping = False

    @property
    def uptime_seconds(self) -> float:
        if self._start_time is None:
            return 0.0
        return time.time() - self._start_time

    async def start(self) -> None:
        """Start the service and run until the gateway connection closes."""
        self.logger.info("Starting voice-economy %s...", __version__)
        self._start_time = time.time()

        # 1. Load and validate config
        self.config = load_config(str(self.config_path))
        self.logger.info("Config loaded: %d guild override(s)", len(self.config.guilds))

        # 2. Initialize database
        self.db = EconomyDatabase(self.config.database.path, self.logger)
        await self.db.initialize()
        self.logger.info("Database initialized: %s", self.config.database.path)

        # 3. Session store
        self.redis = aioredis.from_url(
            self.config.redis.url, socket_timeout=self.config.redis.socket_timeout,
        )
        self.store = RedisSessionStore(self.redis, self.config.redis.key_prefix)

        # 4. Gateway client + engine
        intents = discord.Intents.default()
        intents.members = True
        intents.voice_states = True
        self.client = discord.Client(intents=intents)
        presence = DiscordPresenceProvider(self.client, self.config.discord.ignored_users)
        self.engine = AccrualEngine(self.config, self.db, self.store, presence, logger=self.logger)

        # 5. Register event handlers BEFORE connect
        @self.client.event
        async def on_ready():
            self.logger.info("Gateway ready as %s (%d guild(s))", self.client.user, len(self.client.guilds))
            try:
                await self.engine.recover_active_sessions()
            except Exception:
                self.logger.exception("Session recovery failed")
            await self.engine.start()

        @self.client.event
        async def on_voice_state_update(member, before, after):
            try:
                await self.engine.handle_voice_update(
                    str(member.id),
                    str(member.guild.id),
                    _room_id(before),
                    _room_id(after),
                    is_bot=member.bot,
                )
            except Exception:
                self.logger.exception("voice_state_update handler error for %s", member.id)

        # 6. Metrics server
        if self.config.metrics.enabled:
            self.metrics_server = EconomyMetricsServer(self, self.config.metrics.port, self.logger)
            await self.metrics_server.start()

        # 7. Connect and run
        self.logger.info("voice-economy started")
        await self.client.start(self.config.discord.token)

    async def stop(self) -> None:
        """Graceful shutdown. Open sessions are left in Redis for the next start."""
        if self._stopping:
            return
        self._stopping = True
        self.logger.info("Stopping voice-economy...")

        if self.engine:
            await self.engine.stop()
        if self.metrics_server:
            await self.metrics_server.stop()
        if self.client and not self.client.is_closed():
            await self.client.close()
        if self.redis:
            try:
                await self.redis.aclose()
            except Exception:
                self.logger.exception("Error closing Redis connection")

        self.logger.info("voice-economy stopped")
