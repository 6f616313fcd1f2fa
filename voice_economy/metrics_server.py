"""Prometheus-style metrics and health endpoint for voice-economy.

Served with aiohttp.web on ``metrics.port``: ``metrics.metrics_path`` returns
text exposition, ``metrics.health_path`` returns JSON component status.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import TYPE_CHECKING

from aiohttp import web

if TYPE_CHECKING:
    from .main import VoiceEconomyApp


class EconomyMetricsServer:
    """Economy-specific metrics endpoint."""

    def __init__(self, app: VoiceEconomyApp, port: int = 28290, logger: logging.Logger | None = None) -> None:
        self._app = app
        self._port = port
        self._logger = logger or logging.getLogger("economy.metrics")
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        cfg = self._app.config.metrics
        web_app = web.Application()
        web_app.router.add_get(cfg.metrics_path, self.handle_metrics)
        web_app.router.add_get(cfg.health_path, self.handle_health)
        self._runner = web.AppRunner(web_app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "0.0.0.0", self._port)
        await site.start()
        self._logger.info("Metrics server listening on :%d", self._port)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    # ── Handlers ─────────────────────────────────────────────

    async def handle_metrics(self, request: web.Request) -> web.Response:
        lines = await self._collect_metrics()
        return web.Response(text="\n".join(lines) + "\n", content_type="text/plain")

    async def handle_health(self, request: web.Request) -> web.Response:
        details = await self._get_health_details()
        status = 200 if details["status"] == "healthy" else 503
        return web.json_response(details, status=status)

    # ── Collection ───────────────────────────────────────────

    async def _collect_metrics(self) -> list[str]:
        engine = self._app.engine
        lines: list[str] = [f"economy_uptime_seconds {self._app.uptime_seconds:.0f}"]

        # ── Counters ─────────────────────────────────────────
        lines.append(f"economy_voice_events_processed_total {engine.tracker.events_processed}")
        lines.append(f"economy_sessions_opened_total {engine.sessions.sessions_opened}")
        lines.append(f"economy_sessions_closed_total {engine.sessions.sessions_closed}")
        lines.append(f"economy_sessions_transferred_total {engine.sessions.sessions_transferred}")
        lines.append(f"economy_sessions_recovered_total {engine.recovery.sessions_recovered}")
        lines.append(f"economy_flushes_total {engine.ledger.flushes}")
        lines.append(f"economy_final_closes_total {engine.ledger.final_closes}")
        lines.append(f"economy_coins_accrued_total {engine.ledger.coins_accrued}")
        lines.append(f"economy_vc_time_accrued_ms_total {engine.ledger.time_accrued_ms}")
        lines.append(f"economy_micro_sessions_filtered_total {engine.ledger.filtered_sessions}")
        lines.append(f"economy_accruals_failed_total {engine.ledger.failed_accruals}")
        lines.append(f"economy_ledger_inconsistencies_total {engine.ledger.ledger_inconsistencies}")
        lines.append(f"economy_stale_sessions_cleaned_total {engine.sync.stale_cleaned}")
        lines.append(f"economy_sync_passes_total {engine.sync.passes_completed}")
        lines.append(f"economy_sync_passes_skipped_total {engine.sync.passes_skipped}")
        lines.append(f"economy_daily_resets_total {engine.resets.daily_resets}")

        # ── Per-guild gauges ─────────────────────────────────
        sessions = await engine.sessions.get_all_active_sessions()
        per_guild = Counter(s.guild_id for s in sessions)
        guild_ids = set(per_guild) | {g.guild_id for g in self._app.config.guilds}
        for guild_id in sorted(guild_ids):
            tag = f'guild="{guild_id}"'
            lines.append(f"economy_active_sessions{{{tag}}} {per_guild.get(guild_id, 0)}")
            try:
                circ = await self._app.db.get_total_circulation(guild_id)
                count = await self._app.db.get_account_count(guild_id)
            except Exception:
                self._logger.exception("Failed to collect database gauges for %s", guild_id)
                continue
            lines.append(f"economy_total_circulation{{{tag}}} {circ}")
            lines.append(f"economy_accounts{{{tag}}} {count}")

        return lines

    async def _get_health_details(self) -> dict:
        """Return health details for the /health endpoint."""
        try:
            redis_ok = await self._app.store.ping()
        except Exception:
            redis_ok = False
        engine = self._app.engine
        return {
            "status": "healthy" if redis_ok else "degraded",
            "redis": "connected" if redis_ok else "disconnected",
            "database": "connected" if self._app.db else "disconnected",
            "sync_running": engine.sync.is_running,
            "recovery_done": engine.recovery.has_run,
            "last_sync_at": engine.sync.last_sync_at.isoformat() if engine.sync.last_sync_at else None,
        }
