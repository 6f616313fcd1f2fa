"""Configuration system for voice-economy.

All Pydantic models are defined here with sensible defaults. Per-guild
tracking settings are resolved through :meth:`EconomyConfig.tracking_for`,
which layers a guild's overrides on top of the global ``tracking`` section.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field


# ═══════════════════════════════════════════════════════════════
#  Infrastructure
# ═══════════════════════════════════════════════════════════════

class DiscordConfig(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    token: str = ""
    ignored_users: list[str] = Field(
        default_factory=list,
        description="User ids that never enter presence tracking (system accounts)",
    )


class DatabaseConfig(BaseModel):
    path: str = "economy.db"


class RedisConfig(BaseModel):
    url: str = "redis://localhost:6379/0"
    key_prefix: str = "vc_session"
    socket_timeout: float = 5.0


class MetricsConfig(BaseModel):
    enabled: bool = True
    port: int = 28290
    health_path: str = "/health"
    metrics_path: str = "/metrics"


class RetentionConfig(BaseModel):
    transaction_days: int = 365
    activity_days: int = 90


# ═══════════════════════════════════════════════════════════════
#  Presence tracking
# ═══════════════════════════════════════════════════════════════

class TrackingConfig(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    enabled: bool = True
    tracked_category_ids: list[str] = Field(default_factory=list)
    coins_per_second: float = Field(default=0.1, ge=0)
    session_ttl_seconds: int = Field(default=86400, gt=0)
    sync_interval_seconds: int = Field(default=300, gt=0)
    min_billable_seconds: float = Field(default=5, ge=0)
    transfer_grace_seconds: float = Field(default=5, ge=0)


class GuildConfig(BaseModel):
    """Per-guild overrides. Unset fields fall back to the global tracking section."""
    model_config = ConfigDict(coerce_numbers_to_str=True)

    guild_id: str
    enabled: bool | None = None
    tracked_category_ids: list[str] | None = None
    coins_per_second: float | None = Field(default=None, ge=0)
    session_ttl_seconds: int | None = Field(default=None, gt=0)
    min_billable_seconds: float | None = Field(default=None, ge=0)
    transfer_grace_seconds: float | None = Field(default=None, ge=0)


# ═══════════════════════════════════════════════════════════════
#  Top-Level Config
# ═══════════════════════════════════════════════════════════════

class EconomyConfig(BaseModel):
    """Full service config."""

    discord: DiscordConfig = Field(default_factory=DiscordConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    tracking: TrackingConfig = Field(default_factory=TrackingConfig)
    guilds: list[GuildConfig] = Field(default_factory=list)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)

    def tracking_for(self, guild_id: str) -> TrackingConfig:
        """Return the effective tracking settings for *guild_id*."""
        for guild in self.guilds:
            if guild.guild_id == str(guild_id):
                overrides = guild.model_dump(exclude={"guild_id"}, exclude_none=True)
                return self.tracking.model_copy(update=overrides)
        return self.tracking


# ═══════════════════════════════════════════════════════════════
#  Config Loading
# ═══════════════════════════════════════════════════════════════

def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand ${VAR} and ${VAR:-default} in string values."""
    if isinstance(obj, str):
        return re.sub(
            r"\$\{([^}:]+)(?::-(.*?))?\}",
            lambda m: os.environ.get(m.group(1), m.group(2) or ""),
            obj,
        )
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


def load_config(config_path: str) -> EconomyConfig:
    """Load and validate YAML config file into EconomyConfig."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a YAML mapping at the top level.")

    raw = _expand_env_vars(raw)
    return EconomyConfig(**raw)
