from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class SyncSettings:
    """Engine constants. Not read from the environment."""

    initial_window: int = 30
    page_size: int = 100
    load_throttle_seconds: float = 1.0
    load_delay_seconds: float = 0.0
    debounce_seconds: float = 1.0
    cache_max_messages: int = 300


@dataclass
class RuntimeEnv:
    provider_api_key: str
    provider_env_var: str
    cache_key: str | None


@dataclass
class AppConfig:
    provider_name: str
    model: str
    max_tokens: int
    temperature: float
    coaching_api_url: str
    remote_db_path: str
    cache_db_path: str
    cache_key_path: str
    cache_retention_days: int
    user_id: str
    user_first_name: str | None
    debug_delays: bool
    log_level: str
    log_consumers: list | None


def load_json_config() -> dict:
    config_path = Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def parse_app_config(config: dict) -> AppConfig:
    return AppConfig(
        provider_name=config.get("Provider", "anthropic").strip().lower(),
        model=config.get("Model", "claude-sonnet-4-5-20250929"),
        max_tokens=int(config.get("MaxTokens", 4096)),
        temperature=float(config.get("Temperature", 1.0)),
        coaching_api_url=str(config.get("CoachingApiUrl", "http://localhost:8000/")),
        remote_db_path=str(config.get("RemoteDbPath", ".coaching_sync/sessions.db")),
        cache_db_path=str(config.get("CacheDbPath", ".coaching_sync/cache.db")),
        cache_key_path=str(config.get("CacheKeyPath", ".coaching_sync/cache.key")),
        cache_retention_days=int(config.get("CacheRetentionDays", 30)),
        user_id=str(config.get("UserId", "local-user")).strip(),
        user_first_name=str(config.get("UserFirstName", "")).strip() or None,
        debug_delays=_to_bool(config.get("DebugDelays", False), default=False),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def sync_settings_for(app_config: AppConfig) -> SyncSettings:
    if app_config.debug_delays:
        # Visible loading state while paging, as on a real device.
        return SyncSettings(load_delay_seconds=0.8)
    return SyncSettings()


def resolve_runtime_env(provider_name: str) -> RuntimeEnv:
    if provider_name == "coaching_api":
        provider_api_key = os.environ.get("COACHING_API_TOKEN", "")
        provider_env_var = "COACHING_API_TOKEN"
    else:
        provider_api_key = os.environ.get("ANTHROPIC_API_KEY", "")
        provider_env_var = "ANTHROPIC_API_KEY"

    return RuntimeEnv(
        provider_api_key=provider_api_key,
        provider_env_var=provider_env_var,
        cache_key=os.environ.get("COACHING_SYNC_CACHE_KEY") or None,
    )
