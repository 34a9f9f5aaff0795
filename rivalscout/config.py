"""Runtime configuration: environment variables overlaid by the ``app_settings`` table."""
from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, fields, replace

from sqlalchemy import select
from sqlalchemy.orm import Session

from rivalscout.models import AppSetting

log = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 60.0
DEFAULT_STALENESS_DAYS = 180

SEARCH_PROVIDERS = ("duckduckgo", "tavily")
AI_PROVIDERS = ("anthropic", "openai")


class ConfigError(Exception):
    """Configuration is inconsistent (unknown provider, missing key...)."""


@dataclass(frozen=True)
class Settings:
    search_provider: str | None = "duckduckgo"
    tavily_api_key: str | None = None
    staleness_days: int = DEFAULT_STALENESS_DAYS
    ai_provider: str | None = None
    anthropic_api_key: str | None = None
    anthropic_model: str | None = None
    openai_api_key: str | None = None
    openai_model: str | None = None
    openai_base_url: str | None = None
    database_url: str | None = None

    @property
    def ai_enabled(self) -> bool:
        if self.ai_provider == "anthropic":
            return bool(self.anthropic_api_key)
        if self.ai_provider == "openai":
            return bool(self.openai_api_key)
        return False


# setting field -> environment variable
ENV_VARS = {
    "search_provider": "SEARCH_PROVIDER",
    "tavily_api_key": "TAVILY_API_KEY",
    "staleness_days": "STALENESS_DAYS",
    "ai_provider": "AI_PROVIDER",
    "anthropic_api_key": "ANTHROPIC_API_KEY",
    "anthropic_model": "ANTHROPIC_MODEL",
    "openai_api_key": "OPENAI_API_KEY",
    "openai_model": "OPENAI_MODEL",
    "openai_base_url": "OPENAI_BASE_URL",
    "database_url": "RIVALSCOUT_DB_URL",
}
SETTING_KEYS = tuple(f.name for f in fields(Settings))

_cache_lock = threading.Lock()
_cached: tuple[float, Settings] | None = None


def _coerce(key: str, raw: str | None) -> str | int | None:
    if raw is None:
        return None
    value = raw.strip()
    if key == "staleness_days":
        try:
            return int(value)
        except ValueError:
            log.warning("Ignoring non-integer staleness_days=%r", raw)
            return None
    if key in ("search_provider", "ai_provider"):
        return value.lower() or None
    return value or None


def _from_env() -> dict[str, str | int | None]:
    values: dict[str, str | int | None] = {}
    for key, env in ENV_VARS.items():
        coerced = _coerce(key, os.environ.get(env))
        if coerced is not None:
            values[key] = coerced
    return values


def _from_db(session: Session) -> dict[str, str | int | None]:
    values: dict[str, str | int | None] = {}
    for row in session.execute(select(AppSetting).where(AppSetting.key.in_(SETTING_KEYS))).scalars():
        coerced = _coerce(row.key, row.value)
        if coerced is not None:
            values[row.key] = coerced
    return values


def load_settings(session: Session | None = None) -> Settings:
    """Current settings, cached for ``CACHE_TTL_SECONDS``.

    Stored ``app_settings`` rows win over environment variables; anything unset
    keeps the dataclass default.
    """
    global _cached
    with _cache_lock:
        if _cached is not None and time.monotonic() - _cached[0] < CACHE_TTL_SECONDS:
            return _cached[1]

    values = _from_env()
    if session is not None:
        values.update(_from_db(session))
    settings = replace(Settings(), **values)

    with _cache_lock:
        _cached = (time.monotonic(), settings)
    return settings


def invalidate_settings_cache() -> None:
    global _cached
    with _cache_lock:
        _cached = None


def set_settings(session: Session, **values: str | int | None) -> Settings:
    """Upsert ``app_settings`` rows and return the freshly loaded settings."""
    unknown = set(values) - set(SETTING_KEYS)
    if unknown:
        raise ConfigError(f"Unknown setting(s): {', '.join(sorted(unknown))}")
    for key, value in values.items():
        row = session.get(AppSetting, key)
        text = "" if value is None else str(value)
        if row is None:
            session.add(AppSetting(key=key, value=text))
        else:
            row.value = text
    session.commit()
    invalidate_settings_cache()
    return load_settings(session)


def validate_settings(settings: Settings) -> Settings:
    """Fail fast on provider selections that could never work at call time."""
    if settings.ai_provider is not None:
        if settings.ai_provider not in AI_PROVIDERS:
            raise ConfigError(f"Unknown AI provider: {settings.ai_provider!r}")
        if not settings.ai_enabled:
            raise ConfigError(f"AI provider {settings.ai_provider!r} selected but its API key is not set")
    if settings.search_provider is not None:
        if settings.search_provider not in SEARCH_PROVIDERS:
            raise ConfigError(f"Unknown search provider: {settings.search_provider!r}")
        if settings.search_provider == "tavily" and not settings.tavily_api_key:
            raise ConfigError("Tavily search selected but TAVILY_API_KEY is not set")
    if settings.staleness_days <= 0:
        raise ConfigError("staleness_days must be positive")
    return settings
