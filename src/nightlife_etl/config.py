"""nightlife_etl.config

YAML-based crawler settings.

Responsibilities:
  - Load and validate config/crawler.yml into a CrawlSettings dataclass
  - Fall back to built-in defaults for any key the file omits
  - Read secrets (store DSN, SoundCloud credentials, webhook URLs) from the
    environment only; they never live in the YAML file

Usage:
    from pathlib import Path
    from nightlife_etl.config import load_settings

    settings = load_settings(Path("config/crawler.yml"))
    settings.recrawl_interval  # timedelta(days=7)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping

import yaml

from nightlife_etl.source_client import DEFAULT_ENDPOINT
from nightlife_etl.soundcloud import DEFAULT_API_URL, DEFAULT_TOKEN_URL

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_CONFIG_PATH = Path("config/crawler.yml")

POSITIVE_INT_KEYS = frozenset({
    "recrawl_interval_days",
    "max_resolve_workers",
    "track_limit",
    "missing_end_fallback_hours",
    "max_listing_pages",
})

POSITIVE_FLOAT_KEYS = frozenset({
    "timeout_seconds",
    "invocation_deadline_seconds",
})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SettingsValidationError(ValueError):
    """Raised when the crawler settings file fails validation."""


# ---------------------------------------------------------------------------
# Secrets
# ---------------------------------------------------------------------------

@dataclass
class Secrets:
    db_dsn: str | None = None
    soundcloud_client_id: str | None = None
    soundcloud_client_secret: str | None = None
    slack_webhook_url: str | None = None
    expo_access_token: str | None = None

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Secrets":
        env = os.environ if env is None else env
        return cls(
            db_dsn=env.get("DB_DSN") or None,
            soundcloud_client_id=env.get("SOUNDCLOUD_CLIENT_ID") or None,
            soundcloud_client_secret=env.get("SOUNDCLOUD_CLIENT_SECRET") or None,
            slack_webhook_url=env.get("SLACK_WEBHOOK_URL") or None,
            expo_access_token=env.get("EXPO_ACCESS_TOKEN") or None,
        )


# ---------------------------------------------------------------------------
# CrawlSettings dataclass
# ---------------------------------------------------------------------------

@dataclass
class CrawlSettings:
    """Validated crawler settings."""

    endpoint: str = DEFAULT_ENDPOINT
    timeout_seconds: float = 30.0
    invocation_deadline_seconds: float = 240.0
    recrawl_interval_days: int = 7
    lookback_hours: float = 1.0
    missing_end_fallback_hours: int = 6
    max_resolve_workers: int = 8
    track_limit: int = 10
    max_listing_pages: int = 5
    enrich_artists: bool = True
    soundcloud_api_url: str = DEFAULT_API_URL
    soundcloud_token_url: str = DEFAULT_TOKEN_URL
    expo_push_url: str = "https://exp.host/--/api/v2/push/send"
    user_agent: str = "nightlife-etl/1.0"
    report_dir: str = "./artifacts/reports"
    secrets: Secrets = field(default_factory=Secrets, repr=False)

    @property
    def recrawl_interval(self) -> timedelta:
        return timedelta(days=self.recrawl_interval_days)

    @property
    def lookback(self) -> timedelta:
        return timedelta(hours=self.lookback_hours)

    @property
    def missing_end_fallback(self) -> timedelta:
        return timedelta(hours=self.missing_end_fallback_hours)


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_settings(
    yaml_path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> CrawlSettings:
    """Load, validate, and return CrawlSettings.

    A None path, or the default path when it does not exist, yields the
    built-in defaults. An explicit path that does not exist raises
    FileNotFoundError.

    Raises:
        SettingsValidationError: unknown key or invalid value.
    """
    data: dict[str, Any] = {}
    if yaml_path is not None:
        if yaml_path == DEFAULT_CONFIG_PATH and not yaml_path.exists():
            data = {}
        else:
            raw = yaml_path.read_text(encoding="utf-8")
            data = yaml.safe_load(raw) or {}
    validate_settings(data)

    settings = CrawlSettings(**data)
    for key in POSITIVE_INT_KEYS:
        setattr(settings, key, int(getattr(settings, key)))
    for key in POSITIVE_FLOAT_KEYS | {"lookback_hours"}:
        setattr(settings, key, float(getattr(settings, key)))
    settings.secrets = Secrets.from_env(env)
    return settings


def validate_settings(data: dict[str, Any]) -> None:
    """Raise SettingsValidationError if data does not match the settings schema."""
    if not isinstance(data, dict):
        raise SettingsValidationError("YAML root must be a mapping.")

    known = {f.name for f in fields(CrawlSettings)} - {"secrets"}
    unknown = set(data.keys()) - known
    if unknown:
        raise SettingsValidationError(f"Unknown settings keys: {sorted(unknown)}")

    for key in POSITIVE_INT_KEYS | POSITIVE_FLOAT_KEYS:
        if key not in data:
            continue
        val = data[key]
        if isinstance(val, bool):
            raise SettingsValidationError(f"Setting '{key}' value '{val}' is not numeric.")
        try:
            num = float(val)
        except (TypeError, ValueError):
            raise SettingsValidationError(f"Setting '{key}' value '{val}' is not numeric.")
        if num <= 0:
            raise SettingsValidationError(f"Setting '{key}' value {num} must be > 0.")

    if "lookback_hours" in data:
        try:
            lookback = float(data["lookback_hours"])
        except (TypeError, ValueError):
            raise SettingsValidationError(
                f"Setting 'lookback_hours' value '{data['lookback_hours']}' is not numeric."
            )
        if lookback < 0:
            raise SettingsValidationError("Setting 'lookback_hours' must be >= 0.")

    if "enrich_artists" in data and not isinstance(data["enrich_artists"], bool):
        raise SettingsValidationError("Setting 'enrich_artists' must be true or false.")

    for key in ("endpoint", "soundcloud_api_url", "soundcloud_token_url", "expo_push_url"):
        val = data.get(key)
        if val is not None and not str(val).startswith(("http://", "https://")):
            raise SettingsValidationError(f"Setting '{key}' must be an http(s) URL.")
