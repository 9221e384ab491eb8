"""Salesbot configuration — plain frozen dataclass, no pydantic.

The host process builds this once (usually via ``from_env``) and hands it
to ``salesbot.runtime.Salesbot``. Core components receive only the fields
they need as constructor arguments.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from urllib.parse import quote

from salesbot.constants import (
    DEFAULT_BACKUP_INTERVAL_HOURS,
    DEFAULT_KEY_LENGTH,
    DEFAULT_KEY_MAX_ATTEMPTS,
    DEFAULT_KEYS_LIMIT,
    DEFAULT_MAX_BACKUPS,
    DEFAULT_SWEEP_INTERVAL_MINUTES,
)


@dataclass(frozen=True)
class SalesbotConfig:
    owner_id: str
    product_name: str = "ecstasy_bot"
    database_url: str | None = None
    db_host: str = "localhost"
    db_port: int = 5432
    db_user: str = "bot_user"
    db_password: str | None = None
    db_name: str = "ecstasy_bot"
    backup_dir: str = "backups"
    max_backups: int = DEFAULT_MAX_BACKUPS
    auto_backup_interval_hours: float | None = DEFAULT_BACKUP_INTERVAL_HOURS
    key_length: int = DEFAULT_KEY_LENGTH
    key_max_attempts: int = DEFAULT_KEY_MAX_ATTEMPTS
    issue_key_on_confirm: bool = False
    default_key_plan: str = "Standard"
    default_key_duration: str = "weekly"
    keys_limit: int = DEFAULT_KEYS_LIMIT
    pending_expiry_hours: float | None = None
    sweep_interval_minutes: float | None = DEFAULT_SWEEP_INTERVAL_MINUTES
    discord_token: str | None = None
    dashboard_public_key: str | None = None
    webhook_secret: str | None = None
    mercadopago_access_token: str | None = None
    stripe_webhook_secret: str | None = None
    http_host: str = "0.0.0.0"
    http_port: int = 3000

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> SalesbotConfig:
        """Build a config from environment variables.

        Only ``OWNER_ID`` is required; everything else falls back to the
        dataclass defaults.
        """
        env = os.environ if environ is None else environ
        owner_id = env.get("OWNER_ID", "").strip()
        if not owner_id:
            raise ValueError("OWNER_ID must be set")

        def _opt(name: str) -> str | None:
            value = env.get(name)
            return value if value else None

        def _float_or_none(name: str, default: float | None) -> float | None:
            raw = env.get(name)
            if raw is None:
                return default
            if raw.strip().lower() in ("", "0", "off", "none"):
                return None
            return float(raw)

        return cls(
            owner_id=owner_id,
            product_name=env.get("PRODUCT_NAME", "ecstasy_bot"),
            database_url=_opt("DATABASE_URL"),
            db_host=env.get("DB_HOST", "localhost"),
            db_port=int(env.get("DB_PORT", "5432")),
            db_user=env.get("DB_USER", "bot_user"),
            db_password=_opt("DB_PASSWORD"),
            db_name=env.get("DB_NAME", "ecstasy_bot"),
            backup_dir=env.get("BACKUP_DIR", "backups"),
            max_backups=int(env.get("MAX_BACKUPS", str(DEFAULT_MAX_BACKUPS))),
            auto_backup_interval_hours=_float_or_none(
                "AUTO_BACKUP_HOURS", DEFAULT_BACKUP_INTERVAL_HOURS,
            ),
            key_length=int(env.get("KEY_LENGTH", str(DEFAULT_KEY_LENGTH))),
            key_max_attempts=int(env.get("KEY_MAX_ATTEMPTS", str(DEFAULT_KEY_MAX_ATTEMPTS))),
            issue_key_on_confirm=env.get("ISSUE_KEY_ON_CONFIRM", "").lower() in ("1", "true", "yes"),
            default_key_plan=env.get("DEFAULT_KEY_PLAN", "Standard"),
            default_key_duration=env.get("DEFAULT_KEY_DURATION", "weekly"),
            keys_limit=int(env.get("KEYS_LIMIT", str(DEFAULT_KEYS_LIMIT))),
            pending_expiry_hours=_float_or_none("PENDING_EXPIRY_HOURS", None),
            sweep_interval_minutes=_float_or_none(
                "SWEEP_INTERVAL_MINUTES", DEFAULT_SWEEP_INTERVAL_MINUTES,
            ),
            discord_token=_opt("DISCORD_TOKEN"),
            dashboard_public_key=_opt("DASHBOARD_PUBLIC_KEY"),
            webhook_secret=_opt("WEBHOOK_SECRET"),
            mercadopago_access_token=_opt("MERCADOPAGO_ACCESS_TOKEN"),
            stripe_webhook_secret=_opt("STRIPE_WEBHOOK_SECRET"),
            http_host=env.get("HTTP_HOST", "0.0.0.0"),
            http_port=int(env.get("WEBHOOK_PORT", "3000")),
        )

    @property
    def sqlalchemy_url(self) -> str:
        """Async SQLAlchemy URL, preferring an explicit ``database_url``."""
        if self.database_url:
            for scheme in ("postgres://", "postgresql://"):
                if self.database_url.startswith(scheme):
                    return "postgresql+asyncpg://" + self.database_url[len(scheme):]
            return self.database_url
        password = f":{quote(self.db_password, safe='')}" if self.db_password else ""
        return (
            f"postgresql+asyncpg://{self.db_user}{password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )
