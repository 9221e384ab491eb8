"""Tests for SalesbotConfig.from_env, wiring and the expiry sweeps."""

import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from salesbot.config import SalesbotConfig
from salesbot.constants import KeyStatus, PaymentStatus
from salesbot.errors import PersistenceError
from salesbot.models import AccessKey, Payment, utcnow
from salesbot.runtime import Salesbot
from salesbot.stores import MemoryStore


class TestFromEnv:
    def test_owner_required(self) -> None:
        with pytest.raises(ValueError, match="OWNER_ID"):
            SalesbotConfig.from_env({})

    def test_defaults(self) -> None:
        config = SalesbotConfig.from_env({"OWNER_ID": "123"})
        assert config.owner_id == "123"
        assert config.max_backups == 7
        assert config.auto_backup_interval_hours == 24
        assert config.pending_expiry_hours is None
        assert config.http_port == 3000
        assert config.issue_key_on_confirm is False
        assert config.sweep_interval_minutes == 15

    def test_overrides(self) -> None:
        config = SalesbotConfig.from_env({
            "OWNER_ID": "123",
            "DB_HOST": "db",
            "DB_PORT": "6543",
            "BACKUP_DIR": "/var/backups",
            "AUTO_BACKUP_HOURS": "6",
            "PENDING_EXPIRY_HOURS": "48",
            "ISSUE_KEY_ON_CONFIRM": "true",
            "WEBHOOK_PORT": "8080",
            "KEY_MAX_ATTEMPTS": "5",
            "DEFAULT_KEY_PLAN": "Premium",
            "SWEEP_INTERVAL_MINUTES": "off",
        })
        assert config.db_host == "db"
        assert config.db_port == 6543
        assert config.backup_dir == "/var/backups"
        assert config.auto_backup_interval_hours == 6.0
        assert config.pending_expiry_hours == 48.0
        assert config.issue_key_on_confirm is True
        assert config.http_port == 8080
        assert config.key_max_attempts == 5
        assert config.default_key_plan == "Premium"
        assert config.sweep_interval_minutes is None

    def test_auto_backup_can_be_disabled(self) -> None:
        config = SalesbotConfig.from_env({"OWNER_ID": "1", "AUTO_BACKUP_HOURS": "off"})
        assert config.auto_backup_interval_hours is None

    def test_config_is_frozen(self) -> None:
        config = SalesbotConfig(owner_id="1")
        with pytest.raises(AttributeError):
            config.owner_id = "2"


class TestDatabaseUrl:
    def test_built_from_parts(self) -> None:
        config = SalesbotConfig(owner_id="1", db_user="bot", db_password="p@ss/word", db_host="db", db_name="shop")
        assert config.sqlalchemy_url == "postgresql+asyncpg://bot:p%40ss%2Fword@db:5432/shop"

    def test_plain_postgres_url_gets_async_driver(self) -> None:
        config = SalesbotConfig(owner_id="1", database_url="postgres://u:p@h:5432/d")
        assert config.sqlalchemy_url == "postgresql+asyncpg://u:p@h:5432/d"

    def test_explicit_driver_kept(self) -> None:
        config = SalesbotConfig(owner_id="1", database_url="sqlite+aiosqlite:///x.db")
        assert config.sqlalchemy_url == "sqlite+aiosqlite:///x.db"


class TestWiring:
    def test_memory_variant(self) -> None:
        bot = Salesbot.from_config(SalesbotConfig(owner_id="1"), persistent=False)
        assert isinstance(bot.store, MemoryStore)
        assert bot.backups is None
        assert bot.notifier is None
        assert bot.verifiers == {}

    def test_optional_gateways(self) -> None:
        config = SalesbotConfig(
            owner_id="1", webhook_secret="s3cret",
            mercadopago_access_token="TEST", stripe_webhook_secret="whsec",
        )
        bot = Salesbot.from_config(config, persistent=False)
        assert sorted(bot.verifiers) == ["mercadopago", "payment", "stripe"]

    @pytest.mark.asyncio
    async def test_start_and_stop(self) -> None:
        config = SalesbotConfig(owner_id="1", pending_expiry_hours=1, auto_backup_interval_hours=None)
        bot = Salesbot(config, MemoryStore())
        await bot.start()
        assert bot.sweeps_active
        await bot.stop()
        assert not bot.sweeps_active
        assert bot.registry.is_authorized("1")


class TestSweeps:
    @pytest.mark.asyncio
    async def test_recurring_sweep_expires_keys_and_payments(self) -> None:
        config = SalesbotConfig(
            owner_id="1", pending_expiry_hours=1,
            auto_backup_interval_hours=None, sweep_interval_minutes=None,
        )
        store = MemoryStore()
        bot = Salesbot(config, store)
        await bot.start()
        assert not bot.sweeps_active

        # Overdue records appear after startup; only the schedule can catch them.
        now = utcnow()
        await store.insert_key(AccessKey("OLD", "Standard", "daily", now - timedelta(minutes=1), "owner"))
        await store.insert_payment(Payment(
            payment_id="PAY_old", principal_id="buyer-1", display_name="Alice",
            plan="Standard", amount=Decimal("10"), method="PIX",
            created_at=now - timedelta(hours=2),
        ))

        bot.start_sweeps(0.01)
        for _ in range(200):
            key = await store.fetch_key("OLD")
            payment = await store.fetch_payment("PAY_old")
            if key.status == KeyStatus.EXPIRED and payment.status == PaymentStatus.EXPIRED:
                break
            await asyncio.sleep(0.01)

        assert key.status == KeyStatus.EXPIRED
        assert payment.status == PaymentStatus.EXPIRED
        assert await bot.stop_sweeps()
        assert not bot.sweeps_active
        await bot.stop()

    @pytest.mark.asyncio
    async def test_failed_sweep_keeps_schedule(self) -> None:
        bot = Salesbot(SalesbotConfig(owner_id="1"), MemoryStore())
        bot.keys.sweep_expired = AsyncMock(side_effect=PersistenceError("db down"))
        bot.start_sweeps(0.01)
        for _ in range(200):
            if bot.keys.sweep_expired.await_count >= 2:
                break
            await asyncio.sleep(0.01)
        assert bot.keys.sweep_expired.await_count >= 2
        assert bot.sweeps_active
        assert await bot.stop_sweeps()

    @pytest.mark.asyncio
    async def test_stop_without_schedule(self) -> None:
        bot = Salesbot(SalesbotConfig(owner_id="1"), MemoryStore())
        assert not await bot.stop_sweeps()

    def test_interval_must_be_positive(self) -> None:
        bot = Salesbot(SalesbotConfig(owner_id="1"), MemoryStore())
        with pytest.raises(ValueError):
            bot.start_sweeps(0)
