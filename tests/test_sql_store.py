"""Tests for SQLStore on SQLite (aiosqlite): CRUD, compare-and-swap, errors."""

from datetime import timedelta
from decimal import Decimal
from pathlib import Path

import pytest

from salesbot.authorization import AuthorizationRegistry
from salesbot.constants import KeyStatus, PaymentStatus
from salesbot.errors import PersistenceError
from salesbot.keys import KeyService
from salesbot.members import MemberLog
from salesbot.models import AccessKey, AuthorizedUser, NewMember, Payment, Setting, utcnow
from salesbot.payment_ledger import PaymentLedger
from salesbot.stores import SQLStore


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _store(tmp_path: Path) -> SQLStore:
    store = SQLStore.from_url(f"sqlite+aiosqlite:///{tmp_path / 'salesbot.db'}")
    await store.create_schema()
    return store


def _payment(payment_id: str = "PAY_1_abc", **overrides) -> Payment:
    data = dict(
        payment_id=payment_id, principal_id="buyer-1", display_name="Alice",
        plan="Standard", amount=Decimal("25.50"), method="PIX",
    )
    data.update(overrides)
    return Payment(**data)


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class TestPayments:
    @pytest.mark.asyncio
    async def test_insert_and_fetch(self, tmp_path: Path) -> None:
        store = await _store(tmp_path)
        await store.insert_payment(_payment(gateway_metadata={"gateway": "Stripe"}))
        fetched = await store.fetch_payment("PAY_1_abc")
        await store.close()

        assert fetched.amount == Decimal("25.50")
        assert fetched.status == PaymentStatus.PENDING
        assert fetched.gateway_metadata == {"gateway": "Stripe"}
        assert fetched.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_fetch_missing(self, tmp_path: Path) -> None:
        store = await _store(tmp_path)
        assert await store.fetch_payment("nope") is None
        await store.close()

    @pytest.mark.asyncio
    async def test_duplicate_insert_is_persistence_error(self, tmp_path: Path) -> None:
        store = await _store(tmp_path)
        await store.insert_payment(_payment())
        with pytest.raises(PersistenceError):
            await store.insert_payment(_payment())
        await store.close()

    @pytest.mark.asyncio
    async def test_update_is_compare_and_swap(self, tmp_path: Path) -> None:
        store = await _store(tmp_path)
        await store.insert_payment(_payment())
        paid = _payment(status=PaymentStatus.PAID, confirmed_by="admin", confirmed_at=utcnow())

        assert await store.update_payment(paid, PaymentStatus.PENDING)
        assert not await store.update_payment(paid, PaymentStatus.PENDING)
        fetched = await store.fetch_payment("PAY_1_abc")
        await store.close()
        assert fetched.status == PaymentStatus.PAID
        assert fetched.confirmed_by == "admin"

    @pytest.mark.asyncio
    async def test_list_by_status_and_delete(self, tmp_path: Path) -> None:
        store = await _store(tmp_path)
        await store.insert_payment(_payment("PAY_1"))
        await store.insert_payment(_payment("PAY_2", status=PaymentStatus.PAID))

        pending = await store.list_payments(PaymentStatus.PENDING)
        assert [p.payment_id for p in pending] == ["PAY_1"]
        assert len(await store.list_payments()) == 2

        assert await store.delete_payment("PAY_1")
        assert not await store.delete_payment("PAY_1")
        await store.close()

    @pytest.mark.asyncio
    async def test_ledger_round_trip_over_sql(self, tmp_path: Path) -> None:
        store = await _store(tmp_path)
        ledger = PaymentLedger(store)
        payment = await ledger.create("buyer-1", "Alice", "Standard", "10", "PIX")
        await ledger.transition(payment.payment_id, PaymentStatus.PAID, "admin", {"gateway": "Generic"})

        reopened = PaymentLedger(store)
        fetched = await reopened.get(payment.payment_id)
        await store.close()
        assert fetched.status == PaymentStatus.PAID
        assert fetched.gateway_metadata == {"gateway": "Generic"}


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class TestUsers:
    @pytest.mark.asyncio
    async def test_insert_conflict_returns_false(self, tmp_path: Path) -> None:
        store = await _store(tmp_path)
        assert await store.insert_user(AuthorizedUser("helper-1", "Helper"))
        assert not await store.insert_user(AuthorizedUser("helper-1", "Again"))
        users = await store.list_users()
        await store.close()
        assert [(u.principal_id, u.display_name) for u in users] == [("helper-1", "Helper")]

    @pytest.mark.asyncio
    async def test_registry_survives_restart(self, tmp_path: Path) -> None:
        store = await _store(tmp_path)
        await AuthorizationRegistry(store, "owner-1").add("helper-1")

        fresh = AuthorizationRegistry(store, "owner-1")
        await fresh.load()
        assert fresh.is_authorized("helper-1")
        assert await fresh.remove("helper-1")
        assert await store.list_users() == []
        await store.close()


# ---------------------------------------------------------------------------
# Keys and settings
# ---------------------------------------------------------------------------


class TestKeys:
    @pytest.mark.asyncio
    async def test_key_exists_and_update(self, tmp_path: Path) -> None:
        store = await _store(tmp_path)
        key = AccessKey("ABC123", "Standard", "lifetime", None, "owner")
        await store.insert_key(key)
        assert await store.key_exists("ABC123")
        assert not await store.key_exists("XYZ")

        used = key.copy()
        used.status = KeyStatus.USED
        used.used_by = "buyer-1"
        assert await store.update_key(used, KeyStatus.ACTIVE)
        assert not await store.update_key(used, KeyStatus.ACTIVE)
        assert (await store.fetch_key("ABC123")).used_by == "buyer-1"
        await store.close()

    @pytest.mark.asyncio
    async def test_expire_keys(self, tmp_path: Path) -> None:
        store = await _store(tmp_path)
        now = utcnow()
        await store.insert_key(AccessKey("OLD", "Standard", "daily", now - timedelta(days=1), "owner"))
        await store.insert_key(AccessKey("NEW", "Standard", "daily", now + timedelta(days=1), "owner"))
        await store.insert_key(AccessKey("LIFE", "Standard", "lifetime", None, "owner"))

        expired = await store.expire_keys(now)
        assert [k.key_value for k in expired] == ["OLD"]
        assert expired[0].status == KeyStatus.EXPIRED
        active = await store.list_keys(KeyStatus.ACTIVE)
        await store.close()
        assert {k.key_value for k in active} == {"NEW", "LIFE"}

    @pytest.mark.asyncio
    async def test_key_service_over_sql(self, tmp_path: Path) -> None:
        store = await _store(tmp_path)
        service = KeyService(store)
        key = await service.issue("Premium", "weekly", "owner")
        await service.redeem(key.key_value, "buyer-1")
        await service.increment_sold("admin")
        counter = await service.counter()
        await store.close()
        assert counter["sold_count"] == 1

    @pytest.mark.asyncio
    async def test_delete_key(self, tmp_path: Path) -> None:
        store = await _store(tmp_path)
        await store.insert_key(AccessKey("GONE", "Standard", "daily", None, "owner"))
        assert await store.delete_key("GONE") is True
        assert await store.delete_key("GONE") is False
        assert await store.key_exists("GONE") is False
        await store.close()


class TestMembers:
    @pytest.mark.asyncio
    async def test_rejoin_refreshes_profile_and_keeps_first_seen(self, tmp_path: Path) -> None:
        store = await _store(tmp_path)
        first_seen = utcnow() - timedelta(days=10)
        await store.upsert_member(NewMember(
            "m-1", "alice", joined_at=first_seen, guild_name="Store", recorded_at=first_seen,
        ))
        await store.upsert_member(NewMember("m-1", "alice2", display_name="Alice", avatar_url="a.png"))
        [member] = await store.list_members(10)
        count = await store.count_members()
        await store.close()

        assert count == 1
        assert member.username == "alice2"
        assert member.avatar_url == "a.png"
        assert member.joined_at > first_seen
        assert member.guild_name == "Store"
        assert member.recorded_at == first_seen

    @pytest.mark.asyncio
    async def test_member_log_over_sql(self, tmp_path: Path) -> None:
        store = await _store(tmp_path)
        members = MemberLog(store)
        now = utcnow()
        for days in (0, 3, 20):
            await members.record_join(f"m-{days}", f"u{days}", joined_at=now - timedelta(days=days))
        page = await members.list(limit=2, offset=1)
        recent = await members.recent(7)
        await store.close()

        assert [m.principal_id for m in page] == ["m-3", "m-20"]
        assert [m.principal_id for m in recent] == ["m-0", "m-3"]


class TestSettings:
    @pytest.mark.asyncio
    async def test_upsert(self, tmp_path: Path) -> None:
        store = await _store(tmp_path)
        assert await store.get_setting("keys_total_limit") is None
        await store.set_setting(Setting("keys_total_limit", "100", updated_by="owner"))
        await store.set_setting(Setting("keys_total_limit", "150", updated_by="owner"))
        setting = await store.get_setting("keys_total_limit")
        await store.close()
        assert setting.value == "150"


class TestFailures:
    @pytest.mark.asyncio
    async def test_missing_schema_is_persistence_error(self, tmp_path: Path) -> None:
        store = SQLStore.from_url(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
        with pytest.raises(PersistenceError):
            await store.fetch_payment("PAY_1")
        await store.close()

    @pytest.mark.asyncio
    async def test_create_schema_is_idempotent(self, tmp_path: Path) -> None:
        store = await _store(tmp_path)
        await store.insert_payment(_payment())
        await store.create_schema()
        assert await store.fetch_payment("PAY_1_abc") is not None
        await store.close()
