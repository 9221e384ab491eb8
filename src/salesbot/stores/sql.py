"""SQLStore — Store implementation on SQLAlchemy Core with an async engine.

Schema (logical):

- ``users(principal_id PK, display_name, is_owner, authorized_at)``
- ``payments(payment_id PK, principal_id, display_name, plan, amount,
  method, status, created_at, confirmed_at, confirmed_by, cancel_reason,
  gateway_metadata)``
- ``keys(key_value PK, plan_type, duration_type, expires_at, status,
  created_by, used_by, used_at, created_at)``
- ``settings(key PK, value, description, updated_by, updated_at)``
- ``new_members(principal_id PK, username, display_name, avatar_url, joined_at,
  account_created_at, guild_id, guild_name, recorded_at)``

Production runs on PostgreSQL via asyncpg (the same database the backup
manager dumps); tests run on in-memory SQLite via aiosqlite. Every driver
error surfaces as ``PersistenceError``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from salesbot.constants import KeyStatus, PaymentStatus
from salesbot.errors import PersistenceError
from salesbot.models import AccessKey, AuthorizedUser, NewMember, Payment, Setting

logger = logging.getLogger(__name__)

metadata = sa.MetaData()

users_table = sa.Table(
    "users",
    metadata,
    sa.Column("principal_id", sa.String(64), primary_key=True),
    sa.Column("display_name", sa.String(255), nullable=False),
    sa.Column("is_owner", sa.Boolean, nullable=False, default=False),
    sa.Column("authorized_at", sa.DateTime(timezone=True), nullable=False),
)

payments_table = sa.Table(
    "payments",
    metadata,
    sa.Column("payment_id", sa.String(64), primary_key=True),
    sa.Column("principal_id", sa.String(64), nullable=False, index=True),
    sa.Column("display_name", sa.String(255), nullable=False),
    sa.Column("plan", sa.String(64), nullable=False),
    sa.Column("amount", sa.Numeric(12, 2), nullable=False),
    sa.Column("method", sa.String(32), nullable=False),
    sa.Column("status", sa.String(16), nullable=False, index=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("confirmed_at", sa.DateTime(timezone=True)),
    sa.Column("confirmed_by", sa.String(64)),
    sa.Column("cancel_reason", sa.Text),
    sa.Column("gateway_metadata", sa.JSON),
)

keys_table = sa.Table(
    "keys",
    metadata,
    sa.Column("key_value", sa.String(64), primary_key=True),
    sa.Column("plan_type", sa.String(64), nullable=False),
    sa.Column("duration_type", sa.String(32), nullable=False),
    sa.Column("expires_at", sa.DateTime(timezone=True)),
    sa.Column("status", sa.String(16), nullable=False, index=True),
    sa.Column("created_by", sa.String(64), nullable=False),
    sa.Column("used_by", sa.String(64)),
    sa.Column("used_at", sa.DateTime(timezone=True)),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
)

settings_table = sa.Table(
    "settings",
    metadata,
    sa.Column("key", sa.String(128), primary_key=True),
    sa.Column("value", sa.Text, nullable=False),
    sa.Column("description", sa.Text),
    sa.Column("updated_by", sa.String(64)),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
)

members_table = sa.Table(
    "new_members",
    metadata,
    sa.Column("principal_id", sa.String(64), primary_key=True),
    sa.Column("username", sa.String(255), nullable=False),
    sa.Column("display_name", sa.String(255)),
    sa.Column("avatar_url", sa.Text),
    sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False, index=True),
    sa.Column("account_created_at", sa.DateTime(timezone=True)),
    sa.Column("guild_id", sa.String(64)),
    sa.Column("guild_name", sa.String(255)),
    sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
)


def _payment_row(payment: Payment) -> dict[str, Any]:
    return {
        "payment_id": payment.payment_id,
        "principal_id": payment.principal_id,
        "display_name": payment.display_name,
        "plan": payment.plan,
        "amount": payment.amount,
        "method": payment.method,
        "status": payment.status.value,
        "created_at": payment.created_at,
        "confirmed_at": payment.confirmed_at,
        "confirmed_by": payment.confirmed_by,
        "cancel_reason": payment.cancel_reason,
        "gateway_metadata": payment.gateway_metadata,
    }


def _key_row(key: AccessKey) -> dict[str, Any]:
    return {
        "key_value": key.key_value,
        "plan_type": key.plan_type,
        "duration_type": key.duration_type,
        "expires_at": key.expires_at,
        "status": key.status.value,
        "created_by": key.created_by,
        "used_by": key.used_by,
        "used_at": key.used_at,
        "created_at": key.created_at,
    }


class SQLStore:
    """Relational implementation of the ``Store`` protocol."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    @classmethod
    def from_url(cls, url: str, **engine_kwargs: Any) -> SQLStore:
        """Create a store with its own engine (e.g. ``postgresql+asyncpg://...``)."""
        return cls(create_async_engine(url, **engine_kwargs))

    async def create_schema(self) -> None:
        """Create missing tables. Existing tables are left untouched."""
        async with self._begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def close(self) -> None:
        await self._engine.dispose()

    @asynccontextmanager
    async def _begin(self) -> AsyncIterator[AsyncConnection]:
        """Open a transaction, translating driver failures to PersistenceError."""
        try:
            async with self._engine.begin() as conn:
                yield conn
        except (SQLAlchemyError, OSError) as exc:
            raise PersistenceError(f"Store operation failed: {exc}") from exc

    # -- payments -------------------------------------------------------------

    async def insert_payment(self, payment: Payment) -> None:
        async with self._begin() as conn:
            await conn.execute(payments_table.insert().values(**_payment_row(payment)))

    async def fetch_payment(self, payment_id: str) -> Payment | None:
        async with self._begin() as conn:
            result = await conn.execute(
                sa.select(payments_table).where(payments_table.c.payment_id == payment_id)
            )
            row = result.mappings().first()
        return Payment.from_dict(dict(row)) if row else None

    async def list_payments(self, status: PaymentStatus | None = None) -> list[Payment]:
        query = sa.select(payments_table).order_by(payments_table.c.created_at.desc())
        if status is not None:
            query = query.where(payments_table.c.status == status.value)
        async with self._begin() as conn:
            result = await conn.execute(query)
            rows = result.mappings().all()
        return [Payment.from_dict(dict(r)) for r in rows]

    async def update_payment(
        self, payment: Payment, expected_status: PaymentStatus
    ) -> bool:
        row = _payment_row(payment)
        del row["payment_id"]
        async with self._begin() as conn:
            result = await conn.execute(
                payments_table.update()
                .where(payments_table.c.payment_id == payment.payment_id)
                .where(payments_table.c.status == expected_status.value)
                .values(**row)
            )
        return result.rowcount == 1

    async def delete_payment(self, payment_id: str) -> bool:
        async with self._begin() as conn:
            result = await conn.execute(
                payments_table.delete().where(payments_table.c.payment_id == payment_id)
            )
        return result.rowcount > 0

    # -- authorized users -----------------------------------------------------

    async def insert_user(self, user: AuthorizedUser) -> bool:
        try:
            async with self._engine.begin() as conn:
                await conn.execute(
                    users_table.insert().values(
                        principal_id=user.principal_id,
                        display_name=user.display_name,
                        is_owner=user.is_owner,
                        authorized_at=user.authorized_at,
                    )
                )
        except IntegrityError:
            return False
        except (SQLAlchemyError, OSError) as exc:
            raise PersistenceError(f"Store operation failed: {exc}") from exc
        return True

    async def delete_user(self, principal_id: str) -> bool:
        async with self._begin() as conn:
            result = await conn.execute(
                users_table.delete().where(users_table.c.principal_id == principal_id)
            )
        return result.rowcount > 0

    async def list_users(self) -> list[AuthorizedUser]:
        async with self._begin() as conn:
            result = await conn.execute(
                sa.select(users_table).order_by(users_table.c.authorized_at)
            )
            rows = result.mappings().all()
        return [AuthorizedUser.from_dict(dict(r)) for r in rows]

    # -- access keys ----------------------------------------------------------

    async def insert_key(self, key: AccessKey) -> None:
        async with self._begin() as conn:
            await conn.execute(keys_table.insert().values(**_key_row(key)))

    async def key_exists(self, key_value: str) -> bool:
        async with self._begin() as conn:
            result = await conn.execute(
                sa.select(keys_table.c.key_value).where(keys_table.c.key_value == key_value)
            )
            return result.first() is not None

    async def fetch_key(self, key_value: str) -> AccessKey | None:
        async with self._begin() as conn:
            result = await conn.execute(
                sa.select(keys_table).where(keys_table.c.key_value == key_value)
            )
            row = result.mappings().first()
        return AccessKey.from_dict(dict(row)) if row else None

    async def update_key(self, key: AccessKey, expected_status: KeyStatus) -> bool:
        row = _key_row(key)
        del row["key_value"]
        async with self._begin() as conn:
            result = await conn.execute(
                keys_table.update()
                .where(keys_table.c.key_value == key.key_value)
                .where(keys_table.c.status == expected_status.value)
                .values(**row)
            )
        return result.rowcount == 1

    async def list_keys(self, status: KeyStatus | None = None) -> list[AccessKey]:
        query = sa.select(keys_table).order_by(keys_table.c.created_at.desc())
        if status is not None:
            query = query.where(keys_table.c.status == status.value)
        async with self._begin() as conn:
            result = await conn.execute(query)
            rows = result.mappings().all()
        return [AccessKey.from_dict(dict(r)) for r in rows]

    async def expire_keys(self, now: datetime) -> list[AccessKey]:
        due = (
            (keys_table.c.status == KeyStatus.ACTIVE.value)
            & keys_table.c.expires_at.is_not(None)
            & (keys_table.c.expires_at < now)
        )
        async with self._begin() as conn:
            result = await conn.execute(sa.select(keys_table).where(due))
            rows = result.mappings().all()
            if rows:
                await conn.execute(
                    keys_table.update()
                    .where(keys_table.c.key_value.in_([r["key_value"] for r in rows]))
                    .where(keys_table.c.status == KeyStatus.ACTIVE.value)
                    .values(status=KeyStatus.EXPIRED.value)
                )
        expired = [AccessKey.from_dict(dict(r)) for r in rows]
        for key in expired:
            key.status = KeyStatus.EXPIRED
        return expired

    async def delete_key(self, key_value: str) -> bool:
        async with self._begin() as conn:
            result = await conn.execute(
                keys_table.delete().where(keys_table.c.key_value == key_value)
            )
        return result.rowcount > 0

    # -- guild joins ----------------------------------------------------------

    async def upsert_member(self, member: NewMember) -> None:
        refreshed = {
            "username": member.username,
            "display_name": member.display_name,
            "avatar_url": member.avatar_url,
            "joined_at": member.joined_at,
        }
        async with self._begin() as conn:
            result = await conn.execute(
                members_table.update()
                .where(members_table.c.principal_id == member.principal_id)
                .values(**refreshed)
            )
            if result.rowcount == 0:
                await conn.execute(
                    members_table.insert().values(
                        principal_id=member.principal_id,
                        account_created_at=member.account_created_at,
                        guild_id=member.guild_id,
                        guild_name=member.guild_name,
                        recorded_at=member.recorded_at,
                        **refreshed,
                    )
                )

    async def list_members(self, limit: int, offset: int = 0) -> list[NewMember]:
        query = (
            sa.select(members_table)
            .order_by(members_table.c.joined_at.desc())
            .limit(limit)
            .offset(offset)
        )
        async with self._begin() as conn:
            result = await conn.execute(query)
            rows = result.mappings().all()
        return [NewMember.from_dict(dict(r)) for r in rows]

    async def count_members(self) -> int:
        async with self._begin() as conn:
            result = await conn.execute(
                sa.select(sa.func.count()).select_from(members_table)
            )
            return int(result.scalar_one())

    async def list_members_since(self, since: datetime) -> list[NewMember]:
        query = (
            sa.select(members_table)
            .where(members_table.c.joined_at >= since)
            .order_by(members_table.c.joined_at.desc())
        )
        async with self._begin() as conn:
            result = await conn.execute(query)
            rows = result.mappings().all()
        return [NewMember.from_dict(dict(r)) for r in rows]

    # -- settings -------------------------------------------------------------

    async def get_setting(self, key: str) -> Setting | None:
        async with self._begin() as conn:
            result = await conn.execute(
                sa.select(settings_table).where(settings_table.c.key == key)
            )
            row = result.mappings().first()
        if row is None:
            return None
        return Setting(
            key=row["key"],
            value=row["value"],
            description=row["description"],
            updated_by=row["updated_by"],
            updated_at=row["updated_at"],
        )

    async def set_setting(self, setting: Setting) -> None:
        values = {
            "value": setting.value,
            "description": setting.description,
            "updated_by": setting.updated_by,
            "updated_at": setting.updated_at,
        }
        async with self._begin() as conn:
            result = await conn.execute(
                settings_table.update()
                .where(settings_table.c.key == setting.key)
                .values(**values)
            )
            if result.rowcount == 0:
                await conn.execute(
                    settings_table.insert().values(key=setting.key, **values)
                )
