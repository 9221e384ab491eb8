"""Data model for payments, users, access keys, guild joins and backups.

Pure data, no I/O. Money is always ``Decimal``; timestamps are aware
UTC datetimes and serialize to ISO strings.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from salesbot.constants import KeyStatus, PaymentStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    # Naive values come back from SQLite; they were written as UTC.
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ---------------------------------------------------------------------------
# Payment
# ---------------------------------------------------------------------------


@dataclass
class Payment:
    """One purchase attempt.

    Owned by ``PaymentLedger``; everything else works on copies.
    """

    payment_id: str
    principal_id: str
    display_name: str
    plan: str
    amount: Decimal
    method: str
    status: PaymentStatus = PaymentStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    confirmed_at: datetime | None = None
    confirmed_by: str | None = None
    cancel_reason: str | None = None
    gateway_metadata: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def copy(self) -> Payment:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "payment_id": self.payment_id,
            "principal_id": self.principal_id,
            "display_name": self.display_name,
            "plan": self.plan,
            "amount": str(self.amount),
            "method": self.method,
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "confirmed_at": _iso(self.confirmed_at),
            "confirmed_by": self.confirmed_by,
            "cancel_reason": self.cancel_reason,
            "gateway_metadata": self.gateway_metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Payment:
        return cls(
            payment_id=str(data["payment_id"]),
            principal_id=str(data.get("principal_id", "")),
            display_name=str(data.get("display_name", "")),
            plan=str(data.get("plan", "")),
            amount=Decimal(str(data.get("amount", "0"))),
            method=str(data.get("method", "")),
            status=PaymentStatus(data.get("status", PaymentStatus.PENDING.value)),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            confirmed_at=_parse_dt(data.get("confirmed_at")),
            confirmed_by=data.get("confirmed_by"),
            cancel_reason=data.get("cancel_reason"),
            gateway_metadata=data.get("gateway_metadata"),
        )


# ---------------------------------------------------------------------------
# AuthorizedUser
# ---------------------------------------------------------------------------


@dataclass
class AuthorizedUser:
    """A principal allowed to run privileged commands."""

    principal_id: str
    display_name: str = "Authorized User"
    is_owner: bool = False
    authorized_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "principal_id": self.principal_id,
            "display_name": self.display_name,
            "is_owner": self.is_owner,
            "authorized_at": _iso(self.authorized_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuthorizedUser:
        return cls(
            principal_id=str(data["principal_id"]),
            display_name=str(data.get("display_name", "Authorized User")),
            is_owner=bool(data.get("is_owner", False)),
            authorized_at=_parse_dt(data.get("authorized_at")) or utcnow(),
        )


# ---------------------------------------------------------------------------
# AccessKey
# ---------------------------------------------------------------------------


@dataclass
class AccessKey:
    """A sold credential. ``key_value`` is unique among all keys ever issued."""

    key_value: str
    plan_type: str
    duration_type: str
    expires_at: datetime | None
    created_by: str
    status: KeyStatus = KeyStatus.ACTIVE
    used_by: str | None = None
    used_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)

    def copy(self) -> AccessKey:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "key_value": self.key_value,
            "plan_type": self.plan_type,
            "duration_type": self.duration_type,
            "expires_at": _iso(self.expires_at),
            "status": self.status.value,
            "created_by": self.created_by,
            "used_by": self.used_by,
            "used_at": _iso(self.used_at),
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AccessKey:
        return cls(
            key_value=str(data["key_value"]),
            plan_type=str(data.get("plan_type", "")),
            duration_type=str(data.get("duration_type", "")),
            expires_at=_parse_dt(data.get("expires_at")),
            created_by=str(data.get("created_by", "")),
            status=KeyStatus(data.get("status", KeyStatus.ACTIVE.value)),
            used_by=data.get("used_by"),
            used_at=_parse_dt(data.get("used_at")),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
        )


# ---------------------------------------------------------------------------
# NewMember
# ---------------------------------------------------------------------------


@dataclass
class NewMember:
    """A guild join. Re-joins refresh the profile fields and ``joined_at``."""

    principal_id: str
    username: str
    display_name: str | None = None
    avatar_url: str | None = None
    joined_at: datetime = field(default_factory=utcnow)
    account_created_at: datetime | None = None
    guild_id: str | None = None
    guild_name: str | None = None
    recorded_at: datetime = field(default_factory=utcnow)

    def copy(self) -> NewMember:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "principal_id": self.principal_id,
            "username": self.username,
            "display_name": self.display_name,
            "avatar_url": self.avatar_url,
            "joined_at": _iso(self.joined_at),
            "account_created_at": _iso(self.account_created_at),
            "guild_id": self.guild_id,
            "guild_name": self.guild_name,
            "recorded_at": _iso(self.recorded_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NewMember:
        return cls(
            principal_id=str(data["principal_id"]),
            username=str(data.get("username", "")),
            display_name=data.get("display_name"),
            avatar_url=data.get("avatar_url"),
            joined_at=_parse_dt(data.get("joined_at")) or utcnow(),
            account_created_at=_parse_dt(data.get("account_created_at")),
            guild_id=data.get("guild_id"),
            guild_name=data.get("guild_name"),
            recorded_at=_parse_dt(data.get("recorded_at")) or utcnow(),
        )


# ---------------------------------------------------------------------------
# Setting
# ---------------------------------------------------------------------------


@dataclass
class Setting:
    key: str
    value: str
    description: str | None = None
    updated_by: str | None = None
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "value": self.value,
            "description": self.description,
            "updated_by": self.updated_by,
            "updated_at": _iso(self.updated_at),
        }


# ---------------------------------------------------------------------------
# BackupRecord
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BackupRecord:
    """A point-in-time dump artifact on disk. Never mutated."""

    name: str
    path: str
    size_bytes: int
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "path": self.path,
            "size_bytes": self.size_bytes,
            "size_formatted": f"{self.size_bytes / 1024:.2f} KB",
            "created_at": _iso(self.created_at),
        }
