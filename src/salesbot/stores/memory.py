"""MemoryStore — dict-backed Store for the memory-only variant and tests.

Records are copied on the way in and out so callers never share state
with the store.
"""

from __future__ import annotations

from datetime import datetime

from salesbot.constants import KeyStatus, PaymentStatus
from salesbot.errors import PersistenceError
from salesbot.models import AccessKey, AuthorizedUser, NewMember, Payment, Setting


class MemoryStore:
    """In-process implementation of the ``Store`` protocol.

    Nothing survives a restart. Each coroutine completes without awaiting,
    so every operation is atomic with respect to the event loop.
    """

    def __init__(self) -> None:
        self._payments: dict[str, Payment] = {}
        self._users: dict[str, AuthorizedUser] = {}
        self._keys: dict[str, AccessKey] = {}
        self._settings: dict[str, Setting] = {}
        self._members: dict[str, NewMember] = {}

    # -- payments -------------------------------------------------------------

    async def insert_payment(self, payment: Payment) -> None:
        if payment.payment_id in self._payments:
            raise PersistenceError(f"duplicate payment id {payment.payment_id}")
        self._payments[payment.payment_id] = payment.copy()

    async def fetch_payment(self, payment_id: str) -> Payment | None:
        payment = self._payments.get(payment_id)
        return payment.copy() if payment else None

    async def list_payments(self, status: PaymentStatus | None = None) -> list[Payment]:
        return [
            p.copy() for p in self._payments.values()
            if status is None or p.status == status
        ]

    async def update_payment(
        self, payment: Payment, expected_status: PaymentStatus
    ) -> bool:
        current = self._payments.get(payment.payment_id)
        if current is None or current.status != expected_status:
            return False
        self._payments[payment.payment_id] = payment.copy()
        return True

    async def delete_payment(self, payment_id: str) -> bool:
        return self._payments.pop(payment_id, None) is not None

    # -- authorized users -----------------------------------------------------

    async def insert_user(self, user: AuthorizedUser) -> bool:
        if user.principal_id in self._users:
            return False
        self._users[user.principal_id] = AuthorizedUser(**vars(user))
        return True

    async def delete_user(self, principal_id: str) -> bool:
        return self._users.pop(principal_id, None) is not None

    async def list_users(self) -> list[AuthorizedUser]:
        users = sorted(self._users.values(), key=lambda u: u.authorized_at)
        return [AuthorizedUser(**vars(u)) for u in users]

    # -- access keys ----------------------------------------------------------

    async def insert_key(self, key: AccessKey) -> None:
        if key.key_value in self._keys:
            raise PersistenceError(f"duplicate key {key.key_value}")
        self._keys[key.key_value] = key.copy()

    async def key_exists(self, key_value: str) -> bool:
        return key_value in self._keys

    async def fetch_key(self, key_value: str) -> AccessKey | None:
        key = self._keys.get(key_value)
        return key.copy() if key else None

    async def update_key(self, key: AccessKey, expected_status: KeyStatus) -> bool:
        current = self._keys.get(key.key_value)
        if current is None or current.status != expected_status:
            return False
        self._keys[key.key_value] = key.copy()
        return True

    async def list_keys(self, status: KeyStatus | None = None) -> list[AccessKey]:
        keys = sorted(self._keys.values(), key=lambda k: k.created_at, reverse=True)
        return [k.copy() for k in keys if status is None or k.status == status]

    async def expire_keys(self, now: datetime) -> list[AccessKey]:
        expired: list[AccessKey] = []
        for key in self._keys.values():
            if (
                key.status == KeyStatus.ACTIVE
                and key.expires_at is not None
                and key.expires_at < now
            ):
                key.status = KeyStatus.EXPIRED
                expired.append(key.copy())
        return expired

    async def delete_key(self, key_value: str) -> bool:
        return self._keys.pop(key_value, None) is not None

    # -- guild joins ----------------------------------------------------------

    async def upsert_member(self, member: NewMember) -> None:
        existing = self._members.get(member.principal_id)
        if existing is None:
            self._members[member.principal_id] = member.copy()
            return
        existing.username = member.username
        existing.display_name = member.display_name
        existing.avatar_url = member.avatar_url
        existing.joined_at = member.joined_at

    def _members_newest_first(self) -> list[NewMember]:
        return sorted(self._members.values(), key=lambda m: m.joined_at, reverse=True)

    async def list_members(self, limit: int, offset: int = 0) -> list[NewMember]:
        return [m.copy() for m in self._members_newest_first()[offset:offset + limit]]

    async def count_members(self) -> int:
        return len(self._members)

    async def list_members_since(self, since: datetime) -> list[NewMember]:
        return [m.copy() for m in self._members_newest_first() if m.joined_at >= since]

    # -- settings -------------------------------------------------------------

    async def get_setting(self, key: str) -> Setting | None:
        setting = self._settings.get(key)
        return Setting(**vars(setting)) if setting else None

    async def set_setting(self, setting: Setting) -> None:
        self._settings[setting.key] = Setting(**vars(setting))
