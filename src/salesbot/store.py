"""Abstract persistence interface for payments, users, keys, joins and settings.

Defines the Store Protocol that the ledger, registry and key service
depend on. Concrete implementations live in ``salesbot.stores``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from salesbot.constants import KeyStatus, PaymentStatus
from salesbot.models import AccessKey, AuthorizedUser, NewMember, Payment, Setting


@runtime_checkable
class Store(Protocol):
    """Async persistent store — the single source of truth.

    Implementations raise ``PersistenceError`` when the backend is
    unreachable or rejects a write. ``update_payment`` is a
    compare-and-swap: it writes only if the stored status still equals
    ``expected_status`` and reports whether it did. Member listings are
    ordered by ``joined_at``, newest first.
    """

    # -- payments -------------------------------------------------------------

    async def insert_payment(self, payment: Payment) -> None: ...

    async def fetch_payment(self, payment_id: str) -> Payment | None: ...

    async def list_payments(self, status: PaymentStatus | None = None) -> list[Payment]: ...

    async def update_payment(
        self, payment: Payment, expected_status: PaymentStatus
    ) -> bool: ...

    async def delete_payment(self, payment_id: str) -> bool: ...

    # -- authorized users -----------------------------------------------------

    async def insert_user(self, user: AuthorizedUser) -> bool: ...

    async def delete_user(self, principal_id: str) -> bool: ...

    async def list_users(self) -> list[AuthorizedUser]: ...

    # -- access keys ----------------------------------------------------------

    async def insert_key(self, key: AccessKey) -> None: ...

    async def key_exists(self, key_value: str) -> bool: ...

    async def fetch_key(self, key_value: str) -> AccessKey | None: ...

    async def update_key(self, key: AccessKey, expected_status: KeyStatus) -> bool: ...

    async def list_keys(self, status: KeyStatus | None = None) -> list[AccessKey]: ...

    async def expire_keys(self, now: datetime) -> list[AccessKey]: ...

    async def delete_key(self, key_value: str) -> bool: ...

    # -- guild joins ----------------------------------------------------------

    async def upsert_member(self, member: NewMember) -> None: ...

    async def list_members(self, limit: int, offset: int = 0) -> list[NewMember]: ...

    async def count_members(self) -> int: ...

    async def list_members_since(self, since: datetime) -> list[NewMember]: ...

    # -- settings -------------------------------------------------------------

    async def get_setting(self, key: str) -> Setting | None: ...

    async def set_setting(self, setting: Setting) -> None: ...
