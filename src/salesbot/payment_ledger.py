"""Payment ledger: record set and lifecycle state machine for payments.

The store is the durable source of truth. Every status mutation runs
under a per-payment ``asyncio.Lock`` and is written with a store-level
compare-and-swap on the previous status, so concurrent triggers for the
same payment id serialize while other ids proceed independently.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from collections import Counter
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from salesbot.constants import PAYMENT_PREFIX, PaymentStatus
from salesbot.errors import (
    AlreadyTerminalError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
)
from salesbot.models import Payment, utcnow

if TYPE_CHECKING:
    from salesbot.store import Store

logger = logging.getLogger(__name__)

_ID_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
_ID_MAX_ATTEMPTS = 10

# Allowed edges of the payment state machine
_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.PAID, PaymentStatus.CANCELLED, PaymentStatus.EXPIRED,
    }),
    PaymentStatus.PAID: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.EXPIRED: frozenset(),
}


def new_payment_id(prefix: str = PAYMENT_PREFIX) -> str:
    """Return ``<prefix>_<epoch-ms>_<9 base36 chars>``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in _TRANSITIONS[current]


class PaymentLedger:
    """Store-backed payment repository with an atomic transition per id.

    - ``create()`` persists a new ``pending`` payment.
    - ``transition()`` is the only way a status changes.
    - ``delete()`` is an administrative hard delete, separate from the
      state machine.

    All returned ``Payment`` objects are copies; mutating them has no
    effect on the ledger.
    """

    def __init__(self, store: Store) -> None:
        self._store = store
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _payment_lock(self, payment_id: str) -> AsyncIterator[None]:
        """Hold the per-payment lock; it is dropped once nobody holds or awaits it."""
        lock = self._locks.setdefault(payment_id, asyncio.Lock())
        self._lock_users[payment_id] = self._lock_users.get(payment_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[payment_id] -= 1
            if not self._lock_users[payment_id]:
                del self._lock_users[payment_id]
                del self._locks[payment_id]

    # -- create / read ----------------------------------------------------------

    async def create(
        self,
        principal_id: str,
        display_name: str,
        plan: str,
        amount: Decimal | int | str,
        method: str,
        *,
        prefix: str = PAYMENT_PREFIX,
    ) -> Payment:
        """Persist a fresh ``pending`` payment and return it.

        Raises ``PersistenceError`` if the store write fails; the payment
        must then be treated as never created.
        """
        amount = Decimal(str(amount))
        if amount <= 0:
            raise ValueError(f"amount must be positive, got {amount}")

        for _ in range(_ID_MAX_ATTEMPTS):
            payment_id = new_payment_id(prefix)
            if await self._store.fetch_payment(payment_id) is None:
                break
        else:
            raise PersistenceError("Could not allocate an unused payment id")

        payment = Payment(
            payment_id=payment_id,
            principal_id=principal_id,
            display_name=display_name,
            plan=plan,
            amount=amount,
            method=method,
        )
        await self._store.insert_payment(payment)
        logger.info(
            "Payment %s created for %s (%s, %s via %s).",
            payment_id, principal_id, plan, amount, method,
        )
        return payment.copy()

    async def get(self, payment_id: str) -> Payment:
        """Return the payment or raise ``NotFoundError``."""
        payment = await self._store.fetch_payment(payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        return payment

    async def list_by_status(self, status: PaymentStatus | None = None) -> list[Payment]:
        """Snapshot of payments, optionally filtered by status."""
        return await self._store.list_payments(status)

    # -- state machine ----------------------------------------------------------

    async def transition(
        self,
        payment_id: str,
        new_status: PaymentStatus,
        actor: str,
        extra: dict[str, Any] | None = None,
    ) -> Payment:
        """Move a payment along ``pending -> {paid, cancelled, expired}``.

        Raises:
            NotFoundError: unknown id; nothing changes.
            AlreadyTerminalError: the payment already is ``new_status``
                (idempotent no-op; carries the stored record).
            InvalidTransitionError: any other disallowed edge.
            PersistenceError: the store write failed.

        ``extra`` may carry ``reason`` (cancellation) and any gateway
        metadata, which is merged into ``gateway_metadata``.
        """
        new_status = PaymentStatus(new_status)
        async with self._payment_lock(payment_id):
            current = await self._store.fetch_payment(payment_id)
            if current is None:
                raise NotFoundError(f"Payment {payment_id} not found")

            if current.status == new_status and current.is_terminal:
                raise AlreadyTerminalError(
                    f"Payment {payment_id} is already {new_status.value}", current,
                )
            if not can_transition(current.status, new_status):
                raise InvalidTransitionError(
                    f"Payment {payment_id} cannot move from "
                    f"{current.status.value} to {new_status.value}",
                    current=current.status.value,
                    target=new_status.value,
                )

            updated = current.copy()
            updated.status = new_status
            extra = dict(extra or {})
            if new_status == PaymentStatus.PAID:
                updated.confirmed_at = utcnow()
                updated.confirmed_by = actor
            elif new_status == PaymentStatus.CANCELLED:
                updated.cancel_reason = extra.pop("reason", None)
            else:
                extra.pop("reason", None)
            if extra:
                updated.gateway_metadata = {**(current.gateway_metadata or {}), **extra}

            if not await self._store.update_payment(updated, current.status):
                # Another writer (a second process sharing the store) won the race.
                latest = await self._store.fetch_payment(payment_id)
                if latest is not None and latest.status == new_status:
                    raise AlreadyTerminalError(
                        f"Payment {payment_id} is already {new_status.value}", latest,
                    )
                raise InvalidTransitionError(
                    f"Payment {payment_id} changed concurrently",
                    current=latest.status.value if latest else None,
                    target=new_status.value,
                )

        logger.info(
            "Payment %s: %s -> %s by %s.",
            payment_id, current.status.value, new_status.value, actor,
        )
        return updated.copy()

    async def delete(self, payment_id: str, actor: str | None = None) -> bool:
        """Irreversibly remove a payment record. Returns False if unknown."""
        async with self._payment_lock(payment_id):
            deleted = await self._store.delete_payment(payment_id)
        if deleted:
            logger.warning("Payment %s permanently deleted by %s.", payment_id, actor or "unknown")
        return deleted

    # -- policies & reporting ---------------------------------------------------

    async def expire_stale(
        self, max_age: timedelta, now: datetime | None = None
    ) -> list[Payment]:
        """Expire ``pending`` payments older than ``max_age``.

        Payments that moved on concurrently are skipped.
        """
        now = now or utcnow()
        expired: list[Payment] = []
        for payment in await self._store.list_payments(PaymentStatus.PENDING):
            if now - payment.created_at < max_age:
                continue
            try:
                expired.append(
                    await self.transition(payment.payment_id, PaymentStatus.EXPIRED, "system")
                )
            except (AlreadyTerminalError, InvalidTransitionError, NotFoundError):
                continue
        if expired:
            logger.info("Expired %d stale pending payment(s).", len(expired))
        return expired

    async def summary(self) -> dict[str, Any]:
        """Aggregate sales figures across all payments."""
        payments = await self._store.list_payments()
        counts = Counter(p.status.value for p in payments)
        paid = [p for p in payments if p.status == PaymentStatus.PAID]
        revenue = sum((p.amount for p in paid), Decimal("0"))
        total = len(payments)
        return {
            "total_payments": total,
            "by_status": {s.value: counts.get(s.value, 0) for s in PaymentStatus},
            "revenue": str(revenue),
            "conversion_rate": round(len(paid) / total * 100, 1) if total else 0.0,
            "unique_customers": len({p.principal_id for p in payments}),
            "paying_customers": len({p.principal_id for p in paid}),
        }
