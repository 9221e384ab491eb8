"""Exception hierarchy for the sales core."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from salesbot.models import Payment


class SalesbotError(Exception):
    """Base exception for core operations."""


class NotFoundError(SalesbotError):
    """Entity id unknown to the store."""


class InvalidTransitionError(SalesbotError):
    """State-machine edge not allowed."""

    def __init__(self, message: str, current: str | None = None, target: str | None = None) -> None:
        super().__init__(message)
        self.current = current
        self.target = target


class AlreadyTerminalError(SalesbotError):
    """Payment already sits in the requested terminal state.

    Not a true failure; callers treat it as an idempotent success.
    ``payment`` is the record as currently stored.
    """

    def __init__(self, message: str, payment: Payment) -> None:
        super().__init__(message)
        self.payment = payment


class PersistenceError(SalesbotError):
    """Store unreachable or write rejected."""


class BackupFailedError(SalesbotError):
    """Dump/restore process error or empty artifact."""


class ExhaustedKeySpaceError(SalesbotError):
    """Key generation gave up after too many collisions."""


class UnauthorizedError(SalesbotError):
    """Caller failed a policy check before reaching the core."""
