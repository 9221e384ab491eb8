"""Salesbot — sales and support core for a Discord storefront.

Payment ledger, idempotent confirmation, access keys, allowlist and
database backups, with a webhook and dashboard HTTP surface.
"""

__version__ = "0.1.0"

from salesbot.authorization import AuthorizationRegistry
from salesbot.backup import BackupManager, PgDumpTool
from salesbot.config import SalesbotConfig
from salesbot.constants import DurationType, KeyStatus, PaymentStatus
from salesbot.dispatcher import CancellationOutcome, ConfirmationDispatcher, ConfirmationOutcome
from salesbot.errors import (
    AlreadyTerminalError,
    BackupFailedError,
    ExhaustedKeySpaceError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    SalesbotError,
    UnauthorizedError,
)
from salesbot.keys import KeyGenerator, KeyService
from salesbot.members import MemberLog
from salesbot.models import AccessKey, AuthorizedUser, BackupRecord, NewMember, Payment
from salesbot.payment_ledger import PaymentLedger
from salesbot.store import Store
from salesbot.stores import MemoryStore, SQLStore

__all__ = [
    "AccessKey",
    "AlreadyTerminalError",
    "AuthorizationRegistry",
    "AuthorizedUser",
    "BackupFailedError",
    "BackupManager",
    "BackupRecord",
    "CancellationOutcome",
    "ConfirmationDispatcher",
    "ConfirmationOutcome",
    "DurationType",
    "ExhaustedKeySpaceError",
    "InvalidTransitionError",
    "KeyGenerator",
    "KeyService",
    "KeyStatus",
    "MemberLog",
    "MemoryStore",
    "NewMember",
    "NotFoundError",
    "Payment",
    "PaymentLedger",
    "PaymentStatus",
    "PersistenceError",
    "PgDumpTool",
    "SalesbotConfig",
    "SalesbotError",
    "SQLStore",
    "Store",
    "UnauthorizedError",
]
