"""Constants and enumerations for the sales core."""

from enum import Enum


KEY_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
DEFAULT_KEY_LENGTH = 16
DEFAULT_KEY_MAX_ATTEMPTS = 100

DEFAULT_MAX_BACKUPS = 7
DEFAULT_BACKUP_INTERVAL_HOURS = 24
BACKUP_SUFFIX = ".sql"

DEFAULT_SWEEP_INTERVAL_MINUTES = 15

DEFAULT_KEYS_LIMIT = 100
KEYS_LIMIT_SETTING = "keys_total_limit"
KEYS_SOLD_SETTING = "keys_sold_count"

PAYMENT_PREFIX = "PAY"
MANUAL_PAYMENT_PREFIX = "MANUAL"

DEFAULT_MEMBER_PAGE_SIZE = 50
DEFAULT_RECENT_MEMBER_DAYS = 7
DM_CHANNEL_CACHE_SIZE = 1024

# Generic webhook statuses that count as a successful payment
APPROVED_WEBHOOK_STATUSES = frozenset({"approved", "paid", "completed"})


class PaymentStatus(str, Enum):
    """Payment lifecycle: pending -> {paid, cancelled, expired}."""

    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class KeyStatus(str, Enum):
    """Access key lifecycle: active -> {used, expired}."""

    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"


class DurationType(str, Enum):
    """Validity class of a sold access key."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    LIFETIME = "lifetime"
