"""Access-key generation, issuance, redemption and the weekly sales counter."""

from __future__ import annotations

import asyncio
import logging
import secrets
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from salesbot.constants import (
    DEFAULT_KEY_LENGTH,
    DEFAULT_KEY_MAX_ATTEMPTS,
    DEFAULT_KEYS_LIMIT,
    KEY_ALPHABET,
    KEYS_LIMIT_SETTING,
    KEYS_SOLD_SETTING,
    DurationType,
    KeyStatus,
)
from salesbot.errors import ExhaustedKeySpaceError, InvalidTransitionError, NotFoundError
from salesbot.models import AccessKey, Setting, utcnow

if TYPE_CHECKING:
    from salesbot.store import Store

logger = logging.getLogger(__name__)

_DURATIONS: dict[DurationType, timedelta | None] = {
    DurationType.DAILY: timedelta(days=1),
    DurationType.WEEKLY: timedelta(days=7),
    DurationType.MONTHLY: timedelta(days=30),
    DurationType.LIFETIME: None,
}


def expiry_for(duration_type: str, now: datetime | None = None) -> datetime | None:
    """Expiry timestamp for a duration class (None for lifetime keys)."""
    delta = _DURATIONS[DurationType(duration_type)]
    if delta is None:
        return None
    return (now or utcnow()) + delta


# ---------------------------------------------------------------------------
# KeyGenerator
# ---------------------------------------------------------------------------


class KeyGenerator:
    """Random key strings over ``A-Z0-9``, unique against the store."""

    def __init__(
        self,
        store: Store,
        alphabet: str = KEY_ALPHABET,
        max_attempts: int = DEFAULT_KEY_MAX_ATTEMPTS,
    ) -> None:
        self._store = store
        self._alphabet = alphabet
        self._max_attempts = max_attempts

    def _candidate(self, length: int) -> str:
        return "".join(secrets.choice(self._alphabet) for _ in range(length))

    async def generate_unique(self, length: int = DEFAULT_KEY_LENGTH) -> str:
        """Draw candidates until one is unused in the store.

        Raises ``ExhaustedKeySpaceError`` after ``max_attempts`` collisions.
        """
        if length <= 0:
            raise ValueError(f"length must be positive, got {length}")
        for attempt in range(1, self._max_attempts + 1):
            candidate = self._candidate(length)
            if not await self._store.key_exists(candidate):
                return candidate
            logger.debug("Key collision on attempt %d, regenerating.", attempt)
        raise ExhaustedKeySpaceError(
            f"No unique key of length {length} after {self._max_attempts} attempts"
        )


# ---------------------------------------------------------------------------
# KeyService
# ---------------------------------------------------------------------------


class KeyService:
    """Key lifecycle (``active -> used | expired``) plus the sales counter.

    The counter (``keys_sold_count`` against ``keys_total_limit``) lives in
    the settings table so it survives restarts.
    """

    def __init__(
        self,
        store: Store,
        generator: KeyGenerator | None = None,
        key_length: int = DEFAULT_KEY_LENGTH,
        default_limit: int = DEFAULT_KEYS_LIMIT,
    ) -> None:
        self._store = store
        self._generator = generator or KeyGenerator(store)
        self._key_length = key_length
        self._default_limit = default_limit
        self._counter_lock = asyncio.Lock()
        self._issue_lock = asyncio.Lock()

    # -- lifecycle --------------------------------------------------------------

    async def issue(
        self,
        plan_type: str,
        duration_type: str,
        created_by: str,
    ) -> AccessKey:
        """Generate, persist and return a new active key."""
        duration = DurationType(duration_type)
        # Serialized so two issuers cannot both pass the uniqueness check
        # with the same candidate before either inserts.
        async with self._issue_lock:
            key_value = await self._generator.generate_unique(self._key_length)
            now = utcnow()
            key = AccessKey(
                key_value=key_value,
                plan_type=plan_type,
                duration_type=duration.value,
                expires_at=expiry_for(duration.value, now),
                created_by=created_by,
                created_at=now,
            )
            await self._store.insert_key(key)
        logger.info("Issued %s/%s key for %s.", plan_type, duration.value, created_by)
        return key.copy()

    async def get(self, key_value: str) -> AccessKey:
        key = await self._store.fetch_key(key_value)
        if key is None:
            raise NotFoundError(f"Key {key_value} not found")
        return key

    async def list(self, status: KeyStatus | None = None) -> list[AccessKey]:
        return await self._store.list_keys(status)

    async def redeem(self, key_value: str, consumer_id: str) -> AccessKey:
        """Mark an active key as used by ``consumer_id``.

        Expired-but-unswept keys are expired on the spot and rejected.
        """
        key = await self.get(key_value)
        if key.status != KeyStatus.ACTIVE:
            raise InvalidTransitionError(
                f"Key {key_value} is {key.status.value}",
                current=key.status.value, target=KeyStatus.USED.value,
            )
        now = utcnow()
        updated = key.copy()
        if key.expires_at is not None and key.expires_at < now:
            updated.status = KeyStatus.EXPIRED
            await self._store.update_key(updated, KeyStatus.ACTIVE)
            raise InvalidTransitionError(
                f"Key {key_value} has expired",
                current=KeyStatus.EXPIRED.value, target=KeyStatus.USED.value,
            )

        updated.status = KeyStatus.USED
        updated.used_by = consumer_id
        updated.used_at = now
        if not await self._store.update_key(updated, KeyStatus.ACTIVE):
            raise InvalidTransitionError(
                f"Key {key_value} was redeemed concurrently",
                current=None, target=KeyStatus.USED.value,
            )
        logger.info("Key %s redeemed by %s.", key_value, consumer_id)
        return updated

    async def delete(self, key_value: str, actor: str) -> None:
        """Remove a key whatever its status. Raises ``NotFoundError`` if absent."""
        if not await self._store.delete_key(key_value):
            raise NotFoundError(f"Key {key_value} not found")
        logger.warning("Key %s deleted by %s.", key_value, actor)

    async def sweep_expired(self, now: datetime | None = None) -> list[AccessKey]:
        """Move every overdue active key to ``expired``."""
        expired = await self._store.expire_keys(now or utcnow())
        if expired:
            logger.info("%d key(s) marked as expired.", len(expired))
        return expired

    # -- sales counter ------------------------------------------------------------

    async def _read_int(self, name: str, default: int) -> int:
        setting = await self._store.get_setting(name)
        if setting is None:
            return default
        try:
            return int(setting.value)
        except ValueError:
            logger.warning("Setting %s holds a non-integer value; using %d.", name, default)
            return default

    async def _write_int(self, name: str, value: int, updated_by: str | None) -> None:
        await self._store.set_setting(
            Setting(key=name, value=str(value), updated_by=updated_by, updated_at=utcnow())
        )

    async def counter(self) -> dict[str, Any]:
        limit = await self._read_int(KEYS_LIMIT_SETTING, self._default_limit)
        sold = await self._read_int(KEYS_SOLD_SETTING, 0)
        return {
            "total_limit": limit,
            "sold_count": sold,
            "available": max(limit - sold, 0),
        }

    async def has_keys_available(self) -> bool:
        status = await self.counter()
        return status["available"] > 0

    async def increment_sold(self, updated_by: str | None = None) -> dict[str, Any]:
        async with self._counter_lock:
            sold = await self._read_int(KEYS_SOLD_SETTING, 0) + 1
            await self._write_int(KEYS_SOLD_SETTING, sold, updated_by)
        status = await self.counter()
        logger.info("Keys sold: %d/%d.", status["sold_count"], status["total_limit"])
        return status

    async def set_limit(self, limit: int, updated_by: str | None = None) -> dict[str, Any]:
        if limit < 0:
            raise ValueError(f"limit must be non-negative, got {limit}")
        async with self._counter_lock:
            await self._write_int(KEYS_LIMIT_SETTING, limit, updated_by)
        return await self.counter()

    async def reset_sold(self, updated_by: str | None = None) -> dict[str, Any]:
        async with self._counter_lock:
            await self._write_int(KEYS_SOLD_SETTING, 0, updated_by)
        return await self.counter()
