"""Allowlist of principals permitted to run privileged operations.

The store is authoritative. The in-memory set is a read-through cache
for ``is_authorized`` and is only advanced after the store confirms a
write (write-through), so a failed write never leaves a principal
cached as authorized.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from salesbot.errors import PersistenceError
from salesbot.models import AuthorizedUser, utcnow

if TYPE_CHECKING:
    from salesbot.store import Store

logger = logging.getLogger(__name__)


class AuthorizationRegistry:
    """Owner plus a store-backed set of authorized principals.

    The owner comes from configuration: always authorized, never stored,
    never removable. Policy (who may call ``add``/``remove``) is enforced
    by the caller.
    """

    def __init__(self, store: Store, owner_id: str) -> None:
        if not owner_id:
            raise ValueError("owner_id is required")
        self._store = store
        self._owner_id = str(owner_id)
        self._cache: set[str] = set()

    @property
    def owner_id(self) -> str:
        return self._owner_id

    async def load(self) -> int:
        """Prime the cache from the store. Returns the number of users loaded."""
        users = await self._store.list_users()
        self._cache = {u.principal_id for u in users if u.principal_id != self._owner_id}
        logger.info("Loaded %d authorized user(s) from store.", len(self._cache))
        return len(self._cache)

    def is_owner(self, principal_id: str) -> bool:
        return str(principal_id) == self._owner_id

    def is_authorized(self, principal_id: str) -> bool:
        principal_id = str(principal_id)
        return principal_id == self._owner_id or principal_id in self._cache

    async def add(self, principal_id: str, display_name: str = "Authorized User") -> bool:
        """Authorize a principal. False if already present or the owner.

        ``PersistenceError`` propagates and the cache is left untouched.
        """
        principal_id = str(principal_id)
        if principal_id == self._owner_id:
            return False
        user = AuthorizedUser(
            principal_id=principal_id,
            display_name=display_name,
            is_owner=False,
            authorized_at=utcnow(),
        )
        try:
            inserted = await self._store.insert_user(user)
        except PersistenceError as e:
            logger.error("Failed to authorize %s: %s", principal_id, e)
            raise
        if not inserted:
            return False
        self._cache.add(principal_id)
        logger.info("Authorized %s (%s).", principal_id, display_name)
        return True

    async def remove(self, principal_id: str) -> bool:
        """Revoke a principal. False if unknown; the owner can never be removed.

        ``PersistenceError`` propagates and the cache is left untouched.
        """
        principal_id = str(principal_id)
        if principal_id == self._owner_id:
            logger.warning("Refused to remove owner %s from the registry.", principal_id)
            return False
        try:
            deleted = await self._store.delete_user(principal_id)
        except PersistenceError as e:
            logger.error("Failed to revoke %s: %s", principal_id, e)
            raise
        if not deleted:
            return False
        self._cache.discard(principal_id)
        logger.info("Revoked authorization for %s.", principal_id)
        return True

    async def list(self) -> list[AuthorizedUser]:
        """Authorized users as stored (never from the cache)."""
        return await self._store.list_users()

    @property
    def size(self) -> int:
        """Number of cached non-owner principals."""
        return len(self._cache)
