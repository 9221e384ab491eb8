"""Log of guild joins for the dashboard's new-member view.

A principal has at most one row; joining again refreshes the profile
fields and ``joined_at`` so the member resurfaces at the top.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from salesbot.constants import DEFAULT_MEMBER_PAGE_SIZE, DEFAULT_RECENT_MEMBER_DAYS
from salesbot.models import NewMember, utcnow

if TYPE_CHECKING:
    from salesbot.store import Store

logger = logging.getLogger(__name__)


def _aware(value: datetime | None) -> datetime | None:
    # Naive timestamps from clients are taken as UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class MemberLog:
    def __init__(self, store: Store) -> None:
        self._store = store

    async def record_join(
        self,
        principal_id: str,
        username: str,
        display_name: str | None = None,
        avatar_url: str | None = None,
        joined_at: datetime | None = None,
        account_created_at: datetime | None = None,
        guild_id: str | None = None,
        guild_name: str | None = None,
    ) -> NewMember:
        if not principal_id:
            raise ValueError("principal_id is required")
        member = NewMember(
            principal_id=str(principal_id),
            username=username,
            display_name=display_name,
            avatar_url=avatar_url,
            joined_at=_aware(joined_at) or utcnow(),
            account_created_at=_aware(account_created_at),
            guild_id=guild_id,
            guild_name=guild_name,
        )
        await self._store.upsert_member(member)
        logger.info("Recorded guild join for %s (%s).", username, member.principal_id)
        return member

    async def list(
        self, limit: int = DEFAULT_MEMBER_PAGE_SIZE, offset: int = 0
    ) -> list[NewMember]:
        """One page of members, most recent join first."""
        if limit < 0 or offset < 0:
            raise ValueError(f"limit and offset must be non-negative, got {limit}/{offset}")
        return await self._store.list_members(limit, offset)

    async def count(self) -> int:
        return await self._store.count_members()

    async def recent(self, days: int = DEFAULT_RECENT_MEMBER_DAYS) -> list[NewMember]:
        if days < 0:
            raise ValueError(f"days must be non-negative, got {days}")
        return await self._store.list_members_since(utcnow() - timedelta(days=days))
