"""Ownership lookups for audiobooks."""

from collections.abc import Callable
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Entitlement
from db.session import async_session_maker


class EntitlementService(Protocol):
    """Answers whether a user owns an audiobook."""

    async def is_owned(self, user_id: str, audiobook_id: int) -> bool: ...


class SqlEntitlementService:
    """Entitlement lookups against the `entitlements` table."""

    def __init__(self, session_maker: Callable[[], AsyncSession] | None = None) -> None:
        self._session_maker = session_maker or async_session_maker

    async def is_owned(self, user_id: str, audiobook_id: int) -> bool:
        async with self._session_maker() as session:
            result = await session.execute(
                select(Entitlement.audiobook_id).where(
                    Entitlement.user_id == user_id,
                    Entitlement.audiobook_id == audiobook_id,
                )
            )
            return result.first() is not None
