"""Staff roster — who currently holds a staff-capable role.

Read through to the users table on every call. Membership can change between
two reports, so nothing is cached.
"""
from __future__ import annotations

from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from src.db.user_tables import UserRow
from src.errors import StorageFailure
from src.models.moderation import STAFF_ROLES


class StaffRoster(Protocol):
    async def staff_ids(self) -> list[str]: ...


class DbStaffRoster:
    """Active users whose role is admin, moderator or staff."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def staff_ids(self) -> list[str]:
        query = (
            select(UserRow.id)
            .where(
                UserRow.role.in_([r.value for r in STAFF_ROLES]),
                UserRow.is_active.is_(True),
            )
            .order_by(UserRow.id)
        )
        try:
            async with self._session_factory() as session:
                return list((await session.execute(query)).scalars().all())
        except SQLAlchemyError as exc:
            raise StorageFailure("Could not load staff roster") from exc
