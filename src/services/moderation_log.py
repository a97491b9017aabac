"""Append-only moderation audit trail."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.db.moderation_tables import ModerationLogRow
from src.db.tables import utcnow
from src.errors import StorageFailure
from src.models.moderation import ModerationLogEntry

logger = logging.getLogger(__name__)


class ModerationLog:
    """Writes and reads ``moderation_logs``. Rows are never updated or deleted."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def append(
        self,
        actor_id: str,
        action: str,
        *,
        target_report_id: Optional[str] = None,
        target_user_id: Optional[str] = None,
        description: Optional[str] = None,
        session: Optional[AsyncSession] = None,
    ) -> ModerationLogEntry:
        """Record one action. Pass ``session`` to join a caller's open transaction."""
        row = ModerationLogRow(
            actor_id=actor_id,
            action=getattr(action, "value", action),
            target_report_id=target_report_id,
            target_user_id=target_user_id,
            description=description,
            created_at=utcnow(),
        )
        if session is not None:
            session.add(row)
            await session.flush()
            return ModerationLogEntry.model_validate(row)

        try:
            async with self._session_factory() as own:
                async with own.begin():
                    own.add(row)
                    await own.flush()
                    entry = ModerationLogEntry.model_validate(row)
        except SQLAlchemyError as exc:
            logger.error("Failed to append moderation log entry %s by %s", row.action, actor_id, exc_info=True)
            raise StorageFailure("Could not write moderation log") from exc
        return entry

    def _window(self, query, since: Optional[datetime], until: Optional[datetime]):
        if since:
            query = query.where(ModerationLogRow.created_at >= since)
        if until:
            query = query.where(ModerationLogRow.created_at < until)
        return query

    async def list(
        self,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        actor_id: Optional[str] = None,
        action: Optional[str] = None,
        target_report_id: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> list[ModerationLogEntry]:
        query = self._window(select(ModerationLogRow), since, until)
        if actor_id:
            query = query.where(ModerationLogRow.actor_id == actor_id)
        if action:
            query = query.where(ModerationLogRow.action == action)
        if target_report_id:
            query = query.where(ModerationLogRow.target_report_id == target_report_id)
        query = query.order_by(ModerationLogRow.created_at.desc()).offset(offset).limit(limit)
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(query)).scalars().all()
        except SQLAlchemyError as exc:
            raise StorageFailure("Could not read moderation log") from exc
        return [ModerationLogEntry.model_validate(r) for r in rows]

    async def count_by_action(
        self, since: Optional[datetime] = None, until: Optional[datetime] = None,
    ) -> dict[str, int]:
        query = self._window(
            select(ModerationLogRow.action, func.count(ModerationLogRow.id)).group_by(ModerationLogRow.action),
            since, until,
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(query)).all()
        except SQLAlchemyError as exc:
            raise StorageFailure("Could not read moderation log") from exc
        return {row[0]: row[1] for row in rows}
