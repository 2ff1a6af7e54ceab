"""Append-only journal of list mutations."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import ChangeRecordRow
from ..models import ChangeKind, ChangeRecord
from ..repositories import storage_scope

logger = logging.getLogger(__name__)


class ChangeLedger:
    """Records who changed what and when, keyed by entity id.

    Rows are written through the caller's session so the journal commits
    atomically with the edit that produced it. The ledger exposes no way to
    update or delete a row.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    def append(
        self,
        session: AsyncSession,
        entity_id: int,
        item_id: int,
        actor_id: int,
        change_type: ChangeKind,
        *,
        timestamp: datetime | None = None,
    ) -> ChangeRecord:
        created_at = timestamp or datetime.utcnow()
        session.add(
            ChangeRecordRow(
                entity_id=entity_id,
                item_id=item_id,
                actor_id=actor_id,
                change_type=change_type.value,
                created_at=created_at,
            )
        )
        return ChangeRecord(
            entity_id=entity_id,
            item_id=item_id,
            actor_id=actor_id,
            change_type=change_type,
            timestamp=created_at,
        )

    def append_many(
        self,
        session: AsyncSession,
        entity_id: int,
        actor_id: int,
        changes: Iterable[tuple[int, ChangeKind]],
    ) -> list[ChangeRecord]:
        timestamp = datetime.utcnow()
        return [
            self.append(
                session, entity_id, item_id, actor_id, kind, timestamp=timestamp
            )
            for item_id, kind in changes
        ]

    async def history(
        self,
        entity_id: int,
        *,
        item_id: int | None = None,
        limit: int | None = None,
    ) -> list[ChangeRecord]:
        """Return change records for an entity in the order they were written."""

        stmt = select(ChangeRecordRow).where(ChangeRecordRow.entity_id == entity_id)
        if item_id is not None:
            stmt = stmt.where(ChangeRecordRow.item_id == item_id)
        stmt = stmt.order_by(ChangeRecordRow.id)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with storage_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()
        return [
            ChangeRecord(
                entity_id=row.entity_id,
                item_id=row.item_id,
                actor_id=row.actor_id,
                change_type=ChangeKind(row.change_type),
                timestamp=row.created_at,
            )
            for row in rows
        ]
