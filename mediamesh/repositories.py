"""Persistence contract for canonical items, collaborators and accounts."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db_models import (
    AccountRecord,
    CanonicalItemRecord,
    ClientSyncMappingRecord,
    CollaboratorRecord,
    ExternalReferenceRecord,
)
from .errors import Conflict, StorageError
from .models import (
    LIST_CONTENT_TYPES,
    CanonicalItem,
    ClientSyncMapping,
    Collaborator,
    ExternalReference,
    PermissionLevel,
    SyncSource,
    SyncStatus,
    build_payload,
)
from .utils import normalize_title

logger = logging.getLogger(__name__)


@asynccontextmanager
async def storage_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Open a session and surface driver failures as ``StorageError``."""

    try:
        async with session_factory() as session:
            yield session
    except SQLAlchemyError as exc:
        logger.error("Storage operation failed: %s", exc)
        raise StorageError("The catalog store is unavailable; retry later") from exc


def record_to_item(record: CanonicalItemRecord) -> CanonicalItem:
    return CanonicalItem(
        id=record.id,
        content_type=record.content_type,  # type: ignore[arg-type]
        title=record.title,
        release_year=record.release_year,
        payload=build_payload(record.content_type, record.payload),
        external_refs=[
            ExternalReference(source=ref.source, id=ref.external_id)
            for ref in record.external_references
        ],
        sync_mappings=[
            ClientSyncMapping(
                client_id=mapping.client_id,
                client_type=mapping.client_type,
                item_id=mapping.source_item_id,
                sync_status=SyncStatus(mapping.sync_status),
                last_synced=mapping.last_synced,
            )
            for mapping in record.sync_mappings
        ],
        owner_id=record.owner_id,
        version=record.version,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _collaborator(record: CollaboratorRecord) -> Collaborator:
    return Collaborator(
        list_id=record.list_id,
        user_id=record.user_id,
        permission=PermissionLevel(record.permission),
        shared_by=record.shared_by,
        shared_at=record.shared_at,
    )


class CatalogRepository:
    """Repository bound to a single session (one unit of work)."""

    def __init__(self, session: AsyncSession):
        self._session = session

    @property
    def session(self) -> AsyncSession:
        return self._session

    async def get_record(self, item_id: int) -> CanonicalItemRecord | None:
        return await self._session.get(CanonicalItemRecord, item_id)

    async def get(self, item_id: int) -> CanonicalItem | None:
        record = await self.get_record(item_id)
        if record is None:
            return None
        return record_to_item(record)

    async def create(
        self,
        *,
        content_type: str,
        title: str,
        payload: dict[str, object],
        release_year: int | None = None,
        owner_id: int | None = None,
        external_refs: Iterable[ExternalReference] = (),
    ) -> CanonicalItemRecord:
        now = datetime.utcnow()
        record = CanonicalItemRecord(
            content_type=content_type,
            title=title,
            normalized_title=normalize_title(title),
            release_year=release_year,
            payload=payload,
            owner_id=owner_id,
            version=1,
            created_at=now,
            updated_at=now,
            external_references=[
                ExternalReferenceRecord(
                    source=ref.source, external_id=ref.id, created_at=now
                )
                for ref in external_refs
            ],
            sync_mappings=[],
        )
        self._session.add(record)
        await self._session.flush()
        return record

    async def update(self, item: CanonicalItem, *, expected_version: int) -> int:
        """Persist title/payload changes if the stored version still matches.

        Returns the new version number. Raises ``Conflict`` when another
        writer committed first.
        """

        new_version = expected_version + 1
        result = await self._session.execute(
            update(CanonicalItemRecord)
            .where(
                CanonicalItemRecord.id == item.id,
                CanonicalItemRecord.version == expected_version,
            )
            .values(
                title=item.title,
                normalized_title=normalize_title(item.title),
                release_year=item.release_year,
                payload=item.payload.model_dump(mode="json"),
                version=new_version,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise Conflict(
                f"Stale list state for {item.id}; reload the list and retry"
            )
        return new_version

    async def delete(self, item_id: int) -> bool:
        record = await self.get_record(item_id)
        if record is None:
            return False
        await self._session.delete(record)
        await self._session.flush()
        return True

    async def find_by_owner(
        self,
        owner_id: int,
        *,
        limit: int,
        offset: int = 0,
        content_types: Sequence[str] = LIST_CONTENT_TYPES,
    ) -> list[CanonicalItem]:
        stmt = (
            select(CanonicalItemRecord)
            .where(
                CanonicalItemRecord.owner_id == owner_id,
                CanonicalItemRecord.content_type.in_(content_types),
            )
            .order_by(CanonicalItemRecord.id)
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return [record_to_item(record) for record in result.scalars().all()]

    async def find_record_by_external_reference(
        self, source: str, external_id: str
    ) -> CanonicalItemRecord | None:
        stmt = (
            select(CanonicalItemRecord)
            .join(ExternalReferenceRecord)
            .where(
                ExternalReferenceRecord.source == source,
                ExternalReferenceRecord.external_id == external_id,
            )
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def find_by_external_reference(
        self, source: str, external_id: str
    ) -> CanonicalItem | None:
        record = await self.find_record_by_external_reference(source, external_id)
        return record_to_item(record) if record is not None else None

    async def find_records_by_title(
        self, content_type: str, normalized: str, release_year: int
    ) -> list[CanonicalItemRecord]:
        stmt = (
            select(CanonicalItemRecord)
            .where(
                CanonicalItemRecord.content_type == content_type,
                CanonicalItemRecord.normalized_title == normalized,
                CanonicalItemRecord.release_year == release_year,
            )
            .order_by(CanonicalItemRecord.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def reference_owner(self, source: str, external_id: str) -> int | None:
        stmt = select(ExternalReferenceRecord.item_id).where(
            ExternalReferenceRecord.source == source,
            ExternalReferenceRecord.external_id == external_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    def attach_reference(
        self, record: CanonicalItemRecord, reference: ExternalReference
    ) -> None:
        record.external_references.append(
            ExternalReferenceRecord(
                source=reference.source,
                external_id=reference.id,
                created_at=datetime.utcnow(),
            )
        )

    def upsert_sync_mapping(
        self,
        record: CanonicalItemRecord,
        source: SyncSource,
        *,
        status: SyncStatus = SyncStatus.SUCCESS,
    ) -> ClientSyncMappingRecord:
        """Attach or refresh the mapping for ``source`` on ``record``."""

        now = datetime.utcnow()
        for mapping in record.sync_mappings:
            if mapping.client_id == source.client_id:
                mapping.client_type = source.client_type
                mapping.source_item_id = source.item_id
                mapping.sync_status = status.value
                mapping.last_synced = now
                return mapping
        mapping = ClientSyncMappingRecord(
            client_id=source.client_id,
            client_type=source.client_type,
            source_item_id=source.item_id,
            sync_status=status.value,
            last_synced=now,
        )
        record.sync_mappings.append(mapping)
        return mapping

    async def existing_ids(self, item_ids: Iterable[int]) -> set[int]:
        wanted = set(item_ids)
        if not wanted:
            return set()
        stmt = select(CanonicalItemRecord.id).where(CanonicalItemRecord.id.in_(wanted))
        result = await self._session.execute(stmt)
        return {row[0] for row in result.all()}

    async def count_items(self) -> int:
        result = await self._session.execute(
            select(func.count()).select_from(CanonicalItemRecord)
        )
        return int(result.scalar_one())

    async def get_collaborator(
        self, list_id: int, user_id: int
    ) -> Collaborator | None:
        stmt = select(CollaboratorRecord).where(
            CollaboratorRecord.list_id == list_id,
            CollaboratorRecord.user_id == user_id,
        )
        result = await self._session.execute(stmt)
        record = result.scalar_one_or_none()
        return _collaborator(record) if record is not None else None

    async def list_collaborators(self, list_id: int) -> list[Collaborator]:
        stmt = (
            select(CollaboratorRecord)
            .where(CollaboratorRecord.list_id == list_id)
            .order_by(CollaboratorRecord.user_id)
        )
        result = await self._session.execute(stmt)
        return [_collaborator(record) for record in result.scalars().all()]

    async def upsert_collaborator(
        self,
        list_id: int,
        user_id: int,
        permission: PermissionLevel,
        shared_by: int,
    ) -> Collaborator:
        now = datetime.utcnow()
        stmt = select(CollaboratorRecord).where(
            CollaboratorRecord.list_id == list_id,
            CollaboratorRecord.user_id == user_id,
        )
        result = await self._session.execute(stmt)
        record = result.scalar_one_or_none()
        if record is None:
            record = CollaboratorRecord(
                list_id=list_id,
                user_id=user_id,
                permission=permission.value,
                shared_by=shared_by,
                shared_at=now,
            )
            self._session.add(record)
        else:
            record.permission = permission.value
            record.shared_by = shared_by
            record.shared_at = now
        await self._session.flush()
        return _collaborator(record)

    async def delete_collaborator(self, list_id: int, user_id: int) -> bool:
        result = await self._session.execute(
            delete(CollaboratorRecord).where(
                CollaboratorRecord.list_id == list_id,
                CollaboratorRecord.user_id == user_id,
            )
        )
        return bool(result.rowcount)

    async def delete_collaborators(self, list_id: int) -> None:
        await self._session.execute(
            delete(CollaboratorRecord).where(CollaboratorRecord.list_id == list_id)
        )

    async def find_lists_among(self, item_ids: Iterable[int]) -> list[CanonicalItem]:
        """Return the list containers whose ids appear in ``item_ids``."""

        wanted = set(item_ids)
        if not wanted:
            return []
        stmt = select(CanonicalItemRecord).where(
            CanonicalItemRecord.id.in_(wanted),
            CanonicalItemRecord.content_type.in_(LIST_CONTENT_TYPES),
        )
        result = await self._session.execute(stmt)
        return [record_to_item(record) for record in result.scalars().all()]

    async def find_lists_containing(self, item_id: int) -> list[CanonicalItem]:
        # Entries live in the JSON payload, so membership is checked in Python.
        stmt = (
            select(CanonicalItemRecord)
            .where(
                CanonicalItemRecord.content_type.in_(LIST_CONTENT_TYPES),
                CanonicalItemRecord.id != item_id,
            )
            .order_by(CanonicalItemRecord.id)
        )
        result = await self._session.execute(stmt)
        containers = [record_to_item(record) for record in result.scalars().all()]
        return [
            container
            for container in containers
            if container.list_data.find(item_id) is not None
        ]

    async def find_smart_lists(self) -> list[CanonicalItem]:
        stmt = (
            select(CanonicalItemRecord)
            .where(CanonicalItemRecord.content_type.in_(LIST_CONTENT_TYPES))
            .order_by(CanonicalItemRecord.id)
        )
        result = await self._session.execute(stmt)
        return [
            record_to_item(record)
            for record in result.scalars().all()
            if (record.payload or {}).get("is_smart")
        ]

    async def lists_shared_with(self, user_id: int) -> list[CanonicalItem]:
        stmt = (
            select(CanonicalItemRecord)
            .join(
                CollaboratorRecord,
                CollaboratorRecord.list_id == CanonicalItemRecord.id,
            )
            .where(CollaboratorRecord.user_id == user_id)
            .order_by(CanonicalItemRecord.id)
        )
        result = await self._session.execute(stmt)
        return [record_to_item(record) for record in result.scalars().all()]

    async def get_role(self, user_id: int) -> str | None:
        record = await self._session.get(AccountRecord, user_id)
        return record.role if record is not None else None
