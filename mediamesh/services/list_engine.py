"""Ordered, journaled and permission-checked list membership."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, Literal, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..errors import InvalidState, NotFound, PermissionDenied
from ..models import (
    LIST_CONTENT_TYPES,
    ChangeKind,
    ChangeRecord,
    ListContainer,
    ListEntry,
    ListPayload,
    SmartCriteria,
)
from ..repositories import CatalogRepository, record_to_item, storage_scope
from .ledger import ChangeLedger
from .permissions import PermissionGuard

logger = logging.getLogger(__name__)

ChangeSet = list[tuple[int, ChangeKind]]
Mutator = Callable[[ListContainer, CatalogRepository], Awaitable[ChangeSet]]


class ListEngine:
    """Maintains list membership with contiguous positions and an audit trail.

    Every mutation is a read-modify-write inside one session: the entry edit,
    position renumbering, item count and ledger rows commit together or not at
    all. Writers to the same list are serialised by a per-list lock, and the
    ``version`` column rejects writes based on a stale read from elsewhere.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        guard: PermissionGuard,
        ledger: ChangeLedger,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._guard = guard
        self._ledger = ledger
        self._locks: dict[int, asyncio.Lock] = {}
        self._lock_users: dict[int, int] = {}

    async def create(
        self,
        owner_id: int,
        title: str,
        description: str | None = None,
        *,
        kind: Literal["playlist", "collection"] = "playlist",
        is_public: bool = False,
        smart_criteria: SmartCriteria | None = None,
    ) -> ListContainer:
        clean_title = (title or "").strip()
        if not clean_title:
            raise InvalidState("A list title is required")
        if kind not in LIST_CONTENT_TYPES:
            raise InvalidState(f"Unsupported list type {kind!r}")

        now = datetime.utcnow()
        payload = ListPayload(
            kind=kind,
            description=description,
            owner_id=owner_id,
            is_public=is_public,
            last_modified=now,
            modified_by=owner_id,
            is_smart=smart_criteria is not None,
            smart_criteria=smart_criteria,
            auto_update_time=None,
        )
        async with storage_scope(self._session_factory) as session:
            record = await CatalogRepository(session).create(
                content_type=kind,
                title=clean_title,
                payload=payload.model_dump(mode="json"),
                owner_id=owner_id,
            )
            await session.commit()
            container = record_to_item(record)

        logger.info(
            "Created %s%s %s for user %s",
            "smart " if payload.is_smart else "",
            kind,
            container.id,
            owner_id,
        )
        return container

    async def get(self, list_id: int, actor: int) -> ListContainer:
        async with storage_scope(self._session_factory) as session:
            container = await self._load(CatalogRepository(session), list_id)
            await self._guard.ensure_read(actor, container, session=session)
        return container

    async def lists_for_owner(
        self, owner_id: int, *, limit: int = 50, offset: int = 0
    ) -> list[ListContainer]:
        limit = max(1, min(limit, self._settings.list_page_size_max))
        async with storage_scope(self._session_factory) as session:
            return await CatalogRepository(session).find_by_owner(
                owner_id, limit=limit, offset=max(0, offset)
            )

    async def shared_with(self, user_id: int) -> list[ListContainer]:
        """Return lists owned by someone else that ``user_id`` collaborates on."""

        async with storage_scope(self._session_factory) as session:
            lists = await CatalogRepository(session).lists_shared_with(user_id)
        return [item for item in lists if item.list_data.owner_id != user_id]

    async def entries(
        self, list_id: int, actor: int, *, page: int = 0, size: int = 50
    ) -> list[ListEntry]:
        container = await self.get(list_id, actor)
        size = min(size, self._settings.list_page_size_max)
        return container.list_data.page(page, size)

    async def history(
        self, list_id: int, actor: int, *, item_id: int | None = None
    ) -> list[ChangeRecord]:
        await self.get(list_id, actor)
        return await self._ledger.history(list_id, item_id=item_id)

    async def validate(self, list_id: int, actor: int) -> list[str]:
        container = await self.get(list_id, actor)
        return container.list_data.validate_items()

    async def add_item(self, list_id: int, item_id: int, actor: int) -> ListContainer:
        async def mutate(container: ListContainer, repository: CatalogRepository) -> ChangeSet:
            data = container.list_data
            if item_id == container.id:
                raise InvalidState("A list cannot contain itself")
            if data.find(item_id) is not None:
                raise InvalidState(f"Item {item_id} is already in this list")
            target = await repository.get(item_id)
            if target is None:
                raise NotFound(f"Item {item_id} not found")
            if target.is_list and not await self._guard.can_read(
                actor, target, session=repository.session
            ):
                raise PermissionDenied(f"User {actor} cannot read list {item_id}")
            data.items.append(
                ListEntry(
                    item_id=item_id,
                    position=data.item_count,
                    last_changed=datetime.utcnow(),
                )
            )
            return [(item_id, ChangeKind.ADD)]

        container = await self._mutate(list_id, actor, mutate)
        logger.info("Item %s added to list %s by %s", item_id, list_id, actor)
        return container

    async def remove_item(
        self, list_id: int, item_id: int, actor: int
    ) -> ListContainer:
        async def mutate(container: ListContainer, _: CatalogRepository) -> ChangeSet:
            data = container.list_data
            index = data.find(item_id)
            if index is None:
                raise NotFound(f"Item {item_id} not found in this list")
            self._drop_entry(data, index)
            return [(item_id, ChangeKind.REMOVE)]

        container = await self._mutate(list_id, actor, mutate)
        logger.info("Item %s removed from list %s by %s", item_id, list_id, actor)
        return container

    async def remove_item_at_position(
        self, list_id: int, item_id: int, position: int, actor: int
    ) -> ListContainer:
        """Remove ``item_id`` only if it still sits at ``position``."""

        async def mutate(container: ListContainer, _: CatalogRepository) -> ChangeSet:
            data = container.list_data
            index = data.find(item_id)
            if index is None:
                raise NotFound(f"Item {item_id} not found in this list")
            if data.items[index].position != position:
                raise InvalidState(
                    f"Position mismatch: item {item_id} is no longer at position {position}"
                )
            self._drop_entry(data, index)
            return [(item_id, ChangeKind.REMOVE)]

        container = await self._mutate(list_id, actor, mutate)
        logger.info(
            "Item %s removed from position %s of list %s by %s",
            item_id,
            position,
            list_id,
            actor,
        )
        return container

    async def reorder(
        self, list_id: int, ordered_item_ids: Sequence[int], actor: int
    ) -> ListContainer:
        async def mutate(container: ListContainer, _: CatalogRepository) -> ChangeSet:
            data = container.list_data
            requested = list(ordered_item_ids)
            current = data.item_ids()
            if len(requested) != len(current) or set(requested) != set(current):
                raise InvalidState(
                    "Reorder set mismatch: supply every item in the list exactly once"
                )
            by_id = {entry.item_id: entry for entry in data.items}
            now = datetime.utcnow()
            reordered: list[ListEntry] = []
            for position, item_id in enumerate(requested):
                entry = by_id[item_id]
                if entry.position != position:
                    entry.position = position
                    entry.last_changed = now
                reordered.append(entry)
            data.items = reordered
            return [(item_id, ChangeKind.REORDER) for item_id in requested]

        container = await self._mutate(list_id, actor, mutate)
        logger.info("List %s reordered by %s", list_id, actor)
        return container

    async def replace_all(
        self, list_id: int, new_item_ids: Sequence[int], actor: int
    ) -> ListContainer:
        async def mutate(container: ListContainer, repository: CatalogRepository) -> ChangeSet:
            return await self._replace_entries(
                container, repository, new_item_ids, actor, strict=True
            )

        container = await self._mutate(list_id, actor, mutate)
        logger.info(
            "List %s replaced by %s with %s items",
            list_id,
            actor,
            container.list_data.item_count,
        )
        return container

    async def update(
        self,
        list_id: int,
        actor: int,
        *,
        title: str | None = None,
        description: str | None = None,
        is_public: bool | None = None,
        item_ids: Sequence[int] | None = None,
        smart_criteria: SmartCriteria | None = None,
    ) -> ListContainer:
        """Update list metadata; entries are kept unless ``item_ids`` is given."""

        async def mutate(container: ListContainer, repository: CatalogRepository) -> ChangeSet:
            data = container.list_data
            if title is not None:
                clean_title = title.strip()
                if not clean_title:
                    raise InvalidState("A list title is required")
                container.title = clean_title
            if description is not None:
                data.description = description
            if is_public is not None:
                data.is_public = is_public
            if smart_criteria is not None:
                if not data.is_smart:
                    raise InvalidState("Not a smart list")
                data.smart_criteria = smart_criteria
            changes: ChangeSet = [(container.id, ChangeKind.UPDATE)]
            if item_ids is not None:
                changes.extend(
                    await self._replace_entries(
                        container, repository, item_ids, actor, strict=True
                    )
                )
            return changes

        container = await self._mutate(list_id, actor, mutate)
        logger.info("List %s updated by %s", list_id, actor)
        return container

    async def delete(self, list_id: int, actor: int) -> None:
        """Delete a list and strip it from every list that contains it."""

        async with self._list_lock(list_id):
            async with storage_scope(self._session_factory) as session:
                repository = CatalogRepository(session)
                container = await self._load(repository, list_id)
                await self._guard.ensure_delete(actor, container, session=session)
                parents = await repository.find_lists_containing(list_id)
                for parent in parents:
                    data = parent.list_data
                    self._drop_entry(data, data.find(list_id))
                    data.normalize_positions()
                    data.last_modified = datetime.utcnow()
                    data.modified_by = actor
                    await repository.update(parent, expected_version=parent.version)
                    self._ledger.append(
                        session, parent.id, list_id, actor, ChangeKind.REMOVE
                    )
                await repository.delete_collaborators(list_id)
                await repository.delete(list_id)
                await session.commit()
        logger.info(
            "List %s deleted by %s (removed from %s lists)",
            list_id,
            actor,
            len(parents),
        )

    async def apply_refresh(
        self, list_id: int, item_ids: Sequence[int], actor: int
    ) -> ListContainer:
        """Swap in a smart list's derived membership.

        Refresh is a read-triggered recomputation, so only read access is
        required. Unknown ids and the list itself are dropped from the result
        rather than failing the refresh.
        """

        async def mutate(container: ListContainer, repository: CatalogRepository) -> ChangeSet:
            data = container.list_data
            if not data.is_smart:
                raise InvalidState("Not a smart list")
            changes = await self._replace_entries(
                container, repository, item_ids, actor, strict=False
            )
            data.auto_update_time = datetime.utcnow()
            return changes

        return await self._mutate(list_id, actor, mutate, access="read")

    async def _mutate(
        self,
        list_id: int,
        actor: int,
        mutate: Mutator,
        *,
        access: Literal["read", "write"] = "write",
    ) -> ListContainer:
        async with self._list_lock(list_id):
            async with storage_scope(self._session_factory) as session:
                repository = CatalogRepository(session)
                container = await self._load(repository, list_id)
                if access == "write":
                    await self._guard.ensure_write(actor, container, session=session)
                else:
                    await self._guard.ensure_read(actor, container, session=session)

                read_version = container.version
                changes = await mutate(container, repository)

                data = container.list_data
                data.normalize_positions()
                data.last_modified = datetime.utcnow()
                data.modified_by = actor
                new_version = await repository.update(
                    container, expected_version=read_version
                )
                self._ledger.append_many(session, list_id, actor, changes)
                await session.commit()

        container.version = new_version
        return container

    async def _replace_entries(
        self,
        container: ListContainer,
        repository: CatalogRepository,
        new_item_ids: Sequence[int],
        actor: int,
        *,
        strict: bool,
    ) -> ChangeSet:
        data = container.list_data
        ordered = list(dict.fromkeys(new_item_ids))
        if container.id in ordered:
            if strict:
                raise InvalidState("A list cannot contain itself")
            ordered.remove(container.id)

        known = await repository.existing_ids(ordered)
        missing = [item_id for item_id in ordered if item_id not in known]
        if missing:
            if strict:
                raise NotFound(
                    "Items not found: " + ", ".join(str(item_id) for item_id in missing)
                )
            logger.warning(
                "Dropping %s unknown items from list %s", len(missing), container.id
            )
            ordered = [item_id for item_id in ordered if item_id in known]

        hidden = [
            nested.id
            for nested in await repository.find_lists_among(ordered)
            if not await self._guard.can_read(actor, nested, session=repository.session)
        ]
        if hidden:
            if strict:
                raise PermissionDenied(
                    f"User {actor} cannot read lists: "
                    + ", ".join(str(item_id) for item_id in sorted(hidden))
                )
            logger.warning(
                "Dropping %s unreadable lists from list %s", len(hidden), container.id
            )
            ordered = [item_id for item_id in ordered if item_id not in hidden]

        previous = {entry.item_id: entry for entry in data.items}
        now = datetime.utcnow()
        entries: list[ListEntry] = []
        changes: ChangeSet = []
        for position, item_id in enumerate(ordered):
            prior = previous.get(item_id)
            if prior is not None and prior.position == position:
                entries.append(prior)
            else:
                entries.append(
                    ListEntry(item_id=item_id, position=position, last_changed=now)
                )
            changes.append(
                (item_id, ChangeKind.UPDATE if prior is not None else ChangeKind.ADD)
            )
        retained = set(ordered)
        changes.extend(
            (item_id, ChangeKind.REMOVE)
            for item_id in previous
            if item_id not in retained
        )
        data.items = entries
        return changes

    @asynccontextmanager
    async def _list_lock(self, list_id: int) -> AsyncIterator[None]:
        # A lock is dropped once nobody holds or waits on it.
        lock = self._locks.setdefault(list_id, asyncio.Lock())
        self._lock_users[list_id] = self._lock_users.get(list_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[list_id] - 1
            if remaining:
                self._lock_users[list_id] = remaining
            else:
                del self._lock_users[list_id]
                self._locks.pop(list_id, None)

    @staticmethod
    def _drop_entry(data: ListPayload, index: int) -> None:
        removed = data.items.pop(index)
        now = datetime.utcnow()
        for entry in data.items:
            if entry.position > removed.position:
                entry.last_changed = now

    @staticmethod
    async def _load(repository: CatalogRepository, list_id: int) -> ListContainer:
        container = await repository.get(list_id)
        if container is None or not container.is_list:
            raise NotFound(f"List {list_id} not found")
        return container
