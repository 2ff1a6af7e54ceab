"""Centralised read/write authorisation for lists."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..errors import InvalidState, NotFound, PermissionDenied
from ..models import (
    SYSTEM_ACTOR,
    CanonicalItem,
    Collaborator,
    PermissionLevel,
)
from ..repositories import CatalogRepository, storage_scope

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"


class PermissionGuard:
    """Decides whether a principal may read, write or administer a list.

    No other component inspects ownership or collaborator data; they ask the
    guard. Every check accepts an optional session so callers that already
    hold one can run the lookups inside their unit of work.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        self._settings = settings
        self._session_factory = session_factory

    async def is_admin(
        self, user_id: int, *, session: AsyncSession | None = None
    ) -> bool:
        if user_id == SYSTEM_ACTOR or user_id in self._settings.admin_user_ids:
            return True
        if session is not None:
            role = await CatalogRepository(session).get_role(user_id)
        else:
            async with storage_scope(self._session_factory) as own_session:
                role = await CatalogRepository(own_session).get_role(user_id)
        return role == ADMIN_ROLE

    async def can_read(
        self,
        user_id: int,
        container: CanonicalItem,
        *,
        session: AsyncSession | None = None,
    ) -> bool:
        data = container.list_data
        if user_id == data.owner_id:
            return True
        if user_id in data.shared_with:
            return True
        return await self.is_admin(user_id, session=session)

    async def can_write(
        self,
        user_id: int,
        container: CanonicalItem,
        *,
        session: AsyncSession | None = None,
    ) -> bool:
        data = container.list_data
        if user_id == data.owner_id:
            return True
        if await self.is_admin(user_id, session=session):
            return True
        if user_id not in data.shared_with:
            return False
        # The cached id set only proves membership; the level lives in the table.
        if session is not None:
            collaborator = await CatalogRepository(session).get_collaborator(
                container.id, user_id
            )
        else:
            async with storage_scope(self._session_factory) as own_session:
                collaborator = await CatalogRepository(own_session).get_collaborator(
                    container.id, user_id
                )
        return (
            collaborator is not None
            and collaborator.permission == PermissionLevel.WRITE
        )

    async def can_delete(
        self,
        user_id: int,
        container: CanonicalItem,
        *,
        session: AsyncSession | None = None,
    ) -> bool:
        if user_id == container.list_data.owner_id:
            return True
        return await self.is_admin(user_id, session=session)

    async def ensure_read(
        self,
        user_id: int,
        container: CanonicalItem,
        *,
        session: AsyncSession | None = None,
    ) -> None:
        if not await self.can_read(user_id, container, session=session):
            logger.warning("User %s denied read access to list %s", user_id, container.id)
            raise PermissionDenied("You don't have permission to view this list")

    async def ensure_write(
        self,
        user_id: int,
        container: CanonicalItem,
        *,
        session: AsyncSession | None = None,
    ) -> None:
        if not await self.can_write(user_id, container, session=session):
            logger.warning(
                "User %s denied write access to list %s", user_id, container.id
            )
            raise PermissionDenied("You don't have permission to modify this list")

    async def ensure_delete(
        self,
        user_id: int,
        container: CanonicalItem,
        *,
        session: AsyncSession | None = None,
    ) -> None:
        if not await self.can_delete(user_id, container, session=session):
            logger.warning("User %s denied deleting list %s", user_id, container.id)
            raise PermissionDenied("Only the owner can delete this list")

    async def share_with(
        self,
        owner_id: int,
        list_id: int,
        target_user_id: int,
        level: str | PermissionLevel,
    ) -> Collaborator:
        """Grant ``target_user_id`` access, updating an existing grant in place."""

        try:
            permission = PermissionLevel(level)
        except ValueError as exc:
            raise InvalidState(
                "Invalid permission level: must be 'read' or 'write'"
            ) from exc

        async with storage_scope(self._session_factory) as session:
            repository = CatalogRepository(session)
            container = await self._load_list(repository, list_id)
            data = container.list_data
            if owner_id != data.owner_id:
                logger.warning(
                    "User %s attempted to share list %s they don't own",
                    owner_id,
                    list_id,
                )
                raise PermissionDenied("Only the owner can share a list")
            if target_user_id == data.owner_id:
                raise InvalidState("The owner already has full access to this list")

            collaborator = await repository.upsert_collaborator(
                list_id, target_user_id, permission, owner_id
            )
            if target_user_id not in data.shared_with:
                data.shared_with.append(target_user_id)
                await repository.update(container, expected_version=container.version)
            await session.commit()

        logger.info(
            "List %s shared with user %s (%s)", list_id, target_user_id, permission.value
        )
        return collaborator

    async def remove_collaborator(
        self, owner_id: int, list_id: int, target_user_id: int
    ) -> None:
        """Revoke access; removing someone who has none is a no-op."""

        async with storage_scope(self._session_factory) as session:
            repository = CatalogRepository(session)
            container = await self._load_list(repository, list_id)
            data = container.list_data
            if owner_id != data.owner_id:
                logger.warning(
                    "User %s attempted to change collaborators of list %s",
                    owner_id,
                    list_id,
                )
                raise PermissionDenied("Only the owner can remove collaborators")

            removed = await repository.delete_collaborator(list_id, target_user_id)
            if target_user_id in data.shared_with:
                data.shared_with.remove(target_user_id)
                await repository.update(container, expected_version=container.version)
                removed = True
            if not removed:
                return
            await session.commit()

        logger.info("User %s removed from list %s", target_user_id, list_id)

    async def collaborators(self, user_id: int, list_id: int) -> list[Collaborator]:
        async with storage_scope(self._session_factory) as session:
            repository = CatalogRepository(session)
            container = await self._load_list(repository, list_id)
            await self.ensure_read(user_id, container, session=session)
            return await repository.list_collaborators(list_id)

    @staticmethod
    async def _load_list(repository: CatalogRepository, list_id: int) -> CanonicalItem:
        container = await repository.get(list_id)
        if container is None or not container.is_list:
            raise NotFound(f"List {list_id} not found")
        return container
