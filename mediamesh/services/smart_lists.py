"""Rule-derived list membership."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from datetime import datetime, timedelta
from typing import Literal

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..errors import InvalidState, MediaMeshError, StorageError
from ..models import SYSTEM_ACTOR, ListContainer, SmartCriteria
from ..repositories import CatalogRepository, storage_scope
from .catalog_query import CatalogQuery
from .list_engine import ListEngine

logger = logging.getLogger(__name__)


class SmartListEvaluator:
    """Re-derives smart list membership from stored criteria.

    A refresh fully replaces the membership: items added by hand do not
    survive it.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        engine: ListEngine,
        catalog: CatalogQuery,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._engine = engine
        self._catalog = catalog

    async def create_smart(
        self,
        owner_id: int,
        title: str,
        description: str | None,
        criteria: SmartCriteria,
        *,
        kind: Literal["playlist", "collection"] = "playlist",
    ) -> ListContainer:
        """Create a smart list and populate it right away."""

        container = await self._engine.create(
            owner_id, title, description, kind=kind, smart_criteria=criteria
        )
        try:
            return await self.refresh(container.id, owner_id)
        except MediaMeshError as exc:
            logger.warning(
                "Failed to initially populate smart list %s: %s", container.id, exc
            )
            return container

    async def update_criteria(
        self, list_id: int, criteria: SmartCriteria, actor: int
    ) -> ListContainer:
        updated = await self._engine.update(list_id, actor, smart_criteria=criteria)
        try:
            return await self.refresh(list_id, actor)
        except MediaMeshError as exc:
            logger.warning(
                "Failed to refresh smart list %s after criteria update: %s",
                list_id,
                exc,
            )
            return updated

    async def refresh(self, list_id: int, actor: int) -> ListContainer:
        """Recompute membership; the list is untouched if the query fails."""

        container = await self._engine.get(list_id, actor)
        data = container.list_data
        if not data.is_smart or data.smart_criteria is None:
            raise InvalidState("Not a smart list")

        criteria = data.smart_criteria
        limit = criteria.limit or self._settings.smart_list_item_limit
        try:
            item_ids = await asyncio.wait_for(
                self._catalog.search(criteria, limit=limit),
                timeout=self._settings.smart_refresh_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("Catalog query for smart list %s timed out", list_id)
            raise StorageError(
                "Catalog query timed out; the list was not modified"
            ) from exc

        refreshed = await self._engine.apply_refresh(list_id, item_ids[:limit], actor)
        logger.info(
            "Smart list %s refreshed with %s items",
            list_id,
            refreshed.list_data.item_count,
        )
        return refreshed

    async def refresh_due(self, now: datetime | None = None) -> list[int]:
        """Refresh, as the system actor, every smart list past its interval."""

        interval = self._settings.smart_refresh_interval_seconds
        if interval <= 0:
            return []
        cutoff = (now or datetime.utcnow()) - timedelta(seconds=interval)
        async with storage_scope(self._session_factory) as session:
            smart_lists = await CatalogRepository(session).find_smart_lists()

        refreshed: list[int] = []
        for container in smart_lists:
            last = container.list_data.auto_update_time
            if last is not None and last > cutoff:
                continue
            try:
                await self.refresh(container.id, SYSTEM_ACTOR)
            except MediaMeshError as exc:
                logger.warning("Scheduled refresh of list %s failed: %s", container.id, exc)
                continue
            refreshed.append(container.id)
        return refreshed


class SmartListScheduler:
    """Background loop that periodically triggers ``refresh_due``."""

    def __init__(self, evaluator: SmartListEvaluator, *, poll_seconds: float = 60):
        self._evaluator = evaluator
        self._poll_seconds = poll_seconds
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._poll_seconds)
            try:
                await self._evaluator.refresh_due()
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Scheduled smart list refresh failed: %s", exc)
