"""Catalog query capability used to derive smart list membership."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol, get_args

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import CanonicalItemRecord
from ..errors import StorageError
from ..models import LIST_CONTENT_TYPES, ContentType, SmartCriteria
from ..repositories import storage_scope
from ..utils import normalize_title

logger = logging.getLogger(__name__)

ITEM_CONTENT_TYPES: tuple[str, ...] = tuple(
    content_type
    for content_type in get_args(ContentType)
    if content_type not in LIST_CONTENT_TYPES
)


class CatalogQuery(Protocol):
    async def search(self, criteria: SmartCriteria, *, limit: int) -> list[int]:
        """Return canonical item ids matching ``criteria`` in result order."""


class LocalCatalogQuery:
    """Evaluates criteria against the local canonical item table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def search(self, criteria: SmartCriteria, *, limit: int) -> list[int]:
        content_types = criteria.content_types or list(ITEM_CONTENT_TYPES)
        stmt = select(CanonicalItemRecord).where(
            CanonicalItemRecord.content_type.in_(content_types)
        )
        if criteria.year_min is not None:
            stmt = stmt.where(CanonicalItemRecord.release_year >= criteria.year_min)
        if criteria.year_max is not None:
            stmt = stmt.where(CanonicalItemRecord.release_year <= criteria.year_max)
        if criteria.owner_id is not None:
            stmt = stmt.where(CanonicalItemRecord.owner_id == criteria.owner_id)
        if criteria.query:
            needle = normalize_title(criteria.query)
            if needle:
                stmt = stmt.where(
                    CanonicalItemRecord.normalized_title.contains(needle, autoescape=True)
                )

        async with storage_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            records = list(result.scalars().all())

        matches = [record for record in records if self._matches_payload(record, criteria)]
        matches.sort(key=lambda record: self._sort_key(record, criteria))
        if criteria.descending:
            matches.reverse()
        return [record.id for record in matches[:limit]]

    @staticmethod
    def _matches_payload(record: CanonicalItemRecord, criteria: SmartCriteria) -> bool:
        payload: dict[str, Any] = record.payload or {}
        if criteria.genres:
            genres = {str(genre).strip().lower() for genre in payload.get("genres") or []}
            if not genres.intersection(criteria.genres):
                return False
        if criteria.rating_min is not None or criteria.rating_max is not None:
            rating = payload.get("rating")
            if rating is None:
                return False
            if criteria.rating_min is not None and rating < criteria.rating_min:
                return False
            if criteria.rating_max is not None and rating > criteria.rating_max:
                return False
        return True

    @staticmethod
    def _sort_key(record: CanonicalItemRecord, criteria: SmartCriteria) -> tuple:
        if criteria.sort_by == "year":
            return (record.release_year is None, record.release_year or 0, record.id)
        if criteria.sort_by == "rating":
            rating = (record.payload or {}).get("rating")
            return (rating is None, rating or 0.0, record.id)
        if criteria.sort_by == "added":
            return (record.created_at, record.id)
        return (record.normalized_title, record.id)


class HttpCatalogQuery:
    """Delegates criteria evaluation to a remote catalog-search service."""

    _SEARCH_PATH = "/search"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        self._client = http_client
        self._max_retries = max_retries
        self._retry_delay = retry_delay

    async def search(self, criteria: SmartCriteria, *, limit: int) -> list[int]:
        body = criteria.model_dump(mode="json", exclude_none=True)
        body["limit"] = limit

        attempt = 0
        while True:
            try:
                response = await self._client.post(self._SEARCH_PATH, json=body)
            except httpx.HTTPError as exc:
                attempt += 1
                if attempt <= self._max_retries:
                    backoff = self._backoff(attempt)
                    logger.info(
                        "Transient error talking to catalog search (%s). Retrying in %.1fs",
                        exc.__class__.__name__,
                        backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                logger.warning("Catalog search failed: %s", exc)
                raise StorageError("Catalog search is unavailable; retry later") from exc

            if 500 <= response.status_code < 600:
                attempt += 1
                if attempt <= self._max_retries:
                    backoff = self._backoff(attempt)
                    logger.info(
                        "Catalog search returned %s. Retrying in %.1fs",
                        response.status_code,
                        backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                logger.warning("Catalog search failed: %s", response.text)
                raise StorageError("Catalog search is unavailable; retry later")
            break

        if response.status_code >= 400:
            logger.warning(
                "Catalog search rejected criteria (%s): %s",
                response.status_code,
                response.text,
            )
            raise StorageError(f"Catalog search rejected the query ({response.status_code})")

        try:
            data = response.json()
        except ValueError as exc:
            raise StorageError("Catalog search returned invalid JSON") from exc
        return self._extract_ids(data)[:limit]

    def _backoff(self, attempt: int) -> float:
        return (min(2 ** (attempt - 1), 5) + (0.1 * attempt)) * self._retry_delay

    @staticmethod
    def _extract_ids(data: object) -> list[int]:
        if isinstance(data, dict):
            raw = data.get("ids")
            if raw is None:
                raw = [
                    entry.get("id")
                    for entry in data.get("items") or []
                    if isinstance(entry, dict)
                ]
        elif isinstance(data, list):
            raw = data
        else:
            raw = []

        ids: list[int] = []
        for value in raw:
            try:
                ids.append(int(value))
            except (TypeError, ValueError):
                continue
        return ids
