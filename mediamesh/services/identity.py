"""Canonical identity resolution for items arriving from external sources."""

from __future__ import annotations

import logging
from typing import Iterable, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..db_models import CanonicalItemRecord
from ..errors import IdentityAmbiguous, IdentityInsufficient, NotFound
from ..models import (
    LIST_CONTENT_TYPES,
    CanonicalItem,
    ExternalReference,
    RawItem,
    build_payload,
)
from ..repositories import CatalogRepository, record_to_item, storage_scope
from ..utils import normalize_title

logger = logging.getLogger(__name__)


class _ReferenceRace(Exception):
    """Another writer attached one of our references between read and write."""


class IdentityResolver:
    """Maps many external references onto one canonical item."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_attempts: int = 2,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._max_attempts = max_attempts

    def ordered_references(
        self, references: Iterable[ExternalReference]
    ) -> list[ExternalReference]:
        """Deduplicate references and sort them most-authoritative first.

        Only the first id per source is kept; sources outside the configured
        priority list sort after it, alphabetically.
        """

        by_source: dict[str, ExternalReference] = {}
        for reference in references:
            by_source.setdefault(reference.source, reference)
        return sorted(
            by_source.values(),
            key=lambda ref: (self._settings.source_rank(ref.source), ref.source),
        )

    async def resolve(
        self,
        raw: RawItem,
        external_refs: Sequence[ExternalReference] | None = None,
    ) -> CanonicalItem:
        """Return the canonical item for ``raw``, creating it on first sighting."""

        references = self.ordered_references([*raw.external_refs, *(external_refs or ())])
        normalized = normalize_title(raw.title)
        use_heuristic = (
            raw.content_type not in LIST_CONTENT_TYPES
            and bool(normalized)
            and raw.release_year is not None
        )
        if not references and not use_heuristic:
            raise IdentityInsufficient(
                "Item has no external reference and lacks the title and release "
                "year needed to match it"
            )

        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._resolve_once(
                    raw, references, normalized, use_heuristic
                )
            except _ReferenceRace:
                if attempt >= self._max_attempts:
                    raise IdentityAmbiguous(
                        "Concurrent updates kept changing this item's identity; retry"
                    ) from None
                logger.info(
                    "Reference race while resolving %r; retrying (attempt %s)",
                    raw.title,
                    attempt + 1,
                )

    async def get_item(self, item_id: int) -> CanonicalItem:
        async with storage_scope(self._session_factory) as session:
            item = await CatalogRepository(session).get(item_id)
        if item is None:
            raise NotFound(f"Item {item_id} not found")
        return item

    async def _resolve_once(
        self,
        raw: RawItem,
        references: list[ExternalReference],
        normalized: str,
        use_heuristic: bool,
    ) -> CanonicalItem:
        async with storage_scope(self._session_factory) as session:
            repository = CatalogRepository(session)
            try:
                record, matched_by = await self._match(
                    repository, raw, references, normalized, use_heuristic
                )
                if record is None:
                    record = await self._create(repository, raw, references)
                    logger.info(
                        "Created canonical %s %s for %r",
                        raw.content_type,
                        record.id,
                        record.title,
                    )
                else:
                    await self._attach_missing_references(repository, record, references)
                    logger.info(
                        "Resolved %r to canonical item %s via %s",
                        raw.title,
                        record.id,
                        matched_by,
                    )
                if raw.source is not None:
                    repository.upsert_sync_mapping(record, raw.source)
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise _ReferenceRace() from exc
            return record_to_item(record)

    async def _match(
        self,
        repository: CatalogRepository,
        raw: RawItem,
        references: list[ExternalReference],
        normalized: str,
        use_heuristic: bool,
    ) -> tuple[CanonicalItemRecord | None, str | None]:
        for reference in references:
            record = await repository.find_record_by_external_reference(
                reference.source, reference.id
            )
            if record is not None:
                return record, f"{reference.source}:{reference.id}"

        if not use_heuristic:
            return None, None

        incoming = {reference.source: reference.id for reference in references}
        candidates = await repository.find_records_by_title(
            raw.content_type, normalized, raw.release_year  # type: ignore[arg-type]
        )
        viable = [
            candidate
            for candidate in candidates
            if candidate.owner_id is None
            and not any(
                existing.source in incoming
                and existing.external_id != incoming[existing.source]
                for existing in candidate.external_references
            )
        ]
        if len(viable) > 1:
            raise IdentityAmbiguous(
                f"{len(viable)} catalog items match {raw.title!r} "
                f"({raw.release_year}); supply an external reference"
            )
        if viable:
            return viable[0], "title"
        return None, None

    async def _create(
        self,
        repository: CatalogRepository,
        raw: RawItem,
        references: list[ExternalReference],
    ) -> CanonicalItemRecord:
        details = dict(raw.details)
        if raw.content_type in LIST_CONTENT_TYPES and raw.source is not None:
            details.setdefault("origin_client_id", raw.source.client_id)
        payload = build_payload(raw.content_type, details)
        title = raw.title
        if not title:
            first = references[0]
            title = f"{first.source}:{first.id}"
        return await repository.create(
            content_type=raw.content_type,
            title=title,
            release_year=raw.release_year,
            payload=payload.model_dump(mode="json"),
            external_refs=references,
        )

    async def _attach_missing_references(
        self,
        repository: CatalogRepository,
        record: CanonicalItemRecord,
        references: list[ExternalReference],
    ) -> None:
        known_sources = {ref.source for ref in record.external_references}
        for reference in references:
            if reference.source in known_sources:
                # References are immutable once attached.
                continue
            owner = await repository.reference_owner(reference.source, reference.id)
            if owner is not None and owner != record.id:
                logger.warning(
                    "Reference %s:%s already belongs to item %s; not moving it to %s",
                    reference.source,
                    reference.id,
                    owner,
                    record.id,
                )
                continue
            repository.attach_reference(record, reference)
            known_sources.add(reference.source)
