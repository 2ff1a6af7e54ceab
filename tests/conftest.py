"""Pytest configuration and test helpers."""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable

import pytest


# Ensure the application package is importable when running tests without an
# editable install.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from mediamesh.config import Settings  # noqa: E402
from mediamesh.database import Database  # noqa: E402
from mediamesh.main import ServiceContainer, build_services  # noqa: E402
from mediamesh.models import CanonicalItem, RawItem  # noqa: E402
from mediamesh.services.catalog_query import CatalogQuery  # noqa: E402


@dataclass
class ServiceStack:
    """Services wired to a throwaway sqlite database."""

    settings: Settings
    database: Database
    services: ServiceContainer

    async def seed_movie(
        self,
        title: str,
        *,
        year: int = 2000,
        tmdb_id: int | str | None = None,
        **details: Any,
    ) -> CanonicalItem:
        refs = {"tmdb": tmdb_id if tmdb_id is not None else f"seed-{title}"}
        raw = RawItem.model_validate(
            {
                "type": "movie",
                "title": title,
                "year": year,
                "externalIds": refs,
                "details": details,
            }
        )
        return await self.services.resolver.resolve(raw)

    async def seed_movies(self, count: int) -> list[int]:
        ids: list[int] = []
        for index in range(count):
            item = await self.seed_movie(f"Movie {index}", year=2000 + index)
            ids.append(item.id)
        return ids

    async def close(self) -> None:
        await self.database.dispose()


StackFactory = Callable[..., Awaitable[ServiceStack]]


@pytest.fixture
def make_stack(tmp_path) -> StackFactory:
    """Return a coroutine building services on a fresh database.

    Call it inside the event loop that will use the services.
    """

    counter = {"value": 0}

    async def _make(
        *, catalog: CatalogQuery | None = None, **overrides: Any
    ) -> ServiceStack:
        counter["value"] += 1
        database_path = tmp_path / f"mediamesh-{counter['value']}.db"
        settings = Settings(_env_file=None, **overrides)  # type: ignore[arg-type]
        database = Database(f"sqlite+aiosqlite:///{database_path}")
        await database.create_all()
        services = build_services(database, app_settings=settings, catalog=catalog)
        return ServiceStack(settings=settings, database=database, services=services)

    return _make
