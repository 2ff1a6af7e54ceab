from __future__ import annotations

import asyncio

from sqlalchemy import create_engine, inspect

from mediamesh.database import Database


def test_create_all_builds_the_schema(tmp_path) -> None:
    """Every table the services rely on should exist after create_all."""

    database_path = tmp_path / "schema.db"
    database = Database(f"sqlite+aiosqlite:///{database_path}")

    async def runner() -> None:
        await database.create_all()
        # Running twice must be harmless.
        await database.create_all()
        await database.dispose()

    asyncio.run(runner())

    inspector_engine = create_engine(f"sqlite:///{database_path}")
    try:
        inspector = inspect(inspector_engine)
        tables = set(inspector.get_table_names())
        assert {
            "canonical_items",
            "external_references",
            "client_sync_mappings",
            "change_records",
            "list_collaborators",
            "accounts",
        } <= tables

        reference_uniques = inspector.get_unique_constraints("external_references")
        assert any(
            set(constraint["column_names"]) == {"source", "external_id"}
            for constraint in reference_uniques
        )
        columns = {column["name"] for column in inspector.get_columns("canonical_items")}
        assert {"version", "normalized_title", "payload", "owner_id"} <= columns
    finally:
        inspector_engine.dispose()
