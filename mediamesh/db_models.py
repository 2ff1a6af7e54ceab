"""SQLAlchemy ORM models backing the persistent state."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base


class CanonicalItemRecord(Base):
    """One content entity as known to the system, lists included."""

    __tablename__ = "canonical_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    content_type: Mapped[str] = mapped_column(String(32), index=True)
    title: Mapped[str] = mapped_column(String(512))
    normalized_title: Mapped[str] = mapped_column(String(512), index=True)
    release_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON)
    owner_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    external_references: Mapped[list["ExternalReferenceRecord"]] = relationship(
        back_populates="item", cascade="all, delete-orphan", lazy="selectin"
    )
    sync_mappings: Mapped[list["ClientSyncMappingRecord"]] = relationship(
        back_populates="item", cascade="all, delete-orphan", lazy="selectin"
    )


class ExternalReferenceRecord(Base):
    """A (source, id) pair recognising the item in a third-party catalog."""

    __tablename__ = "external_references"
    __table_args__ = (
        UniqueConstraint("source", "external_id", name="uq_external_reference"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    item_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("canonical_items.id", ondelete="CASCADE"), index=True
    )
    source: Mapped[str] = mapped_column(String(64))
    external_id: Mapped[str] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    item: Mapped[CanonicalItemRecord] = relationship(
        back_populates="external_references"
    )


class ClientSyncMappingRecord(Base):
    """Link from an item to one sync client's local identifier for it."""

    __tablename__ = "client_sync_mappings"
    __table_args__ = (
        UniqueConstraint("item_id", "client_id", name="uq_sync_mapping_client"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    item_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("canonical_items.id", ondelete="CASCADE"), index=True
    )
    client_id: Mapped[int] = mapped_column(Integer)
    client_type: Mapped[str] = mapped_column(String(64))
    source_item_id: Mapped[str] = mapped_column(String(255))
    sync_status: Mapped[str] = mapped_column(String(16), default="pending")
    last_synced: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    item: Mapped[CanonicalItemRecord] = relationship(back_populates="sync_mappings")


class ChangeRecordRow(Base):
    """Append-only journal row; never updated or deleted."""

    __tablename__ = "change_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_id: Mapped[int] = mapped_column(Integer, index=True)
    item_id: Mapped[int] = mapped_column(Integer)
    actor_id: Mapped[int] = mapped_column(Integer, default=0)
    change_type: Mapped[str] = mapped_column(String(16))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class CollaboratorRecord(Base):
    """A non-owner user granted read or write access to a list."""

    __tablename__ = "list_collaborators"
    __table_args__ = (
        UniqueConstraint("list_id", "user_id", name="uq_list_collaborator"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    list_id: Mapped[int] = mapped_column(Integer, index=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    permission: Mapped[str] = mapped_column(String(8))
    shared_by: Mapped[int] = mapped_column(Integer)
    shared_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class AccountRecord(Base):
    """Minimal account/role store consulted by the permission guard."""

    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[str | None] = mapped_column(String(120), nullable=True)
    role: Mapped[str] = mapped_column(String(32), default="user")
