"""Pydantic models describing canonical items, lists and their journal."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)

from .errors import InvalidState
from .utils import normalize_source

ContentType = Literal[
    "movie",
    "series",
    "season",
    "episode",
    "artist",
    "album",
    "track",
    "playlist",
    "collection",
]
LIST_CONTENT_TYPES: tuple[str, ...] = ("playlist", "collection")

SYSTEM_ACTOR = 0


class ChangeKind(str, Enum):
    ADD = "add"
    REMOVE = "remove"
    REORDER = "reorder"
    UPDATE = "update"


class PermissionLevel(str, Enum):
    READ = "read"
    WRITE = "write"


class SyncStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"
    UNKNOWN = "unknown"


class ExternalReference(BaseModel):
    """A (source, id) pair recognising content in a third-party catalog."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    source: str
    id: str = Field(validation_alias=AliasChoices("id", "external_id", "externalId"))

    @field_validator("source", mode="before")
    @classmethod
    def _normalize_source(cls, value: object) -> str:
        source = normalize_source(str(value) if value is not None else "")
        if not source:
            raise ValueError("external reference source may not be empty")
        return source

    @field_validator("id", mode="before")
    @classmethod
    def _normalize_id(cls, value: object) -> str:
        text = str(value).strip() if value is not None else ""
        if not text:
            raise ValueError("external reference id may not be empty")
        return text

    @property
    def key(self) -> tuple[str, str]:
        return self.source, self.id


class SyncSource(BaseModel):
    """Identity of the sync client an item arrived from."""

    model_config = ConfigDict(populate_by_name=True)

    client_id: int = Field(validation_alias=AliasChoices("client_id", "clientId"))
    client_type: str = Field(
        validation_alias=AliasChoices("client_type", "clientType")
    )
    item_id: str = Field(validation_alias=AliasChoices("item_id", "itemId"))


class ClientSyncMapping(BaseModel):
    client_id: int
    client_type: str
    item_id: str
    sync_status: SyncStatus = SyncStatus.PENDING
    last_synced: datetime | None = None


class _MediaPayload(BaseModel):
    """Fields every content variant can describe."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    overview: str | None = Field(
        default=None, validation_alias=AliasChoices("overview", "description")
    )
    genres: list[str] = Field(default_factory=list)
    rating: float | None = None

    def details(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"kind"}, exclude_none=True)


class MoviePayload(_MediaPayload):
    kind: Literal["movie"] = "movie"
    runtime_minutes: int | None = Field(
        default=None, validation_alias=AliasChoices("runtime_minutes", "runtime")
    )


class SeriesPayload(_MediaPayload):
    kind: Literal["series", "season", "episode"] = "series"
    season_number: int | None = None
    episode_number: int | None = None


class TrackPayload(_MediaPayload):
    kind: Literal["track"] = "track"
    artist: str | None = None
    album: str | None = None
    track_number: int | None = None
    duration_seconds: int | None = None


class AlbumPayload(_MediaPayload):
    kind: Literal["album", "artist"] = "album"
    artist: str | None = None
    track_count: int | None = None


class SmartCriteria(BaseModel):
    """Declarative membership rule of a smart list."""

    model_config = ConfigDict(populate_by_name=True)

    content_types: list[ContentType] = Field(
        default_factory=list,
        validation_alias=AliasChoices("content_types", "contentTypes", "types"),
    )
    genres: list[str] = Field(default_factory=list)
    year_min: int | None = Field(
        default=None, validation_alias=AliasChoices("year_min", "yearMin", "fromYear")
    )
    year_max: int | None = Field(
        default=None, validation_alias=AliasChoices("year_max", "yearMax", "toYear")
    )
    rating_min: float | None = Field(
        default=None, validation_alias=AliasChoices("rating_min", "ratingMin", "minRating")
    )
    rating_max: float | None = Field(
        default=None, validation_alias=AliasChoices("rating_max", "ratingMax", "maxRating")
    )
    query: str | None = Field(
        default=None, validation_alias=AliasChoices("query", "text", "search")
    )
    owner_id: int | None = Field(
        default=None, validation_alias=AliasChoices("owner_id", "ownerId")
    )
    sort_by: Literal["title", "year", "rating", "added"] = Field(
        default="title", validation_alias=AliasChoices("sort_by", "sortBy", "sort")
    )
    descending: bool = Field(
        default=False, validation_alias=AliasChoices("descending", "desc")
    )
    limit: int | None = Field(default=None, ge=1, le=5_000)

    @field_validator("genres", mode="before")
    @classmethod
    def _parse_genres(cls, value: object) -> object:
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        if isinstance(value, (list, tuple, set)):
            cleaned: list[str] = []
            for entry in value:
                genre = str(entry).strip().lower()
                if genre and genre not in cleaned:
                    cleaned.append(genre)
            return cleaned
        return value

    @field_validator("query", mode="before")
    @classmethod
    def _strip_blank(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip() or None
        return value

    @model_validator(mode="after")
    def _check_ranges(self) -> "SmartCriteria":
        if (
            self.year_min is not None
            and self.year_max is not None
            and self.year_min > self.year_max
        ):
            raise ValueError("year_min must not exceed year_max")
        if (
            self.rating_min is not None
            and self.rating_max is not None
            and self.rating_min > self.rating_max
        ):
            raise ValueError("rating_min must not exceed rating_max")
        return self


class ListEntry(BaseModel):
    item_id: int
    position: int
    last_changed: datetime


class ListPayload(BaseModel):
    """List-shaped content: ordered membership plus ownership metadata."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    kind: Literal["playlist", "collection"] = "playlist"
    description: str | None = None
    owner_id: int = SYSTEM_ACTOR
    origin_client_id: int = 0
    is_public: bool = False
    items: list[ListEntry] = Field(default_factory=list)
    item_count: int = 0
    last_modified: datetime | None = None
    modified_by: int = SYSTEM_ACTOR
    is_smart: bool = False
    smart_criteria: SmartCriteria | None = None
    auto_update_time: datetime | None = None
    shared_with: list[int] = Field(default_factory=list)

    def details(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "itemCount": self.item_count,
            "isSmart": self.is_smart,
            "isPublic": self.is_public,
        }

    def item_ids(self) -> list[int]:
        return [entry.item_id for entry in self.items]

    def find(self, item_id: int) -> int | None:
        """Return the index of the entry referencing ``item_id``."""

        for index, entry in enumerate(self.items):
            if entry.item_id == item_id:
                return index
        return None

    def normalize_positions(self) -> None:
        """Order entries by position and renumber them ``0..n-1``."""

        self.items.sort(key=lambda entry: entry.position)
        for index, entry in enumerate(self.items):
            entry.position = index
        self.item_count = len(self.items)

    def validate_items(self) -> list[str]:
        """Report integrity issues without modifying the list."""

        issues: list[str] = []
        positions: set[int] = set()
        for entry in self.items:
            if entry.position in positions:
                issues.append(f"duplicate position: {entry.position}")
            positions.add(entry.position)
        for index in range(len(self.items)):
            if index not in positions:
                issues.append(f"missing position: {index}")
        seen: set[int] = set()
        for entry in self.items:
            if entry.item_id in seen:
                issues.append(f"duplicate item: {entry.item_id}")
            seen.add(entry.item_id)
        if self.item_count != len(self.items):
            issues.append("item count does not match entry count")
        return issues

    def page(self, page: int, size: int) -> list[ListEntry]:
        if page < 0 or size <= 0:
            return []
        start = page * size
        return self.items[start : start + size]


MediaPayload = Annotated[
    Union[MoviePayload, SeriesPayload, TrackPayload, AlbumPayload, ListPayload],
    Field(discriminator="kind"),
]
_PAYLOAD_ADAPTER: TypeAdapter[Any] = TypeAdapter(MediaPayload)


def build_payload(content_type: str, data: dict[str, Any] | None = None) -> Any:
    """Return the payload variant matching ``content_type``."""

    return _PAYLOAD_ADAPTER.validate_python({**(data or {}), "kind": content_type})


class CanonicalItem(BaseModel):
    """The single system-of-record entity for one piece of content."""

    id: int
    content_type: ContentType
    title: str
    release_year: int | None = None
    payload: MediaPayload
    external_refs: list[ExternalReference] = Field(default_factory=list)
    sync_mappings: list[ClientSyncMapping] = Field(default_factory=list)
    owner_id: int | None = None
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_list(self) -> bool:
        return isinstance(self.payload, ListPayload)

    @property
    def list_data(self) -> ListPayload:
        if not isinstance(self.payload, ListPayload):
            raise InvalidState(f"Item {self.id} is not a list")
        return self.payload

    def reference_for(self, source: str) -> ExternalReference | None:
        source = normalize_source(source)
        for reference in self.external_refs:
            if reference.source == source:
                return reference
        return None

    def mapping_for(self, client_id: int) -> ClientSyncMapping | None:
        for mapping in self.sync_mappings:
            if mapping.client_id == client_id:
                return mapping
        return None

    def to_response(self) -> dict[str, Any]:
        """Return a JSON-compatible representation for API callers."""

        return {
            "id": self.id,
            "type": self.content_type,
            "title": self.title,
            "year": self.release_year,
            "ownerId": self.owner_id,
            "version": self.version,
            "details": self.payload.details(),
            "externalIds": {ref.source: ref.id for ref in self.external_refs},
            "syncClients": [
                mapping.model_dump(mode="json") for mapping in self.sync_mappings
            ],
        }


# A ListContainer is a CanonicalItem whose payload is a ListPayload.
ListContainer = CanonicalItem


class RawItem(BaseModel):
    """An item description handed over by an external source adapter."""

    model_config = ConfigDict(populate_by_name=True)

    content_type: ContentType = Field(
        validation_alias=AliasChoices("content_type", "contentType", "type")
    )
    title: str | None = Field(
        default=None, validation_alias=AliasChoices("title", "name")
    )
    release_year: int | None = Field(
        default=None, validation_alias=AliasChoices("release_year", "releaseYear", "year")
    )
    external_refs: list[ExternalReference] = Field(
        default_factory=list,
        validation_alias=AliasChoices("external_refs", "externalRefs", "externalIds", "ids"),
    )
    source: SyncSource | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    @field_validator("external_refs", mode="before")
    @classmethod
    def _parse_refs(cls, value: object) -> object:
        # Adapters commonly expose ids as {"imdb": "tt0133093", "tmdb": 603}.
        if value is None:
            return []
        if isinstance(value, dict):
            return [
                {"source": source, "id": external_id}
                for source, external_id in value.items()
                if external_id not in (None, "")
            ]
        return value

    @field_validator("title", mode="before")
    @classmethod
    def _strip_title(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip() or None
        return value


class ChangeRecord(BaseModel):
    entity_id: int
    item_id: int
    actor_id: int
    change_type: ChangeKind
    timestamp: datetime


class Collaborator(BaseModel):
    list_id: int
    user_id: int
    permission: PermissionLevel
    shared_by: int
    shared_at: datetime
