from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

SearchMode = Literal["auto", "video", "channel"]
SegmentRemovalMode = Literal["strict", "overestimate"]

ID_PREFIX = "yt_id:"
VIDEO_ID_POSTFIX = ":1:1"
DEFAULT_CATALOG_TYPE = "YouTube"


class _ProtocolModel(BaseModel):
    """Base for payloads exchanged with protocol clients (camelCase on the wire)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


class SortOption(_ProtocolModel):
    id: str
    name: str


def _default_catalog_extra() -> list[dict[str, Any]]:
    return []


def _default_sort_order() -> list[SortOption]:
    return []


class CatalogEntry(_ProtocolModel):
    id: str
    name: str = ""
    type: str | None = None
    channel_type: SearchMode = "auto"
    sort_order: list[SortOption] = Field(default_factory=_default_sort_order)
    extra: list[dict[str, Any]] = Field(default_factory=_default_catalog_extra)

    @property
    def bare_id(self) -> str:
        return strip_prefix(self.id)


def _default_sponsor_categories() -> list[str]:
    return []


class UserConfig(_ProtocolModel):
    """Per-installation settings carried by a config token or a session record."""

    encrypted: str | None = None
    catalogs: list[CatalogEntry] | None = None
    mark_watched_on_load: bool = False
    search: bool = True
    show_broken_links: bool = False
    subtitles: bool = True
    sponsorblock_categories: list[str] = Field(default_factory=_default_sponsor_categories)
    segment_removal_mode: SegmentRemovalMode = "strict"
    dearrow: bool = False
    catalog_type: str = DEFAULT_CATALOG_TYPE

    def find_catalog(self, identifier: str) -> CatalogEntry | None:
        for catalog in self.catalogs or ():
            if catalog.id in (identifier, ID_PREFIX + identifier):
                return catalog
        return None


class CatalogQuery(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    search: str | None = None
    genre: str | None = None
    skip: int = 0


# Session HTTP API.


class SessionCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    config: dict[str, Any]
    password: str = Field(min_length=1)


class SessionCreateResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str
    expires_at: str


class SessionReadRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    password: str | None = None


class SessionUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    password: str
    config: dict[str, Any]


class SessionDeleteRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    password: str


class SessionView(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str
    config: dict[str, Any]
    created_at: str
    last_accessed_at: str
    expires_at: str


def strip_prefix(identifier: str) -> str:
    if identifier.startswith(ID_PREFIX):
        return identifier[len(ID_PREFIX) :]
    return identifier
