from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

from tubebridge.models.addon_contracts import (
    DEFAULT_CATALOG_TYPE,
    ID_PREFIX,
    VIDEO_ID_POSTFIX,
    CatalogEntry,
    CatalogQuery,
    UserConfig,
    strip_prefix,
)
from tubebridge.models.extraction import ExtractedRecord
from tubebridge.services.extraction import ExtractionOrchestrator, playlist_range
from tubebridge.services.identifier_resolver import (
    BARE_VIDEO_ID_PATTERN,
    CHANNEL_SEARCH_TOKEN,
    REVERSED_PREFIX,
    SORT_NAMES,
    VIDEO_SEARCH_TOKEN,
    can_sort,
    needs_search_term,
    resolve,
)
from tubebridge.services.stream_assembly import RequestOrigin, StreamAssembler

LOGGER = logging.getLogger("tubebridge.addon")

ADDON_ID = "com.tubebridge.addon"
ADDON_NAME = "TubeBridge"
ADDON_VERSION = "0.1.0"
ADDON_DESCRIPTION = "Watch YouTube videos, subscriptions, watch later, and history in Stremio."

DEFAULT_CATALOGS: tuple[CatalogEntry, ...] = (
    CatalogEntry(id=":ytrec", name="Discover"),
    CatalogEntry(id=":ytsubs", name="Subscriptions"),
    CatalogEntry(id=":ytwatchlater", name="Watch Later"),
    CatalogEntry(id=":ythistory", name="History"),
)
SEARCH_CATALOGS: tuple[CatalogEntry, ...] = (
    CatalogEntry(id=VIDEO_SEARCH_TOKEN, name="Video"),
    CatalogEntry(id=CHANNEL_SEARCH_TOKEN, name="Channel"),
)


class UnknownIdentifierError(ValueError):
    pass


def build_manifest(config: UserConfig) -> dict[str, Any]:
    catalogs = list(config.catalogs) if config.catalogs is not None else list(DEFAULT_CATALOGS)
    search_catalogs = list(SEARCH_CATALOGS) if config.search else []
    return {
        "id": ADDON_ID,
        "version": ADDON_VERSION,
        "name": ADDON_NAME,
        "description": ADDON_DESCRIPTION,
        "resources": ["catalog", "stream", "meta"],
        "types": ["movie", "channel"],
        "idPrefixes": [ID_PREFIX],
        "catalogs": [
            *(_manifest_catalog(config, catalog, force_search=False) for catalog in catalogs),
            *(_manifest_catalog(config, catalog, force_search=True) for catalog in search_catalogs),
        ],
        "behaviorHints": {"configurable": True},
    }


def _manifest_catalog(
    config: UserConfig,
    catalog: CatalogEntry,
    *,
    force_search: bool,
) -> dict[str, Any]:
    extra: list[dict[str, Any]] = list(catalog.extra)
    if force_search or needs_search_term(catalog):
        extra.append({"name": "search", "isRequired": True})

    sort_names: list[str] = []
    if can_sort(catalog):
        sort_names = [option.name for option in catalog.sort_order] or list(SORT_NAMES)
    genre_options = [
        option
        for name in ["", *sort_names]
        for option in (name, f"{REVERSED_PREFIX} {name}".strip())
    ][1:]
    extra.append({"name": "genre", "isRequired": False, "options": genre_options})
    extra.append({"name": "skip", "isRequired": False})

    return {
        "id": catalog.id if catalog.id.startswith(ID_PREFIX) else ID_PREFIX + catalog.id,
        "name": catalog.name,
        "type": catalog.type or config.catalog_type or DEFAULT_CATALOG_TYPE,
        "extra": extra,
    }


def format_released(record: ExtractedRecord) -> str:
    if record.release_timestamp is not None:
        moment = datetime.fromtimestamp(record.release_timestamp, tz=UTC)
    elif record.upload_date and len(record.upload_date) >= 8 and record.upload_date[:8].isdigit():
        moment = datetime.strptime(record.upload_date[:8], "%Y%m%d").replace(tzinfo=UTC)
    else:
        moment = datetime.fromtimestamp(0, tz=UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class AddonService:
    def __init__(
        self,
        *,
        orchestrator: ExtractionOrchestrator,
        assembler: StreamAssembler,
    ) -> None:
        self._orchestrator = orchestrator
        self._assembler = assembler

    async def catalog(
        self,
        config: UserConfig,
        secret: str | None,
        catalog_id: str,
        query: CatalogQuery,
    ) -> dict[str, Any]:
        if not catalog_id.startswith(ID_PREFIX):
            raise UnknownIdentifierError(f"unknown catalog id: {catalog_id!r}")

        target = resolve(config, strip_prefix(catalog_id).strip(), query)
        record = await self._orchestrator.invoke(
            secret,
            [
                "-I",
                playlist_range(query.skip, reverse=target.reverse),
                "--yes-playlist" if target.is_playlist_allowed else "--no-playlist",
                target.lookup_spec,
            ],
        )
        items = list(record.entries) if record.is_channel_or_playlist else [record]
        previews = [self._preview(record, item, catalog_id) for item in items]
        metas = await asyncio.gather(
            *(self._apply_branding(config, item, preview) for item, preview in zip(items, previews))
        )
        return {
            "metas": [meta for meta in metas if meta is not None],
            "behaviorHints": {"cacheMaxAge": 0},
        }

    async def meta(
        self,
        config: UserConfig,
        secret: str | None,
        meta_type: str,
        meta_id: str,
        origin: RequestOrigin,
    ) -> dict[str, Any]:
        record = await self._fetch_item(config, secret, meta_id)
        assembled = await self._assembler.assemble(config, record, origin)
        released = format_released(record)
        description = record.description or assembled.title
        video_id = meta_id + VIDEO_ID_POSTFIX
        return {
            "meta": {
                "id": meta_id,
                "type": meta_type,
                "name": assembled.title,
                "genres": list(record.tags),
                "poster": assembled.thumbnail_url,
                "posterShape": "square" if record.is_channel_or_playlist else "landscape",
                "background": assembled.thumbnail_url,
                "logo": assembled.thumbnail_url,
                "description": description,
                "releaseInfo": record.release_year_value,
                "released": released,
                "videos": [
                    {
                        "id": video_id,
                        "title": assembled.title,
                        "released": released,
                        "thumbnail": assembled.thumbnail_url,
                        "streams": assembled.streams,
                        "episode": 1,
                        "season": 1,
                        "overview": description,
                    }
                ],
                "runtime": f"{int((record.duration_seconds or 0) // 60)} min",
                "language": record.language,
                "website": record.webpage_url,
                "behaviorHints": {"defaultVideoId": video_id},
            }
        }

    async def streams(
        self,
        config: UserConfig,
        secret: str | None,
        stream_id: str,
        origin: RequestOrigin,
    ) -> dict[str, Any]:
        meta_id = stream_id.removesuffix(VIDEO_ID_POSTFIX)
        record = await self._fetch_item(config, secret, meta_id)
        assembled = await self._assembler.assemble(config, record, origin)
        return {"streams": assembled.streams}

    async def _fetch_item(
        self,
        config: UserConfig,
        secret: str | None,
        item_id: str,
    ) -> ExtractedRecord:
        if not item_id.startswith(ID_PREFIX):
            raise UnknownIdentifierError(f"unknown item id: {item_id!r}")
        target = resolve(config, strip_prefix(item_id).strip(), include_live=True)
        return await self._orchestrator.invoke(
            secret,
            [
                "--mark-watched" if config.mark_watched_on_load else "--no-mark-watched",
                "-I",
                ":1",
                "--no-playlist",
                target.lookup_spec,
            ],
        )

    def _preview(
        self,
        parent: ExtractedRecord,
        item: ExtractedRecord,
        catalog_id: str,
    ) -> dict[str, Any] | None:
        is_channel = item.kind == "channel"
        if is_channel:
            item_id = item.id or item.parent_channel_id
        elif item.id and (
            parent.webpage_url_domain == "youtube.com" or BARE_VIDEO_ID_PATTERN.match(item.id)
        ):
            item_id = item.id
        elif item is not parent and item.url:
            item_id = item.url
        elif item is parent:
            return _preview_payload(item, catalog_id, is_channel=False)
        else:
            item_id = None
        if not item_id:
            return None
        return _preview_payload(item, ID_PREFIX + item_id, is_channel=is_channel)

    async def _apply_branding(
        self,
        config: UserConfig,
        item: ExtractedRecord,
        preview: dict[str, Any] | None,
    ) -> dict[str, Any] | None:
        if preview is None or not config.dearrow or item.kind != "video":
            return preview
        title, thumbnail_url = await self._assembler.resolve_branding(config, item)
        return {**preview, "name": title, "poster": thumbnail_url}


def _preview_payload(item: ExtractedRecord, meta_id: str, *, is_channel: bool) -> dict[str, Any]:
    title = item.title or "Unknown Title"
    return {
        "id": meta_id,
        "type": "channel" if is_channel else "movie",
        "name": title,
        "poster": item.thumbnail_url,
        "posterShape": "square" if is_channel else "landscape",
        "description": item.description or title,
        "releaseInfo": item.release_year_value,
    }
