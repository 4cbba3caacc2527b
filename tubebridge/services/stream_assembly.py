from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

from tubebridge.models.addon_contracts import ID_PREFIX, UserConfig
from tubebridge.models.extraction import ExtractedRecord, FormatCandidate, SubtitleVariant
from tubebridge.services.enrichment import BrandingClient, SponsorSegmentClient
from tubebridge.services.identifier_resolver import BARE_VIDEO_ID_PATTERN
from tubebridge.services.segment_rewrite import TimeRange, serialize_ranges

LOGGER = logging.getLogger("tubebridge.streams")

PREFERRED_SUBTITLE_EXT = "srt"


@dataclass(frozen=True)
class RequestOrigin:
    """Where the current request came from, for self-referencing links."""

    base_url: str
    config_ref: str
    referrer: str | None = None

    @property
    def manifest_url(self) -> str:
        return f"{self.base_url}/{quote(self.config_ref, safe='')}/manifest.json"

    def channel_catalog_link(self, channel_id: str) -> str:
        scheme = f"{self.referrer}#" if self.referrer else "stremio://"
        return (
            f"{scheme}/discover/{quote(self.manifest_url, safe='')}/movie/"
            f"{quote(ID_PREFIX + channel_id, safe='')}"
        )


@dataclass(frozen=True)
class AssembledStreams:
    title: str
    thumbnail_url: str | None
    streams: list[dict[str, Any]]


def select_formats(record: ExtractedRecord, *, show_broken_links: bool) -> list[FormatCandidate]:
    """Playable formats, best first (the extractor lists them worst to best)."""
    selected = [
        candidate
        for candidate in record.formats
        if candidate.url
        and (
            show_broken_links
            or (not candidate.is_thumbnail_sprite and candidate.has_audio_and_video)
        )
    ]
    selected.reverse()
    return selected


def merge_subtitles(record: ExtractedRecord) -> list[dict[str, str]]:
    subtitles: list[dict[str, str]] = []
    for language, variants in record.subtitle_tracks.items():
        chosen = _pick_variant(variants)
        subtitles.append({"id": chosen.name or language, "url": chosen.url, "lang": language})
    for language, variants in record.auto_caption_tracks.items():
        if language in record.subtitle_tracks:
            continue
        chosen = _pick_variant(variants)
        subtitles.append(
            {"id": f"Auto {chosen.name or language}", "url": chosen.url, "lang": language}
        )
    return subtitles


def _pick_variant(variants: Sequence[SubtitleVariant]) -> SubtitleVariant:
    for variant in variants:
        if variant.ext == PREFERRED_SUBTITLE_EXT:
            return variant
    return variants[0]


def segment_rewrite_url(
    base_url: str,
    playlist_url: str,
    ranges: Sequence[TimeRange],
    *,
    mode: str = "strict",
) -> str:
    encoded_ranges = quote(serialize_ranges(ranges), safe="")
    url = f"{base_url}/stream/{quote(playlist_url, safe='')}?ranges={encoded_ranges}"
    if mode != "strict":
        url += f"&mode={mode}"
    return url


class StreamAssembler:
    def __init__(
        self,
        *,
        sponsor_client: SponsorSegmentClient,
        branding_client: BrandingClient,
    ) -> None:
        self._sponsor_client = sponsor_client
        self._branding_client = branding_client

    async def assemble(
        self,
        config: UserConfig,
        record: ExtractedRecord,
        origin: RequestOrigin,
    ) -> AssembledStreams:
        formats = select_formats(record, show_broken_links=config.show_broken_links)
        subtitles = merge_subtitles(record) if config.subtitles else []
        ranges = await self._ad_ranges(config, record, formats)
        title, thumbnail_url = await self.resolve_branding(config, record)

        streams = [
            self._format_stream(config, record, candidate, subtitles, ranges, origin)
            for candidate in formats
        ]
        streams.extend(self._auxiliary_streams(record, origin))
        return AssembledStreams(title=title, thumbnail_url=thumbnail_url, streams=streams)

    async def resolve_branding(
        self,
        config: UserConfig,
        record: ExtractedRecord,
    ) -> tuple[str, str | None]:
        title = record.title or "Unknown Title"
        thumbnail_url = record.thumbnail_url
        if not config.dearrow or record.is_channel_or_playlist or not record.id:
            return title, thumbnail_url

        override = await self._branding_client.fetch_branding(record.id)
        if override is None:
            return title, thumbnail_url
        return override.title or title, override.thumbnail_url or thumbnail_url

    async def _ad_ranges(
        self,
        config: UserConfig,
        record: ExtractedRecord,
        formats: Sequence[FormatCandidate],
    ) -> list[TimeRange]:
        if not config.sponsorblock_categories or not record.id:
            return []
        if not any(candidate.is_indexed_playlist for candidate in formats):
            return []
        segments = await self._sponsor_client.fetch_segments(
            record.id,
            frozenset(config.sponsorblock_categories),
        )
        return [TimeRange(start=item.start_seconds, end=item.end_seconds) for item in segments]

    def _format_stream(
        self,
        config: UserConfig,
        record: ExtractedRecord,
        candidate: FormatCandidate,
        subtitles: list[dict[str, str]],
        ranges: Sequence[TimeRange],
        origin: RequestOrigin,
    ) -> dict[str, Any]:
        assert candidate.url is not None
        url = candidate.url
        if ranges and candidate.is_indexed_playlist:
            url = segment_rewrite_url(
                origin.base_url,
                url,
                ranges,
                mode=config.segment_removal_mode,
            )

        behavior_hints: dict[str, Any] = {}
        if candidate.protocol != "https" or candidate.video_ext != "mp4":
            behavior_hints["notWebReady"] = True
        if candidate.approx_size is not None:
            behavior_hints["videoSize"] = candidate.approx_size
        if record.filename is not None:
            behavior_hints["filename"] = record.filename

        stream: dict[str, Any] = {
            "name": f"YT-DLP Player {candidate.resolution or candidate.format_id}",
            "url": url,
            "description": candidate.label or candidate.format_id,
            "behaviorHints": behavior_hints,
        }
        if subtitles:
            stream["subtitles"] = subtitles
        return stream

    def _auxiliary_streams(
        self,
        record: ExtractedRecord,
        origin: RequestOrigin,
    ) -> list[dict[str, Any]]:
        streams: list[dict[str, Any]] = []
        if (
            record.id
            and BARE_VIDEO_ID_PATTERN.match(record.id)
            and (record.is_live or not record.is_channel_or_playlist)
        ):
            streams.append(
                {
                    "name": "Stremio Player",
                    "ytId": record.id,
                    "description": "Click to watch using Stremio's built-in YouTube Player",
                }
            )
        if record.webpage_url and (record.is_live or not record.is_channel_or_playlist):
            streams.append(
                {
                    "name": "External Player",
                    "externalUrl": record.webpage_url,
                    "description": "Click to watch in the External Player",
                }
            )
        if record.parent_channel_id:
            streams.append(
                {
                    "name": "YT-DLP Channel",
                    "externalUrl": origin.channel_catalog_link(record.parent_channel_id),
                    "description": "Click to open the channel as a Catalog",
                }
            )
        if record.parent_channel_url:
            streams.append(
                {
                    "name": "External Channel",
                    "externalUrl": record.parent_channel_url,
                    "description": "Click to open the channel in the External Player",
                }
            )
        return streams
