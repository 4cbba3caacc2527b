from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, cast

RecordKind = Literal["video", "playlist", "channel"]

CHANNEL_EXTRACTOR_KEY = "YoutubeTab"
THUMBNAIL_SPRITE_PREFIX = "sb"


@dataclass(frozen=True)
class FormatCandidate:
    format_id: str
    url: str | None
    resolution: str | None = None
    label: str | None = None
    protocol: str | None = None
    video_ext: str | None = None
    audio_codec: str | None = None
    video_codec: str | None = None
    approx_size: int | None = None

    @property
    def is_thumbnail_sprite(self) -> bool:
        return self.format_id.startswith(THUMBNAIL_SPRITE_PREFIX)

    @property
    def has_audio_and_video(self) -> bool:
        return self.audio_codec != "none" and self.video_codec != "none"

    @property
    def is_indexed_playlist(self) -> bool:
        return (self.protocol or "").startswith("m3u8")


@dataclass(frozen=True)
class SubtitleVariant:
    url: str
    ext: str | None = None
    name: str | None = None


@dataclass(frozen=True)
class ExtractedRecord:
    kind: RecordKind
    id: str | None
    title: str | None = None
    description: str | None = None
    thumbnail_url: str | None = None
    upload_date: str | None = None
    release_timestamp: int | None = None
    release_year: int | None = None
    duration_seconds: float | None = None
    is_live: bool = False
    url: str | None = None
    webpage_url: str | None = None
    webpage_url_domain: str | None = None
    extractor_key: str | None = None
    language: str | None = None
    filename: str | None = None
    tags: tuple[str, ...] = ()
    formats: tuple[FormatCandidate, ...] = ()
    subtitle_tracks: dict[str, tuple[SubtitleVariant, ...]] = field(default_factory=dict)
    auto_caption_tracks: dict[str, tuple[SubtitleVariant, ...]] = field(default_factory=dict)
    entries: tuple[ExtractedRecord, ...] = ()
    parent_channel_id: str | None = None
    parent_channel_url: str | None = None

    @property
    def is_channel_or_playlist(self) -> bool:
        return self.kind != "video"

    @property
    def release_year_value(self) -> int | None:
        if self.release_year is not None:
            return self.release_year
        if self.upload_date and self.upload_date[:4].isdigit():
            return int(self.upload_date[:4])
        return None


def parse_extraction_payload(payload: Any) -> ExtractedRecord:
    """Normalizes one JSON document from the extraction tool.

    The tool's output shape varies: single videos carry `formats`, playlists
    and channel tabs carry `_type: "playlist"` and an `entries` list, and flat
    playlist entries are `_type: "url"` stubs whose `ie_key` names the
    extractor that would expand them.
    """
    if not isinstance(payload, dict):
        raise ValueError("extraction payload must be a JSON object")
    data = cast(dict[str, Any], payload)

    raw_entries = data.get("entries")
    entries = tuple(
        parse_extraction_payload(entry)
        for entry in (raw_entries if isinstance(raw_entries, list) else [])
        if isinstance(entry, dict)
    )
    return ExtractedRecord(
        kind=_classify(data),
        id=_as_str(data.get("id")),
        title=_as_str(data.get("title")),
        description=_as_str(data.get("description")),
        thumbnail_url=_pick_thumbnail(data),
        upload_date=_as_str(data.get("upload_date")),
        release_timestamp=_as_int(data.get("release_timestamp")),
        release_year=_as_int(data.get("release_year")),
        duration_seconds=_as_float(data.get("duration")),
        is_live=data.get("is_live") is True,
        url=_as_str(data.get("url")),
        webpage_url=_as_str(data.get("webpage_url")),
        webpage_url_domain=_as_str(data.get("webpage_url_domain")),
        extractor_key=_as_str(data.get("extractor_key")) or _as_str(data.get("ie_key")),
        language=_as_str(data.get("language")),
        filename=_as_str(data.get("filename")),
        tags=tuple(tag for tag in _as_list(data.get("tags")) if isinstance(tag, str)),
        formats=_parse_formats(data),
        subtitle_tracks=_parse_tracks(data.get("subtitles")),
        auto_caption_tracks=_parse_tracks(data.get("automatic_captions")),
        entries=entries,
        parent_channel_id=_as_str(data.get("uploader_id")) or _as_str(data.get("channel_id")),
        parent_channel_url=_as_str(data.get("uploader_url")) or _as_str(data.get("channel_url")),
    )


def _classify(data: dict[str, Any]) -> RecordKind:
    record_type = data.get("_type")
    extractor_key = data.get("extractor_key") or data.get("ie_key")
    if record_type == "playlist" or isinstance(data.get("entries"), list):
        channel_id = data.get("channel_id")
        if extractor_key == CHANNEL_EXTRACTOR_KEY and channel_id and channel_id == data.get("id"):
            return "channel"
        return "playlist"
    if record_type == "url" and extractor_key == CHANNEL_EXTRACTOR_KEY:
        return "channel"
    return "video"


def _parse_formats(data: dict[str, Any]) -> tuple[FormatCandidate, ...]:
    raw_formats = data.get("formats")
    if not isinstance(raw_formats, list):
        # Direct-file results carry their single format inline.
        if data.get("_type") in (None, "video") and isinstance(data.get("url"), str):
            raw_formats = [data]
        else:
            return ()
    formats: list[FormatCandidate] = []
    for raw in raw_formats:
        if not isinstance(raw, dict):
            continue
        item = cast(dict[str, Any], raw)
        formats.append(
            FormatCandidate(
                format_id=_as_str(item.get("format_id")) or "",
                url=_as_str(item.get("url")),
                resolution=_as_str(item.get("resolution")),
                label=_as_str(item.get("format")),
                protocol=_as_str(item.get("protocol")),
                video_ext=_as_str(item.get("video_ext")),
                audio_codec=_as_str(item.get("acodec")),
                video_codec=_as_str(item.get("vcodec")),
                approx_size=_as_int(item.get("filesize_approx")),
            )
        )
    return tuple(formats)


def _parse_tracks(raw: Any) -> dict[str, tuple[SubtitleVariant, ...]]:
    if not isinstance(raw, dict):
        return {}
    tracks: dict[str, tuple[SubtitleVariant, ...]] = {}
    for language, raw_variants in cast(dict[Any, Any], raw).items():
        if not isinstance(language, str):
            continue
        variants = tuple(
            SubtitleVariant(
                url=variant["url"],
                ext=_as_str(variant.get("ext")),
                name=_as_str(variant.get("name")),
            )
            for variant in _as_list(raw_variants)
            if isinstance(variant, dict) and isinstance(variant.get("url"), str)
        )
        if variants:
            tracks[language] = variants
    return tracks


def _pick_thumbnail(data: dict[str, Any]) -> str | None:
    thumbnail = _as_str(data.get("thumbnail"))
    if thumbnail is not None:
        return thumbnail
    thumbnails = [item for item in _as_list(data.get("thumbnails")) if isinstance(item, dict)]
    if thumbnails:
        return _as_str(thumbnails[-1].get("url"))
    return None


def _as_str(value: Any) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    return None


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return cast(list[Any], value)
    return []
