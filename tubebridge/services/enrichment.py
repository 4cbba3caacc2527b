from __future__ import annotations

import json
import logging
from collections.abc import Collection
from dataclasses import dataclass
from typing import Any, cast
from urllib.parse import urlencode

import httpx

LOGGER = logging.getLogger("tubebridge.enrichment")


@dataclass(frozen=True)
class SponsorSegment:
    category: str
    start_seconds: float
    end_seconds: float


@dataclass(frozen=True)
class BrandingOverride:
    title: str | None
    thumbnail_url: str | None


class SponsorSegmentClient:
    """Fetches crowd-sourced skip segments. Any failure means "no segments"."""

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    async def fetch_segments(
        self,
        video_id: str,
        categories: Collection[str],
    ) -> list[SponsorSegment]:
        if not categories:
            return []
        query = urlencode({"videoID": video_id, "categories": json.dumps(sorted(categories))})
        payload = await _get_json(
            f"{self._base_url}/skipSegments?{query}",
            timeout_seconds=self._timeout_seconds,
            transport=self._transport,
            service="sponsor_segments",
        )
        if not isinstance(payload, list):
            return []

        segments: list[SponsorSegment] = []
        for raw in cast(list[Any], payload):
            segment = _parse_segment(raw)
            if segment is not None and segment.category in categories:
                segments.append(segment)
        segments.sort(key=lambda item: (item.start_seconds, item.end_seconds))
        return segments


class BrandingClient:
    """Fetches crowd-sourced titles and thumbnails for a video."""

    def __init__(
        self,
        *,
        base_url: str,
        thumbnail_url: str,
        timeout_seconds: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._thumbnail_url = thumbnail_url
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    async def fetch_branding(self, video_id: str) -> BrandingOverride | None:
        payload = await _get_json(
            f"{self._base_url}/branding?{urlencode({'videoID': video_id})}",
            timeout_seconds=self._timeout_seconds,
            transport=self._transport,
            service="branding",
        )
        if not isinstance(payload, dict):
            return None
        data = cast(dict[str, Any], payload)

        title = _first_field(data.get("titles"), "title", str)
        timestamp = _first_field(data.get("thumbnails"), "timestamp", int | float)
        thumbnail_url = None
        if timestamp is not None:
            thumbnail_url = (
                f"{self._thumbnail_url}?{urlencode({'videoID': video_id, 'time': timestamp})}"
            )
        if title is None and thumbnail_url is None:
            return None
        return BrandingOverride(title=title, thumbnail_url=thumbnail_url)


def _first_field(raw_items: Any, key: str, expected: Any) -> Any:
    # Items arrive ordered by votes; "original" entries mean keep the extractor's value.
    if not isinstance(raw_items, list):
        return None
    for raw in cast(list[Any], raw_items):
        if not isinstance(raw, dict):
            continue
        item = cast(dict[str, Any], raw)
        if item.get("original") is True:
            continue
        value = item.get(key)
        if isinstance(value, expected) and not isinstance(value, bool):
            return value
    return None


def _parse_segment(raw: Any) -> SponsorSegment | None:
    if not isinstance(raw, dict):
        return None
    item = cast(dict[str, Any], raw)
    bounds = item.get("segment")
    category = item.get("category")
    if not isinstance(category, str) or not isinstance(bounds, list):
        return None
    pair = cast(list[Any], bounds)
    if len(pair) != 2 or not all(isinstance(bound, int | float) for bound in pair):
        return None
    start, end = float(pair[0]), float(pair[1])
    if end <= start:
        return None
    return SponsorSegment(category=category, start_seconds=start, end_seconds=end)


async def _get_json(
    url: str,
    *,
    timeout_seconds: float,
    transport: httpx.AsyncBaseTransport | None,
    service: str,
) -> Any:
    try:
        async with httpx.AsyncClient(timeout=timeout_seconds, transport=transport) as client:
            response = await client.get(url)
    except httpx.HTTPError:
        LOGGER.warning("enrichment request failed service=%s", service, exc_info=True)
        return None

    if response.status_code == 404:
        # Both services answer 404 when they simply have no data for the video.
        return None
    if response.status_code >= 400:
        LOGGER.warning(
            "enrichment request rejected service=%s status=%s",
            service,
            response.status_code,
        )
        return None
    try:
        return response.json()
    except ValueError:
        LOGGER.warning("enrichment response was not decodable json service=%s", service)
        return None
