from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any, cast
from urllib.parse import urljoin

import httpx

from tubebridge.models.addon_contracts import SegmentRemovalMode

LOGGER = logging.getLogger("tubebridge.segments")

EXTINF_TAG = "#EXTINF:"
DISCONTINUITY_TAG = "#EXT-X-DISCONTINUITY"
# Tags whose URI attribute points at another resource relative to the playlist.
_URI_ATTRIBUTE_TAGS: tuple[str, ...] = ("#EXT-X-KEY:", "#EXT-X-MAP:", "#EXT-X-MEDIA:")
# Tags that describe only the next media segment and leave with it when it is cut.
_SEGMENT_SCOPED_TAGS: tuple[str, ...] = (
    EXTINF_TAG,
    DISCONTINUITY_TAG,
    "#EXT-X-BYTERANGE:",
    "#EXT-X-GAP",
    "#EXT-X-BITRATE:",
)


class PlaylistFetchError(Exception):
    pass


@dataclass(frozen=True)
class TimeRange:
    start: float
    end: float


@dataclass(frozen=True)
class PlaylistRewrite:
    """Either a rewritten playlist body or a URL to pass through untouched."""

    body: str | None = None
    passthrough_url: str | None = None


def is_excluded(
    segment_start: float,
    segment_end: float,
    ranges: Iterable[TimeRange],
    mode: SegmentRemovalMode = "strict",
) -> bool:
    """Decides whether a `[segment_start, segment_end)` segment is dropped.

    `strict` drops only segments fully inside some range; `overestimate`
    drops any segment overlapping a range.
    """
    for time_range in ranges:
        if mode == "strict":
            if segment_start >= time_range.start and segment_end <= time_range.end:
                return True
        elif not (segment_end <= time_range.start or segment_start >= time_range.end):
            return True
    return False


def parse_ranges(raw: str | None) -> list[TimeRange]:
    """Parses the `ranges` query value (a JSON array of `[start, end]` pairs)."""
    if raw is None or not raw.strip():
        return []
    try:
        parsed: Any = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("ranges must be a JSON array of [start, end] pairs") from exc
    if not isinstance(parsed, list):
        raise ValueError("ranges must be a JSON array of [start, end] pairs")

    ranges: list[TimeRange] = []
    for item in cast(list[Any], parsed):
        if (
            not isinstance(item, list)
            or len(cast(list[Any], item)) != 2
            or not all(
                isinstance(bound, int | float) and not isinstance(bound, bool)
                for bound in cast(list[Any], item)
            )
        ):
            raise ValueError("each range must be a [start, end] pair of numbers")
        start, end = float(item[0]), float(item[1])
        if end < start:
            raise ValueError("range end must not precede its start")
        ranges.append(TimeRange(start=start, end=end))
    return ranges


def serialize_ranges(ranges: Sequence[TimeRange]) -> str:
    return json.dumps([[time_range.start, time_range.end] for time_range in ranges])


def rewrite_playlist_text(
    text: str,
    ranges: Sequence[TimeRange],
    *,
    base_url: str,
    mode: SegmentRemovalMode = "strict",
) -> str:
    """Re-emits an HLS playlist without the segments falling in `ranges`.

    Segment times come from accumulating `#EXTINF` durations. Directive lines
    are copied through in place, except tags scoped to a segment that is cut
    out. Relative URIs are made absolute against `base_url` because the
    rewritten playlist is served from another origin.
    A discontinuity tag is inserted where segments were cut out.
    """
    output: list[str] = []
    pending: list[str] = []
    elapsed = 0.0
    duration: float | None = None
    skipped_since_last_kept = False

    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if line.startswith(EXTINF_TAG):
            duration = _parse_extinf_duration(line)
            pending.append(line)
            continue
        if line.startswith("#"):
            line = _absolutize_uri_attribute(line, base_url)
            if duration is None:
                output.append(line)
            else:
                pending.append(line)
            continue

        uri = urljoin(base_url, line)
        if duration is None:
            # A URI without EXTINF is a variant stream entry in a master playlist.
            output.append(uri)
            continue

        segment_start, segment_end = elapsed, elapsed + duration
        elapsed = segment_end
        if is_excluded(segment_start, segment_end, ranges, mode):
            skipped_since_last_kept = True
            output.extend(line for line in pending if not line.startswith(_SEGMENT_SCOPED_TAGS))
        else:
            if skipped_since_last_kept and DISCONTINUITY_TAG not in pending:
                output.append(DISCONTINUITY_TAG)
            output.extend(pending)
            output.append(uri)
            skipped_since_last_kept = False
        pending = []
        duration = None

    output.extend(line for line in pending if not line.startswith(_SEGMENT_SCOPED_TAGS))
    return "\n".join(output) + "\n"


def _parse_extinf_duration(line: str) -> float:
    value = line[len(EXTINF_TAG) :].split(",", 1)[0].strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        return 0.0


def _absolutize_uri_attribute(line: str, base_url: str) -> str:
    if not line.startswith(_URI_ATTRIBUTE_TAGS):
        return line
    marker = 'URI="'
    start = line.find(marker)
    if start < 0:
        return line
    start += len(marker)
    end = line.find('"', start)
    if end < 0:
        return line
    return line[:start] + urljoin(base_url, line[start:end]) + line[end:]


class PlaylistRewriter:
    def __init__(
        self,
        *,
        timeout_seconds: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    async def rewrite(
        self,
        playlist_url: str,
        ranges: Sequence[TimeRange],
        mode: SegmentRemovalMode = "strict",
    ) -> PlaylistRewrite:
        if not ranges:
            return PlaylistRewrite(passthrough_url=playlist_url)

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout_seconds,
                transport=self._transport,
                follow_redirects=True,
            ) as client:
                response = await client.get(playlist_url)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise PlaylistFetchError(f"failed to fetch playlist: {exc}") from exc

        body = rewrite_playlist_text(
            response.text,
            ranges,
            base_url=str(response.url),
            mode=mode,
        )
        LOGGER.debug(
            "playlist rewritten ranges=%s mode=%s bytes_in=%s bytes_out=%s",
            len(ranges),
            mode,
            len(response.text),
            len(body),
        )
        return PlaylistRewrite(body=body)
