from __future__ import annotations

import asyncio
import json
from typing import Any
from urllib.parse import parse_qs, unquote, urlsplit

import httpx

from tubebridge.models.addon_contracts import UserConfig
from tubebridge.models.extraction import ExtractedRecord, parse_extraction_payload
from tubebridge.services.enrichment import BrandingClient, SponsorSegmentClient
from tubebridge.services.stream_assembly import (
    RequestOrigin,
    StreamAssembler,
    merge_subtitles,
    select_formats,
)

ORIGIN = RequestOrigin(base_url="https://addon.test", config_ref='{"search":true}')

VIDEO_PAYLOAD: dict[str, Any] = {
    "id": "dQw4w9WgXcQ",
    "title": "Never Gonna Give You Up",
    "thumbnail": "https://i.ytimg.test/vi/dQw4w9WgXcQ/maxres.jpg",
    "webpage_url": "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
    "uploader_id": "@RickAstleyYT",
    "uploader_url": "https://www.youtube.com/@RickAstleyYT",
    "filename": "Never Gonna Give You Up [dQw4w9WgXcQ].mp4",
    "formats": [
        {"format_id": "sb0", "url": "https://sprites.test/sb0", "acodec": "none", "vcodec": "none"},
        {"format_id": "139", "url": "https://cdn.test/audio", "acodec": "mp4a", "vcodec": "none"},
        {
            "format_id": "18",
            "url": "https://cdn.test/360.mp4",
            "protocol": "https",
            "video_ext": "mp4",
            "resolution": "640x360",
            "format": "18 - 640x360 (360p)",
            "acodec": "mp4a",
            "vcodec": "avc1",
            "filesize_approx": 1234,
        },
        {
            "format_id": "96",
            "url": "https://manifest.test/hls/1080.m3u8",
            "protocol": "m3u8_native",
            "video_ext": "mp4",
            "resolution": "1920x1080",
            "format": "96 - 1920x1080",
            "acodec": "mp4a",
            "vcodec": "avc1",
        },
        {"format_id": "nourl", "acodec": "mp4a", "vcodec": "avc1"},
    ],
    "subtitles": {
        "en": [
            {"ext": "vtt", "url": "https://subs.test/en.vtt", "name": "English"},
            {"ext": "srt", "url": "https://subs.test/en.srt", "name": "English"},
        ]
    },
    "automatic_captions": {
        "en": [{"ext": "srt", "url": "https://subs.test/auto-en.srt", "name": "English"}],
        "de": [{"ext": "vtt", "url": "https://subs.test/auto-de.vtt", "name": "German"}],
    },
}


def _unreachable(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected request {request.url}")


def _assembler(handler: Any = _unreachable) -> StreamAssembler:
    transport = httpx.MockTransport(handler)
    return StreamAssembler(
        sponsor_client=SponsorSegmentClient(
            base_url="https://segments.test/api",
            timeout_seconds=1,
            transport=transport,
        ),
        branding_client=BrandingClient(
            base_url="https://segments.test/api",
            thumbnail_url="https://thumbs.test/get",
            timeout_seconds=1,
            transport=transport,
        ),
    )


def _video() -> ExtractedRecord:
    return parse_extraction_payload(VIDEO_PAYLOAD)


def test_select_formats_drops_broken_entries_and_puts_best_first() -> None:
    record = _video()
    playable = select_formats(record, show_broken_links=False)
    everything = select_formats(record, show_broken_links=True)
    assert [candidate.format_id for candidate in playable] == ["96", "18"]
    assert [candidate.format_id for candidate in everything] == ["96", "18", "139", "sb0"]


def test_merge_subtitles_prefers_srt_and_adds_auto_only_for_missing_languages() -> None:
    assert merge_subtitles(_video()) == [
        {"id": "English", "url": "https://subs.test/en.srt", "lang": "en"},
        {"id": "Auto German", "url": "https://subs.test/auto-de.vtt", "lang": "de"},
    ]


def test_assemble_builds_format_and_auxiliary_streams() -> None:
    assembled = asyncio.run(_assembler().assemble(UserConfig(), _video(), ORIGIN))

    assert assembled.title == "Never Gonna Give You Up"
    names = [stream["name"] for stream in assembled.streams]
    assert names == [
        "YT-DLP Player 1920x1080",
        "YT-DLP Player 640x360",
        "Stremio Player",
        "External Player",
        "YT-DLP Channel",
        "External Channel",
    ]

    hls, progressive = assembled.streams[0], assembled.streams[1]
    assert hls["url"] == "https://manifest.test/hls/1080.m3u8"
    assert hls["behaviorHints"]["notWebReady"] is True
    assert progressive["description"] == "18 - 640x360 (360p)"
    assert progressive["behaviorHints"] == {
        "videoSize": 1234,
        "filename": "Never Gonna Give You Up [dQw4w9WgXcQ].mp4",
    }
    assert len(progressive["subtitles"]) == 2

    assert assembled.streams[2]["ytId"] == "dQw4w9WgXcQ"
    assert assembled.streams[3]["externalUrl"] == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
    channel_link = assembled.streams[4]["externalUrl"]
    assert channel_link.startswith("stremio:///discover/")
    assert unquote(channel_link).endswith("/movie/yt_id:@RickAstleyYT")
    assert assembled.streams[5]["externalUrl"] == "https://www.youtube.com/@RickAstleyYT"


def test_channel_link_uses_referrer_when_known() -> None:
    origin = RequestOrigin(
        base_url="https://addon.test",
        config_ref="abc",
        referrer="https://web.stremio.test/",
    )
    link = origin.channel_catalog_link("@someone")
    assert link.startswith("https://web.stremio.test/#/discover/")
    assert "https%3A%2F%2Faddon.test%2Fabc%2Fmanifest.json" in link


def test_subtitles_can_be_disabled() -> None:
    assembled = asyncio.run(
        _assembler().assemble(UserConfig(subtitles=False), _video(), ORIGIN)
    )
    assert all("subtitles" not in stream for stream in assembled.streams)


def test_sponsor_ranges_rewrite_only_indexed_playlist_formats() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/skipSegments"
        return httpx.Response(
            200,
            json=[
                {"segment": [0, 15], "category": "intro"},
                {"segment": [60, 90], "category": "sponsor"},
            ],
        )

    config = UserConfig(sponsorblock_categories=["sponsor", "intro"])
    assembled = asyncio.run(_assembler(handler).assemble(config, _video(), ORIGIN))

    hls_url = assembled.streams[0]["url"]
    parts = urlsplit(hls_url)
    assert parts.scheme == "https" and parts.netloc == "addon.test"
    assert unquote(parts.path) == "/stream/https://manifest.test/hls/1080.m3u8"
    query = parse_qs(parts.query)
    assert json.loads(query["ranges"][0]) == [[0.0, 15.0], [60.0, 90.0]]
    assert "mode" not in query
    assert assembled.streams[1]["url"] == "https://cdn.test/360.mp4"


def test_overestimate_mode_is_carried_on_the_rewrite_url() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        _ = request
        return httpx.Response(200, json=[{"segment": [1, 2], "category": "sponsor"}])

    config = UserConfig(sponsorblock_categories=["sponsor"], segment_removal_mode="overestimate")
    assembled = asyncio.run(_assembler(handler).assemble(config, _video(), ORIGIN))
    assert assembled.streams[0]["url"].endswith("&mode=overestimate")


def test_no_segment_lookup_without_indexed_playlists() -> None:
    payload = dict(VIDEO_PAYLOAD)
    payload["formats"] = [
        candidate for candidate in VIDEO_PAYLOAD["formats"] if candidate["format_id"] != "96"
    ]
    config = UserConfig(sponsorblock_categories=["sponsor"])
    # The default handler fails the test on any request.
    assembled = asyncio.run(
        _assembler().assemble(config, parse_extraction_payload(payload), ORIGIN)
    )
    assert assembled.streams[0]["url"] == "https://cdn.test/360.mp4"


def test_branding_override_applies_to_single_videos() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/branding"
        return httpx.Response(
            200,
            json={"titles": [{"title": "Honest title"}], "thumbnails": [{"timestamp": 12}]},
        )

    assembled = asyncio.run(
        _assembler(handler).assemble(UserConfig(dearrow=True), _video(), ORIGIN)
    )
    assert assembled.title == "Honest title"
    assert assembled.thumbnail_url == "https://thumbs.test/get?videoID=dQw4w9WgXcQ&time=12"


def test_branding_is_skipped_for_channels() -> None:
    channel = parse_extraction_payload(
        {
            "_type": "playlist",
            "id": "UCabcdefghijklmnopqrstuv",
            "channel_id": "UCabcdefghijklmnopqrstuv",
            "extractor_key": "YoutubeTab",
            "title": "Some channel",
            "entries": [],
        }
    )
    assembled = asyncio.run(_assembler().assemble(UserConfig(dearrow=True), channel, ORIGIN))
    assert assembled.title == "Some channel"
    assert [stream["name"] for stream in assembled.streams] == ["YT-DLP Channel"]
