from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import httpx
import pytest

from tests.conftest import FakeExtractionTool
from tubebridge.models.addon_contracts import CatalogEntry, CatalogQuery, SortOption, UserConfig
from tubebridge.models.extraction import parse_extraction_payload
from tubebridge.services.addon_service import (
    AddonService,
    UnknownIdentifierError,
    build_manifest,
    format_released,
)
from tubebridge.services.enrichment import BrandingClient, SponsorSegmentClient
from tubebridge.services.extraction import ExtractionError, ExtractionOrchestrator, TempFileNamer
from tubebridge.services.stream_assembly import RequestOrigin, StreamAssembler

ORIGIN = RequestOrigin(base_url="https://addon.test", config_ref="{}")


def _unreachable(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected request {request.url}")


def _service(tmp_path: Path, tool: FakeExtractionTool, handler: Any = _unreachable) -> AddonService:
    transport = httpx.MockTransport(handler)
    return AddonService(
        orchestrator=ExtractionOrchestrator(
            binary="yt-dlp",
            extractors="all",
            timeout_seconds=10,
            namer=TempFileNamer(tmp_path),
            runner=tool,
        ),
        assembler=StreamAssembler(
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
        ),
    )


def _call_site_args(argv: list[str]) -> list[str]:
    return argv[1 : argv.index("-i")]


def test_manifest_lists_default_and_search_catalogs() -> None:
    manifest = build_manifest(UserConfig())

    assert manifest["idPrefixes"] == ["yt_id:"]
    assert manifest["resources"] == ["catalog", "stream", "meta"]
    assert manifest["types"] == ["movie", "channel"]
    assert manifest["behaviorHints"] == {"configurable": True}
    ids = [catalog["id"] for catalog in manifest["catalogs"]]
    assert ids == [
        "yt_id::ytrec",
        "yt_id::ytsubs",
        "yt_id::ytwatchlater",
        "yt_id::ythistory",
        "yt_id::ytsearch",
        "yt_id::ytsearch:channel",
    ]
    assert all(catalog["type"] == "YouTube" for catalog in manifest["catalogs"])

    subscriptions = manifest["catalogs"][1]
    assert subscriptions["extra"] == [
        {"name": "genre", "isRequired": False, "options": ["Reversed"]},
        {"name": "skip", "isRequired": False},
    ]

    video_search = manifest["catalogs"][4]
    assert video_search["extra"][0] == {"name": "search", "isRequired": True}
    assert video_search["extra"][1]["options"] == [
        "Reversed",
        "Relevance",
        "Reversed Relevance",
        "Upload Date",
        "Reversed Upload Date",
        "View Count",
        "Reversed View Count",
        "Rating",
        "Reversed Rating",
    ]


def test_manifest_uses_custom_catalogs_and_can_hide_search() -> None:
    config = UserConfig(
        search=False,
        catalog_type="Videos",
        catalogs=[
            CatalogEntry(
                id="https://example.test/search?q={term}&sort={sort}",
                name="Custom",
                sort_order=[SortOption(id="new", name="Newest")],
            ),
            CatalogEntry(id="yt_id:@exampleChannel", name="Example", type="Channels"),
        ],
    )
    manifest = build_manifest(config)

    custom, channel = manifest["catalogs"]
    assert custom["id"] == "yt_id:https://example.test/search?q={term}&sort={sort}"
    assert custom["type"] == "Videos"
    assert custom["extra"][0] == {"name": "search", "isRequired": True}
    assert custom["extra"][1]["options"] == ["Reversed", "Newest", "Reversed Newest"]
    assert channel["type"] == "Channels"
    assert channel["extra"][0]["options"] == ["Reversed"]


def test_catalog_lists_channel_entries(tmp_path: Path, fake_tool: FakeExtractionTool) -> None:
    fake_tool.reply(
        {
            "_type": "playlist",
            "entries": [{"_type": "url", "ie_key": "Youtube", "id": "abc123DEF4A", "title": "T"}],
        }
    )
    result = asyncio.run(
        _service(tmp_path, fake_tool).catalog(
            UserConfig(), None, "yt_id:@exampleChannel", CatalogQuery()
        )
    )

    assert _call_site_args(fake_tool.calls[0]) == [
        "-I",
        "1:100:1",
        "--yes-playlist",
        "https://www.youtube.com/@exampleChannel/videos",
    ]
    assert result["metas"] == [
        {
            "id": "yt_id:abc123DEF4A",
            "type": "movie",
            "name": "T",
            "poster": None,
            "posterShape": "landscape",
            "description": "T",
            "releaseInfo": None,
        }
    ]


def test_catalog_maps_channel_results_and_reverse_paging(
    tmp_path: Path,
    fake_tool: FakeExtractionTool,
) -> None:
    fake_tool.reply(
        {
            "_type": "playlist",
            "id": "lofi",
            "webpage_url_domain": "youtube.com",
            "entries": [
                {
                    "_type": "url",
                    "ie_key": "YoutubeTab",
                    "id": "UCabcdefghijklmnopqrstuv",
                    "title": "Lofi Girl",
                    "thumbnails": [
                        {"url": "https://img.test/small"},
                        {"url": "https://img.test/big"},
                    ],
                },
                {"_type": "url", "ie_key": "Youtube", "id": "not-a-video-id", "title": "Clip"},
                {"_type": "url", "title": "No id at all"},
            ],
        }
    )
    result = asyncio.run(
        _service(tmp_path, fake_tool).catalog(
            UserConfig(),
            None,
            "yt_id::ytsearch:channel",
            CatalogQuery(search="lofi", genre="Reversed", skip=100),
        )
    )

    assert _call_site_args(fake_tool.calls[0])[:3] == ["-I", "-101:-200:-1", "--yes-playlist"]
    channel, clip = result["metas"]
    assert channel["id"] == "yt_id:UCabcdefghijklmnopqrstuv"
    assert channel["type"] == "channel"
    assert channel["posterShape"] == "square"
    assert channel["poster"] == "https://img.test/big"
    assert clip["id"] == "yt_id:not-a-video-id"


def test_single_video_catalog_uses_no_playlist(
    tmp_path: Path,
    fake_tool: FakeExtractionTool,
) -> None:
    fake_tool.reply({"id": "dQw4w9WgXcQ", "title": "One video"})
    result = asyncio.run(
        _service(tmp_path, fake_tool).catalog(
            UserConfig(), None, "yt_id:dQw4w9WgXcQ", CatalogQuery()
        )
    )

    assert "--no-playlist" in _call_site_args(fake_tool.calls[0])
    assert [meta["id"] for meta in result["metas"]] == ["yt_id:dQw4w9WgXcQ"]


def test_catalog_rejects_foreign_ids(tmp_path: Path, fake_tool: FakeExtractionTool) -> None:
    with pytest.raises(UnknownIdentifierError):
        asyncio.run(
            _service(tmp_path, fake_tool).catalog(UserConfig(), None, "tt0111161", CatalogQuery())
        )
    assert fake_tool.calls == []


def test_catalog_applies_branding_to_every_video(
    tmp_path: Path,
    fake_tool: FakeExtractionTool,
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        video_id = request.url.params["videoID"]
        return httpx.Response(200, json={"titles": [{"title": f"Better {video_id}"}]})

    fake_tool.reply(
        {
            "_type": "playlist",
            "entries": [
                {"_type": "url", "id": "aaaaaaaaaaA", "title": "Clickbait A"},
                {"_type": "url", "id": "bbbbbbbbbbE", "title": "Clickbait B"},
            ],
        }
    )
    result = asyncio.run(
        _service(tmp_path, fake_tool, handler).catalog(
            UserConfig(dearrow=True), None, "yt_id::ytsubs", CatalogQuery()
        )
    )

    assert [meta["name"] for meta in result["metas"]] == [
        "Better aaaaaaaaaaA",
        "Better bbbbbbbbbbE",
    ]


def test_meta_returns_single_episode_detail(tmp_path: Path, fake_tool: FakeExtractionTool) -> None:
    fake_tool.reply(
        {
            "id": "dQw4w9WgXcQ",
            "title": "Never Gonna Give You Up",
            "description": "The official video",
            "thumbnail": "https://img.test/maxres.jpg",
            "upload_date": "20091025",
            "duration": 212,
            "tags": ["music", "80s"],
            "webpage_url": "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
            "language": "en",
            "formats": [
                {
                    "format_id": "18",
                    "url": "https://cdn.test/360.mp4",
                    "protocol": "https",
                    "video_ext": "mp4",
                    "resolution": "640x360",
                }
            ],
        }
    )
    result = asyncio.run(
        _service(tmp_path, fake_tool).meta(
            UserConfig(mark_watched_on_load=True),
            "cookies",
            "movie",
            "yt_id:dQw4w9WgXcQ",
            ORIGIN,
        )
    )

    assert _call_site_args(fake_tool.calls[0]) == [
        "--mark-watched",
        "-I",
        ":1",
        "--no-playlist",
        "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
    ]
    assert fake_tool.cookie_contents == ["cookies"]
    meta = result["meta"]
    assert meta["id"] == "yt_id:dQw4w9WgXcQ"
    assert meta["type"] == "movie"
    assert meta["name"] == "Never Gonna Give You Up"
    assert meta["genres"] == ["music", "80s"]
    assert meta["runtime"] == "3 min"
    assert meta["released"] == "2009-10-25T00:00:00.000Z"
    assert meta["releaseInfo"] == 2009
    assert meta["website"] == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
    assert meta["behaviorHints"] == {"defaultVideoId": "yt_id:dQw4w9WgXcQ:1:1"}
    (video,) = meta["videos"]
    assert video["id"] == "yt_id:dQw4w9WgXcQ:1:1"
    assert video["season"] == 1 and video["episode"] == 1
    assert video["overview"] == "The official video"
    assert video["streams"][0]["name"] == "YT-DLP Player 640x360"


def test_meta_for_channel_handle_looks_at_live_tab(
    tmp_path: Path,
    fake_tool: FakeExtractionTool,
) -> None:
    fake_tool.reply({"id": "live123", "title": "Live now", "is_live": True})
    asyncio.run(
        _service(tmp_path, fake_tool).meta(
            UserConfig(), None, "channel", "yt_id:@exampleChannel", ORIGIN
        )
    )
    assert _call_site_args(fake_tool.calls[0])[0] == "--no-mark-watched"
    assert _call_site_args(fake_tool.calls[0])[-1] == "https://www.youtube.com/@exampleChannel/live"


def test_streams_strip_the_video_suffix(tmp_path: Path, fake_tool: FakeExtractionTool) -> None:
    fake_tool.reply(
        {"id": "dQw4w9WgXcQ", "webpage_url": "https://www.youtube.com/watch?v=dQw4w9WgXcQ"}
    )
    result = asyncio.run(
        _service(tmp_path, fake_tool).streams(
            UserConfig(), None, "yt_id:dQw4w9WgXcQ:1:1", ORIGIN
        )
    )

    assert _call_site_args(fake_tool.calls[0])[-1] == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
    assert [stream["name"] for stream in result["streams"]] == ["Stremio Player", "External Player"]


def test_extraction_failures_propagate_to_the_caller(
    tmp_path: Path,
    fake_tool: FakeExtractionTool,
) -> None:
    fake_tool.fail()
    with pytest.raises(ExtractionError):
        asyncio.run(
            _service(tmp_path, fake_tool).streams(UserConfig(), None, "yt_id:x", ORIGIN)
        )


def test_format_released_prefers_timestamp_then_upload_date() -> None:
    assert format_released(parse_extraction_payload({"release_timestamp": 86400})) == (
        "1970-01-02T00:00:00.000Z"
    )
    assert format_released(parse_extraction_payload({"upload_date": "20240229"})) == (
        "2024-02-29T00:00:00.000Z"
    )
    assert format_released(parse_extraction_payload({})) == "1970-01-01T00:00:00.000Z"
