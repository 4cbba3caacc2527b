"""Maps catalog/video identifiers to lookup targets for the extraction tool.

Identifiers are ambiguous strings, so resolution walks a fixed, ordered rule
table and the first rule that accepts the input wins. The order is part of
the contract: a string matching several patterns resolves by rule position,
never by length or "best match".
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from urllib.parse import quote, urlsplit

from tubebridge.models.addon_contracts import CatalogEntry, CatalogQuery, UserConfig

REVERSED_PREFIX = "Reversed"
TERM_PLACEHOLDER = "{term}"
SORT_PLACEHOLDER = "{sort}"

VIDEO_SEARCH_TOKEN = ":ytsearch"
CHANNEL_SEARCH_TOKEN = ":ytsearch:channel"
SEARCH_TOKENS: frozenset[str] = frozenset({VIDEO_SEARCH_TOKEN, CHANNEL_SEARCH_TOKEN})
PSEUDO_PLAYLIST_TOKENS: frozenset[str] = frozenset(
    {":ytfav", ":ytwatchlater", ":ytsubs", ":ythistory", ":ytrec", ":ytnotif"}
)

DEFAULT_SORT = "Relevance"
SORT_NAMES: tuple[str, ...] = ("Relevance", "Upload Date", "View Count", "Rating")

# Search-results `sp` parameters per sort bucket. These are opaque values of
# the upstream site's search filter encoding.
VIDEO_SEARCH_SCOPES: Mapping[str, str] = {
    "Relevance": "CAASAhAB",
    "Upload Date": "CAISAhAB",
    "View Count": "CAMSAhAB",
    "Rating": "CAESAhAB",
}
CHANNEL_SEARCH_SCOPES: Mapping[str, str] = {
    "Relevance": "CAASAhAC",
    "Upload Date": "CAISAhAC",
    "View Count": "CAMSAhAC",
    "Rating": "CAESAhAC",
}

_YOUTUBE_HOST = r"https?://(?:www\.|m\.)?youtube\.com"
CHANNEL_HANDLE_PATTERN = re.compile(
    rf"^(?:{_YOUTUBE_HOST}/)?(@[a-zA-Z0-9][a-zA-Z0-9._-]{{1,28}}[a-zA-Z0-9])(?:/[A-Za-z]*)?/?$"
)
CHANNEL_ID_PATTERN = re.compile(
    rf"^(?:{_YOUTUBE_HOST}/channel/)?(UC[0-9A-Za-z_-]{{22}})(?:/[A-Za-z]*)?/?$"
)
PLAYLIST_ID_PATTERN = re.compile(
    rf"^(?:{_YOUTUBE_HOST}/playlist\?list=)?(PL(?:[0-9A-F]{{16}}|[A-Za-z0-9_-]{{32}}))$"
)
VIDEO_ID_PATTERN = re.compile(
    rf"^(?:(?:{_YOUTUBE_HOST}/(?:watch\?v=|shorts/|live/)|https?://youtu\.be/))?"
    r"([A-Za-z0-9_-]{10}[AEIMQUYcgkosw048])(?:[?&#].*)?$"
)
BARE_VIDEO_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{10}[AEIMQUYcgkosw048]$")
# Identifiers naming one fixed target, which has no sort order.
_FIXED_TARGET_PATTERNS: tuple[re.Pattern[str], ...] = (
    CHANNEL_HANDLE_PATTERN,
    CHANNEL_ID_PATTERN,
    PLAYLIST_ID_PATTERN,
    VIDEO_ID_PATTERN,
)

# Characters left unescaped by a browser's encodeURIComponent.
_URI_COMPONENT_SAFE = "-_.!~*'()"


@dataclass(frozen=True)
class ResolvedTarget:
    lookup_spec: str
    is_playlist_allowed: bool
    reverse: bool = False


@dataclass(frozen=True)
class ResolutionInput:
    """Everything a resolution rule may inspect; built once per call."""

    identifier: str
    text: str
    catalog: CatalogEntry | None
    sort_name: str
    reverse: bool
    search_term: str | None
    include_live: bool


ResolutionRule = tuple[str, Callable[[ResolutionInput], ResolvedTarget | None]]


def uri_component(value: str) -> str:
    return quote(value, safe=_URI_COMPONENT_SAFE)


def split_sort(genre: str | None) -> tuple[str, bool]:
    """Splits a genre value into its sort name and the reverse flag."""
    if genre is None:
        return DEFAULT_SORT, False
    stripped = genre.strip()
    if stripped.startswith(REVERSED_PREFIX):
        name = stripped[len(REVERSED_PREFIX) :].strip()
        return name or DEFAULT_SORT, True
    return stripped or DEFAULT_SORT, False


def is_url(value: str) -> bool:
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return bool(parts.scheme) and bool(parts.netloc or parts.path) and " " not in value


def search_url(term: str, sort_name: str, *, channel: bool) -> str:
    scopes = CHANNEL_SEARCH_SCOPES if channel else VIDEO_SEARCH_SCOPES
    scope = scopes.get(sort_name, scopes[DEFAULT_SORT])
    return f"https://www.youtube.com/results?search_query={uri_component(term)}&sp={scope}"


def _search_mode_rule(data: ResolutionInput) -> ResolvedTarget | None:
    mode = data.catalog.channel_type if data.catalog is not None else "auto"
    if mode == "video" or data.identifier == VIDEO_SEARCH_TOKEN:
        channel = False
    elif mode == "channel" or data.identifier == CHANNEL_SEARCH_TOKEN:
        channel = True
    else:
        return None
    return ResolvedTarget(
        lookup_spec=search_url(data.text, data.sort_name, channel=channel),
        is_playlist_allowed=True,
        reverse=data.reverse,
    )


def _placeholder_rule(data: ResolutionInput) -> ResolvedTarget | None:
    if data.catalog is None:
        return None
    template = data.catalog.bare_id
    if TERM_PLACEHOLDER not in template and SORT_PLACEHOLDER not in template:
        return None
    sort_id = next(
        (option.id for option in data.catalog.sort_order if option.name == data.sort_name),
        "",
    )
    resolved = template.replace(TERM_PLACEHOLDER, uri_component(data.search_term or ""))
    resolved = resolved.replace(SORT_PLACEHOLDER, sort_id)
    return ResolvedTarget(lookup_spec=resolved, is_playlist_allowed=True, reverse=data.reverse)


def _pseudo_playlist_rule(data: ResolutionInput) -> ResolvedTarget | None:
    if data.identifier not in PSEUDO_PLAYLIST_TOKENS:
        return None
    return ResolvedTarget(
        lookup_spec=data.identifier,
        is_playlist_allowed=True,
        reverse=data.reverse,
    )


def _channel_handle_rule(data: ResolutionInput) -> ResolvedTarget | None:
    match = CHANNEL_HANDLE_PATTERN.match(data.text)
    if match is None:
        return None
    tab = "live" if data.include_live else "videos"
    return ResolvedTarget(
        lookup_spec=f"https://www.youtube.com/{match.group(1)}/{tab}",
        is_playlist_allowed=True,
        reverse=data.reverse,
    )


def _channel_id_rule(data: ResolutionInput) -> ResolvedTarget | None:
    match = CHANNEL_ID_PATTERN.match(data.text)
    if match is None:
        return None
    tab = "live" if data.include_live else "videos"
    return ResolvedTarget(
        lookup_spec=f"https://www.youtube.com/channel/{match.group(1)}/{tab}",
        is_playlist_allowed=True,
        reverse=data.reverse,
    )


def _playlist_id_rule(data: ResolutionInput) -> ResolvedTarget | None:
    match = PLAYLIST_ID_PATTERN.match(data.text)
    if match is None:
        return None
    return ResolvedTarget(
        lookup_spec=f"https://www.youtube.com/playlist?list={match.group(1)}",
        is_playlist_allowed=True,
        reverse=data.reverse,
    )


def _video_id_rule(data: ResolutionInput) -> ResolvedTarget | None:
    match = VIDEO_ID_PATTERN.match(data.text)
    if match is None:
        return None
    return ResolvedTarget(
        lookup_spec=f"https://www.youtube.com/watch?v={match.group(1)}",
        is_playlist_allowed=False,
        reverse=data.reverse,
    )


def _absolute_url_rule(data: ResolutionInput) -> ResolvedTarget | None:
    if not is_url(data.text):
        return None
    return ResolvedTarget(lookup_spec=data.text, is_playlist_allowed=True, reverse=data.reverse)


def _search_fallback_rule(data: ResolutionInput) -> ResolvedTarget:
    return ResolvedTarget(
        lookup_spec=search_url(data.text, data.sort_name, channel=False),
        is_playlist_allowed=True,
        reverse=data.reverse,
    )


RESOLUTION_RULES: tuple[ResolutionRule, ...] = (
    ("search_mode", _search_mode_rule),
    ("placeholder", _placeholder_rule),
    ("pseudo_playlist", _pseudo_playlist_rule),
    ("channel_handle", _channel_handle_rule),
    ("channel_id", _channel_id_rule),
    ("playlist_id", _playlist_id_rule),
    ("video_id", _video_id_rule),
    ("absolute_url", _absolute_url_rule),
    ("search_fallback", _search_fallback_rule),
)


def resolve(
    config: UserConfig,
    identifier: str,
    query: CatalogQuery | None = None,
    *,
    include_live: bool = False,
) -> ResolvedTarget:
    return resolve_with_rule(config, identifier, query, include_live=include_live)[1]


def resolve_with_rule(
    config: UserConfig,
    identifier: str,
    query: CatalogQuery | None = None,
    *,
    include_live: bool = False,
) -> tuple[str, ResolvedTarget]:
    """Like `resolve`, also naming the rule that produced the target."""
    query = query or CatalogQuery()
    bare_identifier = identifier.strip()
    sort_name, reverse = split_sort(query.genre)
    data = ResolutionInput(
        identifier=bare_identifier,
        text=(query.search if query.search is not None else bare_identifier).strip(),
        catalog=config.find_catalog(bare_identifier),
        sort_name=sort_name,
        reverse=reverse,
        search_term=query.search,
        include_live=include_live,
    )
    for name, rule in RESOLUTION_RULES:
        target = rule(data)
        if target is not None:
            return name, target
    raise AssertionError("search fallback rule always resolves")


def can_sort(catalog: CatalogEntry) -> bool:
    """Whether sort options make sense for a catalog in the manifest."""
    if catalog.channel_type != "auto" or catalog.sort_order:
        return True
    bare_id = catalog.bare_id
    if bare_id in PSEUDO_PLAYLIST_TOKENS:
        return False
    if bare_id in SEARCH_TOKENS:
        return True
    for pattern in _FIXED_TARGET_PATTERNS:
        if pattern.match(bare_id):
            return False
    return not is_url(bare_id)


def needs_search_term(catalog: CatalogEntry) -> bool:
    bare_id = catalog.bare_id
    if catalog.channel_type != "auto":
        return False
    return TERM_PLACEHOLDER in bare_id or bare_id in SEARCH_TOKENS
