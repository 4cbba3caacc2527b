from __future__ import annotations

import logging
from typing import Annotated, Any
from urllib.parse import parse_qsl, unquote

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, Response
from fastapi.responses import PlainTextResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool
from structlog.contextvars import bind_contextvars, reset_contextvars

from tubebridge.dependencies import (
    get_addon_service,
    get_config_resolver,
    get_crypto,
    get_playlist_rewriter,
    get_session_repository,
)
from tubebridge.models.addon_contracts import (
    CatalogQuery,
    SegmentRemovalMode,
    SessionCreateRequest,
    SessionCreateResponse,
    SessionDeleteRequest,
    SessionReadRequest,
    SessionUpdateRequest,
    SessionView,
    UserConfig,
)
from tubebridge.repositories.session_repository import (
    SessionExpired,
    SessionLookup,
    SessionRepository,
    SessionSnapshot,
)
from tubebridge.services.addon_service import AddonService, UnknownIdentifierError, build_manifest
from tubebridge.services.config_resolver import (
    ConfigResolver,
    ConfigTokenError,
    SessionExpiredError,
    parse_user_config,
)
from tubebridge.services.crypto import CryptoContext
from tubebridge.services.extraction import ExtractionError
from tubebridge.services.segment_rewrite import PlaylistFetchError, PlaylistRewriter, parse_ranges
from tubebridge.services.stream_assembly import RequestOrigin

LOGGER = logging.getLogger("tubebridge.api")

PLAYLIST_MEDIA_TYPE = "application/vnd.apple.mpegurl"
_SESSION_NOT_FOUND = "session not found"
_SESSION_EXPIRED = "session expired"

# Failures a protocol route answers with an empty payload instead of an error.
_PROTOCOL_FAILURES = (
    ConfigTokenError,
    SessionExpiredError,
    ExtractionError,
    UnknownIdentifierError,
)

router = APIRouter()


def _request_origin(request: Request, config_ref: str) -> RequestOrigin:
    return RequestOrigin(
        base_url=str(request.base_url).rstrip("/"),
        config_ref=config_ref,
        referrer=request.headers.get("referer") or None,
    )


def parse_catalog_extra(extra: str | None) -> CatalogQuery:
    """Parses the `search=..&genre=..&skip=..` path segment of a catalog request."""
    if not extra:
        return CatalogQuery()
    values = dict(parse_qsl(extra, keep_blank_values=True))
    try:
        skip = max(0, int(values.get("skip", "0") or 0))
    except ValueError:
        skip = 0
    return CatalogQuery(
        search=values.get("search") or None,
        genre=values.get("genre") or None,
        skip=skip,
    )


async def _load_config(
    resolver: ConfigResolver,
    config_ref: str,
) -> tuple[UserConfig, str | None]:
    config = await run_in_threadpool(resolver.load, config_ref)
    return config, resolver.decrypt_secret(config)


@router.post("/encrypt", response_class=PlainTextResponse, tags=["config"], operation_id="encrypt")
def encrypt_config_secret(
    payload: Annotated[Any, Body()],
    crypto: Annotated[CryptoContext, Depends(get_crypto)],
) -> PlainTextResponse:
    return PlainTextResponse(crypto.encrypt_json(payload))


@router.get("/{config}/manifest.json", tags=["protocol"], operation_id="manifest")
async def manifest(
    config: str,
    resolver: Annotated[ConfigResolver, Depends(get_config_resolver)],
) -> dict[str, Any]:
    try:
        user_config = await run_in_threadpool(resolver.load, unquote(config))
    except SessionExpiredError as exc:
        raise HTTPException(status_code=410, detail=_SESSION_EXPIRED) from exc
    except ConfigTokenError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return build_manifest(user_config)


@router.get(
    "/{config}/catalog/{catalog_type}/{catalog_id}.json",
    tags=["protocol"],
    operation_id="catalog",
)
async def catalog(
    config: str,
    catalog_type: str,
    catalog_id: str,
    resolver: Annotated[ConfigResolver, Depends(get_config_resolver)],
    service: Annotated[AddonService, Depends(get_addon_service)],
) -> dict[str, Any]:
    return await _catalog(config, catalog_type, catalog_id, None, resolver, service)


@router.get(
    "/{config}/catalog/{catalog_type}/{catalog_id}/{extra}.json",
    tags=["protocol"],
    operation_id="catalog_with_extra",
)
async def catalog_with_extra(
    config: str,
    catalog_type: str,
    catalog_id: str,
    extra: str,
    resolver: Annotated[ConfigResolver, Depends(get_config_resolver)],
    service: Annotated[AddonService, Depends(get_addon_service)],
) -> dict[str, Any]:
    return await _catalog(config, catalog_type, catalog_id, extra, resolver, service)


async def _catalog(
    config_ref: str,
    catalog_type: str,
    catalog_id: str,
    extra: str | None,
    resolver: ConfigResolver,
    service: AddonService,
) -> dict[str, Any]:
    catalog_id = unquote(catalog_id)
    context_tokens = bind_contextvars(catalog_id=catalog_id, catalog_type=unquote(catalog_type))
    try:
        user_config, secret = await _load_config(resolver, unquote(config_ref))
        return await service.catalog(user_config, secret, catalog_id, parse_catalog_extra(extra))
    except _PROTOCOL_FAILURES:
        LOGGER.warning("catalog request failed catalog_id=%s", catalog_id, exc_info=True)
        return {"metas": []}
    finally:
        reset_contextvars(**context_tokens)


@router.get("/{config}/meta/{meta_type}/{meta_id}.json", tags=["protocol"], operation_id="meta")
async def meta(
    config: str,
    meta_type: str,
    meta_id: str,
    request: Request,
    resolver: Annotated[ConfigResolver, Depends(get_config_resolver)],
    service: Annotated[AddonService, Depends(get_addon_service)],
) -> dict[str, Any]:
    config_ref = unquote(config)
    meta_id = unquote(meta_id)
    context_tokens = bind_contextvars(meta_id=meta_id)
    try:
        user_config, secret = await _load_config(resolver, config_ref)
        return await service.meta(
            user_config,
            secret,
            unquote(meta_type),
            meta_id,
            _request_origin(request, config_ref),
        )
    except _PROTOCOL_FAILURES:
        LOGGER.warning("meta request failed meta_id=%s", meta_id, exc_info=True)
        return {"meta": {}}
    finally:
        reset_contextvars(**context_tokens)


@router.get(
    "/{config}/stream/{stream_type}/{stream_id}.json",
    tags=["protocol"],
    operation_id="streams",
)
async def streams(
    config: str,
    stream_type: str,
    stream_id: str,
    request: Request,
    resolver: Annotated[ConfigResolver, Depends(get_config_resolver)],
    service: Annotated[AddonService, Depends(get_addon_service)],
) -> dict[str, Any]:
    _ = stream_type
    config_ref = unquote(config)
    stream_id = unquote(stream_id)
    context_tokens = bind_contextvars(stream_id=stream_id)
    try:
        user_config, secret = await _load_config(resolver, config_ref)
        return await service.streams(
            user_config,
            secret,
            stream_id,
            _request_origin(request, config_ref),
        )
    except _PROTOCOL_FAILURES:
        LOGGER.warning("stream request failed stream_id=%s", stream_id, exc_info=True)
        return {"streams": []}
    finally:
        reset_contextvars(**context_tokens)


@router.get("/stream/{encoded}", tags=["protocol"], operation_id="segment_rewrite")
async def segment_rewrite(
    encoded: str,
    rewriter: Annotated[PlaylistRewriter, Depends(get_playlist_rewriter)],
    ranges: Annotated[str | None, Query()] = None,
    mode: Annotated[SegmentRemovalMode, Query()] = "strict",
) -> Response:
    playlist_url = unquote(encoded)
    try:
        parsed_ranges = parse_ranges(ranges)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        rewritten = await rewriter.rewrite(playlist_url, parsed_ranges, mode)
    except PlaylistFetchError as exc:
        LOGGER.warning("segment rewrite fetch failed", exc_info=True)
        raise HTTPException(status_code=502, detail="playlist fetch failed") from exc

    if rewritten.passthrough_url is not None:
        return RedirectResponse(rewritten.passthrough_url, status_code=307)
    return Response(content=rewritten.body, media_type=PLAYLIST_MEDIA_TYPE)


def _validated_config(raw: dict[str, Any]) -> dict[str, Any]:
    try:
        parse_user_config(raw)
    except ConfigTokenError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return raw


def _require_snapshot(lookup: SessionLookup) -> SessionSnapshot:
    if lookup is None:
        raise HTTPException(status_code=404, detail=_SESSION_NOT_FOUND)
    if isinstance(lookup, SessionExpired):
        raise HTTPException(status_code=410, detail=_SESSION_EXPIRED)
    return lookup


@router.post(
    "/sessions",
    response_model=SessionCreateResponse,
    status_code=201,
    tags=["sessions"],
    operation_id="create_session",
)
def create_session(
    request: SessionCreateRequest,
    repository: Annotated[SessionRepository, Depends(get_session_repository)],
) -> SessionCreateResponse:
    snapshot = repository.create(_validated_config(request.config), request.password)
    return SessionCreateResponse(session_id=snapshot.session_id, expires_at=snapshot.expires_at)


@router.post(
    "/sessions/{session_id}/read",
    response_model=SessionView,
    tags=["sessions"],
    operation_id="read_session",
)
def read_session(
    session_id: str,
    repository: Annotated[SessionRepository, Depends(get_session_repository)],
    request: SessionReadRequest | None = None,
) -> SessionView:
    password = request.password if request is not None else None
    snapshot = _require_snapshot(repository.read(session_id, password))
    return SessionView(
        session_id=snapshot.session_id,
        config=snapshot.config,
        created_at=snapshot.created_at,
        last_accessed_at=snapshot.last_accessed_at,
        expires_at=snapshot.expires_at,
    )


@router.put("/sessions/{session_id}", tags=["sessions"], operation_id="update_session")
def update_session(
    session_id: str,
    request: SessionUpdateRequest,
    repository: Annotated[SessionRepository, Depends(get_session_repository)],
) -> dict[str, bool]:
    config = _validated_config(request.config)
    _require_snapshot(repository.update(session_id, request.password, config))
    return {"updated": True}


@router.delete("/sessions/{session_id}", tags=["sessions"], operation_id="delete_session")
def delete_session(
    session_id: str,
    request: SessionDeleteRequest,
    repository: Annotated[SessionRepository, Depends(get_session_repository)],
) -> dict[str, bool]:
    if not repository.delete(session_id, request.password):
        raise HTTPException(status_code=404, detail=_SESSION_NOT_FOUND)
    return {"deleted": True}
