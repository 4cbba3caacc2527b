from __future__ import annotations

from datetime import timedelta
from functools import lru_cache

from tubebridge.config import AppSettings, load_settings
from tubebridge.repositories.session_repository import SessionRepository
from tubebridge.services.addon_service import AddonService
from tubebridge.services.config_resolver import ConfigResolver
from tubebridge.services.crypto import CryptoContext
from tubebridge.services.enrichment import BrandingClient, SponsorSegmentClient
from tubebridge.services.extraction import ExtractionOrchestrator, TempFileNamer
from tubebridge.services.segment_rewrite import PlaylistRewriter
from tubebridge.services.stream_assembly import StreamAssembler
from tubebridge.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


@lru_cache(maxsize=1)
def get_crypto() -> CryptoContext:
    return CryptoContext.from_optional_key(get_settings().encryption_key_bytes())


@lru_cache(maxsize=1)
def get_session_repository() -> SessionRepository:
    settings = get_settings()
    return SessionRepository(
        settings.sessions_dir,
        expiry=timedelta(days=settings.session_expiry_days),
    )


@lru_cache(maxsize=1)
def get_config_resolver() -> ConfigResolver:
    return ConfigResolver(sessions=get_session_repository(), crypto=get_crypto())


@lru_cache(maxsize=1)
def get_orchestrator() -> ExtractionOrchestrator:
    settings = get_settings()
    return ExtractionOrchestrator(
        binary=settings.ytdlp_binary,
        extractors=settings.ytdlp_extractors,
        timeout_seconds=settings.ytdlp_timeout_seconds,
        namer=TempFileNamer(settings.temp_dir),
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_stream_assembler() -> StreamAssembler:
    settings = get_settings()
    return StreamAssembler(
        sponsor_client=SponsorSegmentClient(
            base_url=settings.sponsorblock_base_url,
            timeout_seconds=settings.http_timeout_seconds,
        ),
        branding_client=BrandingClient(
            base_url=settings.dearrow_base_url,
            thumbnail_url=settings.dearrow_thumbnail_url,
            timeout_seconds=settings.http_timeout_seconds,
        ),
    )


@lru_cache(maxsize=1)
def get_playlist_rewriter() -> PlaylistRewriter:
    return PlaylistRewriter(timeout_seconds=get_settings().http_timeout_seconds)


@lru_cache(maxsize=1)
def get_addon_service() -> AddonService:
    return AddonService(orchestrator=get_orchestrator(), assembler=get_stream_assembler())


def reset_cached_dependencies() -> None:
    get_addon_service.cache_clear()
    get_playlist_rewriter.cache_clear()
    get_stream_assembler.cache_clear()
    get_orchestrator.cache_clear()
    get_config_resolver.cache_clear()
    get_session_repository.cache_clear()
    get_crypto.cache_clear()
    get_telemetry.cache_clear()
    get_settings.cache_clear()
