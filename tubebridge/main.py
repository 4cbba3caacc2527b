from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.types import ASGIApp, Receive, Scope, Send
from structlog.contextvars import bind_contextvars, reset_contextvars

from tubebridge.api.routes import router
from tubebridge.dependencies import get_session_repository, get_settings, get_telemetry
from tubebridge.logging_config import configure_application_logging
from tubebridge.services.session_sweeper import SessionSweeper

_ADMIN_ROUTES = frozenset({"health", "encrypt", "sessions"})
_PROTOCOL_RESOURCES = frozenset({"manifest.json", "catalog", "meta", "stream"})


def health_check() -> dict[str, str]:
    return {"status": "ok"}


def _route_family(path: str) -> str:
    segments = [segment for segment in path.split("/") if segment]
    if not segments:
        return "root"
    if segments[0] in _ADMIN_ROUTES:
        return segments[0]
    if segments[0] == "stream":
        return "segment_rewrite"
    if len(segments) > 1 and segments[1] in _PROTOCOL_RESOURCES:
        return segments[1].removesuffix(".json")
    return "other"


class RawPathRoutingMiddleware:
    """Routes on the still-encoded request path.

    Identifiers and config tokens may contain encoded `/`; matching on the raw
    path keeps each of them inside a single path segment. Handlers decode
    their own path parameters.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            raw_path = scope.get("raw_path")
            if isinstance(raw_path, bytes) and raw_path:
                scope = dict(scope)
                scope["path"] = raw_path.split(b"?", 1)[0].decode("latin-1")
        await self.app(scope, receive, send)


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_application_logging(settings)
    sweeper: SessionSweeper | None = None

    if settings.session_sweep_enabled:
        sweeper = SessionSweeper(
            get_session_repository(),
            settings.session_sweep_interval_seconds,
            telemetry=get_telemetry(),
            lock_path=settings.data_dir / "sweeper.lock",
        )
        sweeper.start()

    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.stop()


def create_app() -> FastAPI:
    app = FastAPI(title="TubeBridge", version="0.1.0", lifespan=app_lifespan)

    async def request_context_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        incoming_request_id = request.headers.get("X-Request-ID")
        request_id = (
            incoming_request_id.strip()
            if isinstance(incoming_request_id, str) and incoming_request_id.strip()
            else str(uuid4())
        )
        context_tokens = bind_contextvars(
            http_request_id=request_id,
            http_method=request.method,
        )
        # Paths carry config tokens, so only the route family is reported.
        route_family = _route_family(request.url.path)
        try:
            with get_telemetry().span(
                "http.request",
                request_id=request_id,
                method=request.method,
                route=route_family,
            ) as outcome:
                response = await call_next(request)
                outcome["status_code"] = response.status_code
        finally:
            reset_contextvars(**context_tokens)
        response.headers["X-Request-ID"] = request_id
        return response

    app.middleware("http")(request_context_middleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )
    app.add_middleware(RawPathRoutingMiddleware)
    app.add_api_route(
        "/health",
        health_check,
        methods=["GET"],
        tags=["system"],
        operation_id="health_check",
    )
    app.include_router(router)

    return app


app = create_app()
