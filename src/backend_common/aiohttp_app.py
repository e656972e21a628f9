"""Shared aiohttp application helpers."""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Iterable, Literal, Mapping, Protocol

import structlog
from aiohttp import web
from aiohttp_cors import CorsConfig, ResourceOptions, setup as cors_setup

from backend_common.middleware.trace import create_trace_middleware

logger = structlog.get_logger(__name__)

# aiohttp_cors expects a sequence of strings (or "*"), not a comma-separated string.
_ALLOWED_HEADERS = (
    "Accept",
    "Content-Type",
    "Authorization",
    "X-Trace-Id",
    "X-Request-Id",
    "X-Tenant-Id",
)

_ALLOWED_METHODS = ("GET", "HEAD", "POST", "PATCH", "DELETE", "OPTIONS")

_EXPOSED_HEADERS = ("X-Trace-Id", "X-Request-Id")

# A readiness check gets the application and reports whether its component is up.
ReadinessCheck = Callable[[web.Application], Awaitable[bool]]

READINESS_TIMEOUT_SECONDS = 2.0


class SettingsProtocol(Protocol):
    """Settings consumed by the app helpers."""

    app_name: str
    env: Literal["development", "staging", "production"]
    cors_allowed_origins: list[str]


def create_base_app(
    settings: SettingsProtocol,
    *,
    middlewares: Iterable[Any] = (),
) -> tuple[web.Application, CorsConfig]:
    """Create an app whose first middleware is request tracing.

    ``middlewares`` run inside the trace middleware, so errors they raise are
    still logged with the request's trace context.
    """
    app = web.Application(middlewares=[create_trace_middleware(settings.app_name), *middlewares])
    cors = cors_setup(
        app,
        defaults={
            origin: ResourceOptions(
                allow_credentials=True,
                expose_headers=_EXPOSED_HEADERS,
                allow_headers=_ALLOWED_HEADERS,
                allow_methods=_ALLOWED_METHODS,
            )
            for origin in settings.cors_allowed_origins
        },
    )
    return app, cors


async def _run_check(app: web.Application, name: str, check: ReadinessCheck) -> str:
    try:
        ok = await asyncio.wait_for(check(app), timeout=READINESS_TIMEOUT_SECONDS)
    except Exception:
        logger.exception("readiness check failed", component=name)
        return "down"
    return "up" if ok else "down"


def add_healthcheck(
    app: web.Application,
    settings: SettingsProtocol,
    checks: Mapping[str, ReadinessCheck] | None = None,
) -> None:
    """Register ``GET /health`` (liveness) and ``GET /ready`` (readiness).

    ``/ready`` answers 503 while any of ``checks`` reports its component down.
    """

    async def healthcheck(_request: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "service": settings.app_name, "env": settings.env})

    async def readiness(request: web.Request) -> web.Response:
        components = {
            name: await _run_check(request.app, name, check) for name, check in (checks or {}).items()
        }
        ready = all(status == "up" for status in components.values())
        return web.json_response(
            {
                "status": "ready" if ready else "unavailable",
                "service": settings.app_name,
                "components": components,
            },
            status=200 if ready else 503,
        )

    app.router.add_get("/health", healthcheck)
    app.router.add_get("/ready", readiness)


def add_cors_to_routes(app: web.Application, cors: CorsConfig) -> None:
    """Apply CORS configuration to all routes in the app."""
    for route in list(app.router.routes()):
        cors.add(route)


async def read_json(request: web.Request) -> dict[str, Any]:
    """Parse a JSON object body, raising HTTPBadRequest on invalid input."""
    try:
        data = await request.json()
    except ValueError as exc:
        raise web.HTTPBadRequest(text="Invalid JSON payload") from exc
    if not isinstance(data, dict):
        raise web.HTTPBadRequest(text="JSON body must be an object")
    return data
