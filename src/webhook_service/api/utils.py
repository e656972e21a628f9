"""Helper utilities for API handlers."""
# pyright: reportMissingImports=false
from __future__ import annotations

from typing import Any
from uuid import UUID

from aiohttp import web
from pydantic import ValidationError

# Re-export read_json from backend_common so handlers import from one place.
from backend_common.aiohttp_app import read_json as read_json  # noqa: F401
from webhook_service.core.exceptions import (
    InvalidStatusTransitionError,
    InvalidWebhookError,
    NotFoundError,
    ScopeMismatchError,
)
from webhook_service.domain.enums import DeliveryStatus


def parse_uuid(value: str, label: str) -> UUID:
    try:
        return UUID(str(value))
    except (ValueError, TypeError) as exc:
        raise web.HTTPBadRequest(text=f"Invalid {label}") from exc


def parse_status(request: web.Request) -> DeliveryStatus | None:
    raw = request.rel_url.query.get("status")
    if raw is None or raw == "":
        return None
    try:
        return DeliveryStatus(raw.lower())
    except ValueError as exc:
        raise web.HTTPBadRequest(text=f"Invalid status: {raw}") from exc


def pagination_params(
    request: web.Request,
    *,
    default_limit: int = 50,
    max_limit: int = 100,
) -> tuple[int, int]:
    query = request.rel_url.query
    try:
        limit = int(query.get("limit", str(default_limit)))
        offset = int(query.get("offset", "0"))
    except ValueError as exc:
        raise web.HTTPBadRequest(text="limit and offset must be integers") from exc
    if limit <= 0:
        limit = default_limit
    limit = min(limit, max_limit)
    if offset < 0:
        offset = 0
    return limit, offset


def paginated_response(
    items: list[Any],
    *,
    limit: int,
    offset: int,
    key: str,
    total: int,
) -> dict[str, Any]:
    page = offset // limit + 1 if limit else 1
    return {
        key: items,
        "total": total,
        "page": page,
        "page_size": limit,
    }


@web.middleware
async def domain_error_middleware(request: web.Request, handler):
    """Translate domain exceptions raised by handlers into HTTP errors."""
    try:
        return await handler(request)
    except (NotFoundError, ScopeMismatchError) as exc:
        # Foreign-tenant rows are reported as missing.
        raise web.HTTPNotFound(text=str(exc)) from exc
    except InvalidStatusTransitionError as exc:
        raise web.HTTPConflict(text=str(exc)) from exc
    except ValidationError as exc:
        raise web.HTTPBadRequest(text=exc.json(), content_type="application/json") from exc
    except InvalidWebhookError as exc:
        raise web.HTTPBadRequest(text=str(exc)) from exc
