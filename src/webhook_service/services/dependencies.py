"""Wiring of stores, dispatcher and services into the aiohttp application."""
# pyright: reportMissingImports=false
from __future__ import annotations

from datetime import datetime
from typing import Callable
from uuid import UUID

import structlog
from aiohttp import web

from backend_common.db.pool import close_pool, init_pool_service, ping
from webhook_service.dispatcher import WebhookDispatcher, WebhookHttpClient
from webhook_service.domain.webhooks import utcnow
from webhook_service.repositories import (
    DeliveryStore,
    InMemoryDeliveryRepository,
    InMemoryWebhookRepository,
    WebhookDeliveryRepository,
    WebhookRepository,
    WebhookStore,
)
from webhook_service.services.rate_limiter import RateLimiter, SlidingWindowRateLimiter
from webhook_service.services.webhooks import WebhookService
from webhook_service.settings import settings

logger = structlog.get_logger(__name__)

WEBHOOK_STORE_KEY = "webhook_store"
DELIVERY_STORE_KEY = "delivery_store"
DISPATCHER_KEY = "webhook_dispatcher"
WEBHOOK_SERVICE_KEY = "webhook_service"
_OVERRIDES_KEY = "webhook_overrides"

TENANT_ID_HEADER = "X-Tenant-Id"


def configure_overrides(
    app: web.Application,
    *,
    webhooks: WebhookStore | None = None,
    deliveries: DeliveryStore | None = None,
    rate_limiter: RateLimiter | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> None:
    """Record components to use instead of the settings-driven defaults."""
    app[_OVERRIDES_KEY] = {
        "webhooks": webhooks,
        "deliveries": deliveries,
        "rate_limiter": rate_limiter,
        "clock": clock,
    }


async def setup_services(app: web.Application) -> None:
    """Create stores, dispatcher and service. Register with ``app.on_startup``."""
    overrides = app.get(_OVERRIDES_KEY, {})
    webhooks = overrides.get("webhooks")
    deliveries = overrides.get("deliveries")
    clock = overrides.get("clock") or utcnow

    if webhooks is None or deliveries is None:
        if settings.storage_backend == "memory":
            webhooks = webhooks or InMemoryWebhookRepository()
            deliveries = deliveries or InMemoryDeliveryRepository()
        else:
            pool = await init_pool_service(settings)
            webhooks = webhooks or WebhookRepository(pool)
            deliveries = deliveries or WebhookDeliveryRepository(pool)

    dispatcher = WebhookDispatcher(
        webhooks,
        deliveries,
        WebhookHttpClient(
            timeout_s=settings.webhook_request_timeout_seconds,
            signature_header=settings.webhook_signature_header,
        ),
        overrides.get("rate_limiter") or SlidingWindowRateLimiter(),
        workers=settings.webhook_dispatch_workers,
        interval_seconds=settings.webhook_dispatch_interval_seconds,
        batch_size=settings.webhook_dispatch_batch_size,
        fail_fast_on_client_error=settings.webhook_fail_fast_on_client_error,
        clock=clock,
    )

    app[WEBHOOK_STORE_KEY] = webhooks
    app[DELIVERY_STORE_KEY] = deliveries
    app[DISPATCHER_KEY] = dispatcher
    app[WEBHOOK_SERVICE_KEY] = WebhookService(webhooks, deliveries, dispatcher, clock)
    logger.info("webhook services ready", storage_backend=settings.storage_backend)


async def start_dispatcher(app: web.Application) -> None:
    await app[DISPATCHER_KEY].start(app)


async def stop_dispatcher(app: web.Application) -> None:
    dispatcher = app.get(DISPATCHER_KEY)
    if dispatcher is not None:
        await dispatcher.stop(app)


async def close_storage(_app: web.Application) -> None:
    await close_pool()


async def dispatcher_ready(app: web.Application) -> bool:
    dispatcher = app.get(DISPATCHER_KEY)
    return dispatcher is not None and dispatcher.running


async def storage_ready(app: web.Application) -> bool:
    if isinstance(app.get(DELIVERY_STORE_KEY), InMemoryDeliveryRepository):
        return True
    return await ping()


READINESS_CHECKS = {
    "dispatcher": dispatcher_ready,
    "storage": storage_ready,
}


def get_webhook_service(request: web.Request) -> WebhookService:
    return request.app[WEBHOOK_SERVICE_KEY]


def resolve_tenant_id(request: web.Request) -> UUID:
    """Tenant scope of an admin request; set by the API gateway."""
    value = request.headers.get(TENANT_ID_HEADER)
    if value is None:
        raise web.HTTPUnauthorized(reason=f"Header {TENANT_ID_HEADER} is required")
    try:
        return UUID(value)
    except ValueError as exc:
        raise web.HTTPBadRequest(text=f"Invalid {TENANT_ID_HEADER}") from exc
