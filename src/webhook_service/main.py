"""aiohttp application entrypoint."""
from __future__ import annotations

from datetime import datetime
from typing import Callable

from aiohttp import web

from backend_common.aiohttp_app import add_cors_to_routes, add_healthcheck, create_base_app
from backend_common.logging_config import configure_logging

from webhook_service.api.router import setup_routes
from webhook_service.api.utils import domain_error_middleware
from webhook_service.domain.webhooks import utcnow
from webhook_service.otel import setup_otel, shutdown_otel
from webhook_service.repositories import DeliveryStore, WebhookStore
from webhook_service.services.dependencies import (
    READINESS_CHECKS,
    close_storage,
    configure_overrides,
    setup_services,
    start_dispatcher,
    stop_dispatcher,
)
from webhook_service.services.rate_limiter import RateLimiter
from webhook_service.settings import settings
from webhook_service.workers import start_background_worker, stop_background_worker

# Configure structured logging
configure_logging(settings.log_level, json_output=settings.log_json)


def create_app(
    *,
    webhooks: WebhookStore | None = None,
    deliveries: DeliveryStore | None = None,
    rate_limiter: RateLimiter | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> web.Application:
    setup_otel()

    app, cors = create_base_app(settings, middlewares=[domain_error_middleware])
    configure_overrides(
        app,
        webhooks=webhooks,
        deliveries=deliveries,
        rate_limiter=rate_limiter,
        clock=clock,
    )

    add_healthcheck(app, settings, READINESS_CHECKS)
    setup_routes(app)

    app.on_startup.append(setup_services)
    app.on_startup.append(start_dispatcher)
    app.on_startup.append(start_background_worker)
    # Reverse order: the sweep stops before the dispatcher drains.
    app.on_cleanup.append(stop_background_worker)
    app.on_cleanup.append(stop_dispatcher)
    app.on_cleanup.append(close_storage)
    app.on_cleanup.append(shutdown_otel)

    add_cors_to_routes(app, cors)

    return app


def main() -> None:
    web.run_app(create_app(), host=settings.host, port=settings.port, access_log=None)


if __name__ == "__main__":
    main()
