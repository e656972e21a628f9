"""Worker: fail deliveries stuck in ``in_progress`` after a crashed attempt."""
from __future__ import annotations

from datetime import datetime, timedelta

import structlog
from aiohttp import web

from webhook_service.domain.enums import DeliveryStatus
from webhook_service.services.dependencies import DELIVERY_STORE_KEY
from webhook_service.settings import settings

logger = structlog.get_logger(__name__)

STUCK_ERROR = "Delivery attempt did not complete (worker lost), treated as failed"


async def webhook_reclaim_stuck(app: web.Application, now: datetime) -> str | None:
    """Mark attempts whose lease is older than the stuck timeout as failed.

    ``mark_failed`` then re-queues them with the usual backoff, or exhausts
    them when no attempts remain.
    """
    deliveries = app[DELIVERY_STORE_KEY]
    cutoff = now - timedelta(seconds=settings.stuck_timeout_seconds)
    reclaimed = 0
    for delivery in await deliveries.list_stuck(cutoff):
        delivery.mark_failed(None, None, STUCK_ERROR, now)
        saved = await deliveries.save_if(
            delivery,
            expected_status=DeliveryStatus.IN_PROGRESS,
            expected_attempt_count=delivery.attempt_count,
        )
        if saved:
            reclaimed += 1
            logger.warning(
                "webhook_delivery reclaimed",
                delivery_id=str(delivery.id),
                attempt=delivery.attempt_count,
                status=delivery.status.value,
            )
    return f"reclaimed={reclaimed}" if reclaimed else None
