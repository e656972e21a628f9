"""Worker: purge old delivered webhook deliveries."""
from __future__ import annotations

from datetime import datetime, timedelta

from aiohttp import web

from webhook_service.services.dependencies import DELIVERY_STORE_KEY
from webhook_service.settings import settings


async def webhook_purge_delivered(app: web.Application, now: datetime) -> str | None:
    """Delete delivered rows older than ``webhook_delivered_retention_days``."""
    cutoff = now - timedelta(days=settings.webhook_delivered_retention_days)
    purged = await app[DELIVERY_STORE_KEY].delete_delivered_before(cutoff)
    return f"purged={purged}" if purged else None
