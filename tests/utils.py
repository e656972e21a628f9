"""Shared helpers for webhook-service tests."""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from webhook_service.domain.webhooks import Webhook, WebhookDelivery

T0 = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable wall clock (``clock()``) plus a matching monotonic reading."""

    def __init__(self, start: datetime = T0):
        self.now = start
        self._start = start

    def __call__(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return (self.now - self._start).total_seconds()

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_headers(tenant_id: uuid.UUID) -> dict[str, str]:
    return {"X-Tenant-Id": str(tenant_id)}


def make_webhook(tenant_id: uuid.UUID | None = None, **overrides: Any) -> Webhook:
    fields: dict[str, Any] = {
        "tenant_id": tenant_id or uuid.uuid4(),
        "name": "CRM sync",
        "url": "https://hooks.example.com/crm",
        "secret": "test-secret",
        "events": ["booking.created"],
    }
    fields.update(overrides)
    return Webhook(**fields)


def make_delivery(webhook: Webhook, **overrides: Any) -> WebhookDelivery:
    fields: dict[str, Any] = {
        "webhook_id": webhook.id,
        "tenant_id": webhook.tenant_id,
        "event_type": "booking.created",
        "event_id": uuid.uuid4(),
        "payload": {"bookingId": "b-1"},
        "created_at": T0,
        "updated_at": T0,
    }
    fields.update(overrides)
    return WebhookDelivery(**fields)
