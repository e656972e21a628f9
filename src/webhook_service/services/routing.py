"""Event router: fan a domain event out to matching subscriptions."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, List
from uuid import UUID

import structlog

from webhook_service.domain.enums import DeliveryStatus
from webhook_service.domain.webhooks import WebhookDelivery, utcnow
from webhook_service.repositories.protocols import DeliveryStore, WebhookStore

logger = structlog.get_logger(__name__)


class EventRouter:
    """Creates one PENDING delivery per active subscription matching an event.

    Storage errors propagate; producers own their at-least-once guarantees
    upstream of this call.
    """

    def __init__(
        self,
        webhooks: WebhookStore,
        deliveries: DeliveryStore,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._webhooks = webhooks
        self._deliveries = deliveries
        self._clock = clock

    async def route(
        self,
        event_type: str,
        event_id: UUID,
        payload: dict[str, Any],
        *,
        tenant_id: UUID | None = None,
    ) -> List[WebhookDelivery]:
        subscriptions = await self._webhooks.list_active(tenant_id)
        now = self._clock()
        fan_out = [
            WebhookDelivery(
                webhook_id=sub.id,
                tenant_id=sub.tenant_id,
                event_type=event_type,
                event_id=event_id,
                payload=payload,
                status=DeliveryStatus.PENDING,
                attempt_count=0,
                next_retry_at=None,
                created_at=now,
                updated_at=now,
            )
            for sub in subscriptions
            if sub.subscribes_to(event_type)
        ]
        if not fan_out:
            logger.debug("webhook_event unrouted", event_type=event_type, event_id=str(event_id))
            return []
        created = await self._deliveries.insert_many(fan_out)
        logger.info(
            "webhook_event routed",
            event_type=event_type,
            event_id=str(event_id),
            deliveries=len(created),
        )
        return created
