"""Webhook domain service (subscription admin, publishing, delivery history)."""
from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, List
from uuid import UUID, uuid4

import structlog

from webhook_service.core.exceptions import (
    InvalidStatusTransitionError,
    ScopeMismatchError,
)
from webhook_service.domain.dto import WebhookCreateDTO, WebhookUpdateDTO
from webhook_service.domain.enums import DeliveryStatus
from webhook_service.domain.events import TEST_EVENT
from webhook_service.domain.webhooks import Webhook, WebhookDelivery, utcnow
from webhook_service.repositories.protocols import DeliveryStore, WebhookStore
from webhook_service.services.routing import EventRouter

if TYPE_CHECKING:
    from webhook_service.dispatcher import WebhookDispatcher

logger = structlog.get_logger(__name__)


class WebhookService:
    """Administrative operations exposed to the platform's CRUD layer."""

    def __init__(
        self,
        webhook_repository: WebhookStore,
        delivery_repository: DeliveryStore,
        dispatcher: "WebhookDispatcher | None" = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._webhooks = webhook_repository
        self._deliveries = delivery_repository
        self._dispatcher = dispatcher
        self._clock = clock
        self._router = EventRouter(webhook_repository, delivery_repository, clock)

    # -- events --------------------------------------------------------------

    async def publish(
        self,
        event_type: str,
        event_id: UUID,
        payload: dict[str, Any],
        *,
        tenant_id: UUID | None = None,
    ) -> List[WebhookDelivery]:
        return await self._router.route(event_type, event_id, payload, tenant_id=tenant_id)

    # -- subscriptions -------------------------------------------------------

    async def create_webhook(self, tenant_id: UUID, data: WebhookCreateDTO) -> Webhook:
        fields = data.model_dump(exclude_none=True)
        webhook = Webhook(tenant_id=tenant_id, **fields)
        created = await self._webhooks.create(webhook)
        logger.info("webhook created", webhook_id=str(created.id), events=created.events)
        return created

    async def get_webhook(self, tenant_id: UUID, webhook_id: UUID) -> Webhook:
        webhook = await self._webhooks.get(webhook_id)
        if webhook.tenant_id != tenant_id:
            raise ScopeMismatchError("Webhook belongs to another tenant")
        return webhook

    async def list_webhooks(
        self, tenant_id: UUID, *, limit: int = 50, offset: int = 0
    ) -> tuple[List[Webhook], int]:
        return await self._webhooks.list_by_tenant(tenant_id, limit=limit, offset=offset)

    async def update_webhook(
        self, tenant_id: UUID, webhook_id: UUID, updates: WebhookUpdateDTO
    ) -> Webhook:
        webhook = await self.get_webhook(tenant_id, webhook_id)
        webhook.update(**updates.changes())
        return await self._webhooks.save(webhook)

    async def activate_webhook(self, tenant_id: UUID, webhook_id: UUID) -> Webhook:
        webhook = await self.get_webhook(tenant_id, webhook_id)
        webhook.activate()
        return await self._webhooks.save(webhook)

    async def deactivate_webhook(self, tenant_id: UUID, webhook_id: UUID) -> Webhook:
        webhook = await self.get_webhook(tenant_id, webhook_id)
        webhook.deactivate()
        return await self._webhooks.save(webhook)

    async def regenerate_secret(self, tenant_id: UUID, webhook_id: UUID) -> Webhook:
        webhook = await self.get_webhook(tenant_id, webhook_id)
        webhook.regenerate_secret()
        logger.info("webhook secret regenerated", webhook_id=str(webhook_id))
        return await self._webhooks.save(webhook)

    async def delete_webhook(self, tenant_id: UUID, webhook_id: UUID) -> bool:
        """Delete a subscription; one still referenced by deliveries is only
        deactivated. Returns True when the row was actually removed."""
        webhook = await self.get_webhook(tenant_id, webhook_id)
        counts = await self._deliveries.count_by_status(webhook_id)
        if sum(counts.values()):
            if webhook.is_active:
                webhook.deactivate()
                await self._webhooks.save(webhook)
            return False
        await self._webhooks.delete(webhook_id)
        return True

    async def send_test(self, tenant_id: UUID, webhook_id: UUID) -> WebhookDelivery:
        """Queue a ``webhook.test`` delivery for one subscription and attempt it
        right away when a dispatcher is attached."""
        webhook = await self.get_webhook(tenant_id, webhook_id)
        now = self._clock()
        delivery = WebhookDelivery(
            webhook_id=webhook.id,
            tenant_id=webhook.tenant_id,
            event_type=TEST_EVENT,
            event_id=uuid4(),
            payload={
                "message": "This is a test webhook delivery",
                "webhookId": str(webhook.id),
                "webhookName": webhook.name,
            },
            created_at=now,
            updated_at=now,
        )
        (created,) = await self._deliveries.insert_many([delivery])
        if self._dispatcher is not None:
            attempted = await self._dispatcher.dispatch_now(created)
            if attempted is not None:
                return attempted
        return created

    # -- deliveries ----------------------------------------------------------

    async def get_delivery(self, tenant_id: UUID, delivery_id: UUID) -> WebhookDelivery:
        delivery = await self._deliveries.get(delivery_id)
        if delivery.tenant_id != tenant_id:
            raise ScopeMismatchError("Webhook delivery belongs to another tenant")
        return delivery

    async def list_deliveries_for_webhook(
        self,
        tenant_id: UUID,
        webhook_id: UUID,
        *,
        status: DeliveryStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[List[WebhookDelivery], int]:
        await self.get_webhook(tenant_id, webhook_id)
        return await self._deliveries.list_by_webhook(
            webhook_id, status=status, limit=limit, offset=offset
        )

    async def list_deliveries_for_tenant(
        self,
        tenant_id: UUID,
        *,
        status: DeliveryStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[List[WebhookDelivery], int]:
        return await self._deliveries.list_by_tenant(
            tenant_id, status=status, limit=limit, offset=offset
        )

    async def delivery_stats(self, tenant_id: UUID, webhook_id: UUID) -> dict[str, int]:
        await self.get_webhook(tenant_id, webhook_id)
        counts = await self._deliveries.count_by_status(webhook_id)
        stats = {"total": sum(counts.values())}
        stats.update({status.value: counts.get(status, 0) for status in DeliveryStatus})
        return stats

    async def retry_delivery(self, tenant_id: UUID, delivery_id: UUID) -> WebhookDelivery:
        """Manual retry of a FAILED or EXHAUSTED delivery.

        The row goes back to PENDING and, when a dispatcher is attached, is
        attempted right away under the usual claim and rate-limit rules.
        """
        delivery = await self.get_delivery(tenant_id, delivery_id)
        previous_status = delivery.status
        delivery.schedule_manual_retry(self._clock())
        saved = await self._deliveries.save_if(
            delivery,
            expected_status=previous_status,
            expected_attempt_count=delivery.attempt_count,
        )
        if not saved:
            raise InvalidStatusTransitionError("Webhook delivery changed concurrently, retry again")
        logger.info(
            "webhook_delivery manual retry scheduled",
            delivery_id=str(delivery_id),
            attempt_count=delivery.attempt_count,
        )
        if self._dispatcher is not None:
            attempted = await self._dispatcher.dispatch_now(delivery)
            if attempted is not None:
                return attempted
        return delivery

