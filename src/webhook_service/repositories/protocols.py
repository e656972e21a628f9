"""Storage contracts implemented by the Postgres and in-process repositories."""
from __future__ import annotations

from datetime import datetime
from typing import Collection, List, Protocol, Sequence, Tuple
from uuid import UUID

from webhook_service.domain.enums import DeliveryStatus
from webhook_service.domain.webhooks import Webhook, WebhookDelivery


class WebhookStore(Protocol):
    async def create(self, webhook: Webhook) -> Webhook: ...

    async def get(self, webhook_id: UUID) -> Webhook: ...

    async def find(self, webhook_id: UUID) -> Webhook | None: ...

    async def save(self, webhook: Webhook) -> Webhook: ...

    async def delete(self, webhook_id: UUID) -> None: ...

    async def list_by_tenant(
        self, tenant_id: UUID, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[Webhook], int]: ...

    async def list_active(self, tenant_id: UUID | None = None) -> List[Webhook]: ...


class DeliveryStore(Protocol):
    async def insert_many(self, deliveries: Sequence[WebhookDelivery]) -> List[WebhookDelivery]: ...

    async def get(self, delivery_id: UUID) -> WebhookDelivery: ...

    async def list_due(
        self,
        now: datetime,
        *,
        limit: int = 100,
        exclude_webhooks: Collection[UUID] = (),
    ) -> List[WebhookDelivery]:
        """Due rows in dispatch order, skipping rows of ``exclude_webhooks``."""
        ...

    async def claim(self, delivery_id: UUID, now: datetime) -> WebhookDelivery | None:
        """Atomically run ``start_delivery`` if the row is still due.

        Returns the claimed row, or None when another worker won the race or
        the row is no longer due.
        """
        ...

    async def save_if(
        self,
        delivery: WebhookDelivery,
        *,
        expected_status: DeliveryStatus,
        expected_attempt_count: int,
    ) -> bool:
        """Persist ``delivery`` only if the stored row still has the expected
        status and attempt count. Returns whether the write happened."""
        ...

    async def list_stuck(
        self, started_before: datetime, *, limit: int = 100
    ) -> List[WebhookDelivery]: ...

    async def list_by_webhook(
        self,
        webhook_id: UUID,
        *,
        status: DeliveryStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[WebhookDelivery], int]: ...

    async def list_by_tenant(
        self,
        tenant_id: UUID,
        *,
        status: DeliveryStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[WebhookDelivery], int]: ...

    async def count_by_status(self, webhook_id: UUID) -> dict[DeliveryStatus, int]: ...

    async def delete_delivered_before(self, cutoff: datetime) -> int: ...
