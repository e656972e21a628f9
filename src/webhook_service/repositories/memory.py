"""In-process subscription store and delivery ledger.

Used with ``storage_backend="memory"`` for single-instance deployments and in
tests. Rows are kept as model copies so callers never alias stored state, and
every check-and-write runs under one ``asyncio.Lock``.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Collection, Dict, List, Sequence, Tuple
from uuid import UUID

from webhook_service.core.exceptions import NotFoundError
from webhook_service.domain import scheduling
from webhook_service.domain.enums import DeliveryStatus
from webhook_service.domain.webhooks import Webhook, WebhookDelivery


def _page(items: list, limit: int, offset: int) -> Tuple[list, int]:
    return items[offset : offset + limit], len(items)


class InMemoryWebhookRepository:
    def __init__(self) -> None:
        self._rows: Dict[UUID, Webhook] = {}
        self._lock = asyncio.Lock()

    async def create(self, webhook: Webhook) -> Webhook:
        async with self._lock:
            self._rows[webhook.id] = webhook.model_copy(deep=True)
            return webhook.model_copy(deep=True)

    async def find(self, webhook_id: UUID) -> Webhook | None:
        row = self._rows.get(webhook_id)
        return row.model_copy(deep=True) if row is not None else None

    async def get(self, webhook_id: UUID) -> Webhook:
        webhook = await self.find(webhook_id)
        if webhook is None:
            raise NotFoundError("Webhook not found")
        return webhook

    async def save(self, webhook: Webhook) -> Webhook:
        async with self._lock:
            if webhook.id not in self._rows:
                raise NotFoundError("Webhook not found")
            self._rows[webhook.id] = webhook.model_copy(deep=True)
            return webhook.model_copy(deep=True)

    async def delete(self, webhook_id: UUID) -> None:
        async with self._lock:
            if self._rows.pop(webhook_id, None) is None:
                raise NotFoundError("Webhook not found")

    async def list_by_tenant(
        self, tenant_id: UUID, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[Webhook], int]:
        rows = [w for w in self._rows.values() if w.tenant_id == tenant_id]
        rows.sort(key=lambda w: w.created_at, reverse=True)
        page, total = _page(rows, limit, offset)
        return [w.model_copy(deep=True) for w in page], total

    async def list_active(self, tenant_id: UUID | None = None) -> List[Webhook]:
        rows = [
            w
            for w in self._rows.values()
            if w.is_active and (tenant_id is None or w.tenant_id == tenant_id)
        ]
        rows.sort(key=lambda w: w.created_at)
        return [w.model_copy(deep=True) for w in rows]


class InMemoryDeliveryRepository:
    def __init__(self) -> None:
        self._rows: Dict[UUID, WebhookDelivery] = {}
        self._lock = asyncio.Lock()

    async def insert_many(self, deliveries: Sequence[WebhookDelivery]) -> List[WebhookDelivery]:
        async with self._lock:
            for delivery in deliveries:
                self._rows[delivery.id] = delivery.model_copy(deep=True)
        return [d.model_copy(deep=True) for d in deliveries]

    async def get(self, delivery_id: UUID) -> WebhookDelivery:
        row = self._rows.get(delivery_id)
        if row is None:
            raise NotFoundError("Webhook delivery not found")
        return row.model_copy(deep=True)

    async def list_due(
        self,
        now: datetime,
        *,
        limit: int = 100,
        exclude_webhooks: Collection[UUID] = (),
    ) -> List[WebhookDelivery]:
        due = scheduling.select_due(self._rows.values(), now, limit, exclude_webhooks)
        return [d.model_copy(deep=True) for d in due]

    async def claim(self, delivery_id: UUID, now: datetime) -> WebhookDelivery | None:
        async with self._lock:
            row = self._rows.get(delivery_id)
            if row is None or not scheduling.is_due(row, now):
                return None
            row.start_delivery(now)
            return row.model_copy(deep=True)

    async def save_if(
        self,
        delivery: WebhookDelivery,
        *,
        expected_status: DeliveryStatus,
        expected_attempt_count: int,
    ) -> bool:
        async with self._lock:
            row = self._rows.get(delivery.id)
            if (
                row is None
                or row.status != expected_status
                or row.attempt_count != expected_attempt_count
            ):
                return False
            self._rows[delivery.id] = delivery.model_copy(deep=True)
            return True

    async def list_stuck(
        self, started_before: datetime, *, limit: int = 100
    ) -> List[WebhookDelivery]:
        stuck = [d for d in self._rows.values() if scheduling.is_stuck(d, started_before)]
        stuck.sort(key=lambda d: d.started_at)  # type: ignore[arg-type, return-value]
        return [d.model_copy(deep=True) for d in stuck[:limit]]

    def _filtered(self, predicate, status: DeliveryStatus | None) -> List[WebhookDelivery]:
        rows = [
            d
            for d in self._rows.values()
            if predicate(d) and (status is None or d.status == status)
        ]
        rows.sort(key=lambda d: d.created_at, reverse=True)
        return rows

    async def list_by_webhook(
        self,
        webhook_id: UUID,
        *,
        status: DeliveryStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[WebhookDelivery], int]:
        rows = self._filtered(lambda d: d.webhook_id == webhook_id, status)
        page, total = _page(rows, limit, offset)
        return [d.model_copy(deep=True) for d in page], total

    async def list_by_tenant(
        self,
        tenant_id: UUID,
        *,
        status: DeliveryStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[WebhookDelivery], int]:
        rows = self._filtered(lambda d: d.tenant_id == tenant_id, status)
        page, total = _page(rows, limit, offset)
        return [d.model_copy(deep=True) for d in page], total

    async def count_by_status(self, webhook_id: UUID) -> dict[DeliveryStatus, int]:
        counts = {status: 0 for status in DeliveryStatus}
        for d in self._rows.values():
            if d.webhook_id == webhook_id:
                counts[d.status] += 1
        return counts

    async def delete_delivered_before(self, cutoff: datetime) -> int:
        async with self._lock:
            doomed = [
                d.id
                for d in self._rows.values()
                if d.status == DeliveryStatus.DELIVERED
                and d.delivered_at is not None
                and d.delivered_at < cutoff
            ]
            for delivery_id in doomed:
                del self._rows[delivery_id]
        return len(doomed)
