"""Delivery ledger backed by Postgres."""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Collection, List, Sequence, Tuple
from uuid import UUID

from asyncpg import Pool, Record  # type: ignore[import-untyped]

from webhook_service.core.exceptions import NotFoundError
from webhook_service.domain.enums import DeliveryStatus
from webhook_service.domain.scheduling import DUE_ORDER_SQL, DUE_PREDICATE_SQL
from webhook_service.domain.webhooks import MAX_RETRY_ATTEMPTS, WebhookDelivery
from webhook_service.repositories.base import BaseRepository


class WebhookDeliveryRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @classmethod
    def _to_model(cls, record: Record) -> WebhookDelivery:
        payload = cls._decode_json(dict(record), "payload")
        payload.pop("total_count", None)
        return WebhookDelivery.model_validate(payload)

    async def insert_many(self, deliveries: Sequence[WebhookDelivery]) -> List[WebhookDelivery]:
        if not deliveries:
            return []
        inserted: List[WebhookDelivery] = []
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                for delivery in deliveries:
                    record = await conn.fetchrow(
                        """
                        INSERT INTO webhook_deliveries (
                            id, webhook_id, tenant_id, event_type, event_id, payload,
                            status, attempt_count, next_retry_at, created_at, updated_at
                        )
                        VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8, $9, $10, $11)
                        RETURNING *
                        """,
                        delivery.id,
                        delivery.webhook_id,
                        delivery.tenant_id,
                        delivery.event_type,
                        delivery.event_id,
                        json.dumps(delivery.payload, default=str),
                        delivery.status.value,
                        delivery.attempt_count,
                        delivery.next_retry_at,
                        delivery.created_at,
                        delivery.updated_at,
                    )
                    assert record is not None
                    inserted.append(self._to_model(record))
        return inserted

    async def get(self, delivery_id: UUID) -> WebhookDelivery:
        record = await self._fetchrow(
            "SELECT * FROM webhook_deliveries WHERE id = $1", delivery_id
        )
        if record is None:
            raise NotFoundError("Webhook delivery not found")
        return self._to_model(record)

    async def list_due(
        self,
        now: datetime,
        *,
        limit: int = 100,
        exclude_webhooks: Collection[UUID] = (),
    ) -> List[WebhookDelivery]:
        records = await self._fetch(
            f"""
            SELECT *
            FROM webhook_deliveries
            WHERE {DUE_PREDICATE_SQL}
              AND webhook_id <> ALL($3::uuid[])
            {DUE_ORDER_SQL}
            LIMIT $4
            """,
            now,
            MAX_RETRY_ATTEMPTS,
            list(exclude_webhooks),
            limit,
        )
        return [self._to_model(r) for r in records]

    async def claim(self, delivery_id: UUID, now: datetime) -> WebhookDelivery | None:
        """
        Claim one delivery for an attempt.

        The due predicate is re-checked inside the UPDATE, so of several
        workers racing on the same row exactly one gets it back.

        Side-effects:
          - status -> in_progress
          - started_at -> now
          - attempt_count += 1
        """
        record = await self._fetchrow(
            f"""
            UPDATE webhook_deliveries
            SET status = 'in_progress',
                attempt_count = attempt_count + 1,
                started_at = $1,
                updated_at = $1
            WHERE id = $3
              AND {DUE_PREDICATE_SQL}
            RETURNING *
            """,
            now,
            MAX_RETRY_ATTEMPTS,
            delivery_id,
        )
        return self._to_model(record) if record is not None else None

    async def save_if(
        self,
        delivery: WebhookDelivery,
        *,
        expected_status: DeliveryStatus,
        expected_attempt_count: int,
    ) -> bool:
        record = await self._fetchrow(
            """
            UPDATE webhook_deliveries
            SET status = $2,
                attempt_count = $3,
                next_retry_at = $4,
                last_response_code = $5,
                last_response_body = $6,
                last_error = $7,
                delivered_at = $8,
                started_at = $9,
                updated_at = $10
            WHERE id = $1
              AND status = $11
              AND attempt_count = $12
            RETURNING id
            """,
            delivery.id,
            delivery.status.value,
            delivery.attempt_count,
            delivery.next_retry_at,
            delivery.last_response_code,
            delivery.last_response_body,
            delivery.last_error,
            delivery.delivered_at,
            delivery.started_at,
            delivery.updated_at,
            expected_status.value,
            expected_attempt_count,
        )
        return record is not None

    async def list_stuck(
        self, started_before: datetime, *, limit: int = 100
    ) -> List[WebhookDelivery]:
        records = await self._fetch(
            """
            SELECT *
            FROM webhook_deliveries
            WHERE status = 'in_progress'
              AND started_at < $1
            ORDER BY started_at ASC
            LIMIT $2
            """,
            started_before,
            limit,
        )
        return [self._to_model(r) for r in records]

    async def _list_page(
        self,
        column: str,
        value: UUID,
        *,
        status: DeliveryStatus | None,
        limit: int,
        offset: int,
    ) -> Tuple[List[WebhookDelivery], int]:
        where = [f"{column} = $1"]
        values: list[Any] = [value]
        idx = 2
        if status is not None:
            where.append(f"status = ${idx}")
            values.append(status.value)
            idx += 1
        where_sql = " AND ".join(where)
        records = await self._fetch(
            f"""
            SELECT *,
                   COUNT(*) OVER() AS total_count
            FROM webhook_deliveries
            WHERE {where_sql}
            ORDER BY created_at DESC
            LIMIT ${idx} OFFSET ${idx + 1}
            """,
            *values,
            limit,
            offset,
        )
        items: List[WebhookDelivery] = []
        total: int | None = None
        for rec in records:
            if total is None:
                total = int(rec["total_count"])
            items.append(self._to_model(rec))
        if total is None:
            record = await self._fetchrow(
                f"SELECT COUNT(*) AS total FROM webhook_deliveries WHERE {where_sql}",
                *values,
            )
            total = int(record["total"]) if record else 0
        return items, total

    async def list_by_webhook(
        self,
        webhook_id: UUID,
        *,
        status: DeliveryStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[WebhookDelivery], int]:
        return await self._list_page(
            "webhook_id", webhook_id, status=status, limit=limit, offset=offset
        )

    async def list_by_tenant(
        self,
        tenant_id: UUID,
        *,
        status: DeliveryStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[WebhookDelivery], int]:
        return await self._list_page(
            "tenant_id", tenant_id, status=status, limit=limit, offset=offset
        )

    async def count_by_status(self, webhook_id: UUID) -> dict[DeliveryStatus, int]:
        records = await self._fetch(
            """
            SELECT status, COUNT(*) AS total
            FROM webhook_deliveries
            WHERE webhook_id = $1
            GROUP BY status
            """,
            webhook_id,
        )
        counts = {status: 0 for status in DeliveryStatus}
        for rec in records:
            counts[DeliveryStatus(rec["status"])] = int(rec["total"])
        return counts

    async def delete_delivered_before(self, cutoff: datetime) -> int:
        """Purge delivered rows older than *cutoff*. Returns count."""
        result = await self._execute(
            "DELETE FROM webhook_deliveries WHERE status = 'delivered' AND delivered_at < $1",
            cutoff,
        )
        return self._rowcount(result)
