"""Subscription store backed by Postgres."""
from __future__ import annotations

import json
from typing import List, Tuple
from uuid import UUID

from asyncpg import Pool, Record  # type: ignore[import-untyped]

from webhook_service.core.exceptions import NotFoundError
from webhook_service.domain.webhooks import Webhook
from webhook_service.repositories.base import BaseRepository


class WebhookRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @classmethod
    def _to_model(cls, record: Record) -> Webhook:
        payload = cls._decode_json(dict(record), "headers")
        payload.pop("total_count", None)
        return Webhook.model_validate(payload)

    async def create(self, webhook: Webhook) -> Webhook:
        record = await self._fetchrow(
            """
            INSERT INTO webhooks (
                id, tenant_id, name, description, url, secret, events,
                is_active, headers, rate_limit_per_minute, created_at, updated_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7::text[], $8, $9::jsonb, $10, $11, $12)
            RETURNING *
            """,
            webhook.id,
            webhook.tenant_id,
            webhook.name,
            webhook.description,
            webhook.url,
            webhook.secret,
            webhook.events,
            webhook.is_active,
            json.dumps(webhook.headers),
            webhook.rate_limit_per_minute,
            webhook.created_at,
            webhook.updated_at,
        )
        assert record is not None
        return self._to_model(record)

    async def find(self, webhook_id: UUID) -> Webhook | None:
        record = await self._fetchrow("SELECT * FROM webhooks WHERE id = $1", webhook_id)
        return self._to_model(record) if record is not None else None

    async def get(self, webhook_id: UUID) -> Webhook:
        webhook = await self.find(webhook_id)
        if webhook is None:
            raise NotFoundError("Webhook not found")
        return webhook

    async def save(self, webhook: Webhook) -> Webhook:
        record = await self._fetchrow(
            """
            UPDATE webhooks
            SET name = $2,
                description = $3,
                url = $4,
                secret = $5,
                events = $6::text[],
                is_active = $7,
                headers = $8::jsonb,
                rate_limit_per_minute = $9,
                updated_at = $10
            WHERE id = $1
            RETURNING *
            """,
            webhook.id,
            webhook.name,
            webhook.description,
            webhook.url,
            webhook.secret,
            webhook.events,
            webhook.is_active,
            json.dumps(webhook.headers),
            webhook.rate_limit_per_minute,
            webhook.updated_at,
        )
        if record is None:
            raise NotFoundError("Webhook not found")
        return self._to_model(record)

    async def delete(self, webhook_id: UUID) -> None:
        record = await self._fetchrow(
            "DELETE FROM webhooks WHERE id = $1 RETURNING id",
            webhook_id,
        )
        if record is None:
            raise NotFoundError("Webhook not found")

    async def list_by_tenant(
        self, tenant_id: UUID, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[Webhook], int]:
        records = await self._fetch(
            """
            SELECT *,
                   COUNT(*) OVER() AS total_count
            FROM webhooks
            WHERE tenant_id = $1
            ORDER BY created_at DESC
            LIMIT $2 OFFSET $3
            """,
            tenant_id,
            limit,
            offset,
        )
        items: List[Webhook] = []
        total: int | None = None
        for rec in records:
            if total is None:
                total = int(rec["total_count"])
            items.append(self._to_model(rec))
        if total is None:
            record = await self._fetchrow(
                "SELECT COUNT(*) AS total FROM webhooks WHERE tenant_id = $1",
                tenant_id,
            )
            total = int(record["total"]) if record else 0
        return items, total

    async def list_active(self, tenant_id: UUID | None = None) -> List[Webhook]:
        if tenant_id is None:
            records = await self._fetch(
                "SELECT * FROM webhooks WHERE is_active = true ORDER BY created_at ASC"
            )
        else:
            records = await self._fetch(
                """
                SELECT *
                FROM webhooks
                WHERE is_active = true AND tenant_id = $1
                ORDER BY created_at ASC
                """,
                tenant_id,
            )
        return [self._to_model(r) for r in records]
