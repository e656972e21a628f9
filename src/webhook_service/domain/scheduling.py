"""Retry scheduling: which deliveries form the dispatcher's working set.

The retry scheduler is not a separate process. FAILED deliveries whose backoff
window has elapsed simply satisfy the same selection predicate as fresh
PENDING rows, so each dispatcher poll re-surfaces them. The Postgres ledger
mirrors :func:`is_due` in SQL (see ``DUE_PREDICATE_SQL``).
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Collection, Iterable
from uuid import UUID

from webhook_service.domain.enums import DeliveryStatus
from webhook_service.domain.webhooks import (
    MAX_RETRY_ATTEMPTS,
    WebhookDelivery,
    retry_delay,
)

# $1 = now, $2 = MAX_RETRY_ATTEMPTS
DUE_PREDICATE_SQL = """
    (
        (status = 'pending' AND (next_retry_at IS NULL OR next_retry_at <= $1))
        OR (
            status = 'failed'
            AND attempt_count < $2
            AND next_retry_at IS NOT NULL
            AND next_retry_at < $1
        )
    )
"""

DUE_ORDER_SQL = "ORDER BY next_retry_at ASC NULLS FIRST, created_at ASC"


def is_due(delivery: WebhookDelivery, now: datetime) -> bool:
    return delivery.is_due(now)


def sort_key(delivery: WebhookDelivery) -> tuple[int, datetime, datetime]:
    """Fresh PENDING rows (no ``next_retry_at``) first, then oldest due first."""
    if delivery.next_retry_at is None:
        return (0, delivery.created_at, delivery.created_at)
    return (1, delivery.next_retry_at, delivery.created_at)


def select_due(
    deliveries: Iterable[WebhookDelivery],
    now: datetime,
    limit: int,
    exclude_webhooks: Collection[UUID] = (),
) -> list[WebhookDelivery]:
    due = [
        d for d in deliveries if is_due(d, now) and d.webhook_id not in exclude_webhooks
    ]
    due.sort(key=sort_key)
    return due[:limit]


def backoff_schedule() -> list[timedelta]:
    """Intervals between successive automatic attempts."""
    return [retry_delay(attempt) for attempt in range(1, MAX_RETRY_ATTEMPTS + 1)]


def is_stuck(delivery: WebhookDelivery, started_before: datetime) -> bool:
    return (
        delivery.status == DeliveryStatus.IN_PROGRESS
        and delivery.started_at is not None
        and delivery.started_at < started_before
    )
