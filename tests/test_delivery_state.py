"""Delivery state machine and retry scheduling (pure domain, no I/O)."""
from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from tests.utils import T0, make_delivery, make_webhook
from webhook_service.core.exceptions import InvalidStatusTransitionError, InvalidWebhookError
from webhook_service.domain import scheduling
from webhook_service.domain.enums import DeliveryStatus
from webhook_service.domain.webhooks import (
    MAX_ERROR_LENGTH,
    MAX_RESPONSE_BODY_LENGTH,
    MAX_RETRY_ATTEMPTS,
    RETRY_DELAYS,
    retry_delay,
)


def test_backoff_schedule_matches_retry_delays():
    assert scheduling.backoff_schedule() == [
        timedelta(minutes=1),
        timedelta(minutes=5),
        timedelta(minutes=15),
        timedelta(hours=1),
        timedelta(hours=2),
    ]
    # Attempts past the table reuse the last delay.
    assert retry_delay(MAX_RETRY_ATTEMPTS + 3) == RETRY_DELAYS[-1]


def test_new_delivery_is_pending_and_due():
    delivery = make_delivery(make_webhook())
    assert delivery.status == DeliveryStatus.PENDING
    assert delivery.attempt_count == 0
    assert delivery.next_retry_at is None
    assert delivery.is_due(T0)


def test_failures_follow_backoff_then_exhaust():
    delivery = make_delivery(make_webhook())
    now = T0
    for attempt in range(1, MAX_RETRY_ATTEMPTS):
        delivery.start_delivery(now)
        assert delivery.status == DeliveryStatus.IN_PROGRESS
        assert delivery.attempt_count == attempt
        assert delivery.started_at == now

        delivery.mark_failed(500, "boom", "HTTP 500: boom", now)
        assert delivery.status == DeliveryStatus.FAILED
        assert delivery.next_retry_at == now + RETRY_DELAYS[attempt - 1]
        assert delivery.started_at is None

        # Not eligible at the exact boundary, only strictly after it.
        assert not delivery.is_due(delivery.next_retry_at)
        now = delivery.next_retry_at + timedelta(seconds=1)
        assert delivery.is_due(now)

    delivery.start_delivery(now)
    delivery.mark_failed(500, "boom", "HTTP 500: boom", now)
    assert delivery.attempt_count == MAX_RETRY_ATTEMPTS
    assert delivery.status == DeliveryStatus.EXHAUSTED
    assert delivery.next_retry_at is None
    assert not delivery.is_due(now + timedelta(days=1))


def test_mark_delivered_clears_retry_state():
    delivery = make_delivery(make_webhook())
    delivery.start_delivery(T0)
    delivery.mark_failed(503, None, "HTTP 503", T0)
    later = T0 + timedelta(minutes=2)
    delivery.start_delivery(later)
    delivery.mark_delivered(200, "ok", later)

    assert delivery.status == DeliveryStatus.DELIVERED
    assert delivery.status.is_terminal
    assert delivery.delivered_at == later
    assert delivery.next_retry_at is None
    assert delivery.last_error is None
    assert delivery.last_response_code == 200
    assert delivery.attempt_count == 2


def test_delivered_is_immutable():
    delivery = make_delivery(make_webhook())
    delivery.start_delivery(T0)
    delivery.mark_delivered(200, "ok", T0)

    with pytest.raises(InvalidStatusTransitionError):
        delivery.start_delivery(T0 + timedelta(hours=1))
    with pytest.raises(InvalidStatusTransitionError):
        delivery.mark_failed(500, None, "late failure", T0)
    with pytest.raises(InvalidStatusTransitionError):
        delivery.schedule_manual_retry(T0)


def test_outcome_requires_in_progress():
    delivery = make_delivery(make_webhook())
    with pytest.raises(InvalidStatusTransitionError):
        delivery.mark_delivered(200, "ok", T0)
    with pytest.raises(InvalidStatusTransitionError):
        delivery.mark_failed(500, None, "x", T0)


def test_permanent_failure_exhausts_immediately():
    delivery = make_delivery(make_webhook())
    delivery.start_delivery(T0)
    delivery.mark_failed(None, None, "Webhook not found", T0, permanent=True)
    assert delivery.status == DeliveryStatus.EXHAUSTED
    assert delivery.attempt_count == 1


def test_response_body_and_error_are_truncated():
    delivery = make_delivery(make_webhook())
    delivery.start_delivery(T0)
    delivery.mark_failed(500, "x" * (MAX_RESPONSE_BODY_LENGTH + 10), "e" * 5000, T0)
    assert len(delivery.last_response_body) == MAX_RESPONSE_BODY_LENGTH
    assert len(delivery.last_error) == MAX_ERROR_LENGTH


def test_manual_retry_keeps_attempt_count_and_exhausts_again():
    delivery = make_delivery(make_webhook())
    now = T0
    for _ in range(MAX_RETRY_ATTEMPTS):
        delivery.start_delivery(now)
        delivery.mark_failed(500, None, "HTTP 500", now)
        now = now + timedelta(hours=3)
    assert delivery.status == DeliveryStatus.EXHAUSTED

    delivery.schedule_manual_retry(now)
    assert delivery.status == DeliveryStatus.PENDING
    assert delivery.next_retry_at == now
    assert delivery.attempt_count == MAX_RETRY_ATTEMPTS
    assert delivery.is_due(now)

    delivery.start_delivery(now)
    delivery.mark_failed(500, None, "HTTP 500", now)
    assert delivery.status == DeliveryStatus.EXHAUSTED
    assert delivery.attempt_count == MAX_RETRY_ATTEMPTS + 1


@pytest.mark.parametrize("status", [DeliveryStatus.PENDING, DeliveryStatus.IN_PROGRESS])
def test_manual_retry_rejects_non_failed(status):
    delivery = make_delivery(make_webhook(), status=status)
    with pytest.raises(InvalidStatusTransitionError):
        delivery.schedule_manual_retry(T0)


def test_select_due_orders_fresh_rows_first():
    webhook = make_webhook()
    fresh_late = make_delivery(webhook, created_at=T0 + timedelta(seconds=5))
    fresh_early = make_delivery(webhook, created_at=T0)
    retry = make_delivery(
        webhook,
        status=DeliveryStatus.FAILED,
        attempt_count=1,
        next_retry_at=T0 - timedelta(minutes=1),
    )
    not_yet = make_delivery(
        webhook,
        status=DeliveryStatus.FAILED,
        attempt_count=1,
        next_retry_at=T0 + timedelta(minutes=1),
    )
    in_flight = make_delivery(webhook, status=DeliveryStatus.IN_PROGRESS, started_at=T0)

    due = scheduling.select_due([retry, not_yet, fresh_late, in_flight, fresh_early], T0, 10)
    assert [d.id for d in due] == [fresh_early.id, fresh_late.id, retry.id]

    assert scheduling.select_due([retry, fresh_early, fresh_late], T0, 2) == [fresh_early, fresh_late]


def test_select_due_skips_excluded_webhooks():
    busy, quiet = make_webhook(), make_webhook()
    backlog = [make_delivery(busy, created_at=T0 + timedelta(seconds=i)) for i in range(3)]
    other = make_delivery(quiet, created_at=T0 + timedelta(minutes=1))

    assert scheduling.select_due([*backlog, other], T0, 2) == backlog[:2]
    assert scheduling.select_due([*backlog, other], T0, 2, exclude_webhooks={busy.id}) == [other]


def test_is_stuck_uses_started_at():
    webhook = make_webhook()
    stuck = make_delivery(webhook, status=DeliveryStatus.IN_PROGRESS, started_at=T0)
    assert scheduling.is_stuck(stuck, T0 + timedelta(seconds=1))
    assert not scheduling.is_stuck(stuck, T0)
    assert not scheduling.is_stuck(make_delivery(webhook), T0 + timedelta(days=1))


def test_webhook_update_rejects_immutable_fields():
    webhook = make_webhook()
    with pytest.raises(InvalidWebhookError):
        webhook.update(tenant_id=webhook.id)
    webhook.update(events=["booking.created", " lead.created ", "booking.created"])
    assert webhook.events == ["booking.created", "lead.created"]


@pytest.mark.parametrize(
    "headers",
    [
        {"X-Custom": "a\r\nInjected: 1"},
        {"X-Bad\nName": "value"},
        {"X-Tab": "a\tb"},
        {" ": "value"},
    ],
)
def test_webhook_rejects_unsafe_headers(headers):
    with pytest.raises(ValidationError):
        make_webhook(headers=headers)

    webhook = make_webhook(headers={"X-Partner": "acme"})
    with pytest.raises(ValidationError):
        webhook.update(headers=headers)
    assert webhook.headers == {"X-Partner": "acme"}


def test_webhook_regenerate_secret_changes_secret():
    webhook = make_webhook()
    old = webhook.secret
    assert webhook.regenerate_secret() != old
    assert webhook.secret != old
