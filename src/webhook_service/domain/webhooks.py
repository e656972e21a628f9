"""Webhook domain primitives: subscriptions and the delivery state machine."""
from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from webhook_service.core.exceptions import InvalidStatusTransitionError, InvalidWebhookError
from webhook_service.domain.enums import DeliveryStatus
from webhook_service.domain.events import matches, normalize_patterns

MAX_RETRY_ATTEMPTS = 5

# Delay before attempt N+1, indexed by zero-based attempt number.
RETRY_DELAYS: tuple[timedelta, ...] = (
    timedelta(minutes=1),
    timedelta(minutes=5),
    timedelta(minutes=15),
    timedelta(hours=1),
    timedelta(hours=2),
)

MAX_RESPONSE_BODY_LENGTH = 10_000
MAX_ERROR_LENGTH = 2_000

DEFAULT_RATE_LIMIT_PER_MINUTE = 60


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_secret() -> str:
    return secrets.token_urlsafe(32)


def retry_delay(attempt_count: int) -> timedelta:
    """Backoff after the ``attempt_count``-th failed attempt (1-based)."""
    index = min(max(attempt_count - 1, 0), len(RETRY_DELAYS) - 1)
    return RETRY_DELAYS[index]


def _has_control_chars(value: str) -> bool:
    return any(ord(ch) < 32 or ord(ch) == 127 for ch in value)


def _truncate(value: str | None, limit: int) -> str | None:
    if value is None:
        return None
    return value[:limit]


class Webhook(BaseModel):
    """Subscription: where to deliver, and for which events."""

    model_config = ConfigDict(validate_assignment=True)

    id: UUID = Field(default_factory=uuid4)
    tenant_id: UUID
    name: str = ""
    description: str | None = None
    url: str
    secret: str = Field(default_factory=generate_secret)
    events: list[str] = Field(min_length=1)
    is_active: bool = True
    headers: dict[str, str] = Field(default_factory=dict)
    rate_limit_per_minute: int = Field(default=DEFAULT_RATE_LIMIT_PER_MINUTE, gt=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("url must not be empty")
        if not value.startswith(("https://", "http://")):
            raise ValueError("url must be an http(s) URL")
        return value

    @field_validator("headers")
    @classmethod
    def _check_headers(cls, value: dict[str, str]) -> dict[str, str]:
        for name, header_value in value.items():
            if not name.strip():
                raise ValueError("header names must not be empty")
            if _has_control_chars(name) or _has_control_chars(header_value):
                raise ValueError(f"header {name!r} contains control characters")
        return value

    @field_validator("events")
    @classmethod
    def _check_events(cls, value: list[str]) -> list[str]:
        cleaned = normalize_patterns(value)
        if not cleaned:
            raise ValueError("events must contain at least one event type")
        return cleaned

    def subscribes_to(self, event_type: str) -> bool:
        return self.is_active and matches(self.events, event_type)

    def update(self, **changes: Any) -> None:
        """Apply the given field changes (validated) and bump ``updated_at``."""
        for key, value in changes.items():
            if key in {"id", "tenant_id", "created_at", "updated_at", "secret"}:
                raise InvalidWebhookError(f"{key} cannot be updated")
            setattr(self, key, value)
        self.updated_at = utcnow()

    def activate(self) -> None:
        self.is_active = True
        self.updated_at = utcnow()

    def deactivate(self) -> None:
        self.is_active = False
        self.updated_at = utcnow()

    def regenerate_secret(self) -> str:
        self.secret = generate_secret()
        self.updated_at = utcnow()
        return self.secret


class WebhookDelivery(BaseModel):
    """One (subscription, event) notification and its attempt history.

    Transitions::

        PENDING -> IN_PROGRESS -> DELIVERED | FAILED
        FAILED -> IN_PROGRESS        (automatic retry, once due)
        FAILED -> EXHAUSTED          (attempts used up)
        FAILED | EXHAUSTED -> PENDING (manual retry only)
    """

    id: UUID = Field(default_factory=uuid4)
    webhook_id: UUID
    tenant_id: UUID
    event_type: str
    event_id: UUID
    payload: dict[str, Any] = Field(default_factory=dict)
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempt_count: int = 0
    next_retry_at: datetime | None = None
    last_response_code: int | None = None
    last_response_body: str | None = None
    last_error: str | None = None
    delivered_at: datetime | None = None
    started_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_eligible_for_retry(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return (
            self.status == DeliveryStatus.FAILED
            and self.attempt_count < MAX_RETRY_ATTEMPTS
            and self.next_retry_at is not None
            and now > self.next_retry_at
        )

    def is_due(self, now: datetime | None = None) -> bool:
        """True if the dispatcher may start an attempt now."""
        now = now or utcnow()
        if self.status == DeliveryStatus.PENDING:
            return self.next_retry_at is None or self.next_retry_at <= now
        return self.is_eligible_for_retry(now)

    def start_delivery(self, now: datetime | None = None) -> None:
        now = now or utcnow()
        if not self.is_due(now):
            raise InvalidStatusTransitionError(
                f"Cannot start delivery {self.id} in status {self.status.value}"
            )
        self.status = DeliveryStatus.IN_PROGRESS
        self.attempt_count += 1
        self.started_at = now
        self.updated_at = now

    def mark_delivered(
        self,
        response_code: int | None,
        response_body: str | None,
        now: datetime | None = None,
    ) -> None:
        now = now or utcnow()
        self._require_in_progress()
        self.status = DeliveryStatus.DELIVERED
        self.last_response_code = response_code
        self.last_response_body = _truncate(response_body, MAX_RESPONSE_BODY_LENGTH)
        self.last_error = None
        self.delivered_at = now
        self.next_retry_at = None
        self.started_at = None
        self.updated_at = now

    def mark_failed(
        self,
        response_code: int | None,
        response_body: str | None,
        error: str | None,
        now: datetime | None = None,
        *,
        permanent: bool = False,
    ) -> None:
        """Record a failed attempt and schedule the next one, or exhaust.

        ``permanent`` exhausts immediately regardless of the attempts left.
        """
        now = now or utcnow()
        self._require_in_progress()
        self.last_response_code = response_code
        self.last_response_body = _truncate(response_body, MAX_RESPONSE_BODY_LENGTH)
        self.last_error = _truncate(error, MAX_ERROR_LENGTH)
        self.started_at = None
        self.updated_at = now
        if permanent or self.attempt_count >= MAX_RETRY_ATTEMPTS:
            self.status = DeliveryStatus.EXHAUSTED
            self.next_retry_at = None
        else:
            self.status = DeliveryStatus.FAILED
            self.next_retry_at = now + retry_delay(self.attempt_count)

    def schedule_manual_retry(self, now: datetime | None = None) -> None:
        """Operator-triggered retry. ``attempt_count`` is kept, so a failure
        after a manual retry exhausts the delivery again straight away."""
        now = now or utcnow()
        if self.status not in (DeliveryStatus.FAILED, DeliveryStatus.EXHAUSTED):
            raise InvalidStatusTransitionError(
                f"Only failed or exhausted deliveries can be retried (status={self.status.value})"
            )
        self.status = DeliveryStatus.PENDING
        self.next_retry_at = now
        self.updated_at = now

    def _require_in_progress(self) -> None:
        if self.status != DeliveryStatus.IN_PROGRESS:
            raise InvalidStatusTransitionError(
                f"Delivery {self.id} is not in progress (status={self.status.value})"
            )
