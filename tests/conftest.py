from __future__ import annotations

import uuid

import pytest

from tests.utils import FakeClock
from webhook_service.repositories import InMemoryDeliveryRepository, InMemoryWebhookRepository
from webhook_service.services.rate_limiter import SlidingWindowRateLimiter


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tenant_id():
    return uuid.uuid4()


@pytest.fixture
def webhook_store():
    return InMemoryWebhookRepository()


@pytest.fixture
def delivery_store():
    return InMemoryDeliveryRepository()


@pytest.fixture
def rate_limiter(clock):
    return SlidingWindowRateLimiter(clock=clock.monotonic)
