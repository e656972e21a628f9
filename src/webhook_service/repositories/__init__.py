"""Repository exports."""

from webhook_service.repositories.deliveries import WebhookDeliveryRepository
from webhook_service.repositories.memory import (
    InMemoryDeliveryRepository,
    InMemoryWebhookRepository,
)
from webhook_service.repositories.protocols import DeliveryStore, WebhookStore
from webhook_service.repositories.webhooks import WebhookRepository

__all__ = [
    "WebhookRepository",
    "WebhookDeliveryRepository",
    "InMemoryWebhookRepository",
    "InMemoryDeliveryRepository",
    "WebhookStore",
    "DeliveryStore",
]
