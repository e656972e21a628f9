"""Domain services exports."""

from webhook_service.services.rate_limiter import RateLimiter, SlidingWindowRateLimiter
from webhook_service.services.routing import EventRouter
from webhook_service.services.webhooks import WebhookService

__all__ = [
    "EventRouter",
    "RateLimiter",
    "SlidingWindowRateLimiter",
    "WebhookService",
]
