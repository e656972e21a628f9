"""Event types and subscription pattern matching."""
from __future__ import annotations

from typing import Iterable

WILDCARD = "*"

TEST_EVENT = "webhook.test"

# Event types emitted by the club platform. Subscriptions are not restricted to
# this list; it is advertised to administrators configuring webhooks.
KNOWN_EVENT_TYPES: tuple[str, ...] = (
    "member.created",
    "member.updated",
    "subscription.created",
    "subscription.cancelled",
    "invoice.created",
    "invoice.paid",
    "booking.created",
    "booking.confirmed",
    "booking.cancelled",
    "booking.completed",
    "booking.no_show",
    "lead.created",
    "lead.converted",
    TEST_EVENT,
)


def matches(patterns: Iterable[str], event_type: str) -> bool:
    """Return True if ``patterns`` subscribe to ``event_type``.

    A pattern matches on exact string equality; the literal ``"*"`` matches
    every event type.
    """
    for pattern in patterns:
        if pattern == WILDCARD or pattern == event_type:
            return True
    return False


def normalize_patterns(patterns: Iterable[str]) -> list[str]:
    """Strip blanks and duplicates, preserving order."""
    cleaned = [p.strip() for p in patterns if p and p.strip()]
    return list(dict.fromkeys(cleaned))
