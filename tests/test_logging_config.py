from __future__ import annotations

import json

import structlog

from backend_common.logging_config import (
    REDACTED,
    build_processors,
    redact_sensitive,
    single_line,
)


def test_redacts_top_level_and_header_values():
    event = {
        "event": "webhook sent",
        "secret": "s3cr3t",
        "headers": {"X-Webhook-Signature": "sha256=abc", "Content-Type": "application/json"},
        "delivery_id": "d-1",
    }
    result = redact_sensitive(None, "info", event)
    assert result["secret"] == REDACTED
    assert result["headers"]["X-Webhook-Signature"] == REDACTED
    assert result["headers"]["Content-Type"] == "application/json"
    assert result["delivery_id"] == "d-1"


def test_single_line_escapes_nested_values():
    event = {"event": "boom\nagain", "body": ["a\tb", 3], "extra": {"k": "x\r\ny"}}
    result = single_line(None, "error", event)
    assert result["event"] == "boom\\nagain"
    assert result["body"] == ["a\\tb", 3]
    assert result["extra"] == {"k": "x\\r\\ny"}


def test_json_renderer_masks_before_rendering():
    processors = build_processors(json_output=True)
    # Skip the stdlib-bound processors; the tail of the chain is pure.
    chain = [p for p in processors if p in (redact_sensitive, single_line)] + [processors[-1]]
    event: dict = {"event": "created", "secret": "abc", "note": "two\nlines"}
    for processor in chain:
        event = processor(None, "info", event)
    assert isinstance(processors[-1], structlog.processors.JSONRenderer)
    assert json.loads(event) == {"event": "created", "secret": REDACTED, "note": "two\\nlines"}


def test_key_value_renderer_is_default():
    assert isinstance(build_processors()[-1], structlog.processors.KeyValueRenderer)
