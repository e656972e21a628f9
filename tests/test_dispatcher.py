"""WebhookDispatcher against a local aiohttp receiver and in-process stores."""
from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import pytest
from aiohttp import web

from tests.utils import make_delivery, make_webhook
from webhook_service.dispatcher import WebhookDispatcher, WebhookHttpClient
from webhook_service.domain.enums import DeliveryStatus
from webhook_service.domain.webhooks import MAX_RETRY_ATTEMPTS, RETRY_DELAYS
from webhook_service.services.signing import verify


class Receiver:
    """Records incoming requests and answers with queued status codes."""

    def __init__(self):
        self.requests: list[tuple[dict[str, str], bytes]] = []
        self.statuses: list[int] = []
        self.default_status = 200
        self.delay = 0.0
        self.entered = asyncio.Event()
        self.url = ""

    async def handle(self, request: web.Request) -> web.Response:
        self.entered.set()
        if self.delay:
            await asyncio.sleep(self.delay)
        self.requests.append((dict(request.headers), await request.read()))
        status = self.statuses.pop(0) if self.statuses else self.default_status
        return web.Response(status=status, text=f"status {status}")


@pytest.fixture
async def receiver(aiohttp_server):
    recv = Receiver()
    app = web.Application()
    app.router.add_post("/hook", recv.handle)
    server = await aiohttp_server(app)
    recv.url = str(server.make_url("/hook"))
    return recv


@pytest.fixture
async def make_dispatcher(webhook_store, delivery_store, rate_limiter, clock):
    created: list[WebhookDispatcher] = []

    def factory(**kwargs) -> WebhookDispatcher:
        options = {"workers": 1, "interval_seconds": 0.01, "clock": clock}
        options.update(kwargs)
        dispatcher = WebhookDispatcher(
            webhook_store,
            delivery_store,
            WebhookHttpClient(timeout_s=2.0),
            options.pop("rate_limiter", rate_limiter),
            **options,
        )
        created.append(dispatcher)
        return dispatcher

    yield factory
    for dispatcher in created:
        await dispatcher.stop()


async def _queue(webhook_store, delivery_store, webhook, **overrides):
    await webhook_store.create(webhook)
    (delivery,) = await delivery_store.insert_many([make_delivery(webhook, **overrides)])
    return delivery


@pytest.mark.asyncio
async def test_delivers_signed_request(receiver, webhook_store, delivery_store, make_dispatcher):
    webhook = make_webhook(url=receiver.url, headers={"X-Partner": "acme"})
    delivery = await _queue(webhook_store, delivery_store, webhook)

    assert await make_dispatcher().run_cycle() == 1

    stored = await delivery_store.get(delivery.id)
    assert stored.status == DeliveryStatus.DELIVERED
    assert stored.attempt_count == 1
    assert stored.last_response_code == 200
    assert stored.last_response_body == "status 200"

    (headers, raw) = receiver.requests[0]
    assert headers["Content-Type"] == "application/json"
    assert headers["X-Webhook-Event"] == "booking.created"
    assert headers["X-Webhook-Delivery-Id"] == str(delivery.id)
    assert headers["X-Partner"] == "acme"
    assert verify(webhook.secret, raw, headers["X-Webhook-Signature"])

    body = json.loads(raw)
    assert body["eventType"] == "booking.created"
    assert body["eventId"] == str(delivery.event_id)
    assert body["data"] == {"bookingId": "b-1"}
    assert body["timestamp"] == headers["X-Webhook-Timestamp"]


@pytest.mark.asyncio
async def test_transient_failure_then_success(
    receiver, webhook_store, delivery_store, make_dispatcher, clock
):
    receiver.statuses = [503, 200]
    webhook = make_webhook(url=receiver.url)
    delivery = await _queue(webhook_store, delivery_store, webhook)
    dispatcher = make_dispatcher()

    assert await dispatcher.run_cycle() == 1
    failed = await delivery_store.get(delivery.id)
    assert failed.status == DeliveryStatus.FAILED
    assert failed.attempt_count == 1
    assert failed.last_response_code == 503
    assert failed.next_retry_at == clock.now + timedelta(minutes=1)

    # Backoff not elapsed: nothing to do.
    clock.advance(seconds=30)
    assert await dispatcher.run_cycle() == 0

    clock.advance(seconds=31)
    assert await dispatcher.run_cycle() == 1
    delivered = await delivery_store.get(delivery.id)
    assert delivered.status == DeliveryStatus.DELIVERED
    assert delivered.attempt_count == 2
    assert delivered.next_retry_at is None
    assert len(receiver.requests) == 2


@pytest.mark.asyncio
async def test_persistent_failure_exhausts(receiver, webhook_store, delivery_store, make_dispatcher, clock):
    receiver.default_status = 500
    webhook = make_webhook(url=receiver.url)
    delivery = await _queue(webhook_store, delivery_store, webhook)
    dispatcher = make_dispatcher()

    for attempt in range(1, MAX_RETRY_ATTEMPTS + 1):
        assert await dispatcher.run_cycle() == 1
        stored = await delivery_store.get(delivery.id)
        assert stored.attempt_count == attempt
        if attempt < MAX_RETRY_ATTEMPTS:
            assert stored.status == DeliveryStatus.FAILED
            assert stored.next_retry_at - clock.now == RETRY_DELAYS[attempt - 1]
            clock.advance(seconds=RETRY_DELAYS[attempt - 1].total_seconds() + 1)

    assert stored.status == DeliveryStatus.EXHAUSTED
    assert stored.next_retry_at is None
    assert stored.last_error.startswith("HTTP 500")

    clock.advance(days=1)
    assert await dispatcher.run_cycle() == 0
    assert len(receiver.requests) == MAX_RETRY_ATTEMPTS


@pytest.mark.asyncio
async def test_rate_limit_defers_without_touching_ledger(
    receiver, webhook_store, delivery_store, make_dispatcher, clock
):
    webhook = make_webhook(url=receiver.url, rate_limit_per_minute=1)
    await webhook_store.create(webhook)
    first, second = await delivery_store.insert_many(
        [make_delivery(webhook), make_delivery(webhook, created_at=clock.now + timedelta(seconds=1))]
    )
    dispatcher = make_dispatcher()

    assert await dispatcher.run_cycle() == 1
    assert (await delivery_store.get(first.id)).status == DeliveryStatus.DELIVERED
    deferred = await delivery_store.get(second.id)
    assert deferred.status == DeliveryStatus.PENDING
    assert deferred.attempt_count == 0
    assert deferred.next_retry_at is None

    clock.advance(seconds=61)
    assert await dispatcher.run_cycle() == 1
    assert (await delivery_store.get(second.id)).status == DeliveryStatus.DELIVERED


@pytest.mark.asyncio
async def test_rate_limited_backlog_does_not_starve_other_webhooks(
    receiver, webhook_store, delivery_store, make_dispatcher, clock
):
    busy = make_webhook(url=receiver.url, rate_limit_per_minute=1)
    quiet = make_webhook(url=receiver.url)
    await webhook_store.create(busy)
    await webhook_store.create(quiet)
    backlog = await delivery_store.insert_many(
        [make_delivery(busy, created_at=clock.now + timedelta(seconds=i)) for i in range(10)]
    )
    (newer,) = await delivery_store.insert_many(
        [make_delivery(quiet, created_at=clock.now + timedelta(minutes=1))]
    )
    dispatcher = make_dispatcher(batch_size=5)

    assert await dispatcher.run_cycle() == 2
    assert (await delivery_store.get(newer.id)).status == DeliveryStatus.DELIVERED
    statuses = [(await delivery_store.get(d.id)).status for d in backlog]
    assert statuses.count(DeliveryStatus.DELIVERED) == 1
    assert statuses.count(DeliveryStatus.PENDING) == 9

    # Still inside the window: the backlog waits, nothing else is due.
    clock.advance(seconds=1)
    assert await dispatcher.run_cycle() == 0
    assert len(receiver.requests) == 2


@pytest.mark.asyncio
async def test_concurrent_claims_have_one_winner(webhook_store, delivery_store, clock):
    webhook = make_webhook()
    delivery = await _queue(webhook_store, delivery_store, webhook)

    results = await asyncio.gather(*(delivery_store.claim(delivery.id, clock.now) for _ in range(5)))

    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    assert winners[0].status == DeliveryStatus.IN_PROGRESS
    assert winners[0].attempt_count == 1
    assert winners[0].started_at == clock.now


@pytest.mark.asyncio
async def test_parallel_workers_attempt_each_delivery_once(
    receiver, webhook_store, delivery_store, make_dispatcher
):
    webhook = make_webhook(url=receiver.url, rate_limit_per_minute=1000)
    await webhook_store.create(webhook)
    deliveries = await delivery_store.insert_many([make_delivery(webhook) for _ in range(10)])
    dispatcher = make_dispatcher(workers=3)

    await dispatcher.start()
    for _ in range(200):
        if len(receiver.requests) >= 10:
            break
        await asyncio.sleep(0.01)
    await dispatcher.stop()

    delivered_ids = sorted(headers["X-Webhook-Delivery-Id"] for headers, _ in receiver.requests)
    assert delivered_ids == sorted(str(d.id) for d in deliveries)
    for d in deliveries:
        stored = await delivery_store.get(d.id)
        assert stored.status == DeliveryStatus.DELIVERED
        assert stored.attempt_count == 1


@pytest.mark.asyncio
async def test_missing_webhook_exhausts_without_request(
    receiver, delivery_store, make_dispatcher
):
    orphan = make_delivery(make_webhook(url=receiver.url))
    await delivery_store.insert_many([orphan])

    assert await make_dispatcher().run_cycle() == 1

    stored = await delivery_store.get(orphan.id)
    assert stored.status == DeliveryStatus.EXHAUSTED
    assert stored.last_error == "Webhook not found"
    assert receiver.requests == []


@pytest.mark.asyncio
async def test_inactive_webhook_fails_without_request(
    receiver, webhook_store, delivery_store, make_dispatcher, clock
):
    webhook = make_webhook(url=receiver.url)
    delivery = await _queue(webhook_store, delivery_store, webhook)
    webhook.deactivate()
    await webhook_store.save(webhook)

    assert await make_dispatcher().run_cycle() == 1

    stored = await delivery_store.get(delivery.id)
    assert stored.status == DeliveryStatus.FAILED
    assert stored.last_error == "Webhook is inactive"
    assert stored.next_retry_at == clock.now + timedelta(minutes=1)
    assert receiver.requests == []


@pytest.mark.asyncio
async def test_connection_error_is_transient(webhook_store, delivery_store, make_dispatcher, unused_tcp_port):
    webhook = make_webhook(url=f"http://127.0.0.1:{unused_tcp_port}/hook")
    delivery = await _queue(webhook_store, delivery_store, webhook)

    assert await make_dispatcher().run_cycle() == 1

    stored = await delivery_store.get(delivery.id)
    assert stored.status == DeliveryStatus.FAILED
    assert stored.last_response_code is None
    assert stored.last_error


@pytest.mark.asyncio
async def test_send_error_records_failed_attempt(receiver, webhook_store, delivery_store, make_dispatcher):
    webhook = make_webhook(url=receiver.url)
    # Rows stored before header validation existed can still carry bad values.
    webhook.headers["X-Custom"] = "a\r\nInjected: 1"
    delivery = await _queue(webhook_store, delivery_store, webhook)

    result = await make_dispatcher().dispatch_now(delivery)

    assert result is not None
    stored = await delivery_store.get(delivery.id)
    assert stored.status == DeliveryStatus.FAILED
    assert stored.attempt_count == 1
    assert stored.last_error
    assert stored.next_retry_at is not None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "fail_fast, status, expected",
    [
        (False, 404, DeliveryStatus.FAILED),
        (True, 404, DeliveryStatus.EXHAUSTED),
        (True, 429, DeliveryStatus.FAILED),
        (True, 500, DeliveryStatus.FAILED),
    ],
)
async def test_client_error_policy(
    receiver, webhook_store, delivery_store, make_dispatcher, fail_fast, status, expected
):
    receiver.default_status = status
    webhook = make_webhook(url=receiver.url)
    delivery = await _queue(webhook_store, delivery_store, webhook)

    await make_dispatcher(fail_fast_on_client_error=fail_fast).run_cycle()

    stored = await delivery_store.get(delivery.id)
    assert stored.status == expected
    assert stored.last_response_code == status


@pytest.mark.asyncio
async def test_stop_lets_in_flight_attempt_finish(
    receiver, webhook_store, delivery_store, make_dispatcher
):
    receiver.delay = 0.2
    webhook = make_webhook(url=receiver.url)
    delivery = await _queue(webhook_store, delivery_store, webhook)
    dispatcher = make_dispatcher(workers=2)

    await dispatcher.start()
    assert dispatcher.running
    await asyncio.wait_for(receiver.entered.wait(), timeout=2.0)
    await dispatcher.stop()

    assert not dispatcher.running
    stored = await delivery_store.get(delivery.id)
    assert stored.status == DeliveryStatus.DELIVERED


@pytest.mark.asyncio
async def test_dispatch_now_respects_claim(receiver, webhook_store, delivery_store, make_dispatcher, clock):
    webhook = make_webhook(url=receiver.url)
    delivery = await _queue(webhook_store, delivery_store, webhook)
    dispatcher = make_dispatcher()

    attempted = await dispatcher.dispatch_now(delivery)
    assert attempted.status == DeliveryStatus.DELIVERED

    # Already delivered: the claim fails and nothing is sent.
    assert await dispatcher.dispatch_now(delivery) is None
    assert len(receiver.requests) == 1


@pytest.mark.asyncio
async def test_outcome_discarded_when_row_changed(receiver, webhook_store, delivery_store, make_dispatcher, clock):
    webhook = make_webhook(url=receiver.url)
    delivery = await _queue(webhook_store, delivery_store, webhook)

    claimed = await delivery_store.claim(delivery.id, clock.now)
    claimed.mark_delivered(200, "ok", clock.now)
    assert await delivery_store.save_if(
        claimed, expected_status=DeliveryStatus.IN_PROGRESS, expected_attempt_count=1
    )
    # A second writer with the same expectations loses.
    claimed.last_response_body = "overwritten"
    assert not await delivery_store.save_if(
        claimed, expected_status=DeliveryStatus.IN_PROGRESS, expected_attempt_count=1
    )
    assert (await delivery_store.get(delivery.id)).last_response_body == "ok"
