"""Background webhook dispatcher (polls the delivery ledger and POSTs events)."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Set
from uuid import UUID

import structlog
from aiohttp import ClientError, ClientSession, ClientTimeout, web

from webhook_service.domain.enums import DeliveryStatus
from webhook_service.domain.webhooks import (
    MAX_RESPONSE_BODY_LENGTH,
    Webhook,
    WebhookDelivery,
    utcnow,
)
from webhook_service.otel import get_tracer
from webhook_service.repositories.protocols import DeliveryStore, WebhookStore
from webhook_service.services.rate_limiter import RateLimiter
from webhook_service.services.signing import encode_body, sign

logger = structlog.get_logger(__name__)
tracer = get_tracer(__name__)

DEFAULT_SIGNATURE_HEADER = "X-Webhook-Signature"

# 4xx answers that still mean "try again later"
TRANSIENT_CLIENT_ERRORS = frozenset({408, 429})


@dataclass
class DeliveryResult:
    status_code: int | None
    body: str | None
    error: str | None

    @property
    def success(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300


class WebhookHttpClient:
    """Builds, signs and sends one delivery attempt."""

    def __init__(
        self,
        *,
        timeout_s: float,
        signature_header: str = DEFAULT_SIGNATURE_HEADER,
    ):
        self._timeout_s = timeout_s
        self._signature_header = signature_header
        self._session: ClientSession | None = None

    async def start(self) -> None:
        if self._session is None:
            self._session = ClientSession(timeout=ClientTimeout(total=self._timeout_s))

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    def build_request(
        self, webhook: Webhook, delivery: WebhookDelivery, now: datetime
    ) -> tuple[bytes, dict[str, str]]:
        timestamp = now.isoformat()
        body_bytes = encode_body(
            {
                "eventType": delivery.event_type,
                "eventId": str(delivery.event_id),
                "data": delivery.payload,
                "timestamp": timestamp,
            }
        )
        headers = dict(webhook.headers)
        headers.update(
            {
                "Content-Type": "application/json",
                "X-Webhook-Event": delivery.event_type,
                "X-Webhook-Delivery-Id": str(delivery.id),
                "X-Webhook-Timestamp": timestamp,
                self._signature_header: sign(webhook.secret, body_bytes),
            }
        )
        return body_bytes, headers

    async def deliver(
        self, webhook: Webhook, delivery: WebhookDelivery, now: datetime
    ) -> DeliveryResult:
        await self.start()
        assert self._session is not None
        body_bytes, headers = self.build_request(webhook, delivery, now)
        try:
            async with self._session.post(
                webhook.url,
                data=body_bytes,
                headers=headers,
                allow_redirects=False,
            ) as resp:
                text = (await resp.text(errors="replace"))[:MAX_RESPONSE_BODY_LENGTH]
                if 200 <= resp.status < 300:
                    return DeliveryResult(status_code=resp.status, body=text, error=None)
                return DeliveryResult(
                    status_code=resp.status,
                    body=text,
                    error=f"HTTP {resp.status}: {text[:500]}",
                )
        except asyncio.TimeoutError:
            return DeliveryResult(
                status_code=None, body=None, error=f"Timed out after {self._timeout_s}s"
            )
        except ClientError as exc:
            return DeliveryResult(
                status_code=None, body=None, error=f"{type(exc).__name__}: {exc}"
            )
        except Exception as exc:
            # Anything else raised while sending (e.g. aiohttp rejecting a header)
            # is recorded against the claimed row like a transport failure.
            logger.warning(
                "webhook_delivery send raised",
                delivery_id=str(delivery.id),
                error_type=type(exc).__name__,
            )
            return DeliveryResult(
                status_code=None, body=None, error=f"{type(exc).__name__}: {exc}"
            )


class WebhookDispatcher:
    """Worker pool that drains the delivery ledger.

    Each worker repeatedly takes the working set (PENDING rows plus FAILED
    rows whose backoff elapsed), and for every candidate: acquires a rate
    limit permit, claims the row atomically, sends the request and records
    the outcome. Losing a claim race or a permit only skips the row for this
    cycle.
    """

    def __init__(
        self,
        webhooks: WebhookStore,
        deliveries: DeliveryStore,
        client: WebhookHttpClient,
        rate_limiter: RateLimiter,
        *,
        workers: int = 1,
        interval_seconds: float = 1.0,
        batch_size: int = 100,
        fail_fast_on_client_error: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._webhooks = webhooks
        self._deliveries = deliveries
        self._client = client
        self._rate_limiter = rate_limiter
        self._workers = workers
        self._interval = interval_seconds
        self._batch_size = batch_size
        self._fail_fast = fail_fast_on_client_error
        self._clock = clock
        self._stopping = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        # Rows a local worker is handling; keeps sibling workers from
        # spending rate-limit permits on claims they would lose.
        self._inflight: Set[UUID] = set()

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self, _app: web.Application | None = None) -> None:
        if self._tasks:
            return
        await self._client.start()
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._worker_loop(index)) for index in range(self._workers)
        ]
        logger.info("webhook_dispatcher started", workers=self._workers)

    async def stop(self, _app: web.Application | None = None) -> None:
        """Stop claiming work; in-flight attempts finish (or time out) first."""
        self._stopping.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []
            logger.info("webhook_dispatcher stopped")
        await self._client.close()

    async def _worker_loop(self, index: int) -> None:
        while not self._stopping.is_set():
            try:
                attempted = await self.run_cycle()
            except Exception:
                logger.exception("webhook_dispatcher cycle failed", worker=index)
                attempted = 0
            if attempted:
                continue
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass

    async def run_cycle(self) -> int:
        """Process the current working set once. Returns attempts made.

        A subscription refused by the rate limiter is skipped for the rest of
        the cycle, and the working set is re-read without its rows so one
        backlogged subscription cannot hold a full batch.
        """
        webhooks: Dict[UUID, Webhook | None] = {}
        refused: Set[UUID] = set()
        seen: Set[UUID] = set()
        attempted = 0
        while not self._stopping.is_set():
            due = await self._deliveries.list_due(
                self._clock(), limit=self._batch_size, exclude_webhooks=refused
            )
            refused_before = len(refused)
            for delivery in due:
                if self._stopping.is_set():
                    break
                if delivery.id in seen or delivery.webhook_id in refused:
                    continue
                seen.add(delivery.id)
                if await self._process_guarded(delivery, webhooks, refused) is not None:
                    attempted += 1
            if len(due) < self._batch_size or len(refused) == refused_before:
                break
        return attempted

    async def dispatch_now(self, delivery: WebhookDelivery) -> WebhookDelivery | None:
        """Attempt one delivery immediately (same claim/permit rules)."""
        return await self._process_guarded(delivery, {}, set())

    async def _process_guarded(
        self,
        delivery: WebhookDelivery,
        webhooks: Dict[UUID, Webhook | None],
        refused: Set[UUID],
    ) -> WebhookDelivery | None:
        if delivery.id in self._inflight:
            return None
        self._inflight.add(delivery.id)
        try:
            return await self._process(delivery, webhooks, refused)
        finally:
            self._inflight.discard(delivery.id)

    async def _process(
        self,
        delivery: WebhookDelivery,
        webhooks: Dict[UUID, Webhook | None],
        refused: Set[UUID],
    ) -> WebhookDelivery | None:
        if delivery.webhook_id not in webhooks:
            webhooks[delivery.webhook_id] = await self._webhooks.find(delivery.webhook_id)
        webhook = webhooks[delivery.webhook_id]

        if webhook is not None and webhook.is_active:
            if not self._rate_limiter.try_acquire(webhook.id, webhook.rate_limit_per_minute):
                refused.add(webhook.id)
                logger.debug(
                    "webhook_delivery deferred by rate limit",
                    delivery_id=str(delivery.id),
                    webhook_id=str(webhook.id),
                )
                return None

        claimed = await self._deliveries.claim(delivery.id, self._clock())
        if claimed is None:
            return None

        log = logger.bind(
            delivery_id=str(claimed.id),
            webhook_id=str(claimed.webhook_id),
            event_type=claimed.event_type,
            attempt=claimed.attempt_count,
        )
        if webhook is None:
            claimed.mark_failed(None, None, "Webhook not found", self._clock(), permanent=True)
        elif not webhook.is_active:
            claimed.mark_failed(None, None, "Webhook is inactive", self._clock())
        else:
            with tracer.start_as_current_span("webhook.deliver") as span:
                span.set_attribute("webhook.id", str(webhook.id))
                span.set_attribute("webhook.delivery_id", str(claimed.id))
                span.set_attribute("webhook.attempt", claimed.attempt_count)
                result = await self._client.deliver(webhook, claimed, self._clock())
                if result.status_code is not None:
                    span.set_attribute("http.status_code", result.status_code)
            self._apply_result(claimed, result)

        saved = await self._deliveries.save_if(
            claimed,
            expected_status=DeliveryStatus.IN_PROGRESS,
            expected_attempt_count=claimed.attempt_count,
        )
        if not saved:
            log.warning("webhook_delivery outcome discarded, row changed during attempt")
            return claimed

        if claimed.status == DeliveryStatus.DELIVERED:
            log.info("webhook_delivery delivered", status_code=claimed.last_response_code)
        elif claimed.status == DeliveryStatus.EXHAUSTED:
            log.warning(
                "webhook_delivery exhausted",
                status_code=claimed.last_response_code,
                error=claimed.last_error,
            )
        else:
            log.info(
                "webhook_delivery failed",
                status_code=claimed.last_response_code,
                error=claimed.last_error,
                next_retry_at=claimed.next_retry_at.isoformat() if claimed.next_retry_at else None,
            )
        return claimed

    def _apply_result(self, delivery: WebhookDelivery, result: DeliveryResult) -> None:
        now = self._clock()
        if result.success:
            delivery.mark_delivered(result.status_code, result.body, now)
            return
        delivery.mark_failed(
            result.status_code,
            result.body,
            result.error,
            now,
            permanent=self._is_permanent(result.status_code),
        )

    def _is_permanent(self, status_code: int | None) -> bool:
        return (
            self._fail_fast
            and status_code is not None
            and 400 <= status_code < 500
            and status_code not in TRANSIENT_CLIENT_ERRORS
        )
