"""Webhook subscription endpoints."""
from __future__ import annotations

from typing import Any

from aiohttp import web

from webhook_service.api.utils import (
    paginated_response,
    pagination_params,
    parse_status,
    parse_uuid,
    read_json,
)
from webhook_service.domain.dto import WebhookCreateDTO, WebhookUpdateDTO
from webhook_service.domain.webhooks import Webhook
from webhook_service.services.dependencies import get_webhook_service, resolve_tenant_id

routes = web.RouteTableDef()


def _dump(webhook: Webhook, *, with_secret: bool = False) -> dict[str, Any]:
    exclude = None if with_secret else {"secret"}
    return webhook.model_dump(mode="json", exclude=exclude)


@routes.get("/api/v1/webhooks")
async def list_webhooks(request: web.Request):
    tenant_id = resolve_tenant_id(request)
    limit, offset = pagination_params(request)
    items, total = await get_webhook_service(request).list_webhooks(
        tenant_id, limit=limit, offset=offset
    )
    payload = paginated_response(
        [_dump(item) for item in items],
        limit=limit,
        offset=offset,
        key="webhooks",
        total=total,
    )
    return web.json_response(payload)


@routes.post("/api/v1/webhooks")
async def create_webhook(request: web.Request):
    tenant_id = resolve_tenant_id(request)
    dto = WebhookCreateDTO.model_validate(await read_json(request))
    webhook = await get_webhook_service(request).create_webhook(tenant_id, dto)
    # The secret is only ever returned on creation and rotation.
    return web.json_response(_dump(webhook, with_secret=True), status=201)


@routes.get("/api/v1/webhooks/{webhook_id}")
async def get_webhook(request: web.Request):
    tenant_id = resolve_tenant_id(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    webhook = await get_webhook_service(request).get_webhook(tenant_id, webhook_id)
    return web.json_response(_dump(webhook))


@routes.patch("/api/v1/webhooks/{webhook_id}")
async def update_webhook(request: web.Request):
    tenant_id = resolve_tenant_id(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    dto = WebhookUpdateDTO.model_validate(await read_json(request))
    webhook = await get_webhook_service(request).update_webhook(tenant_id, webhook_id, dto)
    return web.json_response(_dump(webhook))


@routes.delete("/api/v1/webhooks/{webhook_id}")
async def delete_webhook(request: web.Request):
    tenant_id = resolve_tenant_id(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    await get_webhook_service(request).delete_webhook(tenant_id, webhook_id)
    return web.Response(status=204)


@routes.post("/api/v1/webhooks/{webhook_id}/activate")
async def activate_webhook(request: web.Request):
    tenant_id = resolve_tenant_id(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    webhook = await get_webhook_service(request).activate_webhook(tenant_id, webhook_id)
    return web.json_response(_dump(webhook))


@routes.post("/api/v1/webhooks/{webhook_id}/deactivate")
async def deactivate_webhook(request: web.Request):
    tenant_id = resolve_tenant_id(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    webhook = await get_webhook_service(request).deactivate_webhook(tenant_id, webhook_id)
    return web.json_response(_dump(webhook))


@routes.post("/api/v1/webhooks/{webhook_id}/regenerate-secret")
async def regenerate_secret(request: web.Request):
    tenant_id = resolve_tenant_id(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    webhook = await get_webhook_service(request).regenerate_secret(tenant_id, webhook_id)
    return web.json_response(_dump(webhook, with_secret=True))


@routes.post("/api/v1/webhooks/{webhook_id}/test")
async def send_test_webhook(request: web.Request):
    tenant_id = resolve_tenant_id(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    delivery = await get_webhook_service(request).send_test(tenant_id, webhook_id)
    return web.json_response(delivery.model_dump(mode="json"), status=201)


@routes.get("/api/v1/webhooks/{webhook_id}/deliveries")
async def list_webhook_deliveries(request: web.Request):
    tenant_id = resolve_tenant_id(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    limit, offset = pagination_params(request)
    items, total = await get_webhook_service(request).list_deliveries_for_webhook(
        tenant_id,
        webhook_id,
        status=parse_status(request),
        limit=limit,
        offset=offset,
    )
    payload = paginated_response(
        [item.model_dump(mode="json") for item in items],
        limit=limit,
        offset=offset,
        key="deliveries",
        total=total,
    )
    return web.json_response(payload)


@routes.get("/api/v1/webhooks/{webhook_id}/stats")
async def webhook_delivery_stats(request: web.Request):
    tenant_id = resolve_tenant_id(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    stats = await get_webhook_service(request).delivery_stats(tenant_id, webhook_id)
    return web.json_response(stats)
