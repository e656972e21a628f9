"""Delivery history and manual retry endpoints."""
from __future__ import annotations

from aiohttp import web

from webhook_service.api.utils import (
    paginated_response,
    pagination_params,
    parse_status,
    parse_uuid,
)
from webhook_service.services.dependencies import get_webhook_service, resolve_tenant_id

routes = web.RouteTableDef()


@routes.get("/api/v1/webhook-deliveries")
async def list_deliveries(request: web.Request):
    tenant_id = resolve_tenant_id(request)
    limit, offset = pagination_params(request)
    items, total = await get_webhook_service(request).list_deliveries_for_tenant(
        tenant_id, status=parse_status(request), limit=limit, offset=offset
    )
    payload = paginated_response(
        [item.model_dump(mode="json") for item in items],
        limit=limit,
        offset=offset,
        key="deliveries",
        total=total,
    )
    return web.json_response(payload)


@routes.get("/api/v1/webhook-deliveries/{delivery_id}")
async def get_delivery(request: web.Request):
    tenant_id = resolve_tenant_id(request)
    delivery_id = parse_uuid(request.match_info["delivery_id"], "delivery_id")
    delivery = await get_webhook_service(request).get_delivery(tenant_id, delivery_id)
    return web.json_response(delivery.model_dump(mode="json"))


@routes.post("/api/v1/webhook-deliveries/{delivery_id}/retry")
async def retry_delivery(request: web.Request):
    tenant_id = resolve_tenant_id(request)
    delivery_id = parse_uuid(request.match_info["delivery_id"], "delivery_id")
    delivery = await get_webhook_service(request).retry_delivery(tenant_id, delivery_id)
    return web.json_response(delivery.model_dump(mode="json"))
