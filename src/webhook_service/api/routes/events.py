"""Inbound domain events (fan-out to subscriptions)."""
from __future__ import annotations

from aiohttp import web

from webhook_service.api.utils import read_json
from webhook_service.domain.dto import EventPublishDTO
from webhook_service.services.dependencies import get_webhook_service, resolve_tenant_id

routes = web.RouteTableDef()


@routes.post("/api/v1/events")
async def publish_event(request: web.Request):
    tenant_id = resolve_tenant_id(request)
    dto = EventPublishDTO.model_validate(await read_json(request))
    deliveries = await get_webhook_service(request).publish(
        dto.event_type, dto.event_id, dto.payload, tenant_id=tenant_id
    )
    return web.json_response(
        {
            "event_id": str(dto.event_id),
            "deliveries": [d.model_dump(mode="json") for d in deliveries],
        },
        status=202,
    )
