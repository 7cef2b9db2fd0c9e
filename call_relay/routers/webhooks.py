from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, Request

from call_relay.dispatcher import CallEventDispatcher, get_dispatcher
from call_relay.models.webhooks import WebhookAckResponse
from call_relay.observability import incr_metric, log_event


router = APIRouter(tags=["webhooks"])


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


@router.post("/api/webhooks/vapi", response_model=WebhookAckResponse)
@router.post("/vapi-hook", response_model=WebhookAckResponse, include_in_schema=False)
async def ingest_call_event(
    request: Request,
    dispatcher: CallEventDispatcher = Depends(get_dispatcher),
):
    req_id = _request_id(request)
    raw_body = await request.body()
    incr_metric("webhook.events.received", provider_slug="vapi")

    # The platform must always see a 200, so malformed bodies are acknowledged too.
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        payload = None
    if not isinstance(payload, dict):
        incr_metric("webhook.events.ignored", provider_slug="vapi", reason="invalid_body")
        log_event(
            "webhook_ignored",
            level=logging.WARNING,
            request_id=req_id,
            provider_slug="vapi",
            reason="invalid_body",
            body_size=len(raw_body),
        )
        return WebhookAckResponse(result="ignored")

    result = dispatcher.dispatch(payload, request_id=req_id)
    if result is None:
        return WebhookAckResponse(result="error")
    return WebhookAckResponse(result=result.value)
