from __future__ import annotations

import logging
from typing import Any

import httpx

from call_relay.domain.provider_errors import ProviderError, provider_error_detail
from call_relay.models.records import DeliveryOutcome
from call_relay.observability import incr_metric, log_event, log_event_once


class AutomationDeliveryError(ProviderError):
    """Provider-level exception for downstream hook delivery failures."""

    provider = "automation_hook"


async def _send_request(
    *,
    url: str,
    json_payload: dict[str, Any],
    timeout_seconds: float,
) -> httpx.Response:
    async with httpx.AsyncClient(timeout=timeout_seconds) as client:
        return await client.post(
            url,
            json=json_payload,
            headers={"Content-Type": "application/json"},
        )


async def _post_json(*, url: str, json_payload: dict[str, Any], timeout_seconds: float) -> int:
    try:
        response = await _send_request(url=url, json_payload=json_payload, timeout_seconds=timeout_seconds)
    except httpx.HTTPError as exc:
        raise AutomationDeliveryError(f"Automation hook connectivity error: {exc}", connectivity=True) from exc

    if response.status_code >= 400:
        raise AutomationDeliveryError(
            f"Automation hook returned HTTP {response.status_code}: {response.text[:200]}",
            status_code=response.status_code,
        )
    return response.status_code


async def deliver_record(
    record: dict[str, Any],
    *,
    hook_url: str | None,
    timeout_seconds: float = 10.0,
    request_id: str | None = None,
) -> DeliveryOutcome:
    """POST one record downstream. Never retries and never raises."""
    call = record.get("call")
    call_id = call.get("id") if isinstance(call, dict) else None
    if not hook_url:
        incr_metric("delivery.attempts", outcome="skipped_unconfigured")
        log_event_once("automation_hook_disabled", reason="missing automation hook url")
        log_event("call_record_not_delivered", level=logging.WARNING, request_id=request_id, call_id=call_id)
        return DeliveryOutcome.failed("delivery url not configured")

    try:
        status_code = await _post_json(url=hook_url, json_payload=record, timeout_seconds=timeout_seconds)
    except AutomationDeliveryError as exc:
        incr_metric("delivery.attempts", outcome="failed", category=exc.category)
        log_event(
            "call_record_delivery_failed",
            level=logging.WARNING,
            request_id=request_id,
            call_id=call_id,
            **provider_error_detail(provider="automation_hook", operation="deliver_record", exc=exc),
        )
        return DeliveryOutcome.failed(str(exc), status_code=exc.status_code)

    incr_metric("delivery.attempts", outcome="delivered")
    log_event("call_record_delivered", request_id=request_id, call_id=call_id, status_code=status_code)
    return DeliveryOutcome.ok(status_code)
