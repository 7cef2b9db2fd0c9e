from __future__ import annotations

import logging
from typing import Any

from fastapi import Request

from call_relay.config import Settings, settings
from call_relay.domain.aggregation import CallAggregator, FlushRequest, IngestResult
from call_relay.domain.normalization import normalize_event
from call_relay.domain.records import build_call_record
from call_relay.models.records import DeliveryOutcome
from call_relay.observability import incr_metric, log_event
from call_relay.providers.automation import client as automation_client
from call_relay.providers.phone_lookup import client as phone_lookup_client


class CallEventDispatcher:
    """Routes inbound bodies into the aggregator and delivers flushed calls."""

    def __init__(self, config: Settings) -> None:
        self.config = config
        self.aggregator = CallAggregator(
            self._handle_flush,
            fallback_window_seconds=config.fallback_window_seconds,
            ended_grace_seconds=config.ended_grace_seconds,
            tombstone_seconds=config.tombstone_seconds,
        )

    def dispatch(self, body: Any, *, request_id: str | None = None) -> IngestResult | None:
        # No await between normalize and ingest: arrival order is fold order.
        try:
            event = normalize_event(body)
            log_event(
                "call_event_received",
                request_id=request_id,
                call_id=event.call_id,
                event_type=event.event_type,
                status=event.status,
            )
            return self.aggregator.ingest(event, request_id=request_id)
        except Exception as exc:
            incr_metric("webhook.events.dispatch_failed")
            log_event("call_dispatch_failed", level=logging.ERROR, request_id=request_id, error=str(exc))
            return None

    async def _handle_flush(self, request: FlushRequest) -> DeliveryOutcome:
        enrichment = await phone_lookup_client.lookup_phone_number(
            request.merged.customer_number,
            api_key=self.config.phone_lookup_api_key,
            base_url=self.config.phone_lookup_base_url,
            timeout_seconds=self.config.phone_lookup_timeout_seconds,
            country_code=self.config.phone_lookup_country_code,
            request_id=request.request_id,
        )
        record = build_call_record(
            request.merged,
            flush_reason=request.reason,
            event_count=request.event_count,
            enrichment=enrichment,
        )
        outcome = await automation_client.deliver_record(
            record.to_wire(),
            hook_url=self.config.automation_hook_url,
            timeout_seconds=self.config.automation_timeout_seconds,
            request_id=request.request_id,
        )
        log_event(
            "call_flush_completed",
            level=logging.INFO if outcome.delivered else logging.WARNING,
            request_id=request.request_id,
            call_id=request.call_id,
            reason=request.reason,
            event_count=request.event_count,
            enriched=enrichment is not None,
            delivered=outcome.delivered,
            failure_reason=outcome.reason,
        )
        return outcome

    async def shutdown(self) -> None:
        await self.aggregator.shutdown(flush_pending=self.config.flush_pending_on_shutdown)


def build_dispatcher(config: Settings | None = None) -> CallEventDispatcher:
    return CallEventDispatcher(config or settings)


def get_dispatcher(request: Request) -> CallEventDispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        dispatcher = build_dispatcher()
        request.app.state.dispatcher = dispatcher
    return dispatcher
