from __future__ import annotations

import asyncio

import httpx

from call_relay.config import Settings
from call_relay.dispatcher import CallEventDispatcher
from call_relay.domain.aggregation import IngestResult
from call_relay.models.records import DeliveryOutcome, PhoneEnrichment
from call_relay.providers.automation import client as automation_client
from call_relay.providers.phone_lookup import client as phone_lookup_client


_real_lookup = phone_lookup_client.lookup_phone_number


def _settings(**overrides) -> Settings:
    values = {
        "automation_hook_url": "https://hooks.example/catch/1",
        "phone_lookup_api_key": "lookup-key",
        "fallback_window_seconds": 0.05,
        "ended_grace_seconds": None,
        "tombstone_seconds": 60.0,
    }
    values.update(overrides)
    return Settings(**values)


def _install_fakes(monkeypatch, enrichment=None):
    lookups = []
    deliveries = []

    async def _fake_lookup(phone_number, **kwargs):
        lookups.append((phone_number, kwargs))
        return enrichment

    async def _fake_deliver(record, **kwargs):
        deliveries.append((record, kwargs))
        return DeliveryOutcome.ok(200)

    monkeypatch.setattr(phone_lookup_client, "lookup_phone_number", _fake_lookup)
    monkeypatch.setattr(automation_client, "deliver_record", _fake_deliver)
    return lookups, deliveries


def test_end_of_call_report_is_enriched_and_delivered(monkeypatch):
    enrichment = PhoneEnrichment(
        valid=True,
        line_type="mobile",
        carrier="Verizon",
        location="Austin",
        country_name="United States of America",
    )
    lookups, deliveries = _install_fakes(monkeypatch, enrichment=enrichment)

    async def scenario():
        dispatcher = CallEventDispatcher(_settings())
        result = dispatcher.dispatch(
            {
                "message": {
                    "type": "end-of-call-report",
                    "call": {"id": "c1", "endedReason": "completed"},
                    "customer": {"number": "+15551234567", "name": "Sam"},
                }
            }
        )
        await dispatcher.aggregator.wait_idle()
        return result

    result = asyncio.run(scenario())

    assert result is IngestResult.FLUSHED
    assert [phone for phone, _ in lookups] == ["+15551234567"]
    assert lookups[0][1]["api_key"] == "lookup-key"
    assert len(deliveries) == 1
    record, kwargs = deliveries[0]
    assert kwargs["hook_url"] == "https://hooks.example/catch/1"
    assert record["eventType"] == "end-of-call-report"
    assert record["flushReason"] == "end-of-call-report"
    assert record["call"]["id"] == "c1"
    assert record["call"]["endedReason"] == "completed"
    assert record["customer"] == {"number": "+15551234567", "name": "Sam", "metadata": None}
    assert record["phoneEnrichment"] == {
        "valid": True,
        "lineType": "mobile",
        "carrier": "Verizon",
        "location": "Austin",
        "countryName": "United States of America",
    }
    assert record["eventCount"] == 1


def test_record_contains_minimum_output_shape(monkeypatch):
    _, deliveries = _install_fakes(monkeypatch)

    async def scenario():
        dispatcher = CallEventDispatcher(_settings())
        dispatcher.dispatch({"message": {"type": "status-update", "call": {"id": "c3"}}})
        await asyncio.sleep(0.15)
        await dispatcher.aggregator.wait_idle()

    asyncio.run(scenario())

    record = deliveries[0][0]
    assert record["flushReason"] == "fallback"
    assert record["phoneEnrichment"] is None
    assert set(record["call"]) >= {
        "id",
        "startedAt",
        "endedAt",
        "endedReason",
        "durationSeconds",
        "durationMinutes",
        "durationMs",
        "cost",
    }
    assert set(record["customer"]) == {"number", "name", "metadata"}
    assert set(record["analysis"]) == {"summary", "successEvaluation", "score"}
    for key in ("transcript", "recordingUrl", "stereoRecordingUrl", "eventType"):
        assert key in record


def test_enrichment_uses_best_number_accumulated_before_flush(monkeypatch):
    lookups, deliveries = _install_fakes(monkeypatch)

    async def scenario():
        dispatcher = CallEventDispatcher(_settings(fallback_window_seconds=5.0))
        dispatcher.dispatch({"message": {"type": "status-update", "call": {"id": "c2"}, "customer": {"number": "+15550000000"}}})
        dispatcher.dispatch({"message": {"type": "end-of-call-report", "call": {"id": "c2"}, "analysis": {"summary": "ok"}}})
        await dispatcher.aggregator.wait_idle()

    asyncio.run(scenario())

    assert [phone for phone, _ in lookups] == ["+15550000000"]
    record = deliveries[0][0]
    assert record["customer"]["number"] == "+15550000000"
    assert record["analysis"]["summary"] == "ok"
    assert record["eventCount"] == 2


def test_enrichment_failure_does_not_block_delivery(monkeypatch):
    _, deliveries = _install_fakes(monkeypatch)

    async def _hanging_send_request(**kwargs):
        await asyncio.sleep(kwargs["timeout_seconds"])
        raise httpx.ReadTimeout("timed out")

    monkeypatch.setattr(phone_lookup_client, "lookup_phone_number", _real_lookup)
    monkeypatch.setattr(phone_lookup_client, "_send_request", _hanging_send_request)

    async def scenario():
        dispatcher = CallEventDispatcher(_settings(phone_lookup_timeout_seconds=0.05))
        loop = asyncio.get_running_loop()
        started = loop.time()
        dispatcher.dispatch({"type": "end-of-call-report", "call": {"id": "c4"}, "customer": {"number": "+1555"}})
        await dispatcher.aggregator.wait_idle()
        return loop.time() - started

    elapsed = asyncio.run(scenario())

    assert len(deliveries) == 1
    assert deliveries[0][0]["phoneEnrichment"] is None
    assert elapsed < 1.0


def test_event_without_call_id_is_delivered_without_aggregation(monkeypatch):
    _, deliveries = _install_fakes(monkeypatch)

    async def scenario():
        dispatcher = CallEventDispatcher(_settings())
        result = dispatcher.dispatch({"message": {"type": "status-update", "customer": {"number": "+1555"}}})
        live = dispatcher.aggregator.live_count
        await dispatcher.aggregator.wait_idle()
        return result, live

    result, live = asyncio.run(scenario())

    assert result is IngestResult.FLUSHED
    assert live == 0
    assert deliveries[0][0]["flushReason"] == "single-event"
    assert deliveries[0][0]["call"]["id"] is None


def test_dispatch_outside_event_loop_is_contained():
    dispatcher = CallEventDispatcher(_settings())
    assert dispatcher.dispatch({"type": "status-update", "call": {"id": "c5"}}) is None


def test_shutdown_drains_pending_calls(monkeypatch):
    _, deliveries = _install_fakes(monkeypatch)

    async def scenario():
        dispatcher = CallEventDispatcher(_settings(fallback_window_seconds=30.0, flush_pending_on_shutdown=True))
        dispatcher.dispatch({"type": "status-update", "call": {"id": "c6"}})
        await dispatcher.shutdown()

    asyncio.run(scenario())

    assert len(deliveries) == 1
    assert deliveries[0][0]["flushReason"] == "drain"


def test_flush_forwards_request_id_of_latest_event(monkeypatch):
    lookups, deliveries = _install_fakes(monkeypatch)

    async def scenario():
        dispatcher = CallEventDispatcher(_settings(fallback_window_seconds=5.0))
        dispatcher.dispatch(
            {"message": {"type": "status-update", "call": {"id": "c7"}, "customer": {"number": "+1555"}}},
            request_id="req-1",
        )
        dispatcher.dispatch({"message": {"type": "end-of-call-report", "call": {"id": "c7"}}}, request_id="req-2")
        await dispatcher.aggregator.wait_idle()

    asyncio.run(scenario())

    assert lookups[0][1]["request_id"] == "req-2"
    assert deliveries[0][1]["request_id"] == "req-2"


def test_fallback_flush_uses_status_as_ended_reason(monkeypatch):
    _, deliveries = _install_fakes(monkeypatch)

    async def scenario():
        dispatcher = CallEventDispatcher(_settings())
        dispatcher.dispatch({"message": {"type": "status-update", "status": "ended", "call": {"id": "c8"}}})
        dispatcher.dispatch(
            {"message": {"type": "status-update", "call": {"id": "c9", "status": "ended", "endedReason": "hangup"}}}
        )
        await asyncio.sleep(0.15)
        await dispatcher.aggregator.wait_idle()

    asyncio.run(scenario())

    reasons = {record["call"]["id"]: record["call"]["endedReason"] for record, _ in deliveries}
    assert reasons == {"c8": "ended", "c9": "hangup"}
