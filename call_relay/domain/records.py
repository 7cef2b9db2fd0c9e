from __future__ import annotations

from datetime import datetime, timezone

from call_relay.models.events import NormalizedEvent
from call_relay.models.records import (
    AnalysisSection,
    AssistantSection,
    CallRecord,
    CallSection,
    CustomerSection,
    FlushReason,
    PhoneEnrichment,
)


def _ended_reason(merged: NormalizedEvent, flush_reason: FlushReason) -> str | None:
    # Calls that never sent a report fall back to their last known status.
    if merged.ended_reason is None and flush_reason == "fallback":
        return merged.status
    return merged.ended_reason


def build_call_record(
    merged: NormalizedEvent,
    *,
    flush_reason: FlushReason,
    event_count: int,
    enrichment: PhoneEnrichment | None = None,
    relayed_at: datetime | None = None,
) -> CallRecord:
    return CallRecord(
        event_type=merged.event_type,
        flush_reason=flush_reason,
        call=CallSection(
            id=merged.call_id,
            status=merged.status,
            started_at=merged.timing.started_at,
            ended_at=merged.timing.ended_at,
            ended_reason=_ended_reason(merged, flush_reason),
            duration_seconds=merged.timing.duration_seconds,
            duration_minutes=merged.timing.duration_minutes,
            duration_ms=merged.timing.duration_ms,
            cost=merged.cost,
        ),
        assistant=AssistantSection(name=merged.assistant_name, phone_number=merged.assistant_phone),
        customer=CustomerSection(
            number=merged.customer_number,
            name=merged.customer_name,
            metadata=merged.customer_metadata,
        ),
        phone_enrichment=enrichment,
        analysis=AnalysisSection(
            summary=merged.analysis.summary,
            success_evaluation=merged.analysis.success_evaluation,
            score=merged.analysis.score,
        ),
        structured_outputs=merged.structured_outputs,
        transcript=merged.transcript,
        recording_url=merged.recording_url,
        stereo_recording_url=merged.stereo_recording_url,
        event_count=event_count,
        relayed_at=relayed_at or datetime.now(timezone.utc),
    )
