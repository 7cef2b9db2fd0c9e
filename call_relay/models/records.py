from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


FlushReason = Literal["end-of-call-report", "fallback", "single-event", "drain"]


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PhoneEnrichment(_WireModel):
    valid: bool | None = None
    line_type: str | None = None
    carrier: str | None = None
    location: str | None = None
    country_name: str | None = None


class CallSection(_WireModel):
    id: str | None = None
    status: str | None = None
    started_at: str | None = None
    ended_at: str | None = None
    ended_reason: str | None = None
    duration_seconds: float | None = None
    duration_minutes: float | None = None
    duration_ms: int | None = None
    cost: float | None = None


class AssistantSection(_WireModel):
    name: str | None = None
    phone_number: str | None = None


class CustomerSection(_WireModel):
    number: str | None = None
    name: str | None = None
    metadata: dict[str, Any] | None = None


class AnalysisSection(_WireModel):
    summary: str | None = None
    success_evaluation: Any = None
    score: float | None = None


class CallRecord(_WireModel):
    """Consolidated record posted downstream, one per call."""

    event_type: str
    flush_reason: FlushReason
    call: CallSection
    assistant: AssistantSection
    customer: CustomerSection
    phone_enrichment: PhoneEnrichment | None = None
    analysis: AnalysisSection
    structured_outputs: dict[str, Any] | None = None
    transcript: str | None = None
    recording_url: str | None = None
    stereo_recording_url: str | None = None
    event_count: int
    relayed_at: datetime

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class DeliveryOutcome(BaseModel):
    delivered: bool
    status_code: int | None = None
    reason: str | None = None

    @classmethod
    def ok(cls, status_code: int) -> "DeliveryOutcome":
        return cls(delivered=True, status_code=status_code)

    @classmethod
    def failed(cls, reason: str, status_code: int | None = None) -> "DeliveryOutcome":
        return cls(delivered=False, status_code=status_code, reason=reason)


class PendingCallSnapshot(BaseModel):
    call_id: str
    event_type: str
    event_count: int
    first_seen_at: datetime
    last_event_at: datetime
    fallback_due_in_seconds: float | None = None
