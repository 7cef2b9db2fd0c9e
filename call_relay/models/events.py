from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict


EventType = Literal["status-update", "end-of-call-report", "unknown"]
TERMINAL_EVENT_TYPE: EventType = "end-of-call-report"


class CallTiming(BaseModel):
    model_config = ConfigDict(frozen=True)

    started_at: str | None = None
    ended_at: str | None = None
    duration_seconds: float | None = None
    duration_minutes: float | None = None
    duration_ms: int | None = None
    # Duration units computed locally rather than reported by the platform.
    derived: tuple[str, ...] = ()


class CallAnalysis(BaseModel):
    model_config = ConfigDict(frozen=True)

    summary: str | None = None
    success_evaluation: Any = None
    score: float | None = None


class NormalizedEvent(BaseModel):
    """Immutable snapshot of one inbound lifecycle message.

    ``None`` always means "not present in this message"; it is never used
    as an explicit value, so folding can tell missing data from new data.
    """

    model_config = ConfigDict(frozen=True)

    event_type: EventType = "unknown"
    call_id: str | None = None
    status: str | None = None
    timing: CallTiming = CallTiming()
    ended_reason: str | None = None
    customer_number: str | None = None
    customer_name: str | None = None
    customer_metadata: dict[str, Any] | None = None
    assistant_name: str | None = None
    assistant_phone: str | None = None
    analysis: CallAnalysis = CallAnalysis()
    transcript: str | None = None
    recording_url: str | None = None
    stereo_recording_url: str | None = None
    structured_outputs: dict[str, Any] | None = None
    cost: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.event_type == TERMINAL_EVENT_TYPE
