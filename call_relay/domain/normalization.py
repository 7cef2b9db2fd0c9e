from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Callable

from call_relay.models.events import CallAnalysis, CallTiming, EventType, NormalizedEvent


def _get_path(source: Any, path: str) -> Any:
    current = source
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def _as_text(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _as_int(value: Any) -> int | None:
    number = _as_number(value)
    return int(round(number)) if number is not None else None


def _as_mapping(value: Any) -> dict[str, Any] | None:
    if isinstance(value, dict) and value:
        return dict(value)
    return None


def _as_evaluation(value: Any) -> Any:
    if value is None or value == "" or value == {} or value == []:
        return None
    if isinstance(value, str):
        return value.strip() or None
    return value


# Ordered candidate paths per logical field, evaluated first-non-empty-wins
# against the unwrapped message object.
FIELD_PATHS: dict[str, tuple[str, ...]] = {
    "event_type": ("type", "eventType", "event_type"),
    "call_id": ("call.id", "artifact.call.id", "callId", "call_id"),
    "status": ("status", "call.status", "artifact.call.status"),
    "started_at": ("startedAt", "call.startedAt", "artifact.call.startedAt", "started_at"),
    "ended_at": ("endedAt", "call.endedAt", "artifact.call.endedAt", "ended_at"),
    "duration_seconds": (
        "durationSeconds",
        "call.durationSeconds",
        "artifact.call.durationSeconds",
        "duration_seconds",
    ),
    "duration_minutes": (
        "durationMinutes",
        "call.durationMinutes",
        "artifact.call.durationMinutes",
        "duration_minutes",
    ),
    "duration_ms": ("durationMs", "call.durationMs", "artifact.call.durationMs", "duration_ms"),
    "ended_reason": ("endedReason", "call.endedReason", "artifact.call.endedReason", "ended_reason"),
    "customer_number": (
        "customer.number",
        "call.customer.number",
        "artifact.call.customer.number",
        "variables.customer.number",
        "variableValues.customer.number",
        "artifact.variableValues.customer.number",
        "phoneNumber.customer.number",
        "phoneNumber.customerNumber",
        "customerPhone",
        "call.to.number",
        "call.from.number",
    ),
    "customer_name": (
        "customer.name",
        "call.customer.name",
        "artifact.call.customer.name",
        "variables.customer.name",
        "variableValues.customer.name",
        "call.metadata.name",
        "metadata.name",
    ),
    "customer_metadata": ("metadata", "call.metadata", "artifact.call.metadata", "customer.metadata"),
    "assistant_name": ("assistant.name", "call.assistant.name", "artifact.call.assistant.name"),
    "assistant_phone": ("phoneNumber.number", "call.phoneNumber.number", "artifact.call.phoneNumber.number"),
    "summary": ("analysis.summary", "call.analysis.summary", "summary"),
    "success_evaluation": (
        "analysis.successEvaluation",
        "call.analysis.successEvaluation",
        "successEvaluation",
    ),
    "score": ("analysis.score", "call.analysis.score", "analysis.structuredData.score", "score"),
    "transcript": ("transcript", "artifact.transcript", "call.artifact.transcript"),
    "recording_url": (
        "recordingUrl",
        "artifact.recordingUrl",
        "artifact.recording.url",
        "call.recordingUrl",
    ),
    "stereo_recording_url": (
        "stereoRecordingUrl",
        "artifact.stereoRecordingUrl",
        "artifact.recording.stereoUrl",
        "call.stereoRecordingUrl",
    ),
    "structured_outputs": ("structuredOutputs", "artifact.structuredOutputs", "analysis.structuredData"),
    "cost": ("cost", "call.cost", "artifact.call.cost"),
}

FIELD_COERCERS: dict[str, Callable[[Any], Any]] = {
    "duration_seconds": _as_number,
    "duration_minutes": _as_number,
    "duration_ms": _as_int,
    "customer_metadata": _as_mapping,
    "success_evaluation": _as_evaluation,
    "score": _as_number,
    "structured_outputs": _as_mapping,
    "cost": _as_number,
}


def resolve_field(message: Any, field: str) -> Any:
    coerce = FIELD_COERCERS.get(field, _as_text)
    for path in FIELD_PATHS[field]:
        value = coerce(_get_path(message, path))
        if value is not None:
            return value
    return None


def normalize_event_type(value: str | None) -> EventType:
    if not value:
        return "unknown"
    key = str(value).strip().lower().replace("_", "-").replace(" ", "-")
    mapping: dict[str, EventType] = {
        "status-update": "status-update",
        "statusupdate": "status-update",
        "end-of-call-report": "end-of-call-report",
        "endofcallreport": "end-of-call-report",
        "end-of-call": "end-of-call-report",
    }
    return mapping.get(key, "unknown")


def unwrap_message(body: Any) -> dict[str, Any]:
    if not isinstance(body, dict):
        return {}
    message = body.get("message")
    if isinstance(message, dict):
        return message
    return body


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else None


def derive_timing(
    *,
    started_at: str | None,
    ended_at: str | None,
    duration_seconds: float | None,
    duration_minutes: float | None,
    duration_ms: int | None,
) -> CallTiming:
    reported = {
        "duration_seconds": duration_seconds,
        "duration_minutes": duration_minutes,
        "duration_ms": duration_ms,
    }
    if duration_ms is None:
        if duration_seconds is not None:
            duration_ms = int(round(duration_seconds * 1000))
        elif duration_minutes is not None:
            duration_ms = int(round(duration_minutes * 60_000))
        else:
            start = _parse_timestamp(started_at)
            end = _parse_timestamp(ended_at)
            if start and end and end >= start:
                duration_ms = int(round((end - start).total_seconds() * 1000))
    if duration_ms is not None:
        if duration_seconds is None:
            duration_seconds = round(duration_ms / 1000, 3)
        if duration_minutes is None:
            duration_minutes = round(duration_ms / 60_000, 2)
    resolved = {
        "duration_seconds": duration_seconds,
        "duration_minutes": duration_minutes,
        "duration_ms": duration_ms,
    }
    return CallTiming(
        started_at=started_at,
        ended_at=ended_at,
        derived=tuple(name for name, value in resolved.items() if value is not None and reported[name] is None),
        **resolved,
    )


def normalize_event(body: Any) -> NormalizedEvent:
    """Map any inbound webhook body onto a ``NormalizedEvent``.

    Never raises. Unknown or malformed structure simply leaves the
    corresponding field absent.
    """
    message = unwrap_message(body)
    values = {field: resolve_field(message, field) for field in FIELD_PATHS}
    timing = derive_timing(
        started_at=values["started_at"],
        ended_at=values["ended_at"],
        duration_seconds=values["duration_seconds"],
        duration_minutes=values["duration_minutes"],
        duration_ms=values["duration_ms"],
    )
    status_value = values["status"]
    return NormalizedEvent(
        event_type=normalize_event_type(values["event_type"]),
        call_id=values["call_id"],
        status=status_value.lower() if status_value else None,
        timing=timing,
        ended_reason=values["ended_reason"],
        customer_number=values["customer_number"],
        customer_name=values["customer_name"],
        customer_metadata=values["customer_metadata"],
        assistant_name=values["assistant_name"],
        assistant_phone=values["assistant_phone"],
        analysis=CallAnalysis(
            summary=values["summary"],
            success_evaluation=values["success_evaluation"],
            score=values["score"],
        ),
        transcript=values["transcript"],
        recording_url=values["recording_url"],
        stereo_recording_url=values["stereo_recording_url"],
        structured_outputs=values["structured_outputs"],
        cost=values["cost"],
    )
