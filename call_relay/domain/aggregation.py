"""Per-call event consolidation with a single-delivery guarantee.

Each call id moves through ``ABSENT -> ACCUMULATING -> FLUSHED``. Events for
an accumulating call are folded into one merged ``NormalizedEvent``; the call
is flushed exactly once, either when the end-of-call report arrives or when
the fallback window elapses after the most recent event.

All state transitions are synchronous and run on the event loop thread, so
the ``flushed`` check-and-set needs no lock. The only awaits happen inside the
flush handler, after the state has already left the live map.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

from call_relay.domain.normalization import derive_timing
from call_relay.models.events import NormalizedEvent
from call_relay.models.records import FlushReason, PendingCallSnapshot
from call_relay.observability import incr_metric, log_event


_OPAQUE_FIELDS = {"customer_metadata", "structured_outputs", "success_evaluation"}


class IngestResult(str, Enum):
    ACCUMULATING = "accumulating"
    FLUSHED = "flushed"
    SUPPRESSED = "suppressed"


@dataclass(frozen=True)
class FlushRequest:
    call_id: str | None
    merged: NormalizedEvent
    reason: FlushReason
    event_count: int
    request_id: str | None = None


FlushHandler = Callable[[FlushRequest], Awaitable[Any]]


@dataclass
class AggregationState:
    call_id: str
    merged: NormalizedEvent
    first_seen_at: datetime
    last_event_at: datetime
    event_count: int = 1
    fallback_timer: asyncio.TimerHandle | None = None
    fallback_due_at: float | None = None
    last_request_id: str | None = None
    flushed: bool = False

    def cancel_timer(self) -> None:
        if self.fallback_timer is not None:
            self.fallback_timer.cancel()
        self.fallback_timer = None
        self.fallback_due_at = None


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == {} or value == []


def _fold_values(current: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    merged = dict(current)
    for key, value in incoming.items():
        if _is_empty(value):
            continue
        existing = merged.get(key)
        if key not in _OPAQUE_FIELDS and isinstance(value, dict) and isinstance(existing, dict):
            merged[key] = _fold_values(existing, value)
        else:
            merged[key] = value
    return merged


def _reported_values(event: NormalizedEvent) -> dict[str, Any]:
    data = event.model_dump()
    timing = data["timing"]
    for name in timing.pop("derived"):
        timing[name] = None
    return data


def fold_events(merged: NormalizedEvent, incoming: NormalizedEvent) -> NormalizedEvent:
    """Fold ``incoming`` over ``merged``: last non-empty value wins per field.

    Only reported durations take part in the fold; computed ones are derived
    again from the merged timestamps.
    """
    data = _fold_values(_reported_values(merged), _reported_values(incoming))
    data["event_type"] = incoming.event_type
    timing = data["timing"]
    data["timing"] = derive_timing(
        started_at=timing.get("started_at"),
        ended_at=timing.get("ended_at"),
        duration_seconds=timing.get("duration_seconds"),
        duration_minutes=timing.get("duration_minutes"),
        duration_ms=timing.get("duration_ms"),
    )
    return NormalizedEvent.model_validate(data)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CallAggregator:
    def __init__(
        self,
        flush_handler: FlushHandler,
        *,
        fallback_window_seconds: float = 20.0,
        ended_grace_seconds: float | None = 5.0,
        tombstone_seconds: float = 600.0,
    ) -> None:
        self._flush_handler = flush_handler
        self._fallback_window_seconds = fallback_window_seconds
        self._ended_grace_seconds = ended_grace_seconds
        self._tombstone_seconds = tombstone_seconds
        self._live: dict[str, AggregationState] = {}
        self._tombstones: dict[str, float] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def live_count(self) -> int:
        return len(self._live)

    def is_live(self, call_id: str) -> bool:
        return call_id in self._live

    def is_tombstoned(self, call_id: str) -> bool:
        expires_at = self._tombstones.get(call_id)
        return expires_at is not None and expires_at > asyncio.get_running_loop().time()

    def ingest(self, event: NormalizedEvent, *, request_id: str | None = None) -> IngestResult:
        """Apply one event to its call's state. Must run on the event loop."""
        if event.call_id is None:
            incr_metric("aggregator.events.unkeyed")
            self._spawn_flush(
                FlushRequest(call_id=None, merged=event, reason="single-event", event_count=1, request_id=request_id)
            )
            return IngestResult.FLUSHED

        call_id = event.call_id
        now = asyncio.get_running_loop().time()
        self._prune_tombstones(now)
        if call_id in self._tombstones:
            incr_metric("aggregator.events.suppressed", event_type=event.event_type)
            log_event(
                "call_event_suppressed",
                request_id=request_id,
                call_id=call_id,
                event_type=event.event_type,
                reason="already_flushed",
            )
            return IngestResult.SUPPRESSED

        state = self._live.get(call_id)
        if state is None:
            seen_at = _utcnow()
            state = AggregationState(
                call_id=call_id,
                merged=event,
                first_seen_at=seen_at,
                last_event_at=seen_at,
                last_request_id=request_id,
            )
            self._live[call_id] = state
            incr_metric("aggregator.calls.started")
            log_event(
                "call_aggregation_started",
                request_id=request_id,
                call_id=call_id,
                event_type=event.event_type,
            )
        else:
            state.merged = fold_events(state.merged, event)
            state.event_count += 1
            state.last_event_at = _utcnow()
            state.last_request_id = request_id or state.last_request_id
            incr_metric("aggregator.events.merged", event_type=event.event_type)

        if event.is_terminal:
            self._flush(state, "end-of-call-report")
            return IngestResult.FLUSHED

        self._schedule_fallback(state)
        return IngestResult.ACCUMULATING

    def _fallback_delay(self, state: AggregationState) -> float:
        delay = self._fallback_window_seconds
        if self._ended_grace_seconds is not None and state.merged.status == "ended":
            delay = min(delay, self._ended_grace_seconds)
        return max(delay, 0.0)

    def _schedule_fallback(self, state: AggregationState) -> None:
        state.cancel_timer()
        loop = asyncio.get_running_loop()
        delay = self._fallback_delay(state)
        state.fallback_due_at = loop.time() + delay
        state.fallback_timer = loop.call_later(delay, self._on_fallback, state)

    def _on_fallback(self, state: AggregationState) -> None:
        # A cancelled timer can still fire if cancellation raced the flush.
        if state.flushed or self._live.get(state.call_id) is not state:
            return
        state.fallback_timer = None
        self._flush(state, "fallback")

    def _flush(self, state: AggregationState, reason: FlushReason) -> bool:
        if state.flushed:
            return False
        state.flushed = True
        state.cancel_timer()
        if self._live.get(state.call_id) is state:
            del self._live[state.call_id]
        if self._tombstone_seconds > 0:
            self._tombstones[state.call_id] = asyncio.get_running_loop().time() + self._tombstone_seconds
        self._spawn_flush(
            FlushRequest(
                call_id=state.call_id,
                merged=state.merged,
                reason=reason,
                event_count=state.event_count,
                request_id=state.last_request_id,
            )
        )
        return True

    def _spawn_flush(self, request: FlushRequest) -> None:
        incr_metric("aggregator.calls.flushed", reason=request.reason)
        log_event(
            "call_flush_scheduled",
            request_id=request.request_id,
            call_id=request.call_id,
            reason=request.reason,
            event_count=request.event_count,
        )
        task = asyncio.get_running_loop().create_task(self._run_flush(request))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_flush(self, request: FlushRequest) -> None:
        try:
            await self._flush_handler(request)
        except Exception as exc:
            incr_metric("aggregator.flush.failed", reason=request.reason)
            log_event(
                "call_flush_failed",
                level=logging.ERROR,
                request_id=request.request_id,
                call_id=request.call_id,
                reason=request.reason,
                error=str(exc),
            )

    def _prune_tombstones(self, now: float) -> None:
        expired = [call_id for call_id, expires_at in self._tombstones.items() if expires_at <= now]
        for call_id in expired:
            del self._tombstones[call_id]

    def pending_calls(self) -> list[PendingCallSnapshot]:
        now = asyncio.get_running_loop().time()
        return [
            PendingCallSnapshot(
                call_id=state.call_id,
                event_type=state.merged.event_type,
                event_count=state.event_count,
                first_seen_at=state.first_seen_at,
                last_event_at=state.last_event_at,
                fallback_due_in_seconds=(
                    max(state.fallback_due_at - now, 0.0) if state.fallback_due_at is not None else None
                ),
            )
            for state in self._live.values()
        ]

    def flush_all(self, reason: FlushReason = "drain") -> int:
        flushed = 0
        for state in list(self._live.values()):
            if self._flush(state, reason):
                flushed += 1
        return flushed

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, *, flush_pending: bool = True) -> None:
        if flush_pending:
            drained = self.flush_all("drain")
        else:
            drained = 0
            for state in self._live.values():
                state.cancel_timer()
            self._live.clear()
        log_event("call_aggregator_shutdown", drained=drained, flush_pending=flush_pending)
        await self.wait_idle()
