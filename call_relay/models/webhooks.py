from __future__ import annotations

from typing import Literal

from pydantic import BaseModel

from call_relay.models.records import PendingCallSnapshot


class WebhookAckResponse(BaseModel):
    status: Literal["accepted"] = "accepted"
    result: Literal["accumulating", "flushed", "suppressed", "ignored", "error"]


class RelayMetricsResponse(BaseModel):
    counters: dict[str, int]
    live_calls: int


class PendingCallsResponse(BaseModel):
    count: int
    calls: list[PendingCallSnapshot]


class FlushPendingResponse(BaseModel):
    flushed: int
