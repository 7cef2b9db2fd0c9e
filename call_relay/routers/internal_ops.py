from __future__ import annotations

import hmac

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from call_relay.config import settings
from call_relay.dispatcher import CallEventDispatcher, get_dispatcher
from call_relay.models.webhooks import FlushPendingResponse, PendingCallsResponse, RelayMetricsResponse
from call_relay.observability import incr_metric, log_event, metrics_snapshot


router = APIRouter(prefix="/api/internal/relay", tags=["internal"])


async def require_ops_secret(
    request: Request,
    x_internal_ops_secret: str | None = Header(default=None),
) -> None:
    configured_secret = settings.internal_ops_secret
    if not configured_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="internal ops secret is not configured",
        )
    if not x_internal_ops_secret or not hmac.compare_digest(x_internal_ops_secret, configured_secret):
        incr_metric("internal_ops.auth_failed")
        log_event("internal_ops_auth_failed", request_id=getattr(request.state, "request_id", None))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid ops secret",
        )


@router.get("/metrics", response_model=RelayMetricsResponse, dependencies=[Depends(require_ops_secret)])
async def get_relay_metrics(dispatcher: CallEventDispatcher = Depends(get_dispatcher)):
    return RelayMetricsResponse(counters=metrics_snapshot(), live_calls=dispatcher.aggregator.live_count)


@router.get("/calls", response_model=PendingCallsResponse, dependencies=[Depends(require_ops_secret)])
async def list_pending_calls(dispatcher: CallEventDispatcher = Depends(get_dispatcher)):
    calls = dispatcher.aggregator.pending_calls()
    return PendingCallsResponse(count=len(calls), calls=calls)


@router.post("/flush", response_model=FlushPendingResponse, dependencies=[Depends(require_ops_secret)])
async def flush_pending_calls(request: Request, dispatcher: CallEventDispatcher = Depends(get_dispatcher)):
    flushed = dispatcher.aggregator.flush_all("drain")
    log_event("pending_calls_drained", request_id=getattr(request.state, "request_id", None), flushed=flushed)
    return FlushPendingResponse(flushed=flushed)
