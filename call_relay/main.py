from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from call_relay.config import settings
from call_relay.dispatcher import build_dispatcher
from call_relay.observability import configure_logging, log_event
from call_relay.routers import internal_ops, webhooks


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    app.state.dispatcher = build_dispatcher(settings)
    log_event(
        "relay_started",
        delivery_configured=bool(settings.automation_hook_url),
        enrichment_configured=bool(settings.phone_lookup_api_key),
        fallback_window_seconds=settings.fallback_window_seconds,
    )
    try:
        yield
    finally:
        await app.state.dispatcher.shutdown()


app = FastAPI(title="Call Relay", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = (
        request.headers.get("X-Request-ID")
        or request.headers.get("X-Correlation-ID")
        or str(uuid4())
    )
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

app.include_router(webhooks.router)
app.include_router(internal_ops.router)


@app.get("/")
async def root():
    return {"status": "ok", "service": "call-relay"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
