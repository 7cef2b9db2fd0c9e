from __future__ import annotations

import logging
from typing import Any

import httpx

from call_relay.domain.provider_errors import ProviderError, provider_error_detail
from call_relay.models.records import PhoneEnrichment
from call_relay.observability import incr_metric, log_event, log_event_once


PHONE_LOOKUP_API_BASE = "https://apilayer.net/api/validate"


class PhoneLookupProviderError(ProviderError):
    """Provider-level exception for phone lookup failures."""

    provider = "phone_lookup"


async def _send_request(
    *,
    url: str,
    params: dict[str, Any],
    timeout_seconds: float,
) -> httpx.Response:
    async with httpx.AsyncClient(timeout=timeout_seconds) as client:
        return await client.get(url, params=params, headers={"Accept": "application/json"})


async def _request_json(
    *,
    url: str,
    params: dict[str, Any],
    timeout_seconds: float,
) -> dict[str, Any]:
    try:
        response = await _send_request(url=url, params=params, timeout_seconds=timeout_seconds)
    except httpx.HTTPError as exc:
        raise PhoneLookupProviderError(f"Phone lookup connectivity error: {exc}", connectivity=True) from exc

    if response.status_code in {401, 403}:
        raise PhoneLookupProviderError("Invalid phone lookup API key", status_code=response.status_code)
    if response.status_code >= 400:
        raise PhoneLookupProviderError(
            f"Phone lookup returned HTTP {response.status_code}: {response.text[:200]}",
            status_code=response.status_code,
        )

    try:
        data = response.json()
    except ValueError as exc:
        raise PhoneLookupProviderError("Phone lookup returned non-JSON response") from exc
    if not isinstance(data, dict):
        raise PhoneLookupProviderError("Unexpected phone lookup response type")
    # numverify-style providers answer HTTP 200 with an error object
    if data.get("success") is False or isinstance(data.get("error"), dict):
        error = data.get("error") if isinstance(data.get("error"), dict) else {}
        code = error.get("code")
        raise PhoneLookupProviderError(
            f"Phone lookup provider error {code}: {error.get('info') or error.get('type') or 'unknown'}",
            status_code=code if isinstance(code, int) and 400 <= code < 600 else None,
        )
    return data


def _first_text(*values: Any) -> str | None:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _nested(data: dict[str, Any], key: str, inner: str) -> Any:
    value = data.get(key)
    if isinstance(value, dict):
        return value.get(inner)
    return None


def _as_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
        return value.strip().lower() == "true"
    return None


def map_lookup_response(data: dict[str, Any]) -> PhoneEnrichment:
    """Map numverify/abstract-style lookup payloads onto one enrichment shape."""
    valid = _as_bool(data.get("valid"))
    if valid is None:
        valid = _as_bool(data.get("is_valid"))
    if valid is None:
        valid = _as_bool(_nested(data, "format", "valid"))
    return PhoneEnrichment(
        valid=valid,
        line_type=_first_text(data.get("line_type"), data.get("lineType"), data.get("type")),
        carrier=_first_text(data.get("carrier"), _nested(data, "carrier", "name")),
        location=_first_text(data.get("location"), _nested(data, "location", "city")),
        country_name=_first_text(
            data.get("country_name"),
            data.get("countryName"),
            _nested(data, "country", "name"),
        ),
    )


async def lookup_phone_number(
    phone_number: str | None,
    *,
    api_key: str | None,
    base_url: str | None = None,
    timeout_seconds: float = 4.0,
    country_code: str | None = None,
    request_id: str | None = None,
) -> PhoneEnrichment | None:
    if not phone_number:
        incr_metric("enrichment.lookups", outcome="skipped_no_number")
        return None
    if not api_key:
        incr_metric("enrichment.lookups", outcome="skipped_unconfigured")
        log_event_once("phone_lookup_disabled", reason="missing phone lookup API key")
        return None

    params: dict[str, Any] = {"access_key": api_key, "number": phone_number}
    if country_code:
        params["country_code"] = country_code
    try:
        data = await _request_json(
            url=base_url or PHONE_LOOKUP_API_BASE,
            params=params,
            timeout_seconds=timeout_seconds,
        )
    except PhoneLookupProviderError as exc:
        incr_metric("enrichment.lookups", outcome="failed", category=exc.category)
        log_event(
            "phone_lookup_failed",
            level=logging.WARNING,
            request_id=request_id,
            **provider_error_detail(provider="phone_lookup", operation="lookup_phone_number", exc=exc),
        )
        return None

    incr_metric("enrichment.lookups", outcome="succeeded")
    return map_lookup_response(data)
