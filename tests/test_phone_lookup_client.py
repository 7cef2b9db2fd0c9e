from __future__ import annotations

import asyncio

import httpx

from call_relay.providers.phone_lookup import client as phone_lookup_client


class _FakeResponse:
    def __init__(self, status_code: int, payload):
        self.status_code = status_code
        self._payload = payload
        self.text = str(payload)

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


def _install(monkeypatch, response=None, error: Exception | None = None):
    calls = []

    async def _fake_send_request(**kwargs):
        calls.append(kwargs)
        if error is not None:
            raise error
        return response

    monkeypatch.setattr(phone_lookup_client, "_send_request", _fake_send_request)
    return calls


def test_lookup_sends_number_and_access_key_as_query_params(monkeypatch):
    calls = _install(
        monkeypatch,
        _FakeResponse(
            200,
            {
                "valid": True,
                "line_type": "mobile",
                "carrier": "AT&T Mobility",
                "location": "Novato",
                "country_name": "United States of America",
            },
        ),
    )
    result = asyncio.run(
        phone_lookup_client.lookup_phone_number(
            "+14158586273",
            api_key="lookup-key",
            base_url="https://lookup.example/validate",
            timeout_seconds=2.5,
        )
    )

    assert calls == [
        {
            "url": "https://lookup.example/validate",
            "params": {"access_key": "lookup-key", "number": "+14158586273"},
            "timeout_seconds": 2.5,
        }
    ]
    assert result.valid is True
    assert result.line_type == "mobile"
    assert result.carrier == "AT&T Mobility"
    assert result.location == "Novato"
    assert result.country_name == "United States of America"


def test_lookup_includes_country_code_when_configured(monkeypatch):
    calls = _install(monkeypatch, _FakeResponse(200, {"valid": False}))
    asyncio.run(phone_lookup_client.lookup_phone_number("4158586273", api_key="k", country_code="US"))
    assert calls[0]["params"]["country_code"] == "US"
    assert calls[0]["url"] == phone_lookup_client.PHONE_LOOKUP_API_BASE


def test_missing_number_or_key_skips_network(monkeypatch):
    calls = _install(monkeypatch, _FakeResponse(200, {"valid": True}))

    assert asyncio.run(phone_lookup_client.lookup_phone_number(None, api_key="k")) is None
    assert asyncio.run(phone_lookup_client.lookup_phone_number("", api_key="k")) is None
    assert asyncio.run(phone_lookup_client.lookup_phone_number("+1555", api_key=None)) is None
    assert calls == []


def test_failures_degrade_to_empty_result(monkeypatch):
    failures = [
        (None, httpx.ConnectTimeout("timed out")),
        (_FakeResponse(500, {"message": "down"}), None),
        (_FakeResponse(401, {"message": "nope"}), None),
        (_FakeResponse(200, ValueError("not json")), None),
        (_FakeResponse(200, ["unexpected"]), None),
        (_FakeResponse(200, {"success": False, "error": {"code": 101, "type": "invalid_access_key"}}), None),
    ]
    for response, error in failures:
        _install(monkeypatch, response, error)
        result = asyncio.run(phone_lookup_client.lookup_phone_number("+1555", api_key="k"))
        assert result is None


def test_error_category_contract():
    transient = phone_lookup_client.PhoneLookupProviderError("timeout", connectivity=True)
    throttled = phone_lookup_client.PhoneLookupProviderError("HTTP 429", status_code=429)
    terminal = phone_lookup_client.PhoneLookupProviderError("Invalid phone lookup API key", status_code=401)

    assert transient.category == "transient"
    assert transient.retryable is True
    assert throttled.retryable is True
    assert terminal.category == "terminal"
    assert terminal.retryable is False


def test_alternate_provider_shape_is_mapped():
    result = phone_lookup_client.map_lookup_response(
        {
            "phone": "14152007986",
            "valid": "true",
            "type": "mobile",
            "carrier": {"name": "T-Mobile"},
            "location": {"city": "San Francisco"},
            "country": {"code": "US", "name": "United States"},
        }
    )
    assert result.valid is True
    assert result.line_type == "mobile"
    assert result.carrier == "T-Mobile"
    assert result.location == "San Francisco"
    assert result.country_name == "United States"


def test_nested_validity_flag_and_missing_fields():
    result = phone_lookup_client.map_lookup_response({"format": {"valid": False}, "carrier": ""})
    assert result.valid is False
    assert result.carrier is None
    assert result.line_type is None
    assert result.country_name is None
