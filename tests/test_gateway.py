import httpx
import pytest

import tradie_sms.gateway as gateway_mod
from tradie_sms.config import reload_settings, validate_startup
from tradie_sms.errors import ConfigError
from tradie_sms.gateway import FAILED, SENT, SIMULATED, TwilioGateway, parse_inbound_payload


def _gw(**kwargs):
    return TwilioGateway("AC123", "secret", "+61400000000", api_base="https://sms.example/2010-04-01", **kwargs)


def test_unconfigured_gateway_fails_without_simulation():
    result = TwilioGateway(None, None, None).send("+61412345678", "hi")
    assert result.status == FAILED
    assert result.error == "gateway not configured"
    assert not result.success


def test_unconfigured_gateway_simulates_when_enabled():
    result = TwilioGateway(None, None, None, simulate=True).send("+61412345678", "hi")
    assert result.status == SIMULATED
    assert result.simulated and result.success
    assert result.external_id.startswith("SIM")


def test_send_posts_twilio_form(monkeypatch):
    captured = {}

    def fake_post(url, data=None, auth=None, timeout=None):
        captured.update(url=url, data=data, auth=auth, timeout=timeout)
        return httpx.Response(201, json={"sid": "SM42", "status": "queued"})

    monkeypatch.setattr(gateway_mod.httpx, "post", fake_post)
    media = [f"https://m.example/{i}" for i in range(12)]

    result = _gw(timeout=7).send("+61412345678", "Hello", media)

    assert result.status == SENT
    assert result.external_id == "SM42"
    assert captured["url"] == "https://sms.example/2010-04-01/Accounts/AC123/Messages.json"
    assert captured["auth"] == ("AC123", "secret")
    assert captured["timeout"] == 7
    assert captured["data"]["From"] == "+61400000000"
    assert len(captured["data"]["MediaUrl"]) == 10


@pytest.mark.parametrize(
    "response, fragment",
    [
        (httpx.Response(400, json={"message": "Invalid 'To' number"}), "Invalid 'To' number"),
        (httpx.Response(429, headers={"Retry-After": "30"}), "429 rate limited"),
        (httpx.Response(201, json={"sid": "SM1", "status": "undelivered"}), "undelivered"),
    ],
)
def test_provider_errors_become_failed_results(monkeypatch, response, fragment):
    monkeypatch.setattr(gateway_mod.httpx, "post", lambda *a, **k: response)

    result = _gw().send("+61412345678", "Hello")

    assert result.status == FAILED
    assert fragment in result.error


def test_transport_error_becomes_failed_result(monkeypatch):
    def boom(*a, **k):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(gateway_mod.httpx, "post", boom)

    result = _gw().send("+61412345678", "Hello")

    assert result.status == FAILED
    assert "connection refused" in result.error


def test_parse_inbound_payload_extracts_fields():
    parsed = parse_inbound_payload(
        {"From": " +61412345678 ", "To": "+61400000000", "Body": "Yes", "MessageSid": "SM9", "NumMedia": "1",
         "MediaUrl0": "https://m.example/x"}
    )
    assert parsed.from_phone == "+61412345678"
    assert parsed.gateway_message_id == "SM9"
    assert parsed.media_urls == ["https://m.example/x"]


def test_simulation_refused_in_production(monkeypatch):
    monkeypatch.setenv("SMS_SIMULATE", "true")
    monkeypatch.setenv("APP_ENV", "production")
    with pytest.raises(ConfigError):
        validate_startup(reload_settings())


def test_invalid_business_timezone_is_fatal(monkeypatch):
    monkeypatch.setenv("BUSINESS_TZ", "Mars/Olympus")
    with pytest.raises(ConfigError):
        validate_startup(reload_settings())
