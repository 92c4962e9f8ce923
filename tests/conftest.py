import os
import sys

# Ensure project root is in sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest

from tradie_sms.config import reload_settings
from tradie_sms.datastore import reset_state
from tradie_sms.gateway import FAILED, SENT, GatewayResult
from tradie_sms.idempotency import reset_store


@pytest.fixture(autouse=True)
def _reset_datastore(monkeypatch):
    for key in [
        "AIRTABLE_API_KEY",
        "AIRTABLE_BASE_ID",
        "TWILIO_ACCOUNT_SID",
        "TWILIO_AUTH_TOKEN",
        "TWILIO_PHONE_NUMBER",
        "SMS_SIMULATE",
        "APP_ENV",
        "BUSINESS_TZ",
        "WEBHOOK_TOKEN",
        "CRON_TOKEN",
        "REDIS_URL",
        "REDIS_TLS",
        "UPSTASH_REDIS_URL",
        "UPSTASH_REDIS_REST_URL",
        "UPSTASH_REDIS_REST_TOKEN",
    ]:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("SMS_FORCE_IN_MEMORY", "1")
    monkeypatch.setenv("SCHEDULER_ENABLED", "0")
    reload_settings()
    reset_state()
    reset_store()
    yield
    reset_state()
    reset_store()
    reload_settings()


class FakeGateway:
    """Records every send; returns queued results or a default."""

    def __init__(self, results=None, raises=None):
        self.calls = []
        self.results = list(results or [])
        self.raises = raises

    def send(self, to_phone, body, media_urls=None):
        self.calls.append({"to": to_phone, "body": body, "media_urls": media_urls})
        if self.raises is not None:
            raise self.raises
        if self.results:
            return self.results.pop(0)
        return GatewayResult(SENT, external_id=f"SM{len(self.calls):04d}")


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def failing_gateway():
    return FakeGateway(results=[GatewayResult(FAILED, error="carrier rejected")] * 10)


@pytest.fixture
def make_gateway():
    return FakeGateway
