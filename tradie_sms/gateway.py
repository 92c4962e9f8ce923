"""
📡 Gateway Adapter
------------------
Narrow send/receive contract over a Twilio-style REST provider
(2010-04-01 Messages endpoint, form-encoded, basic auth).

The adapter never raises for transport problems: every outcome comes back
as a GatewayResult whose status is ``sent``, ``simulated`` or ``failed``.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx

from tradie_sms.config import Settings, settings
from tradie_sms.errors import GatewayError
from tradie_sms.runtime import get_logger

logger = get_logger("gateway")

MAX_MEDIA_URLS = 10
MAX_BODY_CHARS = 1600

SENT = "sent"
SIMULATED = "simulated"
FAILED = "failed"

_ACCEPTED_PROVIDER_STATUSES = {"queued", "accepted", "submitted", "enroute", "sending", "sent", "delivered"}


@dataclass
class GatewayResult:
    status: str
    external_id: Optional[str] = None
    error: Optional[str] = None
    raw: Any = None

    @property
    def success(self) -> bool:
        return self.status in (SENT, SIMULATED)

    @property
    def simulated(self) -> bool:
        return self.status == SIMULATED


@dataclass
class InboundPayload:
    from_phone: str
    to_phone: str
    body: str
    gateway_message_id: Optional[str]
    media_urls: List[str] = field(default_factory=list)


# =========================
# HTTP helpers
# =========================
def _extract_error_body(resp: httpx.Response) -> Any:
    """Parse JSON body if available; fallback to plain text."""
    try:
        return resp.json()
    except ValueError:
        return (resp.text or "").strip()


def _summarize_error_body(body: Any) -> str:
    if body is None:
        return ""
    if isinstance(body, dict):
        for key in ("message", "error", "detail", "error_message"):
            value = body.get(key)
            if value not in (None, ""):
                return str(value)
    return str(body)


def _http_post(url: str, data: Dict[str, Any], auth: tuple, timeout: float) -> Dict[str, Any]:
    resp = httpx.post(url, data=data, auth=auth, timeout=timeout)
    if resp.status_code >= 400:
        logger.error("Gateway %s error body: %s", resp.status_code, resp.text)
    if resp.status_code == 429:
        raise GatewayError(
            f"429 rate limited; retry_after={resp.headers.get('Retry-After')}",
            status_code=429,
            body=resp.headers.get("Retry-After"),
            payload=data,
        )
    if resp.is_error:
        body = _extract_error_body(resp)
        summary = _summarize_error_body(body)
        message = f"Gateway HTTP {resp.status_code}"
        if summary:
            message = f"{message}: {summary}"
        raise GatewayError(message, status_code=resp.status_code, body=body, payload=data)
    try:
        return resp.json()
    except ValueError:
        return {"raw": resp.text}


# =========================
# Adapter
# =========================
class TwilioGateway:
    def __init__(
        self,
        account_sid: Optional[str],
        auth_token: Optional[str],
        from_number: Optional[str],
        *,
        api_base: str = "https://api.twilio.com/2010-04-01",
        timeout: float = 15,
        simulate: bool = False,
    ) -> None:
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.simulate = simulate

    @classmethod
    def from_settings(cls, s: Optional[Settings] = None) -> "TwilioGateway":
        s = s or settings()
        return cls(
            s.TWILIO_ACCOUNT_SID,
            s.TWILIO_AUTH_TOKEN,
            s.TWILIO_PHONE_NUMBER,
            api_base=s.TWILIO_API_BASE,
            timeout=s.GATEWAY_TIMEOUT_SEC,
            simulate=s.SMS_SIMULATE,
        )

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    @property
    def messages_url(self) -> str:
        return f"{self.api_base}/Accounts/{self.account_sid}/Messages.json"

    def send(self, to_phone: str, body: str, media_urls: Optional[Sequence[str]] = None) -> GatewayResult:
        if not self.configured:
            if self.simulate:
                sid = f"SIM{uuid.uuid4().hex[:30]}"
                logger.info("📭 [SIMULATED] SMS → %s: %s", to_phone, body[:60])
                return GatewayResult(SIMULATED, external_id=sid)
            logger.warning("Gateway not configured; SMS to %s not sent", to_phone)
            return GatewayResult(FAILED, error="gateway not configured")

        data: Dict[str, Any] = {"To": to_phone, "From": self.from_number, "Body": body}
        if media_urls:
            data["MediaUrl"] = list(media_urls)[:MAX_MEDIA_URLS]
        if len(body) > MAX_BODY_CHARS:
            return GatewayResult(FAILED, error=f"Body exceeds {MAX_BODY_CHARS} characters")

        try:
            resp = _http_post(self.messages_url, data, (self.account_sid, self.auth_token), self.timeout)
        except GatewayError as exc:
            return GatewayResult(FAILED, error=str(exc), raw=exc.body)
        except httpx.HTTPError as exc:
            logger.error("Gateway transport error → %s: %s", to_phone, exc)
            return GatewayResult(FAILED, error=f"transport error: {exc}")

        sid = resp.get("sid") or resp.get("messageSid") or resp.get("id")
        provider_status = str(resp.get("status") or "sent").lower()
        if provider_status not in _ACCEPTED_PROVIDER_STATUSES:
            return GatewayResult(FAILED, external_id=sid, error=f"provider status {provider_status}", raw=resp)
        logger.info("📤 SMS → %s sid=%s status=%s", to_phone, sid, provider_status)
        return GatewayResult(SENT, external_id=sid, raw=resp)


def default_gateway() -> TwilioGateway:
    return TwilioGateway.from_settings()


def parse_inbound_payload(payload: Mapping[str, Any]) -> InboundPayload:
    """Pull the fields the router needs out of a provider webhook body."""
    def pick(*keys: str) -> str:
        for key in keys:
            value = payload.get(key)
            if value not in (None, ""):
                return str(value).strip()
        return ""

    media: List[str] = []
    try:
        num_media = int(payload.get("NumMedia") or 0)
    except (TypeError, ValueError):
        num_media = 0
    for i in range(max(num_media, MAX_MEDIA_URLS)):
        url = payload.get(f"MediaUrl{i}")
        if url:
            media.append(str(url))

    return InboundPayload(
        from_phone=pick("From", "from", "from_number", "phone"),
        to_phone=pick("To", "to", "to_number"),
        body=pick("Body", "body", "message"),
        gateway_message_id=pick("MessageSid", "SmsSid", "sid", "message_id") or None,
        media_urls=media[:MAX_MEDIA_URLS],
    )
