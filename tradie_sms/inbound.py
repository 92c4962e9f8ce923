"""
📥 Inbound Router
-----------------
Resolves a client reply to exactly one (tenant, conversation).

Several businesses may have texted the same client. The reply goes to the
conversation that most recently sent an outbound message; if none has
outbound history, to the one with the latest activity. Ties go to the
conversation created first. Unknown senders are dropped, never auto-created.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from tradie_sms.conversations import canonical_phone
from tradie_sms.datastore import MSG, REPOSITORY, Repository
from tradie_sms.gateway import parse_inbound_payload
from tradie_sms.idempotency import get_store
from tradie_sms.models import Conversation, Message
from tradie_sms.runtime import get_logger, parse_datetime, utc_now
from tradie_sms.schema import MessageDirection, MessageStatus

logger = get_logger("inbound")

DEDUPE_TTL = 24 * 60 * 60

OK = "ok"
DROPPED = "dropped"
DUPLICATE = "duplicate"


@dataclass
class Candidate:
    conversation: Conversation
    last_outbound_at: Optional[datetime] = None


def _ts(value: Optional[datetime]) -> float:
    return value.timestamp() if value else float("-inf")


def _creation_key(c: Candidate) -> Tuple[float, str]:
    created = c.conversation.created_at
    return (created.timestamp() if created else float("inf"), c.conversation.id)


def select_conversation(candidates: Sequence[Candidate]) -> Optional[Conversation]:
    """Pick the conversation an inbound reply belongs to. Pure; no I/O."""
    if not candidates:
        return None

    with_outbound = [c for c in candidates if c.last_outbound_at is not None]
    if with_outbound:
        pool, stamp = with_outbound, (lambda c: _ts(c.last_outbound_at))
    else:
        pool, stamp = list(candidates), (lambda c: _ts(c.conversation.last_message_at))

    best = max(stamp(c) for c in pool)
    tied = [c for c in pool if stamp(c) == best]
    return min(tied, key=_creation_key).conversation


def _candidates(phone: str, repo: Repository) -> List[Candidate]:
    out: List[Candidate] = []
    for rec in repo.conversations_by_phone(phone):
        latest = repo.latest_outbound(rec["id"])
        sent_at = parse_datetime(latest["fields"].get(MSG["CREATED_AT"])) if latest else None
        out.append(Candidate(Conversation.from_record(rec), sent_at))
    return out


def _route(
    from_phone: str,
    body: str,
    gateway_message_id: Optional[str],
    media_urls: Optional[Sequence[str]],
    repo: Repository,
) -> Tuple[str, Optional[Message]]:
    phone = canonical_phone(from_phone)
    if not phone:
        logger.warning("Inbound SMS without a sender number dropped (sid=%s)", gateway_message_id)
        return DROPPED, None

    store = get_store()
    claim_key = f"inbound:{gateway_message_id}" if gateway_message_id else None
    if claim_key and not store.claim(claim_key, ttl=DEDUPE_TTL):
        logger.info("🔁 Duplicate inbound delivery %s ignored", gateway_message_id)
        existing = repo.message_by_gateway_id(gateway_message_id)
        return DUPLICATE, Message.from_record(existing) if existing else None

    try:
        conversation = select_conversation(_candidates(phone, repo))
        if conversation is None:
            logger.warning("📭 No conversation for inbound from %s; dropped (sid=%s)", phone, gateway_message_id)
            if claim_key:
                store.release(claim_key)
            return DROPPED, None

        received_at = utc_now()
        record = repo.create_message(
            {
                MSG["CONVERSATION_ID"]: conversation.id,
                MSG["DIRECTION"]: MessageDirection.INBOUND.value,
                MSG["BODY"]: body or "",
                MSG["STATUS"]: MessageStatus.RECEIVED.value,
                MSG["GATEWAY_ID"]: gateway_message_id,
                MSG["MEDIA_URLS"]: "\n".join(media_urls) if media_urls else None,
            }
        )
        repo.increment_unread(conversation.id, received_at)
    except Exception:
        if claim_key:
            store.release(claim_key)
        raise

    logger.info("📨 Inbound %s → conversation %s (tenant=%s)", gateway_message_id, conversation.id, conversation.tenant_id)
    return OK, Message.from_record(record)


def route(
    from_phone: str,
    to_phone: str,
    body: str,
    gateway_message_id: Optional[str],
    media_urls: Optional[Sequence[str]] = None,
    repo: Repository = REPOSITORY,
) -> Optional[Message]:
    """Persist an inbound SMS against its conversation. Returns None when dropped."""
    logger.debug("Inbound from=%s to=%s sid=%s", from_phone, to_phone, gateway_message_id)
    _, message = _route(from_phone, body, gateway_message_id, media_urls, repo)
    return message


def handle_webhook(payload: Mapping[str, Any], repo: Repository = REPOSITORY) -> Dict[str, Any]:
    """Webhook entry point: parse the provider body and report what happened."""
    inbound = parse_inbound_payload(payload)
    status, message = _route(inbound.from_phone, inbound.body, inbound.gateway_message_id, inbound.media_urls, repo)
    out: Dict[str, Any] = {"status": status, "sid": inbound.gateway_message_id}
    if message:
        out["message_id"] = message.id
        out["conversation_id"] = message.conversation_id
    return out
