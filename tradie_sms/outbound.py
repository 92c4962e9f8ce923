"""
📤 Outbound Dispatcher
----------------------
Persist → transmit → finalize.

Every send leaves exactly one Message row. The row is written as ``pending``
before the gateway is called, so a crash mid-send leaves a discoverable
record for ``reconcile_pending`` to close out.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Mapping, Optional, Sequence

from tradie_sms import conversations
from tradie_sms.config import settings
from tradie_sms.datastore import CONV, MSG, REPOSITORY, Repository
from tradie_sms.errors import NotFoundError, ValidationError
from tradie_sms.gateway import FAILED, GatewayResult, default_gateway
from tradie_sms.models import Client, Message
from tradie_sms.runtime import get_logger, parse_datetime, to_iso, utc_now
from tradie_sms.schema import MessageDirection, MessageStatus
from tradie_sms.templates import DEFAULT_BUSINESS_NAME, format_money, get_template

logger = get_logger("outbound")


def send(
    tenant_id: str,
    dest_phone: str,
    body: str,
    sender_id: Optional[str],
    is_quick_action: bool = False,
    quick_action_tag: Optional[str] = None,
    client_id: Optional[str] = None,
    client_name: Optional[str] = None,
    job_id: Optional[str] = None,
    media_urls: Optional[Sequence[str]] = None,
    *,
    gateway=None,
    repo: Repository = REPOSITORY,
) -> Message:
    text = (body or "").strip()
    if not text:
        raise ValidationError("Message body is empty")

    conv = conversations.resolve(tenant_id, dest_phone, client_id, client_name, job_id, repo=repo)
    gateway = gateway or default_gateway()

    pending = repo.create_message(
        {
            MSG["CONVERSATION_ID"]: conv.id,
            MSG["DIRECTION"]: MessageDirection.OUTBOUND.value,
            MSG["BODY"]: text,
            MSG["SENDER_ID"]: sender_id,
            MSG["STATUS"]: MessageStatus.PENDING.value,
            MSG["QUICK_ACTION"]: bool(is_quick_action),
            MSG["QUICK_ACTION_TYPE"]: quick_action_tag,
            MSG["MEDIA_URLS"]: "\n".join(media_urls) if media_urls else None,
        }
    )

    try:
        try:
            result = gateway.send(conv.client_phone, text, media_urls)
        except Exception as exc:
            logger.exception("Gateway raised for message %s → %s", pending["id"], conv.client_phone)
            result = GatewayResult(FAILED, error=f"{type(exc).__name__}: {exc}")
        record = _finalize(pending["id"], result, repo)
    finally:
        repo.update_conversation(conv.id, {CONV["LAST_MESSAGE_AT"]: to_iso(utc_now())})

    msg = Message.from_record(record)
    if msg.status == MessageStatus.SENT.value:
        logger.info("✅ Message %s sent (tenant=%s sim=%s)", msg.id, tenant_id, msg.simulated)
    else:
        logger.warning("❌ Message %s failed (tenant=%s): %s", msg.id, tenant_id, msg.error_message)
    return msg


def send_notification(
    tenant_id: str,
    client_id: str,
    template: str,
    variables: Optional[Mapping[str, Any]] = None,
    sender_id: Optional[str] = None,
    job_id: Optional[str] = None,
    *,
    gateway=None,
    repo: Repository = REPOSITORY,
) -> Message:
    """
    Text a client one of the stock notifications (quote ready, payment received...).

    ``client_name`` and ``business_name`` are filled from the tenant's records;
    an ``amount`` is rendered as money.
    """
    rec = repo.get_client(tenant_id, client_id)
    if rec is None:
        raise NotFoundError(f"Client {client_id} not found")
    client = Client.from_record(rec)
    if not client.phone:
        raise ValidationError(f"Client {client_id} has no phone number")

    values = dict(variables or {})
    values.setdefault("client_name", client.name or "there")
    values.setdefault("business_name", repo.business_name(tenant_id) or DEFAULT_BUSINESS_NAME)
    if "amount" in values:
        values["amount"] = format_money(values["amount"])
    try:
        body = get_template(template, **values)
    except KeyError:
        raise ValidationError(f"Unknown notification template: {template!r}") from None
    except TypeError as exc:
        raise ValidationError(f"Template {template!r} needs different variables: {exc}") from None

    return send(
        tenant_id,
        client.phone,
        body,
        sender_id,
        client_id=client.id,
        client_name=client.name,
        job_id=job_id,
        gateway=gateway,
        repo=repo,
    )


def _finalize(message_id: str, result: GatewayResult, repo: Repository) -> dict:
    try:
        return _apply_result(message_id, result, repo)
    except ValidationError as exc:
        logger.warning("Gateway result for %s discarded: %s", message_id, exc)
        return repo.get_message(message_id)


def _apply_result(message_id: str, result: GatewayResult, repo: Repository) -> dict:
    if result.success:
        return repo.set_message_status(
            message_id,
            MessageStatus.SENT.value,
            {MSG["GATEWAY_ID"]: result.external_id, MSG["SIMULATED"]: result.simulated},
        )
    return repo.set_message_status(
        message_id,
        MessageStatus.FAILED.value,
        {MSG["GATEWAY_ID"]: result.external_id, MSG["ERROR"]: result.error or "unknown gateway error"},
    )


def reconcile_pending(
    older_than: Optional[timedelta] = None,
    now: Optional[datetime] = None,
    repo: Repository = REPOSITORY,
) -> dict:
    """Fail outbound messages that have sat in ``pending`` past the threshold."""
    threshold = older_than if older_than is not None else timedelta(minutes=settings().PENDING_STALE_MINUTES)
    cutoff = (now or utc_now()) - threshold
    failed = 0
    for rec in repo.pending_outbound():
        created = parse_datetime(rec["fields"].get(MSG["CREATED_AT"]))
        if created is None or created > cutoff:
            continue
        try:
            repo.set_message_status(
                rec["id"],
                MessageStatus.FAILED.value,
                {MSG["ERROR"]: f"No gateway result after {int(threshold.total_seconds() // 60)} minutes"},
            )
        except ValidationError:
            logger.info("Message %s finalized before reconciliation", rec["id"])
            continue
        failed += 1
    if failed:
        logger.warning("⏱️ Reconciled %d stale pending messages", failed)
    return {"processed": failed, "cutoff": to_iso(cutoff)}
