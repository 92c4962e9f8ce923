"""
💬 Conversation Directory
-------------------------
One thread per (tenant, canonical client phone).

Conversations are created lazily by the first outbound or inbound message,
link a job one-way, and are only ever soft-deleted.
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from tradie_sms.config import settings
from tradie_sms.datastore import CONV, MSG, REPOSITORY, Repository
from tradie_sms.errors import DuplicateRecordError, NotFoundError, ValidationError
from tradie_sms.models import Conversation, Message
from tradie_sms.runtime import get_logger, iso_now, normalize_phone, utc_now
from tradie_sms.schema import MessageDirection

logger = get_logger("conversations")

FULL_ACCESS_ROLES = {"owner", "admin", "manager"}


def canonical_phone(phone: Optional[str]) -> str:
    s = settings()
    return normalize_phone(phone, s.DEFAULT_COUNTRY_CODE, s.TRUNK_PREFIX)


def resolve(
    tenant_id: str,
    phone: str,
    client_id: Optional[str] = None,
    client_name: Optional[str] = None,
    job_id: Optional[str] = None,
    repo: Repository = REPOSITORY,
) -> Conversation:
    """Find or create the live conversation for (tenant, phone)."""
    if not tenant_id:
        raise ValidationError("tenant_id is required")
    canonical = canonical_phone(phone)
    if len(canonical) < 4:
        raise ValidationError(f"Unusable phone number: {phone!r}")

    record = repo.find_conversation(tenant_id, canonical)
    if record is None:
        record = _create(tenant_id, canonical, client_id, client_name, job_id, repo)
        return Conversation.from_record(record)

    if job_id and not record["fields"].get(CONV["JOB_ID"]):
        record = repo.update_conversation(record["id"], {CONV["JOB_ID"]: job_id})
        logger.info("🔗 Linked job %s to conversation %s", job_id, record["id"])
    return Conversation.from_record(record)


def _create(tenant_id, canonical, client_id, client_name, job_id, repo: Repository):
    fields = {
        CONV["TENANT"]: tenant_id,
        CONV["CLIENT_PHONE"]: canonical,
        CONV["CLIENT_ID"]: client_id,
        CONV["CLIENT_NAME"]: client_name,
        CONV["JOB_ID"]: job_id,
    }
    try:
        record = repo.create_conversation(fields)
        logger.info("🆕 Conversation %s for tenant=%s phone=%s", record["id"], tenant_id, canonical)
        return record
    except DuplicateRecordError as exc:
        if exc.existing:
            return exc.existing
        # A concurrent creator holds the claim; wait for its row to appear.
        for attempt in range(5):
            winner = repo.find_conversation(tenant_id, canonical)
            if winner:
                return winner
            time.sleep(0.2 * (attempt + 1))
        raise


def get(conversation_id: str, repo: Repository = REPOSITORY) -> Conversation:
    record = repo.get_conversation(conversation_id)
    if not record or record["fields"].get(CONV["DELETED_AT"]):
        raise NotFoundError(f"Conversation {conversation_id} not found")
    return Conversation.from_record(record)


def list_for_tenant(tenant_id: str, repo: Repository = REPOSITORY) -> List[Conversation]:
    return [Conversation.from_record(r) for r in repo.list_conversations(tenant_id)]


def list_for_user(
    user_id: str,
    tenant_id: str,
    role: str,
    assigned_job_ids: Iterable[str] = (),
    repo: Repository = REPOSITORY,
) -> List[Conversation]:
    """Owners, admins and managers see everything; other staff see their assigned jobs only."""
    conversations = list_for_tenant(tenant_id, repo)
    if (role or "").lower() in FULL_ACCESS_ROLES:
        return conversations
    allowed = {str(j) for j in assigned_job_ids}
    visible = [c for c in conversations if c.job_id and str(c.job_id) in allowed]
    logger.debug("User %s (%s) sees %d/%d conversations", user_id, role, len(visible), len(conversations))
    return visible


def messages(conversation_id: str, repo: Repository = REPOSITORY) -> List[Message]:
    get(conversation_id, repo)
    return [Message.from_record(r) for r in repo.messages_for_conversation(conversation_id)]


def mark_read(conversation_id: str, repo: Repository = REPOSITORY) -> Conversation:
    get(conversation_id, repo)
    read_at = iso_now()
    for rec in repo.messages_for_conversation(conversation_id, MessageDirection.INBOUND.value):
        if not rec["fields"].get(MSG["READ_AT"]):
            repo.update_message(rec["id"], {MSG["READ_AT"]: read_at})
    record = repo.update_conversation(conversation_id, {CONV["UNREAD_COUNT"]: 0})
    return Conversation.from_record(record)


def archive(conversation_id: str, archived: bool = True, repo: Repository = REPOSITORY) -> Conversation:
    get(conversation_id, repo)
    record = repo.update_conversation(conversation_id, {CONV["ARCHIVED"]: bool(archived)})
    return Conversation.from_record(record)


def soft_delete(conversation_id: str, repo: Repository = REPOSITORY) -> Conversation:
    get(conversation_id, repo)
    record = repo.update_conversation(conversation_id, {CONV["DELETED_AT"]: iso_now()})
    logger.info("🗑️ Conversation %s soft-deleted", conversation_id)
    return Conversation.from_record(record)


def archive_stale(
    older_than_days: Optional[int] = None,
    now: Optional[datetime] = None,
    repo: Repository = REPOSITORY,
) -> dict:
    """Archive quiet, fully-read conversations. Returns a run summary."""
    days = settings().ARCHIVE_AFTER_DAYS if older_than_days is None else older_than_days
    cutoff = (now or utc_now()) - timedelta(days=days)
    archived = 0
    for rec in repo.all_live_conversations():
        conv = Conversation.from_record(rec)
        if conv.archived or conv.unread_count > 0:
            continue
        last = conv.last_message_at or conv.created_at
        if last is None or last >= cutoff:
            continue
        repo.update_conversation(conv.id, {CONV["ARCHIVED"]: True})
        archived += 1
    logger.info("📦 Archived %d stale conversations (cutoff %s)", archived, cutoff.isoformat())
    return {"processed": archived, "cutoff": cutoff.isoformat()}
