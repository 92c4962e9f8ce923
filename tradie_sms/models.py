"""Typed views over datastore records ({"id": ..., "fields": {...}})."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from tradie_sms.runtime import parse_datetime
from tradie_sms.schema import (
    AUTOMATION_LOGS_TABLE,
    AUTOMATION_RULES_TABLE,
    CLIENTS_TABLE,
    CONVERSATIONS_TABLE,
    INVOICES_TABLE,
    JOBS_TABLE,
    MESSAGES_TABLE,
    QUOTES_TABLE,
)

CONV = CONVERSATIONS_TABLE.field_names()
MSG = MESSAGES_TABLE.field_names()
RULE = AUTOMATION_RULES_TABLE.field_names()
LOG = AUTOMATION_LOGS_TABLE.field_names()


def _fields(record: Dict[str, Any]) -> Dict[str, Any]:
    return (record or {}).get("fields", {}) or {}


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _decimal(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


@dataclass
class Conversation:
    id: str
    tenant_id: str
    client_phone: str
    client_id: Optional[str] = None
    client_name: Optional[str] = None
    job_id: Optional[str] = None
    last_message_at: Optional[datetime] = None
    unread_count: int = 0
    archived: bool = False
    deleted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Conversation":
        f = _fields(record)
        return cls(
            id=record["id"],
            tenant_id=str(f.get(CONV["TENANT"]) or ""),
            client_phone=str(f.get(CONV["CLIENT_PHONE"]) or ""),
            client_id=f.get(CONV["CLIENT_ID"]) or None,
            client_name=f.get(CONV["CLIENT_NAME"]) or None,
            job_id=f.get(CONV["JOB_ID"]) or None,
            last_message_at=parse_datetime(f.get(CONV["LAST_MESSAGE_AT"])),
            unread_count=_int(f.get(CONV["UNREAD_COUNT"])),
            archived=bool(f.get(CONV["ARCHIVED"])),
            deleted_at=parse_datetime(f.get(CONV["DELETED_AT"])),
            created_at=parse_datetime(f.get(CONV["CREATED_AT"])),
        )


@dataclass
class Message:
    id: str
    conversation_id: str
    direction: str
    body: str
    status: str
    sender_id: Optional[str] = None
    gateway_message_id: Optional[str] = None
    error_message: Optional[str] = None
    simulated: bool = False
    is_quick_action: bool = False
    quick_action_type: Optional[str] = None
    media_urls: List[str] = field(default_factory=list)
    read_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Message":
        f = _fields(record)
        media = f.get(MSG["MEDIA_URLS"]) or []
        if isinstance(media, str):
            media = [m for m in media.split("\n") if m]
        return cls(
            id=record["id"],
            conversation_id=str(f.get(MSG["CONVERSATION_ID"]) or ""),
            direction=str(f.get(MSG["DIRECTION"]) or ""),
            body=str(f.get(MSG["BODY"]) or ""),
            status=str(f.get(MSG["STATUS"]) or ""),
            sender_id=f.get(MSG["SENDER_ID"]) or None,
            gateway_message_id=f.get(MSG["GATEWAY_ID"]) or None,
            error_message=f.get(MSG["ERROR"]) or None,
            simulated=bool(f.get(MSG["SIMULATED"])),
            is_quick_action=bool(f.get(MSG["QUICK_ACTION"])),
            quick_action_type=f.get(MSG["QUICK_ACTION_TYPE"]) or None,
            media_urls=list(media),
            read_at=parse_datetime(f.get(MSG["READ_AT"])),
            created_at=parse_datetime(f.get(MSG["CREATED_AT"])),
        )


@dataclass
class AutomationRule:
    id: str
    tenant_id: str
    name: str
    trigger_type: str
    active: bool = True
    custom_message: Optional[str] = None
    trigger_count: int = 0
    last_triggered_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "AutomationRule":
        f = _fields(record)
        active = f.get(RULE["ACTIVE"])
        return cls(
            id=record["id"],
            tenant_id=str(f.get(RULE["TENANT"]) or ""),
            name=str(f.get(RULE["NAME"]) or ""),
            trigger_type=str(f.get(RULE["TRIGGER"]) or ""),
            active=True if active is None else bool(active),
            custom_message=f.get(RULE["CUSTOM_MESSAGE"]) or None,
            trigger_count=_int(f.get(RULE["TRIGGER_COUNT"])),
            last_triggered_at=parse_datetime(f.get(RULE["LAST_TRIGGERED_AT"])),
            created_at=parse_datetime(f.get(RULE["CREATED_AT"])),
        )


@dataclass
class AutomationLog:
    id: str
    rule_id: str
    entity_type: str
    entity_id: str
    status: str
    message_id: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "AutomationLog":
        f = _fields(record)
        return cls(
            id=record["id"],
            rule_id=str(f.get(LOG["RULE_ID"]) or ""),
            entity_type=str(f.get(LOG["ENTITY_TYPE"]) or ""),
            entity_id=str(f.get(LOG["ENTITY_ID"]) or ""),
            status=str(f.get(LOG["STATUS"]) or ""),
            message_id=f.get(LOG["MESSAGE_ID"]) or None,
            error_message=f.get(LOG["ERROR"]) or None,
            created_at=parse_datetime(f.get(LOG["CREATED_AT"])),
        )


# ---------------------------------------------------------------------------
# Read-only business records
# ---------------------------------------------------------------------------


@dataclass
class Client:
    id: str
    tenant_id: str
    name: Optional[str] = None
    phone: Optional[str] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Client":
        f = _fields(record)
        fm = CLIENTS_TABLE.field_names()
        return cls(
            id=record["id"],
            tenant_id=str(f.get(fm["TENANT"]) or ""),
            name=f.get(fm["NAME"]) or None,
            phone=(str(f.get(fm["PHONE"])).strip() or None) if f.get(fm["PHONE"]) else None,
        )


@dataclass
class Job:
    id: str
    tenant_id: str
    client_id: Optional[str] = None
    title: Optional[str] = None
    address: Optional[str] = None
    status: str = ""
    scheduled_at: Optional[datetime] = None
    assignee_id: Optional[str] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Job":
        f = _fields(record)
        fm = JOBS_TABLE.field_names()
        return cls(
            id=record["id"],
            tenant_id=str(f.get(fm["TENANT"]) or ""),
            client_id=f.get(fm["CLIENT_ID"]) or None,
            title=f.get(fm["TITLE"]) or None,
            address=f.get(fm["ADDRESS"]) or None,
            status=str(f.get(fm["STATUS"]) or "").lower(),
            scheduled_at=parse_datetime(f.get(fm["SCHEDULED_AT"])),
            assignee_id=f.get(fm["ASSIGNEE_ID"]) or None,
        )


@dataclass
class Quote:
    id: str
    tenant_id: str
    client_id: Optional[str] = None
    number: Optional[str] = None
    total: Optional[Decimal] = None
    status: str = ""
    sent_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Quote":
        f = _fields(record)
        fm = QUOTES_TABLE.field_names()
        return cls(
            id=record["id"],
            tenant_id=str(f.get(fm["TENANT"]) or ""),
            client_id=f.get(fm["CLIENT_ID"]) or None,
            number=f.get(fm["NUMBER"]) or None,
            total=_decimal(f.get(fm["TOTAL"])),
            status=str(f.get(fm["STATUS"]) or "").lower(),
            sent_at=parse_datetime(f.get(fm["SENT_AT"])),
            created_at=parse_datetime(f.get(fm["CREATED_AT"])),
        )


@dataclass
class Invoice:
    id: str
    tenant_id: str
    client_id: Optional[str] = None
    number: Optional[str] = None
    total: Optional[Decimal] = None
    status: str = ""
    due_date: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Invoice":
        f = _fields(record)
        fm = INVOICES_TABLE.field_names()
        return cls(
            id=record["id"],
            tenant_id=str(f.get(fm["TENANT"]) or ""),
            client_id=f.get(fm["CLIENT_ID"]) or None,
            number=f.get(fm["NUMBER"]) or None,
            total=_decimal(f.get(fm["TOTAL"])),
            status=str(f.get(fm["STATUS"]) or "").lower(),
            due_date=parse_datetime(f.get(fm["DUE_DATE"])),
        )
