from __future__ import annotations

"""
Central table schema definitions and helpers.

Canonical table and field names live here so business logic imports
lightweight helpers instead of hard-coding strings. Environment variables can
rename a table (to line up with a custom Airtable copy), but the defaults
always reflect the live schema.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Tuple


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    v = value.strip()
    return v if v else None


@dataclass(frozen=True)
class TableDefinition:
    """
    Table metadata with helpers to resolve field names.

    Args:
        default: Human-readable table name.
        env_vars: Env vars that can rename the table.
        fields: Mapping of logical keys → column names.
        unique: Logical keys that together must be unique across live rows.
    """

    default: str
    env_vars: Tuple[str, ...] = field(default_factory=tuple)
    fields: Dict[str, str] = field(default_factory=dict)
    unique: Tuple[str, ...] = field(default_factory=tuple)

    def name(self) -> str:
        for env in self.env_vars:
            override = _clean(os.getenv(env))
            if override:
                return override
        return self.default

    def field_name(self, key: str) -> str:
        return self.fields[key]

    def field_names(self) -> Dict[str, str]:
        return dict(self.fields)

    def unique_columns(self) -> Tuple[str, ...]:
        return tuple(self.fields[k] for k in self.unique)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class MessageDirection(str, Enum):
    OUTBOUND = "outbound"
    INBOUND = "inbound"


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    RECEIVED = "received"


TERMINAL_MESSAGE_STATUSES = {MessageStatus.SENT.value, MessageStatus.FAILED.value, MessageStatus.RECEIVED.value}


class TriggerType(str, Enum):
    QUOTE_FOLLOW_UP = "quote_follow_up"
    INVOICE_OVERDUE = "invoice_overdue"
    JOB_REMINDER_DAY_BEFORE = "job_reminder_day_before"


class EntityType(str, Enum):
    QUOTE = "quote"
    INVOICE = "invoice"
    JOB = "job"


TRIGGER_ENTITY: Dict[TriggerType, EntityType] = {
    TriggerType.QUOTE_FOLLOW_UP: EntityType.QUOTE,
    TriggerType.INVOICE_OVERDUE: EntityType.INVOICE,
    TriggerType.JOB_REMINDER_DAY_BEFORE: EntityType.JOB,
}


class AutomationLogStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    SKIPPED = "skipped"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Owned tables
# ---------------------------------------------------------------------------

CONVERSATIONS_TABLE = TableDefinition(
    default="SMS Conversations",
    env_vars=("SMS_CONVERSATIONS_TABLE",),
    fields={
        "TENANT": "Tenant ID",
        "CLIENT_PHONE": "Client Phone",
        "CLIENT_ID": "Client ID",
        "CLIENT_NAME": "Client Name",
        "JOB_ID": "Job ID",
        "LAST_MESSAGE_AT": "Last Message At",
        "UNREAD_COUNT": "Unread Count",
        "ARCHIVED": "Archived",
        "DELETED_AT": "Deleted At",
        "CREATED_AT": "Created At",
    },
    unique=("TENANT", "CLIENT_PHONE"),
)

MESSAGES_TABLE = TableDefinition(
    default="SMS Messages",
    env_vars=("SMS_MESSAGES_TABLE",),
    fields={
        "CONVERSATION_ID": "Conversation ID",
        "DIRECTION": "Direction",
        "BODY": "Body",
        "SENDER_ID": "Sender ID",
        "STATUS": "Status",
        "GATEWAY_ID": "Gateway Message ID",
        "ERROR": "Error Message",
        "SIMULATED": "Simulated",
        "QUICK_ACTION": "Is Quick Action",
        "QUICK_ACTION_TYPE": "Quick Action Type",
        "MEDIA_URLS": "Media URLs",
        "READ_AT": "Read At",
        "CREATED_AT": "Created At",
    },
)

AUTOMATION_RULES_TABLE = TableDefinition(
    default="SMS Automation Rules",
    env_vars=("SMS_AUTOMATION_RULES_TABLE",),
    fields={
        "TENANT": "Tenant ID",
        "NAME": "Name",
        "TRIGGER": "Trigger Type",
        "ACTIVE": "Active",
        "CUSTOM_MESSAGE": "Custom Message",
        "TRIGGER_COUNT": "Trigger Count",
        "LAST_TRIGGERED_AT": "Last Triggered At",
        "CREATED_AT": "Created At",
    },
)

AUTOMATION_LOGS_TABLE = TableDefinition(
    default="SMS Automation Logs",
    env_vars=("SMS_AUTOMATION_LOGS_TABLE",),
    fields={
        "RULE_ID": "Rule ID",
        "ENTITY_TYPE": "Entity Type",
        "ENTITY_ID": "Entity ID",
        "STATUS": "Status",
        "MESSAGE_ID": "Message ID",
        "ERROR": "Error Message",
        "CREATED_AT": "Created At",
    },
    unique=("RULE_ID", "ENTITY_TYPE", "ENTITY_ID"),
)

RUNS_TABLE = TableDefinition(
    default="Runs",
    env_vars=("RUNS_TABLE",),
    fields={
        "TYPE": "Type",
        "PROCESSED": "Processed",
        "BREAKDOWN": "Breakdown",
        "STATUS": "Status",
        "TIMESTAMP": "Timestamp",
    },
)

# ---------------------------------------------------------------------------
# Read-only business records (owned by the platform, not this engine)
# ---------------------------------------------------------------------------

CLIENTS_TABLE = TableDefinition(
    default="Clients",
    env_vars=("CLIENTS_TABLE",),
    fields={"TENANT": "Tenant ID", "NAME": "Name", "PHONE": "Phone", "EMAIL": "Email"},
)

JOBS_TABLE = TableDefinition(
    default="Jobs",
    env_vars=("JOBS_TABLE",),
    fields={
        "TENANT": "Tenant ID",
        "CLIENT_ID": "Client ID",
        "TITLE": "Title",
        "ADDRESS": "Site Address",
        "STATUS": "Status",
        "SCHEDULED_AT": "Scheduled At",
        "ASSIGNEE_ID": "Assigned To",
    },
)

QUOTES_TABLE = TableDefinition(
    default="Quotes",
    env_vars=("QUOTES_TABLE",),
    fields={
        "TENANT": "Tenant ID",
        "CLIENT_ID": "Client ID",
        "NUMBER": "Number",
        "TOTAL": "Total",
        "STATUS": "Status",
        "SENT_AT": "Sent At",
        "CREATED_AT": "Created At",
    },
)

INVOICES_TABLE = TableDefinition(
    default="Invoices",
    env_vars=("INVOICES_TABLE",),
    fields={
        "TENANT": "Tenant ID",
        "CLIENT_ID": "Client ID",
        "NUMBER": "Number",
        "TOTAL": "Total",
        "STATUS": "Status",
        "DUE_DATE": "Due Date",
    },
)

BUSINESS_SETTINGS_TABLE = TableDefinition(
    default="Business Settings",
    env_vars=("BUSINESS_SETTINGS_TABLE",),
    fields={"TENANT": "Tenant ID", "BUSINESS_NAME": "Business Name"},
)


__all__ = [
    "TableDefinition",
    "MessageDirection",
    "MessageStatus",
    "TERMINAL_MESSAGE_STATUSES",
    "TriggerType",
    "EntityType",
    "TRIGGER_ENTITY",
    "AutomationLogStatus",
    "CONVERSATIONS_TABLE",
    "MESSAGES_TABLE",
    "AUTOMATION_RULES_TABLE",
    "AUTOMATION_LOGS_TABLE",
    "RUNS_TABLE",
    "CLIENTS_TABLE",
    "JOBS_TABLE",
    "QUOTES_TABLE",
    "INVOICES_TABLE",
    "BUSINESS_SETTINGS_TABLE",
]
