"""Schema-aware Airtable datastore with an in-memory fallback."""

from __future__ import annotations

import itertools
import re
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import requests
from pyairtable.formulas import match

from tradie_sms.config import settings
from tradie_sms.errors import DuplicateRecordError, ValidationError
from tradie_sms.idempotency import get_store
from tradie_sms.runtime import get_logger, iso_now, parse_datetime, retry, to_iso
from tradie_sms.schema import (
    AUTOMATION_LOGS_TABLE,
    AUTOMATION_RULES_TABLE,
    BUSINESS_SETTINGS_TABLE,
    CLIENTS_TABLE,
    CONVERSATIONS_TABLE,
    INVOICES_TABLE,
    JOBS_TABLE,
    MESSAGES_TABLE,
    QUOTES_TABLE,
    RUNS_TABLE,
    TERMINAL_MESSAGE_STATUSES,
    MessageDirection,
    MessageStatus,
    TableDefinition,
)

try:
    from pyairtable import Api as _Api
except ImportError:
    _Api = None  # type: ignore

logger = get_logger(__name__)

CONV = CONVERSATIONS_TABLE.field_names()
MSG = MESSAGES_TABLE.field_names()
RULE = AUTOMATION_RULES_TABLE.field_names()
LOG = AUTOMATION_LOGS_TABLE.field_names()

# Remote conversation inserts hold a short creation claim; automation logs claim forever.
CONVERSATION_CLAIM_TTL = 30

_FORMULA_PAIR = re.compile(r"\{([^}]+)\}\s*=\s*(['\"])((?:(?!\2)[^\\]|\\.)*)\2")


# ============================================================
# FORMULAS
# ============================================================


def eq_formula(**pairs: Any) -> str:
    """Build an Airtable equality formula: {A}='x' or AND({A}='x',{B}='y')."""
    return str(match({name: str(value) for name, value in pairs.items()}))


def _by_column(table: TableDefinition, **logical: Any) -> Dict[str, Any]:
    return {table.field_name(key): value for key, value in logical.items()}


def _formula_match(record: Dict[str, Any], formula: str) -> bool:
    matches = _FORMULA_PAIR.findall(formula)
    if not matches:
        return False
    fields = record.get("fields", {})
    for field_name, _, expected in matches:
        expected = re.sub(r"\\(.)", r"\1", expected)
        if str(fields.get(field_name)) != expected:
            return False
    return True


# ============================================================
# IN-MEMORY TABLE
# ============================================================


class InMemoryTable:
    """Minimal Airtable drop-in replacement used for local runs and tests."""

    def __init__(self, name: str):
        self.name = name
        self._records: Dict[str, Dict[str, Any]] = {}
        self._sequence = itertools.count(1)
        self._lock = threading.RLock()

    def create(self, fields: Dict[str, Any]):
        with self._lock:
            record_id = f"rec_{self.name.replace(' ', '').lower()}_{next(self._sequence)}"
            record = {"id": record_id, "fields": dict(fields)}
            self._records[record_id] = record
            return _copy(record)

    def create_unique(self, fields: Dict[str, Any], unique: Tuple[str, ...], live_field: Optional[str] = None):
        """Atomic insert-unless-exists over ``unique`` columns among live rows."""
        with self._lock:
            for rec in self._records.values():
                f = rec["fields"]
                if live_field and f.get(live_field):
                    continue
                if all(f.get(col) == fields.get(col) for col in unique):
                    raise DuplicateRecordError(
                        f"Duplicate {self.name} row for {[fields.get(c) for c in unique]}",
                        existing=_copy(rec),
                    )
            return self.create(fields)

    def update(self, record_id: str, fields: Dict[str, Any]):
        with self._lock:
            if record_id not in self._records:
                raise KeyError(f"Unknown record id {record_id} in {self.name}")
            self._records[record_id]["fields"].update(fields)
            return _copy(self._records[record_id])

    def increment(self, record_id: str, field_name: str, delta: int, extra: Optional[Dict[str, Any]] = None):
        with self._lock:
            if record_id not in self._records:
                raise KeyError(f"Unknown record id {record_id} in {self.name}")
            f = self._records[record_id]["fields"]
            f[field_name] = int(f.get(field_name) or 0) + delta
            if extra:
                f.update(extra)
            return _copy(self._records[record_id])

    def get(self, record_id: str):
        with self._lock:
            rec = self._records.get(record_id)
            return _copy(rec) if rec else None

    def all(self, **kwargs):
        with self._lock:
            records = [_copy(r) for r in self._records.values()]
        formula = kwargs.get("formula")
        max_records = kwargs.get("max_records")
        if formula:
            records = [rec for rec in records if _formula_match(rec, str(formula))]
        if max_records is not None:
            records = records[: int(max_records)]
        return records


def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": record["id"], "fields": dict(record["fields"])}


@dataclass
class TableHandle:
    table: Any
    in_memory: bool
    base_id: Optional[str]
    table_name: str
    unique: Tuple[str, ...] = ()


# ============================================================
# CONNECTOR
# ============================================================


class DataConnector:
    """Lazy pyairtable connector with in-memory fallback."""

    def __init__(self) -> None:
        self._tables: Dict[Tuple[str, str], TableHandle] = {}
        self._lock = threading.Lock()

    def table(self, definition: TableDefinition) -> TableHandle:
        s = settings()
        name = definition.name()
        base = s.AIRTABLE_BASE_ID
        key = (base or "memory", name)
        with self._lock:
            if key in self._tables:
                return self._tables[key]
            handle = self._open(base, name, s.AIRTABLE_API_KEY, s.FORCE_IN_MEMORY)
            handle.unique = definition.unique_columns()
            self._tables[key] = handle
            return handle

    def _open(self, base: Optional[str], name: str, api_key: Optional[str], force_memory: bool) -> TableHandle:
        if not force_memory and base and api_key and _Api is not None:
            try:
                return TableHandle(_Api(api_key).table(base, name), False, base, name)
            except (requests.RequestException, ValueError):
                logger.warning("Falling back to in-memory table for %s", name, exc_info=True)
        return TableHandle(InMemoryTable(name), True, base, name)

    def conversations(self) -> TableHandle:
        return self.table(CONVERSATIONS_TABLE)

    def messages(self) -> TableHandle:
        return self.table(MESSAGES_TABLE)

    def rules(self) -> TableHandle:
        return self.table(AUTOMATION_RULES_TABLE)

    def automation_logs(self) -> TableHandle:
        return self.table(AUTOMATION_LOGS_TABLE)

    def runs(self) -> TableHandle:
        return self.table(RUNS_TABLE)

    def clients(self) -> TableHandle:
        return self.table(CLIENTS_TABLE)

    def jobs(self) -> TableHandle:
        return self.table(JOBS_TABLE)

    def quotes(self) -> TableHandle:
        return self.table(QUOTES_TABLE)

    def invoices(self) -> TableHandle:
        return self.table(INVOICES_TABLE)

    def business_settings(self) -> TableHandle:
        return self.table(BUSINESS_SETTINGS_TABLE)


CONNECTOR = DataConnector()


# ============================================================
# LOW LEVEL HELPERS
# ============================================================


def _compact(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in (payload or {}).items() if v is not None}


def _log_airtable_exception(handle: TableHandle, exc: Exception, action: str) -> None:
    response = getattr(exc, "response", None)
    if response is not None:
        status = getattr(response, "status_code", "unknown")
        body = getattr(response, "text", "")
        logger.error("Airtable %s failed [%s] status=%s body=%s", action, handle.table_name, status, body)
    else:
        logger.error("Airtable %s failed [%s]: %s", action, handle.table_name, exc)


def _call(handle: TableHandle, action: str, func: Callable[[], Any]) -> Any:
    if handle.in_memory:
        return func()
    try:
        return retry(
            func,
            retries=2,
            base_delay=0.5,
            exceptions=(requests.exceptions.ConnectionError, ConnectionResetError),
            logger=logger,
        )
    except Exception as exc:
        _log_airtable_exception(handle, exc, action)
        raise


def _safe_all(handle: TableHandle, formula: Optional[str] = None) -> List[Dict[str, Any]]:
    kwargs: Dict[str, Any] = {}
    if formula:
        kwargs["formula"] = formula
    return list(_call(handle, "all", lambda: handle.table.all(**kwargs)))


def _safe_get(handle: TableHandle, record_id: str) -> Optional[Dict[str, Any]]:
    if not record_id:
        return None
    if handle.in_memory:
        return handle.table.get(record_id)
    try:
        return _call(handle, "get", lambda: handle.table.get(record_id))
    except requests.exceptions.HTTPError as exc:
        if getattr(exc.response, "status_code", None) == 404:
            return None
        raise


def _safe_create(handle: TableHandle, fields: Dict[str, Any]) -> Dict[str, Any]:
    body = _compact(fields)
    return _call(handle, "create", lambda: handle.table.create(body))


def _safe_update(handle: TableHandle, record_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    body = _compact(fields)
    return _call(handle, "update", lambda: handle.table.update(record_id, body))


def _safe_create_unique(
    handle: TableHandle,
    fields: Dict[str, Any],
    *,
    live_field: Optional[str] = None,
    claim_ttl: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Insert unless a live row already holds the same unique key.

    In-memory tables check and insert under one lock. Remote tables have no
    constraint, so the key is claimed in the idempotency store first.
    """
    unique = handle.unique
    body = _compact(fields)
    if handle.in_memory:
        return handle.table.create_unique(body, unique, live_field)

    key_values = [str(body.get(col, "")) for col in unique]
    claim_key = f"unique:{handle.table_name}:" + "|".join(key_values)
    store = get_store()
    if not store.claim(claim_key, ttl=claim_ttl):
        raise DuplicateRecordError(f"Unique key already claimed in {handle.table_name}: {key_values}")
    try:
        existing = [
            r for r in _safe_all(handle, eq_formula(**{c: body.get(c, "") for c in unique}))
            if not (live_field and r.get("fields", {}).get(live_field))
        ]
        if existing:
            raise DuplicateRecordError(f"Duplicate {handle.table_name} row for {key_values}", existing=existing[0])
        return _safe_create(handle, body)
    except DuplicateRecordError:
        raise
    except Exception:
        store.release(claim_key)
        raise


def _sort_created(records: Iterable[Dict[str, Any]], created_field: str, newest_first: bool = False) -> List[Dict[str, Any]]:
    def key(rec: Dict[str, Any]):
        ts = parse_datetime(rec.get("fields", {}).get(created_field))
        return (ts.timestamp() if ts else float("-inf"), rec.get("id", ""))

    return sorted(records, key=key, reverse=newest_first)


# ============================================================
# REPOSITORY
# ============================================================


class Repository:
    """Persistence collaborator: every query the engine issues goes through here."""

    def __init__(self, connector: DataConnector = CONNECTOR) -> None:
        self.connector = connector

    # Conversations
    def get_conversation(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        return _safe_get(self.connector.conversations(), conversation_id)

    def find_conversation(self, tenant_id: str, phone: str) -> Optional[Dict[str, Any]]:
        h = self.connector.conversations()
        formula = eq_formula(**_by_column(CONVERSATIONS_TABLE, TENANT=tenant_id, CLIENT_PHONE=phone))
        live = [r for r in _safe_all(h, formula) if not r["fields"].get(CONV["DELETED_AT"])]
        live = _sort_created(live, CONV["CREATED_AT"])
        return live[0] if live else None

    def conversations_by_phone(self, phone: str) -> List[Dict[str, Any]]:
        """Every live conversation for a client phone, across all tenants, in creation order."""
        h = self.connector.conversations()
        formula = eq_formula(**_by_column(CONVERSATIONS_TABLE, CLIENT_PHONE=phone))
        live = [r for r in _safe_all(h, formula) if not r["fields"].get(CONV["DELETED_AT"])]
        return _sort_created(live, CONV["CREATED_AT"])

    def list_conversations(self, tenant_id: str) -> List[Dict[str, Any]]:
        h = self.connector.conversations()
        formula = eq_formula(**_by_column(CONVERSATIONS_TABLE, TENANT=tenant_id))
        live = [r for r in _safe_all(h, formula) if not r["fields"].get(CONV["DELETED_AT"])]
        return _sort_created(live, CONV["LAST_MESSAGE_AT"], newest_first=True)

    def all_live_conversations(self) -> List[Dict[str, Any]]:
        h = self.connector.conversations()
        return [r for r in _safe_all(h) if not r["fields"].get(CONV["DELETED_AT"])]

    def create_conversation(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        payload = {CONV["CREATED_AT"]: iso_now(), CONV["UNREAD_COUNT"]: 0, CONV["ARCHIVED"]: False}
        payload.update(fields)
        return _safe_create_unique(
            self.connector.conversations(),
            payload,
            live_field=CONV["DELETED_AT"],
            claim_ttl=CONVERSATION_CLAIM_TTL,
        )

    def update_conversation(self, conversation_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        return _safe_update(self.connector.conversations(), conversation_id, fields)

    def increment_unread(self, conversation_id: str, last_message_at: datetime) -> Dict[str, Any]:
        h = self.connector.conversations()
        extra = {CONV["LAST_MESSAGE_AT"]: to_iso(last_message_at)}
        if h.in_memory:
            return h.table.increment(conversation_id, CONV["UNREAD_COUNT"], 1, extra)
        # Airtable has no atomic increment; read-modify-write.
        current = _safe_get(h, conversation_id) or {"fields": {}}
        count = int(current["fields"].get(CONV["UNREAD_COUNT"]) or 0) + 1
        return _safe_update(h, conversation_id, {CONV["UNREAD_COUNT"]: count, **extra})

    # Messages
    def get_message(self, message_id: str) -> Optional[Dict[str, Any]]:
        return _safe_get(self.connector.messages(), message_id)

    def create_message(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        payload = {MSG["CREATED_AT"]: iso_now()}
        payload.update(fields)
        return _safe_create(self.connector.messages(), payload)

    def update_message(self, message_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        return _safe_update(self.connector.messages(), message_id, fields)

    def set_message_status(self, message_id: str, status: str, fields: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Move a message forward; once terminal, a status never changes again."""
        current = self.get_message(message_id)
        if current is None:
            raise KeyError(f"Unknown message {message_id}")
        previous = current["fields"].get(MSG["STATUS"])
        if previous in TERMINAL_MESSAGE_STATUSES and status != previous:
            raise ValidationError(f"Message {message_id} is already {previous}; cannot move to {status}")
        payload = {MSG["STATUS"]: status}
        payload.update(fields or {})
        return self.update_message(message_id, payload)

    def messages_for_conversation(self, conversation_id: str, direction: Optional[str] = None) -> List[Dict[str, Any]]:
        h = self.connector.messages()
        pairs = {"CONVERSATION_ID": conversation_id}
        if direction:
            pairs["DIRECTION"] = direction
        records = _safe_all(h, eq_formula(**_by_column(MESSAGES_TABLE, **pairs)))
        return _sort_created(records, MSG["CREATED_AT"])

    def latest_outbound(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        records = self.messages_for_conversation(conversation_id, MessageDirection.OUTBOUND.value)
        return records[-1] if records else None

    def message_by_gateway_id(self, gateway_message_id: str) -> Optional[Dict[str, Any]]:
        if not gateway_message_id:
            return None
        h = self.connector.messages()
        records = _safe_all(h, eq_formula(**_by_column(MESSAGES_TABLE, GATEWAY_ID=gateway_message_id)))
        return records[0] if records else None

    def pending_outbound(self) -> List[Dict[str, Any]]:
        h = self.connector.messages()
        formula = eq_formula(
            **_by_column(MESSAGES_TABLE, DIRECTION=MessageDirection.OUTBOUND.value, STATUS=MessageStatus.PENDING.value)
        )
        return _sort_created(_safe_all(h, formula), MSG["CREATED_AT"])

    # Automation rules
    def get_rule(self, rule_id: str) -> Optional[Dict[str, Any]]:
        return _safe_get(self.connector.rules(), rule_id)

    def create_rule(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        payload = {RULE["CREATED_AT"]: iso_now(), RULE["TRIGGER_COUNT"]: 0, RULE["ACTIVE"]: True}
        payload.update(fields)
        return _safe_create(self.connector.rules(), payload)

    def bump_rule(self, rule_id: str, triggered_at: datetime) -> Dict[str, Any]:
        h = self.connector.rules()
        extra = {RULE["LAST_TRIGGERED_AT"]: to_iso(triggered_at)}
        if h.in_memory:
            return h.table.increment(rule_id, RULE["TRIGGER_COUNT"], 1, extra)
        current = _safe_get(h, rule_id) or {"fields": {}}
        count = int(current["fields"].get(RULE["TRIGGER_COUNT"]) or 0) + 1
        return _safe_update(h, rule_id, {RULE["TRIGGER_COUNT"]: count, **extra})

    def rules_for_tenant(self, tenant_id: str) -> List[Dict[str, Any]]:
        h = self.connector.rules()
        records = _safe_all(h, eq_formula(**_by_column(AUTOMATION_RULES_TABLE, TENANT=tenant_id)))
        return _sort_created(records, RULE["CREATED_AT"])

    def tenants_with_rules(self) -> List[str]:
        seen: Dict[str, None] = {}
        for rec in _sort_created(_safe_all(self.connector.rules()), RULE["CREATED_AT"]):
            tenant = rec["fields"].get(RULE["TENANT"])
            if tenant:
                seen.setdefault(str(tenant), None)
        return list(seen)

    # Automation logs
    def find_automation_log(self, rule_id: str, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        h = self.connector.automation_logs()
        formula = eq_formula(
            **_by_column(AUTOMATION_LOGS_TABLE, RULE_ID=rule_id, ENTITY_TYPE=entity_type, ENTITY_ID=entity_id)
        )
        records = _safe_all(h, formula)
        return records[0] if records else None

    def create_automation_log(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Unique insert on (rule, entity type, entity id). Raises DuplicateRecordError."""
        payload = {LOG["CREATED_AT"]: iso_now()}
        payload.update(fields)
        return _safe_create_unique(self.connector.automation_logs(), payload)

    def update_automation_log(self, log_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        return _safe_update(self.connector.automation_logs(), log_id, fields)

    def automation_logs(self, rule_id: Optional[str] = None) -> List[Dict[str, Any]]:
        h = self.connector.automation_logs()
        formula = eq_formula(**_by_column(AUTOMATION_LOGS_TABLE, RULE_ID=rule_id)) if rule_id else None
        return _safe_all(h, formula)

    # Business records (read-only)
    def get_client(self, tenant_id: str, client_id: str) -> Optional[Dict[str, Any]]:
        rec = _safe_get(self.connector.clients(), client_id)
        if not rec or str(rec["fields"].get(CLIENTS_TABLE.field_name("TENANT"))) != str(tenant_id):
            return None
        return rec

    def _tenant_records(self, handle: TableHandle, definition: TableDefinition, tenant_id: str) -> List[Dict[str, Any]]:
        return _safe_all(handle, eq_formula(**_by_column(definition, TENANT=tenant_id)))

    def quotes(self, tenant_id: str) -> List[Dict[str, Any]]:
        return self._tenant_records(self.connector.quotes(), QUOTES_TABLE, tenant_id)

    def invoices(self, tenant_id: str) -> List[Dict[str, Any]]:
        return self._tenant_records(self.connector.invoices(), INVOICES_TABLE, tenant_id)

    def jobs(self, tenant_id: str) -> List[Dict[str, Any]]:
        return self._tenant_records(self.connector.jobs(), JOBS_TABLE, tenant_id)

    def business_name(self, tenant_id: str) -> Optional[str]:
        records = self._tenant_records(self.connector.business_settings(), BUSINESS_SETTINGS_TABLE, tenant_id)
        for rec in records:
            name = rec["fields"].get(BUSINESS_SETTINGS_TABLE.field_name("BUSINESS_NAME"))
            if name:
                return str(name)
        return None

    # Runs
    def create_run(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        return _safe_create(self.connector.runs(), fields)


REPOSITORY = Repository()


# ============================================================
# PUBLIC HELPERS
# ============================================================


def reset_state() -> None:
    CONNECTOR._tables.clear()
    logger.info("🧹 Datastore state and caches cleared.")


def insert_record(definition: TableDefinition, fields: Dict[str, Any]) -> Dict[str, Any]:
    """Write a raw row (used by the host platform and fixtures to seed business records)."""
    return _safe_create(CONNECTOR.table(definition), fields)
