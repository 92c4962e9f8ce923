"""
🤖 Automation Rule Engine
-------------------------
Time-based tenant rules that auto-text clients:

• quote_follow_up          → quotes still ``sent`` N days after sending
• invoice_overdue          → invoices ``sent``/``overdue`` N days past due
• job_reminder_day_before  → jobs ``scheduled``/``confirmed`` for tomorrow (business TZ)

Each (rule, entity) pair fires at most once, ever. The slot is claimed with a
unique ``pending`` log insert before anything is sent, so overlapping passes
cannot double-send: whoever loses the insert treats the entity as handled.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from tradie_sms import outbound
from tradie_sms.config import business_tz, local_now, settings
from tradie_sms.datastore import LOG, RULE, REPOSITORY, Repository
from tradie_sms.errors import DuplicateRecordError, ValidationError
from tradie_sms.models import AutomationRule, Client, Invoice, Job, Quote
from tradie_sms.quick_actions import format_clock
from tradie_sms.runtime import get_logger, utc_now
from tradie_sms.schema import TRIGGER_ENTITY, AutomationLogStatus, EntityType, MessageStatus, TriggerType
from tradie_sms.templates import DEFAULT_BUSINESS_NAME, default_automation_template, format_money, render_template

logger = get_logger("automation")

QUOTE_OPEN_STATUSES = {"sent"}
INVOICE_OPEN_STATUSES = {"sent", "overdue"}
JOB_UPCOMING_STATUSES = {"scheduled", "confirmed"}


@dataclass
class AutomationReport:
    tenants: int = 0
    rules: int = 0
    matched: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    duplicates: int = 0
    errors: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ============================================================
# RULE MANAGEMENT
# ============================================================


def validate_trigger(trigger_type: Any) -> TriggerType:
    try:
        return TriggerType(str(trigger_type))
    except ValueError:
        raise ValidationError(f"Unknown trigger type: {trigger_type!r}") from None


def create_rule(
    tenant_id: str,
    name: str,
    trigger_type: str,
    custom_message: Optional[str] = None,
    active: bool = True,
    repo: Repository = REPOSITORY,
) -> AutomationRule:
    if not tenant_id:
        raise ValidationError("tenant_id is required")
    trigger = validate_trigger(trigger_type)
    record = repo.create_rule(
        {
            RULE["TENANT"]: tenant_id,
            RULE["NAME"]: name or trigger.value.replace("_", " ").title(),
            RULE["TRIGGER"]: trigger.value,
            RULE["ACTIVE"]: bool(active),
            RULE["CUSTOM_MESSAGE"]: custom_message or None,
        }
    )
    logger.info("➕ Rule %s (%s) created for tenant %s", record["id"], trigger.value, tenant_id)
    return AutomationRule.from_record(record)


# ============================================================
# MATCHERS
# ============================================================


def _fmt_date(value: Optional[datetime]) -> str:
    if value is None:
        return ""
    return value.astimezone(business_tz()).strftime("%d/%m/%Y")


def _due_quotes(tenant_id: str, now: datetime, repo: Repository):
    age = timedelta(days=settings().QUOTE_FOLLOW_UP_DAYS)
    for rec in repo.quotes(tenant_id):
        quote = Quote.from_record(rec)
        anchor = quote.sent_at or quote.created_at
        if quote.status not in QUOTE_OPEN_STATUSES or anchor is None or now - anchor < age:
            continue
        yield quote.id, quote.client_id, {"quote_number": quote.number or "", "quote_total": format_money(quote.total)}, None


def _due_invoices(tenant_id: str, now: datetime, repo: Repository):
    grace = timedelta(days=settings().INVOICE_OVERDUE_DAYS)
    for rec in repo.invoices(tenant_id):
        invoice = Invoice.from_record(rec)
        if invoice.status not in INVOICE_OPEN_STATUSES or invoice.due_date is None:
            continue
        if now - invoice.due_date < grace:
            continue
        variables = {
            "invoice_number": invoice.number or "",
            "invoice_total": format_money(invoice.total),
            "due_date": _fmt_date(invoice.due_date),
        }
        yield invoice.id, invoice.client_id, variables, None


def _jobs_tomorrow(tenant_id: str, now: datetime, repo: Repository):
    tomorrow = local_now(now).date() + timedelta(days=1)
    tz = business_tz()
    for rec in repo.jobs(tenant_id):
        job = Job.from_record(rec)
        if job.status not in JOB_UPCOMING_STATUSES or job.scheduled_at is None:
            continue
        local = job.scheduled_at.astimezone(tz)
        if local.date() != tomorrow:
            continue
        variables = {
            "job_title": job.title or "your job",
            "job_address": job.address or "",
            "scheduled_date": local.strftime("%d/%m/%Y"),
            "scheduled_time": format_clock(local),
        }
        yield job.id, job.client_id, variables, job.id


MATCHERS: Dict[TriggerType, Callable[..., Iterable]] = {
    TriggerType.QUOTE_FOLLOW_UP: _due_quotes,
    TriggerType.INVOICE_OVERDUE: _due_invoices,
    TriggerType.JOB_REMINDER_DAY_BEFORE: _jobs_tomorrow,
}


# ============================================================
# PER-ENTITY PROCESSING
# ============================================================


def _log_fields(rule: AutomationRule, entity_type: EntityType, entity_id: str, status: AutomationLogStatus, **extra):
    fields = {
        LOG["RULE_ID"]: rule.id,
        LOG["ENTITY_TYPE"]: entity_type.value,
        LOG["ENTITY_ID"]: entity_id,
        LOG["STATUS"]: status.value,
    }
    fields.update({LOG[k.upper()]: v for k, v in extra.items()})
    return fields


def _record_failure(rule: AutomationRule, entity_type: EntityType, entity_id: str, exc: Exception, repo: Repository) -> None:
    try:
        repo.create_automation_log(_log_fields(rule, entity_type, entity_id, AutomationLogStatus.FAILED, error=str(exc)))
    except DuplicateRecordError:
        logger.info("Rule %s: %s %s already logged by another pass", rule.id, entity_type.value, entity_id)


def _process_entity(
    rule: AutomationRule,
    trigger: TriggerType,
    entity_id: str,
    client_id: Optional[str],
    variables: Dict[str, Any],
    job_id: Optional[str],
    business_name: str,
    report: AutomationReport,
    gateway,
    repo: Repository,
) -> None:
    entity_type = TRIGGER_ENTITY[trigger]
    if repo.find_automation_log(rule.id, entity_type.value, entity_id):
        report.duplicates += 1
        return
    report.matched += 1

    try:
        client_rec = repo.get_client(rule.tenant_id, client_id) if client_id else None
    except Exception as exc:
        _record_failure(rule, entity_type, entity_id, exc, repo)
        raise
    client = Client.from_record(client_rec) if client_rec else None
    if client is None or not client.phone:
        try:
            repo.create_automation_log(
                _log_fields(rule, entity_type, entity_id, AutomationLogStatus.SKIPPED, error="client has no phone")
            )
            report.skipped += 1
            logger.info("⏭️ Rule %s skipped %s %s: no client phone", rule.id, entity_type.value, entity_id)
        except DuplicateRecordError:
            report.duplicates += 1
        return

    try:
        log = repo.create_automation_log(_log_fields(rule, entity_type, entity_id, AutomationLogStatus.PENDING))
    except DuplicateRecordError:
        report.duplicates += 1
        return

    try:
        template = rule.custom_message or default_automation_template(trigger.value)
        body = render_template(
            template,
            {"client_name": client.name or "there", "business_name": business_name, **variables},
        )
        message = outbound.send(
            rule.tenant_id,
            client.phone,
            body,
            None,
            client_id=client.id,
            client_name=client.name,
            job_id=job_id,
            gateway=gateway,
            repo=repo,
        )
    except Exception as exc:
        repo.update_automation_log(log["id"], {LOG["STATUS"]: AutomationLogStatus.FAILED.value, LOG["ERROR"]: str(exc)})
        raise

    if message.status == MessageStatus.SENT.value:
        repo.update_automation_log(log["id"], {LOG["STATUS"]: AutomationLogStatus.SENT.value, LOG["MESSAGE_ID"]: message.id})
        repo.bump_rule(rule.id, utc_now())
        report.sent += 1
    else:
        repo.update_automation_log(
            log["id"],
            {
                LOG["STATUS"]: AutomationLogStatus.FAILED.value,
                LOG["MESSAGE_ID"]: message.id,
                LOG["ERROR"]: message.error_message or "send failed",
            },
        )
        report.failed += 1


# ============================================================
# PASS
# ============================================================


def _evaluate_tenant(tenant_id: str, now: datetime, report: AutomationReport, gateway, repo: Repository) -> None:
    business_name = repo.business_name(tenant_id) or DEFAULT_BUSINESS_NAME
    for rec in repo.rules_for_tenant(tenant_id):
        rule = AutomationRule.from_record(rec)
        if not rule.active:
            continue
        try:
            trigger = validate_trigger(rule.trigger_type)
        except ValidationError:
            logger.warning("Skipping malformed rule %s (trigger=%r)", rule.id, rule.trigger_type)
            continue
        report.rules += 1

        try:
            matches = list(MATCHERS[trigger](tenant_id, now, repo))
        except Exception as exc:
            logger.exception("Rule %s: loading %s records failed", rule.id, TRIGGER_ENTITY[trigger].value)
            report.errors.append(f"{rule.id}: {exc}")
            continue

        for entity_id, client_id, variables, job_id in matches:
            try:
                _process_entity(
                    rule, trigger, entity_id, client_id, variables, job_id, business_name, report, gateway, repo
                )
            except Exception as exc:
                logger.exception("Rule %s failed on %s %s", rule.id, TRIGGER_ENTITY[trigger].value, entity_id)
                report.failed += 1
                report.errors.append(f"{rule.id}/{entity_id}: {exc}")


def evaluate_rules(now: Optional[datetime] = None, gateway=None, repo: Repository = REPOSITORY) -> AutomationReport:
    """Run one pass over every tenant's active rules."""
    now = now or utc_now()
    report = AutomationReport()

    for tenant_id in repo.tenants_with_rules():
        report.tenants += 1
        try:
            _evaluate_tenant(tenant_id, now, report, gateway, repo)
        except Exception as exc:
            logger.exception("Automation pass failed for tenant %s", tenant_id)
            report.errors.append(f"{tenant_id}: {exc}")

    logger.info(
        "🤖 Automation pass: tenants=%d rules=%d sent=%d skipped=%d failed=%d duplicates=%d",
        report.tenants, report.rules, report.sent, report.skipped, report.failed, report.duplicates,
    )
    return report
