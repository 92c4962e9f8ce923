# tradie_sms/templates.py
"""Message templates for client notifications and automation rules."""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Callable, Dict, Mapping

from tradie_sms.schema import TriggerType

_PLACEHOLDER = re.compile(r"\{(\w+)\}")

DEFAULT_BUSINESS_NAME = "Your tradie"

# -------------------------------
# Client notifications
# -------------------------------
NOTIFICATIONS: Dict[str, Callable[..., str]] = {
    "quote_ready": lambda client_name, business_name, quote_number: (
        f"Hi {client_name}, your quote #{quote_number} from {business_name} is ready. "
        "Check your email for details."
    ),
    "invoice_sent": lambda client_name, business_name, invoice_number, amount: (
        f"Hi {client_name}, invoice #{invoice_number} for {amount} from {business_name} is ready. "
        "Check your email to pay online."
    ),
    "payment_received": lambda client_name, amount, business_name: (
        f"Thanks {client_name}! We received your payment of {amount}. - {business_name}"
    ),
    "job_scheduled": lambda client_name, business_name, date: (
        f"Hi {client_name}, {business_name} has scheduled your job for {date}. We'll see you then!"
    ),
    "job_complete": lambda client_name, business_name: (
        f"Hi {client_name}, your job with {business_name} is complete. Thanks for choosing us!"
    ),
    "reminder": lambda client_name, business_name, message: (
        f"Hi {client_name}, reminder from {business_name}: {message}"
    ),
}

# -------------------------------
# Automation defaults
# -------------------------------
AUTOMATION_DEFAULTS: Dict[str, str] = {
    TriggerType.QUOTE_FOLLOW_UP.value: (
        "Hi {client_name}, just following up on quote #{quote_number} ({quote_total}) from "
        "{business_name}. Let us know if you have any questions or would like to go ahead."
    ),
    TriggerType.INVOICE_OVERDUE.value: (
        "Hi {client_name}, a friendly reminder from {business_name} that invoice #{invoice_number} "
        "for {invoice_total} was due on {due_date}. Please disregard if already paid."
    ),
    TriggerType.JOB_REMINDER_DAY_BEFORE.value: (
        "Hi {client_name}, reminder from {business_name}: {job_title} is booked for tomorrow, "
        "{scheduled_date} at {scheduled_time}, at {job_address}. See you then!"
    ),
}


# -------------------------------
# Helpers
# -------------------------------
def format_money(value: Any) -> str:
    """Render an amount as $1234.50. Missing or garbage values render as $0.00."""
    try:
        amount = Decimal(str(value)) if value not in (None, "") else Decimal("0")
    except (InvalidOperation, ValueError):
        amount = Decimal("0")
    return "${:.2f}".format(amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def render_template(template: str, variables: Mapping[str, Any]) -> str:
    """
    Substitute ``{name}`` placeholders.

    Unknown or missing placeholders are left untouched.
    """

    def _sub(match: "re.Match[str]") -> str:
        key = match.group(1)
        value = variables.get(key)
        return match.group(0) if value is None else str(value)

    return _PLACEHOLDER.sub(_sub, template or "")


def get_template(name: str, **kwargs: Any) -> str:
    builder = NOTIFICATIONS.get(name)
    if builder is None:
        raise KeyError(f"Unknown notification template: {name}")
    return builder(**kwargs)


def default_automation_template(trigger_type: str) -> str:
    return AUTOMATION_DEFAULTS[trigger_type]
