"""Canned field-status messages a tradie fires from a conversation with one tap."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from tradie_sms import conversations, outbound
from tradie_sms.config import local_now
from tradie_sms.datastore import REPOSITORY, Repository
from tradie_sms.errors import ValidationError
from tradie_sms.models import Message
from tradie_sms.runtime import get_logger
from tradie_sms.templates import DEFAULT_BUSINESS_NAME

logger = get_logger("quick_actions")

DEFAULT_JOB_TITLE = "your job"


class QuickAction(str, Enum):
    ON_MY_WAY = "on_my_way"
    JUST_ARRIVED = "just_arrived"
    JOB_FINISHED = "job_finished"
    RUNNING_LATE = "running_late"
    NEED_MATERIALS = "need_materials"


def parse_action(action) -> QuickAction:
    if isinstance(action, QuickAction):
        return action
    try:
        return QuickAction(str(action).strip().lower())
    except ValueError:
        raise ValidationError(f"Invalid quick action type: {action!r}") from None


def format_clock(moment: datetime) -> str:
    """en-AU short time, e.g. 9:05 am / 12:30 pm."""
    hour = moment.hour % 12 or 12
    return f"{hour}:{moment.minute:02d} {'am' if moment.hour < 12 else 'pm'}"


def compose(
    action,
    business_name: Optional[str],
    job_title: Optional[str],
    eta: Optional[str] = None,
    now: Optional[datetime] = None,
) -> str:
    kind = parse_action(action)
    business = business_name or DEFAULT_BUSINESS_NAME
    job = job_title or DEFAULT_JOB_TITLE
    clock = format_clock(local_now(now))

    if kind is QuickAction.ON_MY_WAY:
        tail = f"ETA: {eta}" if eta else "See you soon!"
        return f"Hi! {business} here. I'm on my way to {job}. {tail} ({clock})"
    if kind is QuickAction.JUST_ARRIVED:
        return f"Hi! {business} has just arrived for {job}. ({clock})"
    if kind is QuickAction.JOB_FINISHED:
        return f"Hi! {business} has finished work on {job}. Thanks for having us! ({clock})"
    if kind is QuickAction.RUNNING_LATE:
        tail = f"New ETA: {eta}" if eta else "Apologies for the delay."
        return f"Hi! {business} here. Running a bit late for {job}. {tail} ({clock})"
    return f"Hi! {business} here. Need to pick up some materials for {job}. Will be back shortly. ({clock})"


def send_quick_action(
    conversation_id: str,
    sender_id: str,
    action,
    job_title: Optional[str] = None,
    business_name: Optional[str] = None,
    eta: Optional[str] = None,
    *,
    gateway=None,
    repo: Repository = REPOSITORY,
) -> Message:
    kind = parse_action(action)
    conv = conversations.get(conversation_id, repo)
    body = compose(kind, business_name or repo.business_name(conv.tenant_id), job_title, eta)
    logger.info("⚡ Quick action %s on conversation %s by %s", kind.value, conversation_id, sender_id)
    return outbound.send(
        conv.tenant_id,
        conv.client_phone,
        body,
        sender_id,
        is_quick_action=True,
        quick_action_tag=kind.value,
        client_id=conv.client_id,
        client_name=conv.client_name,
        job_id=conv.job_id,
        gateway=gateway,
        repo=repo,
    )
