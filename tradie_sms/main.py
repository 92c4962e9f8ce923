from __future__ import annotations

"""
Tradie SMS Engine — FastAPI entry point
- Inbound gateway webhook (token auth, duplicate-safe)
- Conversation actions: send, quick action, read, archive, delete
- Manual automation pass behind CRON token
- Background scheduler started on startup, stopped on shutdown
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from tradie_sms import conversations, outbound, quick_actions
from tradie_sms.automation import evaluate_rules
from tradie_sms.config import settings, validate_startup
from tradie_sms.errors import NotFoundError, ValidationError
from tradie_sms.run_logger import log_run
from tradie_sms.runtime import configure_logging, get_logger, install_global_exception_hook, iso_now
from tradie_sms.scheduler import Scheduler, build_scheduler
from tradie_sms.webhooks import router as webhook_router

logger = get_logger("main")

app = FastAPI(title="Tradie SMS Engine", version="1.0.0")
app.include_router(webhook_router)

# Host-owned passes (reminders, billing, ...) keyed by schedule name.
HOST_HANDLERS: Dict[str, Callable[[], Any]] = {}
_SCHEDULER: Optional[Scheduler] = None


def register_handler(name: str, func: Callable[[], Any]) -> None:
    HOST_HANDLERS[name] = func


# ─────────────────────────── Error mapping ──────────────────────────
@app.exception_handler(ValidationError)
async def _validation_error(_: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"ok": False, "error": str(exc)})


@app.exception_handler(NotFoundError)
async def _not_found(_: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"ok": False, "error": str(exc)})


# ─────────────────────────── Auth helpers ───────────────────────────
def _extract_token(request: Request, qp_token: Optional[str], h_cron: Optional[str]) -> str:
    if qp_token:
        return qp_token
    if h_cron:
        return h_cron
    auth = request.headers.get("authorization") or ""
    if auth.lower().startswith("bearer "):
        return auth.split(" ", 1)[1]
    return ""


def _require_token(request: Request, qp_token: Optional[str], h_cron: Optional[str]):
    expected = settings().CRON_TOKEN
    if not expected:
        return
    if _extract_token(request, qp_token, h_cron) != expected:
        raise HTTPException(status_code=401, detail="Unauthorized")


# ─────────────────────────── Request models ─────────────────────────
class SendRequest(BaseModel):
    tenant_id: str
    to: str
    body: str
    sender_id: Optional[str] = None
    client_id: Optional[str] = None
    client_name: Optional[str] = None
    job_id: Optional[str] = None
    media_urls: Optional[List[str]] = None


class QuickActionRequest(BaseModel):
    sender_id: str
    action: str
    job_title: Optional[str] = None
    business_name: Optional[str] = None
    eta: Optional[str] = None


class NotifyRequest(BaseModel):
    tenant_id: str
    client_id: str
    template: str
    sender_id: Optional[str] = None
    job_id: Optional[str] = None
    variables: Dict[str, Any] = {}


class ArchiveRequest(BaseModel):
    archived: bool = True


def _message_out(msg) -> Dict[str, Any]:
    return {
        "id": msg.id,
        "conversation_id": msg.conversation_id,
        "direction": msg.direction,
        "status": msg.status,
        "simulated": msg.simulated,
        "gateway_message_id": msg.gateway_message_id,
        "error": msg.error_message,
        "quick_action": msg.quick_action_type,
    }


def _conversation_out(conv) -> Dict[str, Any]:
    return {
        "id": conv.id,
        "tenant_id": conv.tenant_id,
        "client_phone": conv.client_phone,
        "client_name": conv.client_name,
        "job_id": conv.job_id,
        "unread_count": conv.unread_count,
        "archived": conv.archived,
        "last_message_at": conv.last_message_at.isoformat() if conv.last_message_at else None,
    }


# ─────────────────────────── Lifecycle ──────────────────────────────
@app.on_event("startup")
async def startup():
    global _SCHEDULER
    configure_logging()
    install_global_exception_hook()
    s = validate_startup()
    logger.info("✅ Tradie SMS Engine starting (env=%s, gateway=%s)", s.APP_ENV, s.gateway_configured)
    if s.SCHEDULER_ENABLED:
        _SCHEDULER = build_scheduler(HOST_HANDLERS)
        _SCHEDULER.start()


@app.on_event("shutdown")
async def shutdown():
    global _SCHEDULER
    if _SCHEDULER is not None:
        await _SCHEDULER.stop()
        _SCHEDULER = None


# ─────────────────────────── Routes ─────────────────────────────────
@app.get("/health")
def health():
    s = settings()
    return {
        "ok": True,
        "env": s.APP_ENV,
        "gateway_configured": s.gateway_configured,
        "simulate": s.SMS_SIMULATE,
        "scheduler": _SCHEDULER.status() if _SCHEDULER else None,
        "timestamp": iso_now(),
    }


@app.post("/sms/send")
async def send_sms(req: SendRequest):
    msg = await asyncio.to_thread(
        outbound.send,
        req.tenant_id,
        req.to,
        req.body,
        req.sender_id,
        client_id=req.client_id,
        client_name=req.client_name,
        job_id=req.job_id,
        media_urls=req.media_urls,
    )
    return {"ok": msg.status == "sent", "message": _message_out(msg)}


@app.post("/sms/notify")
async def notify(req: NotifyRequest):
    msg = await asyncio.to_thread(
        outbound.send_notification,
        req.tenant_id,
        req.client_id,
        req.template,
        req.variables,
        req.sender_id,
        req.job_id,
    )
    return {"ok": msg.status == "sent", "message": _message_out(msg)}


@app.get("/sms/conversations")
async def list_conversations(tenant_id: str = Query(...)):
    convs = await asyncio.to_thread(conversations.list_for_tenant, tenant_id)
    return {"ok": True, "conversations": [_conversation_out(c) for c in convs]}


@app.post("/sms/conversations/{conversation_id}/quick-action")
async def quick_action(conversation_id: str, req: QuickActionRequest):
    msg = await asyncio.to_thread(
        quick_actions.send_quick_action,
        conversation_id,
        req.sender_id,
        req.action,
        req.job_title,
        req.business_name,
        req.eta,
    )
    return {"ok": msg.status == "sent", "message": _message_out(msg)}


@app.post("/sms/conversations/{conversation_id}/read")
async def mark_read(conversation_id: str):
    conv = await asyncio.to_thread(conversations.mark_read, conversation_id)
    return {"ok": True, "conversation": _conversation_out(conv)}


@app.post("/sms/conversations/{conversation_id}/archive")
async def archive(conversation_id: str, req: Optional[ArchiveRequest] = None):
    archived = req.archived if req else True
    conv = await asyncio.to_thread(conversations.archive, conversation_id, archived)
    return {"ok": True, "conversation": _conversation_out(conv)}


@app.delete("/sms/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str):
    await asyncio.to_thread(conversations.soft_delete, conversation_id)
    return {"ok": True, "id": conversation_id}


@app.post("/automations/run")
async def run_automations(
    request: Request,
    x_cron_token: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
):
    _require_token(request, token, x_cron_token)
    report = await asyncio.to_thread(evaluate_rules)
    result = {"ok": not report.errors, "processed": report.sent, **report.as_dict()}
    await asyncio.to_thread(log_run, "SMS_AUTOMATION_MANUAL", result)
    return result
