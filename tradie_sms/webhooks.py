"""Gateway webhook: inbound client replies."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Optional

from fastapi import APIRouter, Header, HTTPException, Query, Request

from tradie_sms.config import settings
from tradie_sms.inbound import handle_webhook
from tradie_sms.runtime import get_logger

logger = get_logger("webhooks")

router = APIRouter()


def _is_authorized(header_token: Optional[str], query_token: Optional[str]) -> bool:
    """Check if request is authorized via header or query token."""
    expected = settings().WEBHOOK_TOKEN
    if not expected:
        return True  # auth disabled
    return (header_token == expected) or (query_token == expected)


async def _read_payload(request: Request) -> Dict[str, Any]:
    content_type = (request.headers.get("content-type") or "").lower()
    if "application/json" in content_type:
        try:
            data = await request.json()
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Invalid JSON body")
        if not isinstance(data, dict):
            raise HTTPException(status_code=400, detail="JSON body must be an object")
        return data
    form = await request.form()
    return dict(form)


@router.post("/sms/inbound")
async def inbound_sms(
    request: Request,
    x_webhook_token: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
):
    if not _is_authorized(x_webhook_token, token):
        raise HTTPException(status_code=401, detail="Unauthorized")

    payload = await _read_payload(request)
    result = await asyncio.to_thread(handle_webhook, payload)
    logger.info("Inbound webhook sid=%s → %s", result.get("sid"), result.get("status"))
    return result
