"""Inbound CRM webhook ingress and webhook audit-log endpoints.

The ingress endpoint answers 200 for every delivery that names an account,
whatever happened while processing it; the outcome is in the body and in
the audit log. Only a missing ``accountId`` is rejected (400).
"""

from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from src.app.api.v1.crm import CrmApiError, ok
from src.app.config import get_settings
from src.app.crm.webhooks import WebhookHandler

router = APIRouter(prefix="/webhooks/crm", tags=["webhooks"])

SIGNATURE_HEADER = "X-Pipedrive-Signature"


def _get_webhook_handler(request: Request) -> WebhookHandler:
    """Retrieve WebhookHandler from app.state, 503 if not available."""
    handler = getattr(request.app.state, "crm_webhook_handler", None)
    if handler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="CRM webhooks not initialized",
        )
    return handler


@router.post("/sync")
async def receive_webhook(
    request: Request,
    account_id: str | None = Query(None, alias="accountId"),
) -> JSONResponse:
    """Process one CRM webhook delivery.

    The raw body is kept for signature verification; a body that is not
    valid JSON is passed on as-is and recorded as unparseable.
    """
    if not account_id:
        raise CrmApiError(status.HTTP_400_BAD_REQUEST, "accountId query parameter is required")

    handler = _get_webhook_handler(request)
    raw_body = await request.body()
    payload: Any
    try:
        payload = json.loads(raw_body) if raw_body else None
    except ValueError:
        payload = raw_body.decode("utf-8", errors="replace")

    event = await handler.handle_webhook(
        account_id,
        payload,
        signature=request.headers.get(SIGNATURE_HEADER),
        raw_body=raw_body,
    )
    return ok(
        {
            "eventId": event.id,
            "processed": event.processed,
            "type": event.type.value,
            "error": event.error,
        }
    )


@router.get("/logs")
async def list_webhook_logs(request: Request, limit: int | None = Query(None)) -> JSONResponse:
    handler = _get_webhook_handler(request)
    if limit is None:
        limit = get_settings().WEBHOOK_LOG_DEFAULT_LIMIT
    return ok(handler.get_webhook_logs(limit))


@router.get("/logs/{event_id}")
async def get_webhook_log(request: Request, event_id: str) -> JSONResponse:
    event = _get_webhook_handler(request).get_webhook_log(event_id)
    if event is None:
        raise CrmApiError(status.HTTP_404_NOT_FOUND, f"Webhook event not found: {event_id}")
    return ok(event)


@router.delete("/logs")
async def purge_webhook_logs(
    request: Request,
    hours_old: float | None = Query(None, alias="hoursOld"),
) -> JSONResponse:
    """Delete audit records older than ``hoursOld`` hours."""
    handler = _get_webhook_handler(request)
    if hours_old is None:
        hours_old = get_settings().WEBHOOK_LOG_RETENTION_HOURS
    return ok({"deleted": handler.clear_old_logs(hours_old)})
