"""Inbound CRM webhook processing.

WebhookHandler turns one raw webhook call into exactly one audit-logged
WebhookEvent and, for mutation-shaped events, triggers a targeted lead
re-sync. handle_webhook never raises: every failure is recorded on the
returned event and the ingress endpoint always answers 200.

The log is an insertion-ordered in-memory dict kept until purged by age.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import structlog

from src.app.core.monitoring import crm_webhook_events_total
from src.app.crm.accounts import CrmAccountManager
from src.app.crm.schemas import WebhookEvent, WebhookEventType, utcnow
from src.app.crm.sync import SyncService

logger = structlog.get_logger(__name__)

# Event types that trigger a re-fetch of the lead
_RESYNC_TYPES = frozenset(
    {
        WebhookEventType.LEAD_CREATED,
        WebhookEventType.LEAD_UPDATED,
        WebhookEventType.LEAD_STAGE_CHANGED,
    }
)


class WebhookHandler:
    """Processes CRM webhooks and keeps an audit log of every attempt.

    Args:
        account_manager: Registry used to resolve the account's adapter.
        sync_service: Used to re-fetch leads named by mutation events.
        clock: Returns the current aware datetime. Injected by tests.
    """

    def __init__(
        self,
        account_manager: CrmAccountManager,
        sync_service: SyncService,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._account_manager = account_manager
        self._sync_service = sync_service
        self._clock = clock
        self._webhook_logs: dict[str, WebhookEvent] = {}

    async def handle_webhook(
        self,
        account_id: str,
        payload: Any,
        *,
        signature: str | None = None,
        raw_body: str | bytes | None = None,
    ) -> WebhookEvent:
        """Process one webhook call.

        Args:
            account_id: Account the webhook was delivered for.
            payload: Decoded JSON body.
            signature: Signature header, if any. Always checked against
                ``raw_body`` with the adapter's verify_webhook; a missing
                signature only passes for accounts without a webhook secret.
            raw_body: Raw request body used for signature verification.

        Returns:
            The audit record, ``processed=True`` only on full success.
        """
        event = WebhookEvent(
            id=str(uuid.uuid4()),
            type=WebhookEventType.CUSTOM,
            crm_account_id=account_id,
            data=payload,
            timestamp=self._clock(),
            processed=False,
        )

        adapter = self._account_manager.get_adapter(account_id)
        if adapter is None:
            event.error = f"Adapter not found for account {account_id}"
            return self._log(event)

        try:
            event.crm_type = adapter.get_crm_type()

            body = raw_body if raw_body is not None else b""
            if not adapter.verify_webhook(signature or "", body):
                event.error = "Invalid webhook signature"
                return self._log(event)

            parsed = adapter.parse_webhook_event(payload)
            if parsed is None:
                event.error = "Failed to parse webhook event"
                return self._log(event)

            event.type = parsed.type
            event.data = parsed.data

            await self._process_event(account_id, event)
            event.processed = True
        except Exception as exc:
            event.error = str(exc)
            event.processed = False
            logger.error(
                "webhook.processing_error",
                account_id=account_id,
                event_id=event.id,
                event_type=event.type.value,
                error=str(exc),
            )

        return self._log(event)

    async def _process_event(self, account_id: str, event: WebhookEvent) -> None:
        """Dispatch on canonical type; mutation events re-sync the lead."""
        if event.type in _RESYNC_TYPES:
            lead_id = event.data.get("id") if isinstance(event.data, dict) else None
            if lead_id is not None:
                await self._sync_service.sync_lead(account_id, str(lead_id))
        elif event.type == WebhookEventType.LEAD_DELETED:
            # Callers drop the lead from their own view
            pass
        else:
            logger.warning(
                "webhook.unrecognized_event",
                account_id=account_id,
                event_id=event.id,
                event_type=event.type.value,
            )

    def _log(self, event: WebhookEvent) -> WebhookEvent:
        self._webhook_logs[event.id] = event
        crm_webhook_events_total.labels(
            event_type=event.type.value,
            processed=str(event.processed).lower(),
        ).inc()
        logger.info(
            "webhook.processed" if event.processed else "webhook.rejected",
            account_id=event.crm_account_id,
            event_id=event.id,
            event_type=event.type.value,
            error=event.error,
        )
        return event

    # ── Audit Log ───────────────────────────────────────────────────────────

    def get_webhook_log(self, event_id: str) -> WebhookEvent | None:
        return self._webhook_logs.get(event_id)

    def get_webhook_logs(self, limit: int = 100) -> list[WebhookEvent]:
        """Last ``limit`` events by insertion order."""
        if limit <= 0:
            return []
        return list(self._webhook_logs.values())[-limit:]

    def clear_old_logs(self, hours_old: float = 24) -> int:
        """Delete events strictly older than ``now - hours_old``; return the count."""
        cutoff = self._clock() - timedelta(hours=hours_old)
        stale = [event_id for event_id, event in self._webhook_logs.items() if event.timestamp < cutoff]
        for event_id in stale:
            del self._webhook_logs[event_id]

        if stale:
            logger.info("webhook.logs_purged", deleted=len(stale), hours_old=hours_old)
        return len(stale)
