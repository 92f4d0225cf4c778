"""Lead synchronization against an account's CRM adapter.

"Sync" means re-fetch and overwrite the caller's view; nothing is diffed or
reconciled. SyncService keeps one SyncStatus per account (overwritten on
every attempt) and the time of the last successful full sync, which drives
should_sync().

Status transitions: idle -> syncing -> {idle, error}. Every call starts
fresh from the previous terminal state; ``pending_count`` is never set by
this path.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta

import structlog

from src.app.core.monitoring import crm_sync_runs_total
from src.app.crm.accounts import CrmAccountManager
from src.app.crm.adapter import CrmAdapter
from src.app.crm.exceptions import CrmNotFoundError
from src.app.crm.schemas import Lead, LeadFilter, SyncState, SyncStatus, utcnow

logger = structlog.get_logger(__name__)

# Largest page LeadFilter accepts
DEFAULT_PAGE_SIZE = 500


class SyncService:
    """Coordinates fetch-and-overwrite syncs and staleness queries.

    Args:
        account_manager: Registry used to resolve each account's adapter.
        default_interval_minutes: Default staleness window for should_sync.
        clock: Returns the current aware datetime. Injected by tests.
        page_size: Leads requested per page during a full sync.
    """

    def __init__(
        self,
        account_manager: CrmAccountManager,
        default_interval_minutes: float = 5,
        clock: Callable[[], datetime] = utcnow,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        self._account_manager = account_manager
        self._default_interval = default_interval_minutes
        self._page_size = page_size
        self._clock = clock
        self._sync_status: dict[str, SyncStatus] = {}
        self._last_sync_time: dict[str, datetime] = {}

    def _require_adapter(self, account_id: str) -> CrmAdapter:
        adapter = self._account_manager.get_adapter(account_id)
        if adapter is None:
            raise CrmNotFoundError(f"Adapter not found for account {account_id}")
        return adapter

    async def sync_account_leads(self, account_id: str) -> SyncStatus:
        """Full fetch of the account's leads, recording the outcome.

        Leads are requested page by page until a short page comes back, so
        ``leads_count`` covers every lead and not just the first page.

        On failure the status becomes ``error`` with ``failed_count`` set to
        the lead count known from the previous attempt, and the adapter's
        exception is re-raised.

        Raises:
            CrmNotFoundError: No adapter is bound to the account.
        """
        adapter = self._require_adapter(account_id)

        previous = self._sync_status.get(account_id)
        known_count = previous.leads_count if previous else 0

        status = SyncStatus(
            account_id=account_id,
            last_sync_at=self._clock(),
            leads_count=known_count,
            status=SyncState.SYNCING,
        )
        self._sync_status[account_id] = status

        try:
            leads = await self._fetch_all_leads(adapter, account_id)
        except Exception as exc:
            status = status.model_copy(
                update={"status": SyncState.ERROR, "failed_count": known_count}
            )
            self._sync_status[account_id] = status
            crm_sync_runs_total.labels(status="error").inc()
            logger.error("sync.account_leads_error", account_id=account_id, error=str(exc))
            raise

        now = self._clock()
        status = status.model_copy(
            update={
                "status": SyncState.IDLE,
                "leads_count": len(leads),
                "failed_count": 0,
                "last_sync_at": now,
            }
        )
        self._sync_status[account_id] = status
        self._last_sync_time[account_id] = now
        crm_sync_runs_total.labels(status="success").inc()

        logger.info("sync.account_leads_complete", account_id=account_id, leads=len(leads))
        return status

    async def _fetch_all_leads(self, adapter: CrmAdapter, account_id: str) -> list[Lead]:
        leads: list[Lead] = []
        offset = 0
        while True:
            page = await adapter.get_leads(
                account_id, LeadFilter(limit=self._page_size, offset=offset)
            )
            leads.extend(page)
            if len(page) < self._page_size:
                return leads
            offset += len(page)

    async def sync_lead(self, account_id: str, lead_id: str) -> Lead:
        """Re-fetch one lead through the account's adapter.

        Raises:
            CrmNotFoundError: No adapter is bound, or the lead does not exist.
        """
        adapter = self._require_adapter(account_id)
        lead = await adapter.sync_lead(account_id, lead_id)
        logger.debug("sync.lead_synced", account_id=account_id, lead_id=lead_id)
        return lead

    def get_sync_status(self, account_id: str) -> SyncStatus | None:
        return self._sync_status.get(account_id)

    def get_last_sync_time(self, account_id: str) -> datetime | None:
        return self._last_sync_time.get(account_id)

    def should_sync(self, account_id: str, interval_minutes: float | None = None) -> bool:
        """True if never synced or at least ``interval_minutes`` have elapsed."""
        last_sync = self._last_sync_time.get(account_id)
        if last_sync is None:
            return True

        interval = self._default_interval if interval_minutes is None else interval_minutes
        return self._clock() - last_sync >= timedelta(minutes=interval)

    def clear_sync_status(self, account_id: str) -> None:
        self._sync_status.pop(account_id, None)
        self._last_sync_time.pop(account_id, None)
