"""CRM integration layer -- pluggable adapter pattern for multi-tenant CRM access.

Provides the CrmAdapter contract with concrete implementations plus the
services that bind and drive them:
- PipedriveAdapter: Pipedrive deals/persons/organizations via REST
- CrmAccountManager: Per-tenant account registry, one adapter per account
- SyncService: Fetch-and-overwrite lead sync with per-account status
- WebhookHandler: Webhook -> canonical event -> targeted lead re-sync

HubSpot and Salesforce are reserved CRM types without adapters yet.
"""

from src.app.crm.accounts import CrmAccountManager, create_adapter
from src.app.crm.adapter import CrmAdapter
from src.app.crm.pipedrive import PipedriveAdapter
from src.app.crm.sync import SyncService
from src.app.crm.webhooks import WebhookHandler

__all__ = [
    "CrmAdapter",
    "PipedriveAdapter",
    "CrmAccountManager",
    "create_adapter",
    "SyncService",
    "WebhookHandler",
]
