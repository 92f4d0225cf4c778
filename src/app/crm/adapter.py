"""CRM adapter abstract base class -- the contract every CRM backend implements.

Every CRM backend (Pipedrive today, HubSpot/Salesforce reserved) implements
this ABC. CrmAccountManager binds one adapter instance per account; the
SyncService and WebhookHandler only ever talk to this interface.

Result conventions:
- Bulk reads (get_leads, get_pipelines, get_stages, get_fields) never raise;
  backend failures become an empty list and a log entry.
- Single reads (get_lead, get_pipeline, sync_lead) raise CrmNotFoundError.
- Mutations (create/update/move/delete) raise CrmBackendError.
- verify_webhook, parse_webhook_event and test_connection never raise.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Literal

from src.app.crm.schemas import (
    CreateLeadInput,
    CrmType,
    FieldDefinition,
    Lead,
    LeadFilter,
    MoveLeadInput,
    ParsedWebhookEvent,
    Pipeline,
    Stage,
    UpdateLeadInput,
)

ObjectType = Literal["lead", "deal", "contact"]


class CrmAdapter(ABC):
    """Abstract interface for CRM backend operations.

    Methods:
        get_crm_type: CRM type tag of this adapter.
        get_leads / get_lead: Read leads (list swallows errors, single raises).
        create_lead / update_lead / move_lead / delete_lead: Mutations.
        get_pipelines / get_pipeline / get_stages: Funnel structure.
        get_fields: Field definitions for dynamic forms.
        sync_lead: Re-fetch a lead from the backend.
        get_webhook_url / verify_webhook / parse_webhook_event: Webhook ingress.
        test_connection: Reachability check.
    """

    @abstractmethod
    def get_crm_type(self) -> CrmType:
        """Return the CRM type tag."""
        ...

    @abstractmethod
    async def get_leads(self, account_id: str, filters: LeadFilter | None = None) -> list[Lead]:
        """List leads, returning an empty list on backend failure."""
        ...

    @abstractmethod
    async def get_lead(self, account_id: str, lead_id: str) -> Lead:
        """Fetch one lead. Raises CrmNotFoundError when the backend has no record."""
        ...

    @abstractmethod
    async def create_lead(self, account_id: str, data: CreateLeadInput) -> Lead:
        """Create a lead. Raises CrmBackendError on failure."""
        ...

    @abstractmethod
    async def update_lead(self, account_id: str, lead_id: str, data: UpdateLeadInput) -> Lead:
        """Apply a partial update. Raises CrmBackendError on failure."""
        ...

    @abstractmethod
    async def move_lead(self, account_id: str, lead_id: str, data: MoveLeadInput) -> Lead:
        """Move a lead to another stage. Raises CrmBackendError on failure."""
        ...

    @abstractmethod
    async def delete_lead(self, account_id: str, lead_id: str) -> None:
        """Delete a lead. Raises CrmBackendError on failure."""
        ...

    @abstractmethod
    async def get_pipelines(self, account_id: str) -> list[Pipeline]:
        """List pipelines with their stages, empty on failure."""
        ...

    @abstractmethod
    async def get_pipeline(self, account_id: str, pipeline_id: str) -> Pipeline:
        """Fetch one pipeline. Raises CrmNotFoundError when missing."""
        ...

    @abstractmethod
    async def get_stages(self, account_id: str, pipeline_id: str) -> list[Stage]:
        """List stages of a pipeline, empty on failure."""
        ...

    @abstractmethod
    async def get_fields(self, account_id: str, object_type: ObjectType) -> list[FieldDefinition]:
        """List field definitions for an object type, empty on failure."""
        ...

    @abstractmethod
    async def sync_lead(self, account_id: str, lead_id: str) -> Lead:
        """Re-fetch a lead from the backend."""
        ...

    @abstractmethod
    def get_webhook_url(self) -> str:
        """Inbound path this adapter expects webhooks on."""
        ...

    @abstractmethod
    def verify_webhook(self, signature: str, payload: str | bytes) -> bool:
        """Check a webhook signature. Never raises."""
        ...

    @abstractmethod
    def parse_webhook_event(self, payload: Any) -> ParsedWebhookEvent | None:
        """Classify a raw webhook payload; None when it cannot be interpreted."""
        ...

    @abstractmethod
    async def test_connection(self, account_id: str) -> bool:
        """Return True when the backend is reachable. Never raises."""
        ...
