"""Pydantic schemas for the CRM integration layer.

Defines the canonical, backend-independent shapes every adapter maps into:
- Enums: CrmType, LeadSource, FieldType, WebhookEventType, SyncState
- Leads: Lead, LeadFilter, CreateLeadInput, UpdateLeadInput, MoveLeadInput
- Funnel structure: Pipeline, Stage
- Dynamic forms: FieldOption, FieldDefinition
- Accounts: CrmAccountConfig, CrmAccountUpdate, CrmAccount
- Webhooks and sync: ParsedWebhookEvent, WebhookEvent, SyncStatus
- Client envelope: ApiResponse

All models accept both snake_case and camelCase keys and serialize to
camelCase when dumped with ``by_alias=True``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    """Timezone-aware current time used for every timestamp in this layer."""
    return datetime.now(timezone.utc)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Enums ───────────────────────────────────────────────────────────────────


class CrmType(str, Enum):
    """Supported CRM backends. Only Pipedrive has an adapter today."""

    PIPEDRIVE = "pipedrive"
    HUBSPOT = "hubspot"
    SALESFORCE = "salesforce"


class LeadSource(str, Enum):
    """Where a lead originated."""

    META = "meta"
    WHATSAPP = "whatsapp"
    MANUAL = "manual"
    API = "api"


class FieldType(str, Enum):
    """Internal field types used to render dynamic forms."""

    TEXT = "text"
    EMAIL = "email"
    PHONE = "phone"
    NUMBER = "number"
    DATE = "date"
    SELECT = "select"
    TEXTAREA = "textarea"
    CHECKBOX = "checkbox"
    CURRENCY = "currency"


class WebhookEventType(str, Enum):
    """Canonical classification of an inbound CRM webhook."""

    LEAD_CREATED = "lead.created"
    LEAD_UPDATED = "lead.updated"
    LEAD_DELETED = "lead.deleted"
    LEAD_STAGE_CHANGED = "lead.stage_changed"
    CUSTOM = "custom"


class SyncState(str, Enum):
    """Overall sync state of an account."""

    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


# ── Pipelines & Stages ──────────────────────────────────────────────────────


class Stage(_CamelModel):
    """One step of a sales pipeline. ``order`` is a rank, not a list index."""

    id: str
    name: str
    pipeline_id: str
    order: int = 0
    color: str | None = None
    crm_type: CrmType
    external_id: str | None = None


class Pipeline(_CamelModel):
    """Sales funnel owning an ordered collection of stages."""

    id: str
    name: str
    description: str | None = None
    stages: list[Stage] = Field(default_factory=list)
    crm_type: CrmType
    external_id: str | None = None


# ── Fields ──────────────────────────────────────────────────────────────────


class FieldOption(_CamelModel):
    value: str
    label: str


class FieldDefinition(_CamelModel):
    """Describable custom field, used by callers to render forms."""

    id: str
    name: str
    label: str
    type: FieldType = FieldType.TEXT
    required: bool = False
    read_only: bool = False
    placeholder: str | None = None
    help_text: str | None = None
    options: list[FieldOption] | None = None
    crm_field_name: str
    crm_type: CrmType
    regex: str | None = None
    min_length: int | None = None
    max_length: int | None = None
    min_value: float | None = None
    max_value: float | None = None


# ── Leads ───────────────────────────────────────────────────────────────────


class Lead(_CamelModel):
    """Canonical representation of a CRM deal/opportunity.

    ``external_id`` plus ``crm_account_id`` identify the backend object;
    ``id`` is a presentation convenience and never used for lookups.
    """

    id: str
    external_id: str
    crm_account_id: str
    title: str
    email: str | None = None
    phone: str | None = None
    company_name: str | None = None
    pipeline_id: str
    stage_id: str
    stage_name: str = ""
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    source: LeadSource | None = None
    source_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    synced_at: datetime | None = None
    sync_error: str | None = None
    crm_type: CrmType


class LeadFilter(_CamelModel):
    """Filter and paging options for listing leads."""

    pipeline_id: str | None = None
    stage_id: str | None = None
    search: str | None = None
    limit: int = Field(default=50, ge=1, le=500)
    offset: int = Field(default=0, ge=0)
    sort_by: Literal["name", "createdAt", "updatedAt"] | None = None
    sort_order: Literal["asc", "desc"] = "desc"


class CreateLeadInput(_CamelModel):
    """Payload for creating a lead."""

    title: str = Field(min_length=1)
    email: str | None = Field(default=None, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    phone: str | None = None
    company_name: str | None = None
    pipeline_id: str = Field(min_length=1)
    stage_id: str = Field(min_length=1)
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    source: LeadSource | None = None
    source_id: str | None = None


class UpdateLeadInput(_CamelModel):
    """Partial update of a lead (all fields optional)."""

    title: str | None = None
    email: str | None = Field(default=None, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    phone: str | None = None
    company_name: str | None = None
    custom_fields: dict[str, Any] | None = None


class MoveLeadInput(_CamelModel):
    stage_id: str = Field(min_length=1)


# ── Accounts ────────────────────────────────────────────────────────────────


class CrmAccountConfig(_CamelModel):
    """Caller-supplied configuration for registering an account."""

    type: CrmType
    display_name: str = Field(min_length=1)
    api_token: str = Field(min_length=1, repr=False)
    domain: str | None = None
    extra_config: dict[str, Any] | None = None


class CrmAccountUpdate(_CamelModel):
    """Partial account update. Token, domain or webhook secret changes rebind the adapter."""

    display_name: str | None = None
    api_token: str | None = Field(default=None, repr=False)
    domain: str | None = None
    extra_config: dict[str, Any] | None = None


class CrmAccount(_CamelModel):
    """A tenant's connection to one external CRM."""

    id: str
    type: CrmType
    display_name: str
    api_token: str = Field(repr=False, exclude=True)
    domain: str | None = None
    extra_config: dict[str, Any] | None = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def to_config(self) -> CrmAccountConfig:
        """Return the full adapter-relevant configuration of this account."""
        return CrmAccountConfig(
            type=self.type,
            display_name=self.display_name,
            api_token=self.api_token,
            domain=self.domain,
            extra_config=self.extra_config,
        )


# ── Webhooks & Sync ─────────────────────────────────────────────────────────


class ParsedWebhookEvent(BaseModel):
    """Result of an adapter classifying a raw webhook payload."""

    type: WebhookEventType
    data: Any = None


class WebhookEvent(_CamelModel):
    """Audit record of one processed or failed webhook call."""

    id: str
    type: WebhookEventType = WebhookEventType.CUSTOM
    crm_type: CrmType | None = None
    crm_account_id: str
    data: Any = None
    timestamp: datetime = Field(default_factory=utcnow)
    processed: bool = False
    error: str | None = None


class SyncStatus(_CamelModel):
    """Per-account sync snapshot, overwritten on every attempt."""

    account_id: str
    last_sync_at: datetime | None = None
    leads_count: int = 0
    failed_count: int = 0
    pending_count: int = 0
    status: SyncState = SyncState.IDLE


# ── Client Envelope ─────────────────────────────────────────────────────────


class ApiResponse(BaseModel):
    """Uniform envelope returned by every CRM API client call."""

    success: bool
    data: Any = None
    error: str | None = None
    additional_data: dict[str, Any] | None = None
    status_code: int | None = None
