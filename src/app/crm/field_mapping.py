"""Pipedrive <-> canonical mappings for fields and leads.

Defines:
- PIPEDRIVE_FIELD_TYPE_MAP: Pipedrive field_type -> internal FieldType.
- map_pipedrive_field(): Pipedrive field metadata -> FieldDefinition.
- deal_to_lead(): Pipedrive deal -> Lead.
- lead_to_create_payload() / lead_to_update_payload() / person_payload():
  canonical inputs -> Pipedrive request bodies.

Pure functions, no I/O. Pipedrive stores custom fields as top-level deal
keys named by a 40-character hex hash; those are preserved verbatim.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

from src.app.crm.schemas import (
    CreateLeadInput,
    CrmType,
    FieldDefinition,
    FieldOption,
    FieldType,
    Lead,
    LeadSource,
    UpdateLeadInput,
    utcnow,
)


# ── Field Type Mapping ──────────────────────────────────────────────────────
# Unknown Pipedrive types fall back to TEXT.

PIPEDRIVE_FIELD_TYPE_MAP: dict[str, FieldType] = {
    "text": FieldType.TEXT,
    "varchar": FieldType.TEXT,
    "varchar_auto": FieldType.TEXT,
    "varchar_options": FieldType.SELECT,
    "int": FieldType.NUMBER,
    "double": FieldType.NUMBER,
    "monetary": FieldType.CURRENCY,
    "date": FieldType.DATE,
    "daterange": FieldType.DATE,
    "datetime": FieldType.DATE,
    "time": FieldType.TEXT,
    "timerange": FieldType.TEXT,
    "email": FieldType.EMAIL,
    "phone": FieldType.PHONE,
    "address": FieldType.TEXT,
    "textarea": FieldType.TEXTAREA,
    "autocomplete": FieldType.SELECT,
    "select": FieldType.SELECT,
    "set": FieldType.SELECT,
    "enum": FieldType.SELECT,
    "user": FieldType.SELECT,
    "org": FieldType.SELECT,
    "people": FieldType.SELECT,
    "status": FieldType.SELECT,
    "stage": FieldType.SELECT,
    "visible_to": FieldType.SELECT,
    "visible_deal_status": FieldType.SELECT,
    "activeFlag": FieldType.CHECKBOX,
    "boolean": FieldType.CHECKBOX,
}

_CUSTOM_FIELD_KEY = re.compile(r"^[0-9a-f]{40}$")


def map_pipedrive_field_type(pipedrive_type: str | None) -> FieldType:
    """Map a Pipedrive field_type onto the internal enumeration."""
    if not pipedrive_type:
        return FieldType.TEXT
    return PIPEDRIVE_FIELD_TYPE_MAP.get(pipedrive_type, FieldType.TEXT)


def map_pipedrive_options(options: Any) -> list[FieldOption]:
    """Normalize Pipedrive select options to ``[{value, label}]``.

    Accepts a list of ``{id, label}`` dicts or a mapping of
    ``key -> label`` / ``key -> {label}``.
    """
    if isinstance(options, list):
        return [
            FieldOption(value=str(opt.get("id")), label=str(opt.get("label", opt.get("id"))))
            for opt in options
            if isinstance(opt, dict) and opt.get("id") is not None
        ]

    if isinstance(options, dict):
        mapped: list[FieldOption] = []
        for key, value in options.items():
            label = value.get("label", key) if isinstance(value, dict) else value
            mapped.append(FieldOption(value=str(key), label=str(label)))
        return mapped

    return []


def map_pipedrive_field(field: dict[str, Any]) -> FieldDefinition:
    """Convert Pipedrive field metadata into a FieldDefinition.

    Args:
        field: One entry of a ``/{object}Fields`` response.

    Returns:
        FieldDefinition whose ``name``/``crm_field_name`` is the Pipedrive key.
    """
    options = field.get("options")
    return FieldDefinition(
        id=str(field.get("id", field.get("key", ""))),
        name=str(field.get("key", "")),
        label=str(field.get("name") or field.get("key", "")),
        type=map_pipedrive_field_type(field.get("field_type")),
        required=field.get("mandatory_flag") is True or field.get("mandatory") is True,
        read_only=field.get("edit_flag") is False and field.get("bulk_edit_allowed") is False,
        placeholder=field.get("description"),
        options=map_pipedrive_options(options) if options else None,
        crm_field_name=str(field.get("key", "")),
        crm_type=CrmType.PIPEDRIVE,
    )


# ── Lead Mapping ────────────────────────────────────────────────────────────


def related_id(value: Any) -> int | None:
    """Extract the numeric id from a Pipedrive reference (int or ``{value}`` dict)."""
    if isinstance(value, dict):
        value = value.get("value")
    if isinstance(value, bool) or value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def first_value(items: Any) -> str | None:
    """Return the primary (else first) ``value`` from a Pipedrive email/phone list."""
    if isinstance(items, str):
        return items or None
    if not isinstance(items, list) or not items:
        return None
    primary = next(
        (item for item in items if isinstance(item, dict) and item.get("primary")),
        items[0],
    )
    if isinstance(primary, dict):
        return primary.get("value") or None
    return str(primary) or None


def parse_pipedrive_time(value: Any) -> datetime | None:
    """Parse Pipedrive's ``YYYY-MM-DD HH:MM:SS`` (UTC) or ISO timestamps."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def extract_custom_fields(deal: dict[str, Any]) -> dict[str, Any]:
    """Collect custom field values from a deal, keys preserved verbatim."""
    explicit = deal.get("custom_fields")
    if isinstance(explicit, dict) and explicit:
        return dict(explicit)
    return {key: value for key, value in deal.items() if _CUSTOM_FIELD_KEY.match(key)}


def _lead_source(value: Any) -> LeadSource:
    try:
        return LeadSource(value)
    except ValueError:
        return LeadSource.API


def deal_to_lead(
    deal: dict[str, Any],
    account_id: str,
    *,
    email: str | None = None,
    phone: str | None = None,
    company_name: str | None = None,
    synced_at: datetime | None = None,
) -> Lead:
    """Map a Pipedrive deal to the canonical Lead.

    Contact details resolved by the adapter (person/org lookups) are passed
    in explicitly; otherwise values embedded in the deal are used.
    """
    person = deal.get("person_id") if isinstance(deal.get("person_id"), dict) else {}
    org = deal.get("org_id") if isinstance(deal.get("org_id"), dict) else {}

    return Lead(
        id=f"pipedrive-{deal['id']}",
        external_id=str(deal["id"]),
        crm_account_id=account_id,
        title=str(deal.get("title") or ""),
        email=email or deal.get("email") or first_value(person.get("email")),
        phone=phone or deal.get("phone") or first_value(person.get("phone")),
        company_name=company_name or deal.get("company_name") or deal.get("org_name") or org.get("name"),
        pipeline_id=str(related_id(deal.get("pipeline_id")) or deal.get("pipeline_id") or ""),
        stage_id=str(related_id(deal.get("stage_id")) or deal.get("stage_id") or ""),
        stage_name=str(deal.get("stage_name") or ""),
        custom_fields=extract_custom_fields(deal),
        source=_lead_source(deal.get("source")),
        source_id=str(deal["source_id"]) if deal.get("source_id") is not None else None,
        created_at=parse_pipedrive_time(deal.get("add_time")),
        updated_at=parse_pipedrive_time(deal.get("update_time")),
        synced_at=synced_at or utcnow(),
        crm_type=CrmType.PIPEDRIVE,
    )


def lead_to_create_payload(
    data: CreateLeadInput,
    person_id: int | None = None,
    org_id: int | None = None,
) -> dict[str, Any]:
    """Build the POST /deals body. Custom fields become top-level keys."""
    payload: dict[str, Any] = dict(data.custom_fields)
    payload.update(
        {
            "title": data.title,
            "pipeline_id": int(data.pipeline_id),
            "stage_id": int(data.stage_id),
        }
    )
    if person_id is not None:
        payload["person_id"] = person_id
    if org_id is not None:
        payload["org_id"] = org_id
    return payload


def lead_to_update_payload(data: UpdateLeadInput) -> dict[str, Any]:
    """Build the PUT /deals/{id} body from the deal-level fields supplied."""
    payload: dict[str, Any] = {}
    if data.custom_fields:
        payload.update(data.custom_fields)
    if data.title:
        payload["title"] = data.title
    return payload


def person_payload(
    name: str | None = None,
    email: str | None = None,
    phone: str | None = None,
    org_id: int | None = None,
) -> dict[str, Any]:
    """Build a POST/PUT /persons body with only the supplied values."""
    payload: dict[str, Any] = {}
    if name:
        payload["name"] = name
    if email:
        payload["email"] = [{"value": email, "primary": True}]
    if phone:
        payload["phone"] = [{"value": phone, "primary": True}]
    if org_id is not None:
        payload["org_id"] = org_id
    return payload
