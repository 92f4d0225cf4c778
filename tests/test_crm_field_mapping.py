"""Unit tests for Pipedrive <-> canonical field and lead mapping.

Pure functions only -- no client, no network.
"""

from __future__ import annotations

from datetime import datetime, timezone

from src.app.crm.field_mapping import (
    deal_to_lead,
    extract_custom_fields,
    first_value,
    lead_to_create_payload,
    lead_to_update_payload,
    map_pipedrive_field,
    map_pipedrive_field_type,
    map_pipedrive_options,
    parse_pipedrive_time,
    person_payload,
    related_id,
)
from src.app.crm.schemas import (
    CreateLeadInput,
    CrmType,
    FieldType,
    LeadSource,
    UpdateLeadInput,
)

HASH_KEY = "a" * 40


def _make_deal(**overrides) -> dict:
    """Create a Pipedrive deal dict with sensible defaults."""
    deal = {
        "id": 42,
        "title": "Acme rollout",
        "pipeline_id": 1,
        "stage_id": 3,
        "add_time": "2026-01-15 10:30:00",
        "update_time": "2026-01-20 08:00:00",
        HASH_KEY: "Gold",
    }
    deal.update(overrides)
    return deal


# ── Field Types & Options ──────────────────────────────────────────────────


class TestFieldTypeMapping:
    def test_known_types(self):
        assert map_pipedrive_field_type("varchar") == FieldType.TEXT
        assert map_pipedrive_field_type("enum") == FieldType.SELECT
        assert map_pipedrive_field_type("monetary") == FieldType.CURRENCY
        assert map_pipedrive_field_type("double") == FieldType.NUMBER
        assert map_pipedrive_field_type("phone") == FieldType.PHONE

    def test_unknown_type_falls_back_to_text(self):
        """Types Pipedrive adds later must not break form rendering."""
        assert map_pipedrive_field_type("hologram") == FieldType.TEXT
        assert map_pipedrive_field_type(None) == FieldType.TEXT


class TestOptionMapping:
    def test_list_of_id_label(self):
        options = map_pipedrive_options([{"id": 1, "label": "Hot"}, {"id": 2, "label": "Cold"}])
        assert [(o.value, o.label) for o in options] == [("1", "Hot"), ("2", "Cold")]

    def test_mapping_of_labels(self):
        options = map_pipedrive_options({"a": "Alpha", "b": {"label": "Beta"}})
        assert [(o.value, o.label) for o in options] == [("a", "Alpha"), ("b", "Beta")]

    def test_garbage_yields_empty(self):
        assert map_pipedrive_options("nope") == []


class TestFieldDefinition:
    def test_maps_custom_select_field(self):
        field = map_pipedrive_field(
            {
                "id": 12,
                "key": HASH_KEY,
                "name": "Tier",
                "field_type": "enum",
                "mandatory_flag": True,
                "options": [{"id": 7, "label": "Gold"}],
            }
        )
        assert field.id == "12"
        assert field.name == HASH_KEY
        assert field.crm_field_name == HASH_KEY
        assert field.label == "Tier"
        assert field.type == FieldType.SELECT
        assert field.required is True
        assert field.options is not None and field.options[0].label == "Gold"
        assert field.crm_type == CrmType.PIPEDRIVE

    def test_field_without_options_has_none(self):
        field = map_pipedrive_field({"id": 1, "key": "title", "name": "Title", "field_type": "varchar"})
        assert field.options is None
        assert field.required is False


# ── Helpers ────────────────────────────────────────────────────────────────


class TestHelpers:
    def test_related_id_accepts_int_and_object(self):
        assert related_id(5) == 5
        assert related_id({"value": 9, "name": "Jane"}) == 9
        assert related_id("12") == 12
        assert related_id(None) is None
        assert related_id("abc") is None

    def test_first_value_prefers_primary(self):
        items = [{"value": "a@x.com", "primary": False}, {"value": "b@x.com", "primary": True}]
        assert first_value(items) == "b@x.com"
        assert first_value([{"value": "only@x.com"}]) == "only@x.com"
        assert first_value([]) is None

    def test_parse_pipedrive_time_is_utc(self):
        parsed = parse_pipedrive_time("2026-01-15 10:30:00")
        assert parsed == datetime(2026, 1, 15, 10, 30, tzinfo=timezone.utc)
        assert parse_pipedrive_time("not a date") is None
        assert parse_pipedrive_time(None) is None

    def test_custom_fields_from_hash_keys(self):
        deal = _make_deal()
        assert extract_custom_fields(deal) == {HASH_KEY: "Gold"}

    def test_custom_fields_prefers_explicit_object(self):
        deal = _make_deal(custom_fields={"tier": "Silver"})
        assert extract_custom_fields(deal) == {"tier": "Silver"}


# ── Deal -> Lead ───────────────────────────────────────────────────────────


class TestDealToLead:
    def test_maps_core_fields(self):
        lead = deal_to_lead(_make_deal(), "acct-1", email="jane@acme.com", company_name="Acme")

        assert lead.id == "pipedrive-42"
        assert lead.external_id == "42"
        assert lead.crm_account_id == "acct-1"
        assert lead.title == "Acme rollout"
        assert lead.pipeline_id == "1"
        assert lead.stage_id == "3"
        assert lead.email == "jane@acme.com"
        assert lead.company_name == "Acme"
        assert lead.custom_fields == {HASH_KEY: "Gold"}
        assert lead.crm_type == CrmType.PIPEDRIVE
        assert lead.created_at == datetime(2026, 1, 15, 10, 30, tzinfo=timezone.utc)
        assert lead.synced_at is not None

    def test_reads_embedded_person_and_org(self):
        deal = _make_deal(
            person_id={"value": 5, "email": [{"value": "p@acme.com", "primary": True}], "phone": []},
            org_id={"value": 8, "name": "Acme Ltd"},
        )
        lead = deal_to_lead(deal, "acct-1")
        assert lead.email == "p@acme.com"
        assert lead.phone is None
        assert lead.company_name == "Acme Ltd"

    def test_unknown_source_defaults_to_api(self):
        assert deal_to_lead(_make_deal(), "acct-1").source == LeadSource.API
        assert deal_to_lead(_make_deal(source="meta"), "acct-1").source == LeadSource.META


# ── Lead -> Pipedrive payloads ─────────────────────────────────────────────


class TestPayloads:
    def test_create_payload_spreads_custom_fields(self):
        data = CreateLeadInput(
            title="New deal",
            pipeline_id="1",
            stage_id="2",
            custom_fields={HASH_KEY: "Gold"},
        )
        payload = lead_to_create_payload(data, person_id=5, org_id=8)
        assert payload == {
            HASH_KEY: "Gold",
            "title": "New deal",
            "pipeline_id": 1,
            "stage_id": 2,
            "person_id": 5,
            "org_id": 8,
        }

    def test_update_payload_only_supplied_fields(self):
        assert lead_to_update_payload(UpdateLeadInput()) == {}
        assert lead_to_update_payload(UpdateLeadInput(title="Renamed")) == {"title": "Renamed"}
        assert lead_to_update_payload(UpdateLeadInput(custom_fields={HASH_KEY: 1})) == {HASH_KEY: 1}

    def test_person_payload(self):
        payload = person_payload(name="Jane", email="jane@acme.com", org_id=8)
        assert payload == {
            "name": "Jane",
            "email": [{"value": "jane@acme.com", "primary": True}],
            "org_id": 8,
        }
        assert person_payload() == {}
