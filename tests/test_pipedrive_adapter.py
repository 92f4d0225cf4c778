"""Unit tests for PipedriveAdapter.

The PipedriveClient is replaced with an AsyncMock returning ApiResponse
envelopes -- no HTTP. Covers read resilience (bulk reads never raise),
mutation failures, contact/organization resolution, and webhook
classification and signature checks.
"""

from __future__ import annotations

import hashlib
import hmac
from unittest.mock import AsyncMock

import pytest

from src.app.crm.adapter import CrmAdapter
from src.app.crm.exceptions import CrmBackendError, CrmNotFoundError
from src.app.crm.pipedrive import PipedriveAdapter
from src.app.crm.schemas import (
    ApiResponse,
    CreateLeadInput,
    CrmType,
    LeadFilter,
    LeadSource,
    MoveLeadInput,
    UpdateLeadInput,
    WebhookEventType,
)


# ── Helpers ────────────────────────────────────────────────────────────────


def _ok(data=None, **kwargs) -> ApiResponse:
    return ApiResponse(success=True, data=data, status_code=200, **kwargs)


def _fail(error: str = "boom", status_code: int | None = 500) -> ApiResponse:
    return ApiResponse(success=False, error=error, status_code=status_code)


def _make_deal(**overrides) -> dict:
    deal = {
        "id": 42,
        "title": "Acme rollout",
        "pipeline_id": 1,
        "stage_id": 3,
        "add_time": "2026-01-15 10:30:00",
        "update_time": "2026-01-20 08:00:00",
    }
    deal.update(overrides)
    return deal


@pytest.fixture
def client() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def adapter(client) -> PipedriveAdapter:
    return PipedriveAdapter("token", "acme.pipedrive.com", client=client)


# ── Contract ───────────────────────────────────────────────────────────────


class TestContract:
    def test_crm_adapter_cannot_be_instantiated(self):
        with pytest.raises(TypeError, match="abstract"):
            CrmAdapter()  # type: ignore[abstract]

    def test_adapter_identity(self, adapter):
        assert isinstance(adapter, CrmAdapter)
        assert adapter.get_crm_type() == CrmType.PIPEDRIVE
        assert adapter.get_webhook_url() == "/webhooks/crm/sync"

    def test_builds_client_from_credentials(self):
        adapter = PipedriveAdapter("tok-1", "acme.pipedrive.com", timeout=3.0, retries=1, retry_delay=0.5)
        assert adapter.client.api_token == "tok-1"
        assert adapter.client.config["timeout"] == 3.0
        assert adapter.client.config["retries"] == 1


# ── Leads: reads ───────────────────────────────────────────────────────────


class TestGetLeads:
    @pytest.mark.asyncio
    async def test_maps_deals_and_passes_filters(self, adapter, client):
        client.get_deals.return_value = _ok([_make_deal(), _make_deal(id=43, title="Beta")])

        leads = await adapter.get_leads(
            "acct-1",
            LeadFilter(pipeline_id="1", limit=10, offset=20, sort_by="name", sort_order="asc"),
        )

        assert [lead.external_id for lead in leads] == ["42", "43"]
        assert all(lead.crm_account_id == "acct-1" for lead in leads)
        client.get_deals.assert_awaited_once_with(
            {"limit": 10, "start": 20, "sort": "title ASC", "pipeline_id": "1"}
        )

    @pytest.mark.asyncio
    async def test_default_filters(self, adapter, client):
        client.get_deals.return_value = _ok([])

        assert await adapter.get_leads("acct-1") == []
        client.get_deals.assert_awaited_once_with({"limit": 50, "start": 0, "sort": "update_time DESC"})

    @pytest.mark.asyncio
    async def test_search_is_case_insensitive(self, adapter, client):
        client.get_deals.return_value = _ok(
            [_make_deal(title="ACME rollout"), _make_deal(id=43, title="Other", org_name="acme ltd")]
            + [_make_deal(id=44, title="Unrelated", org_name="Zeta")]
        )

        leads = await adapter.get_leads("acct-1", LeadFilter(search="acme"))

        assert [lead.external_id for lead in leads] == ["42", "43"]

    @pytest.mark.asyncio
    async def test_backend_failure_yields_empty_list(self, adapter, client):
        client.get_deals.return_value = _fail()
        assert await adapter.get_leads("acct-1") == []

    @pytest.mark.asyncio
    async def test_exception_yields_empty_list(self, adapter, client):
        client.get_deals.side_effect = RuntimeError("network down")
        assert await adapter.get_leads("acct-1") == []

    @pytest.mark.asyncio
    async def test_fetches_person_when_not_embedded(self, adapter, client):
        client.get_deals.return_value = _ok([_make_deal(person_id=5)])
        client.get_person.return_value = _ok(
            {"id": 5, "email": [{"value": "jane@acme.com", "primary": True}], "phone": []}
        )

        leads = await adapter.get_leads("acct-1")

        client.get_person.assert_awaited_once_with(5)
        assert leads[0].email == "jane@acme.com"

    @pytest.mark.asyncio
    async def test_person_lookup_failure_degrades(self, adapter, client):
        client.get_deals.return_value = _ok([_make_deal(person_id=5, org_id=8)])
        client.get_person.return_value = _fail()
        client.get_organization.return_value = _fail()

        leads = await adapter.get_leads("acct-1")

        assert len(leads) == 1
        assert leads[0].email is None
        assert leads[0].company_name is None


class TestGetLead:
    @pytest.mark.asyncio
    async def test_returns_mapped_lead(self, adapter, client):
        client.get_deal.return_value = _ok(_make_deal())

        lead = await adapter.get_lead("acct-1", "42")

        client.get_deal.assert_awaited_once_with(42)
        assert lead.id == "pipedrive-42"
        assert lead.title == "Acme rollout"

    @pytest.mark.asyncio
    async def test_404_raises_not_found(self, adapter, client):
        client.get_deal.return_value = _fail("Deal not found", status_code=404)
        with pytest.raises(CrmNotFoundError):
            await adapter.get_lead("acct-1", "42")

    @pytest.mark.asyncio
    async def test_empty_data_raises_not_found(self, adapter, client):
        client.get_deal.return_value = _ok(None)
        with pytest.raises(CrmNotFoundError):
            await adapter.get_lead("acct-1", "42")

    @pytest.mark.asyncio
    async def test_non_numeric_id_raises_not_found(self, adapter, client):
        with pytest.raises(CrmNotFoundError):
            await adapter.get_lead("acct-1", "pipedrive-42")
        client.get_deal.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_backend_failure_raises(self, adapter, client):
        client.get_deal.return_value = _fail("rate limited", status_code=429)
        with pytest.raises(CrmBackendError) as exc_info:
            await adapter.get_lead("acct-1", "42")
        assert exc_info.value.detail == "rate limited"

    @pytest.mark.asyncio
    async def test_sync_lead_refetches(self, adapter, client):
        client.get_deal.return_value = _ok(_make_deal(title="Fresh"))
        lead = await adapter.sync_lead("acct-1", "42")
        assert lead.title == "Fresh"


# ── Leads: mutations ───────────────────────────────────────────────────────


class TestCreateLead:
    @pytest.mark.asyncio
    async def test_creates_org_person_then_deal(self, adapter, client):
        client.search_organizations.return_value = _ok({"items": []})
        client.create_organization.return_value = _ok({"id": 8, "name": "Acme"})
        client.create_person.return_value = _ok({"id": 5})
        client.create_deal.return_value = _ok(_make_deal(person_id=5, org_id=8))

        lead = await adapter.create_lead(
            "acct-1",
            CreateLeadInput(
                title="Acme rollout",
                email="jane@acme.com",
                company_name="Acme",
                pipeline_id="1",
                stage_id="3",
                source=LeadSource.META,
                source_id="ad-77",
            ),
        )

        client.create_organization.assert_awaited_once_with({"name": "Acme"})
        person_body = client.create_person.await_args.args[0]
        assert person_body["email"] == [{"value": "jane@acme.com", "primary": True}]
        assert person_body["org_id"] == 8
        client.create_deal.assert_awaited_once_with(
            {"title": "Acme rollout", "pipeline_id": 1, "stage_id": 3, "person_id": 5, "org_id": 8}
        )
        assert lead.email == "jane@acme.com"
        assert lead.company_name == "Acme"
        assert lead.source == LeadSource.META
        assert lead.source_id == "ad-77"
        # Contact details supplied by the caller -- no extra lookups
        client.get_person.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reuses_existing_organization(self, adapter, client):
        client.search_organizations.return_value = _ok({"items": [{"item": {"id": 11, "name": "Acme"}}]})
        client.create_deal.return_value = _ok(_make_deal(org_id=11))

        lead = await adapter.create_lead(
            "acct-1",
            CreateLeadInput(title="T", company_name="Acme", pipeline_id="1", stage_id="3"),
        )

        client.create_organization.assert_not_awaited()
        client.create_person.assert_not_awaited()
        assert client.create_deal.await_args.args[0]["org_id"] == 11
        assert lead.source == LeadSource.API

    @pytest.mark.asyncio
    async def test_person_failure_does_not_block_deal(self, adapter, client):
        client.create_person.return_value = _fail()
        client.create_deal.return_value = _ok(_make_deal())

        lead = await adapter.create_lead(
            "acct-1",
            CreateLeadInput(title="T", phone="+100", pipeline_id="1", stage_id="3"),
        )

        assert "person_id" not in client.create_deal.await_args.args[0]
        assert lead.phone == "+100"

    @pytest.mark.asyncio
    async def test_deal_failure_raises(self, adapter, client):
        client.create_deal.return_value = _fail("invalid stage")
        with pytest.raises(CrmBackendError, match="Failed to create lead"):
            await adapter.create_lead("acct-1", CreateLeadInput(title="T", pipeline_id="1", stage_id="3"))

    @pytest.mark.asyncio
    async def test_non_numeric_ids_raise(self, adapter, client):
        with pytest.raises(CrmBackendError):
            await adapter.create_lead("acct-1", CreateLeadInput(title="T", pipeline_id="p", stage_id="3"))
        client.create_deal.assert_not_awaited()


class TestUpdateMoveDelete:
    @pytest.mark.asyncio
    async def test_update_title(self, adapter, client):
        client.update_deal.return_value = _ok(_make_deal(title="Renamed"))

        lead = await adapter.update_lead("acct-1", "42", UpdateLeadInput(title="Renamed"))

        client.update_deal.assert_awaited_once_with(42, {"title": "Renamed"})
        assert lead.title == "Renamed"

    @pytest.mark.asyncio
    async def test_update_email_updates_linked_person(self, adapter, client):
        client.get_deal.return_value = _ok(_make_deal(person_id={"value": 5}))
        client.update_person.return_value = _ok({"id": 5})
        client.update_deal.return_value = _ok(_make_deal())

        await adapter.update_lead("acct-1", "42", UpdateLeadInput(email="new@acme.com"))

        client.update_person.assert_awaited_once_with(
            5, {"email": [{"value": "new@acme.com", "primary": True}]}
        )

    @pytest.mark.asyncio
    async def test_empty_update_returns_current(self, adapter, client):
        client.get_deal.return_value = _ok(_make_deal())

        lead = await adapter.update_lead("acct-1", "42", UpdateLeadInput())

        client.update_deal.assert_not_awaited()
        assert lead.external_id == "42"

    @pytest.mark.asyncio
    async def test_update_failure_raises(self, adapter, client):
        client.update_deal.return_value = _fail()
        with pytest.raises(CrmBackendError, match="Failed to update lead"):
            await adapter.update_lead("acct-1", "42", UpdateLeadInput(title="x"))

    @pytest.mark.asyncio
    async def test_move_sends_numeric_stage(self, adapter, client):
        client.update_deal.return_value = _ok(_make_deal(stage_id=4))

        lead = await adapter.move_lead("acct-1", "42", MoveLeadInput(stage_id="4"))

        client.update_deal.assert_awaited_once_with(42, {"stage_id": 4})
        assert lead.stage_id == "4"

    @pytest.mark.asyncio
    async def test_move_failure_raises(self, adapter, client):
        client.update_deal.return_value = _fail()
        with pytest.raises(CrmBackendError, match="Failed to move lead"):
            await adapter.move_lead("acct-1", "42", MoveLeadInput(stage_id="4"))

    @pytest.mark.asyncio
    async def test_delete(self, adapter, client):
        client.delete_deal.return_value = _ok({"id": 42})
        assert await adapter.delete_lead("acct-1", "42") is None
        client.delete_deal.assert_awaited_once_with(42)

    @pytest.mark.asyncio
    async def test_delete_failure_raises(self, adapter, client):
        client.delete_deal.return_value = _fail()
        with pytest.raises(CrmBackendError, match="Failed to delete lead"):
            await adapter.delete_lead("acct-1", "42")


# ── Pipelines, Stages, Fields ──────────────────────────────────────────────


class TestPipelinesAndFields:
    @pytest.mark.asyncio
    async def test_pipelines_include_stages(self, adapter, client):
        client.get_pipelines.return_value = _ok([{"id": 1, "name": "Sales"}])
        client.get_stages.return_value = _ok(
            [
                {"id": 10, "name": "Lead In", "order_nr": 2},
                {"id": 11, "name": "Qualified", "order_nr": 1},
            ]
        )

        pipelines = await adapter.get_pipelines("acct-1")

        assert len(pipelines) == 1
        assert pipelines[0].name == "Sales"
        # Backend order is kept; order carries the rank
        assert [s.id for s in pipelines[0].stages] == ["10", "11"]
        assert [s.order for s in pipelines[0].stages] == [2, 1]
        assert all(s.pipeline_id == "1" for s in pipelines[0].stages)

    @pytest.mark.asyncio
    async def test_read_failures_yield_empty(self, adapter, client):
        client.get_pipelines.return_value = _fail()
        client.get_stages.side_effect = RuntimeError("boom")
        client.get_fields.return_value = _fail()

        assert await adapter.get_pipelines("acct-1") == []
        assert await adapter.get_stages("acct-1", "1") == []
        assert await adapter.get_fields("acct-1", "lead") == []

    @pytest.mark.asyncio
    async def test_get_pipeline_not_found(self, adapter, client):
        client.get_pipeline.return_value = _fail(status_code=404)
        with pytest.raises(CrmNotFoundError):
            await adapter.get_pipeline("acct-1", "9")

    @pytest.mark.asyncio
    async def test_fields_object_mapping(self, adapter, client):
        client.get_fields.return_value = _ok([{"id": 1, "key": "title", "name": "Title", "field_type": "varchar"}])

        fields = await adapter.get_fields("acct-1", "contact")
        await adapter.get_fields("acct-1", "lead")

        assert [call.args[0] for call in client.get_fields.await_args_list] == ["person", "deal"]
        assert fields[0].crm_field_name == "title"

    @pytest.mark.asyncio
    async def test_test_connection(self, adapter, client):
        client.get_pipelines.return_value = _ok([])
        assert await adapter.test_connection("acct-1") is True

        client.get_pipelines.side_effect = RuntimeError("down")
        assert await adapter.test_connection("acct-1") is False


# ── Webhooks ───────────────────────────────────────────────────────────────


class TestParseWebhookEvent:
    def test_added_deal(self, adapter):
        event = adapter.parse_webhook_event({"event": "added.deal", "current": {"id": 42}})
        assert event.type == WebhookEventType.LEAD_CREATED
        assert event.data == {"id": 42}

    def test_updated_deal_without_stage_change(self, adapter):
        event = adapter.parse_webhook_event(
            {
                "event": "updated.deal",
                "current": {"id": 42, "stage_id": 3, "title": "New"},
                "previous": {"id": 42, "stage_id": 3, "title": "Old"},
            }
        )
        assert event.type == WebhookEventType.LEAD_UPDATED

    def test_updated_deal_with_stage_change(self, adapter):
        event = adapter.parse_webhook_event(
            {
                "event": "updated.deal",
                "current": {"id": 42, "stage_id": 4},
                "previous": {"id": 42, "stage_id": 3},
            }
        )
        assert event.type == WebhookEventType.LEAD_STAGE_CHANGED

    def test_deleted_deal_uses_previous(self, adapter):
        event = adapter.parse_webhook_event(
            {"event": "deleted.deal", "current": None, "previous": {"id": 42}}
        )
        assert event.type == WebhookEventType.LEAD_DELETED
        assert event.data == {"id": 42}

    def test_v2_meta_shape(self, adapter):
        event = adapter.parse_webhook_event(
            {"meta": {"action": "create", "entity": "deal"}, "data": {"id": 7}}
        )
        assert event.type == WebhookEventType.LEAD_CREATED
        assert event.data == {"id": 7}

    def test_canonical_names_pass_through(self, adapter):
        event = adapter.parse_webhook_event({"event": "lead.updated", "data": {"id": 1}})
        assert event.type == WebhookEventType.LEAD_UPDATED

    def test_other_entities_are_custom(self, adapter):
        event = adapter.parse_webhook_event({"event": "added.person", "current": {"id": 3}})
        assert event.type == WebhookEventType.CUSTOM
        assert adapter.parse_webhook_event({"event": "merged.deal"}).type == WebhookEventType.CUSTOM

    def test_unparseable_payloads(self, adapter):
        assert adapter.parse_webhook_event("not json") is None
        assert adapter.parse_webhook_event(["list"]) is None
        assert adapter.parse_webhook_event({"current": {"id": 1}}) is None


class TestVerifyWebhook:
    def test_without_secret_accepts(self, adapter):
        assert adapter.verify_webhook("anything", b"{}") is True

    def test_hmac_signature(self, client):
        adapter = PipedriveAdapter("t", "acme.pipedrive.com", client=client, webhook_secret="s3cret")
        body = b'{"event":"added.deal"}'
        digest = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()

        assert adapter.verify_webhook(digest, body) is True
        assert adapter.verify_webhook(f"sha256={digest}", body.decode()) is True
        assert adapter.verify_webhook("deadbeef", body) is False
        assert adapter.verify_webhook("", body) is False
