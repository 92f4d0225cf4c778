"""Pipedrive CRM adapter -- CrmAdapter implementation over the Pipedrive v1 API.

Composes PipedriveClient (HTTP) with the pure mappers in field_mapping to
satisfy the uniform Lead/Pipeline/Stage/Field contract.

Key implementation details:
- Leads are Pipedrive deals; contacts are persons, companies are organizations
- Every fetch re-queries the backend and remaps (no caching across calls)
- Person/organization helpers degrade to "absent" on failure, never fail the
  surrounding lead operation
- Bulk reads swallow failures into empty lists; mutations raise CrmBackendError
"""

from __future__ import annotations

import hashlib
import hmac
from typing import Any

import structlog

from src.app.crm.adapter import CrmAdapter, ObjectType
from src.app.crm.clients.pipedrive import PipedriveClient
from src.app.crm.exceptions import CrmBackendError, CrmNotFoundError
from src.app.crm.field_mapping import (
    deal_to_lead,
    first_value,
    lead_to_create_payload,
    lead_to_update_payload,
    map_pipedrive_field,
    person_payload,
    related_id,
)
from src.app.crm.schemas import (
    CreateLeadInput,
    CrmType,
    FieldDefinition,
    Lead,
    LeadFilter,
    LeadSource,
    MoveLeadInput,
    ParsedWebhookEvent,
    Pipeline,
    Stage,
    UpdateLeadInput,
    WebhookEventType,
    utcnow,
)

logger = structlog.get_logger(__name__)

DEFAULT_WEBHOOK_PATH = "/webhooks/crm/sync"

# Pipedrive sort keys per LeadFilter.sort_by
_SORT_FIELDS = {
    "name": "title",
    "createdAt": "add_time",
    "updatedAt": "update_time",
}

# Pipedrive webhook actions (v1 "added.deal" style and v2 meta.action style)
_WEBHOOK_ACTIONS = {
    "added": WebhookEventType.LEAD_CREATED,
    "create": WebhookEventType.LEAD_CREATED,
    "updated": WebhookEventType.LEAD_UPDATED,
    "change": WebhookEventType.LEAD_UPDATED,
    "deleted": WebhookEventType.LEAD_DELETED,
    "delete": WebhookEventType.LEAD_DELETED,
}


def _backend_id(value: str, label: str) -> int:
    """Convert a string id to Pipedrive's integer id."""
    try:
        return int(str(value).strip())
    except ValueError:
        raise CrmNotFoundError(f"{label} {value} not found") from None


class PipedriveAdapter(CrmAdapter):
    """CrmAdapter for one Pipedrive company account.

    Args:
        api_token: Pipedrive API token.
        company_domain: Tenant domain, e.g. ``acme.pipedrive.com``.
        timeout: Per-call timeout in seconds.
        retries: Extra attempts for transient failures.
        retry_delay: Base backoff delay in seconds.
        api_version: Pipedrive REST API version path segment.
        webhook_secret: Optional shared secret for HMAC webhook verification.
        webhook_path: Inbound webhook path advertised by get_webhook_url.
        client: Pre-built client (tests); built from the other args otherwise.
    """

    def __init__(
        self,
        api_token: str,
        company_domain: str,
        *,
        timeout: float = 5.0,
        retries: int = 3,
        retry_delay: float = 1.0,
        api_version: str = "v1",
        webhook_secret: str | None = None,
        webhook_path: str = DEFAULT_WEBHOOK_PATH,
        client: PipedriveClient | None = None,
    ) -> None:
        self._client = client or PipedriveClient(
            api_token=api_token,
            company_domain=company_domain,
            timeout=timeout,
            retries=retries,
            retry_delay=retry_delay,
            api_version=api_version,
        )
        self._webhook_secret = webhook_secret
        self._webhook_path = webhook_path

    def __repr__(self) -> str:
        return f"PipedriveAdapter(client={self._client!r})"

    @property
    def client(self) -> PipedriveClient:
        return self._client

    def get_crm_type(self) -> CrmType:
        return CrmType.PIPEDRIVE

    # ── Leads ───────────────────────────────────────────────────────────────

    async def get_leads(self, account_id: str, filters: LeadFilter | None = None) -> list[Lead]:
        """List deals as leads. Backend failures yield an empty list."""
        filters = filters or LeadFilter()
        sort_field = _SORT_FIELDS.get(filters.sort_by or "updatedAt", "update_time")
        params: dict[str, Any] = {
            "limit": filters.limit,
            "start": filters.offset,
            "sort": f"{sort_field} {filters.sort_order.upper()}",
        }
        if filters.pipeline_id:
            params["pipeline_id"] = filters.pipeline_id
        if filters.stage_id:
            params["stage_id"] = filters.stage_id

        try:
            response = await self._client.get_deals(params)
            if not response.success:
                logger.warning(
                    "pipedrive.get_leads_failed",
                    account_id=account_id,
                    error=response.error,
                )
                return []
            if not isinstance(response.data, list):
                return []

            leads = [await self._map_deal(deal, account_id) for deal in response.data]
        except Exception as exc:
            logger.error("pipedrive.get_leads_error", account_id=account_id, error=str(exc))
            return []

        if filters.search:
            term = filters.search.casefold()
            leads = [
                lead
                for lead in leads
                if any(
                    term in value.casefold()
                    for value in (lead.title, lead.email, lead.company_name)
                    if value
                )
            ]
        return leads

    async def get_lead(self, account_id: str, lead_id: str) -> Lead:
        """Fetch a deal by id and map it to a Lead."""
        deal_id = _backend_id(lead_id, "Lead")
        response = await self._client.get_deal(deal_id)

        if response.status_code == 404 or (response.success and not response.data):
            raise CrmNotFoundError(f"Lead {lead_id} not found")
        if not response.success:
            raise CrmBackendError(f"Failed to fetch lead {lead_id}", response.error)

        return await self._map_deal(response.data, account_id)

    async def create_lead(self, account_id: str, data: CreateLeadInput) -> Lead:
        """Create person/organization as needed, then the deal."""
        try:
            int(data.pipeline_id)
            int(data.stage_id)
        except ValueError:
            raise CrmBackendError(
                "Failed to create lead",
                f"invalid pipeline/stage id {data.pipeline_id}/{data.stage_id}",
            ) from None

        org_id: int | None = None
        if data.company_name:
            org_id = await self._get_or_create_organization(data.company_name)

        person_id: int | None = None
        if data.email or data.phone:
            person_response = await self._client.create_person(
                person_payload(name=data.title, email=data.email, phone=data.phone, org_id=org_id)
            )
            if person_response.success and isinstance(person_response.data, dict):
                person_id = related_id(person_response.data.get("id"))
            else:
                logger.warning(
                    "pipedrive.create_person_failed",
                    account_id=account_id,
                    error=person_response.error,
                )

        response = await self._client.create_deal(
            lead_to_create_payload(data, person_id=person_id, org_id=org_id)
        )
        if not response.success or not isinstance(response.data, dict):
            raise CrmBackendError("Failed to create lead", response.error)

        lead = await self._map_deal(
            response.data,
            account_id,
            email=data.email,
            phone=data.phone,
            company_name=data.company_name,
        )
        logger.info(
            "pipedrive.lead_created",
            account_id=account_id,
            external_id=lead.external_id,
        )
        return lead.model_copy(
            update={"source": data.source or LeadSource.API, "source_id": data.source_id}
        )

    async def update_lead(self, account_id: str, lead_id: str, data: UpdateLeadInput) -> Lead:
        """Update deal fields; email/phone/company go to the linked person/org."""
        deal_id = self._mutation_id(lead_id, "update")
        payload = lead_to_update_payload(data)

        if data.email or data.phone or data.company_name:
            payload.update(await self._update_contact(deal_id, data))

        if not payload:
            return await self.get_lead(account_id, lead_id)

        response = await self._client.update_deal(deal_id, payload)
        if not response.success or not isinstance(response.data, dict):
            raise CrmBackendError("Failed to update lead", response.error)

        logger.info(
            "pipedrive.lead_updated",
            account_id=account_id,
            external_id=str(deal_id),
            fields=sorted(data.model_dump(exclude_none=True).keys()),
        )
        return await self._map_deal(response.data, account_id)

    async def move_lead(self, account_id: str, lead_id: str, data: MoveLeadInput) -> Lead:
        """Move a deal to another stage."""
        deal_id = self._mutation_id(lead_id, "move")
        try:
            stage_id = int(data.stage_id)
        except ValueError:
            raise CrmBackendError("Failed to move lead", f"invalid stage id {data.stage_id}") from None

        response = await self._client.update_deal(deal_id, {"stage_id": stage_id})
        if not response.success or not isinstance(response.data, dict):
            raise CrmBackendError("Failed to move lead", response.error)

        logger.info(
            "pipedrive.lead_moved",
            account_id=account_id,
            external_id=str(deal_id),
            stage_id=data.stage_id,
        )
        return await self._map_deal(response.data, account_id)

    async def delete_lead(self, account_id: str, lead_id: str) -> None:
        deal_id = self._mutation_id(lead_id, "delete")
        response = await self._client.delete_deal(deal_id)
        if not response.success:
            raise CrmBackendError("Failed to delete lead", response.error)
        logger.info("pipedrive.lead_deleted", account_id=account_id, external_id=str(deal_id))

    # ── Pipelines & Stages ──────────────────────────────────────────────────

    async def get_pipelines(self, account_id: str) -> list[Pipeline]:
        try:
            response = await self._client.get_pipelines()
            if not response.success or not isinstance(response.data, list):
                if not response.success:
                    logger.warning(
                        "pipedrive.get_pipelines_failed",
                        account_id=account_id,
                        error=response.error,
                    )
                return []

            pipelines: list[Pipeline] = []
            for item in response.data:
                pipeline_id = str(item["id"])
                stages = await self.get_stages(account_id, pipeline_id)
                pipelines.append(self._to_pipeline(item, stages))
            return pipelines
        except Exception as exc:
            logger.error("pipedrive.get_pipelines_error", account_id=account_id, error=str(exc))
            return []

    async def get_pipeline(self, account_id: str, pipeline_id: str) -> Pipeline:
        backend_id = _backend_id(pipeline_id, "Pipeline")
        response = await self._client.get_pipeline(backend_id)
        if not response.success or not isinstance(response.data, dict):
            raise CrmNotFoundError(f"Pipeline {pipeline_id} not found")

        stages = await self.get_stages(account_id, pipeline_id)
        return self._to_pipeline(response.data, stages)

    async def get_stages(self, account_id: str, pipeline_id: str) -> list[Stage]:
        """List stages in backend order (``order`` carries the rank)."""
        try:
            response = await self._client.get_stages(_backend_id(pipeline_id, "Pipeline"))
            if not response.success or not isinstance(response.data, list):
                if not response.success:
                    logger.warning(
                        "pipedrive.get_stages_failed",
                        account_id=account_id,
                        pipeline_id=pipeline_id,
                        error=response.error,
                    )
                return []

            return [
                Stage(
                    id=str(stage["id"]),
                    name=str(stage.get("name") or ""),
                    pipeline_id=pipeline_id,
                    order=int(stage.get("order_nr") or 0),
                    color=stage.get("color"),
                    crm_type=CrmType.PIPEDRIVE,
                    external_id=str(stage["id"]),
                )
                for stage in response.data
            ]
        except Exception as exc:
            logger.error(
                "pipedrive.get_stages_error",
                account_id=account_id,
                pipeline_id=pipeline_id,
                error=str(exc),
            )
            return []

    # ── Fields ──────────────────────────────────────────────────────────────

    async def get_fields(self, account_id: str, object_type: ObjectType) -> list[FieldDefinition]:
        """Field definitions; ``lead`` maps to deals, ``contact`` to persons."""
        api_object = "person" if object_type == "contact" else "deal"
        try:
            response = await self._client.get_fields(api_object)
            if not response.success or not isinstance(response.data, list):
                if not response.success:
                    logger.warning(
                        "pipedrive.get_fields_failed",
                        account_id=account_id,
                        object_type=object_type,
                        error=response.error,
                    )
                return []
            return [map_pipedrive_field(field) for field in response.data]
        except Exception as exc:
            logger.error(
                "pipedrive.get_fields_error",
                account_id=account_id,
                object_type=object_type,
                error=str(exc),
            )
            return []

    # ── Sync & Webhooks ─────────────────────────────────────────────────────

    async def sync_lead(self, account_id: str, lead_id: str) -> Lead:
        return await self.get_lead(account_id, lead_id)

    def get_webhook_url(self) -> str:
        return self._webhook_path

    def verify_webhook(self, signature: str, payload: str | bytes) -> bool:
        """HMAC-SHA256 check when a webhook secret is configured.

        Pipedrive does not sign webhooks itself, so accounts without a
        secret accept every call.
        """
        if not self._webhook_secret:
            return True
        if not signature:
            return False
        try:
            body = payload.encode("utf-8") if isinstance(payload, str) else bytes(payload)
            expected = hmac.new(
                self._webhook_secret.encode("utf-8"), body, hashlib.sha256
            ).hexdigest()
            provided = signature.strip().removeprefix("sha256=")
            return hmac.compare_digest(expected, provided)
        except (TypeError, ValueError):
            logger.warning("pipedrive.webhook_signature_unverifiable")
            return False

    def parse_webhook_event(self, payload: Any) -> ParsedWebhookEvent | None:
        """Classify a Pipedrive webhook payload into a canonical event.

        Accepts v1 payloads (``event: "updated.deal"`` with ``current``/
        ``previous``) and v2 payloads (``meta.action``/``meta.entity`` with
        ``data``/``previous``). Canonical ``lead.*`` names pass through.
        """
        if not isinstance(payload, dict):
            return None

        event = payload.get("event")
        meta = payload.get("meta") if isinstance(payload.get("meta"), dict) else {}

        current = payload.get("current")
        if not isinstance(current, dict):
            current = payload.get("data")
        previous = payload.get("previous")
        if isinstance(current, dict):
            data: Any = current
        elif isinstance(previous, dict):
            data = previous
        else:
            data = {}

        if isinstance(event, str) and event:
            try:
                return ParsedWebhookEvent(type=WebhookEventType(event), data=data)
            except ValueError:
                pass
            action, _, entity = event.partition(".")
        elif meta.get("action"):
            action = str(meta["action"])
            entity = str(meta.get("entity") or meta.get("object") or "")
        else:
            return None

        if entity != "deal":
            return ParsedWebhookEvent(type=WebhookEventType.CUSTOM, data=data)

        event_type = _WEBHOOK_ACTIONS.get(action, WebhookEventType.CUSTOM)
        if (
            event_type == WebhookEventType.LEAD_UPDATED
            and isinstance(current, dict)
            and isinstance(previous, dict)
            and "stage_id" in previous
            and related_id(previous.get("stage_id")) != related_id(current.get("stage_id"))
        ):
            event_type = WebhookEventType.LEAD_STAGE_CHANGED

        return ParsedWebhookEvent(type=event_type, data=data)

    async def test_connection(self, account_id: str) -> bool:
        try:
            response = await self._client.get_pipelines()
            return response.success
        except Exception as exc:
            logger.warning("pipedrive.test_connection_error", account_id=account_id, error=str(exc))
            return False

    # ── Helpers ─────────────────────────────────────────────────────────────

    @staticmethod
    def _mutation_id(lead_id: str, action: str) -> int:
        try:
            return int(str(lead_id).strip())
        except ValueError:
            raise CrmBackendError(f"Failed to {action} lead", f"invalid lead id {lead_id}") from None

    @staticmethod
    def _to_pipeline(item: dict[str, Any], stages: list[Stage]) -> Pipeline:
        return Pipeline(
            id=str(item["id"]),
            name=str(item.get("name") or ""),
            description=item.get("description"),
            stages=stages,
            crm_type=CrmType.PIPEDRIVE,
            external_id=str(item["id"]),
        )

    async def _map_deal(
        self,
        deal: dict[str, Any],
        account_id: str,
        *,
        email: str | None = None,
        phone: str | None = None,
        company_name: str | None = None,
    ) -> Lead:
        """Map a deal, fetching person/org details only when not embedded."""
        person_ref = deal.get("person_id")
        if not (email or phone) and person_ref is not None and not isinstance(person_ref, dict):
            person_id = related_id(person_ref)
            person = await self._get_person(person_id) if person_id else None
            if person:
                email = first_value(person.get("email"))
                phone = first_value(person.get("phone"))

        org_ref = deal.get("org_id")
        if (
            not company_name
            and not deal.get("org_name")
            and org_ref is not None
            and not isinstance(org_ref, dict)
        ):
            org_id = related_id(org_ref)
            company_name = await self._get_organization_name(org_id) if org_id else None

        return deal_to_lead(
            deal,
            account_id,
            email=email,
            phone=phone,
            company_name=company_name,
            synced_at=utcnow(),
        )

    async def _update_contact(self, deal_id: int, data: UpdateLeadInput) -> dict[str, Any]:
        """Apply email/phone/company changes; returns deal-level payload additions."""
        current = await self._client.get_deal(deal_id)
        if not current.success or not isinstance(current.data, dict):
            raise CrmBackendError("Failed to update lead", current.error or "deal not found")

        additions: dict[str, Any] = {}
        org_id: int | None = None
        if data.company_name:
            org_id = await self._get_or_create_organization(data.company_name)
            if org_id is not None:
                additions["org_id"] = org_id

        if data.email or data.phone:
            person_id = related_id(current.data.get("person_id"))
            if person_id is not None:
                response = await self._client.update_person(
                    person_id, person_payload(email=data.email, phone=data.phone, org_id=org_id)
                )
                if not response.success:
                    raise CrmBackendError("Failed to update lead contact", response.error)
            else:
                name = data.title or current.data.get("title") or str(deal_id)
                response = await self._client.create_person(
                    person_payload(name=name, email=data.email, phone=data.phone, org_id=org_id)
                )
                if not response.success or not isinstance(response.data, dict):
                    raise CrmBackendError("Failed to create lead contact", response.error)
                additions["person_id"] = related_id(response.data.get("id"))

        return additions

    async def _get_person(self, person_id: int) -> dict[str, Any] | None:
        response = await self._client.get_person(person_id)
        if response.success and isinstance(response.data, dict):
            return response.data
        logger.debug("pipedrive.person_unavailable", person_id=person_id)
        return None

    async def _get_organization_name(self, org_id: int) -> str | None:
        response = await self._client.get_organization(org_id)
        if response.success and isinstance(response.data, dict):
            return response.data.get("name")
        logger.debug("pipedrive.organization_unavailable", org_id=org_id)
        return None

    async def _get_or_create_organization(self, name: str) -> int | None:
        """Find an organization by exact name, creating it when absent."""
        search = await self._client.search_organizations(name)
        if search.success:
            items = search.data.get("items", []) if isinstance(search.data, dict) else search.data
            for entry in items or []:
                item = entry.get("item", entry) if isinstance(entry, dict) else None
                if isinstance(item, dict) and related_id(item.get("id")) is not None:
                    return related_id(item.get("id"))

        created = await self._client.create_organization({"name": name})
        if created.success and isinstance(created.data, dict):
            return related_id(created.data.get("id"))

        logger.warning("pipedrive.organization_unresolved", error=created.error)
        return None
