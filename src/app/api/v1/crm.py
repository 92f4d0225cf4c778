"""REST API endpoints for CRM accounts, leads, pipelines, fields and sync.

Every response uses the ``{"success", "data", "error"}`` envelope. Services
are read from app.state (503 if the CRM layer is not initialized). Request
bodies are validated explicitly so malformed input is a 400, not FastAPI's
default 422.

Status mapping:
- missing ``accountId`` query, invalid body, config errors: 400
- unknown account, lead or pipeline: 404
- create/update/move/delete failures at the backend: 400
- unexpected read or sync failures: 500
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Body, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from src.app.crm.accounts import CrmAccountManager
from src.app.crm.adapter import CrmAdapter
from src.app.crm.exceptions import CrmError, CrmNotFoundError
from src.app.crm.schemas import (
    CreateLeadInput,
    CrmAccountUpdate,
    LeadFilter,
    MoveLeadInput,
    UpdateLeadInput,
)
from src.app.crm.sync import SyncService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/crm", tags=["crm"])


# ── Envelope & Errors ───────────────────────────────────────────────────────


class CrmApiError(Exception):
    """Raised by route handlers; rendered as an error envelope."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


async def crm_api_error_handler(request: Request, exc: CrmApiError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message},
    )


def _dump(value: Any) -> Any:
    """Serialize models (or lists of models) to camelCase JSON-safe data."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, list):
        return [_dump(item) for item in value]
    return value


def ok(data: Any = None, status_code: int = status.HTTP_200_OK, **extra: Any) -> JSONResponse:
    content: dict[str, Any] = {"success": True, "data": _dump(data)}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


def _validate(model: type[BaseModel], body: Any) -> Any:
    try:
        return model.model_validate(body if body is not None else {})
    except ValidationError as exc:
        raise CrmApiError(status.HTTP_400_BAD_REQUEST, _validation_message(exc)) from exc


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"])
        parts.append(f"{location}: {error['msg']}" if location else error["msg"])
    return "; ".join(parts)


# ── Dependency Helpers ──────────────────────────────────────────────────────


def _get_account_manager(request: Request) -> CrmAccountManager:
    """Retrieve CrmAccountManager from app.state, 503 if not available."""
    manager = getattr(request.app.state, "crm_account_manager", None)
    if manager is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="CRM layer not initialized",
        )
    return manager


def _get_sync_service(request: Request) -> SyncService:
    """Retrieve SyncService from app.state, 503 if not available."""
    service = getattr(request.app.state, "crm_sync_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="CRM sync not initialized",
        )
    return service


def _require_account_id(account_id: str | None) -> str:
    if not account_id:
        raise CrmApiError(status.HTTP_400_BAD_REQUEST, "accountId query parameter is required")
    return account_id


def _get_adapter(request: Request, account_id: str | None) -> tuple[str, CrmAdapter]:
    """Resolve the adapter bound to ``accountId``; 400 if missing, 404 if unknown."""
    account_id = _require_account_id(account_id)
    adapter = _get_account_manager(request).get_adapter(account_id)
    if adapter is None:
        raise CrmApiError(status.HTTP_404_NOT_FOUND, f"CRM account not found: {account_id}")
    return account_id, adapter


def _mutation_error(exc: Exception) -> CrmApiError:
    if isinstance(exc, CrmNotFoundError):
        return CrmApiError(status.HTTP_404_NOT_FOUND, str(exc))
    return CrmApiError(status.HTTP_400_BAD_REQUEST, str(exc))


def _read_error(exc: Exception) -> CrmApiError:
    if isinstance(exc, CrmNotFoundError):
        return CrmApiError(status.HTTP_404_NOT_FOUND, str(exc))
    return CrmApiError(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))


# ── Accounts ────────────────────────────────────────────────────────────────


@router.post("/configure", status_code=201)
async def configure_account(request: Request, body: Any = Body(None)) -> JSONResponse:
    """Register a CRM account and report whether its credentials connect."""
    manager = _get_account_manager(request)
    if not isinstance(body, dict):
        raise CrmApiError(status.HTTP_400_BAD_REQUEST, "Request body must be a JSON object")

    try:
        account = manager.register_account(body)
    except CrmError as exc:
        raise CrmApiError(status.HTTP_400_BAD_REQUEST, str(exc)) from exc

    is_connected = await manager.test_connection(account.id)
    return ok(
        {
            "accountId": account.id,
            "displayName": account.display_name,
            "type": account.type.value,
            "isConnected": is_connected,
            "createdAt": account.created_at.isoformat(),
        },
        status_code=status.HTTP_201_CREATED,
    )


@router.get("/accounts")
async def list_accounts(request: Request, active: bool = Query(False)) -> JSONResponse:
    manager = _get_account_manager(request)
    accounts = manager.get_active_accounts() if active else manager.get_all_accounts()
    return ok(accounts)


@router.get("/accounts/{account_id}")
async def get_account(request: Request, account_id: str) -> JSONResponse:
    account = _get_account_manager(request).get_account(account_id)
    if account is None:
        raise CrmApiError(status.HTTP_404_NOT_FOUND, f"CRM account not found: {account_id}")
    return ok(account)


@router.patch("/accounts/{account_id}")
async def update_account(request: Request, account_id: str, body: Any = Body(None)) -> JSONResponse:
    """Update an account; a new token or domain rebinds its adapter."""
    manager = _get_account_manager(request)
    updates = _validate(CrmAccountUpdate, body)

    try:
        account = manager.update_account(account_id, updates)
    except CrmError as exc:
        raise CrmApiError(status.HTTP_400_BAD_REQUEST, str(exc)) from exc

    if account is None:
        raise CrmApiError(status.HTTP_404_NOT_FOUND, f"CRM account not found: {account_id}")
    return ok(account)


@router.delete("/accounts/{account_id}")
async def delete_account(request: Request, account_id: str) -> JSONResponse:
    manager = _get_account_manager(request)
    if not manager.has_account(account_id):
        raise CrmApiError(status.HTTP_404_NOT_FOUND, f"CRM account not found: {account_id}")

    manager.delete_account(account_id)
    sync_service = getattr(request.app.state, "crm_sync_service", None)
    if sync_service is not None:
        sync_service.clear_sync_status(account_id)
    return ok({"accountId": account_id, "deleted": True})


@router.post("/accounts/{account_id}/activate")
async def activate_account(request: Request, account_id: str) -> JSONResponse:
    manager = _get_account_manager(request)
    if not manager.has_account(account_id):
        raise CrmApiError(status.HTTP_404_NOT_FOUND, f"CRM account not found: {account_id}")
    manager.activate_account(account_id)
    return ok(manager.get_account(account_id))


@router.post("/accounts/{account_id}/deactivate")
async def deactivate_account(request: Request, account_id: str) -> JSONResponse:
    manager = _get_account_manager(request)
    if not manager.has_account(account_id):
        raise CrmApiError(status.HTTP_404_NOT_FOUND, f"CRM account not found: {account_id}")
    manager.deactivate_account(account_id)
    return ok(manager.get_account(account_id))


@router.post("/accounts/{account_id}/test")
async def test_account_connection(request: Request, account_id: str) -> JSONResponse:
    manager = _get_account_manager(request)
    if not manager.has_account(account_id):
        raise CrmApiError(status.HTTP_404_NOT_FOUND, f"CRM account not found: {account_id}")
    is_connected = await manager.test_connection(account_id)
    return ok({"accountId": account_id, "isConnected": is_connected})


# ── Leads ───────────────────────────────────────────────────────────────────


@router.get("/leads")
async def list_leads(
    request: Request,
    account_id: str | None = Query(None, alias="accountId"),
    pipeline_id: str | None = Query(None, alias="pipelineId"),
    stage_id: str | None = Query(None, alias="stageId"),
    search: str | None = Query(None),
    limit: int | None = Query(None),
    offset: int | None = Query(None),
    sort_by: str | None = Query(None, alias="sortBy"),
    sort_order: str | None = Query(None, alias="sortOrder"),
) -> JSONResponse:
    """List one page of leads; ``pagination.total`` is the page size returned."""
    account_id, adapter = _get_adapter(request, account_id)
    raw_filters = {
        "pipeline_id": pipeline_id,
        "stage_id": stage_id,
        "search": search,
        "limit": limit,
        "offset": offset,
        "sort_by": sort_by,
        "sort_order": sort_order,
    }
    filters = _validate(LeadFilter, {k: v for k, v in raw_filters.items() if v is not None})

    try:
        leads = await adapter.get_leads(account_id, filters)
    except Exception as exc:
        logger.error("crm_api.list_leads_error", account_id=account_id, error=str(exc))
        raise _read_error(exc) from exc

    return ok(
        leads,
        pagination={"limit": filters.limit, "offset": filters.offset, "total": len(leads)},
    )


@router.get("/leads/{lead_id}")
async def get_lead(
    request: Request,
    lead_id: str,
    account_id: str | None = Query(None, alias="accountId"),
) -> JSONResponse:
    account_id, adapter = _get_adapter(request, account_id)
    try:
        lead = await adapter.get_lead(account_id, lead_id)
    except Exception as exc:
        raise _read_error(exc) from exc
    return ok(lead)


@router.post("/leads", status_code=201)
async def create_lead(
    request: Request,
    account_id: str | None = Query(None, alias="accountId"),
    body: Any = Body(None),
) -> JSONResponse:
    account_id, adapter = _get_adapter(request, account_id)
    data = _validate(CreateLeadInput, body)
    try:
        lead = await adapter.create_lead(account_id, data)
    except Exception as exc:
        raise _mutation_error(exc) from exc
    return ok(lead, status_code=status.HTTP_201_CREATED)


@router.patch("/leads/{lead_id}")
async def update_lead(
    request: Request,
    lead_id: str,
    account_id: str | None = Query(None, alias="accountId"),
    body: Any = Body(None),
) -> JSONResponse:
    account_id, adapter = _get_adapter(request, account_id)
    data = _validate(UpdateLeadInput, body)
    try:
        lead = await adapter.update_lead(account_id, lead_id, data)
    except Exception as exc:
        raise _mutation_error(exc) from exc
    return ok(lead)


@router.patch("/leads/{lead_id}/stage")
async def move_lead(
    request: Request,
    lead_id: str,
    account_id: str | None = Query(None, alias="accountId"),
    body: Any = Body(None),
) -> JSONResponse:
    account_id, adapter = _get_adapter(request, account_id)
    data = _validate(MoveLeadInput, body)
    try:
        lead = await adapter.move_lead(account_id, lead_id, data)
    except Exception as exc:
        raise _mutation_error(exc) from exc
    return ok(lead)


@router.delete("/leads/{lead_id}")
async def delete_lead(
    request: Request,
    lead_id: str,
    account_id: str | None = Query(None, alias="accountId"),
) -> JSONResponse:
    account_id, adapter = _get_adapter(request, account_id)
    try:
        await adapter.delete_lead(account_id, lead_id)
    except Exception as exc:
        raise _mutation_error(exc) from exc
    return ok({"leadId": lead_id, "deleted": True})


# ── Pipelines & Fields ──────────────────────────────────────────────────────


@router.get("/pipelines")
async def list_pipelines(
    request: Request,
    account_id: str | None = Query(None, alias="accountId"),
) -> JSONResponse:
    account_id, adapter = _get_adapter(request, account_id)
    try:
        pipelines = await adapter.get_pipelines(account_id)
    except Exception as exc:
        raise _read_error(exc) from exc
    return ok(pipelines)


@router.get("/pipelines/{pipeline_id}")
async def get_pipeline(
    request: Request,
    pipeline_id: str,
    account_id: str | None = Query(None, alias="accountId"),
) -> JSONResponse:
    account_id, adapter = _get_adapter(request, account_id)
    try:
        pipeline = await adapter.get_pipeline(account_id, pipeline_id)
    except Exception as exc:
        raise _read_error(exc) from exc
    return ok(pipeline)


@router.get("/pipelines/{pipeline_id}/stages")
async def list_stages(
    request: Request,
    pipeline_id: str,
    account_id: str | None = Query(None, alias="accountId"),
) -> JSONResponse:
    account_id, adapter = _get_adapter(request, account_id)
    try:
        stages = await adapter.get_stages(account_id, pipeline_id)
    except Exception as exc:
        raise _read_error(exc) from exc
    return ok(stages)


@router.get("/fields")
async def list_fields(
    request: Request,
    account_id: str | None = Query(None, alias="accountId"),
    object_type: str = Query("lead", alias="objectType"),
) -> JSONResponse:
    account_id, adapter = _get_adapter(request, account_id)
    if object_type not in ("lead", "deal", "contact"):
        raise CrmApiError(
            status.HTTP_400_BAD_REQUEST,
            "objectType must be one of: lead, deal, contact",
        )
    try:
        fields = await adapter.get_fields(account_id, object_type)  # type: ignore[arg-type]
    except Exception as exc:
        raise _read_error(exc) from exc
    return ok(fields)


# ── Sync ────────────────────────────────────────────────────────────────────


@router.post("/sync")
async def sync_account(
    request: Request,
    account_id: str | None = Query(None, alias="accountId"),
) -> JSONResponse:
    """Run a full lead sync for the account and return its status."""
    account_id = _require_account_id(account_id)
    sync_service = _get_sync_service(request)
    try:
        sync_status = await sync_service.sync_account_leads(account_id)
    except CrmNotFoundError as exc:
        raise CrmApiError(status.HTTP_404_NOT_FOUND, str(exc)) from exc
    except Exception as exc:
        raise CrmApiError(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc)) from exc
    return ok(sync_status)


@router.post("/leads/{lead_id}/sync")
async def sync_lead(
    request: Request,
    lead_id: str,
    account_id: str | None = Query(None, alias="accountId"),
) -> JSONResponse:
    account_id = _require_account_id(account_id)
    sync_service = _get_sync_service(request)
    try:
        lead = await sync_service.sync_lead(account_id, lead_id)
    except Exception as exc:
        raise _read_error(exc) from exc
    return ok(lead)


@router.get("/sync/status")
async def get_sync_status(
    request: Request,
    account_id: str | None = Query(None, alias="accountId"),
) -> JSONResponse:
    """Last recorded sync status plus whether the account is due for a sync."""
    account_id = _require_account_id(account_id)
    manager = _get_account_manager(request)
    if not manager.has_account(account_id):
        raise CrmApiError(status.HTTP_404_NOT_FOUND, f"CRM account not found: {account_id}")

    sync_service = _get_sync_service(request)
    sync_status = sync_service.get_sync_status(account_id)
    last_sync = sync_service.get_last_sync_time(account_id)
    return ok(
        {
            "status": _dump(sync_status),
            "lastSyncTime": last_sync.isoformat() if last_sync else None,
            "shouldSync": sync_service.should_sync(account_id),
        }
    )
