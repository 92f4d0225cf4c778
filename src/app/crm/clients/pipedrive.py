"""Async HTTP client wrapper for the Pipedrive REST API.

Provides PipedriveClient: one method per REST call the adapter needs, each
returning the uniform ApiResponse envelope ``{success, data, error,
additional_data}``. Client methods never raise; transport and HTTP errors
are logged and folded into ``success=False``.

Authentication is the ``api_token`` query parameter on every request.
Transient failures (connect errors, timeouts, 5xx/429) are retried with
tenacity using the configured ``retries`` and ``retry_delay``.
"""

from __future__ import annotations

import time
from typing import Any

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from src.app.core.monitoring import (
    crm_backend_request_duration_seconds,
    crm_backend_requests_total,
)
from src.app.crm.schemas import ApiResponse

logger = structlog.get_logger(__name__)


def _is_transient(exc: BaseException) -> bool:
    """Retry on network trouble, throttling and server errors only."""
    if isinstance(exc, (httpx.ConnectError, httpx.TimeoutException)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 429 or exc.response.status_code >= 500
    return False


class PipedriveClient:
    """Async client for the Pipedrive v1 REST API.

    Args:
        api_token: Pipedrive API token (sent as ``api_token`` query parameter).
        company_domain: Tenant domain, e.g. ``acme.pipedrive.com``.
        timeout: Per-call timeout in seconds.
        retries: Extra attempts after the first one for transient failures.
        retry_delay: Base delay in seconds for exponential backoff.
        api_version: REST API version path segment.
    """

    def __init__(
        self,
        api_token: str,
        company_domain: str,
        timeout: float = 5.0,
        retries: int = 3,
        retry_delay: float = 1.0,
        api_version: str = "v1",
    ) -> None:
        self._api_token = api_token
        self._domain = company_domain.removeprefix("https://").removeprefix("http://").rstrip("/")
        self._timeout = timeout
        self._retries = max(0, retries)
        self._retry_delay = max(0.0, retry_delay)
        self._base_url = f"https://{self._domain}/{api_version}"

    def __repr__(self) -> str:
        return f"PipedriveClient(domain={self._domain!r})"

    @property
    def api_token(self) -> str:
        return self._api_token

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def config(self) -> dict[str, Any]:
        """Effective client configuration (token excluded)."""
        return {
            "company_domain": self._domain,
            "base_url": self._base_url,
            "timeout": self._timeout,
            "retries": self._retries,
            "retry_delay": self._retry_delay,
        }

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client bound to the tenant's API base URL."""
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            params={"api_token": self._api_token},
        )

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> ApiResponse:
        """Issue one API call (with transient retries) and wrap the result."""
        start_time = time.perf_counter()
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._retries + 1),
                wait=wait_exponential(multiplier=self._retry_delay, max=10),
                retry=retry_if_exception(_is_transient),
                reraise=True,
            ):
                with attempt:
                    async with self._client() as client:
                        response = await client.request(method, path, params=params, json=json)
                        response.raise_for_status()
                        body = response.json()
        except httpx.HTTPStatusError as exc:
            self._record(operation, "error", start_time)
            logger.warning(
                "pipedrive.request_failed",
                operation=operation,
                status_code=exc.response.status_code,
                error=str(exc),
            )
            return ApiResponse(
                success=False,
                error=_error_from_response(exc.response) or str(exc),
                status_code=exc.response.status_code,
            )
        except (httpx.HTTPError, ValueError) as exc:
            self._record(operation, "error", start_time)
            logger.warning("pipedrive.request_failed", operation=operation, error=str(exc))
            return ApiResponse(success=False, error=str(exc))

        if not isinstance(body, dict):
            self._record(operation, "error", start_time)
            logger.warning("pipedrive.unexpected_body", operation=operation)
            return ApiResponse(success=False, error="Unexpected response body")

        success = bool(body.get("success"))
        self._record(operation, "success" if success else "error", start_time)
        return ApiResponse(
            success=success,
            data=body.get("data"),
            error=body.get("error"),
            additional_data=body.get("additional_data"),
            status_code=response.status_code,
        )

    def _record(self, operation: str, status: str, start_time: float) -> None:
        crm_backend_requests_total.labels(
            crm_type="pipedrive", operation=operation, status=status
        ).inc()
        crm_backend_request_duration_seconds.labels(
            crm_type="pipedrive", operation=operation
        ).observe(time.perf_counter() - start_time)

    # ── Deals ───────────────────────────────────────────────────────────────

    async def get_deals(self, params: dict[str, Any] | None = None) -> ApiResponse:
        """GET /deals with paging/sort parameters."""
        return await self._request("get_deals", "GET", "/deals", params=params)

    async def get_deal(self, deal_id: int) -> ApiResponse:
        return await self._request("get_deal", "GET", f"/deals/{deal_id}")

    async def create_deal(self, data: dict[str, Any]) -> ApiResponse:
        return await self._request("create_deal", "POST", "/deals", json=data)

    async def update_deal(self, deal_id: int, data: dict[str, Any]) -> ApiResponse:
        return await self._request("update_deal", "PUT", f"/deals/{deal_id}", json=data)

    async def delete_deal(self, deal_id: int) -> ApiResponse:
        return await self._request("delete_deal", "DELETE", f"/deals/{deal_id}")

    # ── Pipelines & Stages ──────────────────────────────────────────────────

    async def get_pipelines(self) -> ApiResponse:
        return await self._request("get_pipelines", "GET", "/pipelines")

    async def get_pipeline(self, pipeline_id: int) -> ApiResponse:
        return await self._request("get_pipeline", "GET", f"/pipelines/{pipeline_id}")

    async def get_stages(self, pipeline_id: int) -> ApiResponse:
        return await self._request("get_stages", "GET", f"/pipelines/{pipeline_id}/stages")

    # ── Fields ──────────────────────────────────────────────────────────────

    async def get_fields(self, object_type: str) -> ApiResponse:
        """GET /{object}Fields, e.g. /dealFields or /personFields."""
        return await self._request("get_fields", "GET", f"/{object_type}Fields")

    # ── Persons ─────────────────────────────────────────────────────────────

    async def get_person(self, person_id: int) -> ApiResponse:
        return await self._request("get_person", "GET", f"/persons/{person_id}")

    async def create_person(self, data: dict[str, Any]) -> ApiResponse:
        return await self._request("create_person", "POST", "/persons", json=data)

    async def update_person(self, person_id: int, data: dict[str, Any]) -> ApiResponse:
        return await self._request("update_person", "PUT", f"/persons/{person_id}", json=data)

    # ── Organizations ───────────────────────────────────────────────────────

    async def search_organizations(self, name: str) -> ApiResponse:
        """Exact-name organization search."""
        return await self._request(
            "search_organizations",
            "GET",
            "/organizations/search",
            params={"term": name, "fields": "name", "exact_match": "true"},
        )

    async def get_organization(self, org_id: int) -> ApiResponse:
        return await self._request("get_organization", "GET", f"/organizations/{org_id}")

    async def create_organization(self, data: dict[str, Any]) -> ApiResponse:
        return await self._request("create_organization", "POST", "/organizations", json=data)


def _error_from_response(response: httpx.Response) -> str | None:
    """Pull Pipedrive's ``error`` string out of a failed response, if any."""
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return None
