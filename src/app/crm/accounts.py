"""CRM account registry and adapter binding.

CrmAccountManager owns the tenant accounts and exactly one adapter per
account: "given an account id, get me the adapter that talks to that
tenant's CRM". The account repository and the adapter map are kept in
lockstep -- created, rebound and deleted together.

create_adapter() is the type-keyed factory over the CrmType variants.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

import structlog
from pydantic import ValidationError

from src.app.crm.adapter import CrmAdapter
from src.app.crm.exceptions import (
    CrmConfigError,
    CrmNotImplementedError,
    UnsupportedCrmTypeError,
)
from src.app.crm.pipedrive import DEFAULT_WEBHOOK_PATH, PipedriveAdapter
from src.app.crm.repository import AccountRepository, InMemoryAccountRepository
from src.app.crm.schemas import (
    CrmAccount,
    CrmAccountConfig,
    CrmAccountUpdate,
    CrmType,
    utcnow,
)

logger = structlog.get_logger(__name__)

# extra_config keys read by create_adapter
_ADAPTER_EXTRA_KEYS = ("webhook_secret",)


def create_adapter(
    config: CrmAccountConfig,
    *,
    timeout: float = 5.0,
    retries: int = 3,
    retry_delay: float = 1.0,
    api_version: str = "v1",
    webhook_path: str = DEFAULT_WEBHOOK_PATH,
) -> CrmAdapter:
    """Build the adapter variant for ``config.type``.

    Raises:
        CrmConfigError: Pipedrive config without a domain.
        CrmNotImplementedError: HubSpot / Salesforce.
        UnsupportedCrmTypeError: Anything else.
    """
    if config.type == CrmType.PIPEDRIVE:
        if not config.domain:
            raise CrmConfigError("Pipedrive domain is required")
        extra = config.extra_config or {}
        return PipedriveAdapter(
            config.api_token,
            config.domain,
            timeout=timeout,
            retries=retries,
            retry_delay=retry_delay,
            api_version=api_version,
            webhook_secret=extra.get("webhook_secret") or None,
            webhook_path=webhook_path,
        )

    if config.type == CrmType.HUBSPOT:
        raise CrmNotImplementedError("HubSpot")

    if config.type == CrmType.SALESFORCE:
        raise CrmNotImplementedError("Salesforce")

    raise UnsupportedCrmTypeError(str(config.type))


def _coerce_config(config: CrmAccountConfig | dict[str, Any]) -> CrmAccountConfig:
    """Validate a raw dict config, surfacing unknown types distinctly."""
    if isinstance(config, CrmAccountConfig):
        return config

    raw_type = config.get("type")
    try:
        CrmType(raw_type)
    except ValueError:
        raise UnsupportedCrmTypeError(str(raw_type)) from None

    try:
        return CrmAccountConfig.model_validate(config)
    except ValidationError as exc:
        raise CrmConfigError(str(exc)) from exc


def _adapter_extra_changed(before: CrmAccount, after: CrmAccount) -> bool:
    old = before.extra_config or {}
    new = after.extra_config or {}
    return any(old.get(key) != new.get(key) for key in _ADAPTER_EXTRA_KEYS)


class CrmAccountManager:
    """Registry of CRM accounts and their bound adapters.

    Args:
        repository: Account storage. Defaults to an in-memory repository.
        timeout: Per-call timeout passed to every adapter built.
        retries: Transient-failure retries passed to every adapter built.
        retry_delay: Base backoff delay passed to every adapter built.
        api_version: Pipedrive REST API version passed to every adapter built.
        webhook_path: Inbound webhook path advertised by adapters.
    """

    def __init__(
        self,
        repository: AccountRepository | None = None,
        *,
        timeout: float = 5.0,
        retries: int = 3,
        retry_delay: float = 1.0,
        api_version: str = "v1",
        webhook_path: str = DEFAULT_WEBHOOK_PATH,
    ) -> None:
        self._accounts = repository if repository is not None else InMemoryAccountRepository()
        self._adapters: dict[str, CrmAdapter] = {}
        self._adapter_options: dict[str, Any] = {
            "timeout": timeout,
            "retries": retries,
            "retry_delay": retry_delay,
            "api_version": api_version,
            "webhook_path": webhook_path,
        }

    def _build_adapter(self, config: CrmAccountConfig) -> CrmAdapter:
        return create_adapter(config, **self._adapter_options)

    # ── Registration ────────────────────────────────────────────────────────

    def register_account(self, config: CrmAccountConfig | dict[str, Any]) -> CrmAccount:
        """Register a new account and bind its adapter.

        The adapter is built before anything is stored, so a rejected
        configuration leaves the registry untouched.
        """
        config = _coerce_config(config)
        adapter = self._build_adapter(config)

        now = utcnow()
        account = CrmAccount(
            id=str(uuid.uuid4()),
            type=config.type,
            display_name=config.display_name,
            api_token=config.api_token,
            domain=config.domain,
            extra_config=config.extra_config,
            is_active=True,
            created_at=now,
            updated_at=now,
        )

        self._accounts.save(account)
        self._adapters[account.id] = adapter

        logger.info(
            "crm.account_registered",
            account_id=account.id,
            crm_type=account.type.value,
            display_name=account.display_name,
        )
        return account

    # ── Lookups ─────────────────────────────────────────────────────────────

    def get_account(self, account_id: str) -> CrmAccount | None:
        return self._accounts.get(account_id)

    def get_all_accounts(self) -> list[CrmAccount]:
        return self._accounts.list_all()

    def get_active_accounts(self) -> list[CrmAccount]:
        return [account for account in self._accounts.list_all() if account.is_active]

    def get_adapter(self, account_id: str) -> CrmAdapter | None:
        """Bound adapter for the account, or None when the account is unknown."""
        return self._adapters.get(account_id)

    def has_account(self, account_id: str) -> bool:
        return account_id in self._accounts

    # ── Lifecycle ───────────────────────────────────────────────────────────

    def activate_account(self, account_id: str) -> None:
        self._set_active(account_id, True)

    def deactivate_account(self, account_id: str) -> None:
        self._set_active(account_id, False)

    def _set_active(self, account_id: str, is_active: bool) -> None:
        account = self._accounts.get(account_id)
        if account is None:
            return
        self._accounts.save(
            account.model_copy(
                update={"is_active": is_active, "updated_at": self._touch(account)}
            )
        )
        logger.info("crm.account_active_changed", account_id=account_id, is_active=is_active)

    def delete_account(self, account_id: str) -> None:
        """Remove the account and its bound adapter."""
        removed = self._accounts.delete(account_id)
        self._adapters.pop(account_id, None)
        if removed:
            logger.info("crm.account_deleted", account_id=account_id)

    def update_account(
        self,
        account_id: str,
        updates: CrmAccountUpdate | dict[str, Any],
    ) -> CrmAccount | None:
        """Merge updates into the account; rebind the adapter on credential change.

        Token, domain and webhook secret changes rebuild the adapter from the
        merged configuration before either registry is written, so a failed
        rebuild changes nothing.

        Returns:
            The updated account, or None when the account does not exist.
        """
        account = self._accounts.get(account_id)
        if account is None:
            return None

        if not isinstance(updates, CrmAccountUpdate):
            try:
                updates = CrmAccountUpdate.model_validate(updates)
            except ValidationError as exc:
                raise CrmConfigError(str(exc)) from exc

        changes: dict[str, Any] = {
            field: value
            for field, value in updates.model_dump(exclude_none=True).items()
            if value != "" and value != {}
        }
        changes["updated_at"] = self._touch(account)
        merged = account.model_copy(update=changes)

        adapter: CrmAdapter | None = None
        if updates.api_token or updates.domain or _adapter_extra_changed(account, merged):
            adapter = self._build_adapter(merged.to_config())

        self._accounts.save(merged)
        if adapter is not None:
            self._adapters[account_id] = adapter
            logger.info("crm.adapter_rebound", account_id=account_id)

        logger.info(
            "crm.account_updated",
            account_id=account_id,
            fields=sorted(k for k in changes if k not in ("updated_at", "api_token")),
            token_changed=bool(updates.api_token),
        )
        return merged

    # ── Health ──────────────────────────────────────────────────────────────

    async def test_connection(self, account_id: str) -> bool:
        """Reachability check; False for unknown accounts or any adapter error."""
        adapter = self.get_adapter(account_id)
        if adapter is None:
            return False

        try:
            return await adapter.test_connection(account_id)
        except Exception as exc:
            logger.error("crm.test_connection_error", account_id=account_id, error=str(exc))
            return False

    @staticmethod
    def _touch(account: CrmAccount) -> datetime:
        """New updated_at that never moves backwards."""
        return max(utcnow(), account.updated_at)
