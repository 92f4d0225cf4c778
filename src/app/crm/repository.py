"""Account storage behind CrmAccountManager.

AccountRepository is the storage seam; InMemoryAccountRepository keeps
accounts in a process-local dict (lost on restart). A persistent
implementation only needs to honour the same five methods.

No cross-request isolation: concurrent requests mutate the dict without
coordination, and readers may observe either side of a concurrent write.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from src.app.crm.schemas import CrmAccount


class AccountRepository(ABC):
    """Storage interface for CRM accounts keyed by account id."""

    @abstractmethod
    def get(self, account_id: str) -> CrmAccount | None: ...

    @abstractmethod
    def list_all(self) -> list[CrmAccount]: ...

    @abstractmethod
    def save(self, account: CrmAccount) -> None: ...

    @abstractmethod
    def delete(self, account_id: str) -> bool: ...

    @abstractmethod
    def __contains__(self, account_id: object) -> bool: ...


class InMemoryAccountRepository(AccountRepository):
    """Dict-backed repository preserving insertion order."""

    def __init__(self) -> None:
        self._accounts: dict[str, CrmAccount] = {}

    def get(self, account_id: str) -> CrmAccount | None:
        return self._accounts.get(account_id)

    def list_all(self) -> list[CrmAccount]:
        return list(self._accounts.values())

    def save(self, account: CrmAccount) -> None:
        self._accounts[account.id] = account

    def delete(self, account_id: str) -> bool:
        return self._accounts.pop(account_id, None) is not None

    def __contains__(self, account_id: object) -> bool:
        return account_id in self._accounts

    def __len__(self) -> int:
        return len(self._accounts)
