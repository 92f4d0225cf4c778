"""CRM error taxonomy.

Write-intent operations raise these; bulk reads and the webhook handler
absorb backend failures into empty results or audit fields instead.
"""

from __future__ import annotations


class CrmError(Exception):
    """Base class for all CRM integration errors."""


class CrmConfigError(CrmError):
    """Account configuration is invalid or incomplete."""


class UnsupportedCrmTypeError(CrmError):
    """The requested CRM type is unknown."""

    def __init__(self, crm_type: str) -> None:
        super().__init__(f"Unsupported CRM type: {crm_type}")
        self.crm_type = crm_type


class CrmNotImplementedError(CrmError, NotImplementedError):
    """The CRM type is known but has no adapter implementation yet."""

    def __init__(self, label: str) -> None:
        super().__init__(f"{label} adapter not yet implemented")
        self.label = label


class CrmNotFoundError(CrmError, LookupError):
    """An account, adapter, lead or pipeline does not exist."""


class CrmBackendError(CrmError):
    """The external CRM call failed or returned a non-success envelope.

    Args:
        message: Human readable description of the failed operation.
        detail: Error string reported by the API client, if any.
    """

    def __init__(self, message: str, detail: str | None = None) -> None:
        super().__init__(message if not detail else f"{message}: {detail}")
        self.detail = detail
