"""HTTP clients for external CRM REST APIs."""

from src.app.crm.clients.pipedrive import PipedriveClient

__all__ = ["PipedriveClient"]
