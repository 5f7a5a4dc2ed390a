from __future__ import annotations

from typing import Protocol


class CrmReportProvider(Protocol):
    async def fetch_report_members(self, provider: str, report_id: str) -> list[str]:
        """Return the external CRM record ids currently in the report or list.

        Raises CrmProviderUnavailableError for transient failures,
        CrmAuthRevokedError when credentials are rejected and
        CrmReportNotFoundError when the report no longer exists.
        """
        ...
