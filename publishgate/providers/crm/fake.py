from __future__ import annotations

from publishgate.core.errors import CrmReportNotFoundError


class FakeCrmProvider:
    def __init__(self, reports: dict[tuple[str, str], list[str]] | None = None) -> None:
        # Reports keyed by (provider, report_id); tests mutate them between syncs.
        self.reports: dict[tuple[str, str], list[str]] = dict(reports or {})
        self.failures: dict[tuple[str, str], Exception] = {}
        self.calls: list[tuple[str, str]] = []

    def set_members(self, provider: str, report_id: str, crm_ids: list[str]) -> None:
        self.reports[(provider, report_id)] = list(crm_ids)
        self.failures.pop((provider, report_id), None)

    def fail_with(self, provider: str, report_id: str, error: Exception) -> None:
        self.failures[(provider, report_id)] = error

    async def fetch_report_members(self, provider: str, report_id: str) -> list[str]:
        key = (provider, report_id)
        self.calls.append(key)
        if key in self.failures:
            raise self.failures[key]
        if key not in self.reports:
            raise CrmReportNotFoundError("CRM report not found", details={"provider": provider, "report_id": report_id})
        return list(self.reports[key])
