from __future__ import annotations

import logging
from typing import Any

import httpx

from publishgate.core.errors import (
    CrmAuthRevokedError,
    CrmProviderUnavailableError,
    CrmReportNotFoundError,
    ValidationFailedError,
)


logger = logging.getLogger(__name__)

# HubSpot list memberships are paged; stop after this many pages.
_MAX_PAGES = 50


def _salesforce_path(report_id: str) -> str:
    return f"/analytics/reports/{report_id}"


def _hubspot_path(report_id: str, after: str | None) -> str:
    path = f"/crm/v3/lists/{report_id}/memberships?limit=250"
    if after:
        path = f"{path}&after={after}"
    return path


def parse_salesforce_report(payload: dict[str, Any]) -> list[str]:
    # Salesforce report runs put the record id in the first detail column of every row.
    rows = (((payload or {}).get("factMap") or {}).get("T!T") or {}).get("rows") or []
    members: list[str] = []
    for row in rows:
        cells = row.get("dataCells") or []
        if not cells:
            continue
        value = cells[0].get("value")
        if value:
            members.append(str(value))
    return members


def parse_hubspot_memberships(payload: dict[str, Any]) -> tuple[list[str], str | None]:
    results = (payload or {}).get("results") or []
    members = [str(item["recordId"]) for item in results if item.get("recordId")]
    after = (((payload or {}).get("paging") or {}).get("next") or {}).get("after")
    return members, (str(after) if after else None)


class MergeCrmProvider:
    """Read CRM report membership through the Merge.dev passthrough endpoint."""

    def __init__(
        self,
        *,
        api_key: str | None,
        account_token: str | None,
        base_url: str,
        timeout_s: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._account_token = account_token
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._transport = transport

    async def _passthrough(self, client: httpx.AsyncClient, *, provider: str, report_id: str, path: str) -> dict:
        details = {"provider": provider, "report_id": report_id}
        try:
            response = await client.post(
                "/passthrough",
                json={"method": "GET", "path": path, "request_format": "JSON"},
            )
        except httpx.HTTPError as exc:
            raise CrmProviderUnavailableError("CRM provider request failed", details=details) from exc

        if response.status_code in {401, 403}:
            raise CrmAuthRevokedError("CRM credentials were rejected", details=details)
        if response.status_code >= 500 or response.status_code == 429:
            raise CrmProviderUnavailableError(
                "CRM provider unavailable", details={**details, "status_code": response.status_code}
            )
        if response.status_code >= 300:
            # Redirects are not followed; a login or proxy page is not a membership.
            raise CrmProviderUnavailableError(
                "CRM provider rejected the request", details={**details, "status_code": response.status_code}
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise CrmProviderUnavailableError(
                "CRM provider returned a non-JSON body", details={**details, "status_code": response.status_code}
            ) from exc
        if not isinstance(body, dict) or not isinstance(body.get("response") or {}, dict):
            raise CrmProviderUnavailableError("CRM provider returned an unexpected payload", details=details)
        try:
            upstream_status = int(body.get("status") or 200)
        except (TypeError, ValueError) as exc:
            raise CrmProviderUnavailableError("CRM provider returned an unexpected payload", details=details) from exc
        if upstream_status == 404:
            raise CrmReportNotFoundError("CRM report not found", details=details)
        if upstream_status in {401, 403}:
            raise CrmAuthRevokedError("CRM credentials were rejected", details=details)
        if upstream_status >= 400:
            raise CrmProviderUnavailableError(
                "CRM provider returned an error", details={**details, "status_code": upstream_status}
            )
        return body.get("response") or {}

    @staticmethod
    def _parse(parser, payload: dict, *, provider: str, report_id: str):
        try:
            return parser(payload)
        except (AttributeError, KeyError, TypeError) as exc:
            raise CrmProviderUnavailableError(
                "CRM provider returned an unexpected payload", details={"provider": provider, "report_id": report_id}
            ) from exc

    async def fetch_report_members(self, provider: str, report_id: str) -> list[str]:
        if provider not in {"salesforce", "hubspot"}:
            raise ValidationFailedError("Unsupported CRM provider", details={"provider": provider})
        if not self._api_key or not self._account_token:
            raise CrmAuthRevokedError(
                "CRM connection is not configured", details={"provider": provider, "report_id": report_id}
            )
        headers = {"Authorization": f"Bearer {self._api_key}", "X-Account-Token": self._account_token}
        async with httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=self._timeout_s,
            transport=self._transport,
        ) as client:
            if provider == "salesforce":
                payload = await self._passthrough(
                    client, provider=provider, report_id=report_id, path=_salesforce_path(report_id)
                )
                members = self._parse(parse_salesforce_report, payload, provider=provider, report_id=report_id)
            else:
                members = []
                after: str | None = None
                for _ in range(_MAX_PAGES):
                    payload = await self._passthrough(
                        client, provider=provider, report_id=report_id, path=_hubspot_path(report_id, after)
                    )
                    page, after = self._parse(
                        parse_hubspot_memberships, payload, provider=provider, report_id=report_id
                    )
                    members.extend(page)
                    if after is None:
                        break
                else:
                    # A truncated membership must never replace the cache.
                    logger.warning("crm_report_page_limit provider=%s report_id=%s", provider, report_id)
                    raise CrmProviderUnavailableError(
                        "CRM list exceeds the supported page count",
                        details={"provider": provider, "report_id": report_id},
                    )
        logger.info("crm_report_fetched provider=%s report_id=%s members=%s", provider, report_id, len(members))
        return list(dict.fromkeys(members))
