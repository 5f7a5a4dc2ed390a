from __future__ import annotations

from publishgate.core.config import get_settings
from publishgate.providers.crm.base import CrmReportProvider
from publishgate.providers.crm.fake import FakeCrmProvider
from publishgate.providers.crm.merge import MergeCrmProvider


def get_crm_provider(account_token: str | None = None) -> CrmReportProvider:
    settings = get_settings()
    provider = (settings.crm_provider or "merge").lower()

    if provider == "fake":
        return FakeCrmProvider()
    return MergeCrmProvider(
        api_key=settings.crm_merge_api_key,
        account_token=account_token or settings.crm_merge_account_token,
        base_url=settings.crm_merge_base_url,
        timeout_s=settings.crm_timeout_ms / 1000.0,
    )
