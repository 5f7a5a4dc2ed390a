from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from publishgate.core.config import get_settings
from publishgate.core.errors import (
    ConflictError,
    CrmReportNotFoundError,
    NotFoundError,
    UpstreamDependencyError,
    ValidationFailedError,
)
from publishgate.domain.models import UserAccountAccess
from publishgate.persistence.guards import reject_foreign_ids
from publishgate.persistence.repos import account_access as access_repo
from publishgate.persistence.repos import authz as authz_repo
from publishgate.providers.crm.base import CrmReportProvider
from publishgate.providers.crm.factory import get_crm_provider
from publishgate.services.audit import SEVERITY_WARN, record_event
from publishgate.services.authz.catalog import (
    ACCOUNT_SCOPE_TYPES,
    CRM_PROVIDERS,
    SCOPE_ACCOUNT_LIST,
    SCOPE_ALL_ACCOUNTS,
    SCOPE_CRM_REPORT,
    SCOPE_SINGLE_ACCOUNT,
    is_privileged_role,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccountScope:
    """Accounts a user may operate on.

    ``all_accounts`` is a sentinel: callers that list accounts must run their own
    unrestricted tenant query instead of expecting ids here.
    """

    all_accounts: bool
    account_ids: frozenset[str] = frozenset()

    def allows(self, account_id: str) -> bool:
        return self.all_accounts or account_id in self.account_ids


NO_ACCESS = AccountScope(all_accounts=False)
FULL_ACCESS = AccountScope(all_accounts=True)


@dataclass(frozen=True)
class CrmSyncResult:
    grant_id: str
    crm_member_count: int
    account_ids: tuple[str, ...]
    synced_at: datetime


@dataclass(frozen=True)
class CrmSyncFailure:
    grant_id: str
    error_code: str
    message: str
    # The upstream report is gone; the admin decides whether to revoke the grant.
    report_missing: bool = False


@dataclass(frozen=True)
class AccountGrantResult:
    grant: UserAccountAccess
    sync: CrmSyncResult | None = None
    sync_failure: CrmSyncFailure | None = None


@dataclass(frozen=True)
class CrmSyncSummary:
    attempted: int
    succeeded: list[CrmSyncResult] = field(default_factory=list)
    failed: list[CrmSyncFailure] = field(default_factory=list)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # sqlite hands back naive datetimes; every timestamp here is written in UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _scope_from_grants(grants: list[UserAccountAccess]) -> AccountScope:
    account_ids: set[str] = set()
    for grant in grants:
        if grant.scope_type == SCOPE_ALL_ACCOUNTS:
            return FULL_ACCESS
        if grant.scope_type == SCOPE_SINGLE_ACCOUNT and grant.account_id:
            account_ids.add(grant.account_id)
        elif grant.scope_type == SCOPE_ACCOUNT_LIST:
            account_ids.update(grant.account_ids_json or [])
        elif grant.scope_type == SCOPE_CRM_REPORT:
            account_ids.update(grant.cached_account_ids_json or [])
    return AccountScope(all_accounts=False, account_ids=frozenset(account_ids))


async def list_accessible_account_ids(session: AsyncSession, *, tenant_id: str, user_id: str) -> AccountScope:
    user = await authz_repo.get_user(session, tenant_id=tenant_id, user_id=user_id)
    if user is None or not user.is_active:
        return NO_ACCESS
    if is_privileged_role(user.role):
        return FULL_ACCESS
    grants = await access_repo.list_user_grants(session, tenant_id=tenant_id, user_id=user_id)
    return _scope_from_grants(grants)


async def can_access_account(session: AsyncSession, *, tenant_id: str, user_id: str, account_id: str) -> bool:
    scope = await list_accessible_account_ids(session, tenant_id=tenant_id, user_id=user_id)
    return scope.allows(account_id)


def grant_payload(grant: UserAccountAccess) -> dict[str, Any]:
    return {
        "id": grant.id,
        "user_id": grant.user_id,
        "scope_type": grant.scope_type,
        "account_id": grant.account_id,
        "account_ids": list(grant.account_ids_json or []),
        "crm_provider": grant.crm_provider,
        "crm_report_id": grant.crm_report_id,
        "crm_report_name": grant.crm_report_name,
        "cached_account_ids": list(grant.cached_account_ids_json or []),
        "last_synced_at": _as_utc(grant.last_synced_at).isoformat() if grant.last_synced_at else None,
        "last_sync_error": grant.last_sync_error,
        "crm_cache_stale": is_crm_cache_stale(grant) if grant.scope_type == SCOPE_CRM_REPORT else None,
    }


def is_crm_cache_stale(grant: UserAccountAccess, now: datetime | None = None) -> bool:
    # Never-synced caches count as stale.
    synced_at = _as_utc(grant.last_synced_at)
    if synced_at is None:
        return True
    window = timedelta(hours=get_settings().crm_sync_stale_after_hours)
    return (now or _utc_now()) - synced_at > window


async def _require_tenant_accounts(session: AsyncSession, *, tenant_id: str, account_ids: list[str]) -> None:
    # Account ids are tenant-scoped data; anything outside the tenant is rejected before writing.
    found = await authz_repo.list_tenant_account_ids(session, tenant_id=tenant_id, account_ids=account_ids)
    reject_foreign_ids(account_ids, found, field="account_ids", message="Accounts not found in this tenant")


def _clean_ids(values: list[str] | None) -> list[str]:
    return list(dict.fromkeys(value.strip() for value in values or [] if value and value.strip()))


async def grant_account_access(
    session: AsyncSession,
    *,
    tenant_id: str,
    actor_id: str,
    user_id: str,
    scope_type: str,
    account_id: str | None = None,
    account_ids: list[str] | None = None,
    crm_provider: str | None = None,
    crm_report_id: str | None = None,
    crm_report_name: str | None = None,
    crm_client: CrmReportProvider | None = None,
) -> AccountGrantResult:
    """Create an account grant for a user.

    CRM report grants get a best-effort first sync; its failure is returned on
    the result and never fails the grant itself.
    """
    if scope_type not in ACCOUNT_SCOPE_TYPES:
        raise ValidationFailedError(
            "Unknown account scope type", details={"scope_type": scope_type, "allowed": list(ACCOUNT_SCOPE_TYPES)}
        )
    user = await authz_repo.get_user(session, tenant_id=tenant_id, user_id=user_id)
    if user is None:
        raise NotFoundError("User not found", details={"user_id": user_id})
    existing = await access_repo.list_user_grants(session, tenant_id=tenant_id, user_id=user_id)

    grant = UserAccountAccess(tenant_id=tenant_id, user_id=user_id, scope_type=scope_type, granted_by=actor_id)
    if scope_type == SCOPE_ALL_ACCOUNTS:
        if any(item.scope_type == SCOPE_ALL_ACCOUNTS for item in existing):
            raise ConflictError("User already has access to all accounts", details={"user_id": user_id})
    elif scope_type == SCOPE_SINGLE_ACCOUNT:
        if not account_id:
            raise ValidationFailedError("account_id is required for single_account grants")
        await _require_tenant_accounts(session, tenant_id=tenant_id, account_ids=[account_id])
        if any(item.scope_type == SCOPE_SINGLE_ACCOUNT and item.account_id == account_id for item in existing):
            raise ConflictError("Account already granted", details={"user_id": user_id, "account_id": account_id})
        grant.account_id = account_id
    elif scope_type == SCOPE_ACCOUNT_LIST:
        ids = _clean_ids(account_ids)
        if not ids:
            raise ValidationFailedError("account_ids must contain at least one account for account_list grants")
        await _require_tenant_accounts(session, tenant_id=tenant_id, account_ids=ids)
        grant.account_ids_json = ids
    else:
        if crm_provider not in CRM_PROVIDERS:
            raise ValidationFailedError(
                "crm_provider must be salesforce or hubspot", details={"crm_provider": crm_provider}
            )
        report_id = (crm_report_id or "").strip()
        if not report_id:
            raise ValidationFailedError("crm_report_id is required for crm_report grants")
        if any(
            item.scope_type == SCOPE_CRM_REPORT and item.crm_provider == crm_provider and item.crm_report_id == report_id
            for item in existing
        ):
            raise ConflictError(
                "CRM report already granted",
                details={"user_id": user_id, "crm_provider": crm_provider, "crm_report_id": report_id},
            )
        grant.crm_provider = crm_provider
        grant.crm_report_id = report_id
        grant.crm_report_name = crm_report_name
        grant.cached_account_ids_json = []

    session.add(grant)
    await session.flush()
    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_id=actor_id,
        event_type="authz.account_access.granted",
        resource_type="user",
        resource_id=user_id,
        metadata={
            "grant_id": grant.id,
            "scope_type": scope_type,
            "account_id": grant.account_id,
            "account_count": len(grant.account_ids_json or []),
            "crm_provider": grant.crm_provider,
            "crm_report_id": grant.crm_report_id,
        },
    )
    await session.commit()

    if scope_type != SCOPE_CRM_REPORT:
        return AccountGrantResult(grant=grant)
    try:
        result = await sync_crm_report_grant(
            session, tenant_id=tenant_id, grant_id=grant.id, crm_client=crm_client, actor_id=actor_id
        )
    except UpstreamDependencyError as exc:
        logger.warning("crm_initial_sync_failed tenant_id=%s grant_id=%s code=%s", tenant_id, grant.id, exc.code)
        refreshed = await access_repo.get_grant(session, tenant_id=tenant_id, grant_id=grant.id)
        return AccountGrantResult(
            grant=refreshed or grant,
            sync_failure=CrmSyncFailure(
                grant_id=grant.id,
                error_code=exc.code,
                message=exc.message,
                report_missing=isinstance(exc, CrmReportNotFoundError),
            ),
        )
    refreshed = await access_repo.get_grant(session, tenant_id=tenant_id, grant_id=grant.id)
    return AccountGrantResult(grant=refreshed or grant, sync=result)


async def update_account_list(
    session: AsyncSession,
    *,
    tenant_id: str,
    actor_id: str,
    grant_id: str,
    add: list[str] | None = None,
    remove: list[str] | None = None,
) -> UserAccountAccess:
    grant = await access_repo.get_grant(session, tenant_id=tenant_id, grant_id=grant_id)
    if grant is None:
        raise NotFoundError("Account access grant not found", details={"grant_id": grant_id})
    if grant.scope_type != SCOPE_ACCOUNT_LIST:
        raise ValidationFailedError(
            "Only account_list grants can be edited", details={"grant_id": grant_id, "scope_type": grant.scope_type}
        )
    to_add = _clean_ids(add)
    to_remove = set(_clean_ids(remove))
    if to_add:
        await _require_tenant_accounts(session, tenant_id=tenant_id, account_ids=to_add)
    current = list(grant.account_ids_json or [])
    updated = [account_id for account_id in dict.fromkeys(current + to_add) if account_id not in to_remove]
    if not updated:
        raise ValidationFailedError(
            "account_list grants must keep at least one account; revoke the grant instead",
            details={"grant_id": grant_id},
        )
    grant.account_ids_json = updated
    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_id=actor_id,
        event_type="authz.account_access.updated",
        resource_type="user",
        resource_id=grant.user_id,
        metadata={"grant_id": grant.id, "added": to_add, "removed": sorted(to_remove)},
    )
    await session.commit()
    return grant


async def revoke_account_access(session: AsyncSession, *, tenant_id: str, actor_id: str, grant_id: str) -> None:
    # Revocation is an immediate hard delete.
    grant = await access_repo.get_grant(session, tenant_id=tenant_id, grant_id=grant_id)
    if grant is None:
        raise NotFoundError("Account access grant not found", details={"grant_id": grant_id})
    user_id = grant.user_id
    scope_type = grant.scope_type
    await session.delete(grant)
    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_id=actor_id,
        event_type="authz.account_access.revoked",
        severity=SEVERITY_WARN,
        resource_type="user",
        resource_id=user_id,
        metadata={"grant_id": grant_id, "scope_type": scope_type},
    )
    await session.commit()


async def list_user_account_access(session: AsyncSession, *, tenant_id: str, user_id: str) -> list[UserAccountAccess]:
    return await access_repo.list_user_grants(session, tenant_id=tenant_id, user_id=user_id)


async def sync_crm_report_grant(
    session: AsyncSession,
    *,
    tenant_id: str,
    grant_id: str,
    crm_client: CrmReportProvider | None = None,
    actor_id: str | None = None,
) -> CrmSyncResult:
    """Refresh a CRM report grant's cached membership.

    On success ``cached_account_ids`` is replaced wholesale and ``last_synced_at``
    stamped in a single statement. On failure both stay untouched, the failure
    is recorded on the grant and the upstream error is re-raised.
    """
    grant = await access_repo.get_grant(session, tenant_id=tenant_id, grant_id=grant_id)
    if grant is None:
        raise NotFoundError("Account access grant not found", details={"grant_id": grant_id})
    if grant.scope_type != SCOPE_CRM_REPORT:
        raise ValidationFailedError("Grant is not a crm_report grant", details={"grant_id": grant_id})
    provider = grant.crm_provider or ""
    report_id = grant.crm_report_id or ""
    # Release the read transaction before the network call.
    await session.commit()

    client = crm_client or get_crm_provider()
    try:
        crm_ids = await client.fetch_report_members(provider, report_id)
    except UpstreamDependencyError as exc:
        await access_repo.mark_sync_failed(
            session, tenant_id=tenant_id, grant_id=grant_id, error_code=exc.code, failed_at=_utc_now()
        )
        await record_event(
            session=session,
            tenant_id=tenant_id,
            actor_type="user" if actor_id else "system",
            actor_id=actor_id,
            event_type="crm.report_sync.failed",
            outcome="failure",
            severity=SEVERITY_WARN,
            resource_type="account_access",
            resource_id=grant_id,
            metadata={"crm_provider": provider, "crm_report_id": report_id},
            error_code=exc.code,
        )
        await session.commit()
        logger.warning(
            "crm_report_sync_failed tenant_id=%s grant_id=%s provider=%s code=%s",
            tenant_id,
            grant_id,
            provider,
            exc.code,
        )
        raise

    account_ids = await authz_repo.match_crm_account_ids(
        session, tenant_id=tenant_id, provider=provider, crm_ids=crm_ids
    )
    synced_at = _utc_now()
    replaced = await access_repo.replace_cached_account_ids(
        session, tenant_id=tenant_id, grant_id=grant_id, account_ids=account_ids, synced_at=synced_at
    )
    if not replaced:
        await session.rollback()
        raise NotFoundError("Account access grant not found", details={"grant_id": grant_id})
    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_type="user" if actor_id else "system",
        actor_id=actor_id,
        event_type="crm.report_sync.succeeded",
        resource_type="account_access",
        resource_id=grant_id,
        metadata={
            "crm_provider": provider,
            "crm_report_id": report_id,
            "crm_member_count": len(crm_ids),
            "matched_account_count": len(account_ids),
        },
    )
    await session.commit()
    logger.info(
        "crm_report_synced tenant_id=%s grant_id=%s members=%s matched=%s",
        tenant_id,
        grant_id,
        len(crm_ids),
        len(account_ids),
    )
    return CrmSyncResult(
        grant_id=grant_id,
        crm_member_count=len(crm_ids),
        account_ids=tuple(account_ids),
        synced_at=synced_at,
    )


async def sync_all_crm_reports(
    session: AsyncSession,
    *,
    tenant_id: str,
    crm_client: CrmReportProvider | None = None,
    stale_only: bool = False,
) -> CrmSyncSummary:
    # Scheduled sync: one failing grant is logged and skipped, the rest still refresh.
    synced_before = None
    if stale_only:
        synced_before = _utc_now() - timedelta(hours=get_settings().crm_sync_stale_after_hours)
    grants = await access_repo.list_crm_grants(session, tenant_id=tenant_id, synced_before=synced_before)
    grant_ids = [grant.id for grant in grants]
    client = crm_client or get_crm_provider()
    summary = CrmSyncSummary(attempted=len(grant_ids))
    for grant_id in grant_ids:
        try:
            summary.succeeded.append(
                await sync_crm_report_grant(session, tenant_id=tenant_id, grant_id=grant_id, crm_client=client)
            )
        except (UpstreamDependencyError, NotFoundError) as exc:
            summary.failed.append(
                CrmSyncFailure(
                    grant_id=grant_id,
                    error_code=exc.code,
                    message=exc.message,
                    report_missing=isinstance(exc, CrmReportNotFoundError),
                )
            )
    logger.info(
        "crm_report_sync_batch tenant_id=%s attempted=%s succeeded=%s failed=%s",
        tenant_id,
        summary.attempted,
        len(summary.succeeded),
        len(summary.failed),
    )
    return summary
