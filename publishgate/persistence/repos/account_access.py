from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from publishgate.domain.models import UserAccountAccess
from publishgate.persistence.guards import require_tenant_id, tenant_predicate


async def list_user_grants(session: AsyncSession, *, tenant_id: str, user_id: str) -> list[UserAccountAccess]:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(UserAccountAccess)
        .where(tenant_predicate(UserAccountAccess, tenant_id), UserAccountAccess.user_id == user_id)
        .order_by(UserAccountAccess.created_at.asc(), UserAccountAccess.id.asc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def get_grant(session: AsyncSession, *, tenant_id: str, grant_id: str) -> UserAccountAccess | None:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(UserAccountAccess)
        .where(tenant_predicate(UserAccountAccess, tenant_id), UserAccountAccess.id == grant_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_crm_grants(
    session: AsyncSession,
    *,
    tenant_id: str,
    synced_before: datetime | None = None,
) -> list[UserAccountAccess]:
    # List CRM report grants, optionally only those never synced or synced before the cutoff.
    require_tenant_id(tenant_id)
    stmt = select(UserAccountAccess).where(
        tenant_predicate(UserAccountAccess, tenant_id),
        UserAccountAccess.scope_type == "crm_report",
    )
    if synced_before is not None:
        stmt = stmt.where(
            or_(UserAccountAccess.last_synced_at.is_(None), UserAccountAccess.last_synced_at < synced_before)
        )
    result = await session.execute(
        stmt.order_by(UserAccountAccess.id.asc()).execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def replace_cached_account_ids(
    session: AsyncSession,
    *,
    tenant_id: str,
    grant_id: str,
    account_ids: list[str],
    synced_at: datetime,
) -> bool:
    """Swap the cached CRM membership in one UPDATE statement.

    Readers see either the previous snapshot or the new one. Concurrent syncs
    resolve last-writer-wins. Returns False when the grant disappeared mid-sync.
    """
    require_tenant_id(tenant_id)
    result = await session.execute(
        update(UserAccountAccess)
        .where(tenant_predicate(UserAccountAccess, tenant_id), UserAccountAccess.id == grant_id)
        .values(
            cached_account_ids_json=account_ids,
            last_synced_at=synced_at,
            last_sync_error=None,
            last_sync_failed_at=None,
            version=UserAccountAccess.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def mark_sync_failed(
    session: AsyncSession,
    *,
    tenant_id: str,
    grant_id: str,
    error_code: str,
    failed_at: datetime,
) -> None:
    # Record the failure without touching the cached membership or its sync timestamp.
    require_tenant_id(tenant_id)
    await session.execute(
        update(UserAccountAccess)
        .where(tenant_predicate(UserAccountAccess, tenant_id), UserAccountAccess.id == grant_id)
        .values(last_sync_error=error_code, last_sync_failed_at=failed_at)
        .execution_options(synchronize_session=False)
    )


async def delete_user_grants(session: AsyncSession, *, tenant_id: str, user_id: str) -> int:
    require_tenant_id(tenant_id)
    result = await session.execute(
        delete(UserAccountAccess).where(
            tenant_predicate(UserAccountAccess, tenant_id),
            UserAccountAccess.user_id == user_id,
        )
    )
    return int(result.rowcount or 0)


async def list_tenants_with_crm_grants(session: AsyncSession) -> list[str]:
    # Cross-tenant read for the scheduled sync job only.
    result = await session.execute(
        select(UserAccountAccess.tenant_id)
        .where(UserAccountAccess.scope_type == "crm_report")
        .distinct()
        .order_by(UserAccountAccess.tenant_id.asc())
    )
    return list(result.scalars().all())
