from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from publishgate.domain.models import (
    Account,
    AIUsageLimit,
    RoleProfile,
    User,
    UserPermission,
    UserRoleAssignment,
)
from publishgate.persistence.guards import require_tenant_id, tenant_id_set, tenant_predicate


async def get_user(session: AsyncSession, *, tenant_id: str, user_id: str) -> User | None:
    # Users are tenant-scoped; an id from another tenant resolves to None.
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(User).where(tenant_predicate(User, tenant_id), User.id == user_id)
    )
    return result.scalar_one_or_none()


async def list_users(session: AsyncSession, *, tenant_id: str) -> list[User]:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(User).where(tenant_predicate(User, tenant_id)).order_by(User.created_at.asc(), User.id.asc())
    )
    return list(result.scalars().all())


async def list_active_user_ids(session: AsyncSession, *, tenant_id: str, user_ids: list[str]) -> set[str]:
    # Filter candidate ids down to active users of the tenant.
    require_tenant_id(tenant_id)
    if not user_ids:
        return set()
    result = await session.execute(
        select(User.id).where(
            tenant_id_set(User, tenant_id, User.id, user_ids),
            User.is_active.is_(True),
        )
    )
    return set(result.scalars().all())


async def list_tenant_account_ids(session: AsyncSession, *, tenant_id: str, account_ids: list[str]) -> set[str]:
    # Return the subset of ids that are accounts of this tenant.
    require_tenant_id(tenant_id)
    if not account_ids:
        return set()
    result = await session.execute(
        select(Account.id).where(tenant_id_set(Account, tenant_id, Account.id, account_ids))
    )
    return set(result.scalars().all())


async def match_crm_account_ids(
    session: AsyncSession,
    *,
    tenant_id: str,
    provider: str,
    crm_ids: list[str],
) -> list[str]:
    # Map external CRM record ids onto local account ids within the tenant.
    require_tenant_id(tenant_id)
    if not crm_ids:
        return []
    column = Account.salesforce_id if provider == "salesforce" else Account.hubspot_id
    result = await session.execute(
        select(Account.id).where(tenant_id_set(Account, tenant_id, column, crm_ids))
    )
    return sorted(set(result.scalars().all()))


async def list_role_profiles(session: AsyncSession, *, tenant_id: str) -> list[RoleProfile]:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(RoleProfile)
        .where(tenant_predicate(RoleProfile, tenant_id))
        .order_by(RoleProfile.is_preset.desc(), RoleProfile.name.asc())
    )
    return list(result.scalars().all())


async def get_role_profile(session: AsyncSession, *, tenant_id: str, role_profile_id: str) -> RoleProfile | None:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(RoleProfile).where(tenant_predicate(RoleProfile, tenant_id), RoleProfile.id == role_profile_id)
    )
    return result.scalar_one_or_none()


async def get_role_profile_by_key(session: AsyncSession, *, tenant_id: str, key: str) -> RoleProfile | None:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(RoleProfile).where(tenant_predicate(RoleProfile, tenant_id), RoleProfile.key == key)
    )
    return result.scalar_one_or_none()


async def get_assignment(session: AsyncSession, *, tenant_id: str, user_id: str) -> UserRoleAssignment | None:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(UserRoleAssignment).where(
            tenant_predicate(UserRoleAssignment, tenant_id),
            UserRoleAssignment.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


async def get_assigned_profile(session: AsyncSession, *, tenant_id: str, user_id: str) -> RoleProfile | None:
    # Join through the assignment so a profile of another tenant can never be returned.
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(RoleProfile)
        .join(UserRoleAssignment, UserRoleAssignment.role_profile_id == RoleProfile.id)
        .where(
            tenant_predicate(UserRoleAssignment, tenant_id),
            tenant_predicate(RoleProfile, tenant_id),
            UserRoleAssignment.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


async def list_assigned_user_ids(session: AsyncSession, *, tenant_id: str, role_profile_ids: list[str]) -> set[str]:
    # Return active users holding any of the given profiles.
    require_tenant_id(tenant_id)
    if not role_profile_ids:
        return set()
    result = await session.execute(
        select(UserRoleAssignment.user_id)
        .join(User, User.id == UserRoleAssignment.user_id)
        .where(
            tenant_predicate(UserRoleAssignment, tenant_id),
            UserRoleAssignment.role_profile_id.in_(role_profile_ids),
            User.is_active.is_(True),
        )
    )
    return set(result.scalars().all())


async def list_assignments(session: AsyncSession, *, tenant_id: str) -> list[UserRoleAssignment]:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(UserRoleAssignment).where(tenant_predicate(UserRoleAssignment, tenant_id))
    )
    return list(result.scalars().all())


async def delete_assignments_for_profile(session: AsyncSession, *, tenant_id: str, role_profile_id: str) -> list[str]:
    # Remove every assignment to the profile and return the affected user ids.
    require_tenant_id(tenant_id)
    predicate = (
        tenant_predicate(UserRoleAssignment, tenant_id),
        UserRoleAssignment.role_profile_id == role_profile_id,
    )
    result = await session.execute(select(UserRoleAssignment.user_id).where(*predicate))
    user_ids = list(result.scalars().all())
    await session.execute(delete(UserRoleAssignment).where(*predicate))
    return user_ids


async def list_explicit_permissions(session: AsyncSession, *, tenant_id: str, user_id: str) -> list[str]:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(UserPermission.permission).where(
            tenant_predicate(UserPermission, tenant_id),
            UserPermission.user_id == user_id,
        )
    )
    return list(result.scalars().all())


async def list_tenant_explicit_permissions(session: AsyncSession, *, tenant_id: str) -> list[UserPermission]:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(UserPermission)
        .where(tenant_predicate(UserPermission, tenant_id))
        .order_by(UserPermission.user_id.asc(), UserPermission.permission.asc())
    )
    return list(result.scalars().all())


async def get_explicit_permission(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    permission: str,
) -> UserPermission | None:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(UserPermission).where(
            tenant_predicate(UserPermission, tenant_id),
            UserPermission.user_id == user_id,
            UserPermission.permission == permission,
        )
    )
    return result.scalar_one_or_none()


async def get_usage_limit(session: AsyncSession, *, tenant_id: str, user_id: str) -> AIUsageLimit | None:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(AIUsageLimit).where(tenant_predicate(AIUsageLimit, tenant_id), AIUsageLimit.user_id == user_id)
    )
    return result.scalar_one_or_none()
