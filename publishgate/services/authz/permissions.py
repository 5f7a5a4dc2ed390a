from __future__ import annotations

from dataclasses import dataclass
import logging
import time

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from publishgate.core.config import get_settings
from publishgate.core.errors import ConflictError, NotFoundError
from publishgate.domain.models import UserPermission
from publishgate.persistence.repos import authz as authz_repo
from publishgate.services.audit import SEVERITY_WARN, record_event
from publishgate.services.authz.catalog import (
    PERMISSION_KINDS,
    is_privileged_role,
    normalize_permission,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EffectivePermissions:
    user_id: str
    role: str | None
    privileged: bool
    permissions: frozenset[str]

    def allows(self, permission: str) -> bool:
        return self.privileged or permission in self.permissions


_permission_cache: dict[tuple[str, str], tuple[float, EffectivePermissions | None]] = {}
# Bumped on every invalidation; a check only stores its result if no invalidation ran while it read.
_permission_cache_generations: dict[str, int] = {}


async def _compute_effective_permissions(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
) -> EffectivePermissions | None:
    user = await authz_repo.get_user(session, tenant_id=tenant_id, user_id=user_id)
    if user is None or not user.is_active:
        return None
    if is_privileged_role(user.role):
        # Owner/admin hold every permission regardless of profile or explicit grants.
        return EffectivePermissions(
            user_id=user_id,
            role=user.role,
            privileged=True,
            permissions=frozenset(PERMISSION_KINDS),
        )
    granted: set[str] = set()
    profile = await authz_repo.get_assigned_profile(session, tenant_id=tenant_id, user_id=user_id)
    if profile is not None:
        granted.update(profile.permissions_json or [])
    granted.update(await authz_repo.list_explicit_permissions(session, tenant_id=tenant_id, user_id=user_id))
    return EffectivePermissions(
        user_id=user_id,
        role=user.role,
        privileged=False,
        permissions=frozenset(granted & set(PERMISSION_KINDS)),
    )


async def get_effective_permissions(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
) -> EffectivePermissions | None:
    # Unknown or inactive users resolve to None and hold nothing.
    ttl = get_settings().authz_permission_cache_ttl_s
    key = (tenant_id, user_id)
    now = time.monotonic()
    if ttl > 0:
        cached = _permission_cache.get(key)
        if cached and cached[0] > now:
            return cached[1]
    generation = _permission_cache_generations.get(tenant_id, 0)
    effective = await _compute_effective_permissions(session, tenant_id=tenant_id, user_id=user_id)
    if ttl > 0 and _permission_cache_generations.get(tenant_id, 0) == generation:
        _permission_cache[key] = (now + ttl, effective)
    return effective


async def has_permission(session: AsyncSession, *, tenant_id: str, user_id: str, permission: str) -> bool:
    effective = await get_effective_permissions(session, tenant_id=tenant_id, user_id=user_id)
    if effective is None:
        return False
    return effective.allows(permission)


def invalidate_permission_cache(tenant_id: str, user_id: str | None = None) -> None:
    # Drop one user's entry, or every entry of the tenant when user_id is None.
    _permission_cache_generations[tenant_id] = _permission_cache_generations.get(tenant_id, 0) + 1
    if user_id is not None:
        _permission_cache.pop((tenant_id, user_id), None)
        return
    for key in [key for key in _permission_cache if key[0] == tenant_id]:
        _permission_cache.pop(key, None)


def reset_permission_cache() -> None:
    _permission_cache.clear()
    _permission_cache_generations.clear()


async def record_permission_denied(
    *,
    tenant_id: str,
    actor_id: str | None,
    actor_role: str | None = None,
    permission: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
) -> None:
    # Denials are audited in their own transaction so they survive the caller's rollback.
    await record_event(
        tenant_id=tenant_id,
        actor_id=actor_id,
        actor_role=actor_role,
        event_type="authz.permission.denied",
        outcome="denied",
        severity=SEVERITY_WARN,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        metadata={"permission": permission},
        error_code="FORBIDDEN",
    )


async def grant_permission(
    session: AsyncSession,
    *,
    tenant_id: str,
    actor_id: str,
    user_id: str,
    permission: str,
) -> UserPermission:
    normalized = normalize_permission(permission)
    user = await authz_repo.get_user(session, tenant_id=tenant_id, user_id=user_id)
    if user is None:
        raise NotFoundError("User not found", details={"user_id": user_id})
    existing = await authz_repo.get_explicit_permission(
        session, tenant_id=tenant_id, user_id=user_id, permission=normalized
    )
    if existing is not None:
        raise ConflictError("Permission already granted", details={"user_id": user_id, "permission": normalized})

    row = UserPermission(tenant_id=tenant_id, user_id=user_id, permission=normalized, granted_by=actor_id)
    session.add(row)
    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_id=actor_id,
        event_type="authz.permission.granted",
        resource_type="user",
        resource_id=user_id,
        metadata={"permission": normalized},
    )
    try:
        await session.commit()
    except IntegrityError as exc:
        # A concurrent grant won the unique (user, permission) constraint.
        await session.rollback()
        raise ConflictError(
            "Permission already granted", details={"user_id": user_id, "permission": normalized}
        ) from exc
    invalidate_permission_cache(tenant_id, user_id)
    logger.info("permission_granted tenant_id=%s user_id=%s permission=%s", tenant_id, user_id, normalized)
    return row


async def revoke_permission(
    session: AsyncSession,
    *,
    tenant_id: str,
    actor_id: str,
    user_id: str,
    permission: str,
) -> None:
    normalized = normalize_permission(permission)
    existing = await authz_repo.get_explicit_permission(
        session, tenant_id=tenant_id, user_id=user_id, permission=normalized
    )
    if existing is None:
        raise NotFoundError("Permission grant not found", details={"user_id": user_id, "permission": normalized})
    await session.delete(existing)
    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_id=actor_id,
        event_type="authz.permission.revoked",
        resource_type="user",
        resource_id=user_id,
        metadata={"permission": normalized},
    )
    await session.commit()
    invalidate_permission_cache(tenant_id, user_id)
    logger.info("permission_revoked tenant_id=%s user_id=%s permission=%s", tenant_id, user_id, normalized)


async def get_permission_matrix(session: AsyncSession, *, tenant_id: str) -> list[dict]:
    # List every user with base role, assigned profile key and explicit grants for admin views.
    users = await authz_repo.list_users(session, tenant_id=tenant_id)
    grants = await authz_repo.list_tenant_explicit_permissions(session, tenant_id=tenant_id)
    profiles = {profile.id: profile for profile in await authz_repo.list_role_profiles(session, tenant_id=tenant_id)}
    assignments = {
        assignment.user_id: profiles.get(assignment.role_profile_id)
        for assignment in await authz_repo.list_assignments(session, tenant_id=tenant_id)
    }
    explicit_by_user: dict[str, list[str]] = {}
    for grant in grants:
        explicit_by_user.setdefault(grant.user_id, []).append(grant.permission)

    matrix: list[dict] = []
    for user in users:
        profile = assignments.get(user.id)
        matrix.append(
            {
                "user_id": user.id,
                "email": user.email,
                "role": user.role,
                "is_active": user.is_active,
                "privileged": is_privileged_role(user.role),
                "role_profile_key": profile.key if profile is not None else None,
                "explicit_permissions": sorted(explicit_by_user.get(user.id, [])),
            }
        )
    return matrix
