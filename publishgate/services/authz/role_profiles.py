from __future__ import annotations

from dataclasses import dataclass, field
import logging
import re
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from publishgate.core.errors import ConflictError, NotFoundError, ValidationFailedError
from publishgate.domain.models import AIUsageLimit, RoleProfile, UserAccountAccess, UserRoleAssignment
from publishgate.persistence.repos import account_access as access_repo
from publishgate.persistence.repos import authz as authz_repo
from publishgate.services.audit import SEVERITY_WARN, record_event
from publishgate.services.authz.catalog import (
    PERMISSION_KINDS,
    POLICY_SOURCE_ADMIN_OVERRIDE,
    POLICY_SOURCE_ASSIGNED_PROFILE,
    POLICY_SOURCE_FALLBACK,
    PRESET_ROLE_PROFILES,
    SCOPE_ACCOUNT_LIST,
    SCOPE_ALL_ACCOUNTS,
    SCOPE_SINGLE_ACCOUNT,
    TEMPLATE_SCOPE_TYPES,
    UsageCaps,
    fallback_story_flags,
    is_privileged_role,
    normalize_permissions,
)
from publishgate.services.authz.permissions import get_effective_permissions, invalidate_permission_cache


logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]{1,39}$")
_CAP_FIELDS = (
    "max_tokens_per_day",
    "max_tokens_per_month",
    "max_requests_per_day",
    "max_requests_per_month",
    "max_stories_per_month",
)
_FLAG_FIELDS = (
    "can_access_anonymous_stories",
    "can_generate_anonymous_stories",
    "can_access_named_stories",
    "can_generate_named_stories",
)
_UPDATABLE_FIELDS = frozenset(
    {"key", "name", "description", "permissions", "default_account_scope_type", "default_account_ids"}
    | set(_CAP_FIELDS)
    | set(_FLAG_FIELDS)
)


@dataclass
class RoleProfileInput:
    key: str
    name: str
    description: str | None = None
    permissions: list[str] = field(default_factory=list)
    can_access_anonymous_stories: bool = True
    can_generate_anonymous_stories: bool = True
    can_access_named_stories: bool = False
    can_generate_named_stories: bool = False
    default_account_scope_type: str = SCOPE_ALL_ACCOUNTS
    default_account_ids: list[str] = field(default_factory=list)
    max_tokens_per_day: int | None = None
    max_tokens_per_month: int | None = None
    max_requests_per_day: int | None = None
    max_requests_per_month: int | None = None
    max_stories_per_month: int | None = None


@dataclass(frozen=True)
class EffectiveRolePolicy:
    user_id: str
    role: str
    role_profile_id: str | None
    role_profile_key: str | None
    permissions: tuple[str, ...]
    flags: dict[str, bool]
    caps: dict[str, int | None]
    default_account_scope_type: str
    default_account_ids: tuple[str, ...]
    source: str


def _normalize_key(key: str) -> str:
    normalized = (key or "").strip().upper()
    if not _KEY_PATTERN.match(normalized):
        raise ValidationFailedError(
            "Role profile key must be 2-40 characters of A-Z, 0-9 or underscore and start with a letter",
            details={"key": key},
        )
    return normalized


def _validate_caps(values: dict[str, Any]) -> None:
    for name in _CAP_FIELDS:
        value = values.get(name)
        if value is not None and (not isinstance(value, int) or isinstance(value, bool) or value < 0):
            raise ValidationFailedError(f"{name} must be a non-negative integer or null", details={name: value})


def _validate_scope_template(scope_type: str, account_ids: list[str]) -> None:
    if scope_type not in TEMPLATE_SCOPE_TYPES:
        raise ValidationFailedError(
            "default_account_scope_type must be one of all_accounts, single_account, account_list",
            details={"default_account_scope_type": scope_type},
        )
    if scope_type == SCOPE_SINGLE_ACCOUNT and len(account_ids) != 1:
        raise ValidationFailedError(
            "single_account scope templates need exactly one account id",
            details={"default_account_ids": account_ids},
        )


def _caps_of(profile: RoleProfile) -> UsageCaps:
    return UsageCaps(**{name: getattr(profile, name) for name in _CAP_FIELDS})


def role_profile_payload(profile: RoleProfile) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": profile.id,
        "key": profile.key,
        "name": profile.name,
        "description": profile.description,
        "is_preset": profile.is_preset,
        "permissions": list(profile.permissions_json or []),
        "default_account_scope_type": profile.default_account_scope_type,
        "default_account_ids": list(profile.default_account_ids_json or []),
    }
    payload.update({name: getattr(profile, name) for name in _FLAG_FIELDS})
    payload.update(_caps_of(profile).as_dict())
    return payload


async def ensure_preset_roles(session: AsyncSession, *, tenant_id: str) -> list[RoleProfile]:
    """Seed the preset role profiles for a tenant.

    Existing presets are left untouched, so repeated calls are no-ops and admin
    edits to preset names or permission bundles survive. Two concurrent callers
    may race on the unique (tenant, key) constraint; the loser re-reads.
    """
    existing = {profile.key for profile in await authz_repo.list_role_profiles(session, tenant_id=tenant_id)}
    missing = [preset for preset in PRESET_ROLE_PROFILES if preset.key not in existing]
    if missing:
        for preset in missing:
            session.add(
                RoleProfile(
                    tenant_id=tenant_id,
                    key=preset.key,
                    name=preset.name,
                    description=preset.description,
                    is_preset=True,
                    permissions_json=list(preset.permissions),
                    default_account_scope_type=preset.default_account_scope_type,
                    default_account_ids_json=[],
                    **preset.flags.as_dict(),
                    **preset.caps.as_dict(),
                )
            )
        try:
            await session.commit()
            logger.info("role_presets_seeded tenant_id=%s keys=%s", tenant_id, ",".join(p.key for p in missing))
        except IntegrityError:
            await session.rollback()
            logger.info("role_presets_seed_race tenant_id=%s", tenant_id)
    return await authz_repo.list_role_profiles(session, tenant_id=tenant_id)


async def list_role_profiles(session: AsyncSession, *, tenant_id: str) -> list[RoleProfile]:
    return await ensure_preset_roles(session, tenant_id=tenant_id)


async def _get_profile_or_404(session: AsyncSession, *, tenant_id: str, role_profile_id: str) -> RoleProfile:
    profile = await authz_repo.get_role_profile(session, tenant_id=tenant_id, role_profile_id=role_profile_id)
    if profile is None:
        raise NotFoundError("Role profile not found", details={"role_profile_id": role_profile_id})
    return profile


async def create_role_profile(
    session: AsyncSession,
    *,
    tenant_id: str,
    actor_id: str,
    data: RoleProfileInput,
) -> RoleProfile:
    key = _normalize_key(data.key)
    name = (data.name or "").strip()
    if not name:
        raise ValidationFailedError("Role profile name is required", details={"name": data.name})
    permissions = normalize_permissions(data.permissions)
    _validate_caps(vars(data))
    _validate_scope_template(data.default_account_scope_type, data.default_account_ids)
    if await authz_repo.get_role_profile_by_key(session, tenant_id=tenant_id, key=key) is not None:
        raise ConflictError("Role profile key already exists", details={"key": key})

    profile = RoleProfile(
        tenant_id=tenant_id,
        key=key,
        name=name,
        description=data.description,
        is_preset=False,
        permissions_json=permissions,
        default_account_scope_type=data.default_account_scope_type,
        default_account_ids_json=list(dict.fromkeys(data.default_account_ids)),
        **{name_: getattr(data, name_) for name_ in _FLAG_FIELDS},
        **{name_: getattr(data, name_) for name_ in _CAP_FIELDS},
    )
    session.add(profile)
    await session.flush()
    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_id=actor_id,
        event_type="authz.role_profile.created",
        resource_type="role_profile",
        resource_id=profile.id,
        metadata={"key": key, "permissions": permissions},
    )
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError("Role profile key already exists", details={"key": key}) from exc
    return profile


async def update_role_profile(
    session: AsyncSession,
    *,
    tenant_id: str,
    actor_id: str,
    role_profile_id: str,
    changes: dict[str, Any],
) -> RoleProfile:
    unknown = set(changes) - _UPDATABLE_FIELDS
    if unknown:
        raise ValidationFailedError("Unknown role profile fields", details={"fields": sorted(unknown)})
    profile = await _get_profile_or_404(session, tenant_id=tenant_id, role_profile_id=role_profile_id)

    if "key" in changes:
        key = _normalize_key(changes["key"])
        if profile.is_preset and key != profile.key:
            raise ValidationFailedError("Preset role keys cannot be changed", details={"key": profile.key})
        if key != profile.key:
            if await authz_repo.get_role_profile_by_key(session, tenant_id=tenant_id, key=key) is not None:
                raise ConflictError("Role profile key already exists", details={"key": key})
            profile.key = key
    if "name" in changes:
        name = (changes["name"] or "").strip()
        if not name:
            raise ValidationFailedError("Role profile name is required", details={"name": changes["name"]})
        profile.name = name
    if "description" in changes:
        profile.description = changes["description"]
    if "permissions" in changes:
        profile.permissions_json = normalize_permissions(changes["permissions"] or [])
    scope_type = changes.get("default_account_scope_type", profile.default_account_scope_type)
    account_ids = changes.get("default_account_ids", profile.default_account_ids_json or [])
    _validate_scope_template(scope_type, list(account_ids))
    profile.default_account_scope_type = scope_type
    profile.default_account_ids_json = list(dict.fromkeys(account_ids))
    _validate_caps(changes)
    for name in _CAP_FIELDS + _FLAG_FIELDS:
        if name in changes:
            setattr(profile, name, changes[name])

    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_id=actor_id,
        event_type="authz.role_profile.updated",
        resource_type="role_profile",
        resource_id=profile.id,
        metadata={"key": profile.key, "fields": sorted(changes)},
    )
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError("Role profile key already exists", details={"key": changes.get("key")}) from exc
    invalidate_permission_cache(tenant_id)
    return profile


async def delete_role_profile(
    session: AsyncSession,
    *,
    tenant_id: str,
    actor_id: str,
    role_profile_id: str,
) -> list[str]:
    """Delete a custom profile together with every assignment to it.

    Assignments and the profile go in one transaction, so a concurrent
    permission check sees either the old profile or no assignment at all.
    Returns the ids of users that lost their assignment.
    """
    profile = await _get_profile_or_404(session, tenant_id=tenant_id, role_profile_id=role_profile_id)
    if profile.is_preset:
        raise ValidationFailedError("Preset role profiles cannot be deleted", details={"key": profile.key})
    affected = await authz_repo.delete_assignments_for_profile(
        session, tenant_id=tenant_id, role_profile_id=profile.id
    )
    await session.delete(profile)
    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_id=actor_id,
        event_type="authz.role_profile.deleted",
        severity=SEVERITY_WARN,
        resource_type="role_profile",
        resource_id=role_profile_id,
        metadata={"key": profile.key, "unassigned_user_ids": affected},
    )
    await session.commit()
    invalidate_permission_cache(tenant_id)
    logger.info(
        "role_profile_deleted tenant_id=%s role_profile_id=%s unassigned=%s",
        tenant_id,
        role_profile_id,
        len(affected),
    )
    return affected


async def _sync_usage_limit(session: AsyncSession, *, tenant_id: str, user_id: str, caps: UsageCaps) -> None:
    limit = await authz_repo.get_usage_limit(session, tenant_id=tenant_id, user_id=user_id)
    if limit is None:
        session.add(AIUsageLimit(tenant_id=tenant_id, user_id=user_id, **caps.as_dict()))
        return
    for name, value in caps.as_dict().items():
        setattr(limit, name, value)


async def _apply_default_account_scope(
    session: AsyncSession,
    *,
    tenant_id: str,
    actor_id: str,
    user_id: str,
    profile: RoleProfile,
) -> None:
    # Replace the user's account grants with the profile's scope template.
    await access_repo.delete_user_grants(session, tenant_id=tenant_id, user_id=user_id)
    scope_type = profile.default_account_scope_type
    if scope_type == SCOPE_ALL_ACCOUNTS:
        session.add(
            UserAccountAccess(tenant_id=tenant_id, user_id=user_id, scope_type=scope_type, granted_by=actor_id)
        )
        return
    valid_ids = await authz_repo.list_tenant_account_ids(
        session, tenant_id=tenant_id, account_ids=list(profile.default_account_ids_json or [])
    )
    account_ids = [account_id for account_id in profile.default_account_ids_json or [] if account_id in valid_ids]
    if not account_ids:
        return
    if scope_type == SCOPE_SINGLE_ACCOUNT:
        session.add(
            UserAccountAccess(
                tenant_id=tenant_id,
                user_id=user_id,
                scope_type=scope_type,
                account_id=account_ids[0],
                granted_by=actor_id,
            )
        )
        return
    session.add(
        UserAccountAccess(
            tenant_id=tenant_id,
            user_id=user_id,
            scope_type=SCOPE_ACCOUNT_LIST,
            account_ids_json=account_ids,
            granted_by=actor_id,
        )
    )


async def assign_role_profile(
    session: AsyncSession,
    *,
    tenant_id: str,
    actor_id: str,
    user_id: str,
    role_profile_id: str,
    reset_account_scope: bool = False,
) -> UserRoleAssignment:
    # Both lookups are tenant-scoped, so a profile of another tenant is rejected here.
    profile = await authz_repo.get_role_profile(session, tenant_id=tenant_id, role_profile_id=role_profile_id)
    if profile is None:
        raise ValidationFailedError(
            "Role profile does not belong to this tenant", details={"role_profile_id": role_profile_id}
        )
    user = await authz_repo.get_user(session, tenant_id=tenant_id, user_id=user_id)
    if user is None:
        raise NotFoundError("User not found", details={"user_id": user_id})

    assignment = await authz_repo.get_assignment(session, tenant_id=tenant_id, user_id=user_id)
    previous_profile_id = assignment.role_profile_id if assignment is not None else None
    if assignment is None:
        assignment = UserRoleAssignment(
            tenant_id=tenant_id, user_id=user_id, role_profile_id=profile.id, assigned_by=actor_id
        )
        session.add(assignment)
    else:
        assignment.role_profile_id = profile.id
        assignment.assigned_by = actor_id
    await _sync_usage_limit(session, tenant_id=tenant_id, user_id=user_id, caps=_caps_of(profile))
    if reset_account_scope:
        await _apply_default_account_scope(
            session, tenant_id=tenant_id, actor_id=actor_id, user_id=user_id, profile=profile
        )
    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_id=actor_id,
        event_type="authz.role_profile.assigned",
        resource_type="user",
        resource_id=user_id,
        metadata={
            "role_profile_id": profile.id,
            "role_profile_key": profile.key,
            "previous_role_profile_id": previous_profile_id,
            "reset_account_scope": reset_account_scope,
        },
    )
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError("Role assignment changed concurrently", details={"user_id": user_id}) from exc
    invalidate_permission_cache(tenant_id, user_id)
    return assignment


async def unassign_role_profile(session: AsyncSession, *, tenant_id: str, actor_id: str, user_id: str) -> None:
    assignment = await authz_repo.get_assignment(session, tenant_id=tenant_id, user_id=user_id)
    if assignment is None:
        raise NotFoundError("Role assignment not found", details={"user_id": user_id})
    role_profile_id = assignment.role_profile_id
    await session.delete(assignment)
    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_id=actor_id,
        event_type="authz.role_profile.unassigned",
        resource_type="user",
        resource_id=user_id,
        metadata={"role_profile_id": role_profile_id},
    )
    await session.commit()
    invalidate_permission_cache(tenant_id, user_id)


async def get_effective_role_policy(session: AsyncSession, *, tenant_id: str, user_id: str) -> EffectiveRolePolicy:
    """Merged view of what a user may do, for settings screens and usage metering.

    Permissions always agree with ``has_permission``; the profile, when
    present, supplies story flags, caps and the account scope template.
    """
    user = await authz_repo.get_user(session, tenant_id=tenant_id, user_id=user_id)
    if user is None:
        raise NotFoundError("User not found", details={"user_id": user_id})
    effective = await get_effective_permissions(session, tenant_id=tenant_id, user_id=user_id)
    granted = effective.permissions if effective is not None else frozenset()
    permissions = tuple(kind for kind in PERMISSION_KINDS if kind in granted)

    if is_privileged_role(user.role):
        return EffectiveRolePolicy(
            user_id=user.id,
            role=user.role,
            role_profile_id=None,
            role_profile_key=None,
            permissions=PERMISSION_KINDS,
            flags=fallback_story_flags(user.role).as_dict(),
            caps=UsageCaps().as_dict(),
            default_account_scope_type=SCOPE_ALL_ACCOUNTS,
            default_account_ids=(),
            source=POLICY_SOURCE_ADMIN_OVERRIDE,
        )
    profile = await authz_repo.get_assigned_profile(session, tenant_id=tenant_id, user_id=user_id)
    if profile is not None:
        return EffectiveRolePolicy(
            user_id=user.id,
            role=user.role,
            role_profile_id=profile.id,
            role_profile_key=profile.key,
            permissions=permissions,
            flags={name: getattr(profile, name) for name in _FLAG_FIELDS},
            caps=_caps_of(profile).as_dict(),
            default_account_scope_type=profile.default_account_scope_type,
            default_account_ids=tuple(profile.default_account_ids_json or []),
            source=POLICY_SOURCE_ASSIGNED_PROFILE,
        )
    return EffectiveRolePolicy(
        user_id=user.id,
        role=user.role,
        role_profile_id=None,
        role_profile_key=None,
        permissions=permissions,
        flags=fallback_story_flags(user.role).as_dict(),
        caps=UsageCaps().as_dict(),
        default_account_scope_type=SCOPE_ACCOUNT_LIST,
        default_account_ids=(),
        source=POLICY_SOURCE_FALLBACK,
    )
