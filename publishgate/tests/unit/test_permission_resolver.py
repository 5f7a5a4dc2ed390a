from __future__ import annotations

import asyncio

import pytest

from publishgate.core.config import get_settings
from publishgate.core.errors import ConflictError, NotFoundError, ValidationFailedError
from publishgate.domain.models import UserPermission
from publishgate.persistence.db import SessionLocal
from publishgate.services.authz.catalog import (
    PERMISSION_CREATE_LANDING_PAGE,
    PERMISSION_KINDS,
    PERMISSION_MANAGE_AI_SETTINGS,
    PERMISSION_MANAGE_PERMISSIONS,
    PERMISSION_PUBLISH_LANDING_PAGE,
    PERMISSION_PUBLISH_NAMED_LANDING_PAGE,
    PERMISSION_VIEW_ANALYTICS,
)
from publishgate.services.authz import permissions as permissions_service
from publishgate.services.authz.permissions import (
    get_effective_permissions,
    get_permission_matrix,
    grant_permission,
    has_permission,
    invalidate_permission_cache,
    record_permission_denied,
    revoke_permission,
)
from publishgate.services.authz.role_profiles import assign_role_profile, ensure_preset_roles
from publishgate.tests.utils.seed import create_user, list_audit_event_types, new_tenant_id


async def _assign_preset(tenant_id: str, actor_id: str, user_id: str, key: str) -> None:
    async with SessionLocal() as session:
        profiles = await ensure_preset_roles(session, tenant_id=tenant_id)
        profile = next(item for item in profiles if item.key == key)
        await assign_role_profile(
            session, tenant_id=tenant_id, actor_id=actor_id, user_id=user_id, role_profile_id=profile.id
        )


@pytest.mark.asyncio
async def test_owner_and_admin_hold_every_permission_without_grants() -> None:
    tenant_id = new_tenant_id("t-perm")
    owner_id = await create_user(tenant_id=tenant_id, role="owner")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    async with SessionLocal() as session:
        for user_id in (owner_id, admin_id):
            for kind in PERMISSION_KINDS:
                assert await has_permission(session, tenant_id=tenant_id, user_id=user_id, permission=kind)
            effective = await get_effective_permissions(session, tenant_id=tenant_id, user_id=user_id)
            assert effective is not None and effective.privileged


@pytest.mark.asyncio
async def test_member_holds_union_of_profile_and_explicit_grants() -> None:
    tenant_id = new_tenant_id("t-perm")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    member_id = await create_user(tenant_id=tenant_id, role="member")
    await _assign_preset(tenant_id, admin_id, member_id, "MARKETING")
    async with SessionLocal() as session:
        await grant_permission(
            session, tenant_id=tenant_id, actor_id=admin_id, user_id=member_id, permission=PERMISSION_MANAGE_AI_SETTINGS
        )
        effective = await get_effective_permissions(session, tenant_id=tenant_id, user_id=member_id)
    assert effective is not None
    assert effective.permissions == frozenset(
        {
            PERMISSION_CREATE_LANDING_PAGE,
            PERMISSION_PUBLISH_LANDING_PAGE,
            PERMISSION_VIEW_ANALYTICS,
            PERMISSION_MANAGE_AI_SETTINGS,
        }
    )
    assert not effective.allows(PERMISSION_PUBLISH_NAMED_LANDING_PAGE)


@pytest.mark.asyncio
async def test_member_without_profile_or_grants_holds_nothing() -> None:
    tenant_id = new_tenant_id("t-perm")
    member_id = await create_user(tenant_id=tenant_id, role="member")
    async with SessionLocal() as session:
        effective = await get_effective_permissions(session, tenant_id=tenant_id, user_id=member_id)
        assert effective is not None and effective.permissions == frozenset()
        assert not await has_permission(
            session, tenant_id=tenant_id, user_id=member_id, permission=PERMISSION_VIEW_ANALYTICS
        )


@pytest.mark.asyncio
async def test_inactive_unknown_and_foreign_users_hold_nothing() -> None:
    tenant_id = new_tenant_id("t-perm")
    other_tenant = new_tenant_id("t-perm")
    inactive_admin = await create_user(tenant_id=tenant_id, role="admin", is_active=False)
    foreign_admin = await create_user(tenant_id=other_tenant, role="admin")
    async with SessionLocal() as session:
        for user_id in (inactive_admin, foreign_admin, "missing-user"):
            assert await get_effective_permissions(session, tenant_id=tenant_id, user_id=user_id) is None
            assert not await has_permission(
                session, tenant_id=tenant_id, user_id=user_id, permission=PERMISSION_VIEW_ANALYTICS
            )


@pytest.mark.asyncio
async def test_revoke_takes_effect_on_the_next_check() -> None:
    tenant_id = new_tenant_id("t-perm")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    member_id = await create_user(tenant_id=tenant_id, role="member")
    async with SessionLocal() as session:
        await grant_permission(
            session, tenant_id=tenant_id, actor_id=admin_id, user_id=member_id, permission=PERMISSION_PUBLISH_LANDING_PAGE
        )
        assert await has_permission(
            session, tenant_id=tenant_id, user_id=member_id, permission=PERMISSION_PUBLISH_LANDING_PAGE
        )
        await revoke_permission(
            session, tenant_id=tenant_id, actor_id=admin_id, user_id=member_id, permission=PERMISSION_PUBLISH_LANDING_PAGE
        )
        assert not await has_permission(
            session, tenant_id=tenant_id, user_id=member_id, permission=PERMISSION_PUBLISH_LANDING_PAGE
        )
    events = await list_audit_event_types(tenant_id=tenant_id)
    assert events == ["authz.permission.granted", "authz.permission.revoked"]


@pytest.mark.asyncio
async def test_grant_rejects_duplicates_unknown_kinds_and_unknown_users() -> None:
    tenant_id = new_tenant_id("t-perm")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    member_id = await create_user(tenant_id=tenant_id, role="member")
    async with SessionLocal() as session:
        await grant_permission(
            session, tenant_id=tenant_id, actor_id=admin_id, user_id=member_id, permission=PERMISSION_VIEW_ANALYTICS
        )
        with pytest.raises(ConflictError):
            await grant_permission(
                session, tenant_id=tenant_id, actor_id=admin_id, user_id=member_id, permission="VIEW_ANALYTICS"
            )
        with pytest.raises(ValidationFailedError):
            await grant_permission(
                session, tenant_id=tenant_id, actor_id=admin_id, user_id=member_id, permission="fly"
            )
        with pytest.raises(NotFoundError):
            await grant_permission(
                session, tenant_id=tenant_id, actor_id=admin_id, user_id="missing", permission=PERMISSION_VIEW_ANALYTICS
            )
        with pytest.raises(NotFoundError):
            await revoke_permission(
                session,
                tenant_id=tenant_id,
                actor_id=admin_id,
                user_id=member_id,
                permission=PERMISSION_MANAGE_PERMISSIONS,
            )


@pytest.mark.asyncio
async def test_cached_sets_are_invalidated_by_grants(monkeypatch) -> None:
    monkeypatch.setattr(get_settings(), "authz_permission_cache_ttl_s", 60)
    tenant_id = new_tenant_id("t-perm")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    member_id = await create_user(tenant_id=tenant_id, role="member")
    async with SessionLocal() as session:
        assert not await has_permission(
            session, tenant_id=tenant_id, user_id=member_id, permission=PERMISSION_VIEW_ANALYTICS
        )
        # A row written behind the service's back stays invisible until the entry is dropped.
        session.add(UserPermission(tenant_id=tenant_id, user_id=member_id, permission=PERMISSION_VIEW_ANALYTICS))
        await session.commit()
        assert not await has_permission(
            session, tenant_id=tenant_id, user_id=member_id, permission=PERMISSION_VIEW_ANALYTICS
        )
        invalidate_permission_cache(tenant_id, member_id)
        assert await has_permission(
            session, tenant_id=tenant_id, user_id=member_id, permission=PERMISSION_VIEW_ANALYTICS
        )

        await grant_permission(
            session, tenant_id=tenant_id, actor_id=admin_id, user_id=member_id, permission=PERMISSION_PUBLISH_LANDING_PAGE
        )
        assert await has_permission(
            session, tenant_id=tenant_id, user_id=member_id, permission=PERMISSION_PUBLISH_LANDING_PAGE
        )


@pytest.mark.asyncio
async def test_denials_are_audited_and_matrix_lists_every_user() -> None:
    tenant_id = new_tenant_id("t-perm")
    admin_id = await create_user(tenant_id=tenant_id, role="admin", email="admin@example.com")
    member_id = await create_user(tenant_id=tenant_id, role="member")
    await _assign_preset(tenant_id, admin_id, member_id, "SALES")
    await record_permission_denied(
        tenant_id=tenant_id, actor_id=member_id, permission=PERMISSION_MANAGE_PERMISSIONS, resource_type="route"
    )
    assert "authz.permission.denied" in await list_audit_event_types(tenant_id=tenant_id)

    async with SessionLocal() as session:
        matrix = await get_permission_matrix(session, tenant_id=tenant_id)
    rows = {row["user_id"]: row for row in matrix}
    assert rows[admin_id]["privileged"] is True
    assert rows[admin_id]["email"] == "admin@example.com"
    assert rows[member_id]["role_profile_key"] == "SALES"
    assert rows[member_id]["explicit_permissions"] == []


@pytest.mark.asyncio
async def test_check_in_flight_during_revoke_does_not_cache_the_old_grant(monkeypatch) -> None:
    monkeypatch.setattr(get_settings(), "authz_permission_cache_ttl_s", 300)
    tenant_id = new_tenant_id("t-perm")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    member_id = await create_user(tenant_id=tenant_id, role="member")
    async with SessionLocal() as session:
        await grant_permission(
            session, tenant_id=tenant_id, actor_id=admin_id, user_id=member_id, permission=PERMISSION_PUBLISH_LANDING_PAGE
        )

    computed = asyncio.Event()
    revoked = asyncio.Event()
    original = permissions_service._compute_effective_permissions

    async def _compute_then_wait(session, **kwargs):
        effective = await original(session, **kwargs)
        if not computed.is_set():
            computed.set()
            await revoked.wait()
        return effective

    monkeypatch.setattr(permissions_service, "_compute_effective_permissions", _compute_then_wait)

    async def _check() -> bool:
        async with SessionLocal() as session:
            return await has_permission(
                session, tenant_id=tenant_id, user_id=member_id, permission=PERMISSION_PUBLISH_LANDING_PAGE
            )

    async def _revoke() -> None:
        await computed.wait()
        try:
            async with SessionLocal() as session:
                await revoke_permission(
                    session,
                    tenant_id=tenant_id,
                    actor_id=admin_id,
                    user_id=member_id,
                    permission=PERMISSION_PUBLISH_LANDING_PAGE,
                )
        finally:
            revoked.set()

    in_flight, _ = await asyncio.gather(_check(), _revoke())
    # The check that read before the revoke may answer with what it read, but must not cache it.
    assert in_flight is True
    assert not await _check()
