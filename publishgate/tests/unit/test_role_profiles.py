from __future__ import annotations

import pytest
from sqlalchemy import func, select

from publishgate.core.errors import ConflictError, NotFoundError, ValidationFailedError
from publishgate.domain.models import AIUsageLimit, RoleProfile, UserRoleAssignment
from publishgate.persistence.db import SessionLocal
from publishgate.services.authz.account_access import grant_account_access, list_accessible_account_ids
from publishgate.services.authz.catalog import (
    PERMISSION_MANAGE_ENTITY_RESOLUTION,
    PERMISSION_PUBLISH_LANDING_PAGE,
    PERMISSION_VIEW_ANALYTICS,
    POLICY_SOURCE_ADMIN_OVERRIDE,
    POLICY_SOURCE_ASSIGNED_PROFILE,
    POLICY_SOURCE_FALLBACK,
    SCOPE_ACCOUNT_LIST,
    SCOPE_SINGLE_ACCOUNT,
)
from publishgate.services.authz.permissions import has_permission
from publishgate.services.authz.role_profiles import (
    RoleProfileInput,
    assign_role_profile,
    create_role_profile,
    delete_role_profile,
    ensure_preset_roles,
    get_effective_role_policy,
    list_role_profiles,
    unassign_role_profile,
    update_role_profile,
)
from publishgate.tests.utils.seed import create_account, create_user, new_tenant_id


async def _preset(session, tenant_id: str, key: str) -> RoleProfile:
    profiles = await ensure_preset_roles(session, tenant_id=tenant_id)
    return next(profile for profile in profiles if profile.key == key)


@pytest.mark.asyncio
async def test_preset_seeding_is_idempotent() -> None:
    tenant_id = new_tenant_id("t-role")
    async with SessionLocal() as session:
        first = await ensure_preset_roles(session, tenant_id=tenant_id)
        second = await list_role_profiles(session, tenant_id=tenant_id)
        count = await session.scalar(
            select(func.count()).select_from(RoleProfile).where(RoleProfile.tenant_id == tenant_id)
        )
    assert {profile.key for profile in first} == {"REVOPS", "MARKETING", "SALES", "CS", "EXEC"}
    assert {profile.id for profile in first} == {profile.id for profile in second}
    assert count == 5
    assert all(profile.is_preset for profile in first)


@pytest.mark.asyncio
async def test_admin_edits_to_presets_survive_reseeding() -> None:
    tenant_id = new_tenant_id("t-role")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    async with SessionLocal() as session:
        sales = await _preset(session, tenant_id, "SALES")
        await update_role_profile(
            session,
            tenant_id=tenant_id,
            actor_id=admin_id,
            role_profile_id=sales.id,
            changes={"name": "Field Sales", "permissions": [PERMISSION_VIEW_ANALYTICS]},
        )
        reseeded = await _preset(session, tenant_id, "SALES")
    assert reseeded.name == "Field Sales"
    assert reseeded.permissions_json == [PERMISSION_VIEW_ANALYTICS]


@pytest.mark.asyncio
async def test_preset_keys_are_immutable_and_presets_cannot_be_deleted() -> None:
    tenant_id = new_tenant_id("t-role")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    async with SessionLocal() as session:
        cs = await _preset(session, tenant_id, "CS")
        with pytest.raises(ValidationFailedError):
            await update_role_profile(
                session, tenant_id=tenant_id, actor_id=admin_id, role_profile_id=cs.id, changes={"key": "SUCCESS"}
            )
        with pytest.raises(ValidationFailedError):
            await delete_role_profile(session, tenant_id=tenant_id, actor_id=admin_id, role_profile_id=cs.id)
        with pytest.raises(ValidationFailedError):
            await update_role_profile(
                session, tenant_id=tenant_id, actor_id=admin_id, role_profile_id=cs.id, changes={"color": "red"}
            )


@pytest.mark.asyncio
async def test_custom_profile_validation_and_duplicate_keys() -> None:
    tenant_id = new_tenant_id("t-role")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    async with SessionLocal() as session:
        profile = await create_role_profile(
            session,
            tenant_id=tenant_id,
            actor_id=admin_id,
            data=RoleProfileInput(key="partner_ops", name="Partner Ops", permissions=["view_analytics", "VIEW_ANALYTICS"]),
        )
        assert profile.key == "PARTNER_OPS"
        assert profile.permissions_json == [PERMISSION_VIEW_ANALYTICS]
        with pytest.raises(ConflictError):
            await create_role_profile(
                session, tenant_id=tenant_id, actor_id=admin_id, data=RoleProfileInput(key="PARTNER_OPS", name="Dup")
            )
        with pytest.raises(ValidationFailedError):
            await create_role_profile(
                session, tenant_id=tenant_id, actor_id=admin_id, data=RoleProfileInput(key="9LIVES", name="Bad key")
            )
        with pytest.raises(ValidationFailedError):
            await create_role_profile(
                session,
                tenant_id=tenant_id,
                actor_id=admin_id,
                data=RoleProfileInput(key="ROGUE", name="Rogue", permissions=["launch_missiles"]),
            )
        with pytest.raises(ValidationFailedError):
            await create_role_profile(
                session,
                tenant_id=tenant_id,
                actor_id=admin_id,
                data=RoleProfileInput(key="SOLO", name="Solo", default_account_scope_type=SCOPE_SINGLE_ACCOUNT),
            )
        with pytest.raises(ValidationFailedError):
            await create_role_profile(
                session,
                tenant_id=tenant_id,
                actor_id=admin_id,
                data=RoleProfileInput(key="CAPPED", name="Capped", max_stories_per_month=-1),
            )


@pytest.mark.asyncio
async def test_profile_permission_edits_apply_to_assigned_users() -> None:
    tenant_id = new_tenant_id("t-role")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    member_id = await create_user(tenant_id=tenant_id, role="member")
    async with SessionLocal() as session:
        profile = await create_role_profile(
            session,
            tenant_id=tenant_id,
            actor_id=admin_id,
            data=RoleProfileInput(key="ANALYST", name="Analyst", permissions=[PERMISSION_VIEW_ANALYTICS]),
        )
        await assign_role_profile(
            session, tenant_id=tenant_id, actor_id=admin_id, user_id=member_id, role_profile_id=profile.id
        )
        assert not await has_permission(
            session, tenant_id=tenant_id, user_id=member_id, permission=PERMISSION_MANAGE_ENTITY_RESOLUTION
        )
        await update_role_profile(
            session,
            tenant_id=tenant_id,
            actor_id=admin_id,
            role_profile_id=profile.id,
            changes={"permissions": [PERMISSION_VIEW_ANALYTICS, PERMISSION_MANAGE_ENTITY_RESOLUTION]},
        )
        assert await has_permission(
            session, tenant_id=tenant_id, user_id=member_id, permission=PERMISSION_MANAGE_ENTITY_RESOLUTION
        )


@pytest.mark.asyncio
async def test_deleting_a_profile_removes_its_assignments() -> None:
    tenant_id = new_tenant_id("t-role")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    member_ids = [await create_user(tenant_id=tenant_id, role="member") for _ in range(2)]
    async with SessionLocal() as session:
        profile = await create_role_profile(
            session,
            tenant_id=tenant_id,
            actor_id=admin_id,
            data=RoleProfileInput(key="PUBLISHER", name="Publisher", permissions=[PERMISSION_PUBLISH_LANDING_PAGE]),
        )
        for member_id in member_ids:
            await assign_role_profile(
                session, tenant_id=tenant_id, actor_id=admin_id, user_id=member_id, role_profile_id=profile.id
            )
        affected = await delete_role_profile(
            session, tenant_id=tenant_id, actor_id=admin_id, role_profile_id=profile.id
        )
        assert sorted(affected) == sorted(member_ids)
        remaining = await session.scalar(
            select(func.count()).select_from(UserRoleAssignment).where(UserRoleAssignment.tenant_id == tenant_id)
        )
        assert remaining == 0
        for member_id in member_ids:
            assert not await has_permission(
                session, tenant_id=tenant_id, user_id=member_id, permission=PERMISSION_PUBLISH_LANDING_PAGE
            )
        with pytest.raises(NotFoundError):
            await delete_role_profile(session, tenant_id=tenant_id, actor_id=admin_id, role_profile_id=profile.id)


@pytest.mark.asyncio
async def test_profiles_of_another_tenant_cannot_be_assigned() -> None:
    tenant_id = new_tenant_id("t-role")
    other_tenant = new_tenant_id("t-role")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    member_id = await create_user(tenant_id=tenant_id, role="member")
    async with SessionLocal() as session:
        foreign = await _preset(session, other_tenant, "SALES")
        with pytest.raises(ValidationFailedError):
            await assign_role_profile(
                session, tenant_id=tenant_id, actor_id=admin_id, user_id=member_id, role_profile_id=foreign.id
            )
        local = await _preset(session, tenant_id, "SALES")
        with pytest.raises(NotFoundError):
            await assign_role_profile(
                session, tenant_id=tenant_id, actor_id=admin_id, user_id="missing", role_profile_id=local.id
            )


@pytest.mark.asyncio
async def test_assignment_syncs_usage_caps_and_reassignment_replaces_them() -> None:
    tenant_id = new_tenant_id("t-role")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    member_id = await create_user(tenant_id=tenant_id, role="member")
    async with SessionLocal() as session:
        marketing = await _preset(session, tenant_id, "MARKETING")
        sales = await _preset(session, tenant_id, "SALES")
        await assign_role_profile(
            session, tenant_id=tenant_id, actor_id=admin_id, user_id=member_id, role_profile_id=marketing.id
        )
        await assign_role_profile(
            session, tenant_id=tenant_id, actor_id=admin_id, user_id=member_id, role_profile_id=sales.id
        )
        limits = (
            await session.execute(select(AIUsageLimit).where(AIUsageLimit.tenant_id == tenant_id))
        ).scalars().all()
        assignment_count = await session.scalar(
            select(func.count()).select_from(UserRoleAssignment).where(UserRoleAssignment.user_id == member_id)
        )
    assert assignment_count == 1
    assert len(limits) == 1
    assert limits[0].max_stories_per_month == 200


@pytest.mark.asyncio
async def test_reset_account_scope_applies_the_profile_template() -> None:
    tenant_id = new_tenant_id("t-role")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    member_id = await create_user(tenant_id=tenant_id, role="member")
    kept = await create_account(tenant_id=tenant_id, name="Kept")
    listed = await create_account(tenant_id=tenant_id, name="Listed")
    async with SessionLocal() as session:
        await grant_account_access(
            session, tenant_id=tenant_id, actor_id=admin_id, user_id=member_id, scope_type="single_account", account_id=kept
        )
        profile = await create_role_profile(
            session,
            tenant_id=tenant_id,
            actor_id=admin_id,
            data=RoleProfileInput(
                key="REGIONAL",
                name="Regional",
                default_account_scope_type=SCOPE_ACCOUNT_LIST,
                default_account_ids=[listed],
            ),
        )
        # Assignment alone leaves existing grants alone.
        await assign_role_profile(
            session, tenant_id=tenant_id, actor_id=admin_id, user_id=member_id, role_profile_id=profile.id
        )
        scope = await list_accessible_account_ids(session, tenant_id=tenant_id, user_id=member_id)
        assert scope.account_ids == frozenset({kept})

        await assign_role_profile(
            session,
            tenant_id=tenant_id,
            actor_id=admin_id,
            user_id=member_id,
            role_profile_id=profile.id,
            reset_account_scope=True,
        )
        scope = await list_accessible_account_ids(session, tenant_id=tenant_id, user_id=member_id)
    assert not scope.all_accounts
    assert scope.account_ids == frozenset({listed})


@pytest.mark.asyncio
async def test_effective_role_policy_reports_its_source() -> None:
    tenant_id = new_tenant_id("t-role")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    member_id = await create_user(tenant_id=tenant_id, role="member")
    viewer_id = await create_user(tenant_id=tenant_id, role="viewer")
    async with SessionLocal() as session:
        cs = await _preset(session, tenant_id, "CS")
        await assign_role_profile(
            session, tenant_id=tenant_id, actor_id=admin_id, user_id=member_id, role_profile_id=cs.id
        )
        admin_policy = await get_effective_role_policy(session, tenant_id=tenant_id, user_id=admin_id)
        member_policy = await get_effective_role_policy(session, tenant_id=tenant_id, user_id=member_id)
        viewer_policy = await get_effective_role_policy(session, tenant_id=tenant_id, user_id=viewer_id)
        await unassign_role_profile(session, tenant_id=tenant_id, actor_id=admin_id, user_id=member_id)
        unassigned = await get_effective_role_policy(session, tenant_id=tenant_id, user_id=member_id)
        with pytest.raises(NotFoundError):
            await unassign_role_profile(session, tenant_id=tenant_id, actor_id=admin_id, user_id=member_id)

    assert admin_policy.source == POLICY_SOURCE_ADMIN_OVERRIDE
    assert admin_policy.flags["can_generate_named_stories"] is True
    assert member_policy.source == POLICY_SOURCE_ASSIGNED_PROFILE
    assert member_policy.role_profile_key == "CS"
    assert member_policy.caps["max_stories_per_month"] == 120
    assert PERMISSION_PUBLISH_LANDING_PAGE in member_policy.permissions
    assert viewer_policy.source == POLICY_SOURCE_FALLBACK
    assert viewer_policy.permissions == ()
    assert unassigned.source == POLICY_SOURCE_FALLBACK
    assert unassigned.permissions == ()
