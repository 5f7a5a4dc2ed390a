from __future__ import annotations

import pytest

from publishgate.core.errors import ConflictError, NotFoundError, ValidationFailedError
from publishgate.persistence.db import SessionLocal
from publishgate.services.authz.role_profiles import assign_role_profile, ensure_preset_roles
from publishgate.services.governance.policy import (
    STEP_WARNING_INSUFFICIENT_APPROVERS,
    STEP_WARNING_SCOPE_MISSING,
    STEP_WARNING_SELF_WITHOUT_SELF_APPROVAL,
    ApprovalStepInput,
    add_group_member,
    create_approval_group,
    delete_approval_group,
    get_policy,
    list_approval_groups,
    list_approval_steps,
    policy_payload,
    remove_group_member,
    replace_approval_steps,
    update_policy,
)
from publishgate.services.governance.scopes import resolve_scope_members
from publishgate.tests.utils.seed import create_user, list_audit_event_types, new_tenant_id


@pytest.mark.asyncio
async def test_missing_policy_reads_as_disabled_defaults() -> None:
    tenant_id = new_tenant_id("t-gov")
    async with SessionLocal() as session:
        policy = await get_policy(session, tenant_id=tenant_id)
        steps = await list_approval_steps(session, tenant_id=tenant_id)
    assert policy is None
    payload = policy_payload(policy, steps)
    assert payload["approval_chain_enabled"] is False
    assert payload["steps"] == []


@pytest.mark.asyncio
async def test_policy_updates_are_partial_and_validated() -> None:
    tenant_id = new_tenant_id("t-gov")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    async with SessionLocal() as session:
        policy = await update_policy(
            session, tenant_id=tenant_id, actor_id=admin_id, approval_chain_enabled=True, max_expiration_days=30
        )
        assert policy.approval_chain_enabled is True
        assert policy.require_provenance is True
        policy = await update_policy(session, tenant_id=tenant_id, actor_id=admin_id, require_provenance=False)
        assert policy.max_expiration_days == 30
        policy = await update_policy(session, tenant_id=tenant_id, actor_id=admin_id, max_expiration_days=None)
        assert policy.max_expiration_days is None
        assert policy.approval_chain_enabled is True
        with pytest.raises(ValidationFailedError):
            await update_policy(session, tenant_id=tenant_id, actor_id=admin_id, max_expiration_days=0)
    assert await list_audit_event_types(tenant_id=tenant_id) == ["governance.policy.updated"] * 3


@pytest.mark.asyncio
async def test_step_replacement_swaps_the_whole_chain() -> None:
    tenant_id = new_tenant_id("t-gov")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    approver_id = await create_user(tenant_id=tenant_id, role="member")
    async with SessionLocal() as session:
        first = await replace_approval_steps(
            session,
            tenant_id=tenant_id,
            actor_id=admin_id,
            steps=[
                ApprovalStepInput(step_order=1, approver_scope_type="user", approver_scope_value=approver_id),
                ApprovalStepInput(step_order=2, approver_scope_type="user", approver_scope_value=admin_id),
            ],
        )
        # A missing policy is created with the chain switched on.
        assert first.policy.approval_chain_enabled is True
        assert first.warnings == []
        second = await replace_approval_steps(
            session,
            tenant_id=tenant_id,
            actor_id=admin_id,
            steps=[ApprovalStepInput(step_order=1, approver_scope_type="user", approver_scope_value=admin_id)],
        )
        steps = await list_approval_steps(session, tenant_id=tenant_id)
    assert second.policy.id == first.policy.id
    assert [(step.step_order, step.approver_scope_value) for step in steps] == [(1, admin_id)]


@pytest.mark.asyncio
async def test_invalid_step_sets_leave_the_stored_chain_untouched() -> None:
    tenant_id = new_tenant_id("t-gov")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    async with SessionLocal() as session:
        await replace_approval_steps(
            session,
            tenant_id=tenant_id,
            actor_id=admin_id,
            steps=[ApprovalStepInput(step_order=1, approver_scope_type="user", approver_scope_value=admin_id)],
        )
        with pytest.raises(ValidationFailedError):
            await replace_approval_steps(
                session,
                tenant_id=tenant_id,
                actor_id=admin_id,
                steps=[
                    ApprovalStepInput(step_order=3, approver_scope_type="team", approver_scope_value="SALES"),
                    ApprovalStepInput(step_order=3, approver_scope_type="team", approver_scope_value="CS"),
                ],
            )
        steps = await list_approval_steps(session, tenant_id=tenant_id)
    assert [step.step_order for step in steps] == [1]


@pytest.mark.asyncio
async def test_unsatisfiable_steps_are_saved_with_warnings() -> None:
    tenant_id = new_tenant_id("t-gov")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    seller_id = await create_user(tenant_id=tenant_id, role="member")
    async with SessionLocal() as session:
        sales = next(p for p in await ensure_preset_roles(session, tenant_id=tenant_id) if p.key == "SALES")
        await assign_role_profile(
            session, tenant_id=tenant_id, actor_id=admin_id, user_id=seller_id, role_profile_id=sales.id
        )
        replaced = await replace_approval_steps(
            session,
            tenant_id=tenant_id,
            actor_id=admin_id,
            steps=[
                ApprovalStepInput(step_order=1, approver_scope_type="team", approver_scope_value="sales", min_approvals=2),
                ApprovalStepInput(step_order=2, approver_scope_type="group", approver_scope_value="no-such-group"),
                ApprovalStepInput(step_order=3, approver_scope_type="self"),
                ApprovalStepInput(
                    step_order=4, approver_scope_type="user", approver_scope_value="ghost", enabled=False
                ),
            ],
        )
    warnings = {(warning.step_order, warning.code) for warning in replaced.warnings}
    assert warnings == {
        (1, STEP_WARNING_INSUFFICIENT_APPROVERS),
        (2, STEP_WARNING_SCOPE_MISSING),
        (3, STEP_WARNING_SELF_WITHOUT_SELF_APPROVAL),
    }
    assert len(replaced.steps) == 4


@pytest.mark.asyncio
async def test_approval_groups_and_membership() -> None:
    tenant_id = new_tenant_id("t-gov")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    member_id = await create_user(tenant_id=tenant_id, role="member")
    inactive_id = await create_user(tenant_id=tenant_id, role="member", is_active=False)
    foreign_id = await create_user(tenant_id=new_tenant_id("t-gov"), role="member")
    async with SessionLocal() as session:
        group = await create_approval_group(session, tenant_id=tenant_id, actor_id=admin_id, name=" Legal ")
        assert group.name == "Legal"
        with pytest.raises(ConflictError):
            await create_approval_group(session, tenant_id=tenant_id, actor_id=admin_id, name="Legal")

        first = await add_group_member(
            session, tenant_id=tenant_id, actor_id=admin_id, group_id=group.id, user_id=member_id
        )
        again = await add_group_member(
            session, tenant_id=tenant_id, actor_id=admin_id, group_id=group.id, user_id=member_id
        )
        assert again.id == first.id
        await add_group_member(session, tenant_id=tenant_id, actor_id=admin_id, group_id=group.id, user_id=inactive_id)
        with pytest.raises(ValidationFailedError):
            await add_group_member(
                session, tenant_id=tenant_id, actor_id=admin_id, group_id=group.id, user_id=foreign_id
            )

        members = await resolve_scope_members(
            session, tenant_id=tenant_id, scope_type="group", scope_value=group.id
        )
        # Inactive members never count toward a quorum.
        assert members.user_ids == frozenset({member_id})
        groups = await list_approval_groups(session, tenant_id=tenant_id)
        assert sorted(groups[0]["member_user_ids"]) == sorted([member_id, inactive_id])

        assert await remove_group_member(
            session, tenant_id=tenant_id, actor_id=admin_id, group_id=group.id, user_id=member_id
        )
        assert not await remove_group_member(
            session, tenant_id=tenant_id, actor_id=admin_id, group_id=group.id, user_id=member_id
        )
        await delete_approval_group(session, tenant_id=tenant_id, actor_id=admin_id, group_id=group.id)
        missing = await resolve_scope_members(session, tenant_id=tenant_id, scope_type="group", scope_value=group.id)
        assert missing.scope_missing
        with pytest.raises(NotFoundError):
            await delete_approval_group(session, tenant_id=tenant_id, actor_id=admin_id, group_id=group.id)
        with pytest.raises(NotFoundError):
            await add_group_member(
                session, tenant_id=tenant_id, actor_id=admin_id, group_id=group.id, user_id=member_id
            )


@pytest.mark.asyncio
async def test_scope_resolution_per_scope_type() -> None:
    tenant_id = new_tenant_id("t-gov")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    seller_id = await create_user(tenant_id=tenant_id, role="member")
    marketer_id = await create_user(tenant_id=tenant_id, role="member")
    async with SessionLocal() as session:
        profiles = {p.key: p for p in await ensure_preset_roles(session, tenant_id=tenant_id)}
        await assign_role_profile(
            session, tenant_id=tenant_id, actor_id=admin_id, user_id=seller_id, role_profile_id=profiles["SALES"].id
        )
        await assign_role_profile(
            session,
            tenant_id=tenant_id,
            actor_id=admin_id,
            user_id=marketer_id,
            role_profile_id=profiles["MARKETING"].id,
        )
        by_team = await resolve_scope_members(session, tenant_id=tenant_id, scope_type="team", scope_value="SALES")
        by_profile = await resolve_scope_members(
            session, tenant_id=tenant_id, scope_type="role_profile", scope_value="marketing"
        )
        by_user = await resolve_scope_members(session, tenant_id=tenant_id, scope_type="user", scope_value=admin_id)
        ghost = await resolve_scope_members(session, tenant_id=tenant_id, scope_type="user", scope_value="ghost")
        self_allowed = await resolve_scope_members(
            session,
            tenant_id=tenant_id,
            scope_type="self",
            scope_value=None,
            requester_id=seller_id,
            allow_self_approval=True,
        )
        self_denied = await resolve_scope_members(
            session, tenant_id=tenant_id, scope_type="self", scope_value=None, requester_id=seller_id
        )
        unknown_team = await resolve_scope_members(
            session, tenant_id=tenant_id, scope_type="team", scope_value="FINANCE"
        )
    assert by_team.user_ids == frozenset({seller_id})
    assert by_profile.user_ids == frozenset({marketer_id})
    assert by_user.user_ids == frozenset({admin_id})
    assert ghost.scope_missing
    assert self_allowed.user_ids == frozenset({seller_id})
    assert self_denied.user_ids == frozenset()
    assert unknown_team.scope_missing
