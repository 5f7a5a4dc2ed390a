from __future__ import annotations

import pytest

from publishgate.core.errors import ConflictError, NotFoundError, ValidationFailedError
from publishgate.persistence.db import SessionLocal
from publishgate.services.authz.account_access import (
    can_access_account,
    grant_account_access,
    grant_payload,
    list_accessible_account_ids,
    list_user_account_access,
    revoke_account_access,
    update_account_list,
)
from publishgate.tests.utils.seed import create_account, create_user, list_audit_event_types, new_tenant_id


@pytest.mark.asyncio
async def test_all_accounts_grant_covers_accounts_created_later() -> None:
    tenant_id = new_tenant_id("t-acct")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    member_id = await create_user(tenant_id=tenant_id, role="member")
    async with SessionLocal() as session:
        await grant_account_access(
            session, tenant_id=tenant_id, actor_id=admin_id, user_id=member_id, scope_type="all_accounts"
        )
    later = await create_account(tenant_id=tenant_id, name="Created later")
    async with SessionLocal() as session:
        scope = await list_accessible_account_ids(session, tenant_id=tenant_id, user_id=member_id)
        assert scope.all_accounts
        assert await can_access_account(session, tenant_id=tenant_id, user_id=member_id, account_id=later)
        with pytest.raises(ConflictError):
            await grant_account_access(
                session, tenant_id=tenant_id, actor_id=admin_id, user_id=member_id, scope_type="all_accounts"
            )


@pytest.mark.asyncio
async def test_admins_see_every_account_and_members_without_grants_see_none() -> None:
    tenant_id = new_tenant_id("t-acct")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    member_id = await create_user(tenant_id=tenant_id, role="member")
    inactive_id = await create_user(tenant_id=tenant_id, role="member", is_active=False)
    account_id = await create_account(tenant_id=tenant_id)
    async with SessionLocal() as session:
        await grant_account_access(
            session, tenant_id=tenant_id, actor_id=admin_id, user_id=inactive_id, scope_type="all_accounts"
        )
        assert await can_access_account(session, tenant_id=tenant_id, user_id=admin_id, account_id=account_id)
        assert not await can_access_account(session, tenant_id=tenant_id, user_id=member_id, account_id=account_id)
        assert not await can_access_account(session, tenant_id=tenant_id, user_id=inactive_id, account_id=account_id)
        scope = await list_accessible_account_ids(session, tenant_id=tenant_id, user_id=member_id)
    assert not scope.all_accounts
    assert scope.account_ids == frozenset()


@pytest.mark.asyncio
async def test_grants_union_across_scope_types() -> None:
    tenant_id = new_tenant_id("t-acct")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    member_id = await create_user(tenant_id=tenant_id, role="member")
    single = await create_account(tenant_id=tenant_id, name="Single")
    listed = [await create_account(tenant_id=tenant_id, name=f"Listed {index}") for index in range(2)]
    outside = await create_account(tenant_id=tenant_id, name="Outside")
    async with SessionLocal() as session:
        await grant_account_access(
            session, tenant_id=tenant_id, actor_id=admin_id, user_id=member_id, scope_type="single_account", account_id=single
        )
        await grant_account_access(
            session, tenant_id=tenant_id, actor_id=admin_id, user_id=member_id, scope_type="account_list", account_ids=listed
        )
        scope = await list_accessible_account_ids(session, tenant_id=tenant_id, user_id=member_id)
        assert not await can_access_account(session, tenant_id=tenant_id, user_id=member_id, account_id=outside)
        with pytest.raises(ConflictError):
            await grant_account_access(
                session,
                tenant_id=tenant_id,
                actor_id=admin_id,
                user_id=member_id,
                scope_type="single_account",
                account_id=single,
            )
    assert scope.account_ids == frozenset({single, *listed})


@pytest.mark.asyncio
async def test_account_ids_of_other_tenants_are_rejected() -> None:
    tenant_id = new_tenant_id("t-acct")
    other_tenant = new_tenant_id("t-acct")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    member_id = await create_user(tenant_id=tenant_id, role="member")
    local = await create_account(tenant_id=tenant_id)
    foreign = await create_account(tenant_id=other_tenant)
    async with SessionLocal() as session:
        with pytest.raises(ValidationFailedError) as exc_info:
            await grant_account_access(
                session,
                tenant_id=tenant_id,
                actor_id=admin_id,
                user_id=member_id,
                scope_type="account_list",
                account_ids=[local, foreign],
            )
        assert exc_info.value.details["account_ids"] == [foreign]
        with pytest.raises(ValidationFailedError):
            await grant_account_access(
                session,
                tenant_id=tenant_id,
                actor_id=admin_id,
                user_id=member_id,
                scope_type="single_account",
                account_id=foreign,
            )
        assert await list_user_account_access(session, tenant_id=tenant_id, user_id=member_id) == []


@pytest.mark.asyncio
async def test_malformed_grants_are_rejected() -> None:
    tenant_id = new_tenant_id("t-acct")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    member_id = await create_user(tenant_id=tenant_id, role="member")
    async with SessionLocal() as session:
        with pytest.raises(ValidationFailedError):
            await grant_account_access(
                session, tenant_id=tenant_id, actor_id=admin_id, user_id=member_id, scope_type="galaxy"
            )
        with pytest.raises(ValidationFailedError):
            await grant_account_access(
                session, tenant_id=tenant_id, actor_id=admin_id, user_id=member_id, scope_type="single_account"
            )
        with pytest.raises(ValidationFailedError):
            await grant_account_access(
                session, tenant_id=tenant_id, actor_id=admin_id, user_id=member_id, scope_type="account_list", account_ids=[]
            )
        with pytest.raises(ValidationFailedError):
            await grant_account_access(
                session,
                tenant_id=tenant_id,
                actor_id=admin_id,
                user_id=member_id,
                scope_type="crm_report",
                crm_provider="pipedrive",
                crm_report_id="1",
            )
        with pytest.raises(NotFoundError):
            await grant_account_access(
                session, tenant_id=tenant_id, actor_id=admin_id, user_id="missing", scope_type="all_accounts"
            )


@pytest.mark.asyncio
async def test_account_list_edits_add_and_remove_ids() -> None:
    tenant_id = new_tenant_id("t-acct")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    member_id = await create_user(tenant_id=tenant_id, role="member")
    first, second, third = [await create_account(tenant_id=tenant_id, name=f"A{index}") for index in range(3)]
    async with SessionLocal() as session:
        result = await grant_account_access(
            session,
            tenant_id=tenant_id,
            actor_id=admin_id,
            user_id=member_id,
            scope_type="account_list",
            account_ids=[first, second],
        )
        grant_id = result.grant.id
        updated = await update_account_list(
            session, tenant_id=tenant_id, actor_id=admin_id, grant_id=grant_id, add=[third], remove=[first]
        )
        assert updated.account_ids_json == [second, third]
        assert not await can_access_account(session, tenant_id=tenant_id, user_id=member_id, account_id=first)
        assert await can_access_account(session, tenant_id=tenant_id, user_id=member_id, account_id=third)
        with pytest.raises(ValidationFailedError):
            await update_account_list(
                session, tenant_id=tenant_id, actor_id=admin_id, grant_id=grant_id, remove=[second, third]
            )


@pytest.mark.asyncio
async def test_only_account_list_grants_are_editable() -> None:
    tenant_id = new_tenant_id("t-acct")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    member_id = await create_user(tenant_id=tenant_id, role="member")
    async with SessionLocal() as session:
        result = await grant_account_access(
            session, tenant_id=tenant_id, actor_id=admin_id, user_id=member_id, scope_type="all_accounts"
        )
        with pytest.raises(ValidationFailedError):
            await update_account_list(
                session, tenant_id=tenant_id, actor_id=admin_id, grant_id=result.grant.id, add=["x"]
            )
        with pytest.raises(NotFoundError):
            await update_account_list(session, tenant_id=tenant_id, actor_id=admin_id, grant_id="missing", add=["x"])


@pytest.mark.asyncio
async def test_revocation_is_immediate_and_audited() -> None:
    tenant_id = new_tenant_id("t-acct")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    member_id = await create_user(tenant_id=tenant_id, role="member")
    account_id = await create_account(tenant_id=tenant_id)
    async with SessionLocal() as session:
        result = await grant_account_access(
            session,
            tenant_id=tenant_id,
            actor_id=admin_id,
            user_id=member_id,
            scope_type="single_account",
            account_id=account_id,
        )
        payload = grant_payload(result.grant)
        assert payload["account_id"] == account_id
        assert payload["crm_cache_stale"] is None
        await revoke_account_access(session, tenant_id=tenant_id, actor_id=admin_id, grant_id=result.grant.id)
        assert not await can_access_account(session, tenant_id=tenant_id, user_id=member_id, account_id=account_id)
        with pytest.raises(NotFoundError):
            await revoke_account_access(session, tenant_id=tenant_id, actor_id=admin_id, grant_id=result.grant.id)
    assert await list_audit_event_types(tenant_id=tenant_id) == [
        "authz.account_access.granted",
        "authz.account_access.revoked",
    ]
