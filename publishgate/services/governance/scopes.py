from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from publishgate.persistence.repos import authz as authz_repo
from publishgate.persistence.repos import governance as governance_repo
from publishgate.services.governance.teams import list_team_member_ids, normalize_team_key


APPROVER_SCOPE_ROLE_PROFILE = "role_profile"
APPROVER_SCOPE_TEAM = "team"
APPROVER_SCOPE_USER = "user"
APPROVER_SCOPE_GROUP = "group"
APPROVER_SCOPE_SELF = "self"
APPROVER_SCOPE_TYPES = (
    APPROVER_SCOPE_ROLE_PROFILE,
    APPROVER_SCOPE_TEAM,
    APPROVER_SCOPE_USER,
    APPROVER_SCOPE_GROUP,
    APPROVER_SCOPE_SELF,
)


@dataclass(frozen=True)
class ScopeMembers:
    user_ids: frozenset[str]
    # The referenced role profile, team, user or group no longer exists.
    scope_missing: bool = False


async def resolve_scope_members(
    session: AsyncSession,
    *,
    tenant_id: str,
    scope_type: str,
    scope_value: str | None,
    requester_id: str | None = None,
    allow_self_approval: bool = False,
) -> ScopeMembers:
    """Resolve who a step scope names, before self-approval is applied.

    ``self`` resolves to the requester only when the step allows self approval.
    """
    if scope_type == APPROVER_SCOPE_SELF:
        if requester_id and allow_self_approval:
            return ScopeMembers(user_ids=frozenset({requester_id}))
        return ScopeMembers(user_ids=frozenset())
    if scope_type == APPROVER_SCOPE_USER:
        if not scope_value:
            return ScopeMembers(user_ids=frozenset(), scope_missing=True)
        active = await authz_repo.list_active_user_ids(session, tenant_id=tenant_id, user_ids=[scope_value])
        return ScopeMembers(user_ids=frozenset(active), scope_missing=not active)
    if scope_type == APPROVER_SCOPE_ROLE_PROFILE:
        profile = await authz_repo.get_role_profile_by_key(
            session, tenant_id=tenant_id, key=(scope_value or "").upper()
        )
        if profile is None:
            return ScopeMembers(user_ids=frozenset(), scope_missing=True)
        members = await authz_repo.list_assigned_user_ids(session, tenant_id=tenant_id, role_profile_ids=[profile.id])
        return ScopeMembers(user_ids=frozenset(members))
    if scope_type == APPROVER_SCOPE_TEAM:
        team_key = normalize_team_key(scope_value)
        if team_key is None:
            return ScopeMembers(user_ids=frozenset(), scope_missing=True)
        members = await list_team_member_ids(session, tenant_id=tenant_id, team_key=team_key)
        return ScopeMembers(user_ids=frozenset(members))
    if scope_type == APPROVER_SCOPE_GROUP:
        group = await governance_repo.get_group(session, tenant_id=tenant_id, group_id=scope_value or "")
        if group is None:
            return ScopeMembers(user_ids=frozenset(), scope_missing=True)
        member_ids = await governance_repo.list_group_member_ids(session, tenant_id=tenant_id, group_id=group.id)
        active = await authz_repo.list_active_user_ids(session, tenant_id=tenant_id, user_ids=member_ids)
        return ScopeMembers(user_ids=frozenset(active))
    return ScopeMembers(user_ids=frozenset(), scope_missing=True)
