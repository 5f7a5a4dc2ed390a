from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from publishgate.persistence.repos import authz as authz_repo


TEAM_REVOPS = "REVOPS"
TEAM_MARKETING = "MARKETING"
TEAM_SALES = "SALES"
TEAM_CS = "CS"
TEAM_KEYS = (TEAM_REVOPS, TEAM_MARKETING, TEAM_SALES, TEAM_CS)


def team_for_role_profile_key(role_profile_key: str | None) -> str:
    """Bucket a role-profile key into a team.

    Teams are not stored entities; membership follows the assigned role
    profile. Keys that match no team fall into REVOPS.
    """
    key = (role_profile_key or "").upper()
    if key == TEAM_SALES:
        return TEAM_SALES
    if key == TEAM_CS:
        return TEAM_CS
    if TEAM_MARKETING in key:
        return TEAM_MARKETING
    return TEAM_REVOPS


def normalize_team_key(team_key: str | None) -> str | None:
    normalized = (team_key or "").strip().upper()
    return normalized if normalized in TEAM_KEYS else None


async def list_team_member_ids(session: AsyncSession, *, tenant_id: str, team_key: str) -> set[str]:
    # Active users whose assigned profile maps to the team.
    profiles = await authz_repo.list_role_profiles(session, tenant_id=tenant_id)
    profile_ids = [profile.id for profile in profiles if team_for_role_profile_key(profile.key) == team_key]
    return await authz_repo.list_assigned_user_ids(session, tenant_id=tenant_id, role_profile_ids=profile_ids)
