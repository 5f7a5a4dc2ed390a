from __future__ import annotations

from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from publishgate.domain.models import (
    ApprovalDecision,
    ApprovalGroup,
    ApprovalGroupMember,
    ApprovalRequest,
    ArtifactApprovalStep,
    ArtifactGovernancePolicy,
)
from publishgate.persistence.guards import require_tenant_id, tenant_predicate


async def get_policy(session: AsyncSession, *, tenant_id: str) -> ArtifactGovernancePolicy | None:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(ArtifactGovernancePolicy).where(tenant_predicate(ArtifactGovernancePolicy, tenant_id))
    )
    return result.scalar_one_or_none()


async def list_steps(
    session: AsyncSession,
    *,
    tenant_id: str,
    policy_id: str,
    enabled_only: bool = False,
) -> list[ArtifactApprovalStep]:
    require_tenant_id(tenant_id)
    stmt = select(ArtifactApprovalStep).where(
        tenant_predicate(ArtifactApprovalStep, tenant_id),
        ArtifactApprovalStep.policy_id == policy_id,
    )
    if enabled_only:
        stmt = stmt.where(ArtifactApprovalStep.enabled.is_(True))
    result = await session.execute(stmt.order_by(ArtifactApprovalStep.step_order.asc()))
    return list(result.scalars().all())


async def delete_steps(session: AsyncSession, *, tenant_id: str, policy_id: str) -> None:
    require_tenant_id(tenant_id)
    await session.execute(
        delete(ArtifactApprovalStep).where(
            tenant_predicate(ArtifactApprovalStep, tenant_id),
            ArtifactApprovalStep.policy_id == policy_id,
        )
    )


async def list_groups(session: AsyncSession, *, tenant_id: str) -> list[ApprovalGroup]:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(ApprovalGroup).where(tenant_predicate(ApprovalGroup, tenant_id)).order_by(ApprovalGroup.name.asc())
    )
    return list(result.scalars().all())


async def get_group(session: AsyncSession, *, tenant_id: str, group_id: str) -> ApprovalGroup | None:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(ApprovalGroup).where(tenant_predicate(ApprovalGroup, tenant_id), ApprovalGroup.id == group_id)
    )
    return result.scalar_one_or_none()


async def get_group_by_name(session: AsyncSession, *, tenant_id: str, name: str) -> ApprovalGroup | None:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(ApprovalGroup).where(tenant_predicate(ApprovalGroup, tenant_id), ApprovalGroup.name == name)
    )
    return result.scalar_one_or_none()


async def list_group_member_ids(session: AsyncSession, *, tenant_id: str, group_id: str) -> list[str]:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(ApprovalGroupMember.user_id)
        .where(tenant_predicate(ApprovalGroupMember, tenant_id), ApprovalGroupMember.group_id == group_id)
        .order_by(ApprovalGroupMember.created_at.asc(), ApprovalGroupMember.user_id.asc())
    )
    return list(result.scalars().all())


async def get_group_member(
    session: AsyncSession,
    *,
    tenant_id: str,
    group_id: str,
    user_id: str,
) -> ApprovalGroupMember | None:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(ApprovalGroupMember).where(
            tenant_predicate(ApprovalGroupMember, tenant_id),
            ApprovalGroupMember.group_id == group_id,
            ApprovalGroupMember.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


async def delete_group_members(session: AsyncSession, *, tenant_id: str, group_id: str) -> None:
    require_tenant_id(tenant_id)
    await session.execute(
        delete(ApprovalGroupMember).where(
            tenant_predicate(ApprovalGroupMember, tenant_id),
            ApprovalGroupMember.group_id == group_id,
        )
    )


async def get_request(
    session: AsyncSession,
    *,
    tenant_id: str,
    request_id: str,
    for_update: bool = False,
) -> ApprovalRequest | None:
    # Optionally lock the row so decision writes on one request serialize on Postgres.
    require_tenant_id(tenant_id)
    stmt = select(ApprovalRequest).where(tenant_predicate(ApprovalRequest, tenant_id), ApprovalRequest.id == request_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def list_requests(
    session: AsyncSession,
    *,
    tenant_id: str,
    status: str | None = None,
    request_type: str | None = None,
    limit: int = 100,
) -> list[ApprovalRequest]:
    require_tenant_id(tenant_id)
    stmt = select(ApprovalRequest).where(tenant_predicate(ApprovalRequest, tenant_id))
    if status is not None:
        stmt = stmt.where(ApprovalRequest.status == status)
    if request_type is not None:
        stmt = stmt.where(ApprovalRequest.request_type == request_type)
    result = await session.execute(
        stmt.order_by(ApprovalRequest.created_at.desc(), ApprovalRequest.id.desc())
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def list_decisions(session: AsyncSession, *, tenant_id: str, request_id: str) -> list[ApprovalDecision]:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(ApprovalDecision)
        .where(tenant_predicate(ApprovalDecision, tenant_id), ApprovalDecision.request_id == request_id)
        .order_by(ApprovalDecision.created_at.asc(), ApprovalDecision.id.asc())
    )
    return list(result.scalars().all())


async def compare_and_set_request(
    session: AsyncSession,
    *,
    tenant_id: str,
    request_id: str,
    expected_status: str,
    expected_version: int,
    values: dict[str, Any],
) -> bool:
    """Apply ``values`` only if the request still has the expected status and version.

    Every status transition and every recorded decision goes through this
    statement, so two writers that read the same version cannot both succeed.
    """
    require_tenant_id(tenant_id)
    result = await session.execute(
        update(ApprovalRequest)
        .where(
            tenant_predicate(ApprovalRequest, tenant_id),
            ApprovalRequest.id == request_id,
            ApprovalRequest.status == expected_status,
            ApprovalRequest.version == expected_version,
        )
        .values(version=ApprovalRequest.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
