from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from publishgate.core.config import get_settings
from publishgate.core.errors import ConflictError, NotFoundError, ValidationFailedError
from publishgate.domain.models import (
    ApprovalGroup,
    ApprovalGroupMember,
    ArtifactApprovalStep,
    ArtifactGovernancePolicy,
)
from publishgate.persistence.repos import authz as authz_repo
from publishgate.persistence.repos import governance as governance_repo
from publishgate.services.audit import SEVERITY_INFO, SEVERITY_WARN, record_event
from publishgate.services.governance.scopes import (
    APPROVER_SCOPE_SELF,
    APPROVER_SCOPE_TEAM,
    APPROVER_SCOPE_TYPES,
    resolve_scope_members,
)


logger = logging.getLogger(__name__)

ARTIFACT_TYPE_LANDING_PAGE = "landing_page"

STEP_WARNING_SCOPE_MISSING = "scope_missing"
STEP_WARNING_INSUFFICIENT_APPROVERS = "insufficient_approvers"
STEP_WARNING_SELF_WITHOUT_SELF_APPROVAL = "self_scope_without_self_approval"

_UNSET: Any = object()


@dataclass
class ApprovalStepInput:
    step_order: int
    approver_scope_type: str
    approver_scope_value: str | None = None
    min_approvals: int = 1
    allow_self_approval: bool = False
    enabled: bool = True


@dataclass(frozen=True)
class StepWarning:
    step_order: int
    code: str
    message: str


@dataclass(frozen=True)
class ReplacedSteps:
    policy: ArtifactGovernancePolicy
    steps: list[ArtifactApprovalStep]
    warnings: list[StepWarning]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def policy_payload(policy: ArtifactGovernancePolicy | None, steps: list[ArtifactApprovalStep]) -> dict[str, Any]:
    if policy is None:
        return {
            "approval_chain_enabled": False,
            "max_expiration_days": None,
            "require_provenance": True,
            "artifact_type": ARTIFACT_TYPE_LANDING_PAGE,
            "steps": [],
        }
    return {
        "id": policy.id,
        "approval_chain_enabled": policy.approval_chain_enabled,
        "max_expiration_days": policy.max_expiration_days,
        "require_provenance": policy.require_provenance,
        "artifact_type": policy.artifact_type,
        "steps": [step_payload(step) for step in steps],
    }


def step_payload(step: ArtifactApprovalStep) -> dict[str, Any]:
    return {
        "id": step.id,
        "step_order": step.step_order,
        "min_approvals": step.min_approvals,
        "approver_scope_type": step.approver_scope_type,
        "approver_scope_value": step.approver_scope_value,
        "allow_self_approval": step.allow_self_approval,
        "enabled": step.enabled,
    }


def validate_step_inputs(steps: list[ApprovalStepInput]) -> list[ApprovalStepInput]:
    """Reject malformed step definitions before anything is written.

    Every problem is collected into ``details["errors"]`` so the admin composing
    the chain can fix all of them in one pass.
    """
    settings = get_settings()
    errors: list[dict[str, Any]] = []
    if len(steps) > settings.governance_max_steps:
        errors.append(
            {"field": "steps", "message": f"At most {settings.governance_max_steps} approval steps are allowed."}
        )
    seen: set[int] = set()
    duplicate_orders: set[int] = set()
    normalized: list[ApprovalStepInput] = []
    for index, step in enumerate(steps):
        where = f"steps[{index}]"
        if isinstance(step.step_order, bool) or not isinstance(step.step_order, int) or step.step_order < 1:
            errors.append({"field": f"{where}.step_order", "message": "step_order must be a positive integer."})
        elif step.step_order in seen:
            duplicate_orders.add(step.step_order)
        else:
            seen.add(step.step_order)
        max_approvals = settings.governance_max_approvals_per_step
        if (
            isinstance(step.min_approvals, bool)
            or not isinstance(step.min_approvals, int)
            or not 1 <= step.min_approvals <= max_approvals
        ):
            errors.append(
                {
                    "field": f"{where}.min_approvals",
                    "message": f"min_approvals must be between 1 and {max_approvals}.",
                }
            )
        scope_type = (step.approver_scope_type or "").strip().lower()
        if scope_type not in APPROVER_SCOPE_TYPES:
            errors.append(
                {
                    "field": f"{where}.approver_scope_type",
                    "message": f"approver_scope_type must be one of {', '.join(APPROVER_SCOPE_TYPES)}.",
                }
            )
        scope_value = (step.approver_scope_value or "").strip() or None
        if scope_type != APPROVER_SCOPE_SELF and scope_type in APPROVER_SCOPE_TYPES and scope_value is None:
            errors.append(
                {
                    "field": f"{where}.approver_scope_value",
                    "message": f"approver_scope_value is required for {scope_type} scopes.",
                }
            )
        if scope_type == APPROVER_SCOPE_TEAM and scope_value is not None:
            scope_value = scope_value.upper()
        normalized.append(
            ApprovalStepInput(
                step_order=step.step_order,
                approver_scope_type=scope_type,
                approver_scope_value=None if scope_type == APPROVER_SCOPE_SELF else scope_value,
                min_approvals=step.min_approvals,
                allow_self_approval=bool(step.allow_self_approval),
                enabled=bool(step.enabled),
            )
        )
    for order in sorted(duplicate_orders):
        errors.append({"field": "steps", "message": "Each approval step_order must be unique.", "step_order": order})
    if errors:
        raise ValidationFailedError("Approval step configuration is invalid", details={"errors": errors})
    return sorted(normalized, key=lambda item: item.step_order)


async def check_step_satisfiability(
    session: AsyncSession,
    *,
    tenant_id: str,
    steps: list[ApprovalStepInput] | list[ArtifactApprovalStep],
) -> list[StepWarning]:
    # Flag enabled steps that no current set of approvers could ever satisfy.
    warnings: list[StepWarning] = []
    for step in steps:
        if not step.enabled:
            continue
        if step.approver_scope_type == APPROVER_SCOPE_SELF:
            if not step.allow_self_approval:
                warnings.append(
                    StepWarning(
                        step_order=step.step_order,
                        code=STEP_WARNING_SELF_WITHOUT_SELF_APPROVAL,
                        message=(
                            f"Step {step.step_order} uses the self scope but does not allow self approval, "
                            "so nobody can approve it."
                        ),
                    )
                )
            elif step.min_approvals > 1:
                warnings.append(
                    StepWarning(
                        step_order=step.step_order,
                        code=STEP_WARNING_INSUFFICIENT_APPROVERS,
                        message=f"Step {step.step_order} uses the self scope, which can supply only one approval.",
                    )
                )
            continue
        members = await resolve_scope_members(
            session,
            tenant_id=tenant_id,
            scope_type=step.approver_scope_type,
            scope_value=step.approver_scope_value,
        )
        if members.scope_missing:
            warnings.append(
                StepWarning(
                    step_order=step.step_order,
                    code=STEP_WARNING_SCOPE_MISSING,
                    message=(
                        f"Step {step.step_order} references {step.approver_scope_type} "
                        f"'{step.approver_scope_value}', which does not exist in this workspace."
                    ),
                )
            )
        elif len(members.user_ids) < step.min_approvals:
            warnings.append(
                StepWarning(
                    step_order=step.step_order,
                    code=STEP_WARNING_INSUFFICIENT_APPROVERS,
                    message=(
                        f"Step {step.step_order} needs {step.min_approvals} approvals but its "
                        f"{step.approver_scope_type} scope has {len(members.user_ids)} active approver(s)."
                    ),
                )
            )
    return warnings


async def get_policy(session: AsyncSession, *, tenant_id: str) -> ArtifactGovernancePolicy | None:
    return await governance_repo.get_policy(session, tenant_id=tenant_id)


async def list_approval_steps(
    session: AsyncSession,
    *,
    tenant_id: str,
    enabled_only: bool = False,
) -> list[ArtifactApprovalStep]:
    policy = await governance_repo.get_policy(session, tenant_id=tenant_id)
    if policy is None:
        return []
    return await governance_repo.list_steps(
        session, tenant_id=tenant_id, policy_id=policy.id, enabled_only=enabled_only
    )


async def get_or_create_policy(session: AsyncSession, *, tenant_id: str) -> ArtifactGovernancePolicy:
    # Policies are created lazily on first configuration; a racing creator wins the unique tenant row.
    policy = await governance_repo.get_policy(session, tenant_id=tenant_id)
    if policy is not None:
        return policy
    policy = ArtifactGovernancePolicy(tenant_id=tenant_id, artifact_type=ARTIFACT_TYPE_LANDING_PAGE)
    session.add(policy)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        policy = await governance_repo.get_policy(session, tenant_id=tenant_id)
        if policy is None:
            raise
    return policy


async def update_policy(
    session: AsyncSession,
    *,
    tenant_id: str,
    actor_id: str,
    approval_chain_enabled: bool | None = None,
    max_expiration_days: int | None = _UNSET,
    require_provenance: bool | None = None,
) -> ArtifactGovernancePolicy:
    if max_expiration_days is not _UNSET and max_expiration_days is not None:
        if isinstance(max_expiration_days, bool) or not isinstance(max_expiration_days, int) or max_expiration_days < 1:
            raise ValidationFailedError(
                "max_expiration_days must be a positive integer or null",
                details={"max_expiration_days": max_expiration_days},
            )
    policy = await get_or_create_policy(session, tenant_id=tenant_id)
    changes: dict[str, Any] = {}
    if approval_chain_enabled is not None:
        policy.approval_chain_enabled = approval_chain_enabled
        changes["approval_chain_enabled"] = approval_chain_enabled
    if max_expiration_days is not _UNSET:
        policy.max_expiration_days = max_expiration_days
        changes["max_expiration_days"] = max_expiration_days
    if require_provenance is not None:
        policy.require_provenance = require_provenance
        changes["require_provenance"] = require_provenance
    policy.updated_by = actor_id
    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_id=actor_id,
        event_type="governance.policy.updated",
        severity=SEVERITY_WARN if "approval_chain_enabled" in changes else SEVERITY_INFO,
        resource_type="artifact_governance_policy",
        resource_id=policy.id,
        metadata={"changes": changes},
    )
    await session.commit()
    return policy


async def replace_approval_steps(
    session: AsyncSession,
    *,
    tenant_id: str,
    actor_id: str,
    steps: list[ApprovalStepInput],
) -> ReplacedSteps:
    """Replace the whole approval chain of the tenant policy.

    Old steps are deleted and the new ones inserted in one transaction. A
    missing policy is created with the chain enabled. Pending requests keep the
    chain they were submitted under.
    """
    normalized = validate_step_inputs(steps)
    warnings = await check_step_satisfiability(session, tenant_id=tenant_id, steps=normalized)

    policy = await governance_repo.get_policy(session, tenant_id=tenant_id)
    if policy is None:
        policy = ArtifactGovernancePolicy(
            tenant_id=tenant_id,
            artifact_type=ARTIFACT_TYPE_LANDING_PAGE,
            approval_chain_enabled=True,
            updated_by=actor_id,
        )
        session.add(policy)
        await session.flush()
    await governance_repo.delete_steps(session, tenant_id=tenant_id, policy_id=policy.id)
    # Flush the delete first so re-used step_order values do not trip the unique constraint.
    await session.flush()
    created = [
        ArtifactApprovalStep(tenant_id=tenant_id, policy_id=policy.id, **asdict(step)) for step in normalized
    ]
    session.add_all(created)
    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_id=actor_id,
        event_type="governance.steps.replaced",
        severity=SEVERITY_WARN,
        resource_type="artifact_governance_policy",
        resource_id=policy.id,
        metadata={
            "step_count": len(created),
            "steps": [asdict(step) for step in normalized],
            "warnings": [warning.code for warning in warnings],
        },
    )
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError("Approval steps changed concurrently; reload and retry") from exc
    for warning in warnings:
        logger.warning(
            "approval_step_unsatisfiable tenant_id=%s step_order=%s code=%s",
            tenant_id,
            warning.step_order,
            warning.code,
        )
    return ReplacedSteps(policy=policy, steps=created, warnings=warnings)


def enforce_artifact_policy(
    policy: ArtifactGovernancePolicy | None,
    *,
    expires_at: datetime | None,
    provenance: dict[str, Any] | None,
    now: datetime | None = None,
) -> None:
    # Publish-time checks: bounded expiration window and mandatory provenance.
    if policy is None:
        return
    current = now or _utc_now()
    if expires_at is not None and expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    if policy.max_expiration_days is not None:
        if expires_at is None:
            raise ValidationFailedError(
                f"An expiration date within {policy.max_expiration_days} days is required",
                details={"max_expiration_days": policy.max_expiration_days},
            )
        if expires_at > current + timedelta(days=policy.max_expiration_days):
            raise ValidationFailedError(
                f"Expiration exceeds the maximum of {policy.max_expiration_days} days",
                details={"max_expiration_days": policy.max_expiration_days, "expires_at": expires_at.isoformat()},
            )
    if expires_at is not None and expires_at <= current:
        raise ValidationFailedError("Expiration must be in the future", details={"expires_at": expires_at.isoformat()})
    if policy.require_provenance and not provenance:
        raise ValidationFailedError("Provenance metadata is required for published artifacts")


async def create_approval_group(
    session: AsyncSession,
    *,
    tenant_id: str,
    actor_id: str,
    name: str,
    description: str | None = None,
) -> ApprovalGroup:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationFailedError("Approval group name is required")
    if await governance_repo.get_group_by_name(session, tenant_id=tenant_id, name=cleaned) is not None:
        raise ConflictError("Approval group name already exists", details={"name": cleaned})
    group = ApprovalGroup(tenant_id=tenant_id, name=cleaned, description=description, owner_user_id=actor_id)
    session.add(group)
    await session.flush()
    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_id=actor_id,
        event_type="governance.group.created",
        resource_type="approval_group",
        resource_id=group.id,
        metadata={"name": cleaned},
    )
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError("Approval group name already exists", details={"name": cleaned}) from exc
    return group


async def delete_approval_group(session: AsyncSession, *, tenant_id: str, actor_id: str, group_id: str) -> None:
    # Steps pointing at the group become unsatisfiable and show up in request diagnostics.
    group = await governance_repo.get_group(session, tenant_id=tenant_id, group_id=group_id)
    if group is None:
        raise NotFoundError("Approval group not found", details={"group_id": group_id})
    name = group.name
    await governance_repo.delete_group_members(session, tenant_id=tenant_id, group_id=group_id)
    await session.delete(group)
    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_id=actor_id,
        event_type="governance.group.deleted",
        severity=SEVERITY_WARN,
        resource_type="approval_group",
        resource_id=group_id,
        metadata={"name": name},
    )
    await session.commit()


async def list_approval_groups(session: AsyncSession, *, tenant_id: str) -> list[dict[str, Any]]:
    groups = await governance_repo.list_groups(session, tenant_id=tenant_id)
    payload: list[dict[str, Any]] = []
    for group in groups:
        member_ids = await governance_repo.list_group_member_ids(session, tenant_id=tenant_id, group_id=group.id)
        payload.append(
            {
                "id": group.id,
                "name": group.name,
                "description": group.description,
                "owner_user_id": group.owner_user_id,
                "member_user_ids": member_ids,
            }
        )
    return payload


async def add_group_member(
    session: AsyncSession,
    *,
    tenant_id: str,
    actor_id: str,
    group_id: str,
    user_id: str,
) -> ApprovalGroupMember:
    # Idempotent: adding an existing member returns the current row.
    group = await governance_repo.get_group(session, tenant_id=tenant_id, group_id=group_id)
    if group is None:
        raise NotFoundError("Approval group not found", details={"group_id": group_id})
    if await authz_repo.get_user(session, tenant_id=tenant_id, user_id=user_id) is None:
        raise ValidationFailedError("User does not belong to this tenant", details={"user_id": user_id})
    existing = await governance_repo.get_group_member(session, tenant_id=tenant_id, group_id=group_id, user_id=user_id)
    if existing is not None:
        return existing
    member = ApprovalGroupMember(tenant_id=tenant_id, group_id=group_id, user_id=user_id)
    session.add(member)
    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_id=actor_id,
        event_type="governance.group.member_added",
        resource_type="approval_group",
        resource_id=group_id,
        metadata={"user_id": user_id},
    )
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        existing = await governance_repo.get_group_member(
            session, tenant_id=tenant_id, group_id=group_id, user_id=user_id
        )
        if existing is None:
            raise
        return existing
    return member


async def remove_group_member(
    session: AsyncSession,
    *,
    tenant_id: str,
    actor_id: str,
    group_id: str,
    user_id: str,
) -> bool:
    member = await governance_repo.get_group_member(session, tenant_id=tenant_id, group_id=group_id, user_id=user_id)
    if member is None:
        return False
    await session.delete(member)
    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_id=actor_id,
        event_type="governance.group.member_removed",
        severity=SEVERITY_WARN,
        resource_type="approval_group",
        resource_id=group_id,
        metadata={"user_id": user_id},
    )
    await session.commit()
    return True
