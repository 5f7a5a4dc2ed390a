from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from publishgate.core.errors import (
    ActionExecutionError,
    AuthorizationDeniedError,
    ConflictError,
    NotFoundError,
    ValidationFailedError,
)
from publishgate.domain.models import ApprovalDecision, ApprovalRequest, ArtifactGovernancePolicy
from publishgate.persistence.repos import governance as governance_repo
from publishgate.services.audit import SEVERITY_CRITICAL, SEVERITY_INFO, SEVERITY_WARN, record_event
from publishgate.services.authz.account_access import can_access_account
from publishgate.services.authz.catalog import (
    PERMISSION_MANAGE_ENTITY_RESOLUTION,
    PERMISSION_MANAGE_PERMISSIONS,
    PERMISSION_PUBLISH_LANDING_PAGE,
    PERMISSION_PUBLISH_NAMED_LANDING_PAGE,
)
from publishgate.services.authz.permissions import has_permission, record_permission_denied
from publishgate.services.governance.executors import ExecutorRegistry, GovernedActionContext
from publishgate.services.governance.policy import enforce_artifact_policy
from publishgate.services.governance.scopes import APPROVER_SCOPE_SELF, resolve_scope_members


logger = logging.getLogger(__name__)

REQUEST_TYPE_ARTIFACT_PUBLISH = "artifact_publish"
REQUEST_TYPE_DATA_DELETION = "data_deletion"
REQUEST_TYPE_CRM_WRITEBACK = "crm_writeback"
REQUEST_TYPE_ACCOUNT_MERGE = "account_merge"
REQUEST_TYPES = (
    REQUEST_TYPE_ARTIFACT_PUBLISH,
    REQUEST_TYPE_DATA_DELETION,
    REQUEST_TYPE_CRM_WRITEBACK,
    REQUEST_TYPE_ACCOUNT_MERGE,
)
REQUEST_TYPE_PERMISSIONS = {
    REQUEST_TYPE_ARTIFACT_PUBLISH: PERMISSION_PUBLISH_LANDING_PAGE,
    REQUEST_TYPE_DATA_DELETION: PERMISSION_MANAGE_PERMISSIONS,
    REQUEST_TYPE_CRM_WRITEBACK: PERMISSION_MANAGE_PERMISSIONS,
    REQUEST_TYPE_ACCOUNT_MERGE: PERMISSION_MANAGE_ENTITY_RESOLUTION,
}

APPROVAL_STATUS_PENDING = "pending"
APPROVAL_STATUS_APPROVED = "approved"
APPROVAL_STATUS_REJECTED = "rejected"
APPROVAL_STATUS_COMPLETED = "completed"
APPROVAL_STATUS_ROLLED_BACK = "rolled_back"
APPROVAL_STATUSES = (
    APPROVAL_STATUS_PENDING,
    APPROVAL_STATUS_APPROVED,
    APPROVAL_STATUS_REJECTED,
    APPROVAL_STATUS_COMPLETED,
    APPROVAL_STATUS_ROLLED_BACK,
)

DECISION_APPROVE = "approve"
DECISION_REJECT = "reject"

OUTCOME_EXECUTED = "executed"
OUTCOME_PENDING_APPROVAL = "pending_approval"

STUCK_SCOPE_MISSING = "scope_missing"
STUCK_SELF_APPROVAL_EXCLUDED = "self_approval_excluded"
STUCK_INSUFFICIENT_APPROVERS = "insufficient_eligible_approvers"


@dataclass(frozen=True)
class GovernedAction:
    request_type: str
    target_type: str
    target_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    account_id: str | None = None
    # Named publishes identify the customer and need the named-publish permission.
    named: bool = False
    expires_at: datetime | None = None
    provenance: dict[str, Any] | None = None


@dataclass(frozen=True)
class GovernedActionOutcome:
    outcome: str
    request: ApprovalRequest | None = None
    result: dict[str, Any] | None = None


@dataclass(frozen=True)
class ReviewOutcome:
    request: ApprovalRequest
    step_order: int | None
    executed: bool = False
    execution_error: str | None = None


@dataclass(frozen=True)
class StepProgress:
    step_order: int
    min_approvals: int
    approver_scope_type: str
    approver_scope_value: str | None
    allow_self_approval: bool
    approver_ids: tuple[str, ...]
    satisfied: bool
    remaining_candidates: int | None = None
    stuck_reason: str | None = None


@dataclass(frozen=True)
class ChainEvaluation:
    request_id: str
    status: str
    current_step_order: int | None
    steps: list[StepProgress]

    @property
    def stuck(self) -> bool:
        return self.status == APPROVAL_STATUS_PENDING and any(step.stuck_reason for step in self.steps)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _required_permission(action: GovernedAction) -> str:
    if action.request_type not in REQUEST_TYPE_PERMISSIONS:
        raise ValidationFailedError(
            "Unknown governed request type", details={"request_type": action.request_type, "allowed": list(REQUEST_TYPES)}
        )
    if action.request_type == REQUEST_TYPE_ARTIFACT_PUBLISH and action.named:
        return PERMISSION_PUBLISH_NAMED_LANDING_PAGE
    return REQUEST_TYPE_PERMISSIONS[action.request_type]


def _context_from_request(request: ApprovalRequest) -> GovernedActionContext:
    return GovernedActionContext(
        tenant_id=request.tenant_id,
        request_type=request.request_type,
        target_type=request.target_type,
        target_id=request.target_id,
        requested_by_user_id=request.requested_by_user_id,
        payload=dict(request.request_payload_json or {}),
        approval_request_id=request.id,
    )


def approval_request_payload(request: ApprovalRequest) -> dict[str, Any]:
    return {
        "id": request.id,
        "request_type": request.request_type,
        "target_type": request.target_type,
        "target_id": request.target_id,
        "requested_by_user_id": request.requested_by_user_id,
        "status": request.status,
        "request_payload": request.request_payload_json or {},
        "chain": request.chain_json or [],
        "reviewer_user_id": request.reviewer_user_id,
        "review_notes": request.review_notes,
        "reviewed_at": request.reviewed_at.isoformat() if request.reviewed_at else None,
        "completed_at": request.completed_at.isoformat() if request.completed_at else None,
        "rolled_back_at": request.rolled_back_at.isoformat() if request.rolled_back_at else None,
        "execution_result": request.execution_result_json,
        "execution_error": request.execution_error,
    }


def _chain_enabled(policy: ArtifactGovernancePolicy | None) -> bool:
    # No policy, or a policy with the chain switched off, means the action runs immediately.
    return bool(policy is not None and policy.approval_chain_enabled)


async def requires_approval(session: AsyncSession, *, tenant_id: str) -> bool:
    return _chain_enabled(await governance_repo.get_policy(session, tenant_id=tenant_id))


async def _snapshot_chain(session: AsyncSession, *, tenant_id: str, policy_id: str) -> list[dict[str, Any]]:
    steps = await governance_repo.list_steps(session, tenant_id=tenant_id, policy_id=policy_id, enabled_only=True)
    return [
        {
            "step_order": step.step_order,
            "min_approvals": step.min_approvals,
            "approver_scope_type": step.approver_scope_type,
            "approver_scope_value": step.approver_scope_value,
            "allow_self_approval": step.allow_self_approval,
        }
        for step in steps
    ]


async def _deny(
    *,
    tenant_id: str,
    actor_id: str,
    permission: str,
    resource_type: str,
    resource_id: str | None,
) -> AuthorizationDeniedError:
    await record_permission_denied(
        tenant_id=tenant_id,
        actor_id=actor_id,
        permission=permission,
        resource_type=resource_type,
        resource_id=resource_id,
    )
    return AuthorizationDeniedError()


async def perform_governed_action(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    action: GovernedAction,
    executors: ExecutorRegistry,
) -> GovernedActionOutcome:
    """Run a privileged action through permission, account and approval gates.

    Either the executor runs now, or a pending approval request is stored and
    the side effect waits until the chain completes.
    """
    permission = _required_permission(action)
    executor = executors.get(action.request_type)
    if not await has_permission(session, tenant_id=tenant_id, user_id=user_id, permission=permission):
        raise await _deny(
            tenant_id=tenant_id,
            actor_id=user_id,
            permission=permission,
            resource_type=action.target_type,
            resource_id=action.target_id,
        )
    if action.account_id is not None and not await can_access_account(
        session, tenant_id=tenant_id, user_id=user_id, account_id=action.account_id
    ):
        raise await _deny(
            tenant_id=tenant_id,
            actor_id=user_id,
            permission="account_access",
            resource_type="account",
            resource_id=action.account_id,
        )

    policy = await governance_repo.get_policy(session, tenant_id=tenant_id)
    if action.request_type == REQUEST_TYPE_ARTIFACT_PUBLISH:
        enforce_artifact_policy(policy, expires_at=action.expires_at, provenance=action.provenance)

    payload = dict(action.payload)
    if action.account_id is not None:
        payload.setdefault("account_id", action.account_id)
    if action.named:
        payload.setdefault("named", True)
    if action.expires_at is not None:
        payload.setdefault("expires_at", action.expires_at.isoformat())
    if action.provenance:
        payload.setdefault("provenance", action.provenance)

    if not _chain_enabled(policy):
        context = GovernedActionContext(
            tenant_id=tenant_id,
            request_type=action.request_type,
            target_type=action.target_type,
            target_id=action.target_id,
            requested_by_user_id=user_id,
            payload=payload,
        )
        try:
            result = await executor.execute(session, context)
        except Exception as exc:
            await session.rollback()
            await record_event(
                tenant_id=tenant_id,
                actor_id=user_id,
                event_type="governed_action.failed",
                outcome="failure",
                severity=SEVERITY_CRITICAL,
                resource_type=action.target_type,
                resource_id=action.target_id,
                metadata={"request_type": action.request_type, "error": type(exc).__name__},
                error_code=ActionExecutionError.code,
            )
            logger.exception(
                "governed_action_failed tenant_id=%s request_type=%s target_id=%s",
                tenant_id,
                action.request_type,
                action.target_id,
            )
            raise ActionExecutionError(
                "Action execution failed", details={"request_type": action.request_type}
            ) from exc
        await record_event(
            session=session,
            tenant_id=tenant_id,
            actor_id=user_id,
            event_type="governed_action.executed",
            resource_type=action.target_type,
            resource_id=action.target_id,
            metadata={"request_type": action.request_type, "approval_required": False},
        )
        await session.commit()
        return GovernedActionOutcome(outcome=OUTCOME_EXECUTED, result=result)

    request = ApprovalRequest(
        tenant_id=tenant_id,
        request_type=action.request_type,
        target_type=action.target_type,
        target_id=action.target_id,
        requested_by_user_id=user_id,
        status=APPROVAL_STATUS_PENDING,
        request_payload_json=payload,
        chain_json=await _snapshot_chain(session, tenant_id=tenant_id, policy_id=policy.id),
        version=0,
    )
    session.add(request)
    await session.flush()
    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_id=user_id,
        event_type="approval.requested",
        resource_type="approval_request",
        resource_id=request.id,
        metadata={
            "request_type": action.request_type,
            "target_type": action.target_type,
            "target_id": action.target_id,
            "step_count": len(request.chain_json),
        },
    )
    await session.commit()
    logger.info(
        "approval_requested tenant_id=%s request_id=%s request_type=%s steps=%s",
        tenant_id,
        request.id,
        action.request_type,
        len(request.chain_json),
    )
    return GovernedActionOutcome(outcome=OUTCOME_PENDING_APPROVAL, request=request)


async def _eligible_approvers(
    session: AsyncSession,
    *,
    tenant_id: str,
    request: ApprovalRequest,
    step: dict[str, Any],
) -> tuple[frozenset[str], frozenset[str], bool]:
    # Returns (eligible, scope members before self exclusion, scope missing).
    members = await resolve_scope_members(
        session,
        tenant_id=tenant_id,
        scope_type=step["approver_scope_type"],
        scope_value=step.get("approver_scope_value"),
        requester_id=request.requested_by_user_id,
        allow_self_approval=bool(step.get("allow_self_approval")),
    )
    eligible = members.user_ids
    if not step.get("allow_self_approval"):
        eligible = eligible - {request.requested_by_user_id}
    return eligible, members.user_ids, members.scope_missing


def _approvals_by_step(decisions: list[ApprovalDecision]) -> dict[int | None, list[str]]:
    approvals: dict[int | None, list[str]] = {}
    for decision in decisions:
        if decision.decision == DECISION_APPROVE:
            approvals.setdefault(decision.step_order, []).append(decision.approver_user_id)
    return approvals


def _current_step(chain: list[dict[str, Any]], approvals: dict[int | None, list[str]]) -> dict[str, Any] | None:
    # Sequential gate: the lowest-ordered step still short of its quorum.
    for step in chain:
        if len(approvals.get(step["step_order"], [])) < int(step["min_approvals"]):
            return step
    return None


async def evaluate_request(session: AsyncSession, *, tenant_id: str, request_id: str) -> ChainEvaluation:
    """Report quorum progress per step, flagging steps that can no longer be satisfied."""
    request = await governance_repo.get_request(session, tenant_id=tenant_id, request_id=request_id)
    if request is None:
        raise NotFoundError("Approval request not found", details={"request_id": request_id})
    decisions = await governance_repo.list_decisions(session, tenant_id=tenant_id, request_id=request.id)
    approvals = _approvals_by_step(decisions)
    decided = {decision.approver_user_id for decision in decisions}
    chain = list(request.chain_json or [])
    current = _current_step(chain, approvals) if request.status == APPROVAL_STATUS_PENDING else None

    progress: list[StepProgress] = []
    for step in chain:
        approver_ids = tuple(approvals.get(step["step_order"], []))
        needed = int(step["min_approvals"]) - len(approver_ids)
        satisfied = needed <= 0
        remaining: int | None = None
        reason: str | None = None
        if not satisfied and request.status == APPROVAL_STATUS_PENDING:
            eligible, members, scope_missing = await _eligible_approvers(
                session, tenant_id=tenant_id, request=request, step=step
            )
            candidates = eligible - decided
            remaining = len(candidates)
            if scope_missing:
                reason = STUCK_SCOPE_MISSING
            elif step["approver_scope_type"] == APPROVER_SCOPE_SELF and not step.get("allow_self_approval"):
                reason = STUCK_SELF_APPROVAL_EXCLUDED
            elif len(candidates) < needed:
                requester_excluded = (
                    request.requested_by_user_id in members
                    and not step.get("allow_self_approval")
                    and request.requested_by_user_id not in decided
                )
                reason = (
                    STUCK_SELF_APPROVAL_EXCLUDED
                    if requester_excluded and len(candidates) + 1 >= needed
                    else STUCK_INSUFFICIENT_APPROVERS
                )
        progress.append(
            StepProgress(
                step_order=int(step["step_order"]),
                min_approvals=int(step["min_approvals"]),
                approver_scope_type=step["approver_scope_type"],
                approver_scope_value=step.get("approver_scope_value"),
                allow_self_approval=bool(step.get("allow_self_approval")),
                approver_ids=approver_ids,
                satisfied=satisfied,
                remaining_candidates=remaining,
                stuck_reason=reason,
            )
        )
    evaluation = ChainEvaluation(
        request_id=request.id,
        status=request.status,
        current_step_order=int(current["step_order"]) if current is not None else None,
        steps=progress,
    )
    if evaluation.stuck:
        logger.warning(
            "approval_request_stuck tenant_id=%s request_id=%s reasons=%s",
            tenant_id,
            request.id,
            ",".join(sorted({step.stuck_reason for step in progress if step.stuck_reason})),
        )
    return evaluation


async def get_approval_request(session: AsyncSession, *, tenant_id: str, request_id: str) -> ApprovalRequest:
    request = await governance_repo.get_request(session, tenant_id=tenant_id, request_id=request_id)
    if request is None:
        raise NotFoundError("Approval request not found", details={"request_id": request_id})
    return request


async def get_visible_approval_request(
    session: AsyncSession,
    *,
    tenant_id: str,
    request_id: str,
    user_id: str,
) -> ApprovalRequest:
    """Load a request for one reader.

    The requester, anyone who already decided on it, anyone in scope for one of
    its steps, and permission managers may read it. Everyone else is denied.
    """
    request = await get_approval_request(session, tenant_id=tenant_id, request_id=request_id)
    if request.requested_by_user_id == user_id:
        return request
    if await has_permission(session, tenant_id=tenant_id, user_id=user_id, permission=PERMISSION_MANAGE_PERMISSIONS):
        return request
    decisions = await governance_repo.list_decisions(session, tenant_id=tenant_id, request_id=request.id)
    if any(decision.approver_user_id == user_id for decision in decisions):
        return request
    for step in request.chain_json or []:
        eligible, _, _ = await _eligible_approvers(session, tenant_id=tenant_id, request=request, step=step)
        if user_id in eligible:
            return request
    raise await _deny(
        tenant_id=tenant_id,
        actor_id=user_id,
        permission="approval_view",
        resource_type="approval_request",
        resource_id=request_id,
    )


async def list_stuck_requests(session: AsyncSession, *, tenant_id: str) -> list[ChainEvaluation]:
    pending = await governance_repo.list_requests(
        session, tenant_id=tenant_id, status=APPROVAL_STATUS_PENDING, limit=500
    )
    evaluations = [await evaluate_request(session, tenant_id=tenant_id, request_id=request.id) for request in pending]
    return [evaluation for evaluation in evaluations if evaluation.stuck]


async def list_approval_requests(
    session: AsyncSession,
    *,
    tenant_id: str,
    status: str | None = None,
    request_type: str | None = None,
    limit: int = 100,
) -> list[ApprovalRequest]:
    if status is not None and status not in APPROVAL_STATUSES:
        raise ValidationFailedError("Unknown approval status", details={"status": status})
    if request_type is not None and request_type not in REQUEST_TYPES:
        raise ValidationFailedError("Unknown request type", details={"request_type": request_type})
    return await governance_repo.list_requests(
        session, tenant_id=tenant_id, status=status, request_type=request_type, limit=limit
    )


async def _load_pending(session: AsyncSession, *, tenant_id: str, request_id: str) -> ApprovalRequest:
    request = await governance_repo.get_request(session, tenant_id=tenant_id, request_id=request_id, for_update=True)
    if request is None:
        raise NotFoundError("Approval request not found", details={"request_id": request_id})
    if request.status != APPROVAL_STATUS_PENDING:
        raise ConflictError(
            "Approval request is already resolved", details={"request_id": request_id, "status": request.status}
        )
    return request


async def review_request(
    session: AsyncSession,
    *,
    tenant_id: str,
    request_id: str,
    reviewer_id: str,
    decision: str,
    executors: ExecutorRegistry,
    notes: str | None = None,
) -> ReviewOutcome:
    """Record one approver's decision on a pending request.

    The decision row and the request's version bump commit together through a
    compare-and-set on (status, version). Two reviewers racing on the same
    version cannot both win, so the transition to approved, and with it the
    deferred action, happens exactly once.
    """
    if decision not in {DECISION_APPROVE, DECISION_REJECT}:
        raise ValidationFailedError("decision must be approve or reject", details={"decision": decision})
    request = await _load_pending(session, tenant_id=tenant_id, request_id=request_id)
    decisions = await governance_repo.list_decisions(session, tenant_id=tenant_id, request_id=request.id)
    if any(item.approver_user_id == reviewer_id for item in decisions):
        raise ConflictError("Reviewer already recorded a decision on this request", details={"request_id": request.id})

    chain = list(request.chain_json or [])
    approvals = _approvals_by_step(decisions)
    step = _current_step(chain, approvals)
    step_order: int | None = None
    if not chain:
        # Chain enabled without steps: one review by a permission manager other than the requester.
        allowed = reviewer_id != request.requested_by_user_id and await has_permission(
            session, tenant_id=tenant_id, user_id=reviewer_id, permission=PERMISSION_MANAGE_PERMISSIONS
        )
        quorum_met = True
    elif step is None:
        allowed = False
        quorum_met = True
    else:
        step_order = int(step["step_order"])
        eligible, _, _ = await _eligible_approvers(session, tenant_id=tenant_id, request=request, step=step)
        allowed = reviewer_id in eligible
        is_last = step is chain[-1]
        quorum_met = is_last and len(approvals.get(step_order, [])) + 1 >= int(step["min_approvals"])
    if not allowed:
        await session.rollback()
        raise await _deny(
            tenant_id=tenant_id,
            actor_id=reviewer_id,
            permission="approval_review",
            resource_type="approval_request",
            resource_id=request_id,
        )

    now = _utc_now()
    version = request.version
    request_type = request.request_type
    session.add(
        ApprovalDecision(
            tenant_id=tenant_id,
            request_id=request.id,
            step_order=step_order,
            approver_user_id=reviewer_id,
            decision=decision,
            notes=notes,
        )
    )
    values: dict[str, Any] = {}
    if decision == DECISION_REJECT:
        new_status = APPROVAL_STATUS_REJECTED
    elif quorum_met:
        new_status = APPROVAL_STATUS_APPROVED
    else:
        new_status = APPROVAL_STATUS_PENDING
    if new_status != APPROVAL_STATUS_PENDING:
        values.update(status=new_status, reviewer_user_id=reviewer_id, review_notes=notes, reviewed_at=now)
    await session.flush()
    swapped = await governance_repo.compare_and_set_request(
        session,
        tenant_id=tenant_id,
        request_id=request_id,
        expected_status=APPROVAL_STATUS_PENDING,
        expected_version=version,
        values=values,
    )
    if not swapped:
        await session.rollback()
        raise ConflictError("Approval request changed concurrently; retry", details={"request_id": request_id})
    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_id=reviewer_id,
        event_type="approval.rejected" if decision == DECISION_REJECT else "approval.approved",
        severity=SEVERITY_WARN if decision == DECISION_REJECT else SEVERITY_INFO,
        resource_type="approval_request",
        resource_id=request_id,
        metadata={"step_order": step_order, "status": new_status, "request_type": request_type},
    )
    try:
        await session.commit()
    except IntegrityError as exc:
        # Unique (request, approver) caught a concurrent duplicate decision.
        await session.rollback()
        raise ConflictError(
            "Reviewer already recorded a decision on this request", details={"request_id": request_id}
        ) from exc
    logger.info(
        "approval_decision_recorded tenant_id=%s request_id=%s reviewer_id=%s decision=%s status=%s",
        tenant_id,
        request_id,
        reviewer_id,
        decision,
        new_status,
    )

    if new_status != APPROVAL_STATUS_APPROVED:
        refreshed = await governance_repo.get_request(session, tenant_id=tenant_id, request_id=request_id)
        return ReviewOutcome(request=refreshed or request, step_order=step_order)
    refreshed, error = await _execute_approved(
        session, tenant_id=tenant_id, request_id=request_id, actor_id=reviewer_id, executors=executors
    )
    return ReviewOutcome(request=refreshed, step_order=step_order, executed=error is None, execution_error=error)


async def _execute_approved(
    session: AsyncSession,
    *,
    tenant_id: str,
    request_id: str,
    actor_id: str,
    executors: ExecutorRegistry,
) -> tuple[ApprovalRequest, str | None]:
    request = await governance_repo.get_request(session, tenant_id=tenant_id, request_id=request_id, for_update=True)
    if request is None:
        raise NotFoundError("Approval request not found", details={"request_id": request_id})
    if request.status != APPROVAL_STATUS_APPROVED:
        raise ConflictError(
            "Approval request is not awaiting execution", details={"request_id": request_id, "status": request.status}
        )
    version = request.version
    request_type = request.request_type
    context = _context_from_request(request)
    try:
        result = await executors.get(request_type).execute(session, context)
    except Exception as exc:
        # The request stays approved with the error recorded so it can be retried.
        await session.rollback()
        error = f"{type(exc).__name__}: {exc}"[:500]
        await governance_repo.compare_and_set_request(
            session,
            tenant_id=tenant_id,
            request_id=request_id,
            expected_status=APPROVAL_STATUS_APPROVED,
            expected_version=version,
            values={"execution_error": error},
        )
        await record_event(
            session=session,
            tenant_id=tenant_id,
            actor_id=actor_id,
            event_type="approval.execution_failed",
            outcome="failure",
            severity=SEVERITY_CRITICAL,
            resource_type="approval_request",
            resource_id=request_id,
            metadata={"request_type": request_type, "error": type(exc).__name__},
            error_code=ActionExecutionError.code,
        )
        await session.commit()
        logger.exception("approval_execution_failed tenant_id=%s request_id=%s", tenant_id, request_id)
        refreshed = await governance_repo.get_request(session, tenant_id=tenant_id, request_id=request_id)
        return refreshed or request, error

    swapped = await governance_repo.compare_and_set_request(
        session,
        tenant_id=tenant_id,
        request_id=request_id,
        expected_status=APPROVAL_STATUS_APPROVED,
        expected_version=version,
        values={
            "status": APPROVAL_STATUS_COMPLETED,
            "completed_at": _utc_now(),
            "execution_result_json": result or {},
            "execution_error": None,
        },
    )
    if not swapped:
        # Another worker completed the request first; discard this execution's writes.
        await session.rollback()
        raise ConflictError("Approval request changed concurrently", details={"request_id": request_id})
    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_id=actor_id,
        event_type="approval.completed",
        resource_type="approval_request",
        resource_id=request_id,
        metadata={"request_type": request_type, "target_id": request.target_id},
    )
    await session.commit()
    logger.info("approval_completed tenant_id=%s request_id=%s", tenant_id, request_id)
    refreshed = await governance_repo.get_request(session, tenant_id=tenant_id, request_id=request_id)
    return refreshed or request, None


async def retry_execution(
    session: AsyncSession,
    *,
    tenant_id: str,
    request_id: str,
    actor_id: str,
    executors: ExecutorRegistry,
) -> ReviewOutcome:
    # Re-run the deferred action of an approved request whose executor failed.
    if not await has_permission(
        session, tenant_id=tenant_id, user_id=actor_id, permission=PERMISSION_MANAGE_PERMISSIONS
    ):
        raise await _deny(
            tenant_id=tenant_id,
            actor_id=actor_id,
            permission=PERMISSION_MANAGE_PERMISSIONS,
            resource_type="approval_request",
            resource_id=request_id,
        )
    refreshed, error = await _execute_approved(
        session, tenant_id=tenant_id, request_id=request_id, actor_id=actor_id, executors=executors
    )
    return ReviewOutcome(request=refreshed, step_order=None, executed=error is None, execution_error=error)


async def rollback_request(
    session: AsyncSession,
    *,
    tenant_id: str,
    request_id: str,
    actor_id: str,
    executors: ExecutorRegistry,
    reason: str | None = None,
) -> ApprovalRequest:
    """Undo a completed request's action; only reversible action types qualify."""
    if not await has_permission(
        session, tenant_id=tenant_id, user_id=actor_id, permission=PERMISSION_MANAGE_PERMISSIONS
    ):
        raise await _deny(
            tenant_id=tenant_id,
            actor_id=actor_id,
            permission=PERMISSION_MANAGE_PERMISSIONS,
            resource_type="approval_request",
            resource_id=request_id,
        )
    request = await governance_repo.get_request(session, tenant_id=tenant_id, request_id=request_id, for_update=True)
    if request is None:
        raise NotFoundError("Approval request not found", details={"request_id": request_id})
    if request.status != APPROVAL_STATUS_COMPLETED:
        raise ConflictError(
            "Only completed requests can be rolled back", details={"request_id": request_id, "status": request.status}
        )
    executor = executors.get(request.request_type)
    if not getattr(executor, "reversible", False):
        raise ValidationFailedError(
            "Action type is not reversible", details={"request_type": request.request_type}
        )
    version = request.version
    request_type = request.request_type
    try:
        result = await executor.rollback(session, _context_from_request(request))
    except Exception as exc:
        await session.rollback()
        logger.exception("approval_rollback_failed tenant_id=%s request_id=%s", tenant_id, request_id)
        raise ActionExecutionError("Rollback failed", details={"request_type": request_type}) from exc
    swapped = await governance_repo.compare_and_set_request(
        session,
        tenant_id=tenant_id,
        request_id=request_id,
        expected_status=APPROVAL_STATUS_COMPLETED,
        expected_version=version,
        values={
            "status": APPROVAL_STATUS_ROLLED_BACK,
            "rolled_back_at": _utc_now(),
            "execution_result_json": {**(request.execution_result_json or {}), "rollback": result or {}},
        },
    )
    if not swapped:
        await session.rollback()
        raise ConflictError("Approval request changed concurrently", details={"request_id": request_id})
    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_id=actor_id,
        event_type="approval.rolled_back",
        severity=SEVERITY_CRITICAL,
        resource_type="approval_request",
        resource_id=request_id,
        metadata={"request_type": request.request_type, "reason": reason},
    )
    await session.commit()
    refreshed = await governance_repo.get_request(session, tenant_id=tenant_id, request_id=request_id)
    return refreshed or request
