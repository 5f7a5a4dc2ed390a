from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from publishgate.apps.api.deps import Principal, get_current_principal, get_db, get_executors, require_permission
from publishgate.apps.api.response import success_response
from publishgate.services.authz.catalog import PERMISSION_MANAGE_PERMISSIONS
from publishgate.services.governance import approvals as approval_service
from publishgate.services.governance.executors import ExecutorRegistry


router = APIRouter(prefix="/approvals", tags=["approvals"])


class GovernedActionRequest(BaseModel):
    request_type: Literal["artifact_publish", "data_deletion", "crm_writeback", "account_merge"]
    target_type: str = Field(min_length=1, max_length=64)
    target_id: str = Field(min_length=1, max_length=128)
    payload: dict[str, Any] = Field(default_factory=dict)
    account_id: str | None = Field(default=None, max_length=128)
    named: bool = False
    expires_at: datetime | None = None
    provenance: dict[str, Any] | None = None

    # Reject unknown fields so the stored payload is exactly what was submitted.
    model_config = {"extra": "forbid"}


class ReviewRequest(BaseModel):
    decision: Literal["approve", "reject"]
    notes: str | None = Field(default=None, max_length=2000)

    model_config = {"extra": "forbid"}


class RollbackRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=2000)

    model_config = {"extra": "forbid"}


def _evaluation_payload(evaluation: approval_service.ChainEvaluation) -> dict[str, Any]:
    return {
        "request_id": evaluation.request_id,
        "status": evaluation.status,
        "current_step_order": evaluation.current_step_order,
        "stuck": evaluation.stuck,
        "steps": [
            {**asdict(step), "approver_ids": list(step.approver_ids)} for step in evaluation.steps
        ],
    }


def _review_payload(outcome: approval_service.ReviewOutcome) -> dict[str, Any]:
    return {
        "request": approval_service.approval_request_payload(outcome.request),
        "step_order": outcome.step_order,
        "executed": outcome.executed,
        "execution_error": outcome.execution_error,
    }


@router.post("/actions")
async def perform_action(
    request: Request,
    payload: GovernedActionRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    executors: ExecutorRegistry = Depends(get_executors),
) -> dict:
    # Executes now or parks the action behind an approval request.
    outcome = await approval_service.perform_governed_action(
        db,
        tenant_id=principal.tenant_id,
        user_id=principal.user_id,
        action=approval_service.GovernedAction(**payload.model_dump()),
        executors=executors,
    )
    data = {
        "outcome": outcome.outcome,
        "request": approval_service.approval_request_payload(outcome.request) if outcome.request else None,
        "result": outcome.result,
    }
    return success_response(request=request, data=data)


@router.get("")
async def list_requests(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    request_type: str | None = None,
    limit: int = 100,
    principal: Principal = Depends(require_permission(PERMISSION_MANAGE_PERMISSIONS)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    requests = await approval_service.list_approval_requests(
        db,
        tenant_id=principal.tenant_id,
        status=status_filter,
        request_type=request_type,
        limit=max(1, min(limit, 500)),
    )
    items = [approval_service.approval_request_payload(item) for item in requests]
    return success_response(request=request, data={"items": items})


@router.get("/stuck")
async def list_stuck(
    request: Request,
    principal: Principal = Depends(require_permission(PERMISSION_MANAGE_PERMISSIONS)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    evaluations = await approval_service.list_stuck_requests(db, tenant_id=principal.tenant_id)
    return success_response(request=request, data={"items": [_evaluation_payload(item) for item in evaluations]})


@router.get("/{request_id}")
async def get_request(
    request_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    record = await approval_service.get_visible_approval_request(
        db, tenant_id=principal.tenant_id, request_id=request_id, user_id=principal.user_id
    )
    evaluation = await approval_service.evaluate_request(db, tenant_id=principal.tenant_id, request_id=request_id)
    data = {
        "request": approval_service.approval_request_payload(record),
        "evaluation": _evaluation_payload(evaluation),
    }
    return success_response(request=request, data=data)


@router.post("/{request_id}/review")
async def review_request(
    request_id: str,
    request: Request,
    payload: ReviewRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    executors: ExecutorRegistry = Depends(get_executors),
) -> dict:
    # Eligibility comes from the step scope, not from a route-level permission.
    outcome = await approval_service.review_request(
        db,
        tenant_id=principal.tenant_id,
        request_id=request_id,
        reviewer_id=principal.user_id,
        decision=payload.decision,
        notes=payload.notes,
        executors=executors,
    )
    return success_response(request=request, data=_review_payload(outcome))


@router.post("/{request_id}/retry")
async def retry_execution(
    request_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    executors: ExecutorRegistry = Depends(get_executors),
) -> dict:
    outcome = await approval_service.retry_execution(
        db, tenant_id=principal.tenant_id, request_id=request_id, actor_id=principal.user_id, executors=executors
    )
    return success_response(request=request, data=_review_payload(outcome))


@router.post("/{request_id}/rollback")
async def rollback_request(
    request_id: str,
    request: Request,
    payload: RollbackRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    executors: ExecutorRegistry = Depends(get_executors),
) -> dict:
    record = await approval_service.rollback_request(
        db,
        tenant_id=principal.tenant_id,
        request_id=request_id,
        actor_id=principal.user_id,
        executors=executors,
        reason=payload.reason,
    )
    return success_response(request=request, data=approval_service.approval_request_payload(record))
