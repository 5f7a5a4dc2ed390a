from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from publishgate.apps.api.deps import Principal, get_db, require_permission
from publishgate.apps.api.response import success_response
from publishgate.services.authz.catalog import PERMISSION_MANAGE_PERMISSIONS
from publishgate.services.governance import policy as policy_service


router = APIRouter(prefix="/admin/governance", tags=["governance"])

_manage = require_permission(PERMISSION_MANAGE_PERMISSIONS)


class PolicyPatchRequest(BaseModel):
    approval_chain_enabled: bool | None = None
    max_expiration_days: int | None = Field(default=None, ge=1)
    require_provenance: bool | None = None

    # Reject unknown fields so policy toggles stay explicit.
    model_config = {"extra": "forbid"}


class ApprovalStepRequest(BaseModel):
    step_order: int
    min_approvals: int = 1
    approver_scope_type: str
    approver_scope_value: str | None = Field(default=None, max_length=128)
    allow_self_approval: bool = False
    enabled: bool = True

    model_config = {"extra": "forbid"}


class ApprovalStepsReplaceRequest(BaseModel):
    steps: list[ApprovalStepRequest]

    model_config = {"extra": "forbid"}


class ApprovalGroupCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    description: str | None = Field(default=None, max_length=1000)

    model_config = {"extra": "forbid"}


class GroupMemberRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)

    model_config = {"extra": "forbid"}


@router.get("/policy")
async def get_policy(
    request: Request,
    principal: Principal = Depends(_manage),
    db: AsyncSession = Depends(get_db),
) -> dict:
    policy = await policy_service.get_policy(db, tenant_id=principal.tenant_id)
    steps = await policy_service.list_approval_steps(db, tenant_id=principal.tenant_id)
    return success_response(request=request, data=policy_service.policy_payload(policy, steps))


@router.patch("/policy")
async def patch_policy(
    request: Request,
    payload: PolicyPatchRequest,
    principal: Principal = Depends(_manage),
    db: AsyncSession = Depends(get_db),
) -> dict:
    changes = payload.model_dump(exclude_unset=True)
    kwargs = {"max_expiration_days": changes["max_expiration_days"]} if "max_expiration_days" in changes else {}
    policy = await policy_service.update_policy(
        db,
        tenant_id=principal.tenant_id,
        actor_id=principal.user_id,
        approval_chain_enabled=changes.get("approval_chain_enabled"),
        require_provenance=changes.get("require_provenance"),
        **kwargs,
    )
    steps = await policy_service.list_approval_steps(db, tenant_id=principal.tenant_id)
    return success_response(request=request, data=policy_service.policy_payload(policy, steps))


@router.put("/policy/steps")
async def replace_steps(
    request: Request,
    payload: ApprovalStepsReplaceRequest,
    principal: Principal = Depends(_manage),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Whole-chain replacement; unsatisfiable steps are saved and reported as warnings.
    replaced = await policy_service.replace_approval_steps(
        db,
        tenant_id=principal.tenant_id,
        actor_id=principal.user_id,
        steps=[policy_service.ApprovalStepInput(**step.model_dump()) for step in payload.steps],
    )
    data = policy_service.policy_payload(replaced.policy, replaced.steps)
    data["warnings"] = [
        {"step_order": warning.step_order, "code": warning.code, "message": warning.message}
        for warning in replaced.warnings
    ]
    return success_response(request=request, data=data)


@router.get("/groups")
async def list_groups(
    request: Request,
    principal: Principal = Depends(_manage),
    db: AsyncSession = Depends(get_db),
) -> dict:
    groups = await policy_service.list_approval_groups(db, tenant_id=principal.tenant_id)
    return success_response(request=request, data={"items": groups})


@router.post("/groups", status_code=status.HTTP_201_CREATED)
async def create_group(
    request: Request,
    payload: ApprovalGroupCreateRequest,
    principal: Principal = Depends(_manage),
    db: AsyncSession = Depends(get_db),
) -> dict:
    group = await policy_service.create_approval_group(
        db,
        tenant_id=principal.tenant_id,
        actor_id=principal.user_id,
        name=payload.name,
        description=payload.description,
    )
    data = {"id": group.id, "name": group.name, "description": group.description, "member_user_ids": []}
    return success_response(request=request, data=data)


@router.delete("/groups/{group_id}")
async def delete_group(
    group_id: str,
    request: Request,
    principal: Principal = Depends(_manage),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await policy_service.delete_approval_group(
        db, tenant_id=principal.tenant_id, actor_id=principal.user_id, group_id=group_id
    )
    return success_response(request=request, data={"id": group_id, "deleted": True})


@router.post("/groups/{group_id}/members")
async def add_group_member(
    group_id: str,
    request: Request,
    payload: GroupMemberRequest,
    principal: Principal = Depends(_manage),
    db: AsyncSession = Depends(get_db),
) -> dict:
    member = await policy_service.add_group_member(
        db, tenant_id=principal.tenant_id, actor_id=principal.user_id, group_id=group_id, user_id=payload.user_id
    )
    return success_response(request=request, data={"group_id": member.group_id, "user_id": member.user_id})


@router.delete("/groups/{group_id}/members/{user_id}")
async def remove_group_member(
    group_id: str,
    user_id: str,
    request: Request,
    principal: Principal = Depends(_manage),
    db: AsyncSession = Depends(get_db),
) -> dict:
    removed = await policy_service.remove_group_member(
        db, tenant_id=principal.tenant_id, actor_id=principal.user_id, group_id=group_id, user_id=user_id
    )
    return success_response(request=request, data={"group_id": group_id, "user_id": user_id, "removed": removed})
