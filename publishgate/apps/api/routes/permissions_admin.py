from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from publishgate.apps.api.deps import Principal, get_current_principal, get_db, require_permission
from publishgate.apps.api.response import success_response
from publishgate.services.authz import permissions as permission_service
from publishgate.services.authz import role_profiles as role_service
from publishgate.services.authz.catalog import PERMISSION_KINDS, PERMISSION_MANAGE_PERMISSIONS


router = APIRouter(prefix="/admin/permissions", tags=["permissions"])

_manage = require_permission(PERMISSION_MANAGE_PERMISSIONS)


class PermissionGrantRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    permission: str = Field(min_length=1, max_length=64)

    model_config = {"extra": "forbid"}


class RoleProfileCreateRequest(BaseModel):
    key: str = Field(min_length=2, max_length=40)
    name: str = Field(min_length=1, max_length=128)
    description: str | None = Field(default=None, max_length=1000)
    permissions: list[str] = Field(default_factory=list)
    can_access_anonymous_stories: bool = True
    can_generate_anonymous_stories: bool = True
    can_access_named_stories: bool = False
    can_generate_named_stories: bool = False
    default_account_scope_type: Literal["all_accounts", "single_account", "account_list"] = "all_accounts"
    default_account_ids: list[str] = Field(default_factory=list)
    max_tokens_per_day: int | None = Field(default=None, ge=0)
    max_tokens_per_month: int | None = Field(default=None, ge=0)
    max_requests_per_day: int | None = Field(default=None, ge=0)
    max_requests_per_month: int | None = Field(default=None, ge=0)
    max_stories_per_month: int | None = Field(default=None, ge=0)

    # Reject unknown fields so profile bundles stay explicit.
    model_config = {"extra": "forbid"}


class RoleProfilePatchRequest(BaseModel):
    key: str | None = Field(default=None, min_length=2, max_length=40)
    name: str | None = Field(default=None, min_length=1, max_length=128)
    description: str | None = Field(default=None, max_length=1000)
    permissions: list[str] | None = None
    can_access_anonymous_stories: bool | None = None
    can_generate_anonymous_stories: bool | None = None
    can_access_named_stories: bool | None = None
    can_generate_named_stories: bool | None = None
    default_account_scope_type: Literal["all_accounts", "single_account", "account_list"] | None = None
    default_account_ids: list[str] | None = None
    max_tokens_per_day: int | None = Field(default=None, ge=0)
    max_tokens_per_month: int | None = Field(default=None, ge=0)
    max_requests_per_day: int | None = Field(default=None, ge=0)
    max_requests_per_month: int | None = Field(default=None, ge=0)
    max_stories_per_month: int | None = Field(default=None, ge=0)

    model_config = {"extra": "forbid"}


class RoleAssignRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    role_profile_id: str = Field(min_length=1, max_length=128)
    # Replace the user's account grants with the profile's default scope.
    reset_account_scope: bool = False

    model_config = {"extra": "forbid"}


def _effective_policy_payload(policy: role_service.EffectiveRolePolicy) -> dict[str, Any]:
    return {
        "user_id": policy.user_id,
        "role": policy.role,
        "role_profile_id": policy.role_profile_id,
        "role_profile_key": policy.role_profile_key,
        "permissions": list(policy.permissions),
        "flags": policy.flags,
        "caps": policy.caps,
        "default_account_scope_type": policy.default_account_scope_type,
        "default_account_ids": list(policy.default_account_ids),
        "source": policy.source,
    }


@router.get("/catalog")
async def get_permission_catalog(
    request: Request,
    principal: Principal = Depends(_manage),
) -> dict:
    return success_response(request=request, data={"permissions": list(PERMISSION_KINDS)})


@router.get("/matrix")
async def get_permission_matrix(
    request: Request,
    principal: Principal = Depends(_manage),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Users with base role, assigned profile and explicit grants.
    matrix = await permission_service.get_permission_matrix(db, tenant_id=principal.tenant_id)
    return success_response(request=request, data={"items": matrix})


@router.post("/grants", status_code=status.HTTP_201_CREATED)
async def grant_permission(
    request: Request,
    payload: PermissionGrantRequest,
    principal: Principal = Depends(_manage),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await permission_service.grant_permission(
        db,
        tenant_id=principal.tenant_id,
        actor_id=principal.user_id,
        user_id=payload.user_id,
        permission=payload.permission,
    )
    data = {"id": row.id, "user_id": row.user_id, "permission": row.permission, "granted_by": row.granted_by}
    return success_response(request=request, data=data)


@router.delete("/grants/{user_id}/{permission}")
async def revoke_permission(
    user_id: str,
    permission: str,
    request: Request,
    principal: Principal = Depends(_manage),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await permission_service.revoke_permission(
        db, tenant_id=principal.tenant_id, actor_id=principal.user_id, user_id=user_id, permission=permission
    )
    return success_response(request=request, data={"user_id": user_id, "permission": permission, "revoked": True})


@router.get("/roles")
async def list_role_profiles(
    request: Request,
    principal: Principal = Depends(_manage),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Listing seeds the preset profiles on first access.
    profiles = await role_service.list_role_profiles(db, tenant_id=principal.tenant_id)
    return success_response(request=request, data={"items": [role_service.role_profile_payload(p) for p in profiles]})


@router.post("/roles", status_code=status.HTTP_201_CREATED)
async def create_role_profile(
    request: Request,
    payload: RoleProfileCreateRequest,
    principal: Principal = Depends(_manage),
    db: AsyncSession = Depends(get_db),
) -> dict:
    profile = await role_service.create_role_profile(
        db,
        tenant_id=principal.tenant_id,
        actor_id=principal.user_id,
        data=role_service.RoleProfileInput(**payload.model_dump()),
    )
    return success_response(request=request, data=role_service.role_profile_payload(profile))


@router.patch("/roles/{role_profile_id}")
async def update_role_profile(
    role_profile_id: str,
    request: Request,
    payload: RoleProfilePatchRequest,
    principal: Principal = Depends(_manage),
    db: AsyncSession = Depends(get_db),
) -> dict:
    profile = await role_service.update_role_profile(
        db,
        tenant_id=principal.tenant_id,
        actor_id=principal.user_id,
        role_profile_id=role_profile_id,
        changes=payload.model_dump(exclude_unset=True),
    )
    return success_response(request=request, data=role_service.role_profile_payload(profile))


@router.delete("/roles/{role_profile_id}")
async def delete_role_profile(
    role_profile_id: str,
    request: Request,
    principal: Principal = Depends(_manage),
    db: AsyncSession = Depends(get_db),
) -> dict:
    affected = await role_service.delete_role_profile(
        db, tenant_id=principal.tenant_id, actor_id=principal.user_id, role_profile_id=role_profile_id
    )
    return success_response(request=request, data={"id": role_profile_id, "unassigned_user_ids": affected})


@router.post("/assignments")
async def assign_role_profile(
    request: Request,
    payload: RoleAssignRequest,
    principal: Principal = Depends(_manage),
    db: AsyncSession = Depends(get_db),
) -> dict:
    assignment = await role_service.assign_role_profile(
        db,
        tenant_id=principal.tenant_id,
        actor_id=principal.user_id,
        user_id=payload.user_id,
        role_profile_id=payload.role_profile_id,
        reset_account_scope=payload.reset_account_scope,
    )
    data = {"user_id": assignment.user_id, "role_profile_id": assignment.role_profile_id}
    return success_response(request=request, data=data)


@router.delete("/assignments/{user_id}")
async def unassign_role_profile(
    user_id: str,
    request: Request,
    principal: Principal = Depends(_manage),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await role_service.unassign_role_profile(
        db, tenant_id=principal.tenant_id, actor_id=principal.user_id, user_id=user_id
    )
    return success_response(request=request, data={"user_id": user_id, "role_profile_id": None})


@router.get("/users/{user_id}/effective")
async def get_effective_policy(
    user_id: str,
    request: Request,
    principal: Principal = Depends(_manage),
    db: AsyncSession = Depends(get_db),
) -> dict:
    policy = await role_service.get_effective_role_policy(db, tenant_id=principal.tenant_id, user_id=user_id)
    return success_response(request=request, data=_effective_policy_payload(policy))


@router.get("/me")
async def get_my_policy(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Any active user may read their own merged policy.
    policy = await role_service.get_effective_role_policy(db, tenant_id=principal.tenant_id, user_id=principal.user_id)
    return success_response(request=request, data=_effective_policy_payload(policy))
