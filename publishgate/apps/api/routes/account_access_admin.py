from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from publishgate.apps.api.deps import Principal, get_crm_client, get_current_principal, get_db, require_permission
from publishgate.apps.api.response import success_response
from publishgate.providers.crm.base import CrmReportProvider
from publishgate.services.authz import account_access as access_service
from publishgate.services.authz.catalog import PERMISSION_MANAGE_PERMISSIONS


router = APIRouter(prefix="/admin/account-access", tags=["account-access"])

_manage = require_permission(PERMISSION_MANAGE_PERMISSIONS)


class AccountGrantRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    scope_type: Literal["all_accounts", "single_account", "account_list", "crm_report"]
    account_id: str | None = Field(default=None, max_length=128)
    account_ids: list[str] | None = None
    crm_provider: Literal["salesforce", "hubspot"] | None = None
    crm_report_id: str | None = Field(default=None, max_length=256)
    crm_report_name: str | None = Field(default=None, max_length=256)

    # Reject unknown fields so grant variants cannot be mixed.
    model_config = {"extra": "forbid"}


class AccountListPatchRequest(BaseModel):
    add: list[str] = Field(default_factory=list)
    remove: list[str] = Field(default_factory=list)

    model_config = {"extra": "forbid"}


def _scope_payload(scope: access_service.AccountScope) -> dict[str, Any]:
    if scope.all_accounts:
        return {"all_accounts": True, "account_ids": None}
    return {"all_accounts": False, "account_ids": sorted(scope.account_ids)}


def _sync_payload(result: access_service.CrmSyncResult) -> dict[str, Any]:
    return {
        "grant_id": result.grant_id,
        "crm_member_count": result.crm_member_count,
        "account_ids": list(result.account_ids),
        "synced_at": result.synced_at.isoformat(),
    }


def _failure_payload(failure: access_service.CrmSyncFailure) -> dict[str, Any]:
    return {
        "grant_id": failure.grant_id,
        "error_code": failure.error_code,
        "message": failure.message,
        "report_missing": failure.report_missing,
    }


@router.get("/users/{user_id}")
async def list_user_grants(
    user_id: str,
    request: Request,
    principal: Principal = Depends(_manage),
    db: AsyncSession = Depends(get_db),
) -> dict:
    grants = await access_service.list_user_account_access(db, tenant_id=principal.tenant_id, user_id=user_id)
    scope = await access_service.list_accessible_account_ids(db, tenant_id=principal.tenant_id, user_id=user_id)
    data = {"items": [access_service.grant_payload(grant) for grant in grants], "effective": _scope_payload(scope)}
    return success_response(request=request, data=data)


@router.get("/me")
async def get_my_accounts(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    scope = await access_service.list_accessible_account_ids(
        db, tenant_id=principal.tenant_id, user_id=principal.user_id
    )
    return success_response(request=request, data=_scope_payload(scope))


@router.post("/grants", status_code=status.HTTP_201_CREATED)
async def grant_account_access(
    request: Request,
    payload: AccountGrantRequest,
    principal: Principal = Depends(_manage),
    db: AsyncSession = Depends(get_db),
    crm_client: CrmReportProvider = Depends(get_crm_client),
) -> dict:
    # CRM grants are created even when the first sync fails; the failure is reported alongside.
    result = await access_service.grant_account_access(
        db,
        tenant_id=principal.tenant_id,
        actor_id=principal.user_id,
        user_id=payload.user_id,
        scope_type=payload.scope_type,
        account_id=payload.account_id,
        account_ids=payload.account_ids,
        crm_provider=payload.crm_provider,
        crm_report_id=payload.crm_report_id,
        crm_report_name=payload.crm_report_name,
        crm_client=crm_client,
    )
    data = {
        "grant": access_service.grant_payload(result.grant),
        "sync": _sync_payload(result.sync) if result.sync else None,
        "sync_failure": _failure_payload(result.sync_failure) if result.sync_failure else None,
    }
    return success_response(request=request, data=data)


@router.patch("/grants/{grant_id}")
async def update_account_list(
    grant_id: str,
    request: Request,
    payload: AccountListPatchRequest,
    principal: Principal = Depends(_manage),
    db: AsyncSession = Depends(get_db),
) -> dict:
    grant = await access_service.update_account_list(
        db,
        tenant_id=principal.tenant_id,
        actor_id=principal.user_id,
        grant_id=grant_id,
        add=payload.add,
        remove=payload.remove,
    )
    return success_response(request=request, data=access_service.grant_payload(grant))


@router.delete("/grants/{grant_id}")
async def revoke_account_access(
    grant_id: str,
    request: Request,
    principal: Principal = Depends(_manage),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await access_service.revoke_account_access(
        db, tenant_id=principal.tenant_id, actor_id=principal.user_id, grant_id=grant_id
    )
    return success_response(request=request, data={"id": grant_id, "revoked": True})


@router.post("/grants/{grant_id}/sync")
async def sync_crm_report_grant(
    grant_id: str,
    request: Request,
    principal: Principal = Depends(_manage),
    db: AsyncSession = Depends(get_db),
    crm_client: CrmReportProvider = Depends(get_crm_client),
) -> dict:
    # Provider failures surface as 502; the grant keeps its previous cache.
    result = await access_service.sync_crm_report_grant(
        db, tenant_id=principal.tenant_id, grant_id=grant_id, crm_client=crm_client, actor_id=principal.user_id
    )
    return success_response(request=request, data=_sync_payload(result))


@router.post("/sync")
async def sync_all_crm_reports(
    request: Request,
    stale_only: bool = False,
    principal: Principal = Depends(_manage),
    db: AsyncSession = Depends(get_db),
    crm_client: CrmReportProvider = Depends(get_crm_client),
) -> dict:
    summary = await access_service.sync_all_crm_reports(
        db, tenant_id=principal.tenant_id, crm_client=crm_client, stale_only=stale_only
    )
    data = {
        "attempted": summary.attempted,
        "succeeded": [_sync_payload(item) for item in summary.succeeded],
        "failed": [_failure_payload(item) for item in summary.failed],
    }
    return success_response(request=request, data=data)
