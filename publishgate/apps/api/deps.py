from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from publishgate.core.config import get_settings
from publishgate.core.errors import AuthorizationDeniedError
from publishgate.persistence.db import get_session
from publishgate.persistence.repos import authz as authz_repo
from publishgate.providers.crm.base import CrmReportProvider
from publishgate.providers.crm.factory import get_crm_provider
from publishgate.services.audit import request_id_from
from publishgate.services.authz.catalog import normalize_permission
from publishgate.services.authz.permissions import has_permission, record_permission_denied
from publishgate.services.governance.executors import ExecutorRegistry


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; the context manager closes it on success or error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Identity resolved by the upstream gateway and forwarded as headers.
    user_id: str
    tenant_id: str
    role: str


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


async def get_current_principal(request: Request, db: AsyncSession = Depends(get_db)) -> Principal:
    """Resolve the caller from the tenant and user headers.

    Authentication happens in front of this service; here the forwarded user
    must still exist and be active inside the forwarded tenant.
    """
    settings = get_settings()
    tenant_id = request.headers.get(settings.auth_tenant_header)
    user_id = request.headers.get(settings.auth_user_header)
    if not tenant_id or not user_id:
        raise _auth_error(f"{settings.auth_tenant_header} and {settings.auth_user_header} headers are required")
    user = await authz_repo.get_user(db, tenant_id=tenant_id, user_id=user_id)
    if user is None or not user.is_active:
        raise _auth_error("Unknown or inactive user")
    return Principal(user_id=user.id, tenant_id=tenant_id, role=user.role)


def require_permission(permission: str):
    # Dependency factory enforcing one permission kind at the route level.
    kind = normalize_permission(permission)

    async def _dependency(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ) -> Principal:
        if await has_permission(db, tenant_id=principal.tenant_id, user_id=principal.user_id, permission=kind):
            return principal
        await record_permission_denied(
            tenant_id=principal.tenant_id,
            actor_id=principal.user_id,
            actor_role=principal.role,
            permission=kind,
            resource_type="route",
            resource_id=request.url.path,
            request_id=request_id_from(request),
        )
        raise AuthorizationDeniedError()

    return _dependency


def get_executors(request: Request) -> ExecutorRegistry:
    registry = getattr(request.app.state, "executors", None)
    if registry is None:
        registry = ExecutorRegistry()
        request.app.state.executors = registry
    return registry


def get_crm_client(request: Request) -> CrmReportProvider:
    # Tests and embedders may pin a provider on app.state; otherwise settings decide.
    client = getattr(request.app.state, "crm_client", None)
    return client if client is not None else get_crm_provider()
