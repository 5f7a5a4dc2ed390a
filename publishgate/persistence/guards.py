from __future__ import annotations

from collections.abc import Collection, Iterable
from dataclasses import dataclass

from sqlalchemy import and_

from publishgate.core.config import get_settings
from publishgate.core.errors import ValidationFailedError


@dataclass(frozen=True)
class TenantPredicateError(RuntimeError):
    # A repo query was built without a tenant id while guards are enabled.
    message: str


def require_tenant_id(tenant_id: str | None) -> None:
    if not get_settings().authz_require_tenant_predicate:
        return
    if not tenant_id:
        raise TenantPredicateError("Tenant predicate required but tenant_id is missing")


def tenant_predicate(model, tenant_id: str) -> object:
    # Every repo query filters on tenant_id through this helper.
    require_tenant_id(tenant_id)
    return model.tenant_id == tenant_id


def tenant_id_set(model, tenant_id: str, column, values: Collection[str]) -> object:
    """Match ``column`` against ``values`` inside one tenant only.

    Ids of users, accounts or CRM records that belong to another tenant never
    match, so lookups by id list cannot cross the tenant boundary.
    """
    return and_(tenant_predicate(model, tenant_id), column.in_(list(values)))


def reject_foreign_ids(requested: Iterable[str], found: Collection[str], *, field: str, message: str) -> None:
    # Ids absent from the tenant are reported together, in request order.
    missing = [value for value in requested if value not in found]
    if missing:
        raise ValidationFailedError(message, details={field: missing})
