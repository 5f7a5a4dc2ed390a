from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from publishgate.domain.models import AuditEvent
from publishgate.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

SEVERITY_INFO = "info"
SEVERITY_WARN = "warn"
SEVERITY_CRITICAL = "critical"
SEVERITIES = {SEVERITY_INFO, SEVERITY_WARN, SEVERITY_CRITICAL}

OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"
OUTCOME_DENIED = "denied"

# A governed side effect was undone or lost.
_CRITICAL_EVENT_TYPES = {"approval.rolled_back", "approval.execution_failed", "governed_action.failed"}

# Merge keys and CRM account tokens pass through sync metadata.
_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password", "credential"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving structure.
    if isinstance(value, dict):
        return {
            str(key): _REDACTED_VALUE if _is_sensitive_key(str(key)) else sanitize_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple, set, frozenset)):
        return [sanitize_metadata(item) for item in value]
    return value


def default_severity(event_type: str, outcome: str) -> str:
    if event_type in _CRITICAL_EVENT_TYPES:
        return SEVERITY_CRITICAL
    if outcome != OUTCOME_SUCCESS:
        return SEVERITY_WARN
    return SEVERITY_INFO


def request_id_from(request: Request | None) -> str | None:
    if request is None:
        return None
    return request.headers.get("X-Request-Id")


async def record_event(
    *,
    session: AsyncSession | None = None,
    tenant_id: str | None,
    actor_type: str = "user",
    actor_id: str | None,
    actor_role: str | None = None,
    event_type: str,
    outcome: str = OUTCOME_SUCCESS,
    severity: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
) -> None:
    """Append one audit row for a grant, revoke, policy edit or approval decision.

    With a session the row joins the caller's transaction, so it lands or rolls
    back together with the audited change. Without one (denials, failures after
    the caller rolled back) it is written in its own short transaction, and a
    failed write is logged instead of raised.

    Severity defaults from the event: lost or undone side effects are critical,
    any non-success outcome is a warning.
    """
    if severity not in SEVERITIES:
        severity = default_severity(event_type, outcome)
    event = AuditEvent(
        occurred_at=datetime.now(timezone.utc),
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        actor_role=actor_role,
        event_type=event_type,
        outcome=outcome,
        severity=severity,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )
    if severity == SEVERITY_CRITICAL:
        logger.warning(
            "audit_critical_event event_type=%s tenant_id=%s resource_id=%s", event_type, tenant_id, resource_id
        )

    if session is not None:
        session.add(event)
        return
    async with SessionLocal() as audit_session:
        try:
            audit_session.add(event)
            await audit_session.commit()
        except SQLAlchemyError as exc:
            await audit_session.rollback()
            logger.warning("audit_event_write_failed event_type=%s tenant_id=%s", event_type, tenant_id, exc_info=exc)
