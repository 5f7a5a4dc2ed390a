from __future__ import annotations

from typing import Any


class PublishGateError(Exception):
    """Base error for publishgate."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class AuthorizationDeniedError(PublishGateError):
    """Permission or account-access check failed; never retryable."""

    code = "FORBIDDEN"

    def __init__(self, message: str = "Access denied", *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details=details)


class ValidationFailedError(PublishGateError):
    """Malformed input rejected before any state mutation."""

    code = "VALIDATION_ERROR"


class ConflictError(PublishGateError):
    """Duplicate grant or a transition from an already-resolved state."""

    code = "CONFLICT"


class NotFoundError(PublishGateError):
    """Tenant-scoped entity does not exist."""

    code = "NOT_FOUND"


class UpstreamDependencyError(PublishGateError):
    """External collaborator failure."""

    code = "UPSTREAM_UNAVAILABLE"


class CrmProviderUnavailableError(UpstreamDependencyError):
    """Transient CRM outage; cached membership stays in place."""

    code = "CRM_UNAVAILABLE"


class CrmAuthRevokedError(UpstreamDependencyError):
    """CRM credentials were revoked or rejected."""

    code = "CRM_AUTH_REVOKED"


class CrmReportNotFoundError(UpstreamDependencyError):
    """CRM report or list no longer exists upstream."""

    code = "CRM_REPORT_NOT_FOUND"


class ActionExecutionError(PublishGateError):
    """Governed action executor failed."""

    code = "ACTION_EXECUTION_FAILED"
