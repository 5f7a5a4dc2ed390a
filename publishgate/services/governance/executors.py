from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from publishgate.core.errors import ValidationFailedError


@dataclass(frozen=True)
class GovernedActionContext:
    tenant_id: str
    request_type: str
    target_type: str
    target_id: str
    requested_by_user_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    # Set when the action was cleared through an approval request.
    approval_request_id: str | None = None


class ActionExecutor(Protocol):
    # Reversible executors implement rollback; completed requests of other types cannot roll back.
    reversible: bool

    async def execute(self, session: AsyncSession, context: GovernedActionContext) -> dict[str, Any]:
        ...

    async def rollback(self, session: AsyncSession, context: GovernedActionContext) -> dict[str, Any]:
        ...


ExecuteFn = Callable[[AsyncSession, GovernedActionContext], Awaitable[dict[str, Any]]]


class CallbackExecutor:
    """Adapt plain coroutine functions to the executor protocol."""

    def __init__(self, execute: ExecuteFn, rollback: ExecuteFn | None = None) -> None:
        self._execute = execute
        self._rollback = rollback
        self.reversible = rollback is not None

    async def execute(self, session: AsyncSession, context: GovernedActionContext) -> dict[str, Any]:
        return await self._execute(session, context) or {}

    async def rollback(self, session: AsyncSession, context: GovernedActionContext) -> dict[str, Any]:
        if self._rollback is None:
            raise ValidationFailedError("Action type is not reversible", details={"request_type": context.request_type})
        return await self._rollback(session, context) or {}


class ExecutorRegistry:
    def __init__(self, executors: dict[str, ActionExecutor] | None = None) -> None:
        self._executors: dict[str, ActionExecutor] = dict(executors or {})

    def register(self, request_type: str, executor: ActionExecutor) -> None:
        self._executors[request_type] = executor

    def get(self, request_type: str) -> ActionExecutor:
        try:
            return self._executors[request_type]
        except KeyError as exc:
            raise ValidationFailedError(
                "No executor registered for request type", details={"request_type": request_type}
            ) from exc

    def __contains__(self, request_type: str) -> bool:
        return request_type in self._executors
