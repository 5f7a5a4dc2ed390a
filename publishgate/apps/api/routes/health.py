from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from publishgate.apps.api.deps import get_db
from publishgate.apps.api.response import SuccessEnvelope, success_response

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    database: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    # Liveness plus a trivial round trip to the database.
    await db.execute(text("SELECT 1"))
    payload = HealthResponse(status="ok", database="ok")
    return success_response(request=request, data=payload.model_dump())
