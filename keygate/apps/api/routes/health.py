from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from keygate.apps.api.deps import get_db
from keygate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from keygate.apps.api.response import SuccessEnvelope, error_response, success_response
from keygate.core.config import get_settings
from keygate.domain.models import POLICY_STATE_ID, PolicyState
from keygate.persistence.db import ensure_utc


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    status: str
    database: str
    key_backend_configured: bool
    last_sweep_at: str | None


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    return success_response(request=request, data=HealthResponse(status="ok"))


@router.get("/health/ready", response_model=SuccessEnvelope[ReadinessResponse])
async def readiness(request: Request, db: AsyncSession = Depends(get_db)) -> object:
    """Check the database and report when the reactivation sweep last completed.

    A missing policy row is not an error; it is created on first evaluation.
    """
    try:
        await db.execute(text("SELECT 1"))
        state = await db.get(PolicyState, POLICY_STATE_ID)
    except SQLAlchemyError as exc:
        logger.warning("readiness_database_unavailable", exc_info=exc)
        payload = error_response(request=request, code="DATABASE_UNAVAILABLE", message="Database unavailable")
        return JSONResponse(content=payload, status_code=503)

    settings = get_settings()
    last_sweep_at = ensure_utc(state.last_sweep_at) if state else None
    data = ReadinessResponse(
        status="ready",
        database="ok",
        key_backend_configured=bool(settings.key_backend_url and settings.key_backend_admin_token),
        last_sweep_at=last_sweep_at.isoformat() if last_sweep_at else None,
    )
    return success_response(request=request, data=data)
