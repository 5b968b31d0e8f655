"""
Admin / observability endpoints
===============================

GET /api/v1/admin/health -- database and lock-store reachability
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from carpool.api.dependencies import get_db
from carpool.api.schemas import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health(request: Request, db: AsyncSession = Depends(get_db)):
    result = HealthResponse()
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("Health check: database unreachable: %s", exc)
        result.database = "unavailable"

    redis = getattr(request.app.state, "redis", None)
    if redis is None:
        result.redis = "not configured"
    else:
        try:
            await redis.ping()
        except RedisError as exc:
            logger.warning("Health check: redis unreachable: %s", exc)
            result.redis = "unavailable"

    if "unavailable" in (result.database, result.redis):
        result.status = "degraded"
        return JSONResponse(status_code=503, content=result.model_dump())
    return result
