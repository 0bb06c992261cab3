"""Liveness probe for load balancers and sync clients."""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from notesync import __version__
from notesync.api.deps import get_session, get_settings
from notesync.config import Settings
from notesync.models.sync import SyncManifest
from notesync.services.datetime_service import format_iso, now_utc

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
    server_time: str


async def _probe_store(session: AsyncSession, timeout: float) -> bool:
    try:
        async with asyncio.timeout(timeout):
            await session.execute(select(SyncManifest.user_id).limit(1))
    except (SQLAlchemyError, TimeoutError):
        logger.warning("Note store probe failed", exc_info=True)
        return False
    return True


@router.get("/api/health", response_model=HealthResponse)
async def health_check(
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> HealthResponse:
    """Report whether the note store answers within the storage timeout."""
    healthy = await _probe_store(session, settings.storage_timeout_seconds)
    return HealthResponse(
        status="ok" if healthy else "degraded",
        version=__version__,
        database="ok" if healthy else "error",
        server_time=format_iso(now_utc()),
    )
