"""Sync API endpoints."""

import logging
from datetime import datetime
from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from healthsync.core.config import get_settings
from healthsync.core.database import get_db
from healthsync.models.server import CliSession
from healthsync.schemas.sync import PullRequest, PullResponse, PushRequest, PushResponse
from healthsync.services.remote import RemoteSyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


def get_sync_service() -> RemoteSyncService:
    """Dependency returning the server sync service."""
    return RemoteSyncService()


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization[len("Bearer "):]


async def get_current_user_id(
    authorization: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
) -> str:
    """Resolve the bearer token to the owning user, or reject with 401."""
    token = _extract_bearer_token(authorization)
    if token is None:
        raise HTTPException(status_code=401, detail="Missing bearer token")

    result = await db.execute(
        select(CliSession).where(CliSession.token == token, CliSession.type == "cli")
    )
    cli_session = result.scalar_one_or_none()
    if cli_session is None:
        logger.warning("Rejected sync request with unknown CLI token")
        raise HTTPException(status_code=401, detail="Invalid CLI token")

    cli_session.last_used_at = datetime.utcnow()
    return cli_session.user_id


@router.post("/pull", response_model=PullResponse)
async def sync_pull(
    request: PullRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    service: RemoteSyncService = Depends(get_sync_service),
):
    """Return the caller's changes since ``cursor``."""
    limit = request.limit or get_settings().pull_limit
    try:
        return await service.pull(db, user_id, request.cursor, limit)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=f"Invalid cursor: {request.cursor}") from e


@router.post("/push", response_model=PushResponse)
async def sync_push(
    request: PushRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    service: RemoteSyncService = Depends(get_sync_service),
):
    """Apply the caller's changes; stale ones come back as conflicts."""
    return await service.push(db, user_id, request.changes)
