from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from erasure.core.config import settings
from erasure.db.session import get_session, get_session_factory
from erasure.schemas.deletion import (
    AdminDeletionItem,
    AdminDeletionListResponse,
    DeletionSweepRead,
    DueDeletionsResponse,
)
from erasure.services import lifecycle

router = APIRouter(prefix="/admin/account-deletions", tags=["admin"])


def _items(rows) -> AdminDeletionListResponse:
    return AdminDeletionListResponse(items=[AdminDeletionItem.model_validate(row) for row in rows])


@router.get("/pending", response_model=AdminDeletionListResponse)
async def list_pending(
    limit: int = Query(default=200, ge=1, le=2000),
    session: AsyncSession = Depends(get_session),
) -> AdminDeletionListResponse:
    return _items(await lifecycle.list_pending_deletions(session, limit=limit))


@router.get("/failed", response_model=AdminDeletionListResponse)
async def list_failed(
    limit: int = Query(default=200, ge=1, le=2000),
    session: AsyncSession = Depends(get_session),
) -> AdminDeletionListResponse:
    return _items(await lifecycle.list_failed_deletions(session, limit=limit))


@router.get("/due", response_model=DueDeletionsResponse)
async def list_due(
    limit: int = Query(default=200, ge=1, le=2000),
    session: AsyncSession = Depends(get_session),
) -> DueDeletionsResponse:
    return DueDeletionsResponse(account_ids=await lifecycle.list_due_for_deletion(session, limit=limit))


@router.post("/process-due", response_model=DeletionSweepRead)
async def process_due(
    limit: int | None = Query(default=None, ge=1, le=2000),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> DeletionSweepRead:
    result = await lifecycle.process_due_deletions(
        session_factory, limit=limit or settings.account_deletion_batch_limit
    )
    return DeletionSweepRead(processed=result.processed, outcomes=dict(result.outcomes), errors=result.errors)
