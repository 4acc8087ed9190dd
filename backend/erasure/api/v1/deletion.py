from datetime import timedelta
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from erasure.db.session import get_session
from erasure.schemas.deletion import DeletionInfoRead, DeletionRequestCreate, DeletionStatusRead
from erasure.services import lifecycle

router = APIRouter(tags=["account-deletion"])


async def _status(session: AsyncSession, account_id: UUID) -> DeletionStatusRead:
    current = await lifecycle.get_deletion_status(session, account_id)
    return DeletionStatusRead.model_validate(current)


@router.get("/account-deletion/info", response_model=DeletionInfoRead)
def deletion_info() -> DeletionInfoRead:
    return DeletionInfoRead(**lifecycle.deletion_info())


@router.get("/accounts/{account_id}/deletion", response_model=DeletionStatusRead)
async def get_deletion_status(
    account_id: UUID,
    session: AsyncSession = Depends(get_session),
) -> DeletionStatusRead:
    return await _status(session, account_id)


@router.post("/accounts/{account_id}/deletion", response_model=DeletionStatusRead, status_code=status.HTTP_202_ACCEPTED)
async def request_deletion(
    account_id: UUID,
    payload: DeletionRequestCreate,
    session: AsyncSession = Depends(get_session),
) -> DeletionStatusRead:
    if not payload.confirm:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Deletion must be confirmed")
    grace_period = timedelta(days=payload.grace_period_days) if payload.grace_period_days else None
    await lifecycle.request_deletion(session, account_id, reason=payload.reason, grace_period=grace_period)
    return await _status(session, account_id)


@router.post("/accounts/{account_id}/deletion/cancel", response_model=DeletionStatusRead)
async def cancel_deletion(
    account_id: UUID,
    session: AsyncSession = Depends(get_session),
) -> DeletionStatusRead:
    # Failed deletions need an operator; only the CLI resolves those.
    await lifecycle.cancel_deletion(session, account_id, allow_failed=False)
    return await _status(session, account_id)
