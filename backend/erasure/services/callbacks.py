from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from erasure.models.callback import CallbackKind, CallbackStatus, DeletionCallback

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClaimedCallback:
    id: UUID
    account_id: UUID
    request_id: UUID | None
    kind: CallbackKind
    run_at: datetime
    attempts: int


def _ensure_utc(dt: datetime | None) -> datetime | None:
    if not dt:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def arm(
    session: AsyncSession,
    *,
    account_id: UUID,
    request_id: UUID | None,
    kind: CallbackKind,
    run_at: datetime,
) -> DeletionCallback:
    """Queue a callback in the caller's transaction; it becomes visible to workers on commit."""
    callback = DeletionCallback(
        account_id=account_id,
        deletion_request_id=request_id,
        kind=kind,
        status=CallbackStatus.pending,
        run_at=_ensure_utc(run_at),
        attempts=0,
    )
    session.add(callback)
    return callback


async def disarm(session: AsyncSession, account_id: UUID, *, now: datetime | None = None) -> int:
    now_utc = _ensure_utc(now) or datetime.now(timezone.utc)
    result = await session.execute(
        sa.update(DeletionCallback)
        .where(DeletionCallback.account_id == account_id, DeletionCallback.status == CallbackStatus.pending)
        .values(status=CallbackStatus.cancelled, completed_at=now_utc)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def has_pending(
    session: AsyncSession,
    *,
    account_id: UUID,
    request_id: UUID | None,
    kind: CallbackKind | None = None,
    include_running: bool = False,
) -> bool:
    statuses = [CallbackStatus.pending]
    if include_running:
        statuses.append(CallbackStatus.running)
    stmt = (
        sa.select(sa.func.count())
        .select_from(DeletionCallback)
        .where(
            DeletionCallback.account_id == account_id,
            DeletionCallback.deletion_request_id == request_id,
            DeletionCallback.status.in_(statuses),
        )
    )
    if kind is not None:
        stmt = stmt.where(DeletionCallback.kind == kind)
    return int((await session.execute(stmt)).scalar_one() or 0) > 0


async def list_for_account(session: AsyncSession, account_id: UUID) -> list[DeletionCallback]:
    rows = await session.execute(
        sa.select(DeletionCallback)
        .where(DeletionCallback.account_id == account_id)
        .order_by(DeletionCallback.run_at.asc(), DeletionCallback.created_at.asc())
        .execution_options(populate_existing=True)
    )
    return list(rows.scalars().all())


async def claim_due(session: AsyncSession, *, now: datetime | None = None, limit: int = 200) -> list[ClaimedCallback]:
    """Claim due callbacks with a pending -> running compare-and-swap and commit the claims.

    Rows another worker claimed first are skipped, so several workers may poll the same table.
    """
    now_utc = _ensure_utc(now) or datetime.now(timezone.utc)
    limit_clean = max(1, min(int(limit or 0), 2000))
    rows = (
        (
            await session.execute(
                sa.select(DeletionCallback)
                .where(DeletionCallback.status == CallbackStatus.pending, DeletionCallback.run_at <= now_utc)
                .order_by(DeletionCallback.run_at.asc())
                .limit(limit_clean)
            )
        )
        .scalars()
        .all()
    )
    claimed: list[ClaimedCallback] = []
    for row in rows:
        result = await session.execute(
            sa.update(DeletionCallback)
            .where(DeletionCallback.id == row.id, DeletionCallback.status == CallbackStatus.pending)
            .values(status=CallbackStatus.running, attempts=DeletionCallback.attempts + 1, claimed_at=now_utc)
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) != 1:
            continue
        claimed.append(
            ClaimedCallback(
                id=row.id,
                account_id=row.account_id,
                request_id=row.deletion_request_id,
                kind=row.kind,
                run_at=_ensure_utc(row.run_at) or now_utc,
                attempts=int(row.attempts or 0) + 1,
            )
        )
    await session.commit()
    return claimed


async def complete(
    session: AsyncSession,
    callback_id: UUID,
    *,
    status: CallbackStatus = CallbackStatus.done,
    error: str | None = None,
    now: datetime | None = None,
) -> None:
    now_utc = _ensure_utc(now) or datetime.now(timezone.utc)
    await session.execute(
        sa.update(DeletionCallback)
        .where(DeletionCallback.id == callback_id, DeletionCallback.status == CallbackStatus.running)
        .values(status=status, completed_at=now_utc, last_error=error[:2000] if error else None)
        .execution_options(synchronize_session=False)
    )


async def requeue_stale(session: AsyncSession, *, now: datetime | None = None, older_than: timedelta) -> int:
    """Hand callbacks whose worker vanished back to the queue; lifecycle guards make re-delivery safe."""
    now_utc = _ensure_utc(now) or datetime.now(timezone.utc)
    result = await session.execute(
        sa.update(DeletionCallback)
        .where(
            DeletionCallback.status == CallbackStatus.running,
            DeletionCallback.claimed_at < now_utc - older_than,
        )
        .values(status=CallbackStatus.pending, claimed_at=None)
        .execution_options(synchronize_session=False)
    )
    requeued = int(result.rowcount or 0)
    await session.commit()
    if requeued:
        logger.warning("account_deletion_callbacks_requeued", extra={"count": requeued})
    return requeued


async def purge_for_account(session: AsyncSession, account_id: UUID) -> int:
    result = await session.execute(
        sa.delete(DeletionCallback)
        .where(DeletionCallback.account_id == account_id)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
