"""Account deletion lifecycle: request, cancel, and the two deferred callbacks that purge.

State lives on the account row (see ``Account.deletion_state``). Every transition is a
compare-and-swap on ``lifecycle_version``, so concurrent callers serialize per account
without holding a lock across the grace period:

    active  --request_deletion-->  pending
    pending --cancel_deletion-->   active
    failed  --cancel_deletion-->   active     (operator resolution)
    pending --execute_deletion-->  pending    (final warning sent, final purge armed)
    pending --run_final_purge-->   purging --> purged (row deleted) | failed

Nothing here ever moves an account out of ``failed`` on its own: a failed purge may have
partially applied, so it is escalated to an operator instead of retried.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import math
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from erasure.core import metrics
from erasure.core.config import settings
from erasure.models.account import Account, DeletionState
from erasure.models.callback import CallbackKind
from erasure.services import alerts, callbacks
from erasure.services.errors import AccountNotFoundError, FatalPurgeError, StaleScheduleError, StateConflictError
from erasure.services.notifier import DeletionNotice, NotificationKind, Notifier, get_notifier
from erasure.services.purge import PurgeExecutor, PurgeResult, get_purge_executor

logger = logging.getLogger(__name__)

_CAS_ATTEMPTS = 3
_REASON_MAX_LEN = 1000
_FAILURE_REASON_MAX_LEN = 1000


class ExecutionOutcome(str, enum.Enum):
    purged_already = "purged_already"
    cancelled = "cancelled"
    stale = "stale"
    not_pending = "not_pending"
    rescheduled = "rescheduled"
    awaiting_purge = "awaiting_purge"
    final_warning_sent = "final_warning_sent"
    purged = "purged"
    failed = "failed"
    contended = "contended"


@dataclass(frozen=True)
class DeletionStatus:
    account_id: UUID
    state: DeletionState
    is_active: bool
    requested_at: datetime | None = None
    scheduled_at: datetime | None = None
    reason: str | None = None
    days_remaining: int | None = None
    can_cancel: bool = False


@dataclass
class SweepResult:
    processed: int = 0
    outcomes: Counter = field(default_factory=Counter)
    errors: list[dict[str, str]] = field(default_factory=list)


def _ensure_utc(dt: datetime | None) -> datetime | None:
    if not dt:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _now(now: datetime | None) -> datetime:
    return _ensure_utc(now) or datetime.now(timezone.utc)


def _default_grace_period() -> timedelta:
    return timedelta(days=int(settings.account_deletion_grace_period_days))


def _default_final_warning_delay() -> timedelta:
    return timedelta(seconds=max(0, int(settings.account_deletion_final_warning_seconds)))


async def _load_account(session: AsyncSession, account_id: UUID) -> Account | None:
    result = await session.execute(
        sa.select(Account).where(Account.id == account_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _require_account(session: AsyncSession, account_id: UUID, *, operation: str) -> Account:
    account = await _load_account(session, account_id)
    if account is None:
        raise AccountNotFoundError(account_id, operation=operation)
    return account


async def _compare_and_set(session: AsyncSession, account: Account, **values: Any) -> bool:
    """Apply ``values`` only if nobody transitioned the account since it was read."""
    result = await session.execute(
        sa.update(Account)
        .where(Account.id == account.id, Account.lifecycle_version == account.lifecycle_version)
        .values(lifecycle_version=account.lifecycle_version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


def _dispatch(notifier: Notifier | None, notice: DeletionNotice) -> None:
    try:
        queued = (notifier or get_notifier()).notify(notice)
    except Exception:
        logger.exception(
            "account_deletion_notification_dispatch_failed",
            extra={"account_id": str(notice.account_id), "kind": notice.kind.value},
        )
        return
    if not queued:
        logger.warning(
            "account_deletion_notification_not_queued",
            extra={"account_id": str(notice.account_id), "kind": notice.kind.value},
        )


def _liveness_outcome(account: Account | None, request_id: UUID | None) -> ExecutionOutcome | None:
    """Return why a callback must not proceed, or None if the deletion is still pending."""
    if account is None:
        return ExecutionOutcome.purged_already
    if account.deletion_requested_at is None:
        return ExecutionOutcome.cancelled
    if request_id is not None and account.deletion_request_id != request_id:
        return ExecutionOutcome.stale
    if account.deletion_state != DeletionState.pending:
        return ExecutionOutcome.not_pending
    return None


def _ensure_due(account: Account, now: datetime) -> None:
    scheduled_at = _ensure_utc(account.deletion_scheduled_at) or _ensure_utc(account.deletion_requested_at)
    if scheduled_at is not None and now < scheduled_at:
        raise StaleScheduleError(account.id, scheduled_at)


def _log_skip(account_id: UUID, outcome: ExecutionOutcome, *, kind: CallbackKind) -> None:
    logger.info(
        "account_deletion_callback_skipped",
        extra={"account_id": str(account_id), "kind": kind.value, "outcome": outcome.value},
    )


async def request_deletion(
    session: AsyncSession,
    account_id: UUID,
    *,
    reason: str | None = None,
    grace_period: timedelta | None = None,
    now: datetime | None = None,
    notifier: Notifier | None = None,
) -> datetime:
    """Deactivate the account and arm its deletion; returns the instant the purge becomes eligible."""
    grace = _default_grace_period() if grace_period is None else grace_period
    if grace < timedelta(0):
        raise ValueError("grace_period must not be negative")
    reason_clean = (reason or "").strip()[:_REASON_MAX_LEN] or None

    for _ in range(_CAS_ATTEMPTS):
        now_utc = _now(now)
        account = await _require_account(session, account_id, operation="request deletion")
        state = account.deletion_state
        if state != DeletionState.active:
            raise StateConflictError(account_id, state=state.value, operation="request deletion")

        scheduled_at = now_utc + grace
        request_id = uuid.uuid4()
        swapped = await _compare_and_set(
            session,
            account,
            deletion_requested_at=now_utc,
            deletion_scheduled_at=scheduled_at,
            deletion_reason=reason_clean,
            deletion_request_id=request_id,
            purge_started_at=None,
            deletion_failed_at=None,
            deletion_failure_reason=None,
            is_active=False,
        )
        if not swapped:
            await session.rollback()
            continue
        callbacks.arm(
            session,
            account_id=account.id,
            request_id=request_id,
            kind=CallbackKind.execute_deletion,
            run_at=scheduled_at,
        )
        await session.commit()

        logger.info(
            "account_deletion_requested",
            extra={
                "account_id": str(account.id),
                "scheduled_at": scheduled_at.isoformat(),
                "grace_period_seconds": int(grace.total_seconds()),
                "has_reason": reason_clean is not None,
            },
        )
        metrics.record_deletion_requested()
        _dispatch(
            notifier,
            DeletionNotice(
                account_id=account.id,
                kind=NotificationKind.requested,
                to_email=account.email,
                name=account.name,
                scheduled_at=scheduled_at,
            ),
        )
        return scheduled_at

    raise StateConflictError(account_id, state="contended", operation="request deletion")


async def cancel_deletion(
    session: AsyncSession,
    account_id: UUID,
    *,
    allow_failed: bool = True,
    now: datetime | None = None,
    notifier: Notifier | None = None,
) -> None:
    """Restore a pending (or, for operators, failed) account to the nominal state."""
    allowed = {DeletionState.pending, DeletionState.failed} if allow_failed else {DeletionState.pending}

    for _ in range(_CAS_ATTEMPTS):
        now_utc = _now(now)
        account = await _require_account(session, account_id, operation="cancel deletion")
        state = account.deletion_state
        if state not in allowed:
            raise StateConflictError(account_id, state=state.value, operation="cancel deletion")

        swapped = await _compare_and_set(
            session,
            account,
            deletion_requested_at=None,
            deletion_scheduled_at=None,
            deletion_reason=None,
            deletion_request_id=None,
            purge_started_at=None,
            deletion_failed_at=None,
            deletion_failure_reason=None,
            is_active=True,
        )
        if not swapped:
            await session.rollback()
            continue
        disarmed = await callbacks.disarm(session, account.id, now=now_utc)
        await session.commit()

        logger.info(
            "account_deletion_cancelled",
            extra={"account_id": str(account.id), "state": state.value, "disarmed_callbacks": disarmed},
        )
        metrics.record_deletion_cancelled()
        _dispatch(
            notifier,
            DeletionNotice(
                account_id=account.id,
                kind=NotificationKind.cancelled,
                to_email=account.email,
                name=account.name,
            ),
        )
        return

    raise StateConflictError(account_id, state="contended", operation="cancel deletion")


async def _reschedule(session: AsyncSession, account: Account, scheduled_at: datetime) -> ExecutionOutcome:
    already_armed = await callbacks.has_pending(
        session,
        account_id=account.id,
        request_id=account.deletion_request_id,
        kind=CallbackKind.execute_deletion,
    )
    if not already_armed:
        callbacks.arm(
            session,
            account_id=account.id,
            request_id=account.deletion_request_id,
            kind=CallbackKind.execute_deletion,
            run_at=scheduled_at,
        )
        await session.commit()
    logger.warning(
        "account_deletion_callback_fired_early",
        extra={
            "account_id": str(account.id),
            "scheduled_at": scheduled_at.isoformat(),
            "outcome": ExecutionOutcome.rescheduled.value,
        },
    )
    metrics.record_deletion_rescheduled()
    return ExecutionOutcome.rescheduled


async def execute_deletion(
    session: AsyncSession,
    account_id: UUID,
    *,
    request_id: UUID | None = None,
    now: datetime | None = None,
    final_warning_delay: timedelta | None = None,
    notifier: Notifier | None = None,
) -> ExecutionOutcome:
    """First deferred callback: validate, send the final warning and arm the final purge.

    ``request_id`` is the lifecycle the callback was armed for; batch sweeps pass None.
    """
    now_utc = _now(now)
    delay = _default_final_warning_delay() if final_warning_delay is None else final_warning_delay

    for _ in range(_CAS_ATTEMPTS):
        account = await _load_account(session, account_id)
        outcome = _liveness_outcome(account, request_id)
        if outcome is not None:
            _log_skip(account_id, outcome, kind=CallbackKind.execute_deletion)
            return outcome

        try:
            _ensure_due(account, now_utc)
        except StaleScheduleError as exc:
            return await _reschedule(session, account, exc.scheduled_at)

        if await callbacks.has_pending(
            session,
            account_id=account.id,
            request_id=account.deletion_request_id,
            kind=CallbackKind.final_purge,
            include_running=True,
        ):
            _log_skip(account_id, ExecutionOutcome.awaiting_purge, kind=CallbackKind.execute_deletion)
            return ExecutionOutcome.awaiting_purge

        if not await _compare_and_set(session, account):
            await session.rollback()
            continue
        purge_at = now_utc + delay
        callbacks.arm(
            session,
            account_id=account.id,
            request_id=account.deletion_request_id,
            kind=CallbackKind.final_purge,
            run_at=purge_at,
        )
        await session.commit()

        logger.info(
            "account_deletion_final_warning",
            extra={"account_id": str(account.id), "purge_at": purge_at.isoformat()},
        )
        metrics.record_final_warning()
        _dispatch(
            notifier,
            DeletionNotice(
                account_id=account.id,
                kind=NotificationKind.final_warning,
                to_email=account.email,
                name=account.name,
                scheduled_at=purge_at,
            ),
        )
        return ExecutionOutcome.final_warning_sent

    return ExecutionOutcome.contended


async def _invoke_purge(executor: PurgeExecutor, account_id: UUID, *, timeout: float) -> PurgeResult:
    try:
        return await asyncio.wait_for(executor.purge(account_id), timeout=timeout)
    except asyncio.TimeoutError:
        raise FatalPurgeError(account_id, f"purge timed out after {timeout:g}s") from None
    except FatalPurgeError:
        raise
    except Exception as exc:
        raise FatalPurgeError(account_id, f"{exc.__class__.__name__}: {exc}") from exc


async def _finalize_purge(session: AsyncSession, account_id: UUID) -> None:
    try:
        await callbacks.purge_for_account(session, account_id)
        await session.execute(
            sa.delete(Account).where(Account.id == account_id).execution_options(synchronize_session=False)
        )
        await session.commit()
    except Exception as exc:
        await session.rollback()
        raise FatalPurgeError(account_id, f"account record not removed: {exc}") from exc
    session.expunge_all()


async def _mark_failed(session: AsyncSession, account_id: UUID, *, cause: str, now: datetime) -> bool:
    """Move a claimed purge to failed and escalate; False when another path already settled it."""
    reason = cause[:_FAILURE_REASON_MAX_LEN]
    result = await session.execute(
        sa.update(Account)
        .where(Account.id == account_id, Account.purge_started_at.is_not(None), Account.deletion_failed_at.is_(None))
        .values(
            deletion_failed_at=now,
            deletion_failure_reason=reason,
            is_active=False,
            lifecycle_version=Account.lifecycle_version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        logger.info("account_deletion_failure_already_recorded", extra={"account_id": str(account_id)})
        return False
    await callbacks.disarm(session, account_id, now=now)
    await session.commit()

    logger.error("account_deletion_failed", extra={"account_id": str(account_id), "failure_reason": reason})
    metrics.record_deletion_failed()
    await alerts.escalate_failed_deletion(account_id=account_id, reason=reason, failed_at=now)
    return True


async def run_final_purge(
    session: AsyncSession,
    account_id: UUID,
    *,
    request_id: UUID | None = None,
    now: datetime | None = None,
    notifier: Notifier | None = None,
    executor: PurgeExecutor | None = None,
    timeout: float | None = None,
) -> ExecutionOutcome:
    """Second deferred callback: last liveness check, claim, purge exactly once."""
    now_utc = _now(now)
    account = await _load_account(session, account_id)
    outcome = _liveness_outcome(account, request_id)
    if outcome is not None:
        _log_skip(account_id, outcome, kind=CallbackKind.final_purge)
        return outcome

    try:
        _ensure_due(account, now_utc)
    except StaleScheduleError as exc:
        return await _reschedule(session, account, exc.scheduled_at)

    # Past this swap a concurrent cancel can no longer win; before it, it always does.
    if not await _compare_and_set(session, account, purge_started_at=now_utc):
        await session.rollback()
        outcome = _liveness_outcome(await _load_account(session, account_id), request_id)
        outcome = outcome or ExecutionOutcome.contended
        _log_skip(account_id, outcome, kind=CallbackKind.final_purge)
        return outcome
    await session.commit()
    logger.info("account_deletion_purge_started", extra={"account_id": str(account_id)})

    purge_timeout = float(timeout if timeout is not None else settings.account_deletion_purge_timeout_seconds)
    try:
        result = await _invoke_purge(executor or get_purge_executor(), account_id, timeout=purge_timeout)
        await _finalize_purge(session, account_id)
    except FatalPurgeError as exc:
        await session.rollback()
        await _mark_failed(session, account_id, cause=exc.cause, now=_now(now))
        return ExecutionOutcome.failed

    logger.info(
        "account_deletion_completed",
        extra={"account_id": str(account_id), "summary": result.summary, "outcome": ExecutionOutcome.purged.value},
    )
    metrics.record_deletion_purged()
    compliance_email = (settings.account_deletion_compliance_email or "").strip()
    if compliance_email:
        _dispatch(
            notifier,
            DeletionNotice(
                account_id=account_id,
                kind=NotificationKind.completed,
                to_email=compliance_email,
                summary=dict(result.summary),
            ),
        )
    return ExecutionOutcome.purged


def _due_filters(now: datetime) -> list[Any]:
    return [
        Account.deletion_requested_at.is_not(None),
        Account.deletion_scheduled_at.is_not(None),
        Account.deletion_scheduled_at <= now,
        Account.deletion_failed_at.is_(None),
        Account.purge_started_at.is_(None),
    ]


async def list_due_for_deletion(
    session: AsyncSession, *, now: datetime | None = None, limit: int | None = None
) -> list[UUID]:
    stmt = (
        sa.select(Account.id)
        .where(*_due_filters(_now(now)))
        .order_by(Account.deletion_scheduled_at.asc())
    )
    if limit:
        stmt = stmt.limit(max(1, min(int(limit), 2000)))
    return list((await session.execute(stmt)).scalars().all())


async def process_due_deletions(
    session_factory,
    *,
    now: datetime | None = None,
    limit: int = 200,
    notifier: Notifier | None = None,
) -> SweepResult:
    """Batch trigger: run ``execute_deletion`` for every account whose grace period elapsed."""
    async with session_factory() as session:
        due = await list_due_for_deletion(session, now=now, limit=limit)

    result = SweepResult()
    for account_id in due:
        result.processed += 1
        try:
            async with session_factory() as session:
                outcome = await execute_deletion(session, account_id, now=now, notifier=notifier)
        except Exception as exc:
            logger.exception("account_deletion_sweep_item_failed", extra={"account_id": str(account_id)})
            result.errors.append({"account_id": str(account_id), "error": str(exc)})
            continue
        result.outcomes[outcome.value] += 1

    if result.processed:
        logger.info(
            "account_deletion_sweep_completed",
            extra={"processed": result.processed, "outcomes": dict(result.outcomes), "errors": len(result.errors)},
        )
    return result


async def get_deletion_status(
    session: AsyncSession, account_id: UUID, *, now: datetime | None = None
) -> DeletionStatus:
    account = await _require_account(session, account_id, operation="read deletion status")
    state = account.deletion_state
    if state == DeletionState.active:
        return DeletionStatus(account_id=account.id, state=state, is_active=account.is_active)

    scheduled_at = _ensure_utc(account.deletion_scheduled_at)
    days_remaining = None
    if scheduled_at is not None:
        remaining = (scheduled_at - _now(now)).total_seconds()
        days_remaining = max(0, math.ceil(remaining / 86400))
    return DeletionStatus(
        account_id=account.id,
        state=state,
        is_active=account.is_active,
        requested_at=_ensure_utc(account.deletion_requested_at),
        scheduled_at=scheduled_at,
        reason=account.deletion_reason,
        days_remaining=days_remaining,
        can_cancel=state == DeletionState.pending,
    )


async def list_pending_deletions(session: AsyncSession, *, limit: int = 200) -> list[Account]:
    rows = await session.execute(
        sa.select(Account)
        .where(Account.deletion_requested_at.is_not(None), Account.deletion_failed_at.is_(None))
        .order_by(Account.deletion_scheduled_at.asc())
        .limit(max(1, min(int(limit or 0), 2000)))
    )
    return list(rows.scalars().all())


async def list_failed_deletions(session: AsyncSession, *, limit: int = 200) -> list[Account]:
    rows = await session.execute(
        sa.select(Account)
        .where(Account.deletion_failed_at.is_not(None))
        .order_by(Account.deletion_failed_at.asc())
        .limit(max(1, min(int(limit or 0), 2000)))
    )
    return list(rows.scalars().all())


async def rearm_missing_callbacks(session: AsyncSession, *, now: datetime | None = None) -> int:
    """Re-derive deferred callbacks from account state, e.g. after the callback table was lost."""
    rows = (
        (
            await session.execute(
                sa.select(Account).where(
                    Account.deletion_requested_at.is_not(None),
                    Account.deletion_failed_at.is_(None),
                    Account.purge_started_at.is_(None),
                )
            )
        )
        .scalars()
        .all()
    )
    rearmed = 0
    for account in rows:
        if await callbacks.has_pending(
            session,
            account_id=account.id,
            request_id=account.deletion_request_id,
            include_running=True,
        ):
            continue
        callbacks.arm(
            session,
            account_id=account.id,
            request_id=account.deletion_request_id,
            kind=CallbackKind.execute_deletion,
            run_at=_ensure_utc(account.deletion_scheduled_at) or _now(now),
        )
        rearmed += 1
    await session.commit()
    if rearmed:
        logger.warning("account_deletion_callbacks_rearmed", extra={"count": rearmed})
    return rearmed


async def fail_interrupted_purges(session: AsyncSession, *, now: datetime | None = None) -> int:
    """Move purges that started but never finished (worker died mid-purge) to the failed state."""
    now_utc = _now(now)
    cutoff = now_utc - timedelta(seconds=int(settings.account_deletion_stale_claim_seconds))
    ids = (
        (
            await session.execute(
                sa.select(Account.id).where(
                    Account.purge_started_at.is_not(None),
                    Account.purge_started_at < cutoff,
                    Account.deletion_failed_at.is_(None),
                )
            )
        )
        .scalars()
        .all()
    )
    failed = 0
    for account_id in ids:
        if await _mark_failed(session, account_id, cause="purge interrupted before completion", now=now_utc):
            failed += 1
    return failed


def deletion_info() -> dict[str, Any]:
    return {
        "grace_period_days": int(settings.account_deletion_grace_period_days),
        "final_warning_minutes": max(0, int(settings.account_deletion_final_warning_seconds)) // 60,
        "what_gets_deleted": [
            "Profile information",
            "Login sessions",
            "In-app notifications",
            "Uploaded files and avatar",
        ],
        "what_happens": [
            "The account is deactivated immediately",
            "The deletion can be cancelled at any time during the grace period",
            "A final warning is sent shortly before the permanent deletion",
            "After the grace period the deletion is permanent and irreversible",
        ],
    }
