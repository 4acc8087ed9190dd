import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from conftest import FakePurgeExecutor, RecordingNotifier, create_account
from erasure.core import metrics
from erasure.core.config import settings
from erasure.models.account import Account, DeletionState
from erasure.models.callback import CallbackKind, CallbackStatus, DeletionCallback
from erasure.services import callbacks, lifecycle
from erasure.services.errors import AccountNotFoundError, StateConflictError
from erasure.services.lifecycle import ExecutionOutcome

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
GRACE = timedelta(days=30)


def _utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@pytest.fixture
def alerts_raised(monkeypatch: pytest.MonkeyPatch) -> list[dict]:
    raised: list[dict] = []

    async def _fake_escalate(**kwargs) -> None:
        raised.append(kwargs)

    monkeypatch.setattr(lifecycle.alerts, "escalate_failed_deletion", _fake_escalate)
    return raised


async def _request(session_factory, account_id, notifier, *, now=T0, grace=GRACE) -> datetime:
    async with session_factory() as session:
        return await lifecycle.request_deletion(
            session, account_id, reason="no reason", grace_period=grace, now=now, notifier=notifier
        )


async def _load(session_factory, account_id) -> Account | None:
    async with session_factory() as session:
        return await session.get(Account, account_id)


async def _callbacks(session_factory, account_id) -> list[DeletionCallback]:
    async with session_factory() as session:
        return await callbacks.list_for_account(session, account_id)


async def _request_id(session_factory, account_id):
    account = await _load(session_factory, account_id)
    return account.deletion_request_id


@pytest.mark.anyio("asyncio")
async def test_request_deletion_deactivates_and_schedules(session_factory, recording_notifier: RecordingNotifier) -> None:
    account_id = await create_account(session_factory)

    scheduled_at = await _request(session_factory, account_id, recording_notifier)

    assert scheduled_at == T0 + GRACE
    account = await _load(session_factory, account_id)
    assert account.is_active is False
    assert account.deletion_state == DeletionState.pending
    assert _utc(account.deletion_requested_at) == T0
    assert _utc(account.deletion_scheduled_at) == T0 + GRACE
    assert account.deletion_reason == "no reason"
    assert account.deletion_request_id is not None

    rows = await _callbacks(session_factory, account_id)
    assert [(row.kind, row.status) for row in rows] == [(CallbackKind.execute_deletion, CallbackStatus.pending)]
    assert _utc(rows[0].run_at) == T0 + GRACE
    assert rows[0].deletion_request_id == account.deletion_request_id

    assert recording_notifier.kinds() == ["requested"]
    assert recording_notifier.notices[0].scheduled_at == T0 + GRACE
    assert metrics.snapshot()["account_deletions_requested"] == 1


@pytest.mark.anyio("asyncio")
async def test_request_deletion_defaults_grace_period_and_trims_reason(
    session_factory, recording_notifier: RecordingNotifier, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(settings, "account_deletion_grace_period_days", 7)
    account_id = await create_account(session_factory)

    async with session_factory() as session:
        scheduled_at = await lifecycle.request_deletion(
            session, account_id, reason="   " + "x" * 1200, now=T0, notifier=recording_notifier
        )

    assert scheduled_at == T0 + timedelta(days=7)
    account = await _load(session_factory, account_id)
    assert account.deletion_reason == "x" * 1000


@pytest.mark.anyio("asyncio")
async def test_request_deletion_rejects_negative_grace_period(session_factory, recording_notifier) -> None:
    account_id = await create_account(session_factory)
    async with session_factory() as session:
        with pytest.raises(ValueError):
            await lifecycle.request_deletion(
                session, account_id, grace_period=timedelta(seconds=-1), now=T0, notifier=recording_notifier
            )
    assert (await _load(session_factory, account_id)).deletion_requested_at is None


@pytest.mark.anyio("asyncio")
async def test_second_request_while_pending_is_a_conflict(session_factory, recording_notifier) -> None:
    account_id = await create_account(session_factory)
    await _request(session_factory, account_id, recording_notifier)

    async with session_factory() as session:
        with pytest.raises(StateConflictError) as excinfo:
            await lifecycle.request_deletion(session, account_id, now=T0 + timedelta(days=1), notifier=recording_notifier)

    assert excinfo.value.state == "pending"
    assert not isinstance(excinfo.value, AccountNotFoundError)
    account = await _load(session_factory, account_id)
    assert _utc(account.deletion_scheduled_at) == T0 + GRACE
    assert len(await _callbacks(session_factory, account_id)) == 1


@pytest.mark.anyio("asyncio")
async def test_operations_on_missing_account_raise_not_found(session_factory, recording_notifier) -> None:
    missing = uuid.uuid4()
    async with session_factory() as session:
        with pytest.raises(AccountNotFoundError):
            await lifecycle.request_deletion(session, missing, now=T0, notifier=recording_notifier)
        with pytest.raises(AccountNotFoundError):
            await lifecycle.cancel_deletion(session, missing, now=T0, notifier=recording_notifier)
        with pytest.raises(AccountNotFoundError):
            await lifecycle.get_deletion_status(session, missing)


@pytest.mark.anyio("asyncio")
async def test_cancel_restores_nominal_state_and_callback_becomes_noop(
    session_factory, recording_notifier: RecordingNotifier, fake_executor: FakePurgeExecutor
) -> None:
    account_id = await create_account(session_factory)
    await _request(session_factory, account_id, recording_notifier)
    request_id = await _request_id(session_factory, account_id)

    async with session_factory() as session:
        await lifecycle.cancel_deletion(session, account_id, now=T0 + timedelta(days=10), notifier=recording_notifier)

    account = await _load(session_factory, account_id)
    assert account.deletion_state == DeletionState.active
    assert account.is_active is True
    assert account.deletion_requested_at is None
    assert account.deletion_scheduled_at is None
    assert account.deletion_request_id is None
    assert [row.status for row in await _callbacks(session_factory, account_id)] == [CallbackStatus.cancelled]

    # A callback that escaped disarming still finds nothing to do.
    async with session_factory() as session:
        outcome = await lifecycle.execute_deletion(
            session, account_id, request_id=request_id, now=T0 + GRACE, notifier=recording_notifier
        )
        purge_outcome = await lifecycle.run_final_purge(
            session, account_id, request_id=request_id, now=T0 + GRACE, executor=fake_executor
        )

    assert outcome == ExecutionOutcome.cancelled
    assert purge_outcome == ExecutionOutcome.cancelled
    assert fake_executor.calls == []
    assert recording_notifier.kinds() == ["requested", "cancelled"]


@pytest.mark.anyio("asyncio")
async def test_cancel_active_account_is_a_conflict(session_factory, recording_notifier) -> None:
    account_id = await create_account(session_factory)
    async with session_factory() as session:
        with pytest.raises(StateConflictError) as excinfo:
            await lifecycle.cancel_deletion(session, account_id, now=T0, notifier=recording_notifier)
    assert excinfo.value.state == "active"
    assert recording_notifier.notices == []


@pytest.mark.anyio("asyncio")
async def test_full_lifecycle_purges_after_final_warning(
    session_factory,
    recording_notifier: RecordingNotifier,
    fake_executor: FakePurgeExecutor,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(settings, "account_deletion_compliance_email", "dpo@example.com")
    account_id = await create_account(session_factory)
    await _request(session_factory, account_id, recording_notifier)
    request_id = await _request_id(session_factory, account_id)

    async with session_factory() as session:
        outcome = await lifecycle.execute_deletion(
            session,
            account_id,
            request_id=request_id,
            now=T0 + GRACE,
            final_warning_delay=timedelta(minutes=5),
            notifier=recording_notifier,
        )
    assert outcome == ExecutionOutcome.final_warning_sent

    rows = await _callbacks(session_factory, account_id)
    final = [row for row in rows if row.kind == CallbackKind.final_purge]
    assert len(final) == 1
    assert _utc(final[0].run_at) == T0 + GRACE + timedelta(minutes=5)
    assert (await _load(session_factory, account_id)).deletion_state == DeletionState.pending

    async with session_factory() as session:
        outcome = await lifecycle.run_final_purge(
            session,
            account_id,
            request_id=request_id,
            now=T0 + GRACE + timedelta(minutes=5),
            notifier=recording_notifier,
            executor=fake_executor,
        )

    assert outcome == ExecutionOutcome.purged
    assert fake_executor.calls == [account_id]
    assert await _load(session_factory, account_id) is None
    assert await _callbacks(session_factory, account_id) == []
    assert recording_notifier.kinds() == ["requested", "final_warning", "completed"]
    assert recording_notifier.notices[-1].to_email == "dpo@example.com"
    snapshot = metrics.snapshot()
    assert snapshot["account_deletion_final_warnings"] == 1
    assert snapshot["account_deletions_purged"] == 1


@pytest.mark.anyio("asyncio")
async def test_completed_notice_skipped_without_compliance_email(
    session_factory, recording_notifier: RecordingNotifier, fake_executor: FakePurgeExecutor
) -> None:
    account_id = await create_account(session_factory)
    await _request(session_factory, account_id, recording_notifier, grace=timedelta(0))
    async with session_factory() as session:
        await lifecycle.execute_deletion(session, account_id, now=T0, notifier=recording_notifier)
        outcome = await lifecycle.run_final_purge(
            session, account_id, now=T0 + timedelta(minutes=5), notifier=recording_notifier, executor=fake_executor
        )
    assert outcome == ExecutionOutcome.purged
    assert "completed" not in recording_notifier.kinds()


@pytest.mark.anyio("asyncio")
async def test_purge_failure_marks_failed_and_escalates(
    session_factory, recording_notifier: RecordingNotifier, alerts_raised: list[dict]
) -> None:
    executor = FakePurgeExecutor(error=RuntimeError("storage offline"))
    account_id = await create_account(session_factory)
    await _request(session_factory, account_id, recording_notifier)
    purge_at = T0 + GRACE + timedelta(minutes=5)

    async with session_factory() as session:
        await lifecycle.execute_deletion(session, account_id, now=T0 + GRACE, notifier=recording_notifier)
        outcome = await lifecycle.run_final_purge(
            session, account_id, now=purge_at, notifier=recording_notifier, executor=executor
        )

    assert outcome == ExecutionOutcome.failed
    account = await _load(session_factory, account_id)
    assert account.deletion_state == DeletionState.failed
    assert _utc(account.deletion_failed_at) == purge_at
    assert _utc(account.deletion_requested_at) == T0
    assert "storage offline" in account.deletion_failure_reason
    assert account.is_active is False

    assert len(alerts_raised) == 1
    assert alerts_raised[0]["account_id"] == account_id
    assert "storage offline" in alerts_raised[0]["reason"]
    assert metrics.snapshot()["account_deletions_failed"] == 1

    # No retry: nothing pending, excluded from sweeps, further callbacks are no-ops.
    rows = await _callbacks(session_factory, account_id)
    assert all(row.status != CallbackStatus.pending for row in rows)
    async with session_factory() as session:
        assert await lifecycle.list_due_for_deletion(session, now=purge_at + GRACE) == []
        again = await lifecycle.run_final_purge(session, account_id, now=purge_at + GRACE, executor=executor)
    assert again == ExecutionOutcome.not_pending
    assert executor.calls == [account_id]
    assert "completed" not in recording_notifier.kinds()


@pytest.mark.anyio("asyncio")
async def test_purge_timeout_is_a_failure(session_factory, recording_notifier, alerts_raised) -> None:
    executor = FakePurgeExecutor(delay=5.0)
    account_id = await create_account(session_factory)
    await _request(session_factory, account_id, recording_notifier, grace=timedelta(0))

    async with session_factory() as session:
        outcome = await lifecycle.run_final_purge(
            session, account_id, now=T0, notifier=recording_notifier, executor=executor, timeout=0.05
        )

    assert outcome == ExecutionOutcome.failed
    account = await _load(session_factory, account_id)
    assert account.deletion_state == DeletionState.failed
    assert "timed out" in account.deletion_failure_reason
    assert len(alerts_raised) == 1


@pytest.mark.anyio("asyncio")
async def test_early_callback_is_rescheduled_without_purging(
    session_factory, recording_notifier: RecordingNotifier, fake_executor: FakePurgeExecutor
) -> None:
    account_id = await create_account(session_factory)
    await _request(session_factory, account_id, recording_notifier)
    request_id = await _request_id(session_factory, account_id)
    early = T0 + timedelta(days=5)

    async with session_factory() as session:
        outcome = await lifecycle.execute_deletion(
            session, account_id, request_id=request_id, now=early, notifier=recording_notifier
        )
        purge_outcome = await lifecycle.run_final_purge(
            session, account_id, request_id=request_id, now=early, executor=fake_executor
        )

    assert outcome == ExecutionOutcome.rescheduled
    assert purge_outcome == ExecutionOutcome.rescheduled
    assert fake_executor.calls == []
    assert recording_notifier.kinds() == ["requested"]

    account = await _load(session_factory, account_id)
    assert account.deletion_state == DeletionState.pending
    assert account.purge_started_at is None
    assert account.deletion_failed_at is None
    rows = await _callbacks(session_factory, account_id)
    assert [(row.kind, row.status) for row in rows] == [(CallbackKind.execute_deletion, CallbackStatus.pending)]
    assert _utc(rows[0].run_at) == T0 + GRACE


@pytest.mark.anyio("asyncio")
async def test_early_callback_rearms_when_original_was_consumed(session_factory, recording_notifier) -> None:
    account_id = await create_account(session_factory)
    await _request(session_factory, account_id, recording_notifier)
    async with session_factory() as session:
        claimed = await callbacks.claim_due(session, now=T0 + GRACE)
        await callbacks.complete(session, claimed[0].id)
        await session.commit()

    async with session_factory() as session:
        outcome = await lifecycle.execute_deletion(session, account_id, now=T0 + timedelta(days=5))

    assert outcome == ExecutionOutcome.rescheduled
    pending = [row for row in await _callbacks(session_factory, account_id) if row.status == CallbackStatus.pending]
    assert len(pending) == 1
    assert _utc(pending[0].run_at) == T0 + GRACE
    assert metrics.snapshot()["account_deletions_rescheduled"] == 1


@pytest.mark.anyio("asyncio")
async def test_callback_from_previous_lifecycle_is_stale(
    session_factory, recording_notifier, fake_executor: FakePurgeExecutor
) -> None:
    account_id = await create_account(session_factory)
    await _request(session_factory, account_id, recording_notifier)
    old_request_id = await _request_id(session_factory, account_id)
    async with session_factory() as session:
        await lifecycle.cancel_deletion(session, account_id, now=T0 + timedelta(days=1), notifier=recording_notifier)
    await _request(session_factory, account_id, recording_notifier, now=T0 + timedelta(days=2))

    async with session_factory() as session:
        outcome = await lifecycle.execute_deletion(
            session, account_id, request_id=old_request_id, now=T0 + GRACE, notifier=recording_notifier
        )
        purge_outcome = await lifecycle.run_final_purge(
            session, account_id, request_id=old_request_id, now=T0 + GRACE, executor=fake_executor
        )

    assert outcome == ExecutionOutcome.stale
    assert purge_outcome == ExecutionOutcome.stale
    assert fake_executor.calls == []
    assert (await _load(session_factory, account_id)).deletion_state == DeletionState.pending


@pytest.mark.anyio("asyncio")
async def test_overlapping_triggers_purge_at_most_once(
    session_factory, recording_notifier: RecordingNotifier, fake_executor: FakePurgeExecutor
) -> None:
    account_id = await create_account(session_factory)
    await _request(session_factory, account_id, recording_notifier, grace=timedelta(0))

    async with session_factory() as session:
        first = await lifecycle.execute_deletion(session, account_id, now=T0, notifier=recording_notifier)
        second = await lifecycle.execute_deletion(session, account_id, now=T0, notifier=recording_notifier)
    assert first == ExecutionOutcome.final_warning_sent
    assert second == ExecutionOutcome.awaiting_purge
    final = [row for row in await _callbacks(session_factory, account_id) if row.kind == CallbackKind.final_purge]
    assert len(final) == 1

    later = T0 + timedelta(minutes=5)
    async with session_factory() as session:
        outcomes = [
            await lifecycle.run_final_purge(session, account_id, now=later, executor=fake_executor),
            await lifecycle.run_final_purge(session, account_id, now=later, executor=fake_executor),
            await lifecycle.execute_deletion(session, account_id, now=later),
        ]

    assert outcomes == [ExecutionOutcome.purged, ExecutionOutcome.purged_already, ExecutionOutcome.purged_already]
    assert fake_executor.calls == [account_id]
    assert recording_notifier.kinds().count("final_warning") == 1


@pytest.mark.anyio("asyncio")
async def test_cancel_committed_before_final_check_wins(
    session_factory, recording_notifier, fake_executor: FakePurgeExecutor
) -> None:
    account_id = await create_account(session_factory)
    await _request(session_factory, account_id, recording_notifier)
    request_id = await _request_id(session_factory, account_id)
    async with session_factory() as session:
        await lifecycle.execute_deletion(session, account_id, request_id=request_id, now=T0 + GRACE)
    async with session_factory() as session:
        await lifecycle.cancel_deletion(session, account_id, now=T0 + GRACE + timedelta(minutes=1))

    async with session_factory() as session:
        outcome = await lifecycle.run_final_purge(
            session, account_id, request_id=request_id, now=T0 + GRACE + timedelta(minutes=5), executor=fake_executor
        )

    assert outcome == ExecutionOutcome.cancelled
    assert fake_executor.calls == []
    account = await _load(session_factory, account_id)
    assert account.deletion_state == DeletionState.active
    assert all(row.status == CallbackStatus.cancelled for row in await _callbacks(session_factory, account_id) if row.kind == CallbackKind.final_purge)


@pytest.mark.anyio("asyncio")
async def test_cancel_is_refused_once_purge_started(session_factory, recording_notifier) -> None:
    account_id = await create_account(session_factory)
    await _request(session_factory, account_id, recording_notifier, grace=timedelta(0))
    refused: list[StateConflictError] = []

    class _CancellingExecutor(FakePurgeExecutor):
        async def purge(self, target):
            async with session_factory() as other:
                try:
                    await lifecycle.cancel_deletion(other, target, now=T0)
                except StateConflictError as exc:
                    refused.append(exc)
            return await super().purge(target)

    executor = _CancellingExecutor()
    async with session_factory() as session:
        outcome = await lifecycle.run_final_purge(session, account_id, now=T0, executor=executor)

    assert outcome == ExecutionOutcome.purged
    assert len(refused) == 1
    assert refused[0].state == "purging"
    assert await _load(session_factory, account_id) is None


@pytest.mark.anyio("asyncio")
async def test_compare_and_set_rejects_stale_version(session_factory, recording_notifier) -> None:
    account_id = await create_account(session_factory)
    async with session_factory() as stale_session:
        stale = await stale_session.get(Account, account_id)
        await _request(session_factory, account_id, recording_notifier)

        swapped = await lifecycle._compare_and_set(stale_session, stale, is_active=True)
        await stale_session.rollback()

    assert swapped is False
    account = await _load(session_factory, account_id)
    assert account.is_active is False
    assert account.lifecycle_version == 1


@pytest.mark.anyio("asyncio")
async def test_operator_can_cancel_failed_deletion(session_factory, recording_notifier, alerts_raised) -> None:
    account_id = await create_account(session_factory)
    await _request(session_factory, account_id, recording_notifier, grace=timedelta(0))
    async with session_factory() as session:
        await lifecycle.run_final_purge(
            session, account_id, now=T0, executor=FakePurgeExecutor(error=OSError("disk"))
        )

    async with session_factory() as session:
        with pytest.raises(StateConflictError):
            await lifecycle.cancel_deletion(session, account_id, allow_failed=False, notifier=recording_notifier)
        await lifecycle.cancel_deletion(session, account_id, notifier=recording_notifier)

    account = await _load(session_factory, account_id)
    assert account.deletion_state == DeletionState.active
    assert account.deletion_failed_at is None
    assert account.deletion_failure_reason is None
    assert account.purge_started_at is None
    assert account.is_active is True


@pytest.mark.anyio("asyncio")
async def test_list_due_excludes_failed_purging_and_future(session_factory) -> None:
    now = T0 + GRACE
    due = await create_account(
        session_factory, email="due@example.com", deletion_requested_at=T0, deletion_scheduled_at=T0 + timedelta(days=1)
    )
    older = await create_account(
        session_factory, email="older@example.com", deletion_requested_at=T0, deletion_scheduled_at=T0
    )
    await create_account(
        session_factory, email="future@example.com", deletion_requested_at=T0, deletion_scheduled_at=now + timedelta(days=1)
    )
    await create_account(
        session_factory,
        email="failed@example.com",
        deletion_requested_at=T0,
        deletion_scheduled_at=T0,
        purge_started_at=T0,
        deletion_failed_at=T0,
    )
    await create_account(
        session_factory, email="purging@example.com", deletion_requested_at=T0, deletion_scheduled_at=T0, purge_started_at=now
    )
    # A leftover schedule without a request is never a deletion signal.
    await create_account(session_factory, email="stray@example.com", deletion_scheduled_at=T0)
    await create_account(session_factory, email="active@example.com")

    async with session_factory() as session:
        assert await lifecycle.list_due_for_deletion(session, now=now) == [older, due]
        assert await lifecycle.list_due_for_deletion(session, now=now, limit=1) == [older]


@pytest.mark.anyio("asyncio")
async def test_process_due_deletions_sends_final_warnings(session_factory, recording_notifier: RecordingNotifier) -> None:
    first = await create_account(session_factory, email="a@example.com")
    second = await create_account(session_factory, email="b@example.com")
    await create_account(session_factory, email="c@example.com")
    await _request(session_factory, first, recording_notifier)
    await _request(session_factory, second, recording_notifier)

    result = await lifecycle.process_due_deletions(session_factory, now=T0 + GRACE, notifier=recording_notifier)

    assert result.processed == 2
    assert result.outcomes == {"final_warning_sent": 2}
    assert result.errors == []
    assert recording_notifier.kinds().count("final_warning") == 2

    # Accounts awaiting their final purge are absorbed by the next sweep.
    again = await lifecycle.process_due_deletions(session_factory, now=T0 + GRACE, notifier=recording_notifier)
    assert again.outcomes == {"awaiting_purge": 2}


@pytest.mark.anyio("asyncio")
async def test_process_due_deletions_isolates_errors(
    session_factory, recording_notifier, monkeypatch: pytest.MonkeyPatch
) -> None:
    account_id = await create_account(session_factory)
    await _request(session_factory, account_id, recording_notifier)

    async def _boom(*_args, **_kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(lifecycle, "execute_deletion", _boom)
    result = await lifecycle.process_due_deletions(session_factory, now=T0 + GRACE)

    assert result.processed == 1
    assert result.errors == [{"account_id": str(account_id), "error": "boom"}]


@pytest.mark.anyio("asyncio")
async def test_deletion_status_reports_remaining_days(session_factory, recording_notifier) -> None:
    account_id = await create_account(session_factory)
    async with session_factory() as session:
        active = await lifecycle.get_deletion_status(session, account_id)
    assert active.state == DeletionState.active
    assert active.can_cancel is False
    assert active.scheduled_at is None

    await _request(session_factory, account_id, recording_notifier)
    async with session_factory() as session:
        pending = await lifecycle.get_deletion_status(session, account_id, now=T0 + timedelta(days=10, hours=1))
        overdue = await lifecycle.get_deletion_status(session, account_id, now=T0 + GRACE + timedelta(days=2))

    assert pending.state == DeletionState.pending
    assert pending.days_remaining == 20
    assert pending.can_cancel is True
    assert pending.reason == "no reason"
    assert pending.scheduled_at == T0 + GRACE
    assert overdue.days_remaining == 0


@pytest.mark.anyio("asyncio")
async def test_failed_status_hides_failure_reason(session_factory) -> None:
    account_id = await create_account(
        session_factory,
        deletion_requested_at=T0,
        deletion_scheduled_at=T0,
        purge_started_at=T0,
        deletion_failed_at=T0,
        deletion_failure_reason="bucket policy denied",
        is_active=False,
    )
    async with session_factory() as session:
        status = await lifecycle.get_deletion_status(session, account_id, now=T0)
        failed = await lifecycle.list_failed_deletions(session)
        pending = await lifecycle.list_pending_deletions(session)

    assert status.state == DeletionState.failed
    assert status.can_cancel is False
    assert "bucket policy denied" not in repr(status)
    assert [row.deletion_failure_reason for row in failed] == ["bucket policy denied"]
    assert pending == []


@pytest.mark.anyio("asyncio")
async def test_rearm_missing_callbacks_restores_lost_schedule(session_factory) -> None:
    account_id = await create_account(
        session_factory,
        deletion_requested_at=T0,
        deletion_scheduled_at=T0 + GRACE,
        deletion_request_id=uuid.uuid4(),
        is_active=False,
    )

    async with session_factory() as session:
        assert await lifecycle.rearm_missing_callbacks(session, now=T0) == 1
    async with session_factory() as session:
        assert await lifecycle.rearm_missing_callbacks(session, now=T0) == 0

    rows = await _callbacks(session_factory, account_id)
    assert [(row.kind, row.status) for row in rows] == [(CallbackKind.execute_deletion, CallbackStatus.pending)]
    assert _utc(rows[0].run_at) == T0 + GRACE


@pytest.mark.anyio("asyncio")
async def test_fail_interrupted_purges(session_factory, alerts_raised, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "account_deletion_stale_claim_seconds", 900)
    now = T0 + GRACE
    stuck = await create_account(
        session_factory,
        email="stuck@example.com",
        deletion_requested_at=T0,
        deletion_scheduled_at=T0,
        purge_started_at=now - timedelta(hours=2),
        is_active=False,
    )
    running = await create_account(
        session_factory,
        email="running@example.com",
        deletion_requested_at=T0,
        deletion_scheduled_at=T0,
        purge_started_at=now - timedelta(minutes=1),
        is_active=False,
    )

    async with session_factory() as session:
        assert await lifecycle.fail_interrupted_purges(session, now=now) == 1

    assert (await _load(session_factory, stuck)).deletion_state == DeletionState.failed
    assert (await _load(session_factory, running)).deletion_state == DeletionState.purging
    assert [alert["account_id"] for alert in alerts_raised] == [stuck]


@pytest.mark.anyio("asyncio")
async def test_dispatch_failure_never_breaks_transition(session_factory) -> None:
    class _BrokenNotifier:
        def notify(self, notice):
            raise RuntimeError("queue full")

    account_id = await create_account(session_factory)
    async with session_factory() as session:
        await lifecycle.request_deletion(session, account_id, now=T0, notifier=_BrokenNotifier())

    async with session_factory() as session:
        account = (await session.execute(select(Account).where(Account.id == account_id))).scalar_one()
    assert account.deletion_state == DeletionState.pending


def test_deletion_info_reflects_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "account_deletion_grace_period_days", 14)
    monkeypatch.setattr(settings, "account_deletion_final_warning_seconds", 600)
    info = lifecycle.deletion_info()
    assert info["grace_period_days"] == 14
    assert info["final_warning_minutes"] == 10
    assert info["what_gets_deleted"]


@pytest.mark.anyio("asyncio")
async def test_failure_is_recorded_and_escalated_once(session_factory, alerts_raised) -> None:
    now = T0 + GRACE
    account_id = await create_account(
        session_factory,
        deletion_requested_at=T0,
        deletion_scheduled_at=T0 + GRACE,
        purge_started_at=now - timedelta(hours=1),
        is_active=False,
    )

    async with session_factory() as session:
        first = await lifecycle._mark_failed(session, account_id, cause="purge timed out", now=now)
    async with session_factory() as session:
        second = await lifecycle._mark_failed(
            session, account_id, cause="purge interrupted before completion", now=now + timedelta(minutes=5)
        )

    assert (first, second) == (True, False)
    assert [alert["account_id"] for alert in alerts_raised] == [account_id]
    assert metrics.snapshot()["account_deletions_failed"] == 1
    account = await _load(session_factory, account_id)
    assert account.deletion_failure_reason == "purge timed out"
    assert _utc(account.deletion_failed_at) == now
