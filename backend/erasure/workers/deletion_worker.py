"""Background worker that fires deferred deletion callbacks.

Each tick requeues callbacks whose worker vanished, fails purges whose claim went stale, claims due
callbacks, runs each in its own session, and optionally sweeps accounts whose grace period elapsed
without a callback (the batch trigger). Only the leader replica runs the loop.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from fastapi import FastAPI

from erasure.core.config import settings
from erasure.core.logging_config import correlation_id_ctx_var
from erasure.db.session import SessionLocal
from erasure.models.callback import CallbackKind, CallbackStatus
from erasure.services import callbacks, leader_lock, lifecycle
from erasure.services.callbacks import ClaimedCallback
from erasure.services.notifier import Notifier, get_notifier
from erasure.services.purge import PurgeExecutor

logger = logging.getLogger(__name__)

_LOCK_NAME = "account_deletion_worker"
_MIN_POLL_SECONDS = 5


@dataclass
class WorkerTick:
    requeued: int = 0
    failed_purges: int = 0
    claimed: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)
    swept: int = 0


async def _dispatch(
    claimed: ClaimedCallback,
    *,
    now: datetime | None,
    notifier: Notifier | None,
    executor: PurgeExecutor | None,
) -> lifecycle.ExecutionOutcome:
    async with SessionLocal() as session:
        if claimed.kind == CallbackKind.execute_deletion:
            return await lifecycle.execute_deletion(
                session, claimed.account_id, request_id=claimed.request_id, now=now, notifier=notifier
            )
        if claimed.kind == CallbackKind.final_purge:
            return await lifecycle.run_final_purge(
                session,
                claimed.account_id,
                request_id=claimed.request_id,
                now=now,
                notifier=notifier,
                executor=executor,
            )
    raise ValueError(f"Unknown callback kind: {claimed.kind}")


async def _run_callback(
    claimed: ClaimedCallback,
    *,
    now: datetime | None,
    notifier: Notifier | None,
    executor: PurgeExecutor | None,
) -> str:
    token = correlation_id_ctx_var.set(f"callback:{claimed.id}")
    try:
        try:
            outcome = await _dispatch(claimed, now=now, notifier=notifier, executor=executor)
        except Exception as exc:
            logger.exception(
                "account_deletion_callback_failed",
                extra={"callback_id": str(claimed.id), "account_id": str(claimed.account_id), "kind": claimed.kind.value},
            )
            async with SessionLocal() as session:
                await callbacks.complete(session, claimed.id, status=CallbackStatus.failed, error=str(exc))
                await session.commit()
            return "error"

        async with SessionLocal() as session:
            await callbacks.complete(session, claimed.id, status=CallbackStatus.done, error=None)
            await session.commit()
        logger.info(
            "account_deletion_callback_completed",
            extra={
                "callback_id": str(claimed.id),
                "account_id": str(claimed.account_id),
                "kind": claimed.kind.value,
                "outcome": outcome.value,
            },
        )
        return outcome.value
    finally:
        correlation_id_ctx_var.reset(token)


async def run_once(
    *,
    now: datetime | None = None,
    notifier: Notifier | None = None,
    executor: PurgeExecutor | None = None,
    sweep: bool | None = None,
) -> WorkerTick:
    # The tick clock only selects work; lifecycle calls read their own clock unless one is pinned.
    now_utc = now or datetime.now(timezone.utc)
    tick = WorkerTick()
    stale_after = timedelta(seconds=max(60, int(settings.account_deletion_stale_claim_seconds)))
    limit = max(1, int(settings.account_deletion_batch_limit or 200))

    async with SessionLocal() as session:
        tick.requeued = await callbacks.requeue_stale(session, now=now_utc, older_than=stale_after)
    async with SessionLocal() as session:
        tick.failed_purges = await lifecycle.fail_interrupted_purges(session, now=now_utc)
    async with SessionLocal() as session:
        claimed = await callbacks.claim_due(session, now=now_utc, limit=limit)
    tick.claimed = len(claimed)

    if claimed:
        gate = asyncio.Semaphore(max(1, int(settings.account_deletion_worker_concurrency or 1)))

        async def _bounded(item: ClaimedCallback) -> str:
            async with gate:
                return await _run_callback(item, now=now, notifier=notifier, executor=executor)

        for outcome in await asyncio.gather(*(_bounded(item) for item in claimed)):
            tick.outcomes[outcome] = tick.outcomes.get(outcome, 0) + 1

    run_sweep = settings.account_deletion_sweep_enabled if sweep is None else sweep
    if run_sweep:
        result = await lifecycle.process_due_deletions(SessionLocal, now=now, limit=limit, notifier=notifier)
        tick.swept = result.processed
    return tick


async def _recover_once() -> None:
    async with SessionLocal() as session:
        failed = await lifecycle.fail_interrupted_purges(session)
    async with SessionLocal() as session:
        rearmed = await lifecycle.rearm_missing_callbacks(session)
    if failed or rearmed:
        logger.warning("account_deletion_worker_recovered", extra={"failed_purges": failed, "rearmed": rearmed})


async def _loop(stop: asyncio.Event) -> None:
    interval = max(_MIN_POLL_SECONDS, int(settings.account_deletion_poll_interval_seconds or 60))
    try:
        await _recover_once()
    except Exception as exc:
        logger.warning("account_deletion_worker_recovery_failed", extra={"error": str(exc)})

    while not stop.is_set():
        try:
            tick = await run_once()
            if tick.claimed or tick.requeued or tick.failed_purges or tick.swept:
                logger.info(
                    "account_deletion_worker_tick",
                    extra={
                        "claimed": tick.claimed,
                        "requeued": tick.requeued,
                        "failed_purges": tick.failed_purges,
                        "swept": tick.swept,
                        "outcomes": tick.outcomes,
                    },
                )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("account_deletion_worker_failed", extra={"error": str(exc)})

        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=interval)


def start(app: FastAPI) -> None:
    if not settings.account_deletion_scheduler_enabled:
        return
    if getattr(app.state, "account_deletion_worker_task", None) is not None:
        return

    stop_event = asyncio.Event()
    task = asyncio.create_task(leader_lock.run_as_leader(name=_LOCK_NAME, stop=stop_event, work=_loop))
    app.state.account_deletion_worker_stop = stop_event
    app.state.account_deletion_worker_task = task


async def stop(app: FastAPI) -> None:
    stop_event = getattr(app.state, "account_deletion_worker_stop", None)
    task = getattr(app.state, "account_deletion_worker_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.account_deletion_worker_stop = None
    app.state.account_deletion_worker_task = None
    await get_notifier().drain()
