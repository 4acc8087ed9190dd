import argparse
import asyncio
import json
import uuid
from datetime import datetime
from typing import Any, Dict

from erasure.core.config import settings
from erasure.core.logging_config import configure_logging
from erasure.db.session import SessionLocal
from erasure.models.account import Account
from erasure.services import lifecycle
from erasure.services.errors import StateConflictError
from erasure.services.notifier import get_notifier
from erasure.workers import deletion_worker


def _parse_account_id(raw: str) -> uuid.UUID:
    try:
        return uuid.UUID((raw or "").strip())
    except ValueError:
        raise SystemExit(f"Invalid account id: {raw!r}") from None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _serialize_account(account: Account) -> Dict[str, Any]:
    return {
        "id": str(account.id),
        "email": account.email,
        "state": account.deletion_state.value,
        "requested_at": _iso(account.deletion_requested_at),
        "scheduled_at": _iso(account.deletion_scheduled_at),
        "failed_at": _iso(account.deletion_failed_at),
        "failure_reason": account.deletion_failure_reason,
    }


def _print_rows(rows: list[Dict[str, Any]], *, empty: str) -> None:
    if not rows:
        print(empty)
        return
    for row in rows:
        print(json.dumps(row, sort_keys=True))


async def list_pending(limit: int) -> None:
    async with SessionLocal() as session:
        rows = await lifecycle.list_pending_deletions(session, limit=limit)
    _print_rows([_serialize_account(row) for row in rows], empty="No pending deletions")


async def list_failed(limit: int) -> None:
    async with SessionLocal() as session:
        rows = await lifecycle.list_failed_deletions(session, limit=limit)
    _print_rows([_serialize_account(row) for row in rows], empty="No failed deletions")


async def list_due(limit: int) -> list[uuid.UUID]:
    async with SessionLocal() as session:
        due = await lifecycle.list_due_for_deletion(session, limit=limit)
    _print_rows([{"id": str(account_id)} for account_id in due], empty="No accounts due for deletion")
    return due


def _confirm(prompt: str) -> bool:
    return input(f"{prompt} [y/N]: ").strip().lower() in {"y", "yes"}


async def process_deletions(*, limit: int, dry_run: bool, force: bool) -> None:
    due = await list_due(limit)
    if dry_run or not due:
        return
    if not force and not _confirm(f"Start deletion of {len(due)} account(s)?"):
        print("Aborted")
        return
    result = await lifecycle.process_due_deletions(SessionLocal, limit=limit)
    await get_notifier().drain()
    print(
        json.dumps(
            {"processed": result.processed, "outcomes": dict(result.outcomes), "errors": result.errors},
            sort_keys=True,
        )
    )


async def run_callbacks() -> None:
    tick = await deletion_worker.run_once()
    await get_notifier().drain()
    print(
        json.dumps(
            {
                "requeued": tick.requeued,
                "failed_purges": tick.failed_purges,
                "claimed": tick.claimed,
                "swept": tick.swept,
                "outcomes": tick.outcomes,
            },
            sort_keys=True,
        )
    )


async def cancel_deletion(account_id: uuid.UUID) -> None:
    async with SessionLocal() as session:
        try:
            await lifecycle.cancel_deletion(session, account_id)
        except StateConflictError as exc:
            raise SystemExit(str(exc)) from None
    await get_notifier().drain()
    print(f"Deletion cancelled for account {account_id}")


async def rearm_callbacks() -> None:
    async with SessionLocal() as session:
        failed = await lifecycle.fail_interrupted_purges(session)
    async with SessionLocal() as session:
        rearmed = await lifecycle.rearm_missing_callbacks(session)
    print(f"Re-armed {rearmed} callback(s); marked {failed} interrupted purge(s) as failed")


def _add_list_commands(subparsers) -> None:
    for name, help_text in (
        ("list-pending", "List accounts with a pending deletion"),
        ("list-failed", "List failed deletions that need manual review"),
        ("list-due", "List accounts whose grace period has elapsed"),
    ):
        cmd = subparsers.add_parser(name, help=help_text)
        cmd.add_argument("--limit", type=int, default=settings.account_deletion_batch_limit, help="Maximum rows")


def _add_deletion_commands(subparsers) -> None:
    process = subparsers.add_parser("process-deletions", help="Start deletion of every account that is due")
    process.add_argument("--limit", type=int, default=settings.account_deletion_batch_limit, help="Maximum accounts")
    process.add_argument("--dry-run", action="store_true", help="Only list the accounts that would be processed")
    process.add_argument("--force", action="store_true", help="Skip the confirmation prompt")

    subparsers.add_parser("run-callbacks", help="Run one worker tick (claim and fire due callbacks)")

    cancel = subparsers.add_parser("cancel-deletion", help="Cancel a pending or failed deletion")
    cancel.add_argument("--account-id", required=True, help="Account UUID")

    subparsers.add_parser("rearm-callbacks", help="Re-arm lost callbacks and fail interrupted purges")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Account deletion operations")
    subparsers = parser.add_subparsers(dest="command")
    _add_list_commands(subparsers)
    _add_deletion_commands(subparsers)
    return parser


def _run_cli_command(args: argparse.Namespace) -> bool:
    if args.command == "list-pending":
        asyncio.run(list_pending(args.limit))
        return True

    if args.command == "list-failed":
        asyncio.run(list_failed(args.limit))
        return True

    if args.command == "list-due":
        asyncio.run(list_due(args.limit))
        return True

    if args.command == "process-deletions":
        asyncio.run(process_deletions(limit=args.limit, dry_run=bool(args.dry_run), force=bool(args.force)))
        return True

    if args.command == "run-callbacks":
        asyncio.run(run_callbacks())
        return True

    if args.command == "cancel-deletion":
        asyncio.run(cancel_deletion(_parse_account_id(args.account_id)))
        return True

    if args.command == "rearm-callbacks":
        asyncio.run(rearm_callbacks())
        return True

    return False


def main(argv: list[str] | None = None):
    configure_logging(settings.log_json)
    parser = _build_parser()
    args = parser.parse_args(argv)
    if not _run_cli_command(args):
        parser.print_help()


if __name__ == "__main__":
    main()
