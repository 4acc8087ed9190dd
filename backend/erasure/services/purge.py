from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol
from uuid import UUID

import sqlalchemy as sa

from erasure.core.config import settings
from erasure.models.account import Account, AccountNotification, AccountSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurgeResult:
    account_id: UUID
    summary: dict[str, Any] = field(default_factory=dict)


class PurgeExecutor(Protocol):
    """Removes everything an account owns. Raising means the purge did not complete."""

    async def purge(self, account_id: UUID) -> PurgeResult: ...


def _count_files(root: Path) -> int:
    return sum(1 for path in root.rglob("*") if path.is_file())


def _resolve_inside(root: Path, relative: str | None) -> Path | None:
    if not relative:
        return None
    candidate = (root / relative).resolve(strict=False)
    if candidate == root or root not in candidate.parents:
        return None
    return candidate


def _remove_account_files(media_root: Path, account_id: UUID, avatar_path: str | None) -> int:
    root = media_root.resolve(strict=False)
    removed = 0
    uploads = root / "accounts" / str(account_id)
    if uploads.is_dir():
        removed += _count_files(uploads)
        shutil.rmtree(uploads)
    avatar = _resolve_inside(root, avatar_path)
    if avatar is not None and avatar.is_file():
        avatar.unlink()
        removed += 1
    return removed


class DatabasePurgeExecutor:
    """Deletes sessions and notifications in one transaction, then the account's files.

    The account row itself is removed by the lifecycle once this returns.
    """

    def __init__(self, session_factory=None, *, media_root: str | Path | None = None) -> None:
        self._session_factory = session_factory
        self._media_root = Path(media_root or settings.media_root)

    def _sessions(self):
        if self._session_factory is not None:
            return self._session_factory
        from erasure.db.session import SessionLocal

        return SessionLocal

    async def purge(self, account_id: UUID) -> PurgeResult:
        async with self._sessions()() as session:
            account = await session.get(Account, account_id)
            if account is None:
                raise LookupError(f"Account {account_id} not found")
            avatar_path = account.avatar_path
            sessions = await session.execute(
                sa.delete(AccountSession)
                .where(AccountSession.account_id == account_id)
                .execution_options(synchronize_session=False)
            )
            notifications = await session.execute(
                sa.delete(AccountNotification)
                .where(AccountNotification.account_id == account_id)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        files = await asyncio.to_thread(_remove_account_files, self._media_root, account_id, avatar_path)
        summary = {
            "sessions": int(sessions.rowcount or 0),
            "notifications": int(notifications.rowcount or 0),
            "files": files,
        }
        logger.info("account_purge_executed", extra={"account_id": str(account_id), "summary": summary})
        return PurgeResult(account_id=account_id, summary=summary)


def get_purge_executor() -> PurgeExecutor:
    return DatabasePurgeExecutor()
