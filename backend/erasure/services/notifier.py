"""Lifecycle emails for account deletion.

Notifications are fire-and-forget from the lifecycle's point of view: ``notify`` only queues
a delivery task and reports whether queueing worked. Delivery runs on its own retry budget and
a delivery that exhausts it is recorded in ``email_delivery_failures``; it never feeds back
into the account's deletion state.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol
from uuid import UUID

from erasure.core import metrics
from erasure.core.config import settings
from erasure.models.email_failure import EmailDeliveryFailure
from erasure.services import email
from erasure.services.errors import TransientDeliveryError

logger = logging.getLogger(__name__)


class NotificationKind(str, enum.Enum):
    requested = "requested"
    cancelled = "cancelled"
    final_warning = "final_warning"
    completed = "completed"


_SUBJECTS = {
    NotificationKind.requested: "Account deletion requested",
    NotificationKind.cancelled: "Account deletion cancelled",
    NotificationKind.final_warning: "Final notice: your account is about to be deleted",
    NotificationKind.completed: "Account permanently deleted",
}


@dataclass(frozen=True)
class DeletionNotice:
    account_id: UUID
    kind: NotificationKind
    to_email: str
    name: str | None = None
    scheduled_at: datetime | None = None
    summary: dict[str, Any] = field(default_factory=dict)


class Notifier(Protocol):
    def notify(self, notice: DeletionNotice) -> bool: ...


def _format_instant(value: datetime | None) -> str:
    if value is None:
        return "-"
    value = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def render_notice(notice: DeletionNotice) -> tuple[str, str, str]:
    """Return ``(subject, text_body, html_body)`` for a notice."""
    subject = f"{_SUBJECTS[notice.kind]} - {settings.app_name}"
    context = {
        "app_name": settings.app_name,
        "support_email": settings.support_email,
        "account_id": str(notice.account_id),
        "name": notice.name,
        "scheduled_at": _format_instant(notice.scheduled_at),
        "completed_at": _format_instant(datetime.now(timezone.utc)),
        "summary": notice.summary or {},
    }
    text_body, html_body = email.render_template(f"account_deletion_{notice.kind.value}.txt.j2", context)
    return subject, text_body, html_body


class EmailDeletionNotifier:
    def __init__(
        self,
        *,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        session_factory=None,
    ) -> None:
        self._max_attempts = max(1, int(max_attempts or settings.notification_max_attempts or 1))
        backoff = settings.notification_retry_backoff_seconds if backoff_seconds is None else backoff_seconds
        self._backoff_seconds = max(0.0, float(backoff))
        self._session_factory = session_factory
        self._tasks: set[asyncio.Task[bool]] = set()

    def notify(self, notice: DeletionNotice) -> bool:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "account_deletion_notification_not_queued",
                extra={"account_id": str(notice.account_id), "kind": notice.kind.value},
            )
            return False
        task = loop.create_task(self.deliver(notice))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def deliver(self, notice: DeletionNotice) -> bool:
        if not settings.smtp_enabled:
            logger.info(
                "account_deletion_notification_skipped",
                extra={"account_id": str(notice.account_id), "kind": notice.kind.value, "why": "smtp_disabled"},
            )
            return False

        subject, text_body, html_body = render_notice(notice)
        last_error: str | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                await self._send_once(notice.to_email, subject, text_body, html_body)
            except TransientDeliveryError as exc:
                last_error = str(exc)
                logger.warning(
                    "account_deletion_notification_attempt_failed",
                    extra={"account_id": str(notice.account_id), "kind": notice.kind.value, "attempt": attempt},
                )
                if attempt < self._max_attempts and self._backoff_seconds:
                    await asyncio.sleep(self._backoff_seconds * attempt)
                continue
            logger.info(
                "account_deletion_notification_sent",
                extra={"account_id": str(notice.account_id), "kind": notice.kind.value, "attempt": attempt},
            )
            return True

        metrics.record_notification_failure()
        await self._record_failure(notice, subject, last_error)
        return False

    async def drain(self) -> None:
        """Wait for queued deliveries (shutdown, tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _send_once(self, to_email: str, subject: str, text_body: str, html_body: str) -> None:
        if not await email.send_email(to_email, subject, text_body, html_body):
            raise TransientDeliveryError(f"SMTP delivery to {settings.smtp_host}:{settings.smtp_port} failed")

    async def _record_failure(self, notice: DeletionNotice, subject: str, error: str | None) -> None:
        session_factory = self._session_factory
        if session_factory is None:
            from erasure.db.session import SessionLocal

            session_factory = SessionLocal
        try:
            async with session_factory() as session:
                session.add(
                    EmailDeliveryFailure(
                        to_email=notice.to_email,
                        subject=subject[:255],
                        notification_kind=notice.kind.value,
                        attempts=self._max_attempts,
                        error_message=error,
                    )
                )
                await session.commit()
        except Exception:
            logger.exception(
                "account_deletion_notification_failure_not_recorded",
                extra={"account_id": str(notice.account_id), "kind": notice.kind.value},
            )


_default_notifier: EmailDeletionNotifier | None = None


def get_notifier() -> EmailDeletionNotifier:
    global _default_notifier
    if _default_notifier is None:
        _default_notifier = EmailDeletionNotifier()
    return _default_notifier
