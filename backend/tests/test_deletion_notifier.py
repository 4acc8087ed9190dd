import uuid
from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from erasure.core import metrics
from erasure.core.config import settings
from erasure.models.email_failure import EmailDeliveryFailure
from erasure.services import notifier as notifier_service
from erasure.services.notifier import DeletionNotice, EmailDeletionNotifier, NotificationKind, render_notice


def _notice(kind: NotificationKind = NotificationKind.requested) -> DeletionNotice:
    return DeletionNotice(
        account_id=uuid.uuid4(),
        kind=kind,
        to_email="user@example.com",
        name="Ana",
        scheduled_at=datetime(2026, 2, 1, 9, 30, tzinfo=timezone.utc),
        summary={"sessions": 2, "files": 1},
    )


@pytest.mark.parametrize("kind", list(NotificationKind))
def test_render_notice_builds_every_kind(kind: NotificationKind) -> None:
    subject, text_body, html_body = render_notice(_notice(kind))
    assert settings.app_name in subject
    assert text_body.strip()
    assert "<html" in html_body.lower()


def test_render_requested_notice_mentions_schedule() -> None:
    _, text_body, html_body = render_notice(_notice(NotificationKind.requested))
    assert "2026-02-01 09:30 UTC" in text_body
    assert "Ana" in html_body


@pytest.mark.anyio("asyncio")
async def test_deliver_skipped_when_smtp_disabled(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "smtp_enabled", False)
    sent: list[str] = []

    async def _fake_send(to_email, *_args, **_kwargs):
        sent.append(to_email)
        return True

    monkeypatch.setattr(notifier_service.email, "send_email", _fake_send)
    assert await EmailDeletionNotifier().deliver(_notice()) is False
    assert sent == []


@pytest.mark.anyio("asyncio")
async def test_deliver_retries_transient_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "smtp_enabled", True)
    results = iter([False, True])
    attempts: list[str] = []

    async def _flaky_send(to_email, subject, text_body, html_body=None):
        attempts.append(subject)
        return next(results)

    monkeypatch.setattr(notifier_service.email, "send_email", _flaky_send)
    delivered = await EmailDeletionNotifier(max_attempts=3, backoff_seconds=0).deliver(_notice())

    assert delivered is True
    assert len(attempts) == 2
    assert "deletion_notification_failures" not in metrics.snapshot()


@pytest.mark.anyio("asyncio")
async def test_exhausted_delivery_is_recorded(session_factory, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "smtp_enabled", True)

    async def _down(*_args, **_kwargs):
        return False

    monkeypatch.setattr(notifier_service.email, "send_email", _down)
    notifier = EmailDeletionNotifier(max_attempts=2, backoff_seconds=0, session_factory=session_factory)

    assert notifier.notify(_notice(NotificationKind.final_warning)) is True
    await notifier.drain()

    async with session_factory() as session:
        rows = (await session.execute(select(EmailDeliveryFailure))).scalars().all()
    assert len(rows) == 1
    assert rows[0].to_email == "user@example.com"
    assert rows[0].notification_kind == "final_warning"
    assert rows[0].attempts == 2
    assert metrics.snapshot()["deletion_notification_failures"] == 1


def test_notify_without_running_loop_reports_not_queued() -> None:
    assert EmailDeletionNotifier().notify(_notice()) is False


def test_get_notifier_is_a_singleton() -> None:
    assert notifier_service.get_notifier() is notifier_service.get_notifier()
