from __future__ import annotations

import logging
from datetime import datetime, timezone
from uuid import UUID

from erasure.core import sentry
from erasure.core.config import settings
from erasure.services import email

logger = logging.getLogger(__name__)


def _alert_body(account_id: UUID, reason: str, failed_at: datetime) -> str:
    return "\n".join(
        [
            "MANUAL INTERVENTION REQUIRED: an account deletion failed and will not be retried.",
            "",
            f"Account: {account_id}",
            f"Failed at: {failed_at.astimezone(timezone.utc).isoformat()}",
            f"Reason: {reason}",
            "",
            "The account stays deactivated. Inspect the partial purge, then either finish it by hand",
            "or restore the account with `erasure-cli cancel-deletion --account-id <id>`.",
        ]
    )


async def escalate_failed_deletion(*, account_id: UUID, reason: str, failed_at: datetime | None = None) -> None:
    """Raise a high-severity operator alert for a failed purge. Never raises."""
    failed_at = failed_at or datetime.now(timezone.utc)
    logger.critical(
        "account_deletion_requires_manual_review",
        extra={
            "account_id": str(account_id),
            "failure_reason": reason,
            "failed_at": failed_at.isoformat(),
            "requires_manual_deletion": True,
        },
    )

    try:
        sentry.capture_alert(
            "Account deletion failed; manual intervention required",
            tags={"account_id": str(account_id), "subsystem": "account_deletion"},
            extras={"failure_reason": reason, "failed_at": failed_at.isoformat()},
        )
    except Exception:
        logger.exception("account_deletion_alert_sentry_failed", extra={"account_id": str(account_id)})

    to_email = (settings.admin_alert_email or "").strip()
    if not to_email:
        return
    try:
        sent = await email.send_error_alert(
            to_email,
            f"[{settings.app_name}] Account deletion failed: {account_id}",
            _alert_body(account_id, reason, failed_at),
        )
    except Exception:
        logger.exception("account_deletion_alert_email_failed", extra={"account_id": str(account_id)})
        return
    if not sent:
        logger.error("account_deletion_alert_email_not_sent", extra={"account_id": str(account_id)})
