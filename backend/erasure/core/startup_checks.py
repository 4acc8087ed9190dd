from __future__ import annotations

import logging

from erasure.core.config import settings

logger = logging.getLogger(__name__)


def _is_production() -> bool:
    env = (settings.environment or "").strip().lower()
    return env in {"prod", "production"}


def _append_if(problems: list[str], *, condition: bool, message: str) -> None:
    if condition:
        problems.append(message)


def _validate_escalation_settings(problems: list[str]) -> None:
    _append_if(
        problems,
        condition=not (settings.sentry_dsn or "").strip(),
        message="SENTRY_DSN must be configured in production (failed deletions are escalated there).",
    )
    _append_if(
        problems,
        condition=not (settings.admin_alert_email or "").strip(),
        message="ADMIN_ALERT_EMAIL must be configured in production.",
    )


def _validate_deletion_timing(problems: list[str]) -> None:
    _append_if(
        problems,
        condition=int(settings.account_deletion_grace_period_days) < 1,
        message="ACCOUNT_DELETION_GRACE_PERIOD_DAYS must be at least 1 in production.",
    )
    _append_if(
        problems,
        condition=int(settings.account_deletion_final_warning_seconds) < 60,
        message="ACCOUNT_DELETION_FINAL_WARNING_SECONDS must leave at least one minute to cancel.",
    )
    _append_if(
        problems,
        condition=int(settings.account_deletion_stale_claim_seconds)
        <= int(settings.account_deletion_purge_timeout_seconds),
        message="ACCOUNT_DELETION_STALE_CLAIM_SECONDS must exceed ACCOUNT_DELETION_PURGE_TIMEOUT_SECONDS.",
    )


def _validate_smtp_settings(problems: list[str]) -> None:
    smtp_enabled = bool(getattr(settings, "smtp_enabled", False))
    _append_if(
        problems,
        condition=smtp_enabled and not (getattr(settings, "smtp_host", "") or "").strip(),
        message="SMTP_HOST must be set when SMTP_ENABLED=1.",
    )
    _append_if(
        problems,
        condition=smtp_enabled and not (getattr(settings, "smtp_from_email", "") or "").strip(),
        message="SMTP_FROM_EMAIL must be set when SMTP_ENABLED=1.",
    )


def validate_production_settings() -> None:
    """
    Fail fast on unsafe defaults when running in production.

    A deletion that fails must reach an operator, so the escalation channels are mandatory.
    """
    if not _is_production():
        return

    problems: list[str] = []
    _validate_escalation_settings(problems)
    _validate_deletion_timing(problems)
    _validate_smtp_settings(problems)

    if problems:
        raise RuntimeError("Production configuration checks failed:\n- " + "\n- ".join(problems))
