from __future__ import annotations

import logging
from typing import Any

from erasure.core.config import settings

logger = logging.getLogger(__name__)


def is_enabled() -> bool:
    return bool((settings.sentry_dsn or "").strip())


_PII_EXTRA_KEYS = {"email", "to_email", "name"}


def _scrub_event(event: dict[str, Any], _hint: dict[str, Any]) -> dict[str, Any]:
    """Replace contact details in event extras before the event leaves the process."""
    extra = event.get("extra")
    if isinstance(extra, dict):
        for key in _PII_EXTRA_KEYS & set(extra):
            extra[key] = "[scrubbed]"
    return event


def init_sentry() -> None:
    if not is_enabled():
        return

    import sentry_sdk
    from sentry_sdk.integrations import Integration
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    integrations: list[Integration] = [
        FastApiIntegration(),
        SqlalchemyIntegration(),
    ]
    if settings.sentry_enable_logs:
        log_level_name = str(settings.sentry_log_level or "error").strip().upper()
        event_level = getattr(logging, log_level_name, logging.ERROR)
        integrations.append(
            LoggingIntegration(
                level=event_level,
                event_level=event_level,
            )
        )

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=settings.app_version,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        profiles_sample_rate=settings.sentry_profiles_sample_rate,
        integrations=integrations,
        attach_stacktrace=True,
        send_default_pii=False,
        before_send=_scrub_event,
    )


def capture_alert(message: str, *, level: str = "fatal", tags: dict[str, str] | None = None, extras: dict[str, Any] | None = None) -> str | None:
    """Send an operator-facing event to Sentry; returns the event id when one was sent."""
    if not is_enabled():
        return None

    import sentry_sdk

    with sentry_sdk.new_scope() as scope:
        for key, value in (tags or {}).items():
            scope.set_tag(key, value)
        for key, value in (extras or {}).items():
            scope.set_extra(key, value)
        return sentry_sdk.capture_message(message, level=level)
