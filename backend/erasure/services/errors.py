from __future__ import annotations

from datetime import datetime
from uuid import UUID


class DeletionError(Exception):
    """Base class for account deletion lifecycle errors."""


class StateConflictError(DeletionError):
    """The account is not in a state that permits the requested operation."""

    code = "state_conflict"

    def __init__(self, account_id: UUID, *, state: str, operation: str) -> None:
        super().__init__(f"Cannot {operation} account {account_id} in state '{state}'")
        self.account_id = account_id
        self.state = state
        self.operation = operation


class AccountNotFoundError(StateConflictError):
    """The account does not exist (never created, or already purged)."""

    code = "account_not_found"

    def __init__(self, account_id: UUID, *, operation: str) -> None:
        super().__init__(account_id, state="purged", operation=operation)
        self.args = (f"Account {account_id} not found",)


class TransientDeliveryError(DeletionError):
    """A single notification delivery attempt failed; retried by the notifier."""


class FatalPurgeError(DeletionError):
    """The purge executor raised or timed out. Never retried automatically."""

    def __init__(self, account_id: UUID, cause: str) -> None:
        super().__init__(f"Purge of account {account_id} failed: {cause}")
        self.account_id = account_id
        self.cause = cause


class StaleScheduleError(DeletionError):
    """A deferred callback fired before the account's scheduled deletion time."""

    def __init__(self, account_id: UUID, scheduled_at: datetime) -> None:
        super().__init__(f"Callback for account {account_id} fired before {scheduled_at.isoformat()}")
        self.account_id = account_id
        self.scheduled_at = scheduled_at
