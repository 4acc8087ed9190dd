from erasure.db.base import Base  # noqa: F401
from erasure.models.account import Account, AccountNotification, AccountSession, DeletionState  # noqa: F401
from erasure.models.callback import CallbackKind, CallbackStatus, DeletionCallback  # noqa: F401
from erasure.models.email_failure import EmailDeliveryFailure  # noqa: F401

__all__ = [
    "Base",
    "Account",
    "AccountNotification",
    "AccountSession",
    "DeletionState",
    "CallbackKind",
    "CallbackStatus",
    "DeletionCallback",
    "EmailDeliveryFailure",
]
