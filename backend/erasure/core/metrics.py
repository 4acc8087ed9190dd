from collections import Counter
from threading import Lock
from typing import Dict, Counter as CounterType

_metrics: CounterType[str] = Counter()
_lock = Lock()


def _inc(key: str, amount: int = 1) -> None:
    with _lock:
        _metrics[key] += amount


def record_deletion_requested() -> None:
    _inc("account_deletions_requested")


def record_deletion_cancelled() -> None:
    _inc("account_deletions_cancelled")


def record_deletion_rescheduled() -> None:
    _inc("account_deletions_rescheduled")


def record_final_warning() -> None:
    _inc("account_deletion_final_warnings")


def record_deletion_purged() -> None:
    _inc("account_deletions_purged")


def record_deletion_failed() -> None:
    _inc("account_deletions_failed")


def record_notification_failure() -> None:
    _inc("deletion_notification_failures")


def snapshot() -> Dict[str, int]:
    with _lock:
        return dict(_metrics)


def reset() -> None:
    with _lock:
        _metrics.clear()
