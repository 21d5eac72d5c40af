"""Utility modules for Recurflow."""

from .datetime_utils import (
    utc_now,
    get_timezone,
    ensure_utc,
    to_local_date,
    localize,
    parse_time,
)
from .retry import RetryExhausted, RetryPolicy, retry_with_backoff, with_retry
from .background_tasks import create_safe_task

__all__ = [
    "utc_now",
    "get_timezone",
    "ensure_utc",
    "to_local_date",
    "localize",
    "parse_time",
    "RetryExhausted",
    "RetryPolicy",
    "retry_with_backoff",
    "with_retry",
    "create_safe_task",
]
