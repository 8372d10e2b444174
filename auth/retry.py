"""
auth/retry.py -- Bounded exponential-backoff retry around storage calls.

Only transient storage failures are retried: a dropped connection, a locked
SQLite file, an exhausted pool. Integrity violations, validation failures and
credential failures propagate on the first attempt -- retrying them changes
nothing. When the attempts run out the last transient error is wrapped in
StorageUnavailable so callers above the store never see SQLAlchemy types.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TypeVar

from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from auth.errors import StorageUnavailable

logger = logging.getLogger("authsvc.storage")

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    OperationalError,
    InterfaceError,
    DisconnectionError,
    PoolTimeoutError,
)


class RetryPolicy:
    """Attempt count and backoff bounds shared by AccountStore and SessionManager."""

    def __init__(self, attempts: int = 3, base_delay: float = 0.05, max_delay: float = 1.0) -> None:
        self.attempts = attempts
        self.base_delay = base_delay
        self.max_delay = max_delay

    def call(self, operation: str, fn: Callable[..., T], *args, **kwargs) -> T:
        """Run fn(*args, **kwargs), retrying transient storage errors.

        Raises StorageUnavailable once the attempts are exhausted.
        """
        retrying = Retrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            return retrying(fn, *args, **kwargs)
        except TRANSIENT_ERRORS as exc:
            logger.error("Storage unavailable during %s after %d attempts: %s", operation, self.attempts, exc)
            raise StorageUnavailable() from exc
