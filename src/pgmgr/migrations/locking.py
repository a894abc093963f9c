"""
Lock-aware retry for migration statements.

Migrations run with short ``lock_timeout`` and ``statement_timeout`` settings
so that a migration waiting on a busy table gives up quickly instead of
blocking application traffic behind its lock request. Such failures are
transient, so the runner re-invokes the whole migration a bounded number of
times with a fixed delay in between.

Classification is purely textual: the driver does not expose lock failures
as a uniform error type, so the error message is matched against a fixed
pattern.
"""

import re
import time
from typing import Callable, TypeVar

from pgmgr.config.logging_config import get_logger
from pgmgr.migrations.exceptions import RetriesExceededError

log = get_logger(__name__)

T = TypeVar("T")

LOCKING_ERROR_PATTERN = re.compile(
    r"ERROR:.+(canceling statement due to (statement|lock) timeout|could not obtain lock on relation)"
)


def is_locking_error(error: BaseException | str) -> bool:
    """Return True if the error message describes a lock or statement timeout."""
    return LOCKING_ERROR_PATTERN.search(str(error)) is not None


def retry_until_success(
    operation: Callable[[], T],
    retry_delay: int,
    retries_remaining: int,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation`` until it succeeds or fails with a non-locking error.

    The operation is attempted at most ``retries_remaining + 1`` times. A
    negative budget behaves like a budget of zero.

    Args:
        operation: Callable to run; failures are signalled by raising
        retry_delay: Seconds to sleep between attempts; ``<= 0`` retries immediately
        retries_remaining: How many more attempts are allowed after this one
        sleep: Sleep function, replaceable in tests

    Returns:
        The operation's return value

    Raises:
        RetriesExceededError: If a locking error persists once the budget is used up
        Exception: Any non-locking error raised by the operation, unchanged
    """
    try:
        return operation()
    except Exception as e:
        if not is_locking_error(e):
            raise
        if retries_remaining <= 0:
            raise RetriesExceededError(
                f"retries exceeded: {e}",
                error=getattr(e, "error", None),
                migration_version=getattr(e, "migration_version", None),
            ) from e

        if retry_delay > 0:
            log.warning(
                f"Retrying in {retry_delay} seconds ({retries_remaining} retries remaining) "
                f"after rescuing from lock-related error: {e}"
            )
            sleep(retry_delay)
        else:
            log.warning(
                f"Retrying immediately ({retries_remaining} retries remaining) "
                f"after rescuing from lock-related error: {e}"
            )

    return retry_until_success(operation, retry_delay, retries_remaining - 1, sleep=sleep)
