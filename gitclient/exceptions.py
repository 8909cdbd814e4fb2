"""
Exception classes for git client operations.

Every backend maps its own failures into this taxonomy at the boundary between
the backend and the facade, so callers only ever handle these types.
"""

import logging
import time
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class GitError(Exception):
    """Base exception for any unsuccessful git operation."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        diagnostic: Optional[str] = None,
    ):
        self.operation = operation
        self.diagnostic = diagnostic.strip() if diagnostic else None
        if self.diagnostic:
            message = f"{message}\n{self.diagnostic}"
        super().__init__(message)


class GitLockFailedError(GitError):
    """Raised when the repository metadata lock cannot be acquired.

    Lock contention is expected to be transient, so a bounded retry of the
    same operation may succeed.
    """

    def __init__(
        self,
        message: str = "Could not acquire repository lock",
        operation: Optional[str] = None,
        diagnostic: Optional[str] = None,
    ):
        super().__init__(message, operation=operation, diagnostic=diagnostic)


class GitInterruptedError(Exception):
    """Raised when an operation was cancelled through the client.

    Not a GitError: cancellation is not a failure of the operation.
    """

    def __init__(self, operation: Optional[str] = None):
        self.operation = operation
        if operation:
            super().__init__(f"Interrupted while running {operation}")
        else:
            super().__init__("Interrupted")


def retry_on_lock(
    func: Callable[[], T],
    attempts: Optional[int] = None,
    delay: Optional[float] = None,
) -> T:
    """
    Call ``func`` and retry it while it fails with GitLockFailedError.

    Args:
        func: Zero-argument callable performing the git operation
        attempts: Total number of attempts (defaults to the configured value)
        delay: Seconds to wait between attempts (defaults to the configured value)

    Returns:
        Whatever ``func`` returns

    Raises:
        GitLockFailedError: If the lock is still held after the last attempt
    """
    from gitclient.config import get_lock_retry_settings

    default_attempts, default_delay = get_lock_retry_settings()
    attempts = default_attempts if attempts is None else attempts
    delay = default_delay if delay is None else delay

    for attempt in range(1, max(attempts, 1) + 1):
        try:
            return func()
        except GitLockFailedError as e:
            if attempt >= attempts:
                raise
            logger.warning(
                f"Repository lock busy (attempt {attempt}/{attempts}), retrying in {delay}s: {e}"
            )
            time.sleep(delay)

    raise AssertionError("unreachable")
