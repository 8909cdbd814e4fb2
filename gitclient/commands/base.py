"""
Builder base class shared by every git command.

A command is a plain mutable configuration record: setters return the same
instance, and ``execute()`` validates the accumulated configuration once and
dispatches it to the backend. Commands hold configuration values and a
reference to their client only, so they can be pickled together with it.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Optional

from gitclient.config import get_default_timeout
from gitclient.exceptions import GitError

if TYPE_CHECKING:
    from gitclient.client import GitClient

logger = logging.getLogger(__name__)


class Deadline:
    """Tracks the timeout of one command invocation."""

    def __init__(self, minutes: Optional[int], operation: str):
        self.operation = operation
        self.minutes = minutes
        self.expires_at = (
            time.monotonic() + minutes * 60 if minutes is not None else None
        )

    def remaining(self) -> Optional[float]:
        """Seconds left, or None when the command has no timeout."""
        if self.expires_at is None:
            return None
        return max(self.expires_at - time.monotonic(), 0.0)

    @property
    def expired(self) -> bool:
        return self.expires_at is not None and time.monotonic() >= self.expires_at

    def check(self) -> None:
        if self.expired:
            raise GitError(
                f"Timeout after {self.minutes} minutes", operation=self.operation
            )


class GitCommand(ABC):
    """Single-use, fluent builder for one git operation."""

    operation = "git"

    def __init__(self, client: "GitClient"):
        self.client = client
        self._timeout: Optional[int] = None
        self._executed = False

    def timeout(self, timeout: Optional[int]) -> "GitCommand":
        """Set the timeout in minutes; None uses the configured default."""
        self._timeout = timeout
        return self

    @property
    def timeout_minutes(self) -> int:
        return self._timeout if self._timeout is not None else get_default_timeout()

    def new_deadline(self) -> Deadline:
        return Deadline(self.timeout_minutes, self.operation)

    def validate(self) -> None:
        """Check the accumulated configuration before anything runs.

        Raises:
            GitError: If the configuration is invalid
        """

    def execute(self) -> Any:
        """
        Run the configured operation exactly once.

        Raises:
            GitError: If validation or the operation fails
            GitLockFailedError: If the repository lock is held by someone else
            GitInterruptedError: If the client was cancelled
        """
        if self._executed:
            raise GitError(
                "Command has already been executed", operation=self.operation
            )
        self._executed = True
        self.validate()
        self.client.check_interrupted(self.operation)
        logger.debug(f"Executing {self.operation} in {self.client.work_tree}")
        return self._run()

    @abstractmethod
    def _run(self) -> Any:
        """Backend-specific execution."""

    def _fail(self, message: str) -> GitError:
        return GitError(message, operation=self.operation)
