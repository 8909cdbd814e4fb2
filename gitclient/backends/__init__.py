"""
Git client backends.

Two implementations share the GitClient facade:
    - "git": runs the git executable in a subprocess (CliGitClient)
    - "dulwich": runs in-process on dulwich (DulwichGitClient)

The embedded backend is only imported when requested, so importing the
package does not load dulwich.
"""

import logging
from pathlib import Path
from typing import Optional, Union

from gitclient.client import GitClient
from gitclient.config import get_default_implementation
from gitclient.listener import TaskListener

from .cli import CliGitClient

logger = logging.getLogger(__name__)

IMPLEMENTATIONS = ("git", "dulwich")


def create_client(
    path: Union[str, Path],
    implementation: Optional[str] = None,
    listener: Optional[TaskListener] = None,
) -> GitClient:
    """
    Create a git client for a working tree.

    Args:
        path: Working tree (or bare repository) the client operates on
        implementation: "git" or "dulwich"; defaults to the configured backend
        listener: Receives progress lines; defaults to the logging listener

    Returns:
        A GitClient for ``path``

    Raises:
        ValueError: If the implementation name is unknown
    """
    implementation = implementation or get_default_implementation()
    logger.debug(f"Creating {implementation} client for {path}")
    if implementation == "git":
        return CliGitClient(path, listener=listener)
    if implementation == "dulwich":
        from .embedded import DulwichGitClient

        return DulwichGitClient(path, listener=listener)
    raise ValueError(
        f"Unknown git implementation '{implementation}', expected one of {', '.join(IMPLEMENTATIONS)}"
    )


__all__ = ["CliGitClient", "IMPLEMENTATIONS", "create_client"]
