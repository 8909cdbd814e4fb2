"""
In-process locks guarding writes to shared repository metadata.

git's own lock files are the last line of defence between processes; these
locks keep the worker threads of a single process from tripping over them.
"""

import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Union

# Each repository metadata directory gets its own lock
_repo_locks: Dict[str, threading.RLock] = {}
_repo_locks_lock = threading.Lock()


def get_repository_lock(git_dir: Union[str, Path]) -> threading.RLock:
    """
    Get or create the lock for a repository metadata directory.

    Args:
        git_dir: Path of the repository's metadata directory

    Returns:
        Re-entrant lock shared by every caller using the same directory
    """
    key = os.path.realpath(str(git_dir))
    with _repo_locks_lock:
        if key not in _repo_locks:
            _repo_locks[key] = threading.RLock()
        return _repo_locks[key]


@contextmanager
def repository_lock(git_dir: Union[str, Path]) -> Iterator[None]:
    lock = get_repository_lock(git_dir)
    with lock:
        yield
