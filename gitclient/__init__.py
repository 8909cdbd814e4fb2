"""Git client abstraction with interchangeable subprocess and embedded backends."""

from .client import GitClient
from .exceptions import GitError, GitInterruptedError, GitLockFailedError
from .listener import LoggingListener, StreamListener, TaskListener
from .model import (
    Branch,
    IndexEntry,
    ObjectReference,
    ProxyConfiguration,
    RefSpec,
    Revision,
    SSHUserPrivateKey,
    StandardCredentials,
    SubmoduleDefinition,
    Tag,
    UsernamePasswordCredentials,
)
from .backends import CliGitClient, create_client

__all__ = [
    "Branch",
    "CliGitClient",
    "GitClient",
    "GitError",
    "GitInterruptedError",
    "GitLockFailedError",
    "IndexEntry",
    "LoggingListener",
    "ObjectReference",
    "ProxyConfiguration",
    "RefSpec",
    "Revision",
    "SSHUserPrivateKey",
    "StandardCredentials",
    "StreamListener",
    "SubmoduleDefinition",
    "Tag",
    "TaskListener",
    "UsernamePasswordCredentials",
    "create_client",
]
