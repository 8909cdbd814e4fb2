"""Data model for the git client."""

from .credentials import (
    ProxyConfiguration,
    SSHUserPrivateKey,
    StandardCredentials,
    UsernamePasswordCredentials,
)
from .objects import (
    Branch,
    IndexEntry,
    ObjectReference,
    Revision,
    SubmoduleDefinition,
    Tag,
)
from .refspec import RefSpec

__all__ = [
    "Branch",
    "IndexEntry",
    "ObjectReference",
    "ProxyConfiguration",
    "RefSpec",
    "Revision",
    "SSHUserPrivateKey",
    "StandardCredentials",
    "SubmoduleDefinition",
    "Tag",
    "UsernamePasswordCredentials",
]
