"""Fluent, single-use builders for git operations."""

from .base import Deadline, GitCommand
from .changelog import ChangelogCommand
from .checkout import CheckoutCommand
from .clone import CloneCommand
from .fetch import FetchCommand
from .init import InitCommand
from .merge import FastForwardMode, MergeCommand, Strategy
from .push import PushCommand
from .rebase import RebaseCommand
from .rev_list import RevListCommand
from .submodule_update import SubmoduleUpdateCommand

__all__ = [
    "ChangelogCommand",
    "CheckoutCommand",
    "CloneCommand",
    "Deadline",
    "FastForwardMode",
    "FetchCommand",
    "GitCommand",
    "InitCommand",
    "MergeCommand",
    "PushCommand",
    "RebaseCommand",
    "RevListCommand",
    "Strategy",
    "SubmoduleUpdateCommand",
]
