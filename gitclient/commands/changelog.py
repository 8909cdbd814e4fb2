"""
Changelog builder and the raw log format shared by both backends.

Each commit in the range is written as one block; merge commits are written
once per parent, each block carrying the diff against that parent:

    commit <sha1>
    tree <sha1>
    parent <sha1> [<sha1>...]
    author <name> <<email>> <YYYY-MM-DD HH:MM:SS +ZZZZ>
    committer <name> <<email>> <YYYY-MM-DD HH:MM:SS +ZZZZ>

        <message, indented by four spaces>

    :<old mode> <new mode> <old sha1> <new sha1> <status>\t<path>
"""

from datetime import datetime, timedelta, timezone
from typing import List, Optional, TextIO

from .base import GitCommand

# git pretty format producing the block header
RAW_PRETTY_FORMAT = (
    "commit %H%ntree %T%nparent %P%n"
    "author %aN <%aE> %ai%ncommitter %cN <%cE> %ci%n%n%w(0,4,4)%B"
)


def format_git_date(epoch_seconds: int, offset_seconds: int) -> str:
    """Render a timestamp the way git's %ai does: 2013-03-21 15:16:44 +0100"""
    tz = timezone(timedelta(seconds=offset_seconds))
    stamp = datetime.fromtimestamp(epoch_seconds, tz)
    sign = "+" if offset_seconds >= 0 else "-"
    minutes = abs(offset_seconds) // 60
    return f"{stamp:%Y-%m-%d %H:%M:%S} {sign}{minutes // 60:02d}{minutes % 60:02d}"


def format_raw_change(
    old_mode: int, new_mode: int, old_sha1: str, new_sha1: str, status: str, path: str
) -> str:
    return f":{old_mode:06o} {new_mode:06o} {old_sha1} {new_sha1} {status}\t{path}"


def format_raw_header(
    sha1: str,
    tree: str,
    parents: List[str],
    author: str,
    author_date: str,
    committer: str,
    committer_date: str,
    message: str,
) -> str:
    lines = [
        f"commit {sha1}",
        f"tree {tree}",
        f"parent {' '.join(parents)}",
        f"author {author} {author_date}",
        f"committer {committer} {committer_date}",
        "",
    ]
    for line in message.rstrip("\n").split("\n"):
        lines.append(f"    {line}" if line else "")
    return "\n".join(lines) + "\n"


class ChangelogCommand(GitCommand):
    """Write the raw log of ``includes`` minus ``excludes`` to a text sink."""

    operation = "git log"

    def __init__(self, client):
        super().__init__(client)
        self._includes: List[str] = []
        self._excludes: List[str] = []
        self._out: Optional[TextIO] = None
        self._max: Optional[int] = None

    def includes(self, rev: str) -> "ChangelogCommand":
        self._includes.append(rev)
        return self

    def excludes(self, rev: str) -> "ChangelogCommand":
        self._excludes.append(rev)
        return self

    def to(self, out: TextIO) -> "ChangelogCommand":
        self._out = out
        return self

    def max(self, max_entries: int) -> "ChangelogCommand":
        self._max = max_entries
        return self

    def abort(self) -> None:
        """Give up on this command without writing anything."""
        self._executed = True
        if self._out is not None:
            self._out.flush()

    def validate(self) -> None:
        if self._out is None:
            raise self._fail("No output given for changelog")
        if self._max is not None and self._max < 0:
            raise self._fail(f"Invalid max entries {self._max}")

    def _run(self) -> None:
        self.client._changelog(
            self._includes,
            self._excludes,
            self._out,
            max_entries=self._max,
            deadline=self.new_deadline(),
        )
