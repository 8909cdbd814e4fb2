"""General utils functions"""

import fnmatch
import logging
import re
import sys
from pathlib import Path
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse


logger = logging.getLogger("gitclient")

SHA1_PATTERN = re.compile(r"^[0-9a-f]{40}$")
ZERO_SHA1 = "0" * 40
DEFAULT_BRANCH = "master"


def configure_logging(debug: bool):
    """
    Configures the logging system based on the debug flag.
    """
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter("%(message)s")
    handler.setFormatter(formatter)

    log_level = logging.DEBUG if debug else logging.INFO
    logger.setLevel(log_level)

    if not logger.hasHandlers():
        logger.addHandler(handler)


def expand_notes_ref(namespace: str) -> str:
    """
    Full ref of a notes namespace, expanded the way git expands ``--ref``.

    Examples:
        ci -> refs/notes/ci
        notes/ci -> refs/notes/ci
        refs/notes/ci -> refs/notes/ci
    """
    if namespace.startswith("refs/notes/"):
        return namespace
    if namespace.startswith("notes/"):
        return f"refs/{namespace}"
    return f"refs/notes/{namespace}"


def is_full_sha1(value: Optional[str]) -> bool:
    return bool(value) and bool(SHA1_PATTERN.match(value))  # type: ignore[arg-type]


def ref_matches_pattern(ref_name: str, pattern: Optional[str]) -> bool:
    """
    Match a full ref name against a remote listing pattern.

    A pattern matches when it globs the full name or a trailing sequence of
    path components, e.g. "master" and "heads/ma*" both match
    "refs/heads/master".

    Args:
        ref_name: Full ref name (e.g. "refs/heads/master")
        pattern: Glob pattern, or None/empty to match everything

    Returns:
        True if the ref matches
    """
    if not pattern:
        return True
    return fnmatch.fnmatchcase(ref_name, pattern) or fnmatch.fnmatchcase(
        ref_name, f"*/{pattern}"
    )


def is_relative_url(url: str) -> bool:
    return url.startswith("./") or url.startswith("../")


def resolve_relative_url(base_url: str, relative: str) -> str:
    """
    Resolve a relative submodule URL ("../other.git") against the superproject URL.

    Each leading "../" strips one path component of the base, as git does.

    Examples:
        https://host/org/app.git + ../lib.git -> https://host/org/lib.git
        git@host:org/app.git + ./lib -> git@host:org/app.git/lib
    """
    base = base_url.rstrip("/")
    rel = relative
    while True:
        if rel.startswith("./"):
            rel = rel[2:]
        elif rel.startswith("../"):
            rel = rel[3:]
            slash, colon = base.rfind("/"), base.rfind(":")
            if slash > colon:
                base = base[:slash]
            elif colon >= 0:
                base = base[: colon + 1]
            else:
                base = ""
        else:
            break
    if not base:
        return rel
    if base.endswith(":"):
        return f"{base}{rel}"
    return f"{base}/{rel}"


def strip_credentials_from_url(url: str) -> str:
    """Remove any user:password@ part from a URL before it is logged."""
    parsed = urlparse(url)
    if not parsed.scheme or "@" not in parsed.netloc:
        return url
    netloc = parsed.netloc.rsplit("@", 1)[1]
    return urlunparse(parsed._replace(netloc=netloc))


def first_line(message: str) -> str:
    lines = message.strip().splitlines()
    return lines[0] if lines else ""


def repository_kind(path: Union[str, Path]) -> Optional[str]:
    """
    Tell what kind of repository lives at ``path`` without opening it.

    Returns:
        "workspace" when ``path/.git`` exists, "bare" for a bare repository
        layout, None otherwise
    """
    path = Path(path)
    if (path / ".git").exists():
        return "workspace"
    if (path / "HEAD").is_file() and (path / "objects").is_dir() and (path / "refs").is_dir():
        return "bare"
    return None
