"""Refspec model: source/destination ref patterns with an optional force flag."""

from typing import Iterable, List, Optional

from pydantic import BaseModel, Field, field_validator


class RefSpec(BaseModel):
    """
    A git refspec such as ``+refs/heads/*:refs/remotes/origin/*``.

    Each side may hold at most one ``*`` wildcard, and either both sides or
    neither must be wildcards. Lists of refspecs are evaluated in order.
    """

    source: Optional[str] = Field(None, description="Source ref or pattern")
    destination: Optional[str] = Field(None, description="Destination ref or pattern")
    force: bool = Field(False, description="Allow non fast-forward updates")

    model_config = {"frozen": True}

    @field_validator("source", "destination")
    @classmethod
    def validate_side(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        if v.count("*") > 1:
            raise ValueError(f"Refspec side '{v}' has more than one wildcard")
        return v

    @classmethod
    def parse(cls, spec: str) -> "RefSpec":
        """
        Parse the git string form of a refspec.

        Args:
            spec: e.g. "+refs/heads/*:refs/remotes/origin/*" or "refs/heads/master"

        Returns:
            RefSpec

        Raises:
            ValueError: If the refspec is malformed
        """
        spec = spec.strip()
        if not spec:
            raise ValueError("Empty refspec")
        force = spec.startswith("+")
        if force:
            spec = spec[1:]
        if ":" in spec:
            source, destination = spec.split(":", 1)
        else:
            source, destination = spec, None
        refspec = cls(source=source, destination=destination, force=force)
        if refspec.source and refspec.destination:
            if refspec.is_wildcard != ("*" in refspec.destination):
                raise ValueError(f"Refspec '{spec}' mixes wildcard and plain sides")
        return refspec

    @classmethod
    def parse_all(cls, specs: Iterable[str]) -> List["RefSpec"]:
        return [cls.parse(s) for s in specs]

    @classmethod
    def default_fetch(cls, remote_name: str = "origin") -> "RefSpec":
        return cls(
            source="refs/heads/*",
            destination=f"refs/remotes/{remote_name}/*",
            force=True,
        )

    @property
    def is_wildcard(self) -> bool:
        return bool(self.source) and "*" in self.source  # type: ignore[operator]

    @staticmethod
    def _match(pattern: Optional[str], name: str) -> bool:
        if not pattern:
            return False
        if "*" not in pattern:
            return pattern == name
        prefix, suffix = pattern.split("*", 1)
        return (
            len(name) >= len(prefix) + len(suffix)
            and name.startswith(prefix)
            and name.endswith(suffix)
        )

    @staticmethod
    def _expand(from_pattern: str, to_pattern: str, name: str) -> str:
        if "*" not in from_pattern:
            return to_pattern
        prefix, suffix = from_pattern.split("*", 1)
        middle = name[len(prefix) : len(name) - len(suffix) if suffix else None]
        return to_pattern.replace("*", middle, 1)

    def matches_source(self, name: str) -> bool:
        return self._match(self.source, name)

    def matches_destination(self, name: str) -> bool:
        return self._match(self.destination, name)

    def expand_from_source(self, name: str) -> Optional[str]:
        """Map a source ref name to its destination, or None if unmatched."""
        if not self.matches_source(name) or not self.destination:
            return None
        return self._expand(self.source, self.destination, name)  # type: ignore[arg-type]

    def expand_from_destination(self, name: str) -> Optional[str]:
        """Map a destination ref name back to its source, or None if unmatched."""
        if not self.matches_destination(name) or not self.source:
            return None
        return self._expand(self.destination, self.source, name)  # type: ignore[arg-type]

    def __str__(self) -> str:
        text = self.source or ""
        if self.destination:
            text = f"{text}:{self.destination}"
        return f"+{text}" if self.force else text
