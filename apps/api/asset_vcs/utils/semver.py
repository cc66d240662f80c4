"""Semantic version arithmetic for asset versions."""

from typing import NamedTuple, Optional, Union

from ..core.exceptions import ValidationError
from ..models.version_control import VersionBump

INITIAL_VERSION = "0.0.0"


class SemanticVersion(NamedTuple):
    major: int
    minor: int
    patch: int

    @classmethod
    def parse(cls, value: str) -> "SemanticVersion":
        parts = value.split(".")
        if len(parts) != 3 or not all(p.isdigit() for p in parts):
            raise ValidationError(
                f"Invalid semantic version '{value}'", details={"version": value}
            )
        return cls(*(int(p) for p in parts))

    def bump(self, kind: Union[VersionBump, str]) -> "SemanticVersion":
        kind = VersionBump(kind)
        if kind == VersionBump.MAJOR:
            return SemanticVersion(self.major + 1, 0, 0)
        if kind == VersionBump.MINOR:
            return SemanticVersion(self.major, self.minor + 1, 0)
        return SemanticVersion(self.major, self.minor, self.patch + 1)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


def next_version(current: Optional[str], bump: Union[VersionBump, str] = VersionBump.PATCH) -> str:
    """
    Compute the version that follows ``current``.

    The first version of an asset is always ``1.0.0`` regardless of ``bump``.
    """
    if current is None:
        return str(SemanticVersion.parse(INITIAL_VERSION).bump(VersionBump.MAJOR))
    return str(SemanticVersion.parse(current).bump(bump))


def compare_versions(a: str, b: str) -> int:
    """Return -1, 0 or 1 like a classic comparator."""
    left, right = SemanticVersion.parse(a), SemanticVersion.parse(b)
    return (left > right) - (left < right)
