"""Semantic version parsing and ordering.

Versions are ``MAJOR.MINOR.PATCH[-PRERELEASE][+BUILD]``. A prerelease sorts
before the same release without one; build metadata never affects ordering.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from stackwarden.errors import InvalidVersion

_SEMVER_RE = re.compile(
    r"^(?P<major>\d+)\.(?P<minor>\d+)\.(?P<patch>\d+)"
    r"(?:-(?P<pre>[a-zA-Z0-9.]+))?"
    r"(?:\+(?P<build>[a-zA-Z0-9.]+))?\Z",
    re.ASCII,
)


@dataclass(frozen=True)
class Version:
    """An immutable semantic version."""

    major: int
    minor: int
    patch: int
    prerelease: str | None = None
    build: str | None = None

    def __post_init__(self) -> None:
        if min(self.major, self.minor, self.patch) < 0:
            raise InvalidVersion(f"{self.major}.{self.minor}.{self.patch}")

    @classmethod
    def parse(cls, value: str) -> Version:
        return parse(value)

    def __str__(self) -> str:
        return to_string(self)

    def __lt__(self, other: Version) -> bool:
        return compare(self, other) < 0

    def __le__(self, other: Version) -> bool:
        return compare(self, other) <= 0

    def __gt__(self, other: Version) -> bool:
        return compare(self, other) > 0

    def __ge__(self, other: Version) -> bool:
        return compare(self, other) >= 0


def parse(value: str) -> Version:
    """Parse a version string.

    Raises:
        InvalidVersion: if *value* is not a strict semantic version.
    """
    if not isinstance(value, str):
        raise InvalidVersion(str(value))
    m = _SEMVER_RE.match(value)
    if m is None:
        raise InvalidVersion(value)
    return Version(
        major=int(m.group("major")),
        minor=int(m.group("minor")),
        patch=int(m.group("patch")),
        prerelease=m.group("pre"),
        build=m.group("build"),
    )


def compare(a: Version, b: Version) -> int:
    """Return -1, 0 or 1 as *a* is older than, equal to, or newer than *b*."""
    left = (a.major, a.minor, a.patch)
    right = (b.major, b.minor, b.patch)
    if left != right:
        return -1 if left < right else 1

    if a.prerelease and not b.prerelease:
        return -1
    if not a.prerelease and b.prerelease:
        return 1
    if a.prerelease and b.prerelease and a.prerelease != b.prerelease:
        return -1 if a.prerelease < b.prerelease else 1
    return 0


def to_string(version: Version) -> str:
    """Render the canonical form of *version*."""
    text = f"{version.major}.{version.minor}.{version.patch}"
    if version.prerelease:
        text += f"-{version.prerelease}"
    if version.build:
        text += f"+{version.build}"
    return text


def is_newer(candidate: str, current: str) -> bool:
    """Return True if *candidate* is a newer version than *current*.

    Unparseable input on either side is never considered newer.
    """
    try:
        return compare(parse(candidate), parse(current)) > 0
    except InvalidVersion:
        return False
