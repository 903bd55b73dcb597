# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Semantic Versions

Single responsibility: Parse versions and order them by SemVer 2.0 precedence
"""

from dataclasses import dataclass
from functools import total_ordering
from typing import Tuple

import semantic_version

from modpkg.core.errors import ParseError


def _identifier_key(identifier: str) -> Tuple[int, object]:
    # Numeric identifiers sort numerically and before alphanumeric ones
    if identifier.isdigit():
        return (0, int(identifier))
    return (1, identifier)


@total_ordering
@dataclass(frozen=True, eq=False)
class Version:
    """
    A full major.minor.patch version with optional pre-release and build.

    Build metadata is kept for display but ignored for precedence,
    equality and hashing.
    """
    major: int
    minor: int
    patch: int
    prerelease: Tuple[str, ...] = ()
    build: Tuple[str, ...] = ()

    @classmethod
    def parse(cls, text: str) -> "Version":
        """
        Parse a full semantic version.

        Args:
            text: Version string such as "1.2.3" or "2.0.0-rc.1+build.5"

        Returns:
            Parsed version

        Raises:
            ParseError: If the text is not a valid semantic version
        """
        if isinstance(text, Version):
            return text
        if not isinstance(text, str):
            raise ParseError(f"Version must be a string, not {type(text).__name__}", text=repr(text))
        try:
            parsed = semantic_version.Version(text.strip())
        except ValueError as e:
            raise ParseError(f"Invalid version {text!r}: {e}", text=text)

        return cls(
            major=parsed.major,
            minor=parsed.minor,
            patch=parsed.patch,
            prerelease=tuple(parsed.prerelease),
            build=tuple(parsed.build),
        )

    @property
    def triple(self) -> Tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    @property
    def is_prerelease(self) -> bool:
        return bool(self.prerelease)

    @property
    def precedence_key(self) -> tuple:
        if not self.prerelease:
            return (self.major, self.minor, self.patch, 1, ())
        return (
            self.major,
            self.minor,
            self.patch,
            0,
            tuple(_identifier_key(i) for i in self.prerelease),
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.precedence_key == other.precedence_key

    def __lt__(self, other: "Version") -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.precedence_key < other.precedence_key

    def __hash__(self) -> int:
        return hash(self.precedence_key)

    def __str__(self) -> str:
        text = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            text += "-" + ".".join(self.prerelease)
        if self.build:
            text += "+" + ".".join(self.build)
        return text

    def __repr__(self) -> str:
        return f"Version('{self}')"
