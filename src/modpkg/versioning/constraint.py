# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Version Constraints

Single responsibility: Parse version specifiers and evaluate them against versions

Grammar (comma separated comparators, all of which must hold):

    *            any version (also x, X)
    =1.2.3       exactly 1.2.3
    =1.2         >=1.2.0, <1.3.0
    =1           >=1.0.0, <2.0.0
    >1.2.3       strictly greater        (>1.2 means >=1.3.0)
    >=1.2.3      greater or equal
    <1.2.3       strictly lower          (<=1.2 means <1.3.0)
    <=1.2.3      lower or equal
    ~1.2.3       >=1.2.3, <1.3.0
    ^1.2.3       >=1.2.3, <2.0.0         (^0.2.3 -> <0.3.0, ^0.0.3 -> <0.0.4)
    1.2.*        same as =1.2
    1.2.3        same as ^1.2.3

Pre-release versions only match when a comparator names a pre-release of
the same major.minor.patch, so ">=1.0.0" never selects "2.0.0-beta".
"""

import re
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from modpkg.core.errors import ParseError
from modpkg.versioning.version import Version

OPERATORS = ("*", "=", ">", ">=", "<", "<=", "~", "^")

_COMPARATOR_RE = re.compile(r"^\s*(?P<op>>=|<=|>|<|=|~|\^)?\s*(?P<version>\S+)\s*$")
_NUMBER = r"(?:0|[1-9]\d*)"
_PART = rf"({_NUMBER}|[*xX])"
_VERSION_RE = re.compile(
    rf"^{_PART}(?:\.{_PART})?(?:\.{_PART})?"
    r"(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)
_WILDCARDS = ("*", "x", "X")


@dataclass(frozen=True)
class Bound:
    version: Version
    inclusive: bool


@dataclass(frozen=True)
class Comparator:
    """A single operator applied to a possibly partial version."""
    op: str
    major: Optional[int] = None
    minor: Optional[int] = None
    patch: Optional[int] = None
    pre: Tuple[str, ...] = ()

    @classmethod
    def parse(cls, text: str) -> "Comparator":
        """
        Parse one comparator such as ">=1.2" or "^0.3.1".

        Raises:
            ParseError: On malformed input
        """
        match = _COMPARATOR_RE.match(text)
        if not match:
            raise ParseError(f"Invalid version comparator {text!r}", text=text)

        op = match.group("op")
        raw = match.group("version")

        if raw in _WILDCARDS:
            if op not in (None, "="):
                raise ParseError(f"Wildcard cannot be combined with {op!r} in {text!r}", text=text)
            return cls(op="*")

        parsed = _VERSION_RE.match(raw)
        if not parsed:
            raise ParseError(f"Invalid version in comparator {text!r}", text=text)

        parts = [parsed.group(1), parsed.group(2), parsed.group(3)]
        pre = tuple(parsed.group(4).split(".")) if parsed.group(4) else ()

        numbers = []
        wildcard = False
        for part in parts:
            if part is None:
                break
            if part in _WILDCARDS:
                wildcard = True
                continue
            if wildcard:
                raise ParseError(f"Version component after a wildcard in {text!r}", text=text)
            numbers.append(int(part))

        if wildcard:
            if op not in (None, "="):
                raise ParseError(f"Wildcard cannot be combined with {op!r} in {text!r}", text=text)
            if pre:
                raise ParseError(f"Wildcard version cannot have a pre-release in {text!r}", text=text)
            if not numbers:
                return cls(op="*")
            op = "="
        elif op is None:
            op = "^"

        if pre and len(numbers) != 3:
            raise ParseError(f"Pre-release requires a full version in {text!r}", text=text)

        padded = numbers + [None] * (3 - len(numbers))
        return cls(op=op, major=padded[0], minor=padded[1], patch=padded[2], pre=pre)

    def bounds(self) -> Tuple[Optional[Bound], Optional[Bound]]:
        """
        Compute the (lower, upper) bounds of this comparator.

        None means unbounded on that side.
        """
        op, major, minor, patch = self.op, self.major, self.minor, self.patch
        if op == "*":
            return None, None

        def v(a: int, b: int = 0, c: int = 0, pre: Tuple[str, ...] = ()) -> Version:
            return Version(a, b, c, pre)

        full = minor is not None and patch is not None
        exact = v(major, minor or 0, patch or 0, self.pre)

        def partial_ceiling() -> Version:
            # First version above the range named by a partial version
            if minor is None:
                return v(major + 1)
            return v(major, minor + 1)

        if op == "=":
            if full:
                return Bound(exact, True), Bound(exact, True)
            return Bound(exact, True), Bound(partial_ceiling(), False)

        if op == ">":
            if full:
                return Bound(exact, False), None
            return Bound(partial_ceiling(), True), None

        if op == ">=":
            return Bound(exact, True), None

        if op == "<":
            return None, Bound(exact, False)

        if op == "<=":
            if full:
                return None, Bound(exact, True)
            return None, Bound(partial_ceiling(), False)

        if op == "~":
            if minor is None:
                return Bound(exact, True), Bound(v(major + 1), False)
            return Bound(exact, True), Bound(v(major, minor + 1), False)

        if op == "^":
            if minor is None:
                ceiling = v(major + 1)
            elif major != 0:
                ceiling = v(major + 1)
            elif minor != 0:
                ceiling = v(0, minor + 1)
            elif patch is not None:
                ceiling = v(0, 0, patch + 1)
            else:
                ceiling = v(0, 1)
            return Bound(exact, True), Bound(ceiling, False)

        raise ParseError(f"Unknown operator {op!r}", text=str(self))

    def matches(self, version: Version) -> bool:
        """Range test only; pre-release gating is applied by VersionConstraint."""
        lower, upper = self.bounds()
        if lower is not None:
            if version < lower.version or (version == lower.version and not lower.inclusive):
                return False
        if upper is not None:
            if version > upper.version or (version == upper.version and not upper.inclusive):
                return False
        return True

    def allows_prerelease_of(self, version: Version) -> bool:
        return bool(self.pre) and (self.major, self.minor, self.patch) == version.triple

    def __str__(self) -> str:
        if self.op == "*":
            return "*"
        text = ".".join(str(n) for n in (self.major, self.minor, self.patch) if n is not None)
        if self.pre:
            text += "-" + ".".join(self.pre)
        return f"{self.op}{text}"


@dataclass(frozen=True)
class VersionConstraint:
    """A conjunction of comparators; the set of acceptable versions."""
    comparators: Tuple[Comparator, ...]

    @classmethod
    def parse(cls, text: str) -> "VersionConstraint":
        """
        Parse a constraint such as "^1.2", ">=1.0, <2.0" or "*".

        Args:
            text: Constraint text

        Returns:
            Parsed constraint

        Raises:
            ParseError: On malformed input
        """
        if isinstance(text, VersionConstraint):
            return text
        if not isinstance(text, str):
            raise ParseError(f"Constraint must be a string, not {type(text).__name__}", text=repr(text))
        if not text.strip():
            raise ParseError("Empty version constraint", text=text)

        comparators = []
        for piece in text.split(","):
            if not piece.strip():
                raise ParseError(f"Empty comparator in {text!r}", text=text)
            comparators.append(Comparator.parse(piece))
        return cls(tuple(comparators))

    @classmethod
    def any(cls) -> "VersionConstraint":
        return cls((Comparator(op="*"),))

    @property
    def is_any(self) -> bool:
        return all(c.op == "*" for c in self.comparators)

    def satisfies(self, version: Version) -> bool:
        """
        Check whether a version is acceptable.

        Args:
            version: Candidate version

        Returns:
            True if every comparator matches (and pre-releases are allowed)
        """
        if not all(c.matches(version) for c in self.comparators):
            return False
        if version.is_prerelease:
            return any(c.allows_prerelease_of(version) for c in self.comparators)
        return True

    def intersect(self, other: "VersionConstraint") -> "VersionConstraint":
        merged = list(self.comparators)
        for comparator in other.comparators:
            if comparator not in merged:
                merged.append(comparator)
        return VersionConstraint(tuple(merged))

    def __str__(self) -> str:
        return ", ".join(str(c) for c in self.comparators)

    def __repr__(self) -> str:
        return f"VersionConstraint('{self}')"


def parse_constraint(text: str) -> VersionConstraint:
    """Parse a version constraint (see module docstring for the grammar)."""
    return VersionConstraint.parse(text)


def satisfies(constraint: VersionConstraint, version: Version) -> bool:
    """Pure check of a version against a constraint."""
    return constraint.satisfies(version)


def satisfies_all(constraints: Iterable[VersionConstraint], version: Version) -> bool:
    """Check a version against the intersection of several constraints."""
    return all(c.satisfies(version) for c in constraints)
