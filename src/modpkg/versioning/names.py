# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Package Names and Specifiers

Single responsibility: Validate package names and split "name<constraint>" specifiers
"""

from dataclasses import dataclass
from typing import Tuple

from modpkg.core.errors import ParseError
from modpkg.versioning.constraint import VersionConstraint


def _is_ascii_alpha(c: str) -> bool:
    return c.isascii() and c.isalpha()


def _is_ascii_alnum(c: str) -> bool:
    return c.isascii() and c.isalnum()


def parse_name(text: str) -> str:
    """
    Validate a package name and return its canonical (lower-cased) form.

    Names are ASCII alphanumeric and must begin with a letter.

    Raises:
        ParseError: If the name is empty or contains invalid characters
    """
    if not isinstance(text, str):
        raise ParseError(f"Package name must be a string, not {type(text).__name__}", text=repr(text))
    if not text:
        raise ParseError("names must have at least one character", text=text)
    if not _is_ascii_alpha(text[0]):
        raise ParseError(
            f"names must begin with an alpha character, not {text[0]!r} in {text!r}",
            text=text
        )
    for c in text:
        if not _is_ascii_alnum(c):
            raise ParseError(
                f"names must contain only alphanumeric characters, not {c!r} in {text!r}",
                text=text
            )
    return text.lower()


@dataclass(frozen=True)
class PackageSpecifier:
    """A requested package: canonical name plus version constraint."""
    name: str
    constraint: VersionConstraint

    def __iter__(self):
        return iter((self.name, self.constraint))

    def __str__(self) -> str:
        if self.constraint.is_any:
            return self.name
        return f"{self.name}{self.constraint}"


def split_specifier(text: str) -> Tuple[str, str]:
    """Split "name>=1.0" into ("name", ">=1.0"); a bare name gets "*"."""
    for idx, c in enumerate(text):
        if not _is_ascii_alnum(c):
            return text[:idx], text[idx:]
    return text, "*"


def parse_specifier(text: str) -> PackageSpecifier:
    """
    Parse a package specifier such as "skymod", "skymod^1.2" or "skymod>=1.0,<2.0".

    The name is the leading alphanumeric run; everything after it is the
    version constraint.

    Raises:
        ParseError: If either the name or the constraint is malformed
    """
    if not isinstance(text, str):
        raise ParseError(f"Specifier must be a string, not {type(text).__name__}", text=repr(text))
    name_text, constraint_text = split_specifier(text.strip())
    return PackageSpecifier(
        name=parse_name(name_text),
        constraint=VersionConstraint.parse(constraint_text)
    )
