# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Version & Constraint Model

- version: SemVer 2.0 versions and precedence
- constraint: Comparators and version constraints (^, ~, =, <, >, *)
- names: Package names and "name<constraint>" specifiers
"""

from modpkg.versioning.version import Version
from modpkg.versioning.constraint import (
    Comparator,
    VersionConstraint,
    parse_constraint,
    satisfies,
    satisfies_all,
)
from modpkg.versioning.names import (
    PackageSpecifier,
    parse_name,
    parse_specifier,
    split_specifier,
)

__all__ = [
    "Version",
    "Comparator",
    "VersionConstraint",
    "parse_constraint",
    "satisfies",
    "satisfies_all",
    "PackageSpecifier",
    "parse_name",
    "parse_specifier",
    "split_specifier",
]
