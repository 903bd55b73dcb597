# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Core utilities and shared modules for modpkg.

This package contains:
- config: Target-directory configuration (modpkg.yml)
- errors: Error taxonomy
- logging: Structured logging
"""

from modpkg.core.config import Config, load_config, find_config
from modpkg.core.errors import (
    ModPkgError,
    ParseError,
    SchemaError,
    ResolutionConflict,
    FetchError,
    DigestMismatch,
    ModifiedFileConflict,
    DuplicatePathConflict,
    InstallIOError,
    SessionLockedError,
    DependencyFailed,
)
from modpkg.core.logging import get_logger, configure_logging, log_event

__all__ = [
    "Config",
    "load_config",
    "find_config",
    "ModPkgError",
    "ParseError",
    "SchemaError",
    "ResolutionConflict",
    "FetchError",
    "DigestMismatch",
    "ModifiedFileConflict",
    "DuplicatePathConflict",
    "InstallIOError",
    "SessionLockedError",
    "DependencyFailed",
    "get_logger",
    "configure_logging",
    "log_event",
]
