# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
modpkg - package manager for game mods.

Usage:
    from modpkg import Installer

    installer = Installer.from_target(Path("/games/skyrim"))
    result = await installer.install(["skyui^5.1"])
"""

from modpkg.core.config import Config, load_config, find_config
from modpkg.core.errors import ModPkgError
from modpkg.models import OperationResult, InstallOptions
from modpkg.services import Installer, ProgressHooks

__version__ = "1.0.0"

__all__ = [
    "Config",
    "load_config",
    "find_config",
    "ModPkgError",
    "OperationResult",
    "InstallOptions",
    "Installer",
    "ProgressHooks",
]
