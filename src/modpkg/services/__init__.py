# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Services Module - Package Management

Modular package management system following Unix philosophy:
- Each module does one thing well
- Modules compose to form complete system
- Text-based state throughout (YAML metadata, JSON digests, JSONL journal)
"""

from .repository import PackageIndex, RepositoryLoader, merge_manifests
from .resolver import DependencyResolver, resolve
from .pkgdb import PackageDatabase
from .session import Session, SessionLock
from .transactions import TransactionLogger
from .archive import HttpFetcher, ZipExtractor, StagedArchive, archive_filename
from .failover import FetchFailover, FetchPolicy
from .executor import Executor, ProgressHooks
from .service import Installer

__all__ = [
    "PackageIndex",
    "RepositoryLoader",
    "merge_manifests",
    "DependencyResolver",
    "resolve",
    "PackageDatabase",
    "Session",
    "SessionLock",
    "TransactionLogger",
    "HttpFetcher",
    "ZipExtractor",
    "StagedArchive",
    "archive_filename",
    "FetchFailover",
    "FetchPolicy",
    "Executor",
    "ProgressHooks",
    "Installer",
]
