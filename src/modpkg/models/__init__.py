# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""Data models for modpkg documents, plans and results."""

from modpkg.models.package_models import (
    TransactionStatus,
    TransactionOperation,
    PlanOperation,
    PackageStatus,
    PackageMetadata,
    Release,
    ManifestMeta,
    RepositoryManifest,
    InstalledPackageRecord,
    RequestedState,
    InstallOptions,
    FileChanges,
    PackagePlan,
    InstallPlan,
    PackageProgress,
    TransactionRecord,
    OperationResult,
    decode_model,
    decode_yaml,
    decode_json,
)

__all__ = [
    "TransactionStatus",
    "TransactionOperation",
    "PlanOperation",
    "PackageStatus",
    "PackageMetadata",
    "Release",
    "ManifestMeta",
    "RepositoryManifest",
    "InstalledPackageRecord",
    "RequestedState",
    "InstallOptions",
    "FileChanges",
    "PackagePlan",
    "InstallPlan",
    "PackageProgress",
    "TransactionRecord",
    "OperationResult",
    "decode_model",
    "decode_yaml",
    "decode_json",
]
