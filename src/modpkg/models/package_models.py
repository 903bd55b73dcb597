# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Package Data Models

Defines data structures for modpkg including package metadata, repository
manifests, installed-package records, plans, transactions and results.

Every document read from disk or the network passes through decode_model(),
the single place where pydantic ValidationErrors become SchemaErrors.
"""

import hashlib
import json
from typing import List, Dict, Optional, Any, Type, TypeVar
from datetime import datetime, UTC
from enum import Enum

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from modpkg.core.errors import ModPkgError, SchemaError
from modpkg.core.paths import normalize_relative_path
from modpkg.versioning import Version, VersionConstraint, parse_name

ModelT = TypeVar("ModelT", bound=BaseModel)


# =============================================================================
# FIELD HELPERS
# =============================================================================

def _canonical_name(value: Any) -> str:
    try:
        return parse_name(value)
    except ModPkgError as e:
        raise ValueError(e.message)


def _canonical_version(value: Any) -> str:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    try:
        return str(Version.parse(value))
    except ModPkgError as e:
        raise ValueError(e.message)


def _canonical_dependencies(value: Dict[Any, Any]) -> Dict[str, str]:
    deps: Dict[str, str] = {}
    for raw_name, raw_req in value.items():
        name = _canonical_name(raw_name)
        if name in deps:
            raise ValueError(f"duplicate dependency {name!r}")
        if isinstance(raw_req, (int, float)) and not isinstance(raw_req, bool):
            raw_req = str(raw_req)
        try:
            deps[name] = str(VersionConstraint.parse(raw_req))
        except ModPkgError as e:
            raise ValueError(e.message)
    return dict(sorted(deps.items()))


def _relative_paths(value: List[Any]) -> List[str]:
    paths = []
    for path in value:
        try:
            paths.append(normalize_relative_path(path))
        except ModPkgError as e:
            raise ValueError(e.message)
    return paths


# =============================================================================
# ENUMS
# =============================================================================

class TransactionStatus(str, Enum):
    """Transaction status"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class TransactionOperation(str, Enum):
    """Type of transaction operation"""
    INSTALL = "install"
    UNINSTALL = "uninstall"
    UPGRADE = "upgrade"


class PlanOperation(str, Enum):
    """Per-package plan entry"""
    INSTALL = "install"
    REMOVE = "remove"
    UPGRADE = "upgrade"
    NOOP = "noop"


class PackageStatus(str, Enum):
    """Execution state of one package in a plan"""
    PENDING = "pending"
    FETCHED = "fetched"
    VERIFIED = "verified"
    STAGED = "staged"
    APPLIED = "applied"
    RECORDED = "recorded"
    FAILED = "failed"


# =============================================================================
# PACKAGE DOCUMENTS
# =============================================================================

class PackageMetadata(BaseModel):
    """
    Package metadata (package.yml).

    Authored once, embedded in the package archive and republished in
    repository manifests. Names are stored in canonical lower-case form.
    """
    name: str
    version: str
    dependencies: Dict[str, str] = Field(default_factory=dict)
    config: List[str] = Field(default_factory=list)
    files: List[str] = Field(default_factory=list)

    @field_validator("name", mode="before")
    @classmethod
    def validate_name(cls, value: Any) -> str:
        return _canonical_name(value)

    @field_validator("version", mode="before")
    @classmethod
    def validate_version(cls, value: Any) -> str:
        return _canonical_version(value)

    @field_validator("dependencies", mode="before")
    @classmethod
    def validate_dependencies(cls, value: Any) -> Dict[str, str]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("dependencies must be a mapping of name to constraint")
        return _canonical_dependencies(value)

    @field_validator("config", mode="before")
    @classmethod
    def validate_config(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if not isinstance(value, list) or not all(isinstance(v, str) and v for v in value):
            raise ValueError("config must be a list of glob patterns")
        return value

    @field_validator("files", mode="before")
    @classmethod
    def validate_files(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError("files must be a list of relative paths")
        return _relative_paths(value)

    @property
    def parsed_version(self) -> Version:
        return Version.parse(self.version)

    @property
    def key(self) -> str:
        return f"{self.name}@{self.version}"

    def dependency_constraints(self) -> Dict[str, VersionConstraint]:
        return {name: VersionConstraint.parse(req) for name, req in self.dependencies.items()}


class Release(BaseModel):
    """One (name, version) entry of a repository manifest"""
    dependencies: Dict[str, str] = Field(default_factory=dict)
    urls: List[str]
    digests: Dict[str, str]

    @field_validator("dependencies", mode="before")
    @classmethod
    def validate_dependencies(cls, value: Any) -> Dict[str, str]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("dependencies must be a mapping of name to constraint")
        return _canonical_dependencies(value)

    @field_validator("urls")
    @classmethod
    def validate_urls(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("a release needs at least one download URL")
        return value

    @field_validator("digests")
    @classmethod
    def validate_digests(cls, value: Dict[str, str]) -> Dict[str, str]:
        if not value:
            raise ValueError("a release needs at least one digest")
        digests = {}
        for algorithm, digest in value.items():
            algorithm = algorithm.lower()
            if algorithm not in hashlib.algorithms_available or algorithm.startswith("shake"):
                raise ValueError(f"unknown digest algorithm {algorithm!r}")
            try:
                bytes.fromhex(digest)
            except ValueError:
                raise ValueError(f"{algorithm} digest is not hexadecimal")
            digests[algorithm] = digest.lower()
        return digests

    def dependency_constraints(self) -> Dict[str, VersionConstraint]:
        return {name: VersionConstraint.parse(req) for name, req in self.dependencies.items()}


class ManifestMeta(BaseModel):
    """Repository manifest header"""
    name: str


class RepositoryManifest(BaseModel):
    """
    Repository manifest (repository.json).

    Example:
        {"meta": {"name": "Community"},
         "packages": {"skymod": {"1.0.0": {"urls": [...], "digests": {"sha256": "..."}}}}}
    """
    meta: ManifestMeta
    packages: Dict[str, Dict[str, Release]] = Field(default_factory=dict)

    @field_validator("packages", mode="before")
    @classmethod
    def validate_packages(cls, value: Any) -> Dict[str, Dict[str, Any]]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("packages must be a mapping of name to versions")
        packages: Dict[str, Dict[str, Any]] = {}
        for raw_name, versions in value.items():
            name = _canonical_name(raw_name)
            if name in packages:
                raise ValueError(f"duplicate package name {name!r}")
            if not isinstance(versions, dict):
                raise ValueError(f"versions of {name!r} must be a mapping")
            releases: Dict[str, Any] = {}
            for raw_version, release in versions.items():
                version = _canonical_version(raw_version)
                if version in releases:
                    raise ValueError(f"duplicate version {version} of {name!r}")
                releases[version] = release
            packages[name] = releases
        return packages


class InstalledPackageRecord(BaseModel):
    """
    Record of an installed package.

    digests maps every owned path (payload files plus the record's own
    metadata file inside the store) to its SHA-256 hex digest.
    """
    metadata: PackageMetadata
    digests: Dict[str, str] = Field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def version(self) -> str:
        return self.metadata.version

    @property
    def files(self) -> List[str]:
        return self.metadata.files


class RequestedState(BaseModel):
    """Packages the user explicitly asked for (pkgdb/state.yml)"""
    requested: Dict[str, str] = Field(default_factory=dict)

    @field_validator("requested", mode="before")
    @classmethod
    def validate_requested(cls, value: Any) -> Dict[str, str]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("requested must be a mapping of name to constraint")
        return _canonical_dependencies(value)

    def constraints(self) -> Dict[str, VersionConstraint]:
        return {name: VersionConstraint.parse(req) for name, req in self.requested.items()}


class InstallOptions(BaseModel):
    """Options for package operations"""
    force: bool = False  # Overwrite or delete files modified since install
    purge: bool = False  # Also remove files matching config patterns


# =============================================================================
# PLANS & PROGRESS
# =============================================================================

class FileChanges(BaseModel):
    """File-level changes for one package, as relative paths"""
    add: List[str] = Field(default_factory=list)
    remove: List[str] = Field(default_factory=list)
    replace: List[str] = Field(default_factory=list)
    preserve: List[str] = Field(default_factory=list)


class PackagePlan(BaseModel):
    """One entry of an InstallPlan"""
    name: str
    operation: PlanOperation
    old_version: Optional[str] = None
    new_version: Optional[str] = None
    files: FileChanges = Field(default_factory=FileChanges)
    dependencies: List[str] = Field(default_factory=list)  # names this entry needs applied first

    @property
    def key(self) -> str:
        version = self.new_version or self.old_version
        return f"{self.name}@{version}"

    def describe(self) -> str:
        if self.operation == PlanOperation.UPGRADE:
            return f"upgrade {self.name} {self.old_version} -> {self.new_version}"
        return f"{self.operation.value} {self.key}"


class InstallPlan(BaseModel):
    """Ordered per-package plan: removals first, then installs and upgrades"""
    entries: List[PackagePlan] = Field(default_factory=list)

    @property
    def changes(self) -> List[PackagePlan]:
        return [e for e in self.entries if e.operation != PlanOperation.NOOP]

    @property
    def is_empty(self) -> bool:
        return not self.changes

    def get(self, name: str) -> Optional[PackagePlan]:
        for entry in self.entries:
            if entry.name == name:
                return entry
        return None


class PackageProgress(BaseModel):
    """Execution progress of one package"""
    name: str
    operation: PlanOperation
    version: Optional[str] = None
    status: PackageStatus = PackageStatus.PENDING
    bytes_fetched: Optional[int] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def failed(self) -> bool:
        return self.status == PackageStatus.FAILED


# =============================================================================
# TRANSACTIONS & RESULTS
# =============================================================================

class TransactionRecord(BaseModel):
    """Transaction record for operations"""
    id: str
    operation: TransactionOperation
    targets: List[str] = Field(default_factory=list)
    status: TransactionStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    error: Optional[Dict[str, Any]] = None
    packages: Dict[str, str] = Field(default_factory=dict)  # "name@version" -> final status

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            "id": self.id,
            "operation": self.operation.value,
            "targets": self.targets,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
            "packages": self.packages
        }

    def finish(self, status: TransactionStatus, error: Optional[Dict[str, Any]] = None):
        self.status = status
        self.error = error
        self.completed_at = datetime.now(UTC)


class OperationResult(BaseModel):
    """Typed outcome of install / uninstall / upgrade; never an exception"""
    operation: TransactionOperation
    success: bool
    transaction_id: Optional[str] = None
    resolution: Dict[str, str] = Field(default_factory=dict)
    plan: Optional[InstallPlan] = None
    packages: List[PackageProgress] = Field(default_factory=list)
    error: Optional[Dict[str, Any]] = None

    @property
    def error_kind(self) -> Optional[str]:
        return self.error["error"] if self.error else None


# =============================================================================
# DECODE BOUNDARY
# =============================================================================

def decode_model(model: Type[ModelT], data: Any, source: Optional[str] = None) -> ModelT:
    """
    Validate decoded data against a model.

    Args:
        model: pydantic model class
        data: Decoded YAML/JSON data
        source: Document path or URL (for error messages)

    Returns:
        Model instance

    Raises:
        SchemaError: If the data does not match the model
    """
    try:
        return model.model_validate(data)
    except ValidationError as e:
        problems = [
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        ]
        raise SchemaError(
            f"Invalid {model.__name__} in {source or 'document'}: {'; '.join(problems)}",
            source=source,
            details={"errors": problems}
        )


def decode_yaml(model: Type[ModelT], text: str, source: Optional[str] = None) -> ModelT:
    """Parse YAML text and validate it against a model."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise SchemaError(f"Invalid YAML in {source or 'document'}: {e}", source=source)
    return decode_model(model, data, source)


def decode_json(model: Type[ModelT], text: str, source: Optional[str] = None) -> ModelT:
    """Parse JSON text and validate it against a model."""
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise SchemaError(f"Invalid JSON in {source or 'document'}: {e}", source=source)
    return decode_model(model, data, source)
