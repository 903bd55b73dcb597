# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Installed-State Store (pkgdb)

Single responsibility: Persist installed-package records, their file digests and the requested set

Layout under <target>/pkgdb/:

    packages/<name>/package.yml    metadata snapshot with the explicit file list
    packages/<name>/digests.json   owned relative path -> sha256 hex digest
    state.yml                      requested packages (name -> constraint)
    transactions.jsonl             operation journal
    lock                           session lock
    staging/                       extracted archives during a session

A record's digest map covers its payload files plus its own package.yml;
digests.json never lists itself.
"""

import hashlib
import json
import logging
import os
import shutil
from pathlib import Path
from typing import Dict, Set

import yaml

from modpkg.core.errors import InstallIOError, SchemaError
from modpkg.core.paths import STORE_DIRNAME
from modpkg.models import (
    InstalledPackageRecord,
    PackageMetadata,
    RequestedState,
    decode_model,
    decode_yaml,
)
from modpkg.versioning import VersionConstraint

logger = logging.getLogger(__name__)

METADATA_FILENAME = "package.yml"
DIGESTS_FILENAME = "digests.json"
STATE_FILENAME = "state.yml"
TRANSACTIONS_FILENAME = "transactions.jsonl"
LOCK_FILENAME = "lock"
STAGING_DIRNAME = "staging"

_CHUNK_SIZE = 64 * 1024


# =============================================================================
# FILE HELPERS
# =============================================================================

def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def file_digest(path: Path, algorithm: str = "sha256") -> str:
    """Hex digest of a file's content, read in chunks"""
    digest = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def write_atomic(path: Path, data: bytes):
    """
    Write a file atomically: temp file in the same directory, fsync, rename.

    Raises:
        OSError: If the write fails (the temp file is removed)
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_file = path.parent / f".{path.name}.tmp"
    try:
        with open(temp_file, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_file, path)
    except OSError:
        temp_file.unlink(missing_ok=True)
        raise


# =============================================================================
# STORE
# =============================================================================

class PackageDatabase:
    """Durable record of installed packages in <target>/pkgdb"""

    def __init__(self, target: Path):
        """
        Initialize package database.

        Args:
            target: Target directory managed by modpkg
        """
        self.target = Path(target)
        self.root = self.target / STORE_DIRNAME
        self.packages_dir = self.root / "packages"
        self.state_file = self.root / STATE_FILENAME
        self.transactions_file = self.root / TRANSACTIONS_FILENAME
        self.lock_file = self.root / LOCK_FILENAME
        self.staging_dir = self.root / STAGING_DIRNAME

    def initialize(self):
        """Create the store directories"""
        try:
            self.packages_dir.mkdir(parents=True, exist_ok=True)
            self.staging_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise InstallIOError(f"Unable to create package database: {e}", path=str(self.root))

    @staticmethod
    def metadata_path(name: str) -> str:
        """Target-relative path of a record's own metadata file"""
        return f"{STORE_DIRNAME}/packages/{name}/{METADATA_FILENAME}"

    def _package_dir(self, name: str) -> Path:
        return self.packages_dir / name

    # -- Records --

    def load(self) -> Dict[str, InstalledPackageRecord]:
        """
        Load every installed-package record.

        Returns:
            Records keyed by package name, sorted by name

        Raises:
            SchemaError: If a record is corrupt or inconsistent
            InstallIOError: If a record cannot be read
        """
        if not self.packages_dir.exists():
            return {}

        records = {}
        try:
            entries = sorted(p for p in self.packages_dir.iterdir() if p.is_dir())
        except OSError as e:
            raise InstallIOError(f"Unable to list installed packages: {e}", path=str(self.packages_dir))

        for package_dir in entries:
            record = self._load_record(package_dir)
            records[record.name] = record
        return records

    def _load_record(self, package_dir: Path) -> InstalledPackageRecord:
        metadata_file = package_dir / METADATA_FILENAME
        digests_file = package_dir / DIGESTS_FILENAME
        try:
            metadata_text = metadata_file.read_text(encoding="utf-8")
            digests_text = digests_file.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise SchemaError(f"Incomplete package record in {package_dir}: {e}", source=str(package_dir))
        except OSError as e:
            raise InstallIOError(f"Unable to read package record: {e}", path=str(package_dir))

        metadata = decode_yaml(PackageMetadata, metadata_text, source=str(metadata_file))
        if metadata.name != package_dir.name:
            raise SchemaError(
                f"Record directory {package_dir.name!r} holds metadata for {metadata.name!r}",
                source=str(metadata_file)
            )

        try:
            raw_digests = json.loads(digests_text)
        except json.JSONDecodeError as e:
            raise SchemaError(f"Invalid JSON in {digests_file}: {e}", source=str(digests_file))
        record = decode_model(
            InstalledPackageRecord,
            {"metadata": metadata, "digests": raw_digests},
            source=str(digests_file)
        )
        self._check_digest_keys(record)
        return record

    def _check_digest_keys(self, record: InstalledPackageRecord):
        owned = set(record.files) | {self.metadata_path(record.name)}
        keys = set(record.digests)
        if keys != owned:
            raise SchemaError(
                f"Digest map of {record.name} does not match its files "
                f"(missing: {sorted(owned - keys)}, unknown: {sorted(keys - owned)})",
                source=str(self._package_dir(record.name) / DIGESTS_FILENAME)
            )

    def put(self, record: InstalledPackageRecord) -> InstalledPackageRecord:
        """
        Write (or replace) a record.

        Args:
            record: Record whose digests cover its payload files; the digest
                of the metadata file itself is added here

        Returns:
            The record as stored

        Raises:
            SchemaError: If digests do not cover exactly the payload files
            InstallIOError: If the record cannot be written
        """
        package_dir = self._package_dir(record.name)
        metadata_bytes = yaml.safe_dump(record.metadata.model_dump(), sort_keys=False).encode("utf-8")
        digests = {p: d for p, d in record.digests.items() if p != self.metadata_path(record.name)}
        digests[self.metadata_path(record.name)] = sha256_bytes(metadata_bytes)
        stored = record.model_copy(update={"digests": dict(sorted(digests.items()))})
        self._check_digest_keys(stored)

        try:
            write_atomic(package_dir / METADATA_FILENAME, metadata_bytes)
            write_atomic(
                package_dir / DIGESTS_FILENAME,
                json.dumps(stored.digests, indent=2, sort_keys=True).encode("utf-8")
            )
        except OSError as e:
            raise InstallIOError(f"Unable to write record for {record.name}: {e}", path=str(package_dir))

        logger.debug(f"Recorded {record.metadata.key} ({len(stored.digests)} owned paths)")
        return stored

    def remove(self, name: str):
        """
        Delete a record.

        Raises:
            InstallIOError: If the record cannot be deleted
        """
        package_dir = self._package_dir(name)
        try:
            (package_dir / DIGESTS_FILENAME).unlink(missing_ok=True)
            (package_dir / METADATA_FILENAME).unlink(missing_ok=True)
            if package_dir.exists():
                shutil.rmtree(package_dir)
        except OSError as e:
            raise InstallIOError(f"Unable to delete record for {name}: {e}", path=str(package_dir))
        logger.debug(f"Removed record for {name}")

    def verify_unmodified(self, record: InstalledPackageRecord) -> Set[str]:
        """
        Recompute the digest of every owned path.

        Args:
            record: Installed-package record

        Returns:
            Paths whose content differs from the stored digest, or that are missing
        """
        modified = set()
        for path, expected in record.digests.items():
            absolute = self.target / path
            try:
                if file_digest(absolute) != expected:
                    modified.add(path)
            except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
                modified.add(path)
            except OSError as e:
                raise InstallIOError(f"Unable to read {path}: {e}", path=str(absolute))
        return modified

    # -- Requested packages --

    def load_requested(self) -> Dict[str, VersionConstraint]:
        """
        Load the packages the user asked for.

        Raises:
            SchemaError: If state.yml is invalid
            InstallIOError: If state.yml cannot be read
        """
        try:
            text = self.state_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise InstallIOError(f"Unable to read {self.state_file}: {e}", path=str(self.state_file))
        state = decode_yaml(RequestedState, text or "{}", source=str(self.state_file))
        return state.constraints()

    def save_requested(self, requested: Dict[str, VersionConstraint]):
        """
        Persist the packages the user asked for.

        Raises:
            InstallIOError: If state.yml cannot be written
        """
        state = RequestedState(requested={n: str(c) for n, c in sorted(requested.items())})
        try:
            write_atomic(
                self.state_file,
                yaml.safe_dump(state.model_dump(), sort_keys=False).encode("utf-8")
            )
        except OSError as e:
            raise InstallIOError(f"Unable to write {self.state_file}: {e}", path=str(self.state_file))
