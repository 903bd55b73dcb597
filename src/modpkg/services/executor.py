# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Plan Executor

Single responsibility: Move every package of a plan through its state machine

    Pending -> Fetched -> Verified -> Staged -> Applied -> Recorded
                     (any step) -> Failed(kind)

A failed package halts itself and every package that depends on it;
packages already Recorded stay installed. Nothing in the target directory
is touched until every incoming package is staged and the pre-flight
ownership check has passed.
"""

import asyncio
import functools
import hashlib
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Set

from modpkg.core.errors import (
    DependencyFailed,
    DigestMismatch,
    DuplicatePathConflict,
    InstallIOError,
    ModifiedFileConflict,
    ModPkgError,
    SchemaError,
)
from modpkg.core.logging import log_event
from modpkg.core.paths import STORE_DIRNAME, path_key, safe_output_path
from modpkg.models import (
    InstallOptions,
    InstallPlan,
    InstalledPackageRecord,
    PackagePlan,
    PackageProgress,
    PackageStatus,
    PlanOperation,
    Release,
)
from modpkg.services import planner
from modpkg.services.archive import Extractor, Fetcher, StagedArchive, ZipExtractor, archive_filename
from modpkg.services.failover import FetchFailover
from modpkg.services.pkgdb import file_digest
from modpkg.services.repository import PackageIndex
from modpkg.services.session import Session
from modpkg.versioning import Version

logger = logging.getLogger(__name__)


def verify_digests(package: str, data: bytes, release: Release):
    """
    Check fetched bytes against every digest declared for the release.

    Raises:
        DigestMismatch: On the first algorithm whose digest differs
    """
    for algorithm, expected in sorted(release.digests.items()):
        actual = hashlib.new(algorithm, data).hexdigest()
        if actual != expected:
            raise DigestMismatch(package, algorithm, expected, actual)


@dataclass
class ProgressHooks:
    """
    Callbacks a host UI can use to follow an operation.

    on_status receives a package's progress on every state change; it may be
    called from a worker thread while packages are applied. on_download
    receives (package, bytes received, total bytes if known) while an
    archive is fetched.
    """
    on_status: Optional[Callable[[PackageProgress], None]] = None
    on_download: Optional[Callable[[str, int, Optional[int]], None]] = None


class Executor:
    """Fetches, verifies, stages and applies packages for one session"""

    def __init__(
        self,
        session: Session,
        index: PackageIndex,
        fetcher: Fetcher,
        extractor: Optional[Extractor] = None,
        options: Optional[InstallOptions] = None,
        failover: Optional[FetchFailover] = None,
        max_concurrent: int = 4,
        hooks: Optional[ProgressHooks] = None
    ):
        """
        Initialize executor.

        Args:
            session: Open session on the target directory
            index: Merged package index (URLs and digests of releases)
            fetcher: Archive fetcher
            extractor: Archive extractor (defaults to ZipExtractor)
            options: force / purge options
            failover: Retry policy runner for fetches
            max_concurrent: Maximum number of concurrent fetches
            hooks: Optional progress callbacks
        """
        self.session = session
        self.db = session.db
        self.target = session.target
        self.index = index
        self.fetcher = fetcher
        self.extractor = extractor or ZipExtractor()
        self.options = options or InstallOptions()
        self.failover = failover or FetchFailover()
        self.max_concurrent = max(1, max_concurrent)
        self.hooks = hooks or ProgressHooks()
        self.progress: Dict[str, PackageProgress] = {}

    # =========================================================================
    # STATE TRACKING
    # =========================================================================

    def _notify(self, name: str):
        if self.hooks.on_status is not None:
            self.hooks.on_status(self.progress[name])

    def _report_download(self, name: str, received: int, total: Optional[int]):
        if self.hooks.on_download is not None:
            self.hooks.on_download(name, received, total)

    def _track(self, name: str, operation: PlanOperation, version: Optional[str]):
        self.progress[name] = PackageProgress(name=name, operation=operation, version=version)
        self._notify(name)

    def _advance(self, name: str, status: PackageStatus):
        progress = self.progress[name]
        progress.status = status
        log_event(
            logger, f"{progress.operation.value} {name}@{progress.version}: {status.value}",
            level="DEBUG", package=name, status=status.value
        )
        self._notify(name)

    def _fail(self, name: str, error: ModPkgError):
        progress = self.progress[name]
        progress.status = PackageStatus.FAILED
        progress.error = error.to_dict()
        log_event(
            logger, f"{progress.operation.value} {name}@{progress.version} failed: {error.message}",
            level="ERROR", package=name, status="failed", error_kind=error.kind
        )
        self._notify(name)

    def failed(self) -> Set[str]:
        return {name for name, p in self.progress.items() if p.failed}

    def results(self) -> List[PackageProgress]:
        return [self.progress[name] for name in sorted(self.progress)]

    # =========================================================================
    # FETCH / VERIFY / STAGE
    # =========================================================================

    async def stage(self, packages: Mapping[str, Version]) -> Dict[str, StagedArchive]:
        """
        Fetch, verify and extract incoming packages concurrently.

        Args:
            packages: name -> version to stage

        Returns:
            Successfully staged archives by name; failures are recorded in progress
        """
        semaphore = asyncio.Semaphore(self.max_concurrent)

        async def stage_one(name: str, version: Version) -> Optional[StagedArchive]:
            try:
                async with semaphore:
                    return await self._stage_package(name, version)
            except ModPkgError as e:
                self._fail(name, e)
                return None

        names = sorted(packages)
        staged = await asyncio.gather(*(stage_one(n, packages[n]) for n in names))
        return {name: archive for name, archive in zip(names, staged) if archive is not None}

    async def _stage_package(self, name: str, version: Version) -> StagedArchive:
        key = f"{name}@{version}"
        release = self.index.release(name, version)

        fetch = functools.partial(
            self.fetcher.fetch, progress=functools.partial(self._report_download, name)
        )
        data = await self.failover.execute_with_failover(fetch, release.urls, key)
        self.progress[name].bytes_fetched = len(data)
        self._advance(name, PackageStatus.FETCHED)

        verify_digests(key, data, release)
        self._advance(name, PackageStatus.VERIFIED)

        destination = self.session.staging_area(f"{name}-{version}")
        staged = await asyncio.to_thread(
            self.extractor.extract, data, destination, archive_filename(name, str(version))
        )
        metadata = staged.metadata
        if metadata.name != name or metadata.parsed_version != version:
            raise SchemaError(f"Archive for {key} contains {metadata.key}", source=release.urls[0])
        if metadata.dependencies != release.dependencies:
            raise SchemaError(
                f"Archive for {key} declares different dependencies than its repository",
                source=release.urls[0]
            )
        self._advance(name, PackageStatus.STAGED)
        return staged

    # =========================================================================
    # PRE-FLIGHT
    # =========================================================================

    def preflight(
        self,
        plan: InstallPlan,
        current: Mapping[str, InstalledPackageRecord],
        staged: Mapping[str, StagedArchive]
    ):
        """
        Check that no path would be owned by two packages once the plan is applied.

        Raises:
            DuplicatePathConflict: On the first colliding path
        """
        owners: Dict[str, List[str]] = {}
        spelling: Dict[str, str] = {}
        for entry in plan.entries:
            if entry.operation == PlanOperation.REMOVE:
                continue
            if entry.operation == PlanOperation.NOOP:
                files = current[entry.name].files
            else:
                files = staged[entry.name].files
            for path in files:
                key = path_key(path)
                owners.setdefault(key, []).append(entry.name)
                spelling.setdefault(key, path)

        for key in sorted(owners):
            if len(owners[key]) > 1:
                raise DuplicatePathConflict(spelling[key], owners[key])

    # =========================================================================
    # APPLY / RECORD
    # =========================================================================

    def execute(
        self,
        plan: InstallPlan,
        current: Mapping[str, InstalledPackageRecord],
        staged: Mapping[str, StagedArchive]
    ) -> List[PackageProgress]:
        """
        Apply and record every changing entry in plan order.

        Args:
            plan: Ordered plan
            current: Installed-package records at plan time
            staged: Staged archives of incoming packages

        Returns:
            Progress of every tracked package
        """
        owned = {
            path_key(path): name
            for name, record in current.items()
            for path in record.files
        }

        for entry in plan.changes:
            if entry.name not in self.progress:
                self._track(entry.name, entry.operation, entry.new_version or entry.old_version)
            if self.progress[entry.name].failed:
                continue

            failed_dep = next((d for d in entry.dependencies if d in self.failed()), None)
            if failed_dep is not None:
                self._fail(entry.name, DependencyFailed(entry.name, failed_dep))
                continue

            try:
                self._apply(entry, current.get(entry.name), staged.get(entry.name), owned)
            except ModPkgError as e:
                self._fail(entry.name, e)

        return self.results()

    def _apply(
        self,
        entry: PackagePlan,
        record: Optional[InstalledPackageRecord],
        archive: Optional[StagedArchive],
        owned: Dict[str, str]
    ):
        changes = entry.files
        incoming: Dict[str, str] = {}
        if archive is not None:
            incoming = {path_key(p): p for p in archive.files}

        def source_of(path: str) -> Path:
            return archive.source_path(incoming[path_key(path)])

        # Live ownership check
        for path in changes.add:
            owner = owned.get(path_key(path))
            if owner is not None and owner != entry.name:
                raise DuplicatePathConflict(path, [owner, entry.name])

        if not self.options.force:
            self._check_unmodified(entry, record, archive, source_of)

        try:
            for path in changes.add + changes.replace:
                self._install_file(source_of(path), path)
            for path in changes.remove:
                self._remove_file(path)
        except OSError as e:
            raise InstallIOError(f"Unable to apply {entry.describe()}: {e}", path=getattr(e, "filename", None))
        self._advance(entry.name, PackageStatus.APPLIED)

        if record is not None:
            for path in record.files:
                owned.pop(path_key(path), None)

        if entry.operation == PlanOperation.REMOVE:
            self.db.remove(entry.name)
        else:
            files = sorted(changes.add + changes.replace)
            digests = {path: self._staged_digest(source_of(path)) for path in files}
            metadata = archive.metadata.model_copy(update={"files": files})
            self.db.put(InstalledPackageRecord(metadata=metadata, digests=digests))
            for path in files:
                owned[path_key(path)] = entry.name
        self._advance(entry.name, PackageStatus.RECORDED)
        logger.info(f"Completed {entry.describe()}")

    def _check_unmodified(self, entry, record, archive, source_of):
        """
        Refuse to touch files changed since install.

        A file that already holds the incoming content is accepted, and a
        file already gone is not an obstacle to removing it, so re-running
        an interrupted operation converges.

        Raises:
            ModifiedFileConflict: Listing every offending path
        """
        changes = entry.files
        stored = record.digests if record is not None else {}
        conflicts = []

        for path in changes.replace + changes.remove:
            current = self._current_digest(path)
            if current is None or current == stored.get(path):
                continue
            if path in changes.replace and current == self._staged_digest(source_of(path)):
                continue
            conflicts.append(path)

        for path in changes.add:
            current = self._current_digest(path)
            if current is not None and current != self._staged_digest(source_of(path)):
                conflicts.append(path)

        if conflicts:
            reason = "modified since install" if record is not None else "already present with different content"
            raise ModifiedFileConflict(entry.name, conflicts, reason=reason)

    def _staged_digest(self, source: Path) -> str:
        try:
            return file_digest(source)
        except OSError as e:
            raise InstallIOError(f"Unable to read staged file {source}: {e}", path=str(source))

    def _current_digest(self, path: str) -> Optional[str]:
        absolute = safe_output_path(self.target, path)
        try:
            return file_digest(absolute)
        except (FileNotFoundError, NotADirectoryError):
            return None
        except IsADirectoryError:
            return "<directory>"
        except OSError as e:
            raise InstallIOError(f"Unable to read {path}: {e}", path=str(absolute))

    def _install_file(self, source: Path, path: str):
        destination = safe_output_path(self.target, path)
        destination.parent.mkdir(parents=True, exist_ok=True)
        temp_file = destination.parent / f".{destination.name}.modpkg-tmp"
        try:
            shutil.copyfile(source, temp_file)
            os.replace(temp_file, destination)
        except OSError:
            temp_file.unlink(missing_ok=True)
            raise

    def _remove_file(self, path: str):
        destination = safe_output_path(self.target, path)
        destination.unlink(missing_ok=True)

        # Prune directories emptied by the removal
        parent = destination.parent
        store = self.target / STORE_DIRNAME
        while parent != self.target and parent != store and self.target in parent.parents:
            try:
                parent.rmdir()
            except OSError:
                break
            parent = parent.parent

    # =========================================================================
    # FULL RUN
    # =========================================================================

    def _halt_dependents(self, target: Mapping[str, Version], changing: Set[str]):
        """Fail every changing package whose dependency chain reaches a failed package"""
        halted = self.failed()
        progress = True
        while progress:
            progress = False
            for name in sorted(changing - halted):
                deps = sorted(self.index.release(name, target[name]).dependencies)
                failed_dep = next((d for d in deps if d in halted), None)
                if failed_dep is not None:
                    self._fail(name, DependencyFailed(name, failed_dep))
                    halted.add(name)
                    progress = True

    async def run(
        self,
        current: Mapping[str, InstalledPackageRecord],
        target: Mapping[str, Version]
    ) -> InstallPlan:
        """
        Stage, plan, check and apply the transition from current to target.

        Packages that fail to stage (and their dependents) keep their
        installed version; everything else proceeds.

        Returns:
            The plan that was executed

        Raises:
            DuplicatePathConflict: If the pre-flight check fails (nothing applied)
        """
        installed = {name: Version.parse(r.version) for name, r in current.items()}
        changes = planner.diff_packages(installed, target)
        for name, (operation, old, new) in changes.items():
            if operation != PlanOperation.NOOP:
                self._track(name, operation, str(new or old))

        incoming = {
            name: new for name, (operation, old, new) in changes.items()
            if operation in (PlanOperation.INSTALL, PlanOperation.UPGRADE)
        }
        staged = await self.stage(incoming)

        effective = dict(target)
        if self.failed():
            self._halt_dependents(target, set(incoming))
            for name in self.failed():
                if name in installed:
                    effective[name] = installed[name]
                else:
                    effective.pop(name, None)

        source = {name: (archive.metadata, archive.files) for name, archive in staged.items()}
        plan = planner.plan(current, effective, source, purge=self.options.purge)
        self.preflight(plan, current, staged)
        await asyncio.to_thread(self.execute, plan, current, staged)
        return plan
