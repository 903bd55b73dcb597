# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Installer Service - Modular Composition

Composes focused modules into the install / uninstall / upgrade entry points.
Each module does one thing well:

- Session: lock + store for the target directory
- RepositoryLoader: manifests -> PackageIndex
- DependencyResolver: requested packages -> Resolution
- Executor: Resolution -> staged, planned, applied and recorded packages
- TransactionLogger: journal of every operation

Entry points never raise; every outcome is an OperationResult.
"""

import logging
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from modpkg.core.config import Config, load_config
from modpkg.core.errors import ModPkgError, ResolutionConflict, error_to_dict
from modpkg.core.logging import configure_logging, log_event
from modpkg.models import (
    InstallOptions,
    InstalledPackageRecord,
    OperationResult,
    TransactionOperation,
    TransactionRecord,
    TransactionStatus,
)
from modpkg.services.archive import Extractor, Fetcher, HttpFetcher, ZipExtractor
from modpkg.services.executor import Executor, ProgressHooks
from modpkg.services.failover import FetchFailover, FetchPolicy
from modpkg.services.repository import PackageIndex, RepositoryLoader
from modpkg.services.resolver import DependencyResolver
from modpkg.services.session import Session
from modpkg.versioning import Version, VersionConstraint, parse_name, parse_specifier

logger = logging.getLogger(__name__)

Requested = Dict[str, VersionConstraint]
Installed = Mapping[str, InstalledPackageRecord]
# (requested, installed) -> (new requested set, preferred versions)
RequestUpdate = Callable[[Requested, Installed], Tuple[Requested, Dict[str, Version]]]


def _installed_versions(current: Installed) -> Dict[str, Version]:
    return {name: Version.parse(record.version) for name, record in current.items()}


class Installer:
    """
    Package manager for one target directory.

    Usage:
        installer = Installer.from_target(Path("/games/skyrim"))
        result = await installer.install(["skyui^5.1", "ussep"])
    """

    def __init__(
        self,
        config: Config,
        fetcher: Optional[Fetcher] = None,
        extractor: Optional[Extractor] = None,
        hooks: Optional[ProgressHooks] = None
    ):
        """
        Initialize installer.

        Args:
            config: Target-directory configuration
            fetcher: Fetcher for manifests and archives (defaults to HttpFetcher)
            extractor: Archive extractor (defaults to ZipExtractor)
            hooks: Optional progress callbacks for a host UI
        """
        self.config = config
        self.fetcher = fetcher
        self.extractor = extractor or ZipExtractor()
        self.policy = FetchPolicy.from_config(config)
        self.hooks = hooks

    @classmethod
    def from_target(cls, target: Path, **kwargs) -> "Installer":
        """Create an installer from <target>/modpkg.yml, with logging configured from it"""
        config = load_config(target)
        configure_logging(config)
        return cls(config, **kwargs)

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    async def install(self, targets: List[str], options: Optional[InstallOptions] = None) -> OperationResult:
        """
        Install packages (and their dependencies).

        Installed packages keep their version whenever it still satisfies.

        Args:
            targets: Specifiers such as "skyui", "skyui^5.1" or "skyui>=5,<6"
            options: force / purge options

        Returns:
            Operation result
        """
        def update(requested: Requested, current: Installed):
            new_requested = dict(requested)
            for specifier in (parse_specifier(t) for t in targets):
                new_requested[specifier.name] = specifier.constraint
            return new_requested, _installed_versions(current)

        return await self._run(TransactionOperation.INSTALL, targets, options, update)

    async def uninstall(self, targets: List[str], purge: bool = False, force: bool = False) -> OperationResult:
        """
        Uninstall packages; dependencies nothing else needs are removed too.

        Args:
            targets: Package names
            purge: Also delete files matching the packages' config patterns
            force: Delete files even if they were modified since install

        Returns:
            Operation result (ResolutionConflict if another package still
            requires a target)
        """
        names = []

        def update(requested: Requested, current: Installed):
            names.extend(parse_name(t) for t in targets)
            for name in names:
                if name not in requested and name not in current:
                    logger.warning(f"{name} is not installed")
            new_requested = {n: c for n, c in requested.items() if n not in names}
            return new_requested, _installed_versions(current)

        def still_required(resolution: Dict[str, Version], index: PackageIndex):
            for name in names:
                if name not in resolution:
                    continue
                requirers = {
                    f"{pkg}@{version}": index.release(pkg, version).dependencies[name]
                    for pkg, version in resolution.items()
                    if name in index.release(pkg, version).dependencies and pkg != name
                }
                raise ResolutionConflict(
                    name,
                    requirers,
                    message=f"Cannot uninstall {name}: still required by {', '.join(sorted(requirers))}"
                )

        options = InstallOptions(purge=purge, force=force)
        return await self._run(TransactionOperation.UNINSTALL, targets, options, update, still_required)

    async def upgrade(self, targets: Optional[List[str]] = None, options: Optional[InstallOptions] = None) -> OperationResult:
        """
        Upgrade packages to the newest versions their constraints allow.

        Args:
            targets: Names (or specifiers, which also replace the requested
                constraint) to upgrade; empty upgrades everything
            options: force / purge options

        Returns:
            Operation result
        """
        targets = list(targets or [])

        def update(requested: Requested, current: Installed):
            new_requested = dict(requested)
            preferred = {} if not targets else _installed_versions(current)
            for specifier in (parse_specifier(t) for t in targets):
                if specifier.name not in current:
                    logger.warning(f"{specifier.name} is not installed")
                preferred.pop(specifier.name, None)
                if not specifier.constraint.is_any:
                    new_requested[specifier.name] = specifier.constraint
            return new_requested, preferred

        return await self._run(TransactionOperation.UPGRADE, targets, options, update)

    # =========================================================================
    # SHARED FLOW
    # =========================================================================

    async def load_index(self) -> PackageIndex:
        """Load and merge the configured repositories"""
        if self.fetcher is not None:
            return await RepositoryLoader(self.fetcher, FetchFailover(self.policy)).load_index(
                self.config.repositories
            )
        async with HttpFetcher(timeout=self.policy.timeout, base_dir=self.config.target) as fetcher:
            return await RepositoryLoader(fetcher, FetchFailover(self.policy)).load_index(
                self.config.repositories
            )

    async def _run(
        self,
        operation: TransactionOperation,
        targets: List[str],
        options: Optional[InstallOptions],
        update: RequestUpdate,
        check: Optional[Callable[[Dict[str, Version], PackageIndex], None]] = None
    ) -> OperationResult:
        options = options or InstallOptions()
        log_event(logger, f"Starting {operation.value} {' '.join(targets)}".rstrip(), operation=operation.value)

        session = Session(self.config.target)
        try:
            session.open()
        except ModPkgError as e:
            logger.error(f"{operation.value} failed: {e.message}")
            return OperationResult(operation=operation, success=False, error=e.to_dict())

        transaction: Optional[TransactionRecord] = None
        try:
            transaction = session.journal.create_transaction(operation, targets)
            transaction.status = TransactionStatus.IN_PROGRESS
            session.journal.log(transaction)

            current = session.db.load()
            previous = session.db.load_requested()
            requested, preferred = update(dict(previous), current)

            index = await self.load_index()
            resolution = DependencyResolver(index, preferred).resolve(requested)
            if check is not None:
                check(resolution, index)

            executor, plan = await self._execute(session, index, options, current, resolution)
            progress = executor.results()
            failures = [p for p in progress if p.failed]
            session.db.save_requested(
                self._persisted_requests(previous, requested, {p.name for p in failures})
            )

            result = OperationResult(
                operation=operation,
                success=not failures,
                transaction_id=transaction.id,
                resolution={name: str(version) for name, version in resolution.items()},
                plan=plan,
                packages=progress,
                error=failures[0].error if failures else None,
            )
            transaction.packages = {f"{p.name}@{p.version}": p.status.value for p in progress}
            transaction.finish(
                TransactionStatus.COMPLETED if result.success else TransactionStatus.FAILED,
                result.error
            )
            session.journal.log(transaction)

            if result.success:
                logger.info(f"{operation.value} completed: {len(plan.changes)} package change(s)")
            else:
                logger.error(f"{operation.value} finished with {len(failures)} failed package(s)")
            return result

        except Exception as e:
            if isinstance(e, ModPkgError):
                logger.error(f"{operation.value} failed: {e.message}")
            else:
                logger.exception(f"{operation.value} failed unexpectedly")
            error = error_to_dict(e)
            if transaction is not None:
                transaction.finish(TransactionStatus.FAILED, error)
                try:
                    session.journal.log(transaction)
                except ModPkgError as journal_error:
                    logger.error(f"Unable to journal failed {operation.value}: {journal_error.message}")
            return OperationResult(
                operation=operation,
                success=False,
                transaction_id=transaction.id if transaction else None,
                error=error,
            )
        finally:
            session.close()

    @staticmethod
    def _persisted_requests(previous: Requested, requested: Requested, failed: set) -> Requested:
        """Requested set to save: a failed package keeps its previous request (or none)"""
        persisted = {}
        for name in sorted(set(previous) | set(requested)):
            source = previous if name in failed else requested
            if name in source:
                persisted[name] = source[name]
        return persisted

    async def _execute(self, session, index, options, current, resolution):
        def make_executor(fetcher: Fetcher) -> Executor:
            return Executor(
                session,
                index,
                fetcher,
                extractor=self.extractor,
                options=options,
                failover=FetchFailover(self.policy),
                max_concurrent=self.config.max_concurrent_fetches,
                hooks=self.hooks,
            )

        if self.fetcher is not None:
            executor = make_executor(self.fetcher)
            return executor, await executor.run(current, resolution)
        async with HttpFetcher(timeout=self.policy.timeout, base_dir=self.config.target) as fetcher:
            executor = make_executor(fetcher)
            return executor, await executor.run(current, resolution)
