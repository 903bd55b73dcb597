# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Install Planner

Single responsibility: Diff installed state against a resolution into an ordered InstallPlan
"""

import fnmatch
import logging
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from modpkg.core.paths import path_key
from modpkg.models import (
    FileChanges,
    InstallPlan,
    InstalledPackageRecord,
    PackageMetadata,
    PackagePlan,
    PlanOperation,
)
from modpkg.versioning import Version

logger = logging.getLogger(__name__)

# name -> (metadata, payload files) of incoming packages
PackageSource = Mapping[str, Tuple[PackageMetadata, Iterable[str]]]


def matches_config(path: str, patterns: Iterable[str]) -> bool:
    """Case-insensitive glob match of a relative path against config patterns"""
    key = path_key(path)
    return any(fnmatch.fnmatchcase(key, path_key(pattern)) for pattern in patterns)


def diff_files(old_files: Iterable[str], new_files: Iterable[str]) -> Tuple[List[str], List[str], List[str]]:
    """
    Compare two file sets case-insensitively.

    Args:
        old_files: Paths owned by the installed version
        new_files: Paths owned by the incoming version

    Returns:
        (add, remove, replace); add uses the new spelling, remove and
        replace keep the spelling already on disk
    """
    old = {path_key(p): p for p in old_files}
    new = {path_key(p): p for p in new_files}
    add = sorted(new[k] for k in new.keys() - old.keys())
    remove = sorted(old[k] for k in old.keys() - new.keys())
    replace = sorted(old[k] for k in old.keys() & new.keys())
    return add, remove, replace


def diff_packages(
    current: Mapping[str, Version],
    target: Mapping[str, Version]
) -> Dict[str, Tuple[PlanOperation, Optional[Version], Optional[Version]]]:
    """
    Package-level diff.

    Returns:
        name -> (operation, old version, new version), sorted by name
    """
    changes = {}
    for name in sorted(set(current) | set(target)):
        old = current.get(name)
        new = target.get(name)
        if old is None:
            changes[name] = (PlanOperation.INSTALL, None, new)
        elif new is None:
            changes[name] = (PlanOperation.REMOVE, old, None)
        elif old != new:
            changes[name] = (PlanOperation.UPGRADE, old, new)
        else:
            changes[name] = (PlanOperation.NOOP, old, new)
    return changes


def dependency_order(names: Iterable[str], requires: Mapping[str, Iterable[str]]) -> List[str]:
    """
    Order names so that everything a name requires comes before it.

    Ties are broken by name; a cycle is broken at its smallest name.
    """
    remaining = set(names)
    order: List[str] = []
    while remaining:
        ready = sorted(
            n for n in remaining
            if not (set(requires.get(n, ())) & remaining) - {n}
        )
        if not ready:
            ready = [min(remaining)]
        order.extend(ready)
        remaining.difference_update(ready)
    return order


def plan(
    current: Mapping[str, InstalledPackageRecord],
    target: Mapping[str, Version],
    source: PackageSource,
    purge: bool = False
) -> InstallPlan:
    """
    Compute the plan that turns the installed state into the target resolution.

    Args:
        current: Installed-package records by name
        target: Resolution (name -> version)
        source: Metadata and payload files of incoming packages; only
            consulted for Install and Upgrade entries
        purge: Also remove files matching the current package's config patterns

    Returns:
        Plan with removals first (dependents before dependencies), then
        installs, upgrades and no-ops (dependencies before dependents, and
        a package releasing a path before the package adding it)
    """
    installed = {name: Version.parse(record.version) for name, record in current.items()}
    entries: Dict[str, PackagePlan] = {}
    incoming_deps: Dict[str, Set[str]] = {}

    for name, (operation, old, new) in diff_packages(installed, target).items():
        record = current.get(name)
        if operation == PlanOperation.INSTALL:
            metadata, files = source[name]
            changes = FileChanges(add=sorted(files))
            incoming_deps[name] = set(metadata.dependencies)
        elif operation == PlanOperation.REMOVE:
            changes = _removal_changes(record, record.files, purge)
        elif operation == PlanOperation.UPGRADE:
            metadata, files = source[name]
            add, remove, replace = diff_files(record.files, files)
            changes = _removal_changes(record, remove, purge)
            changes.add = add
            changes.replace = replace
            incoming_deps[name] = set(metadata.dependencies)
        else:
            changes = FileChanges()
            incoming_deps[name] = set(record.metadata.dependencies)

        entries[name] = PackagePlan(
            name=name,
            operation=operation,
            old_version=str(old) if old is not None else None,
            new_version=str(new) if new is not None else None,
            files=changes,
        )

    # Removals: a package goes after every removed package that depends on it
    removed = [n for n, e in entries.items() if e.operation == PlanOperation.REMOVE]
    dependents: Dict[str, Set[str]] = {n: set() for n in removed}
    for name in removed:
        for dep in current[name].metadata.dependencies:
            if dep in dependents and dep != name:
                dependents[dep].add(name)
    removal_order = dependency_order(removed, dependents)

    # Everything else: dependencies first
    kept = [n for n in entries if n not in dependents]
    requires = {n: incoming_deps.get(n, set()) & set(kept) for n in kept}

    # A package taking over a path goes after the package giving it up
    owner_of = {path_key(path): name for name, record in current.items() for path in record.files}
    after = {n: set(requires[n]) for n in kept}
    for name in kept:
        for path in entries[name].files.add:
            previous = owner_of.get(path_key(path))
            if previous in after and previous != name:
                after[name].add(previous)
    apply_order = dependency_order(kept, after)

    for name in removed:
        entries[name].dependencies = sorted(dependents[name])
    for name in kept:
        entries[name].dependencies = sorted(requires[name] - {name})

    result = InstallPlan(entries=[entries[n] for n in removal_order + apply_order])
    for entry in result.changes:
        logger.debug(f"Planned {entry.describe()}")
    return result


def _removal_changes(record: InstalledPackageRecord, paths: Iterable[str], purge: bool) -> FileChanges:
    """Split outgoing paths into remove and preserve by the installed config patterns"""
    remove, preserve = [], []
    for path in sorted(paths):
        if not purge and matches_config(path, record.metadata.config):
            preserve.append(path)
        else:
            remove.append(path)
    return FileChanges(remove=remove, preserve=preserve)
