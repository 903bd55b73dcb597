# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Dependency Resolver

Single responsibility: Choose one version per package so that every constraint holds

The search is a depth-first walk over immutable states. A state is the set
of decisions (name -> version) plus the names still pending. The
constraint on a name is never stored; it is derived from the root requests
and the dependencies of the packages decided in that state, so
backtracking is just dropping back to an earlier state.
"""

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Set, Tuple, Union

from modpkg.core.errors import ResolutionConflict
from modpkg.models import RepositoryManifest
from modpkg.services.repository import PackageIndex, merge_manifests
from modpkg.versioning import Version, VersionConstraint, parse_name

logger = logging.getLogger(__name__)

ROOT = "<root>"

Requested = Union[Mapping[str, VersionConstraint], Iterable[Tuple[str, VersionConstraint]]]


@dataclass(frozen=True)
class SearchState:
    """Decisions (sorted name/version pairs) and names still to decide"""
    decisions: Tuple[Tuple[str, Version], ...]
    pending: FrozenSet[str]

    def decided(self) -> Dict[str, Version]:
        return dict(self.decisions)


@dataclass
class _Frame:
    name: str
    state: SearchState
    candidates: Iterator[Version]


class DependencyResolver:
    """Resolves requested packages against a package index"""

    def __init__(self, index: PackageIndex, preferred: Optional[Mapping[str, Version]] = None):
        """
        Initialize dependency resolver.

        Args:
            index: Merged package index
            preferred: Versions to try first when they satisfy the constraints
                (usually the installed versions)
        """
        self.index = index
        self.preferred = dict(preferred or {})
        self._roots: Dict[str, VersionConstraint] = {}
        self._deps_cache: Dict[Tuple[str, Version], Dict[str, VersionConstraint]] = {}

    def resolve(self, requested: Requested) -> Dict[str, Version]:
        """
        Resolve requested packages and their dependency closure.

        Args:
            requested: Root requests as (name, constraint) pairs or a mapping

        Returns:
            Resolution: package name -> chosen version, sorted by name

        Raises:
            ParseError: If a requested name is invalid
            ResolutionConflict: The conflict found deepest in the search when
                no consistent set of versions exists
        """
        self._roots = self._root_constraints(requested)
        initial = self._settle({})
        logger.debug(f"Resolving {len(self._roots)} requested packages")

        visited: Set[SearchState] = set()
        stack: List[_Frame] = []
        conflict: Optional[ResolutionConflict] = None
        conflict_depth = -1
        state: Optional[SearchState] = initial

        while True:
            if state is not None and state not in visited:
                visited.add(state)
                if not state.pending:
                    resolution = dict(state.decisions)
                    logger.debug(f"Resolved {len(resolution)} packages after {len(visited)} states")
                    return resolution

                name = min(state.pending)
                requirements = self._requirements(name, state)
                candidates = self._candidates(name, requirements)
                if candidates:
                    stack.append(_Frame(name, state, iter(candidates)))
                elif len(stack) > conflict_depth:
                    conflict = ResolutionConflict(name, {who: str(c) for who, c in requirements})
                    conflict_depth = len(stack)
                    logger.debug(f"Conflict at depth {conflict_depth}: {conflict.message}")

            # Backtrack to the most recent choice with an untried candidate
            state = None
            while stack:
                frame = stack[-1]
                version = next(frame.candidates, None)
                if version is None:
                    stack.pop()
                    continue
                state = self._choose(frame.state, frame.name, version)
                break

            if state is None:
                if conflict is None:
                    name = min(initial.pending)
                    conflict = ResolutionConflict(name, {ROOT: str(self._roots.get(name, "*"))})
                raise conflict

    def _root_constraints(self, requested: Requested) -> Dict[str, VersionConstraint]:
        items = requested.items() if isinstance(requested, Mapping) else requested
        roots: Dict[str, VersionConstraint] = {}
        for name, constraint in items:
            name = parse_name(name)
            constraint = VersionConstraint.parse(constraint)
            roots[name] = roots[name].intersect(constraint) if name in roots else constraint
        return roots

    def _dependencies(self, name: str, version: Version) -> Dict[str, VersionConstraint]:
        key = (name, version)
        if key not in self._deps_cache:
            self._deps_cache[key] = self.index.release(name, version).dependency_constraints()
        return self._deps_cache[key]

    def _requirements(self, name: str, state: SearchState) -> List[Tuple[str, VersionConstraint]]:
        """Every (requirer, constraint) placed on name in this state"""
        requirements = []
        if name in self._roots:
            requirements.append((ROOT, self._roots[name]))
        for pkg, version in state.decisions:
            constraint = self._dependencies(pkg, version).get(name)
            if constraint is not None:
                requirements.append((f"{pkg}@{version}", constraint))
        return requirements

    def _candidates(self, name: str, requirements: List[Tuple[str, VersionConstraint]]) -> List[Version]:
        """Versions satisfying every requirement, newest first, preferred version first"""
        candidates = []
        for version in self.index.versions(name):
            if not all(c.satisfies(version) for _, c in requirements):
                continue
            own = self._dependencies(name, version).get(name)
            if own is not None and not own.satisfies(version):
                continue
            candidates.append(version)

        preferred = self.preferred.get(name)
        if preferred in candidates:
            candidates.remove(preferred)
            candidates.insert(0, preferred)
        return candidates

    def _choose(self, state: SearchState, name: str, version: Version) -> SearchState:
        decisions = state.decided()
        decisions[name] = version
        for dep, constraint in self._dependencies(name, version).items():
            if dep in decisions and not constraint.satisfies(decisions[dep]):
                # Re-open the dependency rather than failing here
                del decisions[dep]
        return self._settle(decisions)

    def _settle(self, decisions: Dict[str, Version]) -> SearchState:
        """Drop packages no longer reachable from the roots; queue reachable undecided ones"""
        reachable: Set[str] = set()
        queue = sorted(self._roots)
        while queue:
            name = queue.pop()
            if name in reachable:
                continue
            reachable.add(name)
            if name in decisions:
                queue.extend(sorted(self._dependencies(name, decisions[name])))

        kept = {n: v for n, v in decisions.items() if n in reachable}
        pending = reachable - set(kept)
        return SearchState(
            decisions=tuple(sorted(kept.items())),
            pending=frozenset(pending)
        )


def resolve(
    requested: Requested,
    manifests: Union[PackageIndex, List[RepositoryManifest]],
    preferred: Optional[Mapping[str, Version]] = None
) -> Dict[str, Version]:
    """
    Resolve requested packages against repository manifests.

    Args:
        requested: Root requests as (name, constraint) pairs or a mapping
        manifests: Manifests to merge, or an already merged PackageIndex
        preferred: Versions to try first when they still satisfy

    Returns:
        Resolution: package name -> chosen version, sorted by name

    Raises:
        ParseError: If a requested name is invalid
        SchemaError: If the manifests disagree about a release
        ResolutionConflict: If no consistent version set exists
    """
    index = manifests if isinstance(manifests, PackageIndex) else merge_manifests(manifests)
    return DependencyResolver(index, preferred).resolve(requested)
