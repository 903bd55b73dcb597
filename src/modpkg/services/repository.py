# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Repository Index

Single responsibility: Load repository manifests and merge them into one package index
"""

import logging
from typing import Dict, Iterator, List, Optional, Tuple
from urllib.parse import urljoin, urlsplit

from modpkg.core.errors import FetchError, SchemaError
from modpkg.models import Release, RepositoryManifest, decode_json
from modpkg.services.archive import Fetcher
from modpkg.services.failover import RETRYABLE_ERRORS, FetchFailover
from modpkg.versioning import Version

logger = logging.getLogger(__name__)


class PackageIndex:
    """Merged view over all manifests: name -> version -> Release"""

    def __init__(self, releases: Optional[Dict[str, Dict[Version, Release]]] = None):
        self._releases: Dict[str, Dict[Version, Release]] = releases or {}

    def names(self) -> List[str]:
        return sorted(self._releases)

    def versions(self, name: str) -> List[Version]:
        """Available versions of a package, newest first"""
        return sorted(self._releases.get(name, {}), reverse=True)

    def get(self, name: str, version: Version) -> Optional[Release]:
        return self._releases.get(name, {}).get(version)

    def release(self, name: str, version: Version) -> Release:
        """
        Get a release that must exist.

        Raises:
            SchemaError: If the index has no such release
        """
        release = self.get(name, version)
        if release is None:
            raise SchemaError(f"No release {name}@{version} in any repository")
        return release

    def __contains__(self, name: str) -> bool:
        return name in self._releases

    def __iter__(self) -> Iterator[Tuple[str, Version, Release]]:
        for name in self.names():
            for version in self.versions(name):
                yield name, version, self._releases[name][version]

    def __len__(self) -> int:
        return sum(len(v) for v in self._releases.values())


def merge_manifests(manifests: List[RepositoryManifest]) -> PackageIndex:
    """
    Merge manifests into one index.

    The same (name, version) offered by several manifests must carry the
    same digests and dependencies; its URL lists are then concatenated in
    manifest order without duplicates.

    Args:
        manifests: Manifests in priority order

    Returns:
        Merged package index

    Raises:
        SchemaError: If two manifests disagree about a release
    """
    merged: Dict[str, Dict[Version, Release]] = {}
    origins: Dict[Tuple[str, Version], str] = {}

    for manifest in manifests:
        for name, versions in manifest.packages.items():
            for version_text, release in versions.items():
                version = Version.parse(version_text)
                existing = merged.setdefault(name, {}).get(version)
                if existing is None:
                    merged[name][version] = release.model_copy(deep=True)
                    origins[(name, version)] = manifest.meta.name
                    continue

                other = origins[(name, version)]
                if existing.digests != release.digests:
                    raise SchemaError(
                        f"{name}@{version} has different digests in repositories "
                        f"{other!r} and {manifest.meta.name!r}",
                        details={"package": f"{name}@{version}", "repositories": [other, manifest.meta.name]}
                    )
                if existing.dependencies != release.dependencies:
                    raise SchemaError(
                        f"{name}@{version} has different dependencies in repositories "
                        f"{other!r} and {manifest.meta.name!r}",
                        details={"package": f"{name}@{version}", "repositories": [other, manifest.meta.name]}
                    )
                for url in release.urls:
                    if url not in existing.urls:
                        existing.urls.append(url)

    return PackageIndex(merged)


def _absolute_urls(manifest: RepositoryManifest, manifest_url: str) -> RepositoryManifest:
    # Release URLs without a scheme are relative to the manifest itself
    for versions in manifest.packages.values():
        for release in versions.values():
            release.urls = [
                url if urlsplit(url).scheme else urljoin(manifest_url, url)
                for url in release.urls
            ]
    return manifest


class RepositoryLoader:
    """Loads repository manifests over http(s) and file:// URLs"""

    def __init__(self, fetcher: Fetcher, failover: Optional[FetchFailover] = None):
        """
        Initialize repository loader.

        Args:
            fetcher: Fetcher used for manifest documents
            failover: Retry policy runner (defaults to FetchFailover())
        """
        self.fetcher = fetcher
        self.failover = failover or FetchFailover()

    async def fetch_manifest(self, url: str) -> RepositoryManifest:
        """
        Fetch and decode one manifest, with retries.

        Raises:
            SchemaError: If the document is not a valid manifest
        """
        data = await self.failover.execute_with_retry(self.fetcher.fetch, url, "fetch_manifest")
        manifest = decode_json(RepositoryManifest, data.decode("utf-8", errors="replace"), source=url)
        return _absolute_urls(manifest, url)

    async def load(self, urls: List[str]) -> List[RepositoryManifest]:
        """
        Load every configured manifest.

        Unreachable repositories are skipped with a warning; invalid ones
        are errors.

        Args:
            urls: Manifest URLs in priority order

        Returns:
            Manifests that could be loaded, in order

        Raises:
            FetchError: If repositories are configured but none could be fetched
            SchemaError: If a fetched manifest is invalid
        """
        manifests = []
        errors = []
        for url in urls:
            try:
                manifest = await self.fetch_manifest(url)
            except RETRYABLE_ERRORS as e:
                logger.warning(f"Failed to fetch repository {url} after retries: {e}")
                errors.append(f"{url}: {e}")
                continue
            logger.info(f"Loaded repository {manifest.meta.name!r} from {url}")
            manifests.append(manifest)

        if urls and not manifests:
            raise FetchError("repository manifests", urls, errors, attempts=self.failover.get_summary(urls))
        return manifests

    async def load_index(self, urls: List[str]) -> PackageIndex:
        """Load and merge every configured manifest"""
        index = merge_manifests(await self.load(urls))
        logger.info(f"Package index holds {len(index)} releases of {len(index.names())} packages")
        return index
