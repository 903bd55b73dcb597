# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Test Fixtures and Utilities

Provides pytest fixtures for target directories, an in-memory fetcher,
zip archive builders and repository manifests.
"""

import hashlib
import io
import json
import os
import sys
import zipfile
from pathlib import Path
from typing import Dict, List, Optional

import httpx
import pytest
import yaml

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from modpkg.core.config import Config, CONFIG_FILENAME
from modpkg.models import RepositoryManifest, decode_model
from modpkg.services.repository import PackageIndex, merge_manifests
from modpkg.services.service import Installer

REPO_URL = "https://mods.example.com/repository.json"
MIRROR = "https://mirror.example.com"


# ============================================================================
# Archive / Manifest Builders
# ============================================================================

def build_archive(
    name: str,
    version: str,
    files: Dict[str, bytes],
    dependencies: Optional[Dict[str, str]] = None,
    config: Optional[List[str]] = None,
    declare_files: bool = False,
    extra_members: Optional[Dict[str, bytes]] = None
) -> bytes:
    """Build a deflate-compressed package archive in memory"""
    metadata = {
        "name": name,
        "version": version,
        "dependencies": dependencies or {},
        "config": config or [],
    }
    if declare_files:
        metadata["files"] = sorted(files)

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr("package.yml", yaml.safe_dump(metadata))
        for path, content in files.items():
            archive.writestr(path, content)
        for path, content in (extra_members or {}).items():
            archive.writestr(path, content)
    return buffer.getvalue()


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def make_index(graph: Dict[str, Dict[str, Dict[str, str]]]) -> PackageIndex:
    """
    Build an index from {name: {version: {dep: constraint}}}.

    Every release gets a placeholder URL and digest.
    """
    manifest = {
        "meta": {"name": "Test"},
        "packages": {
            name: {
                version: {
                    "dependencies": deps,
                    "urls": [f"https://mods.example.com/{name}-{version}.zip"],
                    "digests": {"sha256": "00" * 32},
                }
                for version, deps in versions.items()
            }
            for name, versions in graph.items()
        },
    }
    return merge_manifests([decode_model(RepositoryManifest, manifest)])


class FakeFetcher:
    """In-memory Fetcher: url -> bytes; unknown or failing URLs raise ConnectError"""

    def __init__(self):
        self.responses: Dict[str, bytes] = {}
        self.failing = set()
        self.calls: List[str] = []

    async def fetch(self, url: str, progress=None) -> bytes:
        self.calls.append(url)
        if url in self.failing or url not in self.responses:
            raise httpx.ConnectError(f"Unable to connect to {url}")
        data = self.responses[url]
        if progress is not None:
            progress(len(data), len(data))
        return data


class RepoBuilder:
    """Builds a repository manifest whose archives are served by a FakeFetcher"""

    def __init__(self, fetcher: FakeFetcher, url: str = REPO_URL, name: str = "Test Mods"):
        self.fetcher = fetcher
        self.url = url
        self.name = name
        self.packages: Dict[str, Dict[str, dict]] = {}

    def add(
        self,
        name: str,
        version: str,
        files: Dict[str, bytes],
        dependencies: Optional[Dict[str, str]] = None,
        config: Optional[List[str]] = None,
        urls: Optional[List[str]] = None,
        digests: Optional[Dict[str, str]] = None,
        archive: Optional[bytes] = None
    ) -> bytes:
        """Add a release and serve its archive; returns the archive bytes"""
        data = archive or build_archive(name, version, files, dependencies, config)
        default_url = f"https://mods.example.com/{name}-{version}.zip"
        self.fetcher.responses[default_url] = data
        self.packages.setdefault(name, {})[version] = {
            "dependencies": dependencies or {},
            "urls": urls or [default_url],
            "digests": digests or {"sha256": sha256(data)},
        }
        self.publish()
        return data

    def manifest(self) -> dict:
        return {"meta": {"name": self.name}, "packages": self.packages}

    def publish(self):
        self.fetcher.responses[self.url] = json.dumps(self.manifest()).encode("utf-8")


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def target(tmp_path):
    """Empty target directory with a modpkg.yml"""
    game = tmp_path / "game"
    game.mkdir()
    (game / CONFIG_FILENAME).write_text(yaml.safe_dump({"repositories": [REPO_URL]}))
    return game


@pytest.fixture
def config(target):
    """Config with fast retries"""
    return Config(
        target=target.resolve(),
        repositories=[REPO_URL],
        fetch_max_retries=1,
        fetch_retry_delay=0.0,
        fetch_timeout=5.0,
    )


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def repo(fetcher):
    return RepoBuilder(fetcher)


@pytest.fixture
def installer(config, fetcher):
    return Installer(config, fetcher=fetcher)
