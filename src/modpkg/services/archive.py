# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Package Archives

Single responsibility: Fetch archive bytes and extract them into a staging area

Both sides are consumed through narrow interfaces (Fetcher, Extractor) so
hosts can swap transports and codecs. Defaults: HttpFetcher (httpx, plus
file:// URLs) and ZipExtractor (zipfile).
"""

import asyncio
import io
import logging
import shutil
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol
from urllib.parse import unquote

import httpx
import yaml

from modpkg.core.errors import DuplicatePathConflict, InstallIOError, SchemaError
from modpkg.core.paths import normalize_relative_path, path_key, safe_output_path
from modpkg.models import PackageMetadata, decode_yaml

logger = logging.getLogger(__name__)

METADATA_FILENAME = "package.yml"
PAYLOAD_DIRNAME = "files"

# (bytes received so far, total bytes if known)
ByteProgress = Callable[[int, Optional[int]], None]


def archive_filename(name: str, version: str) -> str:
    """Conventional archive filename: {name}-{version}.zip"""
    return f"{name}-{version}.zip"


@dataclass
class StagedArchive:
    """An archive extracted into the holding area"""
    metadata: PackageMetadata
    root: Path          # directory holding the payload files
    files: List[str]    # payload paths relative to root (also metadata.files)

    def source_path(self, relative_path: str) -> Path:
        return self.root / relative_path


class Fetcher(Protocol):
    async def fetch(self, url: str, progress: Optional[ByteProgress] = None) -> bytes:
        ...


class Extractor(Protocol):
    def extract(self, data: bytes, destination: Path, source: str) -> StagedArchive:
        ...


# =============================================================================
# FETCHING
# =============================================================================

def local_path_from_url(url: str, base_dir: Optional[Path] = None) -> Path:
    """
    Convert a file:// URL to a path.

    Supports absolute paths (file:///absolute/path) and relative paths
    (file://./relative/path) resolved from base_dir.
    """
    local_path = unquote(url[len("file://"):])
    if local_path.startswith("./") or local_path.startswith("../"):
        return ((base_dir or Path.cwd()) / local_path).resolve()
    return Path(local_path)


class HttpFetcher:
    """Fetches http(s) URLs with httpx and file:// URLs from disk"""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        base_dir: Optional[Path] = None
    ):
        """
        Initialize fetcher.

        Args:
            client: Optional shared httpx client (created lazily otherwise)
            timeout: Request timeout in seconds
            base_dir: Base directory for relative file:// URLs
        """
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout
        self.base_dir = base_dir

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        return self._client

    async def fetch(self, url: str, progress: Optional[ByteProgress] = None) -> bytes:
        """
        Fetch the bytes behind a URL.

        Args:
            url: http(s) or file:// URL
            progress: Called with (received, total) as the body arrives

        Raises:
            httpx.HTTPError: On transport errors or non-2xx responses
            OSError: If a file:// URL cannot be read
        """
        if url.startswith("file://"):
            path = local_path_from_url(url, self.base_dir)
            data = await asyncio.to_thread(path.read_bytes)
            if progress is not None:
                progress(len(data), len(data))
            return data

        async with self._get_client().stream("GET", url) as response:
            response.raise_for_status()
            length = response.headers.get("Content-Length", "")
            total = int(length) if length.isdigit() else None
            chunks = []
            received = 0
            async for chunk in response.aiter_bytes():
                chunks.append(chunk)
                received += len(chunk)
                if progress is not None:
                    progress(received, total)
        return b"".join(chunks)

    async def close(self):
        """Close the underlying client if this fetcher created it"""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


# =============================================================================
# EXTRACTION
# =============================================================================

class ZipExtractor:
    """
    Extracts zip package archives.

    Archive rules:
    - a top-level package.yml is mandatory
    - member paths are unique case-insensitively
    - absolute paths, ".." segments and the top-level pkgdb directory are refused
    - when package.yml declares files, the member list must match it
    """

    def read(self, data: bytes, source: str) -> Dict[str, bytes]:
        """
        Read and validate archive members.

        Returns:
            Normalized member path -> content, including package.yml
        """
        try:
            archive = zipfile.ZipFile(io.BytesIO(data))
        except zipfile.BadZipFile as e:
            raise SchemaError(f"{source} is not a valid zip archive: {e}", source=source)

        members: Dict[str, bytes] = {}
        seen: Dict[str, str] = {}
        with archive:
            for info in archive.infolist():
                if info.is_dir():
                    continue
                try:
                    path = normalize_relative_path(info.filename)
                except SchemaError as e:
                    raise SchemaError(f"{source}: {e.message}", source=source)

                key = path_key(path)
                if key in seen:
                    raise DuplicatePathConflict(path, [seen[key], info.filename])
                seen[key] = info.filename

                try:
                    members[path] = archive.read(info)
                except (zipfile.BadZipFile, OSError) as e:
                    raise SchemaError(f"{source}: unable to read {path}: {e}", source=source)

        return members

    def extract(self, data: bytes, destination: Path, source: str) -> StagedArchive:
        """
        Extract an archive into destination.

        Args:
            data: Archive bytes
            destination: Empty staging directory for this package
            source: Archive name for error messages

        Returns:
            Staged archive with its decoded metadata

        Raises:
            SchemaError: If the archive breaks the archive rules
            DuplicatePathConflict: If two members share a path
            InstallIOError: If the staging area cannot be written
        """
        members = self.read(data, source)

        metadata_key = next((p for p in members if path_key(p) == METADATA_FILENAME), None)
        if metadata_key is None:
            raise SchemaError(f"{source} has no top-level {METADATA_FILENAME}", source=source)

        metadata_text = members.pop(metadata_key).decode("utf-8", errors="replace")
        metadata = decode_yaml(PackageMetadata, metadata_text, source=f"{source}:{METADATA_FILENAME}")

        payload = sorted(members)
        if metadata.files:
            declared = {path_key(p) for p in metadata.files}
            actual = {path_key(p) for p in payload}
            if declared != actual:
                missing = sorted(declared - actual)
                extra = sorted(actual - declared)
                raise SchemaError(
                    f"{source}: archive members do not match declared files "
                    f"(missing: {missing}, undeclared: {extra})",
                    source=source
                )
        metadata = metadata.model_copy(update={"files": payload})

        root = destination / PAYLOAD_DIRNAME
        try:
            if destination.exists():
                shutil.rmtree(destination)
            root.mkdir(parents=True)
            for path, content in members.items():
                target = safe_output_path(root, path)
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(content)
            (destination / METADATA_FILENAME).write_text(
                yaml.safe_dump(metadata.model_dump(), sort_keys=False),
                encoding="utf-8"
            )
        except OSError as e:
            raise InstallIOError(f"Unable to stage {source}: {e}", path=str(destination))

        logger.debug(f"Staged {metadata.key} ({len(payload)} files) in {destination}")
        return StagedArchive(metadata=metadata, root=root, files=payload)
