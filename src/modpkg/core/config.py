# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
modpkg Configuration - one modpkg.yml per target directory.
YAML is king. Env vars ONLY for logging overrides.

Example modpkg.yml:

    repositories:
      - https://mods.example.com/repository.json
      - file://./local-repo/repository.json
    fetch:
      timeout: 30
      max_retries: 2
      max_concurrent: 4
    logging:
      level: INFO
      format: text
"""

import os
import yaml
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional
from urllib.parse import urlsplit

from modpkg.core.errors import InstallIOError, SchemaError

CONFIG_FILENAME = "modpkg.yml"

_URL_SCHEMES = ("http", "https", "file")


# =============================================================================
# CONFIGURATION DATACLASS
# =============================================================================

@dataclass(frozen=True)
class Config:
    """
    Immutable target-directory configuration.
    All values from YAML. No hidden state.
    """

    target: Path
    repositories: List[str] = field(default_factory=list)

    # -- Fetch policy (per URL, before falling back to the next URL) --
    fetch_timeout: float = 30.0
    fetch_max_retries: int = 2
    fetch_retry_delay: float = 0.5
    fetch_backoff_multiplier: float = 2.0
    fetch_max_retry_delay: float = 10.0
    max_concurrent_fetches: int = 4

    # -- Logging --
    log_level: str = "INFO"
    log_format: str = "text"

    @property
    def config_path(self) -> Path:
        return self.target / CONFIG_FILENAME

    @classmethod
    def filename(cls) -> str:
        return CONFIG_FILENAME


# =============================================================================
# LOADER
# =============================================================================

def _get(d: Any, *keys: str, default: Any = None) -> Any:
    """Safely navigate nested dicts."""
    for k in keys:
        if not isinstance(d, dict):
            return default
        d = d.get(k)
        if d is None:
            return default
    return d


def _validate_repository_url(url: Any, config_path: Path) -> str:
    if not isinstance(url, str) or not url.strip():
        raise SchemaError(f"Invalid repository URL: {url!r}", source=str(config_path))
    url = url.strip()
    scheme = urlsplit(url).scheme.lower()
    if scheme not in _URL_SCHEMES:
        raise SchemaError(
            f"Unsupported repository URL scheme {scheme or '(none)'!r} in {url}",
            source=str(config_path)
        )
    return url


def load_config(target: Path) -> Config:
    """
    Load configuration for a target directory.

    Args:
        target: Target directory containing modpkg.yml

    Returns:
        Loaded configuration

    Raises:
        InstallIOError: If modpkg.yml cannot be read
        SchemaError: If modpkg.yml is not valid
    """
    target = Path(target).resolve()
    config_path = target / CONFIG_FILENAME

    try:
        with open(config_path, encoding="utf-8") as f:
            y = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise InstallIOError(f"No {CONFIG_FILENAME} in {target}", path=str(config_path))
    except OSError as e:
        raise InstallIOError(f"Unable to read {config_path}: {e}", path=str(config_path))
    except yaml.YAMLError as e:
        raise SchemaError(f"Invalid YAML in {config_path}: {e}", source=str(config_path))

    if not isinstance(y, dict):
        raise SchemaError(f"{CONFIG_FILENAME} must contain a mapping", source=str(config_path))

    raw_repos = y.get("repositories") or []
    if not isinstance(raw_repos, list):
        raise SchemaError("'repositories' must be a list of URLs", source=str(config_path))

    repositories = []
    for entry in raw_repos:
        # Accept both "- url" and "- {url: ...}" forms
        if isinstance(entry, dict):
            entry = entry.get("url")
        repositories.append(_validate_repository_url(entry, config_path))

    try:
        return Config(
            target=target,
            repositories=repositories,

            # Fetch
            fetch_timeout=float(_get(y, "fetch", "timeout", default=30.0)),
            fetch_max_retries=int(_get(y, "fetch", "max_retries", default=2)),
            fetch_retry_delay=float(_get(y, "fetch", "retry_delay", default=0.5)),
            fetch_backoff_multiplier=float(_get(y, "fetch", "backoff_multiplier", default=2.0)),
            fetch_max_retry_delay=float(_get(y, "fetch", "max_retry_delay", default=10.0)),
            max_concurrent_fetches=max(1, int(_get(y, "fetch", "max_concurrent", default=4))),

            # Logging
            log_level=os.getenv("MODPKG_LOG_LEVEL") or _get(y, "logging", "level", default="INFO"),
            log_format=os.getenv("MODPKG_LOG_FORMAT") or _get(y, "logging", "format", default="text"),
        )
    except (TypeError, ValueError) as e:
        raise SchemaError(f"Invalid fetch settings: {e}", source=str(config_path))


def find_config(start: Optional[Path] = None) -> Config:
    """
    Find the target directory by walking up from start.

    Args:
        start: Directory to start from (defaults to the current directory)

    Returns:
        Loaded configuration of the nearest target directory

    Raises:
        InstallIOError: If no parent directory holds a modpkg.yml
    """
    path = Path(start or Path.cwd()).resolve()
    for candidate in (path, *path.parents):
        if (candidate / CONFIG_FILENAME).is_file():
            return load_config(candidate)

    raise InstallIOError(
        f"Unable to find '{CONFIG_FILENAME}' in {path} or its parents",
        path=str(path)
    )
