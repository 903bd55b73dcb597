# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Custom exceptions for modpkg.

All exceptions inherit from ModPkgError for consistent error handling.
The Installer facade converts them into typed OperationResults with
to_dict(), so nothing crosses the library boundary as an uncaught fault.
"""

from typing import Dict, List, Optional, Any


class ModPkgError(Exception):
    """Base exception for all modpkg errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        """
        Initialize modpkg error.

        Args:
            message: Human-readable error message
            details: Additional error details
        """
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    @property
    def kind(self) -> str:
        """Error kind as reported in results and the transaction journal."""
        return self.__class__.__name__

    def to_dict(self) -> dict:
        """Convert error to dictionary for typed results."""
        return {
            "error": self.kind,
            "message": self.message,
            "details": self.details
        }


class ParseError(ModPkgError):
    """Malformed package name, version, constraint or specifier."""

    def __init__(self, message: str, text: Optional[str] = None, details: Optional[dict] = None):
        """
        Initialize parse error.

        Args:
            message: Parse error message
            text: The offending input
            details: Additional error details
        """
        details = dict(details or {})
        if text is not None:
            details.setdefault("input", text)
        super().__init__(message, details=details)
        self.text = text


class SchemaError(ModPkgError):
    """A decoded document does not match its schema or is inconsistent."""

    def __init__(self, message: str, source: Optional[str] = None, details: Optional[dict] = None):
        """
        Initialize schema error.

        Args:
            message: Schema error message
            source: Document the error was found in (path or URL)
            details: Additional error details
        """
        details = dict(details or {})
        if source is not None:
            details.setdefault("source", source)
        super().__init__(message, details=details)
        self.source = source


class ResolutionConflict(ModPkgError):
    """No version of a package satisfies every constraint placed on it."""

    def __init__(
        self,
        package: str,
        requirers: Dict[str, str],
        message: Optional[str] = None,
        details: Optional[dict] = None
    ):
        """
        Initialize resolution conflict.

        Args:
            package: Package that could not be resolved
            requirers: Requirer (e.g. "<root>" or "name@1.0.0") -> constraint text
            message: Optional override message
            details: Additional error details
        """
        if message is None:
            wanted = ", ".join(f"{who} requires {req}" for who, req in sorted(requirers.items()))
            message = f"No version of {package} satisfies all requirements ({wanted or 'no requirers'})"
        details = dict(details or {})
        details.setdefault("package", package)
        details.setdefault("requirers", dict(sorted(requirers.items())))
        super().__init__(message, details=details)
        self.package = package
        self.requirers = dict(requirers)


class FetchError(ModPkgError):
    """Every download URL for a release failed."""

    def __init__(
        self,
        package: str,
        urls: List[str],
        errors: Optional[List[str]] = None,
        attempts: Optional[Dict[str, Dict[str, Any]]] = None
    ):
        """
        Initialize fetch error.

        Args:
            package: Package identifier (name@version)
            urls: URLs that were attempted, in order
            errors: Error message per attempted URL
            attempts: Per-URL attempt summary (attempts, recent errors)
        """
        super().__init__(
            f"Unable to fetch {package}: all {len(urls)} URL(s) failed",
            details={
                "package": package,
                "urls": list(urls),
                "errors": list(errors or []),
                "attempts": dict(attempts or {})
            }
        )
        self.package = package
        self.urls = list(urls)


class DigestMismatch(ModPkgError):
    """Downloaded bytes do not match a digest declared in the manifest."""

    def __init__(self, package: str, algorithm: str, expected: str, actual: str):
        """
        Initialize digest mismatch.

        Args:
            package: Package identifier (name@version)
            algorithm: Digest algorithm
            expected: Digest declared by the manifest
            actual: Digest of the fetched bytes
        """
        super().__init__(
            f"{algorithm} digest mismatch for {package}",
            details={
                "package": package,
                "algorithm": algorithm,
                "expected": expected,
                "actual": actual
            }
        )
        self.package = package
        self.algorithm = algorithm


class ModifiedFileConflict(ModPkgError):
    """Tracked files were changed outside of modpkg."""

    def __init__(self, package: str, paths: List[str], reason: str = "modified since install"):
        """
        Initialize modified file conflict.

        Args:
            package: Package owning (or receiving) the files
            paths: Conflicting relative paths
            reason: Short description of the conflict
        """
        paths = sorted(paths)
        super().__init__(
            f"{len(paths)} file(s) of {package} {reason}: {', '.join(paths)}",
            details={"package": package, "paths": paths, "reason": reason}
        )
        self.package = package
        self.paths = paths


class DuplicatePathConflict(ModPkgError):
    """Two packages (or two archive members) claim the same path."""

    def __init__(self, path: str, owners: List[str]):
        """
        Initialize duplicate path conflict.

        Args:
            path: Path claimed more than once (case-insensitive)
            owners: Packages or archive members claiming it
        """
        owners = sorted(set(owners))
        super().__init__(
            f"Path {path} is claimed by {', '.join(owners)}",
            details={"path": path, "owners": owners}
        )
        self.path = path
        self.owners = owners


class InstallIOError(ModPkgError):
    """Filesystem access failed."""

    def __init__(self, message: str, path: Optional[str] = None, details: Optional[dict] = None):
        """
        Initialize IO error.

        Args:
            message: Error message
            path: Path involved
            details: Additional error details
        """
        details = dict(details or {})
        if path is not None:
            details.setdefault("path", path)
        super().__init__(message, details=details)
        self.path = path


class SessionLockedError(InstallIOError):
    """Another session holds the target directory lock."""

    def __init__(self, lock_path: str):
        """
        Initialize session locked error.

        Args:
            lock_path: Path of the held lock file
        """
        super().__init__(
            f"Another modpkg session is active (lock held on {lock_path})",
            path=lock_path
        )


class DependencyFailed(ModPkgError):
    """A package was not applied because a package it depends on failed."""

    def __init__(self, package: str, dependency: str):
        """
        Initialize dependency failure.

        Args:
            package: Package whose chain was halted
            dependency: Failed dependency
        """
        super().__init__(
            f"{package} was not applied because {dependency} failed",
            details={"package": package, "dependency": dependency}
        )
        self.package = package
        self.dependency = dependency


def error_to_dict(error: Any) -> Dict[str, Any]:
    """
    Convert any exception into the result dictionary shape.

    Args:
        error: Exception instance

    Returns:
        Error dictionary
    """
    if isinstance(error, ModPkgError):
        return error.to_dict()
    return {
        "error": type(error).__name__,
        "message": str(error),
        "details": {}
    }
