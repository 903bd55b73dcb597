# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""Security helpers for package-relative paths inside a target directory."""

from pathlib import Path, PurePosixPath

from modpkg.core.errors import SchemaError

STORE_DIRNAME = "pkgdb"


def path_key(path: str) -> str:
    """Case-insensitive comparison key for a relative path."""
    return path.lower()


def normalize_relative_path(path: str, allow_store: bool = False) -> str:
    """
    Normalize a package-relative path to "a/b/c" form.

    Args:
        path: Relative path using "/" (or "\\") separators
        allow_store: Allow paths under the reserved pkgdb directory

    Returns:
        Normalized path

    Raises:
        SchemaError: For empty, absolute, traversing or reserved paths
    """
    if not isinstance(path, str) or not path.strip():
        raise SchemaError(f"Invalid empty path: {path!r}")

    raw = path.replace("\\", "/")
    if raw.startswith("/") or (len(raw) > 1 and raw[1] == ":"):
        raise SchemaError(f"Absolute paths are not allowed: {path}")

    parts = [p for p in PurePosixPath(raw).parts if p not in ("", ".")]
    if not parts:
        raise SchemaError(f"Invalid empty path: {path!r}")
    if ".." in parts:
        raise SchemaError(f"Parent directory references are not allowed: {path}")
    if not allow_store and path_key(parts[0]) == STORE_DIRNAME:
        raise SchemaError(f"The top-level '{STORE_DIRNAME}' directory is reserved: {path}")

    return "/".join(parts)


def safe_output_path(base_dir: Path, relative_path: str) -> Path:
    """Resolve a relative path under base_dir, refusing anything that escapes it."""
    target = (base_dir / relative_path).resolve()
    root = base_dir.resolve()
    if target == root:
        return target
    if root not in target.parents:
        raise SchemaError(f"Path traversal blocked for path: {relative_path}")
    return target
