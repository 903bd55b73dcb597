# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Session

Single responsibility: Serialize all mutations of a target directory behind one lock
"""

import fcntl
import logging
import shutil
from pathlib import Path
from typing import Optional, TextIO

from modpkg.core.errors import InstallIOError, SessionLockedError
from modpkg.services.pkgdb import PackageDatabase
from modpkg.services.transactions import TransactionLogger

logger = logging.getLogger(__name__)


class SessionLock:
    """Advisory, non-blocking exclusive lock on pkgdb/lock"""

    def __init__(self, lock_file: Path):
        self.lock_file = lock_file
        self._handle: Optional[TextIO] = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self):
        """
        Take the lock or fail fast.

        Raises:
            SessionLockedError: If another session holds the lock
            InstallIOError: If the lock file cannot be opened
        """
        if self._handle is not None:
            return
        try:
            self.lock_file.parent.mkdir(parents=True, exist_ok=True)
            handle = open(self.lock_file, "a+")
        except OSError as e:
            raise InstallIOError(f"Unable to open lock file: {e}", path=str(self.lock_file))

        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            raise SessionLockedError(str(self.lock_file))
        except OSError as e:
            handle.close()
            raise InstallIOError(f"Unable to lock {self.lock_file}: {e}", path=str(self.lock_file))

        self._handle = handle
        logger.debug(f"Acquired session lock {self.lock_file}")

    def release(self):
        """Release the lock if held"""
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None
        logger.debug(f"Released session lock {self.lock_file}")


class Session:
    """
    Lock-guarded handle on a target directory.

    Usage:
        with Session(target) as session:
            records = session.db.load()
    """

    def __init__(self, target: Path):
        """
        Initialize session.

        Args:
            target: Target directory
        """
        self.target = Path(target).resolve()
        self.db = PackageDatabase(self.target)
        self.lock = SessionLock(self.db.lock_file)
        self.journal: Optional[TransactionLogger] = None

    def open(self) -> "Session":
        """
        Create the store if needed and take the session lock.

        Raises:
            SessionLockedError: If another session is active
            InstallIOError: If the store cannot be created
        """
        if not self.target.is_dir():
            raise InstallIOError(f"Target directory does not exist: {self.target}", path=str(self.target))
        self.db.initialize()
        self.lock.acquire()
        self.journal = TransactionLogger(self.db.transactions_file)
        return self

    def staging_area(self, key: str) -> Path:
        """Per-package directory in the holding area"""
        return self.db.staging_dir / key

    def clear_staging(self):
        """Empty the holding area"""
        if self.db.staging_dir.exists():
            shutil.rmtree(self.db.staging_dir, ignore_errors=True)
        self.db.staging_dir.mkdir(parents=True, exist_ok=True)

    def close(self):
        """Empty the holding area and release the lock"""
        try:
            if self.lock.held:
                self.clear_staging()
        finally:
            self.lock.release()

    def __enter__(self) -> "Session":
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
