# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Transaction Logger

Single responsibility: Log and retrieve transactions (append-only JSONL)
"""

import json
import logging
import uuid
from pathlib import Path
from typing import List, Dict, Any, Optional
from datetime import datetime, UTC

from modpkg.core.errors import InstallIOError
from modpkg.models import (
    TransactionRecord,
    TransactionOperation,
    TransactionStatus
)

logger = logging.getLogger(__name__)


class TransactionLogger:
    """Manages transaction logging to append-only JSONL file"""

    def __init__(self, log_file: Path):
        """
        Initialize transaction logger.

        Args:
            log_file: Path to pkgdb/transactions.jsonl
        """
        self.log_file = log_file

        # Ensure log file exists
        if not self.log_file.exists():
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            self.log_file.touch()

    def create_transaction(
        self,
        operation: TransactionOperation,
        targets: List[str]
    ) -> TransactionRecord:
        """
        Create a new transaction record.

        Args:
            operation: Type of operation
            targets: Specifiers or names the operation was asked for

        Returns:
            New transaction record
        """
        return TransactionRecord(
            id=f"txn-{uuid.uuid4().hex[:12]}",
            operation=operation,
            targets=list(targets),
            status=TransactionStatus.PENDING,
            started_at=datetime.now(UTC)
        )

    def log(self, transaction: TransactionRecord):
        """
        Append transaction to JSONL log file.

        Args:
            transaction: Transaction record to log

        Raises:
            InstallIOError: If the journal cannot be written
        """
        log_line = json.dumps(transaction.to_dict())
        try:
            with open(self.log_file, "a") as f:
                f.write(log_line + "\n")
        except OSError as e:
            raise InstallIOError(f"Unable to write transaction log: {e}", path=str(self.log_file))

    def list_transactions(self, limit: int = 50) -> List[Dict[str, Any]]:
        """
        List recent transactions from log.

        Each transaction id appears once, in its latest logged state.

        Args:
            limit: Maximum number of transactions to return

        Returns:
            List of transaction records (most recent first)
        """
        if not self.log_file.exists():
            return []

        latest: Dict[str, Dict[str, Any]] = {}
        with open(self.log_file, "r") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    txn = json.loads(line)
                except json.JSONDecodeError as e:
                    logger.error(f"Failed to parse transaction log line: {e}")
                    continue
                latest.pop(txn.get("id"), None)
                latest[txn.get("id")] = txn

        # Return most recent first
        return list(reversed(list(latest.values())[-limit:]))

    def get_transaction(self, transaction_id: str) -> Optional[Dict[str, Any]]:
        """
        Get a specific transaction by ID.

        Args:
            transaction_id: Transaction ID

        Returns:
            Latest logged state of the transaction or None if not found
        """
        if not self.log_file.exists():
            return None

        found = None
        with open(self.log_file, "r") as f:
            for line in f:
                try:
                    txn = json.loads(line.strip())
                    if txn.get("id") == transaction_id:
                        found = txn
                except json.JSONDecodeError:
                    continue

        return found
