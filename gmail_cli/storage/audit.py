"""
Tamper-evident audit trail with hash chaining.

Records account lifecycle events and policy decisions to a local JSONL file
(<config-dir>/audit.jsonl, owner-only). Each entry includes a SHA-256 hash of
(previous_hash + entry_data); editing any line breaks the chain.

Entries never contain message content, tokens or client secrets.
"""

import hashlib
import json
import logging
import os
from pathlib import Path

from .models import AuditEntry
from .secret_store import FILE_MODE, ensure_private_dir

logger = logging.getLogger(__name__)

GENESIS = "GENESIS"


class AuditLogger:
    """Append-only audit logger with hash chain integrity."""

    def __init__(self, log_file: str | os.PathLike) -> None:
        self._log_path = Path(log_file)
        self._previous_hash: str | None = None

    @property
    def path(self) -> Path:
        return self._log_path

    def _load_last_hash(self) -> str:
        """Hash of the last entry on disk, for chain continuity."""
        try:
            entries = self._read_entries()
        except (OSError, ValueError, TypeError, KeyError) as e:
            # verify_integrity() will report the broken chain
            logger.error("Cannot read audit log %s: %s", self._log_path, e)
            return GENESIS
        if entries:
            return entries[-1].entry_hash
        return GENESIS

    @staticmethod
    def _compute_hash(entry: AuditEntry, previous_hash: str) -> str:
        data = (
            f"{previous_hash}|{entry.id}|{entry.timestamp.isoformat()}|"
            f"{entry.action}|{entry.account}|{entry.details}|{entry.level}"
        )
        return hashlib.sha256(data.encode("utf-8")).hexdigest()

    def log(
        self,
        action: str,
        account: str = "",
        details: str = "",
        level: str = "INFO",
    ) -> AuditEntry:
        """
        Create an audit entry and append it to the JSONL file.

        Args:
            action: What happened (e.g. "account_added", "restricted_operation")
            account: Account email the action applies to, if any
            details: Human-readable description (NO secrets, NO message content)
            level: INFO, WARNING, or CRITICAL
        """
        if self._previous_hash is None:
            self._previous_hash = self._load_last_hash()

        entry = AuditEntry(action=action, account=account, details=details, level=level)
        entry.previous_hash = self._previous_hash
        entry.entry_hash = self._compute_hash(entry, self._previous_hash)
        self._previous_hash = entry.entry_hash

        self._append_to_file(entry)
        return entry

    def log_account_event(self, action: str, account: str, details: str = "") -> AuditEntry:
        return self.log(action=action, account=account, details=details)

    def log_policy_block(self, operation: str, account: str = "", details: str = "") -> AuditEntry:
        """Restricted operations and dangerous-label refusals. Always WARNING."""
        return self.log(
            action=f"policy_block:{operation}",
            account=account,
            details=details,
            level="WARNING",
        )

    def log_scope_refusal(self, mutation: str, account: str, details: str = "") -> AuditEntry:
        return self.log(
            action=f"scope_refusal:{mutation}",
            account=account,
            details=details,
            level="WARNING",
        )

    def get_recent_entries(self, count: int = 50) -> list[AuditEntry]:
        """Newest first."""
        return list(reversed(self._read_entries()))[:count]

    def verify_integrity(self) -> bool:
        """
        Walk the hash chain and verify no entries have been tampered with.

        Returns True if the chain is intact, False if tampering detected.
        """
        previous_hash = GENESIS
        try:
            entries = self._read_entries()
        except (ValueError, TypeError, KeyError):
            logger.critical("AUDIT LOG UNREADABLE: %s", self._log_path)
            return False

        for entry in entries:
            expected_hash = self._compute_hash(entry, previous_hash)
            if entry.previous_hash != previous_hash:
                logger.critical(
                    "AUDIT CHAIN BROKEN at entry %s: previous_hash mismatch", entry.id
                )
                return False
            if entry.entry_hash != expected_hash:
                logger.critical(
                    "AUDIT CHAIN BROKEN at entry %s: expected %s, got %s",
                    entry.id, expected_hash, entry.entry_hash,
                )
                return False
            previous_hash = entry.entry_hash

        return True

    def _read_entries(self) -> list[AuditEntry]:
        """Oldest first. Raises on a malformed line."""
        if not self._log_path.exists():
            return []
        entries = []
        with open(self._log_path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    entries.append(AuditEntry.from_dict(json.loads(line)))
        return entries

    def _append_to_file(self, entry: AuditEntry) -> None:
        """Append entry to the JSONL file, creating it owner-only."""
        try:
            ensure_private_dir(self._log_path.parent)
            fd = os.open(self._log_path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, FILE_MODE)
            with os.fdopen(fd, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry.to_dict()) + "\n")
        except OSError as e:
            logger.error("Failed to write audit log file: %s", e)


class NullAuditLogger(AuditLogger):
    """Audit sink used when auditing is disabled or the store is purely in-memory."""

    def __init__(self) -> None:
        super().__init__(os.devnull)

    def log(self, action: str, account: str = "", details: str = "", level: str = "INFO") -> AuditEntry:
        return AuditEntry(action=action, account=account, details=details, level=level)

    def _read_entries(self) -> list[AuditEntry]:
        return []
