"""
Exception taxonomy for RowLedger.

Duplicates found during a check and already-processed log batches are
outcomes, not errors; they are returned as data.
"""

from __future__ import annotations

from typing import Iterable, List, Sequence


class RowLedgerError(Exception):
    """Base exception for all engine errors."""

    pass


class ValidationError(RowLedgerError, ValueError):
    """Raised when a batch breaks a column or row rule, before any hashing or I/O."""

    def __init__(self, violations: Iterable[str]):
        self.violations: List[str] = list(violations)
        super().__init__("; ".join(self.violations) or "validation failed")


class SchemaMismatchError(RowLedgerError):
    """Raised when incoming columns differ from a dataset's registered columns."""

    def __init__(self, expected: Sequence[str], received: Sequence[str]):
        self.expected = list(expected)
        self.received = list(received)
        self.missing = sorted(set(self.expected) - set(self.received))
        self.unexpected = sorted(set(self.received) - set(self.expected))
        parts = []
        if self.missing:
            parts.append(f"missing columns: {', '.join(self.missing)}")
        if self.unexpected:
            parts.append(f"unexpected columns: {', '.join(self.unexpected)}")
        super().__init__("column structure does not match the dataset (" + "; ".join(parts) + ")")


class DatasetNotFoundError(RowLedgerError, LookupError):
    """Raised when a dataset does not exist or belongs to another owner."""

    def __init__(self, dataset_id: int):
        self.dataset_id = dataset_id
        super().__init__(f"dataset {dataset_id} not found")


class UploadNotFoundError(RowLedgerError, LookupError):
    def __init__(self, upload_id: int):
        self.upload_id = upload_id
        super().__init__(f"upload {upload_id} not found")


class LogRecordNotFoundError(RowLedgerError, LookupError):
    def __init__(self, record_id: int):
        self.record_id = record_id
        super().__init__(f"log record {record_id} not found")


class DatasetNameConflictError(RowLedgerError):
    """Raised when an owner already has a dataset with the requested name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"a dataset named '{name}' already exists")


class StorageError(RowLedgerError):
    """
    Raised when a corpus read or write fails.

    The message is generic; the underlying cause is chained and logged.
    """

    def __init__(self, message: str = "storage operation failed"):
        super().__init__(message)


class DuplicateConflictError(StorageError):
    """Raised when the store's uniqueness constraint rejects an insert."""

    def __init__(self, message: str = "rows were stored concurrently by another upload"):
        super().__init__(message)


class LogParseError(RowLedgerError, ValueError):
    """Raised when a log file has no recognizable header."""

    pass
