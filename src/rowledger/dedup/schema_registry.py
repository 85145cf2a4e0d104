"""
Schema registry: batch limits and dataset column matching.

All checks here are cheap and run before any hashing or corpus access.
"""

from __future__ import annotations

from collections import Counter
from typing import List, Sequence, Tuple

import structlog

from rowledger.config.config import LimitsConfig
from rowledger.errors import SchemaMismatchError, ValidationError
from rowledger.protocols import CorpusStore, Dataset, Row

logger = structlog.get_logger(__name__)


def columns_signature(columns: Sequence[str]) -> Tuple[str, ...]:
    """Order-independent signature of a column set."""
    return tuple(sorted(columns))


def same_column_set(left: Sequence[str], right: Sequence[str]) -> bool:
    return set(left) == set(right)


class SchemaRegistry:
    """Validates incoming batches and matches them to an owner's datasets."""

    def __init__(self, store: CorpusStore, limits: LimitsConfig) -> None:
        self.store = store
        self.limits = limits

    def column_violations(self, columns: Sequence[str]) -> List[str]:
        violations: List[str] = []
        if len(columns) == 0:
            violations.append("no valid columns found")
            return violations
        if len(columns) > self.limits.max_columns:
            violations.append(f"column count {len(columns)} exceeds the limit of {self.limits.max_columns}")
        if any(not col or not col.strip() for col in columns):
            violations.append("blank column names found")
        repeated = sorted(name for name, count in Counter(columns).items() if count > 1)
        if repeated:
            violations.append(f"duplicate column names: {', '.join(repeated)}")
        return violations

    def validate_columns(self, columns: Sequence[str]) -> None:
        violations = self.column_violations(columns)
        if violations:
            raise ValidationError(violations)

    def validate_batch(self, columns: Sequence[str], rows: Sequence[Row]) -> None:
        """
        Reject a batch that breaks any column or row rule.

        Args:
            columns: Incoming column names
            rows: Incoming rows

        Raises:
            ValidationError: listing every violated rule
        """
        violations = self.column_violations(columns)
        if len(rows) == 0:
            violations.append("no valid rows found")
        elif len(rows) > self.limits.max_rows:
            violations.append(f"row count {len(rows)} exceeds the limit of {self.limits.max_rows}")

        if violations:
            logger.info("Batch rejected", violations=violations, columns=len(columns), rows=len(rows))
            raise ValidationError(violations)

    def validate_schema(self, dataset: Dataset, incoming_columns: Sequence[str]) -> None:
        """Raise SchemaMismatchError unless the column sets are equal, ignoring order."""
        if not same_column_set(dataset.columns, incoming_columns):
            raise SchemaMismatchError(dataset.columns, incoming_columns)

    async def find_datasets_matching_columns(self, owner_id: str, columns: Sequence[str]) -> List[Dataset]:
        """Datasets of ``owner_id`` whose column set equals ``columns``."""
        self.validate_columns(columns)
        return await self.store.find_datasets_by_columns(owner_id, columns)
