"""
Row Canonicalization for Exact Deduplication.

Implements deterministic row normalization to ensure consistent hashing:
- Columns are visited in lexicographic order, never in caller order
- None, missing and empty-string values collapse to one canonical empty value
- Strings lose leading and trailing whitespace
- Numbers render as their shortest decimal text, so "30", 30 and 30.0 agree
- Columns present in the row but not declared are ignored

Two rows are equivalent iff every declared column normalizes to the same
text; the content hash is a digest of those texts joined with "|".
"""

from __future__ import annotations

import hashlib
import math
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from rowledger.protocols import CanonicalRow, Row, RowValue

CANONICAL_EMPTY = ""
FIELD_SEPARATOR = "|"


def normalize_value(value: Any) -> str:
    """
    Normalize a single cell to its canonical text form.

    Args:
        value: Raw cell value (str, int, float, None or anything printable)

    Returns:
        Canonical text used for hashing and comparison
    """
    if value is None:
        return CANONICAL_EMPTY
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isnan(value):
            return CANONICAL_EMPTY
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, str):
        return value.strip()
    return str(value).strip()


def clean_value(value: RowValue) -> RowValue:
    """Trim strings and map None to the canonical empty value, keeping numbers as numbers."""
    if value is None:
        return CANONICAL_EMPTY
    if isinstance(value, str):
        return value.strip()
    return value


class RowCanonicalizer:
    """
    Deterministic row canonicalizer.

    Pure apart from its processed-row counter; the same logical content always
    produces the same hash regardless of key order, surrounding whitespace or
    null-versus-empty representation.
    """

    def __init__(self, hash_algorithm: str = "sha256") -> None:
        # Fail at construction rather than on the first row
        hashlib.new(hash_algorithm)
        self.hash_algorithm = hash_algorithm
        self._processed_count = 0

    def normalized_values(self, row: Mapping[str, Any], columns: Iterable[str]) -> Tuple[str, ...]:
        """Canonical texts of ``columns`` in lexicographic column order."""
        return tuple(normalize_value(row.get(col)) for col in sorted(columns))

    def content_hash(self, row: Mapping[str, Any], columns: Iterable[str]) -> str:
        """Hex digest of the row's canonical texts."""
        data = FIELD_SEPARATOR.join(self.normalized_values(row, columns))
        digest = hashlib.new(self.hash_algorithm)
        digest.update(data.encode("utf-8"))
        return digest.hexdigest()

    def project(self, row: Mapping[str, Any], columns: Sequence[str]) -> Row:
        """Cleaned payload restricted to ``columns``, in the caller's column order."""
        return {col: clean_value(row.get(col)) for col in columns}

    def canonicalize(self, row: Mapping[str, Any], columns: Sequence[str], scope_id: str = "") -> CanonicalRow:
        """
        Canonicalize a row for hashing and storage.

        Args:
            row: Raw row mapping
            columns: Declared column set; unknown row keys are ignored
            scope_id: Identifier of the corpus the row belongs to

        Returns:
            CanonicalRow with content hash and cleaned payload
        """
        self._processed_count += 1
        return CanonicalRow(
            scope_id=scope_id,
            content_hash=self.content_hash(row, columns),
            payload=self.project(row, columns),
        )

    def canonicalize_many(
        self, rows: Iterable[Mapping[str, Any]], columns: Sequence[str], scope_id: str = ""
    ) -> List[CanonicalRow]:
        return [self.canonicalize(row, columns, scope_id) for row in rows]

    def rows_equivalent(self, left: Mapping[str, Any], right: Mapping[str, Any], columns: Iterable[str]) -> bool:
        """Field-by-field equivalence under the canonical normalization."""
        return all(normalize_value(left.get(col)) == normalize_value(right.get(col)) for col in columns)

    def composite_key(
        self,
        row: Mapping[str, Any],
        exclude: Iterable[str] = (),
        key_fields: Optional[Sequence[str]] = None,
    ) -> Tuple[Tuple[str, str], ...]:
        """
        Key identifying the same underlying event across log batches.

        Args:
            row: Log record
            exclude: Fields never part of the key (e.g. the batch timestamp)
            key_fields: Explicit key fields; defaults to every field of the row

        Returns:
            Tuple of (field, canonical text) pairs in lexicographic field order
        """
        excluded = set(exclude)
        fields = key_fields if key_fields is not None else list(row.keys())
        return tuple((name, normalize_value(row.get(name))) for name in sorted(set(fields) - excluded))

    def get_stats(self) -> Dict[str, Any]:
        """Get processing statistics."""
        return {
            "processed_count": self._processed_count,
            "hash_algorithm": self.hash_algorithm,
        }


def canonicalize_row(row: Mapping[str, Any], columns: Sequence[str], hash_algorithm: str = "sha256") -> CanonicalRow:
    """
    Convenience function for one-off row canonicalization.

    Args:
        row: Raw row mapping
        columns: Declared column set
        hash_algorithm: hashlib algorithm name

    Returns:
        CanonicalRow for the row
    """
    return RowCanonicalizer(hash_algorithm).canonicalize(row, columns)
