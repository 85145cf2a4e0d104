"""
Row deduplication for RowLedger.

Two corpus models share one canonical form:
1. Datasets: content hash per row, checked against the stored hash set
2. Legacy history: field-by-field full scan of every upload with the same columns

Time-ordered log batches are reconciled separately with an overlap-threshold
heuristic, and the commit coordinator drives the check/confirm/persist protocol.
"""

from .canonical import RowCanonicalizer, canonicalize_row, normalize_value
from .coordinator import CommitCoordinator
from .detector import DuplicateDetector, FullScanDetector, HashIndexedDetector, detector_for
from .reconciler import IncrementalReconciler
from .schema_registry import SchemaRegistry, columns_signature, same_column_set

__all__ = [
    "RowCanonicalizer",
    "canonicalize_row",
    "normalize_value",
    "CommitCoordinator",
    "DuplicateDetector",
    "FullScanDetector",
    "HashIndexedDetector",
    "detector_for",
    "IncrementalReconciler",
    "SchemaRegistry",
    "columns_signature",
    "same_column_set",
]
