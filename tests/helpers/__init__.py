"""Shared test helpers."""

from .memory_store import InMemoryCorpusStore
from .metric_delta import get_histogram_count, histogram_observes, metric_delta

__all__ = ["InMemoryCorpusStore", "get_histogram_count", "histogram_observes", "metric_delta"]
