"""
RowLedger - deduplicating import engine for tabular uploads and log batches.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .config import Config
from .container import DependencyContainer
from .engine import ImportEngine

__all__ = ["__version__", "Config", "DependencyContainer", "ImportEngine"]
