"""
CSV loading for dataset and history uploads.
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import structlog

from rowledger.config.config import LimitsConfig
from rowledger.errors import ValidationError
from rowledger.protocols import Row

logger = structlog.get_logger(__name__)


@dataclass
class ParsedTable:
    """Column names and rows read from one CSV document."""

    columns: List[str]
    rows: List[Row] = field(default_factory=list)


def read_csv_text(text: str) -> ParsedTable:
    """
    Parse CSV text with a header line.

    Header names and values are stripped. Blank lines and rows whose every
    value is empty are dropped; short rows are padded with empty values.

    Raises:
        ValidationError: a line has more fields than the header
    """
    reader = csv.reader(io.StringIO(text))

    columns: Optional[List[str]] = None
    rows: List[Row] = []
    violations: List[str] = []
    for record in reader:
        if not record or all(not value.strip() for value in record):
            continue
        if columns is None:
            columns = [name.strip() for name in record]
            continue
        values = [value.strip() for value in record]
        if len(values) > len(columns):
            violations.append(f"line {reader.line_num} has {len(values)} fields, expected {len(columns)}")
            continue
        rows.append({name: values[i] if i < len(values) else "" for i, name in enumerate(columns)})

    if violations:
        raise ValidationError(violations)
    return ParsedTable(columns=columns or [], rows=rows)


def read_csv_file(path: Path, limits: Optional[LimitsConfig] = None) -> ParsedTable:
    """
    Read a CSV file from disk.

    Raises:
        ValidationError: the file is larger than the configured limit
    """
    limits = limits or LimitsConfig()
    path = Path(path)

    size = path.stat().st_size
    if size > limits.max_file_size_bytes:
        raise ValidationError([f"file size {size} exceeds the limit of {limits.max_file_size_bytes} bytes"])

    table = read_csv_text(path.read_text(encoding="utf-8-sig"))
    logger.debug("Read CSV file", path=str(path), columns=len(table.columns), rows=len(table.rows))
    return table
