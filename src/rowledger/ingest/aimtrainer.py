"""
AimTrainer result log parsing.

An exported results file has a free-form preamble, then a comma-separated
table whose header line contains ``ChallengeName``. Every export repeats the
sessions already exported, which is why these files are reconciled as
time-ordered log batches rather than deduplicated row by row.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import List, Optional

import structlog

from rowledger.config.config import LogBatchConfig
from rowledger.errors import LogParseError
from rowledger.protocols import LogBatch, Row

logger = structlog.get_logger(__name__)

HEADER_MARKER = "ChallengeName"
MIN_FIELDS = 9

_LEADING_INT = re.compile(r"^[+-]?\d+")
_LEADING_FLOAT = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


def _leading_int(text: str) -> int:
    """Integer from the leading digits of ``text``, or 0."""
    match = _LEADING_INT.match(text.strip())
    return int(match.group(0)) if match else 0


def _parse_accuracy(text: str) -> float:
    value = text.replace("%", "")
    # "na", "nd" and "-" mark a session without a measurement
    if "na" in value or "nd" in value or "-" in value:
        return 0.0
    match = _LEADING_FLOAT.match(value.strip())
    return float(match.group(0)) if match else 0.0


def extract_batch_timestamp(file_name: str, pattern: Optional[str] = None) -> int:
    """Batch timestamp embedded in a log file name; 0 when the name has none."""
    match = re.search(pattern or LogBatchConfig().filename_pattern, file_name)
    return int(match.group(1)) if match else 0


def parse_line(line: str) -> Optional[Row]:
    """Parse one table line into a record, or None when it is not a usable session."""
    parts = [part.strip() for part in line.split(",")]
    if len(parts) < MIN_FIELDS:
        return None

    record: Row = {
        "challenge_name": parts[0],
        "shots_hit": _leading_int(parts[1]),
        "kills": _leading_int(parts[2]),
        "weapon": parts[3],
        "accuracy": _parse_accuracy(parts[4]),
        "damage": _leading_int(parts[5]),
        "critical_shots": _leading_int(parts[6]),
        "total_shots": _leading_int(parts[7]),
        "round_time": _leading_int(parts[8]),
    }
    if not record["challenge_name"] or not record["weapon"] or record["total_shots"] <= 0:
        return None
    return record


def parse_aimtrainer_log(text: str, source_name: str) -> List[Row]:
    """
    Extract session records from the contents of one results file.

    Args:
        text: File contents
        source_name: File name, used in errors and logs

    Returns:
        Valid records in file order

    Raises:
        LogParseError: no header line was found
    """
    lines = [line.strip() for line in text.splitlines()]

    header_index = next((i for i, line in enumerate(lines) if HEADER_MARKER in line), None)
    if header_index is None:
        raise LogParseError(f"no table header found in {source_name}")

    records: List[Row] = []
    rejected = 0
    for line in lines[header_index + 1 :]:
        if not line:
            continue
        record = parse_line(line)
        if record is None:
            rejected += 1
            continue
        records.append(record)

    logger.debug("Parsed log file", source_name=source_name, records=len(records), rejected=rejected)
    return records


def load_log_batch(path: Path, owner_id: str, config: Optional[LogBatchConfig] = None) -> LogBatch:
    """Read a results file from disk into a LogBatch."""
    config = config or LogBatchConfig()
    path = Path(path)
    text = path.read_text(encoding="utf-8", errors="replace")
    return LogBatch(
        owner_id=owner_id,
        batch_timestamp=extract_batch_timestamp(path.name, config.filename_pattern),
        source_name=path.name,
        records=parse_aimtrainer_log(text, path.name),
    )
