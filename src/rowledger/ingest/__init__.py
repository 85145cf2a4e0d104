"""Readers turning uploaded files into rows and log batches."""

from .aimtrainer import extract_batch_timestamp, load_log_batch, parse_aimtrainer_log
from .csv_reader import ParsedTable, read_csv_file, read_csv_text

__all__ = [
    "ParsedTable",
    "extract_batch_timestamp",
    "load_log_batch",
    "parse_aimtrainer_log",
    "read_csv_file",
    "read_csv_text",
]
