"""Source adapters for bulk invoice files (stream I/O only, no DB)."""

from einvoice_ingestion.adapters.base import SourceAdapter, SourceProbe, SourceRecord
from einvoice_ingestion.adapters.csv_adapter import CsvSourceAdapter
from einvoice_ingestion.adapters.json_adapter import JsonSourceAdapter
from einvoice_ingestion.adapters.xlsx_adapter import XlsxSourceAdapter

__all__ = [
    "CsvSourceAdapter",
    "JsonSourceAdapter",
    "SourceAdapter",
    "SourceProbe",
    "SourceRecord",
    "XlsxSourceAdapter",
]
