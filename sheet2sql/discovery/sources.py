"""
Source selection by file extension.

Usage:
    from sheet2sql.discovery.sources import load_rows

    rows = load_rows("people.xlsx", sheet="Import")   # list[Row]
"""

from __future__ import annotations

import logging
from pathlib import Path

from sheet2sql.configs.exceptions import SourceError
from sheet2sql.discovery.base import AbstractSource
from sheet2sql.discovery.csv_reader import CSVReader
from sheet2sql.discovery.xlsx_reader import XLSXReader
from sheet2sql.models.models import Row

logger = logging.getLogger(__name__)

_EXCEL_SUFFIXES = (".xlsx", ".xlsm")
_CSV_SUFFIXES = (".csv", ".txt")


def open_source(path: Path | str, sheet: str | None = None) -> AbstractSource:
    """
    Return an unopened reader for ``path``.

    Raises:
        SourceError: If the file type is not supported.
    """
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix in _EXCEL_SUFFIXES:
        return XLSXReader(path, sheet=sheet)
    if suffix in _CSV_SUFFIXES:
        return CSVReader(path)
    raise SourceError(
        f"Unsupported source type '{suffix}'. Supported: {list(_EXCEL_SUFFIXES + _CSV_SUFFIXES)}",
        source_path=str(path),
    )


def load_rows(path: Path | str, sheet: str | None = None) -> list[Row]:
    """
    Read every data row of ``path`` into memory.

    The execution engine needs random access (resume from row N, parallel
    chunks), so rows are materialised once up front.
    """
    with open_source(path, sheet) as source:
        rows = list(source.records())
    logger.info("Loaded %d row(s) from %s", len(rows), path)
    return rows
