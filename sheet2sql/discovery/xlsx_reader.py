"""
Excel workbook reader implementing ``AbstractSource``.

Uses ``openpyxl`` in read-only mode, which streams rows instead of building
the whole workbook in memory.  Cached formula results are read
(``data_only=True``), never the formulas themselves.

Cell handling:
- Numbers, dates, booleans and strings keep their native Python type.
- Error cells (``#N/A``, ``#REF!`` ...) become ``CellError`` and render as
  ``NULL``.
- Blank header cells are named ``Column1``, ``Column2`` ... by position.
- Rows shorter than the header are padded with ``None``; fully empty rows
  at the end of the sheet are dropped.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterator
from zipfile import BadZipFile

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from sheet2sql.configs.exceptions import SourceError
from sheet2sql.discovery.base import AbstractSource, normalize_headers
from sheet2sql.models.models import CellError

logger = logging.getLogger(__name__)


class XLSXReader(AbstractSource):
    """
    Reader for ``.xlsx`` / ``.xlsm`` workbooks.

    Args:
        path:  Path to the workbook.
        sheet: Worksheet name; the first sheet when omitted.
    """

    def __init__(self, path: Path | str, sheet: str | None = None) -> None:
        super().__init__(path)
        self.sheet = sheet
        self._workbook = None
        self._worksheet = None
        self._headers: list[str] | None = None

    # ── AbstractSource interface ─────────────────────────────────────────

    def open(self) -> None:
        """
        Open the workbook and read the header row.

        Raises:
            SourceError: If the file cannot be opened, the sheet does not
                         exist, or the sheet is empty.
        """
        try:
            self._workbook = load_workbook(self.path, read_only=True, data_only=True)
        except (OSError, ValueError, KeyError, BadZipFile, InvalidFileException) as e:
            raise SourceError(
                f"Cannot open workbook {self.path}: {e}",
                source_path=str(self.path),
            ) from e

        if self.sheet is None:
            self._worksheet = self._workbook.worksheets[0]
        elif self.sheet in self._workbook.sheetnames:
            self._worksheet = self._workbook[self.sheet]
        else:
            available = self._workbook.sheetnames
            self.close()
            raise SourceError(
                f"Sheet '{self.sheet}' not found. Available sheets: {available}",
                source_path=str(self.path),
            )

        first = next(self._worksheet.iter_rows(min_row=1, max_row=1), None)
        if first is None:
            self.close()
            raise SourceError(
                f"Worksheet is empty: {self.path}",
                source_path=str(self.path),
            )

        self._headers = normalize_headers([cell.value for cell in first])
        logger.debug("Opened sheet '%s' with %d column(s)", self._worksheet.title, len(self._headers))

    def headers(self) -> list[str]:
        """Return the cached header list.  ``open()`` must be called first."""
        if self._headers is None:
            raise RuntimeError("XLSXReader.open() must be called before headers().")
        return self._headers

    def rows(self) -> Iterator[list[Any]]:
        """
        Yield each data row.  Each call starts again from the first data row.

        Empty rows inside the data are yielded (all ``None``) so row indexes
        stay aligned with the sheet; trailing empty rows are not.
        """
        if self._worksheet is None:
            raise RuntimeError("XLSXReader.open() must be called before rows().")

        width = len(self.headers())
        pending_blank = 0
        for cells in self._worksheet.iter_rows(min_row=2):
            values = [_cell_value(cell) for cell in cells[:width]]
            values.extend([None] * (width - len(values)))
            if all(v is None for v in values):
                pending_blank += 1
                continue
            for _ in range(pending_blank):
                yield [None] * width
            pending_blank = 0
            yield values

    def close(self) -> None:
        """Close the workbook (read-only workbooks hold the file open)."""
        if self._workbook is not None:
            self._workbook.close()
            self._workbook = None
            self._worksheet = None


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _cell_value(cell: Any) -> Any:
    if getattr(cell, "data_type", None) == "e":
        return CellError(str(cell.value) if cell.value is not None else "#ERROR")
    value = cell.value
    if isinstance(value, str) and not value.strip():
        return None
    return value
