"""
Delimited text reader.

``.csv`` files are comma separated; ``.txt`` files are read as the
tab-separated text Excel writes with "Save As > Text (Tab delimited)".
Either way the reader:

- strips a UTF-8 BOM (``utf-8-sig``) and accepts CRLF or LF endings,
- parses strictly, so a malformed quote fails the load,
- checks every row against the header's field count,
- skips blank lines and turns empty cells into ``None``.
"""

from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import IO, Iterator

from sheet2sql.configs.exceptions import SourceError
from sheet2sql.discovery.base import AbstractSource, normalize_headers
from sheet2sql.utils.validation import validate_row_alignment

logger = logging.getLogger(__name__)

_DEFAULT_DELIMITERS = {".txt": "\t"}


class StrictDialect(csv.excel):
    """``csv.excel`` with strict quoting and leading spaces ignored."""

    strict = True
    skipinitialspace = True


class CSVReader(AbstractSource):
    """
    Reader for ``.csv`` and tab-delimited ``.txt`` files.

    Args:
        path:      File to read.
        delimiter: Field separator; defaults to tab for ``.txt`` and comma
                   otherwise.
    """

    def __init__(self, path: Path | str, delimiter: str | None = None) -> None:
        super().__init__(path)
        self.delimiter = delimiter or _DEFAULT_DELIMITERS.get(self.path.suffix.lower(), ",")
        self._file: IO[str] | None = None
        self._headers: list[str] | None = None

    # ── AbstractSource interface ─────────────────────────────────────────

    def open(self) -> None:
        """
        Raises:
            SourceError: If the file cannot be opened, is empty, or its
                         header line is malformed.
        """
        try:
            self._file = open(self.path, encoding="utf-8-sig", newline="")
        except OSError as e:
            raise SourceError(f"Cannot open {self.path}: {e}", source_path=str(self.path)) from e

        try:
            first = next(self._reader(), None)
        except csv.Error as e:
            self.close()
            raise SourceError(f"Malformed header line: {e}", source_path=str(self.path)) from e
        if first is None:
            self.close()
            raise SourceError(f"CSV file is empty: {self.path}", source_path=str(self.path))

        self._headers = normalize_headers(first)
        logger.debug("Opened %s with %d column(s)", self.path, len(self._headers))

    def headers(self) -> list[str]:
        if self._headers is None:
            raise RuntimeError("CSVReader.open() must be called before headers().")
        return self._headers

    def rows(self) -> Iterator[list[str | None]]:
        """
        Raises:
            AlignmentError: A row's field count differs from the header's.
            SourceError:    A row is malformed.
        """
        if self._file is None:
            raise RuntimeError("CSVReader.open() must be called before rows().")

        width = len(self.headers())
        self._file.seek(0)
        reader = self._reader()
        try:
            next(reader)
            for fields in reader:
                if not fields:
                    continue
                validate_row_alignment(fields, width, reader.line_num, source_path=str(self.path))
                yield [value if value.strip() else None for value in fields]
        except csv.Error as e:
            raise SourceError(
                f"Malformed row near line {reader.line_num}: {e}",
                source_path=str(self.path),
            ) from e

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    # ── helpers ──────────────────────────────────────────────────────────

    def _reader(self):
        return csv.reader(self._file, dialect=StrictDialect, delimiter=self.delimiter)
