"""
Row source interface.

A source turns one file into a header list plus positional value rows.
``records()`` zips the two into case-insensitive ``Row`` objects, which is
all the formatter and the execution engine ever see.

Usage::

    with open_source("people.xlsx") as source:
        headers = source.headers()
        for row in source.records():
            ...
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Iterator

from sheet2sql.models.models import Row


def normalize_headers(raw: list[Any]) -> list[str]:
    """
    Trim header cells and name blank ones by position.

    Example::

        >>> normalize_headers(["Id", None, "  Name "])
        ['Id', 'Column2', 'Name']
    """
    headers = []
    for position, value in enumerate(raw, start=1):
        text = "" if value is None else str(value).strip()
        headers.append(text or f"Column{position}")
    return headers


class AbstractSource(ABC):
    """
    Base for file-backed row sources.

    Subclasses open the file in ``open()``, cache the header row, and
    yield value lists from ``rows()``.  Sources are context managers; each
    ``rows()`` call starts again at the first data row.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    @abstractmethod
    def open(self) -> None:
        """Open the file and read the header row."""

    @abstractmethod
    def headers(self) -> list[str]:
        """Header names in column order, after ``normalize_headers``."""

    @abstractmethod
    def rows(self) -> Iterator[list[Any]]:
        """Value lists aligned with ``headers()``; empty cells are ``None``."""

    @abstractmethod
    def close(self) -> None:
        """Release the file handle or workbook."""

    def records(self) -> Iterator[Row]:
        headers = self.headers()
        for values in self.rows():
            yield Row(dict(zip(headers, values)))

    def __enter__(self) -> "AbstractSource":
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
