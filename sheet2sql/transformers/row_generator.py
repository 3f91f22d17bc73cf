"""
The statement stream.

Walks a row range through a ``StatementFormatter`` and yields one
``StatementResult`` per row: either the rendered statement or the
``RowFormatError`` explaining why the row could not be rendered.

Key properties:
  - **Lazy**: one statement is alive at a time, so a dry run or a script
    export over a large sheet never holds all the SQL in memory.
  - **Non-raising**: format failures are yielded, not raised, so the
    consumer decides whether to record, skip or stop.
  - **Index-stable**: ``row_index`` is the row's position in the full
    sequence, not in the requested range.

Usage::

    for result in generate_statements(rows, formatter, start_row=100):
        if result.error is not None:
            report(result.row_index, result.error)
        else:
            write(result.statement.sql)
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Iterator, NamedTuple

from sheet2sql.configs.exceptions import RowFormatError
from sheet2sql.models.models import FormattedStatement
from sheet2sql.transformers.statement_formatter import StatementFormatter


class StatementResult(NamedTuple):
    row_index: int
    statement: FormattedStatement | None
    error: RowFormatError | None


def clamp_range(total_rows: int, start_row: int = 0, end_row: int | None = None) -> tuple[int, int]:
    """Clip ``[start_row, end_row)`` to ``[0, total_rows)``."""
    start = max(0, start_row)
    end = total_rows if end_row is None else min(end_row, total_rows)
    return start, max(start, end)


def generate_statements(
    rows: Sequence[Mapping[str, Any]],
    formatter: StatementFormatter,
    start_row: int = 0,
    end_row: int | None = None,
) -> Iterator[StatementResult]:
    """
    Stream formatted statements for ``rows[start_row:end_row]``.

    Args:
        rows:      Full row sequence.
        formatter: Prepared formatter for the run.
        start_row: First row index (inclusive).
        end_row:   Last row index (exclusive); ``None`` means all rows.

    Yields:
        One ``StatementResult`` per row, in index order.
    """
    start, end = clamp_range(len(rows), start_row, end_row)
    for index in range(start, end):
        try:
            yield StatementResult(index, formatter.format(rows[index], index), None)
        except RowFormatError as e:
            yield StatementResult(index, None, e)
