"""
Core data models for the execution engine.

Row                 read-only, case-insensitive column -> value mapping.
CellError           marker for a spreadsheet error cell (``#N/A``, ``#REF!``).
PlaceholderMapping  how one output column's value is derived from a row.
FormattedStatement  one rendered statement plus its source row index.
FailureRecord       one failed row in a report.
ExecutionReport     aggregate outcome of a run or a chunk.
ValidationResult    outcome of a dry run.

Mappings and statements are frozen: they are built once per run and shared
read-only between the formatter and any number of worker threads.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal


SourceStrategy = Literal["column", "fixed", "condition"]
"""How a placeholder value is sourced: read a column, use a literal, or look up a value map."""


@dataclass(frozen=True, slots=True)
class CellError:
    """A spreadsheet error value such as ``#N/A``.  Always renders as ``NULL``."""

    code: str = "#ERROR"

    def __str__(self) -> str:
        return self.code


class Row(Mapping[str, Any]):
    """
    Immutable row whose keys are matched case-insensitively.

    Iteration yields the original header spelling in source order::

        row = Row({"Name": "Widget"})
        row["name"]   # "Widget"
        list(row)     # ["Name"]
    """

    __slots__ = ("_values", "_keys")

    def __init__(self, values: Mapping[str, Any] | None = None) -> None:
        folded: dict[str, Any] = {}
        keys: dict[str, str] = {}
        for key, value in (values or {}).items():
            fk = key.casefold()
            if fk not in keys:
                keys[fk] = key
            folded[fk] = value
        self._values = folded
        self._keys = keys

    def __getitem__(self, key: str) -> Any:
        return self._values[key.casefold()]

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key.casefold() in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self._keys.values())

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        body = ", ".join(f"{k!r}: {self[k]!r}" for k in self)
        return f"Row({{{body}}})"

    def first_value(self) -> Any:
        """Value of the first column, or ``None`` for an empty row."""
        for key in self:
            return self[key]
        return None


@dataclass(frozen=True, slots=True)
class PlaceholderMapping:
    """
    Mapping for one ``<Column, type>`` placeholder.

    Attributes:
        column:           Target column name from the template placeholder.
        sql_type:         Target SQL type tag (e.g. ``nvarchar(100)``, ``bit``).
        strategy:         ``column``, ``fixed`` or ``condition``.
        source_column:    Column to read for the ``column`` strategy.
        fixed_value:      Literal SQL for the ``fixed`` strategy (``GETDATE()``,
                          ``N'constant'``).  Empty means ``NULL``.
        value_map:        Ordered ``(match_key, literal_sql)`` pairs.
        condition_column: Column holding the match key for the ``condition``
                          strategy; falls back to ``column``.
    """

    column: str
    sql_type: str
    strategy: SourceStrategy = "column"
    source_column: str | None = None
    fixed_value: str | None = None
    value_map: tuple[tuple[str, str], ...] = ()
    condition_column: str | None = None

    def __post_init__(self) -> None:
        if self.strategy not in ("column", "fixed", "condition"):
            raise ValueError(
                f"Unknown strategy '{self.strategy}' for column '{self.column}'. "
                "Valid strategies: ['column', 'fixed', 'condition']"
            )
        # Accept lists from callers; store an immutable tuple of pairs.
        object.__setattr__(
            self, "value_map", tuple((str(k), str(v)) for k, v in self.value_map)
        )

    @classmethod
    def from_column(cls, column: str, sql_type: str, source_column: str | None = None,
                    value_map: tuple[tuple[str, str], ...] = ()) -> "PlaceholderMapping":
        return cls(column, sql_type, "column",
                   source_column=source_column if source_column is not None else column,
                   value_map=value_map)

    @classmethod
    def fixed(cls, column: str, sql_type: str, fixed_value: str | None) -> "PlaceholderMapping":
        return cls(column, sql_type, "fixed", fixed_value=fixed_value)

    @classmethod
    def condition(cls, column: str, sql_type: str, value_map: tuple[tuple[str, str], ...],
                  condition_column: str | None = None) -> "PlaceholderMapping":
        return cls(column, sql_type, "condition", value_map=value_map,
                   condition_column=condition_column)

    @property
    def key_column(self) -> str:
        """Column the ``condition`` strategy reads its match key from."""
        return self.condition_column or self.column


@dataclass(frozen=True, slots=True)
class FormattedStatement:
    """A rendered statement ready to send, tagged with its 0-based row index."""

    row_index: int
    sql: str

    def __len__(self) -> int:
        return len(self.sql)


@dataclass(frozen=True, slots=True)
class FailureRecord:
    """
    One failed row.

    Attributes:
        row_index: 0-based index in the source sequence; ``-1`` marks the
                   summary entry appended when the failure cap is exceeded.
        id_value:  First VALUES item of the statement, for a human to find
                   the row (``None`` if the row never formatted).
        message:   Error text.
    """

    row_index: int
    id_value: str | None
    message: str

    @property
    def is_summary(self) -> bool:
        return self.row_index < 0

    @property
    def row_number(self) -> int | None:
        """Spreadsheet row number (1-based, after the header row)."""
        return None if self.is_summary else self.row_index + 2


class RunStatus(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FATAL = "fatal"


@dataclass
class ChunkOutcome:
    """Per-chunk summary kept on a parallel report."""

    start_row: int
    end_row: int
    status: RunStatus
    inserted: int = 0
    failed: int = 0
    fatal_error: str | None = None
    resume_row: int | None = None


@dataclass
class ExecutionReport:
    """
    Aggregate result of executing a row range.

    Attributes:
        inserted:         Rows whose statement was committed.
        failed:           Rows that failed to format or to execute.
        failed_rows:      At most ``max_failed_rows`` records, sorted by row
                          index, plus one summary entry if more were dropped.
        omitted_failures: Failures counted but not recorded.
        status:           Terminal state of the run.
        fatal_error:      Set when the run stopped early; resume from
                          ``resume_row``.
        resume_row:       First row not confirmed processed (exclusive end of
                          the processed prefix).
        start_row:        First row of the requested range.
        end_row:          Exclusive end of the requested range.
        chunks:           Per-chunk outcomes (parallel mode only).
    """

    inserted: int = 0
    failed: int = 0
    failed_rows: list[FailureRecord] = field(default_factory=list)
    omitted_failures: int = 0
    status: RunStatus = RunStatus.COMPLETED
    fatal_error: str | None = None
    resume_row: int | None = None
    start_row: int = 0
    end_row: int = 0
    chunks: list[ChunkOutcome] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.inserted + self.failed

    @property
    def stopped(self) -> bool:
        """True when the run must be resumed from ``resume_row``."""
        return self.fatal_error is not None

    @property
    def cancelled(self) -> bool:
        return self.status is RunStatus.CANCELLED

    def failure_details(self) -> list[FailureRecord]:
        """Recorded failures without the trailing summary entry."""
        return [r for r in self.failed_rows if not r.is_summary]


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    row_index: int
    message: str

    @property
    def row_number(self) -> int:
        return self.row_index + 2


@dataclass
class ValidationResult:
    """
    Outcome of a dry run.

    ``ok`` is True only when every checked row formatted within the length
    limit and the run was not cancelled.
    """

    ok: bool
    issues: list[ValidationIssue] = field(default_factory=list)
    rows_checked: int = 0
    cancelled: bool = False
