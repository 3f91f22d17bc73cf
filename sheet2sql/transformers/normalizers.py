"""
Cell-level value normalizers for statement formatting.

Each normalizer is a **pure function**: it takes a raw cell value (whatever
the row source produced) and a target SQL type tag, and returns a
``Resolution``, the tagged outcome of turning that value into literal SQL.

Resolution kinds:
  - ``sql``   : ``text`` holds the literal to splice into the statement
  - ``null``  : the value renders as ``NULL``
  - ``error`` : ``text`` holds a conversion message; the formatter turns it
                into a ``RowFormatError`` with row and column context

Type-directed rendering (``render_value``), keyed on the base type name:
  - ``nvarchar`` / ``nchar`` / ``ntext``         -> ``N'...'``
  - ``varchar`` / ``char`` / ``text``            -> ``'...'``
  - ``uniqueidentifier``                         -> ``'...'``
  - ``bit``                                      -> ``1`` / ``0``
  - ``date`` / ``datetime`` / ``datetime2`` /
    ``smalldatetime``                            -> dialect timestamp literal
  - anything else                                -> natural text (numbers
                                                    without exponent)

Null contract:
  - ``None`` and ``CellError`` are always ``NULL``.
  - An empty / whitespace-only string is ``NULL`` for every type except the
    quoted string types, where it renders as an empty literal.

DATE / TIMESTAMP inputs handled:
  - ``datetime.datetime`` / ``datetime.date`` values
  - spreadsheet serial numbers (days since 1899-12-30, fraction = time)
  - text in the ISO forms below, US ``MM/DD/YYYY`` forms, or anything
    ``datetime.fromisoformat`` accepts
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Literal

from sheet2sql.models.models import CellError

# ---------------------------------------------------------------------------
# Patterns / constants
# ---------------------------------------------------------------------------
_NULL_BYTE_RE = re.compile(r"\x00")
_WS_RE = re.compile(r"\s+")
# Timezone offset suffix pattern; strip before parsing
_TZ_OFFSET_RE = re.compile(r"(?<=\d)[+-]\d{2}:?\d{2}$")

TRUNCATION_MARKER = "...[truncated]"
SPREADSHEET_EPOCH = datetime(1899, 12, 30)

_UNICODE_STRING_TYPES = frozenset({"nvarchar", "nchar", "ntext"})
_STRING_TYPES = frozenset({"varchar", "char", "text"})
_IDENTIFIER_TYPES = frozenset({"uniqueidentifier"})
_BOOLEAN_TYPES = frozenset({"bit"})
_TEMPORAL_TYPES = frozenset({"date", "datetime", "datetime2", "smalldatetime"})

_TRUE_TEXT = frozenset({"true", "yes", "y", "1"})
_FALSE_TEXT = frozenset({"false", "no", "n", "0"})

_TIMESTAMP_FMTS = [
    "%Y-%m-%dT%H:%M:%S.%fZ",
    "%Y-%m-%dT%H:%M:%SZ",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
]


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class Resolution:
    """Tagged outcome of resolving one placeholder value."""

    kind: Literal["sql", "null", "error"]
    text: str = ""

    @classmethod
    def sql(cls, text: str) -> "Resolution":
        return cls("sql", text)

    @classmethod
    def error(cls, message: str) -> "Resolution":
        return cls("error", message)

    @property
    def is_error(self) -> bool:
        return self.kind == "error"

    def as_sql(self) -> str:
        """Literal SQL for this resolution (``NULL`` for the null kind)."""
        if self.kind == "error":
            raise ValueError(f"Unresolved value: {self.text}")
        return "NULL" if self.kind == "null" else self.text


NULL = Resolution("null")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def base_type(sql_type: str) -> str:
    """``'NVARCHAR(100)'`` -> ``'nvarchar'``."""
    return sql_type.split("(", 1)[0].strip().lower()


def is_null_value(value: Any) -> bool:
    """True for ``None`` and spreadsheet error cells."""
    return value is None or isinstance(value, CellError)


def format_timestamp(value: datetime) -> str:
    """Quoted ``'yyyy-MM-dd HH:mm:ss.fff'`` literal (millisecond precision)."""
    return f"'{value:%Y-%m-%d %H:%M:%S}.{value.microsecond // 1000:03d}'"


def render_value(
    value: Any,
    sql_type: str,
    *,
    max_string_length: int,
    temporal_literal: Callable[[datetime], str] = format_timestamp,
) -> Resolution:
    """
    Render a non-null cell value as literal SQL for ``sql_type``.

    Args:
        value:             Raw cell value.
        sql_type:          Placeholder type tag, e.g. ``nvarchar(50)``.
        max_string_length: Longer string values are truncated with
                           ``TRUNCATION_MARKER`` before quoting.
        temporal_literal:  Renders a ``datetime`` for the target dialect.

    Returns:
        A ``Resolution``; never raises for bad input.
    """
    if is_null_value(value):
        return NULL

    kind = base_type(sql_type)

    if kind in _UNICODE_STRING_TYPES:
        return Resolution.sql("N" + quote_string(to_text(value), max_string_length))
    if kind in _STRING_TYPES or kind in _IDENTIFIER_TYPES:
        return Resolution.sql(quote_string(to_text(value), max_string_length))

    if isinstance(value, str):
        value = strip_null_bytes(value).strip()
        if not value:
            return NULL

    if kind in _BOOLEAN_TYPES:
        return _render_bit(value)
    if kind in _TEMPORAL_TYPES:
        parsed = to_datetime(value)
        if parsed is None:
            return Resolution.error(
                f"Cannot convert {type(value).__name__} value {value!r} to {sql_type}"
            )
        return Resolution.sql(temporal_literal(parsed))

    return _render_natural(value, max_string_length, temporal_literal)


def quote_string(text: str, max_length: int) -> str:
    """Single-quote ``text``, doubling embedded quotes and truncating long values."""
    text = strip_null_bytes(text)
    if len(text) > max_length:
        text = text[:max_length] + TRUNCATION_MARKER
    return "'" + text.replace("'", "''") + "'"


def to_text(value: Any) -> str:
    """
    Natural text form of a cell value.

    Integral floats lose their ``.0`` (spreadsheets store every number as a
    float); decimals never use exponent notation; booleans are ``1`` / ``0``.
    """
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, datetime):
        return value.isoformat(sep=" ")
    return str(value)


def to_datetime(value: Any) -> datetime | None:
    """
    Convert a cell value to a naive ``datetime``.

    Returns:
        The parsed value, or ``None`` if the value is not a date.
    """
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if isinstance(value, date):
        return datetime.combine(value, time())
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return from_serial_date(float(value))
    if isinstance(value, str):
        return _parse_datetime_text(value)
    return None


def from_serial_date(serial: float) -> datetime | None:
    """Spreadsheet serial date (days since 1899-12-30) to ``datetime``."""
    if not math.isfinite(serial):
        return None
    try:
        result = SPREADSHEET_EPOCH + timedelta(days=serial)
    except OverflowError:
        return None
    # Round to the millisecond the literal can carry.
    micro = round(result.microsecond / 1000) * 1000
    if micro == 1_000_000:
        return result.replace(microsecond=0) + timedelta(seconds=1)
    return result.replace(microsecond=micro)


def match_key(value: Any) -> str:
    """Case- and whitespace-normalized text used for value-map matching."""
    return _WS_RE.sub(" ", to_text(value).strip()).casefold()


def lookup_value_map(value: Any, value_map: tuple[tuple[str, str], ...]) -> str | None:
    """
    Return the literal SQL of the first ``value_map`` key matching ``value``.

    Matching is case-insensitive, whitespace-normalized and numeric-aware,
    so a cell holding ``1.0`` matches the key ``1``.

    Example::

        >>> lookup_value_map(2.0, (("1", "N'Man'"), ("2", "N'Woman'")))
        "N'Woman'"
    """
    if is_null_value(value) or not value_map:
        return None
    text = match_key(value)
    number = _to_decimal(text)
    for key, literal in value_map:
        candidate = match_key(key)
        if candidate == text:
            return literal
        if number is not None:
            key_number = _to_decimal(candidate)
            if key_number is not None and key_number == number:
                return literal
    return None


def strip_null_bytes(value: str) -> str:
    """Remove all null bytes from a string."""
    return _NULL_BYTE_RE.sub("", value)


# ---------------------------------------------------------------------------
# Private converters
# ---------------------------------------------------------------------------

def _render_bit(value: Any) -> Resolution:
    if isinstance(value, bool):
        return Resolution.sql("1" if value else "0")
    if isinstance(value, (int, float, Decimal)):
        return Resolution.sql("0" if value == 0 else "1")
    text = str(value).strip().lower()
    if text in _TRUE_TEXT:
        return Resolution.sql("1")
    if text in _FALSE_TEXT:
        return Resolution.sql("0")
    number = _to_decimal(text)
    if number is not None:
        return Resolution.sql("0" if number == 0 else "1")
    return Resolution.error(f"Cannot convert {type(value).__name__} value {value!r} to bit")


def _render_natural(
    value: Any,
    max_string_length: int,
    temporal_literal: Callable[[datetime], str],
) -> Resolution:
    if isinstance(value, float) and not math.isfinite(value):
        return Resolution.error(f"Cannot render non-finite number {value!r}")
    if isinstance(value, (datetime, date)):
        return Resolution.sql(temporal_literal(to_datetime(value)))
    text = to_text(value)
    if len(text) > max_string_length:
        return Resolution.error(
            f"Value of {len(text)} characters exceeds max string length {max_string_length}"
        )
    return Resolution.sql(text)


def _to_decimal(text: str) -> Decimal | None:
    """Convert a numeric string to ``Decimal``. Returns ``None`` on failure."""
    if not text:
        return None
    try:
        number = Decimal(text)
    except InvalidOperation:
        return None
    return number if number.is_finite() else None


def _parse_datetime_text(value: str) -> datetime | None:
    stripped = strip_null_bytes(value).strip()
    if not stripped:
        return None

    cleaned = _TZ_OFFSET_RE.sub("", stripped)
    for fmt in _TIMESTAMP_FMTS:
        try:
            return datetime.strptime(cleaned, fmt)
        except ValueError:
            continue

    try:
        return datetime.fromisoformat(stripped).replace(tzinfo=None)
    except ValueError:
        return None
