"""
Statement template parsing.

A template is a sample INSERT whose values are ``<Column, type>``
placeholders::

    INSERT INTO dbo.Person (Id, Name, Gender)
    VALUES (<Id, uniqueidentifier>, <Name, nvarchar(100)>, <Gender, nvarchar(10)>)

Everything up to and including the first ``VALUES`` keyword is the
statement header; the formatter appends ``(v1, v2, ...);`` per row.

Value maps are written ``key=literal;key=literal``, e.g.
``1=N'Man';2=N'Woman'``.  Semicolons inside quoted literals are kept.
"""

from __future__ import annotations

import re

from sheet2sql.configs.exceptions import TemplateError
from sheet2sql.models.models import PlaceholderMapping

# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------
_PLACEHOLDER_RE = re.compile(
    r"<(?P<name>[^,<>]+),\s*(?P<type>[^,<>()]+?(?:\s*\([^()<>]*\))?)\s*,?\s*>"
)
_VALUES_RE = re.compile(r"\bVALUES\b", re.IGNORECASE)

# INSERT INTO <target>, where target is an optionally schema-qualified name
# in bare, [bracketed] or "quoted" form.
_NAME_PART = r'(?:\[[^\]]+\]|"[^"]+"|[^\s(\[\."]+)'
_INSERT_TARGET_RE = re.compile(
    rf"^(?P<head>\s*INSERT\s+INTO\s+{_NAME_PART}(?:\.{_NAME_PART})*)",
    re.IGNORECASE,
)
_TABLE_HINT_RE = re.compile(r"^\s*WITH\s*\(", re.IGNORECASE)

ROWLOCK_HINT = " WITH (ROWLOCK)"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def parse_placeholders(template: str) -> list[tuple[str, str]]:
    """
    Return ``(column, sql_type)`` for each ``<Column, type>`` placeholder, in order.

    Example::

        >>> parse_placeholders("VALUES (<Id, int>, <Name, nvarchar(50)>)")
        [('Id', 'int'), ('Name', 'nvarchar(50)')]
    """
    return [
        (m.group("name").strip(), m.group("type").strip())
        for m in _PLACEHOLDER_RE.finditer(template)
    ]


def default_mappings(template: str) -> list[PlaceholderMapping]:
    """One ``column`` mapping per placeholder, reading the same-named column."""
    return [
        PlaceholderMapping.from_column(name, sql_type)
        for name, sql_type in parse_placeholders(template)
    ]


def statement_header(template: str) -> str:
    """
    Return the template text up to and including the first ``VALUES`` keyword.

    Raises:
        TemplateError: If the template has no ``VALUES`` keyword.
    """
    match = _VALUES_RE.search(template)
    if match is None:
        raise TemplateError("INSERT template must contain VALUES keyword.", template)
    return template[: match.end()].rstrip()


def add_rowlock_hint(template: str) -> str:
    """
    Insert ``WITH (ROWLOCK)`` after the INSERT target to reduce lock contention.

    Templates that are not ``INSERT INTO`` statements, or already carry a
    table hint, are returned unchanged.

    Example::

        >>> add_rowlock_hint("INSERT INTO t (Id) VALUES (<Id, int>)")
        'INSERT INTO t WITH (ROWLOCK) (Id) VALUES (<Id, int>)'
    """
    match = _INSERT_TARGET_RE.match(template)
    if match is None:
        return template
    head = match.group("head")
    rest = template[match.end():]
    if _TABLE_HINT_RE.match(rest):
        return template
    return f"{head}{ROWLOCK_HINT}{rest}"


def parse_value_map(text: str | None) -> tuple[tuple[str, str], ...]:
    """
    Parse ``key=literal;key=literal`` into ordered pairs.

    Keys are stripped; literals are kept verbatim apart from surrounding
    whitespace.  Empty segments are skipped.

    Example::

        >>> parse_value_map("1=N'Man';2=N'Woman'")
        (('1', "N'Man'"), ('2', "N'Woman'"))

    Raises:
        TemplateError: If a segment has no ``=`` or an empty key.
    """
    if not text or not text.strip():
        return ()

    pairs: list[tuple[str, str]] = []
    for segment in _split_outside_quotes(text, ";"):
        if not segment.strip():
            continue
        key, sep, literal = segment.partition("=")
        if not sep or not key.strip():
            raise TemplateError(f"Invalid value map entry {segment.strip()!r}; expected key=literal.")
        pairs.append((key.strip(), literal.strip()))
    return tuple(pairs)


def split_statements(sql_text: str) -> list[str]:
    """
    Split a generated script into statements.

    A statement ends on a line whose trailing text is ``);``.  Any text after
    the last terminator is returned as a final statement.
    """
    statements: list[str] = []
    current: list[str] = []
    for line in sql_text.splitlines():
        current.append(line)
        if line.rstrip().endswith(");"):
            statements.append("\n".join(current).strip())
            current = []
    tail = "\n".join(current).strip()
    if tail:
        statements.append(tail)
    return statements


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _split_outside_quotes(text: str, sep: str) -> list[str]:
    """Split on ``sep`` except inside single-quoted SQL literals ('' escapes)."""
    parts: list[str] = []
    buf: list[str] = []
    in_quote = False
    for ch in text:
        if ch == "'":
            in_quote = not in_quote
        if ch == sep and not in_quote:
            parts.append("".join(buf))
            buf = []
            continue
        buf.append(ch)
    parts.append("".join(buf))
    return parts
