"""
Identifier helpers for failure reporting.

A failed row is reported with the first value of its ``VALUES`` list
(typically the primary key) so a human can find it in the sheet.

Usage:
    from sheet2sql.utils.identifiers import extract_identifier

    extract_identifier("INSERT INTO t (Id, Name) VALUES (42, N'x');", 50)   # -> "42"
"""

from __future__ import annotations

import re

_VALUES_OPEN_RE = re.compile(r"\bVALUES\s*\(", re.IGNORECASE)


def extract_identifier(statement: str, max_len: int) -> str | None:
    """
    Return the first item of the statement's ``VALUES (...)`` list.

    Quoted items longer than ``max_len`` are cut and suffixed with ``...``.
    Commas inside quoted literals do not end the item.

    Args:
        statement: Rendered INSERT statement.
        max_len:   Length cap for quoted items.

    Returns:
        The first value as written in SQL (quotes included), or ``None`` if
        the statement has no ``VALUES (`` list.
    """
    match = _VALUES_OPEN_RE.search(statement)
    if match is None:
        return None

    buf: list[str] = []
    in_quote = False
    depth = 0
    for ch in statement[match.end():]:
        if ch == "'":
            in_quote = not in_quote
        elif not in_quote:
            if ch == "(":
                depth += 1
            elif ch == ")":
                if depth == 0:
                    break
                depth -= 1
            elif ch == "," and depth == 0:
                break
        buf.append(ch)

    first = "".join(buf).strip()
    if not first:
        return None
    if first.startswith(("N'", "'")) and len(first) > max_len:
        return first[:max_len] + "..."
    return first


def count_statements(sql_text: str) -> int:
    """Count INSERT statements in a script (lines ending in ``);``)."""
    return sum(1 for line in sql_text.splitlines() if line.rstrip().endswith(");"))
