"""
Mapping file loading.

A mapping file is a JSON list with one object per template placeholder
that should not simply read the same-named column::

    [
      {"column": "Id",        "source": "Customer ID"},
      {"column": "CreatedAt", "fixed": "GETDATE()"},
      {"column": "Gender",    "condition": "GenderCode",
       "value_map": "1=N'Man';2=N'Woman'"},
      {"column": "Status",    "source": "Status", "value_map": {"A": "N'Active'"}}
    ]

Keys:
  - ``column``     (required) placeholder column name, matched case-insensitively
  - ``type``       SQL type tag; defaults to the placeholder's type
  - ``source``     column strategy: sheet column to read
  - ``fixed``      fixed strategy: literal SQL (``""`` or ``null`` = ``NULL``)
  - ``condition``  condition strategy: sheet column holding the match key
                   (``true`` reads the column named like the placeholder)
  - ``value_map``  ``"key=literal;..."`` string or ``{"key": "literal"}`` object

Placeholders without an entry read the sheet column with the same name.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from sheet2sql.configs.exceptions import ConfigError, TemplateError
from sheet2sql.models.models import PlaceholderMapping
from sheet2sql.transformers.template_parser import parse_placeholders, parse_value_map

logger = logging.getLogger(__name__)

_STRATEGY_KEYS = ("source", "fixed", "condition")


def load_mapping_file(path: Path | str) -> list[dict[str, Any]]:
    """
    Read a mapping file.

    Raises:
        ConfigError: If the file is missing, not JSON, or not a list of objects.
    """
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise ConfigError("Mapping file not found", key="mapping", value=str(path)) from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Mapping file is not valid JSON: {e}", key="mapping", value=str(path)) from e

    if not isinstance(data, list) or not all(isinstance(e, dict) for e in data):
        raise ConfigError("Mapping file must be a JSON list of objects", key="mapping", value=str(path))
    return data


def build_mappings(template: str, entries: Sequence[dict[str, Any]] = ()) -> list[PlaceholderMapping]:
    """
    Combine template placeholders with mapping entries.

    Returns:
        One ``PlaceholderMapping`` per placeholder, in template order.  When
        the template has no placeholders, the entries alone define the
        values (each must then carry a ``type``).

    Raises:
        TemplateError: On an entry for an unknown column, a duplicate entry,
                       or an entry naming more than one strategy.
    """
    placeholders = parse_placeholders(template)
    by_column: dict[str, dict[str, Any]] = {}
    for entry in entries:
        column = str(entry.get("column") or "").strip()
        if not column:
            raise TemplateError(f"Mapping entry without 'column': {entry!r}")
        if column.casefold() in by_column:
            raise TemplateError(f"Duplicate mapping entry for column '{column}'")
        by_column[column.casefold()] = entry

    if not placeholders:
        return [mapping_from_entry(e, e.get("type")) for e in entries]

    known = {name.casefold() for name, _ in placeholders}
    unknown = [e["column"] for key, e in by_column.items() if key not in known]
    if unknown:
        raise TemplateError(
            f"Mapping entries for columns not in the template: {unknown}", template
        )

    mappings = []
    for name, sql_type in placeholders:
        entry = by_column.get(name.casefold())
        if entry is None:
            mappings.append(PlaceholderMapping.from_column(name, sql_type))
        else:
            mappings.append(mapping_from_entry({**entry, "column": name}, sql_type))
    logger.debug("Built %d mapping(s), %d from entries", len(mappings), len(by_column))
    return mappings


def mapping_from_entry(entry: dict[str, Any], default_type: str | None = None) -> PlaceholderMapping:
    """
    Build one ``PlaceholderMapping`` from a mapping-file entry.

    Raises:
        TemplateError: If no type is known or several strategies are given.
    """
    column = str(entry["column"]).strip()
    sql_type = str(entry.get("type") or default_type or "").strip()
    if not sql_type:
        raise TemplateError(f"Mapping for column '{column}' needs a 'type'")

    strategies = [k for k in _STRATEGY_KEYS if k in entry]
    if len(strategies) > 1:
        raise TemplateError(
            f"Mapping for column '{column}' sets {strategies}; use only one of {list(_STRATEGY_KEYS)}"
        )

    value_map = _value_map(entry.get("value_map"))

    if "fixed" in entry:
        fixed = entry["fixed"]
        return PlaceholderMapping.fixed(column, sql_type, None if fixed is None else str(fixed))
    if "condition" in entry:
        key_column = entry["condition"]
        if not value_map:
            raise TemplateError(f"Condition mapping for column '{column}' needs a 'value_map'")
        return PlaceholderMapping.condition(
            column, sql_type, value_map,
            condition_column=None if key_column is True or not key_column else str(key_column),
        )
    return PlaceholderMapping.from_column(
        column, sql_type, source_column=entry.get("source"), value_map=value_map
    )


def dump_mappings(mappings: Sequence[PlaceholderMapping], path: Path | str) -> Path:
    """Write ``mappings`` in mapping-file form, e.g. to reuse the last run's mapping."""
    entries = []
    for m in mappings:
        entry: dict[str, Any] = {"column": m.column, "type": m.sql_type}
        if m.strategy == "fixed":
            entry["fixed"] = m.fixed_value
        elif m.strategy == "condition":
            entry["condition"] = m.condition_column or True
        else:
            entry["source"] = m.source_column or m.column
        if m.value_map:
            entry["value_map"] = dict(m.value_map)
        entries.append(entry)

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(entries, f, indent=2)
    return path


def _value_map(raw: Any) -> tuple[tuple[str, str], ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        return parse_value_map(raw)
    if isinstance(raw, dict):
        return tuple((str(k), str(v)) for k, v in raw.items())
    raise TemplateError(f"value_map must be a string or an object, got {type(raw).__name__}")
