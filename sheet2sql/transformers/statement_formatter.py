"""
Row -> INSERT statement formatting.

``StatementFormatter`` is built once per run from the template, the
placeholder mappings and the config, and then renders any row on any
thread: it holds no mutable state.

Resolution order per mapping:
  1. ``fixed``     -> the literal SQL as given (``NULL`` when empty)
  2. ``condition`` -> first value-map key matching the key column's value
  3. ``column``    -> the source column's value (value map applied first,
                      when one is configured)

A null, missing or error-cell value renders ``NULL`` for the ``condition``
and ``column`` strategies.  Values that match no value-map key fall through
to type-directed rendering in ``normalizers.render_value``.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from sheet2sql.configs.config import ExecutionConfig
from sheet2sql.configs.exceptions import RowFormatError, TemplateError
from sheet2sql.loaders.drivers import Dialect, get_dialect
from sheet2sql.models.models import FormattedStatement, PlaceholderMapping, Row
from sheet2sql.transformers.normalizers import (
    NULL,
    Resolution,
    is_null_value,
    lookup_value_map,
    render_value,
)
from sheet2sql.transformers.template_parser import (
    add_rowlock_hint,
    default_mappings,
    statement_header,
)


def prepare_template(template: str, config: ExecutionConfig, dialect: Dialect) -> str:
    """Apply the ROWLOCK hint when enabled and the dialect supports it."""
    if config.rowlock_hint and dialect.supports_rowlock:
        return add_rowlock_hint(template)
    return template


class StatementFormatter:
    """
    Renders rows into INSERT statements for one template.

    Args:
        template: INSERT template containing ``VALUES``.
        mappings: One mapping per output value, in ``VALUES`` order.  Empty
                  means one ``column`` mapping per template placeholder.
        config:   Execution config (string length cap, ROWLOCK switch).
        dialect:  Target dialect; defaults to ``config.dialect``.

    Raises:
        TemplateError: If the template has no ``VALUES`` keyword or nothing
                       to render.

    Example::

        fmt = StatementFormatter(
            "INSERT INTO t (Id, Name) VALUES (<Id, uniqueidentifier>, <Name, nvarchar(50)>)",
            [], ExecutionConfig(rowlock_hint=False),
        )
        fmt.format({"Id": "1111-...", "Name": "Widget"}, 0).sql
        # "INSERT INTO t (Id, Name) VALUES ('1111-...', N'Widget');"
    """

    def __init__(
        self,
        template: str,
        mappings: Sequence[PlaceholderMapping],
        config: ExecutionConfig,
        dialect: Dialect | None = None,
    ) -> None:
        self.config = config
        self.dialect = dialect if dialect is not None else get_dialect(config)
        self.template = prepare_template(template, config, self.dialect)
        self.header = statement_header(self.template)
        self.mappings: tuple[PlaceholderMapping, ...] = tuple(mappings) or tuple(
            default_mappings(template)
        )
        if not self.mappings:
            raise TemplateError("Template has no <Column, type> placeholders to fill.", template)

    def format(self, row: Mapping[str, Any], row_index: int) -> FormattedStatement:
        """
        Render one row.

        Args:
            row:       Column -> value mapping (keys matched case-insensitively).
            row_index: 0-based index of the row in the source sequence.

        Raises:
            RowFormatError: If any value cannot be converted to its SQL type.
        """
        if not isinstance(row, Row):
            row = Row(row)

        values: list[str] = []
        for mapping in self.mappings:
            resolution = self.resolve(mapping, row)
            if resolution.is_error:
                source = None if mapping.strategy == "fixed" else self._source_column(mapping)
                raise RowFormatError(
                    resolution.text,
                    column=mapping.column,
                    source=source,
                    value=row.get(source) if source else None,
                    row_number=row_index + 2,
                )
            values.append(resolution.as_sql())

        return FormattedStatement(row_index, f"{self.header} ({', '.join(values)});")

    def resolve(self, mapping: PlaceholderMapping, row: Row) -> Resolution:
        """Resolve one mapping against ``row`` without raising."""
        if mapping.strategy == "fixed":
            literal = (mapping.fixed_value or "").strip()
            return Resolution.sql(literal) if literal else NULL

        value = row.get(self._source_column(mapping))
        if is_null_value(value):
            return NULL

        literal = lookup_value_map(value, mapping.value_map)
        if literal is not None:
            return Resolution.sql(literal)

        return render_value(
            value,
            mapping.sql_type,
            max_string_length=self.config.max_string_length,
            temporal_literal=self.dialect.temporal_literal,
        )

    @staticmethod
    def _source_column(mapping: PlaceholderMapping) -> str:
        if mapping.strategy == "condition":
            return mapping.key_column
        return mapping.source_column or mapping.column


def format_statement(
    template: str,
    mappings: Sequence[PlaceholderMapping],
    row: Mapping[str, Any],
    row_index: int,
    config: ExecutionConfig | None = None,
) -> FormattedStatement:
    """One-shot convenience wrapper around ``StatementFormatter.format``."""
    formatter = StatementFormatter(template, mappings, config or ExecutionConfig())
    return formatter.format(row, row_index)
