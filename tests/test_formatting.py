"""
Statement formatting: test_formatting.py

template_parser.py:
  - parse_placeholders returns (column, type) pairs in template order
  - Trailing-comma placeholder form and parenthesised types are accepted
  - statement_header cuts after the first VALUES (any case)
  - Template without VALUES raises TemplateError
  - add_rowlock_hint injects after bare, schema-qualified and bracketed targets
  - add_rowlock_hint leaves templates with an existing table hint unchanged
  - parse_value_map keeps order and semicolons inside quoted literals
  - parse_value_map rejects a segment without '='
  - split_statements splits generated scripts on ');' line endings

normalizers.py:
  - String types quote (N'' for unicode) and double embedded quotes
  - Empty string: empty literal for string types, NULL otherwise
  - None and CellError always render NULL
  - Long strings are truncated with the visible marker
  - bit accepts bool / number / yes-no text, rejects anything else
  - Temporal types accept datetime, date, serial numbers and text
  - Unparseable temporal text is an error resolution, never an exception
  - Natural rendering drops '.0' from integral floats, no exponents
  - Non-finite floats are errors
  - Oracle dialect renders TIMESTAMP literals
  - lookup_value_map is case-insensitive, whitespace-normalised, numeric-aware

statement_formatter.py:
  - uniqueidentifier / nvarchar example row renders exactly
  - 1=N'Man';2=N'Woman' condition mapping matches source value 1.0
  - Condition mapping reads an explicit key column
  - Unmatched condition value falls through to type rendering
  - Fixed mapping short-circuits; empty fixed value renders NULL
  - Missing column renders NULL
  - Conversion failure raises RowFormatError with column and row number
  - Formatting is deterministic and keys match case-insensitively
  - ROWLOCK hint only for mssql with rowlock_hint enabled
  - Template without placeholders and without mappings raises TemplateError

row_generator.py / identifiers.py:
  - generate_statements yields errors instead of raising
  - clamp_range clips to the row count
  - extract_identifier returns the first VALUES item, quote-aware and capped
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

import pytest

import sys, pathlib
_root = str(pathlib.Path(__file__).parent.parent)
if _root not in sys.path:
    sys.path.insert(0, _root)

from sheet2sql.configs.config import ExecutionConfig
from sheet2sql.configs.exceptions import RowFormatError, TemplateError
from sheet2sql.loaders.drivers import MSSQLDialect, OracleDialect
from sheet2sql.models.models import CellError, PlaceholderMapping
from sheet2sql.transformers.normalizers import (
    NULL,
    TRUNCATION_MARKER,
    from_serial_date,
    lookup_value_map,
    render_value,
)
from sheet2sql.transformers.row_generator import clamp_range, generate_statements
from sheet2sql.transformers.statement_formatter import StatementFormatter, format_statement
from sheet2sql.transformers.template_parser import (
    add_rowlock_hint,
    parse_placeholders,
    parse_value_map,
    split_statements,
    statement_header,
)
from sheet2sql.utils.identifiers import count_statements, extract_identifier


# ============================================================================
# Helpers
# ============================================================================

EXAMPLE_TEMPLATE = (
    "INSERT INTO t (Id, Name) VALUES (<Id, uniqueidentifier>, <Name, nvarchar(100)>)"
)


def make_config(**kwargs) -> ExecutionConfig:
    kwargs.setdefault("rowlock_hint", False)
    kwargs.setdefault("dialect", "mssql")
    return ExecutionConfig(**kwargs)


def render(value, sql_type: str, max_len: int = 100_000) -> str:
    return render_value(value, sql_type, max_string_length=max_len).as_sql()


# ============================================================================
# template_parser.py
# ============================================================================

class TestTemplateParser:
    def test_placeholders_in_order(self):
        assert parse_placeholders(EXAMPLE_TEMPLATE) == [
            ("Id", "uniqueidentifier"),
            ("Name", "nvarchar(100)"),
        ]

    def test_trailing_comma_and_parenthesised_types(self):
        template = "VALUES (<Amount, decimal(10,2)>, <Note, nvarchar(max),>, <Flag, bit>)"
        assert parse_placeholders(template) == [
            ("Amount", "decimal(10,2)"),
            ("Note", "nvarchar(max)"),
            ("Flag", "bit"),
        ]

    def test_header_stops_after_values(self):
        assert statement_header("insert into t (Id) values (<Id, int>)") == "insert into t (Id) values"

    def test_missing_values_raises(self):
        with pytest.raises(TemplateError, match="VALUES"):
            statement_header("INSERT INTO t (Id) SELECT 1")

    def test_rowlock_schema_qualified(self):
        assert add_rowlock_hint("INSERT INTO dbo.People (Id) VALUES (<Id, int>)") == (
            "INSERT INTO dbo.People WITH (ROWLOCK) (Id) VALUES (<Id, int>)"
        )

    def test_rowlock_bracketed_name(self):
        assert add_rowlock_hint("INSERT INTO [dbo].[My Table] (Id) VALUES (1)") == (
            "INSERT INTO [dbo].[My Table] WITH (ROWLOCK) (Id) VALUES (1)"
        )

    def test_rowlock_existing_hint_unchanged(self):
        template = "INSERT INTO t WITH (TABLOCK) (Id) VALUES (1)"
        assert add_rowlock_hint(template) == template

    def test_rowlock_non_insert_unchanged(self):
        assert add_rowlock_hint("MERGE t USING s VALUES") == "MERGE t USING s VALUES"

    def test_value_map_order(self):
        assert parse_value_map("1=N'Man';2=N'Woman'") == (("1", "N'Man'"), ("2", "N'Woman'"))

    def test_value_map_quoted_semicolon(self):
        assert parse_value_map("a=N'x;y'; b = N'z' ;") == (("a", "N'x;y'"), ("b", "N'z'"))

    def test_value_map_empty(self):
        assert parse_value_map("") == ()
        assert parse_value_map(None) == ()

    def test_value_map_bad_segment(self):
        with pytest.raises(TemplateError):
            parse_value_map("1=N'Man';oops")

    def test_split_statements(self):
        script = "INSERT INTO t (Id) VALUES (1);\nINSERT INTO t (Id) VALUES (2);\n"
        assert split_statements(script) == [
            "INSERT INTO t (Id) VALUES (1);",
            "INSERT INTO t (Id) VALUES (2);",
        ]
        assert count_statements(script) == 2


# ============================================================================
# normalizers.py
# ============================================================================

class TestRenderStrings:
    def test_unicode_string_doubles_quotes(self):
        assert render("O'Brien", "nvarchar(50)") == "N'O''Brien'"

    def test_ansi_string(self):
        assert render("O'Brien", "varchar(50)") == "'O''Brien'"

    def test_uniqueidentifier_quoted(self):
        assert render("abc", "uniqueidentifier") == "'abc'"

    def test_number_in_string_column(self):
        assert render(42.0, "nvarchar(10)") == "N'42'"

    def test_empty_string_for_string_type(self):
        assert render("", "nvarchar(10)") == "N''"

    def test_empty_string_for_other_type_is_null(self):
        assert render_value("  ", "int", max_string_length=10) is NULL

    def test_none_and_cell_error_are_null(self):
        assert render(None, "nvarchar(10)") == "NULL"
        assert render(CellError("#N/A"), "int") == "NULL"

    def test_truncation_marker(self):
        assert render("abcdef", "nvarchar(10)", max_len=3) == f"N'abc{TRUNCATION_MARKER}'"


class TestRenderBit:
    @pytest.mark.parametrize("value,expected", [
        (True, "1"), (False, "0"), (0, "0"), (2.0, "1"),
        ("yes", "1"), ("N", "0"), ("true", "1"), ("0", "0"),
    ])
    def test_accepted_values(self, value, expected):
        assert render(value, "bit") == expected

    def test_rejects_other_text(self):
        result = render_value("maybe", "bit", max_string_length=10)
        assert result.is_error
        assert "bit" in result.text


class TestRenderTemporal:
    def test_datetime_millisecond_precision(self):
        value = datetime(2024, 1, 15, 9, 30, 0, 123456)
        assert render(value, "datetime2") == "'2024-01-15 09:30:00.123'"

    def test_date_value(self):
        assert render(date(2024, 1, 15), "date") == "'2024-01-15 00:00:00.000'"

    def test_serial_number(self):
        assert render(45306.5, "datetime") == "'2024-01-15 12:00:00.000'"

    def test_serial_epoch(self):
        assert from_serial_date(0) == datetime(1899, 12, 30)

    def test_iso_text(self):
        assert render("2024-01-15T08:05:00Z", "datetime") == "'2024-01-15 08:05:00.000'"

    def test_us_text(self):
        assert render("01/15/2024", "smalldatetime") == "'2024-01-15 00:00:00.000'"

    def test_unparseable_text_is_error(self):
        result = render_value("not a date", "datetime", max_string_length=100)
        assert result.is_error
        assert "datetime" in result.text

    def test_oracle_timestamp_literal(self):
        result = render_value(
            datetime(2024, 1, 15), "date",
            max_string_length=100, temporal_literal=OracleDialect().temporal_literal,
        )
        assert result.as_sql() == "TIMESTAMP '2024-01-15 00:00:00.000'"


class TestRenderNatural:
    def test_integral_float(self):
        assert render(42.0, "int") == "42"

    def test_fractional_float(self):
        assert render(1.5, "decimal(10,2)") == "1.5"

    def test_decimal_without_exponent(self):
        assert render(Decimal("1E+3"), "decimal(10,0)") == "1000"

    def test_text_passthrough(self):
        assert render(" 17 ", "int") == "17"

    def test_nan_is_error(self):
        assert render_value(float("nan"), "float", max_string_length=100).is_error


class TestValueMap:
    MAP = (("1", "N'Man'"), ("2", "N'Woman'"))

    def test_numeric_aware(self):
        assert lookup_value_map(1.0, self.MAP) == "N'Man'"
        assert lookup_value_map("2.00", self.MAP) == "N'Woman'"

    def test_case_and_whitespace(self):
        assert lookup_value_map("  Yes ", (("yes", "1"),)) == "1"
        assert lookup_value_map("new  york", (("New York", "N'NY'"),)) == "N'NY'"

    def test_first_match_wins(self):
        assert lookup_value_map("a", (("A", "1"), ("a", "2"))) == "1"

    def test_no_match_or_null(self):
        assert lookup_value_map(3, self.MAP) is None
        assert lookup_value_map(None, self.MAP) is None


# ============================================================================
# statement_formatter.py
# ============================================================================

class TestStatementFormatter:
    def test_example_row(self):
        mappings = [
            PlaceholderMapping.from_column("Id", "uniqueidentifier"),
            PlaceholderMapping.from_column("Name", "nvarchar(100)"),
        ]
        row = {"Id": "11111111-1111-1111-1111-111111111111", "Name": "Widget"}
        stmt = format_statement(EXAMPLE_TEMPLATE, mappings, row, 0, make_config())
        assert stmt.sql == (
            "INSERT INTO t (Id, Name) VALUES "
            "('11111111-1111-1111-1111-111111111111', N'Widget');"
        )
        assert stmt.row_index == 0

    def test_default_mappings_from_placeholders(self):
        fmt = StatementFormatter(EXAMPLE_TEMPLATE, [], make_config())
        stmt = fmt.format({"id": "abc", "NAME": "x"}, 3)
        assert stmt.sql == "INSERT INTO t (Id, Name) VALUES ('abc', N'x');"

    def test_condition_numeric_match(self):
        template = "INSERT INTO p (Gender) VALUES (<Gender, nvarchar(10)>)"
        mapping = PlaceholderMapping.condition(
            "Gender", "nvarchar(10)", parse_value_map("1=N'Man';2=N'Woman'")
        )
        fmt = StatementFormatter(template, [mapping], make_config())
        assert fmt.format({"Gender": 1.0}, 0).sql == "INSERT INTO p (Gender) VALUES (N'Man');"

    def test_condition_key_column(self):
        template = "INSERT INTO p (Gender) VALUES (<Gender, nvarchar(10)>)"
        mapping = PlaceholderMapping.condition(
            "Gender", "nvarchar(10)", (("M", "N'Man'"),), condition_column="GenderCode"
        )
        fmt = StatementFormatter(template, [mapping], make_config())
        assert fmt.format({"GenderCode": "m"}, 0).sql.endswith("(N'Man');")

    def test_condition_unmatched_falls_through(self):
        template = "INSERT INTO p (Gender) VALUES (<Gender, nvarchar(10)>)"
        mapping = PlaceholderMapping.condition("Gender", "nvarchar(10)", (("1", "N'Man'"),))
        fmt = StatementFormatter(template, [mapping], make_config())
        assert fmt.format({"Gender": 3}, 0).sql.endswith("(N'3');")

    def test_fixed_and_empty_fixed(self):
        template = "INSERT INTO p (A, B) VALUES (<A, datetime>, <B, int>)"
        mappings = [
            PlaceholderMapping.fixed("A", "datetime", "GETDATE()"),
            PlaceholderMapping.fixed("B", "int", ""),
        ]
        fmt = StatementFormatter(template, mappings, make_config())
        assert fmt.format({}, 0).sql == "INSERT INTO p (A, B) VALUES (GETDATE(), NULL);"

    def test_missing_column_is_null(self):
        fmt = StatementFormatter(EXAMPLE_TEMPLATE, [], make_config())
        assert fmt.format({"Id": "abc"}, 0).sql.endswith("('abc', NULL);")

    def test_source_column_with_value_map(self):
        template = "INSERT INTO p (Status) VALUES (<Status, nvarchar(10)>)"
        mapping = PlaceholderMapping.from_column(
            "Status", "nvarchar(10)", source_column="State", value_map=(("A", "N'Active'"),)
        )
        fmt = StatementFormatter(template, [mapping], make_config())
        assert fmt.format({"State": "a"}, 0).sql.endswith("(N'Active');")
        assert fmt.format({"State": "b"}, 1).sql.endswith("(N'b');")

    def test_conversion_error_context(self):
        template = "INSERT INTO p (Active) VALUES (<Active, bit>)"
        fmt = StatementFormatter(template, [], make_config())
        with pytest.raises(RowFormatError) as exc:
            fmt.format({"Active": "maybe"}, 4)
        assert exc.value.column == "Active"
        assert exc.value.row_number == 6
        assert exc.value.value == "maybe"
        assert "row=6" in str(exc.value)

    def test_deterministic(self):
        fmt = StatementFormatter(EXAMPLE_TEMPLATE, [], make_config())
        row = {"Id": "x", "Name": "y"}
        assert fmt.format(row, 0) == fmt.format(row, 0)

    def test_rowlock_only_for_mssql(self):
        template = "INSERT INTO dbo.t (Id) VALUES (<Id, int>)"
        mssql = StatementFormatter(template, [], make_config(rowlock_hint=True), MSSQLDialect())
        oracle = StatementFormatter(template, [], make_config(rowlock_hint=True), OracleDialect())
        assert mssql.header == "INSERT INTO dbo.t WITH (ROWLOCK) (Id) VALUES"
        assert oracle.header == "INSERT INTO dbo.t (Id) VALUES"

    def test_nothing_to_fill_raises(self):
        with pytest.raises(TemplateError):
            StatementFormatter("INSERT INTO t (Id) VALUES (1)", [], make_config())


# ============================================================================
# row_generator.py / identifiers.py
# ============================================================================

class TestRowGenerator:
    def test_errors_are_yielded(self):
        fmt = StatementFormatter("INSERT INTO p (A) VALUES (<A, bit>)", [], make_config())
        rows = [{"A": 1}, {"A": "bad"}, {"A": 0}]
        results = list(generate_statements(rows, fmt))
        assert [r.row_index for r in results] == [0, 1, 2]
        assert results[0].statement is not None and results[0].error is None
        assert results[1].statement is None and isinstance(results[1].error, RowFormatError)
        assert results[2].statement.sql.endswith("(0);")

    def test_range(self):
        fmt = StatementFormatter("INSERT INTO p (A) VALUES (<A, int>)", [], make_config())
        rows = [{"A": i} for i in range(10)]
        assert [r.row_index for r in generate_statements(rows, fmt, 7, 20)] == [7, 8, 9]

    def test_clamp_range(self):
        assert clamp_range(10, 3, None) == (3, 10)
        assert clamp_range(10, -5, 4) == (0, 4)
        assert clamp_range(10, 12, None) == (12, 12)


class TestExtractIdentifier:
    def test_first_value(self):
        assert extract_identifier("INSERT INTO t (Id, Name) VALUES (42, N'x');", 50) == "42"

    def test_quoted_comma(self):
        assert extract_identifier("INSERT INTO t VALUES (N'a,b', 1);", 50) == "N'a,b'"

    def test_function_call(self):
        assert extract_identifier("INSERT INTO t VALUES (NEWID(), 1);", 50) == "NEWID()"

    def test_long_quoted_value_capped(self):
        assert extract_identifier("INSERT INTO t VALUES ('abcdefghij', 1);", 5) == "'abcd..."

    def test_no_values(self):
        assert extract_identifier("DELETE FROM t", 50) is None
