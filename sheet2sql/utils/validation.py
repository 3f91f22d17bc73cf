"""
Validation helpers.

Two levels of checking run before any database connection is made:

- Structural: ``validate_row_alignment`` is called by the CSV reader and
  raises on the first misaligned row.
- Content: ``Validator`` dry-runs the statement formatter over every row
  and collects each row that would fail, or would produce a statement
  longer than ``max_statement_length``.  It never raises for bad rows;
  the issues are returned for the caller to show.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping, Sequence
from typing import Any

from sheet2sql.configs.config import ExecutionConfig
from sheet2sql.configs.exceptions import AlignmentError
from sheet2sql.loaders.progress import ProgressCallback, ProgressReporter
from sheet2sql.models.models import ValidationIssue, ValidationResult
from sheet2sql.transformers.row_generator import clamp_range, generate_statements
from sheet2sql.transformers.statement_formatter import StatementFormatter

logger = logging.getLogger(__name__)


def validate_row_alignment(
    row: list[Any],
    expected_field_count: int,
    row_number: int,
    source_path: str | None = None,
) -> None:
    """
    Assert that a CSV row has exactly the expected number of fields.

    Args:
        row:                  The parsed row as a list of strings.
        expected_field_count: Number of fields in the header row.
        row_number:           1-based row number for error reporting.
        source_path:          Path of the CSV file being processed.

    Raises:
        AlignmentError: If ``len(row) != expected_field_count``.
    """
    actual = len(row)
    if actual != expected_field_count:
        raise AlignmentError(
            f"Row {row_number} has {actual} fields, expected {expected_field_count}.",
            source_path=source_path,
            row_number=row_number,
            expected=expected_field_count,
            got=actual,
        )


class Validator:
    """
    Dry run of the formatter over a row range.

    Args:
        formatter: The same prepared formatter execution will use, so the
                   statement lengths checked are the lengths sent.
        config:    Supplies ``max_statement_length`` and the report divisor.
    """

    def __init__(self, formatter: StatementFormatter, config: ExecutionConfig) -> None:
        self.formatter = formatter
        self.config = config

    def validate(
        self,
        rows: Sequence[Mapping[str, Any]],
        start_row: int = 0,
        end_row: int | None = None,
        *,
        cancel: threading.Event | None = None,
        progress: ProgressCallback | None = None,
    ) -> ValidationResult:
        """
        Check every row in ``[start_row, end_row)``.

        Returns:
            ``ValidationResult``; ``ok`` is False if any issue was found or
            the run was cancelled.  On cancellation the issues found so far
            are kept and ``cancelled`` is set.
        """
        start, end = clamp_range(len(rows), start_row, end_row)
        total = end - start
        reporter = ProgressReporter(
            progress,
            interval_seconds=self.config.progress_interval_seconds,
            row_step=self.config.report_interval(total, validating=True),
        )
        limit = self.config.max_statement_length
        issues: list[ValidationIssue] = []
        checked = 0

        for result in generate_statements(rows, self.formatter, start, end):
            if cancel is not None and cancel.is_set():
                logger.info("Validation cancelled at row index %d", result.row_index)
                return ValidationResult(False, issues, checked, cancelled=True)

            if result.error is not None:
                issues.append(ValidationIssue(result.row_index, str(result.error)))
            elif len(result.statement) > limit:
                issues.append(ValidationIssue(
                    result.row_index,
                    f"Generated SQL too long ({len(result.statement)} chars, limit {limit})",
                ))
            checked += 1
            reporter.update(checked, total, force=checked == total)

        if issues:
            logger.warning("Validation found %d issue(s) in %d row(s)", len(issues), checked)
        return ValidationResult(not issues, issues, checked)
