"""
Batched statement submission.

A batch is submitted as one round trip inside a transaction.  If the batch
fails (after ``batch_retry_count`` retries, rolled back between attempts),
each statement is resubmitted on its own so one bad row costs one failure
record instead of the whole batch:

    batch of 50, row 17 violates a constraint
      -> batch attempt 1 fails, rollback
      -> batch attempt 2 fails, rollback
      -> 50 single statements: 49 committed, 1 FailureRecord

A driver error the dialect classifies as a lost connection is not retried
and not split up: it raises ``BatchSubmitError`` and the chunk stops.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from sheet2sql.configs.config import ExecutionConfig
from sheet2sql.configs.exceptions import BatchSubmitError
from sheet2sql.loaders.drivers import Dialect
from sheet2sql.models.models import FailureRecord, FormattedStatement
from sheet2sql.utils.identifiers import extract_identifier
from sheet2sql.utils.retry import call_with_retry

logger = logging.getLogger(__name__)


@dataclass
class BatchOutcome:
    """Result of one ``submit_batch`` call."""

    inserted: int = 0
    failures: list[FailureRecord] = field(default_factory=list)
    used_fallback: bool = False

    @property
    def failed(self) -> int:
        return len(self.failures)


class _BatchAttemptFailed(Exception):
    """A batch attempt failed with a statement-level (retryable) error."""


class Batcher:
    """
    Submits statement batches on a caller-owned connection.

    Args:
        config:  Batch retry policy and identifier length cap.
        dialect: Wraps the batch text and classifies driver errors.
    """

    def __init__(self, config: ExecutionConfig, dialect: Dialect) -> None:
        self.config = config
        self.dialect = dialect

    def submit_batch(self, conn: Any, statements: Sequence[FormattedStatement]) -> BatchOutcome:
        """
        Submit ``statements`` as one unit, falling back to one-by-one.

        Returns:
            ``BatchOutcome`` with every statement accounted for as inserted
            or failed.

        Raises:
            BatchSubmitError: If the connection is lost.
        """
        if not statements:
            return BatchOutcome()

        batch_sql = self.dialect.batch_sql([s.sql for s in statements])
        first_row = statements[0].row_index

        def _attempt() -> None:
            try:
                self._execute(conn, batch_sql)
                conn.commit()
            except MemoryError:
                raise
            except Exception as e:
                rollback_quietly(conn)
                if self.dialect.is_disconnect(e):
                    raise BatchSubmitError(
                        f"Connection lost during batch: {self.dialect.describe_error(e)}",
                        first_row=first_row,
                    ) from e
                raise _BatchAttemptFailed(self.dialect.describe_error(e)) from e

        try:
            call_with_retry(
                _attempt,
                self.config.batch_retry,
                retry_on=(_BatchAttemptFailed,),
            )
            return BatchOutcome(inserted=len(statements))
        except _BatchAttemptFailed as e:
            logger.warning(
                "Batch of %d statement(s) from row index %d failed; "
                "submitting one by one: %s",
                len(statements), first_row, e,
            )

        return self._submit_individually(conn, statements)

    def _submit_individually(
        self, conn: Any, statements: Sequence[FormattedStatement]
    ) -> BatchOutcome:
        outcome = BatchOutcome(used_fallback=True)
        for stmt in statements:
            try:
                self._execute(conn, self.dialect.single_sql(stmt.sql))
                conn.commit()
                outcome.inserted += 1
            except MemoryError:
                raise
            except Exception as e:
                rollback_quietly(conn)
                if self.dialect.is_disconnect(e):
                    raise BatchSubmitError(
                        f"Connection lost during row-by-row fallback: "
                        f"{self.dialect.describe_error(e)}",
                        first_row=stmt.row_index,
                        inserted=outcome.inserted,
                        failures=outcome.failures,
                    ) from e
                outcome.failures.append(FailureRecord(
                    stmt.row_index,
                    extract_identifier(stmt.sql, self.config.id_value_max_length),
                    self.dialect.describe_error(e),
                ))
        return outcome

    def _execute(self, conn: Any, sql: str) -> None:
        cursor = conn.cursor()
        try:
            cursor.execute(sql)
            self.dialect.drain(cursor)
        finally:
            cursor.close()


def rollback_quietly(conn: Any) -> None:
    """Roll back; on a dead connection the rollback error is only logged."""
    try:
        conn.rollback()
    except Exception as e:
        logger.debug("Rollback failed: %s", e)
