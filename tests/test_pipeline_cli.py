"""
Pipeline and command line: test_pipeline_cli.py

pipeline.py:
  - execute (safe) inserts every row, writes the execute log and final checkpoint
  - execute honours start_row + chunk_size and reports offset progress
  - execute resume=True starts from the checkpoint file
  - Unreadable checkpoint on resume raises ConfigError; unknown mode too
  - execute (parallel) aggregates chunk reports and logs failed rows
  - MemoryError becomes a FATAL report resuming from the checkpoint
  - A fresh safe run replaces a stale checkpoint with its start row
  - Parallel runs ignore resume and delete the checkpoint
  - validate flags unformattable and oversized statements
  - generate_script writes one file or numbered part files, never ROWLOCK
  - generate_script skips unformattable rows and reports them
  - execute_script runs a generated script, honouring start_statement
  - execute_script checkpoints statements in a separate file

cli.py:
  - validate exits 0 on clean input, 1 with issues listed
  - execute validates first; issues stop before any connection
  - execute inserts through the dialect connection and exits 0
  - execute resumes from --checkpoint with --resume
  - Lost connection exits 1 and prints the resume row
  - --config/--env supply DB_CONNECTION through an {env} reference
  - Mapping JSON drives condition lookups
  - generate writes part files
  - Missing template file, missing connection, unsupported source exit 2
"""

from __future__ import annotations

import csv
import json
import threading
from pathlib import Path

import pytest

import sys, pathlib
_root = str(pathlib.Path(__file__).parent.parent)
if _root not in sys.path:
    sys.path.insert(0, _root)

from tests.fixtures.db_mocks import MockDatabase

from sheet2sql import cli, pipeline
from sheet2sql.configs.config import ExecutionConfig
from sheet2sql.configs.exceptions import ConfigError
from sheet2sql.loaders.checkpoint import CheckpointStore
from sheet2sql.loaders.drivers import MSSQLDialect
from sheet2sql.loaders.execute_log import count_fail_lines
from sheet2sql.models.models import RunStatus


# ============================================================================
# Helpers
# ============================================================================

TEMPLATE = (
    "INSERT INTO dbo.People (Id, Name, Active) "
    "VALUES (<Id, int>, <Name, nvarchar(50)>, <Active, bit>)"
)
CONN_STR = "Server=db01;Database=Staging;Trusted_Connection=yes"


def make_config(tmp_path, **kwargs) -> ExecutionConfig:
    defaults = dict(
        checkpoint_path=tmp_path / "checkpoint.txt",
        execute_log_path=tmp_path / "execute.log",
        dialect="mssql",
        rowlock_hint=False,
        connection_retry_delay_seconds=0,
        batch_retry_delay_seconds=0,
        progress_interval_seconds=0,
    )
    defaults.update(kwargs)
    return ExecutionConfig(**defaults)


def make_rows(n: int, bad: set[int] = frozenset(), unformattable: set[int] = frozenset()) -> list[dict]:
    return [
        {
            "Id": i,
            "Name": "BAD" if i in bad else f"name{i}",
            "Active": "maybe" if i in unformattable else (i % 2 == 0),
        }
        for i in range(n)
    ]


def write_csv(path: Path, rows: list[list[str]]) -> None:
    with open(path, "w", encoding="utf-8-sig", newline="") as f:
        writer = csv.writer(f)
        for row in rows:
            writer.writerow(row)


def people_csv(path: Path, n: int = 6, unformattable: set[int] = frozenset(),
               drop_link: set[int] = frozenset()) -> Path:
    rows = [["Id", "Name", "Active"]]
    for i in range(n):
        name = "DROP-LINK" if i in drop_link else f"name{i}"
        rows.append([str(i), name, "maybe" if i in unformattable else "yes"])
    write_csv(path, rows)
    return path


class RaisesAt(list):
    def __init__(self, rows, index, error=MemoryError):
        super().__init__(rows)
        self._index = index
        self._error = error

    def __getitem__(self, key):
        if key == self._index:
            raise self._error()
        return super().__getitem__(key)


@pytest.fixture
def db(monkeypatch):
    """Route every dialect connection to one MockDatabase."""
    database = MockDatabase()
    monkeypatch.setattr(
        MSSQLDialect, "connect",
        lambda self, conn_str, *, command_timeout: database.connect(conn_str),
    )
    return database


def cli_args(tmp_path, *args) -> list[str]:
    return [
        *args,
        "--checkpoint", str(tmp_path / "cp.txt"),
        "--log", str(tmp_path / "execute.log"),
        "--no-rowlock",
    ]


# ============================================================================
# pipeline.execute
# ============================================================================

class TestExecute:
    def test_safe_round_trip(self, tmp_path):
        db = MockDatabase()
        config = make_config(tmp_path)
        report = pipeline.execute(make_rows(80), TEMPLATE, [], CONN_STR, config, connect=db.connect)
        assert report.status is RunStatus.COMPLETED
        assert (report.inserted, report.failed, report.fatal_error) == (80, 0, None)
        assert db.committed_count == 80
        assert CheckpointStore(config.checkpoint_path).read() == 80
        log = config.execute_log_path.read_text()
        assert "Mode: safe, Total rows: 80, Start row: 0" in log
        assert "Session end: Inserted: 80, Failed: 0" in log

    def test_chunk_and_offset_progress(self, tmp_path):
        db = MockDatabase()
        calls = []
        report = pipeline.execute(
            make_rows(50), TEMPLATE, [], CONN_STR, make_config(tmp_path),
            start_row=10, chunk_size=20, connect=db.connect,
            progress=lambda done, total: calls.append((done, total)),
        )
        assert report.inserted == 20
        assert (report.start_row, report.end_row) == (10, 30)
        assert calls[-1] == (30, 50)
        assert "Skipped rows 0 to 9" in (tmp_path / "execute.log").read_text()

    def test_resume_from_checkpoint(self, tmp_path):
        db = MockDatabase()
        config = make_config(tmp_path)
        CheckpointStore(config.checkpoint_path).write(60)
        report = pipeline.execute(make_rows(100), TEMPLATE, [], CONN_STR, config,
                                  resume=True, connect=db.connect)
        assert report.start_row == 60
        assert report.inserted == 40

    def test_resume_without_checkpoint_uses_start_row(self, tmp_path):
        db = MockDatabase()
        report = pipeline.execute(make_rows(10), TEMPLATE, [], CONN_STR, make_config(tmp_path),
                                  start_row=4, resume=True, connect=db.connect)
        assert report.inserted == 6

    def test_resume_bad_checkpoint(self, tmp_path):
        config = make_config(tmp_path)
        config.checkpoint_path.write_text("not a number")
        with pytest.raises(ConfigError):
            pipeline.execute(make_rows(3), TEMPLATE, [], CONN_STR, config,
                             resume=True, connect=MockDatabase().connect)

    def test_unknown_mode(self, tmp_path):
        with pytest.raises(ConfigError, match="Unknown mode"):
            pipeline.execute(make_rows(3), TEMPLATE, [], CONN_STR, make_config(tmp_path), mode="turbo")

    def test_parallel(self, tmp_path):
        db = MockDatabase(fail_on=["N'BAD'"])
        config = make_config(tmp_path, max_workers=3, min_parallel_chunk_rows=100)
        report = pipeline.execute(make_rows(300, bad={10, 250}), TEMPLATE, [], CONN_STR, config,
                                  mode="parallel", connect=db.connect)
        assert report.status is RunStatus.COMPLETED
        assert report.inserted == 298
        assert [f.row_index for f in report.failed_rows] == [10, 250]
        assert len(report.chunks) == 3
        assert count_fail_lines(config.execute_log_path) == 2
        assert not config.checkpoint_path.exists()

    def test_memory_error_boundary(self, tmp_path):
        db = MockDatabase()
        config = make_config(tmp_path, batch_size=10)
        report = pipeline.execute(RaisesAt(make_rows(100), 30), TEMPLATE, [], CONN_STR, config,
                                  connect=db.connect)
        assert report.status is RunStatus.FATAL
        assert report.resume_row == 30
        assert "Out of memory" in report.fatal_error
        assert db.committed_count == 30
        assert "[ERROR]" in config.execute_log_path.read_text()

    @pytest.mark.parametrize("start_row", [0, 20])
    def test_fresh_run_replaces_stale_checkpoint(self, tmp_path, start_row):
        config = make_config(tmp_path, batch_size=10, checkpoint_interval=50)
        CheckpointStore(config.checkpoint_path).write(90)
        with pytest.raises(KeyboardInterrupt):
            pipeline.execute(RaisesAt(make_rows(100), 30, KeyboardInterrupt), TEMPLATE, [],
                             CONN_STR, config, start_row=start_row, connect=MockDatabase().connect)
        assert CheckpointStore(config.checkpoint_path).read() == start_row

    def test_parallel_resume_ignores_checkpoint(self, tmp_path, caplog):
        db = MockDatabase()
        config = make_config(tmp_path, max_workers=2, min_parallel_chunk_rows=50)
        CheckpointStore(config.checkpoint_path).write(70)
        report = pipeline.execute(make_rows(100), TEMPLATE, [], CONN_STR, config,
                                  mode="parallel", resume=True, connect=db.connect)
        assert report.start_row == 0
        assert report.inserted == 100
        assert not config.checkpoint_path.exists()
        assert "--resume ignored" in caplog.text


# ============================================================================
# pipeline.validate / generate_script / execute_script
# ============================================================================

class TestValidate:
    def test_issues(self, tmp_path):
        result = pipeline.validate(make_rows(10, unformattable={4}), TEMPLATE, [], make_config(tmp_path))
        assert not result.ok
        assert result.rows_checked == 10
        assert [i.row_index for i in result.issues] == [4]
        assert result.issues[0].row_number == 6

    def test_too_long(self, tmp_path):
        config = make_config(tmp_path, max_statement_length=60)
        result = pipeline.validate(make_rows(2), TEMPLATE, [], config)
        assert len(result.issues) == 2
        assert "Generated SQL too long" in result.issues[0].message

    def test_clean(self, tmp_path):
        assert pipeline.validate(make_rows(5), TEMPLATE, [], make_config(tmp_path)).ok

    def test_cancelled(self, tmp_path):
        cancel = threading.Event()
        cancel.set()
        result = pipeline.validate(make_rows(5), TEMPLATE, [], make_config(tmp_path), cancel=cancel)
        assert result.cancelled
        assert not result.ok


class TestScripts:
    def test_single_file(self, tmp_path):
        out = tmp_path / "out" / "people.sql"
        config = make_config(tmp_path, rowlock_hint=True)
        result = pipeline.generate_script(make_rows(3), TEMPLATE, [], out, config)
        assert result.files == [out]
        assert result.statements == 3
        lines = out.read_text(encoding="utf-8").splitlines()
        assert lines[0] == "INSERT INTO dbo.People (Id, Name, Active) VALUES (0, N'name0', 1);"
        assert all("ROWLOCK" not in line for line in lines)

    def test_part_files(self, tmp_path):
        out = tmp_path / "people.sql"
        result = pipeline.generate_script(make_rows(5), TEMPLATE, [], out, make_config(tmp_path),
                                          statements_per_file=2)
        assert [p.name for p in result.files] == [
            "people_part001.sql", "people_part002.sql", "people_part003.sql",
        ]
        assert len(result.files[2].read_text().splitlines()) == 1

    def test_skips_unformattable(self, tmp_path):
        out = tmp_path / "people.sql"
        result = pipeline.generate_script(make_rows(4, unformattable={1}), TEMPLATE, [], out,
                                          make_config(tmp_path))
        assert result.statements == 3
        assert [i.row_index for i in result.issues] == [1]

    def test_execute_script(self, tmp_path):
        out = tmp_path / "people.sql"
        config = make_config(tmp_path)
        pipeline.generate_script(make_rows(5), TEMPLATE, [], out, config)
        db = MockDatabase()
        report = pipeline.execute_script(out.read_text(), CONN_STR, config,
                                         start_statement=2, connect=db.connect)
        assert report.inserted == 3
        assert db.committed[0].startswith("INSERT INTO dbo.People (Id, Name, Active) VALUES (2,")

    def test_execute_script_keeps_row_checkpoint(self, tmp_path):
        out = tmp_path / "people.sql"
        config = make_config(tmp_path)
        pipeline.generate_script(make_rows(5), TEMPLATE, [], out, config)
        CheckpointStore(config.checkpoint_path).write(40)
        pipeline.execute_script(out.read_text(), CONN_STR, config, connect=MockDatabase().connect)
        assert CheckpointStore(config.checkpoint_path).read() == 40
        assert CheckpointStore(tmp_path / "checkpoint.script.txt").read() == 5


# ============================================================================
# cli.py
# ============================================================================

class TestCli:
    @pytest.fixture(autouse=True)
    def _quiet_env(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("DB_DIALECT", "mssql")
        monkeypatch.setenv("CONNECTION_RETRY_DELAY", "0")
        monkeypatch.setenv("BATCH_RETRY_DELAY", "0")
        monkeypatch.setenv("PROGRESS_INTERVAL", "0")

    def test_validate_ok(self, tmp_path, capsys):
        source = people_csv(tmp_path / "people.csv")
        code = cli.main(["validate", str(source), "--template", TEMPLATE])
        assert code == cli.EXIT_OK
        assert "Validation passed: 6 row(s) checked" in capsys.readouterr().out

    def test_validate_issues(self, tmp_path, capsys):
        source = people_csv(tmp_path / "people.csv", unformattable={1})
        code = cli.main(["validate", str(source), "--template", TEMPLATE])
        assert code == cli.EXIT_FAILED
        out = capsys.readouterr().out
        assert "Validation failed: 1 issue(s)" in out
        assert "Row 3:" in out

    def test_execute(self, tmp_path, db):
        source = people_csv(tmp_path / "people.csv")
        code = cli.main(cli_args(tmp_path, "execute", str(source), "--template", TEMPLATE,
                                 "--connection", CONN_STR, "--batch-size", "4"))
        assert code == cli.EXIT_OK
        assert db.committed_count == 6
        assert db.connect_calls[0].endswith("Connection Timeout=120")
        assert CheckpointStore(tmp_path / "cp.txt").read() == 6

    def test_execute_stops_on_validation(self, tmp_path, db):
        source = people_csv(tmp_path / "people.csv", unformattable={2})
        code = cli.main(cli_args(tmp_path, "execute", str(source), "--template", TEMPLATE,
                                 "--connection", CONN_STR))
        assert code == cli.EXIT_FAILED
        assert db.connect_calls == []

    def test_execute_resume(self, tmp_path, db):
        source = people_csv(tmp_path / "people.csv")
        CheckpointStore(tmp_path / "cp.txt").write(4)
        code = cli.main(cli_args(tmp_path, "execute", str(source), "--template", TEMPLATE,
                                 "--connection", CONN_STR, "--resume"))
        assert code == cli.EXIT_OK
        assert db.committed_count == 2

    def test_execute_lost_connection(self, tmp_path, db, capsys):
        db.disconnect_on = ["DROP-LINK"]
        source = people_csv(tmp_path / "people.csv", n=10, drop_link={7})
        code = cli.main(cli_args(tmp_path, "execute", str(source), "--template", TEMPLATE,
                                 "--connection", CONN_STR, "--batch-size", "5"))
        assert code == cli.EXIT_FAILED
        out = capsys.readouterr().out
        assert "STOPPED" in out
        assert "Resume   : --start-row 5" in out

    def test_config_env_reference(self, tmp_path, db, monkeypatch):
        for key in ("DB_CONNECTION", "db_dev_connection", "db_uat_connection"):
            monkeypatch.setenv(key, "unset")
        config_file = tmp_path / "config.dat"
        config_file.write_text(
            "db_dev_connection='Server=dev-sql;Database=Staging'\n"
            "db_uat_connection='Server=uat-sql;Database=Staging'\n"
            "DB_CONNECTION=db_{env}_connection\n"
        )
        source = people_csv(tmp_path / "people.csv", n=2)
        code = cli.main(["--config", str(config_file), "--env", "uat",
                         *cli_args(tmp_path, "execute", str(source), "--template", TEMPLATE)])
        assert code == cli.EXIT_OK
        assert db.connect_calls[0].startswith("Server=uat-sql;Database=Staging")

    def test_mapping_file(self, tmp_path, db):
        source = tmp_path / "people.csv"
        write_csv(source, [["Code", "Label"], ["1.0", "a"], ["2", "b"]])
        mapping = tmp_path / "mapping.json"
        mapping.write_text(json.dumps([
            {"column": "Gender", "condition": "Code", "value_map": "1=N'Man';2=N'Woman'"},
            {"column": "Name", "source": "Label"},
        ]))
        template = "INSERT INTO p (Gender, Name) VALUES (<Gender, nvarchar(10)>, <Name, nvarchar(10)>)"
        code = cli.main(cli_args(tmp_path, "execute", str(source), "--template", template,
                                 "--mapping", str(mapping), "--connection", CONN_STR))
        assert code == cli.EXIT_OK
        assert sorted(db.committed) == [
            "INSERT INTO p (Gender, Name) VALUES (N'Man', N'a');",
            "INSERT INTO p (Gender, Name) VALUES (N'Woman', N'b');",
        ]

    def test_generate(self, tmp_path):
        source = people_csv(tmp_path / "people.csv", n=5)
        template_file = tmp_path / "insert.sql"
        template_file.write_text(TEMPLATE)
        out = tmp_path / "out.sql"
        code = cli.main(["generate", str(source), "--template-file", str(template_file),
                         "--output", str(out), "--per-file", "3"])
        assert code == cli.EXIT_OK
        assert (tmp_path / "out_part001.sql").exists()
        assert (tmp_path / "out_part002.sql").exists()

    def test_missing_template_file(self, tmp_path, capsys):
        source = people_csv(tmp_path / "people.csv")
        code = cli.main(["validate", str(source), "--template-file", str(tmp_path / "missing.sql")])
        assert code == cli.EXIT_CONFIG
        assert "Cannot read template file" in capsys.readouterr().err

    def test_missing_connection(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DB_CONNECTION", "")
        source = people_csv(tmp_path / "people.csv")
        code = cli.main(cli_args(tmp_path, "execute", str(source), "--template", TEMPLATE))
        assert code == cli.EXIT_CONFIG

    def test_unsupported_source(self, tmp_path):
        source = tmp_path / "people.json"
        source.write_text("[]")
        assert cli.main(["validate", str(source), "--template", TEMPLATE]) == cli.EXIT_CONFIG
