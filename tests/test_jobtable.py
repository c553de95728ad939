from __future__ import annotations

from pathlib import Path

import pytest

from pgcrond.errors import JobTableUnavailable
from pgcrond.jobtable import (
    DEFAULT_MAILTO,
    DEFAULT_PSQL,
    DEFAULT_SCRIPTHOME,
    JobType,
    parse_job_table,
    read_job_table,
)

TABLE = """\
# sample table
PGHOST = db1
PGDATABASE="app"
MAILTO = dba@example.com   # trailing comment

*/5 * * * *  -  5433  -  alice  reports,  DIRECT  DELETE FROM t   WHERE  x = 1
0 3 * * *    -  -     -  -      -         psql    nightly.sql
"""


def test_parse_variables_and_entries() -> None:
    table = parse_job_table(TABLE)
    assert table.variables["PGHOST"] == "db1"
    assert table.variables["PGDATABASE"] == "app"
    assert table.variables["MAILTO"] == "dba@example.com"
    assert len(table.entries) == 2

    first = table.entries[0]
    assert first.timespec == "*/5 * * * *"
    assert (first.server, first.port, first.database, first.user) == ("-", "5433", "-", "alice")
    assert first.schema == "reports,"
    assert first.kind is JobType.DIRECT
    assert first.command == "DELETE FROM t WHERE x = 1"
    assert first.line_number == 6


def test_last_assignment_wins_regardless_of_position() -> None:
    table = parse_job_table(
        "PGUSER = first\n"
        "* * * * * - - db - - sh echo hi\n"
        "PGUSER = second\n"
    )
    assert table.variables["PGUSER"] == "second"
    assert len(table.entries) == 1


def test_password_variable_is_dropped() -> None:
    table = parse_job_table("PGPASSWORD = secret\nPGUSER = bob\n")
    assert "PGPASSWORD" not in table.variables
    assert table.variables["PGUSER"] == "bob"


def test_defaults_and_scripthome_normalization() -> None:
    table = parse_job_table("SCRIPTHOME = /srv/jobs\nMAILTO =\n")
    assert table.variables["SCRIPTHOME"] == "/srv/jobs/"
    assert table.variables["MAILTO"] == DEFAULT_MAILTO
    assert table.variables["PSQL"] == DEFAULT_PSQL

    empty = parse_job_table("")
    assert empty.variables["SCRIPTHOME"] == DEFAULT_SCRIPTHOME
    assert empty.entries == ()


def test_line_with_eleven_tokens_is_dropped() -> None:
    table = parse_job_table("* * * * * - - db user - sh\n")
    assert table.entries == ()


def test_comment_only_and_blank_lines_are_skipped() -> None:
    table = parse_job_table("\n   \n# * * * * * - - db u - sh echo\n")
    assert table.entries == ()


def test_variables_are_read_only() -> None:
    table = parse_job_table("PGUSER = bob\n")
    with pytest.raises(TypeError):
        table.variables["PGUSER"] = "eve"  # type: ignore[index]


def test_reparse_is_deterministic() -> None:
    assert parse_job_table(TABLE) == parse_job_table(TABLE)


def test_job_type_is_case_insensitive() -> None:
    assert JobType.parse("Python") is JobType.PYTHON
    assert JobType.parse("SH") is JobType.SHELL
    assert JobType.parse("perl") is None


def test_read_job_table_missing_file(tmp_path: Path) -> None:
    with pytest.raises(JobTableUnavailable):
        read_job_table(tmp_path / "missing")


def test_read_job_table_from_file(tmp_path: Path) -> None:
    path = tmp_path / "pgcrontab"
    path.write_text(TABLE, encoding="utf-8")
    assert len(read_job_table(path).entries) == 2
