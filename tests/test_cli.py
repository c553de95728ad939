from __future__ import annotations

from pathlib import Path

import pytest

from pgcrond import __version__
from pgcrond.cli import main


def _write_setup(tmp_path: Path, table: str) -> Path:
    crontab = tmp_path / "pgcrontab"
    crontab.write_text(table, encoding="utf-8")
    passfile = tmp_path / "pgpass"
    passfile.write_text("", encoding="utf-8")
    config_path = tmp_path / "pgcrond.yaml"
    config_path.write_text(
        f"crontab: {crontab}\n"
        f"pid_file: {tmp_path / 'pgcrond.pid'}\n"
        f"log_file: {tmp_path / 'pgcrond.log'}\n"
        f"passfile: {passfile}\n",
        encoding="utf-8",
    )
    return config_path


def test_help_and_unknown_command_print_usage(capsys: pytest.CaptureFixture[str]) -> None:
    assert main([]) == 0
    assert "usage: pgcrond" in capsys.readouterr().out
    assert main(["help"]) == 0
    assert "run-once" in capsys.readouterr().out
    assert main(["frobnicate"]) == 0
    assert "usage: pgcrond" in capsys.readouterr().out
    assert main(["frobnicate", "extra"]) == 0
    assert "usage: pgcrond" in capsys.readouterr().out
    assert main(["status", "--verbose"]) == 0
    assert "usage: pgcrond" in capsys.readouterr().out


def test_version(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["version"]) == 0
    assert capsys.readouterr().out.strip() == f"pgcrond {__version__}"


def test_status_when_stopped(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config_path = _write_setup(tmp_path, "")
    assert main(["status", "--config", str(config_path)]) == 1
    assert capsys.readouterr().out.strip() == "Stopped"


def test_stop_when_not_started(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config_path = _write_setup(tmp_path, "")
    (tmp_path / "pgcrond.pid").write_text("999999999\n", encoding="utf-8")
    assert main(["stop", "--config", str(config_path)]) == 1
    assert "pgcrond not started." in capsys.readouterr().out
    assert not (tmp_path / "pgcrond.pid").exists()
    assert "pgcrond not started." in (tmp_path / "pgcrond.log").read_text(encoding="utf-8")


def test_missing_config_reports_error(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["status", "--config", str(tmp_path / "absent.yaml")]) == 1
    assert "Error: Config file not found" in capsys.readouterr().out


def test_check_lists_entries(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config_path = _write_setup(
        tmp_path,
        "PGDATABASE = app\n"
        "PGUSER = alice\n"
        "0 3 * * *  - - - - -  direct  VACUUM ANALYZE\n"
        "0 4 * * *  - - - - -  perl  legacy.pl\n"
        "99 * * * * - - - - -  sh  echo bad\n",
    )
    assert main(["check", "--config", str(config_path)]) == 0
    out = capsys.readouterr().out
    assert "Entries: 3" in out
    assert "- line 3: [0 3 * * *] direct VACUUM ANALYZE" in out
    assert "unknown (perl)" in out
    assert "rewrite the script as a python job" in out
    assert "(invalid timespec) echo bad" in out


def test_check_missing_table(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config_path = _write_setup(tmp_path, "")
    (tmp_path / "pgcrontab").unlink()
    assert main(["check", "--config", str(config_path)]) == 1
    assert "Error: Unable to read job table" in capsys.readouterr().out


def test_run_once_dispatches_due_jobs(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    marker = tmp_path / "marker"
    config_path = _write_setup(
        tmp_path,
        "PGDATABASE = app\n"
        "PGUSER = alice\n"
        f"0 10 * * *  - - - - -  sh  echo $PGDATABASE:$PGUSER > {marker}\n"
        f"0 11 * * *  - - - - -  sh  touch {tmp_path / 'not-due'}\n",
    )
    assert main(["run-once", "--config", str(config_path), "--at", "2026-01-05 10:00"]) == 0
    assert "Dispatched 1 job(s) for 2026-01-05 10:00." in capsys.readouterr().out
    assert marker.read_text(encoding="utf-8").strip() == "app:alice"
    assert not (tmp_path / "not-due").exists()


def test_run_once_rejects_bad_timestamp(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config_path = _write_setup(tmp_path, "")
    assert main(["run-once", "--config", str(config_path), "--at", "tomorrow"]) == 1
    assert "--at must be" in capsys.readouterr().out


def test_start_fails_when_pid_file_cannot_be_written(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config_path = tmp_path / "pgcrond.yaml"
    config_path.write_text(
        f"crontab: {tmp_path / 'pgcrontab'}\n"
        f"pid_file: {tmp_path / 'missing' / 'pgcrond.pid'}\n"
        "log_file: ''\n",
        encoding="utf-8",
    )
    assert main(["start", "--config", str(config_path)]) == 1
    assert "Unable to write PID file" in capsys.readouterr().out
    assert not (tmp_path / "missing").exists()
