"""
Job execution.

Every due job runs in its own forked process. Inside that process the DSN
and password are resolved, the job body is executed by the handler for its
type, and the notification policy decides whether the output is mailed.
"""

from __future__ import annotations

import importlib.util
import io
import logging
import os
import signal
import subprocess
from contextlib import redirect_stderr, redirect_stdout
from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import psycopg2

from pgcrond.config import Settings
from pgcrond.credentials import (
    PG_VARIABLES,
    ResolvedDSN,
    job_variables,
    lookup_password,
    resolve_dsn,
)
from pgcrond.errors import JobFailure
from pgcrond.jobtable import DEFAULT_PSQL, DEFAULT_SCRIPTHOME, JobEntry, JobType
from pgcrond.notify import Notifier, SmtpNotifier, reportable_output, send_report

logger = logging.getLogger(__name__)

SHELL = "/bin/sh"
SCRIPT_ENTRY_POINT = "run"
SQL_ERROR_PREFIX = "Error performing SQL operation: "
CONNECT_ERROR_PREFIX = "Error connecting to database: "
SCRIPT_ERROR_PREFIX = "Error executing Python script: "
INVALID_SESSION_FILE = "Invalid PostgreSQL session file provided"
INVALID_SCRIPT_FILE = "Invalid Python script file provided"
UNRUNNABLE_MESSAGE = "Unable to resolve a database and user for this job; it was not run."
UNKNOWN_TYPE_MESSAGE = 'Unknown job type "{job_type}"; supported types: {supported}.'
PERL_HINT = "perl jobs are no longer supported; rewrite the script as a python job exposing run()."
SCRUBBED_VARIABLES = PG_VARIABLES + ("PGPASSWORD", "PGOPTIONS")

ConnectFn = Callable[..., Any]
ProcessRunner = Callable[[Sequence[str], Mapping[str, str], Optional[int]], str]


@dataclass(frozen=True)
class JobContext:
    variables: Mapping[str, str]
    entry: JobEntry
    dsn: ResolvedDSN
    timeout: Optional[int] = None


@dataclass
class JobResult:
    entry: JobEntry
    output: str = ""
    reported: bool = False
    skipped: bool = False
    error: Optional[str] = None


@dataclass
class JobProcess:
    pid: int
    entry: JobEntry
    exit_status: Optional[int] = field(default=None)


def connect(dsn: ResolvedDSN, autocommit: bool = False) -> Any:
    kwargs: Dict[str, Any] = {
        "host": dsn.server,
        "dbname": dsn.database,
        "user": dsn.username,
    }
    if dsn.port is not None:
        kwargs["port"] = dsn.port
    if dsn.password is not None:
        kwargs["password"] = dsn.password
    if dsn.schemas:
        kwargs["options"] = search_path_option(dsn.schemas)
    connection = psycopg2.connect(**kwargs)
    connection.autocommit = autocommit
    return connection


def search_path_option(schemas: Sequence[str]) -> str:
    return "-c search_path=" + ",".join(schemas)


def child_environment(overrides: Mapping[str, str]) -> Dict[str, str]:
    """Daemon environment without stale PG* values, plus the job's overrides."""
    env = {key: value for key, value in os.environ.items() if key not in SCRUBBED_VARIABLES}
    env.update(overrides)
    return env


def run_process(argv: Sequence[str], env: Mapping[str, str], timeout: Optional[int] = None) -> str:
    """Run argv with stdin on /dev/null and return stdout and stderr combined."""
    try:
        result = subprocess.run(
            list(argv),
            env=dict(env),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        raise JobFailure(f"Job timed out after {timeout} seconds") from exc
    except OSError as exc:
        raise JobFailure(f"Unable to run {argv[0]}: {exc}") from exc
    return result.stdout or ""


def unknown_type_message(job_type: str) -> str:
    message = UNKNOWN_TYPE_MESSAGE.format(
        job_type=job_type,
        supported=", ".join(kind.value for kind in JobType),
    )
    if job_type.lower() == "perl":
        message += " " + PERL_HINT
    return message


def resolve_script_path(command: str, scripthome: str) -> Path:
    if command.startswith("/"):
        return Path(command)
    return Path(scripthome + command)


def is_readable_file(path: Path) -> bool:
    return path.is_file() and os.access(path, os.R_OK)


def load_script(path: Path, line_number: int) -> Callable[..., Any]:
    spec = importlib.util.spec_from_file_location(f"pgcrond_job_{line_number}", path)
    if spec is None or spec.loader is None:
        raise ImportError(f"cannot load {path}")
    module: ModuleType = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    entry_point = getattr(module, SCRIPT_ENTRY_POINT, None)
    if not callable(entry_point):
        raise AttributeError(f"{path} does not define {SCRIPT_ENTRY_POINT}()")
    return entry_point


class JobRunner:
    """Runs one job body in the current process."""

    def __init__(
        self,
        settings: Settings,
        notifier: Optional[Notifier] = None,
        connect_fn: ConnectFn = connect,
        process_runner: ProcessRunner = run_process,
    ):
        self.settings = settings
        self.notifier = notifier if notifier is not None else SmtpNotifier(settings.smtp)
        self.connect = connect_fn
        self.run_process = process_runner
        self._handlers: Dict[JobType, Callable[[JobContext], str]] = {
            JobType.DIRECT: self._run_direct,
            JobType.PSQL: self._run_psql,
            JobType.PYTHON: self._run_python,
            JobType.SHELL: self._run_shell,
        }

    def run_job(self, variables: Mapping[str, str], entry: JobEntry) -> JobResult:
        kind = entry.kind
        if kind is None:
            logger.warning('Skipping line %s: unknown job type "%s".', entry.line_number, entry.job_type)
            message = unknown_type_message(entry.job_type)
            reported = self._report(variables, entry, resolve_dsn(variables, entry), message)
            return JobResult(entry=entry, skipped=True, reported=reported)

        dsn = resolve_dsn(variables, entry)
        if dsn is None:
            logger.info("Skipping line %s: database or user could not be resolved.", entry.line_number)
            reported = False
            if self.settings.policy.report_unrunnable:
                reported = self._report(variables, entry, None, UNRUNNABLE_MESSAGE)
            return JobResult(entry=entry, skipped=True, reported=reported)

        try:
            dsn = dsn.with_password(lookup_password(dsn, self.settings.passfile))
            context = JobContext(
                variables=job_variables(variables, dsn),
                entry=entry,
                dsn=dsn,
                timeout=self.settings.policy.job_timeout,
            )
            output = self._handlers[kind](context)
        except JobFailure as exc:
            logger.error("Job on line %s failed: %s", entry.line_number, exc.message)
            reported = self._report(variables, entry, dsn, exc.message)
            return JobResult(entry=entry, reported=reported, error=exc.message)

        message = reportable_output(kind, output)
        reported = self._report(variables, entry, dsn, message) if message else False
        return JobResult(entry=entry, output=output, reported=reported)

    def _report(
        self,
        variables: Mapping[str, str],
        entry: JobEntry,
        dsn: Optional[ResolvedDSN],
        message: str,
    ) -> bool:
        return send_report(self.notifier, self.settings.smtp.sender, variables, entry, dsn, message)

    def _run_direct(self, context: JobContext) -> str:
        try:
            connection = self.connect(context.dsn)
        except psycopg2.Error as exc:
            raise JobFailure(SQL_ERROR_PREFIX + str(exc).strip()) from exc
        try:
            with connection.cursor() as cursor:
                cursor.execute(context.entry.command)
            connection.commit()
        except psycopg2.Error as exc:
            try:
                connection.rollback()
            except psycopg2.Error as rollback_exc:
                logger.debug("Rollback failed on line %s: %s", context.entry.line_number, rollback_exc)
            raise JobFailure(SQL_ERROR_PREFIX + str(exc).strip()) from exc
        finally:
            connection.close()
        return ""

    def _run_psql(self, context: JobContext) -> str:
        path = resolve_script_path(context.entry.command, context.variables.get("SCRIPTHOME", DEFAULT_SCRIPTHOME))
        if not is_readable_file(path):
            raise JobFailure(INVALID_SESSION_FILE)

        dsn = context.dsn
        argv: List[str] = [
            context.variables.get("PSQL", DEFAULT_PSQL),
            "-X",
            "-U",
            dsn.username,
            "-d",
            dsn.database,
        ]
        if dsn.server:
            argv.extend(["-h", dsn.server])
        if dsn.port:
            argv.extend(["-p", dsn.port])
        argv.extend(["-f", str(path)])

        overrides: Dict[str, str] = {}
        if dsn.password is not None:
            overrides["PGPASSWORD"] = dsn.password
        if dsn.schemas:
            overrides["PGOPTIONS"] = search_path_option(dsn.schemas)
        return self.run_process(argv, child_environment(overrides), context.timeout)

    def _run_python(self, context: JobContext) -> str:
        path = resolve_script_path(context.entry.command, context.variables.get("SCRIPTHOME", DEFAULT_SCRIPTHOME))
        if not is_readable_file(path):
            raise JobFailure(INVALID_SCRIPT_FILE)

        try:
            connection = self.connect(context.dsn, autocommit=True)
        except psycopg2.Error as exc:
            raise JobFailure(CONNECT_ERROR_PREFIX + str(exc).strip()) from exc
        printed = io.StringIO()
        try:
            with redirect_stdout(printed), redirect_stderr(printed):
                entry_point = load_script(path, context.entry.line_number)
                result = entry_point(dict(context.variables), context.dsn, context.entry, connection)
        except (Exception, SystemExit) as exc:
            message = SCRIPT_ERROR_PREFIX + str(exc)
            if printed.getvalue():
                message += "\n\n" + printed.getvalue()
            raise JobFailure(message) from exc
        finally:
            connection.close()
        returned = "" if result is None else str(result)
        return "\n".join(part for part in (printed.getvalue().rstrip("\n"), returned) if part)

    def _run_shell(self, context: JobContext) -> str:
        overrides = {key: context.variables[key] for key in PG_VARIABLES if key in context.variables}
        return self.run_process([SHELL, "-c", context.entry.command], child_environment(overrides), context.timeout)


def _job_process_main(runner: JobRunner, variables: Mapping[str, str], entry: JobEntry) -> int:
    signal.signal(signal.SIGINT, signal.SIG_DFL)
    signal.signal(signal.SIGTERM, signal.SIG_DFL)
    signal.signal(signal.SIGPIPE, signal.SIG_IGN)
    devnull = os.open(os.devnull, os.O_RDONLY)
    os.dup2(devnull, 0)
    os.close(devnull)
    try:
        runner.run_job(variables, entry)
    except Exception:
        logger.exception("Unexpected error in job on line %s", entry.line_number)
        return 1
    return 0


class JobDispatcher:
    """Forks one process per due job and reaps them without waiting."""

    def __init__(self, runner: JobRunner):
        self.runner = runner
        self._children: Dict[int, JobProcess] = {}

    def dispatch(self, variables: Mapping[str, str], entry: JobEntry) -> Optional[JobProcess]:
        snapshot = dict(variables)
        try:
            pid = os.fork()
        except OSError as exc:
            logger.error("Unable to fork job on line %s: %s", entry.line_number, exc)
            return None

        if pid == 0:
            status = 1
            try:
                status = _job_process_main(self.runner, snapshot, entry)
            finally:
                logging.shutdown()
                os._exit(status)

        process = JobProcess(pid=pid, entry=entry)
        self._children[pid] = process
        logger.info(
            "Dispatched %s job on line %s (pid=%s): %s",
            entry.job_type.lower(),
            entry.line_number,
            pid,
            entry.command,
        )
        return process

    @property
    def running(self) -> List[JobProcess]:
        return list(self._children.values())

    def reap(self) -> List[JobProcess]:
        finished: List[JobProcess] = []
        for pid, process in list(self._children.items()):
            try:
                waited, status = os.waitpid(pid, os.WNOHANG)
            except ChildProcessError:
                waited, status = pid, 0
            if waited == 0:
                continue
            process.exit_status = status
            finished.append(process)
            del self._children[pid]
        return finished

    def wait_all(self) -> List[JobProcess]:
        finished: List[JobProcess] = []
        for pid, process in list(self._children.items()):
            try:
                _, status = os.waitpid(pid, 0)
            except ChildProcessError:
                status = 0
            process.exit_status = status
            finished.append(process)
            del self._children[pid]
        return finished

    def terminate_all(self) -> None:
        for process in self.running:
            try:
                os.kill(process.pid, signal.SIGTERM)
                logger.info("Terminated job on line %s (pid=%s).", process.entry.line_number, process.pid)
            except ProcessLookupError:
                pass
        self.reap()
