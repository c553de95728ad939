"""
pgcrond command line.

    pgcrond [--config FILE] {start|stop|restart|status|version|help}
    pgcrond [--config FILE] run-once [--at "YYYY-MM-DD HH:MM"]
    pgcrond [--config FILE] check
"""

from __future__ import annotations

import argparse
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from pgcrond import __version__
from pgcrond.config import DEFAULT_CONFIG, Settings, load_settings, setup_logging
from pgcrond.daemon import DaemonController
from pgcrond.errors import JobTableUnavailable, PgcrondError
from pgcrond.jobtable import read_job_table
from pgcrond.runner import JobDispatcher, JobRunner, unknown_type_message
from pgcrond.scheduler import Scheduler, minute_stamp, timespec_matches

logger = logging.getLogger("pgcrond")

COMMANDS = ("start", "stop", "restart", "status", "version", "help", "run-once", "check")
AT_FORMAT = "%Y-%m-%d %H:%M"


def build_scheduler(settings: Settings) -> Scheduler:
    return Scheduler(settings, JobDispatcher(JobRunner(settings)))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pgcrond",
        description="pgcrond: a PostgreSQL job scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "commands:\n"
            "  start      start the daemon\n"
            "  stop       stop the daemon\n"
            "  restart    stop, then start the daemon\n"
            "  status     show whether the daemon is running\n"
            "  version    show the version\n"
            "  run-once   run one scheduling pass and wait for its jobs\n"
            "  check      parse the job table and list its entries\n"
            "  help       show this message"
        ),
    )
    parser.add_argument("command", nargs="?", help="command to run")
    parser.add_argument(
        "--config",
        type=Path,
        help=f"Path to daemon config (default: {DEFAULT_CONFIG}, optional)",
    )
    parser.add_argument("--foreground", action="store_true", help="start: do not detach")
    parser.add_argument("--at", help=f'run-once: minute to evaluate, "{AT_FORMAT.replace("%", "%%")}" (default: now)')
    return parser


def command_status(controller: DaemonController) -> int:
    pid = controller.status()
    if pid is None:
        print("Stopped")
        return 1
    print(f"pgcrond is running (pid {pid})")
    return 0


def command_run_once(settings: Settings, at: Optional[str]) -> int:
    if at:
        try:
            when = datetime.strptime(at, AT_FORMAT)
        except ValueError as exc:
            raise PgcrondError(f'--at must be "{AT_FORMAT}", got "{at}".') from exc
    else:
        when = minute_stamp(datetime.now())

    scheduler = build_scheduler(settings)
    launched = scheduler.run_pass(when)
    scheduler.dispatcher.wait_all()
    print(f"Dispatched {len(launched)} job(s) for {when.strftime(AT_FORMAT)}.")
    return 0


def command_check(settings: Settings) -> int:
    try:
        table = read_job_table(settings.crontab)
    except JobTableUnavailable as exc:
        print(f"Error: {exc}")
        return 1

    now = minute_stamp(datetime.now())
    print(f"Job table: {settings.crontab}")
    print(f"Variables: {', '.join(f'{k}={v}' for k, v in sorted(table.variables.items()))}")
    print(f"Entries: {len(table.entries)}")
    for entry in table.entries:
        kind = entry.kind.value if entry.kind else f"unknown ({entry.job_type})"
        valid = timespec_matches(entry.timespec, now) is not None
        print(
            f"- line {entry.line_number}: [{entry.timespec}] {kind}"
            + ("" if valid else " (invalid timespec)")
            + f" {entry.command}"
        )
        if entry.kind is None:
            print(f"    {unknown_type_message(entry.job_type)}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args, extra = parser.parse_known_args(argv)

    if extra or args.command not in COMMANDS or args.command == "help":
        parser.print_help()
        return 0
    if args.command == "version":
        print(f"pgcrond {__version__}")
        return 0

    try:
        settings = load_settings(args.config)
        controller = DaemonController(settings, build_scheduler)
        if args.command == "status":
            return command_status(controller)
        if args.command == "check":
            return command_check(settings)

        setup_logging(settings)
        if args.command == "stop":
            return controller.stop()
        if args.command == "start":
            return controller.start(foreground=args.foreground)
        if args.command == "restart":
            return controller.restart(foreground=args.foreground)
        return command_run_once(settings, args.at)
    except PgcrondError as exc:
        if logger.handlers:
            logger.error(str(exc))
        else:
            print(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
