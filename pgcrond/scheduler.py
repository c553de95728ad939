from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Callable, List, Optional

from croniter import CroniterBadCronError, croniter

from pgcrond.config import Settings
from pgcrond.errors import JobTableUnavailable
from pgcrond.jobtable import JobEntry, JobTable, read_job_table
from pgcrond.runner import JobDispatcher, JobProcess

logger = logging.getLogger(__name__)

TimeMatcher = Callable[[str, datetime], Optional[bool]]


def timespec_matches(timespec: str, when: datetime) -> Optional[bool]:
    """True/False for a valid timespec, None when croniter rejects it."""
    try:
        return bool(croniter.match(timespec, when))
    except (CroniterBadCronError, ValueError):
        return None


def minute_stamp(now: datetime) -> datetime:
    return now.replace(second=0, microsecond=0)


def due_entries(table: JobTable, when: datetime, matcher: TimeMatcher = timespec_matches) -> List[JobEntry]:
    due: List[JobEntry] = []
    for entry in table.entries:
        matched = matcher(entry.timespec, when)
        if matched is None:
            logger.warning('Skipping line %s: invalid timespec "%s".', entry.line_number, entry.timespec)
            continue
        if matched:
            due.append(entry)
    return due


class Scheduler:
    """Minute tick loop: one table-parse-and-dispatch pass per new minute."""

    def __init__(
        self,
        settings: Settings,
        dispatcher: JobDispatcher,
        matcher: TimeMatcher = timespec_matches,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.dispatcher = dispatcher
        self.matcher = matcher
        self.clock = clock
        self.sleep = sleep
        self.last_stamp: Optional[datetime] = None
        self._running = False

    def run_pass(self, when: datetime) -> List[JobProcess]:
        try:
            table = read_job_table(self.settings.crontab)
        except JobTableUnavailable as exc:
            logger.warning("Skipping tick %s: %s", when.strftime("%Y-%m-%d %H:%M"), exc)
            return []

        due = due_entries(table, when, self.matcher)
        logger.info("Tick %s: %s of %s job(s) due.", when.strftime("%Y-%m-%d %H:%M"), len(due), len(table.entries))
        launched: List[JobProcess] = []
        for entry in due:
            process = self.dispatcher.dispatch(table.variables, entry)
            if process is not None:
                launched.append(process)
        return launched

    def tick(self) -> bool:
        self.dispatcher.reap()
        stamp = minute_stamp(self.clock())
        if stamp == self.last_stamp:
            return False
        self.last_stamp = stamp
        self.run_pass(stamp)
        return True

    def stop(self) -> None:
        self._running = False

    def serve_forever(self) -> None:
        self._running = True
        logger.info("Scheduler polling %s every %ss.", self.settings.crontab, self.settings.poll_seconds)
        while self._running:
            self.tick()
            if self._running:
                self.sleep(self.settings.poll_seconds)
