"""
Daemon lifecycle: start, stop and status around a PID file.

Liveness is always derived from the PID file and the process table; a PID
file naming a dead process is stale and is removed whenever it is checked.
"""

from __future__ import annotations

import logging
import os
import signal
import sys
import time
from pathlib import Path
from typing import Callable, Optional

import psutil

from pgcrond.config import Settings
from pgcrond.errors import DaemonError
from pgcrond.scheduler import Scheduler

logger = logging.getLogger(__name__)

STOP_SIGNAL = signal.SIGINT
STOP_INTERVAL_SECONDS = 1.0
DAEMON_UMASK = 0o027
READY_MESSAGE = "ready"


def process_alive(pid: int) -> bool:
    if not psutil.pid_exists(pid):
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


def read_pid(pid_file: Path) -> Optional[int]:
    try:
        text = pid_file.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise DaemonError(f"Unable to read PID file {pid_file}: {exc}") from exc
    try:
        pid = int(text)
    except ValueError:
        return None
    return pid if pid > 0 else None


def write_pid(pid_file: Path, pid: int) -> None:
    try:
        pid_file.write_text(f"{pid}\n", encoding="utf-8")
    except OSError as exc:
        raise DaemonError(f"Unable to write PID file {pid_file}: {exc}") from exc


def remove_pid(pid_file: Path, pid: Optional[int] = None) -> None:
    """Remove the PID file; with pid given, only if it still names that process."""
    if pid is not None and read_pid(pid_file) != pid:
        return
    try:
        pid_file.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Unable to remove PID file %s: %s", pid_file, exc)


def live_pid(pid_file: Path, is_alive: Callable[[int], bool] = process_alive) -> Optional[int]:
    pid = read_pid(pid_file)
    if pid is not None and is_alive(pid):
        return pid
    if pid_file.exists():
        logger.info("Removing stale PID file %s.", pid_file)
        remove_pid(pid_file)
    return None


def daemonize(ready: Callable[[], None]) -> bool:
    """Detach from the controlling terminal.

    The detached grandchild runs ``ready`` and reports the outcome over a pipe.
    Returns False in the invoking process once the grandchild is ready and
    True in the grandchild. A ``DaemonError`` raised by ``ready`` is raised
    again in the invoking process.
    """
    sys.stdout.flush()
    sys.stderr.flush()
    read_fd, write_fd = os.pipe()
    try:
        pid = os.fork()
    except OSError as exc:
        os.close(read_fd)
        os.close(write_fd)
        raise DaemonError(f"Unable to detach: {exc}") from exc

    if pid > 0:
        os.close(write_fd)
        with os.fdopen(read_fd, "rb") as pipe:
            outcome = pipe.read().decode("utf-8", errors="replace")
        os.waitpid(pid, 0)
        if outcome != READY_MESSAGE:
            raise DaemonError(outcome or "pgcrond exited before it was ready.")
        return False

    os.close(read_fd)
    try:
        os.setsid()
        if os.fork() > 0:
            os._exit(0)
        ready()
    except (OSError, DaemonError) as exc:
        message = str(exc) if isinstance(exc, DaemonError) else f"Unable to detach: {exc}"
        os.write(write_fd, message.encode("utf-8"))
        os._exit(1)
    os.write(write_fd, READY_MESSAGE.encode("utf-8"))
    os.close(write_fd)

    os.chdir("/")
    os.umask(DAEMON_UMASK)
    devnull = os.open(os.devnull, os.O_RDWR)
    for fd in (0, 1, 2):
        os.dup2(devnull, fd)
    os.close(devnull)
    return True


class DaemonController:
    def __init__(
        self,
        settings: Settings,
        scheduler_factory: Callable[[Settings], Scheduler],
        is_alive: Callable[[int], bool] = process_alive,
        send_signal: Callable[[int, int], None] = os.kill,
        sleep: Callable[[float], None] = time.sleep,
        detach: Callable[[Callable[[], None]], bool] = daemonize,
    ):
        self.settings = settings
        self.scheduler_factory = scheduler_factory
        self.is_alive = is_alive
        self.send_signal = send_signal
        self.sleep = sleep
        self.detach = detach

    @property
    def pid_file(self) -> Path:
        return self.settings.pid_file

    def status(self) -> Optional[int]:
        return live_pid(self.pid_file, self.is_alive)

    def start(self, foreground: bool = False) -> int:
        pid = self.status()
        if pid is not None:
            raise DaemonError(f"pgcrond is already running (pid {pid}).")

        if foreground:
            write_pid(self.pid_file, os.getpid())
        elif not self.detach(lambda: write_pid(self.pid_file, os.getpid())):
            return 0
        own_pid = os.getpid()
        logger.info("pgcrond started (pid=%s).", own_pid)

        scheduler = self.scheduler_factory(self.settings)
        previous_int = signal.signal(signal.SIGINT, lambda signum, frame: self._shutdown(scheduler, signum))
        previous_term = signal.signal(signal.SIGTERM, lambda signum, frame: self._shutdown(scheduler, signum))
        try:
            scheduler.serve_forever()
        finally:
            signal.signal(signal.SIGINT, previous_int)
            signal.signal(signal.SIGTERM, previous_term)
            if self.settings.policy.terminate_jobs_on_stop:
                scheduler.dispatcher.terminate_all()
            remove_pid(self.pid_file, own_pid)
            logger.info("pgcrond stopped (pid=%s).", own_pid)
        return 0

    def _shutdown(self, scheduler: Scheduler, signum: int) -> None:
        logger.info("Received signal %s, exiting...", signum)
        scheduler.stop()

    def stop(self) -> int:
        pid = self.status()
        if pid is None:
            raise DaemonError("pgcrond not started.")

        for attempt in range(1, self.settings.stop_retries + 1):
            try:
                self.send_signal(pid, STOP_SIGNAL)
            except ProcessLookupError:
                pass
            self.sleep(STOP_INTERVAL_SECONDS)
            if self.status() is None:
                logger.info("pgcrond (pid=%s) stopped after %s attempt(s).", pid, attempt)
                return 0
            logger.debug("pgcrond (pid=%s) still running after attempt %s.", pid, attempt)

        raise DaemonError(f"Timed out waiting for pgcrond (pid {pid}) to stop.")

    def restart(self, foreground: bool = False) -> int:
        self.stop()
        return self.start(foreground=foreground)
