from __future__ import annotations


class PgcrondError(Exception):
    """Base error for pgcrond."""


class ConfigError(PgcrondError):
    """Daemon config validation error."""


class JobTableUnavailable(PgcrondError):
    """The job table could not be read; the current tick is skipped."""


class JobFailure(PgcrondError):
    """Terminal failure of one job pipeline.

    The message is the body of the report sent to the job's MAILTO address.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class CredentialError(JobFailure):
    """Password store could not be located or read."""


class DaemonError(PgcrondError):
    """Lifecycle failure of the daemon process."""
