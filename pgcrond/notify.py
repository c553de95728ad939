"""
Notification policy and report delivery.

Whether a job's output is worth a mail depends on the job type: psql output
is only reported when it carries a warning, an error or a slow statement
timing; any output of python and sh jobs is reported; direct jobs only
report failures.
"""

from __future__ import annotations

import logging
import re
import smtplib
from email.message import EmailMessage
from typing import List, Mapping, Optional, Protocol

from pgcrond.config import SmtpSettings
from pgcrond.credentials import ResolvedDSN
from pgcrond.jobtable import DEFAULT_MAILTO, JobEntry, JobType

logger = logging.getLogger(__name__)

PSQL_ALERT_RE = re.compile(r"WARNING|ERROR")
# psql \timing reports in milliseconds; five integer digits means >= 10s.
PSQL_SLOW_TIMING_RE = re.compile(r"Time:\s*\d{5,}(?:\.\d+)?\s*ms")
FALSY_VALUES = {"0", "off", "no"}
BANNER_RULE = "-" * 64
BANNER_LABEL_WIDTH = 10
SUBJECT_PREFIX = "pgcrond: "
SUBJECT_MAX_LENGTH = 78


class Notifier(Protocol):
    def send(self, sender: str, recipient: str, subject: str, body: str) -> None:
        ...


class SmtpNotifier:
    """Delivers reports through an SMTP relay."""

    def __init__(self, settings: SmtpSettings):
        self.settings = settings

    def send(self, sender: str, recipient: str, subject: str, body: str) -> None:
        message = EmailMessage()
        message["From"] = sender
        message["To"] = recipient
        message["Subject"] = subject
        message.set_content(body)
        with smtplib.SMTP(self.settings.host, self.settings.port, timeout=self.settings.timeout) as smtp:
            smtp.send_message(message)


def reportable_output(kind: JobType, output: Optional[str]) -> str:
    """Return the part of a job's output that must be reported, or ''."""
    if not output:
        return ""
    if kind is JobType.DIRECT:
        return ""
    if kind is JobType.PSQL:
        if PSQL_ALERT_RE.search(output) or PSQL_SLOW_TIMING_RE.search(output):
            return output
        return ""
    return output


def dsn_in_mail(variables: Mapping[str, str]) -> bool:
    value = variables.get("DSN_IN_MAIL")
    if value is None:
        return True
    return value.strip().lower() not in FALSY_VALUES


def _banner_line(label: str, value: str) -> str:
    return f"{label + ':':<{BANNER_LABEL_WIDTH}} {value}"


def dsn_banner(dsn: ResolvedDSN) -> str:
    lines: List[str] = [BANNER_RULE]
    if dsn.server:
        lines.append(_banner_line("Server", dsn.server))
    if dsn.port:
        lines.append(_banner_line("Port", dsn.port))
    lines.append(_banner_line("Database", dsn.database))
    lines.append(_banner_line("Username", dsn.username))
    if dsn.schemas:
        lines.append(_banner_line("Schemas", ", ".join(dsn.schemas)))
    lines.append(BANNER_RULE)
    return "\n".join(lines)


def build_report(variables: Mapping[str, str], dsn: Optional[ResolvedDSN], message: str) -> str:
    if dsn is not None and dsn_in_mail(variables):
        return f"{dsn_banner(dsn)}\n\n{message}"
    return message


def report_subject(entry: JobEntry) -> str:
    subject = SUBJECT_PREFIX + entry.command
    if len(subject) > SUBJECT_MAX_LENGTH:
        subject = subject[: SUBJECT_MAX_LENGTH - 3] + "..."
    return subject


def send_report(
    notifier: Notifier,
    sender: str,
    variables: Mapping[str, str],
    entry: JobEntry,
    dsn: Optional[ResolvedDSN],
    message: str,
) -> bool:
    recipient = variables.get("MAILTO") or DEFAULT_MAILTO
    subject = report_subject(entry)
    body = build_report(variables, dsn, message)
    try:
        notifier.send(sender, recipient, subject, body)
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("Failed to send report for line %s to %s: %s", entry.line_number, recipient, exc)
        return False
    logger.info("Report for line %s sent to %s.", entry.line_number, recipient)
    return True
