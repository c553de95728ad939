"""
Job table parsing.

The job table is a crontab-like file: variable assignments (NAME = value)
followed by job lines of twelve or more whitespace separated fields:

    minute hour dom month dow  server port database user schema  type  command...
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

from pgcrond.errors import JobTableUnavailable

logger = logging.getLogger(__name__)

PLACEHOLDER = "-"
PASSWORD_VARIABLE = "PGPASSWORD"
DEFAULT_MAILTO = "root"
DEFAULT_SCRIPTHOME = "/etc/pgcrond/scripts/"
DEFAULT_PSQL = "/usr/bin/psql"
MIN_JOB_FIELDS = 12
ASSIGNMENT_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(.*)$")


class JobType(str, Enum):
    DIRECT = "direct"
    PSQL = "psql"
    PYTHON = "python"
    SHELL = "sh"

    @classmethod
    def parse(cls, raw: str) -> Optional["JobType"]:
        try:
            return cls(raw.lower())
        except ValueError:
            return None


@dataclass(frozen=True)
class JobEntry:
    line_number: int
    timespec: str
    server: str
    port: str
    database: str
    user: str
    schema: str
    job_type: str
    command: str

    @property
    def kind(self) -> Optional[JobType]:
        return JobType.parse(self.job_type)


@dataclass(frozen=True)
class JobTable:
    variables: Mapping[str, str]
    entries: Tuple[JobEntry, ...]


def strip_comment(line: str) -> str:
    return line.split("#", 1)[0].strip()


def unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return value[1:-1]
    return value


def parse_entry(line: str, line_number: int) -> Optional[JobEntry]:
    tokens = line.split()
    if len(tokens) < MIN_JOB_FIELDS:
        return None
    return JobEntry(
        line_number=line_number,
        timespec=" ".join(tokens[0:5]),
        server=tokens[5],
        port=tokens[6],
        database=tokens[7],
        user=tokens[8],
        schema=tokens[9],
        job_type=tokens[10],
        command=" ".join(tokens[11:]),
    )


def finalize_variables(variables: Dict[str, str]) -> Dict[str, str]:
    variables.pop(PASSWORD_VARIABLE, None)

    scripthome = variables.get("SCRIPTHOME") or DEFAULT_SCRIPTHOME
    if not scripthome.endswith("/"):
        scripthome += "/"
    variables["SCRIPTHOME"] = scripthome

    if not variables.get("MAILTO"):
        variables["MAILTO"] = DEFAULT_MAILTO
    if not variables.get("PSQL"):
        variables["PSQL"] = DEFAULT_PSQL
    return variables


def parse_job_table(text: str) -> JobTable:
    variables: Dict[str, str] = {}
    entries: List[JobEntry] = []

    for line_number, raw_line in enumerate(text.splitlines(), start=1):
        line = strip_comment(raw_line)
        if not line:
            continue

        match = ASSIGNMENT_RE.match(line)
        if match:
            variables[match.group(1)] = unquote(match.group(2))
            continue

        entry = parse_entry(line, line_number)
        if entry is None:
            logger.debug("Ignoring job table line %s: fewer than %s fields.", line_number, MIN_JOB_FIELDS)
            continue
        entries.append(entry)

    return JobTable(
        variables=MappingProxyType(finalize_variables(variables)),
        entries=tuple(entries),
    )


def read_job_table(path: Path) -> JobTable:
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise JobTableUnavailable(f"Unable to read job table {path}: {exc}") from exc
    return parse_job_table(text)
