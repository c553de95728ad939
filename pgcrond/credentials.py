from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional, Tuple

from pgcrond.errors import CredentialError
from pgcrond.jobtable import PLACEHOLDER, JobEntry

logger = logging.getLogger(__name__)

DEFAULT_SERVER = "localhost"
IMPLICIT_SCHEMA = "public"
WILDCARD = "*"
PASSFILE_NAME = ".pgpass"
PG_VARIABLES = ("PGHOST", "PGPORT", "PGDATABASE", "PGUSER")


@dataclass(frozen=True)
class ResolvedDSN:
    database: str
    username: str
    server: str = DEFAULT_SERVER
    port: Optional[str] = None
    schemas: Tuple[str, ...] = ()
    password: Optional[str] = field(default=None, repr=False)

    def pg_environment(self) -> Dict[str, str]:
        """PG* values a job's descendants should see; unset fields are absent."""
        env = {
            "PGHOST": self.server,
            "PGDATABASE": self.database,
            "PGUSER": self.username,
        }
        if self.port is not None:
            env["PGPORT"] = self.port
        return env

    def with_password(self, password: Optional[str]) -> "ResolvedDSN":
        return ResolvedDSN(
            database=self.database,
            username=self.username,
            server=self.server,
            port=self.port,
            schemas=self.schemas,
            password=password,
        )


def _inherit(value: str, variables: Mapping[str, str], name: str) -> str:
    if value != PLACEHOLDER:
        return value
    return variables.get(name) or PLACEHOLDER


def parse_schemas(raw: str) -> Tuple[str, ...]:
    if raw == PLACEHOLDER:
        return ()
    names = [name.strip() for name in raw.split(",") if name.strip()]
    if raw.endswith(",") and IMPLICIT_SCHEMA not in names:
        names.append(IMPLICIT_SCHEMA)
    return tuple(names)


def resolve_dsn(variables: Mapping[str, str], entry: JobEntry) -> Optional[ResolvedDSN]:
    """Fill in DSN defaults from the variable set.

    Returns None when the database or user cannot be resolved.
    """
    server = _inherit(entry.server, variables, "PGHOST")
    port = _inherit(entry.port, variables, "PGPORT")
    database = _inherit(entry.database, variables, "PGDATABASE")
    user = _inherit(entry.user, variables, "PGUSER")

    if database == PLACEHOLDER or user == PLACEHOLDER:
        return None

    return ResolvedDSN(
        database=database,
        username=user,
        server=DEFAULT_SERVER if server == PLACEHOLDER else server,
        port=None if port == PLACEHOLDER else port,
        schemas=parse_schemas(entry.schema),
    )


def locate_passfile(passfile: Optional[Path] = None) -> Path:
    if passfile is not None:
        return passfile
    try:
        home = Path.home()
    except (RuntimeError, KeyError) as exc:
        raise CredentialError(f"Unable to determine home directory: {exc}") from exc
    return home / PASSFILE_NAME


def match_password(lines: Iterable[str], dsn: ResolvedDSN) -> Optional[str]:
    wanted = (dsn.server, dsn.port, dsn.database, dsn.username)
    for line in lines:
        line = line.rstrip("\r\n")
        if not line or line.startswith("#"):
            continue
        fields = line.split(":", 4)
        if len(fields) < 5:
            continue
        if all(pattern == WILDCARD or pattern == value for pattern, value in zip(fields[:4], wanted)):
            return fields[4]
    return None


def lookup_password(dsn: ResolvedDSN, passfile: Optional[Path] = None) -> Optional[str]:
    path = locate_passfile(passfile)
    try:
        with path.open("r", encoding="utf-8") as handle:
            return match_password(handle, dsn)
    except (OSError, UnicodeDecodeError) as exc:
        raise CredentialError(f"Unable to read password file {path}: {exc}") from exc


def job_variables(variables: Mapping[str, str], dsn: ResolvedDSN) -> Dict[str, str]:
    """Copy of the variable set with the resolved PG* values written back."""
    merged = {key: value for key, value in variables.items() if key not in PG_VARIABLES}
    merged.update(dsn.pg_environment())
    return merged
