"""
Daemon settings for pgcrond.

Settings are read from an optional YAML file. The job table itself is the
per-job configuration and is parsed by pgcrond.jobtable on every tick.
"""

from __future__ import annotations

import logging
import socket
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from pgcrond.errors import ConfigError

DEFAULT_CONFIG = Path("/etc/pgcrond/pgcrond.yaml")
DEFAULT_CRONTAB = Path("/etc/pgcrontab")
DEFAULT_PID_FILE = Path("/var/run/pgcrond.pid")
DEFAULT_LOG_FILE = Path("/var/log/pgcrond.log")
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_POLL_SECONDS = 1
DEFAULT_STOP_RETRIES = 25
DEFAULT_SMTP_HOST = "localhost"
DEFAULT_SMTP_PORT = 25
DEFAULT_SMTP_TIMEOUT = 30
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
TOP_LEVEL_KEYS = {
    "crontab",
    "pid_file",
    "log_file",
    "log_level",
    "poll_seconds",
    "stop_retries",
    "passfile",
    "smtp",
    "policy",
}


def default_sender() -> str:
    return f"pgcrond@{socket.getfqdn()}"


@dataclass(frozen=True)
class SmtpSettings:
    host: str = DEFAULT_SMTP_HOST
    port: int = DEFAULT_SMTP_PORT
    timeout: int = DEFAULT_SMTP_TIMEOUT
    sender: str = field(default_factory=default_sender)


@dataclass(frozen=True)
class PolicySettings:
    report_unrunnable: bool = False
    job_timeout: Optional[int] = None
    terminate_jobs_on_stop: bool = False


@dataclass(frozen=True)
class Settings:
    crontab: Path = DEFAULT_CRONTAB
    pid_file: Path = DEFAULT_PID_FILE
    log_file: Optional[Path] = DEFAULT_LOG_FILE
    log_level: str = DEFAULT_LOG_LEVEL
    poll_seconds: int = DEFAULT_POLL_SECONDS
    stop_retries: int = DEFAULT_STOP_RETRIES
    passfile: Optional[Path] = None
    smtp: SmtpSettings = field(default_factory=SmtpSettings)
    policy: PolicySettings = field(default_factory=PolicySettings)


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_int(value: Any, field_path: str, default: Optional[int], minimum: int = 1) -> Optional[int]:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def ensure_mapping(value: Any, field_path: str, allowed: set) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    unknown = set(value.keys()) - allowed
    if unknown:
        raise ConfigError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")
    return value


def _resolve_path(value: Any, base_dir: Path, field_path: str) -> Path:
    raw = Path(ensure_str(value, field_path))
    return raw if raw.is_absolute() else (base_dir / raw).resolve()


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except OSError as exc:
        raise ConfigError(f"Error: Unable to read config file {config_path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    return payload


def parse_settings(payload: Dict[str, Any], base_dir: Path) -> Settings:
    unknown = set(payload.keys()) - TOP_LEVEL_KEYS
    if unknown:
        raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown)}.")

    crontab = DEFAULT_CRONTAB
    if payload.get("crontab") is not None:
        crontab = _resolve_path(payload["crontab"], base_dir, "crontab")

    pid_file = DEFAULT_PID_FILE
    if payload.get("pid_file") is not None:
        pid_file = _resolve_path(payload["pid_file"], base_dir, "pid_file")

    log_file: Optional[Path] = DEFAULT_LOG_FILE
    if "log_file" in payload:
        raw_log = payload["log_file"]
        if raw_log is None or raw_log == "":
            log_file = None
        else:
            log_file = _resolve_path(raw_log, base_dir, "log_file")

    log_level = DEFAULT_LOG_LEVEL
    if payload.get("log_level") is not None:
        log_level = ensure_str(payload["log_level"], "log_level").upper()
        if log_level not in VALID_LOG_LEVELS:
            raise ConfigError(
                f'Error: log_level must be one of {sorted(VALID_LOG_LEVELS)}, got "{log_level}".'
            )

    passfile = None
    if payload.get("passfile") is not None:
        passfile = _resolve_path(payload["passfile"], base_dir, "passfile")

    smtp_raw = ensure_mapping(payload.get("smtp"), "smtp", {"host", "port", "timeout", "sender"})
    smtp = SmtpSettings(
        host=ensure_str(smtp_raw.get("host", DEFAULT_SMTP_HOST), "smtp.host"),
        port=ensure_int(smtp_raw.get("port"), "smtp.port", DEFAULT_SMTP_PORT),
        timeout=ensure_int(smtp_raw.get("timeout"), "smtp.timeout", DEFAULT_SMTP_TIMEOUT),
        sender=ensure_str(smtp_raw["sender"], "smtp.sender") if "sender" in smtp_raw else default_sender(),
    )

    policy_raw = ensure_mapping(
        payload.get("policy"),
        "policy",
        {"report_unrunnable", "job_timeout", "terminate_jobs_on_stop"},
    )
    policy = PolicySettings(
        report_unrunnable=ensure_bool(policy_raw.get("report_unrunnable"), "policy.report_unrunnable", False),
        job_timeout=ensure_int(policy_raw.get("job_timeout"), "policy.job_timeout", None),
        terminate_jobs_on_stop=ensure_bool(
            policy_raw.get("terminate_jobs_on_stop"),
            "policy.terminate_jobs_on_stop",
            False,
        ),
    )

    return Settings(
        crontab=crontab,
        pid_file=pid_file,
        log_file=log_file,
        log_level=log_level,
        poll_seconds=ensure_int(payload.get("poll_seconds"), "poll_seconds", DEFAULT_POLL_SECONDS),
        stop_retries=ensure_int(payload.get("stop_retries"), "stop_retries", DEFAULT_STOP_RETRIES),
        passfile=passfile,
        smtp=smtp,
        policy=policy,
    )


def load_settings(config_path: Optional[Path] = None) -> Settings:
    """Load daemon settings.

    Without an explicit path the default config file is optional; an explicit
    path must exist.
    """
    if config_path is None:
        if not DEFAULT_CONFIG.exists():
            return Settings()
        config_path = DEFAULT_CONFIG
    elif not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")

    payload = _load_config_payload(config_path)
    return parse_settings(payload, config_path.parent)


def setup_logging(settings: Settings) -> logging.Logger:
    logger = logging.getLogger("pgcrond")
    if logger.handlers:
        return logger
    logger.setLevel(settings.log_level)
    formatter = logging.Formatter(LOG_FORMAT)
    if settings.log_file is not None:
        try:
            file_handler = logging.FileHandler(settings.log_file, encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Error: Unable to open log file {settings.log_file}: {exc}") from exc
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    return logger
