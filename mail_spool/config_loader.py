"""Configuration loading for the mail spool service.

Settings come from an INI file (default: ``config.ini``, overridable with
``MSP_CONFIG``) with environment variables as fallbacks, then built-in
defaults.

Environment variables (prefixed with MSP_ unless noted):
  MSP_CONFIG - Path to config.ini file (default: config.ini)
  MSP_LOG_LEVEL - Logging level (default: INFO)
  MSP_LOG_DIR - Directory for daily log files (default: none, console only)
  MSP_SPOOL_ROOT - Spool root directory (default: ./data/spool)
  MSP_IDEMPOTENCY_HOURS - Idempotency window in hours (default: 24)
  MSP_MAX_BODY_CHARS / MSP_MAX_SUBJECT_CHARS - Admission limits
  MSP_MAX_PARALLEL_SENDS - Concurrent deliveries (default: 4)
  MSP_POLL_INTERVAL_MS - Queue poll interval (default: 1000)
  MSP_MAX_ATTEMPTS - Delivery attempts per job (default: 5)
  MSP_RETENTION_ENABLED, MSP_RETENTION_EVERY_MINUTES, MSP_RETENTION_LOGS_DAYS,
  MSP_RETENTION_SENT_DAYS, MSP_RETENTION_FAILED_DAYS, MSP_RETENTION_IDEM_DAYS,
  MSP_RETENTION_QUEUED_MAX_AGE_DAYS - Retention thresholds
  SMTP_HOST, SMTP_PORT, SMTP_USER, SMTP_PASS, SMTP_FROM, SMTP_SSL - Relay settings
  MSP_SMTP_TIMEOUT - Relay timeout in seconds (default: 20)
  MSP_HOST / MSP_PORT - HTTP bind address (default: 0.0.0.0:8885)
  MSP_API_TOKEN - API authentication token
  MSP_RATE_LIMIT_ENABLED / MSP_RATE_LIMIT_PER_MINUTE - Per-IP admission limit

Config file sections/keys:
  [spool] root, idempotency_hours, max_body_chars, max_subject_chars
  [worker] max_parallel_sends, poll_interval_ms, max_attempts
  [retention] enabled, run_every_minutes, logs_days, logs_directory, sent_days,
              failed_days, idem_days, queued_max_age_days
  [smtp] host, port, user, password, from, ssl, timeout
  [server] host, port, api_token
  [rate_limit] enabled, requests_per_minute
  [logging] level, directory
"""

from __future__ import annotations

import configparser
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .logger import get_logger
from .retention import RetentionPolicy

logger = get_logger("ConfigLoader")

DEFAULT_SPOOL_ROOT = os.path.join("data", "spool")
DEFAULT_HTTP_PORT = 8885

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _parse_bool(value: Any, default: bool | None) -> bool | None:
    if value is None:
        return default
    normalized = str(value).strip().lower()
    if normalized in _TRUE:
        return True
    if normalized in _FALSE:
        return False
    return default


def load_settings(
    config_path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Return the service settings as a flat dictionary."""
    env = os.environ if environ is None else environ
    path = Path(config_path or env.get("MSP_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    if path.exists():
        parser.read(path, encoding="utf-8")
        logger.debug("Loaded configuration from %s", path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None or not str(value).strip():
            return default
        try:
            return int(value)
        except ValueError:
            logger.warning("Ignoring non-integer value %r for [%s] %s", value, section, option)
            return default

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        return _parse_bool(get(section, option, fallback), default)

    settings: Dict[str, Any] = {
        "spool_root": get("spool", "root", env.get("MSP_SPOOL_ROOT", DEFAULT_SPOOL_ROOT)),
        "idempotency_hours": get_int("spool", "idempotency_hours", env.get("MSP_IDEMPOTENCY_HOURS"), 24),
        "max_body_chars": get_int("spool", "max_body_chars", env.get("MSP_MAX_BODY_CHARS"), 200_000),
        "max_subject_chars": get_int("spool", "max_subject_chars", env.get("MSP_MAX_SUBJECT_CHARS"), 300),
        "max_parallel_sends": get_int("worker", "max_parallel_sends", env.get("MSP_MAX_PARALLEL_SENDS"), 4),
        "poll_interval_ms": get_int("worker", "poll_interval_ms", env.get("MSP_POLL_INTERVAL_MS"), 1000),
        "max_attempts": get_int("worker", "max_attempts", env.get("MSP_MAX_ATTEMPTS"), 5),
        "retention_enabled": get_bool("retention", "enabled", env.get("MSP_RETENTION_ENABLED"), True),
        "retention_every_minutes": get_int(
            "retention", "run_every_minutes", env.get("MSP_RETENTION_EVERY_MINUTES"), 60
        ),
        "retention_logs_days": get_int("retention", "logs_days", env.get("MSP_RETENTION_LOGS_DAYS"), 14),
        "retention_logs_directory": get("retention", "logs_directory"),
        "retention_sent_days": get_int("retention", "sent_days", env.get("MSP_RETENTION_SENT_DAYS"), 14),
        "retention_failed_days": get_int("retention", "failed_days", env.get("MSP_RETENTION_FAILED_DAYS"), 30),
        "retention_idem_days": get_int("retention", "idem_days", env.get("MSP_RETENTION_IDEM_DAYS"), 7),
        "retention_queued_max_age_days": get_int(
            "retention", "queued_max_age_days", env.get("MSP_RETENTION_QUEUED_MAX_AGE_DAYS"), 0
        ),
        "smtp_host": get("smtp", "host"),
        "smtp_port": get_int("smtp", "port", default=25),
        "smtp_user": get("smtp", "user"),
        "smtp_password": get("smtp", "password"),
        "smtp_from": get("smtp", "from"),
        "smtp_ssl": get_bool("smtp", "ssl", default=False),
        "smtp_timeout": get_int("smtp", "timeout", env.get("MSP_SMTP_TIMEOUT"), 20),
        "http_host": get("server", "host", env.get("MSP_HOST", "0.0.0.0")),
        "http_port": get_int("server", "port", env.get("MSP_PORT"), DEFAULT_HTTP_PORT),
        "api_token": get("server", "api_token", env.get("MSP_API_TOKEN")),
        "rate_limit_enabled": get_bool("rate_limit", "enabled", env.get("MSP_RATE_LIMIT_ENABLED"), False),
        "rate_limit_per_minute": get_int(
            "rate_limit", "requests_per_minute", env.get("MSP_RATE_LIMIT_PER_MINUTE"), 0
        ),
        "log_level": get("logging", "level", env.get("MSP_LOG_LEVEL", "INFO")),
        "log_directory": get("logging", "directory", env.get("MSP_LOG_DIR")),
    }

    # Environment overrides for the relay, convenient in containers.
    if env.get("SMTP_HOST"):
        settings["smtp_host"] = env["SMTP_HOST"]
    if env.get("SMTP_PORT", "").strip().isdigit():
        settings["smtp_port"] = int(env["SMTP_PORT"])
    if env.get("SMTP_USER"):
        settings["smtp_user"] = env["SMTP_USER"]
    if env.get("SMTP_PASS"):
        settings["smtp_password"] = env["SMTP_PASS"]
    if env.get("SMTP_FROM"):
        settings["smtp_from"] = env["SMTP_FROM"]
    ssl_override = _parse_bool(env.get("SMTP_SSL"), None)
    if ssl_override is not None:
        settings["smtp_ssl"] = ssl_override

    settings["spool_root"] = os.path.expanduser(str(settings["spool_root"]))
    if not settings["retention_logs_directory"]:
        settings["retention_logs_directory"] = settings["log_directory"]
    token = settings.get("api_token")
    if isinstance(token, str):
        token = token.strip() or None
    settings["api_token"] = token
    return settings


def retention_policy(settings: Mapping[str, Any]) -> RetentionPolicy:
    """Build the sweeper policy from a settings dictionary."""
    return RetentionPolicy(
        enabled=bool(settings.get("retention_enabled", True)),
        run_every_minutes=int(settings.get("retention_every_minutes") or 60),
        logs_days=int(settings.get("retention_logs_days") or 14),
        logs_directory=settings.get("retention_logs_directory"),
        sent_days=int(settings.get("retention_sent_days") or 14),
        failed_days=int(settings.get("retention_failed_days") or 30),
        idem_days=int(settings.get("retention_idem_days") or 7),
        queued_max_age_days=int(settings.get("retention_queued_max_age_days") or 0),
    )
