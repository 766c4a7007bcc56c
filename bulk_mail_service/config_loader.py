"""Configuration loader: ``config.ini`` with ``BMS_*`` environment fallbacks."""

from __future__ import annotations

import configparser
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .logger import get_logger

logger = get_logger("BulkMailConfig")


def load_settings(
    config_path: str | os.PathLike | None = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with BMS_):
      BMS_CONFIG - Path to config.ini file (default: config.ini)
      BMS_LOG_LEVEL - Logging level (default: INFO)
      BMS_DB_PATH - Database path (default: /data/bulk_mail.db)
      BMS_HOST, BMS_PORT, BMS_API_TOKEN - HTTP server
      BMS_RATE_PER_MINUTE, BMS_RATE_PER_HOUR, BMS_RATE_SCOPE - Rate limiter (10, 100, global)
      BMS_WORKER_CONCURRENCY, BMS_MAX_RECIPIENT_RETRIES, BMS_SEND_TIMEOUT,
      BMS_RECIPIENT_RETRY_DELAY, BMS_VISIBILITY_TIMEOUT, BMS_BACKOFF_BASE,
      BMS_BACKOFF_CAP, BMS_MAX_JOB_ATTEMPTS, BMS_POLL_TIMEOUT - Worker pool
      BMS_SCHEDULER_INTERVAL, BMS_ORPHAN_GRACE, BMS_COMPLETED_RETENTION,
      BMS_FAILED_RETENTION - Scheduler
      BMS_PROVIDER, BMS_SMTP_HOST, BMS_SMTP_PORT, BMS_SMTP_USER, BMS_SMTP_PASSWORD,
      BMS_SMTP_USE_TLS, BMS_FROM_EMAIL, BMS_FROM_NAME, BMS_API_URL, BMS_API_KEY - Mail provider
      BMS_AUDIT_URL, BMS_AUDIT_TOKEN, BMS_AUDIT_USER, BMS_AUDIT_PASSWORD - Audit sink

    Config file sections/keys:
      [storage] db_path
      [server] host, port, api_token, run_workers, run_scheduler
      [rate_limit] per_minute, per_hour, scope
      [worker] concurrency, max_recipient_retries, send_timeout, recipient_retry_delay,
               visibility_timeout, backoff_base, backoff_cap, max_job_attempts, poll_timeout
      [dispatcher] enqueue_attempts, default_priority
      [scheduler] interval, orphan_grace, completed_retention, failed_retention
      [transport] provider, host, port, user, password, use_tls, from_email, from_name, api_url, api_key
      [audit] url, token, user, password
      [logging] level
    """
    env = os.environ if environ is None else environ
    path = Path(config_path or env.get("BMS_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    if path.exists():
        parser.read(path)
    elif config_path is not None:
        logger.warning("Config file %s not found, using environment and defaults", path)

    def get(section: str, option: str, env_name: str | None = None, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        if env_name and env.get(env_name) is not None:
            return env[env_name]
        return fallback

    def get_int(section: str, option: str, env_name: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, env_name)
        if value is None or str(value).strip() == "":
            return default
        return int(value)

    def get_float(section: str, option: str, env_name: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, env_name)
        if value is None or str(value).strip() == "":
            return default
        return float(value)

    def get_bool(section: str, option: str, env_name: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, env_name)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    settings: Dict[str, Any] = {
        "db_path": get("storage", "db_path", "BMS_DB_PATH", "/data/bulk_mail.db"),
        "http_host": get("server", "host", "BMS_HOST", "0.0.0.0"),
        "http_port": get_int("server", "port", "BMS_PORT", 8000),
        "api_token": get("server", "api_token", "BMS_API_TOKEN"),
        "run_workers": get_bool("server", "run_workers", "BMS_RUN_WORKERS", True),
        "run_scheduler": get_bool("server", "run_scheduler", "BMS_RUN_SCHEDULER", True),
        "rate_limit_per_minute": get_int("rate_limit", "per_minute", "BMS_RATE_PER_MINUTE", 10),
        "rate_limit_per_hour": get_int("rate_limit", "per_hour", "BMS_RATE_PER_HOUR", 100),
        "rate_limit_scope": get("rate_limit", "scope", "BMS_RATE_SCOPE", "global"),
        "worker_concurrency": get_int("worker", "concurrency", "BMS_WORKER_CONCURRENCY", 5),
        "max_recipient_retries": get_int("worker", "max_recipient_retries", "BMS_MAX_RECIPIENT_RETRIES", 3),
        "send_timeout": get_float("worker", "send_timeout", "BMS_SEND_TIMEOUT", 10.0),
        "recipient_retry_delay": get_float("worker", "recipient_retry_delay", "BMS_RECIPIENT_RETRY_DELAY", 1.0),
        "visibility_timeout": get_float("worker", "visibility_timeout", "BMS_VISIBILITY_TIMEOUT", 300.0),
        "backoff_base": get_float("worker", "backoff_base", "BMS_BACKOFF_BASE", 5.0),
        "backoff_cap": get_float("worker", "backoff_cap", "BMS_BACKOFF_CAP", 300.0),
        "max_job_attempts": get_int("worker", "max_job_attempts", "BMS_MAX_JOB_ATTEMPTS", 3),
        "poll_timeout": get_float("worker", "poll_timeout", "BMS_POLL_TIMEOUT", 5.0),
        "enqueue_attempts": get_int("dispatcher", "enqueue_attempts", "BMS_ENQUEUE_ATTEMPTS", 3),
        "default_priority": get_int("dispatcher", "default_priority", "BMS_DEFAULT_PRIORITY", 0),
        "scheduler_interval": get_float("scheduler", "interval", "BMS_SCHEDULER_INTERVAL", 60.0),
        "orphan_grace": get_float("scheduler", "orphan_grace", "BMS_ORPHAN_GRACE", 120.0),
        "completed_retention": get_int("scheduler", "completed_retention", "BMS_COMPLETED_RETENTION", 24 * 3600),
        "failed_retention": get_int("scheduler", "failed_retention", "BMS_FAILED_RETENTION", 7 * 24 * 3600),
        "transport_provider": get("transport", "provider", "BMS_PROVIDER", "smtp"),
        "smtp_host": get("transport", "host", "BMS_SMTP_HOST"),
        "smtp_port": get_int("transport", "port", "BMS_SMTP_PORT", 587),
        "smtp_user": get("transport", "user", "BMS_SMTP_USER"),
        "smtp_password": get("transport", "password", "BMS_SMTP_PASSWORD"),
        "smtp_use_tls": get_bool("transport", "use_tls", "BMS_SMTP_USE_TLS"),
        "from_email": get("transport", "from_email", "BMS_FROM_EMAIL"),
        "from_name": get("transport", "from_name", "BMS_FROM_NAME"),
        "api_url": get("transport", "api_url", "BMS_API_URL"),
        "api_key": get("transport", "api_key", "BMS_API_KEY"),
        "audit_url": get("audit", "url", "BMS_AUDIT_URL"),
        "audit_token": get("audit", "token", "BMS_AUDIT_TOKEN"),
        "audit_user": get("audit", "user", "BMS_AUDIT_USER"),
        "audit_password": get("audit", "password", "BMS_AUDIT_PASSWORD"),
        "log_level": (get("logging", "level", "BMS_LOG_LEVEL", "INFO") or "INFO").upper(),
    }

    db_path = settings["db_path"]
    if isinstance(db_path, str):
        settings["db_path"] = os.path.expanduser(db_path)
    for key in ("api_token", "audit_token", "api_key"):
        value = settings.get(key)
        if isinstance(value, str):
            value = value.strip() or None
        settings[key] = value
    scope = str(settings["rate_limit_scope"] or "global").strip().lower()
    if scope not in {"global", "creator"}:
        raise ValueError(f"Unknown rate limit scope: {scope}")
    settings["rate_limit_scope"] = scope
    return settings
