"""Settings loader for the delivery service."""

from __future__ import annotations

import configparser
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_APP_URL = "https://timecapsule.vercel.app"


def load_settings(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with TC_):
      TC_CONFIG - Path to config.ini file (default: config.ini)
      TC_LOG_LEVEL - Logging level (default: INFO)
      TC_DB_PATH - Database path (default: /data/timecapsule.db)
      TC_STORAGE_BACKEND - "local" or "s3" (default: local)
      TC_STORAGE_DIR - Directory of the local backend (default: /data/files)
      TC_STORAGE_BUCKET / TC_STORAGE_REGION - S3 bucket and region
      TC_SIGNING_KEY - HMAC key for local download links
      TC_HOST / TC_PORT - Server bind address (default: 0.0.0.0:8000)
      TC_API_TOKEN - API authentication token
      TC_PUBLIC_URL - Base URL under which this server is reachable
      TC_APP_URL - Base URL used in emailed access links
      TC_LINK_VALIDITY_HOURS - Validity of download links (default: 24)
      TC_DISPATCH_CONCURRENCY - Parallel sends per run (default: 10)
      TC_SEND_TIMEOUT - Seconds allowed per send (default: 30)
      TC_CLAIM_TTL_SECONDS - Dispatch lease duration (default: 300)
      TC_SCHEDULER_ACTIVE - Run the periodic loop (default: True)
      TC_POLL_INTERVAL - Seconds between periodic checks (default: 30)
      TC_SETTLE_DELAY - Seconds to wait before re-querying (default: 1)
      TC_MAIL_BACKEND - "smtp" or "resend" (default: resend)
      TC_MAIL_FROM - Sender address
      TC_SMTP_HOST / TC_SMTP_PORT / TC_SMTP_USER / TC_SMTP_PASSWORD / TC_SMTP_USE_TLS
      TC_RESEND_API_KEY - Resend API key
      TC_LOG_DELIVERY_ACTIVITY - Log every delivery attempt (default: False)

    Config file sections/keys:
      [storage] db_path, backend, directory, bucket, region, signing_key
      [server] host, port, api_token, public_url
      [delivery] app_base_url, link_validity_hours, dispatch_concurrency, send_timeout, claim_ttl_seconds
      [scheduler] active, poll_interval, settle_delay
      [mail] backend, from, smtp_host, smtp_port, smtp_user, smtp_password, smtp_use_tls, resend_api_key
      [logging] level, delivery_activity
    """
    path = Path(config_path or os.getenv("TC_CONFIG", "config.ini"))
    parser = configparser.ConfigParser(interpolation=None)
    parser.read(path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None or value == "":
            return default
        return int(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None or value == "":
            return default
        return float(value)

    settings: Dict[str, Any] = {
        "log_level": get("logging", "level", os.getenv("TC_LOG_LEVEL", "INFO")),
        "db_path": get("storage", "db_path", os.getenv("TC_DB_PATH", "/data/timecapsule.db")),
        "storage_backend": get("storage", "backend", os.getenv("TC_STORAGE_BACKEND", "local")),
        "storage_dir": get("storage", "directory", os.getenv("TC_STORAGE_DIR", "/data/files")),
        "storage_bucket": get("storage", "bucket", os.getenv("TC_STORAGE_BUCKET")),
        "storage_region": get("storage", "region", os.getenv("TC_STORAGE_REGION")),
        "signing_key": get("storage", "signing_key", os.getenv("TC_SIGNING_KEY")),
        "http_host": get("server", "host", os.getenv("TC_HOST", "0.0.0.0")),
        "http_port": get_int("server", "port", os.getenv("TC_PORT"), default=8000),
        "api_token": get("server", "api_token", os.getenv("TC_API_TOKEN")),
        "public_url": get("server", "public_url", os.getenv("TC_PUBLIC_URL", "http://localhost:8000")),
        "app_base_url": get("delivery", "app_base_url", os.getenv("TC_APP_URL", DEFAULT_APP_URL)),
        "link_validity_hours": get_int(
            "delivery", "link_validity_hours", os.getenv("TC_LINK_VALIDITY_HOURS"), default=24
        ),
        "dispatch_concurrency": get_int(
            "delivery", "dispatch_concurrency", os.getenv("TC_DISPATCH_CONCURRENCY"), default=10
        ),
        "send_timeout": get_float("delivery", "send_timeout", os.getenv("TC_SEND_TIMEOUT"), default=30.0),
        "claim_ttl_seconds": get_int(
            "delivery", "claim_ttl_seconds", os.getenv("TC_CLAIM_TTL_SECONDS"), default=300
        ),
        "scheduler_active": get_bool("scheduler", "active", os.getenv("TC_SCHEDULER_ACTIVE"), True),
        "poll_interval": get_float("scheduler", "poll_interval", os.getenv("TC_POLL_INTERVAL"), default=30.0),
        "settle_delay": get_float("scheduler", "settle_delay", os.getenv("TC_SETTLE_DELAY"), default=1.0),
        "mail_backend": get("mail", "backend", os.getenv("TC_MAIL_BACKEND", "resend")),
        "mail_from": get("mail", "from", os.getenv("TC_MAIL_FROM")),
        "smtp_host": get("mail", "smtp_host", os.getenv("TC_SMTP_HOST")),
        "smtp_port": get_int("mail", "smtp_port", os.getenv("TC_SMTP_PORT"), default=587),
        "smtp_user": get("mail", "smtp_user", os.getenv("TC_SMTP_USER")),
        "smtp_password": get("mail", "smtp_password", os.getenv("TC_SMTP_PASSWORD")),
        "smtp_use_tls": get_bool("mail", "smtp_use_tls", os.getenv("TC_SMTP_USE_TLS"), None),
        "resend_api_key": get("mail", "resend_api_key", os.getenv("TC_RESEND_API_KEY")),
        "log_delivery_activity": get_bool(
            "logging",
            "delivery_activity",
            os.getenv("TC_LOG_DELIVERY_ACTIVITY"),
            default=False,
        ),
    }

    for key in ("db_path", "storage_dir"):
        value = settings[key]
        if isinstance(value, str):
            settings[key] = os.path.expanduser(value)
    for key in ("api_token", "signing_key", "resend_api_key", "smtp_host"):
        value = settings.get(key)
        if isinstance(value, str):
            value = value.strip() or None
        settings[key] = value
    settings["storage_backend"] = str(settings["storage_backend"]).strip().lower()
    settings["mail_backend"] = str(settings["mail_backend"]).strip().lower()
    return settings


def configure_logging(level: str | None = None) -> None:
    """Configure the root logger once for an entry point."""
    log_level = (level or os.getenv("TC_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )
