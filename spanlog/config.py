"""Typed runtime configuration for the background logger."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

SYNC_FLUSH_ENV = "SPANLOG_SYNC_FLUSH"
DEFAULT_BATCH_SIZE_ENV = "SPANLOG_DEFAULT_BATCH_SIZE"
MAX_REQUEST_SIZE_ENV = "SPANLOG_MAX_REQUEST_SIZE"
NUM_RETRIES_ENV = "SPANLOG_NUM_RETRIES"
QUEUE_DROP_EXCEEDING_MAXSIZE_ENV = "SPANLOG_QUEUE_DROP_EXCEEDING_MAXSIZE"
QUEUE_DROP_LOGGING_PERIOD_ENV = "SPANLOG_QUEUE_DROP_LOGGING_PERIOD"
FAILED_PUBLISH_PAYLOADS_DIR_ENV = "SPANLOG_FAILED_PUBLISH_PAYLOADS_DIR"
ALL_PUBLISH_PAYLOADS_DIR_ENV = "SPANLOG_ALL_PUBLISH_PAYLOADS_DIR"

API_KEY_ENV = "SPANLOG_API_KEY"
APP_URL_ENV = "SPANLOG_APP_URL"
API_URL_ENV = "SPANLOG_API_URL"
ORG_NAME_ENV = "SPANLOG_ORG_NAME"
DEFAULT_APP_URL = "https://www.spanlog.dev"

# 6 MB request cap of the upstream lambda gateway.
DEFAULT_MAX_REQUEST_SIZE = 6 * 1024 * 1024


def _env_number(name: str, default: float | None) -> float | None:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid %s=%r; expected a number. Using default %r.", name, raw, default)
        return default


def _env_int(name: str, default: int | None) -> int | None:
    value = _env_number(name, default)
    return None if value is None else int(value)


def _env_str(name: str) -> str | None:
    raw = os.environ.get(name, "").strip()
    return raw or None


@dataclass(frozen=True)
class LoggerConfig:
    """Background logger knobs, resolved once and passed explicitly.

    ``num_tries`` counts total attempts; the environment variable is expressed
    as retries, so ``SPANLOG_NUM_RETRIES=2`` means three attempts.
    """

    sync_flush: bool = False
    default_batch_size: int = 100
    max_request_size: int = DEFAULT_MAX_REQUEST_SIZE
    num_tries: int = 3
    queue_drop_exceeding_maxsize: int | None = None
    queue_drop_logging_period: float = 60.0
    failed_publish_payloads_dir: str | None = None
    all_publish_payloads_dir: str | None = None
    retry_delay_s: float = 0.1

    @classmethod
    def from_env(cls) -> "LoggerConfig":
        """Build typed config from environment variables."""
        defaults = cls()

        sync_flush = defaults.sync_flush
        sync_raw = _env_number(SYNC_FLUSH_ENV, None)
        if sync_raw is not None:
            sync_flush = bool(sync_raw)

        num_tries = defaults.num_tries
        retries = _env_int(NUM_RETRIES_ENV, None)
        if retries is not None:
            if retries < 0:
                logger.warning(
                    "Invalid %s=%r; expected a non-negative count. Defaulting to %d tries.",
                    NUM_RETRIES_ENV,
                    retries,
                    num_tries,
                )
            else:
                num_tries = retries + 1

        return cls(
            sync_flush=sync_flush,
            default_batch_size=_env_int(DEFAULT_BATCH_SIZE_ENV, defaults.default_batch_size) or defaults.default_batch_size,
            max_request_size=_env_int(MAX_REQUEST_SIZE_ENV, defaults.max_request_size) or defaults.max_request_size,
            num_tries=num_tries,
            queue_drop_exceeding_maxsize=_env_int(QUEUE_DROP_EXCEEDING_MAXSIZE_ENV, None),
            queue_drop_logging_period=_env_number(QUEUE_DROP_LOGGING_PERIOD_ENV, defaults.queue_drop_logging_period)
            or 0.0,
            failed_publish_payloads_dir=_env_str(FAILED_PUBLISH_PAYLOADS_DIR_ENV),
            all_publish_payloads_dir=_env_str(ALL_PUBLISH_PAYLOADS_DIR_ENV),
        )


@dataclass(frozen=True)
class LoginSettings:
    """Credentials and endpoints used by ``SessionState.login``."""

    api_key: str | None = None
    app_url: str = DEFAULT_APP_URL
    api_url: str | None = None
    org_name: str | None = None

    @classmethod
    def from_env(cls) -> "LoginSettings":
        return cls(
            api_key=_env_str(API_KEY_ENV),
            app_url=_env_str(APP_URL_ENV) or DEFAULT_APP_URL,
            api_url=_env_str(API_URL_ENV),
            org_name=_env_str(ORG_NAME_ENV),
        )
