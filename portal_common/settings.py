from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
import logging
import os
from pathlib import Path
from typing import Mapping, Optional, Union

from dotenv import dotenv_values

from .errors import ConfigMissing

ENV_CONFIG_PATH = "ZAANET_CONFIG"
DEFAULT_CONFIG_PATH = "/etc/zaanet/config"

CFG_MAIN_SERVER = "MAIN_SERVER"
CFG_ROUTER_ID = "ROUTER_ID"
CFG_CONTRACT_ID = "CONTRACT_ID"

REQUIRED_CONFIG_KEYS = (
    CFG_MAIN_SERVER,
    CFG_ROUTER_ID,
    CFG_CONTRACT_ID,
)

CFG_NDSCTL_BIN = "NDSCTL_BIN"
CFG_NDS_STATUS_CMD = "NDS_STATUS_CMD"
CFG_NDS_QUERY_TIMEOUT = "NDS_QUERY_TIMEOUT_SECONDS"
CFG_METRICS_TIMEOUT = "METRICS_TIMEOUT_SECONDS"
CFG_METRICS_ATTEMPTS = "METRICS_ATTEMPTS"
CFG_RUN_LOCK_PATH = "RUN_LOCK_PATH"

DEFAULT_NDSCTL_BIN = "ndsctl"
DEFAULT_NDS_STATUS_CMD = "/etc/init.d/nodogsplash status"
DEFAULT_QUERY_TIMEOUT_SECONDS = 10
DEFAULT_REQUEST_TIMEOUT_SECONDS = 10
DEFAULT_REQUEST_ATTEMPTS = 2
DEFAULT_RUN_LOCK_PATH = "/tmp/zaanet-metrics.lock"

METRICS_PATH = "/api/v1/portal/metrics/data-usage"

DEFAULT_LOG_FILE = "/tmp/zaanet-metrics.log"
DEFAULT_LOG_MAX_BYTES = 10240
DEFAULT_LOG_KEEP_LINES = 100
DEFAULT_LOG_LEVEL = logging.INFO
DEFAULT_LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
DEFAULT_LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
COLOR_RESET = "\x1b[0m"
LEVEL_COLORS = {
    logging.DEBUG: "\x1b[36m",
    logging.INFO: "\x1b[32m",
    logging.WARNING: "\x1b[33m",
    logging.ERROR: "\x1b[31m",
    logging.CRITICAL: "\x1b[35m",
}

ENV_LOG_FILE = "ZAANET_LOG_FILE"
ENV_LOG_MAX_BYTES = "LOG_MAX_BYTES"
ENV_LOG_KEEP_LINES = "LOG_KEEP_LINES"
ENV_LOG_LEVEL = "LOG_LEVEL"
ENV_LOG_FORMAT = "LOG_FORMAT"
ENV_LOG_DATE_FORMAT = "LOG_DATE_FORMAT"


def _parse_log_level(value: Optional[str], default: int) -> int:
    if not value:
        return default

    if value.isdigit():
        return int(value)

    level = logging.getLevelName(value.upper())
    if isinstance(level, int):
        return level

    return default


def _parse_int(value: Optional[str], default: int, minimum: int = 1) -> int:
    if not value:
        return default
    try:
        return max(minimum, int(value.strip()))
    except ValueError:
        return default


@dataclass(frozen=True)
class LogSettings:
    log_file: str
    max_bytes: int
    keep_lines: int
    level: int
    fmt: str
    datefmt: str


@dataclass(frozen=True)
class Settings:
    server_base_url: str
    router_id: str
    contract_id: str
    ndsctl_bin: str = DEFAULT_NDSCTL_BIN
    nds_status_cmd: str = DEFAULT_NDS_STATUS_CMD
    query_timeout: int = DEFAULT_QUERY_TIMEOUT_SECONDS
    request_timeout: int = DEFAULT_REQUEST_TIMEOUT_SECONDS
    request_attempts: int = DEFAULT_REQUEST_ATTEMPTS
    run_lock_path: str = DEFAULT_RUN_LOCK_PATH

    @property
    def metrics_endpoint(self) -> str:
        return self.server_base_url.rstrip("/") + METRICS_PATH


def resolve_config_path(path: Optional[Union[str, Path]] = None) -> Path:
    return Path(path or os.getenv(ENV_CONFIG_PATH) or DEFAULT_CONFIG_PATH)


def _lookup(values: Mapping[str, Optional[str]], name: str) -> str:
    """File value first, then the process environment."""
    value = (values.get(name) or "").strip()
    if value:
        return value
    return (os.getenv(name) or "").strip()


@lru_cache(maxsize=4)
def get_settings(path: Optional[str] = None) -> Settings:
    """
    Load the router config file and build the run settings.

    Raises ConfigMissing when the file is absent or any of MAIN_SERVER,
    ROUTER_ID or CONTRACT_ID is blank.
    """
    config_path = resolve_config_path(path)
    if not config_path.is_file():
        raise ConfigMissing(
            f"Config file not found: {config_path}",
            missing=REQUIRED_CONFIG_KEYS,
        )

    values = dotenv_values(config_path)

    missing = tuple(name for name in REQUIRED_CONFIG_KEYS if not _lookup(values, name))
    if missing:
        raise ConfigMissing(
            f"Missing required config values in {config_path}: " + ", ".join(missing),
            missing=missing,
        )

    return Settings(
        server_base_url=_lookup(values, CFG_MAIN_SERVER),
        router_id=_lookup(values, CFG_ROUTER_ID),
        contract_id=_lookup(values, CFG_CONTRACT_ID),
        ndsctl_bin=_lookup(values, CFG_NDSCTL_BIN) or DEFAULT_NDSCTL_BIN,
        nds_status_cmd=_lookup(values, CFG_NDS_STATUS_CMD) or DEFAULT_NDS_STATUS_CMD,
        query_timeout=_parse_int(
            _lookup(values, CFG_NDS_QUERY_TIMEOUT), DEFAULT_QUERY_TIMEOUT_SECONDS
        ),
        request_timeout=_parse_int(
            _lookup(values, CFG_METRICS_TIMEOUT), DEFAULT_REQUEST_TIMEOUT_SECONDS
        ),
        request_attempts=_parse_int(
            _lookup(values, CFG_METRICS_ATTEMPTS), DEFAULT_REQUEST_ATTEMPTS
        ),
        run_lock_path=_lookup(values, CFG_RUN_LOCK_PATH) or DEFAULT_RUN_LOCK_PATH,
    )


@lru_cache(maxsize=1)
def get_log_settings() -> LogSettings:
    log_file = os.getenv(ENV_LOG_FILE, DEFAULT_LOG_FILE)
    max_bytes = _parse_int(os.getenv(ENV_LOG_MAX_BYTES), DEFAULT_LOG_MAX_BYTES)
    keep_lines = _parse_int(os.getenv(ENV_LOG_KEEP_LINES), DEFAULT_LOG_KEEP_LINES)
    level = _parse_log_level(os.getenv(ENV_LOG_LEVEL), DEFAULT_LOG_LEVEL)
    fmt = os.getenv(ENV_LOG_FORMAT, DEFAULT_LOG_FORMAT)
    datefmt = os.getenv(ENV_LOG_DATE_FORMAT, DEFAULT_LOG_DATE_FORMAT)

    return LogSettings(
        log_file=log_file,
        max_bytes=max_bytes,
        keep_lines=keep_lines,
        level=level,
        fmt=fmt,
        datefmt=datefmt,
    )
