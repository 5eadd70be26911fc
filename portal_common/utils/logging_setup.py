from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional, Union

from ..settings import COLOR_RESET, LEVEL_COLORS, get_log_settings

# Confirmed delivery sits between INFO and WARNING.
SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

# Tags used in the router log file.
LEVEL_TAGS = {
    "WARNING": "WARN",
    "CRITICAL": "FATAL",
}

_COLORS = dict(LEVEL_COLORS)
_COLORS[SUCCESS] = "\x1b[1;32m"


class ColorFormatter(logging.Formatter):
    def __init__(self, *args, use_color: bool = True, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        original_levelname = record.levelname
        try:
            tag = LEVEL_TAGS.get(record.levelname, record.levelname)
            if self._use_color:
                color = _COLORS.get(record.levelno)
                if color:
                    tag = f"{color}{tag}{COLOR_RESET}"
            record.levelname = tag
            return super().format(record)
        finally:
            record.levelname = original_levelname


# Runtime guard to ensure handlers are attached only once per process. (NOT A CONSTANT)
_LOGGING_CONFIGURED = False


class TailRotatingFileHandler(logging.FileHandler):
    """
    Append-only log file that keeps itself small.

    After every record, if the file is larger than ``max_bytes`` it is
    rewritten with only the last ``keep_lines`` lines. Rotation errors are
    reported through ``handleError`` and never reach the caller.
    """

    def __init__(
        self,
        filename: Union[str, Path],
        max_bytes: int,
        keep_lines: int,
        encoding: str = "utf-8",
    ) -> None:
        super().__init__(filename, mode="a", encoding=encoding, delay=True)
        self.max_bytes = max_bytes
        self.keep_lines = keep_lines

    def emit(self, record: logging.LogRecord) -> None:
        super().emit(record)
        try:
            self.rotate_if_needed()
        except OSError:
            self.handleError(record)

    def rotate_if_needed(self) -> bool:
        path = Path(self.baseFilename)
        if not path.exists() or path.stat().st_size <= self.max_bytes:
            return False

        with path.open("r", encoding=self.encoding, errors="replace") as handle:
            lines = handle.readlines()
        tail = lines[-self.keep_lines:]

        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            with tmp_path.open("w", encoding=self.encoding) as handle:
                handle.writelines(tail)
            # The open stream still points at the old inode.
            if self.stream is not None:
                self.stream.close()
                self.stream = None
            tmp_path.replace(path)
        except OSError:
            if tmp_path.exists():
                tmp_path.unlink()
            raise
        return True


def setup_logger(
    name: Optional[str] = None,
    *,
    level: Optional[int] = None,
    log_file: Optional[Union[str, Path]] = None,
    fmt: Optional[str] = None,
    datefmt: Optional[str] = None,
    console: Optional[bool] = None,
) -> logging.Logger:
    log_settings = get_log_settings()

    level = level if level is not None else log_settings.level
    log_file = log_file or log_settings.log_file
    fmt = fmt or log_settings.fmt
    datefmt = datefmt or log_settings.datefmt
    if console is None:
        console = sys.stderr.isatty()

    global _LOGGING_CONFIGURED
    root_logger = logging.getLogger()

    if not _LOGGING_CONFIGURED:
        root_logger.setLevel(level)

        if console:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(
                ColorFormatter(fmt=fmt, datefmt=datefmt, use_color=True)
            )
            root_logger.addHandler(console_handler)

        log_path = Path(log_file)
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            print(f"[WARN] Log directory unavailable: {exc}", file=sys.stderr)
        else:
            file_handler = TailRotatingFileHandler(
                log_path,
                max_bytes=log_settings.max_bytes,
                keep_lines=log_settings.keep_lines,
            )
            file_handler.setFormatter(
                ColorFormatter(fmt=fmt, datefmt=datefmt, use_color=False)
            )
            root_logger.addHandler(file_handler)

        _LOGGING_CONFIGURED = True

    logger_name = name or "portal_agent"
    return logging.getLogger(logger_name)


def log_success(logger: logging.Logger, msg: str, *args) -> None:
    logger.log(SUCCESS, msg, *args)
