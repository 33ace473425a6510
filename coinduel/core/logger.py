"""
Logging for the duel server.

Every line reads `time | LEVEL | logger | message [key=value ...]`, where the
bracketed part holds whatever was passed through `extra=` (match ids, bets).
The console can be colored or JSON. The optional file log is always plain.
"""

import logging
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Optional

import orjson

ROOT_LOGGER = "coinduel"
DEFAULT_LOG_FILE = Path(__file__).resolve().parents[2] / "data" / "coinduel.log"

RESET = "\033[0m"
GRAY = "\033[90m"
CYAN = "\033[96m"
LEVEL_COLORS = {
    logging.DEBUG: GRAY,
    logging.INFO: "\033[92m",
    logging.WARNING: "\033[93m",
    logging.ERROR: "\033[91m",
    logging.CRITICAL: "\033[95m",
}

# Attributes every LogRecord has; anything else came in through `extra=`
_RECORD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


def record_context(record: logging.LogRecord) -> dict:
    return {k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRS}


class PlainFormatter(logging.Formatter):
    """Pipe-separated line with the record's context appended."""

    def paint(self, text: str, color: str) -> str:
        return text

    def format(self, record):
        line = " | ".join((
            self.paint(self.formatTime(record, "%Y-%m-%d %H:%M:%S"), GRAY),
            self.paint(f"{record.levelname:<8}", LEVEL_COLORS.get(record.levelno, RESET)),
            self.paint(record.name, CYAN),
            record.getMessage(),
        ))
        context = record_context(record)
        if context:
            pairs = " ".join(f"{k}={v}" for k, v in context.items())
            line += " " + self.paint(f"[{pairs}]", GRAY)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class ColoredFormatter(PlainFormatter):
    """Same layout as PlainFormatter, with ANSI colors for a terminal."""

    def paint(self, text: str, color: str) -> str:
        return f"{color}{text}{RESET}"


class JsonFormatter(logging.Formatter):
    """One JSON object per line; context keys sit beside the standard ones."""

    def format(self, record):
        entry = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        entry.update(record_context(record))
        return orjson.dumps(entry, default=str).decode()


FORMATTERS = {
    "color": ColoredFormatter,
    "plain": PlainFormatter,
    "json": JsonFormatter,
}


def _file_handler(path: Path, max_bytes: int, backups: int) -> Optional[logging.Handler]:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backups)
    except OSError as e:
        sys.stderr.write(f"WARNING: file logging disabled, cannot open {path}: {e}\n")
        return None
    handler.setFormatter(PlainFormatter())
    return handler


def setup_logger(
    name: str = ROOT_LOGGER,
    level: str = "INFO",
    log_to_file: bool = False,
    log_file_path: Optional[Path] = None,
    max_file_size: int = 5 * 1024 * 1024,
    backup_count: int = 3,
    formatter: str = "color",
) -> logging.Logger:
    """
    Configure `name` with a stdout handler and, optionally, a rotating file.

    Handlers are attached only on the first call for a name. Later calls
    just apply the new level, so importing modules early is harmless.
    Unknown formatter names fall back to "color".
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    if logger.handlers:
        return logger

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(FORMATTERS.get(formatter, ColoredFormatter)())
    logger.addHandler(console)

    if log_to_file:
        handler = _file_handler(log_file_path or DEFAULT_LOG_FILE, max_file_size, backup_count)
        if handler is not None:
            logger.addHandler(handler)

    logger.propagate = False
    return logger


_app_logger: Optional[logging.Logger] = None


def get_logger(name: str = None) -> logging.Logger:
    """Return the service logger, or its `name` child (e.g. "matchmaking")."""
    global _app_logger

    if _app_logger is None:
        _app_logger = setup_logger()
    return _app_logger.getChild(name) if name else _app_logger


def init_logging(
    level: str = "INFO",
    log_to_file: bool = False,
    formatter: str = "color",
    log_file_path: Optional[Path] = None,
):
    """Configure the service logger from settings. Called once by main."""
    global _app_logger
    # Modules that logged at import time got the default handlers
    service = logging.getLogger(ROOT_LOGGER)
    for handler in list(service.handlers):
        service.removeHandler(handler)
        handler.close()

    _app_logger = setup_logger(
        level=level,
        log_to_file=log_to_file,
        formatter=formatter,
        log_file_path=log_file_path,
    )
    _app_logger.info(f"Logging initialized at {level} level")
