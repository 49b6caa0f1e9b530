"""Central logging configuration for RouterSync.

The optional ``config/local.yml`` file (``logging`` section) selects the log
directory, file name and level. When the directory is not writable the logs
go to ``./logs`` and a warning is recorded. Every record carries a ``device``
field, and credentials passed to RouterOS (``=password=...``) are masked.
"""

from __future__ import annotations

import logging
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from routersync.core.storage import load_local_config

DEFAULT_DIRECTORY = Path("/var/log/routersync")
DEFAULT_FILENAME = "routersync.log"
DEFAULT_LEVEL = logging.INFO
FALLBACK_DIRECTORY = Path("./logs")

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(threadName)s | device=%(device)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(slots=True)
class LoggingConfig:
    """Configuration values loaded from local.yml or defaults."""

    directory: Path
    filename: str
    level: int


class DeviceContextFilter(logging.Filter):
    """Ensure every record contains a device name."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "device", None):
            record.device = "-"
        return True


class SecretScrubberFilter(logging.Filter):
    """Remove obvious secrets from log messages."""

    SECRET_PATTERN = re.compile(r"(password|secret|token)=([^\s]+)", re.IGNORECASE)

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True

        cleaned = self.SECRET_PATTERN.sub(r"\1=***", message)
        if cleaned != message:
            record.msg = cleaned
            record.args = ()
        return True


def _level_from_value(raw_level: Any) -> int:
    if isinstance(raw_level, str):
        level = logging.getLevelName(raw_level.upper())
        if isinstance(level, int):
            return level
    if isinstance(raw_level, int) and not isinstance(raw_level, bool):
        return raw_level
    return DEFAULT_LEVEL


def _parse_logging_config(local_config: Mapping[str, Any] | None) -> LoggingConfig:
    section = local_config.get("logging") if isinstance(local_config, Mapping) else None
    if not isinstance(section, Mapping):
        section = {}

    directory_value = section.get("directory")
    filename_value = section.get("filename")

    directory = Path(directory_value).expanduser() if directory_value else DEFAULT_DIRECTORY
    filename = str(filename_value) if filename_value else DEFAULT_FILENAME
    return LoggingConfig(directory=directory, filename=filename, level=_level_from_value(section.get("level")))


def _ensure_writable_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    marker = path / ".write-test"
    with marker.open("a", encoding="utf-8"):
        pass
    marker.unlink(missing_ok=True)


def _determine_log_directory(target: Path, fallback: Path) -> tuple[Path, bool]:
    for index, candidate in enumerate((target, fallback)):
        try:
            _ensure_writable_directory(candidate)
            return candidate, index == 1
        except OSError:
            continue
    raise OSError("Unable to create a writable logging directory.")


def _build_handlers(log_path: Path) -> list[logging.Handler]:
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    filters: list[logging.Filter] = [DeviceContextFilter(), SecretScrubberFilter()]

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    stream_handler = logging.StreamHandler(sys.stdout)

    for handler in (file_handler, stream_handler):
        handler.setFormatter(formatter)
        for filter_ in filters:
            handler.addFilter(filter_)

    return [file_handler, stream_handler]


def setup_logging(local_config_path: str | Path | None = None, cli_level: int | None = None) -> logging.Logger:
    """Configure application-wide logging.

    Parameters
    ----------
    local_config_path:
        Optional path to ``local.yml``. Missing files mean defaults.
    cli_level:
        Level forced from the command line; wins over ``local.yml``.
    """

    local_config = load_local_config(local_config_path)
    config = _parse_logging_config(local_config)
    if cli_level is not None:
        config.level = cli_level

    log_directory, used_fallback = _determine_log_directory(config.directory, FALLBACK_DIRECTORY)
    log_path = log_directory / config.filename

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(config.level)
    for handler in _build_handlers(log_path):
        root_logger.addHandler(handler)

    # paramiko is chatty at INFO about transport negotiation.
    logging.getLogger("paramiko").setLevel(max(config.level, logging.WARNING))

    logger = logging.getLogger("routersync")
    logger.setLevel(config.level)
    logger.propagate = True

    if local_config is None:
        logger.info(
            "Logging configuration not found. Using defaults (directory=%s, level=%s).",
            config.directory,
            logging.getLevelName(config.level),
        )

    if used_fallback:
        logger.warning(
            "Logging directory '%s' is not writable. Falling back to '%s'.",
            config.directory,
            log_directory,
        )

    logger.info("Logging initialized at %s", log_path)
    return logger
