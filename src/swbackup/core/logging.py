"""Central logging configuration for SwitchConfigBackup.

This module reads the optional ``config/local.yml`` file (``logging`` section)
to determine where logs should be written and which verbosity level to use.
Without a configured location the log goes to ``{workdir}/{yyMMdd} script.log``.
If the directory is not writable, it falls back to ``./logs`` while recording a
warning. Secrets are scrubbed from log messages and the ``device`` context is
always present to satisfy the required format.
"""

from __future__ import annotations

import logging
import re
import sys
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Mapping, TextIO

import yaml

from swbackup.core.naming import default_log_filename

PROJECT_ROOT = Path(__file__).resolve().parents[3]
DEFAULT_LEVEL = logging.INFO
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config" / "local.yml"
FALLBACK_DIRECTORY = Path("./logs")

LOG_FORMAT = "%(asctime)s | %(levelname)s | device=%(device)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(slots=True)
class LoggingConfig:
    """Configuration values loaded from local.yml or defaults."""

    directory: Path
    filename: str
    level: int
    color: bool | None = None


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


class ColorFormatter(logging.Formatter):
    """Color console lines by level."""

    COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[1;31m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color = self.COLORS.get(record.levelno)
        return f"{color}{message}{self.RESET}" if color else message


def _load_logging_section(config_path: Path) -> Mapping[str, Any]:
    if not config_path.exists():
        return {}

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except (OSError, yaml.YAMLError):
        return {}

    if not isinstance(data, Mapping):
        return {}

    logging_section = data.get("logging", {})
    if not isinstance(logging_section, Mapping):
        return {}

    return logging_section


def _level_from_value(raw_level: Any) -> int:
    if isinstance(raw_level, str):
        level_name = raw_level.upper()
        level = logging.getLevelName(level_name)
        if isinstance(level, int):
            return level
    if isinstance(raw_level, int):
        return raw_level
    return DEFAULT_LEVEL


def parse_logging_config(config_path: Path, workdir: Path, day: date) -> LoggingConfig:
    section = _load_logging_section(config_path)

    directory_value = section.get("directory")
    filename_value = section.get("filename")
    color_value = section.get("color")

    return LoggingConfig(
        directory=Path(directory_value).expanduser() if directory_value else workdir,
        filename=str(filename_value) if filename_value else default_log_filename(day),
        level=_level_from_value(section.get("level")),
        color=color_value if isinstance(color_value, bool) else None,
    )


def _resolve_config_path(config_path: str | Path) -> Path:
    candidate = Path(config_path)
    if not candidate.is_absolute():
        candidate = PROJECT_ROOT / candidate
    return candidate


def _ensure_writable_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    probe = path / ".write-test"
    with probe.open("a", encoding="utf-8"):
        probe.touch()
    probe.unlink(missing_ok=True)


def _determine_log_directory(target: Path, fallback: Path) -> tuple[Path, bool]:
    for index, candidate in enumerate((target, fallback)):
        try:
            _ensure_writable_directory(candidate)
            return candidate, index == 1
        except OSError:
            continue
    raise OSError("Unable to create a writable logging directory.")


def _build_handlers(log_path: Path, stream: TextIO, color: bool) -> list[logging.Handler]:
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    console_formatter = ColorFormatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT) if color else formatter
    filters: list[logging.Filter] = [DeviceContextFilter(), SecretScrubberFilter()]

    file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(stream)
    stream_handler.setFormatter(console_formatter)

    for handler in (file_handler, stream_handler):
        for filter_ in filters:
            handler.addFilter(filter_)

    return [file_handler, stream_handler]


def setup_logging(
    config_path: str | Path | None = "config/local.yml",
    *,
    workdir: Path = Path("."),
    day: date | None = None,
    cli_level: int | None = None,
    log_file: Path | None = None,
    stream: TextIO | None = None,
) -> logging.Logger:
    """Configure application-wide logging.

    Parameters
    ----------
    config_path:
        Optional path to ``local.yml``. Relative paths are resolved against
        the project root.
    workdir:
        Directory for the default ``{yyMMdd} script.log`` file.
    cli_level:
        Level forced from the command line, overriding local.yml.
    log_file:
        Explicit log file path, overriding local.yml and the default.
    """

    day = day or date.today()
    stream = stream or sys.stdout
    config_file = _resolve_config_path(config_path) if config_path else DEFAULT_CONFIG_PATH
    config = parse_logging_config(config_file, workdir, day)
    if log_file is not None:
        config.directory = log_file.parent if str(log_file.parent) else Path(".")
        config.filename = log_file.name
    if cli_level is not None:
        config.level = cli_level

    log_directory, used_fallback = _determine_log_directory(config.directory, FALLBACK_DIRECTORY)
    log_path = log_directory / config.filename

    color = config.color if config.color is not None else stream.isatty()
    handlers = _build_handlers(log_path, stream, color)
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(config.level)
    for handler in handlers:
        root_logger.addHandler(handler)

    logging.getLogger("paramiko").setLevel(max(config.level, logging.WARNING))

    logger = logging.getLogger("swbackup")
    logger.setLevel(config.level)
    logger.propagate = True

    if used_fallback:
        logger.warning(
            "Logging directory '%s' is not writable. Falling back to '%s'.",
            config.directory,
            log_directory,
        )

    logger.info("Logging initialized at %s", log_path)
    return logger
