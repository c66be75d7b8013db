# =============================================================================
# File: pairchat/config/logging_config.py
# Description: Logging configuration using Rich framework
# =============================================================================

"""
Console output goes through rich on a terminal, JSON lines when
LOG_JSON_FORMAT is set, plain text otherwise. LOG_FILE adds a rotating
plain-text file. Single loggers can be tuned with LOGLEVEL_<LOGGER_NAME>,
e.g. LOGLEVEL_PAIRCHAT_CHAT_SYNC_CONTROLLER=DEBUG.
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

PAIRCHAT_THEME = Theme({
    "logging.level.debug": "magenta dim",
    "logging.level.info": "green",
    "logging.level.warning": "dark_goldenrod",
    "logging.level.error": "red",
    "logging.level.critical": "bold red",
    "log.time": "grey70",
    "log.message": "grey85",
})

PLAIN_FORMAT = "[%(asctime)s] [%(levelname)-8s] [%(name)-36s] %(message)s"
PLAIN_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Context attributes passed through `extra=` that end up in JSON output
CONTEXT_FIELDS = ("user_id", "conversation_id", "message_id")

# Chat loggers that are chatty at DEBUG
DEFAULT_LOGGER_LEVELS = {
    "asyncio": logging.WARNING,
    "pairchat.chat.sync_controller": logging.INFO,
    "pairchat.chat.presence": logging.INFO,
    "pairchat.infra.channel_registry": logging.INFO,
}


def get_env_bool(key: str, default: bool = False) -> bool:
    """Read a boolean flag ('true', '1', 'yes', 'on') from the environment."""
    value = os.getenv(key, '').strip().lower()
    if not value:
        return default
    return value in ('true', '1', 'yes', 'on')


def get_env_int(key: str, default: int) -> int:
    """Read an integer from the environment, falling back on bad input."""
    raw = os.getenv(key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class ProductionFormatter(logging.Formatter):
    """One JSON object per record, with chat context attributes"""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        if get_env_bool('LOG_JSON_INCLUDE_EXTRAS', True):
            payload.update({
                name: getattr(record, name) for name in CONTEXT_FIELDS if hasattr(record, name)
            })

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def get_logger_level_from_env(logger_name: str, default_level: int) -> int:
    """Level override from LOGLEVEL_<LOGGER_NAME>, or default_level."""
    env_name = "LOGLEVEL_" + logger_name.replace('.', '_').upper()
    level_name = os.getenv(env_name, '').strip().upper()
    if level_name == 'WARN':
        level_name = 'WARNING'
    level = logging.getLevelName(level_name) if level_name else None
    return level if isinstance(level, int) else default_level


def _console_handler(enable_json: bool, rich_tracebacks: bool) -> logging.Handler:
    force_color = get_env_bool("FORCE_COLOR", False)

    if enable_json:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(ProductionFormatter())
        return handler

    if sys.stdout.isatty() or force_color:
        console = Console(
            theme=PAIRCHAT_THEME,
            force_terminal=force_color,
            width=get_env_int('LOG_CONSOLE_WIDTH', 0) or None,
        )
        return RichHandler(
            console=console,
            rich_tracebacks=rich_tracebacks,
            show_path=False,
            markup=False,
        )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(PLAIN_FORMAT, datefmt=PLAIN_DATEFMT))
    return handler


def _file_handler(path: str) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=get_env_int('LOG_MAX_SIZE_MB', 100) * 1024 * 1024,
        backupCount=get_env_int('LOG_BACKUP_COUNT', 5),
        encoding='utf-8',
    )
    # Files stay plain text regardless of console mode
    handler.setFormatter(logging.Formatter(PLAIN_FORMAT, datefmt=PLAIN_DATEFMT))
    return handler


def setup_logging(
        service_name: str = "pairchat",
        log_level: Optional[str] = None,
        log_file: Optional[str] = None,
        enable_json: Optional[bool] = None,
        rich_tracebacks: bool = True,
) -> None:
    """
    Configure the root logger.

    Args:
        service_name: Prefix of the startup logger
        log_level: Root level; LOG_LEVEL or INFO when omitted
        log_file: Rotating log file; LOG_FILE when omitted
        enable_json: JSON console output; LOG_JSON_FORMAT when omitted
        rich_tracebacks: Pretty exceptions in rich mode
    """
    if enable_json is None:
        enable_json = get_env_bool('LOG_JSON_FORMAT', False)
    log_file = log_file or os.getenv("LOG_FILE")

    root = logging.getLogger()
    root.setLevel((log_level or os.getenv("LOG_LEVEL", "INFO")).upper())
    root.handlers.clear()
    root.addHandler(_console_handler(enable_json, rich_tracebacks))
    if log_file:
        root.addHandler(_file_handler(log_file))

    for name, level in DEFAULT_LOGGER_LEVELS.items():
        logging.getLogger(name).setLevel(get_logger_level_from_env(name, level))

    logging.getLogger(f"{service_name}.startup").info(
        f"Logging configured for {service_name} ({'json' if enable_json else 'console'})"
    )


# =============================================================================
# EOF
# =============================================================================
