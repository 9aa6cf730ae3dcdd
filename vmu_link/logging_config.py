"""
Logging setup for the network VMU link.

Modules log through logging.getLogger(__name__). setup_logging() installs
the root handlers once per process (the bridge entry point, the companion
simulator and the stress script each call it with their own role) and
keeps the Socket.IO client libraries at WARNING unless DEBUG is asked for.
"""

import logging
import sys
from typing import List, Optional, Tuple, Union

LOG_FORMAT = '%(asctime)s - [{role}] %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Held at WARNING unless the root level is DEBUG
LIBRARY_LOGGERS = ('socketio', 'engineio')


def _resolve_level(level: Union[str, int]) -> int:
    """Accept a level name or number; anything unrecognised means INFO."""
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def _build_handlers(formatter: logging.Formatter, level: int,
                    log_file: Optional[str]) -> Tuple[List[logging.Handler], Optional[OSError]]:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    file_error = None
    if log_file:
        try:
            handlers.append(logging.FileHandler(log_file))
        except OSError as e:
            file_error = e

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)

    return handlers, file_error


def setup_logging(role: str = "vmu_link", level: Union[str, int] = "INFO",
                  log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the root logger for one process.

    Calling it again swaps the previous handlers out, so output is never
    duplicated.

    Args:
        role: Tag shown in every line (e.g., "vmu_link", "companion_sim")
        level: Level name or number; unknown names fall back to INFO
        log_file: Optional path for a second, file-backed handler

    Returns:
        The root logger
    """
    numeric_level = _resolve_level(level)
    formatter = logging.Formatter(LOG_FORMAT.format(role=role), datefmt=DATE_FORMAT)
    # File errors are reported once the console handler is installed
    handlers, file_error = _build_handlers(formatter, numeric_level, log_file)

    root_logger = logging.getLogger()
    for old in list(root_logger.handlers):
        root_logger.removeHandler(old)
        old.close()
    for handler in handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(numeric_level)

    library_level = logging.DEBUG if numeric_level <= logging.DEBUG else logging.WARNING
    for name in LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)

    if file_error is not None:
        root_logger.error(f"Failed to create log file {log_file}: {file_error}")
    elif log_file:
        root_logger.info(f"Logging to file: {log_file}")

    root_logger.info(f"Logging configured: role={role}, level={logging.getLevelName(numeric_level)}")
    return root_logger
