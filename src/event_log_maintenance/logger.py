"""
Logging setup shared by all maintenance modules.

Usage:
    from event_log_maintenance.logger import configure_logging, get_logger

    configure_logging()            # once, at the entry point
    logger = get_logger(__name__)  # per module
"""
import logging
import os
import sys

LOG_LEVEL_ENV = "EVENT_LOG_MAINTENANCE_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"

_ROOT_LOGGER_NAME = "event_log_maintenance"


def get_logger(name: str) -> logging.Logger:
    """Return a module logger nested under the package root logger."""
    if not name.startswith(_ROOT_LOGGER_NAME):
        name = f"{_ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


def configure_logging(level: str | int | None = None) -> logging.Logger:
    """
    Install a single stream handler on the package root logger.

    Calling it again only updates the level, so entry points may call it freely.

    :param level: Level name or number. Defaults to ``$EVENT_LOG_MAINTENANCE_LOG_LEVEL``
        or ``INFO``.
    :return: The package root logger.
    """
    if level is None:
        level = os.environ.get(LOG_LEVEL_ENV, "INFO").upper()
    root = logging.getLogger(_ROOT_LOGGER_NAME)
    root.setLevel(level)
    if not any(getattr(h, "_event_log_maintenance", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._event_log_maintenance = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    return root
