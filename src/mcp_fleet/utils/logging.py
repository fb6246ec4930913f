"""
Logging utilities for mcp-fleet.

All loggers share a rich console handler on stderr. Loggers created through
``get_logger`` accept a ``data`` keyword that is appended to the message, so
call sites can attach structured context without formatting it themselves.
"""

import logging
from typing import Any, Dict, Optional

from rich.console import Console
from rich.logging import RichHandler

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}

_loggers: Dict[str, logging.Logger] = {}
_console = Console(stderr=True)
_log_level = logging.INFO
_log_handlers: list[logging.Handler] = [RichHandler(console=_console, rich_tracebacks=True)]


def resolve_level(level: int | str) -> int:
    """
    Translate a level name ("info", "DEBUG", ...) into a logging constant.

    Unknown names fall back to INFO.
    """
    if isinstance(level, int):
        return level
    return _LEVELS.get(level.lower(), logging.INFO)


def configure_logging(
    level: int | str = logging.INFO,
    add_file_handler: Optional[str] = None,
    console: bool = True,
) -> None:
    """
    Configure the logging system.

    Args:
        level: Logging level, as a constant or a name.
        add_file_handler: If provided, also log to this file.
        console: Whether to keep the rich console handler.
    """
    global _log_level, _log_handlers

    _log_level = resolve_level(level)
    _log_handlers = []
    if console:
        _log_handlers.append(RichHandler(console=_console, rich_tracebacks=True))

    if add_file_handler:
        file_handler = logging.FileHandler(add_file_handler)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        _log_handlers.append(file_handler)

    for logger in _loggers.values():
        _attach_handlers(logger)


class FleetLogger(logging.Logger):
    """
    A logger that supports the 'data' keyword argument.
    """

    def _log(
        self,
        level,
        msg,
        args,
        exc_info=None,
        extra=None,
        stack_info=False,
        stacklevel=1,
        data: Any = None,
    ):
        if data is not None:
            msg = f"{msg} {data}"
        super()._log(level, msg, args, exc_info, extra, stack_info, stacklevel)


logging.setLoggerClass(FleetLogger)


def _attach_handlers(logger: logging.Logger) -> None:
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
    for handler in _log_handlers:
        logger.addHandler(handler)
    logger.setLevel(_log_level)
    logger.propagate = False


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the specified name.

    Args:
        name: Name of the logger.

    Returns:
        Logger instance wired to the shared handlers.
    """
    if name in _loggers:
        return _loggers[name]

    logger = logging.getLogger(name)
    _attach_handlers(logger)
    _loggers[name] = logger
    return logger


class Logger:
    """
    Structured logger used for fleet lifecycle events.
    """

    def __init__(self, name: str):
        self._logger = get_logger(name)

    def event(
        self,
        level: str,
        event_type: str,
        message: str,
        exc: Optional[BaseException] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Log a structured event.

        Args:
            level: Log level ("debug", "info", "warning", "error", "critical").
            event_type: Type of event, rendered as a ``[prefix]``.
            message: Event message.
            exc: Optional exception to attach.
            data: Optional structured data.
        """
        self._logger.log(
            resolve_level(level),
            f"[{event_type}] {message}",
            exc_info=exc,
            data=data,
        )
