"""Logging setup for entry points.

Modules use ``logging.getLogger(__name__)`` directly. Entry points call
``setup_logging`` once: the console gets a rich handler at ``LOG_LEVEL`` and
warnings and errors are also appended to ``LOG_FILE``.
"""
import logging

from rich.logging import RichHandler

from .constants import LOG_LEVEL_NAME

__all__ = ["get_logger", "setup_logging", "shutdown_logging"]

FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# handlers installed by setup_logging, removed again by shutdown_logging
_installed: list[logging.Handler] = []


def get_logger(name: str | None = None) -> logging.Logger:
    return logging.getLogger(name or __name__)


def _build_handlers(log_file: str) -> list[logging.Handler]:
    console = RichHandler(
        rich_tracebacks=True,
        markup=False,
        show_time=True,
        show_level=True,
        show_path=False,
        log_time_format="%H:%M:%S",
    )
    console.setFormatter(logging.Formatter("%(message)s"))
    handlers: list[logging.Handler] = [console]
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.WARNING)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        handlers.append(file_handler)
    return handlers


def setup_logging(level_name: str | None = None, *, log_file: str | None = None) -> None:
    """Install the console and file handlers on the root logger.

    Calling it again replaces the handlers from the previous call.
    ``log_file`` defaults to the ``log_file`` setting; an empty value skips
    the file handler.
    """
    from shopbook.config import get_setting

    level = getattr(logging, (level_name or LOG_LEVEL_NAME).upper(), logging.INFO)
    if log_file is None:
        log_file = str(get_setting("log_file") or "")

    shutdown_logging()
    root = logging.getLogger()
    for handler in _build_handlers(log_file):
        root.addHandler(handler)
        _installed.append(handler)
    root.setLevel(level)

    # SQL echo and per-request client lines are noisy at INFO
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def shutdown_logging() -> None:
    """Detach and close the handlers installed by ``setup_logging``."""
    root = logging.getLogger()
    while _installed:
        handler = _installed.pop()
        root.removeHandler(handler)
        handler.close()
