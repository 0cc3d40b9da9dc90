"""
Logging configuration for the Buy Box Repricer.

Handlers live on the ``buybox_repricer`` package logger only; module loggers
are its children and propagate to it. Settings are passed to
``setup_logging()``; anything not passed falls back to LOG_LEVEL, LOG_DIR,
DEBUG_MODE and LOG_TO_FILE.

Tick-scoped messages go through ``tick_logger()`` so every line emitted while
processing a tick carries the tick id.
"""

import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import Optional

import colorlog


PACKAGE_LOGGER = "buybox_repricer"
LOG_FILE_NAME = "buybox_repricer.log"

LOG_COLORS = {
    'DEBUG': 'cyan',
    'INFO': 'green',
    'WARNING': 'yellow',
    'ERROR': 'red',
    'CRITICAL': 'red,bg_white',
}


def _message_format(debug_mode: bool) -> str:
    location = "%(name)s.%(funcName)s:%(lineno)d" if debug_mode else "%(name)s"
    return f"%(asctime)s [%(levelname)8s] {location} - %(message)s"


class RepricerLogger:
    """Configures the package logger."""

    def __init__(self, name: str = PACKAGE_LOGGER):
        self.name = name
        self.logger = logging.getLogger(name)

    def configure(self, log_level: Optional[str] = None, log_dir: Optional[str] = None,
                  debug_mode: Optional[bool] = None, log_to_file: Optional[bool] = None) -> logging.Logger:
        """
        (Re)build handlers. Safe to call more than once.

        Explicit arguments win; anything left as None comes from the environment.
        """
        if log_level is None:
            log_level = os.getenv("LOG_LEVEL", "INFO")
        log_level = log_level.upper()
        if log_dir is None:
            log_dir = os.getenv("LOG_DIR", "./logs")
        if debug_mode is None:
            debug_mode = os.getenv("DEBUG_MODE", "false").lower() == "true"
        if log_to_file is None:
            log_to_file = os.getenv("LOG_TO_FILE", "true").lower() == "true"

        self.logger.setLevel(getattr(logging, log_level, logging.INFO))

        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        self.logger.addHandler(self._console_handler(debug_mode))
        if log_to_file:
            Path(log_dir).mkdir(parents=True, exist_ok=True)
            self.logger.addHandler(self._file_handler(log_dir, debug_mode))

        self.logger.propagate = False
        return self.logger

    @staticmethod
    def _console_handler(debug_mode: bool) -> logging.Handler:
        handler = colorlog.StreamHandler(sys.stdout)
        handler.setFormatter(colorlog.ColoredFormatter(
            "%(log_color)s" + _message_format(debug_mode),
            datefmt="%Y-%m-%d %H:%M:%S",
            log_colors=LOG_COLORS,
        ))
        return handler

    @staticmethod
    def _file_handler(log_dir: str, debug_mode: bool) -> logging.Handler:
        # 5MB per file, keep 5 files
        handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, LOG_FILE_NAME),
            maxBytes=5 * 1024 * 1024,
            backupCount=5,
            encoding='utf-8'
        )
        handler.setFormatter(logging.Formatter(_message_format(debug_mode), datefmt="%Y-%m-%d %H:%M:%S"))
        return handler


class TickLogAdapter(logging.LoggerAdapter):
    """Prefixes messages with ``[tick-id]``."""

    def process(self, msg, kwargs):
        return f"[{self.extra['tick_id']}] {msg}", kwargs


def tick_logger(logger: logging.Logger, tick_id: Optional[str]) -> logging.LoggerAdapter:
    return TickLogAdapter(logger, {"tick_id": tick_id or "-"})


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Get a logger under the package hierarchy.

    The package logger is configured on first use, so modules imported before
    ``setup_logging()`` still log somewhere sensible.

    Args:
        name: Logger name. If None, uses the caller's module name.

    Returns:
        Logger instance.
    """
    if name is None:
        frame = sys._getframe(1)
        name = frame.f_globals.get('__name__', PACKAGE_LOGGER)

    package = logging.getLogger(PACKAGE_LOGGER)
    if not package.handlers:
        RepricerLogger().configure()

    if name != PACKAGE_LOGGER and not name.startswith(PACKAGE_LOGGER + "."):
        name = f"{PACKAGE_LOGGER}.{name}"
    return logging.getLogger(name)


def setup_logging(log_level: Optional[str] = None, log_dir: Optional[str] = None,
                  debug_mode: Optional[bool] = None, log_to_file: Optional[bool] = None) -> None:
    """
    Setup application-wide logging configuration.

    This should be called once at application startup. Arguments left as None
    fall back to LOG_LEVEL, LOG_DIR, DEBUG_MODE and LOG_TO_FILE.
    """
    logger = RepricerLogger().configure(log_level, log_dir, debug_mode, log_to_file)
    logger.info("Logging system initialized")
    logger.debug(f"Log level: {logging.getLevelName(logger.level)}")
    logger.debug(f"Handlers: {[h.__class__.__name__ for h in logger.handlers]}")
