"""
Service log for the Claude proxy.

Everything is logged under ``claude_proxy``; output of supervised provider
processes arrives on the ``claude_proxy.process`` child and shares its handler.
"""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

import colorlog

LOGGER_NAME = "claude_proxy"
DISABLED_LEVEL = "DISABLE"
DEFAULT_LOG_PATH = "~/.claude/proxy/claude-proxy.log"

MAX_LOG_BYTES = 1_048_576
LOG_BACKUPS = 3

_PLAIN_FORMAT = "%(asctime)s %(levelname)-8s %(name)s - %(message)s"
_COLOR_FORMAT = "%(log_color)s%(asctime)s %(levelname)-8s%(reset)s %(cyan)s%(name)s%(reset)s - %(message)s"
_LEVEL_COLORS = {
    "DEBUG": "white",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "bold_red",
}


def _color_wanted(color: Optional[bool]) -> bool:
    if color is not None:
        return color
    return os.getenv("LOG_COLOR", "true").strip().lower() in ("true", "1", "yes", "on")


def _formatter(color: bool) -> logging.Formatter:
    if color:
        return colorlog.ColoredFormatter(_COLOR_FORMAT, log_colors=_LEVEL_COLORS, reset=True)
    return logging.Formatter(_PLAIN_FORMAT)


def _open_handler(path: Path) -> tuple[logging.Handler, Optional[OSError]]:
    """Rotating file handler at path, or a stderr handler plus the reason the file failed."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8")
    except OSError as e:
        return logging.StreamHandler(), e
    return handler, None


def setup_logging(
    log_path: Optional[str] = None,
    level_name: Optional[str] = None,
    color: Optional[bool] = None,
) -> logging.Logger:
    """
    Attach the service log handler to ``claude_proxy`` and return that logger.

    Safe to call again: previous handlers are closed and replaced. A level of
    DISABLE turns logging off; an unusable log path falls back to stderr.
    """
    level_name = (level_name or os.getenv("LOG_LEVEL") or "INFO").strip().upper()
    logger = logging.getLogger(LOGGER_NAME)
    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()
    logger.propagate = False

    if level_name == DISABLED_LEVEL:
        logging.disable(logging.CRITICAL)
        logger.addHandler(logging.NullHandler())
        return logger
    logging.disable(logging.NOTSET)

    level = logging.getLevelName(level_name)
    logger.setLevel(level if isinstance(level, int) else logging.INFO)

    path = Path(log_path or DEFAULT_LOG_PATH).expanduser()
    handler, failure = _open_handler(path)
    handler.setFormatter(_formatter(_color_wanted(color)))
    logger.addHandler(handler)
    if failure is not None:
        logger.warning("Cannot write log file %s (%s); logging to stderr", path, failure)
    return logger


def mask_secret(s: Optional[str], keep_start: int = 6, keep_end: int = 4) -> str:
    """Show only the ends of a credential; short values are fully starred."""
    s = (s or "").strip()
    if len(s) <= keep_start + keep_end:
        return "*" * len(s)
    return f"{s[:keep_start]}...{s[-keep_end:]}"
