"""Logging setup and credential redaction.

Modules log through child loggers of ``loopauth`` (``loopauth.auth``,
``loopauth.config``). The package logger gets one stderr handler the first
time :func:`get_logger` runs; applications that configure logging
themselves can ignore this module.
"""

from __future__ import annotations

import logging
import sys

from typing import Any


LOGGER_NAME = "loopauth"
DEFAULT_FORMAT = "%(name)s - %(levelname)s - %(message)s"

_HANDLER_NAME = "loopauth-stderr"

REDACTED = "[REDACTED]"

# Key fragments that mark a value as a credential
_SENSITIVE_FRAGMENTS = ("secret", "password", "token", "verifier", "credential")

# Exact keys ("code", but not "code_challenge")
_SENSITIVE_KEYS = frozenset({"code"})


def get_logger() -> logging.Logger:
    """Return the ``loopauth`` logger, installing its stderr handler once.

    Returns
    -------
    logging.Logger
        The package logger (``WARNING`` unless changed).
    """
    logger = logging.getLogger(LOGGER_NAME)
    if not any(h.get_name() == _HANDLER_NAME for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.set_name(_HANDLER_NAME)
        handler.setFormatter(logging.Formatter(DEFAULT_FORMAT))
        logger.addHandler(handler)
        if logger.level == logging.NOTSET:
            logger.setLevel(logging.WARNING)
    return logger


def set_level(level: int | str) -> None:
    """Set the package log level from a number or a level name."""
    get_logger().setLevel(level.upper() if isinstance(level, str) else level)


def enable_debug() -> None:
    """Log listener and exchange activity."""
    set_level(logging.DEBUG)


def configure(level: str | None = None, fmt: str | None = None) -> logging.Logger:
    """Apply log settings to the loopauth logger.

    Parameters
    ----------
    level : str, optional
        Level name; falls back to ``settings.log.level``.
    fmt : str, optional
        Format string; falls back to ``settings.log.format``.

    Returns
    -------
    logging.Logger
        The configured logger.
    """
    from .config import get_settings

    log_settings = get_settings().log
    logger = get_logger()
    set_level(level or log_settings.level)
    formatter = logging.Formatter(fmt or log_settings.format)
    for handler in logger.handlers:
        if handler.get_name() == _HANDLER_NAME:
            handler.setFormatter(formatter)
    return logger


def _is_sensitive(key: object) -> bool:
    name = str(key).lower()
    return name in _SENSITIVE_KEYS or any(fragment in name for fragment in _SENSITIVE_FRAGMENTS)


def redact_sensitive_data(data: Any, max_depth: int = 5) -> Any:
    """Return a copy of ``data`` safe to log.

    Values under credential-like keys (codes, verifiers, tokens, secrets)
    become ``"[REDACTED]"`` at any nesting level. Structures deeper than
    ``max_depth`` are replaced with ``"[MAX_DEPTH]"``. Other values are
    returned unchanged.
    """
    if max_depth <= 0:
        return "[MAX_DEPTH]"
    if isinstance(data, dict):
        return {
            key: REDACTED if _is_sensitive(key) else redact_sensitive_data(value, max_depth - 1)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [redact_sensitive_data(item, max_depth - 1) for item in data]
    return data
