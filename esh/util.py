"""Logging setup and small process helpers."""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import NoReturn, Tuple

from esh.errors import ShellFatalError

PKG_NAME = "esh"
PKG_VERSION = "0.1.0"
LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"

logger = logging.getLogger("esh")

# Set by the first init_logging() call.  Not locked: concurrent first calls
# race and whichever reaches logging.basicConfig first wins.
_LOGGING_READY = False


def get_cmd_basename(fallback: str) -> str:
    """Return the basename the program was invoked as, or *fallback*."""

    if sys.argv and sys.argv[0]:
        name = Path(sys.argv[0]).name
        if name:
            return name
    return fallback


def log_level_for(quiet: bool, verbose: int) -> int:
    if quiet:
        return logging.ERROR
    if verbose <= 0:
        return logging.WARNING
    if verbose == 1:
        return logging.INFO
    return logging.DEBUG


def _env_level(name: str) -> int | None:
    env_name = name.upper().replace("-", "_") + "_LOG"
    raw = os.environ.get(env_name)
    if not raw:
        return None
    if raw.isdigit():
        return int(raw)
    level = logging.getLevelName(raw.strip().upper())
    return level if isinstance(level, int) else None


def init_logging(name: str, quiet: bool = False, verbose: int = 0) -> Tuple[bool, int]:
    """Configure process-wide logging once.

    ``<NAME>_LOG`` (e.g. ``ESH_LOG=debug``) overrides the level derived from
    the flags.  Returns ``(is_verbose, level)``; calls after the first one
    compute the values but leave the existing configuration untouched.
    """

    global _LOGGING_READY
    is_verbose = not quiet and verbose > 0
    level = _env_level(name)
    if level is None:
        level = log_level_for(quiet, verbose)
    if _LOGGING_READY:
        return is_verbose, level
    _LOGGING_READY = True
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)
    logging.getLogger(PKG_NAME).setLevel(level)
    return is_verbose, level


def die(message: str = "") -> NoReturn:
    """Abort the current run.

    Only raises: the outermost entry point decides the process status.
    """

    if message:
        logger.error("Fatal error, exiting: %s", message)
    else:
        logger.error("Fatal error, exiting")
    raise ShellFatalError(message or "fatal error")


__all__ = [
    "LOG_FORMAT",
    "PKG_NAME",
    "PKG_VERSION",
    "die",
    "get_cmd_basename",
    "init_logging",
    "log_level_for",
]
