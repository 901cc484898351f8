"""
Unified logging helpers.

Every module logs through these functions instead of calling print directly.
INFO/SUCCESS/DEBUG go to stdout, WARN/ERROR go to stderr.
"""
import os
import sys

_debug_enabled = os.getenv("STAGEBUILD_DEBUG", "").lower() in ("1", "true", "yes")


def set_debug(enabled: bool) -> None:
    """Turn debug output on or off for every logger."""
    global _debug_enabled
    _debug_enabled = enabled


class Logger:
    """Minimal logger, independent of the logging module."""

    def __init__(self, prefix: str = ""):
        self.prefix = prefix

    def _format(self, level: str, message: str) -> str:
        if self.prefix:
            return f"[{level}] {self.prefix}: {message}"
        return f"[{level}] {message}"

    def info(self, message: str):
        print(self._format("INFO", message), file=sys.stdout)

    def success(self, message: str):
        print(self._format("SUCCESS", message), file=sys.stdout)

    def warning(self, message: str):
        print(self._format("WARN", message), file=sys.stderr)

    def error(self, message: str):
        print(self._format("ERROR", message), file=sys.stderr)

    def debug(self, message: str):
        if _debug_enabled:
            print(self._format("DEBUG", message), file=sys.stdout)


_default_logger = Logger()


def info(message: str):
    _default_logger.info(message)


def success(message: str):
    _default_logger.success(message)


def warning(message: str):
    _default_logger.warning(message)


def error(message: str):
    _default_logger.error(message)


def debug(message: str):
    _default_logger.debug(message)


def get_logger(prefix: str = "") -> Logger:
    """Return a logger whose lines carry `prefix` (usually a stage name)."""
    return Logger(prefix=prefix)
