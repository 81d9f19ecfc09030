"""Exception types raised by the crash diagnosis pipeline.

Only a small set of conditions is ever raised to callers. Everything else
(bad frame lines, missing dSYMs, resolver failures, broken signatures) is
recovered where it happens and reported through logging and result flags.
"""

from __future__ import annotations


class CrashDxError(Exception):
    """Base class for all crashdx errors."""


class UnrecognizedCrashFormatError(CrashDxError, ValueError):
    """Raised when a crash artifact matches neither supported grammar."""

    def __init__(self, message: str = "", *, preview: str = ""):
        self.preview = preview
        if not message:
            message = "Input is neither an .ips JSON crash report nor a classic .crash log"
        super().__init__(message)


class CrashLogNotFoundError(CrashDxError, FileNotFoundError):
    """Raised when a crash log path does not exist."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Crash log file not found: {path}")


class ConfigError(CrashDxError, ValueError):
    """Raised for an unreadable or invalid configuration file."""
