"""
Error taxonomy and error logging for marginalia.

None of these cross a component boundary: each is raised inside a
component and recovered there into an explicit result (False, None,
a count). log_exception keeps full tracebacks for CLI failures while
the user sees a clean message.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class MarginaliaError(Exception):
    """Base class for engine errors."""


class CapacityExceeded(MarginaliaError):
    """A bounded store write did not fit in the remaining capacity."""

    def __init__(self, message: str, required: int = 0):
        super().__init__(message)
        self.required = required


class LookupFailed(MarginaliaError):
    """An external metadata lookup failed (eligible for retry)."""


class MalformedRecord(MarginaliaError):
    """A record or cached annotation lacks a required field."""


class AnchorNotFound(MarginaliaError):
    """Selected or stored annotation text cannot be located."""


def _error_log_path() -> Path:
    """Resolve error log path, respecting MARGINALIA_STORE_PATH."""
    store = os.environ.get("MARGINALIA_STORE_PATH")
    if store:
        return Path(store) / "marginalia-errors.log"
    return Path.home() / ".marginalia" / "marginalia-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Error log unwritable
    return log_path
