"""
Error types for zotero-bridge, and error logging for the CLI.

Lookup failures (NotFound, InvalidReference, NotConnected) are recoverable:
the caller can fix its input and retry. LiveWriterDetected and
IntegrityCheckFailed mean the database file must not be touched; nothing in
this package retries them.

Logs full stack traces for debugging while showing clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class BridgeError(Exception):
    """Base class for all zotero-bridge errors."""

    #: Stable code reported to tool callers
    code = "error"


class NotConnectedError(BridgeError):
    """An accessor was used before connect() or after disconnect()."""
    code = "not_connected"


class NotFoundError(BridgeError):
    """A referenced item, collection, tag or attachment does not exist."""
    code = "not_found"


class DatabaseNotFoundError(NotFoundError):
    """The database file itself does not exist."""
    code = "database_not_found"


class InvalidReferenceError(BridgeError):
    """A reference is structurally invalid (missing parent, cycle, unknown field)."""
    code = "invalid_reference"


class ReadOnlyError(BridgeError):
    """A mutating call was made on a read-only session."""
    code = "read_only"


class LiveWriterDetectedError(BridgeError):
    """The owning application appears to be running or holding the file."""
    code = "live_writer_detected"


class IntegrityCheckFailedError(BridgeError):
    """The integrity probe failed against the file or the in-memory image."""
    code = "integrity_check_failed"


class AttachmentUnresolvableError(BridgeError):
    """An attachment path cannot be resolved, or its file is absent/unreadable."""
    code = "attachment_unresolvable"


def _error_log_path() -> Path:
    """Resolve error log path, respecting ZOTERO_BRIDGE_LOG_DIR."""
    log_dir = os.environ.get("ZOTERO_BRIDGE_LOG_DIR")
    if log_dir:
        return Path(log_dir) / "zotero-bridge-errors.log"
    return Path.home() / ".config" / "zotero-bridge" / "zotero-bridge-errors.log"


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
            f.write(f" {type(exc).__name__}: {exc}\n")
            f.write(traceback.format_exc())
    except OSError:
        pass  # can't write error log; don't crash over it
    return log_path
