"""
Logging configuration for zotero-bridge.

Quiet by default. Nothing is ever logged to stdout, which carries the MCP
stdio transport.
"""

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

_LIBRARY_LOGGERS = ("mcp", "pypdf", "httpx", "anyio")


def configure_quiet_mode(quiet: bool = True):
    """
    Configure logging to suppress verbose library output.

    This silences:
    - MCP server request logging
    - pypdf warnings about malformed PDFs
    - Library warnings (deprecation, etc.)

    Args:
        quiet: If True, suppress verbose output. If False, show everything.
    """
    if quiet:
        warnings.filterwarnings("ignore")
        for name in _LIBRARY_LOGGERS:
            logging.getLogger(name).setLevel(logging.ERROR)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    warnings.filterwarnings("default")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Add stderr handler if not already present
    if not any(isinstance(h, logging.StreamHandler) and h.stream == sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    for name in ("zotero_bridge",) + _LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG)


def configure_ops_log(log_dir):
    """Configure a persistent operations log.

    Writes to {log_dir}/zotero-bridge-ops.log using a rotating file handler
    (1MB max, 3 backups). Records saves, backups and guard refusals
    regardless of --verbose. Returns the handler so it can be removed on
    disconnect().
    """
    log_path = Path(log_dir) / "zotero-bridge-ops.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    bridge_logger = logging.getLogger("zotero_bridge")
    bridge_logger.addHandler(handler)
    # Ensure INFO gets through even in quiet mode
    if bridge_logger.level == logging.NOTSET or bridge_logger.level > logging.INFO:
        bridge_logger.setLevel(logging.INFO)

    return handler


def remove_ops_log(handler) -> None:
    if handler is None:
        return
    logging.getLogger("zotero_bridge").removeHandler(handler)
    handler.close()
