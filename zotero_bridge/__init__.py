"""
Zotero Bridge

Safe programmatic access to a local Zotero library: collections, tags,
notes, abstracts, annotations, full text and PDFs, read from and written
to the zotero.sqlite file that Zotero itself owns.

Quick Start:
    from zotero_bridge import ZoteroDatabase

    with ZoteroDatabase() as db:   # ~/Zotero/zotero.sqlite by default
        cid = db.create_collection("Machine Learning Papers")
        for item in db.search_items("attention"):
            db.add_item_to_collection(item.id, cid)

CLI Usage:
    zotero-bridge serve            # MCP stdio server
    zotero-bridge duplicates --field doi
    zotero-bridge orphans

Writes are refused while Zotero is running. The first write of a session
backs the database up; every save replaces the file atomically.

Environment Variables:
    ZOTERO_DB_PATH           - Database file to open
    ZOTERO_BRIDGE_READONLY   - Never write (1/true)
    ZOTERO_BRIDGE_CONFIG     - Config file location
    ZOTERO_BRIDGE_LOG_DIR    - Operations and error log directory
"""

from .config import BridgeConfig, load_config
from .database import ZoteroDatabase
from .errors import (
    AttachmentUnresolvableError,
    BridgeError,
    DatabaseNotFoundError,
    IntegrityCheckFailedError,
    InvalidReferenceError,
    LiveWriterDetectedError,
    NotConnectedError,
    NotFoundError,
    ReadOnlyError,
)
from .guard import WriteGuard
from .keys import generate_key
from .types import Collection, Item, MergeResult, Tag

__version__ = "0.1.0"
__all__ = [
    "ZoteroDatabase",
    "WriteGuard",
    "BridgeConfig",
    "load_config",
    "generate_key",
    "Item",
    "Collection",
    "Tag",
    "MergeResult",
    "BridgeError",
    "NotConnectedError",
    "NotFoundError",
    "DatabaseNotFoundError",
    "InvalidReferenceError",
    "ReadOnlyError",
    "LiveWriterDetectedError",
    "IntegrityCheckFailedError",
    "AttachmentUnresolvableError",
]
