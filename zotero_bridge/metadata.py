"""
Zotero's item bookkeeping contract.

Zotero's sync engine only notices local changes to items whose
dateModified/clientDateModified moved, whose version was bumped and whose
synced flag is cleared. Every change to an item's owned data (field values,
tags, collection membership, child notes) must touch the item once, in the
same transaction as the change.
"""

import logging
import sqlite3
from typing import Optional

from .types import zotero_now

logger = logging.getLogger(__name__)


def touch_item(conn: sqlite3.Connection, item_id: int, now: Optional[str] = None) -> bool:
    """
    Mark an item as locally modified.

    Does not commit: the caller owns the transaction containing the data
    change. A missing item is a no-op.

    Returns:
        True if the item row was updated
    """
    now = now or zotero_now()
    cursor = conn.execute("""
        UPDATE items
        SET dateModified = ?, clientDateModified = ?,
            version = version + 1, synced = 0
        WHERE itemID = ?
    """, (now, now, item_id))
    if cursor.rowcount == 0:
        logger.debug("touch_item: item %s not found", item_id)
        return False
    return True


def touch_collection(conn: sqlite3.Connection, collection_id: int, now: Optional[str] = None) -> bool:
    """Same contract for collection rows (rename, move)."""
    now = now or zotero_now()
    cursor = conn.execute("""
        UPDATE collections
        SET clientDateModified = ?, version = version + 1, synced = 0
        WHERE collectionID = ?
    """, (now, collection_id))
    return cursor.rowcount > 0
