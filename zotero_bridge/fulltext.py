"""
Search and read Zotero's full-text index.

Zotero's indexer stores a word-level inverted index:
- fulltextWords: wordID, word
- fulltextItemWords: wordID, itemID (the attachment)
- fulltextItems: per-attachment progress counters

The extracted text itself, when kept, lives in a ``.zotero-ft-cache``
file in the attachment's storage directory (some schemas also carry a
fulltextContent table). When neither exists the text is reconstructed
from the index: the distinct indexed words in alphabetical order. That
fallback loses word order and repetition, and results say so.
"""

import logging
from typing import Optional

from .database import ZoteroDatabase
from .types import FulltextContent, FulltextHit, FulltextStatus

logger = logging.getLogger(__name__)

CACHE_FILENAME = ".zotero-ft-cache"
ELLIPSIS = "..."


def _status_from_row(row) -> FulltextStatus:
    return FulltextStatus(
        attachment_id=row["itemID"],
        indexed_chars=row["indexedChars"],
        total_chars=row["totalChars"],
        indexed_pages=row["indexedPages"],
        total_pages=row["totalPages"],
        synced=row["synced"],
    )


def search_fulltext(db: ZoteroDatabase, query: str, library_id: int = 1) -> list[FulltextHit]:
    """
    Attachments with an indexed word containing query (case-insensitive).

    Only attachments whose parent item is in library_id are considered.
    Ordered by the parent item's modification time, newest first: a recency
    heuristic, not a relevance ranking.
    """
    rows = db.fetch_all("""
        SELECT DISTINCT
            fi.itemID, att.key AS attachmentKey, ia.parentItemID,
            fi.indexedChars, fi.totalChars, fi.indexedPages, fi.totalPages, fi.synced,
            parent.dateModified AS parentModified
        FROM fulltextItems fi
        JOIN itemAttachments ia ON fi.itemID = ia.itemID
        JOIN items att ON ia.itemID = att.itemID
        JOIN items parent ON ia.parentItemID = parent.itemID
        WHERE parent.libraryID = ?
          AND fi.itemID IN (
            SELECT fiw.itemID
            FROM fulltextItemWords fiw
            JOIN fulltextWords fw ON fiw.wordID = fw.wordID
            WHERE instr(LOWER(fw.word), ?) > 0
          )
        ORDER BY parent.dateModified DESC, fi.itemID
    """, (library_id, query.lower()))
    return [
        FulltextHit(
            attachment_id=row["itemID"],
            attachment_key=row["attachmentKey"],
            parent_item_id=row["parentItemID"],
            status=_status_from_row(row),
        )
        for row in rows
    ]


def _read_cache_file(db: ZoteroDatabase, attachment_id: int) -> Optional[str]:
    row = db.fetch_one("SELECT key FROM items WHERE itemID = ?", (attachment_id,))
    if row is None or not row["key"]:
        return None
    cache = db.storage_path / row["key"] / CACHE_FILENAME
    try:
        return cache.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning("Cannot read full-text cache %s: %s", cache, e)
        return None


def get_fulltext_content(db: ZoteroDatabase, attachment_id: int) -> Optional[FulltextContent]:
    """
    Text of an indexed attachment, best source first.

    Returns None when nothing is indexed for the attachment.
    """
    if db.has_table("fulltextContent"):
        row = db.fetch_one("SELECT content FROM fulltextContent WHERE itemID = ?", (attachment_id,))
        if row and row["content"]:
            return FulltextContent(attachment_id, row["content"], "verbatim")

    cached = _read_cache_file(db, attachment_id)
    if cached:
        return FulltextContent(attachment_id, cached, "cache")

    words = db.fetch_all("""
        SELECT fw.word
        FROM fulltextItemWords fiw
        JOIN fulltextWords fw ON fiw.wordID = fw.wordID
        WHERE fiw.itemID = ?
        ORDER BY fw.word
    """, (attachment_id,))
    if words:
        return FulltextContent(attachment_id, " ".join(w["word"] for w in words), "reconstructed")
    return None


def get_fulltext_status(db: ZoteroDatabase, attachment_id: int) -> Optional[FulltextStatus]:
    row = db.fetch_one("""
        SELECT itemID, indexedChars, totalChars, indexedPages, totalPages, synced
        FROM fulltextItems
        WHERE itemID = ?
    """, (attachment_id,))
    return _status_from_row(row) if row else None


def extract_context(content: str, query: str, context_length: int = 100) -> str:
    """
    Window of context_length characters either side of the first
    case-insensitive occurrence of query, with ellipses where truncated.

    Returns "" if query does not occur.
    """
    index = content.lower().find(query.lower())
    if index == -1 or not query:
        return ""
    start = max(0, index - context_length)
    end = min(len(content), index + len(query) + context_length)
    return (
        (ELLIPSIS if start > 0 else "")
        + content[start:end]
        + (ELLIPSIS if end < len(content) else "")
    )


def search_fulltext_with_context(
    db: ZoteroDatabase,
    query: str,
    context_length: int = 100,
    library_id: int = 1,
) -> list[FulltextHit]:
    """
    search_fulltext() plus a text snippet and parent item summary per hit.

    Hits without readable content are kept with an empty context.
    ``content_source`` tells which text the snippet came from.
    """
    hits = search_fulltext(db, query, library_id)
    for hit in hits:
        content = get_fulltext_content(db, hit.attachment_id)
        if content is not None:
            hit.context = extract_context(content.text, query, context_length)
            hit.content_source = content.source
        if hit.parent_item_id is not None:
            hit.parent_item = db.get_item_summary(hit.parent_item_id)
    return hits
