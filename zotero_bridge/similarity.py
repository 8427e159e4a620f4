"""
Related-item discovery and duplicate detection.

Similarity here is structural: items are related when they share tags,
creators or collections. Scores are counts of shared things, which makes
every result explainable by its ``shared`` list.
"""

from collections import defaultdict
from typing import Any, Callable

from .database import ZoteroDatabase
from .identifiers import normalize_doi, normalize_isbn
from .types import NON_BIBLIOGRAPHIC_TYPES, DuplicateGroup, SimilarItem

SIMILAR_LIMIT = 20
COLLECTION_LIMIT = 50

# Duplicate key per field: exact title, DOI without prefix/case, bare ISBN
DUPLICATE_FIELDS: dict[str, tuple[str, Callable[[str], str]]] = {
    "title": ("title", lambda v: v),
    "doi": ("DOI", normalize_doi),
    "isbn": ("ISBN", normalize_isbn),
}


def _split_shared(value: str | None) -> list[str]:
    if not value:
        return []
    return sorted(set(value.split("\x1f")))


def find_similar_by_tags(db: ZoteroDatabase, item_id: int, min_shared_tags: int = 2) -> list[SimilarItem]:
    """
    Items sharing at least min_shared_tags tags with item_id.

    Most shared tags first, at most 20. Never includes item_id itself.
    """
    rows = db.fetch_all("""
        SELECT i.itemID, i.key,
               COUNT(DISTINCT it.tagID) AS shared,
               GROUP_CONCAT(t.name, char(31)) AS names
        FROM items i
        JOIN itemTags it ON i.itemID = it.itemID
        JOIN tags t ON it.tagID = t.tagID
        WHERE it.tagID IN (SELECT tagID FROM itemTags WHERE itemID = ?)
          AND i.itemID != ?
        GROUP BY i.itemID
        HAVING COUNT(DISTINCT it.tagID) >= ?
        ORDER BY shared DESC, i.itemID
        LIMIT ?
    """, (item_id, item_id, max(1, min_shared_tags), SIMILAR_LIMIT))
    return [
        SimilarItem(id=r["itemID"], key=r["key"], score=r["shared"], shared=_split_shared(r["names"]))
        for r in rows
    ]


def find_similar_by_creators(db: ZoteroDatabase, item_id: int) -> list[SimilarItem]:
    """Items sharing a creator with item_id, most shared first, at most 20."""
    rows = db.fetch_all("""
        SELECT i.itemID, i.key,
               COUNT(DISTINCT ic.creatorID) AS shared,
               GROUP_CONCAT(TRIM(COALESCE(c.firstName, '') || ' ' || COALESCE(c.lastName, '')), char(31)) AS names
        FROM items i
        JOIN itemCreators ic ON i.itemID = ic.itemID
        JOIN creators c ON ic.creatorID = c.creatorID
        WHERE ic.creatorID IN (SELECT creatorID FROM itemCreators WHERE itemID = ?)
          AND i.itemID != ?
        GROUP BY i.itemID
        ORDER BY shared DESC, i.itemID
        LIMIT ?
    """, (item_id, item_id, SIMILAR_LIMIT))
    return [
        SimilarItem(id=r["itemID"], key=r["key"], score=r["shared"], shared=_split_shared(r["names"]))
        for r in rows
    ]


def find_similar_by_collection(db: ZoteroDatabase, item_id: int) -> list[SimilarItem]:
    """
    Items in any collection that also holds item_id, at most 50.

    Membership is not weighted: score is always 1 and order is by item id.
    """
    rows = db.fetch_all("""
        SELECT i.itemID, i.key, GROUP_CONCAT(c.collectionName, char(31)) AS names
        FROM items i
        JOIN collectionItems ci ON i.itemID = ci.itemID
        JOIN collections c ON ci.collectionID = c.collectionID
        WHERE ci.collectionID IN (SELECT collectionID FROM collectionItems WHERE itemID = ?)
          AND i.itemID != ?
        GROUP BY i.itemID
        ORDER BY i.itemID
        LIMIT ?
    """, (item_id, item_id, COLLECTION_LIMIT))
    return [
        SimilarItem(id=r["itemID"], key=r["key"], score=1, shared=_split_shared(r["names"]))
        for r in rows
    ]


def find_related(db: ZoteroDatabase, item_id: int, min_shared_tags: int = 2) -> dict[str, Any]:
    """All relation kinds at once: manual links, tags, creators, collections."""
    return {
        "manual": db.get_related_items(item_id),
        "by_tags": find_similar_by_tags(db, item_id, min_shared_tags),
        "by_creators": find_similar_by_creators(db, item_id),
        "by_collection": find_similar_by_collection(db, item_id),
    }


def find_duplicates(db: ZoteroDatabase, field: str = "title", library_id: int = 1) -> list[DuplicateGroup]:
    """
    Groups of bibliographic items with the same title, DOI or ISBN.

    Notes, attachments and annotations are ignored. Only groups with more
    than one member are returned, largest first.

    Raises:
        ValueError: field is not title, doi or isbn
    """
    try:
        field_name, normalize = DUPLICATE_FIELDS[field.lower()]
    except KeyError:
        raise ValueError(
            f"Unknown duplicate field: {field!r} (expected {', '.join(DUPLICATE_FIELDS)})"
        ) from None

    placeholders = ",".join("?" * len(NON_BIBLIOGRAPHIC_TYPES))
    rows = db.fetch_all(f"""
        SELECT i.itemID, iv.value
        FROM items i
        JOIN itemTypes t ON i.itemTypeID = t.itemTypeID
        JOIN itemData id ON i.itemID = id.itemID
        JOIN fields f ON id.fieldID = f.fieldID
        JOIN itemDataValues iv ON id.valueID = iv.valueID
        WHERE f.fieldName = ?
          AND i.libraryID = ?
          AND t.typeName NOT IN ({placeholders})
        ORDER BY i.itemID
    """, (field_name, library_id, *NON_BIBLIOGRAPHIC_TYPES))

    groups: dict[str, list[int]] = defaultdict(list)
    for row in rows:
        key = normalize(row["value"] or "")
        if key:
            groups[key].append(row["itemID"])

    duplicates = [
        DuplicateGroup(field_name=field.lower(), value=value, item_ids=ids)
        for value, ids in groups.items()
        if len(ids) > 1
    ]
    duplicates.sort(key=lambda g: (-g.count, g.value))
    return duplicates
