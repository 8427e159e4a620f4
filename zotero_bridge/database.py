"""
Session handle and typed accessor for a Zotero SQLite database.

The database file belongs to Zotero. A session copies the whole file into
an in-memory SQLite image on connect, applies all changes to that image,
and writes the image back through the WriteGuard on save:

    with ZoteroDatabase("~/Zotero/zotero.sqlite") as db:
        cid = db.create_collection("Machine Learning Papers")
        db.add_item_to_collection(item_id, cid)

Each mutating operation runs in one SQLite transaction together with the
bookkeeping update of every item it affects (see metadata.py), so other
operations never see a changed item whose version was not bumped.
Sessions are independent; several may be open at once.
"""

import logging
import re
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from .config import BridgeConfig, load_config
from .errors import (
    AttachmentUnresolvableError,
    BridgeError,
    DatabaseNotFoundError,
    InvalidReferenceError,
    LiveWriterDetectedError,
    NotConnectedError,
    NotFoundError,
    ReadOnlyError,
)
from .guard import WriteGuard
from .identifiers import (
    normalize_arxiv,
    normalize_doi,
    normalize_isbn,
    normalize_pmid,
    normalize_url,
    resolve_identifier_type,
)
from .keys import generate_key, is_valid_key
from .logging_config import configure_ops_log, remove_ops_log
from .metadata import touch_collection, touch_item
from .types import (
    ANNOTATION_TYPE_IDS,
    ANNOTATION_TYPES,
    STORAGE_PREFIX,
    TAG_TYPE_USER,
    Annotation,
    Attachment,
    Collection,
    Creator,
    Item,
    ItemSummary,
    Note,
    Tag,
    zotero_now,
)

logger = logging.getLogger(__name__)

# Attempts at drawing a key not already present in the target table
KEY_ATTEMPTS = 10

_RELATION_KEY_RE = re.compile(r"/items/([A-Z0-9]+)$")
_ISBN_SPLIT_RE = re.compile(r"[,;]|\s+(?=\d)")


def like_pattern(text: str) -> str:
    """Substring LIKE pattern for text, for use with ESCAPE '\\'."""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


_ITEM_SELECT = """
    SELECT i.itemID, i.key, t.typeName, i.libraryID, i.dateAdded,
           i.dateModified, i.version, i.synced
    FROM items i
    JOIN itemTypes t ON i.itemTypeID = t.itemTypeID
"""

_COLLECTION_SELECT = """
    SELECT collectionID, collectionName, parentCollectionID, key, libraryID, version
    FROM collections
"""

_ANNOTATION_SELECT = """
    SELECT ia.itemID, ia.parentItemID, ia.type, ia.text, ia.comment,
           ia.color, ia.pageLabel, ia.sortIndex, ia.position,
           i.key, i.dateAdded, i.dateModified,
           att.parentItemID AS topItemID
    FROM itemAnnotations ia
    JOIN items i ON ia.itemID = i.itemID
    JOIN itemAttachments att ON ia.parentItemID = att.itemID
"""


def _collection_from_row(row: sqlite3.Row) -> Collection:
    return Collection(
        id=row["collectionID"],
        name=row["collectionName"],
        parent_id=row["parentCollectionID"],
        key=row["key"],
        library_id=row["libraryID"],
        version=row["version"] or 0,
    )


def _annotation_from_row(row: sqlite3.Row) -> Annotation:
    return Annotation(
        id=row["itemID"],
        attachment_id=row["parentItemID"],
        type=ANNOTATION_TYPES.get(row["type"], str(row["type"])),
        text=row["text"],
        comment=row["comment"],
        color=row["color"],
        page_label=row["pageLabel"],
        sort_index=row["sortIndex"],
        position=row["position"],
        key=row["key"],
        date_added=row["dateAdded"],
        date_modified=row["dateModified"],
        parent_item_id=row["topItemID"],
    )


def _attachment_from_row(row: sqlite3.Row) -> Attachment:
    return Attachment(
        item_id=row["itemID"],
        parent_item_id=row["parentItemID"],
        path=row["path"],
        content_type=row["contentType"],
        link_mode=row["linkMode"],
    )


class ZoteroDatabase:
    """
    One session against one Zotero database file.

    Args:
        db_path: Path to zotero.sqlite (default: config, then OS convention)
        readonly: Refuse all mutations; never write the file
        config: Loaded configuration (default: load_config())
        guard: Write guard (default: WriteGuard for db_path and config)
    """

    def __init__(
        self,
        db_path: Optional[Path | str] = None,
        readonly: Optional[bool] = None,
        config: Optional[BridgeConfig] = None,
        guard: Optional[WriteGuard] = None,
    ):
        self._config = config or load_config()
        if db_path is not None:
            self._config.db_path = Path(db_path).expanduser()
        if readonly is not None:
            self._config.readonly = readonly
        self._db_path = self._config.db_path
        self._guard = guard or WriteGuard(self._db_path, self._config)
        self._conn: Optional[sqlite3.Connection] = None
        self._dirty = False
        self._depth = 0
        self._tables: Optional[set[str]] = None
        self._ops_log_handler = None

    # -------------------------------------------------------------------------
    # Session lifecycle
    # -------------------------------------------------------------------------

    @property
    def path(self) -> Path:
        return self._db_path

    @property
    def storage_path(self) -> Path:
        """Directory holding stored attachment files, one subdirectory per key."""
        return self._db_path.parent / "storage"

    @property
    def readonly(self) -> bool:
        return self._config.readonly

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def connected(self) -> bool:
        return self._conn is not None

    @property
    def guard(self) -> WriteGuard:
        return self._guard

    def connect(self) -> None:
        """
        Load the database file into memory.

        Raises:
            DatabaseNotFoundError: The file does not exist
            IntegrityCheckFailedError: The file or loaded image fails the probe
            LiveWriterDetectedError: The file is exclusively locked
        """
        if self._conn is not None:
            return
        if not self._db_path.exists():
            raise DatabaseNotFoundError(f"Zotero database not found at: {self._db_path}")

        self._guard.probe_file()

        uri = f"{self._db_path.resolve().as_uri()}?mode=ro"
        source = sqlite3.connect(uri, uri=True)
        image = sqlite3.connect(":memory:", check_same_thread=False)
        try:
            source.backup(image)
        except sqlite3.OperationalError as e:
            image.close()
            if "locked" in str(e).lower():
                raise LiveWriterDetectedError(f"Database is locked by another process: {e}") from e
            raise
        finally:
            source.close()

        image.row_factory = sqlite3.Row
        image.execute("PRAGMA foreign_keys = ON")
        self._guard.probe(image, label="in-memory image")

        self._conn = image
        self._dirty = False
        self._tables = None
        if self._config.log_dir and not self.readonly:
            self._ops_log_handler = configure_ops_log(self._config.log_dir)
        logger.info("Loaded %s (readonly=%s)", self._db_path, self.readonly)

    def save(self) -> bool:
        """
        Write the in-memory image back to the file.

        No-op for read-only or unmodified sessions.

        Returns:
            True if the file was written
        """
        if self._conn is None or self.readonly or not self._dirty:
            return False
        self._guard.write(self._conn)
        self._dirty = False
        return True

    def disconnect(self) -> None:
        """Save pending changes (if any) and release the image."""
        if self._conn is None:
            return
        try:
            self.save()
        finally:
            self._conn.close()
            self._conn = None
            remove_ops_log(self._ops_log_handler)
            self._ops_log_handler = None

    def close(self) -> None:
        self.disconnect()

    def __enter__(self) -> "ZoteroDatabase":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.disconnect()

    # -------------------------------------------------------------------------
    # Query primitives
    # -------------------------------------------------------------------------

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise NotConnectedError("Database not connected")
        return self._conn

    def fetch_all(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        return self._require_conn().execute(sql, tuple(params)).fetchall()

    def fetch_one(self, sql: str, params: tuple | list = ()) -> Optional[sqlite3.Row]:
        return self._require_conn().execute(sql, tuple(params)).fetchone()

    def has_table(self, name: str) -> bool:
        if self._tables is None:
            rows = self.fetch_all("SELECT name FROM sqlite_master WHERE type = 'table'")
            self._tables = {row["name"] for row in rows}
        return name in self._tables

    def query(self, sql: str, params: tuple | list = ()) -> list[dict[str, Any]]:
        """
        Run a caller-validated read statement.

        The caller is responsible for rejecting anything but SELECT.
        """
        return [dict(row) for row in self.fetch_all(sql, params)]

    @contextmanager
    def batch(self) -> Iterator[sqlite3.Connection]:
        """
        Scope of one logical mutation.

        The guard is consulted once, on entry to the outermost scope, and the
        session is saved once (with autosave) when the outermost scope exits
        normally. Nested scopes share both.

        Raises:
            ReadOnlyError: Session is read-only
            LiveWriterDetectedError: Zotero appears active
        """
        conn = self._require_conn()
        if self.readonly:
            raise ReadOnlyError("Database is open in read-only mode")
        outermost = self._depth == 0
        if outermost:
            self._guard.check_writable()
        self._depth += 1
        try:
            yield conn
        finally:
            self._depth -= 1
        if outermost and self._config.autosave and self._dirty:
            self.save()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """One atomic change to the image, inside a batch()."""
        with self.batch() as conn:
            before = conn.total_changes
            with conn:
                yield conn
            if conn.total_changes != before:
                self._dirty = True

    def _new_key(self, table: str) -> str:
        for _ in range(KEY_ATTEMPTS):
            key = generate_key()
            if self.fetch_one(f"SELECT 1 FROM {table} WHERE key = ?", (key,)) is None:
                return key
            logger.warning("Key collision in %s: %s", table, key)
        raise BridgeError(f"Could not generate an unused key for {table}")

    def _item_type_id(self, type_name: str) -> int:
        row = self.fetch_one("SELECT itemTypeID FROM itemTypes WHERE typeName = ?", (type_name,))
        if row is None:
            raise InvalidReferenceError(f"Unknown item type: {type_name}")
        return row["itemTypeID"]

    def _require_item(self, item_id: int) -> sqlite3.Row:
        row = self.fetch_one("SELECT itemID, libraryID, key FROM items WHERE itemID = ?", (item_id,))
        if row is None:
            raise NotFoundError(f"Item not found: {item_id}")
        return row

    # -------------------------------------------------------------------------
    # Collections
    # -------------------------------------------------------------------------

    def get_collections(self, library_id: int = 1) -> list[Collection]:
        rows = self.fetch_all(
            _COLLECTION_SELECT + " WHERE libraryID = ? ORDER BY collectionName",
            (library_id,),
        )
        return [_collection_from_row(r) for r in rows]

    def get_collection(self, collection_id: int) -> Optional[Collection]:
        row = self.fetch_one(_COLLECTION_SELECT + " WHERE collectionID = ?", (collection_id,))
        return _collection_from_row(row) if row else None

    def get_collection_by_name(self, name: str, library_id: int = 1) -> Optional[Collection]:
        row = self.fetch_one(
            _COLLECTION_SELECT + " WHERE collectionName = ? AND libraryID = ?",
            (name, library_id),
        )
        return _collection_from_row(row) if row else None

    def get_subcollections(self, parent_id: int) -> list[Collection]:
        rows = self.fetch_all(
            _COLLECTION_SELECT + " WHERE parentCollectionID = ? ORDER BY collectionName",
            (parent_id,),
        )
        return [_collection_from_row(r) for r in rows]

    def create_collection(
        self,
        name: str,
        parent_id: Optional[int] = None,
        library_id: int = 1,
    ) -> int:
        """
        Create a collection.

        Returns:
            The new collectionID

        Raises:
            NotFoundError: parent_id does not exist
        """
        if parent_id is not None and self.get_collection(parent_id) is None:
            raise NotFoundError(f"Parent collection not found: {parent_id}")
        key = self._new_key("collections")
        with self._transaction() as conn:
            cursor = conn.execute("""
                INSERT INTO collections
                (collectionName, parentCollectionID, clientDateModified, libraryID, key, version, synced)
                VALUES (?, ?, ?, ?, ?, 0, 0)
            """, (name, parent_id, zotero_now(), library_id, key))
        logger.info("Created collection %r (%s)", name, key)
        return cursor.lastrowid

    def rename_collection(self, collection_id: int, new_name: str) -> bool:
        if self.get_collection(collection_id) is None:
            return False
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE collections SET collectionName = ? WHERE collectionID = ?",
                (new_name, collection_id),
            )
            if cursor.rowcount:
                touch_collection(conn, collection_id)
        return cursor.rowcount > 0

    def _ancestors(self, collection_id: int) -> list[int]:
        chain = []
        current: Optional[int] = collection_id
        while current is not None and current not in chain:
            chain.append(current)
            row = self.fetch_one(
                "SELECT parentCollectionID FROM collections WHERE collectionID = ?", (current,)
            )
            current = row["parentCollectionID"] if row else None
        return chain

    def move_collection(self, collection_id: int, new_parent_id: Optional[int]) -> bool:
        """
        Re-parent a collection (None moves it to the top level).

        Raises:
            NotFoundError: The new parent does not exist
            InvalidReferenceError: The move would create a cycle
        """
        if self.get_collection(collection_id) is None:
            return False
        if new_parent_id is not None:
            if self.get_collection(new_parent_id) is None:
                raise NotFoundError(f"Parent collection not found: {new_parent_id}")
            if collection_id in self._ancestors(new_parent_id):
                raise InvalidReferenceError(
                    f"Cannot move collection {collection_id} under its own descendant {new_parent_id}"
                )
        with self._transaction() as conn:
            conn.execute(
                "UPDATE collections SET parentCollectionID = ? WHERE collectionID = ?",
                (new_parent_id, collection_id),
            )
            touch_collection(conn, collection_id)
        return True

    def _descendants(self, collection_id: int) -> list[int]:
        """collection_id and all its descendants, parents before children."""
        order = [collection_id]
        i = 0
        while i < len(order):
            for row in self.fetch_all(
                "SELECT collectionID FROM collections WHERE parentCollectionID = ?", (order[i],)
            ):
                if row["collectionID"] not in order:
                    order.append(row["collectionID"])
            i += 1
        return order

    def delete_collection(self, collection_id: int) -> bool:
        """
        Delete a collection and its subcollections.

        Membership rows go first; items that lose a membership are touched.
        Items themselves are not deleted.
        """
        if self.get_collection(collection_id) is None:
            return False
        doomed = self._descendants(collection_id)
        with self._transaction() as conn:
            now = zotero_now()
            placeholders = ",".join("?" * len(doomed))
            members = conn.execute(
                f"SELECT DISTINCT itemID FROM collectionItems WHERE collectionID IN ({placeholders})",
                doomed,
            ).fetchall()
            conn.execute(f"DELETE FROM collectionItems WHERE collectionID IN ({placeholders})", doomed)
            for row in members:
                touch_item(conn, row["itemID"], now)
            for cid in reversed(doomed):
                conn.execute("DELETE FROM collections WHERE collectionID = ?", (cid,))
        logger.info("Deleted collection %s (%d total with subcollections)", collection_id, len(doomed))
        return True

    def get_collection_items(self, collection_id: int) -> list[Item]:
        rows = self.fetch_all(
            _ITEM_SELECT + """
            JOIN collectionItems ci ON i.itemID = ci.itemID
            WHERE ci.collectionID = ?
            ORDER BY ci.orderIndex
            """,
            (collection_id,),
        )
        return [self._item_from_row(r) for r in rows]

    def add_item_to_collection(self, item_id: int, collection_id: int) -> bool:
        """
        Returns:
            False if the item was already in the collection

        Raises:
            NotFoundError: Item or collection does not exist
        """
        self._require_item(item_id)
        if self.get_collection(collection_id) is None:
            raise NotFoundError(f"Collection not found: {collection_id}")
        if self.fetch_one(
            "SELECT 1 FROM collectionItems WHERE itemID = ? AND collectionID = ?",
            (item_id, collection_id),
        ):
            return False
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(orderIndex), -1) + 1 AS next FROM collectionItems WHERE collectionID = ?",
                (collection_id,),
            ).fetchone()
            conn.execute(
                "INSERT INTO collectionItems (collectionID, itemID, orderIndex) VALUES (?, ?, ?)",
                (collection_id, item_id, row["next"]),
            )
            touch_item(conn, item_id)
        return True

    def remove_item_from_collection(self, item_id: int, collection_id: int) -> bool:
        if not self.fetch_one(
            "SELECT 1 FROM collectionItems WHERE itemID = ? AND collectionID = ?",
            (item_id, collection_id),
        ):
            return False
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM collectionItems WHERE itemID = ? AND collectionID = ?",
                (item_id, collection_id),
            )
            if cursor.rowcount:
                touch_item(conn, item_id)
        return cursor.rowcount > 0

    # -------------------------------------------------------------------------
    # Tags
    # -------------------------------------------------------------------------

    def get_tags(self) -> list[Tag]:
        """All tags with the number of items carrying each."""
        rows = self.fetch_all("""
            SELECT t.tagID, t.name, COUNT(it.itemID) AS itemCount
            FROM tags t
            LEFT JOIN itemTags it ON t.tagID = it.tagID
            GROUP BY t.tagID, t.name
            ORDER BY t.name
        """)
        return [Tag(id=r["tagID"], name=r["name"], item_count=r["itemCount"]) for r in rows]

    def get_tag_by_name(self, name: str) -> Optional[Tag]:
        row = self.fetch_one("SELECT tagID, name FROM tags WHERE name = ?", (name,))
        return Tag(id=row["tagID"], name=row["name"]) if row else None

    def _get_or_create_tag(self, conn: sqlite3.Connection, name: str) -> int:
        row = conn.execute("SELECT tagID FROM tags WHERE name = ?", (name,)).fetchone()
        if row:
            return row["tagID"]
        return conn.execute("INSERT INTO tags (name) VALUES (?)", (name,)).lastrowid

    def create_tag(self, name: str) -> int:
        """Return the tagID for name, creating the tag if needed."""
        existing = self.get_tag_by_name(name)
        if existing:
            return existing.id
        with self._transaction() as conn:
            return self._get_or_create_tag(conn, name)

    def add_tag_to_item(self, item_id: int, name: str, tag_type: int = TAG_TYPE_USER) -> bool:
        """
        Attach a tag (created if needed) to an item.

        The per-item tag type is always written; Zotero rejects itemTags
        rows without one.

        Returns:
            False if the item already had the tag

        Raises:
            NotFoundError: The item does not exist
        """
        self._require_item(item_id)
        tag = self.get_tag_by_name(name)
        if tag and self.fetch_one(
            "SELECT 1 FROM itemTags WHERE itemID = ? AND tagID = ?", (item_id, tag.id)
        ):
            return False
        with self._transaction() as conn:
            tag_id = self._get_or_create_tag(conn, name)
            conn.execute(
                "INSERT INTO itemTags (itemID, tagID, type) VALUES (?, ?, ?)",
                (item_id, tag_id, int(tag_type)),
            )
            touch_item(conn, item_id)
        return True

    def remove_tag_from_item(self, item_id: int, name: str) -> bool:
        tag = self.get_tag_by_name(name)
        if tag is None or not self.fetch_one(
            "SELECT 1 FROM itemTags WHERE itemID = ? AND tagID = ?", (item_id, tag.id)
        ):
            return False
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM itemTags WHERE itemID = ? AND tagID = ?", (item_id, tag.id)
            )
            if cursor.rowcount:
                touch_item(conn, item_id)
        return cursor.rowcount > 0

    def get_item_tags(self, item_id: int) -> list[Tag]:
        # type lives on itemTags, not tags
        rows = self.fetch_all("""
            SELECT t.tagID, t.name, it.type
            FROM tags t
            JOIN itemTags it ON t.tagID = it.tagID
            WHERE it.itemID = ?
            ORDER BY t.name
        """, (item_id,))
        return [Tag(id=r["tagID"], name=r["name"], type=r["type"]) for r in rows]

    # -------------------------------------------------------------------------
    # Items
    # -------------------------------------------------------------------------

    def _item_fields(self, item_id: int) -> dict[str, str]:
        rows = self.fetch_all("""
            SELECT f.fieldName, iv.value
            FROM itemData id
            JOIN fields f ON id.fieldID = f.fieldID
            JOIN itemDataValues iv ON id.valueID = iv.valueID
            WHERE id.itemID = ?
        """, (item_id,))
        return {r["fieldName"]: r["value"] for r in rows}

    def _item_from_row(self, row: sqlite3.Row, with_fields: bool = True) -> Item:
        return Item(
            id=row["itemID"],
            key=row["key"],
            item_type=row["typeName"],
            library_id=row["libraryID"],
            date_added=row["dateAdded"],
            date_modified=row["dateModified"],
            version=row["version"] or 0,
            synced=bool(row["synced"]),
            fields=self._item_fields(row["itemID"]) if with_fields else {},
        )

    def get_item(self, item_id: int) -> Optional[Item]:
        row = self.fetch_one(_ITEM_SELECT + " WHERE i.itemID = ?", (item_id,))
        return self._item_from_row(row) if row else None

    def get_item_by_key(self, key: str, library_id: Optional[int] = None) -> Optional[Item]:
        if library_id is None:
            row = self.fetch_one(_ITEM_SELECT + " WHERE i.key = ?", (key,))
        else:
            row = self.fetch_one(
                _ITEM_SELECT + " WHERE i.key = ? AND i.libraryID = ?", (key, library_id)
            )
        return self._item_from_row(row) if row else None

    def get_item_creators(self, item_id: int) -> list[Creator]:
        rows = self.fetch_all("""
            SELECT c.firstName, c.lastName, ct.creatorType, ic.orderIndex
            FROM itemCreators ic
            JOIN creators c ON ic.creatorID = c.creatorID
            JOIN creatorTypes ct ON ic.creatorTypeID = ct.creatorTypeID
            WHERE ic.itemID = ?
            ORDER BY ic.orderIndex
        """, (item_id,))
        return [
            Creator(
                first_name=r["firstName"] or "",
                last_name=r["lastName"] or "",
                creator_type=r["creatorType"],
                order_index=r["orderIndex"],
            )
            for r in rows
        ]

    def get_item_details(self, item_id: int) -> Item:
        """
        Item with all fields, creators, tags and attachments.

        Raises:
            NotFoundError: The item does not exist
        """
        item = self.get_item(item_id)
        if item is None:
            raise NotFoundError(f"Item not found: {item_id}")
        item.creators = self.get_item_creators(item_id)
        item.tags = self.get_item_tags(item_id)
        item.attachments = self.get_attachments(item_id)
        return item

    def get_item_summary(self, item_id: int) -> Optional[ItemSummary]:
        item = self.get_item(item_id)
        if item is None:
            return None
        return ItemSummary(
            id=item.id,
            key=item.key,
            title=item.title,
            creators=[c.display_name for c in self.get_item_creators(item_id)],
        )

    def search_items(self, query: str, limit: int = 50, library_id: int = 1) -> list[Item]:
        """Items whose title contains query, most recently modified first."""
        rows = self.fetch_all(_ITEM_SELECT + """
            JOIN itemData id ON i.itemID = id.itemID
            JOIN itemDataValues iv ON id.valueID = iv.valueID
            JOIN fields f ON id.fieldID = f.fieldID
            WHERE f.fieldName = 'title'
              AND iv.value LIKE ? ESCAPE '\\'
              AND i.libraryID = ?
            ORDER BY i.dateModified DESC
            LIMIT ?
        """, (like_pattern(query), library_id, limit))
        return [self._item_from_row(r) for r in rows]

    def get_item_field(self, item_id: int, field_name: str) -> Optional[str]:
        row = self.fetch_one("""
            SELECT iv.value
            FROM itemData id
            JOIN fields f ON id.fieldID = f.fieldID
            JOIN itemDataValues iv ON id.valueID = iv.valueID
            WHERE id.itemID = ? AND f.fieldName = ?
        """, (item_id, field_name))
        return row["value"] if row else None

    def set_item_field(self, item_id: int, field_name: str, value: str) -> None:
        """
        Set one field value on an item.

        Raises:
            NotFoundError: The item does not exist
            InvalidReferenceError: field_name is not a known field
        """
        self._require_item(item_id)
        field = self.fetch_one("SELECT fieldID FROM fields WHERE fieldName = ?", (field_name,))
        if field is None:
            raise InvalidReferenceError(f"Unknown field: {field_name}")
        field_id = field["fieldID"]
        with self._transaction() as conn:
            value_row = conn.execute(
                "SELECT valueID FROM itemDataValues WHERE value = ?", (value,)
            ).fetchone()
            if value_row:
                value_id = value_row["valueID"]
            else:
                value_id = conn.execute(
                    "INSERT INTO itemDataValues (value) VALUES (?)", (value,)
                ).lastrowid
            conn.execute("""
                INSERT INTO itemData (itemID, fieldID, valueID) VALUES (?, ?, ?)
                ON CONFLICT (itemID, fieldID) DO UPDATE SET valueID = excluded.valueID
            """, (item_id, field_id, value_id))
            touch_item(conn, item_id)

    def get_item_abstract(self, item_id: int) -> Optional[str]:
        return self.get_item_field(item_id, "abstractNote") or None

    def set_item_abstract(self, item_id: int, abstract: str) -> None:
        self.set_item_field(item_id, "abstractNote", abstract)

    def delete_item(self, item_id: int) -> bool:
        """
        Delete an item with its child notes, attachments and annotations.

        Join rows (tags, collections, field data, creators, relations,
        fulltext) are removed before each item row. The parent of a deleted
        child item is touched.
        """
        row = self.fetch_one("SELECT itemID FROM items WHERE itemID = ?", (item_id,))
        if row is None:
            return False
        parent_id = self._parent_of(item_id)
        with self._transaction() as conn:
            self._delete_item_rows(conn, item_id)
            if parent_id is not None:
                touch_item(conn, parent_id)
        logger.info("Deleted item %s", item_id)
        return True

    def _parent_of(self, item_id: int) -> Optional[int]:
        for table in ("itemNotes", "itemAttachments", "itemAnnotations"):
            row = self.fetch_one(f"SELECT parentItemID FROM {table} WHERE itemID = ?", (item_id,))
            if row and row["parentItemID"] is not None:
                return row["parentItemID"]
        return None

    def _delete_item_rows(self, conn: sqlite3.Connection, item_id: int) -> None:
        children = conn.execute("""
            SELECT itemID FROM itemNotes WHERE parentItemID = ?
            UNION SELECT itemID FROM itemAttachments WHERE parentItemID = ?
            UNION SELECT itemID FROM itemAnnotations WHERE parentItemID = ?
        """, (item_id, item_id, item_id)).fetchall()
        for child in children:
            self._delete_item_rows(conn, child["itemID"])
        for table in (
            "itemTags", "collectionItems", "itemData", "itemCreators", "itemRelations",
            "fulltextItemWords", "fulltextItems", "itemAnnotations", "itemNotes",
            "itemAttachments",
        ):
            if self.has_table(table):
                conn.execute(f"DELETE FROM {table} WHERE itemID = ?", (item_id,))
        conn.execute("DELETE FROM items WHERE itemID = ?", (item_id,))

    # -------------------------------------------------------------------------
    # Notes
    # -------------------------------------------------------------------------

    def get_item_notes(self, item_id: int) -> list[Note]:
        rows = self.fetch_all("""
            SELECT itemID, parentItemID, note, title
            FROM itemNotes
            WHERE parentItemID = ?
            ORDER BY itemID
        """, (item_id,))
        return [
            Note(item_id=r["itemID"], parent_item_id=r["parentItemID"],
                 note=r["note"] or "", title=r["title"] or "")
            for r in rows
        ]

    def add_item_note(self, parent_item_id: int, note: str, title: str = "") -> int:
        """
        Create a child note under an item. The parent is touched.

        Returns:
            itemID of the new note

        Raises:
            InvalidReferenceError: The parent item does not exist
        """
        parent = self.fetch_one("SELECT libraryID FROM items WHERE itemID = ?", (parent_item_id,))
        if parent is None:
            raise InvalidReferenceError(f"Parent item not found: {parent_item_id}")
        note_type = self._item_type_id("note")
        key = self._new_key("items")
        with self._transaction() as conn:
            now = zotero_now()
            note_id = conn.execute("""
                INSERT INTO items
                (itemTypeID, dateAdded, dateModified, clientDateModified, libraryID, key, version, synced)
                VALUES (?, ?, ?, ?, ?, ?, 0, 0)
            """, (note_type, now, now, now, parent["libraryID"], key)).lastrowid
            conn.execute(
                "INSERT INTO itemNotes (itemID, parentItemID, note, title) VALUES (?, ?, ?, ?)",
                (note_id, parent_item_id, note, title),
            )
            touch_item(conn, parent_item_id, now)
        return note_id

    # -------------------------------------------------------------------------
    # Attachments
    # -------------------------------------------------------------------------

    def get_attachment(self, item_id: int) -> Optional[Attachment]:
        row = self.fetch_one("""
            SELECT itemID, parentItemID, linkMode, contentType, path
            FROM itemAttachments WHERE itemID = ?
        """, (item_id,))
        return _attachment_from_row(row) if row else None

    def get_attachments(self, parent_item_id: int, content_type: Optional[str] = None) -> list[Attachment]:
        sql = """
            SELECT itemID, parentItemID, linkMode, contentType, path
            FROM itemAttachments WHERE parentItemID = ?
        """
        params: list[Any] = [parent_item_id]
        if content_type:
            sql += " AND contentType = ?"
            params.append(content_type)
        return [_attachment_from_row(r) for r in self.fetch_all(sql + " ORDER BY itemID", params)]

    def get_pdf_attachments(self, parent_item_id: int) -> list[Attachment]:
        return self.get_attachments(parent_item_id, "application/pdf")

    def get_all_attachments(self) -> list[Attachment]:
        rows = self.fetch_all("""
            SELECT itemID, parentItemID, linkMode, contentType, path
            FROM itemAttachments ORDER BY itemID
        """)
        return [_attachment_from_row(r) for r in rows]

    def resolve_attachment(self, attachment: Attachment) -> Optional[Path]:
        """
        Absolute path of an attachment's file.

        storage: paths live under storage/<attachment key>/; the key is read
        on every call. Returns None for attachments without a path (links).

        Raises:
            AttachmentUnresolvableError: Malformed key or storage path
        """
        if not attachment.path:
            return None
        if not attachment.is_storage_relative:
            return Path(attachment.path)

        relative = attachment.path[len(STORAGE_PREFIX):]
        parts = Path(relative).parts
        if not relative or Path(relative).is_absolute() or ".." in parts:
            raise AttachmentUnresolvableError(
                f"Malformed storage path for attachment {attachment.item_id}: {attachment.path!r}"
            )
        row = self.fetch_one("SELECT key FROM items WHERE itemID = ?", (attachment.item_id,))
        key = row["key"] if row else None
        if not is_valid_key(key):
            raise AttachmentUnresolvableError(
                f"Attachment {attachment.item_id} has no valid key: {key!r}"
            )
        return self.storage_path / key / relative

    def get_attachment_path(self, item_id: int) -> Optional[str]:
        attachment = self.get_attachment(item_id)
        if attachment is None:
            return None
        path = self.resolve_attachment(attachment)
        return str(path) if path else None

    # -------------------------------------------------------------------------
    # Identifiers
    # -------------------------------------------------------------------------

    def _field_values(self, field_name: str) -> list[sqlite3.Row]:
        return self.fetch_all("""
            SELECT id.itemID, iv.value
            FROM itemData id
            JOIN fields f ON id.fieldID = f.fieldID
            JOIN itemDataValues iv ON id.valueID = iv.valueID
            WHERE f.fieldName = ?
            ORDER BY id.itemID
        """, (field_name,))

    def find_item_by_doi(self, doi: str) -> Optional[Item]:
        """Look up by DOI, ignoring resolver prefixes and case."""
        wanted = normalize_doi(doi)
        if not wanted:
            return None
        for row in self._field_values("DOI"):
            if normalize_doi(row["value"]) == wanted:
                return self.get_item_details(row["itemID"])
        return None

    def find_item_by_isbn(self, isbn: str) -> Optional[Item]:
        """Look up by ISBN, ignoring hyphens and spaces.

        A stored ISBN field may list several ISBNs; any of them matches.
        """
        wanted = normalize_isbn(isbn)
        if not wanted:
            return None
        for row in self._field_values("ISBN"):
            value = row["value"]
            candidates = {normalize_isbn(value)}
            candidates.update(normalize_isbn(part) for part in _ISBN_SPLIT_RE.split(value))
            if wanted in candidates:
                return self.get_item_details(row["itemID"])
        return None

    def _find_in_field(self, field_name: str, needle: str) -> Optional[Item]:
        row = self.fetch_one("""
            SELECT id.itemID
            FROM itemData id
            JOIN fields f ON id.fieldID = f.fieldID
            JOIN itemDataValues iv ON id.valueID = iv.valueID
            WHERE f.fieldName = ? AND iv.value LIKE ? ESCAPE '\\'
            ORDER BY id.itemID
        """, (field_name, like_pattern(needle)))
        return self.get_item_details(row["itemID"]) if row else None

    def find_item_by_identifier(self, identifier: str, id_type: Optional[str] = None) -> Optional[Item]:
        """
        Look up an item by DOI, ISBN, PMID, arXiv ID or URL.

        PMIDs and arXiv IDs are stored in the free-form ``extra`` field.
        With id_type None or "auto" the type is detected from the shape of
        identifier; if that lookup fails DOI and ISBN are tried in turn.
        """
        explicit = id_type is not None and id_type.lower() != "auto"
        kind = resolve_identifier_type(identifier, id_type)
        found: Optional[Item] = None
        if kind == "doi":
            found = self.find_item_by_doi(identifier)
        elif kind == "isbn":
            found = self.find_item_by_isbn(identifier)
        elif kind == "pmid":
            pmid = normalize_pmid(identifier)
            found = self._find_in_field("extra", pmid) if pmid else None
        elif kind == "arxiv":
            arxiv_id = normalize_arxiv(identifier)
            found = self._find_in_field("extra", arxiv_id) if arxiv_id else None
        elif kind == "url":
            wanted = normalize_url(identifier)
            for row in self._field_values("url"):
                if normalize_url(row["value"]) == wanted:
                    found = self.get_item_details(row["itemID"])
                    break
        else:
            raise ValueError(f"Unknown identifier type: {id_type}")

        if found is not None or explicit:
            return found
        return self.find_item_by_doi(identifier) or self.find_item_by_isbn(identifier)

    # -------------------------------------------------------------------------
    # Annotations
    # -------------------------------------------------------------------------

    def get_item_annotations(self, parent_item_id: int) -> list[Annotation]:
        """Annotations on all attachments of an item, in document order."""
        rows = self.fetch_all(
            _ANNOTATION_SELECT + " WHERE att.parentItemID = ? ORDER BY ia.parentItemID, ia.sortIndex",
            (parent_item_id,),
        )
        return [_annotation_from_row(r) for r in rows]

    def get_attachment_annotations(self, attachment_id: int) -> list[Annotation]:
        rows = self.fetch_all(
            _ANNOTATION_SELECT + " WHERE ia.parentItemID = ? ORDER BY ia.sortIndex",
            (attachment_id,),
        )
        return [_annotation_from_row(r) for r in rows]

    def get_annotations_by_type(self, parent_item_id: int, types: list[str]) -> list[Annotation]:
        """
        Raises:
            ValueError: An unknown annotation type name
        """
        unknown = [t for t in types if t not in ANNOTATION_TYPE_IDS]
        if unknown:
            raise ValueError(
                f"Unknown annotation type(s): {', '.join(unknown)} "
                f"(expected {', '.join(ANNOTATION_TYPE_IDS)})"
            )
        if not types:
            return []
        type_ids = [ANNOTATION_TYPE_IDS[t] for t in types]
        placeholders = ",".join("?" * len(type_ids))
        rows = self.fetch_all(
            _ANNOTATION_SELECT
            + f" WHERE att.parentItemID = ? AND ia.type IN ({placeholders})"
            + " ORDER BY ia.parentItemID, ia.sortIndex",
            (parent_item_id, *type_ids),
        )
        return [_annotation_from_row(r) for r in rows]

    def get_annotations_by_color(self, parent_item_id: int, colors: list[str]) -> list[Annotation]:
        if not colors:
            return []
        placeholders = ",".join("?" * len(colors))
        rows = self.fetch_all(
            _ANNOTATION_SELECT
            + f" WHERE att.parentItemID = ? AND LOWER(ia.color) IN ({placeholders})"
            + " ORDER BY ia.parentItemID, ia.sortIndex",
            (parent_item_id, *[c.lower() for c in colors]),
        )
        return [_annotation_from_row(r) for r in rows]

    def search_annotations(self, query: str, parent_item_id: Optional[int] = None) -> list[Annotation]:
        """Annotations whose text or comment contains query.

        Scoped to one item: document order. Library-wide: most recent first.
        """
        pattern = like_pattern(query)
        sql = _ANNOTATION_SELECT + " WHERE (ia.text LIKE ? ESCAPE '\\' OR ia.comment LIKE ? ESCAPE '\\')"
        if parent_item_id is not None:
            rows = self.fetch_all(
                sql + " AND att.parentItemID = ? ORDER BY ia.parentItemID, ia.sortIndex",
                (pattern, pattern, parent_item_id),
            )
        else:
            rows = self.fetch_all(sql + " ORDER BY i.dateModified DESC", (pattern, pattern))
        return [_annotation_from_row(r) for r in rows]

    # -------------------------------------------------------------------------
    # Relations
    # -------------------------------------------------------------------------

    def get_related_items(self, item_id: int) -> list[Item]:
        """
        Items linked manually ("Related" in Zotero).

        Relation objects are URIs ending in /items/<KEY>; targets that no
        longer exist are skipped.
        """
        rows = self.fetch_all("""
            SELECT ir.object, rp.predicate
            FROM itemRelations ir
            JOIN relationPredicates rp ON ir.predicateID = rp.predicateID
            WHERE ir.itemID = ?
        """, (item_id,))
        related = []
        seen = set()
        for row in rows:
            match = _RELATION_KEY_RE.search(row["object"] or "")
            if not match:
                continue
            target = self.get_item_by_key(match.group(1))
            if target is None or target.id in seen:
                continue
            seen.add(target.id)
            related.append(self.get_item_details(target.id))
        return related

    # -------------------------------------------------------------------------
    # Info
    # -------------------------------------------------------------------------

    def get_database_info(self) -> dict[str, Any]:
        items = self.fetch_one("SELECT COUNT(*) AS n FROM items")["n"]
        return {
            "path": str(self._db_path),
            "storage_path": str(self.storage_path),
            "readonly": self.readonly,
            "dirty": self._dirty,
            "collections_count": self.fetch_one("SELECT COUNT(*) AS n FROM collections")["n"],
            "tags_count": self.fetch_one("SELECT COUNT(*) AS n FROM tags")["n"],
            "items_count": items,
            "backup_path": str(self._guard.backup_path) if self._guard.backup_path else None,
        }
