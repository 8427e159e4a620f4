"""
MCP stdio server for zotero-bridge: Zotero library tools for AI agents.

Exposes ZoteroDatabase operations as MCP tools. Every tool returns JSON
text; failures come back as ``{"error": message, "code": code}`` rather
than as protocol errors, so agents can read and react to them.

Usage:
    zotero-bridge serve                          # stdio server (via CLI)
    claude mcp add zotero -- zotero-bridge serve

All database calls are serialized through a single asyncio.Lock; the
session is opened lazily on the first call.
"""

import asyncio
import inspect
import json
import os
import re
import sqlite3
from pathlib import Path
from typing import Annotated, Any, Callable, Literal, Optional

from mcp.server.fastmcp import FastMCP
from mcp.types import ToolAnnotations
from pydantic import Field

from . import fulltext, maintenance, similarity
from .database import ZoteroDatabase
from .errors import BridgeError, InvalidReferenceError, NotFoundError
from .logging_config import configure_quiet_mode, enable_debug_mode
from .pdf import PDFProcessor
from .types import to_dict

# ---------------------------------------------------------------------------
# Server setup
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "zotero-bridge",
    instructions=(
        "Read and modify a local Zotero library: collections, tags, notes, "
        "abstracts, annotations, full text and PDFs. "
        "Writes are refused while Zotero is running; close Zotero first."
    ),
)

_db: Optional[ZoteroDatabase] = None
_db_path: Optional[Path] = None
_readonly: Optional[bool] = None
_lock = asyncio.Lock()

_SELECT_RE = re.compile(r"^\s*(select|with)\b", re.IGNORECASE)
_WRITE_RE = re.compile(
    r"\b(insert|update|delete|drop|alter|create|attach|detach|pragma|vacuum|reindex)\b",
    re.IGNORECASE,
)


def _get_db() -> ZoteroDatabase:
    """Lazy-open the session from config (respects ZOTERO_DB_PATH env).

    Must be called inside ``async with _lock``.
    """
    global _db
    if _db is None:
        db = ZoteroDatabase(db_path=_db_path, readonly=_readonly)
        db.connect()
        _db = db
    return _db


def _dump(data: Any) -> str:
    return json.dumps(to_dict(data), indent=2, ensure_ascii=False, default=str)


def _error(message: str, code: str) -> str:
    return json.dumps({"error": message, "code": code}, indent=2)


async def _run(operation: Callable[[ZoteroDatabase], Any]) -> str:
    """Run operation against the session under the lock and render the result."""
    async with _lock:
        try:
            result = operation(_get_db())
            if inspect.isawaitable(result):
                result = await result
        except BridgeError as e:
            return _error(str(e), e.code)
        except ValueError as e:
            return _error(str(e), "invalid_argument")
        except sqlite3.Error as e:
            return _error(str(e), "sql_error")
        except OSError as e:
            # backup or save failed; the in-memory image still holds the change
            return _error(str(e), "io_error")
    return _dump(result)


def _require(value: Any, name: str, action: str) -> Any:
    if value is None or value == "":
        raise ValueError(f"{name} is required for action '{action}'")
    return value


def _found(value: Any, what: str) -> Any:
    if value is None:
        raise NotFoundError(f"{what} not found")
    return value


# ---------------------------------------------------------------------------
# Tool annotations
# ---------------------------------------------------------------------------

_READ_ONLY = ToolAnnotations(readOnlyHint=True, destructiveHint=False)
_IDEMPOTENT = ToolAnnotations(idempotentHint=True, destructiveHint=False)
_DESTRUCTIVE = ToolAnnotations(destructiveHint=True, idempotentHint=False)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool(
    description=(
        "List, inspect, create, rename, move and delete collections, "
        "and add or remove items from them. Deleting a collection also deletes "
        "its subcollections but never the items in them."
    ),
    annotations=_DESTRUCTIVE,
)
async def manage_collection(
    action: Annotated[Literal[
        "list", "get", "subcollections", "items", "create", "rename",
        "move", "delete", "add_item", "remove_item",
    ], Field(description="Operation to perform.")],
    collection_id: Annotated[Optional[int], Field(
        description="Collection ID (get, subcollections, items, rename, move, delete, add_item, remove_item).",
    )] = None,
    name: Annotated[Optional[str], Field(
        description="Collection name (create, rename; get looks up by name when no ID is given).",
    )] = None,
    parent_id: Annotated[Optional[int], Field(
        description="Parent collection ID (create, move). Omit to use the top level.",
    )] = None,
    item_id: Annotated[Optional[int], Field(
        description="Item ID (add_item, remove_item).",
    )] = None,
    library_id: Annotated[int, Field(description="Library ID (default: 1, the personal library).")] = 1,
) -> str:
    """Manage collections."""
    def operation(db: ZoteroDatabase) -> Any:
        if action == "list":
            return db.get_collections(library_id)
        if action == "get":
            if collection_id is not None:
                return _found(db.get_collection(collection_id), f"Collection {collection_id}")
            _require(name, "name", action)
            return _found(db.get_collection_by_name(name, library_id), f"Collection {name!r}")
        if action == "create":
            new_id = db.create_collection(_require(name, "name", action), parent_id, library_id)
            return {"collection_id": new_id, "name": name, "parent_id": parent_id}

        cid = _require(collection_id, "collection_id", action)
        if action == "subcollections":
            return db.get_subcollections(cid)
        if action == "items":
            return [db.get_item_summary(item.id) for item in db.get_collection_items(cid)]
        if action == "rename":
            return {"renamed": db.rename_collection(cid, _require(name, "name", action))}
        if action == "move":
            return {"moved": db.move_collection(cid, parent_id)}
        if action == "delete":
            return {"deleted": db.delete_collection(cid)}
        if action == "add_item":
            return {"added": db.add_item_to_collection(_require(item_id, "item_id", action), cid)}
        if action == "remove_item":
            return {"removed": db.remove_item_from_collection(_require(item_id, "item_id", action), cid)}
        raise ValueError(f"Unknown action: {action}")

    return await _run(operation)


@mcp.tool(
    description=(
        "List tags with usage counts, show an item's tags, "
        "or add and remove tags on an item. Tags are created on first use."
    ),
    annotations=_IDEMPOTENT,
)
async def manage_tags(
    action: Annotated[Literal["list", "item_tags", "add", "remove"], Field(
        description="Operation to perform.",
    )],
    item_id: Annotated[Optional[int], Field(description="Item ID (item_tags, add, remove).")] = None,
    tags: Annotated[Optional[list[str]], Field(description="Tag names (add, remove).")] = None,
    tag_type: Annotated[int, Field(
        description="Tag type for add: 0 = manual (user), 1 = automatic.",
    )] = 0,
) -> str:
    """Manage tags."""
    def operation(db: ZoteroDatabase) -> Any:
        if action == "list":
            return db.get_tags()
        iid = _require(item_id, "item_id", action)
        if action == "item_tags":
            return db.get_item_tags(iid)
        names = _require(tags, "tags", action)
        if action == "add":
            with db.batch():
                added = [n for n in names if db.add_tag_to_item(iid, n, tag_type)]
            return {"item_id": iid, "added": added}
        if action == "remove":
            with db.batch():
                removed = [n for n in names if db.remove_tag_from_item(iid, n)]
            return {"item_id": iid, "removed": removed}
        raise ValueError(f"Unknown action: {action}")

    return await _run(operation)


@mcp.tool(
    description="Search items by title. Most recently modified first.",
    annotations=_READ_ONLY,
)
async def search_items(
    query: Annotated[str, Field(description="Text contained in the title.")],
    limit: Annotated[int, Field(description="Max results to return.")] = 50,
    library_id: Annotated[int, Field(description="Library ID (default: 1).")] = 1,
) -> str:
    """Search items."""
    def operation(db: ZoteroDatabase) -> Any:
        return [db.get_item_summary(item.id) for item in db.search_items(query, limit, library_id)]

    return await _run(operation)


@mcp.tool(
    description=(
        "Full details of one item: fields, creators, tags and attachments. "
        "Identify the item by ID or by its 8-character key."
    ),
    annotations=_READ_ONLY,
)
async def get_item_details(
    item_id: Annotated[Optional[int], Field(description="Item ID.")] = None,
    item_key: Annotated[Optional[str], Field(description="Item key, e.g. ABCD2345.")] = None,
) -> str:
    """Get item details."""
    def operation(db: ZoteroDatabase) -> Any:
        if item_id is not None:
            return db.get_item_details(item_id)
        key = _require(item_key, "item_id or item_key", "get_item_details")
        item = _found(db.get_item_by_key(key), f"Item {key}")
        return db.get_item_details(item.id)

    return await _run(operation)


@mcp.tool(
    description=(
        "Read and write an item's content: abstract, child notes and single fields. "
        "Delete removes the item with its notes, attachments and annotations."
    ),
    annotations=_DESTRUCTIVE,
)
async def manage_item_content(
    action: Annotated[Literal[
        "get_abstract", "set_abstract", "get_notes", "add_note",
        "get_field", "set_field", "delete",
    ], Field(description="Operation to perform.")],
    item_id: Annotated[int, Field(description="Item ID.")],
    content: Annotated[Optional[str], Field(
        description="Abstract text, note HTML, or field value (set_abstract, add_note, set_field).",
    )] = None,
    title: Annotated[Optional[str], Field(description="Note title (add_note).")] = None,
    field_name: Annotated[Optional[str], Field(
        description="Zotero field name, e.g. 'title', 'DOI', 'extra' (get_field, set_field).",
    )] = None,
) -> str:
    """Manage item content."""
    def operation(db: ZoteroDatabase) -> Any:
        if action == "get_abstract":
            return {"item_id": item_id, "abstract": db.get_item_abstract(item_id)}
        if action == "set_abstract":
            db.set_item_abstract(item_id, _require(content, "content", action))
            return {"item_id": item_id, "updated": True}
        if action == "get_notes":
            return db.get_item_notes(item_id)
        if action == "add_note":
            note_id = db.add_item_note(item_id, _require(content, "content", action), title or "")
            return {"item_id": item_id, "note_id": note_id}
        if action == "get_field":
            name = _require(field_name, "field_name", action)
            return {"item_id": item_id, "field": name, "value": db.get_item_field(item_id, name)}
        if action == "set_field":
            name = _require(field_name, "field_name", action)
            db.set_item_field(item_id, name, _require(content, "content", action))
            return {"item_id": item_id, "field": name, "updated": True}
        if action == "delete":
            return {"item_id": item_id, "deleted": db.delete_item(item_id)}
        raise ValueError(f"Unknown action: {action}")

    return await _run(operation)


@mcp.tool(
    description=(
        "Work with an item's PDF attachments: list them, extract text, summarise, "
        "search inside, or generate an abstract (optionally saved to the item)."
    ),
    annotations=_IDEMPOTENT,
)
async def manage_pdf(
    action: Annotated[Literal["list", "extract_text", "summary", "search", "generate_abstract"], Field(
        description="Operation to perform.",
    )],
    item_id: Annotated[Optional[int], Field(description="Parent item ID (list).")] = None,
    attachment_id: Annotated[Optional[int], Field(
        description="Attachment item ID (extract_text, summary, search, generate_abstract).",
    )] = None,
    query: Annotated[Optional[str], Field(description="Text to search for (search).")] = None,
    case_sensitive: Annotated[bool, Field(description="Case-sensitive search.")] = False,
    max_length: Annotated[int, Field(
        description="Max characters of text (extract_text) or abstract (generate_abstract).",
    )] = 1000,
    save_to_item: Annotated[bool, Field(
        description="Store the generated abstract on the parent item (generate_abstract).",
    )] = False,
) -> str:
    """Manage PDFs."""
    async def operation(db: ZoteroDatabase) -> Any:
        processor = PDFProcessor(db)
        if action == "list":
            iid = _require(item_id, "item_id", action)
            return [maintenance.check_attachment(db, a) for a in db.get_pdf_attachments(iid)]

        aid = _require(attachment_id, "attachment_id", action)
        if action == "extract_text":
            content = await processor.extract_text_from_attachment(aid)
            return {
                "attachment_id": aid,
                "num_pages": content.num_pages,
                "truncated": len(content.text) > max_length,
                "text": content.text[:max_length],
            }
        if action == "summary":
            return await processor.get_pdf_summary(aid)
        if action == "search":
            needle = _require(query, "query", action)
            content = await processor.extract_text_from_attachment(aid)
            return processor.search_in_pdf(content, needle, case_sensitive)
        if action == "generate_abstract":
            return await processor.generate_abstract(aid, max_length, save_to_item)
        raise ValueError(f"Unknown action: {action}")

    return await _run(operation)


@mcp.tool(
    description=(
        "Find an item by DOI, ISBN, PMID, arXiv ID or URL. "
        "DOIs match regardless of resolver prefix and case; ISBNs regardless of hyphens."
    ),
    annotations=_READ_ONLY,
)
async def find_by_identifier(
    identifier: Annotated[str, Field(description="The identifier, e.g. 10.1000/xyz or 978-0-12-345678-9.")],
    id_type: Annotated[Literal["auto", "doi", "isbn", "pmid", "arxiv", "url"], Field(
        description="Identifier type; auto detects it from the identifier's shape.",
    )] = "auto",
) -> str:
    """Find item by identifier."""
    def operation(db: ZoteroDatabase) -> Any:
        return _found(db.find_item_by_identifier(identifier, id_type), f"Item with {id_type} {identifier!r}")

    return await _run(operation)


@mcp.tool(
    description=(
        "Read PDF annotations (highlights, notes, underlines, ...) of an item or "
        "one attachment, optionally filtered by type or colour, or search "
        "annotation text across the library."
    ),
    annotations=_READ_ONLY,
)
async def get_annotations(
    item_id: Annotated[Optional[int], Field(description="Parent item ID.")] = None,
    attachment_id: Annotated[Optional[int], Field(description="Attachment item ID.")] = None,
    types: Annotated[Optional[list[str]], Field(
        description="Annotation types: highlight, note, image, ink, underline, text.",
    )] = None,
    colors: Annotated[Optional[list[str]], Field(description="Hex colours, e.g. #ffd400.")] = None,
    query: Annotated[Optional[str], Field(description="Text contained in annotation text or comment.")] = None,
) -> str:
    """Get annotations."""
    def operation(db: ZoteroDatabase) -> Any:
        if query:
            return db.search_annotations(query, item_id)
        if attachment_id is not None:
            return db.get_attachment_annotations(attachment_id)
        iid = _require(item_id, "item_id, attachment_id or query", "get_annotations")
        if types:
            return db.get_annotations_by_type(iid, types)
        if colors:
            return db.get_annotations_by_color(iid, colors)
        return db.get_item_annotations(iid)

    return await _run(operation)


@mcp.tool(
    description=(
        "Search Zotero's full-text index, or read the indexed text of one attachment. "
        "Results are ordered by recency, not relevance."
    ),
    annotations=_READ_ONLY,
)
async def search_fulltext(
    query: Annotated[Optional[str], Field(description="Word or fragment to search for.")] = None,
    attachment_id: Annotated[Optional[int], Field(
        description="Read this attachment's indexed text instead of searching.",
    )] = None,
    context_length: Annotated[int, Field(
        description="Characters of context either side of a match.",
    )] = 100,
    library_id: Annotated[int, Field(description="Library ID (default: 1).")] = 1,
) -> str:
    """Search full text."""
    def operation(db: ZoteroDatabase) -> Any:
        if attachment_id is not None:
            content = _found(fulltext.get_fulltext_content(db, attachment_id),
                             f"Indexed text for attachment {attachment_id}")
            return {
                "content": content,
                "status": fulltext.get_fulltext_status(db, attachment_id),
            }
        needle = _require(query, "query or attachment_id", "search_fulltext")
        return fulltext.search_fulltext_with_context(db, needle, context_length, library_id)

    return await _run(operation)


@mcp.tool(
    description=(
        "Items related to an item: manual 'Related' links, items sharing tags, "
        "creators or collections. Or find duplicate items by title, DOI or ISBN."
    ),
    annotations=_READ_ONLY,
)
async def find_related_items(
    item_id: Annotated[Optional[int], Field(description="Item ID (all methods except duplicates).")] = None,
    method: Annotated[Literal["all", "manual", "tags", "creators", "collection", "duplicates"], Field(
        description="Which relation to follow.",
    )] = "all",
    min_shared_tags: Annotated[int, Field(description="Minimum tags in common (tags, all).")] = 2,
    field: Annotated[Literal["title", "doi", "isbn"], Field(
        description="Field compared for duplicates.",
    )] = "title",
) -> str:
    """Find related items."""
    def operation(db: ZoteroDatabase) -> Any:
        if method == "duplicates":
            return similarity.find_duplicates(db, field)
        iid = _require(item_id, "item_id", method)
        db.get_item_details(iid)
        if method == "all":
            return similarity.find_related(db, iid, min_shared_tags)
        if method == "manual":
            return [db.get_item_summary(i.id) for i in db.get_related_items(iid)]
        if method == "tags":
            return similarity.find_similar_by_tags(db, iid, min_shared_tags)
        if method == "creators":
            return similarity.find_similar_by_creators(db, iid)
        if method == "collection":
            return similarity.find_similar_by_collection(db, iid)
        raise ValueError(f"Unknown method: {method}")

    return await _run(operation)


@mcp.tool(
    description="Database location, read-only state, backup taken this session, and row counts.",
    annotations=_READ_ONLY,
)
async def get_database_info() -> str:
    """Database info."""
    return await _run(lambda db: db.get_database_info())


@mcp.tool(
    description=(
        "Run a read-only SQL SELECT against the Zotero database. "
        "Anything other than a single SELECT statement is rejected."
    ),
    annotations=_READ_ONLY,
)
async def raw_query(
    sql: Annotated[str, Field(description="A single SELECT statement. Use ? placeholders for params.")],
    params: Annotated[Optional[list[Any]], Field(description="Positional parameters.")] = None,
) -> str:
    """Run a read-only query."""
    def operation(db: ZoteroDatabase) -> Any:
        if not _SELECT_RE.match(sql) or _WRITE_RE.search(sql):
            raise InvalidReferenceError("Only SELECT queries are allowed")
        rows = db.query(sql, params or [])
        return {"row_count": len(rows), "rows": rows}

    return await _run(operation)


@mcp.tool(
    description=(
        "Library upkeep: check attachment files exist, find or delete orphan "
        "attachments (dry run by default), find items with a usable PDF, "
        "and merge duplicate items' notes and tags into one target."
    ),
    annotations=_DESTRUCTIVE,
)
async def library_maintenance(
    action: Annotated[Literal[
        "validate_attachments", "find_orphans", "delete_orphans",
        "find_items_with_pdf", "merge_items",
    ], Field(description="Operation to perform.")],
    item_id: Annotated[Optional[int], Field(description="Item whose attachments to validate.")] = None,
    check_all: Annotated[bool, Field(description="Validate every attachment in the library.")] = False,
    dry_run: Annotated[bool, Field(description="List orphans without deleting (delete_orphans).")] = True,
    title: Annotated[Optional[str], Field(description="Title to search (find_items_with_pdf).")] = None,
    doi: Annotated[Optional[str], Field(description="DOI to look up (find_items_with_pdf).")] = None,
    require_valid_pdf: Annotated[bool, Field(
        description="Only return items whose PDF file exists (find_items_with_pdf).",
    )] = True,
    target_item_id: Annotated[Optional[int], Field(description="Item that receives notes and tags (merge_items).")] = None,
    source_item_ids: Annotated[Optional[list[int]], Field(
        description="Items whose notes and tags are copied (merge_items). Sources are not deleted.",
    )] = None,
) -> str:
    """Library maintenance."""
    def operation(db: ZoteroDatabase) -> Any:
        if action == "validate_attachments":
            return maintenance.validate_attachments(db, item_id, check_all)
        if action == "find_orphans":
            return maintenance.find_orphan_attachments(db)
        if action == "delete_orphans":
            return maintenance.delete_orphan_attachments(db, dry_run)
        if action == "find_items_with_pdf":
            return maintenance.find_items_with_valid_pdf(db, title, doi, require_valid_pdf)
        if action == "merge_items":
            target = _require(target_item_id, "target_item_id", action)
            return maintenance.merge_items(db, target, _require(source_item_ids, "source_item_ids", action))
        raise ValueError(f"Unknown action: {action}")

    return await _run(operation)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(db_path: Optional[Path] = None, readonly: Optional[bool] = None):
    """Run the MCP stdio server."""
    import signal
    global _db_path, _readonly
    _db_path = db_path
    _readonly = readonly

    if os.environ.get("ZOTERO_BRIDGE_VERBOSE") == "1":
        enable_debug_mode()
    else:
        configure_quiet_mode(quiet=True)

    # anyio's stdin reader shields the blocking readline from cancellation,
    # so Ctrl+C would not stop the server. Pending changes are already saved
    # when autosave is on.
    signal.signal(signal.SIGINT, lambda *_: os._exit(130))

    try:
        mcp.run(transport="stdio")
    finally:
        if _db is not None:
            _db.disconnect()


if __name__ == "__main__":
    main()
