"""
Data types for the Zotero library model and for operation results.

Field names follow Python conventions; the owner's column names
(itemID, collectionName, ...) are mapped in the accessor.
"""

from dataclasses import dataclass, field, fields as dataclass_fields, is_dataclass
from datetime import datetime, timezone
from typing import Any, Optional


# Tag types as stored on itemTags.type
TAG_TYPE_USER = 0
TAG_TYPE_AUTOMATIC = 1

# Annotation types as stored on itemAnnotations.type
ANNOTATION_TYPES = {
    1: "highlight",
    2: "note",
    3: "image",
    4: "ink",
    5: "underline",
    6: "text",
}
ANNOTATION_TYPE_IDS = {name: type_id for type_id, name in ANNOTATION_TYPES.items()}

# Item types excluded from bibliographic queries (duplicates, similarity)
NON_BIBLIOGRAPHIC_TYPES = ("note", "attachment", "annotation")

STORAGE_PREFIX = "storage:"


def zotero_now() -> str:
    """Current UTC time in the owner's timestamp format: YYYY-MM-DD HH:MM:SS."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def to_dict(obj: Any) -> Any:
    """Convert result dataclasses to plain data, including computed properties."""
    if isinstance(obj, (list, tuple)):
        return [to_dict(o) for o in obj]
    if isinstance(obj, dict):
        return {k: to_dict(v) for k, v in obj.items()}
    if is_dataclass(obj) and not isinstance(obj, type):
        data = {f.name: to_dict(getattr(obj, f.name)) for f in dataclass_fields(obj)}
        for name, attr in vars(type(obj)).items():
            if isinstance(attr, property):
                data[name] = to_dict(getattr(obj, name))
        return data
    return obj


@dataclass
class Creator:
    first_name: str
    last_name: str
    creator_type: str
    order_index: int = 0

    @property
    def display_name(self) -> str:
        if self.first_name:
            return f"{self.first_name} {self.last_name}"
        return self.last_name


@dataclass
class Tag:
    id: int
    name: str
    type: int = TAG_TYPE_USER
    item_count: Optional[int] = None


@dataclass
class Attachment:
    """An attachment row. ``path`` is the raw stored value."""
    item_id: int
    parent_item_id: Optional[int]
    path: Optional[str]
    content_type: Optional[str]
    link_mode: Optional[int] = None

    @property
    def is_storage_relative(self) -> bool:
        return bool(self.path) and self.path.startswith(STORAGE_PREFIX)


@dataclass
class Item:
    """
    An item row with optional detail.

    ``fields`` maps field names (title, DOI, abstractNote, ...) to values.
    creators/tags/attachments are only populated by get_item_details().
    """
    id: int
    key: str
    item_type: str
    library_id: int
    date_added: str
    date_modified: str
    version: int = 0
    synced: bool = False
    fields: dict[str, str] = field(default_factory=dict)
    creators: list[Creator] = field(default_factory=list)
    tags: list[Tag] = field(default_factory=list)
    attachments: list[Attachment] = field(default_factory=list)

    @property
    def title(self) -> Optional[str]:
        return self.fields.get("title")


@dataclass
class Note:
    item_id: int
    parent_item_id: Optional[int]
    note: str
    title: str


@dataclass
class Collection:
    id: int
    name: str
    parent_id: Optional[int]
    key: str
    library_id: int
    version: int = 0


@dataclass
class Annotation:
    id: int
    attachment_id: int
    type: str
    text: Optional[str]
    comment: Optional[str]
    color: Optional[str]
    page_label: Optional[str]
    sort_index: Optional[str]
    position: Optional[str]
    key: str = ""
    date_added: str = ""
    date_modified: str = ""
    parent_item_id: Optional[int] = None


@dataclass
class ItemSummary:
    """Short form of an item used inside search and similarity results."""
    id: int
    key: str
    title: Optional[str] = None
    creators: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Fulltext
# ---------------------------------------------------------------------------

@dataclass
class FulltextStatus:
    attachment_id: int
    indexed_chars: Optional[int]
    total_chars: Optional[int]
    indexed_pages: Optional[int]
    total_pages: Optional[int]
    synced: Optional[int] = None


@dataclass
class FulltextContent:
    """
    Text of an indexed attachment.

    ``source`` is "verbatim" (content table), "cache" (the owner's
    on-disk text cache) or "reconstructed". Reconstructed text is the
    sorted set of indexed words: it does not preserve document order.
    """
    attachment_id: int
    text: str
    source: str

    @property
    def reconstructed(self) -> bool:
        return self.source == "reconstructed"


@dataclass
class FulltextHit:
    attachment_id: int
    attachment_key: str
    parent_item_id: Optional[int]
    status: FulltextStatus
    context: str = ""
    content_source: Optional[str] = None
    parent_item: Optional[ItemSummary] = None


# ---------------------------------------------------------------------------
# Similarity and duplicates
# ---------------------------------------------------------------------------

@dataclass
class SimilarItem:
    """An item related to another, with the evidence for the relation."""
    id: int
    key: str
    score: int = 0
    shared: list[str] = field(default_factory=list)


@dataclass
class DuplicateGroup:
    field_name: str
    value: str
    item_ids: list[int]

    @property
    def count(self) -> int:
        return len(self.item_ids)


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

PROBLEM_INVALID_PATH = "invalid_path"
PROBLEM_FILE_NOT_FOUND = "file_not_found"


@dataclass
class AttachmentCheck:
    """Result of checking one attachment against the filesystem."""
    attachment_id: int
    parent_item_id: Optional[int]
    key: Optional[str]
    path: Optional[str]
    resolved_path: Optional[str]
    content_type: Optional[str]
    problem: Optional[str] = None

    @property
    def exists(self) -> bool:
        return self.problem is None


@dataclass
class OperationError:
    """One failure inside a batch operation."""
    item_id: int
    stage: str
    message: str


@dataclass
class OrphanCleanupResult:
    dry_run: bool
    orphans: list[AttachmentCheck] = field(default_factory=list)
    deleted: int = 0
    errors: list[OperationError] = field(default_factory=list)


@dataclass
class TransferCounts:
    notes: int = 0
    tags: int = 0


@dataclass
class MergeResult:
    """
    Outcome of merging source items into a target.

    Merge is best effort: a failed source does not stop the others, and
    nothing already transferred is rolled back. ``success`` is False when
    any error occurred.
    """
    target_item_id: int
    transferred: TransferCounts = field(default_factory=TransferCounts)
    errors: list[OperationError] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass
class ItemPdfStatus:
    item: ItemSummary
    doi: Optional[str]
    pdf: Optional[AttachmentCheck]

    @property
    def has_valid_pdf(self) -> bool:
        return self.pdf is not None and self.pdf.exists
