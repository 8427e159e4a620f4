"""
Library maintenance: attachment validation, orphan cleanup, item merging.

Batch operations here are best effort. A failure on one attachment or one
source item is recorded in the result and the batch carries on; nothing
already done is rolled back. Only the guard's refusal (Zotero running,
integrity failure) stops a batch, and it does so before the first change.
"""

import logging
import sqlite3
from typing import Iterable, Optional

from .database import ZoteroDatabase
from .errors import AttachmentUnresolvableError, BridgeError, NotFoundError
from .types import (
    PROBLEM_FILE_NOT_FOUND,
    PROBLEM_INVALID_PATH,
    Attachment,
    AttachmentCheck,
    ItemPdfStatus,
    ItemSummary,
    MergeResult,
    OperationError,
    OrphanCleanupResult,
)

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"

# Errors that fail a single step of a batch without aborting it
_STEP_ERRORS = (BridgeError, sqlite3.Error, ValueError)


def check_attachment(db: ZoteroDatabase, attachment: Attachment) -> AttachmentCheck:
    """Resolve an attachment's path and test that the file exists."""
    key_row = db.fetch_one("SELECT key FROM items WHERE itemID = ?", (attachment.item_id,))
    check = AttachmentCheck(
        attachment_id=attachment.item_id,
        parent_item_id=attachment.parent_item_id,
        key=key_row["key"] if key_row else None,
        path=attachment.path,
        resolved_path=None,
        content_type=attachment.content_type,
    )
    try:
        resolved = db.resolve_attachment(attachment)
    except AttachmentUnresolvableError:
        check.problem = PROBLEM_INVALID_PATH
        return check
    if resolved is None:
        check.problem = PROBLEM_INVALID_PATH
        return check
    check.resolved_path = str(resolved)
    if not resolved.is_file():
        check.problem = PROBLEM_FILE_NOT_FOUND
    return check


def validate_attachments(
    db: ZoteroDatabase,
    item_id: Optional[int] = None,
    check_all: bool = False,
) -> list[AttachmentCheck]:
    """
    Check attachment files against the filesystem.

    Scoped to the attachments of item_id, or every attachment in the
    database with check_all. Attachments without a path (web links) are
    skipped.

    Raises:
        ValueError: Neither item_id nor check_all given
    """
    if item_id is not None:
        attachments = db.get_attachments(item_id)
    elif check_all:
        attachments = db.get_all_attachments()
    else:
        raise ValueError("Either item_id or check_all is required")
    return [check_attachment(db, a) for a in attachments if a.path]


def find_orphan_attachments(db: ZoteroDatabase) -> list[AttachmentCheck]:
    """Stored (storage:) attachments whose file cannot be resolved or found."""
    orphans = []
    for attachment in db.get_all_attachments():
        if not attachment.is_storage_relative:
            continue
        check = check_attachment(db, attachment)
        if check.problem:
            orphans.append(check)
    return orphans


def delete_orphan_attachments(db: ZoteroDatabase, dry_run: bool = True) -> OrphanCleanupResult:
    """
    Delete orphan attachment items.

    With dry_run nothing is changed and the orphans are only listed.
    Otherwise each orphan is deleted on its own; failures are collected in
    ``errors`` and the rest continue.
    """
    result = OrphanCleanupResult(dry_run=dry_run, orphans=find_orphan_attachments(db))
    if dry_run or not result.orphans:
        return result

    with db.batch():
        for orphan in result.orphans:
            try:
                if db.delete_item(orphan.attachment_id):
                    result.deleted += 1
            except _STEP_ERRORS as e:
                logger.warning("Failed to delete orphan attachment %s: %s", orphan.attachment_id, e)
                result.errors.append(OperationError(orphan.attachment_id, "delete", str(e)))
    logger.info("Orphan cleanup: %d deleted, %d failed", result.deleted, len(result.errors))
    return result


def get_valid_attachment(
    db: ZoteroDatabase,
    parent_item_id: int,
    content_type: Optional[str] = PDF_CONTENT_TYPE,
) -> Optional[AttachmentCheck]:
    """First attachment of an item (of content_type) whose file exists."""
    for attachment in db.get_attachments(parent_item_id, content_type):
        if not attachment.path:
            continue
        check = check_attachment(db, attachment)
        if check.exists:
            return check
    return None


def find_items_with_valid_pdf(
    db: ZoteroDatabase,
    title: Optional[str] = None,
    doi: Optional[str] = None,
    require_valid_pdf: bool = True,
    limit: int = 50,
) -> list[ItemPdfStatus]:
    """
    Items matching a DOI or title, with the state of their PDF.

    Raises:
        ValueError: Neither title nor doi given
    """
    if doi:
        found = db.find_item_by_doi(doi)
        candidates = [found] if found else []
    elif title:
        candidates = db.search_items(title, limit=limit)
    else:
        raise ValueError("Either title or doi is required")

    results = []
    for item in candidates:
        pdf = get_valid_attachment(db, item.id)
        if pdf is None:
            pdfs = [a for a in db.get_pdf_attachments(item.id) if a.path]
            pdf = check_attachment(db, pdfs[0]) if pdfs else None
        status = ItemPdfStatus(
            item=db.get_item_summary(item.id) or ItemSummary(id=item.id, key=item.key),
            doi=item.fields.get("DOI"),
            pdf=pdf,
        )
        if require_valid_pdf and not status.has_valid_pdf:
            continue
        results.append(status)
    return results


def _merged_title(source_key: str, title: str) -> str:
    if title:
        return f"Merged from {source_key}: {title}"
    return f"Merged from {source_key}"


def merge_items(db: ZoteroDatabase, target_item_id: int, source_item_ids: Iterable[int]) -> MergeResult:
    """
    Copy the notes and tags of source items onto a target item.

    Notes are recreated under the target with a title naming their source;
    tags are re-attached by name with their original type. A tag counts as
    transferred only if the target did not already have it.

    Sources, and their own notes and tags, are left in place. Deleting
    them is up to the caller.

    Raises:
        NotFoundError: The target item does not exist
    """
    target = db.get_item(target_item_id)
    if target is None:
        raise NotFoundError(f"Target item not found: {target_item_id}")

    result = MergeResult(target_item_id=target_item_id)
    with db.batch():
        for source_id in source_item_ids:
            if source_id == target_item_id:
                continue
            source = db.get_item(source_id)
            if source is None:
                result.errors.append(OperationError(source_id, "source", f"Item not found: {source_id}"))
                continue

            try:
                for note in db.get_item_notes(source_id):
                    db.add_item_note(target_item_id, note.note, _merged_title(source.key, note.title))
                    result.transferred.notes += 1
            except _STEP_ERRORS as e:
                logger.warning("Merge %s -> %s: note transfer failed: %s", source_id, target_item_id, e)
                result.errors.append(OperationError(source_id, "notes", str(e)))

            try:
                for tag in db.get_item_tags(source_id):
                    if db.add_tag_to_item(target_item_id, tag.name, tag.type):
                        result.transferred.tags += 1
            except _STEP_ERRORS as e:
                logger.warning("Merge %s -> %s: tag transfer failed: %s", source_id, target_item_id, e)
                result.errors.append(OperationError(source_id, "tags", str(e)))

    logger.info(
        "Merged into %s: %d notes, %d tags, %d errors",
        target_item_id, result.transferred.notes, result.transferred.tags, len(result.errors),
    )
    return result
