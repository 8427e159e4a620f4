"""
PDF text extraction for Zotero attachments.

Extraction runs pypdf in a worker thread; callers await it. Everything
else in the package is synchronous.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from pypdf import PdfReader

from .database import ZoteroDatabase
from .errors import AttachmentUnresolvableError, NotFoundError

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 500

_ABSTRACT_RE = re.compile(
    r"abstract[:\s]*\n?([\s\S]{100,2000}?)(?=\n\s*(?:introduction|keywords|1\.|background))",
    re.IGNORECASE,
)
_INTRO_RE = re.compile(
    r"introduction[:\s]*\n?([\s\S]{100,2000}?)(?=\n\s*(?:2\.|background|related|method))",
    re.IGNORECASE,
)
_WS_RE = re.compile(r"\s+")


def _squash(text: str) -> str:
    return _WS_RE.sub(" ", text).strip()


@dataclass
class PdfContent:
    path: str
    text: str
    num_pages: int
    pages: list[str] = field(default_factory=list)
    info: dict[str, Any] = field(default_factory=dict)


@dataclass
class PdfSummary:
    attachment_id: int
    title: str
    num_pages: int
    word_count: int
    preview: str
    path: str


@dataclass
class PdfMatch:
    page: int
    context: str


def _read_pdf(path: Path) -> PdfContent:
    """Extract text and document info from a PDF file (blocking)."""
    if not path.is_file():
        raise AttachmentUnresolvableError(f"PDF file not found: {path}")
    try:
        reader = PdfReader(path)
        pages = [page.extract_text() or "" for page in reader.pages]
        info = {
            str(k).lstrip("/"): str(v)
            for k, v in (reader.metadata or {}).items()
        }
    except Exception as e:
        raise AttachmentUnresolvableError(f"Failed to extract text from PDF {path}: {e}") from e
    return PdfContent(
        path=str(path),
        text="\n\n".join(pages),
        num_pages=len(pages),
        pages=pages,
        info=info,
    )


class PDFProcessor:
    """Reads the PDFs attached to items of a ZoteroDatabase session."""

    def __init__(self, db: ZoteroDatabase):
        self._db = db

    async def extract_text(self, path: Path | str) -> PdfContent:
        """
        Raises:
            AttachmentUnresolvableError: File missing or not a readable PDF
        """
        return await asyncio.to_thread(_read_pdf, Path(path))

    def _attachment_path(self, attachment_id: int) -> Path:
        attachment = self._db.get_attachment(attachment_id)
        if attachment is None:
            raise NotFoundError(f"Attachment not found: {attachment_id}")
        path = self._db.resolve_attachment(attachment)
        if path is None:
            raise AttachmentUnresolvableError(f"Attachment {attachment_id} has no file path")
        return path

    async def extract_text_from_attachment(self, attachment_id: int) -> PdfContent:
        return await self.extract_text(self._attachment_path(attachment_id))

    async def extract_text_from_item(self, parent_item_id: int) -> dict[int, PdfContent]:
        """Text of every readable PDF attached to an item, keyed by attachment id."""
        results: dict[int, PdfContent] = {}
        for attachment in self._db.get_pdf_attachments(parent_item_id):
            try:
                path = self._db.resolve_attachment(attachment)
                if path is None or not path.is_file():
                    continue
                results[attachment.item_id] = await self.extract_text(path)
            except AttachmentUnresolvableError as e:
                logger.warning("Failed to extract PDF %s: %s", attachment.item_id, e)
        return results

    async def get_pdf_summary(self, attachment_id: int) -> PdfSummary:
        path = self._attachment_path(attachment_id)
        content = await self.extract_text(path)
        return PdfSummary(
            attachment_id=attachment_id,
            title=content.info.get("Title") or path.name,
            num_pages=content.num_pages,
            word_count=len(content.text.split()),
            preview=_squash(content.text[:PREVIEW_LENGTH]),
            path=str(path),
        )

    @staticmethod
    def search_in_pdf(content: PdfContent, query: str, case_sensitive: bool = False) -> list[PdfMatch]:
        """Lines containing query, each with its neighbouring lines, by page."""
        needle = query if case_sensitive else query.lower()
        matches = []
        for page_number, page_text in enumerate(content.pages, start=1):
            lines = page_text.split("\n")
            for i, line in enumerate(lines):
                haystack = line if case_sensitive else line.lower()
                if needle in haystack:
                    window = lines[max(0, i - 1):i + 2]
                    matches.append(PdfMatch(page=page_number, context=_squash(" ".join(window))))
        return matches

    @staticmethod
    def generate_simple_summary(content: PdfContent, max_length: int = 1000) -> str:
        """
        Heuristic abstract: the Abstract section if found, else the
        Introduction, else the first substantial paragraph.
        """
        text = content.text
        for pattern in (_ABSTRACT_RE, _INTRO_RE):
            match = pattern.search(text)
            if match:
                return _squash(match.group(1))[:max_length]
        paragraphs = [p for p in re.split(r"\n\s*\n", text) if len(p.strip()) > 100]
        if paragraphs:
            return _squash(paragraphs[0])[:max_length]
        return _squash(text[:max_length])

    async def generate_abstract(
        self,
        attachment_id: int,
        max_length: int = 1000,
        save_to_item: bool = False,
    ) -> dict[str, Any]:
        """Summarise an attachment's PDF, optionally storing it as the parent's abstract."""
        content = await self.extract_text_from_attachment(attachment_id)
        abstract = self.generate_simple_summary(content, max_length)
        saved_to: Optional[int] = None
        if save_to_item:
            attachment = self._db.get_attachment(attachment_id)
            if attachment and attachment.parent_item_id:
                self._db.set_item_abstract(attachment.parent_item_id, abstract)
                saved_to = attachment.parent_item_id
        return {"abstract": abstract, "length": len(abstract), "saved_to": saved_to}
