"""
Identifier normalization for DOI, ISBN, PMID, arXiv and URL lookups.

Stored values come from many import paths (browser connector, BibTeX,
manual entry), so lookups compare canonical forms rather than raw strings.
"""

import re
from typing import Optional

IDENTIFIER_TYPES = ("doi", "isbn", "pmid", "arxiv", "url")

_DOI_PREFIX_RE = re.compile(r"^(?:https?://(?:dx\.)?doi\.org/|doi:\s*)", re.IGNORECASE)
_DOI_SHAPE_RE = re.compile(r"^10\.\d+/")
_ISBN_SEPARATORS_RE = re.compile(r"[-\s]")
_ISBN_SHAPE_RE = re.compile(r"^(?:97[89])?\d{9}[\dX]$")
_PMID_PREFIX_RE = re.compile(r"^(?:pmid:?\s*|https?://(?:www\.)?(?:ncbi\.nlm\.nih\.gov/pubmed|pubmed\.ncbi\.nlm\.nih\.gov)/)", re.IGNORECASE)
_ARXIV_PREFIX_RE = re.compile(r"^(?:arxiv:\s*|https?://(?:www\.)?arxiv\.org/(?:abs|pdf)/)", re.IGNORECASE)
_ARXIV_SHAPE_RE = re.compile(r"^\d{4}\.\d{4,5}")


def normalize_doi(doi: str) -> str:
    """Strip resolver and ``doi:`` prefixes. DOIs compare case-insensitively,
    so the result is lowercased."""
    return _DOI_PREFIX_RE.sub("", doi.strip()).strip().lower()


def normalize_isbn(isbn: str) -> str:
    """Remove hyphens and whitespace; uppercase a trailing check digit ``x``."""
    return _ISBN_SEPARATORS_RE.sub("", isbn.strip()).upper()


def normalize_pmid(pmid: str) -> str:
    return _PMID_PREFIX_RE.sub("", pmid.strip()).strip().rstrip("/")


def normalize_arxiv(arxiv_id: str) -> str:
    """Strip ``arXiv:`` and abs/pdf URL prefixes and a trailing ``.pdf``."""
    value = _ARXIV_PREFIX_RE.sub("", arxiv_id.strip()).strip()
    if value.lower().endswith(".pdf"):
        value = value[:-4]
    return value


def normalize_url(url: str) -> str:
    value = url.strip()
    if value.endswith("/") and value.count("/") > 3:
        value = value.rstrip("/")
    return value


_NORMALIZERS = {
    "doi": normalize_doi,
    "isbn": normalize_isbn,
    "pmid": normalize_pmid,
    "arxiv": normalize_arxiv,
    "url": normalize_url,
}


def normalize_identifier(identifier: str, id_type: str) -> str:
    """Normalize an identifier of a known type.

    Raises:
        ValueError: If id_type is not one of IDENTIFIER_TYPES
    """
    normalizer = _NORMALIZERS.get(id_type.lower())
    if normalizer is None:
        raise ValueError(
            f"Unknown identifier type: {id_type!r} "
            f"(expected one of {', '.join(IDENTIFIER_TYPES)})"
        )
    return normalizer(identifier)


def detect_identifier_type(identifier: str) -> str:
    """Guess the type of an identifier from its shape.

    Order matters: a bare run of digits could be an ISBN or a PMID, and
    ISBN shapes are checked first. Unrecognised input is treated as a DOI.
    """
    value = identifier.strip()
    if _DOI_SHAPE_RE.match(value) or re.search(r"doi\.org", value, re.IGNORECASE) \
            or value.lower().startswith("doi:"):
        return "doi"
    if _ISBN_SHAPE_RE.match(normalize_isbn(value)):
        return "isbn"
    if value.isdigit() or re.search(r"pubmed|pmid", value, re.IGNORECASE):
        return "pmid"
    if re.search(r"arxiv", value, re.IGNORECASE) or _ARXIV_SHAPE_RE.match(value):
        return "arxiv"
    if re.match(r"^https?://", value, re.IGNORECASE):
        return "url"
    return "doi"


def resolve_identifier_type(identifier: str, id_type: Optional[str]) -> str:
    """Return id_type lowercased, or the detected type for None/``auto``."""
    if id_type is None or id_type.lower() == "auto":
        return detect_identifier_type(identifier)
    return id_type.lower()
