"""
Shared pytest fixtures for zotero-bridge tests.

Builds a miniature Zotero database (the tables this package touches, with
Zotero's column names and constraints) in a temporary directory, plus a
storage/ directory with one present and one missing attachment file.
The write guard's process probe is replaced so tests never depend on
whether Zotero happens to be running on the host.
"""

import sqlite3
from pathlib import Path

import pytest

from zotero_bridge.config import BridgeConfig
from zotero_bridge.database import ZoteroDatabase
from zotero_bridge.guard import WriteGuard

SCHEMA = """
CREATE TABLE libraries (
    libraryID INTEGER PRIMARY KEY,
    type TEXT NOT NULL,
    editable INT NOT NULL DEFAULT 1,
    version INT NOT NULL DEFAULT 0
);
CREATE TABLE itemTypes (itemTypeID INTEGER PRIMARY KEY, typeName TEXT);
CREATE TABLE fields (fieldID INTEGER PRIMARY KEY, fieldName TEXT);
CREATE TABLE creatorTypes (creatorTypeID INTEGER PRIMARY KEY, creatorType TEXT);
CREATE TABLE items (
    itemID INTEGER PRIMARY KEY,
    itemTypeID INT NOT NULL,
    dateAdded TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    dateModified TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    clientDateModified TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    libraryID INT NOT NULL,
    key TEXT NOT NULL,
    version INT NOT NULL DEFAULT 0,
    synced INT NOT NULL DEFAULT 0,
    UNIQUE (libraryID, key),
    FOREIGN KEY (libraryID) REFERENCES libraries(libraryID) ON DELETE CASCADE
);
CREATE TABLE itemDataValues (valueID INTEGER PRIMARY KEY, value UNIQUE);
CREATE TABLE itemData (
    itemID INT,
    fieldID INT,
    valueID,
    PRIMARY KEY (itemID, fieldID),
    FOREIGN KEY (itemID) REFERENCES items(itemID) ON DELETE CASCADE,
    FOREIGN KEY (fieldID) REFERENCES fields(fieldID),
    FOREIGN KEY (valueID) REFERENCES itemDataValues(valueID)
);
CREATE TABLE creators (creatorID INTEGER PRIMARY KEY, firstName TEXT, lastName TEXT, fieldMode INT);
CREATE TABLE itemCreators (
    itemID INT NOT NULL,
    creatorID INT NOT NULL,
    creatorTypeID INT NOT NULL DEFAULT 1,
    orderIndex INT NOT NULL DEFAULT 0,
    PRIMARY KEY (itemID, creatorID, creatorTypeID, orderIndex),
    FOREIGN KEY (itemID) REFERENCES items(itemID) ON DELETE CASCADE,
    FOREIGN KEY (creatorID) REFERENCES creators(creatorID) ON DELETE CASCADE
);
CREATE TABLE tags (tagID INTEGER PRIMARY KEY, name TEXT NOT NULL UNIQUE);
CREATE TABLE itemTags (
    itemID INT NOT NULL,
    tagID INT NOT NULL,
    type INT NOT NULL,
    PRIMARY KEY (itemID, tagID),
    FOREIGN KEY (itemID) REFERENCES items(itemID) ON DELETE CASCADE,
    FOREIGN KEY (tagID) REFERENCES tags(tagID) ON DELETE CASCADE
);
CREATE TABLE collections (
    collectionID INTEGER PRIMARY KEY,
    collectionName TEXT NOT NULL,
    parentCollectionID INT DEFAULT NULL,
    clientDateModified TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    libraryID INT NOT NULL,
    key TEXT NOT NULL,
    version INT NOT NULL DEFAULT 0,
    synced INT NOT NULL DEFAULT 0,
    UNIQUE (libraryID, key),
    FOREIGN KEY (libraryID) REFERENCES libraries(libraryID) ON DELETE CASCADE,
    FOREIGN KEY (parentCollectionID) REFERENCES collections(collectionID) ON DELETE CASCADE
);
CREATE TABLE collectionItems (
    collectionID INT NOT NULL,
    itemID INT NOT NULL,
    orderIndex INT NOT NULL DEFAULT 0,
    PRIMARY KEY (collectionID, itemID),
    FOREIGN KEY (collectionID) REFERENCES collections(collectionID) ON DELETE CASCADE,
    FOREIGN KEY (itemID) REFERENCES items(itemID) ON DELETE CASCADE
);
CREATE TABLE itemNotes (
    itemID INTEGER PRIMARY KEY,
    parentItemID INT,
    note TEXT,
    title TEXT,
    FOREIGN KEY (itemID) REFERENCES items(itemID) ON DELETE CASCADE,
    FOREIGN KEY (parentItemID) REFERENCES items(itemID) ON DELETE CASCADE
);
CREATE TABLE itemAttachments (
    itemID INTEGER PRIMARY KEY,
    parentItemID INT,
    linkMode INT,
    contentType TEXT,
    charsetID INT,
    path TEXT,
    syncState INT DEFAULT 0,
    FOREIGN KEY (itemID) REFERENCES items(itemID) ON DELETE CASCADE,
    FOREIGN KEY (parentItemID) REFERENCES items(itemID) ON DELETE CASCADE
);
CREATE TABLE itemAnnotations (
    itemID INTEGER PRIMARY KEY,
    parentItemID INT NOT NULL,
    type INTEGER NOT NULL,
    authorName TEXT,
    text TEXT,
    comment TEXT,
    color TEXT,
    pageLabel TEXT,
    sortIndex TEXT NOT NULL,
    position TEXT NOT NULL,
    isExternal INT NOT NULL DEFAULT 0,
    FOREIGN KEY (itemID) REFERENCES items(itemID) ON DELETE CASCADE,
    FOREIGN KEY (parentItemID) REFERENCES itemAttachments(itemID)
);
CREATE TABLE relationPredicates (predicateID INTEGER PRIMARY KEY, predicate TEXT UNIQUE);
CREATE TABLE itemRelations (
    itemID INT NOT NULL,
    predicateID INT NOT NULL,
    object TEXT NOT NULL,
    PRIMARY KEY (itemID, predicateID, object),
    FOREIGN KEY (itemID) REFERENCES items(itemID) ON DELETE CASCADE
);
CREATE TABLE fulltextWords (wordID INTEGER PRIMARY KEY, word TEXT UNIQUE);
CREATE TABLE fulltextItems (
    itemID INTEGER PRIMARY KEY,
    indexedPages INT,
    totalPages INT,
    indexedChars INT,
    totalChars INT,
    version INT NOT NULL DEFAULT 0,
    synced INT NOT NULL DEFAULT 0,
    FOREIGN KEY (itemID) REFERENCES items(itemID) ON DELETE CASCADE
);
CREATE TABLE fulltextItemWords (
    wordID INT,
    itemID INT,
    PRIMARY KEY (wordID, itemID),
    FOREIGN KEY (wordID) REFERENCES fulltextWords(wordID),
    FOREIGN KEY (itemID) REFERENCES items(itemID) ON DELETE CASCADE
);
"""

# Item ids used throughout the tests
ATTENTION = 1          # journal article with a PDF, a note and annotations
BERT = 2               # journal article whose PDF file is missing
DEEP_LEARNING = 3      # book with ISBNs
ATTENTION_DUP = 4      # duplicate of ATTENTION (same title, DOI in another form)
ATTENTION_PDF = 5      # attachment, file present
BERT_PDF = 6           # attachment, file missing (orphan)
ATTENTION_NOTE = 7
HIGHLIGHT = 8
NOTE_ANNOTATION = 9
DUP_NOTE = 10

ATTENTION_PDF_KEY = "EEEE6666"

SEED = f"""
INSERT INTO libraries VALUES (1, 'user', 1, 0);
INSERT INTO itemTypes VALUES (1, 'annotation'), (2, 'attachment'), (3, 'note'),
    (4, 'journalArticle'), (5, 'book');
INSERT INTO fields VALUES (1, 'title'), (2, 'abstractNote'), (3, 'DOI'), (4, 'ISBN'),
    (5, 'extra'), (6, 'url'), (7, 'date');
INSERT INTO creatorTypes VALUES (1, 'author'), (2, 'editor');

INSERT INTO items (itemID, itemTypeID, dateAdded, dateModified, clientDateModified, libraryID, key, version, synced) VALUES
    (1, 4, '2024-01-01 10:00:00', '2024-03-01 10:00:00', '2024-03-01 10:00:00', 1, 'AAAA2222', 5, 1),
    (2, 4, '2024-01-02 10:00:00', '2024-02-01 10:00:00', '2024-02-01 10:00:00', 1, 'BBBB3333', 3, 1),
    (3, 5, '2024-01-03 10:00:00', '2024-01-03 10:00:00', '2024-01-03 10:00:00', 1, 'CCCC4444', 1, 1),
    (4, 4, '2024-01-04 10:00:00', '2024-01-04 10:00:00', '2024-01-04 10:00:00', 1, 'DDDD5555', 2, 1),
    (5, 2, '2024-01-01 10:05:00', '2024-01-01 10:05:00', '2024-01-01 10:05:00', 1, '{ATTENTION_PDF_KEY}', 1, 1),
    (6, 2, '2024-01-02 10:05:00', '2024-01-02 10:05:00', '2024-01-02 10:05:00', 1, 'FFFF7777', 1, 1),
    (7, 3, '2024-01-01 11:00:00', '2024-01-01 11:00:00', '2024-01-01 11:00:00', 1, 'GGGG8888', 1, 1),
    (8, 1, '2024-01-01 12:00:00', '2024-01-01 12:00:00', '2024-01-01 12:00:00', 1, 'HHHH9999', 1, 1),
    (9, 1, '2024-01-01 12:05:00', '2024-01-05 12:05:00', '2024-01-05 12:05:00', 1, 'JJJJ2222', 1, 1),
    (10, 3, '2024-01-04 11:00:00', '2024-01-04 11:00:00', '2024-01-04 11:00:00', 1, 'KKKK3333', 1, 1);

INSERT INTO itemDataValues VALUES
    (1, 'Attention Is All You Need'),
    (2, '10.48550/arXiv.1706.03762'),
    (3, 'BERT: Pre-training of Deep Bidirectional Transformers'),
    (4, 'https://doi.org/10.18653/V1/N19-1423'),
    (5, 'Deep Learning'),
    (6, '978-0-262-03561-3 0262035618'),
    (7, 'doi:10.48550/ARXIV.1706.03762'),
    (8, 'PMID: 12345678
arXiv: 1706.03762'),
    (9, 'https://example.org/attention'),
    (10, 'The dominant sequence transduction models are based on recurrent networks.');
INSERT INTO itemData VALUES
    (1, 1, 1), (1, 3, 2), (1, 2, 10),
    (2, 1, 3), (2, 3, 4),
    (3, 1, 5), (3, 4, 6),
    (4, 1, 1), (4, 3, 7), (4, 5, 8), (4, 6, 9);

INSERT INTO creators VALUES (1, 'Ashish', 'Vaswani', 0), (2, 'Noam', 'Shazeer', 0),
    (3, 'Jacob', 'Devlin', 0), (4, 'Ian', 'Goodfellow', 0);
INSERT INTO itemCreators VALUES (1, 1, 1, 0), (1, 2, 1, 1), (2, 3, 1, 0), (3, 4, 1, 0), (4, 1, 1, 0);

INSERT INTO tags VALUES (1, 'transformers'), (2, 'nlp'), (3, 'deep learning'), (4, 'attention');
INSERT INTO itemTags VALUES
    (1, 1, 0), (1, 2, 0), (1, 4, 0),
    (2, 1, 0), (2, 2, 1),
    (3, 3, 0),
    (4, 1, 0), (4, 4, 0);

INSERT INTO collections (collectionID, collectionName, parentCollectionID, clientDateModified, libraryID, key, version, synced) VALUES
    (1, 'Machine Learning', NULL, '2024-01-01 00:00:00', 1, 'MMMM2222', 1, 1),
    (2, 'NLP', 1, '2024-01-01 00:00:00', 1, 'NNNN3333', 1, 1);
INSERT INTO collectionItems VALUES (1, 1, 0), (1, 3, 1), (2, 2, 0);

INSERT INTO itemNotes VALUES
    (7, 1, '<p>Self-attention replaces recurrence</p>', 'Self-attention replaces recurrence'),
    (10, 4, '<p>Same paper, preprint</p>', 'Same paper, preprint');
INSERT INTO itemAttachments (itemID, parentItemID, linkMode, contentType, path) VALUES
    (5, 1, 0, 'application/pdf', 'storage:attention.pdf'),
    (6, 2, 0, 'application/pdf', 'storage:bert.pdf');
INSERT INTO itemAnnotations (itemID, parentItemID, type, text, comment, color, pageLabel, sortIndex, position) VALUES
    (8, 5, 1, 'scaled dot-product attention', 'core idea', '#ffd400', '4', '00003|000120|00200', '{{}}'),
    (9, 5, 2, NULL, 'check the math here', '#ff6666', '5', '00004|000010|00100', '{{}}');

INSERT INTO relationPredicates VALUES (1, 'dc:relation');
INSERT INTO itemRelations VALUES (1, 1, 'http://zotero.org/users/123/items/BBBB3333');

INSERT INTO fulltextWords VALUES (1, 'transduction'), (2, 'attention'), (3, 'recurrent');
INSERT INTO fulltextItems VALUES (5, 15, 15, 40000, 40000, 0, 0);
INSERT INTO fulltextItemWords VALUES (1, 5), (2, 5), (3, 5);
"""

CACHE_TEXT = (
    "The dominant sequence transduction models are based on complex recurrent "
    "or convolutional neural networks. We propose a new simple network "
    "architecture, the Transformer, based solely on attention mechanisms."
)


def build_zotero_db(directory: Path) -> Path:
    """Create zotero.sqlite and storage/ in directory; return the db path."""
    db_path = directory / "zotero.sqlite"
    conn = sqlite3.connect(db_path)
    try:
        conn.executescript(SCHEMA)
        conn.executescript(SEED)
        conn.commit()
    finally:
        conn.close()

    attachment_dir = directory / "storage" / ATTENTION_PDF_KEY
    attachment_dir.mkdir(parents=True)
    (attachment_dir / "attention.pdf").write_bytes(b"%PDF-1.4 not really a pdf\n")
    (attachment_dir / ".zotero-ft-cache").write_text(CACHE_TEXT, encoding="utf-8")
    return db_path


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep tests away from the user's real config, database and logs."""
    monkeypatch.setenv("ZOTERO_BRIDGE_CONFIG", str(tmp_path / "config" / "zotero-bridge.toml"))
    monkeypatch.setenv("ZOTERO_BRIDGE_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.delenv("ZOTERO_DB_PATH", raising=False)
    monkeypatch.delenv("ZOTERO_BRIDGE_READONLY", raising=False)


@pytest.fixture
def db_path(tmp_path) -> Path:
    library = tmp_path / "Zotero"
    library.mkdir()
    return build_zotero_db(library)


@pytest.fixture
def owner_running():
    """Mutable flag read by the fake process probe."""
    return {"running": False}


@pytest.fixture
def config(db_path, tmp_path) -> BridgeConfig:
    return BridgeConfig(db_path=db_path, backup_dir=tmp_path / "backups")


@pytest.fixture
def guard(db_path, config, owner_running) -> WriteGuard:
    return WriteGuard(db_path, config, process_probe=lambda: owner_running["running"])


@pytest.fixture
def db(db_path, config, guard):
    """Connected read-write session on the miniature library."""
    session = ZoteroDatabase(db_path, config=config, guard=guard)
    session.connect()
    yield session
    if session.connected:
        session.disconnect()


@pytest.fixture
def readonly_db(db_path, tmp_path, guard):
    config = BridgeConfig(db_path=db_path, backup_dir=tmp_path / "backups")
    session = ZoteroDatabase(db_path, readonly=True, config=config, guard=guard)
    session.connect()
    yield session
    session.disconnect()


def file_row(db_path: Path, sql: str, params: tuple = ()):
    """Read straight from the file on disk, bypassing any session."""
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        return conn.execute(sql, params).fetchone()
    finally:
        conn.close()
