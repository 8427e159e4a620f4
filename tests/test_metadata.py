"""
Tests for item bookkeeping: every change to an item's owned data bumps
its version by exactly one, clears synced and moves both timestamps.
"""

import sqlite3

import pytest

from conftest import ATTENTION, BERT, DEEP_LEARNING
from zotero_bridge.metadata import touch_collection, touch_item


def _bookkeeping(db, item_id):
    return db.fetch_one(
        "SELECT version, synced, dateModified, clientDateModified FROM items WHERE itemID = ?",
        (item_id,),
    )


class TestTouchItem:

    def test_updates_row(self, db):
        conn = db._require_conn()
        assert touch_item(conn, ATTENTION, now="2030-01-01 00:00:00")
        row = _bookkeeping(db, ATTENTION)
        assert row["version"] == 6
        assert row["synced"] == 0
        assert row["dateModified"] == "2030-01-01 00:00:00"
        assert row["clientDateModified"] == "2030-01-01 00:00:00"

    def test_missing_item_is_noop(self, db):
        conn = db._require_conn()
        before = db.fetch_one("SELECT SUM(version) AS v FROM items")["v"]
        assert touch_item(conn, 9999) is False
        assert db.fetch_one("SELECT SUM(version) AS v FROM items")["v"] == before

    def test_touch_collection(self, db):
        conn = db._require_conn()
        assert touch_collection(conn, 1, now="2030-01-01 00:00:00")
        row = db.fetch_one("SELECT version, synced, clientDateModified FROM collections WHERE collectionID = 1")
        assert (row["version"], row["synced"]) == (2, 0)
        assert row["clientDateModified"] == "2030-01-01 00:00:00"


class TestMutationsBumpVersionOnce:
    """Each mutation touches the affected item exactly once."""

    @pytest.mark.parametrize("mutate, item_id", [
        (lambda db: db.set_item_field(ATTENTION, "title", "Attention!"), ATTENTION),
        (lambda db: db.set_item_abstract(DEEP_LEARNING, "A textbook."), DEEP_LEARNING),
        (lambda db: db.add_tag_to_item(BERT, "brand new tag"), BERT),
        (lambda db: db.add_tag_to_item(BERT, "attention"), BERT),
        (lambda db: db.remove_tag_from_item(ATTENTION, "nlp"), ATTENTION),
        (lambda db: db.add_item_to_collection(BERT, 1), BERT),
        (lambda db: db.remove_item_from_collection(ATTENTION, 1), ATTENTION),
        (lambda db: db.add_item_note(DEEP_LEARNING, "<p>Read ch. 6</p>", "Ch. 6"), DEEP_LEARNING),
    ])
    def test_version_plus_one_and_unsynced(self, db, mutate, item_id):
        before = _bookkeeping(db, item_id)
        mutate(db)
        after = _bookkeeping(db, item_id)
        assert after["version"] == before["version"] + 1
        assert after["synced"] == 0
        assert after["dateModified"] != before["dateModified"]
        assert after["clientDateModified"] == after["dateModified"]

    def test_noop_mutations_do_not_touch(self, db):
        before = _bookkeeping(db, ATTENTION)
        assert db.add_tag_to_item(ATTENTION, "nlp") is False
        assert db.add_item_to_collection(ATTENTION, 1) is False
        assert db.remove_tag_from_item(ATTENTION, "no such tag") is False
        assert db.remove_tag_from_item(DEEP_LEARNING, "nlp") is False
        assert db.remove_item_from_collection(DEEP_LEARNING, 999) is False
        assert db.rename_collection(999, "x") is False
        assert _bookkeeping(db, ATTENTION)["version"] == before["version"]
        assert db.dirty is False
        assert db.guard.backup_path is None

    def test_noop_mutation_allowed_while_zotero_runs(self, db, owner_running):
        owner_running["running"] = True
        assert db.remove_tag_from_item(DEEP_LEARNING, "nlp") is False

    def test_transaction_without_changes_is_clean(self, db):
        with db._transaction() as conn:
            conn.execute("DELETE FROM itemTags WHERE itemID = ?", (999,))
        assert db.dirty is False
        assert db.guard.backup_path is None

    def test_note_creation_touches_parent_not_note(self, db):
        note_id = db.add_item_note(ATTENTION, "<p>hi</p>")
        note = _bookkeeping(db, note_id)
        assert note["version"] == 0
        assert note["synced"] == 0

    def test_failed_mutation_leaves_item_untouched(self, db):
        before = _bookkeeping(db, ATTENTION)
        with pytest.raises(sqlite3.IntegrityError):
            with db._transaction() as conn:
                touch_item(conn, ATTENTION)
                conn.execute("INSERT INTO tags (tagID, name) VALUES (1, 'duplicate id')")
        assert _bookkeeping(db, ATTENTION)["version"] == before["version"]
