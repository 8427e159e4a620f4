"""Tests for related-item discovery and duplicate detection."""

import pytest

from conftest import ATTENTION, ATTENTION_DUP, BERT, DEEP_LEARNING
from zotero_bridge.similarity import (
    find_duplicates,
    find_related,
    find_similar_by_collection,
    find_similar_by_creators,
    find_similar_by_tags,
)


class TestSimilarByTags:

    def test_shared_tag_threshold(self, db):
        similar = find_similar_by_tags(db, ATTENTION, min_shared_tags=2)
        assert [(s.id, s.score) for s in similar] == [(BERT, 2), (ATTENTION_DUP, 2)]
        assert similar[0].shared == ["nlp", "transformers"]
        assert similar[1].shared == ["attention", "transformers"]

    def test_lower_threshold(self, db):
        db.add_tag_to_item(DEEP_LEARNING, "nlp")
        similar = find_similar_by_tags(db, ATTENTION, min_shared_tags=1)
        assert [s.id for s in similar] == [BERT, ATTENTION_DUP, DEEP_LEARNING]

    def test_never_includes_self(self, db):
        assert ATTENTION not in [s.id for s in find_similar_by_tags(db, ATTENTION, 1)]

    def test_untagged_item(self, db):
        assert find_similar_by_tags(db, 999) == []


class TestSimilarByCreatorsAndCollections:

    def test_creators(self, db):
        similar = find_similar_by_creators(db, ATTENTION)
        assert [s.id for s in similar] == [ATTENTION_DUP]
        assert similar[0].shared == ["Ashish Vaswani"]

    def test_collection(self, db):
        similar = find_similar_by_collection(db, ATTENTION)
        assert [(s.id, s.score) for s in similar] == [(DEEP_LEARNING, 1)]
        assert similar[0].shared == ["Machine Learning"]

    def test_find_related_all_kinds(self, db):
        related = find_related(db, ATTENTION)
        assert [i.id for i in related["manual"]] == [BERT]
        assert [s.id for s in related["by_tags"]] == [BERT, ATTENTION_DUP]
        assert [s.id for s in related["by_creators"]] == [ATTENTION_DUP]
        assert [s.id for s in related["by_collection"]] == [DEEP_LEARNING]


class TestDuplicates:

    def test_by_title(self, db):
        groups = find_duplicates(db, "title")
        assert len(groups) == 1
        assert groups[0].item_ids == [ATTENTION, ATTENTION_DUP]
        assert groups[0].count == 2

    def test_by_doi_ignores_prefix_and_case(self, db):
        groups = find_duplicates(db, "DOI")
        assert [g.item_ids for g in groups] == [[ATTENTION, ATTENTION_DUP]]
        assert groups[0].value == "10.48550/arxiv.1706.03762"

    def test_by_isbn_none(self, db):
        assert find_duplicates(db, "isbn") == []

    def test_notes_ignored(self, db):
        note_id = db.add_item_note(BERT, "<p>x</p>")
        db.set_item_field(note_id, "title", "Deep Learning")
        assert find_duplicates(db, "title")[0].item_ids == [ATTENTION, ATTENTION_DUP]
        assert len(find_duplicates(db, "title")) == 1

    def test_largest_group_first(self, db):
        db.set_item_field(BERT, "title", "Deep Learning")
        first = find_duplicates(db, "title")
        assert [g.count for g in first] == [2, 2]
        db.set_item_field(BERT, "title", "Attention Is All You Need")
        assert find_duplicates(db, "title")[0].item_ids == [ATTENTION, BERT, ATTENTION_DUP]

    def test_unknown_field(self, db):
        with pytest.raises(ValueError, match="Unknown duplicate field"):
            find_duplicates(db, "publisher")
