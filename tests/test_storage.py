"""Tests for the in-memory fingerprint store."""

import pytest

from visual_dna.exceptions import DuplicateMatchError
from visual_dna.models import (
    STATUS_COMPLETED, STATUS_FAILED, CaseInfo, MatchRecord, VisualDNA,
)
from visual_dna.storage import InMemoryStore


def match(source, target):
    return MatchRecord(source_case_id="c1", source_photo_id=source,
                       target_case_id="c2", target_photo_id=target,
                       overall_score=80, scores={}, match_type="visual")


@pytest.fixture
def store():
    store = InMemoryStore()
    store.add_case(CaseInfo("lost-pet", "lost_item", category="pet"))
    store.add_case(CaseInfo("found-pet", "found_item", category="pet"))
    store.add_case(CaseInfo("found-keys", "found_item", category="keys"))
    store.add_case(CaseInfo("found-closed", "found_item", status="resolved"))
    store.add_case(CaseInfo("found-any", "found_item"))
    store.save_dna(VisualDNA(photo_id="p1", case_id="lost-pet", status=STATUS_COMPLETED))
    store.save_dna(VisualDNA(photo_id="p2", case_id="found-pet", status=STATUS_COMPLETED,
                             entity_type="pet"))
    store.save_dna(VisualDNA(photo_id="p3", case_id="found-keys", status=STATUS_COMPLETED,
                             entity_type="item"))
    store.save_dna(VisualDNA(photo_id="p4", case_id="found-closed", status=STATUS_COMPLETED))
    store.save_dna(VisualDNA(photo_id="p5", case_id="found-any", status=STATUS_FAILED))
    store.save_dna(VisualDNA(photo_id="p6", case_id="found-any", status=STATUS_COMPLETED))
    return store


def photo_ids(candidates):
    return sorted(c.dna.photo_id for c in candidates)


class TestFindCandidates:
    """Tests for candidate filtering."""

    def test_active_opposite_type_only(self, store):
        assert photo_ids(store.find_candidates("found_item")) == ["p2", "p3", "p6"]

    def test_category_filter(self, store):
        assert photo_ids(store.find_candidates("found_item", categories=["pet"])) == ["p2"]
        # Cases without a category count as "other"
        assert photo_ids(store.find_candidates("found_item", categories=["other"])) == ["p6"]

    def test_entity_filter(self, store):
        assert photo_ids(store.find_candidates("found_item", entity_types=["pet"])) == ["p2"]

    def test_candidate_carries_case(self, store):
        candidate = store.find_candidates("lost_item")[0]
        assert candidate.case.case_id == "lost-pet"


class TestMatches:
    """Tests for match persistence."""

    def test_duplicate_pair_rejected(self, store):
        store.save_match(match("p1", "p2"))
        with pytest.raises(DuplicateMatchError, match="p1 -> p2"):
            store.save_match(match("p1", "p2"))

    def test_reverse_pair_is_distinct(self, store):
        store.save_match(match("p1", "p2"))
        store.save_match(match("p2", "p1"))
        assert len(store.list_matches()) == 2
        assert len(store.list_matches("p1")) == 2

    def test_save_dna_needs_photo_id(self, store):
        with pytest.raises(ValueError, match="photo id"):
            store.save_dna(VisualDNA())

    def test_list_outdated(self, store):
        assert store.list_outdated("0.0.1") != []
        assert store.list_outdated(store.get_dna("p1").algorithm_version) == []
