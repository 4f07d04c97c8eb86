"""Tests for category weights, feature analysis and auto-categorization."""

import itertools
from dataclasses import FrozenInstanceError, fields

import pytest

from conftest import make_color
from visual_dna.models import (
    Identifiers, OcrResult, PatternInfo, ShapeFingerprint, VisualDNA,
)
from visual_dna.weights import (
    CATEGORY_WEIGHTS, AvailableFeatures, WeightVector,
    analyze_available_features, auto_detect_category, compatible_categories,
    compatible_entities, compute_weights, detect_if_pet,
    redistribute_for_asymmetric_ocr, significant_colors,
)

LONG_TEXT = "Passport issued to the holder named on this card for travel"


def pet_like_dna():
    return VisualDNA(
        color=make_color(("brown", 50), ("white", 40)),
        pattern=PatternInfo("spotted", 60, spot_count=6),
        shape=ShapeFingerprint(signature=(0.1,) * 64, aspect_ratio=1.0, edge_density=0.2),
    )


class TestWeightVector:
    """Tests for the immutable weight vector."""

    def test_defaults_sum_to_one(self):
        assert WeightVector().total() == pytest.approx(1.0)

    def test_category_tables_sum_to_one(self):
        for name, weights in CATEGORY_WEIGHTS.items():
            assert weights.total() == pytest.approx(1.0), name

    def test_normalized(self):
        w = WeightVector(hash=2, color=2, shape=0, ocr=0, visual=0, objects=0).normalized()
        assert w.hash == pytest.approx(0.5)
        assert w.total() == pytest.approx(1.0)

    def test_normalized_zero_total(self):
        w = WeightVector(hash=0, color=0, shape=0, ocr=0, visual=0, objects=0).normalized()
        assert w.hash == pytest.approx(1 / 6)

    def test_from_mapping_aliases(self):
        w = WeightVector.from_mapping({"HASH": 0.5, "VISUAL_FEATURES": 0.4,
                                       "DETECTED_OBJECTS": 0.1, "bogus": 9})
        assert w.hash == 0.5
        assert w.visual == 0.4
        assert w.objects == 0.1

    def test_frozen(self):
        with pytest.raises(FrozenInstanceError):
            WeightVector().hash = 1.0


class TestComputeWeights:
    """Tests for feature-adaptive weights."""

    def test_no_text_moves_ocr_weight(self):
        w = compute_weights(AvailableFeatures(), "documents")
        assert w.total() == pytest.approx(1.0)
        assert w.ocr < CATEGORY_WEIGHTS["documents"].ocr
        assert w.ocr < 0.05

    def test_text_keeps_ocr_weight(self):
        w = compute_weights(AvailableFeatures(has_text=True), "documents")
        assert w.ocr == pytest.approx(0.60)

    def test_pet_boosts_color(self):
        base = compute_weights(AvailableFeatures(has_text=True), "other")
        pet = compute_weights(AvailableFeatures(has_text=True, looks_like_pet=True), "other")
        assert pet.color > base.color
        assert pet.shape < base.shape

    def test_document_boosts_ocr(self):
        base = compute_weights(AvailableFeatures(has_text=True), "other")
        doc = compute_weights(AvailableFeatures(has_text=True, has_strong_text=True,
                                                looks_like_document=True), "other")
        assert doc.ocr > base.ocr

    def test_solid_color_boosts_shape(self):
        base = compute_weights(AvailableFeatures(has_text=True), "other")
        solid = compute_weights(AvailableFeatures(has_text=True, has_single_dominant_color=True),
                                "other")
        assert solid.shape > base.shape

    def test_unknown_category_uses_other(self):
        features = AvailableFeatures(has_text=True)
        assert compute_weights(features, "spaceship") == compute_weights(features, "other")
        assert compute_weights(features, None) == compute_weights(features, "other")

    def test_table_not_mutated(self):
        before = CATEGORY_WEIGHTS["pet"]
        compute_weights(AvailableFeatures(looks_like_pet=True), "pet")
        assert CATEGORY_WEIGHTS["pet"] is before
        assert CATEGORY_WEIGHTS["pet"].color == 0.30

    def test_custom_base_table(self):
        table = {"other": WeightVector(hash=1, color=0, shape=0, ocr=0, visual=0, objects=0)}
        w = compute_weights(AvailableFeatures(has_text=True), "other", table)
        assert w.hash == pytest.approx(1.0)

    def test_every_flag_combination_is_a_distribution(self):
        flags = [f.name for f in fields(AvailableFeatures) if f.type in (bool, "bool")]
        assert len(flags) == 10
        for category in list(CATEGORY_WEIGHTS) + [None, "spaceship"]:
            for values in itertools.product([False, True], repeat=len(flags)):
                features = AvailableFeatures(**dict(zip(flags, values)))
                for w in (compute_weights(features, category),
                          redistribute_for_asymmetric_ocr(compute_weights(features, category))):
                    assert w.total() == pytest.approx(1.0), (category, values)
                    assert min(w.as_dict().values()) >= 0, (category, values)


class TestAsymmetricOcr:
    """Tests for weight redistribution when only one photo has text."""

    def test_ocr_weight_reduced(self):
        base = CATEGORY_WEIGHTS["documents"]
        w = redistribute_for_asymmetric_ocr(base)
        assert w.ocr < base.ocr
        assert w.hash > base.hash
        assert w.total() == pytest.approx(1.0)


class TestCompatibility:
    """Tests for candidate category and entity filters."""

    def test_categories(self):
        assert compatible_categories("pet") == ("pet",)
        assert compatible_categories("vehicle") == ("vehicle",)
        assert "other" in compatible_categories("jewelry")
        assert compatible_categories("wallet") is None
        assert compatible_categories(None) is None

    def test_entities(self):
        assert "item" in compatible_entities("vehicle")
        assert compatible_entities("pet") == ("pet", "unknown")
        assert compatible_entities("unknown") is None
        assert compatible_entities(None) is None


class TestFeatureAnalysis:
    """Tests for available-feature detection and pet heuristics."""

    def test_significant_colors(self):
        dna = VisualDNA(color=make_color(("white", 70), ("red", 25), ("pink", 5)))
        assert significant_colors(dna) == ["white", "red"]
        assert significant_colors(VisualDNA()) == []

    def test_pet_detection(self):
        assert detect_if_pet(pet_like_dna())
        assert not detect_if_pet(VisualDNA())

    def test_empty_fingerprint(self):
        features = analyze_available_features(VisualDNA())
        assert not features.has_text
        assert not features.has_identifiers
        assert features.color_confidence == 0

    def test_text_and_identifiers(self):
        ocr = OcrResult(text=LONG_TEXT, confidence=80, is_garbage=False,
                        identifiers=Identifiers(license_plates=("ABC 1234",)))
        features = analyze_available_features(VisualDNA(ocr=ocr))
        assert features.has_text
        assert features.has_strong_text
        assert features.has_identifiers
        assert features.looks_like_vehicle

    def test_single_dominant_color(self):
        dna = VisualDNA(color=make_color(("blue", 90), ("white", 5)))
        features = analyze_available_features(dna)
        assert features.has_single_dominant_color
        assert not features.has_strong_colors


class TestAutoDetectCategory:
    """Tests for category guessing from fingerprint features."""

    def test_plate_is_vehicle(self):
        ocr = OcrResult(text="ABC 1234", identifiers=Identifiers(license_plates=("ABC 1234",)))
        detection = auto_detect_category(VisualDNA(ocr=ocr))
        assert detection.category == "vehicle"
        assert detection.confidence == 90
        assert detection.accepted

    def test_passport_text_is_documents(self):
        ocr = OcrResult(text=LONG_TEXT, confidence=80, is_garbage=False)
        detection = auto_detect_category(VisualDNA(ocr=ocr))
        assert detection.category == "documents"

    def test_pet_colors_and_pattern(self):
        detection = auto_detect_category(pet_like_dna())
        assert detection.category == "pet"

    def test_nothing_is_other(self):
        detection = auto_detect_category(VisualDNA())
        assert detection.category == "other"
        assert detection.confidence == 0
        assert not detection.accepted
