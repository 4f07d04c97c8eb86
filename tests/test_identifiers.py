"""Tests for identifier extraction, OCR validation and multi-pass OCR."""

import numpy as np
import pytest

from conftest import FailingOcrEngine, FakeOcrEngine
from visual_dna.identifiers import (
    OcrPass, OcrWord, analyze_ocr, extract_identifiers, gibberish_score,
    identifier_summary, is_valid_word, run_ocr_passes, score_ocr,
    select_best_pass, validate_ocr_output,
)
from visual_dna.models import Identifiers

GARBAGE = "LAR Eg RE A ET a pe"
SENTENCE = "Lost phone found near the main street station"


class TestExtractIdentifiers:
    """Tests for pattern-based identifier extraction."""

    def test_license_plate(self):
        ids = extract_identifiers("Plate ABC 1234 seen near the park")
        assert "ABC 1234" in ids.license_plates

    def test_serial_number(self):
        ids = extract_identifiers("Marked SN123456789 underneath")
        assert "SN123456789" in ids.serial_numbers

    def test_email(self):
        ids = extract_identifiers("Contact jane.doe@example.com if found")
        assert ids.emails == ("jane.doe@example.com",)

    def test_phone_with_parentheses(self):
        ids = extract_identifiers("Call (555) 123-4567 today")
        assert "(555) 123-4567" in ids.phone_numbers

    def test_labelled_id_requires_digit(self):
        assert extract_identifiers("ID: ABCDEF").document_ids == ()
        assert extract_identifiers("ID# 48213").document_ids == ("ID# 48213",)

    def test_newlines_collapsed(self):
        ids = extract_identifiers("Plate\nABC\n1234")
        assert "ABC 1234" in ids.license_plates

    def test_deduplicated(self):
        ids = extract_identifiers("ABC 1234 and again ABC 1234")
        assert ids.license_plates.count("ABC 1234") == 1

    def test_empty_text(self):
        assert extract_identifiers(None).is_empty()
        assert extract_identifiers("").is_empty()

    def test_summary_counts(self):
        ids = Identifiers(license_plates=("ABC 1234",), emails=("a@b.co", "c@d.co"))
        summary = identifier_summary(ids)
        assert summary["license_plates"] == 1
        assert summary["emails"] == 2
        assert summary["serial_numbers"] == 0


class TestWordHeuristics:
    """Tests for word validity and gibberish scoring."""

    def test_valid_words(self):
        assert is_valid_word("station")
        assert is_valid_word("12345")
        assert is_valid_word("AB12")

    def test_invalid_words(self):
        assert not is_valid_word("a")
        assert not is_valid_word("k-r-t-p")
        assert not is_valid_word("a'''")

    def test_clean_text_not_gibberish(self):
        assert gibberish_score(SENTENCE.split()) == 0

    def test_debris_is_gibberish(self):
        assert gibberish_score(["X", "Qz", "RT", "b", "LK", "Wp"]) > gibberish_score(SENTENCE.split())


class TestValidateOcrOutput:
    """Tests for the garbage filter."""

    def test_too_short(self):
        result = validate_ocr_output("ab", 90)
        assert result.is_garbage
        assert result.reason == "Text too short"

    def test_random_characters(self):
        result = validate_ocr_output("|| ~~ ## ;; ::", 90)
        assert result.reason == "Too many random characters"

    def test_short_word_debris(self):
        result = validate_ocr_output(GARBAGE, 80)
        assert result.is_garbage
        assert result.reason.startswith("Too many short words")

    def test_identifiers_accepted_early(self):
        result = validate_ocr_output("zq ABC 1234 xv", 20)
        assert result.is_valid
        assert result.reason == "Contains identifiers"
        assert result.identifiers.license_plates

    def test_real_sentence_accepted(self):
        result = validate_ocr_output(SENTENCE, 85)
        assert result.is_valid
        assert result.reason == "Valid text detected"
        assert result.valid_word_count == 8

    def test_low_confidence_rejected(self):
        result = validate_ocr_output(SENTENCE, 30)
        assert result.is_garbage

    def test_per_word_confidence_used(self):
        words = [OcrWord(w, 20) for w in SENTENCE.split()]
        result = validate_ocr_output(SENTENCE, 85, words)
        assert result.is_garbage
        assert result.valid_word_count == 0


class TestScoreOcr:
    """Tests for OCR evidence scoring."""

    def test_garbage_scores_zero(self):
        assert score_ocr(GARBAGE, 80, Identifiers()) == 0

    def test_sentence_score(self):
        score = score_ocr(SENTENCE, 85, Identifiers())
        assert score == 38

    def test_identifiers_raise_score(self):
        text = "Plate ABC 1234 seen near the park"
        plain = score_ocr(SENTENCE, 85, Identifiers())
        with_plate = score_ocr(text, 85, extract_identifiers(text))
        assert with_plate > plain

    def test_more_passes_raise_score(self):
        one = score_ocr(SENTENCE, 85, Identifiers(), passes_used=1)
        three = score_ocr(SENTENCE, 85, Identifiers(), passes_used=3)
        assert three == one + 5

    def test_capped_at_100(self):
        text = "Plate ABC 1234 SN123456789 jane@example.com 555-123-4567 " + SENTENCE
        assert score_ocr(text, 99, extract_identifiers(text), passes_used=5) <= 100


class TestOcrPasses:
    """Tests for running and combining OCR passes."""

    def test_all_variants_when_confident(self, red_square_image):
        engine = FakeOcrEngine(SENTENCE, confidence=80)
        passes = run_ocr_passes(engine, red_square_image)
        assert engine.calls == 5
        assert len(passes) == 5

    def test_low_confidence_rotations_dropped(self, red_square_image):
        engine = FakeOcrEngine(SENTENCE, confidence=20)
        passes = run_ocr_passes(engine, red_square_image)
        assert sorted(p.name for p in passes) == ["license_plate", "standard"]

    def test_failing_engine(self, red_square_image):
        assert run_ocr_passes(FailingOcrEngine(), red_square_image) == []

    def test_empty_text_skipped(self, red_square_image):
        assert run_ocr_passes(FakeOcrEngine("   ", confidence=90), red_square_image) == []

    def test_identifier_pass_wins(self):
        passes = [
            OcrPass("standard", "some words on a label", 60),
            OcrPass("license_plate", "ABC 1234", 50),
        ]
        best, ids = select_best_pass(passes)
        assert best.name == "license_plate"
        assert "ABC 1234" in ids.license_plates

    def test_identifiers_merged_across_passes(self):
        passes = [
            OcrPass("standard", "Plate ABC 1234 on the car", 70),
            OcrPass("rotated90", "Contact jane@example.com", 40),
        ]
        _, ids = select_best_pass(passes)
        assert ids.license_plates
        assert ids.emails == ("jane@example.com",)

    def test_no_passes(self):
        assert select_best_pass([]) == (None, Identifiers())


class TestAnalyzeOcr:
    """Tests for the final OCR result."""

    def test_no_passes(self):
        result = analyze_ocr([])
        assert result.text is None
        assert result.is_garbage

    def test_garbage_is_cleared(self):
        result = analyze_ocr([OcrPass("standard", GARBAGE, 80)])
        assert result.text is None
        assert result.identifiers.is_empty()
        assert result.score == 0
        assert result.is_garbage
        assert result.best_pass == "standard"

    def test_valid_text_kept(self):
        result = analyze_ocr([OcrPass("standard", "  " + SENTENCE + "  ", 85)])
        assert result.text == SENTENCE
        assert not result.is_garbage
        assert result.score > 0
        assert result.passes_used == 1

    @pytest.mark.parametrize("text", ["Plate ABC 1234 seen near the park", "ID# 48213 issued"])
    def test_identifier_text_kept(self, text):
        result = analyze_ocr([OcrPass("standard", text, 60)])
        assert not result.is_garbage
        assert not result.identifiers.is_empty()
