"""Tests for Visual DNA composition from encoded photos."""

from dataclasses import replace

import pytest

from conftest import FakeNeuralBackend, FakeOcrEngine, encode_png
from visual_dna import composer
from visual_dna.composer import (
    build_dna_id, extract_fingerprint, infer_entity_type, needs_reprocessing,
    reprocess_outdated,
)
from visual_dna.models import (
    ALGORITHM_VERSION, STATUS_COMPLETED, STATUS_FAILED, STATUS_PARTIAL,
    CaseInfo, Identifiers, OcrResult,
)
from visual_dna.neural import ENTITY_LABELS, NeuralEmbeddingProvider
from visual_dna.storage import InMemoryStore


class TestExtractFingerprint:
    """Tests for the full extraction pipeline."""

    def test_completed_record(self, red_square_image):
        dna = extract_fingerprint(encode_png(red_square_image), photo_id="p1", case_id="c1")
        assert dna.status == STATUS_COMPLETED
        assert dna.photo_id == "p1"
        assert dna.case_id == "c1"
        assert (dna.width, dna.height) == (200, 200)
        assert len(dna.hashes.available()) == 4
        assert dna.color is not None
        assert dna.shape is not None
        assert dna.edges is not None
        assert dna.texture is not None
        assert dna.pattern is not None
        assert dna.quality is not None
        assert dna.neural is None
        assert dna.algorithm_version == ALGORITHM_VERSION

    def test_dna_id_format(self, red_square_image):
        dna = extract_fingerprint(encode_png(red_square_image))
        parts = dna.dna_id.split("-")
        assert len(parts) == 6
        assert parts[0] == "ITM"
        assert parts[2] == "SQR"
        assert parts[3] == "noml0000"
        assert parts[4] == dna.hashes.p_hash[:8]
        assert parts[5] == f"Q{dna.quality.overall}"

    def test_machine_hash_stable(self, blue_circle_image):
        a = extract_fingerprint(encode_png(blue_circle_image))
        b = extract_fingerprint(encode_png(blue_circle_image))
        assert a.machine_hash == b.machine_hash
        assert len(a.machine_hash) == 32

    def test_undecodable_bytes(self):
        dna = extract_fingerprint(b"definitely not an image", photo_id="bad")
        assert dna.status == STATUS_FAILED
        assert dna.error
        assert not dna.is_matchable

    def test_empty_bytes(self):
        assert extract_fingerprint(b"").status == STATUS_FAILED

    def test_failing_extractor_gives_partial(self, red_square_image, monkeypatch):
        def boom(image_np):
            raise RuntimeError("pattern exploded")

        monkeypatch.setattr(composer, "detect_pattern", boom)
        dna = extract_fingerprint(encode_png(red_square_image))
        assert dna.status == STATUS_PARTIAL
        assert dna.pattern is None
        assert "pattern" in dna.error
        assert dna.color is not None

    def test_ocr_plate_makes_vehicle(self, red_square_image):
        engine = FakeOcrEngine("Plate ABC 1234 seen near the park", confidence=80)
        dna = extract_fingerprint(encode_png(red_square_image), ocr_engine=engine)
        assert dna.entity_type == "vehicle"
        assert "ABC 1234" in dna.ocr.identifiers.license_plates
        assert dna.dna_id.startswith("VEH-")

    def test_garbage_ocr_is_dropped(self, red_square_image):
        engine = FakeOcrEngine("LAR Eg RE A ET a pe", confidence=80)
        dna = extract_fingerprint(encode_png(red_square_image), ocr_engine=engine)
        assert dna.ocr.text is None
        assert dna.ocr.is_garbage

    def test_confident_neural_entity_used(self, red_square_image):
        provider = NeuralEmbeddingProvider(loader=FakeNeuralBackend, enabled=True)
        dna = extract_fingerprint(encode_png(red_square_image), neural_provider=provider)
        assert dna.entity_type == "item"
        assert dna.entity_confidence == pytest.approx(0.82)
        assert dna.labels == ("wallet",)
        assert dna.dna_id.split("-")[3] == dna.neural.embedding_hash

    def test_unsure_neural_entity_falls_back(self, red_square_image):
        scores = [0.1] * len(ENTITY_LABELS)
        backend = FakeNeuralBackend(scores=scores)
        provider = NeuralEmbeddingProvider(loader=lambda: backend, enabled=True)
        dna = extract_fingerprint(encode_png(red_square_image), neural_provider=provider)
        assert dna.neural.entity_type == "pet"
        assert dna.entity_type == "item"
        assert dna.entity_confidence == 0.5


class TestHelpers:
    """Tests for id building and entity fallback."""

    def test_dna_id_defaults(self):
        assert build_dna_id("unknown", None, None, None, None, None) == "UNK-UNK-SQR-noml0000-00000000-Q50"

    def test_dna_id_unknown_entity_code(self):
        assert build_dna_id("alien", "RED", 2.0, "abcdef1234", "0123456789abcdef", 90) == \
            "UNK-RED-HORZ-abcdef12-01234567-Q90"

    def test_infer_entity_type(self):
        plate = OcrResult(text="x", identifiers=Identifiers(license_plates=("ABC 1234",)))
        doc = OcrResult(text="x", identifiers=Identifiers(document_ids=("A1234567",)))
        assert infer_entity_type(plate) == "vehicle"
        assert infer_entity_type(doc) == "document"
        assert infer_entity_type(OcrResult()) == "item"

    def test_needs_reprocessing(self, red_square_image):
        dna = extract_fingerprint(encode_png(red_square_image))
        assert not needs_reprocessing(dna)
        assert needs_reprocessing(None)
        assert needs_reprocessing(replace(dna, algorithm_version="1.0.0"))
        assert needs_reprocessing(replace(dna, status=STATUS_FAILED))


class TestReprocessOutdated:
    """Tests for batch re-extraction of old fingerprints."""

    def test_outdated_records_replaced(self, red_square_image):
        image = encode_png(red_square_image)
        store = InMemoryStore()
        store.add_case(CaseInfo("c1", "lost_item"))
        old = replace(extract_fingerprint(image, photo_id="p1", case_id="c1"),
                      algorithm_version="1.0.0")
        store.save_dna(old)

        stats = reprocess_outdated(store, lambda photo_id: image)
        assert stats == {"processed": 1, "errors": 0}
        assert store.get_dna("p1").algorithm_version == ALGORITHM_VERSION

    def test_loader_errors_counted(self, red_square_image):
        store = InMemoryStore()
        old = replace(extract_fingerprint(encode_png(red_square_image), photo_id="p1"),
                      algorithm_version="1.0.0")
        store.save_dna(old)

        def missing(photo_id):
            raise FileNotFoundError(photo_id)

        assert reprocess_outdated(store, missing) == {"processed": 0, "errors": 1}
