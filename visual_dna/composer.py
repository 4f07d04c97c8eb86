"""
Visual DNA composition.

Runs every fingerprint extractor over one decoded photo and assembles
the VisualDNA record. Extractors are independent pure functions, so
they run concurrently on a thread pool (numpy and OpenCV release the
GIL for the heavy lifting). A failing extractor is logged and its
feature stored as None; it never cancels the others.

The human-readable DNA id has the form

    ENTITY-COLORS-SHAPE-NEURALHASH-HASHPREFIX-Q{quality}
    e.g. PET-BRN.ORG-VERT-7f3ac9d1-c3e1f0a8-Q85

and the machine hash is a sha256 prefix over the hash, colour, edge and
texture components for exact-duplicate detection.
"""

import os
import json
import time
import hashlib
import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import replace
from typing import Any, Callable, Dict, Optional

import numpy as np

from .exceptions import ImageDecodeError
from .hashing import compute_all_hashes
from .histograms import extract_color_fingerprint
from .identifiers import OcrEngine, analyze_ocr, run_ocr_passes
from .models import (
    ALGORITHM_VERSION, STATUS_COMPLETED, STATUS_FAILED, STATUS_PARTIAL,
    OcrResult, PerceptualHashes, VisualDNA,
)
from .neural import NeuralEmbeddingProvider
from .preprocessing import decode_image
from .quality import analyze_blur, calculate_quality_score
from .shape_descriptors import extract_edge_fingerprint, extract_shape_fingerprint, shape_code
from .texture import detect_pattern, extract_texture_fingerprint

logger = logging.getLogger(__name__)

# Neural entity predictions below this confidence fall back to heuristics
NEURAL_ENTITY_MIN_CONFIDENCE = float(os.environ.get("NEURAL_ENTITY_MIN_CONFIDENCE", "0.3"))
HEURISTIC_ENTITY_CONFIDENCE = 0.5
DOCUMENT_TEXT_LENGTH = 100
DOCUMENT_TEXT_CONFIDENCE = 60

EXTRACTOR_WORKERS = int(os.environ.get("EXTRACTOR_WORKERS", "8"))

ENTITY_CODES = {
    "pet": "PET",
    "person": "PER",
    "vehicle": "VEH",
    "document": "DOC",
    "item": "ITM",
    "unknown": "UNK",
}


def _extract_hashes(image_np: np.ndarray) -> PerceptualHashes:
    hashes = compute_all_hashes(image_np)
    if not hashes.available():
        raise RuntimeError("every perceptual hash failed")
    return hashes


def infer_entity_type(ocr: OcrResult) -> str:
    """Fallback entity type from OCR evidence when no neural label is trusted."""
    ids = ocr.identifiers
    if ids.license_plates:
        return "vehicle"
    if ids.document_ids or (len(ocr.usable_text) > DOCUMENT_TEXT_LENGTH
                            and ocr.confidence > DOCUMENT_TEXT_CONFIDENCE):
        return "document"
    return "item"


def build_dna_id(entity_type: str, color_code: Optional[str], aspect_ratio: Optional[float],
                 embedding_hash: Optional[str], p_hash: Optional[str],
                 quality: Optional[int]) -> str:
    """Assemble the human-readable DNA id."""
    return "-".join([
        ENTITY_CODES.get(entity_type, "UNK"),
        color_code or "UNK",
        shape_code(aspect_ratio),
        (embedding_hash or "noml0000")[:8],
        (p_hash or "00000000")[:8],
        f"Q{50 if quality is None else quality}",
    ])


def build_machine_hash(dna: VisualDNA) -> str:
    """sha256 prefix over the exact-match components of a fingerprint."""
    payload = json.dumps({
        "p": dna.hashes.p_hash,
        "d": dna.hashes.d_hash,
        "a": dna.hashes.a_hash,
        "c": dna.color.signature if dna.color else None,
        "e": dna.edges.edge_hash if dna.edges else None,
        "t": dna.texture.texture_hash if dna.texture else None,
    }, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:32]


def needs_reprocessing(dna: Optional[VisualDNA]) -> bool:
    """True when a stored fingerprint is missing, unusable or outdated."""
    return (dna is None or not dna.is_matchable
            or dna.algorithm_version != ALGORITHM_VERSION)


def extract_fingerprint(image_bytes: bytes,
                        photo_id: Optional[str] = None,
                        case_id: Optional[str] = None,
                        ocr_engine: Optional[OcrEngine] = None,
                        neural_provider: Optional[NeuralEmbeddingProvider] = None,
                        executor: Optional[Executor] = None) -> VisualDNA:
    """
    Extract the full Visual DNA of one photo.

    Args:
        image_bytes: Encoded image file contents.
        photo_id: Id of the photo record.
        case_id: Id of the owning case.
        ocr_engine: Optional OCR engine; OCR is skipped without one.
        neural_provider: Optional neural provider; neural features are
            skipped without one.
        executor: Optional executor to run extractors on. A private
            thread pool is used (and shut down) when omitted.

    Returns:
        VisualDNA with status completed, partial (some extractors
        failed) or failed (undecodable image or every extractor failed).
    """
    start = time.monotonic()

    try:
        image_np = decode_image(image_bytes)
    except ImageDecodeError as e:
        logger.error(f"Fingerprint extraction failed for photo {photo_id}: {e}")
        return VisualDNA(photo_id=photo_id, case_id=case_id, status=STATUS_FAILED,
                         error=str(e), processing_time_ms=_elapsed_ms(start))

    height, width = image_np.shape[:2]

    tasks: Dict[str, Callable[[], Any]] = {
        "hashes": lambda: _extract_hashes(image_np),
        "color": lambda: extract_color_fingerprint(image_np),
        "shape": lambda: extract_shape_fingerprint(image_np),
        "edges": lambda: extract_edge_fingerprint(image_np),
        "texture": lambda: extract_texture_fingerprint(image_np),
        "pattern": lambda: detect_pattern(image_np),
        "blur": lambda: analyze_blur(image_np),
    }
    if ocr_engine is not None:
        tasks["ocr"] = lambda: analyze_ocr(run_ocr_passes(ocr_engine, image_np))
    if neural_provider is not None:
        tasks["neural"] = lambda: neural_provider.fingerprint(image_np)

    own_executor = executor is None
    if own_executor:
        executor = ThreadPoolExecutor(max_workers=min(EXTRACTOR_WORKERS, len(tasks)))

    results: Dict[str, Any] = {}
    failed = []
    try:
        futures = {name: executor.submit(fn) for name, fn in tasks.items()}
        for name, future in futures.items():
            try:
                results[name] = future.result()
            except Exception as e:
                logger.warning(f"{name} extraction failed for photo {photo_id}: {e}")
                results[name] = None
                failed.append(name)
    finally:
        if own_executor:
            executor.shutdown(wait=True)

    if len(failed) == len(tasks):
        logger.error(f"Every extractor failed for photo {photo_id}")
        return VisualDNA(photo_id=photo_id, case_id=case_id, width=width, height=height,
                         status=STATUS_FAILED, error="All feature extractors failed",
                         processing_time_ms=_elapsed_ms(start))

    edges = results["edges"]
    blur = results["blur"]
    quality = None
    if blur is not None:
        quality = calculate_quality_score(
            blur, width, height, edges.edge_density if edges else None)

    ocr: OcrResult = results.get("ocr") or OcrResult()
    neural = results.get("neural")

    if (neural is not None and neural.entity_type != "unknown"
            and neural.entity_confidence >= NEURAL_ENTITY_MIN_CONFIDENCE):
        entity_type, entity_confidence = neural.entity_type, neural.entity_confidence
    else:
        entity_type, entity_confidence = infer_entity_type(ocr), HEURISTIC_ENTITY_CONFIDENCE

    hashes = results["hashes"] or PerceptualHashes()
    color = results["color"]
    shape = results["shape"]

    dna = VisualDNA(
        photo_id=photo_id,
        case_id=case_id,
        entity_type=entity_type,
        entity_confidence=entity_confidence,
        hashes=hashes,
        color=color,
        shape=shape,
        edges=edges,
        texture=results["texture"],
        pattern=results["pattern"],
        blur=blur,
        quality=quality,
        ocr=ocr,
        neural=neural,
        width=width,
        height=height,
        status=STATUS_PARTIAL if failed else STATUS_COMPLETED,
        error=f"Failed extractors: {', '.join(failed)}" if failed else None,
    )
    dna = replace(
        dna,
        dna_id=build_dna_id(
            entity_type,
            color.color_code if color else None,
            shape.aspect_ratio if shape else width / height,
            neural.embedding_hash if neural else None,
            hashes.p_hash,
            quality.overall if quality else None,
        ),
        machine_hash=build_machine_hash(dna),
        processing_time_ms=_elapsed_ms(start),
    )

    logger.info(
        f"Visual DNA {dna.dna_id} extracted for photo {photo_id} "
        f"({dna.status}, {dna.processing_time_ms}ms)"
    )
    return dna


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def reprocess_outdated(store, load_image: Callable[[str], bytes], **extract_kwargs) -> dict:
    """
    Recompute fingerprints produced by an older algorithm version.

    Args:
        store: DNAStore providing list_outdated and save_dna.
        load_image: Callable returning the image bytes for a photo id.
        **extract_kwargs: Forwarded to extract_fingerprint.

    Returns:
        Dict with 'processed' and 'errors' counts.
    """
    processed = 0
    errors = 0
    for old in store.list_outdated(ALGORITHM_VERSION):
        try:
            dna = extract_fingerprint(load_image(old.photo_id), photo_id=old.photo_id,
                                      case_id=old.case_id, **extract_kwargs)
            store.save_dna(dna)
            processed += 1
        except Exception as e:
            logger.warning(f"Reprocessing failed for photo {old.photo_id}: {e}")
            errors += 1

    logger.info(f"Reprocessed {processed} fingerprints, {errors} errors")
    return {"processed": processed, "errors": errors}
