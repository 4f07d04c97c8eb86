"""
Deep comparison of two Visual DNA fingerprints.

Combines up to seven independent similarity dimensions into one
confidence percentage:

    hash     perceptual hash blend, chance-corrected
    color    HSV histogram chi-square plus shared colour names
    shape    Laplacian signature, aspect ratio and edge density
    ocr      identifier near-match or word overlap
    visual   neural embedding cosine plus pattern agreement
    object   zero-shot label overlap
    dna      fingerprint-only composite (hashes, colour, edges, texture)

A dimension that cannot be computed for the pair (no text on either
side, no embeddings) is reported as None and dropped from the weighted
sum, with the remaining weights renormalized. Missing evidence never
counts as dissimilarity.

High-value overrides take precedence over the category weights: a very
strong DNA score or a near-exact licence plate / serial number match
switches to a fixed blend dominated by that signal.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .hashing import hash_similarity
from .histograms import compare_hsv_colors
from .models import MatchReason, VisualDNA
from .neural import cosine_similarity
from .shape_descriptors import compare_shapes
from .weights import (
    HAS_TEXT_LENGTH, THRESHOLDS, WeightVector, detect_if_pet,
    redistribute_for_asymmetric_ocr, significant_colors,
)

logger = logging.getLogger(__name__)

# Fingerprint-only DNA composite
DNA_COMPONENT_WEIGHTS = {
    "p_hash": 0.20,
    "d_hash": 0.10,
    "a_hash": 0.08,
    "block_hash": 0.12,
    "color": 0.25,
    "edge": 0.15,
    "texture": 0.10,
}
ENTITY_MISMATCH_FACTOR = 0.7
DNA_NEURAL_BLEND = (0.6, 0.4)

# Stage-3 hash blend
HASH_BLEND_WEIGHTS = {
    "p_hash": 0.40,
    "d_hash": 0.25,
    "a_hash": 0.20,
    "block_hash": 0.15,
}
# Unrelated images agree on about half their bits
HASH_CHANCE_LEVEL = float(os.environ.get("HASH_CHANCE_LEVEL", "50"))

COMMON_COLOR_BONUS = 10
NEUTRAL_OCR_SCORE = 50
PATTERN_BOOST_DIVISOR = 5
STRIPE_DIRECTION_BOOST = 5

# Overrides
DNA_PRIMARY_MIN = int(os.environ.get("DNA_PRIMARY_MIN", "85"))
DNA_BLEND_MIN = int(os.environ.get("DNA_BLEND_MIN", "70"))
DNA_BLEND_SHARE = 0.3
DNA_PRIMARY_WEIGHTS = {"dna": 0.50, "hash": 0.15, "color": 0.15, "shape": 0.10, "visual": 0.10}
IDENTIFIER_WEIGHTS = {"hash": 0.10, "color": 0.10, "shape": 0.05, "ocr": 0.55,
                      "visual": 0.10, "object": 0.10}

# Pet coat comparison
PET_STRONG_MATCH = 70
PET_WEAK_MATCH = 50
PET_STRONG_COLOR_BOOST = 15
PET_STRONG_VISUAL_BOOST = 10
PET_WEAK_COLOR_BOOST = 8

PET_COLOR_GROUPS = (
    frozenset(["brown", "tan", "chocolate", "fawn", "chestnut"]),
    frozenset(["black", "dark", "charcoal"]),
    frozenset(["white", "cream", "ivory", "off-white"]),
    frozenset(["gray", "grey", "silver", "ash"]),
    frozenset(["orange", "ginger", "red", "rust", "auburn"]),
    frozenset(["golden", "gold", "yellow", "buff", "honey"]),
    frozenset(["beige", "sand", "camel"]),
)

PATTERN_LABELS = {
    "solid": "Solid color pattern",
    "striped": "Striped pattern",
    "spotted": "Spotted/dotted pattern",
    "checkered": "Checkered pattern",
    "gradient": "Gradient pattern",
    "mixed": "Mixed pattern",
}

SCORE_DIMENSIONS = ("hash", "color", "shape", "ocr", "visual", "object", "dna")
# Score dimension -> WeightVector field
_WEIGHT_FIELDS = {
    "hash": "hash",
    "color": "color",
    "shape": "shape",
    "ocr": "ocr",
    "visual": "visual",
    "object": "objects",
}


@dataclass
class Comparison:
    """Result of compare_dna for one (source, target) pair."""
    overall: int
    scores: Dict[str, Optional[int]]
    match_type: str = "visual"
    reasons: List[MatchReason] = field(default_factory=list)
    matched_identifiers: Dict[str, List[str]] = field(default_factory=dict)
    details: Dict[str, Any] = field(default_factory=dict)
    weights: WeightVector = field(default_factory=WeightVector)
    asymmetric_ocr: bool = False
    high_value_match: bool = False


@dataclass(frozen=True)
class PetFeatures:
    coat_type: str
    primary_color: str
    secondary_color: Optional[str]
    marking_colors: Tuple[str, ...]
    has_spots: bool
    has_stripes: bool
    color_count: int


def _safe_similarity(hash_a: Optional[str], hash_b: Optional[str]) -> Optional[float]:
    try:
        return hash_similarity(hash_a, hash_b)
    except ValueError as e:
        # Fingerprints from different algorithm versions
        logger.debug(f"Skipping incomparable hashes: {e}")
        return None


def _weighted_mean(values: Dict[str, Optional[float]],
                   weights: Dict[str, float]) -> Optional[float]:
    """Weighted mean over the available values, None if none are."""
    total = 0.0
    mass = 0.0
    for name, weight in weights.items():
        value = values.get(name)
        if value is not None and weight > 0:
            total += value * weight
            mass += weight
    if mass == 0:
        return None
    return total / mass


def hash_components(a: VisualDNA, b: VisualDNA) -> Dict[str, Optional[float]]:
    return {
        "p_hash": _safe_similarity(a.hashes.p_hash, b.hashes.p_hash),
        "d_hash": _safe_similarity(a.hashes.d_hash, b.hashes.d_hash),
        "a_hash": _safe_similarity(a.hashes.a_hash, b.hashes.a_hash),
        "block_hash": _safe_similarity(a.hashes.block_hash, b.hashes.block_hash),
    }


def compare_dna_fingerprints(a: VisualDNA, b: VisualDNA) -> Dict[str, Any]:
    """
    Fingerprint-only DNA comparison.

    Weighted average of the available hash, colour, edge and texture
    similarities, penalised when both entity types are known and differ,
    then blended with the neural embedding cosine when both sides have
    one.

    Returns:
        Dict with per-component scores, 'fingerprint' (pre-neural),
        'neural' (or None) and 'overall' (int, or None when nothing was
        comparable).
    """
    components: Dict[str, Optional[float]] = hash_components(a, b)
    components["color"] = compare_hsv_colors(a.color, b.color)
    components["edge"] = _safe_similarity(a.edges.edge_hash if a.edges else None,
                                          b.edges.edge_hash if b.edges else None)
    components["texture"] = _safe_similarity(a.texture.texture_hash if a.texture else None,
                                             b.texture.texture_hash if b.texture else None)

    result: Dict[str, Any] = {k: (round(v) if v is not None else None)
                              for k, v in components.items()}
    entity_match = a.entity_type == b.entity_type
    result["entity_match"] = entity_match

    fingerprint = _weighted_mean(components, DNA_COMPONENT_WEIGHTS)
    if fingerprint is None:
        result.update(fingerprint=None, neural=None, overall=None)
        return result

    if not entity_match and "unknown" not in (a.entity_type, b.entity_type):
        fingerprint *= ENTITY_MISMATCH_FACTOR
    result["fingerprint"] = int(round(fingerprint))

    neural = None
    overall = fingerprint
    if a.neural is not None and b.neural is not None:
        neural = max(0.0, cosine_similarity(a.neural.embedding, b.neural.embedding)) * 100
        overall = fingerprint * DNA_NEURAL_BLEND[0] + neural * DNA_NEURAL_BLEND[1]
        result["neural"] = int(round(neural))
    else:
        result["neural"] = None

    result["overall"] = int(round(overall))
    return result


def hash_score(components: Dict[str, Optional[float]]) -> Optional[int]:
    """Blend of the four hash similarities, rescaled so chance agreement is 0."""
    blended = _weighted_mean(components, HASH_BLEND_WEIGHTS)
    if blended is None:
        return None
    corrected = (blended - HASH_CHANCE_LEVEL) / (100 - HASH_CHANCE_LEVEL) * 100
    return int(round(max(0.0, min(100.0, corrected))))


# ---------------------------------------------------------------------------
# Identifier and text similarity
# ---------------------------------------------------------------------------

def levenshtein(a: str, b: str) -> int:
    """Edit distance with unit insert/delete/substitute costs."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def normalize_identifier(value: str) -> str:
    return "".join(ch for ch in value.upper() if ch.isascii() and ch.isalnum())


def string_similarity(a: str, b: str) -> int:
    """Normalized Levenshtein similarity in [0, 100]; 0 if either is empty."""
    if not a or not b:
        return 0
    if a == b:
        return 100
    longest = max(len(a), len(b))
    return int(round((longest - levenshtein(a, b)) / longest * 100))


def find_best_match(sources: Sequence[str],
                    targets: Sequence[str]) -> Tuple[Optional[str], Optional[str], int]:
    """
    Most similar (source, target) identifier pair after normalization.

    Returns:
        (source, target, similarity); (None, None, 0) when nothing matches.
    """
    best: Tuple[Optional[str], Optional[str], int] = (None, None, 0)
    for source in sources:
        for target in targets:
            similarity = string_similarity(normalize_identifier(source),
                                           normalize_identifier(target))
            if similarity > best[2]:
                best = (source, target, similarity)
    return best


def _jaccard(a: set, b: set) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def text_similarity(text_a: Optional[str], text_b: Optional[str]) -> float:
    """Jaccard overlap of lower-cased words longer than two characters, 0-1."""
    if not text_a or not text_b:
        return 0.0
    words_a = {w for w in text_a.lower().split() if len(w) > 2}
    words_b = {w for w in text_b.lower().split() if len(w) > 2}
    return _jaccard(words_a, words_b)


def object_similarity(labels_a: Sequence[str], labels_b: Sequence[str]) -> float:
    """Jaccard overlap of detected label names, 0-1."""
    return _jaccard({l.lower() for l in labels_a if l}, {l.lower() for l in labels_b if l})


# ---------------------------------------------------------------------------
# Pets
# ---------------------------------------------------------------------------

def extract_pet_features(dna: VisualDNA) -> PetFeatures:
    colors = significant_colors(dna)
    pattern = dna.pattern.pattern_type if dna.pattern else None

    if pattern == "solid":
        coat = "solid"
    elif pattern == "spotted":
        coat = "spotted"
    elif pattern == "striped":
        coat = "tabby"
    elif len(colors) >= 3:
        coat = "tricolor"
    elif len(colors) == 2:
        coat = "bicolor"
    else:
        coat = "unknown"

    return PetFeatures(
        coat_type=coat,
        primary_color=colors[0] if colors else "unknown",
        secondary_color=colors[1] if len(colors) > 1 else None,
        marking_colors=tuple(colors[2:]),
        has_spots=pattern == "spotted",
        has_stripes=pattern == "striped",
        color_count=len(colors),
    )


def colors_similar(color_a: str, color_b: str) -> bool:
    """True if both colour names fall in the same pet coat colour family."""
    a, b = color_a.lower(), color_b.lower()
    return any(a in group and b in group for group in PET_COLOR_GROUPS)


def compare_pet_features(a: PetFeatures, b: PetFeatures) -> int:
    """Coat type, primary/secondary colour and marking agreement, 0-100."""
    score = 0
    if a.coat_type == b.coat_type and a.coat_type != "unknown":
        score += 30
    elif {a.coat_type, b.coat_type} == {"bicolor", "tricolor"}:
        score += 15

    if a.primary_color.lower() == b.primary_color.lower():
        score += 35
    elif colors_similar(a.primary_color, b.primary_color):
        score += 20

    if a.secondary_color and b.secondary_color:
        if a.secondary_color.lower() == b.secondary_color.lower():
            score += 20
        elif colors_similar(a.secondary_color, b.secondary_color):
            score += 10
    elif not a.secondary_color and not b.secondary_color:
        score += 15

    if a.has_spots == b.has_spots and a.has_stripes == b.has_stripes:
        score += 15

    return score


def _pet_description(features: PetFeatures) -> str:
    parts = []
    if features.primary_color != "unknown":
        parts.append(features.primary_color)
    if features.coat_type != "unknown":
        parts.append(features.coat_type)
    return " ".join(parts) or "similar appearance"


# ---------------------------------------------------------------------------
# Full comparison
# ---------------------------------------------------------------------------

def _has_text(dna: VisualDNA) -> bool:
    return len(dna.ocr.usable_text) > HAS_TEXT_LENGTH


def _cap(value: float) -> int:
    return int(round(max(0.0, min(100.0, value))))


def weighted_score(scores: Dict[str, Optional[int]], weights: WeightVector) -> Optional[float]:
    """Sum of score x weight over available dimensions, renormalized by their weight mass."""
    return _weighted_mean(
        {name: scores.get(name) for name in _WEIGHT_FIELDS},
        {name: getattr(weights, attr) for name, attr in _WEIGHT_FIELDS.items()},
    )


def compare_dna(a: VisualDNA, b: VisualDNA,
                weights: Optional[WeightVector] = None,
                thresholds: Optional[Dict[str, float]] = None) -> Comparison:
    """
    Deep comparison of a source fingerprint against a target.

    Args:
        a: Source fingerprint (the new photo).
        b: Target fingerprint (a candidate from the opposite case type).
        weights: Category weights for the source; defaults to the
            "other" table normalized.
        thresholds: Optional threshold overrides (see weights.THRESHOLDS).

    Returns:
        Comparison with overall score, per-dimension scores (None for
        unavailable dimensions), match type, reasons and details.
    """
    weights = (weights or WeightVector()).normalized()
    limits = {**THRESHOLDS, **(thresholds or {})}

    scores: Dict[str, Optional[int]] = {name: None for name in SCORE_DIMENSIONS}
    details: Dict[str, Any] = {}
    matched: Dict[str, List[str]] = {}
    match_type = "visual"
    high_value = False

    # DNA composite
    dna = compare_dna_fingerprints(a, b)
    details["dna_comparison"] = dna
    scores["dna"] = dna["overall"]
    if scores["dna"] is not None and scores["dna"] >= DNA_PRIMARY_MIN:
        match_type = "image_dna"

    # Hashes
    scores["hash"] = hash_score(hash_components(a, b))

    # Colour
    color = compare_hsv_colors(a.color, b.color)
    if color is not None:
        common = [c for c in a.color_names if c in b.color_names]
        if common:
            matched["colors"] = common
        scores["color"] = _cap(color + len(common) * COMMON_COLOR_BONUS)

    # Shape
    shape = compare_shapes(a.shape, b.shape)
    if shape is not None:
        scores["shape"] = _cap(shape * 100)

    # Identifiers, then free text
    ids_a, ids_b = a.ocr.identifiers, b.ocr.identifiers
    if ids_a.license_plates and ids_b.license_plates:
        source, target, similarity = find_best_match(ids_a.license_plates, ids_b.license_plates)
        if similarity >= limits["LICENSE_PLATE_EXACT"]:
            scores["ocr"] = 100
            matched["license_plates"] = [source, target]
            details["license_plate_similarity"] = similarity
            match_type = "license_plate"
            high_value = True

    if ids_a.serial_numbers and ids_b.serial_numbers:
        source, target, similarity = find_best_match(ids_a.serial_numbers, ids_b.serial_numbers)
        if similarity >= limits["SERIAL_NUMBER_EXACT"]:
            scores["ocr"] = 100
            matched["serial_numbers"] = [source, target]
            details["serial_number_similarity"] = similarity
            match_type = "combined" if high_value else "serial_number"
            high_value = True

    text_a, text_b = a.ocr.usable_text, b.ocr.usable_text
    if not high_value and text_a and text_b:
        scores["ocr"] = _cap(text_similarity(text_a, text_b) * 100)
        if scores["ocr"] >= limits["OCR_SIMILARITY_MIN"]:
            match_type = "text"

    asymmetric = _has_text(a) != _has_text(b)
    if asymmetric:
        weights = redistribute_for_asymmetric_ocr(weights)
        scores["ocr"] = max(scores["ocr"] or 0, NEUTRAL_OCR_SCORE)
        details["asymmetric_ocr"] = {"source_has_text": _has_text(a),
                                     "target_has_text": _has_text(b)}
        logger.debug("Asymmetric OCR detected, redistributed weights to visual features")

    # Labels
    if a.labels and b.labels:
        scores["object"] = _cap(object_similarity(a.labels, b.labels) * 100)

    # Embeddings and pattern agreement
    pattern_boost = 0.0
    pa, pb = a.pattern, b.pattern
    if pa is not None and pb is not None and pa.pattern_type == pb.pattern_type:
        pattern_boost = min(pa.confidence, pb.confidence) / PATTERN_BOOST_DIVISOR
        if pa.pattern_type == "striped" and pa.direction == pb.direction:
            pattern_boost += STRIPE_DIRECTION_BOOST

    if a.neural is not None and b.neural is not None:
        visual = max(0.0, cosine_similarity(a.neural.embedding, b.neural.embedding)) * 100
        scores["visual"] = _cap(visual + pattern_boost)
    elif pattern_boost and scores["dna"] is not None:
        # No embeddings: the shared pattern lifts the texture-bearing DNA score
        scores["dna"] = _cap(scores["dna"] + pattern_boost)
        details["pattern_boost"] = round(pattern_boost, 1)

    if a.pattern is not None and b.pattern is not None:
        details["pattern_match"] = {
            "match": a.pattern.pattern_type == b.pattern.pattern_type,
            "source_type": a.pattern.pattern_type,
            "target_type": b.pattern.pattern_type,
            "confidence": min(a.pattern.confidence, b.pattern.confidence),
        }

    # Pets
    if detect_if_pet(a) and detect_if_pet(b):
        pet_a, pet_b = extract_pet_features(a), extract_pet_features(b)
        pet = compare_pet_features(pet_a, pet_b)
        details["pet_match"] = {"score": pet, "description": _pet_description(pet_a)}
        if pet >= PET_STRONG_MATCH:
            if scores["color"] is not None:
                scores["color"] = _cap(scores["color"] + PET_STRONG_COLOR_BOOST)
            if scores["visual"] is not None:
                scores["visual"] = _cap(scores["visual"] + PET_STRONG_VISUAL_BOOST)
            if not high_value:
                match_type = "pet"
        elif pet >= PET_WEAK_MATCH and scores["color"] is not None:
            scores["color"] = _cap(scores["color"] + PET_WEAK_COLOR_BOOST)

    # Overall
    weighted = weighted_score(scores, weights)
    dna_score = scores["dna"]
    if dna_score is not None and dna_score >= DNA_PRIMARY_MIN:
        overall = _weighted_mean(scores, DNA_PRIMARY_WEIGHTS)
        if not high_value:
            match_type = "image_dna"
        details["blend"] = "dna_primary"
    elif high_value:
        overall = _weighted_mean(scores, IDENTIFIER_WEIGHTS)
        details["blend"] = "identifier"
    elif dna_score is not None and dna_score >= DNA_BLEND_MIN:
        overall = dna_score * DNA_BLEND_SHARE + (weighted or 0.0) * (1 - DNA_BLEND_SHARE)
        details["blend"] = "dna_weighted"
    else:
        overall = weighted
        details["blend"] = "weighted"

    if not high_value and match_type != "image_dna":
        match_type = _fallback_match_type(scores, match_type)

    comparison = Comparison(
        overall=_cap(overall or 0.0),
        scores=scores,
        match_type=match_type,
        matched_identifiers=matched,
        details=details,
        weights=weights,
        asymmetric_ocr=asymmetric,
        high_value_match=high_value,
    )
    comparison.reasons = build_match_reasons(comparison)
    return comparison


def _fallback_match_type(scores: Dict[str, Optional[int]], current: str) -> str:
    hash_, color = scores["hash"] or 0, scores["color"] or 0
    if color >= 70 and hash_ >= 60:
        return "visual"
    if (scores["shape"] or 0) >= 75:
        return "shape"
    if color >= 80:
        return "color"
    if (scores["visual"] or 0) >= 70:
        return "visual"
    return current


def build_match_reasons(comparison: Comparison) -> List[MatchReason]:
    """Human-readable reasons for a comparison, strongest first."""
    scores = comparison.scores
    matched = comparison.matched_identifiers
    details = comparison.details
    reasons: List[MatchReason] = []

    if (scores["dna"] or 0) >= DNA_BLEND_MIN:
        reasons.append(MatchReason(
            "image_dna", "🧬", f"Image DNA match ({scores['dna']}% fingerprint similarity)",
            scores["dna"]))

    if "license_plates" in matched:
        reasons.append(MatchReason(
            "license_plate", "🚗", f"License plate match: {matched['license_plates'][0]}",
            scores["ocr"]))

    if "serial_numbers" in matched:
        reasons.append(MatchReason(
            "serial_number", "🔢", f"Serial number match: {matched['serial_numbers'][0]}",
            scores["ocr"]))

    if (scores["color"] or 0) >= 60 and matched.get("colors"):
        reasons.append(MatchReason(
            "color", "🎨", f"Matching colors: {', '.join(matched['colors'][:3])}",
            scores["color"]))

    if (scores["shape"] or 0) >= 60:
        reasons.append(MatchReason(
            "shape", "📐", f"Similar shape/silhouette ({scores['shape']}% match)",
            scores["shape"]))

    pattern = details.get("pattern_match")
    if pattern and pattern["match"] and pattern["confidence"] > 0:
        label = PATTERN_LABELS.get(pattern["source_type"], "Similar pattern")
        reasons.append(MatchReason("pattern", "🔲", f"{label} match", pattern["confidence"]))

    pet = details.get("pet_match")
    if pet and pet["score"] >= PET_WEAK_MATCH:
        reasons.append(MatchReason(
            "pet", "🐾", f"Pet match: {pet['description']} ({pet['score']}% match)",
            pet["score"]))

    if (scores["hash"] or 0) >= 70:
        reasons.append(MatchReason(
            "visual", "👁️", f"Visually similar appearance ({scores['hash']}% match)",
            scores["hash"]))

    if (scores["ocr"] or 0) >= 50 and not comparison.high_value_match and not comparison.asymmetric_ocr:
        reasons.append(MatchReason("text", "📝", "Similar text content detected", scores["ocr"]))

    return sorted(reasons, key=lambda r: -r.score)


def rank_results(comparisons: list) -> list:
    """
    Sort (target, Comparison) pairs by overall score (primary), DNA
    score (secondary) and hash score (tertiary tiebreaker).
    """
    return sorted(
        comparisons,
        key=lambda x: (-x[1].overall, -(x[1].scores["dna"] or 0), -(x[1].scores["hash"] or 0))
    )
