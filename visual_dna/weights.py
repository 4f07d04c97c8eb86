"""
Category-aware, feature-adaptive match weights.

Different things are recognised by different evidence: a dog by its
coat colours, a passport by its text, a key by its silhouette. Each
item category starts from its own weight table over six similarity
dimensions (hash, color, shape, ocr, visual, objects), which is then
adapted to what the source photo actually contains:

    - no text and no identifiers: OCR weight moves to visual dimensions
    - looks like a pet: colour boosted, shape reduced
    - document with strong text: OCR boosted
    - single solid colour: shape boosted

All weight functions are pure and return new WeightVector instances
summing to 1.0. Category auto-detection is likewise a pure scoring
function over fingerprint features.
"""

import os
import logging
from dataclasses import dataclass, fields, replace
from typing import Dict, List, Mapping, Optional, Tuple

from .models import VisualDNA

logger = logging.getLogger(__name__)

DIMENSIONS = ("hash", "color", "shape", "ocr", "visual", "objects")

# Config tables may use the upper-case dimension names
_ALIASES = {
    "HASH": "hash",
    "COLOR": "color",
    "SHAPE": "shape",
    "OCR": "ocr",
    "VISUAL_FEATURES": "visual",
    "DETECTED_OBJECTS": "objects",
}


@dataclass(frozen=True)
class WeightVector:
    """Per-dimension weights. Instances are never mutated."""
    hash: float = 0.15
    color: float = 0.20
    shape: float = 0.15
    ocr: float = 0.15
    visual: float = 0.20
    objects: float = 0.15

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, float]) -> "WeightVector":
        values = {}
        for key, value in mapping.items():
            name = _ALIASES.get(key, key)
            if name in DIMENSIONS:
                values[name] = float(value)
        return cls(**values)

    def total(self) -> float:
        return sum(getattr(self, f.name) for f in fields(self))

    def normalized(self) -> "WeightVector":
        total = self.total()
        if total <= 0:
            share = 1.0 / len(DIMENSIONS)
            return WeightVector(**{name: share for name in DIMENSIONS})
        return WeightVector(**{f.name: max(0.0, getattr(self, f.name)) / total
                               for f in fields(self)})

    def as_dict(self) -> Dict[str, float]:
        return {f.name: round(getattr(self, f.name), 4) for f in fields(self)}


CATEGORY_WEIGHTS: Dict[str, WeightVector] = {
    "pet":         WeightVector(hash=0.15, color=0.30, shape=0.10, visual=0.25, objects=0.15, ocr=0.05),
    "jewelry":     WeightVector(hash=0.15, color=0.25, shape=0.25, visual=0.20, objects=0.05, ocr=0.10),
    "keys":        WeightVector(hash=0.15, color=0.15, shape=0.35, visual=0.20, objects=0.10, ocr=0.05),
    "bags":        WeightVector(hash=0.15, color=0.30, shape=0.20, visual=0.20, objects=0.10, ocr=0.05),
    "electronics": WeightVector(hash=0.15, color=0.15, shape=0.10, visual=0.15, objects=0.10, ocr=0.35),
    "documents":   WeightVector(hash=0.10, color=0.05, shape=0.05, visual=0.10, objects=0.10, ocr=0.60),
    "vehicle":     WeightVector(hash=0.10, color=0.20, shape=0.10, visual=0.15, objects=0.05, ocr=0.40),
    "wallet":      WeightVector(hash=0.15, color=0.25, shape=0.10, visual=0.20, objects=0.10, ocr=0.20),
    "books":       WeightVector(hash=0.10, color=0.30, shape=0.05, visual=0.15, objects=0.10, ocr=0.30),
    "other":       WeightVector(hash=0.15, color=0.20, shape=0.15, visual=0.20, objects=0.15, ocr=0.15),
}

THRESHOLDS: Dict[str, int] = {
    "HASH_SIMILARITY_MIN": 40,
    "COLOR_SIMILARITY_MIN": 35,
    "VISUAL_SIMILARITY_MIN": 35,
    "OCR_SIMILARITY_MIN": 40,
    "OBJECT_SIMILARITY_MIN": 30,
    "LICENSE_PLATE_EXACT": 85,
    "SERIAL_NUMBER_EXACT": 90,
    "OVERALL_MATCH_MIN": int(os.environ.get("OVERALL_MATCH_MIN", "30")),
    "HIGH_CONFIDENCE": 65,
    "VERY_HIGH_CONFIDENCE": 85,
}

# None means "any category" / "any entity"
CATEGORY_COMPATIBILITY: Dict[str, Optional[Tuple[str, ...]]] = {
    "pet": ("pet",),
    "jewelry": ("jewelry", "other"),
    "electronics": ("electronics", "other"),
    "documents": ("documents", "other"),
    "vehicle": ("vehicle",),
    "other": None,
}

ENTITY_COMPATIBILITY: Dict[str, Optional[Tuple[str, ...]]] = {
    "person": ("person", "unknown"),
    "pet": ("pet", "unknown"),
    "item": ("item", "document", "unknown"),
    "vehicle": ("vehicle", "item", "unknown"),
    "document": ("document", "item", "unknown"),
    "unknown": None,
}

# Text thresholds (characters)
HAS_TEXT_LENGTH = 20
STRONG_TEXT_LENGTH = 50
STRONG_TEXT_CONFIDENCE = 50
DISTINCTIVE_EDGE_DENSITY = 0.2
# Colours covering less of the frame are noise for feature analysis
SIGNIFICANT_COLOR_PERCENT = int(os.environ.get("SIGNIFICANT_COLOR_PERCENT", "10"))

PET_COLORS = frozenset([
    "brown", "black", "white", "orange", "gray", "golden", "tan",
    "cream", "beige", "ginger", "chocolate", "fawn", "brindle",
    "silver", "red", "buff", "apricot",
])
PET_SCORE_MIN = 35

AUTO_PET_COLORS = frozenset([
    "brown", "tan", "beige", "cream", "golden", "black", "white", "gray", "orange", "ginger",
])
METALLIC_COLORS = frozenset(["silver", "gold", "rose gold", "metallic"])
DOCUMENT_KEYWORDS = ("passport", "license", "certificate", "id card", "visa", "permit")
ELECTRONICS_KEYWORDS = ("apple", "samsung", "iphone", "laptop", "phone", "tablet", "model", "sn:", "imei")
PET_KEYWORDS = ("dog", "cat", "puppy", "kitten", "collar", "pet")
AUTO_CATEGORY_MIN = 30

# Asymmetric OCR redistribution
ASYMMETRIC_OCR_WEIGHT = 0.05
NO_TEXT_OCR_WEIGHT = 0.02


@dataclass(frozen=True)
class AvailableFeatures:
    has_text: bool = False
    has_strong_text: bool = False
    has_identifiers: bool = False
    has_strong_colors: bool = False
    has_single_dominant_color: bool = False
    has_distinctive_shape: bool = False
    has_pattern: bool = False
    looks_like_pet: bool = False
    looks_like_document: bool = False
    looks_like_vehicle: bool = False
    color_confidence: int = 0
    shape_confidence: int = 0
    text_confidence: float = 0.0


@dataclass(frozen=True)
class CategoryDetection:
    category: str
    confidence: int
    scores: Dict[str, int]

    @property
    def accepted(self) -> bool:
        return self.confidence >= AUTO_CATEGORY_MIN


def significant_colors(dna: VisualDNA) -> List[str]:
    """Dominant colour names covering a meaningful share of the frame."""
    if dna.color is None:
        return []
    return [c.name for c in dna.color.dominant_colors
            if c.percentage >= SIGNIFICANT_COLOR_PERCENT]


def _edge_density(dna: VisualDNA) -> float:
    return dna.shape.edge_density if dna.shape else 0.0


def pet_score(dna: VisualDNA) -> int:
    """Heuristic 0-100ish score for how pet-like a photo is."""
    colors = significant_colors(dna)
    pet_colors = sum(1 for c in colors if c in PET_COLORS)

    score = 0
    if pet_colors >= 1:
        score += 15
    if pet_colors >= 2:
        score += 20
    if pet_colors >= 3:
        score += 10
    if len(colors) >= 2 and pet_colors >= 2:
        score += 15

    pattern = dna.pattern.pattern_type if dna.pattern else None
    if pattern == "spotted":
        score += 25
    elif pattern == "striped":
        score += 20
    elif pattern == "mixed":
        score += 15

    if 0.12 < _edge_density(dna) < 0.45:
        score += 15
    aspect = dna.aspect_ratio or 1.0
    if 0.6 < aspect < 1.8:
        score += 10
    return score


def detect_if_pet(dna: VisualDNA) -> bool:
    return pet_score(dna) >= PET_SCORE_MIN


def detect_if_document(dna: VisualDNA) -> bool:
    text = dna.ocr.usable_text
    aspect = dna.aspect_ratio or 1.0
    return len(text) > 50 and dna.ocr.confidence > 40 and abs(aspect - 1.5) < 0.5


def _color_confidence(dna: VisualDNA) -> int:
    confidence = 0
    colors = significant_colors(dna)
    if dna.color is not None and dna.color.signature:
        confidence += 40
    if len(colors) >= 2:
        confidence += 30
    if len(colors) >= 3:
        confidence += 10
    if dna.pattern is not None:
        confidence += 20
    return min(100, confidence)


def _shape_confidence(dna: VisualDNA) -> int:
    confidence = 0
    if dna.shape is not None and dna.shape.signature:
        confidence += 40
        if dna.shape.edge_density > 0.1:
            confidence += 20
        if dna.shape.aspect_ratio:
            confidence += 20
    if dna.edges is not None and (dna.edges.horizontal_edges + dna.edges.vertical_edges) > 10:
        confidence += 20
    return min(100, confidence)


def analyze_available_features(dna: VisualDNA) -> AvailableFeatures:
    """Summarize which kinds of evidence a fingerprint carries."""
    text = dna.ocr.usable_text
    ids = dna.ocr.identifiers
    colors = significant_colors(dna)
    pattern = dna.pattern.pattern_type if dna.pattern else None

    return AvailableFeatures(
        has_text=len(text) > HAS_TEXT_LENGTH,
        has_strong_text=len(text) > STRONG_TEXT_LENGTH and dna.ocr.confidence > STRONG_TEXT_CONFIDENCE,
        has_identifiers=ids.has_high_value,
        has_strong_colors=len(colors) >= 2,
        has_single_dominant_color=len(colors) == 1,
        has_distinctive_shape=_edge_density(dna) > DISTINCTIVE_EDGE_DENSITY,
        has_pattern=pattern is not None and pattern != "solid",
        looks_like_pet=detect_if_pet(dna),
        looks_like_document=detect_if_document(dna),
        looks_like_vehicle=bool(ids.license_plates),
        color_confidence=_color_confidence(dna),
        shape_confidence=_shape_confidence(dna),
        text_confidence=dna.ocr.confidence,
    )


def auto_detect_category(dna: VisualDNA) -> CategoryDetection:
    """
    Guess the item category from fingerprint features.

    Returns:
        CategoryDetection; ("other", 0) when no category scores at least
        AUTO_CATEGORY_MIN.
    """
    scores = {name: 0 for name in
              ("pet", "jewelry", "electronics", "documents", "vehicle",
               "keys", "bags", "wallet", "other")}
    ids = dna.ocr.identifiers
    text = dna.ocr.usable_text.lower()
    colors = significant_colors(dna)
    pattern = dna.pattern.pattern_type if dna.pattern else None
    density = _edge_density(dna)
    aspect = dna.aspect_ratio

    if ids.license_plates:
        scores["vehicle"] += 90
    if ids.document_ids:
        scores["documents"] += 80
    if len(text) > 100:
        scores["documents"] += 40
    if ids.serial_numbers:
        scores["electronics"] += 70

    if sum(1 for c in colors if c in AUTO_PET_COLORS) >= 2:
        scores["pet"] += 30
    if pattern in ("spotted", "striped"):
        scores["pet"] += 25
    if density and density < 0.15:
        scores["pet"] += 15

    metallic = any(c in METALLIC_COLORS for c in colors)
    if metallic:
        scores["jewelry"] += 40
    if density > 0.35:
        scores["jewelry"] += 20
        scores["keys"] += 20
    if metallic and density > 0.4:
        scores["keys"] += 30

    if pattern == "solid" and aspect and aspect < 1.5:
        scores["bags"] += 25

    for keyword in DOCUMENT_KEYWORDS:
        if keyword in text:
            scores["documents"] += 30
    for keyword in ELECTRONICS_KEYWORDS:
        if keyword in text:
            scores["electronics"] += 25
    for keyword in PET_KEYWORDS:
        if keyword in text:
            scores["pet"] += 30

    best, best_score = "other", 0
    for name, score in scores.items():
        if score > best_score:
            best, best_score = name, score

    if best_score < AUTO_CATEGORY_MIN:
        return CategoryDetection("other", 0, scores)
    return CategoryDetection(best, min(100, best_score), scores)


def compute_weights(features: AvailableFeatures, category: Optional[str] = "other",
                    base: Optional[Mapping[str, WeightVector]] = None) -> WeightVector:
    """
    Adapt the category weight table to the features a photo carries.

    Args:
        features: Output of analyze_available_features.
        category: Item category; unknown categories use "other".
        base: Optional category table overriding CATEGORY_WEIGHTS.

    Returns:
        New normalized WeightVector.
    """
    table = base or CATEGORY_WEIGHTS
    w = table.get(category or "other") or table.get("other") or WeightVector()

    if not features.has_text and not features.has_identifiers:
        ocr = w.ocr or 0.15
        w = replace(
            w,
            ocr=NO_TEXT_OCR_WEIGHT,
            color=w.color + ocr * 0.4 if features.has_strong_colors else w.color,
            shape=w.shape + ocr * 0.3 if features.has_distinctive_shape else w.shape,
            visual=w.visual + ocr * 0.2,
            hash=w.hash + ocr * 0.1,
        )
        logger.debug("No text found, redistributed OCR weight to visual features")

    if features.looks_like_pet:
        w = replace(w, color=min(0.45, w.color + 0.15),
                    shape=max(0.05, w.shape - 0.05), ocr=NO_TEXT_OCR_WEIGHT)
        logger.debug("Detected pet, boosted color weight")

    if features.looks_like_document and features.has_strong_text:
        w = replace(w, ocr=min(0.60, w.ocr + 0.30), color=max(0.05, w.color - 0.10))
        logger.debug("Detected document, boosted OCR weight")

    if features.has_single_dominant_color and not features.has_pattern:
        w = replace(w, shape=min(0.35, w.shape + 0.10), color=max(0.15, w.color - 0.05))
        logger.debug("Solid color item, boosted shape weight")

    return w.normalized()


def redistribute_for_asymmetric_ocr(weights: WeightVector) -> WeightVector:
    """
    Move OCR weight to visual dimensions when only one photo has text.

    Text visible on one side but not the other (a label photographed
    from the back, say) is not evidence against a match.
    """
    ocr = weights.ocr
    return replace(
        weights,
        ocr=ASYMMETRIC_OCR_WEIGHT,
        hash=weights.hash + ocr * 0.35,
        color=weights.color + ocr * 0.35,
        visual=weights.visual + ocr * 0.2,
        shape=weights.shape + ocr * 0.1,
    ).normalized()


def compatible_categories(category: Optional[str]) -> Optional[Tuple[str, ...]]:
    """Categories a case may match against; None means all."""
    return CATEGORY_COMPATIBILITY.get(category or "other", CATEGORY_COMPATIBILITY["other"])


def compatible_entities(entity_type: Optional[str]) -> Optional[Tuple[str, ...]]:
    """Entity types a photo may match against; None means all."""
    return ENTITY_COMPATIBILITY.get(entity_type or "unknown", ENTITY_COMPATIBILITY["unknown"])
