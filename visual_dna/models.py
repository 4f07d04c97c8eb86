"""
Record types for Visual DNA fingerprints, cases and match results.

All records are frozen dataclasses. A feature that could not be
extracted is stored as None rather than a zero-filled placeholder, so
the matcher can tell "absent" from "present but dissimilar".
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Any

import numpy as np

DNA_VERSION = "2.0.0"
ALGORITHM_VERSION = "4.0.0"

# Record lifecycle
STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"
MATCHABLE_STATUSES = (STATUS_COMPLETED, STATUS_PARTIAL)

ENTITY_TYPES = ("person", "pet", "vehicle", "document", "item", "unknown")

CASE_LOST = "lost_item"
CASE_FOUND = "found_item"
ACTIVE_CASE = "active"


def opposite_case_type(case_type: str) -> str:
    return CASE_FOUND if case_type == CASE_LOST else CASE_LOST


@dataclass(frozen=True)
class PerceptualHashes:
    """Four 64-bit perceptual hashes as 16-char hex strings."""
    p_hash: Optional[str] = None
    d_hash: Optional[str] = None
    a_hash: Optional[str] = None
    block_hash: Optional[str] = None

    def available(self) -> Dict[str, str]:
        return {
            name: value for name, value in (
                ("p_hash", self.p_hash),
                ("d_hash", self.d_hash),
                ("a_hash", self.a_hash),
                ("block_hash", self.block_hash),
            ) if value
        }


@dataclass(frozen=True)
class DominantColor:
    name: str
    abbreviation: str
    percentage: int


@dataclass(frozen=True)
class ColorFingerprint:
    """HSV histograms plus named dominant colors."""
    hue_histogram: Tuple[int, ...]
    saturation_histogram: Tuple[int, ...]
    value_histogram: Tuple[int, ...]
    dominant_colors: Tuple[DominantColor, ...]
    average_rgb: Tuple[int, int, int]
    average_hsv: Tuple[int, int, int]
    average_color_name: str
    color_code: str
    signature: str

    @property
    def color_names(self) -> List[str]:
        return [c.name for c in self.dominant_colors]

    def color_vector(self) -> np.ndarray:
        """Concatenated hue/saturation/value histogram as float32."""
        return np.array(
            self.hue_histogram + self.saturation_histogram + self.value_histogram,
            dtype=np.float32,
        )


@dataclass(frozen=True)
class ShapeFingerprint:
    signature: Tuple[float, ...]
    aspect_ratio: float
    edge_density: float


@dataclass(frozen=True)
class EdgeFingerprint:
    edge_hash: str
    edge_density: int
    horizontal_edges: int
    vertical_edges: int
    dominant_direction: str


@dataclass(frozen=True)
class TextureFingerprint:
    texture_hash: str
    complexity: int
    pattern_type: str
    uniformity: int
    horizontal_score: float = 0.0
    vertical_score: float = 0.0


@dataclass(frozen=True)
class PatternInfo:
    pattern_type: str
    confidence: int
    direction: Optional[str] = None
    spot_count: int = 0
    variance: float = 0.0


@dataclass(frozen=True)
class BlurAnalysis:
    is_blurry: bool
    blur_score: float
    blur_level: str
    sharpness: int


@dataclass(frozen=True)
class QualityWarning:
    warning_type: str
    severity: str
    message: str


@dataclass(frozen=True)
class QualityScore:
    overall: int
    level: str
    tier: str
    is_usable: bool
    factors: Dict[str, int] = field(default_factory=dict)
    warnings: Tuple[QualityWarning, ...] = ()


@dataclass(frozen=True)
class Identifiers:
    """Structured tokens pulled from OCR text."""
    license_plates: Tuple[str, ...] = ()
    serial_numbers: Tuple[str, ...] = ()
    document_ids: Tuple[str, ...] = ()
    emails: Tuple[str, ...] = ()
    phone_numbers: Tuple[str, ...] = ()

    @property
    def has_high_value(self) -> bool:
        return bool(self.license_plates or self.serial_numbers or self.document_ids)

    def is_empty(self) -> bool:
        return not (self.has_high_value or self.emails or self.phone_numbers)

    def merged(self, other: "Identifiers") -> "Identifiers":
        """Union with another set, keeping first-seen order."""
        def _union(a, b):
            return tuple(dict.fromkeys(a + b))

        return Identifiers(
            license_plates=_union(self.license_plates, other.license_plates),
            serial_numbers=_union(self.serial_numbers, other.serial_numbers),
            document_ids=_union(self.document_ids, other.document_ids),
            emails=_union(self.emails, other.emails),
            phone_numbers=_union(self.phone_numbers, other.phone_numbers),
        )

    def as_dict(self) -> Dict[str, List[str]]:
        return {
            "license_plates": list(self.license_plates),
            "serial_numbers": list(self.serial_numbers),
            "document_ids": list(self.document_ids),
            "emails": list(self.emails),
            "phone_numbers": list(self.phone_numbers),
        }


@dataclass(frozen=True)
class OcrResult:
    text: Optional[str] = None
    confidence: float = 0.0
    identifiers: Identifiers = field(default_factory=Identifiers)
    score: int = 0
    is_garbage: bool = True
    reason: str = "no_text"
    passes_used: int = 0
    best_pass: Optional[str] = None

    @property
    def usable_text(self) -> str:
        return (self.text or "").strip()


@dataclass(frozen=True)
class NeuralFingerprint:
    embedding: Tuple[float, ...]
    embedding_hash: str
    entity_type: str = "unknown"
    entity_confidence: float = 0.0
    labels: Tuple[str, ...] = ()


@dataclass(frozen=True)
class VisualDNA:
    """Complete fingerprint for one photo."""
    photo_id: Optional[str] = None
    case_id: Optional[str] = None
    dna_id: Optional[str] = None
    machine_hash: Optional[str] = None
    version: str = DNA_VERSION
    algorithm_version: str = ALGORITHM_VERSION
    entity_type: str = "unknown"
    entity_confidence: float = 0.0
    hashes: PerceptualHashes = field(default_factory=PerceptualHashes)
    color: Optional[ColorFingerprint] = None
    shape: Optional[ShapeFingerprint] = None
    edges: Optional[EdgeFingerprint] = None
    texture: Optional[TextureFingerprint] = None
    pattern: Optional[PatternInfo] = None
    blur: Optional[BlurAnalysis] = None
    quality: Optional[QualityScore] = None
    ocr: OcrResult = field(default_factory=OcrResult)
    neural: Optional[NeuralFingerprint] = None
    width: int = 0
    height: int = 0
    status: str = STATUS_PENDING
    error: Optional[str] = None
    processing_time_ms: int = 0

    @property
    def aspect_ratio(self) -> Optional[float]:
        if self.shape is not None:
            return self.shape.aspect_ratio
        if self.width and self.height:
            return self.width / self.height
        return None

    @property
    def color_names(self) -> List[str]:
        return self.color.color_names if self.color else []

    @property
    def labels(self) -> Tuple[str, ...]:
        return self.neural.labels if self.neural else ()

    @property
    def is_matchable(self) -> bool:
        return self.status in MATCHABLE_STATUSES


@dataclass(frozen=True)
class CaseInfo:
    """Case metadata the matcher needs from the surrounding application."""
    case_id: str
    case_type: str
    status: str = ACTIVE_CASE
    category: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location: Optional[Dict[str, Any]] = None
    search_radius: float = 50.0


@dataclass(frozen=True)
class MatchReason:
    reason_type: str
    icon: str
    text: str
    score: int


@dataclass
class MatchRecord:
    """Persisted match between a source photo and a target photo."""
    source_case_id: str
    source_photo_id: str
    target_case_id: str
    target_photo_id: str
    overall_score: int
    scores: Dict[str, Optional[int]]
    match_type: str
    match_reasons: List[MatchReason] = field(default_factory=list)
    matched_identifiers: Dict[str, List[str]] = field(default_factory=dict)
    match_details: Dict[str, Any] = field(default_factory=dict)
    distance_miles: Optional[float] = None
    feedback: str = "pending"

    @property
    def pair_key(self) -> Tuple[str, str]:
        return (self.source_photo_id, self.target_photo_id)
