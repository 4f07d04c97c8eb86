"""
Lost/found photo matching engine.

Orchestrates the three-stage cascade over the corpus of opposite-type
cases:
    1. Broad filter: FAISS Hamming distances on perceptual hashes plus
       cheap label, entity, colour and category signals
    2. Feature match: embedding and colour-vector cosine blended with
       the hash similarity
    3. Deep verification: full multi-dimension compare_dna with match
       reasons

Stages run in order, each feeding the next. Per-candidate work inside
stages 2 and 3 goes through an injectable executor's map(). Stage 1 is
bounded by corpus size and a time budget so a runaway scan degrades to
"no matches" instead of blocking the caller.

MatchingService wraps the cascade with fingerprint loading, category
detection, weight selection, location boosting and persistence.
"""

import os
import time
import logging
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .composer import extract_fingerprint, needs_reprocessing
from .exceptions import DuplicateMatchError, RecordNotFoundError
from .geo import (
    LOCATION_REASON_MAX_MILES, case_distance, format_distance,
    location_boost, location_score,
)
from .hashing import HASH_BITS
from .histograms import color_vector_similarity
from .identifiers import OcrEngine
from .index_builder import HashIndex
from .models import (
    MATCHABLE_STATUSES,
    CaseInfo, MatchReason, MatchRecord, VisualDNA, opposite_case_type,
)
from .neural import NeuralEmbeddingProvider, cosine_similarity
from .scoring import Comparison, compare_dna, rank_results
from .storage import Candidate, DNAStore
from .weight_config import WeightConfigService
from .weights import (
    WeightVector, analyze_available_features, auto_detect_category,
    compatible_categories, compatible_entities, compute_weights,
)

logger = logging.getLogger(__name__)

HASH_DISTANCE = int(os.environ.get("HASH_DISTANCE_THRESHOLD", "25"))
# Distance below which two photos are near-duplicates
HASH_DISTANCE_STRICT = int(os.environ.get("HASH_DISTANCE_STRICT", "12"))
FEATURE_SIMILARITY = int(os.environ.get("FEATURE_SIMILARITY_MIN", "35"))
FINAL_CONFIDENCE = int(os.environ.get("OVERALL_MATCH_MIN", "30"))

LABEL_MATCH_BOOST = 15
LABEL_SCORE_FACTOR = 0.5
ENTITY_MATCH_BOOST = 10
COLOR_MATCH_BOOST = 10
COLOR_MATCH_MIN_SHARED = 2
CATEGORY_MATCH_BOOST = 20
FEATURE_ENTITY_BOOST = 5

STAGE1_MAX = int(os.environ.get("STAGE1_MAX_CANDIDATES", "100"))
STAGE2_MAX = int(os.environ.get("STAGE2_MAX_CANDIDATES", "20"))
TOP_N = int(os.environ.get("MATCH_TOP_N", "10"))
STAGE1_MAX_SCAN = int(os.environ.get("STAGE1_MAX_SCAN", "5000"))
STAGE1_TIME_BUDGET_MS = int(os.environ.get("STAGE1_TIME_BUDGET_MS", "2000"))

# Cascade outcome reasons
NOTHING_SCANNED = "nothing_scanned"
FILTERED_BY_HASH = "filtered_by_hash"
FILTERED_BY_FEATURE = "filtered_by_feature"
FILTERED_BY_VERIFICATION = "filtered_by_verification"
BUDGET_EXCEEDED = "budget_exceeded"
MATCHED = "matched"


@dataclass
class StageCandidate:
    """A corpus entry moving through the cascade."""
    candidate: Candidate
    hash_distance: Optional[float] = None
    hash_similarity: int = 0
    broad_score: float = 0.0
    signals: List[str] = field(default_factory=list)
    feature_score: int = 0
    embedding_similarity: Optional[int] = None
    color_similarity: int = 0

    @property
    def near_duplicate(self) -> bool:
        return self.hash_distance is not None and self.hash_distance <= HASH_DISTANCE_STRICT


@dataclass
class CascadeMatch:
    candidate: Candidate
    comparison: Comparison
    hash_similarity: int
    feature_score: int
    near_duplicate: bool = False


@dataclass
class CascadeResult:
    matches: List[CascadeMatch]
    message: str
    reason: str
    stats: Dict[str, Any] = field(default_factory=dict)


class CascadeMatcher:
    """
    Three-stage cascade search.

    Args:
        executor: Optional executor whose map() runs per-candidate work
            in stages 2 and 3. Work runs inline when omitted.
        clock: Monotonic time source (seconds), injectable for tests.
    """

    def __init__(self, executor: Optional[Executor] = None,
                 hash_distance: float = HASH_DISTANCE,
                 feature_min: int = FEATURE_SIMILARITY,
                 final_confidence: int = FINAL_CONFIDENCE,
                 stage1_max: int = STAGE1_MAX,
                 stage2_max: int = STAGE2_MAX,
                 top_n: int = TOP_N,
                 max_scan: int = STAGE1_MAX_SCAN,
                 time_budget_ms: int = STAGE1_TIME_BUDGET_MS,
                 clock=time.monotonic):
        self.executor = executor
        self.hash_distance = hash_distance
        self.feature_min = feature_min
        self.final_confidence = final_confidence
        self.stage1_max = stage1_max
        self.stage2_max = stage2_max
        self.top_n = top_n
        self.max_scan = max_scan
        self.time_budget_ms = time_budget_ms
        self._clock = clock

    def _map(self, fn, items):
        if self.executor is None:
            return list(map(fn, items))
        return list(self.executor.map(fn, items))

    def stage1(self, query: VisualDNA, corpus: Sequence[Candidate],
               query_category: Optional[str] = None) -> Optional[List[StageCandidate]]:
        """
        Broad filter.

        Returns:
            Candidates with a nonzero broad score, best first, capped at
            stage1_max; None if the time budget ran out.
        """
        start = self._clock()
        index = HashIndex.build([c.dna for c in corpus])
        distances = index.distances(query)

        query_labels = [l.lower() for l in query.labels]
        query_colors = query.color_names
        category = (query_category or "").lower()

        survivors = []
        for position, candidate in enumerate(corpus):
            if (self._clock() - start) * 1000 > self.time_budget_ms:
                logger.warning(
                    f"Broad filter exceeded {self.time_budget_ms}ms after {position} records"
                )
                return None

            dna = candidate.dna
            entry = StageCandidate(candidate)
            score = 0.0

            distance = distances.get(position)
            if distance is not None:
                entry.hash_distance = distance
                entry.hash_similarity = int(round((HASH_BITS - distance) / HASH_BITS * 100))
                if distance <= self.hash_distance:
                    score += entry.hash_similarity
                    entry.signals.append(f"hash:{entry.hash_similarity}%")

            record_labels = [l.lower() for l in dna.labels]
            if query_labels and record_labels:
                common = [l for l in query_labels if l in record_labels]
                if common:
                    label_score = len(common) / max(len(query_labels), len(record_labels)) * 100
                    score += LABEL_MATCH_BOOST + label_score * LABEL_SCORE_FACTOR
                    entry.signals.append(f"labels:{','.join(common)}")

            if dna.entity_type == query.entity_type and dna.entity_type != "unknown":
                score += ENTITY_MATCH_BOOST
                entry.signals.append(f"entity:{dna.entity_type}")

            common_colors = [c for c in query_colors if c in dna.color_names]
            if len(common_colors) >= COLOR_MATCH_MIN_SHARED:
                score += COLOR_MATCH_BOOST
                entry.signals.append(f"colors:{len(common_colors)}")

            if category and (candidate.case.category or "").lower() == category:
                score += CATEGORY_MATCH_BOOST
                entry.signals.append(f"category:{candidate.case.category}")

            if score > 0:
                entry.broad_score = score
                survivors.append(entry)

        survivors.sort(key=lambda c: -c.broad_score)
        return survivors[:self.stage1_max]

    def _feature_score(self, query: VisualDNA, entry: StageCandidate) -> StageCandidate:
        dna = entry.candidate.dna
        score = float(entry.hash_similarity)

        if query.neural is not None and dna.neural is not None:
            embedding = int(round(cosine_similarity(query.neural.embedding, dna.neural.embedding) * 100))
            entry.embedding_similarity = embedding
            if embedding > 0:
                score = (score + embedding * 2) / 3

        entry.color_similarity = int(round(color_vector_similarity(query.color, dna.color)))
        if entry.color_similarity > 0:
            score = (score * 2 + entry.color_similarity) / 3

        if dna.entity_type == query.entity_type:
            score += FEATURE_ENTITY_BOOST

        entry.feature_score = int(round(score))
        return entry

    def stage2(self, query: VisualDNA, candidates: List[StageCandidate]) -> List[StageCandidate]:
        """Feature match: keep candidates scoring at least feature_min."""
        scored = self._map(lambda c: self._feature_score(query, c), candidates)
        kept = [c for c in scored if c.feature_score >= self.feature_min]
        kept.sort(key=lambda c: -c.feature_score)
        return kept[:self.stage2_max]

    def stage3(self, query: VisualDNA, candidates: List[StageCandidate],
               weights: Optional[WeightVector] = None,
               thresholds: Optional[Dict[str, float]] = None) -> List[CascadeMatch]:
        """Deep verification: compare_dna and keep results above final confidence."""
        minimum = (thresholds or {}).get("OVERALL_MATCH_MIN", self.final_confidence)

        def verify(entry: StageCandidate):
            try:
                return entry, compare_dna(query, entry.candidate.dna, weights, thresholds)
            except Exception as e:
                logger.warning(
                    f"Deep comparison failed for photo {entry.candidate.dna.photo_id}: {e}"
                )
                return entry, None

        verified = [(entry, comparison) for entry, comparison in self._map(verify, candidates)
                    if comparison is not None and comparison.overall >= minimum]

        return [
            CascadeMatch(entry.candidate, comparison, entry.hash_similarity,
                         entry.feature_score, entry.near_duplicate)
            for entry, comparison in rank_results(verified)[:self.top_n]
        ]

    def search(self, query: VisualDNA, corpus: Sequence[Candidate],
               weights: Optional[WeightVector] = None,
               query_category: Optional[str] = None,
               thresholds: Optional[Dict[str, float]] = None) -> CascadeResult:
        """
        Run the full cascade for one query fingerprint.

        Args:
            query: Source fingerprint.
            corpus: Candidate fingerprints with their cases.
            weights: Category weights for stage 3.
            query_category: Category of the query's case for the
                category signal.
            thresholds: Optional threshold overrides.

        Returns:
            CascadeResult; reason says where the cascade stopped.
        """
        stats: Dict[str, Any] = {"corpus": len(corpus), "truncated": False}
        if len(corpus) > self.max_scan:
            logger.warning(f"Corpus of {len(corpus)} truncated to {self.max_scan} for broad filter")
            corpus = corpus[:self.max_scan]
            stats["truncated"] = True
        stats["scanned"] = len(corpus)

        if not corpus:
            return CascadeResult([], "No candidate records to scan", NOTHING_SCANNED, stats)

        t0 = self._clock()
        stage1 = self.stage1(query, corpus, query_category)
        stats["stage1_ms"] = int((self._clock() - t0) * 1000)
        if stage1 is None:
            stats["stage1"] = 0
            return CascadeResult([], "Broad filter exceeded its time budget",
                                 BUDGET_EXCEEDED, stats)
        stats["stage1"] = len(stage1)
        if not stage1:
            return CascadeResult([], "No candidates passed the broad filter",
                                 FILTERED_BY_HASH, stats)

        t1 = self._clock()
        stage2 = self.stage2(query, stage1)
        stats["stage2_ms"] = int((self._clock() - t1) * 1000)
        stats["stage2"] = len(stage2)
        if not stage2:
            return CascadeResult([], "No candidates passed feature matching",
                                 FILTERED_BY_FEATURE, stats)

        t2 = self._clock()
        matches = self.stage3(query, stage2, weights, thresholds)
        stats["stage3_ms"] = int((self._clock() - t2) * 1000)
        stats["stage3"] = len(matches)

        logger.info(
            f"Cascade for photo {query.photo_id}: {stats['scanned']} scanned -> "
            f"{stats['stage1']} -> {stats['stage2']} -> {stats['stage3']}"
        )
        if not matches:
            return CascadeResult([], "No candidates passed deep verification",
                                 FILTERED_BY_VERIFICATION, stats)
        return CascadeResult(matches, f"Found {len(matches)} matches", MATCHED, stats)


class MatchingService:
    """
    Find and persist matches for a newly uploaded photo.

    Args:
        store: DNAStore for fingerprints, cases and matches.
        weight_config: Weight/threshold source; built-in defaults if omitted.
        ocr_engine: OCR engine used when a fingerprint must be extracted.
        neural_provider: Neural provider used when a fingerprint must be
            extracted.
        matcher: CascadeMatcher; a default inline matcher if omitted.
    """

    def __init__(self, store: DNAStore,
                 weight_config: Optional[WeightConfigService] = None,
                 ocr_engine: Optional[OcrEngine] = None,
                 neural_provider: Optional[NeuralEmbeddingProvider] = None,
                 matcher: Optional[CascadeMatcher] = None):
        self.store = store
        self.weight_config = weight_config or WeightConfigService()
        self.ocr_engine = ocr_engine
        self.neural_provider = neural_provider
        self.matcher = matcher or CascadeMatcher()

    def _load_dna(self, photo_id: str, case_id: str,
                  image_bytes: Optional[bytes]) -> VisualDNA:
        dna = self.store.get_dna(photo_id)
        if needs_reprocessing(dna) and image_bytes is not None:
            dna = extract_fingerprint(image_bytes, photo_id=photo_id, case_id=case_id,
                                      ocr_engine=self.ocr_engine,
                                      neural_provider=self.neural_provider)
            self.store.save_dna(dna)
        if dna is None:
            raise RecordNotFoundError(f"No fingerprint for photo {photo_id} and no image given")
        return dna

    def find_matches(self, photo_id: str, case_id: str,
                     image_bytes: Optional[bytes] = None) -> List[MatchRecord]:
        """
        Match a photo against the opposite case type and store the results.

        Args:
            photo_id: Id of the new photo.
            case_id: Id of the case the photo belongs to.
            image_bytes: Encoded image, used when no current fingerprint
                is stored.

        Returns:
            Newly created MatchRecords, best first.

        Raises:
            RecordNotFoundError: If the case is unknown, or the photo has
                no fingerprint and no image was given.
        """
        case = self.store.get_case(case_id)
        if case is None:
            raise RecordNotFoundError(f"Case {case_id} not found")

        dna = self._load_dna(photo_id, case_id, image_bytes)
        if dna.status not in MATCHABLE_STATUSES:
            logger.warning(f"Photo {photo_id} fingerprint is {dna.status}, skipping matching")
            return []

        category = case.category
        auto_category = None
        if not category or category == "other":
            detection = auto_detect_category(dna)
            if detection.accepted:
                category = detection.category
                auto_category = {"category": detection.category,
                                 "confidence": detection.confidence}
                logger.debug(
                    f"Auto-detected category {detection.category} "
                    f"({detection.confidence}%) for photo {photo_id}"
                )
        category = category or "other"

        thresholds = self.weight_config.load_thresholds()
        weights = compute_weights(analyze_available_features(dna), category,
                                  self.weight_config.load_all_category_weights())

        candidates = self.store.find_candidates(
            opposite_case_type(case.case_type),
            compatible_categories(category),
            compatible_entities(dna.entity_type),
            MATCHABLE_STATUSES,
        )
        result = self.matcher.search(dna, candidates, weights, category, thresholds)
        logger.info(f"Photo {photo_id}: {result.message} ({result.reason})")

        created = []
        for match in result.matches:
            record = self._build_record(dna, case, match, auto_category)
            try:
                self.store.save_match(record)
            except DuplicateMatchError as e:
                logger.debug(f"Skipping existing match: {e}")
                continue
            logger.info(
                f"Created match: {photo_id} <-> {record.target_photo_id} "
                f"({record.match_type}: {record.overall_score}%)"
            )
            created.append(record)
        return created

    def _build_record(self, dna: VisualDNA, case: CaseInfo, match: CascadeMatch,
                      auto_category: Optional[dict]) -> MatchRecord:
        comparison = match.comparison
        target = match.candidate
        distance = case_distance(case, target.case)
        boost = location_boost(distance, case.search_radius)

        scores = dict(comparison.scores)
        scores["location"] = location_score(distance)

        reasons = list(comparison.reasons)
        if distance is not None and distance <= LOCATION_REASON_MAX_MILES:
            reasons.append(MatchReason("location", "📍", format_distance(distance),
                                       scores["location"]))
            reasons.sort(key=lambda r: -r.score)

        return MatchRecord(
            source_case_id=case.case_id,
            source_photo_id=dna.photo_id,
            target_case_id=target.case.case_id,
            target_photo_id=target.dna.photo_id,
            overall_score=min(100, comparison.overall + boost),
            scores=scores,
            match_type=comparison.match_type,
            match_reasons=reasons,
            matched_identifiers=comparison.matched_identifiers,
            match_details={
                "weights": comparison.weights.as_dict(),
                "auto_category": auto_category,
                "location_boost": boost,
                "base_score": comparison.overall,
                "asymmetric_ocr": comparison.asymmetric_ocr,
                "dna_comparison": comparison.details.get("dna_comparison"),
                "hash_similarity": match.hash_similarity,
                "feature_score": match.feature_score,
                "near_duplicate": match.near_duplicate,
            },
            distance_miles=round(distance, 2) if distance is not None else None,
        )
