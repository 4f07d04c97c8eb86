"""
OCR garbage detection, identifier extraction and OCR scoring.

OCR engines happily "read" text out of fabric weave, fur and shadows.
Matching on that noise produces confident false positives, so every OCR
reading passes an ordered validation pipeline before its text or
identifiers are trusted:

    1. minimum length and alphanumeric ratio
    2. structured identifiers short-circuit to valid
    3. short-word ratio, average word length, gibberish score
    4. recognizable words, per-word confidence, overall confidence
    5. random character sequences

Valid text is mined for license plates, serial numbers, document ids,
emails and phone numbers, and scored 0-100 by how useful it is as match
evidence. Garbage always scores 0 and carries no identifiers.

The OCR engine itself is external and is consumed through OcrEngine.
"""

import os
import re
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

import numpy as np

from .models import Identifiers, OcrResult
from .preprocessing import ocr_variants

logger = logging.getLogger(__name__)

# Validation thresholds
MIN_TEXT_LENGTH = 5
MIN_WORD_LENGTH = 2
MIN_VALID_WORDS = int(os.environ.get("OCR_MIN_VALID_WORDS", "3"))
MIN_WORD_CONFIDENCE = float(os.environ.get("OCR_MIN_WORD_CONFIDENCE", "65"))
MIN_ALPHANUMERIC_RATIO = 0.6
MAX_RANDOM_CHAR_RATIO = 0.25
MIN_OVERALL_CONFIDENCE = float(os.environ.get("OCR_MIN_CONFIDENCE", "45"))
MAX_SHORT_WORD_RATIO = 0.5
MIN_AVG_WORD_LENGTH = 3.0
MAX_GIBBERISH_SCORE = int(os.environ.get("OCR_MAX_GIBBERISH", "60"))
# Without any common word, text needs this confidence or this many valid words
UNCOMMON_TEXT_CONFIDENCE = 70
UNCOMMON_TEXT_VALID_WORDS = 4

# Gibberish score contributions
GIBBERISH_SINGLE_LETTER = 30
GIBBERISH_SHORT_CAPS = 25
GIBBERISH_WEIRD = 20
GIBBERISH_FEW_COMMON = 15
GIBBERISH_LENGTH_VARIANCE = 10
FEW_COMMON_RATIO = 0.1
FEW_COMMON_MIN_WORDS = 5
LENGTH_VARIANCE_MAX = 10

# Non-standard OCR passes are dropped below this confidence
ROTATED_PASS_MIN_CONFIDENCE = 30
ALWAYS_KEPT_PASSES = ("standard", "license_plate")

COMMON_WORDS = frozenset([
    "the", "be", "to", "of", "and", "a", "in", "that", "have", "i",
    "it", "for", "not", "on", "with", "he", "as", "you", "do", "at",
    "this", "but", "his", "by", "from", "they", "we", "say", "her", "she",
    "or", "an", "will", "my", "one", "all", "would", "there", "their", "what",
    "so", "up", "out", "if", "about", "who", "get", "which", "go", "me",
    "when", "make", "can", "like", "time", "no", "just", "him", "know", "take",
    "people", "into", "year", "your", "good", "some", "could", "them", "see", "other",
    "than", "then", "now", "look", "only", "come", "its", "over", "think", "also",
    "phone", "lost", "found", "missing", "help", "name", "address", "contact",
    "serial", "number", "model", "brand", "color", "size", "date", "location",
    "driver", "licence", "license", "permis", "conduire", "ontario", "canada",
    "class", "exp", "dob", "sex", "height", "weight", "eyes", "hair",
    "issued", "expires", "valid", "birth", "restriction", "endorsement",
    "passport", "identification", "card", "province", "state", "country",
    "street", "avenue", "road", "drive", "boulevard", "city", "postal",
])

# Short all-caps words that are real English, not OCR debris
COMMON_CAPS = frozenset([
    "THE", "AND", "FOR", "NOT", "BUT", "YOU", "ALL", "CAN", "HAD", "HER",
    "WAS", "ONE", "OUR", "OUT", "DAY", "GET", "HAS", "HIM", "HIS", "HOW",
    "ITS", "MAY", "NEW", "NOW", "OLD", "SEE", "TWO", "WAY", "WHO", "BOY",
    "DID", "OWN", "SAY", "SHE", "TOO", "USE",
])

# Place and document words that look like serials to the mixed pattern
SERIAL_EXCLUDE_WORDS = frozenset([
    "brantford", "toronto", "ontario", "canada", "street", "avenue",
    "boulevard", "driver", "licence", "license", "address", "province",
    "sleethst", "mississauga", "scarborough", "brampton", "hamilton",
    "kitchener", "waterloo", "cambridge", "guelph", "barrie", "kingston",
])

SERIAL_PATTERNS = [
    re.compile(r"\b[A-Z]{2,3}-?\d{5,10}\b", re.IGNORECASE),
    re.compile(r"\b\d{2,4}-\d{4,6}-\d{2,4}\b"),
    re.compile(r"\bS/?N[:\s]*[A-Z0-9-]+\b", re.IGNORECASE),
    re.compile(r"\bSerial[:\s]*[A-Z0-9-]+\b", re.IGNORECASE),
]
MIXED_SERIAL_PATTERN = re.compile(
    r"\b(?=[A-Z0-9]*[A-Z])(?=[A-Z0-9]*\d)[A-Z0-9]{8,15}\b", re.IGNORECASE)

PLATE_PATTERNS = [
    re.compile(r"\b[A-Z]{2,3}\s?[A-Z]?\s?\d{3,4}\b"),     # US: ABC 1234, AB 123
    re.compile(r"\b[A-Z]{3}\s?\d{4}\b"),                  # US standard
    re.compile(r"\b\d{3}\s?[A-Z]{3}\b"),                  # US: 123 ABC
    re.compile(r"\b[A-Z]{1,2}\d{2}\s?[A-Z]{3}\b"),        # UK: AB12 XYZ
    re.compile(r"\b[A-Z]{2}\s?\d{4}\s?[A-Z]{2}\b"),       # EU: AB 1234 CD
    re.compile(r"\b[A-Z]{4}\s?\d{3}\b"),                  # Ontario: ABCD 123
    re.compile(r"\b\d{1,4}[\s-]?[A-Z]{2,3}[\s-]?\d{1,4}\b"),
]
MIN_PLATE_CHARS = 5

DOCUMENT_PATTERNS = [
    # Labelled ids must carry at least one digit
    re.compile(r"\bID(?:[:\s#]+)[A-Z0-9-]*\d[A-Z0-9-]*\b", re.IGNORECASE),
    re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    re.compile(r"\b[A-Z]{1,2}\d{6,9}\b"),
    re.compile(r"\b[A-Z]?\d{4,5}[\s-]+\d{4,5}[\s-]+\d{4,5}\b"),
    re.compile(r"\bD\d{4}\s?-?\s?\d{5}\s?-?\s?\d{5}\b", re.IGNORECASE),
]

EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")

PHONE_PATTERNS = [
    re.compile(r"\b\d{3}[-.\s]?\d{3}[-.\s]?\d{4}\b"),
    re.compile(r"\(\d{3}\)\s?\d{3}[-.\s]?\d{4}\b"),
    re.compile(r"\+\d{1,3}[-.\s]?\d{8,12}\b"),
]

VALID_PLATE_PATTERN = re.compile(r"^[A-Z0-9\s-]+$", re.IGNORECASE)
VALID_SERIAL_PATTERN = re.compile(r"[A-Z0-9]{6,}", re.IGNORECASE)

_VOWELS = re.compile(r"[aeiou]", re.IGNORECASE)
_CONSONANTS = re.compile(r"[bcdfghjklmnpqrstvwxyz]", re.IGNORECASE)


@dataclass(frozen=True)
class OcrWord:
    text: str
    confidence: float


@dataclass(frozen=True)
class OcrReading:
    """Raw output of one OCR engine call."""
    text: str
    confidence: float
    words: Tuple[OcrWord, ...] = ()


@dataclass(frozen=True)
class OcrPass:
    name: str
    text: str
    confidence: float
    words: Tuple[OcrWord, ...] = ()


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    reason: str
    identifiers: Identifiers = field(default_factory=Identifiers)
    valid_word_count: int = 0
    gibberish_score: int = 0

    @property
    def is_garbage(self) -> bool:
        return not self.is_valid


class OcrEngine(Protocol):
    """Anything that turns a grayscale image into text."""

    def recognize(self, image: np.ndarray) -> OcrReading:
        ...


def _dedupe(values: List[str]) -> Tuple[str, ...]:
    return tuple(dict.fromkeys(values))


def _find_all(pattern: re.Pattern, text: str) -> List[str]:
    return [m.group(0).strip() for m in pattern.finditer(text)]


def extract_identifiers(text: Optional[str]) -> Identifiers:
    """
    Pull structured identifiers out of OCR text.

    Args:
        text: Raw OCR text; newlines and runs of whitespace are collapsed.

    Returns:
        Identifiers with every category deduplicated in first-seen order.
    """
    if not text:
        return Identifiers()

    clean = re.sub(r"\s+", " ", text.replace("\n", " "))

    serials = []
    for pattern in SERIAL_PATTERNS:
        serials.extend(m for m in _find_all(pattern, clean)
                       if m.lower() not in SERIAL_EXCLUDE_WORDS)
    for m in _find_all(MIXED_SERIAL_PATTERN, clean):
        if m.lower() not in SERIAL_EXCLUDE_WORDS and m not in serials:
            serials.append(m)

    plates = []
    for pattern in PLATE_PATTERNS:
        plates.extend(m for m in _find_all(pattern, clean)
                      if len(re.sub(r"\s", "", m)) >= MIN_PLATE_CHARS)

    documents = []
    for pattern in DOCUMENT_PATTERNS:
        documents.extend(_find_all(pattern, clean))

    phones = []
    for pattern in PHONE_PATTERNS:
        phones.extend(_find_all(pattern, clean))

    return Identifiers(
        license_plates=_dedupe(plates),
        serial_numbers=_dedupe(serials),
        document_ids=_dedupe(documents),
        emails=_dedupe(_find_all(EMAIL_PATTERN, clean)),
        phone_numbers=_dedupe(phones),
    )


def is_valid_word(word: str) -> bool:
    """Heuristic check that a token looks like a real word or code."""
    if not word or len(word) < 2:
        return False
    if re.fullmatch(r"\d+", word):
        return True
    if re.fullmatch(r"[A-Z0-9]{2,}", word, re.IGNORECASE):
        return True

    if len(word) >= 4:
        vowels = len(_VOWELS.findall(word))
        letters = vowels + len(_CONSONANTS.findall(word))
        if letters > 0:
            vowel_ratio = vowels / letters
            if vowel_ratio < 0.1 or vowel_ratio > 0.8:
                return False

    if re.search(r"(.)\1{3,}", word):
        return False
    if re.fullmatch(r"(.)(.)(\1\2)+", word):
        return False
    return True


def _is_weird_word(word: str) -> bool:
    return bool(
        (re.search(r"[a-z][A-Z]", word) and len(word) <= 3)
        or re.fullmatch(r"(.)\1+", word)
        or re.fullmatch(r"[^a-zA-Z0-9]*[a-zA-Z][^a-zA-Z0-9]*", word)
    )


def gibberish_score(words: Sequence[str]) -> int:
    """
    Score 0-100 for how much a token list looks like OCR noise.

    Higher is worse. Combines stray single letters, short all-caps
    fragments, oddly cased tokens, a lack of common words and an
    erratic spread of word lengths.
    """
    if not words:
        return 0
    n = len(words)
    score = 0.0

    single = [w for w in words if len(w) == 1 and not re.fullmatch(r"[aioAIO0-9]", w)]
    score += len(single) / n * GIBBERISH_SINGLE_LETTER

    short_caps = [w for w in words
                  if len(w) <= 3 and re.fullmatch(r"[A-Z]+", w) and w not in COMMON_CAPS]
    score += len(short_caps) / n * GIBBERISH_SHORT_CAPS

    weird = [w for w in words if _is_weird_word(w)]
    score += len(weird) / n * GIBBERISH_WEIRD

    common = sum(1 for w in words if w.lower() in COMMON_WORDS)
    if common / n < FEW_COMMON_RATIO and n > FEW_COMMON_MIN_WORDS:
        score += GIBBERISH_FEW_COMMON

    lengths = np.array([len(w) for w in words], dtype=np.float64)
    if float(lengths.var()) > LENGTH_VARIANCE_MAX:
        score += GIBBERISH_LENGTH_VARIANCE

    return int(min(100, round(score)))


def _is_random_token(word: str) -> bool:
    return bool(
        (len(word) <= 2 and re.search(r"[^a-zA-Z0-9]", word))
        or re.match(r"[a-z][A-Z][a-z][A-Z]", word)
        or re.search(r"[bcdfghjklmnpqrstvwxyz]{5,}", word, re.IGNORECASE)
        or re.search(r"[a-zA-Z][^a-zA-Z0-9\s'][a-zA-Z]", word)
    )


def random_char_ratio(text: str) -> float:
    """Fraction of whitespace-separated tokens that look like random noise."""
    words = text.split()
    if not words:
        return 1.0
    return sum(1 for w in words if _is_random_token(w)) / len(words)


def _reject(reason: str, **kwargs) -> ValidationResult:
    logger.debug(f"OCR text rejected: {reason}")
    return ValidationResult(is_valid=False, reason=reason, **kwargs)


def validate_ocr_output(text: Optional[str], confidence: float,
                        words: Sequence[OcrWord] = ()) -> ValidationResult:
    """
    Decide whether an OCR reading is real text or garbage.

    Args:
        text: Raw OCR text.
        confidence: Overall engine confidence (0-100).
        words: Per-word readings. When the engine reports none, each
            whitespace token is taken at the overall confidence.

    Returns:
        ValidationResult. Identifiers are only populated for valid text.
    """
    if not text or len(text.strip()) < MIN_TEXT_LENGTH:
        return _reject("Text too short")
    text = text.strip()

    alphanumeric = re.sub(r"[^a-zA-Z0-9]", "", text)
    if len(alphanumeric) / len(text) < MIN_ALPHANUMERIC_RATIO:
        return _reject("Too many random characters")

    identifiers = extract_identifiers(text)
    if not identifiers.is_empty():
        return ValidationResult(is_valid=True, reason="Contains identifiers",
                                identifiers=identifiers)

    tokens = text.split()
    if not tokens:
        return _reject("No words found")

    short_ratio = sum(1 for w in tokens if len(w) <= 2) / len(tokens)
    if short_ratio > MAX_SHORT_WORD_RATIO:
        return _reject(f"Too many short words ({round(short_ratio * 100)}%)")

    avg_length = sum(len(w) for w in tokens) / len(tokens)
    if avg_length < MIN_AVG_WORD_LENGTH:
        return _reject(f"Average word length too low ({avg_length:.1f})")

    gibberish = gibberish_score(tokens)
    if gibberish > MAX_GIBBERISH_SCORE:
        return _reject(f"High gibberish score ({gibberish})", gibberish_score=gibberish)

    readings = words or tuple(OcrWord(w, confidence) for w in tokens)
    valid_words = [w for w in readings
                   if w.text and len(w.text) >= MIN_WORD_LENGTH
                   and w.confidence >= MIN_WORD_CONFIDENCE
                   and is_valid_word(w.text)]

    common = sum(1 for w in tokens if w.lower() in COMMON_WORDS)
    if (common == 0 and confidence < UNCOMMON_TEXT_CONFIDENCE
            and len(valid_words) < UNCOMMON_TEXT_VALID_WORDS):
        return _reject("No recognizable words", valid_word_count=len(valid_words),
                       gibberish_score=gibberish)

    if len(valid_words) < MIN_VALID_WORDS:
        return _reject(f"Only {len(valid_words)} valid words found",
                       valid_word_count=len(valid_words), gibberish_score=gibberish)

    if confidence < MIN_OVERALL_CONFIDENCE:
        return _reject("Low overall confidence", valid_word_count=len(valid_words),
                       gibberish_score=gibberish)

    if random_char_ratio(text) > MAX_RANDOM_CHAR_RATIO:
        return _reject("Appears to be random noise", valid_word_count=len(valid_words),
                       gibberish_score=gibberish)

    return ValidationResult(is_valid=True, reason="Valid text detected",
                            identifiers=identifiers,
                            valid_word_count=len(valid_words),
                            gibberish_score=gibberish)


def _confidence_points(confidence: float) -> float:
    for floor, points in ((90, 35), (80, 30), (70, 25), (60, 20), (50, 15), (40, 10)):
        if confidence >= floor:
            return points
    return max(0.0, confidence * 0.2)


def score_ocr(text: Optional[str], confidence: float, identifiers: Identifiers,
              passes_used: int = 1, words: Sequence[OcrWord] = ()) -> int:
    """
    Score OCR output 0-100 by its value as match evidence.

    Garbage text always scores 0. Otherwise points come from engine
    confidence, identifiers found, the number of real words and how many
    OCR passes agreed there was text.
    """
    validation = validate_ocr_output(text, confidence, words)
    if not validation.is_valid:
        return 0

    score = _confidence_points(confidence)

    plates = [p for p in identifiers.license_plates
              if 5 <= len(p) <= 10 and VALID_PLATE_PATTERN.match(p)]
    if plates:
        score += 25
        if any(len(re.sub(r"\s", "", p)) >= 6 for p in plates):
            score += 10

    if any(len(s) >= 6 and VALID_SERIAL_PATTERN.search(s) for s in identifiers.serial_numbers):
        score += 20
    if identifiers.document_ids:
        score += 15
    if identifiers.emails:
        score += 5
    if identifiers.phone_numbers:
        score += 5

    valid_count = sum(1 for w in (text or "").split() if is_valid_word(w))
    for floor, points in ((20, 15), (10, 12), (5, 8), (3, 5), (2, 2)):
        if valid_count >= floor:
            score += points
            break

    if passes_used >= 3:
        score += 5
    elif passes_used >= 2:
        score += 3

    return int(min(100, round(score)))


def _pass_score(ocr_pass: OcrPass, identifiers: Identifiers) -> float:
    score = ocr_pass.confidence
    if identifiers.license_plates:
        score += 30
    if identifiers.serial_numbers:
        score += 25
    if identifiers.document_ids:
        score += 20
    if len(ocr_pass.text) > 10:
        score += 5
    if len(ocr_pass.text) > 50:
        score += 5
    return score


def select_best_pass(passes: Sequence[OcrPass]) -> Tuple[Optional[OcrPass], Identifiers]:
    """
    Pick the most useful OCR pass and merge identifiers from the rest.

    Returns:
        (best pass, merged identifiers). (None, empty) for no passes.
    """
    if not passes:
        return None, Identifiers()

    extracted = [(p, extract_identifiers(p.text)) for p in passes]
    best, best_ids = passes[0], extracted[0][1]
    best_score = 0.0
    for ocr_pass, ids in extracted:
        score = _pass_score(ocr_pass, ids)
        if score > best_score:
            best, best_ids, best_score = ocr_pass, ids, score

    merged = best_ids
    for ocr_pass, ids in extracted:
        if ocr_pass is not best:
            merged = merged.merged(ids)
    return best, merged


def run_ocr_passes(engine: OcrEngine, image_np: np.ndarray) -> List[OcrPass]:
    """
    Run the OCR engine over every preprocessing variant.

    Rotated and high-contrast passes only count when the engine is
    reasonably confident; a failing pass is skipped, not fatal.
    """
    passes = []
    for name, variant in ocr_variants(image_np).items():
        try:
            reading = engine.recognize(variant)
        except Exception as e:
            logger.warning(f"OCR pass '{name}' failed: {e}")
            continue
        if not reading or not reading.text or not reading.text.strip():
            continue
        if name not in ALWAYS_KEPT_PASSES and reading.confidence <= ROTATED_PASS_MIN_CONFIDENCE:
            continue
        passes.append(OcrPass(name=name, text=reading.text,
                              confidence=float(reading.confidence),
                              words=tuple(reading.words)))
    return passes


def analyze_ocr(passes: Sequence[OcrPass]) -> OcrResult:
    """
    Turn raw OCR passes into a validated, scored OcrResult.

    Garbage readings are returned with no text, no identifiers and a
    score of 0, so downstream matching never sees them.
    """
    best, identifiers = select_best_pass(passes)
    if best is None:
        return OcrResult(reason="No text extracted")

    validation = validate_ocr_output(best.text, best.confidence, best.words)
    if not validation.is_valid:
        return OcrResult(
            confidence=best.confidence,
            reason=validation.reason,
            passes_used=len(passes),
            best_pass=best.name,
        )

    score = score_ocr(best.text, best.confidence, identifiers,
                      passes_used=len(passes), words=best.words)
    logger.debug(
        f"OCR best pass '{best.name}' of {len(passes)}: score {score}, "
        f"identifiers {identifier_summary(identifiers)}"
    )
    return OcrResult(
        text=best.text.strip(),
        confidence=best.confidence,
        identifiers=identifiers,
        score=score,
        is_garbage=False,
        reason=validation.reason,
        passes_used=len(passes),
        best_pass=best.name,
    )


def identifier_summary(identifiers: Identifiers) -> Dict[str, int]:
    """Counts per identifier category, for logging."""
    return {key: len(values) for key, values in identifiers.as_dict().items()}
