"""
Blur detection and overall photo quality scoring.

Blur is estimated from the variance of the absolute Laplacian response
on a 64x64 grayscale downsample: sharp photos have strong, varied edge
responses, blurry ones do not.

The quality score blends sharpness (40%), edge density (20%), resolution
(25%) and aspect-ratio normality (15%). Very blurry photos take a flat
penalty and are never marked usable, because their hashes and colour
histograms are unreliable match evidence.
"""

import cv2
import numpy as np
import logging
from typing import List, Optional

from .models import BlurAnalysis, QualityScore, QualityWarning
from .preprocessing import resize_gray

logger = logging.getLogger(__name__)

BLUR_SIZE = 64
# Laplacian variance bands
VERY_BLURRY_VARIANCE = 100
BLURRY_VARIANCE = 300
SLIGHTLY_BLURRY_VARIANCE = 500
ACCEPTABLE_VARIANCE = 1000
SHARPNESS_FULL_SCALE = 2000

QUALITY_WEIGHTS = {
    "sharpness": 0.40,
    "edge_density": 0.20,
    "resolution": 0.25,
    "aspect_ratio": 0.15,
}
FULL_RESOLUTION_PIXELS = 2_000_000
COMMON_ASPECT_RATIOS = (1.0, 1.33, 1.5, 1.78, 0.75, 0.67, 0.56)
VERY_BLURRY_PENALTY = 20
DEFAULT_EDGE_DENSITY = 50
USABLE_SCORE_MIN = 30

LOW_RESOLUTION_PIXELS = 100_000
MEDIUM_RESOLUTION_PIXELS = 500_000
LOW_DETAIL_DENSITY = 10


def analyze_blur(image_np: np.ndarray) -> BlurAnalysis:
    """
    Estimate blur from the Laplacian variance of the image interior.

    Returns:
        BlurAnalysis. On failure, sharpness 50 and level "unknown".
    """
    try:
        gray = resize_gray(image_np, BLUR_SIZE, BLUR_SIZE)
        # ksize=1 uses the 4-neighbour kernel [0,1,0; 1,-4,1; 0,1,0]
        laplacian = np.abs(cv2.Laplacian(gray, cv2.CV_64F, ksize=1)[1:-1, 1:-1])
        variance = float(laplacian.var())

        if variance < VERY_BLURRY_VARIANCE:
            level = "very_blurry"
        elif variance < BLURRY_VARIANCE:
            level = "blurry"
        elif variance < SLIGHTLY_BLURRY_VARIANCE:
            level = "slightly_blurry"
        elif variance < ACCEPTABLE_VARIANCE:
            level = "acceptable"
        else:
            level = "sharp"

        return BlurAnalysis(
            is_blurry=level in ("very_blurry", "blurry"),
            blur_score=round(variance, 2),
            blur_level=level,
            sharpness=min(100, int(round(variance / SHARPNESS_FULL_SCALE * 100))),
        )
    except Exception as e:
        logger.warning(f"Blur analysis failed: {e}")
        return BlurAnalysis(is_blurry=False, blur_score=0.0,
                            blur_level="unknown", sharpness=50)


def _aspect_score(width: int, height: int) -> int:
    if not width or not height:
        return 50
    ratio = width / height
    closest = min(COMMON_ASPECT_RATIOS, key=lambda r: abs(r - ratio))
    return int(max(0, round(100 - abs(ratio - closest) * 100)))


def _quality_level(score: float) -> str:
    if score >= 80:
        return "excellent"
    if score >= 60:
        return "good"
    if score >= 40:
        return "acceptable"
    if score >= 20:
        return "poor"
    return "very_poor"


def _tier(score: int) -> str:
    if score >= 70:
        return "high"
    if score >= 40:
        return "medium"
    return "low"


def quality_warnings(blur: BlurAnalysis, width: int, height: int,
                     edge_density: Optional[int], overall: int) -> List[QualityWarning]:
    """Human-readable problems that lower match reliability."""
    warnings = []
    if blur.is_blurry:
        severity = "high" if blur.blur_level == "very_blurry" else "medium"
        warnings.append(QualityWarning(
            "blur", severity, "Image is blurry; fine details may not match reliably"))

    pixels = width * height
    if pixels < LOW_RESOLUTION_PIXELS:
        warnings.append(QualityWarning(
            "resolution", "high", "Very low resolution image"))
    elif pixels < MEDIUM_RESOLUTION_PIXELS:
        warnings.append(QualityWarning(
            "resolution", "medium", "Low resolution image"))

    if edge_density is not None and edge_density < LOW_DETAIL_DENSITY:
        warnings.append(QualityWarning(
            "detail", "medium", "Image has very little visible detail"))

    if overall < USABLE_SCORE_MIN:
        warnings.append(QualityWarning(
            "overall", "high", "Overall image quality is too low for reliable matching"))
    return warnings


def calculate_quality_score(blur: BlurAnalysis, width: int, height: int,
                            edge_density: Optional[int] = None) -> QualityScore:
    """
    Blend blur, detail, resolution and framing into a 0-100 quality score.

    Args:
        blur: Result of analyze_blur.
        width: Original image width in pixels.
        height: Original image height in pixels.
        edge_density: Edge density percentage from the edge fingerprint,
            or None when it could not be computed.

    Returns:
        QualityScore with level, tier, usability and warnings.
    """
    density = DEFAULT_EDGE_DENSITY if edge_density is None else edge_density
    factors = {
        "sharpness": blur.sharpness,
        "edge_density": int(min(100, density)),
        "resolution": int(min(100, round(width * height / FULL_RESOLUTION_PIXELS * 100))),
        "aspect_ratio": _aspect_score(width, height),
    }
    score = sum(factors[name] * weight for name, weight in QUALITY_WEIGHTS.items())
    level = _quality_level(score)

    if blur.blur_level == "very_blurry":
        score = max(0, score - VERY_BLURRY_PENALTY)
        level = "poor"

    overall = int(round(min(100, max(0, score))))
    return QualityScore(
        overall=overall,
        level=level,
        tier=_tier(overall),
        is_usable=overall >= USABLE_SCORE_MIN and not blur.is_blurry,
        factors=factors,
        warnings=tuple(quality_warnings(blur, width, height, edge_density, overall)),
    )
