"""
HSV color fingerprint extraction and comparison.

Downsamples the photo to a 64x64 grid, converts every pixel to HSV
(hue in degrees, saturation and value in percent) and builds three
percentage histograms: 36 hue bins of 10 degrees, 10 saturation bins
and 10 value bins. Each pixel is also classified into one of twenty
named colors; the five most frequent become the dominant colors and
the top two form the short color code (e.g. "BLU.WHT").

Histograms are compared with a chi-square distance, which is less
sensitive to small lighting shifts than raw bin differences.
"""

import os
import cv2
import numpy as np
import hashlib
import json
import logging
from collections import Counter
from typing import Optional, Sequence, Tuple

from .models import ColorFingerprint, DominantColor
from .preprocessing import resize_rgb

logger = logging.getLogger(__name__)

COLOR_SAMPLE_SIZE = int(os.environ.get("COLOR_SAMPLE_SIZE", "64"))
HUE_BINS = 36
SAT_BINS = 10
VAL_BINS = 10
MAX_DOMINANT_COLORS = 5

# Component weights for compare_hsv_colors; hue carries most identity
HUE_WEIGHT = 0.5
SATURATION_WEIGHT = 0.25
VALUE_WEIGHT = 0.25
SHARED_NAME_BONUS = 10
# Returned when histograms of different lengths are compared
HISTOGRAM_MISMATCH_SCORE = 50.0

COLOR_ABBREVIATIONS = {
    "red": "RED", "orange": "ORG", "yellow": "YEL", "lime": "LIM",
    "green": "GRN", "cyan": "CYN", "blue": "BLU", "purple": "PUR",
    "pink": "PNK", "brown": "BRN", "black": "BLK", "white": "WHT",
    "gray": "GRY", "gold": "GLD", "silver": "SLV", "beige": "BGE",
    "maroon": "MRN", "navy": "NVY", "teal": "TEL", "olive": "OLV",
}


def abbreviate_color(name: str) -> str:
    """Three-letter code for a color name."""
    return COLOR_ABBREVIATIONS.get(name, name[:3].upper())


def rgb_to_hsv(rgb: np.ndarray) -> np.ndarray:
    """
    Convert RGB pixels to HSV in display units.

    Args:
        rgb: Array (..., 3) of RGB values in 0-255.

    Returns:
        Float array (..., 3): hue 0-360, saturation 0-100, value 0-100,
        each rounded to the nearest integer.
    """
    rgb = np.asarray(rgb, dtype=np.float32)
    shape = rgb.shape
    flat = (rgb.reshape(-1, 1, 3) / 255.0).astype(np.float32)
    hsv = cv2.cvtColor(flat, cv2.COLOR_RGB2HSV).reshape(shape).astype(np.float64)
    hsv[..., 1:] *= 100
    return np.round(hsv)


def classify_color(h: float, s: float, v: float) -> str:
    """
    Map an HSV triple to one of the named colors.

    Achromatic pixels (low saturation or very dark) are resolved first,
    then hue ranges pick the family, with saturation and value splitting
    light and dark variants.
    """
    if s < 15:
        if v < 20:
            return "black"
        if v < 85:
            return "gray"
        return "white"
    if v < 20:
        return "black"

    if h < 15 or h >= 345:
        return "maroon" if s < 40 and v < 50 else "red"
    if h < 30:
        return "brown" if v < 60 else "orange"
    if h < 45:
        if s < 50:
            return "beige"
        return "gold" if v > 80 else "orange"
    if h < 70:
        return "yellow"
    if h < 90:
        return "lime"
    if h < 150:
        return "olive" if v < 40 else "green"
    if h < 180:
        return "teal" if v < 50 else "cyan"
    if h < 210:
        return "cyan"
    if h < 250:
        return "navy" if v < 40 else "blue"
    if h < 280:
        return "purple"
    if h < 320:
        return "pink" if s < 40 else "purple"
    return "pink"


def _percent_histogram(indices: np.ndarray, bins: int) -> Tuple[int, ...]:
    counts = np.bincount(indices, minlength=bins)[:bins]
    total = max(int(indices.size), 1)
    return tuple(int(round(c / total * 100)) for c in counts)


def extract_color_fingerprint(image_np: np.ndarray) -> ColorFingerprint:
    """
    Build the HSV color fingerprint of an image.

    Args:
        image_np: RGB uint8 image.

    Returns:
        ColorFingerprint with histograms, dominant colors, average color,
        color code and a 16-char signature digest.
    """
    rgb = resize_rgb(image_np, COLOR_SAMPLE_SIZE, COLOR_SAMPLE_SIZE).reshape(-1, 3)
    hsv = rgb_to_hsv(rgb)
    h, s, v = hsv[:, 0], hsv[:, 1], hsv[:, 2]

    hue_hist = _percent_histogram((np.floor(h / 10).astype(int)) % HUE_BINS, HUE_BINS)
    sat_hist = _percent_histogram(np.minimum(SAT_BINS - 1, np.floor(s / 10)).astype(int), SAT_BINS)
    val_hist = _percent_histogram(np.minimum(VAL_BINS - 1, np.floor(v / 10)).astype(int), VAL_BINS)

    names = Counter(classify_color(*pixel) for pixel in hsv)
    total = len(hsv)
    dominant = tuple(
        DominantColor(name=name, abbreviation=abbreviate_color(name),
                      percentage=int(round(count / total * 100)))
        for name, count in names.most_common(MAX_DOMINANT_COLORS)
    )

    avg_rgb = tuple(int(round(c)) for c in rgb.mean(axis=0))
    avg_hsv = tuple(int(c) for c in rgb_to_hsv(np.array(avg_rgb)))
    avg_name = classify_color(*avg_hsv)

    color_code = ".".join(c.abbreviation for c in dominant[:2])

    payload = json.dumps({
        "h": hue_hist, "s": sat_hist, "v": val_hist,
        "c": [c.name for c in dominant],
    }, separators=(",", ":"))
    signature = hashlib.md5(payload.encode("utf-8")).hexdigest()[:16]

    return ColorFingerprint(
        hue_histogram=hue_hist,
        saturation_histogram=sat_hist,
        value_histogram=val_hist,
        dominant_colors=dominant,
        average_rgb=avg_rgb,
        average_hsv=avg_hsv,
        average_color_name=avg_name,
        color_code=color_code,
        signature=signature,
    )


def compare_histograms(hist_a: Sequence[float], hist_b: Sequence[float]) -> float:
    """
    Chi-square similarity between two percentage histograms.

    Returns:
        Score in [0, 100]; HISTOGRAM_MISMATCH_SCORE if lengths differ.
    """
    if len(hist_a) != len(hist_b):
        return HISTOGRAM_MISMATCH_SCORE

    a = np.asarray(hist_a, dtype=np.float64)
    b = np.asarray(hist_b, dtype=np.float64)
    total = a + b
    mask = total > 0
    chi_square = float(np.sum((a[mask] - b[mask]) ** 2 / total[mask]))
    return max(0.0, 100.0 - chi_square)


def compare_hsv_colors(color_a: Optional[ColorFingerprint],
                       color_b: Optional[ColorFingerprint]) -> Optional[float]:
    """
    Compare two color fingerprints.

    Weighted chi-square similarity of the hue, saturation and value
    histograms, plus a bonus for shared top-3 color names.

    Returns:
        Similarity in [0, 100], or None if either side is missing.
    """
    if color_a is None or color_b is None:
        return None

    hue = compare_histograms(color_a.hue_histogram, color_b.hue_histogram)
    sat = compare_histograms(color_a.saturation_histogram, color_b.saturation_histogram)
    val = compare_histograms(color_a.value_histogram, color_b.value_histogram)
    score = hue * HUE_WEIGHT + sat * SATURATION_WEIGHT + val * VALUE_WEIGHT

    top_a = set(color_a.color_names[:3])
    top_b = set(color_b.color_names[:3])
    shared = len(top_a & top_b)
    score += (shared / 3) * SHARED_NAME_BONUS

    return min(100.0, score)


def color_vector_similarity(color_a: Optional[ColorFingerprint],
                            color_b: Optional[ColorFingerprint]) -> float:
    """Cosine similarity (0-100) of the concatenated histogram vectors."""
    if color_a is None or color_b is None:
        return 0.0
    va = color_a.color_vector()
    vb = color_b.color_vector()
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0:
        return 0.0
    return max(0.0, float(np.dot(va, vb)) / norm * 100)
