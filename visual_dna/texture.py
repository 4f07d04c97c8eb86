"""
Block-variance texture fingerprint and coarse pattern detection.

Texture: a 32x32 grayscale downsample is split into 4x4-pixel blocks and
the per-block variance classifies the surface as solid, smooth, textured
or complex. Row and column brightness profiles are scanned for
alternating light/dark transitions to flag striped surfaces.

Pattern: a 4x4 grid of mean cell colours distinguishes solid, striped,
spotted, mixed and gradient coats, which matters most for pets and
patterned bags.
"""

import os
import numpy as np
import logging

from .hashing import bits_to_hex
from .models import PatternInfo, TextureFingerprint
from .preprocessing import resize_gray, resize_rgb

logger = logging.getLogger(__name__)

TEXTURE_SIZE = 32
TEXTURE_BLOCK = 4

# Average block variance bands
SOLID_VARIANCE = 100
SMOOTH_VARIANCE = 500
TEXTURED_VARIANCE = 2000

# Stripe detection on row/column brightness profiles
STRIPE_MIN_STEP = 20
STRIPE_SCORE_MIN = float(os.environ.get("STRIPE_SCORE_MIN", "0.3"))

PATTERN_SIZE = 32
PATTERN_GRID = 4
PATTERN_SOLID_VARIANCE = 15
PATTERN_STRIPE_MIN = 30
PATTERN_STRIPE_CROSS_MAX = 15
PATTERN_SPOT_CONTRAST = 40
PATTERN_SPOT_COUNT = 4
PATTERN_MIXED_VARIANCE = 50


def _stripe_score(profile: np.ndarray) -> float:
    """
    Fraction of alternating light/dark transitions along a profile.

    Steps smaller than STRIPE_MIN_STEP are ignored, so flat bands of any
    width between transitions do not break the alternation.
    """
    steps = np.diff(profile)
    steps = steps[np.abs(steps) > STRIPE_MIN_STEP]
    if steps.size < 2:
        return 0.0
    alternations = int(np.count_nonzero(np.sign(steps[:-1]) != np.sign(steps[1:])))
    return alternations / (profile.size - 2)


def extract_texture_fingerprint(image_np: np.ndarray) -> TextureFingerprint:
    """
    Compute the texture hash, complexity, uniformity and texture class.

    Args:
        image_np: RGB or grayscale uint8 image.

    Returns:
        TextureFingerprint. Vertical stripes win when both directions
        qualify.
    """
    gray = resize_gray(image_np, TEXTURE_SIZE, TEXTURE_SIZE)
    grid = TEXTURE_SIZE // TEXTURE_BLOCK
    blocks = gray.reshape(grid, TEXTURE_BLOCK, grid, TEXTURE_BLOCK)
    variances = blocks.var(axis=(1, 3)).ravel()

    avg_variance = float(variances.mean())
    max_variance = float(variances.max())

    if avg_variance < SOLID_VARIANCE:
        pattern_type = "solid"
    elif avg_variance < SMOOTH_VARIANCE:
        pattern_type = "smooth"
    elif avg_variance < TEXTURED_VARIANCE:
        pattern_type = "textured"
    else:
        pattern_type = "complex"

    horizontal_score = _stripe_score(gray.mean(axis=1))
    vertical_score = _stripe_score(gray.mean(axis=0))
    if horizontal_score > STRIPE_SCORE_MIN:
        pattern_type = "horizontal_stripes"
    if vertical_score > STRIPE_SCORE_MIN:
        pattern_type = "vertical_stripes"

    median = np.sort(variances)[len(variances) // 2]
    uniformity = (1 - (max_variance - avg_variance) / (max_variance + 1)) * 100

    return TextureFingerprint(
        texture_hash=bits_to_hex(variances > median),
        complexity=int(round(avg_variance)),
        pattern_type=pattern_type,
        uniformity=int(round(uniformity)),
        horizontal_score=round(horizontal_score, 3),
        vertical_score=round(vertical_score, 3),
    )


def _spot_count(brightness: np.ndarray) -> int:
    """Cells whose brightness stands out from their 8-neighbourhood."""
    rows, cols = brightness.shape
    spots = 0
    for y in range(rows):
        for x in range(cols):
            neighbours = [
                brightness[ny, nx]
                for ny in range(max(0, y - 1), min(rows, y + 2))
                for nx in range(max(0, x - 1), min(cols, x + 2))
                if (ny, nx) != (y, x)
            ]
            if abs(brightness[y, x] - np.mean(neighbours)) > PATTERN_SPOT_CONTRAST:
                spots += 1
    return spots


def detect_pattern(image_np: np.ndarray) -> PatternInfo:
    """
    Classify the coarse colour pattern of an image.

    Args:
        image_np: RGB uint8 image.

    Returns:
        PatternInfo with type solid, striped, spotted, mixed or gradient.
        Failures degrade to solid with zero confidence.
    """
    try:
        rgb = resize_rgb(image_np, PATTERN_SIZE, PATTERN_SIZE)
        cell = PATTERN_SIZE // PATTERN_GRID
        cells = rgb.reshape(PATTERN_GRID, cell, PATTERN_GRID, cell, 3).mean(axis=(1, 3))

        average = cells.reshape(-1, 3).mean(axis=0)
        variance = float(np.mean(np.linalg.norm(cells - average, axis=2)))

        brightness = cells.mean(axis=2)
        horizontal_variance = float(np.sum(np.abs(np.diff(brightness.mean(axis=1)))))
        vertical_variance = float(np.sum(np.abs(np.diff(brightness.mean(axis=0)))))
        spots = _spot_count(brightness)

        if variance < PATTERN_SOLID_VARIANCE:
            return PatternInfo("solid", 90, spot_count=spots, variance=round(variance, 2))
        if horizontal_variance > PATTERN_STRIPE_MIN and vertical_variance < PATTERN_STRIPE_CROSS_MAX:
            return PatternInfo("striped", 70, direction="horizontal",
                               spot_count=spots, variance=round(variance, 2))
        if vertical_variance > PATTERN_STRIPE_MIN and horizontal_variance < PATTERN_STRIPE_CROSS_MAX:
            return PatternInfo("striped", 70, direction="vertical",
                               spot_count=spots, variance=round(variance, 2))
        if spots > PATTERN_SPOT_COUNT:
            return PatternInfo("spotted", 60, spot_count=spots, variance=round(variance, 2))
        if variance > PATTERN_MIXED_VARIANCE:
            return PatternInfo("mixed", 50, spot_count=spots, variance=round(variance, 2))
        return PatternInfo("gradient", 40, spot_count=spots, variance=round(variance, 2))

    except Exception as e:
        logger.warning(f"Pattern detection failed: {e}")
        return PatternInfo("solid", 0)
