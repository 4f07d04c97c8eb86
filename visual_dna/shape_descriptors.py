"""
Edge-based shape signatures and edge fingerprints.

Colour tells two objects apart only so far; a blue wallet and a blue
phone case share a histogram but not a silhouette. The shape signature
captures where edges sit in the frame:

    1. Letterbox the photo onto a 64x64 white canvas (aspect preserved)
    2. Min-max normalize the grayscale and apply an 8-neighbour Laplacian
    3. Sum edge energy in an 8x8 grid of cells -> 64-float signature

Alongside it, the edge fingerprint runs a Sobel operator on a 32x32
downsample and records a 64-bit edge hash plus the balance between
horizontal and vertical edges.
"""

import os
import cv2
import numpy as np
import logging
from typing import Optional

from .hashing import bits_to_hex
from .models import EdgeFingerprint, ShapeFingerprint
from .preprocessing import letterbox, resize_gray, to_grayscale

logger = logging.getLogger(__name__)

SHAPE_SIZE = 64
SHAPE_GRID = 8
EDGE_SIZE = 32
# Pixels brighter than mean * factor count as edges
EDGE_THRESHOLD_FACTOR = float(os.environ.get("EDGE_THRESHOLD_FACTOR", "1.5"))
# Minimum Sobel response for an edge to count toward a direction
DIRECTIONAL_EDGE_MIN = 30

# compare_shapes weights; must sum to 1.0
SHAPE_SIGNATURE_WEIGHT = float(os.environ.get("SHAPE_SIGNATURE_W", "0.6"))
SHAPE_ASPECT_WEIGHT = float(os.environ.get("SHAPE_ASPECT_W", "0.25"))
SHAPE_DENSITY_WEIGHT = float(os.environ.get("SHAPE_DENSITY_W", "0.15"))
DENSITY_DIFF_SCALE = 5

# Aspect ratio bands for the DNA shape code
WIDE_ASPECT = 1.3
TALL_ASPECT = 0.77

LAPLACIAN_KERNEL = np.array([[-1, -1, -1],
                             [-1, 8, -1],
                             [-1, -1, -1]], dtype=np.float64)


def extract_shape_fingerprint(image_np: np.ndarray) -> ShapeFingerprint:
    """
    Extract the 64-cell edge signature, aspect ratio and edge density.

    Args:
        image_np: RGB uint8 image at its original resolution.

    Returns:
        ShapeFingerprint. Aspect ratio comes from the original
        dimensions, not the letterboxed canvas.
    """
    h, w = image_np.shape[:2]
    aspect_ratio = w / h if h else 1.0

    gray = to_grayscale(letterbox(image_np, SHAPE_SIZE)).astype(np.float64)
    gray = cv2.normalize(gray, None, 0, 255, cv2.NORM_MINMAX)

    edges = cv2.filter2D(gray, cv2.CV_64F, LAPLACIAN_KERNEL,
                         borderType=cv2.BORDER_REPLICATE)
    edges = np.clip(edges, 0, 255)

    cell = SHAPE_SIZE // SHAPE_GRID
    cell_sums = edges.reshape(SHAPE_GRID, cell, SHAPE_GRID, cell).sum(axis=(1, 3))
    signature = cell_sums.ravel() / (cell * cell * 255)

    mean_edge = edges.mean()
    edge_density = float(np.mean(edges > mean_edge * EDGE_THRESHOLD_FACTOR)) if mean_edge > 0 else 0.0

    return ShapeFingerprint(
        signature=tuple(float(round(v, 4)) for v in signature),
        aspect_ratio=float(round(aspect_ratio, 4)),
        edge_density=float(round(edge_density, 4)),
    )


def extract_edge_fingerprint(image_np: np.ndarray) -> EdgeFingerprint:
    """
    Sobel edge fingerprint on a 32x32 grayscale downsample.

    Only the 30x30 interior is used so border padding never creates
    phantom edges. The first 64 thresholded magnitudes form the edge hash.
    """
    gray = resize_gray(image_np, EDGE_SIZE, EDGE_SIZE)
    gx = cv2.Sobel(gray, cv2.CV_64F, 1, 0, ksize=3)[1:-1, 1:-1]
    gy = cv2.Sobel(gray, cv2.CV_64F, 0, 1, ksize=3)[1:-1, 1:-1]
    magnitude = np.sqrt(gx ** 2 + gy ** 2).ravel()

    threshold = magnitude.mean() * EDGE_THRESHOLD_FACTOR
    is_edge = magnitude > threshold

    vertical = int(np.count_nonzero(np.abs(gx) > DIRECTIONAL_EDGE_MIN))
    horizontal = int(np.count_nonzero(np.abs(gy) > DIRECTIONAL_EDGE_MIN))

    return EdgeFingerprint(
        edge_hash=bits_to_hex(is_edge[:64]),
        edge_density=int(round(np.count_nonzero(is_edge) / magnitude.size * 100)),
        horizontal_edges=horizontal,
        vertical_edges=vertical,
        dominant_direction="horizontal" if horizontal > vertical else "vertical",
    )


def _centered_cosine(sig_a: np.ndarray, sig_b: np.ndarray) -> float:
    """Cosine of mean-centred signatures, clamped at zero."""
    a = sig_a - sig_a.mean()
    b = sig_b - sig_b.mean()
    norm = float(np.linalg.norm(a) * np.linalg.norm(b))
    if norm == 0:
        return 1.0 if np.allclose(sig_a, sig_b) else 0.0
    return max(0.0, float(np.dot(a, b)) / norm)


def compare_shapes(shape_a: Optional[ShapeFingerprint],
                   shape_b: Optional[ShapeFingerprint]) -> Optional[float]:
    """
    Compare two shape fingerprints.

    Blends signature cosine, aspect-ratio closeness and edge-density
    closeness.

    Returns:
        Similarity in [0, 1]; 0.0 if a signature is empty or the lengths
        differ; None if either fingerprint is missing.
    """
    if shape_a is None or shape_b is None:
        return None
    if not shape_a.signature or len(shape_a.signature) != len(shape_b.signature):
        return 0.0

    try:
        signature_score = _centered_cosine(np.asarray(shape_a.signature),
                                           np.asarray(shape_b.signature))
        aspect_score = max(0.0, 1 - abs(shape_a.aspect_ratio - shape_b.aspect_ratio))
        density_score = max(0.0, 1 - DENSITY_DIFF_SCALE * abs(shape_a.edge_density - shape_b.edge_density))

        return float(
            signature_score * SHAPE_SIGNATURE_WEIGHT
            + aspect_score * SHAPE_ASPECT_WEIGHT
            + density_score * SHAPE_DENSITY_WEIGHT
        )
    except Exception as e:
        logger.error(f"Shape comparison error: {e}")
        return 0.0


def shape_code(aspect_ratio: Optional[float]) -> str:
    """HORZ, VERT or SQR code for the DNA id."""
    if aspect_ratio is None:
        return "SQR"
    if aspect_ratio > WIDE_ASPECT:
        return "HORZ"
    if aspect_ratio < TALL_ASPECT:
        return "VERT"
    return "SQR"
