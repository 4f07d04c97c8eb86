"""
Image decoding and preprocessing for fingerprint extraction.

Every extractor works on a decoded RGB uint8 buffer. This module turns
uploaded bytes into that buffer and provides the fixed-size resizes the
hash, color, shape and texture extractors rely on, plus the grayscale
variants fed to the OCR engine.

Resizes always stretch to the exact target ("fill"), except the
letterbox helper which preserves aspect ratio on a white canvas for the
shape signature.
"""

import cv2
import numpy as np
import logging
from typing import Dict, Tuple

from .exceptions import ImageDecodeError

logger = logging.getLogger(__name__)

# Sharpening kernel used before OCR
SHARPEN_KERNEL = np.array([[0, -1, 0],
                           [-1, 5, -1],
                           [0, -1, 0]], dtype=np.float32)

# License plates are small in most photos; upscale so glyphs are readable
PLATE_MIN_WIDTH = 1000
PLATE_THRESHOLD = 128


def decode_image(image_bytes: bytes) -> np.ndarray:
    """
    Decode encoded image bytes (JPEG, PNG, WebP, ...) into RGB uint8.

    Args:
        image_bytes: Raw file contents.

    Returns:
        RGB uint8 array of shape (h, w, 3).

    Raises:
        ImageDecodeError: If the bytes are empty or not a decodable image.
    """
    if not image_bytes:
        raise ImageDecodeError("Empty image payload")

    buffer = np.frombuffer(image_bytes, dtype=np.uint8)
    image = cv2.imdecode(buffer, cv2.IMREAD_UNCHANGED)
    if image is None:
        raise ImageDecodeError("Could not decode image bytes")
    if image.dtype == np.uint16:
        # 16-bit PNG/TIFF: keep the high byte
        image = (image >> 8).astype(np.uint8)

    return normalize_image(_to_rgb(image))


def _to_rgb(image: np.ndarray) -> np.ndarray:
    """Convert a decoded OpenCV buffer (gray, BGR or BGRA) to RGB."""
    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2RGB)
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2RGB)
    return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)


def normalize_image(image_np: np.ndarray) -> np.ndarray:
    """Ensure image is uint8 format."""
    if image_np.dtype != np.uint8:
        if image_np.max() <= 1.0:
            image_np = (image_np * 255).astype(np.uint8)
        else:
            image_np = np.clip(image_np, 0, 255).astype(np.uint8)
    return image_np


def to_grayscale(image_np: np.ndarray) -> np.ndarray:
    """Return a single-channel uint8 view of an RGB or gray image."""
    image_np = normalize_image(image_np)
    if image_np.ndim == 3:
        return cv2.cvtColor(image_np, cv2.COLOR_RGB2GRAY)
    return image_np


def resize_exact(image_np: np.ndarray, width: int, height: int) -> np.ndarray:
    """Stretch an image to exactly width x height, ignoring aspect ratio."""
    return cv2.resize(image_np, (width, height), interpolation=cv2.INTER_AREA)


def resize_gray(image_np: np.ndarray, width: int, height: int) -> np.ndarray:
    """Grayscale and stretch to width x height, returned as float64."""
    return resize_exact(to_grayscale(image_np), width, height).astype(np.float64)


def resize_rgb(image_np: np.ndarray, width: int, height: int) -> np.ndarray:
    """Stretch an RGB image to width x height, returned as float64."""
    return resize_exact(normalize_image(image_np), width, height).astype(np.float64)


def letterbox(image_np: np.ndarray, size: int,
              background: Tuple[int, int, int] = (255, 255, 255)) -> np.ndarray:
    """
    Fit an image inside a size x size canvas, preserving aspect ratio.

    The image is scaled to fit ("contain") and centred on a solid
    background, so tall and wide objects keep their silhouette.

    Args:
        image_np: RGB uint8 image.
        size: Side length of the square output.
        background: RGB fill colour for the padding.

    Returns:
        RGB uint8 image of shape (size, size, 3).
    """
    image_np = normalize_image(image_np)
    h, w = image_np.shape[:2]
    scale = size / max(h, w)
    new_w = max(1, int(round(w * scale)))
    new_h = max(1, int(round(h * scale)))
    resized = cv2.resize(image_np, (new_w, new_h), interpolation=cv2.INTER_AREA)

    canvas = np.empty((size, size, 3), dtype=np.uint8)
    canvas[:, :] = background
    y0 = (size - new_h) // 2
    x0 = (size - new_w) // 2
    canvas[y0:y0 + new_h, x0:x0 + new_w] = resized
    return canvas


def _sharpen(gray: np.ndarray) -> np.ndarray:
    return cv2.filter2D(gray, -1, SHARPEN_KERNEL)


def _stretch_contrast(gray: np.ndarray) -> np.ndarray:
    return cv2.normalize(gray, None, 0, 255, cv2.NORM_MINMAX)


def ocr_variants(image_np: np.ndarray) -> Dict[str, np.ndarray]:
    """
    Build the grayscale variants passed to the OCR engine.

    Variants:
        standard       contrast-stretched and sharpened
        rotated90      standard rotated clockwise
        rotated270     standard rotated counter-clockwise
        high_contrast  CLAHE equalized then Otsu binarized
        license_plate  upscaled, sharpened and hard thresholded

    Args:
        image_np: RGB uint8 image.

    Returns:
        Dict mapping variant name to a uint8 grayscale image.
    """
    gray = to_grayscale(image_np)
    standard = _sharpen(_stretch_contrast(gray))

    clahe = cv2.createCLAHE(clipLimit=3.0, tileGridSize=(8, 8))
    _, high_contrast = cv2.threshold(clahe.apply(gray), 0, 255,
                                     cv2.THRESH_BINARY + cv2.THRESH_OTSU)

    h, w = gray.shape[:2]
    plate = gray
    if w < PLATE_MIN_WIDTH:
        scale = PLATE_MIN_WIDTH / w
        plate = cv2.resize(gray, (PLATE_MIN_WIDTH, max(1, int(h * scale))),
                           interpolation=cv2.INTER_CUBIC)
    _, plate = cv2.threshold(_sharpen(_stretch_contrast(plate)),
                             PLATE_THRESHOLD, 255, cv2.THRESH_BINARY)

    return {
        "standard": standard,
        "rotated90": cv2.rotate(standard, cv2.ROTATE_90_CLOCKWISE),
        "rotated270": cv2.rotate(standard, cv2.ROTATE_90_COUNTERCLOCKWISE),
        "high_contrast": high_contrast,
        "license_plate": plate,
    }
