"""
Perceptual image hashes and Hamming-distance utilities.

Four 64-bit hashes are computed from grayscale downsamples:
    average   8x8, each pixel vs. the global mean
    difference  9x8, each pixel vs. its right neighbour
    perceptual  32x32 averaged into 8x8 blocks of 4x4, vs. the median of
                the non-DC block means (a cheap stand-in for a DCT pass)
    block       64x64 split into 8x8 blocks of 8x8 pixels, vs. their median

Hashes are packed MSB-first into 16-char hex strings. Each algorithm
fails independently to None, which callers treat as "unavailable",
never as a zero similarity.
"""

import logging
from typing import Optional

import numpy as np

from .models import PerceptualHashes
from .preprocessing import resize_gray

logger = logging.getLogger(__name__)

HASH_SIZE = 8
HASH_BITS = HASH_SIZE * HASH_SIZE
PHASH_SIZE = 32
BLOCK_HASH_SIZE = 64


def bits_to_hex(bits: np.ndarray) -> str:
    """Pack a boolean bit array MSB-first into a hex string."""
    return np.packbits(np.asarray(bits, dtype=bool).ravel()).tobytes().hex()


def hex_to_bits(hex_string: str) -> np.ndarray:
    """Unpack a hex string into a uint8 array of 0/1 bits."""
    return np.unpackbits(np.frombuffer(bytes.fromhex(hex_string), dtype=np.uint8))


def _upper_median(values: np.ndarray) -> float:
    ordered = np.sort(values.ravel())
    return float(ordered[len(ordered) // 2])


def _block_means(gray: np.ndarray, grid: int) -> np.ndarray:
    """Average a square buffer into a grid x grid array of block means."""
    size = gray.shape[0]
    block = size // grid
    return gray.reshape(grid, block, grid, block).mean(axis=(1, 3))


def average_hash(image_np: np.ndarray) -> str:
    """8x8 average hash: bit set where the pixel is brighter than the mean."""
    gray = resize_gray(image_np, HASH_SIZE, HASH_SIZE)
    return bits_to_hex(gray > gray.mean())


def difference_hash(image_np: np.ndarray) -> str:
    """9x8 difference hash: bit set where a pixel is darker than its right neighbour."""
    gray = resize_gray(image_np, HASH_SIZE + 1, HASH_SIZE)
    return bits_to_hex(gray[:, :-1] < gray[:, 1:])


def perceptual_hash(image_np: np.ndarray) -> str:
    """
    Block-mean approximation of a DCT perceptual hash.

    The 32x32 buffer is averaged into an 8x8 grid. The first block plays
    the role of the DC term and is left out of the median, then every
    block is compared to that median.
    """
    gray = resize_gray(image_np, PHASH_SIZE, PHASH_SIZE)
    means = _block_means(gray, HASH_SIZE)
    median = _upper_median(means.ravel()[1:])
    return bits_to_hex(means > median)


def block_hash(image_np: np.ndarray) -> str:
    """64x64 block-mean hash, the most robust of the four to cropping."""
    gray = resize_gray(image_np, BLOCK_HASH_SIZE, BLOCK_HASH_SIZE)
    means = _block_means(gray, HASH_SIZE)
    return bits_to_hex(means > _upper_median(means))


def hamming_distance(hash_a: str, hash_b: str) -> int:
    """
    Count differing bits between two equal-length hex hashes.

    Raises:
        ValueError: If the hashes differ in length.
    """
    if len(hash_a) != len(hash_b):
        raise ValueError(
            f"Hash length mismatch: {len(hash_a)} vs {len(hash_b)} hex chars"
        )
    return int(np.count_nonzero(hex_to_bits(hash_a) != hex_to_bits(hash_b)))


def hash_similarity(hash_a: Optional[str], hash_b: Optional[str]) -> Optional[float]:
    """
    Percentage of matching bits between two hashes.

    Returns:
        Similarity in [0, 100], or None when either hash is missing.

    Raises:
        ValueError: If the hashes differ in length.
    """
    if not hash_a or not hash_b:
        return None
    bits = len(hash_a) * 4
    distance = hamming_distance(hash_a, hash_b)
    return (bits - distance) / bits * 100


def _safe(name: str, fn, image_np: np.ndarray) -> Optional[str]:
    try:
        return fn(image_np)
    except Exception as e:
        logger.warning(f"{name} hash failed: {e}")
        return None


def compute_all_hashes(image_np: np.ndarray) -> PerceptualHashes:
    """
    Compute all four perceptual hashes for an image.

    Args:
        image_np: RGB or grayscale uint8 image.

    Returns:
        PerceptualHashes with None for any algorithm that failed.
    """
    return PerceptualHashes(
        p_hash=_safe("Perceptual", perceptual_hash, image_np),
        d_hash=_safe("Difference", difference_hash, image_np),
        a_hash=_safe("Average", average_hash, image_np),
        block_hash=_safe("Block", block_hash, image_np),
    )
