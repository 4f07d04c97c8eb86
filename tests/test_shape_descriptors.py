"""Tests for shape signatures, edge fingerprints and shape comparison."""

import numpy as np
import pytest

from visual_dna.models import ShapeFingerprint
from visual_dna.shape_descriptors import (
    SHAPE_GRID, compare_shapes, extract_edge_fingerprint,
    extract_shape_fingerprint, shape_code,
)


class TestExtractShapeFingerprint:
    """Tests for shape signature extraction."""

    def test_signature_length(self, red_square_image):
        shape = extract_shape_fingerprint(red_square_image)
        assert len(shape.signature) == SHAPE_GRID * SHAPE_GRID

    def test_signature_range(self, noise_image):
        shape = extract_shape_fingerprint(noise_image)
        assert all(0 <= v <= 1 for v in shape.signature)
        assert not any(np.isnan(v) for v in shape.signature)

    def test_aspect_ratio_from_original_size(self, wallet_image, phone_image):
        assert extract_shape_fingerprint(wallet_image).aspect_ratio == pytest.approx(1.5)
        assert extract_shape_fingerprint(phone_image).aspect_ratio == pytest.approx(120 / 220, abs=1e-3)

    def test_blank_image_has_no_edges(self):
        blank = np.ones((200, 200, 3), dtype=np.uint8) * 255
        shape = extract_shape_fingerprint(blank)
        assert not any(shape.signature)
        assert shape.edge_density == 0.0

    def test_handles_grayscale_input(self):
        gray = np.ones((200, 200), dtype=np.uint8) * 255
        gray[40:160, 40:160] = 50
        shape = extract_shape_fingerprint(gray)
        assert len(shape.signature) == 64


class TestExtractEdgeFingerprint:
    """Tests for the Sobel edge fingerprint."""

    def test_hash_length(self, red_square_image):
        edges = extract_edge_fingerprint(red_square_image)
        assert len(edges.edge_hash) == 16
        assert 0 <= edges.edge_density <= 100

    def test_horizontal_stripes_are_horizontal(self, fine_stripes_image):
        edges = extract_edge_fingerprint(fine_stripes_image)
        assert edges.dominant_direction == "horizontal"
        assert edges.horizontal_edges > edges.vertical_edges

    def test_blank_image(self):
        blank = np.ones((64, 64, 3), dtype=np.uint8) * 200
        edges = extract_edge_fingerprint(blank)
        assert edges.horizontal_edges == 0
        assert edges.vertical_edges == 0


class TestCompareShapes:
    """Tests for shape fingerprint comparison."""

    def test_identical_shapes(self, red_square_image):
        shape = extract_shape_fingerprint(red_square_image)
        assert compare_shapes(shape, shape) == pytest.approx(1.0)

    def test_same_shape_different_color(self):
        """Same form in different colours should compare as the same shape."""
        red_rect = np.ones((200, 200, 3), dtype=np.uint8) * 255
        red_rect[40:160, 60:140] = [200, 30, 30]

        blue_rect = np.ones((200, 200, 3), dtype=np.uint8) * 255
        blue_rect[40:160, 60:140] = [30, 30, 200]

        score = compare_shapes(extract_shape_fingerprint(red_rect),
                               extract_shape_fingerprint(blue_rect))
        assert score > 0.9

    def test_different_shapes_lower_score(self, wallet_image, phone_image):
        wallet = extract_shape_fingerprint(wallet_image)
        phone = extract_shape_fingerprint(phone_image)
        assert compare_shapes(wallet, phone) < compare_shapes(wallet, wallet)

    def test_missing_is_none(self, red_square_image):
        shape = extract_shape_fingerprint(red_square_image)
        assert compare_shapes(shape, None) is None

    def test_length_mismatch_is_zero(self):
        short = ShapeFingerprint(signature=(0.1, 0.2), aspect_ratio=1.0, edge_density=0.1)
        full = ShapeFingerprint(signature=(0.1,) * 64, aspect_ratio=1.0, edge_density=0.1)
        assert compare_shapes(short, full) == 0.0

    def test_score_range(self, red_square_image, green_rectangle_image):
        score = compare_shapes(extract_shape_fingerprint(red_square_image),
                               extract_shape_fingerprint(green_rectangle_image))
        assert 0 <= score <= 1


class TestShapeCode:
    """Tests for the DNA id shape code."""

    def test_codes(self):
        assert shape_code(1.5) == "HORZ"
        assert shape_code(0.5) == "VERT"
        assert shape_code(1.0) == "SQR"
        assert shape_code(None) == "SQR"
