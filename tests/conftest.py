"""Shared test fixtures for Visual DNA tests."""

import numpy as np
import cv2
import pytest

from visual_dna.identifiers import OcrReading
from visual_dna.models import ColorFingerprint, DominantColor


def make_color(*colors, hue=None):
    """
    Hand-built colour fingerprint.

    Args:
        colors: (name, percentage) pairs, most dominant first.
        hue: Optional 36-bin hue histogram; all mass in bin 0 otherwise.
    """
    hue = tuple(hue) if hue is not None else (100,) + (0,) * 35
    dominant = tuple(DominantColor(name, name[:3].upper(), pct) for name, pct in colors)
    return ColorFingerprint(
        hue_histogram=hue,
        saturation_histogram=(0,) * 5 + (100,) + (0,) * 4,
        value_histogram=(0,) * 7 + (100,) + (0,) * 2,
        dominant_colors=dominant,
        average_rgb=(128, 128, 128),
        average_hsv=(0, 0, 50),
        average_color_name=dominant[0].name if dominant else "gray",
        color_code=".".join(c.abbreviation for c in dominant[:2]),
        signature="0" * 16,
    )


def encode_png(img):
    """Encode an RGB test image as PNG bytes."""
    ok, buffer = cv2.imencode(".png", cv2.cvtColor(img, cv2.COLOR_RGB2BGR))
    assert ok
    return buffer.tobytes()


def draw_bicycle(angle=0.0):
    """A red bicycle on white, optionally rotated about the centre."""
    img = np.ones((200, 300, 3), dtype=np.uint8) * 255
    red = (200, 30, 30)
    cv2.circle(img, (80, 130), 50, red, 8)
    cv2.circle(img, (220, 130), 50, red, 8)
    cv2.line(img, (80, 130), (140, 70), red, 8)
    cv2.line(img, (140, 70), (220, 130), red, 8)
    cv2.line(img, (140, 70), (190, 70), red, 8)
    cv2.line(img, (80, 130), (160, 130), red, 8)
    cv2.line(img, (160, 130), (140, 70), red, 8)
    if angle:
        matrix = cv2.getRotationMatrix2D((150, 100), angle, 1.0)
        img = cv2.warpAffine(img, matrix, (300, 200),
                             borderMode=cv2.BORDER_CONSTANT,
                             borderValue=(255, 255, 255))
    return img


class FakeOcrEngine:
    """OCR engine returning one canned reading for every variant."""

    def __init__(self, text, confidence=85.0, words=()):
        self.reading = OcrReading(text=text, confidence=confidence, words=tuple(words))
        self.calls = 0

    def recognize(self, image):
        self.calls += 1
        return self.reading


class FailingOcrEngine:
    def recognize(self, image):
        raise RuntimeError("tesseract crashed")


class FakeNeuralBackend:
    """Deterministic stand-in for the ViT/CLIP models."""

    def __init__(self, embedding=None, scores=None):
        self.embedding = np.asarray(
            embedding if embedding is not None else [0.6, 0.8, 0.0, 0.0],
            dtype=np.float32)
        self.scores = scores

    def embed(self, image_np):
        return self.embedding

    def classify(self, image_np, prompts):
        if self.scores is not None:
            return self.scores
        # Everything looks like a wallet
        scores = [0.02] * len(prompts)
        scores[8] = 1.0 - 0.02 * (len(prompts) - 1)
        return scores


@pytest.fixture
def red_square_image():
    """Generate a 200x200 red square on white background."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 255
    img[40:160, 40:160] = [200, 30, 30]  # Red square
    return img


@pytest.fixture
def blue_circle_image():
    """Generate a 200x200 blue circle on white background."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 255
    cv2.circle(img, (100, 100), 60, (30, 30, 200), -1)
    return img


@pytest.fixture
def green_rectangle_image():
    """Generate a 200x200 green rectangle on white background."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 255
    img[30:170, 60:140] = [30, 180, 30]  # Tall green rectangle
    return img


@pytest.fixture
def noise_image():
    """Generate a 200x200 random noise image."""
    rng = np.random.RandomState(42)
    return rng.randint(0, 255, (200, 200, 3), dtype=np.uint8)


@pytest.fixture
def fine_stripes_image():
    """256x256 horizontal black/white stripes, 16 px per band."""
    img = np.ones((256, 256, 3), dtype=np.uint8) * 255
    for y in range(0, 256, 32):
        img[y:y + 16] = 0
    return img


@pytest.fixture
def wide_stripes_image():
    """256x256 horizontal stripes, one band per pattern grid row."""
    img = np.ones((256, 256, 3), dtype=np.uint8) * 240
    for y in range(0, 256, 128):
        img[y:y + 64] = [40, 40, 40]
    return img


@pytest.fixture
def wallet_image():
    """Landscape navy wallet on a beige table."""
    img = np.zeros((160, 240, 3), dtype=np.uint8)
    img[:, :] = [225, 205, 170]
    img[30:130, 40:200] = [20, 30, 90]
    return img


@pytest.fixture
def phone_image():
    """Portrait bright red phone on a near-black background."""
    img = np.zeros((220, 120, 3), dtype=np.uint8)
    img[:, :] = [25, 25, 25]
    img[35:185, 25:95] = [230, 40, 40]
    return img


@pytest.fixture
def bicycle_image():
    return draw_bicycle()


@pytest.fixture
def bicycle_rotated_image():
    """Same bicycle photographed at a slight tilt."""
    return draw_bicycle(angle=5.0)
