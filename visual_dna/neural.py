"""
Neural embeddings and zero-shot entity classification.

Two pretrained models add semantic signal the handcrafted features lack:
    - ViT (google/vit-base-patch16-224-in21k): mean-pooled, L2-normalized
      image embedding used for cosine similarity between photos
    - CLIP (openai/clip-vit-base-patch32): zero-shot classification of the
      photo against a fixed set of prompts (pet, person, vehicle, ...)

Model loading is slow and memory hungry, so the provider loads lazily,
exactly once per process, and concurrent first callers wait on the same
in-flight load. If the models cannot be loaded (package missing, no
network, DISABLE_NEURAL_MODELS=true) the provider reports itself
unavailable and every call returns None; the matcher then drops the
visual and object dimensions and renormalizes the remaining weights.
"""

import os
import hashlib
import logging
import threading
from functools import lru_cache
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import faiss
import numpy as np

from .models import NeuralFingerprint

logger = logging.getLogger(__name__)

EMBEDDING_MODEL = os.environ.get("EMBEDDING_MODEL", "google/vit-base-patch16-224-in21k")
CLIP_MODEL = os.environ.get("CLIP_MODEL", "openai/clip-vit-base-patch32")

# Labels scoring at least this probability are kept as detected objects
LABEL_MIN_SCORE = float(os.environ.get("NEURAL_LABEL_MIN_SCORE", "0.15"))
# Values of the embedding that feed the short digest
EMBEDDING_HASH_VALUES = 64

# (prompt, label, entity type)
ENTITY_LABELS: List[Tuple[str, str, str]] = [
    ("a photo of a pet dog or cat", "pet", "pet"),
    ("a photo of a person", "person", "person"),
    ("a photo of a vehicle like a car, motorcycle, or bicycle", "vehicle", "vehicle"),
    ("a photo of a document, ID card, or license", "document", "document"),
    ("a photo of an item, object, or belonging", "item", "item"),
    ("a photo of jewelry or accessory", "jewelry", "item"),
    ("a photo of electronics like phone, laptop, or camera", "electronics", "item"),
    ("a photo of keys or keychain", "keys", "item"),
    ("a photo of a wallet or purse", "wallet", "item"),
    ("a photo of a bag or backpack", "bag", "item"),
]


def neural_models_disabled() -> bool:
    return os.environ.get("DISABLE_NEURAL_MODELS", "").lower() in ("1", "true", "yes")


class NeuralBackend(Protocol):
    """Loaded models able to embed and classify an RGB image."""

    def embed(self, image_np: np.ndarray) -> np.ndarray:
        ...

    def classify(self, image_np: np.ndarray, prompts: Sequence[str]) -> Sequence[float]:
        ...


class TransformersBackend:
    """
    ViT + CLIP backend built on Hugging Face transformers.

    Imports are deferred so the package works without the optional
    'neural' extra installed; constructing this class is the expensive
    model load.
    """

    def __init__(self, embedding_model: str = EMBEDDING_MODEL, clip_model: str = CLIP_MODEL):
        import torch
        from transformers import AutoImageProcessor, CLIPModel, CLIPProcessor, ViTModel

        logger.info(f"Loading embedding model {embedding_model} (first time may take a moment)...")
        self._torch = torch
        self._vit_processor = AutoImageProcessor.from_pretrained(embedding_model)
        self._vit = ViTModel.from_pretrained(embedding_model).eval()

        logger.info(f"Loading CLIP model {clip_model}...")
        self._clip_processor = CLIPProcessor.from_pretrained(clip_model)
        self._clip = CLIPModel.from_pretrained(clip_model).eval()
        logger.info("Neural models loaded successfully")

    @staticmethod
    def _to_pil(image_np: np.ndarray):
        from PIL import Image
        return Image.fromarray(image_np.astype(np.uint8)).convert("RGB")

    def embed(self, image_np: np.ndarray) -> np.ndarray:
        inputs = self._vit_processor(images=self._to_pil(image_np), return_tensors="pt")
        with self._torch.no_grad():
            outputs = self._vit(**inputs)
        pooled = outputs.last_hidden_state.mean(dim=1)[0].cpu().numpy().astype(np.float32)
        norm = np.linalg.norm(pooled)
        return pooled / norm if norm > 0 else pooled

    def classify(self, image_np: np.ndarray, prompts: Sequence[str]) -> Sequence[float]:
        inputs = self._clip_processor(text=list(prompts), images=self._to_pil(image_np),
                                      return_tensors="pt", padding=True)
        with self._torch.no_grad():
            outputs = self._clip(**inputs)
        probs = outputs.logits_per_image.softmax(dim=1)[0]
        return [float(p) for p in probs]


class NeuralEmbeddingProvider:
    """
    Process-wide handle to the neural models with once-only loading.

    Args:
        loader: Zero-argument callable that builds a NeuralBackend.
        enabled: Override for DISABLE_NEURAL_MODELS.
    """

    def __init__(self, loader: Callable[[], NeuralBackend] = TransformersBackend,
                 enabled: Optional[bool] = None):
        self._loader = loader
        self._enabled = (not neural_models_disabled()) if enabled is None else enabled
        self._lock = threading.Lock()
        self._backend: Optional[NeuralBackend] = None
        self._attempted = False
        self.load_count = 0

    def _get_backend(self) -> Optional[NeuralBackend]:
        if self._attempted:
            return self._backend
        with self._lock:
            if self._attempted:
                return self._backend
            if not self._enabled:
                logger.info("Neural models disabled by configuration")
            else:
                self.load_count += 1
                try:
                    self._backend = self._loader()
                except Exception as e:
                    logger.warning(f"Neural models unavailable, continuing without them: {e}")
                    self._backend = None
            self._attempted = True
            return self._backend

    def is_available(self) -> bool:
        return self._get_backend() is not None

    def embed(self, image_np: np.ndarray) -> Optional[np.ndarray]:
        """L2-normalized embedding, or None when models are unavailable."""
        backend = self._get_backend()
        if backend is None:
            return None
        try:
            return np.asarray(backend.embed(image_np), dtype=np.float32)
        except Exception as e:
            logger.warning(f"Embedding generation failed: {e}")
            return None

    def classify(self, image_np: np.ndarray) -> Tuple[str, float, Tuple[str, ...]]:
        """
        Zero-shot entity classification.

        Returns:
            (entity type, confidence, detected labels). ("unknown", 0.0, ())
            when models are unavailable.
        """
        backend = self._get_backend()
        if backend is None:
            return "unknown", 0.0, ()
        try:
            scores = list(backend.classify(image_np, [p for p, _, _ in ENTITY_LABELS]))
        except Exception as e:
            logger.warning(f"Zero-shot classification failed: {e}")
            return "unknown", 0.0, ()
        if len(scores) != len(ENTITY_LABELS):
            return "unknown", 0.0, ()

        best = int(np.argmax(scores))
        labels = tuple(label for (_, label, _), score in zip(ENTITY_LABELS, scores)
                       if score >= LABEL_MIN_SCORE)
        return ENTITY_LABELS[best][2], round(float(scores[best]), 4), labels

    def fingerprint(self, image_np: np.ndarray) -> Optional[NeuralFingerprint]:
        """Embedding, digest and classification bundled for a VisualDNA."""
        embedding = self.embed(image_np)
        if embedding is None:
            return None
        entity, confidence, labels = self.classify(image_np)
        return NeuralFingerprint(
            embedding=tuple(float(v) for v in embedding),
            embedding_hash=hash_embedding(embedding),
            entity_type=entity,
            entity_confidence=confidence,
            labels=labels,
        )


@lru_cache(maxsize=None)
def get_default_provider() -> NeuralEmbeddingProvider:
    """Shared provider for the process."""
    return NeuralEmbeddingProvider()


def hash_embedding(embedding: Optional[Sequence[float]]) -> Optional[str]:
    """8-char md5 digest of the leading embedding values."""
    if embedding is None or len(embedding) == 0:
        return None
    text = ",".join(f"{float(v):.4f}" for v in list(embedding)[:EMBEDDING_HASH_VALUES])
    return hashlib.md5(text.encode("utf-8")).hexdigest()[:8]


def cosine_similarity(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> float:
    """Cosine similarity; 0.0 for missing, mismatched or zero vectors."""
    if a is None or b is None:
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.size == 0 or va.shape != vb.shape:
        return 0.0
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def find_similar(query: Sequence[float],
                 candidates: Dict[str, Sequence[float]],
                 threshold: float = 0.7,
                 limit: int = 10) -> List[Tuple[str, float]]:
    """
    Nearest candidates by cosine similarity using a FAISS inner-product index.

    Args:
        query: Query embedding.
        candidates: Mapping of id to embedding (same dimension as query).
        threshold: Minimum cosine similarity to keep.
        limit: Maximum results.

    Returns:
        List of (id, similarity) sorted by similarity descending.

    Raises:
        ValueError: If candidate dimensions don't match the query.
    """
    if not candidates:
        return []
    ids = list(candidates)
    matrix = np.vstack([np.asarray(candidates[i], dtype=np.float32) for i in ids])
    q = np.asarray(query, dtype=np.float32).reshape(1, -1)
    if q.shape[1] != matrix.shape[1]:
        raise ValueError(
            f"Query dimension {q.shape[1]} doesn't match "
            f"candidate dimension {matrix.shape[1]}"
        )

    faiss.normalize_L2(matrix)
    faiss.normalize_L2(q)
    index = faiss.IndexFlatIP(matrix.shape[1])
    index.add(matrix)

    k = min(limit, index.ntotal)
    scores, indices = index.search(q, k)
    return [
        (ids[idx], round(float(score), 4))
        for score, idx in zip(scores[0], indices[0])
        if idx >= 0 and score >= threshold
    ]
