"""Vector embeddings and cosine similarity.

Encoding runs in a worker thread; stored vectors are little-endian float32
BLOBs.
"""

from __future__ import annotations

import asyncio
from typing import Sequence

import numpy as np
from loguru import logger

from .config import EmbeddingConfig


def cosine_similarity(a: Sequence[float] | None, b: Sequence[float] | None) -> float:
    """Cosine similarity of two vectors.

    Returns 0.0 for missing, empty, mismatched or zero-norm vectors instead of
    raising.
    """
    if a is None or b is None or len(a) == 0 or len(a) != len(b):
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)


class EmbeddingService:
    """sentence-transformers embeddings, loaded on first use.

    ``model_tag`` is stamped on every stored record so vectors from
    different models are never compared.
    """

    def __init__(self, config: EmbeddingConfig | None = None):
        self._config = config or EmbeddingConfig()
        self._model = None
        self._dimension = self._config.dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_tag(self) -> str:
        return self._config.model

    def _ensure_model(self) -> None:
        if self._model is not None:
            return

        from sentence_transformers import SentenceTransformer

        logger.info(f"Loading embedding model: {self._config.model}")
        self._model = SentenceTransformer(
            self._config.model,
            trust_remote_code=self._config.trust_remote_code,
        )
        self._dimension = self._model.get_sentence_embedding_dimension()
        logger.info(f"Embedding model loaded: dim={self._dimension}")

    def encode(self, texts: list[str]) -> list[list[float]]:
        """Unit-length vectors for ``texts``."""
        if not texts:
            return []

        self._ensure_model()

        vectors: np.ndarray = self._model.encode(
            texts, batch_size=32, show_progress_bar=False,
            normalize_embeddings=True,
        )
        return vectors.tolist()

    async def embed(self, text: str) -> list[float]:
        """Encode one text in a worker thread."""
        vectors = await asyncio.to_thread(self.encode, [text])
        return vectors[0] if vectors else []

    @staticmethod
    def serialize_embedding(embedding: Sequence[float]) -> bytes:
        return np.asarray(embedding, dtype="<f4").tobytes()

    @staticmethod
    def deserialize_embedding(blob: bytes) -> list[float]:
        return np.frombuffer(blob, dtype="<f4").tolist()
