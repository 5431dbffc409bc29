from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Optional, Protocol, Sequence

import numpy as np

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")
_TRAILING_PUNCT = re.compile(r"[\s?!.]+$")


class Embedder(Protocol):
    """Maps text to a fixed-size vector."""

    async def embed(self, text: str) -> np.ndarray:
        ...


def normalize_query(query: str) -> str:
    """Lowercase, collapse whitespace and drop trailing punctuation."""

    return _TRAILING_PUNCT.sub("", _WHITESPACE.sub(" ", query.strip().lower()))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    left = np.asarray(a, dtype=np.float32)
    right = np.asarray(b, dtype=np.float32)
    if left.shape != right.shape:
        return 0.0
    denom = float(np.linalg.norm(left) * np.linalg.norm(right))
    if denom == 0.0:
        return 0.0
    return float(np.dot(left, right) / denom)


class SentenceTransformerEmbedder:
    """Query embedder backed by a sentence-transformers model, loaded on first use."""

    def __init__(self, model_name: str = "sentence-transformers/all-MiniLM-L6-v2", device: Optional[str] = None):
        self.model_name = model_name
        self.device = device
        self._model: Any = None

    def _load(self) -> Any:
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer  # type: ignore
            except ImportError as exc:
                raise RuntimeError(
                    "sentence-transformers package is required for SentenceTransformerEmbedder."
                ) from exc
            logger.info("Loading embeddings model %s", self.model_name)
            self._model = SentenceTransformer(self.model_name, device=self.device)
        return self._model

    def _encode(self, text: str) -> np.ndarray:
        model = self._load()
        vector = model.encode(
            [text], convert_to_numpy=True, normalize_embeddings=True, show_progress_bar=False
        )[0]
        return np.asarray(vector, dtype=np.float32)

    async def embed(self, text: str) -> np.ndarray:
        return await asyncio.to_thread(self._encode, text)
