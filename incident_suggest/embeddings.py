from __future__ import annotations

"""
Pluggable Embedding Providers

Two backends behind one interface (`embed(texts) -> (n, d) float32`):
- SentenceTransformerProvider: real semantic model, loaded lazily with
  double-check locking
- HashEmbeddingProvider: deterministic hash-based vectors for development and
  CI; no semantic meaning, so retrieval trusts it less

Both return L2-normalized rows. `is_semantic` tells retrieval which
relevance threshold applies.
"""

import asyncio
import hashlib
import threading
from abc import ABC, abstractmethod
from typing import Any, List, Optional

import numpy as np
from loguru import logger

from incident_suggest.config import Settings
from incident_suggest.errors import EmbeddingProviderError


def _l2_normalize(matrix: np.ndarray) -> np.ndarray:
    # divide by norm + epsilon to avoid division by zero
    return matrix / (np.linalg.norm(matrix, axis=1, keepdims=True) + 1e-12)


class EmbeddingProvider(ABC):
    """Text -> fixed-length vector."""

    name: str = "base"
    is_semantic: bool = False

    @property
    @abstractmethod
    def dimension(self) -> int:
        ...

    @abstractmethod
    def embed(self, texts: List[str]) -> np.ndarray:
        """Embed a batch of texts into L2-normalized float32 rows."""

    async def embed_async(self, texts: List[str], timeout: Optional[float] = None) -> np.ndarray:
        """
        Run `embed` in a worker thread with a bounded wait.

        Raises:
            EmbeddingProviderError: on timeout or any provider failure
        """
        try:
            return await asyncio.wait_for(asyncio.to_thread(self.embed, texts), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise EmbeddingProviderError(
                f"Embedding timed out after {timeout}s", provider=self.name, cause=e
            ) from e
        except EmbeddingProviderError:
            raise
        except Exception as e:
            raise EmbeddingProviderError(f"Embedding failed: {e}", provider=self.name, cause=e) from e


class HashEmbeddingProvider(EmbeddingProvider):
    """Deterministic pseudo-embeddings.

    Each whitespace token is hashed into a bucket with a signed weight, so
    texts sharing tokens land close together. Stable across processes
    (sha1, not Python's randomized hash()).
    """

    name = "hash"
    is_semantic = False

    def __init__(self, dim: int = 256):
        self._dim = dim

    @property
    def dimension(self) -> int:
        return self._dim

    def _vector(self, text: str) -> np.ndarray:
        vec = np.zeros(self._dim, dtype=np.float32)
        for token in text.lower().split():
            digest = hashlib.sha1(token.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "little") % self._dim
            sign = 1.0 if digest[4] % 2 == 0 else -1.0
            vec[bucket] += sign
        return vec

    def embed(self, texts: List[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self._dim), dtype=np.float32)
        matrix = np.vstack([self._vector(t or "") for t in texts]).astype(np.float32)
        return _l2_normalize(matrix).astype(np.float32)


class SentenceTransformerProvider(EmbeddingProvider):
    """SentenceTransformer-backed semantic embeddings."""

    name = "sentence-transformers"
    is_semantic = True

    def __init__(self, model_name: str, max_seq_length: int = 512):
        self.model_name = model_name
        self.max_seq_length = max_seq_length
        self._model: Optional[Any] = None
        self._lock = threading.Lock()

    def _get_model(self) -> Any:
        # First check (no lock - fast path)
        if self._model is not None:
            return self._model

        with self._lock:
            if self._model is None:
                from sentence_transformers import SentenceTransformer

                logger.info(f"Loading embedding model: {self.model_name}")
                model = SentenceTransformer(self.model_name)
                model.max_seq_length = self.max_seq_length
                self._model = model
                logger.info(f"✓ Embedding model loaded: {self.model_name}")
        return self._model

    @property
    def dimension(self) -> int:
        return int(self._get_model().get_sentence_embedding_dimension())

    def embed(self, texts: List[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dimension), dtype=np.float32)
        model = self._get_model()
        embeddings: np.ndarray = model.encode(
            [t.strip() for t in texts], convert_to_numpy=True
        ).astype(np.float32)
        return _l2_normalize(embeddings).astype(np.float32)


def create_embedding_provider(settings: Settings) -> EmbeddingProvider:
    """Build the provider selected by EMBEDDINGS_BACKEND."""
    if settings.embeddings_backend == "sentence-transformers":
        logger.info(f"Embeddings backend: sentence-transformers ({settings.embedding_model})")
        return SentenceTransformerProvider(settings.embedding_model)
    logger.info(f"Embeddings backend: hash (dim={settings.hash_embedding_dim}), degraded relevance threshold")
    return HashEmbeddingProvider(dim=settings.hash_embedding_dim)
