from __future__ import annotations

"""
In-memory vector index over solution chunks.

Chunks are keyed by (owner_id, chunk_index) with upsert semantics, and an
owner's chunks can be superseded wholesale on re-index. Search is brute-force
cosine similarity with numpy over a snapshot taken under the lock, so writers
never block a running search for longer than the copy.

Growth is bounded per owner: at most `max_chunks_per_owner` chunks are kept
for any one document.
"""

import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List

import numpy as np
from loguru import logger

from incident_suggest.domain import VectorChunk

DEFAULT_MAX_CHUNKS_PER_OWNER = 200


@dataclass
class VectorMatch:
    """One chunk hit from a similarity search."""
    owner_id: str
    chunk_index: int
    text: str
    score: float


class VectorIndex:
    """
    Thread-safe chunk store with cosine-similarity search.

    Vectors of a different dimension than the query are skipped during
    search (logged once per search), never fatal.
    """

    def __init__(self, max_chunks_per_owner: int = DEFAULT_MAX_CHUNKS_PER_OWNER):
        self.max_chunks_per_owner = max_chunks_per_owner
        self._chunks: Dict[str, Dict[int, VectorChunk]] = {}
        self._lock = threading.RLock()
        self.rejected_chunks = 0

    def index_chunk(self, owner_id: str, chunk_index: int, text: str, vector: np.ndarray) -> bool:
        """
        Insert or replace one chunk.

        Returns:
            False if the chunk was rejected because the owner is at capacity
        """
        chunk = VectorChunk(
            owner_id=owner_id,
            chunk_index=chunk_index,
            text=text,
            vector=np.asarray(vector, dtype=np.float32).ravel(),
        )
        with self._lock:
            owned = self._chunks.setdefault(owner_id, {})
            if chunk_index not in owned and len(owned) >= self.max_chunks_per_owner:
                self.rejected_chunks += 1
                logger.warning(
                    f"Vector index: owner {owner_id} already holds {len(owned)} chunks, "
                    f"rejecting chunk {chunk_index}"
                )
                return False
            owned[chunk_index] = chunk
        return True

    def replace_document(self, owner_id: str, chunks: Iterable[VectorChunk]) -> int:
        """
        Atomically supersede every chunk of an owner.

        Chunks beyond the per-owner cap are dropped with a warning.

        Returns:
            Number of chunks stored for the owner
        """
        fresh: Dict[int, VectorChunk] = {}
        dropped = 0
        for chunk in chunks:
            if chunk.owner_id != owner_id:
                raise ValueError(f"Chunk owner {chunk.owner_id!r} does not match {owner_id!r}")
            if chunk.chunk_index not in fresh and len(fresh) >= self.max_chunks_per_owner:
                dropped += 1
                continue
            fresh[chunk.chunk_index] = VectorChunk(
                owner_id=owner_id,
                chunk_index=chunk.chunk_index,
                text=chunk.text,
                vector=np.asarray(chunk.vector, dtype=np.float32).ravel(),
            )

        if dropped:
            logger.warning(f"Vector index: dropped {dropped} chunks beyond cap for owner {owner_id}")

        with self._lock:
            self.rejected_chunks += dropped
            if fresh:
                self._chunks[owner_id] = fresh
            else:
                self._chunks.pop(owner_id, None)
        return len(fresh)

    def remove_owner(self, owner_id: str) -> int:
        with self._lock:
            removed = self._chunks.pop(owner_id, {})
        return len(removed)

    def owners(self) -> List[str]:
        with self._lock:
            return list(self._chunks)

    def chunks_for(self, owner_id: str) -> List[VectorChunk]:
        with self._lock:
            owned = self._chunks.get(owner_id, {})
            return [owned[i] for i in sorted(owned)]

    def __len__(self) -> int:
        with self._lock:
            return sum(len(owned) for owned in self._chunks.values())

    def _snapshot(self, owner_prefix: str = "") -> List[VectorChunk]:
        with self._lock:
            return [
                chunk
                for owner_id, owned in self._chunks.items()
                if owner_id.startswith(owner_prefix)
                for chunk in owned.values()
            ]

    def search(self, query_vector: np.ndarray, top_k: int = 10, owner_prefix: str = "") -> List[VectorMatch]:
        """
        Find the chunks most similar to a query vector.

        Args:
            query_vector: Query embedding (any norm)
            top_k: Maximum number of matches
            owner_prefix: Only consider owners whose id starts with this
                (e.g. "GITHUB:" for one system)

        Returns:
            Matches sorted by cosine similarity, descending
        """
        if top_k <= 0:
            return []

        query = np.asarray(query_vector, dtype=np.float32).ravel()
        query_norm = np.linalg.norm(query)
        if query_norm == 0:
            return []
        query = query / query_norm

        snapshot = self._snapshot(owner_prefix)
        usable = [c for c in snapshot if c.vector.shape[0] == query.shape[0]]
        skipped = len(snapshot) - len(usable)
        if skipped:
            logger.debug(f"Vector index: skipped {skipped} chunks with mismatched dimension")
        if not usable:
            return []

        matrix = np.vstack([c.vector for c in usable])
        norms = np.linalg.norm(matrix, axis=1)
        similarities = matrix @ query / (norms + 1e-12)

        # Stable sort keeps insertion order among equal scores
        top_indices = np.argsort(-similarities, kind="stable")[:top_k]
        return [
            VectorMatch(
                owner_id=usable[i].owner_id,
                chunk_index=usable[i].chunk_index,
                text=usable[i].text,
                score=float(similarities[i]),
            )
            for i in top_indices
        ]

    def stats(self) -> Dict[str, int]:
        with self._lock:
            owners = len(self._chunks)
            total = sum(len(owned) for owned in self._chunks.values())
            rejected = self.rejected_chunks
        return {"owners": owners, "chunks": total, "rejected_chunks": rejected}
