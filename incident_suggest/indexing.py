from __future__ import annotations

"""
Background indexing: solution document -> chunks -> vectors -> index.

Embedding runs in a worker thread with a bounded wait and never under the
index lock; the index swap per document is atomic (replace_document), so a
concurrent search sees either the old or the new chunk set.
"""

import time
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from loguru import logger

from incident_suggest.chunker import DEFAULT_MAX_CHARS, DEFAULT_OVERLAP_RATIO, chunk_text
from incident_suggest.domain import VectorChunk
from incident_suggest.embeddings import EmbeddingProvider
from incident_suggest.errors import EmbeddingProviderError, IndexingError
from incident_suggest.metrics import indexed_documents, vector_index_size
from incident_suggest.sources import SolutionDocument, SolutionStore
from incident_suggest.vector_index import VectorIndex


@dataclass
class IndexingReport:
    indexed: int = 0
    failed: int = 0
    chunks: int = 0
    removed: int = 0
    duration_ms: float = 0.0
    errors: List[str] = field(default_factory=list)


class IndexingPipeline:
    """Keeps the vector index in step with the solution store."""

    def __init__(
        self,
        store: SolutionStore,
        index: VectorIndex,
        provider: EmbeddingProvider,
        max_chars: int = DEFAULT_MAX_CHARS,
        overlap_ratio: float = DEFAULT_OVERLAP_RATIO,
        embedding_timeout: Optional[float] = 10.0,
    ):
        self.store = store
        self.index = index
        self.provider = provider
        self.max_chars = max_chars
        self.overlap_ratio = overlap_ratio
        self.embedding_timeout = embedding_timeout

    async def index_document(self, doc: SolutionDocument) -> int:
        """
        Store a document and (re)index its chunks.

        Returns:
            Number of chunks now held for the document

        Raises:
            IndexingError: if embedding fails; the previous chunks stay in place
        """
        self.store.upsert(doc)
        if not doc.active:
            self.index.remove_owner(doc.owner_id)
            return 0

        chunks = list(chunk_text(doc.index_text, self.max_chars, self.overlap_ratio))
        if not chunks:
            self.index.remove_owner(doc.owner_id)
            return 0

        try:
            vectors = await self.provider.embed_async([c.content for c in chunks], timeout=self.embedding_timeout)
        except EmbeddingProviderError as e:
            indexed_documents.labels(status="failure").inc()
            raise IndexingError(f"Could not embed {doc.owner_id}: {e.message}", owner_id=doc.owner_id, cause=e) from e

        stored = self.index.replace_document(
            doc.owner_id,
            (
                VectorChunk(owner_id=doc.owner_id, chunk_index=c.index, text=c.content, vector=vectors[i])
                for i, c in enumerate(chunks)
            ),
        )
        indexed_documents.labels(status="success").inc()
        vector_index_size.set(len(self.index))
        logger.debug(f"Indexed {doc.owner_id}: {stored} chunks")
        return stored

    async def index_all(self, docs: Optional[Iterable[SolutionDocument]] = None) -> IndexingReport:
        """
        Index many documents; one failure does not stop the batch.

        Args:
            docs: Documents to index; defaults to every active stored document
        """
        start = time.perf_counter()
        report = IndexingReport()
        batch = list(docs) if docs is not None else self.store.documents()

        for doc in batch:
            try:
                report.chunks += await self.index_document(doc)
                report.indexed += 1
            except IndexingError as e:
                report.failed += 1
                report.errors.append(e.message)
                logger.warning(f"Indexing failed for {doc.owner_id}: {e.message}")

        report.duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"Indexed {report.indexed}/{len(batch)} documents ({report.chunks} chunks, "
            f"{report.failed} failed) in {report.duration_ms:.0f}ms"
        )
        return report

    async def resync(self) -> IndexingReport:
        """Drop index owners without an active document, then re-index every active one."""
        active = {doc.owner_id for doc in self.store.documents()}
        removed = 0
        for owner_id in self.index.owners():
            if owner_id not in active:
                self.index.remove_owner(owner_id)
                removed += 1

        report = await self.index_all()
        report.removed = removed
        return report

    def remove_document(self, owner_id: str) -> bool:
        removed = self.store.remove(owner_id)
        self.index.remove_owner(owner_id)
        vector_index_size.set(len(self.index))
        return removed
