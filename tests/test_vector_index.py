"""Tests for the in-memory vector index."""

import threading

import numpy as np
import pytest

from incident_suggest.domain import VectorChunk
from incident_suggest.vector_index import VectorIndex


def unit(*values):
    vec = np.array(values, dtype=np.float32)
    return vec / np.linalg.norm(vec)


class TestIndexing:
    """Upsert, capacity, and owner replacement."""

    def test_upsert_same_key_replaces(self):
        index = VectorIndex()
        index.index_chunk("JIRA:1", 0, "old", unit(1, 0))
        index.index_chunk("JIRA:1", 0, "new", unit(0, 1))

        chunks = index.chunks_for("JIRA:1")
        assert len(chunks) == 1
        assert chunks[0].text == "new"

    def test_owner_capacity_rejects_new_chunks(self):
        index = VectorIndex(max_chunks_per_owner=2)
        assert index.index_chunk("JIRA:1", 0, "a", unit(1, 0))
        assert index.index_chunk("JIRA:1", 1, "b", unit(1, 0))
        assert index.index_chunk("JIRA:1", 2, "c", unit(1, 0)) is False
        # Updating an existing chunk is still allowed at capacity
        assert index.index_chunk("JIRA:1", 1, "b2", unit(1, 0))
        assert len(index) == 2
        assert index.stats()["rejected_chunks"] == 1

    def test_replace_document_supersedes_all_chunks(self):
        index = VectorIndex()
        for i in range(3):
            index.index_chunk("JIRA:1", i, f"old {i}", unit(1, 0))

        stored = index.replace_document("JIRA:1", [VectorChunk("JIRA:1", 0, "fresh", unit(0, 1))])

        assert stored == 1
        assert [c.text for c in index.chunks_for("JIRA:1")] == ["fresh"]

    def test_replace_document_caps_chunks(self):
        index = VectorIndex(max_chunks_per_owner=2)
        chunks = [VectorChunk("GITHUB:7", i, str(i), unit(1, 0)) for i in range(5)]
        assert index.replace_document("GITHUB:7", chunks) == 2
        assert index.rejected_chunks == 3

    def test_replace_document_rejects_foreign_owner(self):
        index = VectorIndex()
        with pytest.raises(ValueError):
            index.replace_document("JIRA:1", [VectorChunk("JIRA:2", 0, "x", unit(1, 0))])

    def test_replace_with_nothing_removes_owner(self):
        index = VectorIndex()
        index.index_chunk("JIRA:1", 0, "a", unit(1, 0))
        index.replace_document("JIRA:1", [])
        assert index.owners() == []

    def test_remove_owner(self):
        index = VectorIndex()
        index.index_chunk("JIRA:1", 0, "a", unit(1, 0))
        index.index_chunk("JIRA:1", 1, "b", unit(1, 0))
        assert index.remove_owner("JIRA:1") == 2
        assert index.remove_owner("JIRA:1") == 0
        assert len(index) == 0


class TestSearch:
    """Cosine similarity search."""

    def test_orders_by_similarity(self):
        index = VectorIndex()
        index.index_chunk("A", 0, "exact", unit(1, 0, 0))
        index.index_chunk("B", 0, "close", unit(1, 1, 0))
        index.index_chunk("C", 0, "far", unit(0, 0, 1))

        matches = index.search(np.array([2.0, 0.0, 0.0]), top_k=3)

        assert [m.owner_id for m in matches] == ["A", "B", "C"]
        assert matches[0].score == pytest.approx(1.0, abs=1e-5)
        assert matches[2].score == pytest.approx(0.0, abs=1e-5)

    def test_top_k_limits(self):
        index = VectorIndex()
        for i in range(10):
            index.index_chunk(f"O{i}", 0, "t", unit(1, i + 1))
        assert len(index.search(unit(1, 1), top_k=4)) == 4

    def test_ties_keep_insertion_order(self):
        index = VectorIndex()
        for owner in ("first", "second", "third"):
            index.index_chunk(owner, 0, owner, unit(1, 0))
        assert [m.owner_id for m in index.search(unit(1, 0), top_k=3)] == ["first", "second", "third"]

    def test_dimension_mismatch_is_skipped(self):
        index = VectorIndex()
        index.index_chunk("small", 0, "2d", unit(1, 0))
        index.index_chunk("big", 0, "3d", unit(1, 0, 0))
        matches = index.search(unit(1, 0, 0), top_k=5)
        assert [m.owner_id for m in matches] == ["big"]

    def test_zero_query_and_empty_index(self):
        index = VectorIndex()
        assert index.search(unit(1, 0)) == []
        index.index_chunk("A", 0, "a", unit(1, 0))
        assert index.search(np.zeros(2)) == []
        assert index.search(unit(1, 0), top_k=0) == []

    def test_owner_prefix_filters_before_top_k(self):
        index = VectorIndex()
        for i in range(5):
            index.index_chunk(f"JIRA:{i}", 0, "exact", unit(1, 0))
        index.index_chunk("GITHUB:1", 0, "close", unit(1, 0.5))

        assert {m.owner_id for m in index.search(unit(1, 0), top_k=2)} <= {f"JIRA:{i}" for i in range(5)}
        matches = index.search(unit(1, 0), top_k=2, owner_prefix="GITHUB:")
        assert [m.owner_id for m in matches] == ["GITHUB:1"]
        assert index.search(unit(1, 0), owner_prefix="SN_KB:") == []

    def test_concurrent_writes_and_searches(self):
        index = VectorIndex(max_chunks_per_owner=1000)
        errors = []

        def writer(owner):
            for i in range(100):
                index.index_chunk(owner, i, f"{owner}-{i}", unit(1, i % 7 + 1))

        def reader():
            try:
                for _ in range(50):
                    index.search(unit(1, 1), top_k=5)
            except Exception as e:  # pragma: no cover - surfaced by the assertion
                errors.append(e)

        threads = [threading.Thread(target=writer, args=(f"W{n}",)) for n in range(4)]
        threads += [threading.Thread(target=reader) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(index) == 400
