"""Tests for candidate aggregation."""

from incident_suggest.aggregator import aggregate_and_rank, generate_search_summary
from incident_suggest.domain import SourceSystem

from conftest import make_candidate


class TestAggregateAndRank:
    """Dedup, ordering, truncation."""

    def test_dedup_keeps_highest_raw_score(self):
        low = make_candidate("PROJ-1", raw_score=0.3, metadata={"from": "low"})
        high = make_candidate("PROJ-1", raw_score=0.8, metadata={"from": "high"})

        top, total = aggregate_and_rank([low, high], max_results=10)

        assert total == 1
        assert top[0].metadata == {"from": "high"}

    def test_same_id_in_two_systems_is_not_a_duplicate(self):
        top, total = aggregate_and_rank([
            make_candidate("42", system=SourceSystem.JIRA),
            make_candidate("42", system=SourceSystem.GITHUB),
        ])
        assert total == 2

    def test_no_duplicate_keys_in_output(self):
        candidates = [make_candidate(f"PROJ-{i % 4}", raw_score=i / 10) for i in range(10)]
        top, _ = aggregate_and_rank(candidates, max_results=10)
        keys = [c.dedup_key for c in top]
        assert len(keys) == len(set(keys))

    def test_sorted_descending_and_stable(self):
        a = make_candidate("A", raw_score=0.5)
        b = make_candidate("B", raw_score=0.9)
        c = make_candidate("C", raw_score=0.5)

        top, _ = aggregate_and_rank([a, b, c])

        assert [x.external_id for x in top] == ["B", "A", "C"]

    def test_truncation_reports_total_before_cut(self):
        candidates = [make_candidate(f"PROJ-{i}", raw_score=i / 20) for i in range(15)]
        top, total = aggregate_and_rank(candidates, max_results=5)
        assert len(top) == 5
        assert total == 15
        assert top[0].external_id == "PROJ-14"

    def test_empty(self):
        assert aggregate_and_rank([], 10) == ([], 0)


class TestHelpers:
    def test_search_summary(self):
        summary = generate_search_summary(["401", "ssl", "patch", "portal"], 7, 41.6)
        assert summary == 'Found 7 results for "401, ssl, patch" in 42ms'
