"""Merge candidates from all sources: dedup, base order, truncation."""

from __future__ import annotations

from typing import Dict, List, Sequence, Tuple

from incident_suggest.domain import Candidate


def aggregate_and_rank(candidates: Sequence[Candidate], max_results: int = 10) -> Tuple[List[Candidate], int]:
    """
    Deduplicate candidates and order them by raw score.

    Duplicates share (source_system, external_id); the one with the highest
    raw_score survives with its own metadata. Ties keep arrival order.

    Args:
        candidates: Concatenated source output
        max_results: Maximum candidates kept

    Returns:
        (top candidates, deduplicated count before truncation)
    """
    best: Dict[tuple, Candidate] = {}
    for candidate in candidates:
        key = candidate.dedup_key
        kept = best.get(key)
        if kept is None or candidate.raw_score > kept.raw_score:
            best[key] = candidate

    # dict preserves first-seen order, so the sort is stable on arrival order
    unique = sorted(best.values(), key=lambda c: c.raw_score, reverse=True)
    return unique[:max(max_results, 0)], len(unique)


def generate_search_summary(keywords: Sequence[str], total_found: int, search_time_ms: float) -> str:
    """One-line human summary of a search, logged with every completed request."""
    keyword_list = ", ".join(keywords[:3])
    return f'Found {total_found} results for "{keyword_list}" in {search_time_ms:.0f}ms'
