"""Tests for the versioned linear ranking model."""

import math
from datetime import timedelta

import pytest

from incident_suggest.domain import Interaction, InteractionAction, Keyword, SourceSystem
from incident_suggest.errors import ConfigurationError
from incident_suggest.interaction_store import InMemoryInteractionStore, InteractionHistory
from incident_suggest.ranking import (
    RankingContext,
    RankingEngine,
    keyword_density,
    keyword_match,
    lexicon_match,
    normalize_feature,
    recency_score,
)
from incident_suggest.tuning_config import DEFAULT_RANKING_WEIGHTS, RankingWeights

from conftest import FIXED_NOW, make_candidate

KEYWORDS = [Keyword("401", 3.0), Keyword("ssl", 2.6), Keyword("patch", 2.0)]


class BrokenHistory(InteractionHistory):
    def system_popularity(self, days=30):
        raise RuntimeError("db down")

    def most_effective_suggestions(self, limit=100, days=30):
        raise RuntimeError("db down")

    def interactions_by_user(self, user_id, limit=100):
        raise RuntimeError("db down")

    def ratings_for(self, suggestion_id, system, days=30):
        raise RuntimeError("db down")


def link(user="u1", system=SourceSystem.JIRA, suggestion="PROJ-1", rating=None, age=timedelta(hours=1)):
    return Interaction(
        user_id=user,
        incident_id="INC1",
        suggestion_id=suggestion,
        system=system,
        action=InteractionAction.LINKED,
        timestamp=FIXED_NOW - age,
        rating=rating,
    )


class TestFeatureFunctions:
    """Pure sub-feature rules."""

    def test_keyword_match_full_credit(self):
        candidate = make_candidate("1", title="SSL patch", snippet="")
        assert keyword_match(candidate, [Keyword("ssl", 1.0)]) == pytest.approx(1.0)

    def test_keyword_match_substring_only(self):
        candidate = make_candidate("1", title="Expiry", snippet="tokens expire early")
        assert keyword_match(candidate, [Keyword("token", 1.0)]) == pytest.approx(0.5)

    def test_keyword_match_averages_over_keywords(self):
        candidate = make_candidate("1", title="SSL patch", snippet="")
        score = keyword_match(candidate, [Keyword("ssl", 1.0), Keyword("vpn", 1.0)])
        assert score == pytest.approx(0.5)

    def test_keyword_match_without_keywords(self):
        assert keyword_match(make_candidate("1"), []) == 0.0

    def test_keyword_density(self):
        candidate = make_candidate("1", title="ssl patch", snippet="ssl fix")
        assert keyword_density(candidate, [Keyword("ssl", 1.0)]) == pytest.approx(0.5)

    def test_recency(self):
        assert recency_score(None, FIXED_NOW) == 0.5
        assert recency_score(FIXED_NOW, FIXED_NOW) == pytest.approx(1.0)
        assert recency_score(FIXED_NOW - timedelta(days=30), FIXED_NOW) == pytest.approx(math.exp(-1))

    def test_lexicon_match(self):
        from incident_suggest.tuning_config import INCIDENT_TYPE_LEXICON

        assert lexicon_match("login token expired", "authentication", INCIDENT_TYPE_LEXICON) == pytest.approx(0.4)
        assert lexicon_match("anything", None, INCIDENT_TYPE_LEXICON) == 0.5
        assert lexicon_match("anything", "astrology", INCIDENT_TYPE_LEXICON) == 0.5

    def test_normalize_feature(self):
        assert normalize_feature("title_length", 100) == pytest.approx(0.5)
        assert normalize_feature("title_length", 1000) == 1.0
        assert normalize_feature("error_term_count", 2) == pytest.approx(0.5)
        assert normalize_feature("not_calibrated", 30) == pytest.approx(0.3)
        assert normalize_feature("not_calibrated", 250) == 1.0


class TestRankingWeights:
    def test_default_version(self):
        assert RankingEngine().model_version == "2024.1-linear"

    def test_weights_must_sum_to_one(self):
        bad = RankingWeights(version="broken", top={
            "content": 0.5, "historical": 0.5, "context": 0.5, "user": 0.0, "system": 0.0,
        })
        with pytest.raises(ConfigurationError):
            RankingEngine(weights=bad)

    def test_top_tier_must_name_every_group(self):
        bad = RankingWeights(version="partial", top={"content": 0.5, "historical": 0.5})
        with pytest.raises(ConfigurationError):
            bad.validate()

    def test_every_group_sums_to_one(self):
        for weights in DEFAULT_RANKING_WEIGHTS.groups().values():
            assert sum(weights.values()) == pytest.approx(1.0)


class TestRankingEngine:
    """Scoring and ordering."""

    def test_scores_and_features_are_bounded(self, date_clock):
        engine = RankingEngine(clock=date_clock)
        candidates = [
            make_candidate("1", created_at=FIXED_NOW),
            make_candidate("2", title="x" * 900, snippet="error " * 300, author="alice"),
            make_candidate("3", title="", snippet="", metadata={"semantic_score": 7.0}),
        ]

        ranked = engine.rank_suggestions(candidates, RankingContext(keywords=KEYWORDS))

        for item in ranked:
            assert 0.0 <= item.ml_score <= 1.0
            for group in item.features.groups().values():
                for value in group.values():
                    assert 0.0 <= value <= 1.0
            assert set(item.features.group_scores) == {"content", "historical", "context", "user", "system"}

    def test_twenty_sub_features(self):
        features = RankingEngine().extract_features(make_candidate("1"), RankingContext(keywords=KEYWORDS))
        assert sum(len(group) for group in features.groups().values()) == 20

    def test_relevant_candidate_ranks_first(self, date_clock):
        engine = RankingEngine(clock=date_clock)
        unrelated = make_candidate("A", title="Printer jam on floor 3", snippet="Replace the toner drum.")
        relevant = make_candidate("B")

        ranked = engine.rank_suggestions([unrelated, relevant], RankingContext(keywords=KEYWORDS))

        assert [s.candidate.external_id for s in ranked] == ["B", "A"]

    def test_sort_is_stable_for_equal_scores(self):
        engine = RankingEngine()
        same = [make_candidate(f"P-{i}") for i in range(4)]
        ranked = engine.rank_suggestions(same, RankingContext(keywords=KEYWORDS))
        assert [s.candidate.external_id for s in ranked] == ["P-0", "P-1", "P-2", "P-3"]

    def test_empty_input(self):
        assert RankingEngine().rank_suggestions([], RankingContext()) == []

    def test_semantic_similarity_uses_score_or_keyword_proxy(self):
        engine = RankingEngine()
        context = RankingContext(keywords=KEYWORDS)

        with_score = engine.extract_features(make_candidate("1", metadata={"semantic_score": 0.42}), context)
        without = engine.extract_features(make_candidate("2"), context)

        assert with_score.context["semantic_similarity"] == pytest.approx(0.42)
        assert without.context["semantic_similarity"] == pytest.approx(without.context["keyword_match"] * 0.8)

    def test_anonymous_and_identified_user_defaults(self):
        engine = RankingEngine()
        anon = engine.extract_features(make_candidate("1"), RankingContext())
        known = engine.extract_features(make_candidate("1"), RankingContext(user_id="u1", user_team="ops"))

        assert anon.user == {
            "user_expertise_level": 0.5,
            "user_preference_score": 0.5,
            "team_preference_score": 0.5,
        }
        assert known.user == {
            "user_expertise_level": 0.7,
            "user_preference_score": 0.6,
            "team_preference_score": 0.6,
        }

    def test_neutral_history_defaults(self):
        features = RankingEngine(history=InMemoryInteractionStore()).extract_features(
            make_candidate("1"), RankingContext()
        )
        assert features.historical["system_popularity"] == 0.5
        assert features.historical["historical_link_rate"] == 0.3
        assert features.historical["avg_user_rating"] == 0.7
        assert features.historical["recency_score"] == 0.5
        assert features.historical["author_credibility"] == 0.5

    def test_history_backed_features(self, date_clock):
        store = InMemoryInteractionStore(clock=date_clock)
        for _ in range(4):
            store.record(link(suggestion="PROJ-1", rating=5))
        store.record(link(suggestion="PROJ-1", rating=3))
        for _ in range(5):
            store.record(link(user="u1", system=SourceSystem.GITHUB, suggestion="ISSUE-9"))
        engine = RankingEngine(history=store, clock=date_clock)

        ranked = engine.rank_suggestions(
            [make_candidate("PROJ-1", author="alice")],
            RankingContext(user_id="u1", keywords=KEYWORDS),
        )
        historical = ranked[0].features.historical

        assert historical["system_popularity"] == pytest.approx(5 / 100)
        assert historical["historical_link_rate"] == pytest.approx(5 / 20)
        # mean 4.6 stars
        assert historical["avg_user_rating"] == pytest.approx((4.6 - 1) / 4)
        assert historical["author_credibility"] == 0.8
        assert ranked[0].features.user["user_preference_score"] == pytest.approx(0.5)

    def test_interactions_outside_window_do_not_count(self, date_clock):
        store = InMemoryInteractionStore(clock=date_clock)
        for _ in range(5):
            store.record(link(suggestion="PROJ-1", rating=1, age=timedelta(days=90)))
        engine = RankingEngine(history=store, clock=date_clock, history_window_days=30)

        ranked = engine.rank_suggestions([make_candidate("PROJ-1")], RankingContext(keywords=KEYWORDS))
        historical = ranked[0].features.historical

        assert historical["system_popularity"] == 0.5
        assert historical["historical_link_rate"] == 0.3
        assert historical["avg_user_rating"] == 0.7

    def test_ratings_loaded_once_per_ranking_call(self, date_clock):
        store = InMemoryInteractionStore(clock=date_clock)
        store.record(link(suggestion="PROJ-1", rating=5))
        calls = []
        original = store.ratings_by_suggestion

        def counting(keys, days=30):
            calls.append(days)
            return original(keys, days)

        store.ratings_by_suggestion = counting
        engine = RankingEngine(history=store, clock=date_clock, history_window_days=14)

        ranked = engine.rank_suggestions(
            [make_candidate(str(n)) for n in range(20)] + [make_candidate("PROJ-1")],
            RankingContext(keywords=KEYWORDS),
        )

        assert calls == [14]
        rated = next(s for s in ranked if s.candidate.external_id == "PROJ-1")
        assert rated.features.historical["avg_user_rating"] == pytest.approx(1.0)

    def test_history_failures_fall_back_to_neutral(self):
        engine = RankingEngine(history=BrokenHistory())

        ranked = engine.rank_suggestions([make_candidate("1")], RankingContext(user_id="u1", keywords=KEYWORDS))

        historical = ranked[0].features.historical
        assert historical["system_popularity"] == 0.5
        assert historical["historical_link_rate"] == 0.3
        assert historical["avg_user_rating"] == 0.7
        assert ranked[0].features.user["user_preference_score"] == 0.6

    def test_score_matches_weighted_sum(self):
        engine = RankingEngine()
        features = engine.extract_features(make_candidate("1"), RankingContext(keywords=KEYWORDS))
        score = engine.score(features)

        expected = sum(
            DEFAULT_RANKING_WEIGHTS.top[group] * features.group_scores[group]
            for group in DEFAULT_RANKING_WEIGHTS.top
        )
        assert score == pytest.approx(min(1.0, expected), abs=1e-5)
