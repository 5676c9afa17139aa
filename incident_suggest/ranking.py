#!/usr/bin/env python3
"""
Ranking model: a fixed, versioned weighted-feature formula.

Each candidate gets 20 sub-features in [0, 1], grouped into content,
historical, context, user and system scores. The groups combine with the
top-tier weights into ml_score, clamped to [0, 1]. Weights live in
RankingWeights so a scoring change is a new version, not an edit.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from incident_suggest.domain import (
    ANONYMOUS_USER,
    Candidate,
    FeatureVector,
    Keyword,
    ScoredSuggestion,
    SourceSystem,
    days_between,
    utcnow,
)
from incident_suggest.interaction_store import InteractionHistory
from incident_suggest.tuning_config import (
    AUTHOR_CREDIBILITY_KNOWN,
    AUTHOR_CREDIBILITY_UNKNOWN,
    DEFAULT_RANKING_WEIGHTS,
    EFFECTIVE_SUGGESTIONS_LOOKUP,
    FEATURE_SCALERS,
    INCIDENT_TYPE_LEXICON,
    NEUTRAL_CATEGORY_MATCH,
    NEUTRAL_LINK_RATE,
    NEUTRAL_RECENCY,
    NEUTRAL_SYSTEM_POPULARITY,
    NEUTRAL_USER_FEATURE,
    NEUTRAL_USER_RATING,
    POPULARITY_LINK_SCALE,
    PROFILE_HISTORY_LOOKUP,
    RANKING_ERROR_TERMS,
    RANKING_TECHNICAL_TERMS,
    RECENCY_HALF_LIFE_DAYS,
    SEMANTIC_FROM_KEYWORD_FACTOR,
    SUGGESTION_LINK_SCALE,
    SYSTEM_CONTENT_QUALITY,
    SYSTEM_RELIABILITY,
    SYSTEM_RESPONSE_TIME,
    TEAM_PREFERENCE_KNOWN,
    URGENCY_LEXICON,
    USER_EXPERTISE_IDENTIFIED,
    USER_PREFERENCE_IDENTIFIED,
    RankingWeights,
)

logger = logging.getLogger(__name__)


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


@dataclass
class RankingContext:
    """Who is asking and about what."""
    user_id: str = ANONYMOUS_USER
    keywords: List[Keyword] = field(default_factory=list)
    incident_type: Optional[str] = None
    urgency_level: Optional[str] = None
    user_team: Optional[str] = None

    @property
    def is_anonymous(self) -> bool:
        return not self.user_id or self.user_id == ANONYMOUS_USER


@dataclass
class _HistorySnapshot:
    """History lookups done once per ranking call. None means no data."""
    system_links: Optional[Dict[SourceSystem, int]] = None
    suggestion_links: Optional[Dict[tuple, int]] = None
    user_link_share: Optional[Dict[SourceSystem, float]] = None
    ratings: Optional[Dict[tuple, List[float]]] = None


# ============================================================================
# Pure feature functions
# ============================================================================


def normalize_feature(name: str, value: float) -> float:
    """Rescale a magnitude through the calibration table; unknown names use value/100."""
    scaler = FEATURE_SCALERS.get(name)
    if scaler is None:
        return min(1.0, value / 100.0)
    low, high = scaler
    return _clamp((value - low) / (high - low))


def keyword_density(candidate: Candidate, keywords: Sequence[Keyword]) -> float:
    words = candidate.text.lower().split()
    if not words:
        return 0.0
    keyword_words = {k.word.lower() for k in keywords}
    return sum(1 for w in words if w in keyword_words) / len(words)


def count_terms(text: str, terms: Sequence[str]) -> int:
    lowered = text.lower()
    return sum(1 for term in terms if term in lowered)


def keyword_match(candidate: Candidate, keywords: Sequence[Keyword]) -> float:
    """
    Keyword presence score.

    Per keyword: +0.5 if it occurs anywhere, +0.3 more as a whole word,
    +0.2 more if it is in the title. Averaged over keywords, clamped to 1.
    """
    if not keywords:
        return 0.0
    text = candidate.text.lower()
    padded = f" {text} "
    title = candidate.title.lower()

    score = 0.0
    for kw in keywords:
        word = kw.word.lower()
        if word in text:
            score += 0.5
            if f" {word} " in padded:
                score += 0.3
            if word in title:
                score += 0.2
    return _clamp(score / len(keywords))


def recency_score(created_at: Optional[datetime], now: datetime) -> float:
    days = days_between(created_at, now)
    if days is None:
        return NEUTRAL_RECENCY
    return math.exp(-days / RECENCY_HALF_LIFE_DAYS)


def lexicon_match(text: str, category: Optional[str], lexicon: Dict[str, Sequence[str]]) -> float:
    """Fraction of a category's lexicon present in text; 0.5 for missing/unknown categories."""
    if not category:
        return NEUTRAL_CATEGORY_MATCH
    terms = lexicon.get(category.lower())
    if not terms:
        return NEUTRAL_CATEGORY_MATCH
    lowered = text.lower()
    return sum(1 for term in terms if term in lowered) / len(terms)


# ============================================================================
# Ranking engine
# ============================================================================


class RankingEngine:
    """Scores and orders candidates with the versioned linear formula."""

    def __init__(
        self,
        history: Optional[InteractionHistory] = None,
        weights: RankingWeights = DEFAULT_RANKING_WEIGHTS,
        history_window_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.history = history
        self.weights = weights.validate()
        self.history_window_days = history_window_days
        self._clock = clock

    @property
    def model_version(self) -> str:
        return self.weights.version

    def rank_suggestions(self, candidates: Sequence[Candidate], context: RankingContext) -> List[ScoredSuggestion]:
        """
        Score every candidate and sort by ml_score, descending (stable).

        Args:
            candidates: Deduplicated candidates
            context: User and incident context

        Returns:
            Scored suggestions, best first
        """
        if not candidates:
            return []

        now = self._clock()
        snapshot = self._load_history(context, candidates)
        scored = []
        for candidate in candidates:
            features = self.extract_features(candidate, context, snapshot, now)
            scored.append(ScoredSuggestion(
                candidate=candidate,
                features=features,
                ml_score=self.score(features),
            ))

        scored.sort(key=lambda s: s.ml_score, reverse=True)
        logger.debug(
            "Ranked %d candidates with model %s (top=%.3f)",
            len(scored), self.model_version, scored[0].ml_score,
        )
        return scored

    def score(self, features: FeatureVector) -> float:
        """Combine the five group scores with the top-tier weights."""
        total = 0.0
        for group, sub_features in features.groups().items():
            group_weights = self.weights.groups()[group]
            group_score = sum(group_weights[name] * sub_features.get(name, 0.0) for name in group_weights)
            features.group_scores[group] = round(group_score, 6)
            total += self.weights.top[group] * group_score
        return _clamp(total)

    def extract_features(
        self,
        candidate: Candidate,
        context: RankingContext,
        snapshot: Optional[_HistorySnapshot] = None,
        now: Optional[datetime] = None,
    ) -> FeatureVector:
        snapshot = snapshot or _HistorySnapshot()
        now = now or self._clock()
        text = candidate.text
        match = keyword_match(candidate, context.keywords)

        semantic = candidate.metadata.get("semantic_score")
        if isinstance(semantic, (int, float)):
            semantic_similarity = _clamp(float(semantic))
        else:
            semantic_similarity = match * SEMANTIC_FROM_KEYWORD_FACTOR

        return FeatureVector(
            content={
                "title_length": normalize_feature("title_length", len(candidate.title)),
                "snippet_length": normalize_feature("snippet_length", len(candidate.snippet)),
                "keyword_density": keyword_density(candidate, context.keywords),
                "technical_term_count": normalize_feature(
                    "technical_term_count", count_terms(text, RANKING_TECHNICAL_TERMS)
                ),
                "error_term_count": normalize_feature("error_term_count", count_terms(text, RANKING_ERROR_TERMS)),
            },
            historical={
                "system_popularity": self._system_popularity(candidate, snapshot),
                "historical_link_rate": self._historical_link_rate(candidate, snapshot),
                "avg_user_rating": self._avg_user_rating(candidate, snapshot),
                "recency_score": recency_score(candidate.created_at, now),
                "author_credibility": AUTHOR_CREDIBILITY_KNOWN if candidate.author else AUTHOR_CREDIBILITY_UNKNOWN,
            },
            context={
                "keyword_match": match,
                "semantic_similarity": semantic_similarity,
                "incident_type_match": lexicon_match(text, context.incident_type, INCIDENT_TYPE_LEXICON),
                "urgency_alignment": lexicon_match(text, context.urgency_level, URGENCY_LEXICON),
            },
            user={
                "user_expertise_level": NEUTRAL_USER_FEATURE if context.is_anonymous else USER_EXPERTISE_IDENTIFIED,
                "user_preference_score": self._user_preference(candidate, context, snapshot),
                "team_preference_score": TEAM_PREFERENCE_KNOWN if context.user_team else NEUTRAL_USER_FEATURE,
            },
            system={
                "system_reliability": SYSTEM_RELIABILITY[candidate.source_system],
                "system_response_time": SYSTEM_RESPONSE_TIME[candidate.source_system],
                "system_content_quality": SYSTEM_CONTENT_QUALITY[candidate.source_system],
            },
        )

    # ------------------------------------------------------------------
    # History-backed features (neutral defaults on missing data or failure)
    # ------------------------------------------------------------------

    def _load_history(self, context: RankingContext, candidates: Sequence[Candidate] = ()) -> _HistorySnapshot:
        snapshot = _HistorySnapshot()
        if self.history is None:
            return snapshot

        try:
            popularity = self.history.system_popularity(self.history_window_days)
            snapshot.system_links = {p.system: p.link_count for p in popularity}
        except Exception as e:
            logger.warning("System popularity lookup failed, using neutral default: %s", e)

        try:
            effective = self.history.most_effective_suggestions(
                EFFECTIVE_SUGGESTIONS_LOOKUP, self.history_window_days
            )
            snapshot.suggestion_links = {(s.system, s.suggestion_id): s.link_count for s in effective}
        except Exception as e:
            logger.warning("Effective suggestions lookup failed, using neutral default: %s", e)

        if candidates:
            try:
                snapshot.ratings = self.history.ratings_by_suggestion(
                    [c.dedup_key for c in candidates], self.history_window_days
                )
            except Exception as e:
                logger.warning("Rating lookup failed, using neutral default: %s", e)

        if not context.is_anonymous:
            try:
                snapshot.user_link_share = self.history.user_system_link_share(
                    context.user_id, PROFILE_HISTORY_LOOKUP
                )
            except Exception as e:
                logger.warning("User history lookup failed for %s, using neutral default: %s", context.user_id, e)

        return snapshot

    @staticmethod
    def _system_popularity(candidate: Candidate, snapshot: _HistorySnapshot) -> float:
        if not snapshot.system_links or candidate.source_system not in snapshot.system_links:
            return NEUTRAL_SYSTEM_POPULARITY
        return min(1.0, snapshot.system_links[candidate.source_system] / POPULARITY_LINK_SCALE)

    @staticmethod
    def _historical_link_rate(candidate: Candidate, snapshot: _HistorySnapshot) -> float:
        links = (snapshot.suggestion_links or {}).get(candidate.dedup_key)
        if not links:
            return NEUTRAL_LINK_RATE
        return min(1.0, links / SUGGESTION_LINK_SCALE)

    @staticmethod
    def _avg_user_rating(candidate: Candidate, snapshot: _HistorySnapshot) -> float:
        ratings = (snapshot.ratings or {}).get(candidate.dedup_key)
        if not ratings:
            return NEUTRAL_USER_RATING
        # 1-5 stars onto [0, 1]
        return _clamp((sum(ratings) / len(ratings) - 1.0) / 4.0)

    @staticmethod
    def _user_preference(candidate: Candidate, context: RankingContext, snapshot: _HistorySnapshot) -> float:
        if context.is_anonymous:
            return NEUTRAL_USER_FEATURE
        if snapshot.user_link_share is None:
            return USER_PREFERENCE_IDENTIFIED
        return snapshot.user_link_share.get(candidate.source_system, 0.0)
