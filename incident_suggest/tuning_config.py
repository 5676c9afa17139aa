#!/usr/bin/env python3
"""
Centralized Tuning Constants for the suggestion engine

This module consolidates the fixed weights, lexicons and thresholds used by
extraction, retrieval, ranking and personalization. The ranking weights are
versioned data: a new weight set gets a new version string rather than an
in-place edit, so cached scores and logs stay attributable.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Tuple

from incident_suggest.domain import SourceSystem
from incident_suggest.errors import ConfigurationError

# ============================================================================
# Keyword extraction
# ============================================================================

DEFAULT_MAX_KEYWORDS: int = 8
SEARCH_QUERY_TERMS: int = 5

TECHNICAL_TERMS = frozenset({
    "401", "403", "404", "500", "error", "timeout", "ssl", "certificate",
    "authentication", "authorization", "login", "password", "token", "session",
    "api", "rest", "soap", "json", "xml", "database", "connection", "server",
    "patch", "update", "deployment", "version", "release", "migration",
    "portal", "gateway", "proxy", "firewall", "vpn", "ldap", "saml", "oauth",
})

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
    "with", "by", "from", "up", "about", "into", "through", "during", "before",
    "after", "above", "below", "between", "among", "is", "are", "was", "were",
    "be", "been", "being", "have", "has", "had", "do", "does", "did", "will",
    "would", "could", "should", "may", "might", "must", "this", "that",
    "these", "those", "i", "me", "my", "myself", "we", "our", "ours",
    "ourselves", "you", "your", "yours", "yourself", "yourselves", "he", "him",
    "his", "himself", "she", "her", "hers", "herself", "it", "its", "itself",
    "they", "them", "their", "theirs", "themselves",
})

TECHNICAL_BOOST: float = 2.0
LONG_WORD_BOOST: float = 1.5
LONG_WORD_MIN_CHARS: int = 7
ACRONYM_BOOST: float = 1.3

# ============================================================================
# Retrieval
# ============================================================================

# Minimum relevance a vector match needs before it is surfaced. Hash vectors
# carry no meaning, so the bar is lower when that backend is active.
SEMANTIC_MIN_RELEVANCE: float = 0.6
FALLBACK_MIN_RELEVANCE: float = 0.25

KEYWORD_FALLBACK_SCORE: float = 0.4
VECTOR_CANDIDATE_POOL: int = 60
KEYWORD_OVERLAP_BOOST_PER_HIT: float = 0.02
KEYWORD_OVERLAP_BOOST_MAX: float = 0.2

# ============================================================================
# Ranking
# ============================================================================

RECENCY_HALF_LIFE_DAYS: float = 30.0
NEUTRAL_RECENCY: float = 0.5
NEUTRAL_CATEGORY_MATCH: float = 0.5
SEMANTIC_FROM_KEYWORD_FACTOR: float = 0.8

# Calibration [min, max] for magnitude features. Features not listed here
# fall back to value/100 clamped to 1.
FEATURE_SCALERS: Dict[str, Tuple[float, float]] = {
    "title_length": (0.0, 200.0),
    "snippet_length": (0.0, 500.0),
    "technical_term_count": (0.0, 5.0),
    "error_term_count": (0.0, 4.0),
}

RANKING_TECHNICAL_TERMS: Tuple[str, ...] = (
    "api", "database", "server", "authentication", "ssl", "token", "session",
    "timeout", "configuration", "deployment", "patch", "update", "version",
    "error", "exception", "failure", "bug", "issue", "problem",
)

RANKING_ERROR_TERMS: Tuple[str, ...] = (
    "error", "fail", "broken", "issue", "problem", "bug", "crash", "timeout",
)

INCIDENT_TYPE_LEXICON: Dict[str, Tuple[str, ...]] = {
    "authentication": ("auth", "login", "password", "token", "sso"),
    "performance": ("slow", "timeout", "latency", "performance", "speed"),
    "connectivity": ("network", "connection", "vpn", "firewall", "dns"),
    "deployment": ("deploy", "release", "patch", "update", "rollout"),
}

URGENCY_LEXICON: Dict[str, Tuple[str, ...]] = {
    "critical": ("critical", "urgent", "emergency", "outage", "down"),
    "high": ("important", "priority", "escalate", "asap"),
    "medium": ("normal", "standard", "regular"),
    "low": ("minor", "low", "future", "enhancement"),
}

# Per-system constants. Every SourceSystem member must appear in each table.
SYSTEM_RELIABILITY: Dict[SourceSystem, float] = {
    SourceSystem.JIRA: 0.95,
    SourceSystem.CONFLUENCE: 0.90,
    SourceSystem.GITHUB: 0.92,
    SourceSystem.SN_KB: 0.88,
}

SYSTEM_RESPONSE_TIME: Dict[SourceSystem, float] = {
    SourceSystem.JIRA: 0.85,
    SourceSystem.CONFLUENCE: 0.80,
    SourceSystem.GITHUB: 0.90,
    SourceSystem.SN_KB: 0.75,
}

SYSTEM_CONTENT_QUALITY: Dict[SourceSystem, float] = {
    SourceSystem.JIRA: 0.85,
    SourceSystem.CONFLUENCE: 0.90,
    SourceSystem.GITHUB: 0.80,
    SourceSystem.SN_KB: 0.88,
}

# Neutral defaults used when a history lookup has no data
NEUTRAL_SYSTEM_POPULARITY: float = 0.5
NEUTRAL_LINK_RATE: float = 0.3
NEUTRAL_USER_RATING: float = 0.7
AUTHOR_CREDIBILITY_KNOWN: float = 0.8
AUTHOR_CREDIBILITY_UNKNOWN: float = 0.5
USER_EXPERTISE_IDENTIFIED: float = 0.7
USER_PREFERENCE_IDENTIFIED: float = 0.6
TEAM_PREFERENCE_KNOWN: float = 0.6
NEUTRAL_USER_FEATURE: float = 0.5

POPULARITY_LINK_SCALE: float = 100.0
SUGGESTION_LINK_SCALE: float = 20.0
EFFECTIVE_SUGGESTIONS_LOOKUP: int = 100

_WEIGHT_TOLERANCE = 1e-9


@dataclass(frozen=True)
class RankingWeights:
    """Versioned weight set of the linear ranking formula."""

    version: str = "2024.1-linear"
    top: Dict[str, float] = field(default_factory=lambda: {
        "content": 0.25,
        "historical": 0.30,
        "context": 0.25,
        "user": 0.15,
        "system": 0.05,
    })
    content: Dict[str, float] = field(default_factory=lambda: {
        "title_length": 0.15,
        "snippet_length": 0.10,
        "keyword_density": 0.30,
        "technical_term_count": 0.25,
        "error_term_count": 0.20,
    })
    historical: Dict[str, float] = field(default_factory=lambda: {
        "system_popularity": 0.20,
        "historical_link_rate": 0.35,
        "avg_user_rating": 0.25,
        "recency_score": 0.15,
        "author_credibility": 0.05,
    })
    context: Dict[str, float] = field(default_factory=lambda: {
        "keyword_match": 0.40,
        "semantic_similarity": 0.30,
        "incident_type_match": 0.20,
        "urgency_alignment": 0.10,
    })
    user: Dict[str, float] = field(default_factory=lambda: {
        "user_expertise_level": 0.30,
        "user_preference_score": 0.40,
        "team_preference_score": 0.30,
    })
    system: Dict[str, float] = field(default_factory=lambda: {
        "system_reliability": 0.40,
        "system_response_time": 0.30,
        "system_content_quality": 0.30,
    })

    def groups(self) -> Dict[str, Dict[str, float]]:
        return {
            "content": self.content,
            "historical": self.historical,
            "context": self.context,
            "user": self.user,
            "system": self.system,
        }

    def validate(self) -> "RankingWeights":
        """Every tier must sum to 1.0 and the top tier must name every group."""
        tiers = {"top": self.top, **self.groups()}
        for name, weights in tiers.items():
            total = sum(weights.values())
            if abs(total - 1.0) > _WEIGHT_TOLERANCE:
                raise ConfigurationError(
                    f"Ranking weights '{name}' sum to {total:.6f}, expected 1.0",
                    context={"version": self.version},
                )
            if any(w < 0 for w in weights.values()):
                raise ConfigurationError(f"Ranking weights '{name}' contain a negative weight")
        if set(self.top) != set(self.groups()):
            raise ConfigurationError("Top-tier weights must cover exactly the five feature groups")
        return self


DEFAULT_RANKING_WEIGHTS = RankingWeights().validate()

# ============================================================================
# Personalization
# ============================================================================

LINK_RATE_EMA_DECAY: float = 0.9
SYSTEM_EXPERTISE_LINK_STEP: float = 0.05
SYSTEM_EXPERTISE_DISMISS_STEP: float = 0.02
HISTORICAL_LINK_EXPERTISE_STEP: float = 0.1
TOPIC_INTEREST_STEP: float = 0.1
PATTERN_RETENTION: int = 100
FEEDBACK_RETENTION: int = 1000
PREFERRED_SYSTEMS_TOP_N: int = 3
PROFILE_HISTORY_LOOKUP: int = 100

CONFIDENCE_MIN: float = 0.1
CONFIDENCE_MAX: float = 0.95
CONFIDENCE_SEED_MAX: float = 0.8
CONFIDENCE_SEED_SCALE: float = 20.0
CONFIDENCE_EVENT_SCALE: float = 50.0
CONFIDENCE_DECAY_DAYS: float = 30.0
CONFIDENCE_DECAY_FACTOR: float = 0.3

PERSONAL_EXPERTISE_WEIGHT: float = 0.3
PERSONAL_TOPIC_WEIGHT: float = 0.4
PERSONAL_PATTERN_WEIGHT: float = 0.2
PERSONAL_DETAIL_BONUS: float = 0.1
PERSONAL_RECENT_BONUS: float = 0.1
DETAILED_SNIPPET_CHARS: int = 200
RECENT_CONTENT_DAYS: float = 7.0
RECENT_PREFERENCE_DAYS: float = 30.0
UNKNOWN_SYSTEM_EXPERTISE: float = 0.5


def _check_system_tables() -> None:
    for name, table in (
        ("SYSTEM_RELIABILITY", SYSTEM_RELIABILITY),
        ("SYSTEM_RESPONSE_TIME", SYSTEM_RESPONSE_TIME),
        ("SYSTEM_CONTENT_QUALITY", SYSTEM_CONTENT_QUALITY),
    ):
        missing = set(SourceSystem) - set(table)
        if missing:
            raise ConfigurationError(f"{name} is missing systems: {sorted(m.value for m in missing)}")


_check_system_tables()
