"""
Core data structures for the suggestion pipeline.

Candidates flow from the knowledge sources through aggregation, ranking and
personalization. Profiles, cache entries and vector chunks are long-lived
state owned by their stores.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np


class SourceSystem(str, Enum):
    """Knowledge systems a suggestion can come from."""
    JIRA = "JIRA"
    CONFLUENCE = "CONFLUENCE"
    GITHUB = "GITHUB"
    SN_KB = "SN_KB"

    @classmethod
    def parse(cls, value: "str | SourceSystem") -> "SourceSystem":
        """Resolve canonical names and connector display names.

        Raises:
            ValueError: for a name that maps to no known system
        """
        if isinstance(value, SourceSystem):
            return value
        key = str(value).strip().lower()
        try:
            return _SYSTEM_ALIASES[key]
        except KeyError:
            raise ValueError(f"Unknown source system: {value!r}") from None


_SYSTEM_ALIASES: Dict[str, SourceSystem] = {
    "jira": SourceSystem.JIRA,
    "jira cloud": SourceSystem.JIRA,
    "confluence": SourceSystem.CONFLUENCE,
    "github": SourceSystem.GITHUB,
    "sn_kb": SourceSystem.SN_KB,
    "servicenow kb": SourceSystem.SN_KB,
    "servicenow": SourceSystem.SN_KB,
}


class KeywordType(str, Enum):
    ERROR = "error"
    TECHNICAL = "technical"
    NOUN = "noun"


class InteractionAction(str, Enum):
    """User reaction to a surfaced suggestion."""
    LINKED = "linked"
    VIEWED = "viewed"
    DISMISSED = "dismissed"


class ExpertiseLevel(str, Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"
    EXPERT = "expert"


ANONYMOUS_USER = "anonymous"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Best-effort conversion of an ISO string / datetime into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def days_between(earlier: Optional[datetime], later: datetime) -> Optional[float]:
    if earlier is None:
        return None
    return abs((later - earlier).total_seconds()) / 86400.0


@dataclass(frozen=True)
class Keyword:
    """Weighted keyword extracted from incident text."""
    word: str
    weight: float
    type: KeywordType = KeywordType.NOUN

    def __post_init__(self) -> None:
        if self.weight <= 0:
            raise ValueError(f"Keyword weight must be > 0, got {self.weight}")


@dataclass
class Candidate:
    """Raw document fetched from a knowledge source, not yet scored."""
    source_system: SourceSystem
    external_id: str
    title: str
    snippet: str = ""
    url: str = ""
    created_at: Optional[datetime] = None
    raw_score: float = 0.0
    author: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def dedup_key(self) -> tuple:
        return (self.source_system, self.external_id)

    @property
    def text(self) -> str:
        return f"{self.title} {self.snippet}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_system": self.source_system.value,
            "external_id": self.external_id,
            "title": self.title,
            "snippet": self.snippet,
            "url": self.url,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "raw_score": self.raw_score,
            "author": self.author,
            "metadata": self.metadata,
        }


@dataclass
class FeatureVector:
    """Ranking sub-features grouped into five normalized signal groups."""
    content: Dict[str, float] = field(default_factory=dict)
    historical: Dict[str, float] = field(default_factory=dict)
    context: Dict[str, float] = field(default_factory=dict)
    user: Dict[str, float] = field(default_factory=dict)
    system: Dict[str, float] = field(default_factory=dict)
    group_scores: Dict[str, float] = field(default_factory=dict)

    def groups(self) -> Dict[str, Dict[str, float]]:
        return {
            "content": self.content,
            "historical": self.historical,
            "context": self.context,
            "user": self.user,
            "system": self.system,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {**{k: dict(v) for k, v in self.groups().items()}, "group_scores": dict(self.group_scores)}


@dataclass
class ScoredSuggestion:
    """A candidate annotated with its ranking and personalization scores."""
    candidate: Candidate
    features: FeatureVector
    ml_score: float
    personalized_score: Optional[float] = None
    personalization_factors: Dict[str, Any] = field(default_factory=dict)

    @property
    def system(self) -> SourceSystem:
        return self.candidate.source_system

    @property
    def final_score(self) -> float:
        return self.ml_score if self.personalized_score is None else self.personalized_score


@dataclass
class VectorChunk:
    owner_id: str
    chunk_index: int
    text: str
    vector: np.ndarray = field(repr=False)


@dataclass
class CacheEntry:
    """Serialized search response with an absolute expiry time."""
    key: str
    payload: str
    created_at: float
    expires_at: float
    incident_id: Optional[str] = None
    search_time_ms: Optional[float] = None

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


@dataclass
class Interaction:
    """One recorded user action on a suggestion."""
    user_id: str
    incident_id: str
    suggestion_id: str
    system: SourceSystem
    action: InteractionAction
    timestamp: datetime = field(default_factory=utcnow)
    rating: Optional[float] = None


@dataclass
class SuccessfulPattern:
    keywords: List[str]
    system: SourceSystem
    outcome: InteractionAction
    context: Dict[str, Any]
    timestamp: datetime


@dataclass
class FeedbackScore:
    suggestion_id: str
    implicit_score: float
    timestamp: datetime
    explicit_score: Optional[float] = None


@dataclass
class InteractionPatterns:
    avg_suggestions_per_incident: float = 2.5
    link_rate: float = 0.0
    view_to_link_ratio: float = 0.0
    time_spent_per_suggestion: float = 30.0


@dataclass
class ContentPreferences:
    prefers_detailed_descriptions: bool = False
    prefers_recent_content: bool = True
    prefers_high_authority_sources: bool = True


@dataclass
class UserProfile:
    """Per-user preference profile learned from interactions."""
    user_id: str
    expertise_level: ExpertiseLevel = ExpertiseLevel.INTERMEDIATE
    team: str = "default"
    preferred_systems: List[SourceSystem] = field(default_factory=list)
    system_expertise: Dict[SourceSystem, float] = field(default_factory=dict)
    topic_interests: Dict[str, float] = field(default_factory=dict)
    interaction_patterns: InteractionPatterns = field(default_factory=InteractionPatterns)
    content_preferences: ContentPreferences = field(default_factory=ContentPreferences)
    confidence_score: float = 0.1
    successful_patterns: List[SuccessfulPattern] = field(default_factory=list)
    feedback_scores: List[FeedbackScore] = field(default_factory=list)
    last_updated: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "expertise_level": self.expertise_level.value,
            "team": self.team,
            "preferred_systems": [s.value for s in self.preferred_systems],
            "system_expertise": {s.value: round(v, 4) for s, v in self.system_expertise.items()},
            "topic_interests": {k: round(v, 4) for k, v in self.topic_interests.items()},
            "interaction_patterns": {
                "avg_suggestions_per_incident": self.interaction_patterns.avg_suggestions_per_incident,
                "link_rate": round(self.interaction_patterns.link_rate, 4),
                "view_to_link_ratio": round(self.interaction_patterns.view_to_link_ratio, 4),
                "time_spent_per_suggestion": round(self.interaction_patterns.time_spent_per_suggestion, 2),
            },
            "content_preferences": {
                "prefers_detailed_descriptions": self.content_preferences.prefers_detailed_descriptions,
                "prefers_recent_content": self.content_preferences.prefers_recent_content,
                "prefers_high_authority_sources": self.content_preferences.prefers_high_authority_sources,
            },
            "confidence_score": round(self.confidence_score, 4),
            "successful_patterns": len(self.successful_patterns),
            "feedback_events": len(self.feedback_scores),
            "last_updated": self.last_updated.isoformat(),
        }
