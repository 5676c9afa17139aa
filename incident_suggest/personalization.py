"""
Per-user personalization learned from interactions.

Profiles are created on first access, seeded from the user's interaction
history, then updated incrementally by every linked / viewed / dismissed
event. The store keeps a bounded number of them, least recently used out
first. The anonymous user never learns and is never re-ordered.

Learning rules:
- link_rate and time spent follow an exponential moving average (0.9 / 0.1)
- system expertise moves +0.05 per link, -0.02 per dismissal, within [0, 1]
- topic interests grow by 0.1 x keyword weight per link, capped at 1
- linked patterns and feedback scores are kept in bounded logs
- confidence grows with learning events and decays with time since update
"""

from __future__ import annotations

import threading
from collections import Counter, OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence

from loguru import logger

from incident_suggest.domain import (
    ANONYMOUS_USER,
    Candidate,
    ExpertiseLevel,
    FeedbackScore,
    InteractionAction,
    Keyword,
    ScoredSuggestion,
    SuccessfulPattern,
    UserProfile,
    days_between,
    utcnow,
)
from incident_suggest.interaction_store import InteractionHistory
from incident_suggest.tuning_config import (
    CONFIDENCE_DECAY_DAYS,
    CONFIDENCE_DECAY_FACTOR,
    CONFIDENCE_EVENT_SCALE,
    CONFIDENCE_MAX,
    CONFIDENCE_MIN,
    CONFIDENCE_SEED_MAX,
    CONFIDENCE_SEED_SCALE,
    DETAILED_SNIPPET_CHARS,
    FEEDBACK_RETENTION,
    HISTORICAL_LINK_EXPERTISE_STEP,
    LINK_RATE_EMA_DECAY,
    PATTERN_RETENTION,
    PERSONAL_DETAIL_BONUS,
    PERSONAL_EXPERTISE_WEIGHT,
    PERSONAL_PATTERN_WEIGHT,
    PERSONAL_RECENT_BONUS,
    PERSONAL_TOPIC_WEIGHT,
    PREFERRED_SYSTEMS_TOP_N,
    PROFILE_HISTORY_LOOKUP,
    RECENT_CONTENT_DAYS,
    RECENT_PREFERENCE_DAYS,
    SYSTEM_EXPERTISE_DISMISS_STEP,
    SYSTEM_EXPERTISE_LINK_STEP,
    TOPIC_INTEREST_STEP,
    UNKNOWN_SYSTEM_EXPERTISE,
)

_EXPERTISE_ORDER = [
    ExpertiseLevel.BEGINNER,
    ExpertiseLevel.INTERMEDIATE,
    ExpertiseLevel.ADVANCED,
    ExpertiseLevel.EXPERT,
]

# Viewed items count as engaged past this many seconds
ENGAGED_VIEW_SECONDS = 10.0


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def is_anonymous(user_id: Optional[str]) -> bool:
    return not user_id or user_id == ANONYMOUS_USER


@dataclass
class InteractionContext:
    """Circumstances of one interaction."""
    keywords: List[Keyword] = field(default_factory=list)
    incident_type: Optional[str] = None
    urgency: Optional[str] = None
    time_spent_seconds: Optional[float] = None
    position: Optional[int] = None
    rating: Optional[float] = None


class ProfileStore:
    """
    Thread-safe profile map keyed by user id, with one lock per user.

    Holds at most `max_profiles` profiles (0 = unbounded); the least recently
    used one is evicted and rebuilt from history on its next access. Profiles
    held through `editing()` are pinned and skipped by eviction until released.
    """

    def __init__(self, max_profiles: int = 0) -> None:
        self.max_profiles = max_profiles
        self._profiles: "OrderedDict[str, UserProfile]" = OrderedDict()
        self._locks: Dict[str, threading.RLock] = {}
        self._pins: Counter = Counter()
        self._guard = threading.Lock()
        self.evictions = 0

    def lock_for(self, user_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = self._locks[user_id] = threading.RLock()
            return lock

    def get(self, user_id: str) -> Optional[UserProfile]:
        with self._guard:
            return self._profiles.get(user_id)

    def get_or_create(self, user_id: str, factory: Callable[[str], UserProfile]) -> UserProfile:
        """Return the stored profile, building it with factory(user_id) on first access."""
        with self.lock_for(user_id):
            with self._guard:
                profile = self._profiles.get(user_id)
                if profile is not None:
                    self._profiles.move_to_end(user_id)
                    return profile
            profile = factory(user_id)
            with self._guard:
                self._profiles[user_id] = profile
                self._evict_over_capacity()
            return profile

    @contextmanager
    def editing(self, user_id: str, factory: Callable[[str], UserProfile]) -> Iterator[UserProfile]:
        """Yield the user's profile under its lock, pinned against eviction."""
        with self._guard:
            self._pins[user_id] += 1
        try:
            with self.lock_for(user_id):
                yield self.get_or_create(user_id, factory)
        finally:
            with self._guard:
                self._pins[user_id] -= 1
                if self._pins[user_id] <= 0:
                    del self._pins[user_id]
                self._evict_over_capacity()

    def _evict_over_capacity(self) -> None:
        # Caller holds self._guard
        while self.max_profiles and len(self._profiles) > self.max_profiles:
            evicted = next((uid for uid in self._profiles if uid not in self._pins), None)
            if evicted is None:
                return
            del self._profiles[evicted]
            self._locks.pop(evicted, None)
            self.evictions += 1
            logger.debug(f"Evicted profile for {evicted} (store holds {self.max_profiles})")

    def profiles(self) -> List[UserProfile]:
        with self._guard:
            return list(self._profiles.values())

    def __contains__(self, user_id: object) -> bool:
        with self._guard:
            return user_id in self._profiles

    def __len__(self) -> int:
        with self._guard:
            return len(self._profiles)


class PreferenceEngine:
    """Learns user preferences and re-orders ranked suggestions per user."""

    def __init__(
        self,
        history: Optional[InteractionHistory] = None,
        store: Optional[ProfileStore] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.history = history
        self.store = store or ProfileStore()
        self._clock = clock

    # ------------------------------------------------------------------
    # Profile lifecycle
    # ------------------------------------------------------------------

    def get_user_profile(self, user_id: str) -> UserProfile:
        """
        Get or create a profile.

        The anonymous user gets a fresh default profile that is never stored.
        """
        if is_anonymous(user_id):
            return UserProfile(user_id=ANONYMOUS_USER, last_updated=self._clock())
        return self.store.get_or_create(user_id, self._create_profile)

    def _create_profile(self, user_id: str) -> UserProfile:
        interactions = []
        if self.history is not None:
            try:
                interactions = self.history.interactions_by_user(user_id, PROFILE_HISTORY_LOOKUP)
            except Exception as e:
                logger.warning(f"History lookup failed for {user_id}, starting from defaults: {e}")

        profile = UserProfile(user_id=user_id, last_updated=self._clock())
        if not interactions:
            logger.debug(f"Created default profile for {user_id}")
            return profile

        counts: Dict[Any, int] = {}
        links = views = 0
        for item in interactions:
            counts[item.system] = counts.get(item.system, 0) + 1
            if item.action == InteractionAction.LINKED:
                links += 1
                current = profile.system_expertise.get(item.system, 0.0)
                profile.system_expertise[item.system] = min(1.0, current + HISTORICAL_LINK_EXPERTISE_STEP)
            elif item.action == InteractionAction.VIEWED:
                views += 1

        # sorted() is stable, so equal counts keep first-seen order
        ranked = sorted(counts.items(), key=lambda kv: kv[1], reverse=True)
        profile.preferred_systems = [system for system, _ in ranked[:PREFERRED_SYSTEMS_TOP_N]]
        profile.interaction_patterns.link_rate = links / len(interactions)
        profile.interaction_patterns.view_to_link_ratio = views / links if links else 0.0
        profile.confidence_score = _clamp(
            min(CONFIDENCE_SEED_MAX, len(interactions) / CONFIDENCE_SEED_SCALE), CONFIDENCE_MIN, CONFIDENCE_MAX
        )
        logger.debug(
            f"Created profile for {user_id} from {len(interactions)} interactions "
            f"(confidence={profile.confidence_score:.2f})"
        )
        return profile

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    def learn_from_interaction(
        self,
        user_id: str,
        suggestion: Candidate,
        action: InteractionAction,
        context: Optional[InteractionContext] = None,
    ) -> Optional[UserProfile]:
        """
        Update a user's profile from one interaction.

        Args:
            user_id: Opaque user id
            suggestion: The suggestion acted on
            action: linked, viewed or dismissed
            context: Keywords, time spent and position of the interaction

        Returns:
            The updated profile, or None for the anonymous user
        """
        if is_anonymous(user_id):
            return None

        context = context or InteractionContext()
        action = InteractionAction(action)
        now = self._clock()

        with self.store.editing(user_id, self._create_profile) as profile:
            self._update_interaction_patterns(profile, action, context)
            self._update_content_preferences(profile, suggestion, action, now)
            self._update_system_expertise(profile, suggestion, action)
            self._update_topic_interests(profile, context.keywords, action)
            self._record_successful_pattern(profile, suggestion, action, context, now)

            profile.feedback_scores.append(FeedbackScore(
                suggestion_id=suggestion.external_id,
                implicit_score=self.implicit_feedback_score(action, context),
                timestamp=now,
                explicit_score=context.rating,
            ))
            if len(profile.feedback_scores) > FEEDBACK_RETENTION:
                del profile.feedback_scores[:-FEEDBACK_RETENTION]

            profile.confidence_score = self._profile_confidence(profile, now)
            profile.last_updated = now
            confidence = profile.confidence_score

        logger.info(f"Learned from {action.value} interaction for user {user_id} (confidence: {confidence:.2f})")
        return profile

    @staticmethod
    def _update_interaction_patterns(profile: UserProfile, action: InteractionAction, context: InteractionContext) -> None:
        patterns = profile.interaction_patterns
        is_link = 1.0 if action == InteractionAction.LINKED else 0.0
        patterns.link_rate = LINK_RATE_EMA_DECAY * patterns.link_rate + (1 - LINK_RATE_EMA_DECAY) * is_link
        if context.time_spent_seconds:
            patterns.time_spent_per_suggestion = (
                LINK_RATE_EMA_DECAY * patterns.time_spent_per_suggestion
                + (1 - LINK_RATE_EMA_DECAY) * context.time_spent_seconds
            )

    @staticmethod
    def _update_content_preferences(
        profile: UserProfile, suggestion: Candidate, action: InteractionAction, now: datetime
    ) -> None:
        if action != InteractionAction.LINKED:
            return
        prefs = profile.content_preferences
        if len(suggestion.snippet) > DETAILED_SNIPPET_CHARS:
            prefs.prefers_detailed_descriptions = True
        age = days_between(suggestion.created_at, now)
        if age is not None:
            prefs.prefers_recent_content = age < RECENT_PREFERENCE_DAYS

    @staticmethod
    def _update_system_expertise(profile: UserProfile, suggestion: Candidate, action: InteractionAction) -> None:
        system = suggestion.source_system
        current = profile.system_expertise.get(system, 0.0)
        if action == InteractionAction.LINKED:
            profile.system_expertise[system] = _clamp(current + SYSTEM_EXPERTISE_LINK_STEP)
        elif action == InteractionAction.DISMISSED:
            profile.system_expertise[system] = _clamp(current - SYSTEM_EXPERTISE_DISMISS_STEP)

    @staticmethod
    def _update_topic_interests(profile: UserProfile, keywords: Sequence[Keyword], action: InteractionAction) -> None:
        if action != InteractionAction.LINKED:
            return
        for kw in keywords:
            current = profile.topic_interests.get(kw.word, 0.0)
            profile.topic_interests[kw.word] = _clamp(current + TOPIC_INTEREST_STEP * kw.weight)

    @staticmethod
    def _record_successful_pattern(
        profile: UserProfile,
        suggestion: Candidate,
        action: InteractionAction,
        context: InteractionContext,
        now: datetime,
    ) -> None:
        if action != InteractionAction.LINKED:
            return
        profile.successful_patterns.append(SuccessfulPattern(
            keywords=[k.word for k in context.keywords],
            system=suggestion.source_system,
            outcome=action,
            context={
                "incident_type": context.incident_type,
                "urgency": context.urgency,
                "position": context.position,
            },
            timestamp=now,
        ))
        if len(profile.successful_patterns) > PATTERN_RETENTION:
            del profile.successful_patterns[:-PATTERN_RETENTION]

    @staticmethod
    def implicit_feedback_score(action: InteractionAction, context: InteractionContext) -> float:
        """Implicit satisfaction signal for one interaction, discounted by result position."""
        if action == InteractionAction.LINKED:
            score = 1.0
        elif action == InteractionAction.VIEWED:
            score = 0.6 if (context.time_spent_seconds or 0.0) > ENGAGED_VIEW_SECONDS else 0.3
        else:
            score = 0.1

        if context.position:
            score *= max(0.5, 1 - (context.position - 1) * 0.1)
        return score

    @staticmethod
    def _profile_confidence(profile: UserProfile, now: datetime) -> float:
        events = len(profile.successful_patterns) + len(profile.feedback_scores)
        idle_days = days_between(profile.last_updated, now) or 0.0
        decay = min(1.0, idle_days / CONFIDENCE_DECAY_DAYS)
        raw = (events / CONFIDENCE_EVENT_SCALE) * (1 - decay * CONFIDENCE_DECAY_FACTOR)
        return min(CONFIDENCE_MAX, max(CONFIDENCE_MIN, raw))

    # ------------------------------------------------------------------
    # Ranking
    # ------------------------------------------------------------------

    def get_personalized_ranking(
        self,
        user_id: str,
        ranked: List[ScoredSuggestion],
        keywords: Sequence[Keyword],
    ) -> List[ScoredSuggestion]:
        """
        Attach a personalized score to each suggestion and re-order by it.

        The anonymous user keeps the ranking order with personalized_score
        equal to ml_score.
        """
        if is_anonymous(user_id):
            for item in ranked:
                item.personalized_score = item.ml_score
            return list(ranked)

        now = self._clock()
        with self.store.editing(user_id, self._create_profile) as profile:
            for item in ranked:
                item.personalized_score = self.calculate_personalized_score(profile, item.candidate, keywords, now)
                item.personalization_factors = {
                    "system_expertise": round(profile.system_expertise.get(item.system, 0.0), 4),
                    "user_confidence": round(profile.confidence_score, 4),
                    "expertise_level": profile.expertise_level.value,
                    "preferred_system": item.system in profile.preferred_systems,
                }

        return sorted(ranked, key=lambda s: s.personalized_score, reverse=True)

    def calculate_personalized_score(
        self,
        profile: UserProfile,
        candidate: Candidate,
        keywords: Sequence[Keyword],
        now: Optional[datetime] = None,
    ) -> float:
        now = now or self._clock()
        score = PERSONAL_EXPERTISE_WEIGHT * profile.system_expertise.get(
            candidate.source_system, UNKNOWN_SYSTEM_EXPERTISE
        )

        if keywords:
            alignment = sum(profile.topic_interests.get(k.word, 0.0) * k.weight for k in keywords) / len(keywords)
            score += PERSONAL_TOPIC_WEIGHT * alignment

        prefs = profile.content_preferences
        if prefs.prefers_detailed_descriptions and len(candidate.snippet) > DETAILED_SNIPPET_CHARS:
            score += PERSONAL_DETAIL_BONUS
        age = days_between(candidate.created_at, now)
        if prefs.prefers_recent_content and age is not None and age < RECENT_CONTENT_DAYS:
            score += PERSONAL_RECENT_BONUS

        score += PERSONAL_PATTERN_WEIGHT * self._best_pattern_similarity(
            profile, [k.word for k in keywords], candidate
        )
        return _clamp(score)

    @staticmethod
    def _best_pattern_similarity(profile: UserProfile, words: List[str], candidate: Candidate) -> float:
        """Max Jaccard similarity against stored patterns of the same system."""
        query = set(words)
        best = 0.0
        for pattern in profile.successful_patterns:
            if pattern.system != candidate.source_system:
                continue
            stored = set(pattern.keywords)
            union = stored | query
            if union:
                best = max(best, len(stored & query) / len(union))
        return best

    # ------------------------------------------------------------------
    # Expertise, recommendations, stats
    # ------------------------------------------------------------------

    def update_user_expertise(
        self,
        user_id: str,
        complexity_score: float,
        resolution_quality: float,
        tags: Iterable[str] = (),
    ) -> Optional[UserProfile]:
        """Promote the expertise level after a complex, well-resolved incident and tag interests."""
        if is_anonymous(user_id):
            return None

        with self.store.editing(user_id, self._create_profile) as profile:
            if complexity_score > 0.7 and resolution_quality > 0.8:
                position = _EXPERTISE_ORDER.index(profile.expertise_level)
                if position < len(_EXPERTISE_ORDER) - 1:
                    profile.expertise_level = _EXPERTISE_ORDER[position + 1]
                    logger.info(f"User {user_id} promoted to {profile.expertise_level.value} level")
            for tag in tags:
                profile.topic_interests[tag] = _clamp(profile.topic_interests.get(tag, 0.0) + TOPIC_INTEREST_STEP)
        return profile

    def generate_preference_recommendations(self, user_id: str) -> List[Dict[str, Any]]:
        if is_anonymous(user_id):
            return []

        profile = self.get_user_profile(user_id)
        recommendations: List[Dict[str, Any]] = []

        if profile.preferred_systems:
            top = profile.preferred_systems[0]
            expertise = profile.system_expertise.get(top, 0.0)
            recommendations.append({
                "type": "system_priority",
                "confidence": 0.8,
                "impact": "medium",
                "recommendation": f"Prioritize suggestions from {top.value} based on your interaction history",
                "rationale": f"You have a {expertise * 100:.0f}% success rate with {top.value}",
                "suggested_action": {"system_boost": top.value, "boost_factor": 1.3},
            })

        recommendations.append({
            "type": "content_filtering",
            "confidence": 0.7,
            "impact": "medium",
            "recommendation": f"Filter suggestions to match your {profile.expertise_level.value} technical level",
            "rationale": "Based on your interaction patterns and role",
            "suggested_action": {"content_filter": profile.expertise_level.value, "filter_strength": 0.6},
        })

        link_rate = profile.interaction_patterns.link_rate
        if link_rate < 0.3:
            recommendations.append({
                "type": "workflow_optimization",
                "confidence": 0.85,
                "impact": "high",
                "recommendation": "Consider refining search keywords - your current link rate is below average",
                "rationale": f"Your link rate of {link_rate * 100:.0f}% suggests suggestions aren't well-matched",
                "suggested_action": {"suggested_training": "keyword_optimization", "target_improvement": 0.5},
            })

        return recommendations

    def get_learning_stats(self) -> Dict[str, Any]:
        profiles = self.store.profiles()
        distribution: Dict[str, int] = {}
        for p in profiles:
            distribution[p.expertise_level.value] = distribution.get(p.expertise_level.value, 0) + 1
        return {
            "total_users": len(profiles),
            "avg_confidence": round(sum(p.confidence_score for p in profiles) / len(profiles), 4) if profiles else 0.0,
            "expertise_distribution": distribution,
            "total_learning_events": sum(len(p.successful_patterns) for p in profiles),
        }

    def export_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Serialized profile, or None if the user has never been seen."""
        profile = self.store.get(user_id)
        if profile is None:
            return None
        with self.store.lock_for(user_id):
            return profile.to_dict()
