"""
Interaction history: what users did with the suggestions they were shown.

Ranking reads it (popularity, link rates, ratings) and personalization
seeds new profiles from it. `InteractionHistory` is the read interface;
`InMemoryInteractionStore` is the process-local implementation used by the
service and tests.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from loguru import logger

from incident_suggest.domain import Interaction, InteractionAction, SourceSystem, utcnow


@dataclass
class SystemPopularity:
    system: SourceSystem
    link_count: int = 0
    view_count: int = 0
    dismiss_count: int = 0

    @property
    def total(self) -> int:
        return self.link_count + self.view_count + self.dismiss_count


@dataclass
class SuggestionEffectiveness:
    suggestion_id: str
    system: SourceSystem
    link_count: int


class InteractionHistory(ABC):
    """Read-side view of recorded interactions."""

    @abstractmethod
    def system_popularity(self, days: int = 30) -> List[SystemPopularity]:
        """Per-system action counts over the last `days` days, most linked first."""

    @abstractmethod
    def most_effective_suggestions(self, limit: int = 100, days: int = 30) -> List[SuggestionEffectiveness]:
        """Suggestions with the most links over the last `days` days, descending."""

    @abstractmethod
    def interactions_by_user(self, user_id: str, limit: int = 100) -> List[Interaction]:
        """A user's interactions, newest first."""

    @abstractmethod
    def ratings_for(self, suggestion_id: str, system: SourceSystem, days: int = 30) -> List[float]:
        """Explicit 1-5 ratings given to one suggestion over the last `days` days."""

    def ratings_by_suggestion(
        self, keys: Iterable[Tuple[SourceSystem, str]], days: int = 30
    ) -> Dict[Tuple[SourceSystem, str], List[float]]:
        """Ratings for many (system, suggestion id) keys; keys without ratings are omitted."""
        ratings = {}
        for system, suggestion_id in set(keys):
            found = self.ratings_for(suggestion_id, system, days)
            if found:
                ratings[(system, suggestion_id)] = found
        return ratings

    def user_system_link_share(self, user_id: str, limit: int = 100) -> Optional[Dict[SourceSystem, float]]:
        """Fraction of a user's recent links that went to each system; None with no links."""
        per_system: Dict[SourceSystem, int] = defaultdict(int)
        for item in self.interactions_by_user(user_id, limit):
            if item.action == InteractionAction.LINKED:
                per_system[item.system] += 1
        total = sum(per_system.values())
        if not total:
            return None
        return {system: count / total for system, count in per_system.items()}


class InMemoryInteractionStore(InteractionHistory):
    """
    Thread-safe in-memory interaction log.

    With `retention_days` set, interactions older than that are dropped on
    every `record` past the prune interval and on explicit `prune()` calls.
    """

    PRUNE_EVERY = 1000

    def __init__(self, clock: Callable[[], datetime] = utcnow, retention_days: Optional[int] = None):
        self._clock = clock
        self.retention_days = retention_days
        self._interactions: List[Interaction] = []
        self._lock = threading.Lock()
        self._next_id = 0
        self._since_prune = 0

    def record(self, interaction: Interaction) -> int:
        """
        Append an interaction.

        Returns:
            Sequential id of the stored interaction
        """
        with self._lock:
            self._interactions.append(interaction)
            self._next_id += 1
            interaction_id = self._next_id
            self._since_prune += 1
            due = self.retention_days is not None and self._since_prune >= self.PRUNE_EVERY
        logger.debug(
            f"Recorded {interaction.action.value} interaction #{interaction_id}: "
            f"user={interaction.user_id} incident={interaction.incident_id} "
            f"suggestion={interaction.system.value}:{interaction.suggestion_id}"
        )
        if due:
            self.prune()
        return interaction_id

    def prune(self) -> int:
        """
        Drop interactions older than the retention window.

        Returns:
            Number of interactions removed (0 without a retention window)
        """
        if self.retention_days is None:
            return 0
        cutoff = self._clock() - timedelta(days=self.retention_days)
        with self._lock:
            before = len(self._interactions)
            self._interactions = [i for i in self._interactions if i.timestamp >= cutoff]
            removed = before - len(self._interactions)
            self._since_prune = 0
        if removed:
            logger.info(f"Pruned {removed} interactions older than {self.retention_days} days")
        return removed

    def _snapshot(self) -> List[Interaction]:
        with self._lock:
            return list(self._interactions)

    def _recent(self, days: int) -> List[Interaction]:
        cutoff = self._clock() - timedelta(days=days)
        return [i for i in self._snapshot() if i.timestamp >= cutoff]

    def __len__(self) -> int:
        with self._lock:
            return len(self._interactions)

    def system_popularity(self, days: int = 30) -> List[SystemPopularity]:
        stats: Dict[SourceSystem, SystemPopularity] = {}
        for item in self._recent(days):
            entry = stats.setdefault(item.system, SystemPopularity(system=item.system))
            if item.action == InteractionAction.LINKED:
                entry.link_count += 1
            elif item.action == InteractionAction.VIEWED:
                entry.view_count += 1
            else:
                entry.dismiss_count += 1
        return sorted(stats.values(), key=lambda s: s.link_count, reverse=True)

    def most_effective_suggestions(self, limit: int = 100, days: int = 30) -> List[SuggestionEffectiveness]:
        links: Counter = Counter()
        for item in self._recent(days):
            if item.action == InteractionAction.LINKED:
                links[(item.system, item.suggestion_id)] += 1
        ranked: List[Tuple[Tuple[SourceSystem, str], int]] = links.most_common(limit)
        return [
            SuggestionEffectiveness(suggestion_id=sid, system=system, link_count=count)
            for (system, sid), count in ranked
        ]

    def interactions_by_user(self, user_id: str, limit: int = 100) -> List[Interaction]:
        mine = [i for i in self._snapshot() if i.user_id == user_id]
        mine.sort(key=lambda i: i.timestamp, reverse=True)
        return mine[:limit]

    def ratings_for(self, suggestion_id: str, system: SourceSystem, days: int = 30) -> List[float]:
        return [
            i.rating for i in self._recent(days)
            if i.rating is not None and i.suggestion_id == suggestion_id and i.system == system
        ]

    def ratings_by_suggestion(
        self, keys: Iterable[Tuple[SourceSystem, str]], days: int = 30
    ) -> Dict[Tuple[SourceSystem, str], List[float]]:
        wanted = set(keys)
        ratings: Dict[Tuple[SourceSystem, str], List[float]] = defaultdict(list)
        for item in self._recent(days):
            key = (item.system, item.suggestion_id)
            if item.rating is not None and key in wanted:
                ratings[key].append(item.rating)
        return dict(ratings)

    def interactions_by_incident(self, incident_id: str) -> List[Interaction]:
        return [i for i in self._snapshot() if i.incident_id == incident_id]
