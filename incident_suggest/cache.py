from __future__ import annotations

"""
Suggestion response cache.

Caches serialized search responses keyed by the incident's keyword set and
a scope (connected systems and user), with an incident-number index, also
per scope, that takes priority on lookup.

Design:
- Key: sha256 of the scope plus the weight-sorted, lowercased, space-joined
  keyword string
- Absolute expiry per entry (default 60 minutes); expired entries are never
  returned but are only removed by cleanup_expired() or the size cap
- Optional max_entries cap: expired entries are swept first, then the
  oldest-created entries are evicted
- Thread-safe with lock-based synchronization; clock is injectable
"""

import hashlib
import json
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger

from incident_suggest.domain import CacheEntry, Keyword
from incident_suggest.errors import CacheCorruptError
from incident_suggest.logging_config import log_cache_event


def make_cache_key(keywords: List[Keyword], scope: str = "") -> str:
    """
    Create a deterministic cache key from a keyword set.

    Keywords are ordered by descending weight (stable), so the same
    extraction always yields the same key. A non-empty scope keeps responses
    computed for different system sets or users apart.
    """
    ordered = sorted(keywords, key=lambda k: k.weight, reverse=True)
    keyword_string = " ".join(k.word.lower().strip() for k in ordered)
    if scope:
        keyword_string = f"{scope}\n{keyword_string}"
    return hashlib.sha256(keyword_string.encode("utf-8")).hexdigest()


class SuggestionCache:
    """
    TTL cache for search responses.

    Payloads are stored as JSON text; a payload that fails to decode counts
    as a miss and is overwritten by the next store for its key.
    """

    def __init__(
        self,
        ttl_minutes: float = 60.0,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize cache.

        Args:
            ttl_minutes: Default time-to-live for new entries
            max_entries: Size cap; 0 disables it
            clock: Returns the current time in seconds
        """
        self.ttl_minutes = ttl_minutes
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._incident_index: Dict[Tuple[str, str], str] = {}
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(
        self,
        keywords: List[Keyword],
        incident_id: Optional[str] = None,
        scope: str = "",
    ) -> Optional[Dict[str, Any]]:
        """
        Get a cached response if one is still valid.

        The incident id is tried first, then the keyword key, both within scope.

        Returns:
            Decoded response dict, or None on miss/expiry/corruption
        """
        now = self._clock()
        with self._lock:
            entry = None
            if incident_id:
                key = self._incident_index.get((scope, incident_id))
                candidate = self._entries.get(key) if key else None
                if candidate is not None and candidate.is_valid(now):
                    entry = candidate

            if entry is None:
                candidate = self._entries.get(make_cache_key(keywords, scope))
                if candidate is not None and candidate.is_valid(now):
                    entry = candidate

            if entry is None:
                self.misses += 1
                return None

            try:
                payload = self._decode(entry)
            except CacheCorruptError as e:
                self.misses += 1
                logger.warning(f"Cache entry unreadable, treating as miss: {e.message}")
                return None

            self.hits += 1

        log_cache_event("hit", entry.key, incident_id=incident_id)
        return payload

    @staticmethod
    def _decode(entry: CacheEntry) -> Dict[str, Any]:
        try:
            payload = json.loads(entry.payload)
        except (TypeError, ValueError) as e:
            raise CacheCorruptError(f"Invalid JSON payload for key {entry.key[:16]}", key=entry.key, cause=e) from e
        if not isinstance(payload, dict):
            raise CacheCorruptError(f"Payload for key {entry.key[:16]} is not an object", key=entry.key)
        return payload

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    def put(
        self,
        keywords: List[Keyword],
        payload: Dict[str, Any],
        incident_id: Optional[str] = None,
        ttl_minutes: Optional[float] = None,
        search_time_ms: Optional[float] = None,
        scope: str = "",
    ) -> str:
        """
        Store a response, superseding any entry for the same key.

        Args:
            keywords: Keyword set the response was computed for
            payload: JSON-serializable response
            incident_id: Optional incident number to index the entry under
            ttl_minutes: Override of the default TTL
            search_time_ms: Latency of the uncached computation
            scope: Connected systems and user the response was computed for

        Returns:
            Cache key of the stored entry
        """
        ttl = self.ttl_minutes if ttl_minutes is None else ttl_minutes
        if ttl <= 0:
            raise ValueError("ttl_minutes must be > 0")

        key = make_cache_key(keywords, scope)
        serialized = json.dumps(payload, default=str)
        now = self._clock()
        entry = CacheEntry(
            key=key,
            payload=serialized,
            created_at=now,
            expires_at=now + ttl * 60.0,
            incident_id=incident_id,
            search_time_ms=search_time_ms,
        )

        with self._lock:
            # Re-insert so dict order tracks creation order
            self._entries.pop(key, None)
            self._entries[key] = entry
            if incident_id:
                self._incident_index[(scope, incident_id)] = key
            if self.max_entries and len(self._entries) > self.max_entries:
                self._enforce_capacity(now)

        log_cache_event("store", key, incident_id=incident_id)
        return key

    def _enforce_capacity(self, now: float) -> None:
        """Sweep expired entries, then evict oldest-created ones (lock held)."""
        self._remove_keys([k for k, e in self._entries.items() if not e.is_valid(now)])

        overflow = len(self._entries) - self.max_entries
        if overflow > 0:
            oldest = sorted(self._entries.values(), key=lambda e: e.created_at)[:overflow]
            self._remove_keys([e.key for e in oldest])
            self.evictions += overflow
            logger.debug(f"Cache eviction: removed {overflow} oldest entries, size={len(self._entries)}")

    def _remove_keys(self, keys: List[str]) -> int:
        if not keys:
            return 0
        doomed = set(keys)
        for key in doomed:
            self._entries.pop(key, None)
        self._incident_index = {
            inc: key for inc, key in self._incident_index.items() if key not in doomed
        }
        return len(doomed)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup_expired(self) -> int:
        """
        Remove all entries whose expiry time has passed.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        with self._lock:
            removed = self._remove_keys([k for k, e in self._entries.items() if e.expires_at <= now])
        if removed:
            logger.info(f"Cache cleanup: removed {removed} expired entries")
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._incident_index.clear()
            self.hits = 0
            self.misses = 0
            self.evictions = 0
        logger.info("Suggestion cache cleared")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        """
        Get cache statistics.

        Returns:
            Dict with total/valid/expired counts, average search latency of
            the cached computations, hits, misses and hit rate
        """
        now = self._clock()
        with self._lock:
            entries = list(self._entries.values())
            hits, misses = self.hits, self.misses

        valid = sum(1 for e in entries if e.is_valid(now))
        timings = [e.search_time_ms for e in entries if e.search_time_ms is not None]
        lookups = hits + misses
        return {
            "total_entries": len(entries),
            "valid_entries": valid,
            "expired_entries": len(entries) - valid,
            "avg_search_time_ms": round(sum(timings) / len(timings), 2) if timings else 0.0,
            "hits": hits,
            "misses": misses,
            "hit_rate": round(hits / lookups, 4) if lookups else 0.0,
            "max_entries": self.max_entries or None,
        }
