from __future__ import annotations

"""
Search orchestration and service wiring.

A search runs: keyword extraction -> cache lookup (a hit short-circuits) ->
parallel retrieval over the connected systems -> aggregation -> ranking ->
personalization -> cache store -> response.

All collaborators are built explicitly by build_services() and owned by the
returned Services container; nothing here is a process-wide singleton.
"""

import asyncio
import math
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from loguru import logger

from incident_suggest.aggregator import aggregate_and_rank, generate_search_summary
from incident_suggest.cache import SuggestionCache
from incident_suggest.config import Settings
from incident_suggest.domain import (
    ANONYMOUS_USER,
    Candidate,
    Interaction,
    Keyword,
    ScoredSuggestion,
    SourceSystem,
)
from incident_suggest.embeddings import EmbeddingProvider, create_embedding_provider
from incident_suggest.indexing import IndexingPipeline
from incident_suggest.interaction_store import InMemoryInteractionStore
from incident_suggest.keyword_extractor import extract_keywords
from incident_suggest.logging_config import log_search
from incident_suggest.metrics import (
    cache_evictions,
    cache_size,
    interactions_recorded,
    track_cache_operation,
    track_search,
)
from incident_suggest.models import (
    InteractionRequest,
    InteractionResponse,
    SearchRequest,
    SearchResponse,
    SuggestionOut,
)
from incident_suggest.personalization import InteractionContext, PreferenceEngine, ProfileStore
from incident_suggest.ranking import RankingContext, RankingEngine
from incident_suggest.retriever import CandidateRetriever
from incident_suggest.scheduler import PeriodicTask
from incident_suggest.sources import KnowledgeSource, SemanticSource, SolutionDocument, SolutionStore, SourceQuery
from incident_suggest.tuning_config import DEFAULT_MAX_KEYWORDS
from incident_suggest.vector_index import VectorIndex

NO_SYSTEMS_MESSAGE = "No systems connected. Please connect at least one system to search for solutions."


class SuggestionService:
    """Answers search requests and records feedback."""

    def __init__(
        self,
        sources: Dict[SourceSystem, KnowledgeSource],
        retriever: CandidateRetriever,
        ranking: RankingEngine,
        preferences: PreferenceEngine,
        history: InMemoryInteractionStore,
        cache: Optional[SuggestionCache] = None,
        default_max_results: int = 10,
    ):
        self.sources = sources
        self.retriever = retriever
        self.ranking = ranking
        self.preferences = preferences
        self.history = history
        self.cache = cache
        self.default_max_results = default_max_results

    async def search(self, request: SearchRequest) -> SearchResponse:
        """
        Produce ranked, personalized suggestions for one incident.

        Args:
            request: Validated search request

        Returns:
            SearchResponse; an empty connected-systems list yields zero
            suggestions with an explanatory message
        """
        start = time.perf_counter()
        request_id = uuid.uuid4().hex[:12]
        keywords = extract_keywords(request.text, DEFAULT_MAX_KEYWORDS)
        keyword_words = [k.word for k in keywords]
        max_results = request.max_results or self.default_max_results

        systems = list(self.sources) if request.connected_systems is None else request.connected_systems
        sources = self._sources_for(systems)
        if not sources:
            logger.info(f"[{request_id}] No connected systems for incident {request.incident_id}")
            return SearchResponse(
                suggestions=[],
                total_found=0,
                search_keywords=keyword_words,
                search_time_ms=self._elapsed_ms(start),
                cached=False,
                message=NO_SYSTEMS_MESSAGE,
            )

        user_id = request.user_id or ANONYMOUS_USER
        scope = self._cache_scope(systems, user_id, max_results)
        if self.cache is not None:
            payload = self.cache.get(keywords, incident_id=request.incident_id, scope=scope)
            track_cache_operation(hit=payload is not None, size=len(self.cache))
            if payload is not None:
                response = SearchResponse(**payload)
                response.cached = True
                response.search_time_ms = self._elapsed_ms(start)
                self._finish(request_id, request, response, keyword_words)
                return response

        query = SourceQuery(incident_text=request.text, keywords=keywords)
        limit_per_source = math.ceil(max_results / len(sources))
        candidates = await self.retriever.retrieve(query, sources, limit_per_source)
        top, total_found = aggregate_and_rank(candidates, max_results)

        context = RankingContext(
            user_id=user_id,
            keywords=keywords,
            incident_type=request.incident_type,
            urgency_level=request.urgency_level,
            user_team=request.team,
        )
        # History reads scan the interaction log, so keep them off the event loop
        ranked = await asyncio.to_thread(self.ranking.rank_suggestions, top, context)
        personalized = self.preferences.get_personalized_ranking(context.user_id, ranked, keywords)

        response = SearchResponse(
            suggestions=[self._to_output(s) for s in personalized[:max_results]],
            total_found=total_found,
            search_keywords=keyword_words,
            search_time_ms=self._elapsed_ms(start),
            cached=False,
        )

        if self.cache is not None:
            before = self.cache.evictions
            self.cache.put(
                keywords,
                response.model_dump(mode="json"),
                incident_id=request.incident_id,
                search_time_ms=response.search_time_ms,
                scope=scope,
            )
            if self.cache.evictions > before:
                cache_evictions.labels(reason="capacity").inc(self.cache.evictions - before)

        self._finish(request_id, request, response, keyword_words)
        return response

    def _cache_scope(self, systems: Iterable[SourceSystem], user_id: str, max_results: int) -> str:
        """Connected systems, user and result count a cached response was computed for."""
        connected = sorted({system.value for system in systems if system in self.sources})
        return f"systems={','.join(connected)};user={user_id};max={max_results}"

    def _sources_for(self, systems: Iterable[SourceSystem]) -> List[KnowledgeSource]:
        selected = []
        for system in systems:
            source = self.sources.get(system)
            if source is None:
                logger.warning(f"No knowledge source registered for {system.value}, skipping")
                continue
            if source not in selected:
                selected.append(source)
        return selected

    def _to_output(self, suggestion: ScoredSuggestion) -> SuggestionOut:
        candidate = suggestion.candidate
        metadata = dict(candidate.metadata)
        metadata.update({
            "ml_score": round(suggestion.ml_score, 4),
            "personalized_score": (
                round(suggestion.personalized_score, 4) if suggestion.personalized_score is not None else None
            ),
            "model_version": self.ranking.model_version,
            "created_at": candidate.created_at.isoformat() if candidate.created_at else None,
            "author": candidate.author,
        })
        if suggestion.personalization_factors:
            metadata["personalization_factors"] = suggestion.personalization_factors
        return SuggestionOut(
            system=candidate.source_system,
            title=candidate.title,
            id=candidate.external_id,
            snippet=candidate.snippet,
            link=candidate.url,
            score=round(min(max(suggestion.final_score, 0.0), 1.0), 4),
            metadata=metadata,
        )

    @staticmethod
    def _elapsed_ms(start: float) -> float:
        return round((time.perf_counter() - start) * 1000, 3)

    @staticmethod
    def _finish(request_id: str, request: SearchRequest, response: SearchResponse, keywords: List[str]) -> None:
        track_search(response.cached, response.search_time_ms / 1000, len(response.suggestions))
        log_search(
            request_id=request_id,
            keywords=keywords,
            latency_ms=response.search_time_ms,
            results_count=len(response.suggestions),
            total_found=response.total_found,
            cached=response.cached,
            incident_id=request.incident_id,
            summary=generate_search_summary(keywords, response.total_found, response.search_time_ms),
        )

    def record_interaction(self, request: InteractionRequest) -> InteractionResponse:
        """Store an interaction and feed it to the user's profile."""
        if request.user_id != ANONYMOUS_USER:
            # Seed the profile from history before this event joins it
            self.preferences.get_user_profile(request.user_id)

        self.history.record(Interaction(
            user_id=request.user_id,
            incident_id=request.incident_id,
            suggestion_id=request.suggestion_id,
            system=request.system,
            action=request.action,
            rating=request.rating,
        ))
        interactions_recorded.labels(action=request.action.value).inc()

        suggestion = Candidate(
            source_system=request.system,
            external_id=request.suggestion_id,
            title=request.title,
            snippet=request.snippet,
            created_at=request.created_at,
        )
        context = InteractionContext(
            keywords=[Keyword(word=w.lower(), weight=1.0) for w in request.keywords if w.strip()],
            time_spent_seconds=request.time_spent_seconds,
            position=request.position,
            rating=request.rating,
        )
        profile = self.preferences.learn_from_interaction(request.user_id, suggestion, request.action, context)
        return InteractionResponse(
            recorded=True,
            learned=profile is not None,
            confidence_score=round(profile.confidence_score, 4) if profile is not None else None,
        )


# ============================================================================
# Service wiring
# ============================================================================


@dataclass
class Services:
    """Every long-lived collaborator of one application instance."""
    settings: Settings
    provider: EmbeddingProvider
    index: VectorIndex
    solutions: SolutionStore
    history: InMemoryInteractionStore
    cache: Optional[SuggestionCache]
    ranking: RankingEngine
    preferences: PreferenceEngine
    retriever: CandidateRetriever
    indexing: IndexingPipeline
    sources: Dict[SourceSystem, KnowledgeSource]
    suggestions: SuggestionService
    tasks: List[PeriodicTask] = field(default_factory=list)

    async def start(self, documents: Optional[Iterable[SolutionDocument]] = None) -> None:
        """Index the initial documents and start the periodic tasks."""
        if documents is not None:
            await self.indexing.index_all(documents)
        for task in self.tasks:
            await task.start()

    async def aclose(self) -> None:
        for task in self.tasks:
            await task.stop()
        for source in set(self.sources.values()):
            await source.aclose()
        logger.info("Services shut down")

    def cleanup_cache(self) -> int:
        if self.cache is None:
            return 0
        removed = self.cache.cleanup_expired()
        if removed:
            cache_evictions.labels(reason="expired").inc(removed)
        cache_size.set(len(self.cache))
        return removed


def build_services(
    settings: Settings,
    provider: Optional[EmbeddingProvider] = None,
    extra_sources: Optional[Dict[SourceSystem, KnowledgeSource]] = None,
    history: Optional[InMemoryInteractionStore] = None,
    cache: Optional[SuggestionCache] = None,
) -> Services:
    """
    Construct every collaborator from settings.

    Each system gets a SemanticSource over the shared solution store unless
    extra_sources registers a different source (e.g. a remote HTTP search)
    for it.
    """
    provider = provider or create_embedding_provider(settings)
    index = VectorIndex(max_chunks_per_owner=settings.max_chunks_per_owner)
    solutions = SolutionStore()
    history = history or InMemoryInteractionStore(retention_days=settings.history_retention_days)
    if cache is None and settings.cache_enabled:
        cache = SuggestionCache(ttl_minutes=settings.cache_ttl_minutes, max_entries=settings.cache_max_entries)

    sources: Dict[SourceSystem, KnowledgeSource] = {
        system: SemanticSource(
            system, solutions, index, provider, embedding_timeout=settings.embedding_timeout_seconds
        )
        for system in SourceSystem
    }
    sources.update(extra_sources or {})

    retriever = CandidateRetriever(timeout_seconds=settings.source_timeout_seconds)
    ranking = RankingEngine(history=history, history_window_days=settings.history_window_days)
    preferences = PreferenceEngine(history=history, store=ProfileStore(max_profiles=settings.profile_max_entries))
    indexing = IndexingPipeline(
        solutions,
        index,
        provider,
        max_chars=settings.chunk_max_chars,
        overlap_ratio=settings.chunk_overlap_ratio,
        embedding_timeout=settings.embedding_timeout_seconds,
    )
    suggestions = SuggestionService(
        sources=sources,
        retriever=retriever,
        ranking=ranking,
        preferences=preferences,
        history=history,
        cache=cache,
        default_max_results=settings.default_max_results,
    )

    services = Services(
        settings=settings,
        provider=provider,
        index=index,
        solutions=solutions,
        history=history,
        cache=cache,
        ranking=ranking,
        preferences=preferences,
        retriever=retriever,
        indexing=indexing,
        sources=sources,
        suggestions=suggestions,
    )

    if cache is not None:
        services.tasks.append(PeriodicTask(
            "cache-cleanup",
            settings.cache_cleanup_interval_minutes * 60,
            services.cleanup_cache,
        ))
    services.tasks.append(PeriodicTask(
        "index-resync",
        settings.resync_interval_minutes * 60,
        indexing.resync,
    ))
    services.tasks.append(PeriodicTask(
        "history-prune",
        settings.history_prune_interval_minutes * 60,
        history.prune,
    ))

    logger.info(
        f"Services built: {len(sources)} sources, embeddings={provider.name}, "
        f"cache={'on' if cache is not None else 'off'}"
    )
    return services
