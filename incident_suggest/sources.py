"""
Knowledge sources queried for candidate solutions.

Every source answers `search(query, limit) -> List[Candidate]` for exactly
one SourceSystem:

- SemanticSource: local solution documents through the vector index, with a
  keyword-substring fallback when vectors cannot help
- HttpKnowledgeSource: a remote REST search endpoint (GitHub issue search,
  Jira JQL search) through httpx

Sources raise SourceUnavailableError / SourceTimeoutError on failure; the
retriever turns those into an empty contribution.
"""

from __future__ import annotations

import asyncio
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import httpx
from loguru import logger

from incident_suggest.domain import Candidate, Keyword, SourceSystem, parse_timestamp
from incident_suggest.embeddings import EmbeddingProvider
from incident_suggest.errors import EmbeddingProviderError, SourceTimeoutError, SourceUnavailableError
from incident_suggest.keyword_extractor import generate_search_query, generate_system_queries
from incident_suggest.tuning_config import (
    FALLBACK_MIN_RELEVANCE,
    KEYWORD_FALLBACK_SCORE,
    KEYWORD_OVERLAP_BOOST_MAX,
    KEYWORD_OVERLAP_BOOST_PER_HIT,
    SEMANTIC_MIN_RELEVANCE,
    VECTOR_CANDIDATE_POOL,
)
from incident_suggest.vector_index import VectorIndex, VectorMatch

_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")


@dataclass
class SourceQuery:
    """What every source is asked: the incident text and its keywords."""
    incident_text: str
    keywords: List[Keyword] = field(default_factory=list)

    @property
    def search_string(self) -> str:
        return generate_search_query(self.keywords)

    @property
    def tokens(self) -> List[str]:
        if self.keywords:
            return [k.word.lower() for k in self.keywords]
        return [t for t in _TOKEN_SPLIT.split(self.incident_text.lower()) if len(t) > 2]


class KnowledgeSource(ABC):
    """Base class for all knowledge sources."""

    system: SourceSystem

    @property
    def name(self) -> str:
        return self.system.value

    @abstractmethod
    async def search(self, query: SourceQuery, limit: int) -> List[Candidate]:
        """Return at most `limit` candidates for the query."""

    async def aclose(self) -> None:
        """Release held resources (no-op by default)."""


# ============================================================================
# Local solution documents
# ============================================================================


@dataclass
class SolutionDocument:
    """A synced solution (ticket, page, issue, article) held locally."""
    id: str
    system: SourceSystem
    title: str
    snippet: str = ""
    content: str = ""
    url: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    author: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    active: bool = True

    @property
    def owner_id(self) -> str:
        """Vector index owner key; ids are only unique within a system."""
        return f"{self.system.value}:{self.id}"

    @property
    def index_text(self) -> str:
        return " ".join(part for part in (self.title, self.snippet, self.content) if part)

    def to_candidate(self, raw_score: float, **extra: Any) -> Candidate:
        metadata: Dict[str, Any] = {
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "tags": list(self.tags),
            "external_url": self.url or None,
        }
        metadata.update(extra)
        return Candidate(
            source_system=self.system,
            external_id=self.id,
            title=self.title,
            snippet=self.snippet,
            url=self.url,
            created_at=self.created_at,
            raw_score=raw_score,
            author=self.author,
            metadata=metadata,
        )


class SolutionStore:
    """Thread-safe in-memory store of solution documents."""

    def __init__(self) -> None:
        self._docs: Dict[str, SolutionDocument] = {}
        self._lock = threading.Lock()

    def upsert(self, doc: SolutionDocument) -> None:
        with self._lock:
            self._docs[doc.owner_id] = doc

    def get(self, owner_id: str) -> Optional[SolutionDocument]:
        with self._lock:
            return self._docs.get(owner_id)

    def remove(self, owner_id: str) -> bool:
        with self._lock:
            return self._docs.pop(owner_id, None) is not None

    def documents(self, system: Optional[SourceSystem] = None, active_only: bool = True) -> List[SolutionDocument]:
        with self._lock:
            docs = list(self._docs.values())
        return [
            d for d in docs
            if (system is None or d.system == system) and (d.active or not active_only)
        ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._docs)


def _recency_key(doc: SolutionDocument) -> float:
    stamp = doc.updated_at or doc.created_at
    return stamp.timestamp() if stamp else 0.0


class SemanticSource(KnowledgeSource):
    """
    Vector search over one system's local solution documents.

    Steps:
    1. Embed the incident text (bounded by embedding_timeout)
    2. Take the top chunk matches of this system and keep the best chunk per document
    3. Boost each by keyword overlap and drop anything under the threshold
    4. With nothing left, or when embedding fails, match keywords as substrings
    """

    def __init__(
        self,
        system: SourceSystem,
        store: SolutionStore,
        index: VectorIndex,
        provider: EmbeddingProvider,
        embedding_timeout: float = 10.0,
        min_relevance: Optional[float] = None,
    ):
        self.system = system
        self.store = store
        self.index = index
        self.provider = provider
        self.embedding_timeout = embedding_timeout
        if min_relevance is None:
            min_relevance = SEMANTIC_MIN_RELEVANCE if provider.is_semantic else FALLBACK_MIN_RELEVANCE
        self.min_relevance = min_relevance

    async def search(self, query: SourceQuery, limit: int) -> List[Candidate]:
        if limit <= 0:
            return []

        try:
            vectors = await self.provider.embed_async([query.incident_text], timeout=self.embedding_timeout)
        except EmbeddingProviderError as e:
            logger.warning(f"{self.name}: embedding unavailable, using keyword fallback ({e.message})")
            return self.keyword_fallback(query, limit)

        # Off the event loop, so the retriever timeout bounds the wait
        matches = await asyncio.to_thread(
            self.index.search, vectors[0], VECTOR_CANDIDATE_POOL, f"{self.system.value}:"
        )
        candidates = self._rank_matches(matches, query)
        if not candidates:
            logger.debug(f"{self.name}: no vector match above {self.min_relevance}, using keyword fallback")
            return self.keyword_fallback(query, limit)
        return candidates[:limit]

    def _rank_matches(self, matches: List[VectorMatch], query: SourceQuery) -> List[Candidate]:
        best: Dict[str, VectorMatch] = {}
        for match in matches:
            prev = best.get(match.owner_id)
            if prev is None or match.score > prev.score:
                best[match.owner_id] = match

        tokens = query.tokens
        candidates: List[Candidate] = []
        for owner_id, match in best.items():
            doc = self.store.get(owner_id)
            if doc is None or doc.system != self.system or not doc.active:
                continue
            haystack = doc.index_text.lower()
            hits = sum(1 for t in tokens if t in haystack)
            boosted = match.score + min(hits * KEYWORD_OVERLAP_BOOST_PER_HIT, KEYWORD_OVERLAP_BOOST_MAX)
            if boosted < self.min_relevance:
                continue
            candidates.append(doc.to_candidate(
                raw_score=min(boosted, 1.0),
                semantic_score=max(0.0, min(match.score, 1.0)),
                match_type="semantic",
                best_chunk=match.chunk_index,
            ))

        candidates.sort(key=lambda c: c.raw_score, reverse=True)
        return candidates

    def keyword_fallback(self, query: SourceQuery, limit: int) -> List[Candidate]:
        """Substring match over title/snippet/content at a fixed base score."""
        tokens = query.tokens
        if not tokens:
            return []

        scored = []
        for doc in self.store.documents(self.system):
            haystack = doc.index_text.lower()
            hits = sum(1 for t in tokens if t in haystack)
            if hits:
                scored.append((hits, doc))

        # Most keyword hits first, then most recently updated
        scored.sort(key=lambda pair: (pair[0], _recency_key(pair[1])), reverse=True)
        return [
            doc.to_candidate(raw_score=KEYWORD_FALLBACK_SCORE, match_type="keyword")
            for _, doc in scored[:limit]
        ]


# ============================================================================
# Remote REST sources
# ============================================================================

Mapper = Callable[[Dict[str, Any], str], List[Candidate]]


def github_issue_mapper(payload: Dict[str, Any], base_url: str) -> List[Candidate]:
    """Map a GitHub `/search/issues` response to candidates."""
    candidates = []
    for item in payload.get("items") or []:
        number = item.get("number")
        if number is None:
            continue
        candidates.append(Candidate(
            source_system=SourceSystem.GITHUB,
            external_id=f"ISSUE-{number}",
            title=item.get("title") or f"Issue #{number}",
            snippet=(item.get("body") or "")[:500],
            url=item.get("html_url") or "",
            created_at=parse_timestamp(item.get("created_at")),
            author=(item.get("user") or {}).get("login"),
            metadata={
                "state": item.get("state"),
                "labels": [label.get("name") for label in item.get("labels") or [] if isinstance(label, dict)],
                "comments": item.get("comments", 0),
            },
        ))
    return candidates


def jira_issue_mapper(payload: Dict[str, Any], base_url: str) -> List[Candidate]:
    """Map a Jira `/rest/api/2/search` response to candidates."""
    candidates = []
    for issue in payload.get("issues") or []:
        key = issue.get("key")
        if not key:
            continue
        fields = issue.get("fields") or {}
        status = fields.get("status") or {}
        candidates.append(Candidate(
            source_system=SourceSystem.JIRA,
            external_id=key,
            title=fields.get("summary") or key,
            snippet=(fields.get("description") or "")[:500],
            url=f"{base_url.rstrip('/')}/browse/{key}",
            created_at=parse_timestamp(fields.get("created")),
            author=(fields.get("reporter") or {}).get("displayName"),
            metadata={"status": status.get("name") if isinstance(status, dict) else status},
        ))
    return candidates


class HttpKnowledgeSource(KnowledgeSource):
    """
    Remote search endpoint queried with httpx.

    The client is created lazily with connection limits and a bounded
    timeout, and must be released with aclose().
    """

    def __init__(
        self,
        system: SourceSystem,
        base_url: str,
        search_path: str,
        mapper: Mapper,
        params_builder: Callable[[SourceQuery, int], Dict[str, Any]],
        timeout: float = 5.0,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_connections: int = 10,
    ):
        self.system = system
        self.base_url = base_url.rstrip("/")
        self.search_path = search_path
        self.mapper = mapper
        self.params_builder = params_builder
        self.timeout = timeout
        self.headers = headers or {}
        self.max_connections = max_connections
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Accept": "application/json", **self.headers},
                limits=httpx.Limits(max_connections=self.max_connections, max_keepalive_connections=5),
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
                follow_redirects=True,
            )
            logger.debug(f"Created HTTP client for {self.name} at {self.base_url}")
        return self._client

    async def search(self, query: SourceQuery, limit: int) -> List[Candidate]:
        if limit <= 0 or not query.keywords:
            return []

        client = await self._get_client()
        try:
            resp = await client.get(self.search_path, params=self.params_builder(query, limit))
            resp.raise_for_status()
            data = resp.json()
        except httpx.TimeoutException as e:
            raise SourceTimeoutError(
                f"{self.name} search timed out", system=self.name, timeout_seconds=self.timeout, cause=e
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise SourceUnavailableError(f"{self.name} search failed: {e}", system=self.name, cause=e) from e

        candidates = self.mapper(data, self.base_url)[:limit]
        words = [k.word.lower() for k in query.keywords]
        for candidate in candidates:
            text = candidate.text.lower()
            candidate.raw_score = round(sum(1 for w in words if w in text) / len(words), 4)
        return candidates

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def github_source(
    base_url: str = "https://api.github.com",
    token: Optional[str] = None,
    timeout: float = 5.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> HttpKnowledgeSource:
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    return HttpKnowledgeSource(
        system=SourceSystem.GITHUB,
        base_url=base_url,
        search_path="/search/issues",
        mapper=github_issue_mapper,
        params_builder=lambda q, limit: {
            "q": generate_system_queries(q.keywords)[SourceSystem.GITHUB],
            "per_page": limit,
        },
        timeout=timeout,
        headers=headers,
        transport=transport,
    )


def jira_source(
    base_url: str,
    token: Optional[str] = None,
    timeout: float = 5.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> HttpKnowledgeSource:
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    return HttpKnowledgeSource(
        system=SourceSystem.JIRA,
        base_url=base_url,
        search_path="/rest/api/2/search",
        mapper=jira_issue_mapper,
        params_builder=lambda q, limit: {
            "jql": generate_system_queries(q.keywords)[SourceSystem.JIRA],
            "maxResults": limit,
        },
        timeout=timeout,
        headers=headers,
        transport=transport,
    )
