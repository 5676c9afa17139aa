"""Pytest configuration and fixtures for suggestion engine tests."""

import json
from datetime import datetime, timedelta, timezone
from typing import List

import pytest
from loguru import logger

from incident_suggest.config import Settings
from incident_suggest.domain import Candidate, SourceSystem
from incident_suggest.embeddings import HashEmbeddingProvider
from incident_suggest.interaction_store import InMemoryInteractionStore
from incident_suggest.sources import KnowledgeSource, SolutionDocument, SolutionStore, SourceQuery
from incident_suggest.vector_index import VectorIndex

FIXED_NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def pytest_configure(config):
    """Register custom pytest markers for test categorization."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )


class FakeClock:
    """Manually advanced clock returning epoch seconds (cache clock)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDateClock:
    """Manually advanced clock returning aware datetimes."""

    def __init__(self, start: datetime = FIXED_NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class CountingSource(KnowledgeSource):
    """In-memory source returning fixed candidates and counting calls."""

    def __init__(self, system: SourceSystem, candidates: List[Candidate], delay: float = 0.0):
        self.system = system
        self.candidates = candidates
        self.delay = delay
        self.calls = 0
        self.closed = False

    async def search(self, query: SourceQuery, limit: int) -> List[Candidate]:
        import asyncio

        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return [
            Candidate(
                source_system=c.source_system,
                external_id=c.external_id,
                title=c.title,
                snippet=c.snippet,
                url=c.url,
                created_at=c.created_at,
                raw_score=c.raw_score,
                author=c.author,
                metadata=dict(c.metadata),
            )
            for c in self.candidates[:limit]
        ]

    async def aclose(self) -> None:
        self.closed = True


def make_candidate(
    external_id: str,
    system: SourceSystem = SourceSystem.JIRA,
    title: str = "Login fails with 401 after patch",
    snippet: str = "Reset the SSO token cache after the patch deployment.",
    raw_score: float = 0.5,
    **kwargs,
) -> Candidate:
    return Candidate(
        source_system=system,
        external_id=external_id,
        title=title,
        snippet=snippet,
        url=kwargs.pop("url", f"https://example.test/{system.value}/{external_id}"),
        raw_score=raw_score,
        **kwargs,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def date_clock():
    return FakeDateClock()


@pytest.fixture
def log_events():
    """Structured (JSON) log events emitted while the test runs."""
    lines: List[str] = []
    sink_id = logger.add(lines.append, format="{message}", level="DEBUG")

    def collect(event_type: str) -> List[dict]:
        events = []
        for line in lines:
            text = str(line).strip()
            if text.startswith("{"):
                entry = json.loads(text)
                if entry.get("event") == event_type:
                    events.append(entry)
        return events

    yield collect
    logger.remove(sink_id)


@pytest.fixture
def settings():
    return Settings(hash_embedding_dim=128)


@pytest.fixture
def hash_provider():
    return HashEmbeddingProvider(dim=128)


@pytest.fixture
def history():
    return InMemoryInteractionStore()


@pytest.fixture
def vector_index():
    return VectorIndex(max_chunks_per_owner=50)


@pytest.fixture
def solution_documents() -> List[SolutionDocument]:
    """A small cross-system corpus of resolved incidents and articles."""
    return [
        SolutionDocument(
            id="PROJ-101",
            system=SourceSystem.JIRA,
            title="Login fails with 401 after SSL patch deployment",
            snippet="Users received 401 errors on the portal after the SSL patch.",
            content="Root cause: the SSL certificate chain was not reloaded. Restart the gateway after the patch deployment.",
            url="https://jira.example.test/browse/PROJ-101",
            created_at=FIXED_NOW - timedelta(days=3),
            author="alice",
            tags=["ssl", "auth"],
        ),
        SolutionDocument(
            id="PROJ-102",
            system=SourceSystem.JIRA,
            title="Database connection timeout during nightly batch",
            snippet="Batch jobs time out connecting to the reporting database.",
            content="Increase the pool size and the connection timeout of the batch runner.",
            url="https://jira.example.test/browse/PROJ-102",
            created_at=FIXED_NOW - timedelta(days=40),
        ),
        SolutionDocument(
            id="12345",
            system=SourceSystem.CONFLUENCE,
            title="Runbook: SSL certificate rotation on the portal",
            snippet="Steps to rotate the portal SSL certificate without a 401 storm.",
            content="Rotate the certificate, reload the gateway, then verify login on the portal.",
            url="https://wiki.example.test/pages/12345",
            created_at=FIXED_NOW - timedelta(days=10),
            author="bob",
        ),
        SolutionDocument(
            id="ISSUE-77",
            system=SourceSystem.GITHUB,
            title="401 Unauthorized after upgrading auth middleware",
            snippet="Token validation rejects tokens issued before the patch.",
            content="Clear the token cache or re-issue tokens after upgrading.",
            url="https://github.example.test/org/repo/issues/77",
            created_at=FIXED_NOW - timedelta(days=1),
        ),
        SolutionDocument(
            id="KB0010001",
            system=SourceSystem.SN_KB,
            title="VPN disconnects every hour",
            snippet="VPN sessions drop after sixty minutes.",
            content="Raise the idle timeout on the VPN concentrator.",
            url="https://sn.example.test/kb_view.do?sysparm_article=KB0010001",
        ),
    ]


@pytest.fixture
def solution_store(solution_documents) -> SolutionStore:
    store = SolutionStore()
    for doc in solution_documents:
        store.upsert(doc)
    return store
