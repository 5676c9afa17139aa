"""Tests for local and remote knowledge sources."""

import asyncio
import time

import httpx
import pytest
import pytest_asyncio

from incident_suggest.domain import SourceSystem
from incident_suggest.embeddings import HashEmbeddingProvider
from incident_suggest.errors import SourceTimeoutError, SourceUnavailableError
from incident_suggest.indexing import IndexingPipeline
from incident_suggest.keyword_extractor import extract_keywords
from incident_suggest.sources import (
    SemanticSource,
    SolutionDocument,
    SolutionStore,
    SourceQuery,
    github_issue_mapper,
    github_source,
    jira_issue_mapper,
    jira_source,
)
from incident_suggest.vector_index import VectorIndex

INCIDENT = "Login fails with 401 after SSL patch deployment on the portal"


def make_query(text=INCIDENT):
    return SourceQuery(incident_text=text, keywords=extract_keywords(text))


class FailingProvider(HashEmbeddingProvider):
    def embed(self, texts):
        raise RuntimeError("embedding service down")


@pytest_asyncio.fixture
async def indexed(solution_store, hash_provider):
    index = VectorIndex()
    pipeline = IndexingPipeline(solution_store, index, hash_provider)
    await pipeline.index_all()
    return solution_store, index


class TestSolutionDocument:
    def test_owner_id_is_system_scoped(self):
        doc = SolutionDocument(id="42", system=SourceSystem.GITHUB, title="t")
        assert doc.owner_id == "GITHUB:42"

    def test_to_candidate_carries_metadata(self, solution_documents):
        candidate = solution_documents[0].to_candidate(0.7, match_type="semantic")
        assert candidate.dedup_key == (SourceSystem.JIRA, "PROJ-101")
        assert candidate.raw_score == 0.7
        assert candidate.author == "alice"
        assert candidate.metadata["tags"] == ["ssl", "auth"]
        assert candidate.metadata["match_type"] == "semantic"

    def test_store_filters_inactive(self):
        store = SolutionStore()
        store.upsert(SolutionDocument(id="1", system=SourceSystem.JIRA, title="a"))
        store.upsert(SolutionDocument(id="2", system=SourceSystem.JIRA, title="b", active=False))
        assert [d.id for d in store.documents()] == ["1"]
        assert len(store.documents(active_only=False)) == 2
        assert store.remove("JIRA:2") is True
        assert store.remove("JIRA:2") is False


class TestSemanticSource:
    """Vector search with keyword fallback."""

    @pytest.mark.asyncio
    async def test_finds_relevant_document_for_its_system(self, indexed, hash_provider):
        store, index = indexed
        source = SemanticSource(SourceSystem.JIRA, store, index, hash_provider)

        results = await source.search(make_query(), limit=5)

        assert results
        assert results[0].external_id == "PROJ-101"
        assert all(c.source_system == SourceSystem.JIRA for c in results)
        assert all(0.0 <= c.raw_score <= 1.0 for c in results)

    @pytest.mark.asyncio
    async def test_semantic_matches_carry_score_metadata(self, indexed, hash_provider):
        store, index = indexed
        source = SemanticSource(SourceSystem.JIRA, store, index, hash_provider, min_relevance=0.0)

        results = await source.search(make_query(), limit=5)

        top = results[0]
        assert top.metadata["match_type"] == "semantic"
        assert 0.0 <= top.metadata["semantic_score"] <= 1.0
        assert top.metadata["best_chunk"] == 0

    def test_threshold_depends_on_backend(self, solution_store, hash_provider):
        class Semantic(HashEmbeddingProvider):
            is_semantic = True

        index = VectorIndex()
        assert SemanticSource(SourceSystem.JIRA, solution_store, index, hash_provider).min_relevance == 0.25
        assert SemanticSource(SourceSystem.JIRA, solution_store, index, Semantic()).min_relevance == 0.6

    @pytest.mark.asyncio
    async def test_keyword_fallback_when_embedding_fails(self, indexed):
        store, index = indexed
        source = SemanticSource(SourceSystem.CONFLUENCE, store, index, FailingProvider(dim=128))

        results = await source.search(make_query(), limit=5)

        assert [c.external_id for c in results] == ["12345"]
        assert results[0].raw_score == 0.4
        assert results[0].metadata["match_type"] == "keyword"

    @pytest.mark.asyncio
    async def test_keyword_fallback_when_nothing_passes_threshold(self, indexed, hash_provider):
        store, index = indexed
        source = SemanticSource(SourceSystem.SN_KB, store, index, hash_provider, min_relevance=1.5)

        results = await source.search(make_query("VPN drops every hour"), limit=5)

        assert [c.external_id for c in results] == ["KB0010001"]
        assert results[0].metadata["match_type"] == "keyword"

    @pytest.mark.asyncio
    async def test_no_match_returns_empty(self, indexed, hash_provider):
        store, index = indexed
        source = SemanticSource(SourceSystem.SN_KB, store, index, hash_provider, min_relevance=1.5)
        assert await source.search(make_query("kubernetes"), limit=5) == []

    @pytest.mark.asyncio
    async def test_inactive_documents_are_skipped(self, indexed, hash_provider):
        store, index = indexed
        doc = store.get("JIRA:PROJ-101")
        doc.active = False
        source = SemanticSource(SourceSystem.JIRA, store, index, hash_provider, min_relevance=0.0)

        results = await source.search(make_query(), limit=5)

        assert "PROJ-101" not in [c.external_id for c in results]

    @pytest.mark.asyncio
    async def test_crowded_index_does_not_starve_smaller_system(self, hash_provider):
        """Another system filling the candidate pool must not push this one to keyword fallback."""
        store, index = SolutionStore(), VectorIndex()
        pipeline = IndexingPipeline(store, index, hash_provider)
        docs = [SolutionDocument(id=f"J{i}", system=SourceSystem.JIRA, title=INCIDENT) for i in range(80)]
        docs.append(SolutionDocument(
            id="G1", system=SourceSystem.GITHUB, title="Login fails with 401 after SSL patch deployment",
        ))
        await pipeline.index_all(docs)

        results = await SemanticSource(SourceSystem.GITHUB, store, index, hash_provider).search(make_query(), limit=5)

        assert [c.external_id for c in results] == ["G1"]
        assert results[0].metadata["match_type"] == "semantic"
        assert results[0].raw_score > 0.4

    @pytest.mark.asyncio
    async def test_slow_index_search_does_not_block_event_loop(self, indexed, hash_provider):
        store, index = indexed
        original = index.search

        def slow_search(*args, **kwargs):
            time.sleep(0.3)
            return original(*args, **kwargs)

        index.search = slow_search
        source = SemanticSource(SourceSystem.JIRA, store, index, hash_provider)
        ticks = 0

        async def ticker():
            nonlocal ticks
            while True:
                await asyncio.sleep(0.01)
                ticks += 1

        ticking = asyncio.create_task(ticker())
        results = await source.search(make_query(), limit=3)
        ticking.cancel()

        assert results
        assert ticks >= 10

    def test_keyword_fallback_orders_by_hits_then_recency(self, solution_store, hash_provider):
        source = SemanticSource(SourceSystem.JIRA, solution_store, VectorIndex(), hash_provider)
        query = SourceQuery(incident_text="", keywords=extract_keywords("timeout database connection"))

        results = source.keyword_fallback(query, limit=5)

        assert results[0].external_id == "PROJ-102"

    def test_query_tokens_fall_back_to_text(self):
        query = SourceQuery(incident_text="VPN drops, every hour!")
        assert query.tokens == ["vpn", "drops", "every", "hour"]


GITHUB_PAYLOAD = {
    "items": [
        {
            "number": 77,
            "title": "401 Unauthorized after SSL patch",
            "body": "Tokens rejected after the patch deployment.",
            "html_url": "https://github.com/org/repo/issues/77",
            "created_at": "2024-05-30T10:00:00Z",
            "user": {"login": "octocat"},
            "state": "closed",
            "labels": [{"name": "bug"}],
            "comments": 4,
        },
        {"title": "missing number is skipped"},
    ]
}

JIRA_PAYLOAD = {
    "issues": [
        {
            "key": "OPS-9",
            "fields": {
                "summary": "Portal login 401 after patch",
                "description": "Restart gateway.",
                "created": "2024-05-01T08:00:00.000+0000",
                "reporter": {"displayName": "Dana"},
                "status": {"name": "Resolved"},
            },
        }
    ]
}


class TestMappers:
    def test_github_mapper(self):
        candidates = github_issue_mapper(GITHUB_PAYLOAD, "https://api.github.com")
        assert len(candidates) == 1
        issue = candidates[0]
        assert issue.external_id == "ISSUE-77"
        assert issue.url == "https://github.com/org/repo/issues/77"
        assert issue.author == "octocat"
        assert issue.created_at.year == 2024
        assert issue.metadata["labels"] == ["bug"]

    def test_jira_mapper(self):
        candidates = jira_issue_mapper(JIRA_PAYLOAD, "https://jira.example.test/")
        assert candidates[0].external_id == "OPS-9"
        assert candidates[0].url == "https://jira.example.test/browse/OPS-9"
        assert candidates[0].author == "Dana"
        assert candidates[0].metadata["status"] == "Resolved"


class TestHttpKnowledgeSource:
    """Remote sources over httpx with a mock transport."""

    @pytest.mark.asyncio
    async def test_github_search(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json=GITHUB_PAYLOAD)

        source = github_source(token="secret", transport=httpx.MockTransport(handler))
        try:
            results = await source.search(make_query(), limit=3)
        finally:
            await source.aclose()

        assert seen["path"] == "/search/issues"
        assert seen["params"]["per_page"] == "3"
        assert "401" in seen["params"]["q"]
        assert seen["auth"] == "Bearer secret"
        assert [c.external_id for c in results] == ["ISSUE-77"]
        assert 0.0 < results[0].raw_score <= 1.0

    @pytest.mark.asyncio
    async def test_jira_search_uses_jql(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json=JIRA_PAYLOAD)

        source = jira_source("https://jira.example.test", transport=httpx.MockTransport(handler))
        try:
            results = await source.search(make_query(), limit=5)
        finally:
            await source.aclose()

        assert 'text ~ "401"' in seen["params"]["jql"]
        assert seen["params"]["maxResults"] == "5"
        assert results[0].source_system == SourceSystem.JIRA

    @pytest.mark.asyncio
    async def test_http_error_raises_source_unavailable(self):
        source = github_source(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
        with pytest.raises(SourceUnavailableError) as exc_info:
            await source.search(make_query(), limit=3)
        await source.aclose()
        assert exc_info.value.system == "GITHUB"

    @pytest.mark.asyncio
    async def test_invalid_json_raises_source_unavailable(self):
        source = github_source(transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>")))
        with pytest.raises(SourceUnavailableError):
            await source.search(make_query(), limit=3)
        await source.aclose()

    @pytest.mark.asyncio
    async def test_timeout_raises_source_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("read timed out", request=request)

        source = github_source(timeout=0.5, transport=httpx.MockTransport(handler))
        with pytest.raises(SourceTimeoutError) as exc_info:
            await source.search(make_query(), limit=3)
        await source.aclose()
        assert exc_info.value.timeout_seconds == 0.5

    @pytest.mark.asyncio
    async def test_no_keywords_makes_no_request(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json=GITHUB_PAYLOAD)

        source = github_source(transport=httpx.MockTransport(handler))
        assert await source.search(SourceQuery(incident_text="the and of"), limit=3) == []
        assert calls == []
        await source.aclose()

    @pytest.mark.asyncio
    async def test_aclose_is_idempotent(self):
        source = github_source(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={})))
        await source.search(make_query(), limit=1)
        await source.aclose()
        await source.aclose()
        assert source._client is None
