"""Tests for parallel candidate retrieval."""

import asyncio
from typing import List

import pytest

from incident_suggest.domain import Candidate, SourceSystem
from incident_suggest.errors import SourceTimeoutError, SourceUnavailableError
from incident_suggest.keyword_extractor import extract_keywords
from incident_suggest.retriever import CandidateRetriever
from incident_suggest.sources import KnowledgeSource, SourceQuery

from conftest import CountingSource, make_candidate

QUERY = SourceQuery(
    incident_text="Login fails with 401 after SSL patch",
    keywords=extract_keywords("Login fails with 401 after SSL patch"),
)


class HangingSource(KnowledgeSource):
    def __init__(self, system: SourceSystem):
        self.system = system

    async def search(self, query: SourceQuery, limit: int) -> List[Candidate]:
        await asyncio.sleep(10)
        return [make_candidate("never", system=self.system)]


class RaisingSource(KnowledgeSource):
    def __init__(self, system: SourceSystem, error: Exception):
        self.system = system
        self.error = error

    async def search(self, query: SourceQuery, limit: int) -> List[Candidate]:
        raise self.error


class TestCandidateRetriever:
    """Fan-out with per-source isolation."""

    @pytest.mark.asyncio
    async def test_concatenates_in_source_order(self):
        jira = CountingSource(SourceSystem.JIRA, [make_candidate("PROJ-1"), make_candidate("PROJ-2")])
        github = CountingSource(SourceSystem.GITHUB, [make_candidate("ISSUE-1", system=SourceSystem.GITHUB)])

        candidates = await CandidateRetriever().retrieve(QUERY, [jira, github], limit_per_source=5)

        assert [c.external_id for c in candidates] == ["PROJ-1", "PROJ-2", "ISSUE-1"]
        assert jira.calls == 1 and github.calls == 1

    @pytest.mark.asyncio
    async def test_limit_per_source(self):
        jira = CountingSource(SourceSystem.JIRA, [make_candidate(f"PROJ-{i}") for i in range(10)])
        candidates = await CandidateRetriever().retrieve(QUERY, [jira], limit_per_source=3)
        assert len(candidates) == 3

    @pytest.mark.asyncio
    async def test_slow_source_times_out_without_failing_others(self):
        good = CountingSource(SourceSystem.JIRA, [make_candidate("PROJ-1")])
        retriever = CandidateRetriever(timeout_seconds=0.05)

        report = await retriever.retrieve_with_report(QUERY, [HangingSource(SourceSystem.GITHUB), good], 5)

        assert [c.external_id for c in report.candidates] == ["PROJ-1"]
        assert report.failed_systems == ["GITHUB"]
        assert "timed out" in report.by_system()["GITHUB"].error
        assert report.by_system()["JIRA"].ok

    @pytest.mark.asyncio
    async def test_source_errors_contribute_nothing(self):
        sources = [
            RaisingSource(SourceSystem.JIRA, SourceUnavailableError("jira down", system="JIRA")),
            RaisingSource(SourceSystem.CONFLUENCE, SourceTimeoutError("slow", system="CONFLUENCE")),
            RaisingSource(SourceSystem.SN_KB, KeyError("unexpected bug")),
            CountingSource(SourceSystem.GITHUB, [make_candidate("ISSUE-1", system=SourceSystem.GITHUB)]),
        ]

        report = await CandidateRetriever().retrieve_with_report(QUERY, sources, 5)

        assert [c.external_id for c in report.candidates] == ["ISSUE-1"]
        assert sorted(report.failed_systems) == ["CONFLUENCE", "JIRA", "SN_KB"]
        assert report.by_system()["JIRA"].error == "jira down"

    @pytest.mark.asyncio
    async def test_all_sources_failing_returns_empty(self):
        sources = [RaisingSource(SourceSystem.JIRA, SourceUnavailableError("down"))]
        assert await CandidateRetriever().retrieve(QUERY, sources) == []

    @pytest.mark.asyncio
    async def test_no_sources(self):
        report = await CandidateRetriever().retrieve_with_report(QUERY, [])
        assert report.candidates == []
        assert report.outcomes == []

    @pytest.mark.asyncio
    async def test_sources_run_concurrently(self):
        sources = [
            CountingSource(system, [make_candidate(f"{system.value}-1", system=system)], delay=0.2)
            for system in SourceSystem
        ]
        loop = asyncio.get_running_loop()
        start = loop.time()

        candidates = await CandidateRetriever(timeout_seconds=2.0).retrieve(QUERY, sources, 5)

        assert len(candidates) == 4
        assert loop.time() - start < 0.6

    @pytest.mark.asyncio
    async def test_failures_logged_with_retryability_and_severity(self, log_events):
        sources = [
            RaisingSource(SourceSystem.JIRA, SourceUnavailableError("jira down", system="JIRA")),
            RaisingSource(SourceSystem.SN_KB, KeyError("unexpected bug")),
            HangingSource(SourceSystem.GITHUB),
        ]

        report = await CandidateRetriever(timeout_seconds=0.05).retrieve_with_report(QUERY, sources, 5)

        outcomes = report.by_system()
        assert outcomes["JIRA"].retryable is True
        assert outcomes["GITHUB"].retryable is True
        assert outcomes["SN_KB"].retryable is False
        failures = {e["system"]: e for e in log_events("source_failed")}
        assert (failures["JIRA"]["retryable"], failures["JIRA"]["severity"]) == (True, "medium")
        assert (failures["GITHUB"]["reason"], failures["GITHUB"]["retryable"]) == ("timeout", True)
        assert (failures["SN_KB"]["retryable"], failures["SN_KB"]["severity"]) == (False, "high")
