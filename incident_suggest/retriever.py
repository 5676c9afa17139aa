from __future__ import annotations

"""
Parallel candidate retrieval across knowledge sources.

One task per source, joined with asyncio.gather. Each call is bounded by
asyncio.wait_for; a source that raises or times out contributes nothing and
is logged and counted, so a retrieval never fails as a whole.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from loguru import logger

from incident_suggest.domain import Candidate
from incident_suggest.errors import (
    SourceTimeoutError,
    SourceUnavailableError,
    format_error_for_logging,
    get_error_severity,
    is_retryable,
)
from incident_suggest.logging_config import log_source_failure
from incident_suggest.metrics import track_source
from incident_suggest.sources import KnowledgeSource, SourceQuery


@dataclass
class SourceOutcome:
    """How one source fared in a retrieval."""
    system: str
    count: int = 0
    latency_ms: float = 0.0
    error: Optional[str] = None
    retryable: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class RetrievalReport:
    candidates: List[Candidate] = field(default_factory=list)
    outcomes: List[SourceOutcome] = field(default_factory=list)

    @property
    def failed_systems(self) -> List[str]:
        return [o.system for o in self.outcomes if not o.ok]

    def by_system(self) -> Dict[str, SourceOutcome]:
        return {o.system: o for o in self.outcomes}


class CandidateRetriever:
    """Fans a query out to every source with a per-source timeout."""

    def __init__(self, timeout_seconds: float = 5.0):
        self.timeout_seconds = timeout_seconds

    async def retrieve(
        self,
        query: SourceQuery,
        sources: Sequence[KnowledgeSource],
        limit_per_source: int = 10,
    ) -> List[Candidate]:
        """
        Query every source concurrently.

        Args:
            query: Incident text and keywords
            sources: Sources to query (one per connected system)
            limit_per_source: Maximum candidates taken from each source

        Returns:
            Concatenated candidates in source order; failed sources add nothing
        """
        report = await self.retrieve_with_report(query, sources, limit_per_source)
        return report.candidates

    async def retrieve_with_report(
        self,
        query: SourceQuery,
        sources: Sequence[KnowledgeSource],
        limit_per_source: int = 10,
    ) -> RetrievalReport:
        """Same as retrieve(), also returning per-source outcome info."""
        if not sources:
            return RetrievalReport()

        results = await asyncio.gather(
            *(self._query_source(source, query, limit_per_source) for source in sources)
        )

        report = RetrievalReport()
        for candidates, outcome in results:
            report.candidates.extend(candidates)
            report.outcomes.append(outcome)

        logger.debug(
            f"Retrieved {len(report.candidates)} candidates for '{query.search_string}' "
            f"from {len(sources)} sources ({len(report.failed_systems)} failed)"
        )
        return report

    async def _query_source(
        self,
        source: KnowledgeSource,
        query: SourceQuery,
        limit: int,
    ) -> tuple:
        start = time.perf_counter()
        outcome = SourceOutcome(system=source.name)
        candidates: List[Candidate] = []
        failure_reason: Optional[str] = None

        try:
            candidates = list(await asyncio.wait_for(source.search(query, limit), timeout=self.timeout_seconds))
            candidates = candidates[:limit]
        except (asyncio.TimeoutError, SourceTimeoutError) as e:
            failure_reason = "timeout"
            outcome.error = f"timed out after {self.timeout_seconds}s"
            timeout = e if isinstance(e, SourceTimeoutError) else SourceTimeoutError(
                outcome.error, system=source.name, timeout_seconds=self.timeout_seconds
            )
            self._log_failure(source.name, failure_reason, timeout, outcome, str(e) or outcome.error)
        except SourceUnavailableError as e:
            failure_reason = "error"
            outcome.error = e.message
            self._log_failure(source.name, failure_reason, e, outcome, format_error_for_logging(e).get("message"))
        except Exception as e:
            # Any other source bug still only costs that source's contribution
            failure_reason = "error"
            outcome.error = f"{type(e).__name__}: {e}"
            logger.exception(f"Unexpected failure in source {source.name}")
            self._log_failure(source.name, failure_reason, e, outcome, outcome.error)

        outcome.latency_ms = (time.perf_counter() - start) * 1000
        outcome.count = len(candidates)
        track_source(source.name, outcome.latency_ms / 1000, failure_reason)
        return candidates, outcome

    @staticmethod
    def _log_failure(system: str, reason: str, error: Exception, outcome: SourceOutcome, message: str) -> None:
        outcome.retryable = is_retryable(error)
        log_source_failure(
            system,
            reason,
            error=message,
            retryable=outcome.retryable,
            severity=get_error_severity(error).value,
        )
