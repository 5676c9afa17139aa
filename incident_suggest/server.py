from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from loguru import logger

from incident_suggest import config as CFG
from incident_suggest.config import Settings, health_summary, load_settings
from incident_suggest.errors import ErrorSeverity, SuggestionEngineError, format_error_for_logging
from incident_suggest.logging_config import setup_logging
from incident_suggest.metrics import get_content_type, get_metrics, track_request
from incident_suggest.models import (
    CacheStatsResponse,
    CleanupResponse,
    InteractionRequest,
    InteractionResponse,
    SearchRequest,
    SearchResponse,
)
from incident_suggest.service import Services, build_services
from incident_suggest.sources import SolutionDocument

_EMPTY_CACHE_STATS = {
    "total_entries": 0,
    "valid_entries": 0,
    "expired_entries": 0,
    "avg_search_time_ms": 0.0,
    "hits": 0,
    "misses": 0,
    "hit_rate": 0.0,
    "max_entries": None,
}


def _services(request: Request) -> Services:
    return request.app.state.services


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[Services] = None,
    documents: Optional[Iterable[SolutionDocument]] = None,
) -> FastAPI:
    """
    Build the HTTP application around one Services container.

    Args:
        settings: Runtime settings; read from the environment when omitted
        services: Pre-built services (tests inject their own)
        documents: Solution documents indexed at startup

    Returns:
        FastAPI app with services on app.state.services
    """
    if services is None:
        settings = settings or load_settings()
        services = build_services(settings)
    initial_documents: Optional[List[SolutionDocument]] = list(documents) if documents is not None else None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Index the initial documents and run periodic tasks for the app's lifetime."""
        setup_logging(services.settings.log_level, services.settings.log_file)
        await services.start(initial_documents)
        logger.info("Suggestion engine ready")
        yield
        await services.aclose()

    app = FastAPI(title="Incident Suggestion Engine", lifespan=lifespan)
    app.state.services = services

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all HTTP requests with timing and status information."""
        request_id = str(uuid4())
        start_time = time.time()
        logger.info(
            f"[{request_id}] → {request.method} {request.url.path} "
            f"client={request.client.host if request.client else 'unknown'}"
        )

        response = await call_next(request)

        duration = time.time() - start_time
        if request.url.path != "/metrics":
            track_request(
                endpoint=request.url.path,
                method=request.method,
                status=response.status_code,
                duration=duration,
            )
        logger.info(
            f"[{request_id}] ← {request.method} {request.url.path} "
            f"status={response.status_code} duration={duration:.3f}s"
        )
        return response

    @app.exception_handler(SuggestionEngineError)
    async def engine_error_handler(request: Request, exc: SuggestionEngineError):
        logger.error(f"Request failed: {format_error_for_logging(exc)}")
        status = 503 if exc.severity in (ErrorSeverity.HIGH, ErrorSeverity.CRITICAL) else 500
        return JSONResponse(status_code=status, content=exc.to_dict())

    # --------- Search ---------
    @app.post("/search", response_model=SearchResponse)
    async def search(body: SearchRequest, request: Request) -> SearchResponse:
        return await _services(request).suggestions.search(body)

    @app.post("/interactions", response_model=InteractionResponse)
    def record_interaction(body: InteractionRequest, request: Request) -> InteractionResponse:
        return _services(request).suggestions.record_interaction(body)

    # --------- Cache ---------
    @app.get("/cache/stats", response_model=CacheStatsResponse)
    def cache_stats(request: Request) -> CacheStatsResponse:
        cache = _services(request).cache
        if cache is None:
            return CacheStatsResponse(**_EMPTY_CACHE_STATS)
        return CacheStatsResponse(**cache.stats())

    @app.post("/cache/cleanup", response_model=CleanupResponse)
    def cache_cleanup(request: Request) -> CleanupResponse:
        return CleanupResponse(removed=_services(request).cleanup_cache())

    # --------- Profiles ---------
    @app.get("/profiles/{user_id}")
    def get_profile(user_id: str, request: Request) -> Dict[str, Any]:
        profile = _services(request).preferences.export_profile(user_id)
        if profile is None:
            raise HTTPException(status_code=404, detail=f"no profile for user {user_id}")
        return profile

    @app.get("/profiles/{user_id}/recommendations")
    def get_recommendations(user_id: str, request: Request) -> Dict[str, Any]:
        recommendations = _services(request).preferences.generate_preference_recommendations(user_id)
        return {"user_id": user_id, "recommendations": recommendations}

    # --------- Health & Metrics ---------
    @app.get("/health")
    def health(request: Request) -> Dict[str, Any]:
        """Liveness plus a summary of configuration, index, cache, and learning state."""
        svc = _services(request)
        return {
            "ok": True,
            "config": health_summary(svc.settings),
            "embeddings": {"provider": svc.provider.name, "semantic": svc.provider.is_semantic},
            "index": svc.index.stats(),
            "documents": len(svc.solutions),
            "sources": sorted(system.value for system in svc.sources),
            "cache": svc.cache.stats() if svc.cache is not None else None,
            "learning": svc.preferences.get_learning_stats(),
            "model_version": svc.ranking.model_version,
            "tasks": {
                task.name: {"running": task.is_running, "runs": task.runs, "failures": task.failures}
                for task in svc.tasks
            },
        }

    @app.get("/metrics")
    def metrics() -> Response:
        """Prometheus metrics endpoint."""
        return Response(content=get_metrics(), media_type=get_content_type())

    return app


def main() -> None:
    import uvicorn

    setup_logging()
    uvicorn.run(create_app(), host=CFG.HOST, port=CFG.PORT)


if __name__ == "__main__":
    main()
