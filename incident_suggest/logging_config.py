from __future__ import annotations

"""
Centralized logging configuration for the suggestion engine.

Provides unified logging across all modules using loguru.
Supports both console and file output with structured logging.
"""

import sys
import json
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from loguru import logger
from incident_suggest.config import LOG_FILE, LOG_LEVEL, redact_secrets


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """
    Configure unified logging for the whole engine.

    This should be called once at application startup.
    """
    level = (level or LOG_LEVEL).upper()
    log_file = LOG_FILE if log_file is None else log_file

    logger.remove()

    logger.add(
        sys.stderr,
        format=(
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
            "<level>{message}</level>"
        ),
        level=level,
        colorize=True,
    )

    if log_file:
        logger.add(
            log_file,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{name}:{function}:{line} - "
                "{message}"
            ),
            level=level,
            rotation="100 MB",
            retention="7 days",
            compression="zip",
        )

    logger.info(f"Logging configured: level={level}")


def log_structured(event_type: str, data: Dict[str, Any], level: str = "info") -> None:
    """
    Log structured data as JSON.

    Args:
        event_type: Type of event (e.g., 'search_completed', 'source_failed')
        data: Dictionary of data to log
        level: Log level (debug, info, warning, error, critical)
    """
    log_entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": event_type,
        **data,
    }

    if log_entry.get("error"):
        log_entry["error"] = redact_secrets(log_entry["error"])

    log_func = getattr(logger, level.lower(), logger.info)
    log_func(json.dumps(log_entry, default=str))


def log_search(
    request_id: str,
    keywords: list,
    latency_ms: float,
    results_count: int,
    total_found: int,
    cached: bool,
    incident_id: Optional[str] = None,
    summary: Optional[str] = None,
) -> None:
    """Log a completed search request."""
    log_structured(
        "search_completed",
        {
            "request_id": request_id,
            "incident_id": incident_id,
            "keywords": keywords[:8],
            "latency_ms": round(latency_ms, 2),
            "results_count": results_count,
            "total_found": total_found,
            "cached": cached,
            "summary": summary,
        },
    )


def log_source_failure(
    system: str,
    reason: str,
    error: Optional[str] = None,
    retryable: bool = False,
    severity: Optional[str] = None,
) -> None:
    """Log a knowledge source that contributed nothing because it failed."""
    log_structured(
        "source_failed",
        {"system": system, "reason": reason, "error": error, "retryable": retryable, "severity": severity},
        level="error" if severity in ("high", "critical") else "warning",
    )


def log_cache_event(action: str, key: str, incident_id: Optional[str] = None) -> None:
    """Log a cache hit/miss/store at debug level."""
    log_structured(
        f"cache_{action}",
        {"key": key[:16], "incident_id": incident_id},
        level="debug",
    )
