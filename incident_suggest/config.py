#!/usr/bin/env python3
"""Centralized configuration with validation and sensible defaults."""
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from incident_suggest.errors import ConfigurationError

load_dotenv()


def _get_env(name: str, default: Optional[str] = None) -> str:
    val = os.getenv(name)
    return val if val is not None else (default or "")


def _parse_float(name: str, default: float) -> float:
    try:
        return float(_get_env(name, str(default)))
    except ValueError:
        return default


def _parse_int(name: str, default: int) -> int:
    try:
        return int(_get_env(name, str(default)))
    except ValueError:
        return default


def _parse_bool(name: str, default: bool) -> bool:
    raw = _get_env(name, "true" if default else "false").strip().lower()
    return raw not in ("0", "false", "no", "off")


@dataclass(frozen=True)
class Settings:
    """Snapshot of runtime configuration used to build the services."""

    log_level: str = "INFO"
    log_file: str = ""

    cache_enabled: bool = True
    cache_ttl_minutes: float = 60.0
    cache_max_entries: int = 1000
    cache_cleanup_interval_minutes: float = 30.0

    embeddings_backend: str = "hash"
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    hash_embedding_dim: int = 256

    source_timeout_seconds: float = 5.0
    embedding_timeout_seconds: float = 10.0

    chunk_max_chars: int = 1200
    chunk_overlap_ratio: float = 0.15
    max_chunks_per_owner: int = 200

    history_window_days: int = 30
    history_retention_days: int = 180
    history_prune_interval_minutes: float = 1440.0
    resync_interval_minutes: float = 60.0
    default_max_results: int = 10
    profile_max_entries: int = 10000

    def validate(self) -> "Settings":
        if self.cache_ttl_minutes <= 0:
            raise ConfigurationError("CACHE_TTL_MINUTES must be > 0.")
        if self.cache_max_entries < 0:
            raise ConfigurationError("CACHE_MAX_ENTRIES must be >= 0 (0 disables the cap).")
        if self.embeddings_backend not in ("hash", "sentence-transformers"):
            raise ConfigurationError(
                f"EMBEDDINGS_BACKEND must be 'hash' or 'sentence-transformers', got {self.embeddings_backend!r}."
            )
        if self.hash_embedding_dim < 8:
            raise ConfigurationError("HASH_EMBEDDING_DIM must be >= 8.")
        if self.source_timeout_seconds <= 0 or self.embedding_timeout_seconds <= 0:
            raise ConfigurationError("Timeouts must be > 0.")
        if self.chunk_max_chars < 1:
            raise ConfigurationError("CHUNK_MAX_CHARS must be >= 1.")
        if not (0.0 <= self.chunk_overlap_ratio <= 0.5):
            raise ConfigurationError("CHUNK_OVERLAP_RATIO must be in [0, 0.5].")
        if self.max_chunks_per_owner < 1:
            raise ConfigurationError("MAX_CHUNKS_PER_OWNER must be >= 1.")
        if not (1 <= self.default_max_results <= 50):
            raise ConfigurationError("DEFAULT_MAX_RESULTS must be in [1, 50].")
        if self.profile_max_entries < 0:
            raise ConfigurationError("PROFILE_MAX_ENTRIES must be >= 0 (0 disables the cap).")
        if self.history_window_days < 1:
            raise ConfigurationError("HISTORY_WINDOW_DAYS must be >= 1.")
        if self.history_retention_days < self.history_window_days:
            raise ConfigurationError("HISTORY_RETENTION_DAYS must be >= HISTORY_WINDOW_DAYS.")
        return self


def load_settings() -> Settings:
    """Read the environment (and .env) into a validated Settings object."""
    return Settings(
        log_level=_get_env("LOG_LEVEL", "INFO").upper(),
        log_file=_get_env("LOG_FILE", ""),
        cache_enabled=_parse_bool("CACHE_ENABLED", True),
        cache_ttl_minutes=_parse_float("CACHE_TTL_MINUTES", 60.0),
        cache_max_entries=_parse_int("CACHE_MAX_ENTRIES", 1000),
        cache_cleanup_interval_minutes=_parse_float("CACHE_CLEANUP_INTERVAL_MINUTES", 30.0),
        embeddings_backend=_get_env("EMBEDDINGS_BACKEND", "hash").strip().lower(),
        embedding_model=_get_env("EMBEDDING_MODEL", "sentence-transformers/all-MiniLM-L6-v2"),
        hash_embedding_dim=_parse_int("HASH_EMBEDDING_DIM", 256),
        source_timeout_seconds=_parse_float("SOURCE_TIMEOUT_SECONDS", 5.0),
        embedding_timeout_seconds=_parse_float("EMBEDDING_TIMEOUT_SECONDS", 10.0),
        chunk_max_chars=_parse_int("CHUNK_MAX_CHARS", 1200),
        chunk_overlap_ratio=_parse_float("CHUNK_OVERLAP_RATIO", 0.15),
        max_chunks_per_owner=_parse_int("MAX_CHUNKS_PER_OWNER", 200),
        history_window_days=_parse_int("HISTORY_WINDOW_DAYS", 30),
        history_retention_days=_parse_int("HISTORY_RETENTION_DAYS", 180),
        history_prune_interval_minutes=_parse_float("HISTORY_PRUNE_INTERVAL_MINUTES", 1440.0),
        resync_interval_minutes=_parse_float("RESYNC_INTERVAL_MINUTES", 60.0),
        default_max_results=_parse_int("DEFAULT_MAX_RESULTS", 10),
        profile_max_entries=_parse_int("PROFILE_MAX_ENTRIES", 10000),
    ).validate()


# Module-level view for logging setup and health output
LOG_LEVEL: str = _get_env("LOG_LEVEL", "INFO").upper()
LOG_FILE: str = _get_env("LOG_FILE", "")
HOST: str = _get_env("HOST", "0.0.0.0")
PORT: int = _parse_int("PORT", 7000)

_SECRET_PATTERNS = [
    re.compile(r"(?i)(authorization:\s*)(bearer|basic)\s+[A-Za-z0-9._~+/=-]+"),
    re.compile(r"(?i)((?:api[_-]?key|token|password|secret)\s*[=:]\s*)([^\s,;&]+)"),
]


def redact_secrets(text: object) -> str:
    """Mask bearer tokens and key=value secrets before they reach a log sink."""
    out = str(text)
    for pat in _SECRET_PATTERNS:
        out = pat.sub(lambda m: f"{m.group(1)}***", out)
    return out


def health_summary(settings: Settings) -> dict:
    """Return a health summary for /health."""
    return {
        "cache_enabled": settings.cache_enabled,
        "cache_ttl_minutes": settings.cache_ttl_minutes,
        "embeddings_backend": settings.embeddings_backend,
        "source_timeout_seconds": settings.source_timeout_seconds,
        "chunk_max_chars": settings.chunk_max_chars,
        "chunk_overlap_ratio": settings.chunk_overlap_ratio,
    }
