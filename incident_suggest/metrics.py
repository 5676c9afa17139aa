"""
Prometheus metrics for the suggestion engine.

Provides counters, histograms, and gauges for tracking:
- Search requests and latency
- Cache hit rates and size
- Knowledge source failures and latency
- User interactions
- Vector index size
"""

from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from typing import Optional

# ============================================================================
# Request Metrics
# ============================================================================

request_count = Counter(
    'suggest_http_requests_total',
    'Total number of HTTP requests',
    ['endpoint', 'method', 'status']
)

request_latency = Histogram(
    'suggest_http_request_duration_seconds',
    'HTTP request latency in seconds',
    ['endpoint', 'method'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

# ============================================================================
# Search Metrics
# ============================================================================

search_requests = Counter(
    'suggest_search_requests_total',
    'Total number of search requests',
    ['cached']
)

search_latency = Histogram(
    'suggest_search_duration_seconds',
    'End-to-end search latency in seconds',
    ['cached'],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

search_results_count = Histogram(
    'suggest_search_results_count',
    'Number of suggestions returned per search',
    buckets=(0, 1, 3, 5, 10, 20, 50)
)

# ============================================================================
# Cache Metrics
# ============================================================================

cache_hits = Counter(
    'suggest_cache_hits_total',
    'Total number of suggestion cache hits'
)

cache_misses = Counter(
    'suggest_cache_misses_total',
    'Total number of suggestion cache misses'
)

cache_size = Gauge(
    'suggest_cache_size_entries',
    'Current number of entries in the suggestion cache'
)

cache_evictions = Counter(
    'suggest_cache_evictions_total',
    'Entries removed by expiry sweeps or the size cap',
    ['reason']  # reason: expired or capacity
)

# ============================================================================
# Source Metrics
# ============================================================================

source_failures = Counter(
    'suggest_source_failures_total',
    'Knowledge source queries that contributed no results because they failed',
    ['system', 'reason']  # reason: timeout or error
)

source_latency = Histogram(
    'suggest_source_duration_seconds',
    'Per-source query latency in seconds',
    ['system'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)
)

# ============================================================================
# Personalization & Index Metrics
# ============================================================================

interactions_recorded = Counter(
    'suggest_interactions_total',
    'User interactions with suggestions',
    ['action']
)

vector_index_size = Gauge(
    'suggest_vector_index_chunks',
    'Number of chunks held by the vector index'
)

indexed_documents = Counter(
    'suggest_indexed_documents_total',
    'Documents (re)indexed by the background pipeline',
    ['status']  # status: success or failure
)

# ============================================================================
# Helper Functions
# ============================================================================


def track_request(endpoint: str, method: str, status: int, duration: float) -> None:
    """
    Track HTTP request metrics.

    Args:
        endpoint: API endpoint path
        method: HTTP method (GET, POST, etc.)
        status: HTTP status code
        duration: Request duration in seconds
    """
    request_count.labels(endpoint=endpoint, method=method, status=status).inc()
    request_latency.labels(endpoint=endpoint, method=method).observe(duration)


def track_search(cached: bool, duration: float, num_results: int) -> None:
    """
    Track a completed search request.

    Args:
        cached: True if served from the cache
        duration: Search duration in seconds
        num_results: Number of suggestions returned
    """
    label = "true" if cached else "false"
    search_requests.labels(cached=label).inc()
    search_latency.labels(cached=label).observe(duration)
    search_results_count.observe(num_results)


def track_cache_operation(hit: bool, size: Optional[int] = None) -> None:
    if hit:
        cache_hits.inc()
    else:
        cache_misses.inc()

    if size is not None:
        cache_size.set(size)


def track_source(system: str, duration: float, failure_reason: Optional[str] = None) -> None:
    """Record a source query's latency and, when it failed, the reason."""
    source_latency.labels(system=system).observe(duration)
    if failure_reason:
        source_failures.labels(system=system, reason=failure_reason).inc()


def get_metrics() -> bytes:
    """
    Get current metrics in Prometheus format.

    Returns:
        Prometheus-formatted metrics as bytes
    """
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST
