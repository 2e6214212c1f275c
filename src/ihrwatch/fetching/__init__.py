"""
ihrwatch Fetching Package

This package provides the infrastructure for reading external APIs,
including caching, request coalescing, backoff and HTTP client management.

Components:
- constants: Common constants for timeouts, cache TTLs and backoff
- backoff: Backoff state, exponential policy and Retry-After parsing
- http_client: HTTP client with unified timeout, status and rate-limit handling
- cached_fetcher: Cached, coalesced, backed-off getter for one endpoint
"""

from .constants import (
    EXTERNAL_API_TIMEOUT,
    DEFAULT_CACHE_TTL,
    BACKOFF_BASE_DELAY,
    BACKOFF_FAILURE_CAP,
    BACKOFF_MAX_DELAY,
)

from .backoff import BackoffPolicy, BackoffState
from .http_client import HttpClientManager, RateLimitedError
from .cached_fetcher import (
    CacheEntry,
    CachedFetcher,
    ResultEnvelope,
    make_cached_fetcher,
)

__all__ = [
    'EXTERNAL_API_TIMEOUT',
    'DEFAULT_CACHE_TTL',
    'BACKOFF_BASE_DELAY',
    'BACKOFF_FAILURE_CAP',
    'BACKOFF_MAX_DELAY',
    'BackoffPolicy',
    'BackoffState',
    'HttpClientManager',
    'RateLimitedError',
    'CacheEntry',
    'CachedFetcher',
    'ResultEnvelope',
    'make_cached_fetcher'
]
