"""
Constants for the ihrwatch fetching infrastructure.

This module defines timeout values, cache TTLs, backoff reference values
and transport defaults used by all cached upstream fetchers.

Cache Strategy Overview:
- TTL: How long a successful response is served without asking upstream
- Backoff: How long upstream is left alone after consecutive failures
- Stale data is never dropped, it is served until a fetch succeeds again
"""

# Timeout constants (in seconds)
EXTERNAL_API_TIMEOUT = 10  # IHR and other external APIs

# Cache TTL constants (in seconds)
DEFAULT_CACHE_TTL = 60           # Generic fetcher default
ALERTS_CACHE_TTL = 60            # network_delay/alarms
NETWORK_CACHE_TTL = 120          # networks/<asn>
NETWORK_SEARCH_CACHE_TTL = 600   # networks/?name__icontains=

# Backoff constants
BACKOFF_BASE_DELAY = 1.0    # Seconds, multiplied by 2**failures
BACKOFF_FAILURE_CAP = 10    # Exponent never grows past 2**10
BACKOFF_MAX_DELAY = 300.0   # Never block longer than 5 minutes
BACKOFF_JITTER = 0.0        # Fraction of the delay added at random

# HTTP status handling
ACCEPTED_STATUS_RANGE = (200, 300)  # [low, high)
RATE_LIMIT_STATUS_CODES = [429, 503]

# Common headers for rate limit detection
RATE_LIMIT_HEADERS = [
    'X-Ratelimit-Retry-At',
    'Retry-After',
]

DEFAULT_ACCEPT_HEADER = 'application/json,text/html,*/*'
USER_AGENT_PREFIX = 'IhrClient'

# Worker pool that enforces the total request deadline
HTTP_WORKER_THREADS = 8
RESPONSE_CHUNK_SIZE = 8192  # bytes read per deadline check
