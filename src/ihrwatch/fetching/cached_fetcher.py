"""
Cached, coalesced and backed-off HTTP getter.

A CachedFetcher wraps one upstream endpoint. Each call to get() is answered
in this order:

1. Fresh cache hit: served without touching upstream
2. Backoff gate: upstream failed recently, serve whatever is cached
3. Coalesce: another caller is already fetching, wait for its result
4. Fresh fetch: ask upstream, update cache or backoff

get() never raises for upstream problems. Every outcome is reported through
a ResultEnvelope so route handlers can decide what to show.
"""

import math
import time
import logging
import threading
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, Optional, Tuple

from .constants import (
    DEFAULT_CACHE_TTL,
    EXTERNAL_API_TIMEOUT,
    ACCEPTED_STATUS_RANGE,
    DEFAULT_ACCEPT_HEADER,
    USER_AGENT_PREFIX,
)
from .backoff import BackoffPolicy, BackoffState
from .http_client import HttpClientManager, RateLimitedError

logger = logging.getLogger(__name__)

STATE_FRESH = 'fresh'
STATE_STALE = 'stale'
STATE_EMPTY = 'empty'


@dataclass(frozen=True)
class CacheEntry:
    """Last successful upstream payload and when it was fetched."""
    data: Any
    fetched_at: float


@dataclass(frozen=True)
class ResultEnvelope:
    """Uniform answer of CachedFetcher.get()."""
    ok: bool
    data: Any = None
    stale: bool = False
    fetched_at: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class _PendingFetch:
    """Result slot shared by the caller that fetches and everyone who joins it."""

    def __init__(self):
        self._done = threading.Event()
        self._result: Optional[ResultEnvelope] = None
        self._exception: Optional[BaseException] = None

    def resolve(self, result: ResultEnvelope) -> None:
        self._result = result
        self._done.set()

    def abort(self, exception: BaseException) -> None:
        self._exception = exception
        self._done.set()

    def wait(self, timeout: Optional[float] = None) -> Optional[ResultEnvelope]:
        """Settled envelope, or None if timeout expired first."""
        if not self._done.wait(timeout):
            return None
        if self._exception is not None:
            raise self._exception
        return self._result


def describe_error(error: BaseException) -> str:
    """Short, human readable failure reason for the envelope."""
    message = str(error)
    if message:
        return message
    if isinstance(error, TimeoutError):
        return 'timeout'
    return error.__class__.__name__ or 'upstream_error_or_timeout'


class CachedFetcher:
    """
    Serve the latest known value of one upstream resource.

    Provides:
    - Response caching with TTL
    - Coalescing of concurrent calls onto a single upstream request
    - Exponential backoff after failures, serving stale data meanwhile

    All state (cache entry, backoff, in-flight marker) belongs to the
    instance and is guarded by one lock. The upstream request itself runs
    outside the lock.
    """

    def __init__(
        self,
        name: str,
        url_builder: Callable[[Dict[str, Any]], str],
        ttl: float = DEFAULT_CACHE_TTL,
        timeout: float = EXTERNAL_API_TIMEOUT,
        headers: Optional[Dict[str, str]] = None,
        accepted_status: Tuple[int, int] = ACCEPTED_STATUS_RANGE,
        backoff_policy: Optional[BackoffPolicy] = None,
        http_client: Optional[HttpClientManager] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize a cached fetcher.

        Args:
            name: Used in log messages and the default User-Agent
            url_builder: Maps call params to a fully qualified URL
            ttl: Seconds a successful response is considered fresh
            timeout: Upstream request timeout in seconds
            headers: Headers merged over the defaults
            accepted_status: [low, high) range of successful status codes
            backoff_policy: Cool-down schedule after failures
            http_client: Shared HTTP client, a private one is created if None
            clock: Returns the current time in seconds
        """
        if not callable(url_builder):
            raise ValueError(f'[{name}] url_builder must be callable')
        if ttl < 0 or timeout <= 0:
            raise ValueError(f'[{name}] ttl must be >= 0 and timeout > 0')

        self.name = name
        self.url_builder = url_builder
        self.ttl = ttl
        self.timeout = timeout
        self.headers = {
            'User-Agent': f'{USER_AGENT_PREFIX}/{name}',
            'Accept': DEFAULT_ACCEPT_HEADER,
            **(headers or {})
        }
        self.accepted_status = accepted_status
        self.backoff_policy = backoff_policy or BackoffPolicy()
        self.http_client = http_client or HttpClientManager()
        self._clock = clock

        self._cache: Optional[CacheEntry] = None
        self._backoff = BackoffState()
        self._in_flight: Optional[_PendingFetch] = None
        self._lock = threading.Lock()

        logger.info("Initialized fetcher %s (ttl: %ss, timeout: %ss)", name, ttl, timeout)

    def __call__(self, params: Optional[Dict[str, Any]] = None) -> ResultEnvelope:
        return self.get(params)

    def get(self, params: Optional[Dict[str, Any]] = None) -> ResultEnvelope:
        """
        Return the latest known value for params.

        Never raises for upstream problems. A url_builder error counts as a
        failed request. Callers joining an in-flight request wait at most
        `timeout` seconds and then get the cached data with error 'timeout'.
        """
        params = params or {}

        with self._lock:
            now = self._clock()
            entry = self._cache

            if entry is not None and entry.data is not None and now - entry.fetched_at <= self.ttl:
                logger.debug("[%s] Using cached data (age: %.1fs)", self.name, now - entry.fetched_at)
                return ResultEnvelope(ok=True, data=entry.data, stale=False,
                                      fetched_at=entry.fetched_at)

            if self._backoff.is_blocked(now):
                remaining = math.ceil(self._backoff.remaining(now))
                logger.debug("[%s] In backoff for %ds, serving cached data", self.name, remaining)
                return self._fallback(f'backoff:{remaining}s')

            pending = self._in_flight
            if pending is None:
                pending = self._in_flight = _PendingFetch()
                leader = True
            else:
                leader = False

        if leader:
            return self._fetch(params, pending)

        logger.debug("[%s] Joining in-flight request", self.name)
        result = pending.wait(self.timeout)
        if result is None:
            logger.warning("[%s] In-flight request did not settle within %ss", self.name, self.timeout)
            with self._lock:
                return self._fallback('timeout')
        return result

    def _fetch(self, params: Dict[str, Any], pending: _PendingFetch) -> ResultEnvelope:
        """Run the upstream request and settle the in-flight marker."""
        try:
            try:
                url = self.url_builder(params)
                body = self.http_client.get_body(
                    url,
                    self.name,
                    timeout=self.timeout,
                    headers=self.headers,
                    accepted_status=self.accepted_status
                )
            except (ConnectionError, TimeoutError) as e:
                result = self._on_failure(e)
            except Exception as e:  # pylint: disable=broad-except
                logger.error("[%s] Unexpected error during fetch: %s", self.name, e, exc_info=True)
                result = self._on_failure(e)
            else:
                result = self._on_success(body)
        except BaseException as e:
            with self._lock:
                self._in_flight = None
            pending.abort(e)
            raise

        pending.resolve(result)
        return result

    def _on_success(self, body: Any) -> ResultEnvelope:
        with self._lock:
            entry = CacheEntry(data=body, fetched_at=self._clock())
            self._cache = entry
            self._backoff.reset()
            self._in_flight = None
        logger.info("[%s] Successfully fetched and cached new data", self.name)
        return ResultEnvelope(ok=True, data=entry.data, stale=False, fetched_at=entry.fetched_at)

    def _on_failure(self, error: BaseException) -> ResultEnvelope:
        retry_after = error.retry_after if isinstance(error, RateLimitedError) else None
        with self._lock:
            delay = self.backoff_policy.register_failure(
                self._backoff, self._clock(), retry_after=retry_after
            )
            failures = self._backoff.consecutive_failures
            result = self._fallback(describe_error(error))
            self._in_flight = None

        if result.ok:
            logger.warning("[%s] Using cached data due to error: %s (failures: %d, backoff: %.0fs)",
                           self.name, result.error, failures, delay)
        else:
            logger.error("[%s] No cached data available: %s (failures: %d, backoff: %.0fs)",
                         self.name, result.error, failures, delay)
        return result

    def _fallback(self, error: str) -> ResultEnvelope:
        """Envelope with whatever the cache holds. Caller holds the lock."""
        entry = self._cache
        if entry is None:
            return ResultEnvelope(ok=False, data=None, stale=True, fetched_at=None, error=error)
        return ResultEnvelope(ok=entry.data is not None, data=entry.data, stale=True,
                              fetched_at=entry.fetched_at, error=error)

    @property
    def state(self) -> str:
        """Cache condition: 'fresh', 'stale' or 'empty'."""
        with self._lock:
            entry = self._cache
            if entry is None:
                return STATE_EMPTY
            if entry.data is not None and self._clock() - entry.fetched_at <= self.ttl:
                return STATE_FRESH
            return STATE_STALE

    def get_cache_info(self) -> dict:
        """Get information about cache and backoff status for this fetcher."""
        with self._lock:
            now = self._clock()
            entry = self._cache
            age = now - entry.fetched_at if entry is not None else None
            return {
                'name': self.name,
                'has_cached_data': entry is not None,
                'fetched_at': entry.fetched_at if entry is not None else None,
                'age_seconds': age,
                'ttl': self.ttl,
                'cache_valid': age is not None and entry.data is not None and age <= self.ttl,
                'consecutive_failures': self._backoff.consecutive_failures,
                'blocked_for_seconds': self._backoff.remaining(now),
                'in_flight': self._in_flight is not None
            }


def make_cached_fetcher(
    name: str = 'fetcher',
    ttl: float = DEFAULT_CACHE_TTL,
    timeout: float = EXTERNAL_API_TIMEOUT,
    url_builder: Optional[Callable[[Dict[str, Any]], str]] = None,
    transport_options: Optional[Dict[str, Any]] = None,
    **kwargs
) -> CachedFetcher:
    """
    Build a CachedFetcher.

    transport_options may contain 'headers' and 'accepted_status'. Remaining
    keyword arguments (backoff_policy, http_client, clock) are passed through.
    """
    transport_options = dict(transport_options or {})
    unknown = set(transport_options) - {'headers', 'accepted_status'}
    if unknown:
        raise ValueError(f'[{name}] Unknown transport options: {sorted(unknown)}')
    return CachedFetcher(
        name=name,
        url_builder=url_builder,
        ttl=ttl,
        timeout=timeout,
        headers=transport_options.get('headers'),
        accepted_status=transport_options.get('accepted_status', ACCEPTED_STATUS_RANGE),
        **kwargs
    )
