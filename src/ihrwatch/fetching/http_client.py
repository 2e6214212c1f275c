"""
HTTP client manager with unified timeout, status and rate-limit handling.

This module provides a centralized HTTP client that all cached fetchers
share. It classifies responses into success and failure and converts every
transport problem into ConnectionError or TimeoutError so that callers only
need to handle those two.

The timeout passed to get() is a total deadline for connecting and reading
the whole body. The request runs on a worker thread and the caller stops
waiting once the deadline has passed.
"""

import json
import time
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Optional, Dict, Any, Mapping, Tuple

import requests

from .constants import (
    EXTERNAL_API_TIMEOUT,
    ACCEPTED_STATUS_RANGE,
    RATE_LIMIT_STATUS_CODES,
    HTTP_WORKER_THREADS,
    RESPONSE_CHUNK_SIZE,
)
from .backoff import parse_retry_after

logger = logging.getLogger(__name__)


class RateLimitedError(ConnectionError):
    """Upstream answered with a rate limit status code."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


@dataclass(frozen=True)
class HttpResponse:
    """Status, headers and the fully read body of one response."""
    status_code: int
    headers: Mapping[str, str]
    content: bytes = b''
    encoding: Optional[str] = None

    @property
    def text(self) -> str:
        return self.content.decode(self.encoding or 'utf-8', errors='replace')

    def json(self) -> Any:
        return json.loads(self.content)


class HttpClientManager:
    """
    Centralized HTTP client with unified patterns for all fetchers.

    Features:
    - Pooled requests.Session
    - Per-call total deadline and headers
    - Configurable accepted status range
    - Rate limit detection (429/503 with Retry-After)
    - Request statistics for monitoring
    """

    def __init__(self, session: Optional[requests.Session] = None,
                 max_workers: int = HTTP_WORKER_THREADS):
        self.session = session or requests.Session()
        self._thread_pool = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="http_"
        )
        self._stats = {
            'requests_made': 0,
            'requests_failed': 0,
            'rate_limits_hit': 0,
            'timeouts': 0
        }

    def _download(self, url: str, timeout: float, deadline: float,
                  headers: Optional[Dict[str, str]], kwargs: Dict[str, Any]) -> HttpResponse:
        """Runs on a worker thread. Reads the body in chunks until the deadline."""
        response = self.session.get(url, timeout=timeout, headers=headers, stream=True, **kwargs)
        try:
            chunks = []
            for chunk in response.iter_content(chunk_size=RESPONSE_CHUNK_SIZE):
                if time.time() > deadline:
                    raise TimeoutError("body not received before deadline")
                chunks.append(chunk)
            return HttpResponse(
                status_code=response.status_code,
                headers=response.headers,
                content=b''.join(chunks),
                encoding=response.encoding
            )
        finally:
            response.close()

    def get(
        self,
        url: str,
        provider_id: str,
        timeout: float = EXTERNAL_API_TIMEOUT,
        headers: Optional[Dict[str, str]] = None,
        accepted_status: Tuple[int, int] = ACCEPTED_STATUS_RANGE,
        **kwargs
    ) -> HttpResponse:
        """
        Make GET request with timeout, status and rate limit handling.

        Args:
            url: URL to request
            provider_id: Name used as log prefix
            timeout: Total time in seconds allowed for the whole request
            headers: Extra request headers
            accepted_status: [low, high) range of status codes treated as success
            **kwargs: Additional arguments for requests.Session.get()

        Returns:
            HttpResponse with the complete body

        Raises:
            TimeoutError: If the request did not complete within timeout
            RateLimitedError: If upstream signalled a rate limit
            ConnectionError: For any other network error or rejected status
        """
        start_time = time.time()
        logger.debug("[%s] Making GET request to %s (timeout: %ss)", provider_id, url, timeout)
        future = self._thread_pool.submit(
            self._download, url, timeout, start_time + timeout, headers, kwargs
        )
        try:
            response = future.result(timeout=timeout)
        except (FutureTimeoutError, TimeoutError, requests.exceptions.Timeout) as e:
            future.cancel()
            self._stats['requests_failed'] += 1
            self._stats['timeouts'] += 1
            logger.error("[%s] Request timed out after %.2fs: %s",
                         provider_id, time.time() - start_time, e)
            raise TimeoutError(f"timeout after {timeout}s") from e
        except requests.exceptions.RequestException as e:
            self._stats['requests_failed'] += 1
            logger.error("[%s] Request failed after %.2fs: %s",
                         provider_id, time.time() - start_time, e)
            raise ConnectionError(f"[{provider_id}] Request failed: {e}") from e

        duration = time.time() - start_time
        logger.info("[%s] Request completed in %.2fs (status: %d)",
                    provider_id, duration, response.status_code)

        low, high = accepted_status
        if low <= response.status_code < high:
            self._stats['requests_made'] += 1
            return response

        self._stats['requests_failed'] += 1
        if response.status_code in RATE_LIMIT_STATUS_CODES:
            self._stats['rate_limits_hit'] += 1
            retry_after = parse_retry_after(response.headers)
            raise RateLimitedError(
                f"HTTP {response.status_code} rate limited", retry_after=retry_after
            )
        raise ConnectionError(f"HTTP {response.status_code}")

    def get_body(self, url: str, provider_id: str, **kwargs) -> Any:
        """GET and decode the body as JSON, falling back to text."""
        response = self.get(url, provider_id, **kwargs)
        try:
            return response.json()
        except ValueError:
            return response.text

    def get_stats(self) -> Dict[str, Any]:
        """Get HTTP client statistics."""
        total_requests = self._stats['requests_made'] + self._stats['requests_failed']
        success_rate = (self._stats['requests_made'] / total_requests * 100) if total_requests > 0 else 0

        return {
            **self._stats,
            'success_rate': success_rate
        }

    def reset_stats(self):
        """Reset HTTP client statistics."""
        self._stats = {
            'requests_made': 0,
            'requests_failed': 0,
            'rate_limits_hit': 0,
            'timeouts': 0
        }

    def close(self):
        self._thread_pool.shutdown(wait=False, cancel_futures=True)
        self.session.close()
