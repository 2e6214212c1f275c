"""
Internet Health Report (IHR) client.

Cached, de-duplicated and backed-off getters for the IHR JSON API:

- network delay alarms for an ASN within the last N minutes
- network metadata for a single ASN
- fuzzy network search by name and country

Each endpoint gets its own CachedFetcher so cache and backoff state are
never shared between them.
"""

import math
import os
import re
import time
import datetime
import logging
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

from .fetching.backoff import BackoffPolicy
from .fetching.cached_fetcher import CachedFetcher, ResultEnvelope
from .fetching.constants import (
    EXTERNAL_API_TIMEOUT,
    ALERTS_CACHE_TTL,
    NETWORK_CACHE_TTL,
    NETWORK_SEARCH_CACHE_TTL,
)
from .fetching.http_client import HttpClientManager

logger = logging.getLogger(__name__)

DEFAULT_IHR_BASE = 'https://ihr.live/api'
DEFAULT_ASN = 'AS21928'
DEFAULT_MINUTES = 5
DEFAULT_SEARCH_QUERY = 't-mobile'
DEFAULT_SEARCH_COUNTRY = 'US'

_AS_PREFIX = re.compile(r'^AS', re.IGNORECASE)


def asn_number(asn) -> str:
    """Strip the "AS" prefix, e.g. "AS21928" -> "21928"."""
    return _AS_PREFIX.sub('', str(asn or ''))


def resolve_base_url(config_value: Optional[str] = None) -> str:
    """IHR_BASE environment variable wins over config, then the public API."""
    base = os.environ.get('IHR_BASE') or config_value or DEFAULT_IHR_BASE
    return base.rstrip('/')


def default_asn() -> str:
    return os.environ.get('IHR_ASN') or DEFAULT_ASN


def to_iso_utc(timestamp: float) -> str:
    """Epoch seconds -> "2024-05-01T12:00:00.000Z"."""
    moment = datetime.datetime.fromtimestamp(timestamp, tz=datetime.timezone.utc)
    return moment.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def alerts_url_builder(base_url: str, clock: Callable[[], float] = time.time):
    """URL builder for network_delay/alarms/ with a ts__gte lower bound."""
    def build(params: Dict[str, Any]) -> str:
        asn = str(params.get('asn') or DEFAULT_ASN)
        try:
            minutes = float(params.get('minutes', DEFAULT_MINUTES))
        except (TypeError, ValueError):
            minutes = math.nan
        if math.isnan(minutes) or minutes < 0:
            raise ValueError(f'Invalid minutes value: {params.get("minutes")}')
        since = to_iso_utc(clock() - minutes * 60)
        query = urlencode({'asn': asn, 'ts__gte': since})
        return f'{base_url}/network_delay/alarms/?{query}'
    return build


def network_url_builder(base_url: str):
    """URL builder for networks/<number>/."""
    def build(params: Dict[str, Any]) -> str:
        number = asn_number(params.get('asn') or DEFAULT_ASN)
        return f'{base_url}/networks/{number}/'
    return build


def search_url_builder(base_url: str):
    """URL builder for networks/?name__icontains=&country=."""
    def build(params: Dict[str, Any]) -> str:
        q = params.get('q', DEFAULT_SEARCH_QUERY)
        country = params.get('country', DEFAULT_SEARCH_COUNTRY)
        query = {}
        if q:
            query['name__icontains'] = q
        if country:
            query['country'] = country
        url = f'{base_url}/networks/'
        if query:
            url = f'{url}?{urlencode(query)}'
        return url
    return build


def _endpoint_settings(config: dict, key: str, ttl: float) -> Dict[str, float]:
    section = config.get(key) or {}
    return {
        'ttl': float(section.get('ttl_seconds', ttl)),
        'timeout': float(section.get('timeout_seconds', EXTERNAL_API_TIMEOUT)),
    }


def backoff_policy_from_config(config: dict) -> BackoffPolicy:
    section = config.get('backoff') or {}
    defaults = BackoffPolicy()
    return BackoffPolicy(
        base_delay=float(section.get('base_delay_seconds', defaults.base_delay)),
        failure_cap=int(section.get('failure_cap', defaults.failure_cap)),
        max_delay=float(section.get('max_delay_seconds', defaults.max_delay)),
        jitter=float(section.get('jitter', defaults.jitter)),
    )


class IhrClient:
    """
    The three IHR endpoints behind independent cached fetchers.

    Args:
        config: The 'ihr' section of the configuration (may be empty)
        http_client: Shared HTTP client for all endpoints
        clock: Time source for caches, backoff and the alerts time window
    """

    def __init__(self, config: Optional[dict] = None,
                 http_client: Optional[HttpClientManager] = None,
                 clock: Callable[[], float] = time.time):
        config = config or {}
        self.base_url = resolve_base_url(config.get('base_url'))
        self.http_client = http_client or HttpClientManager()
        backoff_policy = backoff_policy_from_config(config)

        self.alerts = CachedFetcher(
            name='ihrAlerts',
            url_builder=alerts_url_builder(self.base_url, clock),
            backoff_policy=backoff_policy,
            http_client=self.http_client,
            clock=clock,
            **_endpoint_settings(config, 'alerts', ALERTS_CACHE_TTL)
        )
        self.network = CachedFetcher(
            name='ihrNetwork',
            url_builder=network_url_builder(self.base_url),
            backoff_policy=backoff_policy,
            http_client=self.http_client,
            clock=clock,
            **_endpoint_settings(config, 'network', NETWORK_CACHE_TTL)
        )
        self.search = CachedFetcher(
            name='ihrSearchNetworks',
            url_builder=search_url_builder(self.base_url),
            backoff_policy=backoff_policy,
            http_client=self.http_client,
            clock=clock,
            **_endpoint_settings(config, 'search', NETWORK_SEARCH_CACHE_TTL)
        )
        logger.info("IHR client using %s", self.base_url)

    def get_alerts(self, asn: Optional[str] = None,
                   minutes: float = DEFAULT_MINUTES) -> ResultEnvelope:
        return self.alerts.get({'asn': asn or default_asn(), 'minutes': minutes})

    def get_network(self, asn: Optional[str] = None) -> ResultEnvelope:
        return self.network.get({'asn': asn or default_asn()})

    def search_networks(self, q: Optional[str] = DEFAULT_SEARCH_QUERY,
                        country: Optional[str] = DEFAULT_SEARCH_COUNTRY) -> ResultEnvelope:
        return self.search.get({'q': q, 'country': country})

    def fetchers(self) -> Dict[str, CachedFetcher]:
        return {
            'alerts': self.alerts,
            'network': self.network,
            'search': self.search
        }

    def close(self):
        self.http_client.close()
