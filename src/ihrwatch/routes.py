"""
Route handlers for the IHR overlay.

The handlers are framework agnostic: they take the parsed query string and
return (status_code, json_body). Mount them in any web framework.

    GET /api/ihr/alerts?asn=AS21928&minutes=5
    GET /api/ihr/network?asn=AS21928
    GET /api/ihr/networks?q=t-mobile&country=US

200 -> ok, fresh or stale
202 -> warming (no cache yet and upstream failed)
500 -> anything outside the fetcher contract raised
"""

import logging
from typing import Any, Callable, Dict, Optional, Tuple

from .fetching.cached_fetcher import ResultEnvelope
from .ihr import (
    IhrClient,
    DEFAULT_MINUTES,
    DEFAULT_SEARCH_QUERY,
    DEFAULT_SEARCH_COUNTRY,
    default_asn,
)

logger = logging.getLogger(__name__)

HTTP_OK = 200
HTTP_WARMING = 202
HTTP_SERVER_ERROR = 500

Response = Tuple[int, Dict[str, Any]]


def _timestamp_ms(fetched_at: Optional[float]) -> Optional[int]:
    if fetched_at is None:
        return None
    return int(fetched_at * 1000)


def envelope_response(envelope: ResultEnvelope) -> Response:
    """Map a fetcher envelope to an HTTP status and body."""
    if not envelope.ok and envelope.data is None:
        return HTTP_WARMING, {
            'ok': False,
            'data': None,
            'stale': False,
            'ts': None,
            'error': envelope.error or 'warming'
        }

    return HTTP_OK, {
        'ok': True,
        'data': envelope.data,
        'stale': bool(envelope.stale),
        'ts': _timestamp_ms(envelope.fetched_at),
        'error': (envelope.error or None) if envelope.stale else None
    }


def _handle(route: str, call: Callable[[], ResultEnvelope]) -> Response:
    try:
        return envelope_response(call())
    except Exception as e:  # pylint: disable=broad-except
        logger.error("Route %s failed: %s", route, e, exc_info=True)
        return HTTP_SERVER_ERROR, {
            'ok': False,
            'data': None,
            'stale': False,
            'ts': None,
            'error': str(e) or 'server_error'
        }


def alerts(client: IhrClient, query: Dict[str, Any]) -> Response:
    """GET /api/ihr/alerts"""
    asn = str(query.get('asn') or default_asn())
    # passed through unparsed, a bad value fails inside the fetcher
    minutes = query.get('minutes') or DEFAULT_MINUTES
    return _handle('alerts', lambda: client.get_alerts(asn=asn, minutes=minutes))


def network(client: IhrClient, query: Dict[str, Any]) -> Response:
    """GET /api/ihr/network"""
    asn = str(query.get('asn') or default_asn())
    return _handle('network', lambda: client.get_network(asn=asn))


def search_networks(client: IhrClient, query: Dict[str, Any]) -> Response:
    """GET /api/ihr/networks"""
    return _handle('networks', lambda: client.search_networks(
        q=query.get('q', DEFAULT_SEARCH_QUERY),
        country=query.get('country', DEFAULT_SEARCH_COUNTRY)
    ))
