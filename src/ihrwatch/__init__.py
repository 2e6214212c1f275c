from .__pkginfo__ import __version__

from .fetching import CachedFetcher, ResultEnvelope, make_cached_fetcher
from .ihr import IhrClient, asn_number

__all__ = [
    '__version__',
    'CachedFetcher',
    'ResultEnvelope',
    'make_cached_fetcher',
    'IhrClient',
    'asn_number',
]
