""" ihrwatch Core Module

This module holds the long running service behind the dashboard's network
health overlay.

It handles:
  - Building the IHR client from the configuration
  - Keeping alert and network caches warm with a background job
  - Reporting per endpoint status (fresh, stale, warming) for the UI

"""
import time
import logging
from typing import Callable, Dict, List, Optional

from .ihr import IhrClient, DEFAULT_MINUTES, default_asn
from .fetching.cached_fetcher import (
    CachedFetcher,
    ResultEnvelope,
    STATE_EMPTY,
    STATE_FRESH,
)
from .scheduler import SchedulerThread, schedule_every, clear_jobs

STATUS_FRESH = 'fresh'
STATUS_STALE = 'stale'
STATUS_WARMING = 'warming'

REFRESH_JOB_NAME = 'ihr-refresh'

logger = logging.getLogger(__name__)


def classify(envelope: ResultEnvelope) -> str:
    """The three states the dashboard distinguishes."""
    if envelope.data is None:
        return STATUS_WARMING
    if envelope.stale:
        return STATUS_STALE
    return STATUS_FRESH


class IhrWatch:
    """ Keeps IHR data warm and reports its condition """

    def __init__(self, configdict: dict,
                 client: Optional[IhrClient] = None,
                 clock: Callable[[], float] = time.time):
        """Initialize from the full configuration dict."""
        self.config = configdict
        ihr_config = configdict.get('ihr') or {}

        self.asns: List[str] = [str(asn) for asn in (ihr_config.get('asns') or [default_asn()])]
        self.minutes = float(ihr_config.get('minutes', DEFAULT_MINUTES))
        self.poll_interval = int(ihr_config.get('poll_interval_seconds', 0))

        self._clock = clock
        self.client = client or IhrClient(ihr_config, clock=clock)
        self.last_results: Dict[str, Dict[str, ResultEnvelope]] = {}
        self.last_run_time = 0.0

        self.scheduler: Optional[SchedulerThread] = None
        if self.poll_interval > 0:
            schedule_every(self.poll_interval, 'seconds', self.refresh, REFRESH_JOB_NAME)
            self.scheduler = SchedulerThread()
            self.scheduler.start()
        else:
            logger.info("Background refresh disabled (poll_interval_seconds=%d)", self.poll_interval)

        logger.info("Watching %s (alert window: %s min)", ', '.join(self.asns), self.minutes)

    def refresh(self) -> Dict[str, Dict[str, ResultEnvelope]]:
        """ Ask every fetcher for every configured ASN once """
        results = {}
        for asn in self.asns:
            alerts = self.client.get_alerts(asn=asn, minutes=self.minutes)
            network = self.client.get_network(asn=asn)
            results[asn] = {'alerts': alerts, 'network': network}
            logger.info("%s: alerts=%s network=%s", asn, classify(alerts), classify(network))
            if alerts.error:
                logger.debug("%s: alerts error: %s", asn, alerts.error)
        self.last_results = results
        self.last_run_time = self._clock()
        return results

    @staticmethod
    def _fetcher_status(fetcher: CachedFetcher) -> dict:
        info = fetcher.get_cache_info()
        state = fetcher.state
        if state == STATE_EMPTY:
            status = STATUS_WARMING
        elif state == STATE_FRESH:
            status = STATUS_FRESH
        else:
            status = STATUS_STALE
        return {
            'status': status,
            'age_seconds': info['age_seconds'],
            'consecutive_failures': info['consecutive_failures'],
            'blocked_for_seconds': info['blocked_for_seconds'],
        }

    def get_status(self) -> dict:
        """ Per endpoint status for the dashboard """
        endpoints = {
            name: self._fetcher_status(fetcher)
            for name, fetcher in self.client.fetchers().items()
        }
        errors = {}
        for asn, envelopes in self.last_results.items():
            for name, envelope in envelopes.items():
                if envelope.error:
                    errors[f'{asn}/{name}'] = envelope.error
        return {
            'asns': list(self.asns),
            'endpoints': endpoints,
            'last_errors': errors,
            'last_run_time': self.last_run_time
        }

    def shutdown(self):
        """ Stop background jobs and release the HTTP session """
        logger.info("Shutting down ihrwatch")
        if self.scheduler is not None:
            self.scheduler.stop()
            clear_jobs(REFRESH_JOB_NAME)
            self.scheduler = None
        self.client.close()
