"""Unit tests for fetching.cached_fetcher"""

import threading
import time

import pytest

from ihrwatch.fetching import BackoffPolicy, CachedFetcher, ResultEnvelope, make_cached_fetcher
from ihrwatch.fetching.http_client import RateLimitedError


def build_fetcher(transport, clock, **kwargs):
    kwargs.setdefault('ttl', 60)
    return CachedFetcher(
        name='test',
        url_builder=lambda params: f"https://example.test/{params.get('id', 'x')}",
        http_client=transport,
        clock=clock,
        **kwargs
    )


class TestConstruction:

    def test_url_builder_must_be_callable(self, transport, clock):
        with pytest.raises(ValueError):
            CachedFetcher(name='bad', url_builder='https://example.test', http_client=transport)

    def test_default_headers_and_overrides(self, transport, clock):
        fetcher = build_fetcher(transport, clock, headers={'Accept': 'application/json'})
        assert fetcher.headers['User-Agent'] == 'IhrClient/test'
        assert fetcher.headers['Accept'] == 'application/json'

    def test_make_cached_fetcher_transport_options(self, transport, clock):
        fetcher = make_cached_fetcher(
            name='alerts',
            ttl=5,
            timeout=2,
            url_builder=lambda params: 'https://example.test/',
            transport_options={'headers': {'X-Test': '1'}, 'accepted_status': (200, 400)},
            http_client=transport,
            clock=clock
        )
        assert fetcher.ttl == 5
        assert fetcher.timeout == 2
        assert fetcher.headers['X-Test'] == '1'
        assert fetcher.accepted_status == (200, 400)

    def test_make_cached_fetcher_rejects_unknown_transport_option(self, transport):
        with pytest.raises(ValueError):
            make_cached_fetcher(url_builder=lambda p: 'u', transport_options={'proxy': 'x'},
                                http_client=transport)


class TestFreshHit:

    def test_fresh_hit_skips_upstream(self, transport, clock):
        transport.get_body.side_effect = [{'status': 1}]
        fetcher = build_fetcher(transport, clock)

        first = fetcher.get()
        clock.advance(60)
        second = fetcher.get()

        assert first == ResultEnvelope(ok=True, data={'status': 1}, stale=False,
                                       fetched_at=clock.now - 60, error=None)
        assert second == first
        assert transport.get_body.call_count == 1

    def test_request_uses_configured_transport(self, transport, clock):
        transport.get_body.return_value = []
        fetcher = build_fetcher(transport, clock, timeout=3)

        fetcher.get({'id': 'abc'})

        args, kwargs = transport.get_body.call_args
        assert args == ('https://example.test/abc', 'test')
        assert kwargs['timeout'] == 3
        assert kwargs['headers']['User-Agent'] == 'IhrClient/test'
        assert kwargs['accepted_status'] == (200, 300)

    def test_empty_list_counts_as_data(self, transport, clock):
        transport.get_body.return_value = []
        fetcher = build_fetcher(transport, clock)

        result = fetcher.get()

        assert result.ok is True
        assert result.data == []
        fetcher.get()
        assert transport.get_body.call_count == 1

    def test_scenario_ttl_expiry(self, transport, clock):
        transport.get_body.side_effect = [{'status': 1}, {'status': 2}]
        fetcher = build_fetcher(transport, clock, ttl=1.0)

        at_0 = fetcher.get()
        clock.advance(0.5)
        at_500 = fetcher.get()
        clock.advance(1.0)
        at_1500 = fetcher.get()

        assert at_0.data == {'status': 1} and at_0.stale is False
        assert at_500.data == {'status': 1} and at_500.stale is False
        assert at_1500.data == {'status': 2} and at_1500.stale is False
        assert transport.get_body.call_count == 2


class TestFailures:

    def test_no_cache_and_failure_returns_empty(self, transport, clock):
        transport.get_body.side_effect = ConnectionError('connection refused')
        fetcher = build_fetcher(transport, clock)

        result = fetcher.get()

        assert result.ok is False
        assert result.data is None
        assert result.fetched_at is None
        assert result.stale is True
        assert result.error == 'connection refused'

    def test_stale_fallback_after_expiry(self, transport, clock):
        transport.get_body.side_effect = [{'status': 1}, TimeoutError('timeout after 10s')]
        fetcher = build_fetcher(transport, clock, ttl=10)

        fresh = fetcher.get()
        clock.advance(11)
        stale = fetcher.get()

        assert stale.ok is True
        assert stale.stale is True
        assert stale.data == {'status': 1}
        assert stale.fetched_at == fresh.fetched_at
        assert stale.error == 'timeout after 10s'

    def test_unexpected_exception_becomes_envelope(self, transport, clock):
        transport.get_body.side_effect = KeyError('boom')
        fetcher = build_fetcher(transport, clock)

        result = fetcher.get()

        assert result.ok is False
        assert 'boom' in result.error
        assert fetcher.get_cache_info()['consecutive_failures'] == 1
        assert fetcher.get_cache_info()['in_flight'] is False

    def test_url_builder_error_counts_as_failure(self, transport, clock):
        def builder(params):
            raise ValueError(f"Invalid minutes value: {params['minutes']}")

        fetcher = CachedFetcher(name='test', url_builder=builder, http_client=transport, clock=clock)

        result = fetcher.get({'minutes': 'abc'})

        assert result == ResultEnvelope(ok=False, data=None, stale=True, fetched_at=None,
                                        error='Invalid minutes value: abc')
        info = fetcher.get_cache_info()
        assert info['consecutive_failures'] == 1
        assert info['blocked_for_seconds'] == 2
        assert info['in_flight'] is False
        transport.get_body.assert_not_called()

    def test_url_builder_error_serves_stale_data(self, transport, clock):
        transport.get_body.return_value = {'status': 1}
        fetcher = CachedFetcher(
            name='test',
            url_builder=lambda params: f"https://example.test/{int(params['id'])}",
            ttl=10, http_client=transport, clock=clock
        )
        fetcher.get({'id': '1'})
        clock.advance(11)

        result = fetcher.get({'id': 'abc'})

        assert result.ok is True
        assert result.stale is True
        assert result.data == {'status': 1}
        assert 'abc' in result.error
        assert transport.get_body.call_count == 1

    def test_backoff_gate_serves_stale_without_request(self, transport, clock):
        transport.get_body.side_effect = [{'status': 1}, ConnectionError('HTTP 502')]
        fetcher = build_fetcher(transport, clock, ttl=10)

        fetcher.get()
        clock.advance(11)
        fetcher.get()            # fails, blocked for 2s
        clock.advance(0.5)
        blocked = fetcher.get()

        assert transport.get_body.call_count == 2
        assert blocked.ok is True
        assert blocked.stale is True
        assert blocked.data == {'status': 1}
        assert blocked.error == 'backoff:2s'

    def test_backoff_gate_without_cache(self, transport, clock):
        transport.get_body.side_effect = ConnectionError('down')
        fetcher = build_fetcher(transport, clock)

        fetcher.get()
        clock.advance(1.2)
        blocked = fetcher.get()

        assert blocked == ResultEnvelope(ok=False, data=None, stale=True,
                                         fetched_at=None, error='backoff:1s')
        assert transport.get_body.call_count == 1

    def test_backoff_grows_and_caps(self, transport, clock):
        transport.get_body.side_effect = ConnectionError('down')
        fetcher = build_fetcher(transport, clock)

        delays = []
        for _ in range(12):
            fetcher.get()
            delays.append(fetcher.get_cache_info()['blocked_for_seconds'])
            clock.advance(delays[-1])

        assert delays == sorted(delays)
        assert delays[:8] == [2, 4, 8, 16, 32, 64, 128, 256]
        assert max(delays) == 300
        assert transport.get_body.call_count == 12

    def test_success_resets_backoff(self, transport, clock):
        transport.get_body.side_effect = [
            ConnectionError('down'),
            ConnectionError('down'),
            ConnectionError('down'),
            {'status': 'ok'},
            ConnectionError('down'),
        ]
        fetcher = build_fetcher(transport, clock, ttl=1)

        for _ in range(3):
            fetcher.get()
            clock.advance(fetcher.get_cache_info()['blocked_for_seconds'])
        recovered = fetcher.get()
        assert recovered.ok is True and recovered.stale is False
        assert fetcher.get_cache_info()['consecutive_failures'] == 0

        clock.advance(2)
        fetcher.get()
        info = fetcher.get_cache_info()
        assert info['consecutive_failures'] == 1
        assert info['blocked_for_seconds'] == BackoffPolicy().delay_for(1)

    def test_retry_after_extends_backoff(self, transport, clock):
        transport.get_body.side_effect = RateLimitedError('HTTP 429 rate limited', retry_after=120)
        fetcher = build_fetcher(transport, clock)

        fetcher.get()

        assert fetcher.get_cache_info()['blocked_for_seconds'] == 120

    def test_scenario_three_failures_then_success(self, transport, clock):
        transport.get_body.side_effect = [
            ConnectionError('down'),
            ConnectionError('down'),
            ConnectionError('down'),
            {'status': 'recovered'},
        ]
        fetcher = build_fetcher(transport, clock)

        results = [fetcher.get()]                 # t=0, fail, blocked until 2
        clock.advance(1)
        results.append(fetcher.get())             # t=1, blocked
        clock.advance(1)
        results.append(fetcher.get())             # t=2, fail, blocked until 6
        clock.advance(4)
        results.append(fetcher.get())             # t=6, fail, blocked until 14
        clock.advance(7)
        results.append(fetcher.get())             # t=13, blocked
        clock.advance(1)
        results.append(fetcher.get())             # t=14, success

        assert [r.ok for r in results] == [False, False, False, False, False, True]
        assert results[1].error == 'backoff:1s'
        assert results[4].error == 'backoff:1s'
        assert results[-1].stale is False
        assert results[-1].data == {'status': 'recovered'}
        assert transport.get_body.call_count == 4


class TestCoalescing:

    def test_concurrent_callers_share_one_request(self, transport, clock):
        started = threading.Event()
        release = threading.Event()

        def slow_fetch(*args, **kwargs):
            started.set()
            release.wait(5)
            return {'status': 'shared'}

        transport.get_body.side_effect = slow_fetch
        fetcher = build_fetcher(transport, clock)
        results = []

        def worker():
            results.append(fetcher.get())

        leader = threading.Thread(target=worker)
        leader.start()
        assert started.wait(5)
        assert fetcher.get_cache_info()['in_flight'] is True

        followers = [threading.Thread(target=worker) for _ in range(9)]
        for t in followers:
            t.start()
        release.set()
        for t in [leader] + followers:
            t.join(5)

        assert transport.get_body.call_count == 1
        assert len(results) == 10
        assert all(r == results[0] for r in results)
        assert results[0].data == {'status': 'shared'}
        assert fetcher.get_cache_info()['in_flight'] is False

    def test_followers_receive_failure_envelope(self, transport, clock):
        started = threading.Event()
        release = threading.Event()

        def failing_fetch(*args, **kwargs):
            started.set()
            release.wait(5)
            raise ConnectionError('HTTP 500')

        transport.get_body.side_effect = failing_fetch
        fetcher = build_fetcher(transport, clock)
        results = []

        leader = threading.Thread(target=lambda: results.append(fetcher.get()))
        leader.start()
        assert started.wait(5)
        follower = threading.Thread(target=lambda: results.append(fetcher.get()))
        follower.start()
        release.set()
        leader.join(5)
        follower.join(5)

        assert transport.get_body.call_count == 1
        assert len(results) == 2
        assert results[0].error in ('HTTP 500', 'backoff:2s')
        assert all(r.ok is False and r.data is None for r in results)

    def test_follower_wait_is_bounded_by_timeout(self, transport, clock):
        started = threading.Event()
        release = threading.Event()

        def hung_fetch(*args, **kwargs):
            started.set()
            release.wait(5)
            return {'status': 'late'}

        transport.get_body.side_effect = hung_fetch
        fetcher = build_fetcher(transport, clock, timeout=0.2)

        leader = threading.Thread(target=fetcher.get)
        leader.start()
        try:
            assert started.wait(5)
            begin = time.monotonic()
            result = fetcher.get()
            waited = time.monotonic() - begin
        finally:
            release.set()
            leader.join(5)

        assert waited < 2
        assert result == ResultEnvelope(ok=False, data=None, stale=True, error='timeout')
        assert transport.get_body.call_count == 1
        # the follower gives up without touching backoff
        assert fetcher.get_cache_info()['consecutive_failures'] == 0

    def test_marker_cleared_after_settlement(self, transport, clock):
        transport.get_body.side_effect = [ConnectionError('down'), {'status': 1}]
        fetcher = build_fetcher(transport, clock)

        fetcher.get()
        clock.advance(2)
        result = fetcher.get()

        assert result.data == {'status': 1}
        assert transport.get_body.call_count == 2


class TestInstanceIsolation:

    def test_fetchers_do_not_share_state(self, transport, clock):
        transport.get_body.side_effect = [ConnectionError('down'), {'status': 1}]
        failing = build_fetcher(transport, clock)
        healthy = build_fetcher(transport, clock)

        failing.get()
        result = healthy.get()

        assert result.ok is True
        assert failing.get_cache_info()['consecutive_failures'] == 1
        assert healthy.get_cache_info()['consecutive_failures'] == 0

    def test_state_property(self, transport, clock):
        transport.get_body.return_value = {'status': 1}
        fetcher = build_fetcher(transport, clock, ttl=10)

        assert fetcher.state == 'empty'
        fetcher.get()
        assert fetcher.state == 'fresh'
        clock.advance(11)
        assert fetcher.state == 'stale'

    def test_state_of_null_body_matches_get(self, transport, clock):
        transport.get_body.return_value = None
        fetcher = build_fetcher(transport, clock, ttl=10)

        fetcher.get()

        assert fetcher.state == 'stale'
        assert fetcher.get_cache_info()['cache_valid'] is False
        fetcher.get()
        assert transport.get_body.call_count == 2
