"""Shared fixtures for ihrwatch tests"""

from unittest.mock import Mock

import pytest

from ihrwatch.fetching.http_client import HttpClientManager


class FakeClock:
    """Manually advanced time source"""

    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    """HTTP client double; configure transport.get_body.side_effect per test"""
    return Mock(spec=HttpClientManager)
