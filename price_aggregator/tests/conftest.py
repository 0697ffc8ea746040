"""Shared fixtures."""

import time

import pytest

from price_aggregator.tests.fakes import FakeConnector


@pytest.fixture
def now() -> int:
    """Current Unix time in seconds."""
    return int(time.time())


@pytest.fixture
def connector() -> FakeConnector:
    """Empty connector to be filled by the test."""
    return FakeConnector()
