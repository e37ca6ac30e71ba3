"""
Shared fixtures for vesting engine tests.

Time is always explicit: ``T`` is the global vesting start and every call
passes ``now`` relative to it.
"""

import pytest

from vesting_helpers import make_capabilities, make_engine, make_token


@pytest.fixture
def token():
    return make_token()


@pytest.fixture
def capabilities():
    return make_capabilities()


@pytest.fixture
def engine(token, capabilities):
    return make_engine(token, capabilities)
