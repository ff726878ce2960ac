"""
conftest.py - Shared pytest fixtures for settlement engine tests

Provides common fixtures used across unit, functional and conformance tests:
- A manual clock starting 2025-01-01 UTC
- Seeded price generators with BTC/USDT at 94,500 and ETH/USDT at 3,450
- Ledgers and engines over an in-memory store
- A funded engine (alice and bob hold USDT and BTC)
"""

import pytest

from settlement import BalanceLedger, ManualClock, MemoryStore

from tests.support import START, fund, make_engine, make_generator


@pytest.fixture
def clock():
    return ManualClock(START)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def generator():
    return make_generator()


@pytest.fixture
def ledger(store, clock):
    return BalanceLedger(store=store, clock=clock, retries=0, base_sleep=0.0)


@pytest.fixture
def engine(store, clock):
    return make_engine(store=store, clock=clock)


@pytest.fixture
def funded_engine(engine):
    fund(engine, "alice")
    fund(engine, "bob")
    return engine
