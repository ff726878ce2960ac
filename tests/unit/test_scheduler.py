"""
test_scheduler.py - Unit tests for the evaluation loop and price feed threads
"""

import threading
import time
import pytest
from decimal import Decimal

from settlement import MemoryStore, PositionStatus, SettlementScheduler

from tests.support import fund, make_engine


class ExplodingEngine:
    """Stands in for an engine whose evaluate() always fails."""

    def __init__(self, engine):
        self.config = engine.config
        self.prices = engine.prices
        self.calls = 0

    def evaluate(self):
        self.calls += 1
        raise RuntimeError("store unavailable")


class StallingStore(MemoryStore):
    """MemoryStore whose settlement writes hang until released."""

    def __init__(self):
        super().__init__()
        self.blocked = threading.Event()
        self.release = threading.Event()

    def save_position(self, position):
        if position.status != PositionStatus.ACTIVE:
            self.blocked.set()
            self.release.wait(10)
        super().save_position(position)


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestRunOnce:

    def test_ticks_prices_then_settles(self, engine, clock):
        fund(engine, "alice")
        pos = engine.open_binary("alice", "BTC/USDT", 1000, "up", duration=60)
        before = engine.prices.current_price("BTC/USDT")
        scheduler = SettlementScheduler(engine, interval=0.01)

        assert scheduler.run_once() == []
        assert engine.prices.current_price("BTC/USDT") != before

        clock.advance(seconds=60)
        [entry] = scheduler.run_once()
        assert entry.entry_id == pos.position_id
        assert scheduler.cycles == 2
        assert scheduler.ticks == 2

    def test_prices_frozen_when_ticking_disabled(self, engine):
        scheduler = SettlementScheduler(engine, interval=0.01, tick_prices=False)
        scheduler.run_once()
        assert engine.prices.current_price("BTC/USDT") == Decimal("94500")
        assert scheduler.ticks == 0

    def test_interval_defaults_to_config(self, engine):
        assert SettlementScheduler(engine).interval == engine.config.tick_interval

    def test_non_positive_interval_rejected(self, engine):
        with pytest.raises(ValueError):
            SettlementScheduler(engine, interval=0)


class TestThread:

    def test_loop_runs_until_stopped(self, engine):
        scheduler = SettlementScheduler(engine, interval=0.01)
        scheduler.start()
        try:
            assert wait_for(lambda: scheduler.cycles >= 3 and scheduler.ticks >= 3)
        finally:
            scheduler.stop(timeout=5)
        assert scheduler.stopped
        assert not scheduler.is_alive()

    def test_failing_cycle_does_not_kill_loop(self, engine):
        broken = ExplodingEngine(engine)
        scheduler = SettlementScheduler(broken, interval=0.01)
        scheduler.start()
        try:
            assert wait_for(lambda: broken.calls >= 3)
            assert wait_for(lambda: scheduler.ticks >= 3)
        finally:
            scheduler.stop(timeout=5)
        assert not scheduler.is_alive()

    def test_stalled_store_does_not_freeze_prices(self, clock):
        store = StallingStore()
        engine = make_engine(store=store, clock=clock)
        fund(engine, "alice")
        pos = engine.open_binary("alice", "BTC/USDT", 1000, "up", duration=60)
        clock.advance(seconds=60)
        scheduler = SettlementScheduler(engine, interval=0.01)
        scheduler.start()
        try:
            assert store.blocked.wait(5)
            ticks = scheduler.ticks
            before = engine.prices.current_price("BTC/USDT")
            assert wait_for(lambda: scheduler.ticks >= ticks + 3)
            assert engine.prices.current_price("BTC/USDT") != before
            # Queries still answer while the settlement write hangs.
            assert [p.position_id for p in engine.list_open_positions()] == [pos.position_id]

            store.release.set()
            assert wait_for(lambda: len(engine.list_history("alice")) == 1)
        finally:
            store.release.set()
            scheduler.stop(timeout=5)
        assert engine.list_open_positions() == []
