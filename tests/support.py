"""
support.py - Builders shared by the settlement test suites

Kept outside conftest.py so test modules can import the helpers directly.
"""

from datetime import datetime, timezone
from decimal import Decimal

from settlement import (
    BalanceLedger,
    EngineConfig,
    Instrument,
    ManualClock,
    PricePathGenerator,
    SettlementEngine,
)


START = datetime(2025, 1, 1, tzinfo=timezone.utc)
BTC_PRICE = Decimal("94500")
ETH_PRICE = Decimal("3450")


def make_generator(seed: int = 7) -> PricePathGenerator:
    """Generator with the default test instruments at their starting prices."""
    return PricePathGenerator([
        Instrument("BTC/USDT", BTC_PRICE, Decimal("0.001")),
        Instrument("ETH/USDT", ETH_PRICE, Decimal("0.0015")),
    ], seed=seed)


def make_engine(store=None, clock=None, seed: int = 7, config: EngineConfig = None,
                retries: int = 0) -> SettlementEngine:
    """Engine over its own ledger, restoring from store if it holds state."""
    clock = clock or ManualClock(START)
    config = config or EngineConfig(store_retries=retries, store_base_sleep=0.0)
    ledger = BalanceLedger(store=store, clock=clock, retries=retries, base_sleep=0.0)
    return SettlementEngine(ledger, make_generator(seed), clock=clock, store=store, config=config)


def fund(engine: SettlementEngine, user: str, usdt="100000", btc="2") -> None:
    engine.ledger.transfer_in(user, "USDT", Decimal(usdt), reference=f"deposit:{user}:USDT")
    if btc:
        engine.ledger.transfer_in(user, "BTC", Decimal(btc), reference=f"deposit:{user}:BTC")


def settle_references(engine: SettlementEngine, position_id: str):
    """Journal entries that settled the given position."""
    return [e for e in engine.ledger.journal if e.reference == f"settle:{position_id}"]
