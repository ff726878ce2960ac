"""
settlement - Timed Position Settlement Engine

A library for settling time-boxed and leveraged positions against synthetic
price feeds: binary options, leveraged futures, arbitrage cycles and
collateralized loans share one state machine, one balance ledger and one
durable store.

Usage:
    from settlement import SettlementEngine, EngineConfig, ManualClock, JsonFileStore

    clock = ManualClock()
    engine = SettlementEngine.from_config(EngineConfig(), store=JsonFileStore("state"),
                                          clock=clock, seed=42)
    engine.ledger.transfer_in("alice", "USDT", 5000, reference="deposit:alice:1")

    pos = engine.open_binary("alice", "BTC/USDT", 1000, "up", duration=60)
    clock.advance(seconds=60)
    engine.evaluate()

    engine.get_balance("alice")            # 4000 + 1850 if the price went up
    engine.list_history("alice", limit=10)
"""

# Core types
from .core import (
    Position,
    LedgerLeg,
    SettlementResult,
    HistoryEntry,
    ProductKind,
    Side,
    PositionStatus,
    SettlementReason,
    ProductAdapter,
    PriceSource,
    Clock,
    SettlementError,
    InvalidStake,
    InsufficientFunds,
    UnknownInstrument,
    UnknownPosition,
    InvalidPosition,
    InvalidOperation,
    AlreadySettled,
    PersistenceError,
    DEFAULT_ASSET,
    round_amount,
    to_decimal,
)

from .clock import SystemClock, ManualClock
from .price_path import Instrument, PricePathGenerator
from .ledger import BalanceLedger, ExecuteResult, LedgerEntry, HOUSE_ACCOUNT
from .storage import Store, MemoryStore, JsonFileStore, LedgerSnapshot, write_with_retry
from .outcome import (
    OutcomeMode,
    Outcome,
    OutcomePolicy,
    NaturalOutcomePolicy,
    OverrideOutcomePolicy,
    natural_outcome,
)
from .products import (
    BinaryOptionAdapter,
    FuturesAdapter,
    ArbitrageCycleAdapter,
    CollateralizedLoanAdapter,
)
from .config import EngineConfig, InstrumentSpec, load_config
from .engine import SettlementEngine
from .scheduler import SettlementScheduler

__all__ = [
    # Core
    'Position', 'LedgerLeg', 'SettlementResult', 'HistoryEntry',
    'ProductKind', 'Side', 'PositionStatus', 'SettlementReason',
    'ProductAdapter', 'PriceSource', 'Clock',
    'SettlementError', 'InvalidStake', 'InsufficientFunds', 'UnknownInstrument',
    'UnknownPosition', 'InvalidPosition', 'InvalidOperation', 'AlreadySettled',
    'PersistenceError', 'DEFAULT_ASSET', 'round_amount', 'to_decimal',
    # Clock
    'SystemClock', 'ManualClock',
    # Prices
    'Instrument', 'PricePathGenerator',
    # Ledger
    'BalanceLedger', 'ExecuteResult', 'LedgerEntry', 'HOUSE_ACCOUNT',
    # Storage
    'Store', 'MemoryStore', 'JsonFileStore', 'LedgerSnapshot', 'write_with_retry',
    # Outcome
    'OutcomeMode', 'Outcome', 'OutcomePolicy', 'NaturalOutcomePolicy',
    'OverrideOutcomePolicy', 'natural_outcome',
    # Products
    'BinaryOptionAdapter', 'FuturesAdapter', 'ArbitrageCycleAdapter', 'CollateralizedLoanAdapter',
    # Engine
    'EngineConfig', 'InstrumentSpec', 'load_config', 'SettlementEngine', 'SettlementScheduler',
]
