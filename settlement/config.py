"""
config.py - Engine configuration

EngineConfig gathers every tunable in one frozen value: instruments and their
volatility, product term tables, override price adjustment, store retry policy
and the evaluation cadence. Defaults reproduce the platform's observed terms.

Configuration can be loaded from YAML:

    settlement_asset: USDT
    tick_interval: 1.0
    outcome_mode: auto
    instruments:
      - {symbol: BTC/USDT, price: 94500, volatility: 0.001}
    binary_payout_rate: 0.85
    borrow_rates: {7: 0.05, 14: 0.09, 30: 0.18}

Unknown keys are rejected so typos fail loudly instead of silently keeping a
default.
"""

from __future__ import annotations
from dataclasses import dataclass, field, fields
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import yaml

from .core import DEFAULT_ASSET, ProductKind, to_decimal
from .outcome import DEFAULT_PRICE_ADJUSTMENT, OutcomeMode
from .price_path import Instrument, PricePathGenerator
from .products.binary import (
    DEFAULT_DURATION, DEFAULT_DURATIONS, DEFAULT_LEVELS, DEFAULT_MIN_STAKE, DEFAULT_PAYOUT_RATE,
    BinaryLevel, BinaryOptionAdapter,
)
from .products.cycle import DEFAULT_TIERS, ArbitrageCycleAdapter, CycleTier
from .products.futures import DEFAULT_MAX_LEVERAGE, DEFAULT_MIN_MARGIN, FuturesAdapter
from .products.loan import DEFAULT_BORROW_RATES, DEFAULT_LEND_APYS, DEFAULT_LTV, CollateralizedLoanAdapter
from .storage import DEFAULT_BASE_SLEEP, DEFAULT_RETRIES


@dataclass(frozen=True)
class InstrumentSpec:
    """Starting price and per-tick volatility for one instrument."""
    symbol: str
    price: Decimal
    volatility: Decimal

    def __post_init__(self):
        object.__setattr__(self, 'price', to_decimal(self.price))
        object.__setattr__(self, 'volatility', to_decimal(self.volatility))

    def build(self) -> Instrument:
        return Instrument(self.symbol, self.price, self.volatility)


DEFAULT_INSTRUMENTS: Tuple[InstrumentSpec, ...] = (
    InstrumentSpec("BTC/USDT", Decimal("94500"), Decimal("0.001")),
    InstrumentSpec("ETH/USDT", Decimal("3450"), Decimal("0.0015")),
    InstrumentSpec("SOL/USDT", Decimal("145"), Decimal("0.003")),
)


@dataclass(frozen=True)
class EngineConfig:
    settlement_asset: str = DEFAULT_ASSET
    tick_interval: float = 1.0
    outcome_mode: str = OutcomeMode.AUTO.value
    price_adjustment: Decimal = DEFAULT_PRICE_ADJUSTMENT
    instruments: Tuple[InstrumentSpec, ...] = DEFAULT_INSTRUMENTS

    binary_payout_rate: Decimal = DEFAULT_PAYOUT_RATE
    binary_durations: Tuple[int, ...] = DEFAULT_DURATIONS
    binary_default_duration: int = DEFAULT_DURATION
    binary_min_stake: Decimal = DEFAULT_MIN_STAKE
    binary_use_levels: bool = False
    binary_levels: Tuple[BinaryLevel, ...] = DEFAULT_LEVELS

    futures_max_leverage: int = DEFAULT_MAX_LEVERAGE
    futures_min_margin: Decimal = DEFAULT_MIN_MARGIN

    arbitrage_tiers: Tuple[CycleTier, ...] = DEFAULT_TIERS

    loan_ltv: Decimal = DEFAULT_LTV
    borrow_rates: Dict[int, Decimal] = field(default_factory=lambda: dict(DEFAULT_BORROW_RATES))
    lend_apys: Dict[int, Decimal] = field(default_factory=lambda: dict(DEFAULT_LEND_APYS))

    store_retries: int = DEFAULT_RETRIES
    store_base_sleep: float = DEFAULT_BASE_SLEEP

    def __post_init__(self):
        if self.tick_interval <= 0:
            raise ValueError(f"tick_interval must be positive, got {self.tick_interval}")
        OutcomeMode.parse(self.outcome_mode)
        if not self.instruments:
            raise ValueError("At least one instrument is required")
        for name in ('price_adjustment', 'binary_payout_rate', 'binary_min_stake',
                     'futures_min_margin', 'loan_ltv'):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> 'EngineConfig':
        """
        Build a config from a plain mapping (as produced by YAML or JSON).

        Raises:
            ValueError: On unknown keys or malformed nested entries.
        """
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(unknown)}")

        if 'instruments' in data:
            data['instruments'] = tuple(InstrumentSpec(**item) for item in data['instruments'])
        if 'binary_levels' in data:
            data['binary_levels'] = tuple(BinaryLevel(**item) for item in data['binary_levels'])
        if 'arbitrage_tiers' in data:
            data['arbitrage_tiers'] = tuple(CycleTier(**item) for item in data['arbitrage_tiers'])
        if 'binary_durations' in data:
            data['binary_durations'] = tuple(int(d) for d in data['binary_durations'])
        for table in ('borrow_rates', 'lend_apys'):
            if table in data:
                data[table] = {int(k): to_decimal(v) for k, v in data[table].items()}
        return cls(**data)

    # ========================================================================
    # BUILDERS
    # ========================================================================

    def build_generator(self, seed: Optional[int] = None) -> PricePathGenerator:
        return PricePathGenerator([spec.build() for spec in self.instruments], seed=seed,
                                  base_currency=self.settlement_asset)

    def build_adapters(self) -> Dict[ProductKind, Any]:
        return {
            ProductKind.BINARY: BinaryOptionAdapter(
                payout_rate=self.binary_payout_rate,
                durations=self.binary_durations,
                default_duration=self.binary_default_duration,
                min_stake=self.binary_min_stake,
                levels=self.binary_levels if self.binary_use_levels else None,
                asset=self.settlement_asset,
            ),
            ProductKind.FUTURES: FuturesAdapter(
                max_leverage=self.futures_max_leverage,
                min_margin=self.futures_min_margin,
                asset=self.settlement_asset,
            ),
            ProductKind.CYCLE: ArbitrageCycleAdapter(tiers=self.arbitrage_tiers, asset=self.settlement_asset),
            ProductKind.LOAN: CollateralizedLoanAdapter(
                ltv=self.loan_ltv,
                borrow_rates=self.borrow_rates,
                lend_apys=self.lend_apys,
                asset=self.settlement_asset,
            ),
        }


def load_config(path: Union[str, Path]) -> EngineConfig:
    """
    Load an EngineConfig from a YAML file. An empty file yields the defaults.

    Raises:
        ValueError: If the document is not a mapping or has unknown keys.
    """
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return EngineConfig()
    if not isinstance(data, Mapping):
        raise ValueError(f"Configuration root must be a mapping, got {type(data).__name__}")
    return EngineConfig.from_dict(data)
