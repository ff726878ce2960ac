"""
price_path.py - Synthetic bounded random-walk price feeds

Each instrument carries a current price and a per-tick volatility fraction.
A tick draws u ~ Uniform(-volatility, +volatility) and moves the price to

    new_price = previous_price * (1 + u)

clamped to stay strictly positive. Draws come from a numpy Generator, so a
seeded generator replays the same path; reproducibility is available but not
required by anything downstream.

Multiple generators may run over the same nominal instrument. Positions capture
whichever generator's price they were opened against, so no cross-feed
consistency is needed.
"""

from __future__ import annotations
import copy
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

import numpy as np

from .core import DEFAULT_ASSET, UnknownInstrument, to_decimal

logger = logging.getLogger(__name__)

# Floor applied after every tick so a price can never reach zero.
MIN_PRICE = Decimal("1e-8")

# Prices are stored with this many decimal places.
PRICE_PLACES = Decimal("1e-8")


@dataclass
class Instrument:
    """
    Mutable price state for one instrument.

    Attributes:
        symbol: Identifier, e.g. "BTC/USDT".
        price: Current synthetic price (> 0).
        volatility: Per-tick volatility fraction in (0, 1).
    """
    symbol: str
    price: Decimal
    volatility: Decimal

    def __post_init__(self):
        if not self.symbol or not self.symbol.strip():
            raise ValueError("Instrument symbol cannot be empty")
        self.price = to_decimal(self.price)
        self.volatility = to_decimal(self.volatility)
        if self.price <= 0:
            raise ValueError(f"Instrument price must be positive, got {self.price}")
        if not (Decimal("0") <= self.volatility < Decimal("1")):
            raise ValueError(f"volatility must be in [0, 1), got {self.volatility}")

    @property
    def base_asset(self) -> str:
        """Left side of the pair ("BTC" for "BTC/USDT")."""
        return self.symbol.split("/")[0]


class PricePathGenerator:
    """
    Bounded random-walk feed for a set of instruments.

    Implements the PriceSource protocol (current_price). Symbols may be
    addressed by pair ("BTC/USDT") or by base asset ("BTC"); the settlement
    currency itself always prices at 1.

    Example:
        gen = PricePathGenerator([Instrument("BTC/USDT", 94500, "0.001")], seed=7)
        gen.tick("BTC/USDT")
        gen.current_price("BTC")
    """

    def __init__(
        self,
        instruments: Iterable[Instrument] = (),
        seed: Optional[int] = None,
        base_currency: str = DEFAULT_ASSET,
    ):
        self.base_currency = base_currency
        self._rng = np.random.default_rng(seed)
        self._instruments: Dict[str, Instrument] = {}
        for instrument in instruments:
            self.add_instrument(instrument)

    def add_instrument(self, instrument: Instrument) -> None:
        if instrument.symbol in self._instruments:
            raise ValueError(f"Instrument {instrument.symbol} already registered")
        self._instruments[instrument.symbol] = instrument

    def _resolve(self, symbol: str) -> Instrument:
        instrument = self._instruments.get(symbol)
        if instrument is not None:
            return instrument
        pair = f"{symbol}/{self.base_currency}"
        instrument = self._instruments.get(pair)
        if instrument is not None:
            return instrument
        raise UnknownInstrument(f"No price state for instrument {symbol!r}")

    def has_instrument(self, symbol: str) -> bool:
        if symbol == self.base_currency:
            return True
        try:
            self._resolve(symbol)
        except UnknownInstrument:
            return False
        return True

    def instrument(self, symbol: str) -> Instrument:
        return self._resolve(symbol)

    @property
    def symbols(self) -> List[str]:
        return sorted(self._instruments)

    # ========================================================================
    # PRICE SOURCE
    # ========================================================================

    def current_price(self, symbol: str) -> Decimal:
        if symbol == self.base_currency:
            return Decimal("1")
        return self._resolve(symbol).price

    def set_price(self, symbol: str, price) -> None:
        """Pin an instrument to a price (operator control and tests)."""
        price = to_decimal(price)
        if price <= 0:
            raise ValueError(f"price must be positive, got {price}")
        instrument = self._resolve(symbol)
        logger.debug("Pinned %s price %s -> %s", instrument.symbol, instrument.price, price)
        instrument.price = price

    # ========================================================================
    # RANDOM WALK
    # ========================================================================

    def _step(self, previous: Decimal, volatility: Decimal, draw: float) -> Decimal:
        move = Decimal(repr(draw)) * volatility
        new_price = (previous * (Decimal("1") + move)).quantize(PRICE_PLACES)
        return max(new_price, MIN_PRICE)

    def tick(self, symbol: str) -> Decimal:
        """Advance one instrument by one step and return its new price."""
        instrument = self._resolve(symbol)
        draw = float(self._rng.uniform(-1.0, 1.0))
        instrument.price = self._step(instrument.price, instrument.volatility, draw)
        return instrument.price

    def tick_all(self) -> Dict[str, Decimal]:
        """Advance every instrument once, in symbol order."""
        return {symbol: self.tick(symbol) for symbol in self.symbols}

    def simulate_path(self, symbol: str, steps: int) -> np.ndarray:
        """
        Sample a hypothetical path of `steps` ticks without touching state.

        Returns a float array of length steps + 1 starting at the current price.
        Draws come from a copy of the feed's generator, so calling this does
        not advance the live walk.
        """
        if steps < 0:
            raise ValueError(f"steps must be non-negative, got {steps}")
        instrument = self._resolve(symbol)
        rng = copy.deepcopy(self._rng)
        draws = rng.uniform(-1.0, 1.0, size=steps) * float(instrument.volatility)
        path = float(instrument.price) * np.cumprod(np.concatenate(([1.0], 1.0 + draws)))
        return np.maximum(path, float(MIN_PRICE))

    def __repr__(self):
        return f"PricePathGenerator({len(self._instruments)} instruments, base={self.base_currency})"
