"""
scheduler.py - Fixed-cadence price feed and evaluation loop

SettlementScheduler runs two background threads on the same interval:

    settlement-prices     ticks each instrument once per interval
    settlement-scheduler  runs one engine evaluation pass per interval

Evaluation writes to the store and may back off and retry while it does.
Prices tick on their own thread, so a slow or failing store delays
settlement but never freezes the feed. A failing cycle on either thread is
logged with its traceback and the loop carries on.
"""

from __future__ import annotations
import logging
import threading
from typing import List, Optional

from .core import HistoryEntry
from .engine import SettlementEngine

logger = logging.getLogger(__name__)


class SettlementScheduler(threading.Thread):
    """
    Daemon thread driving SettlementEngine.evaluate() on a fixed interval,
    with a companion thread ticking the engine's price feed.

    Example:
        scheduler = SettlementScheduler(engine, interval=1.0)
        scheduler.start()
        ...
        scheduler.stop()
    """

    def __init__(self, engine: SettlementEngine, interval: Optional[float] = None, tick_prices: bool = True):
        super().__init__(name="settlement-scheduler", daemon=True)
        self.engine = engine
        self.interval = interval if interval is not None else engine.config.tick_interval
        if self.interval <= 0:
            raise ValueError(f"interval must be positive, got {self.interval}")
        self.tick_prices = tick_prices
        self.cycles = 0
        self.ticks = 0
        self._stop_event = threading.Event()
        self._price_thread: Optional[threading.Thread] = None

    @property
    def _ticking(self) -> bool:
        return self.tick_prices and hasattr(self.engine.prices, "tick_all")

    def tick_once(self) -> None:
        """Advance every instrument once (when enabled and supported)."""
        if self._ticking:
            self.engine.prices.tick_all()
            self.ticks += 1

    def run_once(self) -> List[HistoryEntry]:
        """One synchronous cycle: tick prices, then evaluate."""
        self.tick_once()
        settled = self.engine.evaluate()
        self.cycles += 1
        return settled

    def _price_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick_once()
            except Exception:
                logger.exception("Price tick failed")
            self._stop_event.wait(self.interval)

    def run(self) -> None:
        logger.info("Settlement scheduler started (interval %.3fs)", self.interval)
        if self._ticking:
            self._price_thread = threading.Thread(target=self._price_loop, name="settlement-prices",
                                                  daemon=True)
            self._price_thread.start()
        while not self._stop_event.is_set():
            try:
                self.engine.evaluate()
                self.cycles += 1
            except Exception:
                logger.exception("Settlement cycle failed")
            self._stop_event.wait(self.interval)
        logger.info("Settlement scheduler stopped after %d cycles and %d price ticks",
                    self.cycles, self.ticks)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal both loops to exit and wait for them."""
        self._stop_event.set()
        if self._price_thread is not None and self._price_thread.is_alive():
            self._price_thread.join(timeout)
        if self.is_alive():
            self.join(timeout)

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()
