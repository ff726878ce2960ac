"""
futures.py - Leveraged perpetual futures with margin liquidation

A futures position posts margin and takes leveraged exposure to the
instrument's return since entry:

    pnl = ((exit - entry) / entry) * margin * leverage * (+1 long / -1 short)

There is no fixed expiry. A position ends when:
    - the user requests a close (settles at the current price), or
    - pnl <= -margin at any evaluation (liquidation, checked every tick)

Payoff returned to the user is max(margin + pnl, 0), so a position can lose at
most its margin. The price at which liquidation fires is

    long:  entry * (1 - 1/leverage)
    short: entry * (1 + 1/leverage)
"""

from __future__ import annotations
from datetime import datetime
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import List, Optional

from ..core import (
    DEFAULT_ASSET, InvalidStake, LedgerLeg, Position, PositionStatus, ProductKind,
    SettlementReason, Side, freeze_terms, round_amount, to_decimal,
)

DEFAULT_MAX_LEVERAGE = 125
DEFAULT_MIN_MARGIN = Decimal("10")
PRICE_QUANTUM = Decimal("1e-8")


def futures_pnl(side: Side, entry_price: Decimal, exit_price: Decimal, margin: Decimal,
                leverage: int) -> Decimal:
    """Leveraged PnL on margin for a move from entry_price to exit_price."""
    direction = Decimal("1") if side == Side.LONG else Decimal("-1")
    # Divide last so a price exactly at the liquidation boundary yields exactly -margin.
    return (exit_price - entry_price) * margin * Decimal(leverage) * direction / entry_price


def is_liquidated(pnl: Decimal, margin: Decimal) -> bool:
    """Full margin loss."""
    return pnl <= -margin


def futures_payoff(margin: Decimal, pnl: Decimal) -> Decimal:
    """Margin plus PnL, floored at zero."""
    return max(margin + pnl, Decimal("0"))


def liquidation_price(side: Side, entry_price: Decimal, leverage: int) -> Decimal:
    """Price, on the 1e-8 grid, at which a move against the position wipes out the margin."""
    step = entry_price / Decimal(leverage)
    if side == Side.LONG:
        return (entry_price - step).quantize(PRICE_QUANTUM, rounding=ROUND_FLOOR)
    return (entry_price + step).quantize(PRICE_QUANTUM, rounding=ROUND_CEILING)


class FuturesAdapter:
    """Product adapter for leveraged futures."""

    kind = ProductKind.FUTURES
    uses_outcome_policy = False

    def __init__(self, max_leverage: int = DEFAULT_MAX_LEVERAGE, min_margin=DEFAULT_MIN_MARGIN,
                 asset: str = DEFAULT_ASSET):
        if max_leverage < 1:
            raise ValueError(f"max_leverage must be >= 1, got {max_leverage}")
        self.max_leverage = max_leverage
        self.min_margin = to_decimal(min_margin)
        self.asset = asset

    def create_position(
        self,
        position_id: str,
        user_id: str,
        instrument: str,
        margin: Decimal,
        side: Side,
        leverage: int,
        entry_price: Decimal,
        entry_time: datetime,
    ) -> Position:
        """
        Build an OPEN futures position.

        Raises:
            InvalidStake: Margin not positive or below the minimum
            ValueError: Side is not LONG/SHORT, or leverage is out of range
        """
        margin = to_decimal(margin)
        if margin <= 0:
            raise InvalidStake(f"Margin must be positive, got {margin}")
        if margin < self.min_margin:
            raise InvalidStake(f"Margin {margin} is below the minimum {self.min_margin}")
        if side not in (Side.LONG, Side.SHORT):
            raise ValueError(f"Futures side must be LONG or SHORT, got {side}")
        if isinstance(leverage, bool) or int(leverage) != leverage:
            raise ValueError(f"leverage must be a whole number, got {leverage!r}")
        leverage = int(leverage)
        if not 1 <= leverage <= self.max_leverage:
            raise ValueError(f"leverage must be between 1 and {self.max_leverage}, got {leverage}")

        return Position(
            position_id=position_id,
            user_id=user_id,
            kind=ProductKind.FUTURES,
            instrument=instrument,
            asset=self.asset,
            stake=margin,
            side=side,
            entry_price=entry_price,
            entry_time=entry_time,
            expiry_time=None,
            status=PositionStatus.OPEN,
            _frozen_terms=freeze_terms({'leverage': leverage}),
        )

    # ========================================================================
    # ADAPTER PROTOCOL
    # ========================================================================

    def opening_legs(self, position: Position) -> List[LedgerLeg]:
        return [LedgerLeg(position.asset, -position.stake, f"futures margin {position.position_id}")]

    def is_expired(self, position: Position, now: datetime) -> bool:
        return position.close_requested

    def check_liquidation(self, position: Position, price: Decimal, now: datetime) -> bool:
        return is_liquidated(self.pnl(position, price), position.stake)

    def pnl(self, position: Position, price: Decimal) -> Decimal:
        return futures_pnl(position.side, position.entry_price, price, position.stake,
                           position.term('leverage'))

    def payoff(self, position: Position, exit_price: Decimal, outcome=None,
               reason: SettlementReason = SettlementReason.CLOSED) -> Decimal:
        if reason == SettlementReason.LIQUIDATED:
            return Decimal("0")
        return round_amount(position.asset, futures_payoff(position.stake, self.pnl(position, exit_price)))

    def settlement_legs(self, position: Position, exit_price: Decimal, outcome=None,
                        reason: SettlementReason = SettlementReason.CLOSED) -> List[LedgerLeg]:
        amount = self.payoff(position, exit_price, outcome, reason)
        return [LedgerLeg(position.asset, amount, f"futures settle {position.position_id}")]

    def outcome_label(self, position: Position, exit_price: Decimal, outcome=None,
                      reason: SettlementReason = SettlementReason.CLOSED) -> str:
        if reason == SettlementReason.LIQUIDATED:
            return "liquidated"
        return "profit" if self.pnl(position, exit_price) > 0 else "loss"

    def unrealized_pnl(self, position: Position, price: Decimal, now: datetime) -> Decimal:
        return round_amount(position.asset, max(self.pnl(position, price), -position.stake))

    def liquidation_price(self, position: Position) -> Decimal:
        return liquidation_price(position.side, position.entry_price, position.term('leverage'))
