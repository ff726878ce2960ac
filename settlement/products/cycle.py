"""
cycle.py - Timed arbitrage cycles

A cycle locks the stake for a fixed number of days and returns a fixed profit,
independent of price:

    payoff = stake * (1 + profit_rate)

The stake selects a capital tier at open time. The tier's profit rate and
duration are frozen into the position, so later table changes never touch
running cycles.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Sequence, Tuple

from ..core import (
    DEFAULT_ASSET, InvalidStake, LedgerLeg, Position, PositionStatus,
    ProductKind, SettlementReason, Side, freeze_terms, round_amount, to_decimal,
)


@dataclass(frozen=True)
class CycleTier:
    min_stake: Decimal
    max_stake: Decimal
    profit_rate: Decimal
    duration_days: int

    def __post_init__(self):
        object.__setattr__(self, 'min_stake', to_decimal(self.min_stake))
        object.__setattr__(self, 'max_stake', to_decimal(self.max_stake))
        object.__setattr__(self, 'profit_rate', to_decimal(self.profit_rate))
        if self.min_stake > self.max_stake:
            raise ValueError(f"Tier min_stake {self.min_stake} > max_stake {self.max_stake}")
        if self.duration_days <= 0:
            raise ValueError(f"Tier duration_days must be positive, got {self.duration_days}")

    def contains(self, stake: Decimal) -> bool:
        return self.min_stake <= stake <= self.max_stake


DEFAULT_TIERS: Tuple[CycleTier, ...] = (
    CycleTier(Decimal("1000"), Decimal("30000"), Decimal("0.009"), 2),
    CycleTier(Decimal("30001"), Decimal("50000"), Decimal("0.02"), 5),
    CycleTier(Decimal("50001"), Decimal("300000"), Decimal("0.035"), 7),
    CycleTier(Decimal("300001"), Decimal("500000"), Decimal("0.15"), 15),
    CycleTier(Decimal("500001"), Decimal("999999999"), Decimal("0.20"), 30),
)


def select_tier(tiers: Sequence[CycleTier], stake: Decimal) -> CycleTier:
    for tier in tiers:
        if tier.contains(stake):
            return tier
    raise InvalidStake(f"Stake {stake} is outside every arbitrage tier")


def cycle_payoff(stake: Decimal, profit_rate: Decimal) -> Decimal:
    return stake * (Decimal("1") + profit_rate)


class ArbitrageCycleAdapter:
    """Product adapter for timed arbitrage cycles."""

    kind = ProductKind.CYCLE
    uses_outcome_policy = False

    def __init__(self, tiers: Sequence[CycleTier] = DEFAULT_TIERS, asset: str = DEFAULT_ASSET):
        if not tiers:
            raise ValueError("At least one arbitrage tier is required")
        self.tiers = tuple(tiers)
        self.asset = asset

    def create_position(self, position_id: str, user_id: str, instrument: str, stake: Decimal,
                        entry_price: Decimal, entry_time: datetime) -> Position:
        stake = to_decimal(stake)
        if stake <= 0:
            raise InvalidStake(f"Stake must be positive, got {stake}")
        tier = select_tier(self.tiers, stake)
        return Position(
            position_id=position_id,
            user_id=user_id,
            kind=ProductKind.CYCLE,
            instrument=instrument,
            asset=self.asset,
            stake=stake,
            side=Side.NONE,
            entry_price=entry_price,
            entry_time=entry_time,
            expiry_time=entry_time + timedelta(days=tier.duration_days),
            status=PositionStatus.OPEN,
            _frozen_terms=freeze_terms({
                'profit_rate': tier.profit_rate,
                'duration_days': tier.duration_days,
                'tier_min': tier.min_stake,
                'tier_max': tier.max_stake,
            }),
        )

    def opening_legs(self, position: Position) -> List[LedgerLeg]:
        return [LedgerLeg(position.asset, -position.stake, f"arbitrage stake {position.position_id}")]

    def is_expired(self, position: Position, now: datetime) -> bool:
        return now >= position.expiry_time

    def check_liquidation(self, position: Position, price: Decimal, now: datetime) -> bool:
        return False

    def payoff(self, position: Position, exit_price: Decimal, outcome=None,
               reason: SettlementReason = SettlementReason.EXPIRED) -> Decimal:
        return round_amount(position.asset, cycle_payoff(position.stake, position.term('profit_rate')))

    def settlement_legs(self, position: Position, exit_price: Decimal, outcome=None,
                        reason: SettlementReason = SettlementReason.EXPIRED) -> List[LedgerLeg]:
        amount = self.payoff(position, exit_price, outcome, reason)
        return [LedgerLeg(position.asset, amount, f"arbitrage payout {position.position_id}")]

    def outcome_label(self, position: Position, exit_price: Decimal, outcome=None,
                      reason: SettlementReason = SettlementReason.EXPIRED) -> str:
        return "completed"

    def unrealized_pnl(self, position: Position, price: Decimal, now: datetime) -> Decimal:
        """Profit accrued so far, linear over the cycle."""
        total = (position.expiry_time - position.entry_time).total_seconds()
        elapsed = min(max((now - position.entry_time).total_seconds(), 0), total)
        fraction = Decimal(str(elapsed)) / Decimal(str(total))
        return round_amount(position.asset, position.stake * position.term('profit_rate') * fraction)
