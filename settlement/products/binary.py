"""
binary.py - Fixed-time binary options

A binary option bets that the instrument finishes above (UP) or below (DOWN)
its entry price when the countdown ends.

    expiry:   entry_time + duration
    outcome:  decided by the engine's outcome policy (natural comparison by default)
    payoff:   stake * (1 + payout_rate) if won, else 0

Two term regimes:
    - Fixed: one payout rate and a menu of allowed durations
    - Levels: the stake selects a capital tier, which fixes both payout rate
      and duration at open time
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from ..core import (
    DEFAULT_ASSET, InvalidStake, LedgerLeg, Position, PositionStatus, ProductKind,
    SettlementReason, Side, freeze_terms, round_amount, to_decimal,
)
from ..outcome import Outcome, natural_outcome

DEFAULT_PAYOUT_RATE = Decimal("0.85")
DEFAULT_DURATIONS = (30, 60, 120, 300)
DEFAULT_DURATION = 60
DEFAULT_MIN_STAKE = Decimal("10")


@dataclass(frozen=True)
class BinaryLevel:
    """Capital tier for binary options: stake range, payout rate and duration."""
    level: int
    min_stake: Decimal
    max_stake: Decimal
    payout_rate: Decimal
    duration_seconds: int

    def __post_init__(self):
        object.__setattr__(self, 'min_stake', to_decimal(self.min_stake))
        object.__setattr__(self, 'max_stake', to_decimal(self.max_stake))
        object.__setattr__(self, 'payout_rate', to_decimal(self.payout_rate))
        if self.min_stake > self.max_stake:
            raise ValueError(f"Level {self.level}: min_stake {self.min_stake} > max_stake {self.max_stake}")
        if self.payout_rate <= 0:
            raise ValueError(f"Level {self.level}: payout_rate must be positive")
        if self.duration_seconds <= 0:
            raise ValueError(f"Level {self.level}: duration_seconds must be positive")

    def contains(self, stake: Decimal) -> bool:
        return self.min_stake <= stake <= self.max_stake


DEFAULT_LEVELS: Tuple[BinaryLevel, ...] = (
    BinaryLevel(1, Decimal("100"), Decimal("19999"), Decimal("0.18"), 180),
    BinaryLevel(2, Decimal("20000"), Decimal("30000"), Decimal("0.23"), 360),
    BinaryLevel(3, Decimal("30001"), Decimal("50000"), Decimal("0.335"), 720),
    BinaryLevel(4, Decimal("50001"), Decimal("100000"), Decimal("0.50"), 1080),
    BinaryLevel(5, Decimal("100001"), Decimal("300000"), Decimal("1.00"), 3600),
)


def select_level(levels: Sequence[BinaryLevel], stake: Decimal) -> BinaryLevel:
    """Return the level whose stake range contains stake, or raise InvalidStake."""
    for level in levels:
        if level.contains(stake):
            return level
    raise InvalidStake(f"Stake {stake} is outside every binary option level")


def binary_payoff(stake: Decimal, payout_rate: Decimal, won: bool) -> Decimal:
    """stake * (1 + payout_rate) on a win, zero on a loss."""
    return stake * (Decimal("1") + payout_rate) if won else Decimal("0")


class BinaryOptionAdapter:
    """Product adapter for binary options."""

    kind = ProductKind.BINARY
    uses_outcome_policy = True

    def __init__(
        self,
        payout_rate=DEFAULT_PAYOUT_RATE,
        durations: Sequence[int] = DEFAULT_DURATIONS,
        default_duration: int = DEFAULT_DURATION,
        min_stake=DEFAULT_MIN_STAKE,
        levels: Optional[Sequence[BinaryLevel]] = None,
        asset: str = DEFAULT_ASSET,
    ):
        self.payout_rate = to_decimal(payout_rate)
        self.durations = tuple(sorted(durations))
        self.default_duration = default_duration
        self.min_stake = to_decimal(min_stake)
        self.levels = tuple(levels) if levels else ()
        self.asset = asset
        if self.payout_rate <= 0:
            raise ValueError(f"payout_rate must be positive, got {self.payout_rate}")
        if default_duration not in self.durations:
            raise ValueError(f"default_duration {default_duration} not in {self.durations}")

    def create_position(
        self,
        position_id: str,
        user_id: str,
        instrument: str,
        stake: Decimal,
        side: Side,
        entry_price: Decimal,
        entry_time: datetime,
        duration: Optional[int] = None,
    ) -> Position:
        """
        Build an OPEN binary position.

        Raises:
            InvalidStake: Stake not positive, below the minimum, or outside every level
            ValueError: Side is not UP/DOWN, or the duration is not offered
        """
        stake = to_decimal(stake)
        if stake <= 0:
            raise InvalidStake(f"Stake must be positive, got {stake}")
        if stake < self.min_stake:
            raise InvalidStake(f"Stake {stake} is below the minimum {self.min_stake}")
        if side not in (Side.UP, Side.DOWN):
            raise ValueError(f"Binary option side must be UP or DOWN, got {side}")

        terms = {}
        if self.levels:
            level = select_level(self.levels, stake)
            if duration is not None and duration != level.duration_seconds:
                raise ValueError(f"Level {level.level} fixes duration at {level.duration_seconds}s")
            payout_rate = level.payout_rate
            duration = level.duration_seconds
            terms['level'] = level.level
        else:
            duration = self.default_duration if duration is None else duration
            if duration not in self.durations:
                raise ValueError(f"Duration {duration}s not offered; choose from {self.durations}")
            payout_rate = self.payout_rate
        terms['payout_rate'] = payout_rate
        terms['duration_seconds'] = duration

        return Position(
            position_id=position_id,
            user_id=user_id,
            kind=ProductKind.BINARY,
            instrument=instrument,
            asset=self.asset,
            stake=stake,
            side=side,
            entry_price=entry_price,
            entry_time=entry_time,
            expiry_time=entry_time + timedelta(seconds=duration),
            status=PositionStatus.OPEN,
            _frozen_terms=freeze_terms(terms),
        )

    # ========================================================================
    # ADAPTER PROTOCOL
    # ========================================================================

    def opening_legs(self, position: Position) -> List[LedgerLeg]:
        return [LedgerLeg(position.asset, -position.stake, f"binary stake {position.position_id}")]

    def is_expired(self, position: Position, now: datetime) -> bool:
        return now >= position.expiry_time

    def check_liquidation(self, position: Position, price: Decimal, now: datetime) -> bool:
        return False

    def payoff(self, position: Position, exit_price: Decimal, outcome: Optional[Outcome] = None,
               reason: SettlementReason = SettlementReason.EXPIRED) -> Decimal:
        won = self._won(position, exit_price, outcome)
        amount = binary_payoff(position.stake, position.term('payout_rate'), won)
        return round_amount(position.asset, amount)

    def settlement_legs(self, position: Position, exit_price: Decimal, outcome: Optional[Outcome] = None,
                        reason: SettlementReason = SettlementReason.EXPIRED) -> List[LedgerLeg]:
        amount = self.payoff(position, exit_price, outcome, reason)
        return [LedgerLeg(position.asset, amount, f"binary payout {position.position_id}")]

    def outcome_label(self, position: Position, exit_price: Decimal, outcome: Optional[Outcome] = None,
                      reason: SettlementReason = SettlementReason.EXPIRED) -> str:
        return "win" if self._won(position, exit_price, outcome) else "lose"

    def unrealized_pnl(self, position: Position, price: Decimal, now: datetime) -> Decimal:
        """What settling right now at the natural outcome would realize."""
        won = natural_outcome(position.side, position.entry_price, price)
        return self.payoff(position, price, Outcome(won, price)) - position.stake

    @staticmethod
    def _won(position: Position, exit_price: Decimal, outcome: Optional[Outcome]) -> bool:
        if outcome is not None:
            return outcome.won
        return natural_outcome(position.side, position.entry_price, exit_price)
