"""
outcome.py - Win/lose decision for binary-style positions

The natural outcome compares exit against entry:

    won = (side == UP) == (exit_price > entry_price)

so an unchanged price loses for UP and wins for DOWN.

OverrideOutcomePolicy layers operator control on top, in precedence order:
    1. A per-position forced result ("win"/"lose")
    2. The global mode (AUTO, FORCE_WIN, FORCE_LOSE)
    3. The natural comparison

The policy is an immutable value. The engine owns the current mode and swaps
in policy.with_mode(new_mode) when an operator changes it; the policy never
reads ambient state.

When a forced outcome contradicts the natural comparison, the reported exit
price is moved to entry * (1 +/- price_adjustment) on the side that matches
the forced outcome, so displayed entry/exit prices stay consistent.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Protocol, Union

from .core import FORCED_WIN, Position, Side, to_decimal

DEFAULT_PRICE_ADJUSTMENT = Decimal("0.0005")
EXIT_PRICE_PLACES = Decimal("1e-8")


class OutcomeMode(Enum):
    """Process-wide operator control for binary outcomes."""
    AUTO = "auto"
    FORCE_WIN = "forceWin"
    FORCE_LOSE = "forceLose"

    @classmethod
    def parse(cls, value: Union['OutcomeMode', str]) -> 'OutcomeMode':
        """Accept an enum member, its value ("forceWin") or its name ("FORCE_WIN", "force_win")."""
        if isinstance(value, cls):
            return value
        for mode in cls:
            if value == mode.value or str(value).upper() == mode.name:
                return mode
        raise ValueError(f"Unknown outcome mode: {value!r}")


@dataclass(frozen=True, slots=True)
class Outcome:
    """
    Decision for one binary position.

    Attributes:
        won: Whether the position pays out.
        exit_price: Price to report (the captured price unless cosmetically adjusted).
        forced: True when an operator override decided the result.
    """
    won: bool
    exit_price: Decimal
    forced: bool = False


def natural_outcome(side: Side, entry_price: Decimal, exit_price: Decimal) -> bool:
    """Natural binary comparison. Ties follow the formula: a loss for UP, a win for DOWN."""
    if side not in (Side.UP, Side.DOWN):
        raise ValueError(f"Binary outcome needs side UP or DOWN, got {side}")
    return (side == Side.UP) == (exit_price > entry_price)


class OutcomePolicy(Protocol):
    def decide(self, position: Position, exit_price: Decimal) -> Outcome:
        ...


class NaturalOutcomePolicy:
    """Price comparison only. Ignores per-position forced results."""

    def decide(self, position: Position, exit_price: Decimal) -> Outcome:
        return Outcome(natural_outcome(position.side, position.entry_price, exit_price), exit_price)


@dataclass(frozen=True)
class OverrideOutcomePolicy:
    """
    Natural comparison with operator overrides.

    Example:
        policy = OverrideOutcomePolicy(OutcomeMode.FORCE_WIN)
        policy.decide(position, exit_price).won  # True
        policy = policy.with_mode(OutcomeMode.AUTO)
    """
    mode: OutcomeMode = OutcomeMode.AUTO
    price_adjustment: Decimal = DEFAULT_PRICE_ADJUSTMENT

    def __post_init__(self):
        object.__setattr__(self, 'mode', OutcomeMode.parse(self.mode))
        adjustment = to_decimal(self.price_adjustment)
        if not (Decimal("0") < adjustment < Decimal("1")):
            raise ValueError(f"price_adjustment must be in (0, 1), got {adjustment}")
        object.__setattr__(self, 'price_adjustment', adjustment)

    def with_mode(self, mode: Union[OutcomeMode, str]) -> 'OverrideOutcomePolicy':
        return replace(self, mode=OutcomeMode.parse(mode))

    def decide(self, position: Position, exit_price: Decimal) -> Outcome:
        natural = natural_outcome(position.side, position.entry_price, exit_price)
        if position.forced_result is not None:
            won = position.forced_result == FORCED_WIN
        elif self.mode == OutcomeMode.FORCE_WIN:
            won = True
        elif self.mode == OutcomeMode.FORCE_LOSE:
            won = False
        else:
            return Outcome(natural, exit_price, forced=False)

        if won != natural:
            exit_price = self.cosmetic_exit_price(position, won)
        return Outcome(won, exit_price, forced=True)

    def cosmetic_exit_price(self, position: Position, won: bool) -> Decimal:
        """Exit price just beyond entry on the side consistent with the given result."""
        above = (position.side == Side.UP) == won
        factor = Decimal("1") + self.price_adjustment if above else Decimal("1") - self.price_adjustment
        return (position.entry_price * factor).quantize(EXIT_PRICE_PLACES)
