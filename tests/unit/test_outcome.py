"""
test_outcome.py - Unit tests for outcome policies

Tests:
- Natural comparison, including ties
- Global override modes and their precedence below per-position results
- Cosmetic exit price adjustment
- Mode parsing and immutability of the policy value
"""

import pytest
from dataclasses import FrozenInstanceError, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from settlement import (
    NaturalOutcomePolicy, OutcomeMode, OverrideOutcomePolicy, Position, ProductKind, Side,
    natural_outcome,
)

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)
ENTRY = Decimal("94500")


def binary(side=Side.UP, forced_result=None):
    return Position(
        position_id="b1", user_id="alice", kind=ProductKind.BINARY, instrument="BTC/USDT",
        asset="USDT", stake=Decimal("1000"), side=side, entry_price=ENTRY, entry_time=T0,
        expiry_time=T0 + timedelta(seconds=60), forced_result=forced_result,
    )


class TestNaturalOutcome:

    @pytest.mark.parametrize("side,exit_price,won", [
        (Side.UP, Decimal("94501"), True),
        (Side.UP, Decimal("94499"), False),
        (Side.DOWN, Decimal("94499"), True),
        (Side.DOWN, Decimal("94501"), False),
    ])
    def test_comparison(self, side, exit_price, won):
        assert natural_outcome(side, ENTRY, exit_price) is won

    def test_tie_loses_for_up_and_wins_for_down(self):
        assert natural_outcome(Side.UP, ENTRY, ENTRY) is False
        assert natural_outcome(Side.DOWN, ENTRY, ENTRY) is True

    def test_non_binary_side_rejected(self):
        with pytest.raises(ValueError):
            natural_outcome(Side.LONG, ENTRY, ENTRY)

    def test_natural_policy_ignores_forced_result(self):
        outcome = NaturalOutcomePolicy().decide(binary(forced_result="win"), Decimal("90000"))
        assert outcome.won is False
        assert outcome.forced is False


class TestOverridePolicy:

    def test_auto_is_natural(self):
        outcome = OverrideOutcomePolicy().decide(binary(), Decimal("95000"))
        assert outcome.won is True
        assert outcome.exit_price == Decimal("95000")
        assert not outcome.forced

    @pytest.mark.parametrize("side", [Side.UP, Side.DOWN])
    @pytest.mark.parametrize("exit_price", [Decimal("90000"), ENTRY, Decimal("99000")])
    def test_force_win_always_wins(self, side, exit_price):
        outcome = OverrideOutcomePolicy(OutcomeMode.FORCE_WIN).decide(binary(side), exit_price)
        assert outcome.won is True
        assert outcome.forced is True
        assert natural_outcome(side, ENTRY, outcome.exit_price) is True

    @pytest.mark.parametrize("side", [Side.UP, Side.DOWN])
    @pytest.mark.parametrize("exit_price", [Decimal("90000"), ENTRY, Decimal("99000")])
    def test_force_lose_always_loses(self, side, exit_price):
        outcome = OverrideOutcomePolicy(OutcomeMode.FORCE_LOSE).decide(binary(side), exit_price)
        assert outcome.won is False
        assert natural_outcome(side, ENTRY, outcome.exit_price) is False

    def test_cosmetic_price_only_when_contradicting(self):
        policy = OverrideOutcomePolicy(OutcomeMode.FORCE_WIN)
        agreeing = policy.decide(binary(Side.UP), Decimal("96000"))
        assert agreeing.exit_price == Decimal("96000")
        contradicting = policy.decide(binary(Side.UP), Decimal("90000"))
        assert contradicting.exit_price == Decimal("94547.25")

    def test_cosmetic_price_for_down_loss(self):
        policy = OverrideOutcomePolicy(OutcomeMode.FORCE_LOSE, price_adjustment=Decimal("0.001"))
        outcome = policy.decide(binary(Side.DOWN), Decimal("90000"))
        assert outcome.exit_price == Decimal("94594.5")

    def test_per_position_result_beats_global_mode(self):
        policy = OverrideOutcomePolicy(OutcomeMode.FORCE_WIN)
        outcome = policy.decide(binary(forced_result="lose"), Decimal("99000"))
        assert outcome.won is False
        assert outcome.forced is True

    def test_per_position_result_applies_in_auto(self):
        outcome = OverrideOutcomePolicy().decide(binary(forced_result="win"), Decimal("90000"))
        assert outcome.won is True


class TestPolicyValue:

    def test_with_mode_returns_new_policy(self):
        policy = OverrideOutcomePolicy()
        forced = policy.with_mode("forceWin")
        assert policy.mode == OutcomeMode.AUTO
        assert forced.mode == OutcomeMode.FORCE_WIN

    def test_policy_is_frozen(self):
        with pytest.raises(FrozenInstanceError):
            OverrideOutcomePolicy().mode = OutcomeMode.FORCE_LOSE

    @pytest.mark.parametrize("raw,mode", [
        ("auto", OutcomeMode.AUTO),
        ("forceWin", OutcomeMode.FORCE_WIN),
        ("force_lose", OutcomeMode.FORCE_LOSE),
        ("FORCE_WIN", OutcomeMode.FORCE_WIN),
        (OutcomeMode.FORCE_LOSE, OutcomeMode.FORCE_LOSE),
    ])
    def test_parse(self, raw, mode):
        assert OutcomeMode.parse(raw) == mode

    def test_parse_unknown(self):
        with pytest.raises(ValueError):
            OutcomeMode.parse("rigged")

    def test_adjustment_bounds(self):
        with pytest.raises(ValueError):
            OverrideOutcomePolicy(price_adjustment=Decimal("0"))
