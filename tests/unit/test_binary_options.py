"""
test_binary_options.py - Unit tests for the binary option adapter

Tests:
- Position construction (stake checks, durations, sides)
- Capital-tiered levels fixing payout rate and duration
- Expiry rule
- Payoff and ledger legs for wins and losses
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from settlement import BinaryOptionAdapter, InvalidStake, Outcome, SettlementReason, Side
from settlement.products import DEFAULT_LEVELS, binary_payoff, select_level

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)
ENTRY = Decimal("94500")


def create(adapter, stake="1000", side=Side.UP, duration=None):
    return adapter.create_position("b1", "alice", "BTC/USDT", Decimal(stake), side, ENTRY, T0,
                                   duration=duration)


class TestCreatePosition:

    def test_default_terms(self):
        pos = create(BinaryOptionAdapter())
        assert pos.term('payout_rate') == Decimal("0.85")
        assert pos.term('duration_seconds') == 60
        assert pos.expiry_time == T0 + timedelta(seconds=60)
        assert pos.asset == "USDT"

    @pytest.mark.parametrize("duration", [30, 60, 120, 300])
    def test_offered_durations(self, duration):
        pos = create(BinaryOptionAdapter(), duration=duration)
        assert pos.expiry_time - pos.entry_time == timedelta(seconds=duration)

    def test_unoffered_duration_rejected(self):
        with pytest.raises(ValueError):
            create(BinaryOptionAdapter(), duration=45)

    @pytest.mark.parametrize("stake", ["0", "-10", "9.99"])
    def test_bad_stakes_rejected(self, stake):
        with pytest.raises(InvalidStake):
            create(BinaryOptionAdapter(), stake=stake)

    def test_futures_side_rejected(self):
        with pytest.raises(ValueError):
            create(BinaryOptionAdapter(), side=Side.LONG)


class TestLevels:

    @pytest.mark.parametrize("stake,level,rate,duration", [
        ("100", 1, Decimal("0.18"), 180),
        ("20000", 2, Decimal("0.23"), 360),
        ("30001", 3, Decimal("0.335"), 720),
        ("100000", 4, Decimal("0.50"), 1080),
        ("300000", 5, Decimal("1.00"), 3600),
    ])
    def test_stake_selects_level(self, stake, level, rate, duration):
        pos = create(BinaryOptionAdapter(levels=DEFAULT_LEVELS), stake=stake)
        assert pos.term('level') == level
        assert pos.term('payout_rate') == rate
        assert pos.term('duration_seconds') == duration

    def test_stake_outside_levels(self):
        with pytest.raises(InvalidStake):
            select_level(DEFAULT_LEVELS, Decimal("300001"))
        with pytest.raises(InvalidStake):
            create(BinaryOptionAdapter(levels=DEFAULT_LEVELS), stake="50")

    def test_level_fixes_duration(self):
        with pytest.raises(ValueError):
            create(BinaryOptionAdapter(levels=DEFAULT_LEVELS), stake="100", duration=60)


class TestSettlementMath:

    def test_expiry(self):
        adapter = BinaryOptionAdapter()
        pos = create(adapter)
        assert not adapter.is_expired(pos, T0 + timedelta(seconds=59))
        assert adapter.is_expired(pos, T0 + timedelta(seconds=60))

    def test_never_liquidates(self):
        adapter = BinaryOptionAdapter()
        assert not adapter.check_liquidation(create(adapter), Decimal("1"), T0)

    def test_win_pays_stake_times_one_plus_rate(self):
        adapter = BinaryOptionAdapter()
        pos = create(adapter)
        outcome = Outcome(True, Decimal("94600"))
        assert adapter.payoff(pos, Decimal("94600"), outcome) == Decimal("1850.00")
        legs = adapter.settlement_legs(pos, Decimal("94600"), outcome, SettlementReason.EXPIRED)
        assert [leg.amount for leg in legs] == [Decimal("1850.00")]
        assert adapter.outcome_label(pos, Decimal("94600"), outcome) == "win"

    def test_loss_pays_zero_with_single_zero_leg(self):
        adapter = BinaryOptionAdapter()
        pos = create(adapter)
        outcome = Outcome(False, Decimal("94500"))
        legs = adapter.settlement_legs(pos, Decimal("94500"), outcome)
        assert len(legs) == 1
        assert legs[0].amount == Decimal("0")
        assert adapter.outcome_label(pos, Decimal("94500"), outcome) == "lose"

    def test_opening_leg_debits_stake(self):
        adapter = BinaryOptionAdapter()
        legs = adapter.opening_legs(create(adapter))
        assert [(leg.asset, leg.amount) for leg in legs] == [("USDT", Decimal("-1000"))]

    def test_outcome_overrides_price(self):
        adapter = BinaryOptionAdapter()
        pos = create(adapter)
        assert adapter.payoff(pos, Decimal("90000"), Outcome(True, Decimal("94547.25"))) == Decimal("1850.00")

    def test_binary_payoff_formula(self):
        assert binary_payoff(Decimal("200"), Decimal("0.5"), True) == Decimal("300")
        assert binary_payoff(Decimal("200"), Decimal("0.5"), False) == Decimal("0")

    def test_unrealized_pnl(self):
        adapter = BinaryOptionAdapter()
        pos = create(adapter)
        assert adapter.unrealized_pnl(pos, Decimal("95000"), T0) == Decimal("850.00")
        assert adapter.unrealized_pnl(pos, Decimal("94000"), T0) == Decimal("-1000")
