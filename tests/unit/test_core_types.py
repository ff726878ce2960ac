"""
test_core_types.py - Unit tests for core data types and helpers

Tests:
- Position construction-time validation
- Frozen terms and the terms property
- Storage shape (to_dict/from_dict) for positions and history entries
- LedgerLeg validation
- Decimal helpers (to_decimal, round_amount)
"""

import pytest
from dataclasses import FrozenInstanceError, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from settlement import (
    HistoryEntry, InvalidPosition, LedgerLeg, Position, PositionStatus, ProductKind,
    SettlementReason, SettlementResult, Side, round_amount, to_decimal,
)
from settlement.core import freeze_terms


T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


def make_position(**overrides):
    fields = dict(
        position_id="binary_1",
        user_id="alice",
        kind=ProductKind.BINARY,
        instrument="BTC/USDT",
        asset="USDT",
        stake=Decimal("1000"),
        side=Side.UP,
        entry_price=Decimal("94500"),
        entry_time=T0,
        expiry_time=T0 + timedelta(seconds=60),
        _frozen_terms=freeze_terms({'payout_rate': Decimal("0.85"), 'duration_seconds': 60}),
    )
    fields.update(overrides)
    return Position(**fields)


def make_result(**overrides):
    fields = dict(
        reason=SettlementReason.EXPIRED,
        outcome="win",
        won=True,
        exit_price=Decimal("94600"),
        settled_amount=Decimal("1850.00"),
        realized_pnl=Decimal("850.00"),
        settled_at=T0 + timedelta(seconds=60),
    )
    fields.update(overrides)
    return SettlementResult(**fields)


# ============================================================================
# POSITION VALIDATION
# ============================================================================

class TestPositionValidation:

    def test_valid_position(self):
        pos = make_position()
        assert pos.status == PositionStatus.OPEN
        assert pos.stake == Decimal("1000")
        assert not pos.is_terminal

    def test_zero_stake_rejected(self):
        with pytest.raises(InvalidPosition, match="stake"):
            make_position(stake=Decimal("0"))

    def test_negative_stake_rejected(self):
        with pytest.raises(InvalidPosition, match="stake"):
            make_position(stake=Decimal("-5"))

    def test_expiry_equal_to_entry_rejected(self):
        with pytest.raises(InvalidPosition, match="expiry_time"):
            make_position(expiry_time=T0)

    def test_expiry_before_entry_rejected(self):
        with pytest.raises(InvalidPosition, match="expiry_time"):
            make_position(expiry_time=T0 - timedelta(seconds=1))

    def test_no_expiry_allowed_for_futures(self):
        pos = make_position(kind=ProductKind.FUTURES, side=Side.LONG, expiry_time=None)
        assert pos.expiry_time is None

    def test_non_positive_entry_price_rejected(self):
        with pytest.raises(InvalidPosition, match="entry_price"):
            make_position(entry_price=Decimal("0"))

    def test_empty_ids_rejected(self):
        with pytest.raises(InvalidPosition):
            make_position(position_id="  ")
        with pytest.raises(InvalidPosition):
            make_position(user_id="")

    @pytest.mark.parametrize("status", [PositionStatus.EXPIRED, PositionStatus.SETTLED])
    def test_decided_status_requires_result(self, status):
        with pytest.raises(InvalidPosition, match="result"):
            make_position(status=status)

    def test_bad_forced_result_rejected(self):
        with pytest.raises(InvalidPosition, match="forced_result"):
            make_position(forced_result="draw")

    def test_naive_times_become_utc(self):
        pos = make_position(entry_time=datetime(2025, 1, 1),
                            expiry_time=datetime(2025, 1, 1, 0, 1))
        assert pos.entry_time.tzinfo == timezone.utc
        assert pos.expiry_time == T0 + timedelta(seconds=60)

    def test_numeric_inputs_converted_to_decimal(self):
        pos = make_position(stake=1000, entry_price=94500.5)
        assert pos.stake == Decimal("1000")
        assert pos.entry_price == Decimal("94500.5")


class TestPositionImmutability:

    def test_cannot_assign_fields(self):
        pos = make_position()
        with pytest.raises(FrozenInstanceError):
            pos.stake = Decimal("1")

    def test_terms_returns_copy(self):
        pos = make_position()
        terms = pos.terms
        terms['payout_rate'] = Decimal("5")
        assert pos.term('payout_rate') == Decimal("0.85")

    def test_replace_produces_new_instance(self):
        pos = make_position()
        active = replace(pos, status=PositionStatus.ACTIVE)
        assert pos.status == PositionStatus.OPEN
        assert active.status == PositionStatus.ACTIVE


# ============================================================================
# STORAGE SHAPE
# ============================================================================

class TestSerialization:

    def test_position_round_trip_preserves_terms_types(self):
        pos = replace(make_position(), status=PositionStatus.ACTIVE, forced_result="win")
        restored = Position.from_dict(pos.to_dict())
        assert restored == pos
        assert isinstance(restored.term('payout_rate'), Decimal)
        assert isinstance(restored.term('duration_seconds'), int)

    def test_position_dict_is_json_safe(self):
        data = make_position().to_dict()
        assert data['stake'] == "1000"
        assert data['kind'] == "binary"
        assert data['terms']['payout_rate'] == "D:0.85"
        assert data['terms']['duration_seconds'] == "N:60"

    def test_history_entry_round_trip(self):
        settled = replace(make_position(), status=PositionStatus.SETTLED, result=make_result())
        entry = HistoryEntry("binary_1", "alice", settled,
                             (LedgerLeg("USDT", Decimal("1850.00"), "payout"),), settled.result.settled_at)
        restored = HistoryEntry.from_dict(entry.to_dict())
        assert restored == entry
        assert restored.result.settled_amount == Decimal("1850.00")

    def test_history_entry_requires_settled_position(self):
        with pytest.raises(InvalidPosition):
            HistoryEntry("binary_1", "alice", make_position(), (), T0)


# ============================================================================
# LEGS AND DECIMALS
# ============================================================================

class TestLedgerLeg:

    def test_zero_amount_allowed(self):
        leg = LedgerLeg("USDT", Decimal("0"))
        assert leg.amount == 0
        assert not leg.is_debit

    def test_amount_converted(self):
        assert LedgerLeg("USDT", "12.5").amount == Decimal("12.5")

    def test_empty_asset_rejected(self):
        with pytest.raises(ValueError):
            LedgerLeg(" ", Decimal("1"))


class TestDecimalHelpers:

    def test_to_decimal_avoids_float_noise(self):
        assert to_decimal(0.1) == Decimal("0.1")

    def test_to_decimal_rejects_non_finite(self):
        with pytest.raises(ValueError):
            to_decimal(float("inf"))
        with pytest.raises(ValueError):
            to_decimal("NaN")

    def test_cash_rounds_half_even_to_cents(self):
        assert round_amount("USDT", Decimal("1.005")) == Decimal("1.00")
        assert round_amount("USDT", Decimal("1.015")) == Decimal("1.02")

    def test_crypto_rounds_down_to_eight_places(self):
        assert round_amount("BTC", Decimal("0.123456789")) == Decimal("0.12345678")
