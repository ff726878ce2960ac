"""
loan.py - Collateralized borrowing and fixed-term lending

=== BORROW ===

The user locks crypto collateral and draws a stablecoin principal:

    max_borrow       = collateral * price * ltv
    total_repayment  = principal * (1 + rate(term))
    liquidation_price = (total_repayment / collateral) / ltv

Interest accrues linearly over the term and is capped at the full-term amount.
Every tick the engine checks

    collateral * price * ltv < principal + accrued_interest

and liquidates when it holds: the collateral is seized and nothing more is
owed. Repaying debits total_repayment and returns the collateral. A borrow
that reaches its due date unrepaid defaults, with the same effect as a
liquidation.

Example: 1 BTC at 94,500 with LTV 0.65 allows 61,425 USDT; a 7-day term at
5% owes 64,496.25; the liquidation price is 99,225.00.

=== LEND ===

The user deposits principal for a fixed term at an annual rate:

    at maturity:       principal * (1 + apy * days / 365)
    early withdrawal:  principal (all interest forfeited)
"""

from __future__ import annotations
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Mapping, Optional

from ..core import (
    DAYS_PER_YEAR, DEFAULT_ASSET, SECONDS_PER_DAY, InvalidOperation, InvalidStake, LedgerLeg,
    Position, PositionStatus, ProductKind, SettlementReason, Side, freeze_terms, round_amount,
    to_decimal,
)

DEFAULT_LTV = Decimal("0.65")
DEFAULT_COLLATERAL_ASSET = "BTC"

# Term in days -> flat interest for the whole term.
DEFAULT_BORROW_RATES: Dict[int, Decimal] = {
    7: Decimal("0.05"),
    14: Decimal("0.09"),
    30: Decimal("0.18"),
}

# Term in days -> annual percentage yield.
DEFAULT_LEND_APYS: Dict[int, Decimal] = {
    7: Decimal("0.05"),
    30: Decimal("0.08"),
    90: Decimal("0.12"),
    180: Decimal("0.15"),
}


# ============================================================================
# PURE FORMULAS
# ============================================================================

def max_borrow(collateral: Decimal, price: Decimal, ltv: Decimal) -> Decimal:
    return collateral * price * ltv


def total_repayment(principal: Decimal, rate: Decimal) -> Decimal:
    return principal * (Decimal("1") + rate)


def liquidation_price(principal: Decimal, rate: Decimal, collateral: Decimal, ltv: Decimal) -> Decimal:
    """
    Collateral price at which a fully accrued loan is exactly covered.

    The liquidation check is strict, so a fully accrued loan is liquidated at
    any price below this one but not at it. A non-strict check would liquidate
    a borrow opened at the maximum LTV on its first evaluation.
    """
    return (total_repayment(principal, rate) / collateral) / ltv


def accrued_interest(principal: Decimal, rate: Decimal, entry_time: datetime, now: datetime,
                     term_days: int) -> Decimal:
    """Linear accrual of the full-term interest, capped at the full amount."""
    elapsed = Decimal(str(max((now - entry_time).total_seconds(), 0)))
    term = Decimal(term_days * SECONDS_PER_DAY)
    fraction = min(elapsed / term, Decimal("1"))
    return principal * rate * fraction


def is_undercollateralized(collateral: Decimal, price: Decimal, ltv: Decimal, principal: Decimal,
                           accrued: Decimal) -> bool:
    return collateral * price * ltv < principal + accrued


def lend_maturity_amount(principal: Decimal, apy: Decimal, term_days: int) -> Decimal:
    return principal * (Decimal("1") + apy * Decimal(term_days) / DAYS_PER_YEAR)


# ============================================================================
# ADAPTER
# ============================================================================

class CollateralizedLoanAdapter:
    """Product adapter for borrow and lend positions."""

    kind = ProductKind.LOAN
    uses_outcome_policy = False

    def __init__(
        self,
        ltv=DEFAULT_LTV,
        borrow_rates: Optional[Mapping[int, Decimal]] = None,
        lend_apys: Optional[Mapping[int, Decimal]] = None,
        asset: str = DEFAULT_ASSET,
    ):
        self.ltv = to_decimal(ltv)
        if not (Decimal("0") < self.ltv < Decimal("1")):
            raise ValueError(f"ltv must be in (0, 1), got {self.ltv}")
        self.borrow_rates = {int(k): to_decimal(v) for k, v in (borrow_rates or DEFAULT_BORROW_RATES).items()}
        self.lend_apys = {int(k): to_decimal(v) for k, v in (lend_apys or DEFAULT_LEND_APYS).items()}
        self.asset = asset

    def create_borrow(
        self,
        position_id: str,
        user_id: str,
        collateral_asset: str,
        collateral: Decimal,
        principal: Decimal,
        term_days: int,
        collateral_price: Decimal,
        entry_time: datetime,
    ) -> Position:
        """
        Build an OPEN borrow position.

        Raises:
            InvalidStake: Non-positive amounts, an unknown term, or a principal above max_borrow
        """
        collateral = to_decimal(collateral)
        principal = to_decimal(principal)
        if collateral <= 0:
            raise InvalidStake(f"Collateral must be positive, got {collateral}")
        if principal <= 0:
            raise InvalidStake(f"Principal must be positive, got {principal}")
        if term_days not in self.borrow_rates:
            raise InvalidStake(f"No borrow rate for a {term_days}-day term; offered: {sorted(self.borrow_rates)}")
        limit = max_borrow(collateral, collateral_price, self.ltv)
        if principal > limit:
            raise InvalidStake(f"Principal {principal} exceeds max borrow {limit}")

        return Position(
            position_id=position_id,
            user_id=user_id,
            kind=ProductKind.LOAN,
            instrument=f"{collateral_asset}/{self.asset}",
            asset=collateral_asset,
            stake=collateral,
            side=Side.BORROW,
            entry_price=collateral_price,
            entry_time=entry_time,
            expiry_time=entry_time + timedelta(days=term_days),
            status=PositionStatus.OPEN,
            _frozen_terms=freeze_terms({
                'principal': round_amount(self.asset, principal),
                'borrow_asset': self.asset,
                'interest_rate': self.borrow_rates[term_days],
                'term_days': term_days,
                'ltv': self.ltv,
            }),
        )

    def create_lend(self, position_id: str, user_id: str, principal: Decimal, term_days: int,
                    entry_time: datetime) -> Position:
        principal = to_decimal(principal)
        if principal <= 0:
            raise InvalidStake(f"Principal must be positive, got {principal}")
        if term_days not in self.lend_apys:
            raise InvalidStake(f"No lending APY for a {term_days}-day term; offered: {sorted(self.lend_apys)}")
        return Position(
            position_id=position_id,
            user_id=user_id,
            kind=ProductKind.LOAN,
            instrument=self.asset,
            asset=self.asset,
            stake=principal,
            side=Side.LEND,
            entry_price=Decimal("1"),
            entry_time=entry_time,
            expiry_time=entry_time + timedelta(days=term_days),
            status=PositionStatus.OPEN,
            _frozen_terms=freeze_terms({'apy': self.lend_apys[term_days], 'term_days': term_days}),
        )

    # ========================================================================
    # ADAPTER PROTOCOL
    # ========================================================================

    def opening_legs(self, position: Position) -> List[LedgerLeg]:
        if position.side == Side.BORROW:
            return [
                LedgerLeg(position.asset, -position.stake, f"loan collateral {position.position_id}"),
                LedgerLeg(position.term('borrow_asset'), position.term('principal'),
                          f"loan principal {position.position_id}"),
            ]
        return [LedgerLeg(position.asset, -position.stake, f"lending deposit {position.position_id}")]

    def is_expired(self, position: Position, now: datetime) -> bool:
        return now >= position.expiry_time

    def check_liquidation(self, position: Position, price: Decimal, now: datetime) -> bool:
        if position.side != Side.BORROW:
            return False
        accrued = self.accrued_interest(position, now)
        return is_undercollateralized(position.stake, price, position.term('ltv'),
                                      position.term('principal'), accrued)

    def payoff(self, position: Position, exit_price: Decimal, outcome=None,
               reason: SettlementReason = SettlementReason.EXPIRED) -> Decimal:
        if position.side == Side.BORROW:
            return position.stake if reason == SettlementReason.REPAID else Decimal("0")
        if reason == SettlementReason.WITHDRAWN:
            return position.stake
        if reason == SettlementReason.EXPIRED:
            return round_amount(position.asset, lend_maturity_amount(
                position.stake, position.term('apy'), position.term('term_days')))
        raise InvalidOperation(f"Lending positions do not settle by {reason.value}")

    def settlement_legs(self, position: Position, exit_price: Decimal, outcome=None,
                        reason: SettlementReason = SettlementReason.EXPIRED) -> List[LedgerLeg]:
        pid = position.position_id
        if position.side == Side.BORROW:
            if reason == SettlementReason.REPAID:
                return [
                    LedgerLeg(position.term('borrow_asset'), -self.repayment_amount(position),
                              f"loan repayment {pid}"),
                    LedgerLeg(position.asset, position.stake, f"collateral returned {pid}"),
                ]
            return [LedgerLeg(position.asset, Decimal("0"), f"collateral seized {pid}")]
        amount = self.payoff(position, exit_price, outcome, reason)
        return [LedgerLeg(position.asset, amount, f"lending payout {pid}")]

    def outcome_label(self, position: Position, exit_price: Decimal, outcome=None,
                      reason: SettlementReason = SettlementReason.EXPIRED) -> str:
        if position.side == Side.BORROW:
            return {
                SettlementReason.REPAID: "repaid",
                SettlementReason.LIQUIDATED: "liquidated",
            }.get(reason, "defaulted")
        return "withdrawn" if reason == SettlementReason.WITHDRAWN else "matured"

    # ========================================================================
    # DISPLAY HELPERS
    # ========================================================================

    def accrued_interest(self, position: Position, now: datetime) -> Decimal:
        return accrued_interest(position.term('principal'), position.term('interest_rate'),
                                position.entry_time, now, position.term('term_days'))

    def repayment_amount(self, position: Position) -> Decimal:
        return round_amount(position.term('borrow_asset'),
                            total_repayment(position.term('principal'), position.term('interest_rate')))

    def liquidation_price(self, position: Position) -> Decimal:
        return liquidation_price(position.term('principal'), position.term('interest_rate'),
                                 position.stake, position.term('ltv'))

    def unrealized_pnl(self, position: Position, price: Decimal, now: datetime) -> Decimal:
        """Interest owed so far on a borrow (negative), or earned so far on a lend."""
        if position.side == Side.BORROW:
            return -round_amount(position.term('borrow_asset'), self.accrued_interest(position, now))
        elapsed = Decimal(str(max((now - position.entry_time).total_seconds(), 0)))
        term = Decimal(position.term('term_days') * SECONDS_PER_DAY)
        fraction = min(elapsed / term, Decimal("1"))
        earned = position.stake * position.term('apy') * Decimal(position.term('term_days')) / DAYS_PER_YEAR
        return round_amount(position.asset, earned * fraction)
