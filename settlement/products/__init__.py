"""
products - Product adapters for the settlement engine

Each adapter parameterizes the generic engine with one product's expiry rule,
liquidation rule and payoff formula. Adapters are pure: they build positions
and ledger legs but never mutate state themselves.

Adapters:
- BinaryOptionAdapter: Fixed-time up/down options
- FuturesAdapter: Leveraged futures with margin liquidation
- ArbitrageCycleAdapter: Fixed-return timed cycles with capital tiers
- CollateralizedLoanAdapter: Collateralized borrowing and fixed-term lending
"""

from .binary import (
    BinaryOptionAdapter, BinaryLevel, DEFAULT_LEVELS, binary_payoff, select_level,
)
from .futures import (
    FuturesAdapter, futures_pnl, futures_payoff, is_liquidated,
    liquidation_price as futures_liquidation_price,
)
from .cycle import (
    ArbitrageCycleAdapter, CycleTier, DEFAULT_TIERS, cycle_payoff, select_tier,
)
from .loan import (
    CollateralizedLoanAdapter, DEFAULT_BORROW_RATES, DEFAULT_LEND_APYS, DEFAULT_LTV,
    accrued_interest, is_undercollateralized, lend_maturity_amount, max_borrow,
    total_repayment, liquidation_price as loan_liquidation_price,
)

__all__ = [
    'BinaryOptionAdapter', 'BinaryLevel', 'DEFAULT_LEVELS', 'binary_payoff', 'select_level',
    'FuturesAdapter', 'futures_pnl', 'futures_payoff', 'is_liquidated', 'futures_liquidation_price',
    'ArbitrageCycleAdapter', 'CycleTier', 'DEFAULT_TIERS', 'cycle_payoff', 'select_tier',
    'CollateralizedLoanAdapter', 'DEFAULT_BORROW_RATES', 'DEFAULT_LEND_APYS', 'DEFAULT_LTV',
    'accrued_interest', 'is_undercollateralized', 'lend_maturity_amount', 'max_borrow',
    'total_repayment', 'loan_liquidation_price',
]
