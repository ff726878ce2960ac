"""
ledger.py - Per-user, per-asset balance ledger with durable write-through

BalanceLedger is the only component that mutates balances. Every change is
double-entry against HOUSE_ACCOUNT (the platform counterparty wallet), so for
every asset the sum over all accounts is conserved.

Key responsibilities:
    - Atomic multi-leg apply for one user: all legs land or none do
    - Idempotency by reference: a reference is applied at most once, ever
    - Per-(user, asset) locks serializing check-and-mutate
    - Write-through to the store before a mutation reports success; a write
      that still fails after retries is rolled back in memory and raised
    - Pending-withdrawal holds (reserve/release/capture) that reduce the
      spendable balance without ever letting it go negative
    - An in-memory journal of every applied mutation for auditing
"""

from __future__ import annotations
import logging
import threading
import time
from collections import defaultdict
from contextlib import ExitStack
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple, Any

from .clock import SystemClock
from .core import (
    Clock, InsufficientFunds, LedgerLeg, PersistenceError, QUANTITY_EPSILON,
    SettlementError, round_amount, to_decimal,
)
from .storage import DEFAULT_BASE_SLEEP, DEFAULT_RETRIES, LedgerSnapshot, Store, write_with_retry

logger = logging.getLogger(__name__)

# Platform counterparty. Exempt from the non-negative balance check.
HOUSE_ACCOUNT = "__house__"


class ExecuteResult(Enum):
    """
    Outcome of a ledger apply.

    APPLIED: Legs validated and applied (and persisted, when a store is attached).
    ALREADY_APPLIED: The reference was applied before; nothing changed.

    A rejected apply raises InsufficientFunds instead of returning a value.
    """
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    """One applied mutation in the journal."""
    sequence: int
    user_id: str
    legs: Tuple[LedgerLeg, ...]
    reference: Optional[str]
    timestamp: datetime


class BalanceLedger:
    """
    Double-entry balance ledger.

    Thread Safety:
        Safe for concurrent use. Check-and-mutate on a balance happens under
        that (user, asset) lock; multi-leg applies take their locks in sorted
        order so two applies can never deadlock.

    Example:
        ledger = BalanceLedger(store=MemoryStore())
        ledger.credit("alice", "USDT", Decimal("5000"), reference="deposit:1")
        ledger.debit("alice", "USDT", Decimal("1000"))
        ledger.get_balance("alice", "USDT")  # Decimal("4000.00")
    """

    def __init__(
        self,
        store: Optional[Store] = None,
        clock: Optional[Clock] = None,
        retries: int = DEFAULT_RETRIES,
        base_sleep: float = DEFAULT_BASE_SLEEP,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Create a ledger, restoring state from the store if it holds a snapshot.

        Args:
            store: Durable store for write-through (None keeps state in memory only)
            clock: Timestamp source for journal entries
            retries: Store write retries before PersistenceError
            base_sleep: Initial retry backoff in seconds
            sleep: Sleep function used between retries
        """
        self._store = store
        self._clock = clock or SystemClock()
        self._retries = retries
        self._base_sleep = base_sleep
        self._sleep = sleep
        self._balances: Dict[str, Dict[str, Decimal]] = defaultdict(dict)
        self._holds: Dict[str, Tuple[str, str, Decimal]] = {}
        self._applied: Set[str] = set()
        self._sequence = 0
        self.journal: List[LedgerEntry] = []
        # Guards dict structure, the reference set and the journal.
        self._state_lock = threading.RLock()
        # Snapshot-and-write happens under one lock so the store never goes backwards.
        self._persist_lock = threading.Lock()
        self._key_locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._key_locks_guard = threading.Lock()

        if store is not None:
            snapshot = store.load_ledger()
            if snapshot is not None:
                self._restore(snapshot)

    # ========================================================================
    # READ-ONLY QUERIES
    # ========================================================================

    def get_balance(self, user_id: str, asset: str) -> Decimal:
        """Booked balance, including amounts reserved by holds."""
        with self._state_lock:
            return self._balances.get(user_id, {}).get(asset, Decimal("0"))

    def get_reserved(self, user_id: str, asset: str) -> Decimal:
        with self._state_lock:
            return sum(
                (amount for (u, a, amount) in self._holds.values() if u == user_id and a == asset),
                Decimal("0"),
            )

    def get_spendable(self, user_id: str, asset: str) -> Decimal:
        """Balance minus holds. Debits are checked against this value."""
        with self._state_lock:
            return self.get_balance(user_id, asset) - self.get_reserved(user_id, asset)

    def balances(self, user_id: str) -> Dict[str, Decimal]:
        with self._state_lock:
            return dict(self._balances.get(user_id, {}))

    def users(self) -> List[str]:
        with self._state_lock:
            return sorted(u for u in self._balances if u != HOUSE_ACCOUNT)

    def assets(self) -> List[str]:
        with self._state_lock:
            return sorted({a for assets in self._balances.values() for a in assets})

    def is_applied(self, reference: str) -> bool:
        with self._state_lock:
            return reference in self._applied

    def total(self, asset: str) -> Decimal:
        """
        Sum of an asset over every account, house included.

        Accounts are summed in sorted order so accumulation is deterministic.
        Under double entry this is always zero.
        """
        with self._state_lock:
            return sum(
                (self._balances[u].get(asset, Decimal("0")) for u in sorted(self._balances)),
                Decimal("0"),
            )

    def verify_conservation(
        self,
        expected_totals: Optional[Dict[str, Decimal]] = None,
        tolerance: Decimal = QUANTITY_EPSILON,
    ) -> Dict[str, Any]:
        """
        Verify that every asset sums to its expected total (zero by default).

        Returns:
            Dict with keys:
            - 'valid': bool - True if all totals match
            - 'totals': Dict[str, Decimal] - Current total per asset
            - 'discrepancies': List[Dict] - asset, expected, actual, difference

        Example:
            result = ledger.verify_conservation()
            assert result['valid'], result['discrepancies']
        """
        expected_totals = expected_totals or {}
        totals = {}
        discrepancies = []
        for asset in self.assets():
            actual = self.total(asset)
            totals[asset] = actual
            expected = expected_totals.get(asset, Decimal("0"))
            difference = abs(actual - expected)
            if difference > tolerance:
                discrepancies.append({
                    'asset': asset,
                    'expected': expected,
                    'actual': actual,
                    'difference': difference,
                })
        return {
            'valid': len(discrepancies) == 0,
            'totals': totals,
            'discrepancies': discrepancies,
        }

    # ========================================================================
    # MUTATIONS
    # ========================================================================

    def credit(self, user_id: str, asset: str, amount, reference: Optional[str] = None,
               memo: str = "credit") -> ExecuteResult:
        """Increase a balance. Amount must be >= 0."""
        amount = to_decimal(amount)
        if amount < 0:
            raise ValueError(f"credit amount must be non-negative, got {amount}")
        return self.apply(user_id, [LedgerLeg(asset, amount, memo)], reference=reference)

    def debit(self, user_id: str, asset: str, amount, reference: Optional[str] = None,
              memo: str = "debit") -> ExecuteResult:
        """Decrease a balance. Raises InsufficientFunds if amount exceeds the spendable balance."""
        amount = to_decimal(amount)
        if amount < 0:
            raise ValueError(f"debit amount must be non-negative, got {amount}")
        return self.apply(user_id, [LedgerLeg(asset, -amount, memo)], reference=reference)

    def apply(self, user_id: str, legs: Sequence[LedgerLeg],
              reference: Optional[str] = None) -> ExecuteResult:
        """
        Apply several legs for one user atomically.

        Each leg is rounded to its asset's precision. For every asset whose net
        change is negative the user's spendable balance must cover it; otherwise
        InsufficientFunds is raised and nothing changes. The house account takes
        the opposite side of every leg.

        Args:
            user_id: Account to mutate
            legs: Signed changes (positive credits the user)
            reference: Idempotency key; a reference is applied at most once

        Returns:
            ExecuteResult.APPLIED or ExecuteResult.ALREADY_APPLIED

        Raises:
            InsufficientFunds: If a debit exceeds the spendable balance
            PersistenceError: If the write-through failed (the change is rolled back)
        """
        if not user_id or not user_id.strip():
            raise ValueError("user_id cannot be empty")
        if user_id == HOUSE_ACCOUNT:
            raise ValueError("The house account only moves as the counterparty of a user leg")
        rounded = tuple(LedgerLeg(leg.asset, round_amount(leg.asset, leg.amount), leg.memo)
                        for leg in legs)
        net: Dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
        for leg in rounded:
            net[leg.asset] += leg.amount

        with ExitStack() as stack:
            for key in sorted({(user_id, asset) for asset in net}):
                stack.enter_context(self._key_lock(key))

            with self._state_lock:
                if reference is not None:
                    if reference in self._applied:
                        logger.debug("Reference %s already applied for %s", reference, user_id)
                        return ExecuteResult.ALREADY_APPLIED
                for asset in sorted(net):
                    change = net[asset]
                    if change < 0:
                        spendable = self.get_spendable(user_id, asset)
                        if spendable + change < 0:
                            raise InsufficientFunds(
                                f"{user_id} has {spendable} {asset} spendable, needs {-change}"
                            )
                self._post(user_id, net)
                if reference is not None:
                    self._applied.add(reference)
                entry = LedgerEntry(
                    sequence=self._sequence,
                    user_id=user_id,
                    legs=rounded,
                    reference=reference,
                    timestamp=self._clock.now(),
                )
                self._sequence += 1
                self.journal.append(entry)

            try:
                self._persist()
            except PersistenceError:
                with self._state_lock:
                    self._post(user_id, {asset: -change for asset, change in net.items()})
                    if reference is not None:
                        self._applied.discard(reference)
                    self.journal.remove(entry)
                logger.error("Rolled back ledger change %s for %s after persistence failure",
                             reference or entry.sequence, user_id)
                raise

        return ExecuteResult.APPLIED

    def transfer_in(self, user_id: str, asset: str, amount, reference: Optional[str] = None) -> ExecuteResult:
        """Deposit from outside the platform (funded by the house)."""
        return self.credit(user_id, asset, amount, reference=reference, memo="deposit")

    # ========================================================================
    # HOLDS
    # ========================================================================

    def reserve(self, user_id: str, asset: str, amount, hold_id: str) -> None:
        """
        Place a pending-withdrawal hold. The booked balance is unchanged but the
        spendable balance drops by amount.

        Raises:
            InsufficientFunds: If amount exceeds the spendable balance
            ValueError: If the hold id is already in use or amount is not positive
        """
        amount = round_amount(asset, to_decimal(amount))
        if amount <= 0:
            raise ValueError(f"hold amount must be positive, got {amount}")
        with self._key_lock((user_id, asset)):
            with self._state_lock:
                if hold_id in self._holds:
                    raise ValueError(f"Hold {hold_id} already exists")
                spendable = self.get_spendable(user_id, asset)
                if amount > spendable:
                    raise InsufficientFunds(
                        f"{user_id} has {spendable} {asset} spendable, cannot hold {amount}"
                    )
                self._holds[hold_id] = (user_id, asset, amount)
            try:
                self._persist()
            except PersistenceError:
                with self._state_lock:
                    del self._holds[hold_id]
                raise
        logger.info("Reserved %s %s for %s (hold %s)", amount, asset, user_id, hold_id)

    def release(self, hold_id: str) -> None:
        """Cancel a hold, returning the amount to the spendable balance."""
        user_id, asset, amount = self._get_hold(hold_id)
        with self._key_lock((user_id, asset)):
            with self._state_lock:
                held = self._holds.pop(hold_id)
            try:
                self._persist()
            except PersistenceError:
                with self._state_lock:
                    self._holds[hold_id] = held
                raise
        logger.info("Released hold %s (%s %s for %s)", hold_id, amount, asset, user_id)

    def capture(self, hold_id: str) -> ExecuteResult:
        """Complete a withdrawal: the held amount leaves the user's balance."""
        user_id, asset, amount = self._get_hold(hold_id)
        reference = f"capture:{hold_id}"
        with self._key_lock((user_id, asset)):
            with self._state_lock:
                if reference in self._applied:
                    return ExecuteResult.ALREADY_APPLIED
                held = self._holds.pop(hold_id)
                self._post(user_id, {asset: -amount})
                self._applied.add(reference)
                entry = LedgerEntry(self._sequence, user_id, (LedgerLeg(asset, -amount, "withdrawal"),),
                                    reference, self._clock.now())
                self._sequence += 1
                self.journal.append(entry)
            try:
                self._persist()
            except PersistenceError:
                with self._state_lock:
                    self._post(user_id, {asset: amount})
                    self._holds[hold_id] = held
                    self._applied.discard(reference)
                    self.journal.remove(entry)
                raise
        logger.info("Captured hold %s (%s %s for %s)", hold_id, amount, asset, user_id)
        return ExecuteResult.APPLIED

    def _get_hold(self, hold_id: str) -> Tuple[str, str, Decimal]:
        with self._state_lock:
            hold = self._holds.get(hold_id)
        if hold is None:
            raise SettlementError(f"Unknown hold {hold_id}")
        return hold

    # ========================================================================
    # SNAPSHOT / PERSISTENCE
    # ========================================================================

    def snapshot(self) -> LedgerSnapshot:
        with self._state_lock:
            return LedgerSnapshot(
                balances={u: dict(assets) for u, assets in self._balances.items()},
                holds=dict(self._holds),
                applied_references=frozenset(self._applied),
                sequence=self._sequence,
            )

    def _restore(self, snapshot: LedgerSnapshot) -> None:
        with self._state_lock:
            self._balances = defaultdict(dict, {u: dict(a) for u, a in snapshot.balances.items()})
            self._holds = dict(snapshot.holds)
            self._applied = set(snapshot.applied_references)
            self._sequence = snapshot.sequence
        logger.info("Restored ledger: %d accounts, %d applied references",
                    len(self._balances), len(self._applied))

    def _persist(self) -> None:
        if self._store is None:
            return
        with self._persist_lock:
            snapshot = self.snapshot()
            write_with_retry(lambda: self._store.save_ledger(snapshot),
                             retries=self._retries, base_sleep=self._base_sleep, sleep=self._sleep)

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _key_lock(self, key: Tuple[str, str]) -> threading.Lock:
        with self._key_locks_guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def _post(self, user_id: str, net: Dict[str, Decimal]) -> None:
        """Apply net changes to the user and the opposite to the house. Caller holds _state_lock."""
        for asset, change in net.items():
            user_balances = self._balances[user_id]
            user_balances[asset] = user_balances.get(asset, Decimal("0")) + change
            house = self._balances[HOUSE_ACCOUNT]
            house[asset] = house.get(asset, Decimal("0")) - change

    def __repr__(self):
        with self._state_lock:
            return f"BalanceLedger({len(self._balances)} accounts, {len(self.journal)} entries)"
