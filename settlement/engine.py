"""
engine.py - Timed position settlement engine

SettlementEngine owns the generic position state machine shared by every
product:

    OPEN --register--> ACTIVE --expiry/liquidation/close--> EXPIRED --> SETTLED

Settling a position is one logical unit:

    1. Re-check under the position's lock that it is still open
       (a settled position is a silent no-op, logged at DEBUG)
    2. Decide: consult the outcome policy (binary positions only), compute
       the payoff and freeze both into a SettlementResult
    3. Persist the position as EXPIRED carrying that result
    4. Apply the legs with reference "settle:<position_id>"
    5. Append the history entry (de-duplicated by id)
    6. Persist the position as SETTLED and drop it from the open set

An EXPIRED record is a settlement that was decided but not yet finished.
Every later attempt, including the first pass after a restart, pays exactly
the frozen result rather than deciding again at the current price, so the
ledger and the history entry always agree. The ledger answers ALREADY_APPLIED
and the history store ignores the duplicate. A repayment the user cannot
cover withdraws the decision and the position goes back to ACTIVE.

Expiry uses stored timestamps, not elapsed counters. On construction the
engine reloads open positions from the store, and any whose expiry passed
while the process was down settles on the first evaluate().

Thread Safety:
    Each position has its own lock, held for the whole of an open, close or
    settle. The engine lock guards only the in-memory maps and is never held
    across store writes or retry backoff, so a slow store delays the position
    being written and nothing else. evaluate() skips a position another
    thread is working on; the next pass picks it up.
"""

from __future__ import annotations
import logging
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from .clock import SystemClock
from .config import EngineConfig
from .core import (
    FORCED_LOSE, FORCED_WIN, AlreadySettled, Clock, HistoryEntry, InsufficientFunds,
    InvalidOperation, InvalidPosition, LedgerLeg, Position, PositionStatus, PriceSource,
    ProductAdapter, ProductKind, SettlementError, SettlementReason, SettlementResult, Side,
    UnknownInstrument, UnknownPosition, round_amount, to_decimal, utc,
)
from .ledger import BalanceLedger, ExecuteResult
from .outcome import Outcome, OutcomeMode, OverrideOutcomePolicy
from .storage import Store, write_with_retry

logger = logging.getLogger(__name__)

OUTCOME_MODE_KEY = "outcome_mode"

# Confirmation collaborator for early lending withdrawal: (position, amount) -> proceed?
ConfirmCallback = Callable[[Position, Decimal], bool]


def new_position_id(kind: ProductKind) -> str:
    return f"{kind.value}_{uuid.uuid4().hex[:12]}"


def _parse_side(side: Union[Side, str]) -> Side:
    if isinstance(side, Side):
        return side
    try:
        return Side(str(side).lower())
    except ValueError:
        raise ValueError(f"Unknown side: {side!r}") from None


def _frozen_outcome(result: SettlementResult) -> Optional[Outcome]:
    """The policy decision recorded in a result (binary positions only)."""
    if result.won is None:
        return None
    return Outcome(won=result.won, exit_price=result.exit_price, forced=result.forced)


class SettlementEngine:
    """
    Generic settlement engine parameterized by product adapters.

    Example:
        engine = SettlementEngine.from_config(EngineConfig(), clock=ManualClock(), seed=1)
        engine.ledger.transfer_in("alice", "USDT", 5000)
        pos = engine.open_binary("alice", "BTC/USDT", 1000, "up", duration=60)
        engine.clock.advance(seconds=60)
        engine.evaluate()
        engine.list_history("alice")
    """

    def __init__(
        self,
        ledger: BalanceLedger,
        prices: PriceSource,
        clock: Optional[Clock] = None,
        store: Optional[Store] = None,
        outcome_mode: Union[OutcomeMode, str, None] = None,
        adapters: Optional[Mapping[ProductKind, ProductAdapter]] = None,
        config: Optional[EngineConfig] = None,
    ):
        """
        Create an engine and recover persisted state.

        Args:
            ledger: Balance ledger the engine settles through
            prices: Current prices (typically a PricePathGenerator)
            clock: Source of "now" (default: SystemClock)
            store: Durable store for positions, history and control values
            outcome_mode: Initial override mode; when None the persisted mode
                          (or the config's) is used
            adapters: Product adapters by kind (default: built from config)
            config: Engine configuration (default: EngineConfig())
        """
        self.config = config or EngineConfig()
        self.ledger = ledger
        self.prices = prices
        self.clock = clock or SystemClock()
        self.store = store
        self.adapters: Dict[ProductKind, ProductAdapter] = dict(adapters or self.config.build_adapters())
        # Guards the maps below. Never held across store I/O.
        self._lock = threading.RLock()
        self._mode_lock = threading.Lock()
        self._position_locks: Dict[str, threading.RLock] = {}
        self._positions: Dict[str, Position] = {}
        self._open: Dict[str, Position] = {}
        self._history: List[HistoryEntry] = []
        self._history_by_id: Dict[str, HistoryEntry] = {}

        persisted_mode = None
        if store is not None:
            self._recover()
            persisted_mode = store.load_control(OUTCOME_MODE_KEY)

        self._policy = OverrideOutcomePolicy(
            mode=OutcomeMode.parse(persisted_mode or self.config.outcome_mode),
            price_adjustment=self.config.price_adjustment,
        )
        if outcome_mode is not None:
            self.set_outcome_mode(outcome_mode)

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        store: Optional[Store] = None,
        clock: Optional[Clock] = None,
        seed: Optional[int] = None,
    ) -> 'SettlementEngine':
        """Build price generator, ledger and adapters from one EngineConfig."""
        clock = clock or SystemClock()
        ledger = BalanceLedger(store=store, clock=clock, retries=config.store_retries,
                               base_sleep=config.store_base_sleep)
        return cls(ledger, config.build_generator(seed), clock=clock, store=store, config=config)

    def _recover(self) -> None:
        for entry in self.store.load_history():
            if entry.entry_id not in self._history_by_id:
                self._history.append(entry)
                self._history_by_id[entry.entry_id] = entry
        recovered = 0
        for position in self.store.load_positions():
            self._positions[position.position_id] = position
            if not position.is_terminal:
                self._open[position.position_id] = position
                recovered += 1
        if self._positions:
            logger.info("Recovered %d positions (%d open) and %d history entries",
                        len(self._positions), recovered, len(self._history))

    # ========================================================================
    # OPERATOR CONTROL
    # ========================================================================

    @property
    def outcome_mode(self) -> OutcomeMode:
        return self._policy.mode

    @property
    def outcome_policy(self) -> OverrideOutcomePolicy:
        return self._policy

    def set_outcome_mode(self, mode: Union[OutcomeMode, str]) -> OutcomeMode:
        """Switch the global override mode and persist it."""
        mode = OutcomeMode.parse(mode)
        with self._mode_lock:
            if self.store is not None:
                self._write(lambda: self.store.save_control(OUTCOME_MODE_KEY, mode.value))
            with self._lock:
                previous = self._policy.mode
                self._policy = self._policy.with_mode(mode)
        if previous != mode:
            logger.info("Outcome mode changed: %s -> %s", previous.value, mode.value)
        return mode

    def force_result(self, position_id: str, result: str) -> Position:
        """Force the outcome of one active binary position ("win" or "lose")."""
        if result not in (FORCED_WIN, FORCED_LOSE):
            raise ValueError(f"result must be '{FORCED_WIN}' or '{FORCED_LOSE}', got {result!r}")
        with self._position_lock(position_id):
            position = self._require_open(position_id)
            if position.kind != ProductKind.BINARY:
                raise InvalidOperation(f"Only binary options accept a forced result, not {position.kind.value}")
            if position.status != PositionStatus.ACTIVE:
                raise InvalidOperation(f"Position {position_id} is already being settled")
            updated = replace(position, forced_result=result)
            self._save(updated)
            self._track(updated)
        logger.info("Forced result %s on %s", result, position_id)
        return updated

    # ========================================================================
    # OPENING
    # ========================================================================

    def open_position(self, position: Position) -> Position:
        """
        Fund and register an OPEN position built by a product adapter.

        The opening legs and the position record form one unit: if the debit
        fails nothing is recorded, and if recording fails the debit is reversed.

        Raises:
            InsufficientFunds: The opening debit exceeds the spendable balance
            UnknownInstrument: No price state for the position's instrument
            InvalidPosition: The position is not OPEN or its id is taken
        """
        if position.status != PositionStatus.OPEN:
            raise InvalidPosition(f"Only OPEN positions can be opened, got {position.status.value}")
        adapter = self._adapter(position.kind)
        self.prices.current_price(position.instrument)

        with self._position_lock(position.position_id):
            with self._lock:
                taken = position.position_id in self._positions
            if taken:
                raise InvalidPosition(f"Position id {position.position_id} already exists")
            if self.ledger.is_applied(f"revert:{position.position_id}"):
                raise InvalidPosition(f"Position id {position.position_id} was rolled back; use a new id")
            legs = adapter.opening_legs(position)
            result = self.ledger.apply(position.user_id, legs, reference=f"open:{position.position_id}")
            if result == ExecuteResult.ALREADY_APPLIED:
                logger.debug("Completing interrupted open of %s", position.position_id)
            active = replace(position, status=PositionStatus.ACTIVE)
            try:
                self._save(active)
            except SettlementError:
                reversal = [LedgerLeg(leg.asset, -leg.amount, f"revert {leg.memo}") for leg in legs]
                self.ledger.apply(position.user_id, reversal, reference=f"revert:{position.position_id}")
                raise
            self._track(active)

        logger.info("Opened %s %s %s for %s: %s %s @ %s", active.kind.value, active.side.value,
                    active.instrument, active.user_id, active.stake, active.asset, active.entry_price)
        return active

    def register(self, position: Position) -> None:
        """
        Track an already funded position without touching the ledger.

        Idempotent: re-registering a known position does nothing, and a
        terminal position is never re-armed.
        """
        if position.status == PositionStatus.OPEN:
            raise InvalidPosition("OPEN positions must go through open_position() to be funded")
        with self._position_lock(position.position_id):
            with self._lock:
                known = self._positions.get(position.position_id)
                if position.is_terminal or (known is not None and known.is_terminal):
                    logger.debug("Ignoring registration of settled position %s", position.position_id)
                    if known is None:
                        self._positions[position.position_id] = position
                    return
                if known is not None:
                    return
            active = replace(position, status=PositionStatus.ACTIVE)
            self._save(active)
            self._track(active)

    def open_binary(self, user_id: str, instrument: str, stake, side: Union[Side, str],
                    duration: Optional[int] = None, position_id: Optional[str] = None) -> Position:
        adapter = self._adapter(ProductKind.BINARY)
        position = adapter.create_position(
            position_id=position_id or new_position_id(ProductKind.BINARY),
            user_id=user_id,
            instrument=instrument,
            stake=to_decimal(stake),
            side=_parse_side(side),
            entry_price=self.prices.current_price(instrument),
            entry_time=self.clock.now(),
            duration=duration,
        )
        return self.open_position(position)

    def open_futures(self, user_id: str, instrument: str, margin, side: Union[Side, str],
                     leverage: int, position_id: Optional[str] = None) -> Position:
        adapter = self._adapter(ProductKind.FUTURES)
        position = adapter.create_position(
            position_id=position_id or new_position_id(ProductKind.FUTURES),
            user_id=user_id,
            instrument=instrument,
            margin=to_decimal(margin),
            side=_parse_side(side),
            leverage=leverage,
            entry_price=self.prices.current_price(instrument),
            entry_time=self.clock.now(),
        )
        return self.open_position(position)

    def open_cycle(self, user_id: str, stake, instrument: Optional[str] = None,
                   position_id: Optional[str] = None) -> Position:
        adapter = self._adapter(ProductKind.CYCLE)
        instrument = instrument or self._default_instrument()
        position = adapter.create_position(
            position_id=position_id or new_position_id(ProductKind.CYCLE),
            user_id=user_id,
            instrument=instrument,
            stake=to_decimal(stake),
            entry_price=self.prices.current_price(instrument),
            entry_time=self.clock.now(),
        )
        return self.open_position(position)

    def open_borrow(self, user_id: str, collateral, principal, term_days: int,
                    collateral_asset: str = "BTC", position_id: Optional[str] = None) -> Position:
        adapter = self._adapter(ProductKind.LOAN)
        position = adapter.create_borrow(
            position_id=position_id or new_position_id(ProductKind.LOAN),
            user_id=user_id,
            collateral_asset=collateral_asset,
            collateral=to_decimal(collateral),
            principal=to_decimal(principal),
            term_days=term_days,
            collateral_price=self.prices.current_price(collateral_asset),
            entry_time=self.clock.now(),
        )
        return self.open_position(position)

    def open_lend(self, user_id: str, principal, term_days: int,
                  position_id: Optional[str] = None) -> Position:
        adapter = self._adapter(ProductKind.LOAN)
        position = adapter.create_lend(
            position_id=position_id or new_position_id(ProductKind.LOAN),
            user_id=user_id,
            principal=to_decimal(principal),
            term_days=term_days,
            entry_time=self.clock.now(),
        )
        return self.open_position(position)

    # ========================================================================
    # USER-INITIATED SETTLEMENT
    # ========================================================================

    def close_futures(self, position_id: str) -> Optional[HistoryEntry]:
        """
        Close a futures position at the current price.

        The close request is persisted first, so a crash before settlement
        is finished by the next evaluate(). Returns the history entry, or the
        existing one if the position already settled.
        """
        with self._position_lock(position_id):
            with self._lock:
                existing = self._history_by_id.get(position_id)
            if existing is not None and existing.position.kind == ProductKind.FUTURES:
                return existing
            position = self._require_open(position_id)
            if position.kind != ProductKind.FUTURES:
                raise InvalidOperation(f"Only futures positions close on demand, not {position.kind.value}")
            if position.status == PositionStatus.ACTIVE and not position.close_requested:
                position = replace(position, close_requested=True)
                self._save(position)
                self._track(position)
            return self._evaluate_position(position_id, self.clock.now())

    def repay_loan(self, position_id: str) -> HistoryEntry:
        """
        Repay a borrow: debit principal plus interest, return the collateral.

        Raises:
            InsufficientFunds: The user cannot cover the repayment (position stays open)
            InvalidOperation: The position is not a borrow
        """
        with self._position_lock(position_id):
            position = self._require_open(position_id)
            if position.kind != ProductKind.LOAN or position.side != Side.BORROW:
                raise InvalidOperation(f"Position {position_id} is not a borrow")
            price = self.prices.current_price(position.instrument)
            return self._settle(position_id, SettlementReason.REPAID, price, self.clock.now())

    def withdraw_lending(self, position_id: str,
                         confirm: Optional[ConfirmCallback] = None) -> Optional[HistoryEntry]:
        """
        Withdraw a lending deposit.

        Before maturity only the principal comes back and interest is forfeited;
        confirm(position, amount) is asked first and a False answer leaves the
        position untouched. At or after maturity the deposit settles with full
        interest and no confirmation is needed.
        """
        with self._position_lock(position_id):
            position = self._require_open(position_id)
            if position.kind != ProductKind.LOAN or position.side != Side.LEND:
                raise InvalidOperation(f"Position {position_id} is not a lending deposit")
            now = self.clock.now()
            adapter = self._adapter(position.kind)
            if position.status == PositionStatus.EXPIRED or adapter.is_expired(position, now):
                return self._settle(position_id, SettlementReason.EXPIRED, Decimal("1"), now)
            amount = adapter.payoff(position, Decimal("1"), None, SettlementReason.WITHDRAWN)
            if confirm is not None and not confirm(position, amount):
                logger.info("Early withdrawal of %s declined by user", position_id)
                return None
            return self._settle(position_id, SettlementReason.WITHDRAWN, Decimal("1"), now)

    # ========================================================================
    # EVALUATION
    # ========================================================================

    def evaluate(self, now: Optional[datetime] = None) -> List[HistoryEntry]:
        """
        One evaluation pass over open positions.

        Each position is checked for liquidation first, then expiry, and
        settled independently. A failure on one position is logged and the
        pass moves on; the position stays open and is retried next pass.
        A position another thread holds is skipped for this pass.

        Returns:
            History entries for positions settled in this pass.
        """
        now = utc(now) if now is not None else self.clock.now()
        with self._lock:
            candidates = sorted(self._open)
        settled = []
        for position_id in candidates:
            lock = self._position_lock(position_id)
            if not lock.acquire(blocking=False):
                logger.debug("Skipping %s this pass: busy in another thread", position_id)
                continue
            try:
                entry = self._evaluate_position(position_id, now)
            except Exception:
                logger.exception("Settlement of %s failed; will retry next pass", position_id)
                continue
            finally:
                lock.release()
            if entry is not None:
                settled.append(entry)
        return settled

    def _evaluate_position(self, position_id: str, now: datetime) -> Optional[HistoryEntry]:
        with self._position_lock(position_id):
            with self._lock:
                position = self._open.get(position_id)
            if position is None:
                return None
            if position.status == PositionStatus.EXPIRED:
                return self._complete(position)
            adapter = self._adapter(position.kind)
            price = self.prices.current_price(position.instrument)
            if adapter.check_liquidation(position, price, now):
                reason = SettlementReason.LIQUIDATED
            elif adapter.is_expired(position, now):
                reason = SettlementReason.CLOSED if position.close_requested else SettlementReason.EXPIRED
            else:
                return None
            return self._settle(position_id, reason, price, now)

    def _settle(self, position_id: str, reason: SettlementReason, price: Decimal,
                now: datetime) -> Optional[HistoryEntry]:
        with self._position_lock(position_id):
            try:
                position = self._settleable(position_id)
            except AlreadySettled as e:
                logger.debug("%s; nothing to do", e)
                return None
            if position.status == PositionStatus.EXPIRED:
                # Decided by an earlier attempt; pay exactly that.
                return self._complete(position)
            decided = self._decide(position, reason, price, now)
            self._save(decided)
            self._track(decided)
            return self._complete(decided)

    def _decide(self, position: Position, reason: SettlementReason, price: Decimal,
                now: datetime) -> Position:
        """Freeze the outcome and payoff of a settlement into an EXPIRED position."""
        adapter = self._adapter(position.kind)
        outcome = None
        exit_price = price
        if adapter.uses_outcome_policy:
            with self._lock:
                policy = self._policy
            outcome = policy.decide(position, price)
            exit_price = outcome.exit_price
        amount = adapter.payoff(position, exit_price, outcome, reason)
        result = SettlementResult(
            reason=reason,
            outcome=adapter.outcome_label(position, exit_price, outcome, reason),
            won=outcome.won if outcome is not None else None,
            exit_price=exit_price,
            settled_amount=amount,
            realized_pnl=round_amount(position.asset, amount - position.stake),
            settled_at=now,
            forced=outcome.forced if outcome is not None else False,
        )
        return replace(position, status=PositionStatus.EXPIRED, result=result)

    def _complete(self, expired: Position) -> HistoryEntry:
        position_id = expired.position_id
        with self._lock:
            existing = self._history_by_id.get(position_id)
        if existing is not None:
            # History was written before an interrupted settle; finish it.
            self._save(existing.position)
            self._retire(existing.position)
            return existing

        adapter = self._adapter(expired.kind)
        result = expired.result
        legs = adapter.settlement_legs(expired, result.exit_price, _frozen_outcome(result), result.reason)
        try:
            applied = self.ledger.apply(expired.user_id, legs, reference=f"settle:{position_id}")
        except InsufficientFunds:
            self._withdraw_decision(expired)
            raise
        if applied == ExecuteResult.ALREADY_APPLIED:
            logger.debug("Ledger already holds settlement of %s", position_id)

        settled = replace(expired, status=PositionStatus.SETTLED)
        entry = HistoryEntry(
            entry_id=position_id,
            user_id=expired.user_id,
            position=settled,
            legs=tuple(legs),
            settled_at=result.settled_at,
        )
        if self.store is not None:
            self._write(lambda: self.store.append_history(entry))
        with self._lock:
            self._history.append(entry)
            self._history_by_id[position_id] = entry
        self._save(settled)
        self._retire(settled)

        logger.info("Settled %s (%s, %s): %s %s returned to %s", position_id, result.reason.value,
                    result.outcome, result.settled_amount, expired.asset, expired.user_id)
        return entry

    def _withdraw_decision(self, expired: Position) -> None:
        """Nothing was paid; return the position to ACTIVE."""
        active = replace(expired, status=PositionStatus.ACTIVE, result=None)
        self._save(active)
        self._track(active)

    # ========================================================================
    # DISPLAY QUERIES
    # ========================================================================

    def list_open_positions(self, user_id: Optional[str] = None) -> List[Position]:
        """
        Positions not yet settled, oldest first.

        A position whose settlement is in flight, or was cut short by a store
        failure, is listed with status EXPIRED until it completes.
        """
        with self._lock:
            positions = [p for p in self._open.values() if user_id is None or p.user_id == user_id]
        return sorted(positions, key=lambda p: (p.entry_time, p.position_id))

    def list_history(self, user_id: Optional[str] = None, limit: Optional[int] = None) -> List[HistoryEntry]:
        """History entries, most recent settlement first."""
        with self._lock:
            indexed = [(i, e) for i, e in enumerate(self._history) if user_id is None or e.user_id == user_id]
        indexed.sort(key=lambda item: (item[1].settled_at, item[0]), reverse=True)
        entries = [e for _, e in indexed]
        return entries[:limit] if limit is not None else entries

    def get_balance(self, user_id: str, asset: Optional[str] = None) -> Decimal:
        return self.ledger.get_balance(user_id, asset or self.config.settlement_asset)

    def get_position(self, position_id: str) -> Position:
        with self._lock:
            position = self._positions.get(position_id)
        if position is None:
            raise UnknownPosition(f"Unknown position {position_id}")
        return position

    def unrealized_pnl(self, position_id: str) -> Decimal:
        """Mark-to-market PnL of an open position at the current price."""
        position = self._require_open(position_id)
        adapter = self._adapter(position.kind)
        price = self.prices.current_price(position.instrument)
        return adapter.unrealized_pnl(position, price, self.clock.now())

    def trade_stats(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Aggregate statistics over positions staked in the settlement asset.

        Returns:
            Dict with total, active, won, lost, win_rate (percent), volume, total_profit.
        """
        asset = self.config.settlement_asset
        with self._lock:
            positions = [p for p in self._positions.values()
                         if p.asset == asset and (user_id is None or p.user_id == user_id)]
        settled = [p for p in positions if p.is_terminal]
        won = sum(1 for p in settled if p.result.realized_pnl > 0)
        lost = sum(1 for p in settled if p.result.realized_pnl < 0)
        decided = won + lost
        win_rate = (Decimal(won) * 100 / Decimal(decided)).quantize(Decimal("0.01")) if decided else Decimal("0")
        return {
            'total': len(positions),
            'active': len(positions) - len(settled),
            'won': won,
            'lost': lost,
            'win_rate': win_rate,
            'volume': sum((p.stake for p in positions), Decimal("0")),
            'total_profit': sum((p.result.realized_pnl for p in settled), Decimal("0")),
        }

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _adapter(self, kind: ProductKind) -> ProductAdapter:
        adapter = self.adapters.get(kind)
        if adapter is None:
            raise InvalidOperation(f"No adapter configured for {kind.value}")
        return adapter

    def _position_lock(self, position_id: str) -> threading.RLock:
        with self._lock:
            lock = self._position_locks.get(position_id)
            if lock is None:
                lock = self._position_locks[position_id] = threading.RLock()
            return lock

    def _require_open(self, position_id: str) -> Position:
        with self._lock:
            position = self._open.get(position_id)
            known = position_id in self._positions
        if position is not None:
            return position
        if known:
            raise InvalidOperation(f"Position {position_id} is already settled")
        raise UnknownPosition(f"Unknown position {position_id}")

    def _settleable(self, position_id: str) -> Position:
        with self._lock:
            position = self._open.get(position_id)
        if position is None:
            raise AlreadySettled(f"Position {position_id} is no longer open")
        return position

    def _track(self, position: Position) -> None:
        with self._lock:
            self._positions[position.position_id] = position
            self._open[position.position_id] = position

    def _retire(self, settled: Position) -> None:
        with self._lock:
            self._positions[settled.position_id] = settled
            self._open.pop(settled.position_id, None)
            self._position_locks.pop(settled.position_id, None)

    def _default_instrument(self) -> str:
        for spec in self.config.instruments:
            return spec.symbol
        raise UnknownInstrument("No instruments configured")

    def _write(self, fn: Callable[[], Any]) -> Any:
        return write_with_retry(fn, retries=self.config.store_retries,
                                base_sleep=self.config.store_base_sleep)

    def _save(self, position: Position) -> None:
        if self.store is not None:
            self._write(lambda: self.store.save_position(position))

    def __repr__(self):
        with self._lock:
            return (f"SettlementEngine({len(self._open)} open, {len(self._history)} settled, "
                    f"mode={self._policy.mode.value})")
