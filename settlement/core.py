"""
Core types and pure helpers for the settlement engine.

This module provides the foundational data structures shared by every other module:
1. Enums: ProductKind, Side, PositionStatus, SettlementReason
2. Immutable records: LedgerLeg, Position, SettlementResult, HistoryEntry
3. Protocols: Clock, PriceSource, ProductAdapter
4. Exceptions: SettlementError and the domain-specific error types
5. Decimal helpers: to_decimal, round_amount

Nothing in this module mutates engine state. Positions are frozen dataclasses;
every lifecycle transition produces a new instance via dataclasses.replace().
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_EVEN, ROUND_DOWN, getcontext
from enum import Enum
from typing import (
    Any, Dict, List, Mapping, Optional, Protocol, Tuple, runtime_checkable
)


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Settlement arithmetic must be deterministic across reloads, so the global
# context is configured once at import time.
#
# PRECONDITION: No other code should modify the global Decimal context.
#
_SETTLEMENT_DECIMAL_CONTEXT = getcontext()
_SETTLEMENT_DECIMAL_CONTEXT.prec = 50
_SETTLEMENT_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Default settlement currency for stakes, margins and payouts.
DEFAULT_ASSET = "USDT"

# Assets quoted at par against the settlement currency.
CASH_ASSETS = frozenset({"USDT", "USD", "USDC"})

# Quantities with absolute value below this threshold are treated as zero.
QUANTITY_EPSILON = Decimal("1e-12")

DECIMAL_PRECISION = {
    'CASH': 2,
    'CRYPTO': 8,
}

DECIMAL_ROUNDING = {
    'CASH': ROUND_HALF_EVEN,
    'CRYPTO': ROUND_DOWN,
}

SECONDS_PER_DAY = 86400
DAYS_PER_YEAR = Decimal("365")

FORCED_WIN = "win"
FORCED_LOSE = "lose"


# ============================================================================
# ENUMS
# ============================================================================

class ProductKind(Enum):
    """The four product families that share the settlement engine."""
    BINARY = "binary"
    FUTURES = "futures"
    CYCLE = "cycle"
    LOAN = "loan"


class Side(Enum):
    """
    Direction or side of a position.

    UP/DOWN apply to binary options, LONG/SHORT to futures,
    BORROW/LEND to collateralized loans. Cycles carry no side (NONE).
    """
    UP = "up"
    DOWN = "down"
    LONG = "long"
    SHORT = "short"
    BORROW = "borrow"
    LEND = "lend"
    NONE = "none"


class PositionStatus(Enum):
    """
    Lifecycle state of a position.

    OPEN: constructed by an adapter, not yet registered with the engine.
    ACTIVE: registered and monitored on every evaluation pass.
    EXPIRED: settlement decided and its result frozen, but not yet paid out.
    SETTLED: terminal. Ledger updated and history entry written.
    """
    OPEN = "open"
    ACTIVE = "active"
    EXPIRED = "expired"
    SETTLED = "settled"


class SettlementReason(Enum):
    """Why a position left the ACTIVE state."""
    EXPIRED = "expired"
    LIQUIDATED = "liquidated"
    CLOSED = "closed"
    REPAID = "repaid"
    WITHDRAWN = "withdrawn"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class SettlementError(Exception):
    """Base exception for all settlement-related errors."""
    pass


class InvalidStake(SettlementError):
    """Raised when a stake is non-positive, below a product minimum, or outside every tier."""
    pass


class InsufficientFunds(SettlementError):
    """Raised when a debit exceeds the spendable balance."""
    pass


class UnknownInstrument(SettlementError):
    """Raised when an instrument has no price state."""
    pass


class UnknownPosition(SettlementError):
    """Raised when a position id is not known to the engine."""
    pass


class InvalidPosition(SettlementError):
    """Raised when a Position is constructed with inconsistent fields."""
    pass


class InvalidOperation(SettlementError):
    """Raised when an operation does not apply to a product (e.g. closing a binary option)."""
    pass


class AlreadySettled(SettlementError):
    """Internal guard: a terminal position was offered for settlement again."""
    pass


class PersistenceError(SettlementError):
    """Raised when a write-through to durable storage fails after all retries."""
    pass


# ============================================================================
# DECIMAL HELPERS
# ============================================================================

def to_decimal(value: Any) -> Decimal:
    """
    Convert int, float or str to Decimal via str() so float noise does not leak in.

    Raises:
        ValueError: If the value is not finite.
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise ValueError(f"Cannot convert bool to Decimal: {value!r}")
    else:
        result = Decimal(str(value))
    if result.is_nan() or result.is_infinite():
        raise ValueError(f"Value must be finite, got {value!r}")
    return result


def asset_class(asset: str) -> str:
    """Return 'CASH' for par-quoted assets, 'CRYPTO' otherwise."""
    return 'CASH' if asset in CASH_ASSETS else 'CRYPTO'


def round_amount(asset: str, value: Decimal) -> Decimal:
    """Round an amount to the asset's precision using the asset class rounding mode."""
    cls = asset_class(asset)
    quantizer = Decimal(10) ** -DECIMAL_PRECISION[cls]
    return to_decimal(value).quantize(quantizer, rounding=DECIMAL_ROUNDING[cls])


def utc(dt: datetime) -> datetime:
    """Normalize a datetime to aware UTC. Naive values are taken as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ============================================================================
# TERM SERIALIZATION
# ============================================================================

def _encode_term(value: Any) -> Any:
    if isinstance(value, bool):
        return f"B:{'true' if value else 'false'}"
    if isinstance(value, Decimal):
        return f"D:{value}"
    if isinstance(value, int):
        return f"N:{value}"
    if isinstance(value, str):
        return f"S:{value}"
    if value is None:
        return None
    raise TypeError(f"Unsupported term value type: {type(value).__name__}")


def _decode_term(value: Any) -> Any:
    if value is None:
        return None
    prefix, _, body = value.partition(":")
    if prefix == "D":
        return Decimal(body)
    if prefix == "N":
        return int(body)
    if prefix == "B":
        return body == "true"
    if prefix == "S":
        return body
    raise ValueError(f"Unrecognized term encoding: {value!r}")


def freeze_terms(terms: Optional[Mapping[str, Any]]) -> Tuple[Tuple[str, Any], ...]:
    """Convert a terms mapping into a sorted tuple of pairs for frozen storage."""
    if not terms:
        return ()
    return tuple(sorted(terms.items()))


# ============================================================================
# LEDGER LEG
# ============================================================================

@dataclass(frozen=True, slots=True)
class LedgerLeg:
    """
    One signed balance change for a single asset.

    Attributes:
        asset: Asset symbol (e.g. "USDT", "BTC").
        amount: Positive credits the user, negative debits. Zero is allowed so a
                settlement that pays nothing still records its ledger mutation.
        memo: Short human-readable description.
    """
    asset: str
    amount: Decimal
    memo: str = ""

    def __post_init__(self):
        if not self.asset or not self.asset.strip():
            raise ValueError("LedgerLeg asset cannot be empty")
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', to_decimal(self.amount))
        if self.amount.is_nan() or self.amount.is_infinite():
            raise ValueError(f"LedgerLeg amount must be finite, got {self.amount}")

    @property
    def is_debit(self) -> bool:
        return self.amount < 0

    def to_dict(self) -> Dict[str, Any]:
        return {"asset": self.asset, "amount": str(self.amount), "memo": self.memo}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'LedgerLeg':
        return cls(asset=data["asset"], amount=Decimal(data["amount"]), memo=data.get("memo", ""))

    def __repr__(self) -> str:
        return f"LedgerLeg({self.amount:+} {self.asset}: {self.memo})"


# ============================================================================
# SETTLEMENT RESULT
# ============================================================================

@dataclass(frozen=True, slots=True)
class SettlementResult:
    """
    Outcome of settling one position.

    Attributes:
        reason: What triggered settlement.
        outcome: Display label ("win", "lose", "profit", "loss", "liquidated",
                 "completed", "repaid", "defaulted", "matured", "withdrawn").
        won: Win/lose for binary options, None for payoff-only products.
        exit_price: Price captured at settlement (possibly cosmetically adjusted).
        settled_amount: Amount credited back in the stake asset.
        realized_pnl: settled_amount minus stake, in the stake asset.
        settled_at: Settlement timestamp.
        forced: True when an operator override decided the outcome.
    """
    reason: SettlementReason
    outcome: str
    won: Optional[bool]
    exit_price: Decimal
    settled_amount: Decimal
    realized_pnl: Decimal
    settled_at: datetime
    forced: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason.value,
            "outcome": self.outcome,
            "won": self.won,
            "exit_price": str(self.exit_price),
            "settled_amount": str(self.settled_amount),
            "realized_pnl": str(self.realized_pnl),
            "settled_at": self.settled_at.isoformat(),
            "forced": self.forced,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'SettlementResult':
        return cls(
            reason=SettlementReason(data["reason"]),
            outcome=data["outcome"],
            won=data.get("won"),
            exit_price=Decimal(data["exit_price"]),
            settled_amount=Decimal(data["settled_amount"]),
            realized_pnl=Decimal(data["realized_pnl"]),
            settled_at=utc(datetime.fromisoformat(data["settled_at"])),
            forced=bool(data.get("forced", False)),
        )


# ============================================================================
# POSITION
# ============================================================================

@dataclass(frozen=True, slots=True)
class Position:
    """
    One open stake in any product.

    Created by a product adapter, registered and settled by the engine, never
    deleted. Invariants are checked in __post_init__ so an inconsistent record
    is rejected at construction time rather than interpreted later.

    Attributes:
        position_id: Unique identifier.
        user_id: Owning user.
        kind: Product family.
        instrument: Price feed symbol (e.g. "BTC/USDT").
        asset: Asset in which the stake was taken.
        stake: Stake, margin, principal or collateral quantity (> 0).
        side: Direction or side (UP/DOWN, LONG/SHORT, BORROW/LEND, NONE).
        entry_price: Instrument price captured at open (> 0).
        entry_time: Open timestamp (aware UTC).
        expiry_time: Expiry, due date or maturity. None for futures.
        status: Lifecycle state.
        close_requested: Futures close on demand has been requested.
        forced_result: Per-position operator override ("win"/"lose").
        result: Settlement result once terminal.
        _frozen_terms: Product terms as a sorted tuple of pairs.
    """
    position_id: str
    user_id: str
    kind: ProductKind
    instrument: str
    asset: str
    stake: Decimal
    side: Side
    entry_price: Decimal
    entry_time: datetime
    expiry_time: Optional[datetime] = None
    status: PositionStatus = PositionStatus.OPEN
    close_requested: bool = False
    forced_result: Optional[str] = None
    result: Optional[SettlementResult] = None
    _frozen_terms: Tuple[Tuple[str, Any], ...] = field(default_factory=tuple)

    def __post_init__(self):
        if not self.position_id or not self.position_id.strip():
            raise InvalidPosition("position_id cannot be empty")
        if not self.user_id or not self.user_id.strip():
            raise InvalidPosition("user_id cannot be empty")
        if not self.instrument or not self.instrument.strip():
            raise InvalidPosition("instrument cannot be empty")
        if not isinstance(self.stake, Decimal):
            object.__setattr__(self, 'stake', to_decimal(self.stake))
        if not isinstance(self.entry_price, Decimal):
            object.__setattr__(self, 'entry_price', to_decimal(self.entry_price))
        if self.stake <= 0:
            raise InvalidPosition(f"stake must be positive, got {self.stake}")
        if self.entry_price <= 0:
            raise InvalidPosition(f"entry_price must be positive, got {self.entry_price}")
        object.__setattr__(self, 'entry_time', utc(self.entry_time))
        if self.expiry_time is not None:
            object.__setattr__(self, 'expiry_time', utc(self.expiry_time))
            if self.expiry_time <= self.entry_time:
                raise InvalidPosition(
                    f"expiry_time {self.expiry_time} must be after entry_time {self.entry_time}"
                )
        if self.forced_result not in (None, FORCED_WIN, FORCED_LOSE):
            raise InvalidPosition(f"forced_result must be 'win', 'lose' or None, got {self.forced_result!r}")
        if self.status in (PositionStatus.EXPIRED, PositionStatus.SETTLED) and self.result is None:
            raise InvalidPosition(f"an {self.status.value.upper()} position must carry a result")

    @property
    def terms(self) -> Dict[str, Any]:
        """Product terms as a new dict (safe to mutate)."""
        return dict(self._frozen_terms)

    def term(self, key: str, default: Any = None) -> Any:
        return self.terms.get(key, default)

    @property
    def is_terminal(self) -> bool:
        return self.status == PositionStatus.SETTLED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "user_id": self.user_id,
            "kind": self.kind.value,
            "instrument": self.instrument,
            "asset": self.asset,
            "stake": str(self.stake),
            "side": self.side.value,
            "entry_price": str(self.entry_price),
            "entry_time": self.entry_time.isoformat(),
            "expiry_time": self.expiry_time.isoformat() if self.expiry_time else None,
            "status": self.status.value,
            "close_requested": self.close_requested,
            "forced_result": self.forced_result,
            "result": self.result.to_dict() if self.result else None,
            "terms": {k: _encode_term(v) for k, v in self._frozen_terms},
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Position':
        expiry = data.get("expiry_time")
        result = data.get("result")
        return cls(
            position_id=data["position_id"],
            user_id=data["user_id"],
            kind=ProductKind(data["kind"]),
            instrument=data["instrument"],
            asset=data["asset"],
            stake=Decimal(data["stake"]),
            side=Side(data["side"]),
            entry_price=Decimal(data["entry_price"]),
            entry_time=datetime.fromisoformat(data["entry_time"]),
            expiry_time=datetime.fromisoformat(expiry) if expiry else None,
            status=PositionStatus(data["status"]),
            close_requested=bool(data.get("close_requested", False)),
            forced_result=data.get("forced_result"),
            result=SettlementResult.from_dict(result) if result else None,
            _frozen_terms=freeze_terms(
                {k: _decode_term(v) for k, v in (data.get("terms") or {}).items()}
            ),
        )

    def __repr__(self) -> str:
        return (f"Position({self.position_id} {self.kind.value} {self.side.value} "
                f"{self.stake} {self.asset} @ {self.entry_price} [{self.status.value}])")


# ============================================================================
# HISTORY ENTRY
# ============================================================================

@dataclass(frozen=True, slots=True)
class HistoryEntry:
    """
    Immutable record of a terminal position and its realized ledger delta.

    One terminal position yields exactly one history entry; the entry id is the
    position id, which lets append-only stores de-duplicate retried writes.
    """
    entry_id: str
    user_id: str
    position: Position
    legs: Tuple[LedgerLeg, ...]
    settled_at: datetime

    def __post_init__(self):
        if not self.position.is_terminal:
            raise InvalidPosition(f"History entry requires a settled position, got {self.position.status.value}")

    @property
    def result(self) -> SettlementResult:
        return self.position.result

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "user_id": self.user_id,
            "position": self.position.to_dict(),
            "legs": [leg.to_dict() for leg in self.legs],
            "settled_at": self.settled_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'HistoryEntry':
        return cls(
            entry_id=data["entry_id"],
            user_id=data["user_id"],
            position=Position.from_dict(data["position"]),
            legs=tuple(LedgerLeg.from_dict(leg) for leg in data["legs"]),
            settled_at=utc(datetime.fromisoformat(data["settled_at"])),
        )


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class Clock(Protocol):
    """Source of "now". Must share its basis with persisted entry/expiry times."""

    def now(self) -> datetime:
        ...


@runtime_checkable
class PriceSource(Protocol):
    """Read access to current instrument prices."""

    def current_price(self, symbol: str) -> Decimal:
        """Return the current price, raising UnknownInstrument for unknown symbols."""
        ...


class ProductAdapter(Protocol):
    """
    Policy module parameterizing the generic engine for one product kind.

    Adapters are pure: they read a Position and return values or ledger legs.
    They never touch the ledger, the store or the clock themselves.
    """

    kind: ProductKind
    uses_outcome_policy: bool

    def opening_legs(self, position: Position) -> List[LedgerLeg]:
        """Ledger legs applied atomically when the position is opened."""
        ...

    def is_expired(self, position: Position, now: datetime) -> bool:
        """True once the position's expiry rule has fired."""
        ...

    def check_liquidation(self, position: Position, price: Decimal, now: datetime) -> bool:
        """True when the liquidation condition holds at this price and time."""
        ...

    def payoff(
        self,
        position: Position,
        exit_price: Decimal,
        outcome: Optional[Any] = None,
        reason: SettlementReason = SettlementReason.EXPIRED,
    ) -> Decimal:
        """Amount returned to the user in the stake asset."""
        ...

    def settlement_legs(
        self,
        position: Position,
        exit_price: Decimal,
        outcome: Optional[Any] = None,
        reason: SettlementReason = SettlementReason.EXPIRED,
    ) -> List[LedgerLeg]:
        """Ledger legs applied atomically at settlement."""
        ...

    def outcome_label(
        self,
        position: Position,
        exit_price: Decimal,
        outcome: Optional[Any] = None,
        reason: SettlementReason = SettlementReason.EXPIRED,
    ) -> str:
        """Display label stored in the SettlementResult."""
        ...
