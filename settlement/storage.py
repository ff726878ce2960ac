"""
storage.py - Durable store for balances, positions, history and control state

The engine persists four kinds of keyed records:
    - Ledger snapshot: balances by (user, asset), holds, applied references
    - Positions: by id, including lifecycle state
    - History: append-only, by entry id (de-duplicated on retry)
    - Control values: small named settings such as the outcome mode

Two implementations are provided:
    - MemoryStore: in-process dictionaries (tests, ephemeral hosts)
    - JsonFileStore: state.json rewritten atomically plus an append-only
      history.jsonl, both fsync'd before the write returns

write_with_retry() wraps any store write with exponential backoff and jitter
for transient OSErrors and raises PersistenceError once retries run out.
"""

from __future__ import annotations
import copy
import json
import logging
import os
import random
import tempfile
import threading
import time
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Protocol, Tuple, TypeVar, Union

from .core import HistoryEntry, PersistenceError, Position

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRIES = 3
DEFAULT_BASE_SLEEP = 0.05
MAX_SLEEP = 2.0


# ============================================================================
# LEDGER SNAPSHOT
# ============================================================================

@dataclass(frozen=True)
class LedgerSnapshot:
    """
    Complete persistent state of a BalanceLedger.

    Attributes:
        balances: {user_id: {asset: amount}}
        holds: {hold_id: (user_id, asset, amount)}
        applied_references: References already applied (idempotency keys)
        sequence: Next journal sequence number
    """
    balances: Dict[str, Dict[str, Decimal]] = field(default_factory=dict)
    holds: Dict[str, Tuple[str, str, Decimal]] = field(default_factory=dict)
    applied_references: FrozenSet[str] = frozenset()
    sequence: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "balances": {
                user: {asset: str(amount) for asset, amount in sorted(assets.items())}
                for user, assets in sorted(self.balances.items())
            },
            "holds": {
                hold_id: [user, asset, str(amount)]
                for hold_id, (user, asset, amount) in sorted(self.holds.items())
            },
            "applied_references": sorted(self.applied_references),
            "sequence": self.sequence,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerSnapshot':
        return cls(
            balances={
                user: {asset: Decimal(amount) for asset, amount in assets.items()}
                for user, assets in data.get("balances", {}).items()
            },
            holds={
                hold_id: (user, asset, Decimal(amount))
                for hold_id, (user, asset, amount) in data.get("holds", {}).items()
            },
            applied_references=frozenset(data.get("applied_references", ())),
            sequence=int(data.get("sequence", 0)),
        )


# ============================================================================
# STORE PROTOCOL
# ============================================================================

class Store(Protocol):
    """Keyed durable storage used by the ledger and the engine."""

    def load_ledger(self) -> Optional[LedgerSnapshot]:
        ...

    def save_ledger(self, snapshot: LedgerSnapshot) -> None:
        ...

    def load_positions(self) -> List[Position]:
        ...

    def save_position(self, position: Position) -> None:
        ...

    def load_history(self) -> List[HistoryEntry]:
        ...

    def append_history(self, entry: HistoryEntry) -> bool:
        """Append an entry. Returns False if an entry with the same id already exists."""
        ...

    def load_control(self, key: str) -> Optional[str]:
        ...

    def save_control(self, key: str, value: str) -> None:
        ...


# ============================================================================
# RETRY
# ============================================================================

def write_with_retry(
    fn: Callable[[], T],
    retries: int = DEFAULT_RETRIES,
    base_sleep: float = DEFAULT_BASE_SLEEP,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call fn, retrying transient OSErrors with exponential backoff and jitter.

    Args:
        fn: Zero-argument write operation
        retries: Number of retries after the first attempt
        base_sleep: Initial backoff in seconds (doubled each retry, capped at MAX_SLEEP)
        sleep: Sleep function (injectable for tests)

    Returns:
        Whatever fn returns.

    Raises:
        PersistenceError: If every attempt failed.
    """
    backoff = base_sleep
    last_error: Optional[OSError] = None
    for attempt in range(retries + 1):
        try:
            return fn()
        except OSError as e:
            last_error = e
            if attempt < retries:
                delay = min(backoff, MAX_SLEEP) + random.uniform(0, backoff)
                logger.warning("Store write failed on attempt %d: %s; retrying in %.3fs",
                               attempt + 1, e, delay)
                sleep(delay)
                backoff *= 2
    raise PersistenceError(f"Store write failed after {retries + 1} attempts: {last_error}") from last_error


# ============================================================================
# MEMORY STORE
# ============================================================================

class MemoryStore:
    """
    In-process store.

    Snapshots are deep-copied in and out so callers never share mutable state
    with the store. Positions and history entries are immutable already.
    """

    def __init__(self):
        self._ledger: Optional[LedgerSnapshot] = None
        self._positions: Dict[str, Position] = {}
        self._history: List[HistoryEntry] = []
        self._history_ids: set = set()
        self._control: Dict[str, str] = {}
        self._lock = threading.Lock()

    def load_ledger(self) -> Optional[LedgerSnapshot]:
        with self._lock:
            return copy.deepcopy(self._ledger)

    def save_ledger(self, snapshot: LedgerSnapshot) -> None:
        with self._lock:
            self._ledger = copy.deepcopy(snapshot)

    def load_positions(self) -> List[Position]:
        with self._lock:
            return list(self._positions.values())

    def save_position(self, position: Position) -> None:
        with self._lock:
            self._positions[position.position_id] = position

    def load_history(self) -> List[HistoryEntry]:
        with self._lock:
            return list(self._history)

    def append_history(self, entry: HistoryEntry) -> bool:
        with self._lock:
            if entry.entry_id in self._history_ids:
                return False
            self._history.append(entry)
            self._history_ids.add(entry.entry_id)
            return True

    def load_control(self, key: str) -> Optional[str]:
        with self._lock:
            return self._control.get(key)

    def save_control(self, key: str, value: str) -> None:
        with self._lock:
            self._control[key] = value

    def __repr__(self):
        return (f"MemoryStore({len(self._positions)} positions, "
                f"{len(self._history)} history entries)")


# ============================================================================
# JSON FILE STORE
# ============================================================================

class JsonFileStore:
    """
    File-backed store in a single directory.

    Layout:
        state.json     {"ledger": ..., "positions": {...}, "control": {...}}
                       rewritten atomically (temp file, fsync, os.replace)
        history.jsonl  one HistoryEntry per line, append-only, fsync'd

    The store keeps an in-memory copy of state.json so each write is one
    atomic file replacement. A crash mid-write leaves the previous state.json
    intact. A failed append is trimmed back off history.jsonl; a torn last
    line left by a crash is skipped on load and the next append starts on a
    fresh line.
    """

    STATE_FILE = "state.json"
    HISTORY_FILE = "history.jsonl"

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.state_path = self.directory / self.STATE_FILE
        self.history_path = self.directory / self.HISTORY_FILE
        self._lock = threading.Lock()
        self._state: Dict[str, Any] = self._read_state()
        self._history_ids = {entry.entry_id for entry in self._read_history()}

    def _read_state(self) -> Dict[str, Any]:
        if not self.state_path.exists():
            return {"ledger": None, "positions": {}, "control": {}}
        with open(self.state_path, "r", encoding="utf-8") as f:
            state = json.load(f)
        state.setdefault("ledger", None)
        state.setdefault("positions", {})
        state.setdefault("control", {})
        return state

    def _write_state(self) -> None:
        fd, tmp = tempfile.mkstemp(dir=str(self.directory), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._state, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, str(self.state_path))
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

    def _read_history(self) -> List[HistoryEntry]:
        if not self.history_path.exists():
            return []
        entries: List[HistoryEntry] = []
        seen = set()
        with open(self.history_path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = HistoryEntry.from_dict(json.loads(line))
                except (json.JSONDecodeError, KeyError, ValueError) as e:
                    logger.warning("Skipping unreadable history line %d in %s: %s",
                                   lineno, self.history_path, e)
                    continue
                if entry.entry_id in seen:
                    continue
                seen.add(entry.entry_id)
                entries.append(entry)
        return entries

    # ========================================================================
    # STORE PROTOCOL
    # ========================================================================

    def load_ledger(self) -> Optional[LedgerSnapshot]:
        with self._lock:
            data = self._state.get("ledger")
        return LedgerSnapshot.from_dict(data) if data is not None else None

    def save_ledger(self, snapshot: LedgerSnapshot) -> None:
        with self._lock:
            previous = self._state.get("ledger")
            self._state["ledger"] = snapshot.to_dict()
            try:
                self._write_state()
            except OSError:
                self._state["ledger"] = previous
                raise

    def load_positions(self) -> List[Position]:
        with self._lock:
            records = list(self._state["positions"].values())
        return [Position.from_dict(record) for record in records]

    def save_position(self, position: Position) -> None:
        with self._lock:
            positions = self._state["positions"]
            previous = positions.get(position.position_id)
            positions[position.position_id] = position.to_dict()
            try:
                self._write_state()
            except OSError:
                if previous is None:
                    del positions[position.position_id]
                else:
                    positions[position.position_id] = previous
                raise

    def load_history(self) -> List[HistoryEntry]:
        with self._lock:
            return self._read_history()

    def append_history(self, entry: HistoryEntry) -> bool:
        with self._lock:
            if entry.entry_id in self._history_ids:
                return False
            line = json.dumps(entry.to_dict(), sort_keys=True) + "\n"
            size, torn = self._history_tail()
            if torn:
                # A crash left a partial line; start ours on a fresh one.
                line = "\n" + line
            try:
                with open(self.history_path, "a", encoding="utf-8") as f:
                    f.write(line)
                    f.flush()
                    os.fsync(f.fileno())
            except OSError:
                self._truncate_history(size)
                raise
            self._history_ids.add(entry.entry_id)
            return True

    def _history_tail(self) -> Tuple[int, bool]:
        """Current size of history.jsonl and whether it ends mid-line."""
        if not self.history_path.exists():
            return 0, False
        with open(self.history_path, "rb") as f:
            f.seek(0, os.SEEK_END)
            size = f.tell()
            if size == 0:
                return 0, False
            f.seek(-1, os.SEEK_END)
            return size, f.read(1) != b"\n"

    def _truncate_history(self, size: int) -> None:
        """Drop whatever a failed append left behind."""
        try:
            os.truncate(self.history_path, size)
        except OSError as e:
            logger.error("Could not trim failed history append in %s: %s", self.history_path, e)

    def load_control(self, key: str) -> Optional[str]:
        with self._lock:
            return self._state["control"].get(key)

    def save_control(self, key: str, value: str) -> None:
        with self._lock:
            control = self._state["control"]
            previous = control.get(key)
            control[key] = value
            try:
                self._write_state()
            except OSError:
                if previous is None:
                    control.pop(key, None)
                else:
                    control[key] = previous
                raise

    def __repr__(self):
        return f"JsonFileStore({self.directory})"
