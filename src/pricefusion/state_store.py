"""
Instrument State Store
======================

Keyed store mapping instrument identifier -> PredictorState.

Each instrument has its own lock; the predictor holds it for the whole
read-compute-write step, so two calls for the same instrument never
interleave while calls for different instruments run independently.

Optional LRU bound: with max_instruments > 0 the least recently used
instrument is evicted when a new one would exceed the bound.

Usage:
    store = InstrumentStateStore(factory=predictor.initial_state)
    with store.locked("btc") as state:
        ...  # mutate state
    store.reset("btc")
    store.evict("btc")
"""

import logging
import threading
from collections import OrderedDict, deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional

from pricefusion.ensemble import WeakLearner

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 50
DEFAULT_BUFFER_SIZE = 100


@dataclass(slots=True, frozen=True)
class HistoryEntry:
    """One past blended score."""
    score: float
    confidence: float
    timestamp_ms: int


@dataclass(slots=True)
class AdaptiveThresholds:
    bullish: float
    bearish: float


@dataclass
class PredictorState:
    """
    Per-instrument predictor state.

    Attributes:
        memory: Hidden vector of the gated memory cell
        ensemble: Weak learners, weights adapted in place
        history: Most-recent-last blended scores (bounded)
        sequence_buffer: Most-recent-last raw feature inputs (bounded)
        thresholds: Self-tuned bullish/bearish decision boundaries
        steps: Number of predictions applied
    """
    memory: list[float]
    ensemble: list[WeakLearner]
    thresholds: AdaptiveThresholds
    history: deque = field(default_factory=lambda: deque(maxlen=DEFAULT_HISTORY_SIZE))
    sequence_buffer: deque = field(default_factory=lambda: deque(maxlen=DEFAULT_BUFFER_SIZE))
    steps: int = 0
    last_update_ms: Optional[int] = None

    def snapshot(self) -> dict:
        """JSON-ready diagnostic view."""
        return {
            "memory": [round(h, 6) for h in self.memory],
            "ensemble": [learner.to_dict() for learner in self.ensemble],
            "thresholds": {
                "bullish": self.thresholds.bullish,
                "bearish": self.thresholds.bearish,
            },
            "history_len": len(self.history),
            "buffer_len": len(self.sequence_buffer),
            "steps": self.steps,
            "last_update_ms": self.last_update_ms,
        }


class _Slot:
    __slots__ = ("state", "lock")

    def __init__(self, state: PredictorState):
        self.state = state
        self.lock = threading.Lock()


class InstrumentStateStore:
    """
    Arena of predictor states keyed by instrument.

    Thread-safe. The map itself is guarded by a store lock held only for
    lookups; per-instrument locks serialize predictor steps.
    """

    def __init__(
        self,
        factory: Callable[[], PredictorState],
        max_instruments: int = 0,
    ):
        self._factory = factory
        self.max_instruments = max_instruments
        self._slots: "OrderedDict[str, _Slot]" = OrderedDict()
        self._lock = threading.Lock()
        self.evictions_total = 0

    def _slot(self, instrument: str) -> _Slot:
        with self._lock:
            slot = self._slots.get(instrument)
            if slot is not None:
                self._slots.move_to_end(instrument)
                return slot

            slot = _Slot(self._factory())
            self._slots[instrument] = slot

            evicted = None
            if self.max_instruments and len(self._slots) > self.max_instruments:
                evicted, _ = self._slots.popitem(last=False)
                self.evictions_total += 1

        logger.info("predictor_state_created", extra={"instrument": instrument})
        if evicted is not None:
            logger.info("predictor_state_evicted", extra={"instrument": evicted, "reason": "lru"})
        return slot

    @contextmanager
    def locked(self, instrument: str) -> Iterator[PredictorState]:
        """
        Exclusive access to an instrument's state, created on first use.
        """
        slot = self._slot(instrument)
        with slot.lock:
            yield slot.state

    def get_or_create(self, instrument: str) -> PredictorState:
        return self._slot(instrument).state

    def get(self, instrument: str) -> Optional[PredictorState]:
        """Read-only lookup for diagnostics; does not touch LRU order."""
        with self._lock:
            slot = self._slots.get(instrument)
        return slot.state if slot is not None else None

    def reset(self, instrument: str) -> PredictorState:
        """Replace the instrument's state with a freshly initialized one."""
        slot = self._slot(instrument)
        with slot.lock:
            slot.state = self._factory()
            state = slot.state
        logger.info("predictor_state_reset", extra={"instrument": instrument})
        return state

    def evict(self, instrument: str) -> bool:
        """Remove the instrument; returns False if it was not tracked."""
        with self._lock:
            slot = self._slots.pop(instrument, None)
            if slot is not None:
                self.evictions_total += 1
        if slot is None:
            return False
        logger.info("predictor_state_evicted", extra={"instrument": instrument, "reason": "explicit"})
        return True

    def instruments(self) -> list[str]:
        with self._lock:
            return list(self._slots)

    def __contains__(self, instrument: object) -> bool:
        with self._lock:
            return instrument in self._slots

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)
