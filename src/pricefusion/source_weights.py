"""
Source Reliability Table
========================

Maps source identifier -> reliability weight in (0, 1]. Unknown sources get
the default weight (0.5).

The table is process-wide and read-mostly. Updates build a new mapping and
swap the reference under a lock; readers take one snapshot per computation
and never observe a half-applied update.

Usage:
    table = SourceWeightTable({"Pyth": 1.0, "CoinGecko": 0.8})
    weights = table.snapshot()
    weights.weight("Pyth")      # 1.0
    weights.weight("Unknown")   # 0.5

    table.update({"CoinGecko": 0.7})
    table.load_file("weights.json")
"""

import logging
import math
import threading
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Optional, Union

import orjson

from pricefusion.config import DEFAULT_SOURCE_WEIGHTS
from pricefusion.errors import SourceWeightsError

logger = logging.getLogger(__name__)

DEFAULT_UNKNOWN_WEIGHT = 0.5


class WeightSnapshot:
    """Immutable view of the table at one instant."""

    __slots__ = ("_weights", "default", "version")

    def __init__(self, weights: Mapping[str, float], default: float, version: int):
        self._weights = MappingProxyType(dict(weights))
        self.default = default
        self.version = version

    def weight(self, source: str) -> float:
        return self._weights.get(source, self.default)

    def as_dict(self) -> dict[str, float]:
        return dict(self._weights)

    def __contains__(self, source: object) -> bool:
        return source in self._weights

    def __len__(self) -> int:
        return len(self._weights)


def _validate(weights: Mapping[str, float]) -> dict[str, float]:
    clean: dict[str, float] = {}
    for source, weight in weights.items():
        if not isinstance(source, str) or not source:
            raise SourceWeightsError(f"source identifier must be a non-empty string, got {source!r}")
        try:
            value = float(weight)
        except (TypeError, ValueError) as e:
            raise SourceWeightsError(f"weight for {source!r} is not a number: {weight!r}") from e
        if not math.isfinite(value) or not 0.0 < value <= 1.0:
            raise SourceWeightsError(f"weight for {source!r} must be in (0, 1], got {weight!r}")
        clean[source] = value
    return clean


class SourceWeightTable:
    """
    Hot-reloadable source reliability table.

    Thread-safe: writers serialize on a lock, readers use snapshot().
    """

    def __init__(
        self,
        weights: Optional[Mapping[str, float]] = None,
        default: float = DEFAULT_UNKNOWN_WEIGHT,
    ):
        if not 0.0 < default <= 1.0:
            raise SourceWeightsError(f"default weight must be in (0, 1], got {default}")
        initial = DEFAULT_SOURCE_WEIGHTS if weights is None else weights
        self._lock = threading.Lock()
        self._snapshot = WeightSnapshot(_validate(initial), default, version=1)

    def snapshot(self) -> WeightSnapshot:
        # Reference read is atomic; the snapshot itself never changes
        return self._snapshot

    def weight(self, source: str) -> float:
        return self._snapshot.weight(source)

    def update(self, weights: Mapping[str, float], replace: bool = False) -> WeightSnapshot:
        """
        Apply new weights.

        Args:
            weights: source -> weight entries to set
            replace: If True, the new mapping replaces the table entirely

        Returns:
            The snapshot now in effect.

        Raises:
            SourceWeightsError: on any invalid entry; the table is left untouched.
        """
        clean = _validate(weights)
        with self._lock:
            current = self._snapshot
            merged = clean if replace else {**current.as_dict(), **clean}
            self._snapshot = WeightSnapshot(merged, current.default, current.version + 1)
            snap = self._snapshot

        logger.info(
            "source_weights_reloaded",
            extra={"version": snap.version, "sources": len(snap), "replace": replace},
        )
        return snap

    def load_file(self, path: Union[str, Path], replace: bool = True) -> WeightSnapshot:
        """
        Load weights from a JSON object file ({"Pyth": 1.0, ...}).

        Raises:
            SourceWeightsError: if the file is unreadable or malformed.
        """
        try:
            raw = orjson.loads(Path(path).read_bytes())
        except (OSError, orjson.JSONDecodeError) as e:
            raise SourceWeightsError(f"cannot read source weights from {path}: {e}") from e

        if not isinstance(raw, dict):
            raise SourceWeightsError(f"{path} must contain a JSON object")

        return self.update(raw, replace=replace)
