"""
Type Definitions Module
=======================

Records exchanged between the fusion engine, the feature extractor and the
bias predictor. All records are immutable; only PredictorState (see
state_store.py) carries a lifecycle.

Schema version: 1.0
"""

import math
from dataclasses import dataclass
from typing import Any, Literal, Optional

from pricefusion.utils_time import now_ms

# Schema version for data format compatibility
SCHEMA_VERSION = "1.0"

FusionMethod = Literal["fused", "median", "single"]
Bias = Literal["LONG", "SHORT", "NEUTRAL"]

METHOD_FUSED = "fused"
METHOD_MEDIAN = "median"
METHOD_SINGLE = "single"

BIAS_LONG = "LONG"
BIAS_SHORT = "SHORT"
BIAS_NEUTRAL = "NEUTRAL"

# Volume assumed when a source does not report one
DEFAULT_OBSERVATION_VOLUME = 1_000_000.0
DEFAULT_OBSERVATION_CONFIDENCE = 0.8


@dataclass(slots=True, frozen=True)
class Observation:
    """
    A single source's price report.

    Attributes:
        source: Reporting venue or oracle (open set, e.g. "Pyth")
        price: Reported price, > 0 for usable observations
        volume: Non-negative weight proxy
        timestamp_ms: Capture instant in milliseconds
        confidence: Source reliability in [0, 1]
    """
    source: str
    price: float
    volume: float
    timestamp_ms: int
    confidence: float

    @classmethod
    def create(
        cls,
        source: str,
        price: float,
        volume: float = DEFAULT_OBSERVATION_VOLUME,
        timestamp_ms: Optional[int] = None,
        confidence: float = DEFAULT_OBSERVATION_CONFIDENCE,
    ) -> "Observation":
        """
        Build a sanitized observation from raw oracle/API fields.

        Non-finite or non-positive prices yield a zero-price, zero-volume,
        zero-confidence observation so the caller can drop it before fusion.
        Volume is floored at 0 and confidence clamped to [0, 1].
        """
        ts = now_ms() if timestamp_ms is None else int(timestamp_ms)

        if not math.isfinite(price) or price <= 0:
            return cls(source=source, price=0.0, volume=0.0, timestamp_ms=ts, confidence=0.0)

        if not math.isfinite(volume):
            volume = 0.0
        if not math.isfinite(confidence):
            confidence = 0.0

        return cls(
            source=source,
            price=float(price),
            volume=max(0.0, float(volume)),
            timestamp_ms=ts,
            confidence=max(0.0, min(1.0, float(confidence))),
        )

    @property
    def usable(self) -> bool:
        """True when the observation survived sanitization."""
        return self.price > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "price": self.price,
            "volume": self.volume,
            "timestamp_ms": self.timestamp_ms,
            "confidence": self.confidence,
        }


@dataclass(slots=True, frozen=True)
class AggregatedPrice:
    """
    Fused price for one instant.

    Invariants:
        - sources_used and outliers_filtered are disjoint
        - empty sources_used implies price == 0 and confidence == 0
    """
    price: float
    confidence: float
    sources_used: tuple[str, ...]
    outliers_filtered: tuple[str, ...]
    method: FusionMethod
    timestamp_ms: int

    @classmethod
    def empty(cls, timestamp_ms: int) -> "AggregatedPrice":
        return cls(
            price=0.0,
            confidence=0.0,
            sources_used=(),
            outliers_filtered=(),
            method=METHOD_SINGLE,
            timestamp_ms=timestamp_ms,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "price": self.price,
            "confidence": round(self.confidence, 4),
            "sources_used": list(self.sources_used),
            "outliers_filtered": list(self.outliers_filtered),
            "method": self.method,
            "timestamp_ms": self.timestamp_ms,
        }


@dataclass(slots=True, frozen=True)
class BiasPrediction:
    """
    Directional bias for one predictor step.

    Attributes:
        bias: LONG, SHORT or NEUTRAL
        confidence: Integer percentage in [0, 100]
        temporal_strength: |mean hidden state|, rounded to 2 decimals
        ensemble_agreement: Fraction of learners agreeing with the score
        adaptive_score: Final blended score, rounded to 3 decimals
    """
    bias: Bias
    confidence: int
    temporal_strength: float
    ensemble_agreement: float
    adaptive_score: float

    @classmethod
    def neutral(cls) -> "BiasPrediction":
        """Default returned when there is nothing to predict from."""
        return cls(
            bias=BIAS_NEUTRAL,
            confidence=50,
            temporal_strength=0.0,
            ensemble_agreement=0.5,
            adaptive_score=0.0,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "bias": self.bias,
            "confidence": self.confidence,
            "temporal_strength": self.temporal_strength,
            "ensemble_agreement": self.ensemble_agreement,
            "adaptive_score": self.adaptive_score,
        }


def bias_to_score(bias: str) -> int:
    """Map a bias label to +1 / -1 / 0."""
    if bias == BIAS_LONG:
        return 1
    if bias == BIAS_SHORT:
        return -1
    return 0
