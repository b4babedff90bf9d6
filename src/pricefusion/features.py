"""
Feature Extractor
=================

Turns market fields for one instant into the fixed, normalized feature
vector consumed by the bias predictor.

Feature order (fixed, index = featureIndex of the weak learners):
    0. change      change_pct / 10        (-10%..+10% -> -1..+1)
    1. volatility  volatility / 5
    2. momentum    momentum / 100
    3. log_volume  log10(volume + 1) / 10
    4. log_price   log10(price) / 5       (0 when price <= 0)

Volatility and momentum are caller concerns; when absent they are
approximated from the change as |change| × 0.3 and change × 2.

Usage:
    extractor = FeatureExtractor()
    snap = MarketSnapshot(price=64000.0, change_pct=1.2, volume=3.1e10)
    features = extractor.extract(snap)
    # (0.12, 0.072, 0.024, 1.049..., 0.961...)
"""

import math
from dataclasses import dataclass, field
from typing import Optional

from pricefusion.types import AggregatedPrice
from pricefusion.utils_time import now_ms

FEATURE_NAMES: tuple[str, ...] = ("change", "volatility", "momentum", "log_volume", "log_price")
FEATURE_SIZE = len(FEATURE_NAMES)
CHANGE_INDEX = 0

FeatureVector = tuple[float, ...]

CHANGE_SCALE = 10.0
VOLATILITY_SCALE = 5.0
MOMENTUM_SCALE = 100.0
LOG_VOLUME_SCALE = 10.0
LOG_PRICE_SCALE = 5.0

# Fallback approximations when the caller has no estimate
VOLATILITY_FROM_CHANGE = 0.3
MOMENTUM_FROM_CHANGE = 2.0


def _finite(x: Optional[float]) -> float:
    if x is None or not math.isfinite(x):
        return 0.0
    return float(x)


@dataclass(slots=True, frozen=True)
class MarketSnapshot:
    """
    Market fields for one predictor step.

    Attributes:
        price: Fused price
        change_pct: Price change in percent (e.g. 24h change)
        volume: Traded volume or weight proxy
        volatility: Externally computed volatility estimate, optional
        momentum: Externally computed momentum estimate, optional
        timestamp_ms: Observation instant
    """
    price: float
    change_pct: float
    volume: float = 0.0
    volatility: Optional[float] = None
    momentum: Optional[float] = None
    timestamp_ms: int = field(default_factory=now_ms)

    @classmethod
    def from_aggregated(
        cls,
        aggregated: AggregatedPrice,
        change_pct: float,
        volume: float = 0.0,
        volatility: Optional[float] = None,
        momentum: Optional[float] = None,
    ) -> "MarketSnapshot":
        return cls(
            price=aggregated.price,
            change_pct=change_pct,
            volume=volume,
            volatility=volatility,
            momentum=momentum,
            timestamp_ms=aggregated.timestamp_ms,
        )

    def resolved_volatility(self) -> float:
        if self.volatility is None:
            return abs(_finite(self.change_pct)) * VOLATILITY_FROM_CHANGE
        return _finite(self.volatility)

    def resolved_momentum(self) -> float:
        if self.momentum is None:
            return _finite(self.change_pct) * MOMENTUM_FROM_CHANGE
        return _finite(self.momentum)


class FeatureExtractor:
    """Pure mapping MarketSnapshot -> FeatureVector."""

    size = FEATURE_SIZE
    names = FEATURE_NAMES

    def extract(self, snapshot: MarketSnapshot) -> FeatureVector:
        price = _finite(snapshot.price)
        # log10 of a negative volume is undefined; treat as no volume
        volume = max(0.0, _finite(snapshot.volume))

        return (
            _finite(snapshot.change_pct) / CHANGE_SCALE,
            snapshot.resolved_volatility() / VOLATILITY_SCALE,
            snapshot.resolved_momentum() / MOMENTUM_SCALE,
            math.log10(volume + 1) / LOG_VOLUME_SCALE,
            math.log10(price) / LOG_PRICE_SCALE if price > 0 else 0.0,
        )

    def as_dict(self, features: FeatureVector) -> dict[str, float]:
        return dict(zip(FEATURE_NAMES, features))
