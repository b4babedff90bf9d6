"""
Price Fusion Engine
===================

Reduces a batch of observations for one instant into a single
AggregatedPrice.

Formula:
    P_global = Σ(P_i × V_i') / Σ(V_i')
    V_i' = volume_i × sourceWeight(source_i) × confidence_i

Pipeline:
    1. Outlier detection (n > 2 only):
       - median and MAD of all prices
       - MAD == 0: relative deviation from median > 5% is an outlier
       - otherwise modified z = 0.6745 × |p - median| / MAD > 2.0
       - stale (older than 5s) or low-confidence (< 0.3) observations
         are outliers regardless of price
       - if everything got flagged, the most reliable observation
         (sourceWeight × confidence) is kept
    2. Method: VWAP with ≥ 2 valid, passthrough with 1, median of all
       otherwise.
    3. Confidence:
       clamp(0.1, 1.0, 0.3·min(n/3, 1) + 0.5·avg(conf×weight)
                       + max(0, 0.2 - CV) - 0.1·outliers)

The engine is a pure function of its inputs and the weight snapshot taken at
call time. It never raises; callers sanitize observations first
(Observation.create) or use aggregate_batch(), which drops unusable ones.

Usage:
    engine = PriceFusionEngine(SourceWeightTable())
    agg = engine.aggregate([
        Observation.create("Pyth", 100.0, volume=10),
        Observation.create("CoinGecko", 100.4, volume=5),
    ])
    # agg.method == "fused"
"""

import logging
import math
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Sequence

from pricefusion.config import Settings
from pricefusion.source_weights import SourceWeightTable, WeightSnapshot
from pricefusion.types import (
    METHOD_FUSED,
    METHOD_MEDIAN,
    METHOD_SINGLE,
    AggregatedPrice,
    Observation,
)
from pricefusion.utils_time import age_ms, now_ms

logger = logging.getLogger(__name__)

# Constant for the modified z-score under a normal distribution
MAD_K = 0.6745

DEFAULT_MAX_PRICE_AGE_MS = 5_000
DEFAULT_OUTLIER_Z_THRESHOLD = 2.0
DEFAULT_MAD_PCT_THRESHOLD = 0.05
DEFAULT_MIN_CONFIDENCE = 0.3
DEFAULT_MIN_SOURCES_FOR_VWAP = 2

DEFAULT_W_SOURCE_COUNT = 0.3
DEFAULT_W_SOURCE_QUALITY = 0.5
DEFAULT_CONSISTENCY_BASE = 0.2
DEFAULT_OUTLIER_PENALTY = 0.1

CONFIDENCE_FLOOR = 0.1
CONFIDENCE_CEIL = 1.0

# dynamic_confidence() tuning
FRESHNESS_PENALTY_CAP = 0.5
VOLUME_BONUS = 0.1


@dataclass(frozen=True)
class FusionConfig:
    """Tunable constants of the fusion engine."""
    max_price_age_ms: int = DEFAULT_MAX_PRICE_AGE_MS
    outlier_z_threshold: float = DEFAULT_OUTLIER_Z_THRESHOLD
    mad_pct_threshold: float = DEFAULT_MAD_PCT_THRESHOLD
    min_confidence: float = DEFAULT_MIN_CONFIDENCE
    min_sources_for_vwap: int = DEFAULT_MIN_SOURCES_FOR_VWAP
    w_source_count: float = DEFAULT_W_SOURCE_COUNT
    w_source_quality: float = DEFAULT_W_SOURCE_QUALITY
    consistency_base: float = DEFAULT_CONSISTENCY_BASE
    outlier_penalty: float = DEFAULT_OUTLIER_PENALTY

    @classmethod
    def from_settings(cls, s: Settings) -> "FusionConfig":
        return cls(
            max_price_age_ms=s.FUSION_MAX_PRICE_AGE_MS,
            outlier_z_threshold=s.FUSION_OUTLIER_Z_THRESHOLD,
            mad_pct_threshold=s.FUSION_MAD_PCT_THRESHOLD,
            min_confidence=s.FUSION_MIN_CONFIDENCE,
            min_sources_for_vwap=s.FUSION_MIN_SOURCES_FOR_VWAP,
            w_source_count=s.CONF_W_SOURCE_COUNT,
            w_source_quality=s.CONF_W_SOURCE_QUALITY,
            consistency_base=s.CONF_CONSISTENCY_BASE,
            outlier_penalty=s.CONF_OUTLIER_PENALTY,
        )


def median(values: Sequence[float]) -> float:
    """Median of values; 0 for an empty sequence."""
    if not values:
        return 0.0
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2 == 0:
        return (ordered[mid - 1] + ordered[mid]) / 2
    return ordered[mid]


def population_stddev(values: Sequence[float], mean: float) -> float:
    """Population standard deviation; 0 for fewer than two values."""
    if len(values) <= 1:
        return 0.0
    return math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))


def _unique(sources: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for s in sources:
        seen.setdefault(s, None)
    return list(seen)


class PriceFusionEngine:
    """
    Multi-source price aggregation with robust outlier rejection.

    Stateless apart from the shared, read-only source weight table.
    """

    def __init__(
        self,
        weights: Optional[SourceWeightTable] = None,
        config: Optional[FusionConfig] = None,
    ):
        self.weights = weights if weights is not None else SourceWeightTable()
        self.config = config if config is not None else FusionConfig()

    def aggregate(
        self,
        observations: Sequence[Observation],
        now: Optional[int] = None,
    ) -> AggregatedPrice:
        """
        Fuse observations for one instrument at one instant.

        Args:
            observations: Sanitized observations (price > 0)
            now: Reference time in ms for staleness and the result timestamp

        Returns:
            AggregatedPrice; never raises.
        """
        ts = now_ms() if now is None else now
        weights = self.weights.snapshot()

        if not observations:
            return AggregatedPrice.empty(ts)

        if len(observations) == 1:
            obs = observations[0]
            return AggregatedPrice(
                price=obs.price,
                confidence=obs.confidence * weights.weight(obs.source),
                sources_used=(obs.source,),
                outliers_filtered=(),
                method=METHOD_SINGLE,
                timestamp_ms=ts,
            )

        valid, outliers = self.detect_outliers(observations, weights, ts)

        if len(valid) >= self.config.min_sources_for_vwap:
            price = self.vwap(valid, weights)
            method = METHOD_FUSED
        elif len(valid) == 1:
            price = valid[0].price
            method = METHOD_SINGLE
        else:
            price = median([o.price for o in observations])
            method = METHOD_MEDIAN

        confidence = self.aggregated_confidence(valid, len(outliers), weights)

        used = _unique(o.source for o in valid)
        used_set = set(used)
        filtered = [s for s in _unique(o.source for o in outliers) if s not in used_set]

        if filtered:
            logger.debug(
                "fusion_outliers_filtered",
                extra={"outliers": filtered, "valid": len(valid), "method": method},
            )

        return AggregatedPrice(
            price=price,
            confidence=confidence,
            sources_used=tuple(used),
            outliers_filtered=tuple(filtered),
            method=method,
            timestamp_ms=ts,
        )

    def aggregate_batch(
        self,
        observations: Iterable[Observation],
        now: Optional[int] = None,
    ) -> AggregatedPrice:
        """
        Drop unusable (zero-price) observations, then aggregate.
        """
        batch = list(observations)
        usable = [o for o in batch if o.usable]
        dropped = len(batch) - len(usable)
        if dropped:
            logger.debug("fusion_unusable_dropped", extra={"dropped": dropped})
        return self.aggregate(usable, now=now)

    def aggregate_many(
        self,
        batches: Mapping[str, Sequence[Observation]],
        now: Optional[int] = None,
    ) -> dict[str, AggregatedPrice]:
        """
        Aggregate several instruments against the same reference time.
        """
        ts = now_ms() if now is None else now
        return {instrument: self.aggregate_batch(obs, now=ts) for instrument, obs in batches.items()}

    def detect_outliers(
        self,
        observations: Sequence[Observation],
        weights: WeightSnapshot,
        now: int,
    ) -> tuple[list[Observation], list[Observation]]:
        """
        Split observations into (valid, outliers).

        Batches of two or fewer are returned as-is: there is not enough data
        for robust statistics, and staleness is not checked either.
        """
        if len(observations) <= 2:
            return list(observations), []

        cfg = self.config
        prices = [o.price for o in observations]
        med = median(prices)
        mad = median([abs(p - med) for p in prices])

        valid: list[Observation] = []
        outliers: list[Observation] = []

        for obs in observations:
            deviation = abs(obs.price - med)
            if mad == 0:
                is_outlier = med > 0 and deviation / med > cfg.mad_pct_threshold
            else:
                is_outlier = MAD_K * deviation / mad > cfg.outlier_z_threshold

            is_stale = age_ms(obs.timestamp_ms, now) > cfg.max_price_age_ms
            is_low_confidence = obs.confidence < cfg.min_confidence

            if is_outlier or is_stale or is_low_confidence:
                outliers.append(obs)
            else:
                valid.append(obs)

        if not valid:
            # max() keeps the first of equally reliable observations
            best = max(observations, key=lambda o: weights.weight(o.source) * o.confidence)
            return [best], [o for o in observations if o is not best]

        return valid, outliers

    def vwap(self, observations: Sequence[Observation], weights: WeightSnapshot) -> float:
        """
        Volume-weighted average price with reliability-adjusted volumes.

        Falls back to the arithmetic mean when adjusted volumes sum to zero.
        """
        if not observations:
            return 0.0
        if len(observations) == 1:
            return observations[0].price

        sum_pv = 0.0
        sum_v = 0.0
        for obs in observations:
            adjusted = obs.volume * weights.weight(obs.source) * obs.confidence
            sum_pv += obs.price * adjusted
            sum_v += adjusted

        if sum_v == 0:
            return sum(o.price for o in observations) / len(observations)

        return sum_pv / sum_v

    def aggregated_confidence(
        self,
        valid: Sequence[Observation],
        outlier_count: int,
        weights: WeightSnapshot,
    ) -> float:
        """Confidence of a multi-observation aggregation, in [0.1, 1.0]."""
        if not valid:
            return 0.0

        cfg = self.config
        n = len(valid)

        source_count_factor = min(n / 3, 1.0)
        avg_quality = sum(o.confidence * weights.weight(o.source) for o in valid) / n

        prices = [o.price for o in valid]
        mean = sum(prices) / n
        cv = population_stddev(prices, mean) / mean if mean > 0 else 0.0
        consistency_bonus = max(0.0, cfg.consistency_base - cv)

        raw = (
            cfg.w_source_count * source_count_factor
            + cfg.w_source_quality * avg_quality
            + consistency_bonus
            - cfg.outlier_penalty * outlier_count
        )
        return max(CONFIDENCE_FLOOR, min(CONFIDENCE_CEIL, raw))

    def dynamic_confidence(
        self,
        source: str,
        timestamp_ms: int,
        has_volume: bool = False,
        now: Optional[int] = None,
    ) -> float:
        """
        Derive an observation confidence from source reliability and age.

        Starts at the source weight, subtracts min(age / max_age, 0.5) for
        aged quotes, adds 0.1 when the source reports volume, and clamps the
        result to [0.1, 1.0].
        """
        ts = now_ms() if now is None else now
        confidence = self.weights.weight(source)

        age = age_ms(timestamp_ms, ts)
        if age > 0:
            confidence -= min(age / self.config.max_price_age_ms, FRESHNESS_PENALTY_CAP)

        if has_volume:
            confidence += VOLUME_BONUS

        return max(CONFIDENCE_FLOOR, min(CONFIDENCE_CEIL, confidence))
