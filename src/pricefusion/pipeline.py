"""
Fusion Pipeline Module
======================

Glue from raw observation batches to bias predictions:

    observations -> PriceFusionEngine -> AggregatedPrice
                 -> MarketSnapshot -> FeatureExtractor -> FeatureVector
                 -> SequentialBiasPredictor -> BiasPrediction

The caller is responsible for feeding batches of one instrument in the
order their observations occurred.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from pricefusion.bias_predictor import SequentialBiasPredictor
from pricefusion.features import MarketSnapshot
from pricefusion.fusion import PriceFusionEngine
from pricefusion.metrics import Metrics
from pricefusion.types import AggregatedPrice, BiasPrediction, Observation

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class PipelineResult:
    instrument: str
    aggregated: AggregatedPrice
    prediction: Optional[BiasPrediction]

    def to_dict(self) -> dict[str, Any]:
        return {
            "instrument": self.instrument,
            "aggregated": self.aggregated.to_dict(),
            "prediction": self.prediction.to_dict() if self.prediction else None,
        }


class FusionPipeline:
    """
    Observation batch -> fused price -> bias prediction.

    Usage:
        pipeline = FusionPipeline(engine, predictor)
        result = pipeline.process("btc", observations, change_pct=1.2, volume=3e10)
    """

    def __init__(
        self,
        engine: PriceFusionEngine,
        predictor: SequentialBiasPredictor,
        metrics: Optional[Metrics] = None,
    ):
        self.engine = engine
        self.predictor = predictor
        self.metrics = metrics if metrics is not None else Metrics()
        self.processed_count = 0
        self.skipped_count = 0

    def process(
        self,
        instrument: str,
        observations: Sequence[Observation],
        change_pct: float,
        volume: float = 0.0,
        volatility: Optional[float] = None,
        momentum: Optional[float] = None,
        now: Optional[int] = None,
    ) -> PipelineResult:
        """
        Fuse one batch and, when a price came out, run a predictor step.

        Unusable (zero-price) observations are dropped before fusion. A batch
        with no usable observation yields an empty AggregatedPrice and no
        prediction; predictor state is left untouched.
        """
        aggregated = self.engine.aggregate_batch(observations, now=now)
        self.metrics.observe_aggregation(aggregated)

        if aggregated.price <= 0:
            self.skipped_count += 1
            self.metrics.inc_skipped()
            logger.debug("pipeline_batch_skipped", extra={"instrument": instrument})
            return PipelineResult(instrument=instrument, aggregated=aggregated, prediction=None)

        snapshot = MarketSnapshot.from_aggregated(
            aggregated,
            change_pct=change_pct,
            volume=volume,
            volatility=volatility,
            momentum=momentum,
        )
        prediction = self.predictor.predict_snapshot(instrument, snapshot)
        self.metrics.observe_prediction(prediction)
        self.processed_count += 1

        return PipelineResult(instrument=instrument, aggregated=aggregated, prediction=prediction)

    def reset(self, instrument: str) -> None:
        self.predictor.reset_state(instrument)
        self.metrics.inc_reset()
