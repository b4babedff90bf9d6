"""
Sequential Bias Predictor
=========================

Stateful per-instrument predictor combining a gated memory cell with a
boosted ensemble of weak learners.

Why this exists:
    The fused price stream is noisy tick to tick. The memory cell carries a
    slowly decaying summary of past feature vectors; the ensemble votes on
    the current vector; the blend is self-corrected against its own recent
    history and classified with thresholds that adapt to the typical score
    magnitude of the instrument.

Steps per call:
    1. h = cell(h_prev, x); temporal = mean(h)
    2. ensemble = F(x) with base 0.3 × temporal; agreement = share of
       learners voting with sign(ensemble)
    3. raw = 0.4 × temporal + 0.6 × ensemble; with ≥ 10 past scores whose
       mean m has |m| > 0.5, adaptive = raw - 0.1 × m
    4. LONG if adaptive > bullish and agreement > 0.5, SHORT if
       adaptive < bearish and agreement > 0.5, else NEUTRAL
    5. Update buffer, history, thresholds (≥ 20 scores), learner weights
       and memory, all under the instrument's lock

Output:
    BiasPrediction(bias, confidence 0..100, temporal_strength,
                   ensemble_agreement, adaptive_score)

Usage:
    predictor = SequentialBiasPredictor()
    snap = MarketSnapshot(price=64000.0, change_pct=1.5, volume=2.5e10)
    pred = predictor.predict_snapshot("btc", snap)
    predictor.reset_state("btc")
"""

import logging
import math
from collections import deque
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from pricefusion.config import Settings
from pricefusion.ensemble import (
    agreement,
    ensemble_score,
    initial_learners,
    nudge_weights,
)
from pricefusion.errors import FeatureVectorError
from pricefusion.features import CHANGE_INDEX, FEATURE_SIZE, FeatureExtractor, MarketSnapshot
from pricefusion.gated_memory import GatedMemoryCell
from pricefusion.state_store import (
    DEFAULT_BUFFER_SIZE,
    DEFAULT_HISTORY_SIZE,
    AdaptiveThresholds,
    HistoryEntry,
    InstrumentStateStore,
    PredictorState,
)
from pricefusion.types import (
    BIAS_LONG,
    BIAS_NEUTRAL,
    BIAS_SHORT,
    Bias,
    BiasPrediction,
    bias_to_score,
)
from pricefusion.utils_time import now_ms

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_HIDDEN_SIZE = 8
DEFAULT_NUM_LEARNERS = 12
DEFAULT_LEARNING_RATE = 0.1
DEFAULT_REGULARIZATION = 0.05
DEFAULT_TEMPORAL_WEIGHT = 0.4
DEFAULT_ENSEMBLE_WEIGHT = 0.6
DEFAULT_BASE_SCORE_FACTOR = 0.3
DEFAULT_BULLISH = 0.3
DEFAULT_BEARISH = -0.3

# Mean reversion on persistently extreme scores
REVERSION_WINDOW = 10
REVERSION_TRIGGER = 0.5
REVERSION_FACTOR = 0.1

# Threshold adaptation
ADAPT_WINDOW = 20
ADAPT_FACTOR = 0.8
BULLISH_RANGE = (0.2, 0.5)
BEARISH_RANGE = (-0.5, -0.2)

MIN_AGREEMENT = 0.5

# Confidence shaping
CONF_CAP = 80.0
CONF_AGREEMENT_BOOST = 15.0
CONF_TEMPORAL_BOOST = 10.0
NEUTRAL_CONF_CAP = 55.0
NEUTRAL_CONF_DAMPING = 0.6

# blend_with_bias(): external bias dominates
EXTERNAL_WEIGHT = 0.75
MODEL_WEIGHT = 0.25
BLEND_BIAS_THRESHOLD = 0.25
BLEND_CONF_MIN = 35.0
BLEND_CONF_MAX = 80.0
BLEND_AGREE_BOOST = 5.0
BLEND_DISAGREE_PENALTY = 8.0


def round_half_up(x: float, ndigits: int = 0) -> float:
    """Round halves towards +inf (0.5 -> 1, -0.5 -> 0)."""
    factor = 10 ** ndigits
    return math.floor(x * factor + 0.5) / factor


def _clamp(lo: float, hi: float, x: float) -> float:
    return max(lo, min(hi, x))


@dataclass(frozen=True)
class PredictorConfig:
    """Tunable constants of the bias predictor."""
    hidden_size: int = DEFAULT_HIDDEN_SIZE
    num_learners: int = DEFAULT_NUM_LEARNERS
    learning_rate: float = DEFAULT_LEARNING_RATE
    regularization: float = DEFAULT_REGULARIZATION
    temporal_weight: float = DEFAULT_TEMPORAL_WEIGHT
    ensemble_weight: float = DEFAULT_ENSEMBLE_WEIGHT
    base_score_factor: float = DEFAULT_BASE_SCORE_FACTOR
    bullish_threshold: float = DEFAULT_BULLISH
    bearish_threshold: float = DEFAULT_BEARISH
    history_size: int = DEFAULT_HISTORY_SIZE
    buffer_size: int = DEFAULT_BUFFER_SIZE
    input_size: int = FEATURE_SIZE

    @classmethod
    def from_settings(cls, s: Settings) -> "PredictorConfig":
        return cls(
            hidden_size=s.PREDICTOR_HIDDEN_SIZE,
            num_learners=s.PREDICTOR_NUM_LEARNERS,
            learning_rate=s.PREDICTOR_LEARNING_RATE,
            regularization=s.PREDICTOR_REGULARIZATION,
            temporal_weight=s.PREDICTOR_TEMPORAL_WEIGHT,
            ensemble_weight=s.PREDICTOR_ENSEMBLE_WEIGHT,
            base_score_factor=s.PREDICTOR_BASE_SCORE_FACTOR,
            bullish_threshold=s.PREDICTOR_BULLISH_THRESHOLD,
            bearish_threshold=s.PREDICTOR_BEARISH_THRESHOLD,
            history_size=s.PREDICTOR_HISTORY_SIZE,
            buffer_size=s.PREDICTOR_BUFFER_SIZE,
        )


def initial_state(config: PredictorConfig) -> PredictorState:
    """Fresh state: zero memory, seeded ensemble, default thresholds."""
    return PredictorState(
        memory=[0.0] * config.hidden_size,
        ensemble=initial_learners(config.num_learners, config.input_size),
        thresholds=AdaptiveThresholds(
            bullish=config.bullish_threshold,
            bearish=config.bearish_threshold,
        ),
        history=deque(maxlen=config.history_size),
        sequence_buffer=deque(maxlen=config.buffer_size),
    )


class SequentialBiasPredictor:
    """
    Per-instrument bias predictor over an explicit state store.

    The memory cell weights are a fixed projection shared by all
    instruments; everything that adapts lives in the instrument's
    PredictorState.
    """

    def __init__(
        self,
        config: Optional[PredictorConfig] = None,
        store: Optional[InstrumentStateStore] = None,
        max_instruments: int = 0,
    ):
        self.config = config if config is not None else PredictorConfig()
        self.store = store if store is not None else InstrumentStateStore(
            factory=self.initial_state,
            max_instruments=max_instruments,
        )
        self.cell = GatedMemoryCell(self.config.input_size, self.config.hidden_size)
        self.extractor = FeatureExtractor()

        logger.info(
            "bias_predictor_initialized",
            extra={
                "hidden_size": self.config.hidden_size,
                "num_learners": self.config.num_learners,
                "max_instruments": self.store.max_instruments,
            },
        )

    def initial_state(self) -> PredictorState:
        return initial_state(self.config)

    def predict(
        self,
        instrument: str,
        features: Sequence[float],
        timestamp_ms: Optional[int] = None,
    ) -> BiasPrediction:
        """
        Run one predictor step for an instrument and update its state.

        Args:
            instrument: Instrument identifier
            features: Normalized feature vector (see features.py)
            timestamp_ms: Step time recorded in history (defaults to now)

        Raises:
            FeatureVectorError: if the vector has the wrong length.
        """
        cfg = self.config
        if len(features) != cfg.input_size:
            raise FeatureVectorError(cfg.input_size, len(features))

        x = [f if math.isfinite(f) else 0.0 for f in features]
        ts = now_ms() if timestamp_ms is None else timestamp_ms

        with self.store.locked(instrument) as state:
            # Step 1: temporal memory
            hidden = self.cell.forward(state.memory, x)
            temporal = sum(hidden) / len(hidden)
            temporal_strength = abs(temporal)

            # Step 2: ensemble
            ens = ensemble_score(
                state.ensemble,
                x,
                cfg.learning_rate,
                cfg.regularization,
                base_score=temporal * cfg.base_score_factor,
            )
            ens_agreement = agreement(state.ensemble, x, ens)

            # Step 3: blend and mean reversion
            raw = cfg.temporal_weight * temporal + cfg.ensemble_weight * ens
            adaptive = raw
            if len(state.history) >= REVERSION_WINDOW:
                recent = list(state.history)[-REVERSION_WINDOW:]
                mean_recent = sum(e.score for e in recent) / len(recent)
                if abs(mean_recent) > REVERSION_TRIGGER:
                    adaptive = raw - REVERSION_FACTOR * mean_recent

            # Step 4: classify
            bias = self._classify(adaptive, ens_agreement, state.thresholds)
            confidence = min(
                CONF_CAP,
                abs(adaptive) * 100
                + ens_agreement * CONF_AGREEMENT_BOOST
                + temporal_strength * CONF_TEMPORAL_BOOST,
            )
            if bias == BIAS_NEUTRAL:
                confidence = min(NEUTRAL_CONF_CAP, confidence * NEUTRAL_CONF_DAMPING)

            # Step 5: state update
            state.sequence_buffer.append(tuple(x))
            state.history.append(HistoryEntry(score=adaptive, confidence=confidence, timestamp_ms=ts))
            if len(state.history) >= ADAPT_WINDOW:
                self._adapt_thresholds(state)
            state.ensemble = nudge_weights(
                state.ensemble, x, x[CHANGE_INDEX], cfg.learning_rate,
            )
            state.memory = hidden
            state.steps += 1
            state.last_update_ms = ts

        logger.debug(
            "bias_predicted",
            extra={
                "instrument": instrument,
                "bias": bias,
                "score": round(adaptive, 4),
                "agreement": round(ens_agreement, 3),
            },
        )

        return BiasPrediction(
            bias=bias,
            confidence=int(_clamp(0, 100, round_half_up(confidence))),
            temporal_strength=round_half_up(temporal_strength, 2),
            ensemble_agreement=round_half_up(ens_agreement, 2),
            adaptive_score=round_half_up(adaptive, 3),
        )

    def predict_snapshot(self, instrument: str, snapshot: MarketSnapshot) -> BiasPrediction:
        """Extract features from market fields and predict."""
        return self.predict(instrument, self.extractor.extract(snapshot), snapshot.timestamp_ms)

    def analyze_sequence(
        self,
        instrument: str,
        snapshots: Iterable[MarketSnapshot],
    ) -> BiasPrediction:
        """
        Feed an ordered batch through the predictor and return the last
        prediction. An empty batch leaves state untouched and returns the
        neutral default.
        """
        last: Optional[BiasPrediction] = None
        for snapshot in snapshots:
            last = self.predict_snapshot(instrument, snapshot)
        return last if last is not None else BiasPrediction.neutral()

    def blend_with_bias(
        self,
        instrument: str,
        current_bias: Bias,
        current_confidence: float,
        snapshot: MarketSnapshot,
    ) -> tuple[Bias, int, BiasPrediction]:
        """
        Blend an externally computed bias with one predictor step.

        The external bias weighs 0.75, the model 0.25. Agreement on a
        directional bias boosts confidence, opposite directional biases cut
        it. Final confidence is clamped to [35, 80].

        Returns:
            (bias, confidence, model prediction)
        """
        model = self.predict_snapshot(instrument, snapshot)

        blended = (
            bias_to_score(current_bias) * EXTERNAL_WEIGHT
            + bias_to_score(model.bias) * MODEL_WEIGHT
        )
        if blended > BLEND_BIAS_THRESHOLD:
            final_bias = BIAS_LONG
        elif blended < -BLEND_BIAS_THRESHOLD:
            final_bias = BIAS_SHORT
        else:
            final_bias = BIAS_NEUTRAL

        confidence = current_confidence * EXTERNAL_WEIGHT + model.confidence * MODEL_WEIGHT

        if current_bias == model.bias and current_bias != BIAS_NEUTRAL:
            confidence = min(BLEND_CONF_MAX, confidence + model.ensemble_agreement * BLEND_AGREE_BOOST)

        if (
            current_bias != model.bias
            and current_bias != BIAS_NEUTRAL
            and model.bias != BIAS_NEUTRAL
        ):
            confidence = max(BLEND_CONF_MIN, confidence - BLEND_DISAGREE_PENALTY)

        final_confidence = int(round_half_up(_clamp(BLEND_CONF_MIN, BLEND_CONF_MAX, confidence)))
        return final_bias, final_confidence, model

    def reset_state(self, instrument: str) -> None:
        self.store.reset(instrument)

    def state_snapshot(self, instrument: str) -> Optional[dict]:
        state = self.store.get(instrument)
        return state.snapshot() if state is not None else None

    @staticmethod
    def _classify(score: float, ens_agreement: float, thresholds: AdaptiveThresholds) -> Bias:
        if score > thresholds.bullish and ens_agreement > MIN_AGREEMENT:
            return BIAS_LONG
        if score < thresholds.bearish and ens_agreement > MIN_AGREEMENT:
            return BIAS_SHORT
        return BIAS_NEUTRAL

    @staticmethod
    def _adapt_thresholds(state: PredictorState) -> None:
        recent = list(state.history)[-ADAPT_WINDOW:]
        avg = sum(abs(e.score) for e in recent) / len(recent)
        state.thresholds = AdaptiveThresholds(
            bullish=_clamp(*BULLISH_RANGE, ADAPT_FACTOR * avg),
            bearish=_clamp(*BEARISH_RANGE, -ADAPT_FACTOR * avg),
        )
