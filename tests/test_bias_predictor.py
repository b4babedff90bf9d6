"""
Tests for the sequential bias predictor.

Tests cover:
- determinism and per-instrument isolation
- reset reproducibility
- threshold adaptation and bounded buffers
- confidence bounds and neutral damping
- mean reversion on extreme history
- sequence analysis and external bias blending
- learner weight updates from the realized change
"""

import math
import random

import pytest

from pricefusion.bias_predictor import PredictorConfig, SequentialBiasPredictor, round_half_up
from pricefusion.ensemble import initial_learners
from pricefusion.errors import FeatureVectorError
from pricefusion.features import MarketSnapshot
from pricefusion.state_store import HistoryEntry
from pricefusion.types import BIAS_LONG, BIAS_NEUTRAL, BIAS_SHORT, BiasPrediction

from conftest import NOW, snapshots


def test_identical_sequences_on_two_instruments_match(predictor):
    seq = snapshots(40)
    btc = [predictor.predict_snapshot("btc", s) for s in seq]
    eth = [predictor.predict_snapshot("eth", s) for s in seq]
    assert btc == eth


def test_no_cross_instrument_leakage():
    seq = snapshots(15)
    shared = SequentialBiasPredictor()
    for s in seq:
        shared.predict_snapshot("btc", s)
    first_eth = shared.predict_snapshot("eth", seq[0])

    fresh = SequentialBiasPredictor().predict_snapshot("eth", seq[0])
    assert first_eth == fresh


def test_two_predictors_are_deterministic():
    seq = snapshots(30)
    p1, p2 = SequentialBiasPredictor(), SequentialBiasPredictor()
    assert [p1.predict_snapshot("x", s) for s in seq] == [p2.predict_snapshot("x", s) for s in seq]


def test_reset_replays_identically(predictor):
    seq = snapshots(25)
    first = [predictor.predict_snapshot("btc", s) for s in seq[:8]]
    for s in seq[8:]:
        predictor.predict_snapshot("btc", s)

    predictor.reset_state("btc")
    replay = [predictor.predict_snapshot("btc", s) for s in seq[:8]]
    assert replay == first


def test_thresholds_adapt_after_twenty_steps(predictor):
    seq = snapshots(25, pattern=[8.0])
    for s in seq[:19]:
        predictor.predict_snapshot("btc", s)
    state = predictor.store.get("btc")
    assert (state.thresholds.bullish, state.thresholds.bearish) == (0.3, -0.3)

    for s in seq[19:]:
        predictor.predict_snapshot("btc", s)
    t = predictor.store.get("btc").thresholds
    assert (t.bullish, t.bearish) != (0.3, -0.3)
    assert 0.2 <= t.bullish <= 0.5
    assert -0.5 <= t.bearish <= -0.2
    assert t.bullish == pytest.approx(-t.bearish)


def test_buffers_are_bounded(predictor):
    for s in snapshots(130):
        predictor.predict_snapshot("btc", s)
    state = predictor.store.get("btc")

    assert state.steps == 130
    assert len(state.history) == 50
    assert len(state.sequence_buffer) == 100
    # most recent last
    assert state.history[-1].timestamp_ms == NOW + 129_000


def test_confidence_bounds_on_random_inputs(predictor):
    rng = random.Random(11)
    for i in range(300):
        features = [rng.uniform(-3, 3) for _ in range(5)]
        pred = predictor.predict(f"inst{i % 3}", features, timestamp_ms=NOW + i)
        assert isinstance(pred.confidence, int)
        assert 0 <= pred.confidence <= 100
        assert pred.bias in (BIAS_LONG, BIAS_SHORT, BIAS_NEUTRAL)
        assert 0.0 <= pred.ensemble_agreement <= 1.0
        if pred.bias == BIAS_NEUTRAL:
            assert pred.confidence <= 55
        else:
            assert pred.confidence <= 80
            assert pred.ensemble_agreement > 0.5


def test_mean_reversion_on_extreme_history():
    predictor = SequentialBiasPredictor()
    features = [0.1, 0.05, 0.02, 0.6, 0.4]

    baseline = predictor.predict("a", features, timestamp_ms=NOW)

    state = predictor.store.get_or_create("b")
    state.history.extend(HistoryEntry(score=0.9, confidence=50.0, timestamp_ms=NOW) for _ in range(10))
    corrected = predictor.predict("b", features, timestamp_ms=NOW)

    assert corrected.adaptive_score == pytest.approx(baseline.adaptive_score - 0.09, abs=1.5e-3)


def test_no_mean_reversion_on_moderate_history():
    predictor = SequentialBiasPredictor()
    features = [0.1, 0.05, 0.02, 0.6, 0.4]

    baseline = predictor.predict("a", features, timestamp_ms=NOW)
    state = predictor.store.get_or_create("b")
    state.history.extend(HistoryEntry(score=0.4, confidence=50.0, timestamp_ms=NOW) for _ in range(10))

    assert predictor.predict("b", features, timestamp_ms=NOW).adaptive_score == baseline.adaptive_score


def test_wrong_feature_length_raises(predictor):
    with pytest.raises(FeatureVectorError) as exc:
        predictor.predict("btc", [0.1, 0.2])
    assert exc.value.expected == 5
    assert exc.value.got == 2
    assert predictor.store.get("btc") is None


def test_non_finite_features_do_not_poison_state(predictor):
    pred = predictor.predict("btc", [float("nan"), float("inf"), 0.1, 0.5, 0.4], timestamp_ms=NOW)
    state = predictor.store.get("btc")
    assert math.isfinite(pred.adaptive_score)
    assert all(math.isfinite(h) for h in state.memory)


def test_diagnostics_are_rounded(predictor):
    pred = predictor.predict("btc", [0.33, 0.12, 0.07, 0.61, 0.43], timestamp_ms=NOW)
    assert pred.adaptive_score == round(pred.adaptive_score, 3)
    assert pred.temporal_strength == round(pred.temporal_strength, 2)
    assert pred.ensemble_agreement == round(pred.ensemble_agreement, 2)


def test_analyze_sequence_matches_last_step(predictor):
    seq = snapshots(12)
    last = predictor.analyze_sequence("btc", seq)

    expected = None
    for s in seq:
        expected = predictor.predict_snapshot("eth", s)
    assert last == expected


def test_analyze_empty_sequence_is_neutral_and_stateless(predictor):
    assert predictor.analyze_sequence("btc", []) == BiasPrediction.neutral()
    assert predictor.store.get("btc") is None


def test_blend_keeps_strong_external_bias(predictor):
    snap = MarketSnapshot(price=100.0, change_pct=-3.0, volume=1e6, timestamp_ms=NOW)
    bias, confidence, model = predictor.blend_with_bias("btc", BIAS_LONG, 70, snap)

    assert bias == BIAS_LONG
    assert 35 <= confidence <= 80
    assert model.bias in (BIAS_LONG, BIAS_SHORT, BIAS_NEUTRAL)


def test_blend_with_neutral_external_stays_neutral(predictor):
    for s in snapshots(30, pattern=[9.0]):
        bias, confidence, _ = predictor.blend_with_bias("btc", BIAS_NEUTRAL, 10, s)
        assert bias == BIAS_NEUTRAL
        assert confidence >= 35


def test_blend_confidence_formula(predictor):
    snap = MarketSnapshot(price=100.0, change_pct=0.0, volume=0.0, timestamp_ms=NOW)
    bias, confidence, model = predictor.blend_with_bias("btc", BIAS_NEUTRAL, 60, snap)
    expected = max(35, min(80, 60 * 0.75 + model.confidence * 0.25))
    assert confidence == int(round_half_up(expected))


def test_state_snapshot(predictor):
    assert predictor.state_snapshot("btc") is None
    predictor.predict("btc", [0.1, 0.1, 0.1, 0.1, 0.1], timestamp_ms=NOW)
    snap = predictor.state_snapshot("btc")
    assert snap["steps"] == 1
    assert snap["history_len"] == 1
    assert len(snap["memory"]) == 8
    assert len(snap["ensemble"]) == 12
    assert snap["last_update_ms"] == NOW


def test_custom_config_sizes():
    predictor = SequentialBiasPredictor(PredictorConfig(hidden_size=4, num_learners=6, history_size=20))
    for s in snapshots(25):
        predictor.predict_snapshot("btc", s)
    state = predictor.store.get("btc")
    assert len(state.memory) == 4
    assert len(state.ensemble) == 6
    assert len(state.history) == 20


def test_round_half_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(0.125, 2) == pytest.approx(0.13)
    assert round_half_up(-0.5) == 0


def test_predict_nudges_learners_toward_realized_change(predictor):
    features = [0.5, -0.1, -0.02, 0.6, 0.4]
    before = initial_learners(12, 5)

    predictor.predict("btc", features, timestamp_ms=NOW)
    after = predictor.store.get("btc").ensemble

    for old, new in zip(before, after):
        expected = 1.01 if old.predict(features) == 1 else 0.99
        assert new.weight == pytest.approx(old.weight * expected)
        assert (new.threshold, new.feature_index, new.direction) == (
            old.threshold, old.feature_index, old.direction,
        )
    assert {old.predict(features) for old in before} == {1, -1}


def test_predict_nudge_follows_falling_change(predictor):
    features = [-0.5, 0.1, 0.02, 0.6, 0.4]
    before = initial_learners(12, 5)

    predictor.predict("btc", features, timestamp_ms=NOW)
    after = predictor.store.get("btc").ensemble

    for old, new in zip(before, after):
        expected = 1.01 if old.predict(features) == -1 else 0.99
        assert new.weight == pytest.approx(old.weight * expected)


def test_predict_flat_change_leaves_learner_weights(predictor):
    before = initial_learners(12, 5)
    predictor.predict("btc", [0.0, 0.3, 0.02, 0.6, 0.4], timestamp_ms=NOW)
    assert [lr.weight for lr in predictor.store.get("btc").ensemble] == [lr.weight for lr in before]
