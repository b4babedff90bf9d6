import pytest

from pricefusion.ensemble import (
    WEIGHT_MAX,
    WEIGHT_MIN,
    WeakLearner,
    agreement,
    ensemble_score,
    initial_learners,
    nudge_weights,
    sign,
)


def test_initial_learners_layout():
    learners = initial_learners(12, 5)

    assert len(learners) == 12
    assert all(learner.weight == pytest.approx(1 / 12) for learner in learners)
    assert [learner.feature_index for learner in learners] == [m % 5 for m in range(12)]
    assert [learner.direction for learner in learners] == [1, -1] * 6
    assert learners[0].threshold == pytest.approx(-0.5)
    assert learners[6].threshold == pytest.approx(0.0)
    assert learners[11].threshold == pytest.approx(5 / 12)


def test_weak_learner_votes():
    up = WeakLearner(weight=1.0, threshold=0.0, feature_index=1, direction=1)
    down = WeakLearner(weight=1.0, threshold=0.0, feature_index=1, direction=-1)

    assert up.predict([0.0, 0.2]) == 1
    assert up.predict([0.0, -0.2]) == -1
    # ties fall on the "not above" side
    assert up.predict([0.0, 0.0]) == -1
    assert down.predict([0.0, 0.2]) == -1
    # missing feature reads as 0
    assert WeakLearner(1.0, -0.1, 9, 1).predict([0.0]) == 1


def test_ensemble_score_regularized():
    learner = WeakLearner(weight=1.0, threshold=0.0, feature_index=0, direction=1)
    score = ensemble_score([learner], [1.0], learning_rate=0.1, regularization=0.05)
    assert score == pytest.approx(0.1 / (1 + 0.05 * 0.1))

    with_base = ensemble_score([learner], [1.0], 0.1, 0.05, base_score=0.2)
    assert with_base == pytest.approx(0.3 / (1 + 0.05 * 0.3))


def test_agreement_fraction():
    learners = [
        WeakLearner(1.0, 0.0, 0, 1),
        WeakLearner(1.0, 0.0, 0, 1),
        WeakLearner(1.0, 0.0, 0, -1),
        WeakLearner(1.0, 0.0, 0, -1),
    ]
    assert agreement(learners, [1.0], 0.3) == pytest.approx(0.5)
    assert agreement(learners[:3], [1.0], 0.3) == pytest.approx(2 / 3)
    assert agreement(learners, [1.0], 0.0) == 0.0
    assert agreement([], [1.0], 0.3) == 0.0


def test_nudge_rewards_aligned_learners():
    aligned = WeakLearner(1.0, 0.0, 0, 1)
    opposed = WeakLearner(1.0, 0.0, 0, -1)

    new_aligned, new_opposed = nudge_weights([aligned, opposed], [0.5], realized_change=0.5, learning_rate=0.1)

    assert new_aligned.weight == pytest.approx(1.01)
    assert new_opposed.weight == pytest.approx(0.99)
    assert new_aligned.threshold == aligned.threshold


def test_nudge_flat_change_is_noop_and_weights_clamped():
    learners = [WeakLearner(1.0, 0.0, 0, 1)]
    assert nudge_weights(learners, [0.5], 0.0, 0.1)[0].weight == 1.0

    top = nudge_weights([WeakLearner(WEIGHT_MAX, 0.0, 0, 1)], [0.5], 1.0, 0.1)
    assert top[0].weight == WEIGHT_MAX

    bottom = nudge_weights([WeakLearner(WEIGHT_MIN, 0.0, 0, -1)], [0.5], 1.0, 0.1)
    assert bottom[0].weight == WEIGHT_MIN


def test_sign():
    assert sign(3.2) == 1
    assert sign(-0.1) == -1
    assert sign(0.0) == 0
