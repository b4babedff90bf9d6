"""
Boosted Ensemble of Weak Learners
=================================

Each learner is a single-feature threshold rule voting +1 / -1:

    h_m(x) = direction_m × (+1 if x[feature_m] > threshold_m else -1)

Score:
    F(x) = base + Σ_m η · γ_m · h_m(x)
    F(x) = F(x) / (1 + λ |F(x)|)

Weights γ_m are nudged after every step towards learners whose vote matched
the realized price direction; there is no gradient path.
"""

import math
from dataclasses import dataclass, replace
from typing import Sequence

WEIGHT_MIN = 0.01
WEIGHT_MAX = 2.0
# Dampens the per-step weight nudge on top of the learning rate
NUDGE_SCALE = 0.1


def sign(x: float) -> int:
    if x > 0:
        return 1
    if x < 0:
        return -1
    return 0


@dataclass(frozen=True)
class WeakLearner:
    weight: float
    threshold: float
    feature_index: int
    direction: int

    def predict(self, features: Sequence[float]) -> int:
        value = features[self.feature_index] if self.feature_index < len(features) else 0.0
        return self.direction * (1 if value > self.threshold else -1)

    def to_dict(self) -> dict:
        return {
            "weight": self.weight,
            "threshold": self.threshold,
            "feature_index": self.feature_index,
            "direction": self.direction,
        }


def initial_learners(num_learners: int, num_features: int) -> list[WeakLearner]:
    """
    Diverse starting ensemble: equal weights, thresholds spread over
    [-0.5, 0.5), features assigned round-robin, alternating directions.
    """
    return [
        WeakLearner(
            weight=1.0 / num_learners,
            threshold=(m - num_learners / 2) / num_learners,
            feature_index=m % num_features,
            direction=1 if m % 2 == 0 else -1,
        )
        for m in range(num_learners)
    ]


def ensemble_score(
    learners: Sequence[WeakLearner],
    features: Sequence[float],
    learning_rate: float,
    regularization: float,
    base_score: float = 0.0,
) -> float:
    score = base_score
    for learner in learners:
        score += learning_rate * learner.weight * learner.predict(features)
    return score / (1.0 + regularization * abs(score))


def agreement(learners: Sequence[WeakLearner], features: Sequence[float], score: float) -> float:
    """Fraction of learners whose vote has the sign of score (0 when score is 0)."""
    if not learners:
        return 0.0
    target = sign(score)
    agreeing = sum(1 for learner in learners if learner.predict(features) == target)
    return agreeing / len(learners)


def nudge_weights(
    learners: Sequence[WeakLearner],
    features: Sequence[float],
    realized_change: float,
    learning_rate: float,
) -> list[WeakLearner]:
    """
    Multiplicative weight update towards learners aligned with the realized
    direction; weights stay within [0.01, 2.0]. A flat change leaves weights
    untouched.
    """
    direction = sign(realized_change)
    updated = []
    for learner in learners:
        alignment = learner.predict(features) * direction
        new_weight = learner.weight * (1.0 + learning_rate * alignment * NUDGE_SCALE)
        if not math.isfinite(new_weight):
            new_weight = learner.weight
        updated.append(replace(learner, weight=max(WEIGHT_MIN, min(WEIGHT_MAX, new_weight))))
    return updated
