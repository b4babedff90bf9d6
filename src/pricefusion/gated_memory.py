"""
Gated Memory Cell
=================

One-layer gated recurrent cell used as a fixed random-feature projection of
the feature stream. Weights are seeded deterministically with sinusoids and
never trained:

    r  = σ(Wr · [h_prev, x] + br)          reset gate
    z  = σ(Wz · [h_prev, x] + bz)          update gate
    h~ = tanh(Wh · [r ⊙ h_prev, x] + bh)   candidate
    h  = (1 - z) ⊙ h_prev + z ⊙ h~

Seeding, for row j and column i of a (hidden, hidden + input) matrix with
flat index k = j × cols + i and scale = sqrt(2 / (input + hidden)):
    Wr[k] = sin(0.7 k) × scale
    Wz[k] = cos(0.5 k) × scale
    Wh[k] = sin(1.1 k + 0.3) × scale
    br = 0.1, bz = 0.2, bh = 0
"""

import math
from dataclasses import dataclass
from typing import Sequence

# Sigmoid pre-activation is clamped to this range
SIGMOID_CLAMP = 500.0

RESET_BIAS = 0.1
UPDATE_BIAS = 0.2
CANDIDATE_BIAS = 0.0

Matrix = tuple[tuple[float, ...], ...]


def sigmoid(x: float) -> float:
    """Logistic sigmoid with the argument clamped to [-500, 500]."""
    x = max(-SIGMOID_CLAMP, min(SIGMOID_CLAMP, x))
    return 1.0 / (1.0 + math.exp(-x))


def _matvec(w: Matrix, v: Sequence[float], bias: float) -> list[float]:
    return [sum(wi * vi for wi, vi in zip(row, v)) + bias for row in w]


def _seeded_matrix(rows: int, cols: int, scale: float, fn) -> Matrix:
    return tuple(
        tuple(fn(j * cols + i) * scale for i in range(cols))
        for j in range(rows)
    )


@dataclass(frozen=True)
class GatedMemoryWeights:
    wr: Matrix
    wz: Matrix
    wh: Matrix
    br: float = RESET_BIAS
    bz: float = UPDATE_BIAS
    bh: float = CANDIDATE_BIAS

    @classmethod
    def seeded(cls, input_size: int, hidden_size: int) -> "GatedMemoryWeights":
        cols = hidden_size + input_size
        scale = math.sqrt(2.0 / (input_size + hidden_size))
        return cls(
            wr=_seeded_matrix(hidden_size, cols, scale, lambda k: math.sin(k * 0.7)),
            wz=_seeded_matrix(hidden_size, cols, scale, lambda k: math.cos(k * 0.5)),
            wh=_seeded_matrix(hidden_size, cols, scale, lambda k: math.sin(k * 1.1 + 0.3)),
        )


class GatedMemoryCell:
    """
    Stateless forward pass; the hidden vector is owned by the caller.
    """

    def __init__(self, input_size: int, hidden_size: int = 8):
        self.input_size = input_size
        self.hidden_size = hidden_size
        self.weights = GatedMemoryWeights.seeded(input_size, hidden_size)

    def initial_state(self) -> list[float]:
        return [0.0] * self.hidden_size

    def forward(self, h_prev: Sequence[float], x: Sequence[float]) -> list[float]:
        w = self.weights
        concat = [*h_prev, *x]

        r = [sigmoid(v) for v in _matvec(w.wr, concat, w.br)]
        z = [sigmoid(v) for v in _matvec(w.wz, concat, w.bz)]

        reset_hidden = [ri * hi for ri, hi in zip(r, h_prev)]
        h_tilde = [math.tanh(v) for v in _matvec(w.wh, [*reset_hidden, *x], w.bh)]

        return [(1.0 - zi) * hi + zi * ci for zi, hi, ci in zip(z, h_prev, h_tilde)]
