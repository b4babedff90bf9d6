import pytest

from pricefusion.bias_predictor import SequentialBiasPredictor
from pricefusion.features import MarketSnapshot
from pricefusion.fusion import PriceFusionEngine
from pricefusion.pipeline import FusionPipeline
from pricefusion.source_weights import SourceWeightTable
from pricefusion.types import Observation

NOW = 1_706_356_800_000


def obs(source, price, volume=1.0, confidence=0.9, age_ms=0):
    return Observation(
        source=source,
        price=price,
        volume=volume,
        timestamp_ms=NOW - age_ms,
        confidence=confidence,
    )


def snapshots(n, start_ms=NOW, pattern=None):
    """Deterministic market snapshots, one per second."""
    changes = pattern or [((i * 7) % 11 - 5) * 0.6 for i in range(n)]
    return [
        MarketSnapshot(
            price=100.0 + i,
            change_pct=changes[i % len(changes)],
            volume=1e6 + 1000 * i,
            timestamp_ms=start_ms + 1000 * i,
        )
        for i in range(n)
    ]


@pytest.fixture
def weights():
    return SourceWeightTable()


@pytest.fixture
def engine(weights):
    return PriceFusionEngine(weights)


@pytest.fixture
def predictor():
    return SequentialBiasPredictor()


@pytest.fixture
def pipeline(engine, predictor):
    return FusionPipeline(engine, predictor)
