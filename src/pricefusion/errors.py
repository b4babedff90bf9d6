"""
Error Types
===========

The fusion engine and the predictor never raise for finite numeric input;
every degeneracy has a documented fallback. These exceptions only guard the
outer surfaces: wrongly shaped feature vectors and invalid reliability
tables.
"""


class PriceFusionError(Exception):
    """Base class for all pricefusion errors."""


class FeatureVectorError(PriceFusionError, ValueError):
    """Feature vector does not match the predictor's input size."""

    def __init__(self, expected: int, got: int):
        self.expected = expected
        self.got = got
        super().__init__(f"feature vector must have {expected} values, got {got}")


class SourceWeightsError(PriceFusionError, ValueError):
    """Source reliability table contains an invalid entry."""
