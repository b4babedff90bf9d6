"""
Price Fusion
============

Multi-source price aggregation with robust outlier rejection, plus a
sequential bias predictor that consumes the fused price stream.

Usage:
    python -m pricefusion serve
    python -m pricefusion replay batches.jsonl
"""

__version__ = "0.1.0"
__schema_version__ = "1.0"
